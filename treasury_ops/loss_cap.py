"""
Daily Loss Cap module for cl-treasury-ops

Global circuit breaker over trailing 24h rebalance spend. Every
fee-incurring action asks for permission with its worst-case fee first.
"""

import time
from typing import Dict, Optional, Any

from .errors import LossCapExceeded

LOSS_WINDOW_SECONDS = 86400


class DailyLossCapGuard:

    def __init__(self, plugin, database, policies):
        self.plugin = plugin
        self.database = database
        self.policies = policies

    def daily_loss_sats(self, now: Optional[int] = None) -> int:
        since = (now or int(time.time())) - LOSS_WINDOW_SECONDS
        return self.database.get_rebalance_fees_since(since)

    def assert_not_exceeded(self, additional: int = 0, now: Optional[int] = None) -> int:
        """
        Raise LossCapExceeded if spent + additional would reach the cap.

        The boundary is inclusive: reaching the cap exactly is a halt.

        Returns:
            Sats spent in the trailing window
        """
        cap = self.policies.get_capital_policy().max_daily_loss
        spent = self.daily_loss_sats(now)
        if spent + additional >= cap:
            self.plugin.log(
                f"Loss cap halt: {spent} spent + {additional} projected >= {cap}",
                level='warn'
            )
            raise LossCapExceeded(spent, additional, cap)
        return spent

    def status(self, now: Optional[int] = None) -> Dict[str, Any]:
        cap = self.policies.get_capital_policy().max_daily_loss
        spent = self.daily_loss_sats(now)
        return {
            "spent_24h_sats": spent,
            "max_daily_loss": cap,
            "remaining_sats": max(0, cap - spent),
            "halted": spent >= cap,
        }
