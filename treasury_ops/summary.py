"""
Treasury summary for cl-treasury-ops

Node-level totals for reporting. Reads the channel cache rather than the
live node, so it is cheap and never used to make decisions.
"""

import time
from typing import Dict, Optional, Any

from .ledger import ActionKind
from .ppm import ratio_ppm


class TreasurySummary:

    def __init__(self, database, ledger):
        self.database = database
        self.ledger = ledger

    def build(self, now: Optional[int] = None) -> Dict[str, Any]:
        now = now or int(time.time())
        since_24h = now - 86400

        channels = self.database.get_cached_channels()
        total_local = sum(c['local_balance'] for c in channels)

        forwards_all = self.database.get_forward_summary(0)
        forwards_24h = self.database.get_forward_summary(since_24h)
        costs_all = self.database.get_rebalance_fees_since(0)
        costs_24h = self.database.get_rebalance_fees_since(since_24h)
        net_24h = forwards_24h['fees_sats'] - costs_24h

        return {
            "liquidity": {
                "channel_count": len(channels),
                "active_count": sum(1 for c in channels if c['is_active']),
                "total_capacity": sum(c['capacity'] for c in channels),
                "total_local": total_local,
                "total_remote": sum(c['remote_balance'] for c in channels),
                "cache_updated_at": max((c['updated_at'] for c in channels), default=None),
            },
            "forwarding": {
                "all_time": forwards_all,
                "last_24h": forwards_24h,
            },
            "rebalance_costs": {
                "all_time_sats": costs_all,
                "last_24h_sats": costs_24h,
            },
            "net_fees": {
                "all_time_sats": forwards_all['fees_sats'] - costs_all,
                "last_24h_sats": net_24h,
            },
            "capital_efficiency_ppm": ratio_ppm(net_24h, total_local),
            "executions": {
                kind.name.lower(): self.ledger.status_counts(kind) for kind in ActionKind
            },
        }
