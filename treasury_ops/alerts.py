"""
Alerts module for cl-treasury-ops

Composes rotation, loss cap, guardrail and scheduler state into a flat
list of operator-facing signals. Reading alerts never changes state.
"""

import time
from dataclasses import dataclass, asdict, field
from typing import Dict, List, Optional, Any

from .capital_guardrails import ACTIVE_EXPANSION_STATUSES, DAY_SECONDS
from .errors import TreasuryError

NEAR_LIMIT_FRACTION = 0.8
RESERVE_NEAR_MULTIPLE = 1.2
ROTATION_CRITICAL_SCORE = 150


@dataclass
class Alert:
    type: str
    severity: str  # 'info' | 'warning' | 'critical'
    message: str
    data: Dict[str, Any] = field(default_factory=dict)
    at: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class AlertsAggregator:

    def __init__(self, plugin, config, database, node, policies, loss_cap, rotation):
        self.plugin = plugin
        self.config = config
        self.database = database
        self.node = node
        self.policies = policies
        self.loss_cap = loss_cap
        self.rotation = rotation

    def compute(self, now: Optional[int] = None) -> List[Alert]:
        now = now or int(time.time())
        cfg = self.config.snapshot()
        policy = self.policies.get_capital_policy()
        alerts: List[Alert] = []

        candidates = self.rotation.get_candidates()
        if candidates:
            top = candidates[0]
            alerts.append(Alert(
                type="ROTATION_CANDIDATES_PRESENT",
                severity="critical" if top.rotation_score >= ROTATION_CRITICAL_SCORE else "warning",
                message=(f"{len(candidates)} rotation candidate(s); top {top.channel_id} "
                         f"scored {top.rotation_score} ({top.reason})"),
                data={"count": len(candidates), "top": top.to_dict()},
                at=now,
            ))

        spent = self.loss_cap.daily_loss_sats(now)
        cap = policy.max_daily_loss
        if spent >= cap:
            alerts.append(Alert(
                type="DAILY_LOSS_CAP_EXCEEDED",
                severity="critical",
                message=f"Rebalance spend {spent} sats has reached the daily cap of {cap} sats",
                data={"spent": spent, "cap": cap},
                at=now,
            ))
        elif cap > 0 and spent >= cap * NEAR_LIMIT_FRACTION:
            alerts.append(Alert(
                type="DAILY_LOSS_CAP_NEAR",
                severity="warning",
                message=f"Rebalance spend {spent} sats is at {spent * 100 // cap}% of the daily cap",
                data={"spent": spent, "cap": cap},
                at=now,
            ))

        daily = self.database.get_expansion_activity_since(now - DAY_SECONDS, ACTIVE_EXPANSION_STATUSES)
        if daily['count'] >= policy.max_expansions_per_day:
            alerts.append(Alert(
                type="DAILY_EXPANSION_LIMIT_REACHED",
                severity="warning",
                message=(f"{daily['count']} expansions in the last 24h "
                         f"(limit {policy.max_expansions_per_day})"),
                data={"count": daily['count'], "limit": policy.max_expansions_per_day},
                at=now,
            ))
        if (policy.max_daily_deploy > 0
                and daily['capacity_sats'] >= policy.max_daily_deploy * NEAR_LIMIT_FRACTION):
            alerts.append(Alert(
                type="DAILY_DEPLOY_LIMIT_NEAR",
                severity="warning",
                message=(f"{daily['capacity_sats']} sats deployed in the last 24h "
                         f"(limit {policy.max_daily_deploy})"),
                data={"deployed": daily['capacity_sats'], "limit": policy.max_daily_deploy},
                at=now,
            ))

        try:
            confirmed = self.node.confirmed_onchain_sats()
        except TreasuryError as e:
            self.plugin.log(f"Alerts: skipping on-chain reserve check: {e.message}", level='debug')
            confirmed = None
        if confirmed is not None:
            reserve = policy.min_onchain_reserve
            if confirmed < reserve:
                alerts.append(Alert(
                    type="ONCHAIN_RESERVE_BREACHED",
                    severity="critical",
                    message=f"Confirmed on-chain balance {confirmed} sats is below reserve {reserve} sats",
                    data={"confirmed": confirmed, "reserve": reserve},
                    at=now,
                ))
            elif reserve > 0 and confirmed / reserve < RESERVE_NEAR_MULTIPLE:
                alerts.append(Alert(
                    type="ONCHAIN_RESERVE_NEAR",
                    severity="warning",
                    message=f"Confirmed on-chain balance {confirmed} sats is close to reserve {reserve} sats",
                    data={"confirmed": confirmed, "reserve": reserve},
                    at=now,
                ))

        if cfg.scheduler_enabled and cfg.scheduler_dry_run:
            alerts.append(Alert(
                type="SCHEDULER_SIMULATION_MODE",
                severity="info",
                message="Rebalance scheduler is enabled in dry-run mode; no payments are made",
                at=now,
            ))

        return alerts
