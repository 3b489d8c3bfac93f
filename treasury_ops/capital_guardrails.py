"""
Capital Guardrails module for cl-treasury-ops

assert_can_expand() is the single gate in front of every channel open.
It re-reads the node and the store on each call, so concurrent callers
see each other's `requested` records instead of relying on locks.

Checks run in a fixed order and the first violation wins:
    1. capacity bounds
    2. on-chain reserve after the open
    3. deploy ratio of confirmed on-chain funds
    4. pending opens count
    5. per-peer capacity
    6. per-peer cooldown
    7. expansions per day
    8. daily deployed capacity

"Pending" capital is the union of our own requested/submitted expansion
records and the channels the node reports as opening. A record whose
funding txid already appears on the node is counted once.
"""

import time
from dataclasses import dataclass, asdict
from typing import Dict, List, Optional, Any

from .errors import GuardrailViolation
from .ledger import ActionKind, ExecutionStatus
from .ppm import apply_ppm

MIN_CHANNEL_SATS = 100_000
MAX_CHANNEL_SATS = 2_000_000

DAY_SECONDS = 86400

# Expansions that count toward daily limits and the peer cooldown
ACTIVE_EXPANSION_STATUSES = (
    ExecutionStatus.REQUESTED.value,
    ExecutionStatus.SUBMITTED.value,
    ExecutionStatus.SUCCEEDED.value,
)


@dataclass
class CapitalExposure:
    """Aggregates the guardrail checks are evaluated against (sats)."""
    confirmed_onchain: int
    deployed: int
    pending_deployed: int
    pending_opens: int
    peer_deployed: int
    expansions_today: int
    deployed_today: int
    last_peer_expansion_at: Optional[int]

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class CapitalGuardrails:

    def __init__(self, plugin, database, node, ledger, policies):
        self.plugin = plugin
        self.database = database
        self.node = node
        self.ledger = ledger
        self.policies = policies

    def exposure(self, peer_id: Optional[str] = None, now: Optional[int] = None) -> CapitalExposure:
        now = now or int(time.time())
        confirmed = self.node.confirmed_onchain_sats()
        channels = self.node.list_channels()
        node_pending = self.node.list_pending_opens()

        known_txids = {p.funding_txid for p in node_pending if p.funding_txid}
        known_txids.update(ch.funding_txid for ch in channels if ch.funding_txid)
        ledger_pending = [
            record for record in self.ledger.list_pending(ActionKind.EXPANSION)
            if not (record.reference and record.reference in known_txids)
        ]

        pending_deployed = (sum(p.capacity for p in node_pending)
                            + sum(r.params["capacity_sats"] for r in ledger_pending))

        peer_deployed = 0
        last_peer_expansion = None
        if peer_id:
            peer_deployed = (
                sum(ch.capacity for ch in channels if ch.peer_id == peer_id)
                + sum(p.capacity for p in node_pending if p.peer_id == peer_id)
                + sum(r.params["capacity_sats"] for r in ledger_pending
                      if r.params["peer_id"] == peer_id)
            )
            last_peer_expansion = self.database.get_last_expansion_time(
                peer_id, ACTIVE_EXPANSION_STATUSES
            )

        daily = self.database.get_expansion_activity_since(now - DAY_SECONDS, ACTIVE_EXPANSION_STATUSES)

        return CapitalExposure(
            confirmed_onchain=confirmed,
            deployed=sum(ch.capacity for ch in channels),
            pending_deployed=pending_deployed,
            pending_opens=len(node_pending) + len(ledger_pending),
            peer_deployed=peer_deployed,
            expansions_today=daily['count'],
            deployed_today=daily['capacity_sats'],
            last_peer_expansion_at=last_peer_expansion,
        )

    def assert_can_expand(self, peer_id: str, capacity: int,
                          now: Optional[int] = None) -> Dict[str, Any]:
        """
        Raise GuardrailViolation on the first failing check.

        Returns:
            Dict with the policy and exposure the request was approved against
        """
        capacity = int(capacity)
        now = now or int(time.time())

        if capacity < MIN_CHANNEL_SATS or capacity > MAX_CHANNEL_SATS:
            raise GuardrailViolation(
                "capacity_bounds",
                f"Policy violation: capacity {capacity} outside "
                f"[{MIN_CHANNEL_SATS}, {MAX_CHANNEL_SATS}] sats",
                limit=MAX_CHANNEL_SATS if capacity > MAX_CHANNEL_SATS else MIN_CHANNEL_SATS,
                current=capacity, would_be=capacity,
            )

        policy = self.policies.get_capital_policy()
        exp = self.exposure(peer_id, now)

        remaining = exp.confirmed_onchain - exp.pending_deployed - capacity
        if remaining < policy.min_onchain_reserve:
            raise GuardrailViolation(
                "onchain_reserve",
                f"Policy violation: on-chain balance after open would be {remaining} sats, "
                f"below reserve {policy.min_onchain_reserve} sats",
                limit=policy.min_onchain_reserve,
                current=exp.confirmed_onchain - exp.pending_deployed,
                would_be=remaining,
            )

        deploy_limit = apply_ppm(exp.confirmed_onchain, policy.max_deploy_ratio_ppm)
        total_deployed = exp.deployed + exp.pending_deployed + capacity
        if total_deployed > deploy_limit:
            raise GuardrailViolation(
                "deploy_ratio",
                f"Policy violation: deployed capital would be {total_deployed} sats, "
                f"above {deploy_limit} sats ({policy.max_deploy_ratio_ppm} ppm of on-chain)",
                limit=deploy_limit,
                current=exp.deployed + exp.pending_deployed,
                would_be=total_deployed,
            )

        if exp.pending_opens >= policy.max_pending_opens:
            raise GuardrailViolation(
                "pending_opens",
                f"Policy violation: {exp.pending_opens} pending opens, "
                f"max {policy.max_pending_opens}",
                limit=policy.max_pending_opens,
                current=exp.pending_opens,
                would_be=exp.pending_opens + 1,
            )

        peer_total = exp.peer_deployed + capacity
        if peer_total > policy.max_peer_capacity:
            raise GuardrailViolation(
                "peer_capacity",
                f"Policy violation: capacity to peer would be {peer_total} sats, "
                f"above {policy.max_peer_capacity} sats",
                limit=policy.max_peer_capacity,
                current=exp.peer_deployed,
                would_be=peer_total,
            )

        if policy.peer_cooldown_minutes > 0 and exp.last_peer_expansion_at is not None:
            minutes_ago = (now - exp.last_peer_expansion_at) // 60
            if minutes_ago < policy.peer_cooldown_minutes:
                raise GuardrailViolation(
                    "peer_cooldown",
                    f"Policy violation: last expansion to this peer was {minutes_ago} minutes ago; "
                    f"cooldown has {policy.peer_cooldown_minutes - minutes_ago} minutes remaining",
                    limit=policy.peer_cooldown_minutes,
                    current=minutes_ago,
                    would_be=minutes_ago,
                )

        if exp.expansions_today >= policy.max_expansions_per_day:
            raise GuardrailViolation(
                "daily_expansions",
                f"Policy violation: {exp.expansions_today} expansions in the last 24h, "
                f"max {policy.max_expansions_per_day}",
                limit=policy.max_expansions_per_day,
                current=exp.expansions_today,
                would_be=exp.expansions_today + 1,
            )

        daily_total = exp.deployed_today + capacity
        if daily_total > policy.max_daily_deploy:
            raise GuardrailViolation(
                "daily_deploy",
                f"Policy violation: capacity deployed in 24h would be {daily_total} sats, "
                f"above {policy.max_daily_deploy} sats",
                limit=policy.max_daily_deploy,
                current=exp.deployed_today,
                would_be=daily_total,
            )

        return {
            "allowed": True,
            "peer_id": peer_id,
            "capacity": capacity,
            "policy": policy.to_dict(),
            "exposure": exp.to_dict(),
        }

    def check(self, peer_id: str, capacity: int) -> Dict[str, Any]:
        """Non-raising variant for previews."""
        try:
            return self.assert_can_expand(peer_id, capacity)
        except GuardrailViolation as e:
            result = e.to_dict()
            result["allowed"] = False
            return result
