"""
Expansion module for cl-treasury-ops

Recommends extra capacity toward peers whose channels are starved and
draining, and opens channels behind the capital guardrails.

Suggested capacity restores local balance to 45% of the current channel:
    ceil(max(0, 0.45 * capacity - local) * 2), clamped to [100k, 2M] sats

Priority score (higher first):
    classification   critical +100, outbound_starved +80, weak +40
    velocity         < -100k +30, < -50k +20, < 0 +10
    imbalance        < 0.1 +20, < 0.2 +10
"""

import math
from dataclasses import dataclass, asdict
from typing import Dict, List, Optional, Any

from .capital_guardrails import MIN_CHANNEL_SATS, MAX_CHANNEL_SATS
from .ledger import ActionKind
from .liquidity_health import HealthClass, LiquidityHealthRecord
from .ppm import clamp

TARGET_LOCAL_RATIO = 0.45

CLASSIFICATION_PRIORITY = {
    HealthClass.CRITICAL: 100,
    HealthClass.OUTBOUND_STARVED: 80,
    HealthClass.WEAK: 40,
}


@dataclass
class ExpansionRecommendation:
    channel_id: str
    peer_id: str
    health_classification: str
    imbalance_ratio: float
    velocity_24h_sats: int
    current_capacity: int
    suggested_capacity: int
    priority_score: int
    reason: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def suggested_capacity(capacity: int, local_balance: int) -> int:
    deficit = max(0.0, TARGET_LOCAL_RATIO * capacity - local_balance)
    return clamp(math.ceil(deficit * 2), MIN_CHANNEL_SATS, MAX_CHANNEL_SATS)


def priority_score(health: HealthClass, velocity_24h: int, imbalance: float) -> int:
    score = CLASSIFICATION_PRIORITY.get(health, 0)
    if velocity_24h < -100_000:
        score += 30
    elif velocity_24h < -50_000:
        score += 20
    elif velocity_24h < 0:
        score += 10
    if imbalance < 0.1:
        score += 20
    elif imbalance < 0.2:
        score += 10
    return score


def recommend(records: List[LiquidityHealthRecord]) -> List[ExpansionRecommendation]:
    """Starved or critical active channels with negative velocity, best first."""
    recommendations = []
    for r in records:
        if not r.is_active:
            continue
        if r.health_classification not in (HealthClass.OUTBOUND_STARVED, HealthClass.CRITICAL):
            continue
        if r.velocity_24h_sats >= 0:
            continue
        recommendations.append(ExpansionRecommendation(
            channel_id=r.channel_id,
            peer_id=r.peer_id,
            health_classification=r.health_classification.value,
            imbalance_ratio=r.imbalance_ratio,
            velocity_24h_sats=r.velocity_24h_sats,
            current_capacity=r.capacity,
            suggested_capacity=suggested_capacity(r.capacity, r.local_balance),
            priority_score=priority_score(r.health_classification, r.velocity_24h_sats,
                                          r.imbalance_ratio),
            reason=(f"{r.health_classification.value} channel with "
                    f"{abs(r.velocity_24h_sats)} sats net outflow in 24h"),
        ))
    recommendations.sort(key=lambda rec: rec.priority_score, reverse=True)
    return recommendations


class ExpansionManager:

    def __init__(self, plugin, database, node, ledger, health, guardrails):
        self.plugin = plugin
        self.database = database
        self.node = node
        self.ledger = ledger
        self.health = health
        self.guardrails = guardrails

    def get_recommendations(self, save: bool = False) -> List[ExpansionRecommendation]:
        recommendations = recommend(self.health.compute())
        if save and recommendations:
            self.database.save_expansion_recommendations(r.to_dict() for r in recommendations)
        return recommendations

    def execute(self, peer_id: str, capacity: int, dry_run: bool = False) -> Dict[str, Any]:
        """
        Open a channel to peer_id if every guardrail passes.

        Raises:
            GuardrailViolation: a capital policy check failed (no node call made)
            ExternalCallFailure: fundchannel failed (record marked failed)
        """
        approval = self.guardrails.assert_can_expand(peer_id, capacity)
        if dry_run:
            self.plugin.log(f"[DRY RUN] Would open {capacity} sats to {peer_id[:16]}...")
            return {"dry_run": True, **approval}

        record = self.ledger.create(ActionKind.EXPANSION, peer_id=peer_id, capacity_sats=int(capacity))
        try:
            result = self.node.open_channel(peer_id, int(capacity))
            record = self.ledger.mark_submitted(ActionKind.EXPANSION, record.id,
                                                reference=result.get("funding_txid"))
        except Exception as e:
            self.ledger.mark_failed(ActionKind.EXPANSION, record.id, str(e))
            self.plugin.log(f"Expansion to {peer_id[:16]}... failed: {e}", level='warn')
            raise

        self.plugin.log(
            f"Expansion submitted: {capacity} sats to {peer_id[:16]}... (txid={record.reference})"
        )
        return {"execution": record.to_dict()}
