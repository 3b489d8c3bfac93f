"""
Dynamic Fee module for cl-treasury-ops

Maps each active channel's health classification to a target fee rate:

    target = clamp(round(base_ppm * multiplier[health]), 1, 10000)

Outbound-scarce channels are priced high and outbound-abundant channels
low. Computing targets and applying them to the node are separate steps;
one channel failing to apply never stops the others.
"""

from dataclasses import dataclass, asdict
from typing import Dict, List, Optional, Any

from .errors import ConfigurationError, TreasuryError
from .liquidity_health import HealthClass, LiquidityHealthRecord
from .ppm import clamp, round_half_up

FEE_MULTIPLIERS: Dict[HealthClass, float] = {
    HealthClass.OUTBOUND_STARVED: 4.0,
    HealthClass.WEAK: 2.0,
    HealthClass.HEALTHY: 1.0,
    HealthClass.INBOUND_HEAVY: 0.6,
    HealthClass.CRITICAL: 0.25,
}

MIN_TARGET_PPM = 1
MAX_TARGET_PPM = 10_000


@dataclass
class FeeAdjustment:
    channel_id: str
    peer_id: str
    classification: str
    imbalance_ratio: float
    base_fee_rate_ppm: int
    target_fee_rate_ppm: int
    adjustment_factor: float
    applied: Optional[bool] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def target_fee_ppm(base_ppm: int, health: HealthClass) -> int:
    return clamp(round_half_up(base_ppm * FEE_MULTIPLIERS[health]), MIN_TARGET_PPM, MAX_TARGET_PPM)


class DynamicFeeEngine:

    def __init__(self, plugin, database, node, policies, health):
        self.plugin = plugin
        self.database = database
        self.node = node
        self.policies = policies
        self.health = health

    def compute_adjustments(self, records: Optional[List[LiquidityHealthRecord]] = None
                            ) -> List[FeeAdjustment]:
        """
        Target fee per active channel.

        Raises:
            ConfigurationError: fee_rate_ppm has not been configured
        """
        policy = self.policies.get_fee_policy()
        if not policy.is_configured:
            raise ConfigurationError(
                "Base fee_rate_ppm is not configured; set a fee policy before computing dynamic fees"
            )
        if records is None:
            records = self.health.compute()

        adjustments = []
        for record in records:
            if not record.is_active:
                continue
            health = record.health_classification
            adjustments.append(FeeAdjustment(
                channel_id=record.channel_id,
                peer_id=record.peer_id,
                classification=health.value,
                imbalance_ratio=record.imbalance_ratio,
                base_fee_rate_ppm=policy.fee_rate_ppm,
                target_fee_rate_ppm=target_fee_ppm(policy.fee_rate_ppm, health),
                adjustment_factor=FEE_MULTIPLIERS[health],
            ))
        return adjustments

    def apply_adjustments(self, adjustments: List[FeeAdjustment]) -> List[FeeAdjustment]:
        """Push targets to the node, recording each channel's outcome."""
        base_fee_msat = self.policies.get_fee_policy().base_fee_msat
        for adj in adjustments:
            try:
                self.node.set_channel_fee(adj.channel_id, base_fee_msat, adj.target_fee_rate_ppm)
                adj.applied = True
                self.plugin.log(
                    f"Fee set on {adj.channel_id}: {adj.target_fee_rate_ppm} ppm ({adj.classification})",
                    level='debug'
                )
            except Exception as e:
                adj.applied = False
                adj.error = e.message if isinstance(e, TreasuryError) else str(e)
                self.plugin.log(f"Fee update failed on {adj.channel_id}: {adj.error}", level='warn')
        return adjustments

    def log_adjustments(self, adjustments: List[FeeAdjustment]) -> int:
        for adj in adjustments:
            self.database.record_channel_fee(
                adj.channel_id, adj.peer_id, adj.classification,
                adj.base_fee_rate_ppm, adj.target_fee_rate_ppm,
                applied=bool(adj.applied), error=adj.error,
            )
        return len(adjustments)

    def apply(self) -> Dict[str, Any]:
        """Compute, apply and log in one pass."""
        adjustments = self.apply_adjustments(self.compute_adjustments())
        self.log_adjustments(adjustments)
        applied = sum(1 for a in adjustments if a.applied)
        if applied:
            self.policies.mark_fee_policy_applied()
        self.plugin.log(f"Dynamic fees applied to {applied}/{len(adjustments)} channels")
        return {
            "applied": applied,
            "failed": len(adjustments) - applied,
            "adjustments": [a.to_dict() for a in adjustments],
        }
