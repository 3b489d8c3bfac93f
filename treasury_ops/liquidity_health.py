"""
Liquidity Health module for cl-treasury-ops

Classifies each channel by how much of its capacity sits on our side and
pairs that with the trailing 24h net forward flow to recommend an action.

Classification by imbalance ratio (local / capacity):
    < 0.15  outbound_starved
    < 0.35  weak
    < 0.65  healthy
    < 0.85  inbound_heavy
    else    critical

Velocity is incoming minus outgoing forwarded volume over 24h, in sats.
Negative velocity means the channel is draining our local balance.
"""

import time
from dataclasses import dataclass, asdict
from enum import Enum
from typing import Dict, List, Optional, Any

from .node import ChannelSnapshot
from .ppm import round_half_up


class HealthClass(Enum):
    OUTBOUND_STARVED = "outbound_starved"
    WEAK = "weak"
    HEALTHY = "healthy"
    INBOUND_HEAVY = "inbound_heavy"
    CRITICAL = "critical"


class RecommendedAction(Enum):
    NONE = "none"
    MONITOR = "monitor"
    EXPAND = "expand"
    REBALANCE = "rebalance"


# Upper bounds (exclusive) of each band; anything above the last is critical
HEALTH_THRESHOLDS = (
    (0.15, HealthClass.OUTBOUND_STARVED),
    (0.35, HealthClass.WEAK),
    (0.65, HealthClass.HEALTHY),
    (0.85, HealthClass.INBOUND_HEAVY),
)

VELOCITY_MONITOR_SATS = 10_000

VELOCITY_WINDOW_SECONDS = 86400


@dataclass
class LiquidityHealthRecord:
    channel_id: str
    peer_id: str
    capacity: int
    local_balance: int
    remote_balance: int
    imbalance_ratio: float
    health_classification: HealthClass
    velocity_24h_sats: int
    recommended_action: RecommendedAction
    is_active: bool

    def to_dict(self) -> Dict[str, Any]:
        result = asdict(self)
        result["health_classification"] = self.health_classification.value
        result["recommended_action"] = self.recommended_action.value
        return result


def imbalance_ratio(local_balance: int, capacity: Optional[int]) -> float:
    if not capacity or capacity <= 0:
        return 0.0
    return round_half_up(local_balance / capacity, 4)


def classify(ratio: float) -> HealthClass:
    for upper, health in HEALTH_THRESHOLDS:
        if ratio < upper:
            return health
    return HealthClass.CRITICAL


def recommend_action(health: HealthClass, velocity_24h: int, is_active: bool) -> RecommendedAction:
    """
    Map classification + velocity to an operator action.

    Order matters: the draining starved/critical case is checked before the
    velocity-based monitor rules, and inactive channels short-circuit.
    """
    if not is_active:
        return RecommendedAction.NONE
    if health in (HealthClass.CRITICAL, HealthClass.OUTBOUND_STARVED) and velocity_24h < 0:
        return RecommendedAction.EXPAND
    if health == HealthClass.WEAK and velocity_24h < -VELOCITY_MONITOR_SATS:
        return RecommendedAction.MONITOR
    if health == HealthClass.INBOUND_HEAVY and velocity_24h > VELOCITY_MONITOR_SATS:
        return RecommendedAction.MONITOR
    if health in (HealthClass.OUTBOUND_STARVED, HealthClass.CRITICAL):
        return RecommendedAction.EXPAND
    if health == HealthClass.HEALTHY:
        return RecommendedAction.NONE
    return RecommendedAction.MONITOR


def evaluate_channel(snapshot: ChannelSnapshot, velocity_24h: int) -> LiquidityHealthRecord:
    """Pure classification of one channel snapshot."""
    # Bands apply to the exact quotient; only the reported ratio is rounded
    raw = 0.0
    if snapshot.capacity and snapshot.capacity > 0:
        raw = snapshot.local_balance / snapshot.capacity
    ratio = imbalance_ratio(snapshot.local_balance, snapshot.capacity)
    health = classify(raw)
    return LiquidityHealthRecord(
        channel_id=snapshot.channel_id,
        peer_id=snapshot.peer_id,
        capacity=snapshot.capacity,
        local_balance=snapshot.local_balance,
        remote_balance=snapshot.remote_balance,
        imbalance_ratio=ratio,
        health_classification=health,
        velocity_24h_sats=int(velocity_24h),
        recommended_action=recommend_action(health, velocity_24h, snapshot.is_active),
        is_active=snapshot.is_active,
    )


class LiquidityHealthClassifier:
    """Joins live channel snapshots with 24h forward flow from the store."""

    def __init__(self, plugin, database, node):
        self.plugin = plugin
        self.database = database
        self.node = node

    def velocities(self, now: Optional[int] = None) -> Dict[str, int]:
        since = (now or int(time.time())) - VELOCITY_WINDOW_SECONDS
        flows = self.database.get_forward_flows(since)
        return {cid: flow['incoming'] - flow['outgoing'] for cid, flow in flows.items()}

    def compute(self, channels: Optional[List[ChannelSnapshot]] = None) -> List[LiquidityHealthRecord]:
        """Health record for every channel (fresh from the node unless given)."""
        if channels is None:
            channels = self.node.list_channels()
        velocities = self.velocities()
        records = [evaluate_channel(ch, velocities.get(ch.channel_id, 0)) for ch in channels]
        self.plugin.log(f"Liquidity health computed for {len(records)} channels", level='debug')
        return records

    def summarize(self, records: List[LiquidityHealthRecord]) -> Dict[str, int]:
        counts = {health.value: 0 for health in HealthClass}
        for record in records:
            if record.is_active:
                counts[record.health_classification.value] += 1
        return counts
