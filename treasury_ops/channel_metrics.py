"""
Channel & Peer Metrics module for cl-treasury-ops

Per-channel profitability from forwarding history and rebalance spend,
and per-peer roll-ups of those channels.

Definitions (fees and volume count a forward on both of its hops):
- fee_per_1k:            fees / volume * 1000                 (2 dp)
- roi_percent:           gross fees / local * 100             (2 dp)
- roi_ppm:               floor(net_fees * 1e6 / local)
- liquidity_efficiency:  fees / local                          (6 dp)
- payback_days:          local / fees_24h                      (1 dp, None if no recent fees)
- net_fees:              fees - rebalance_costs

Every zero denominator yields 0 (or None for payback) instead of raising.
"""

import time
from collections import defaultdict
from dataclasses import dataclass, asdict
from typing import Dict, List, Optional, Any

from .node import ChannelSnapshot
from .ppm import ratio_ppm, round_half_up


@dataclass
class ChannelMetrics:
    channel_id: str
    peer_id: str
    capacity: int
    local_balance: int
    is_active: bool
    forwarded_volume: int
    forwarded_fees: int
    forwarded_volume_24h: int
    forwarded_fees_24h: int
    rebalance_costs: int
    net_fees: int
    fee_per_1k: float
    roi_percent: float
    roi_ppm: int
    liquidity_efficiency: float
    payback_days: Optional[float]

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class PeerScore:
    peer_id: str
    channel_count: int
    active_count: int
    uptime_ratio: float
    total_capacity: int
    total_local: int
    forwarded_volume: int
    forwarded_fees: int
    rebalance_costs: int
    net_fees: int
    weighted_roi_ppm: int
    peer_score: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def compute_channel_metrics(channel: ChannelSnapshot, volume: int, fees: int,
                            volume_24h: int, fees_24h: int,
                            rebalance_costs: int) -> ChannelMetrics:
    local = channel.local_balance
    net_fees = fees - rebalance_costs

    fee_per_1k = round_half_up(fees / volume * 1000, 2) if volume > 0 else 0.0
    roi_percent = round_half_up(fees / local * 100, 2) if local > 0 else 0.0
    efficiency = round_half_up(fees / local, 6) if local > 0 else 0.0
    if fees_24h > 0 and local > 0:
        payback_days = round_half_up(local / fees_24h, 1)
    else:
        payback_days = None

    return ChannelMetrics(
        channel_id=channel.channel_id,
        peer_id=channel.peer_id,
        capacity=channel.capacity,
        local_balance=local,
        is_active=channel.is_active,
        forwarded_volume=volume,
        forwarded_fees=fees,
        forwarded_volume_24h=volume_24h,
        forwarded_fees_24h=fees_24h,
        rebalance_costs=rebalance_costs,
        net_fees=net_fees,
        fee_per_1k=fee_per_1k,
        roi_percent=roi_percent,
        roi_ppm=ratio_ppm(net_fees, local),
        liquidity_efficiency=efficiency,
        payback_days=payback_days,
    )


def score_peers(metrics: List[ChannelMetrics]) -> List[PeerScore]:
    """Roll channel metrics up per peer, best score first."""
    by_peer: Dict[str, List[ChannelMetrics]] = defaultdict(list)
    for m in metrics:
        by_peer[m.peer_id].append(m)

    scores = []
    for peer_id, channels in by_peer.items():
        channel_count = len(channels)
        active_count = sum(1 for m in channels if m.is_active)
        uptime = active_count / channel_count if channel_count else 0.0
        total_local = sum(m.local_balance for m in channels)

        if total_local > 0:
            weighted = round_half_up(
                sum(m.roi_ppm * m.local_balance for m in channels) / total_local
            )
        else:
            weighted = 0

        scores.append(PeerScore(
            peer_id=peer_id,
            channel_count=channel_count,
            active_count=active_count,
            uptime_ratio=round_half_up(uptime, 4),
            total_capacity=sum(m.capacity for m in channels),
            total_local=total_local,
            forwarded_volume=sum(m.forwarded_volume for m in channels),
            forwarded_fees=sum(m.forwarded_fees for m in channels),
            rebalance_costs=sum(m.rebalance_costs for m in channels),
            net_fees=sum(m.net_fees for m in channels),
            weighted_roi_ppm=weighted,
            peer_score=round_half_up(weighted * uptime),
        ))

    scores.sort(key=lambda s: s.peer_score, reverse=True)
    return scores


class ChannelMetricsAggregator:
    """Builds ChannelMetrics for live channels from the forward and cost tables."""

    def __init__(self, plugin, database, node):
        self.plugin = plugin
        self.database = database
        self.node = node

    def compute(self, channels: Optional[List[ChannelSnapshot]] = None,
                now: Optional[int] = None) -> List[ChannelMetrics]:
        if channels is None:
            channels = self.node.list_channels()
        now = now or int(time.time())

        all_time = self.database.get_forward_totals(0)
        recent = self.database.get_forward_totals(now - 86400)
        costs = self.database.get_rebalance_costs_by_channel()

        metrics = []
        for ch in channels:
            totals = all_time.get(ch.channel_id, {})
            totals_24h = recent.get(ch.channel_id, {})
            metrics.append(compute_channel_metrics(
                ch,
                volume=totals.get('volume', 0),
                fees=totals.get('fees', 0),
                volume_24h=totals_24h.get('volume', 0),
                fees_24h=totals_24h.get('fees', 0),
                rebalance_costs=costs.get(ch.channel_id, 0),
            ))
        return metrics

    def peer_scores(self, metrics: Optional[List[ChannelMetrics]] = None) -> List[PeerScore]:
        if metrics is None:
            metrics = self.compute()
        return score_peers(metrics)
