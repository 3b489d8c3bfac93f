"""
Rotation module for cl-treasury-ops

Flags unprofitable or idle channels as closure candidates and executes
the close behind the daily loss cap.

Additive score per active channel:
    roi_ppm < 0          +100
    roi_ppm < -500       +50
    no forwarded volume  +50
    payback > 730 days   +50   (else payback > 365 days  +30)

Channels scoring 0 are not candidates. The designated hub peer is never
a candidate; an unset hub id excludes nothing.
"""

from dataclasses import dataclass, asdict
from typing import Dict, List, Optional, Any

from .channel_metrics import ChannelMetrics
from .errors import TreasuryError
from .ledger import ActionKind


@dataclass
class RotationCandidate:
    channel_id: str
    peer_id: str
    capacity: int
    local_balance: int
    roi_ppm: int
    net_fees: int
    rebalance_costs: int
    forwarded_volume: int
    payback_days: Optional[float]
    rotation_score: int
    reason: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def rotation_score(roi_ppm: int, forwarded_volume: int, payback_days: Optional[float]) -> int:
    score = 0
    if roi_ppm < 0:
        score += 100
    if roi_ppm < -500:
        score += 50
    if forwarded_volume == 0:
        score += 50
    if payback_days is not None:
        if payback_days > 730:
            score += 50
        elif payback_days > 365:
            score += 30
    return score


def rotation_reason(roi_ppm: int, forwarded_volume: int, payback_days: Optional[float]) -> str:
    parts = []
    if roi_ppm < 0:
        parts.append(f"negative roi ({roi_ppm} ppm)")
    if forwarded_volume == 0:
        parts.append("no forwarding volume")
    if payback_days is not None and payback_days > 365:
        parts.append(f"payback {payback_days}d")
    return "; ".join(parts) if parts else "low roi"


def score_candidates(metrics: List[ChannelMetrics], hub_peer_id: str = '') -> List[RotationCandidate]:
    candidates = []
    for m in metrics:
        if not m.is_active:
            continue
        if hub_peer_id and m.peer_id == hub_peer_id:
            continue
        score = rotation_score(m.roi_ppm, m.forwarded_volume, m.payback_days)
        if score <= 0:
            continue
        candidates.append(RotationCandidate(
            channel_id=m.channel_id,
            peer_id=m.peer_id,
            capacity=m.capacity,
            local_balance=m.local_balance,
            roi_ppm=m.roi_ppm,
            net_fees=m.net_fees,
            rebalance_costs=m.rebalance_costs,
            forwarded_volume=m.forwarded_volume,
            payback_days=m.payback_days,
            rotation_score=score,
            reason=rotation_reason(m.roi_ppm, m.forwarded_volume, m.payback_days),
        ))
    candidates.sort(key=lambda c: c.rotation_score, reverse=True)
    return candidates


class RotationManager:

    def __init__(self, plugin, config, node, ledger, metrics, loss_cap):
        self.plugin = plugin
        self.config = config
        self.node = node
        self.ledger = ledger
        self.metrics = metrics
        self.loss_cap = loss_cap

    def get_candidates(self, metrics: Optional[List[ChannelMetrics]] = None) -> List[RotationCandidate]:
        if metrics is None:
            metrics = self.metrics.compute()
        return score_candidates(metrics, self.config.snapshot().hub_peer_id)

    def execute(self, channel_id: str, force_close: bool = False,
                dry_run: bool = False) -> Dict[str, Any]:
        """
        Close a rotation candidate.

        Raises:
            TreasuryError: the channel is not a current candidate
            LossCapExceeded: the close fee estimate would breach the cap
            ExternalCallFailure: the close call failed (record marked failed)
        """
        cfg = self.config.snapshot()
        candidate = next((c for c in self.get_candidates() if c.channel_id == channel_id), None)
        if candidate is None:
            raise TreasuryError(f"Channel {channel_id} is not a rotation candidate")

        if dry_run:
            self.plugin.log(
                f"[DRY RUN] Would close {channel_id} (score {candidate.rotation_score}: {candidate.reason})"
            )
            return {"dry_run": True, "candidate": candidate.to_dict()}

        self.loss_cap.assert_not_exceeded(cfg.rotation_close_fee_sats)

        record = self.ledger.create(
            ActionKind.ROTATION,
            channel_id=channel_id,
            peer_id=candidate.peer_id,
            capacity_sats=candidate.capacity,
            local_sats=candidate.local_balance,
            roi_ppm=candidate.roi_ppm,
            reason=candidate.reason,
            is_force_close=force_close,
        )
        try:
            result = self.node.close_channel(channel_id, force=force_close)
            record = self.ledger.mark_submitted(ActionKind.ROTATION, record.id,
                                                reference=result.get("closing_txid"))
        except Exception as e:
            self.ledger.mark_failed(ActionKind.ROTATION, record.id, str(e))
            self.plugin.log(f"Rotation close of {channel_id} failed: {e}", level='warn')
            raise

        self.plugin.log(
            f"Rotation close submitted for {channel_id} "
            f"(txid={record.reference}, force={force_close})"
        )
        return {"execution": record.to_dict(), "candidate": candidate.to_dict()}
