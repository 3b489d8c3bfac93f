"""
Circular Rebalancer module for cl-treasury-ops

Shifts balance between two of our channels by paying ourselves: an
invoice we issue is paid out through the outgoing channel and comes back
in through the incoming channel.

Viability gate (first failure wins, each naming the deficient side):
1. outgoing and incoming differ
2. both channels are active
3. incoming remote ratio >= configured minimum
4. outgoing local ratio >= configured minimum
5. incoming.remote_available >= tokens + safety buffer
6. outgoing.local_available >= tokens + max_fee + safety buffer

Execution is ledgered: the `requested` record is written first and any
failure after that marks it `failed` before re-raising.
"""

from dataclasses import dataclass
from typing import Dict, List, Optional, Any

from .errors import ViabilityError
from .ledger import ActionKind
from .node import ChannelSnapshot


@dataclass
class PairSelection:
    outgoing: ChannelSnapshot
    incoming: ChannelSnapshot
    tokens: int
    max_fee_sats: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "outgoing_channel": self.outgoing.channel_id,
            "incoming_channel": self.incoming.channel_id,
            "outgoing_peer": self.outgoing.peer_id,
            "incoming_peer": self.incoming.peer_id,
            "outgoing_local_ratio_ppm": self.outgoing.local_ratio_ppm,
            "incoming_remote_ratio_ppm": self.incoming.remote_ratio_ppm,
            "tokens": self.tokens,
            "max_fee_sats": self.max_fee_sats,
        }


def check_viability(outgoing: ChannelSnapshot, incoming: ChannelSnapshot,
                    tokens: int, max_fee_sats: int, min_incoming_remote_ppm: int,
                    min_outgoing_local_ppm: int, safety_buffer: int) -> None:
    """Raise ViabilityError unless the pair can carry `tokens`."""
    if outgoing.channel_id == incoming.channel_id:
        raise ViabilityError("Outgoing and incoming channels must be different", side="pair")
    if not outgoing.is_active:
        raise ViabilityError(f"Outgoing channel {outgoing.channel_id} is not active", side="outgoing")
    if not incoming.is_active:
        raise ViabilityError(f"Incoming channel {incoming.channel_id} is not active", side="incoming")

    if incoming.remote_ratio_ppm < min_incoming_remote_ppm:
        raise ViabilityError(
            f"Incoming channel {incoming.channel_id} remote ratio {incoming.remote_ratio_ppm} ppm "
            f"is below minimum {min_incoming_remote_ppm} ppm.",
            side="incoming",
        )
    if outgoing.local_ratio_ppm < min_outgoing_local_ppm:
        raise ViabilityError(
            f"Outgoing channel {outgoing.channel_id} local ratio {outgoing.local_ratio_ppm} ppm "
            f"is below minimum {min_outgoing_local_ppm} ppm.",
            side="outgoing",
        )

    needed_in = tokens + safety_buffer
    if incoming.remote_available < needed_in:
        raise ViabilityError(
            f"Incoming channel {incoming.channel_id} has {incoming.remote_available} sats remote "
            f"available, needs {needed_in}.",
            side="incoming",
            shortfall=needed_in - incoming.remote_available,
        )

    needed_out = tokens + max_fee_sats + safety_buffer
    if outgoing.local_available < needed_out:
        raise ViabilityError(
            f"Outgoing channel {outgoing.channel_id} has {outgoing.local_available} sats local "
            f"available, needs {needed_out}.",
            side="outgoing",
            shortfall=needed_out - outgoing.local_available,
        )


class CircularRebalancer:
    """Planner (pair selection, viability) and executor for self-payments."""

    def __init__(self, plugin, config, database, node, ledger, loss_cap):
        self.plugin = plugin
        self.config = config
        self.database = database
        self.node = node
        self.ledger = ledger
        self.loss_cap = loss_cap

    def check_pair(self, outgoing: ChannelSnapshot, incoming: ChannelSnapshot,
                   tokens: int, max_fee_sats: int) -> None:
        cfg = self.config.snapshot()
        check_viability(
            outgoing, incoming, tokens, max_fee_sats,
            min_incoming_remote_ppm=cfg.rebalance_min_incoming_remote_ppm,
            min_outgoing_local_ppm=cfg.rebalance_min_outgoing_local_ppm,
            safety_buffer=cfg.rebalance_safety_buffer_sats,
        )

    def select_pair(self, channels: List[ChannelSnapshot], tokens: int,
                    max_fee_sats: int) -> PairSelection:
        """
        Auto-pair: best outgoing by local ratio x best incoming by remote ratio.

        Pairs are tried in rank order; same-channel and same-peer pairs are
        skipped. Raises ViabilityError when no combination passes.
        """
        buffer = self.config.snapshot().rebalance_safety_buffer_sats
        outgoing_candidates = sorted(
            (ch for ch in channels
             if ch.is_active and ch.local_available >= tokens + max_fee_sats + buffer),
            key=lambda ch: ch.local_ratio_ppm, reverse=True,
        )
        incoming_candidates = sorted(
            (ch for ch in channels
             if ch.is_active and ch.remote_available >= tokens + buffer),
            key=lambda ch: ch.remote_ratio_ppm, reverse=True,
        )

        for outgoing in outgoing_candidates:
            for incoming in incoming_candidates:
                if outgoing.channel_id == incoming.channel_id:
                    continue
                if outgoing.peer_id == incoming.peer_id:
                    continue
                try:
                    self.check_pair(outgoing, incoming, tokens, max_fee_sats)
                except ViabilityError:
                    continue
                return PairSelection(outgoing, incoming, tokens, max_fee_sats)

        raise ViabilityError(
            "No viable channel pair found for auto rebalance "
            "(check liquidity thresholds / balances)",
            side="pair",
        )

    @staticmethod
    def _find(channels: List[ChannelSnapshot], channel_id: str, side: str) -> ChannelSnapshot:
        for ch in channels:
            if ch.channel_id == channel_id:
                return ch
        raise ViabilityError(f"Channel {channel_id} not found", side=side)

    def execute(self, selection: PairSelection, rebalance_type: str = "circular") -> Dict[str, Any]:
        """
        Pay ourselves through the selected pair.

        Raises:
            ViabilityError: the route fee exceeds max_fee_sats
            ExternalCallFailure: a node call failed
        In both cases the execution record is marked failed first.
        """
        cfg = self.config.snapshot()
        out_ch, in_ch = selection.outgoing, selection.incoming
        tokens, max_fee = selection.tokens, selection.max_fee_sats

        record = self.ledger.create(
            ActionKind.REBALANCE,
            type=rebalance_type,
            tokens=tokens,
            outgoing_channel=out_ch.channel_id,
            incoming_channel=in_ch.channel_id,
            max_fee_sats=max_fee,
        )
        try:
            invoice = self.node.create_self_invoice(
                tokens, f"treasury circular rebalance {out_ch.channel_id} -> {in_ch.channel_id}"
            )
            self.ledger.mark_submitted(ActionKind.REBALANCE, record.id,
                                       reference=invoice["payment_hash"])

            route = self.node.build_circular_route(
                out_ch, in_ch, tokens,
                max_hops=cfg.route_max_hops, final_cltv=cfg.final_cltv_delta,
            )
            if route["fee_msat"] > max_fee * 1000:
                raise ViabilityError(
                    f"Route fee {route['fee_msat']} msat exceeds max fee {max_fee} sats",
                    side="pair",
                )

            payment = self.node.pay_route(route["route"], invoice, route["amount_msat"],
                                          timeout=cfg.pay_timeout_seconds)
            # Round up so the loss cap never under-counts spend
            fee_sats = -(-payment["fee_msat"] // 1000)

            self.database.record_rebalance_cost(
                "circular", tokens, fee_sats, related_channel=out_ch.channel_id
            )
            record = self.ledger.mark_succeeded(ActionKind.REBALANCE, record.id,
                                                reference=payment["payment_hash"],
                                                fee_paid_sats=fee_sats)
        except Exception as e:
            self.ledger.mark_failed(ActionKind.REBALANCE, record.id, str(e))
            self.plugin.log(
                f"Circular rebalance {out_ch.channel_id} -> {in_ch.channel_id} failed: {e}",
                level='warn'
            )
            raise

        self.plugin.log(
            f"Circular rebalance of {tokens} sats {out_ch.channel_id} -> {in_ch.channel_id} "
            f"succeeded (fee {fee_sats} sats)"
        )
        return {"execution": record.to_dict(), "selection": selection.to_dict(),
                "fee_paid_sats": fee_sats}

    def manual_rebalance(self, tokens: int, max_fee_sats: int,
                         outgoing_channel: Optional[str] = None,
                         incoming_channel: Optional[str] = None,
                         dry_run: bool = False) -> Dict[str, Any]:
        """
        Operator-triggered rebalance, explicit or auto-paired.

        With only one channel given, the other side is auto-selected.
        The loss cap is consulted unless dry_run is set.
        """
        tokens = int(tokens)
        max_fee_sats = int(max_fee_sats)
        if tokens <= 0:
            raise ViabilityError("tokens must be positive")
        if max_fee_sats < 0:
            raise ViabilityError("max_fee_sats must be non-negative")

        channels = self.node.list_channels()
        if outgoing_channel and incoming_channel:
            outgoing = self._find(channels, outgoing_channel, "outgoing")
            incoming = self._find(channels, incoming_channel, "incoming")
            self.check_pair(outgoing, incoming, tokens, max_fee_sats)
            selection = PairSelection(outgoing, incoming, tokens, max_fee_sats)
        elif outgoing_channel or incoming_channel:
            pinned_id = outgoing_channel or incoming_channel
            side = "outgoing" if outgoing_channel else "incoming"
            pinned = self._find(channels, pinned_id, side)
            others = [ch for ch in channels if ch.channel_id != pinned_id]
            selection = self._select_with_pinned(pinned, side, others, tokens, max_fee_sats)
        else:
            selection = self.select_pair(channels, tokens, max_fee_sats)

        if dry_run:
            self.plugin.log(
                f"[DRY RUN] Would rebalance {tokens} sats "
                f"{selection.outgoing.channel_id} -> {selection.incoming.channel_id}"
            )
            return {"dry_run": True, "viable": True, "selection": selection.to_dict()}

        self.loss_cap.assert_not_exceeded(max_fee_sats)
        return self.execute(selection)

    def _select_with_pinned(self, pinned: ChannelSnapshot, side: str,
                            others: List[ChannelSnapshot], tokens: int,
                            max_fee_sats: int) -> PairSelection:
        if side == "outgoing":
            ranked = sorted(others, key=lambda ch: ch.remote_ratio_ppm, reverse=True)
        else:
            ranked = sorted(others, key=lambda ch: ch.local_ratio_ppm, reverse=True)

        for other in ranked:
            if other.peer_id == pinned.peer_id:
                continue
            outgoing, incoming = (pinned, other) if side == "outgoing" else (other, pinned)
            try:
                self.check_pair(outgoing, incoming, tokens, max_fee_sats)
            except ViabilityError:
                continue
            return PairSelection(outgoing, incoming, tokens, max_fee_sats)

        raise ViabilityError(
            f"No viable {'incoming' if side == 'outgoing' else 'outgoing'} channel "
            f"to pair with {pinned.channel_id}",
            side="pair",
        )
