"""
Node gateway for cl-treasury-ops

Thin adapter between the decision engine and lightningd's JSON-RPC
(via pyln-client). Reads are returned as plain dataclasses / dicts;
every action converts RpcError into ExternalCallFailure so callers can
record a failed execution with the node's message.

Channel state is fetched fresh on each call. Nothing here caches balances.
"""

import time
import uuid
from dataclasses import dataclass, asdict
from typing import Dict, List, Optional, Any

from pyln.client import RpcError

from .errors import ExternalCallFailure
from .ppm import ratio_ppm, msat_to_sat, parse_msat


# Channel states in which capital is committed but the channel is not usable yet
PENDING_OPEN_STATES = frozenset({
    "OPENINGD",
    "CHANNELD_AWAITING_LOCKIN",
    "DUALOPEND_OPEN_INIT",
    "DUALOPEND_OPEN_COMMITTED",
    "DUALOPEND_OPEN_COMMIT_READY",
    "DUALOPEND_AWAITING_LOCKIN",
})

# Channel states after which the channel no longer holds deployed capital
CLOSED_STATES = frozenset({
    "CLOSINGD_COMPLETE",
    "AWAITING_UNILATERAL",
    "FUNDING_SPEND_SEEN",
    "ONCHAIN",
    "CLOSED",
})

NORMAL_STATE = "CHANNELD_NORMAL"

# waitsendpay is polled in short slices so the shared RPC lock is released
# between polls; code 200 means the slice ended with the payment still pending
WAITSENDPAY_POLL_SECONDS = 2
WAITSENDPAY_PENDING_CODE = 200


@dataclass
class ChannelSnapshot:
    """
    Point-in-time view of one channel, all amounts in sats.

    Derived ratios are integer ppm of capacity.
    """
    channel_id: str
    peer_id: str
    capacity: int
    local_balance: int
    remote_balance: int
    local_reserve: int = 0
    remote_reserve: int = 0
    is_active: bool = True
    funding_txid: Optional[str] = None

    @property
    def local_available(self) -> int:
        return max(0, self.local_balance - self.local_reserve)

    @property
    def remote_available(self) -> int:
        return max(0, self.remote_balance - self.remote_reserve)

    @property
    def local_ratio_ppm(self) -> int:
        return ratio_ppm(self.local_balance, self.capacity)

    @property
    def remote_ratio_ppm(self) -> int:
        return ratio_ppm(self.remote_balance, self.capacity)

    def to_dict(self) -> Dict[str, Any]:
        result = asdict(self)
        result.update({
            "local_available": self.local_available,
            "remote_available": self.remote_available,
            "local_ratio_ppm": self.local_ratio_ppm,
            "remote_ratio_ppm": self.remote_ratio_ppm,
        })
        return result


@dataclass
class PendingOpen:
    """A channel the node reports as opening (capital committed, not confirmed)."""
    peer_id: str
    capacity: int
    funding_txid: Optional[str] = None


def _channel_direction(source: str, destination: str) -> int:
    """BOLT 7 direction bit: 0 when the source node id sorts first."""
    return 0 if source < destination else 1


class NodeGateway:
    """Channel Snapshot Provider and action executor over plugin.rpc."""

    def __init__(self, plugin):
        self.plugin = plugin
        self._own_pubkey: Optional[str] = None

    def _call(self, method: str, **kwargs) -> Dict[str, Any]:
        try:
            return getattr(self.plugin.rpc, method)(**kwargs)
        except RpcError as e:
            raise self._failure(method, e) from e

    @staticmethod
    def _failure(method: str, e: RpcError) -> ExternalCallFailure:
        error = getattr(e, 'error', None)
        message = error.get('message', str(e)) if isinstance(error, dict) else str(e)
        return ExternalCallFailure(method, message)

    @staticmethod
    def _error_code(e: RpcError) -> Optional[int]:
        error = getattr(e, 'error', None)
        return error.get('code') if isinstance(error, dict) else None

    def _wait_for_payment(self, payment_hash: str, timeout: int) -> Dict[str, Any]:
        deadline = time.monotonic() + timeout
        while True:
            remaining = deadline - time.monotonic()
            poll = max(1, min(WAITSENDPAY_POLL_SECONDS, int(remaining)))
            try:
                return self.plugin.rpc.waitsendpay(payment_hash=payment_hash, timeout=poll)
            except RpcError as e:
                if self._error_code(e) != WAITSENDPAY_PENDING_CODE or remaining <= poll:
                    raise self._failure("waitsendpay", e) from e

    # =========================================================================
    # Reads
    # =========================================================================

    def own_pubkey(self) -> str:
        if self._own_pubkey is None:
            self._own_pubkey = self._call("getinfo")["id"]
        return self._own_pubkey

    def _peer_channels(self) -> List[Dict[str, Any]]:
        return self._call("listpeerchannels").get("channels", [])

    def list_channels(self) -> List[ChannelSnapshot]:
        """Open (not pending, not closed) channels with their balances."""
        snapshots = []
        for ch in self._peer_channels():
            state = ch.get("state", "")
            if state in PENDING_OPEN_STATES or state in CLOSED_STATES:
                continue
            channel_id = ch.get("short_channel_id") or ch.get("channel_id")
            if not channel_id:
                continue

            capacity = msat_to_sat(parse_msat(ch.get("total_msat")))
            local = msat_to_sat(parse_msat(ch.get("to_us_msat")))
            snapshots.append(ChannelSnapshot(
                channel_id=channel_id,
                peer_id=ch.get("peer_id", ""),
                capacity=capacity,
                local_balance=local,
                remote_balance=max(0, capacity - local),
                local_reserve=msat_to_sat(parse_msat(ch.get("our_reserve_msat"))),
                remote_reserve=msat_to_sat(parse_msat(ch.get("their_reserve_msat"))),
                is_active=state == NORMAL_STATE and bool(ch.get("peer_connected", False)),
                funding_txid=ch.get("funding_txid"),
            ))
        return snapshots

    def list_pending_opens(self) -> List[PendingOpen]:
        """Locally-funded channels that are still opening."""
        pending = []
        for ch in self._peer_channels():
            if ch.get("state") not in PENDING_OPEN_STATES:
                continue
            if ch.get("opener", "local") != "local":
                continue
            pending.append(PendingOpen(
                peer_id=ch.get("peer_id", ""),
                capacity=msat_to_sat(parse_msat(ch.get("total_msat"))),
                funding_txid=ch.get("funding_txid"),
            ))
        return pending

    def channel_states_by_txid(self) -> Dict[str, str]:
        """Map funding txid -> channel state, for ledger reconciliation."""
        return {
            ch["funding_txid"]: ch.get("state", "")
            for ch in self._peer_channels() if ch.get("funding_txid")
        }

    def channel_states_by_id(self) -> Dict[str, str]:
        states = {}
        for ch in self._peer_channels():
            for key in ("short_channel_id", "channel_id"):
                if ch.get(key):
                    states[ch[key]] = ch.get("state", "")
        return states

    def confirmed_onchain_sats(self) -> int:
        """Sum of confirmed, unreserved wallet outputs."""
        total_msat = 0
        for output in self._call("listfunds").get("outputs", []):
            if output.get("status") != "confirmed" or output.get("reserved", False):
                continue
            total_msat += parse_msat(output.get("amount_msat", 0))
        return msat_to_sat(total_msat)

    def list_settled_forwards(self, since_timestamp: int = 0) -> List[Dict[str, Any]]:
        """Settled forwards newer than since_timestamp, normalized to msat ints."""
        forwards = []
        for fwd in self._call("listforwards", status="settled").get("forwards", []):
            received_time = int(fwd.get("received_time", 0) or 0)
            if received_time <= since_timestamp:
                continue
            forwards.append({
                'in_channel': fwd.get("in_channel", ""),
                'out_channel': fwd.get("out_channel", ""),
                'in_msat': parse_msat(fwd.get("in_msat", 0)),
                'out_msat': parse_msat(fwd.get("out_msat", 0)),
                'fee_msat': parse_msat(fwd.get("fee_msat", 0)),
                'timestamp': received_time,
            })
        return forwards

    # =========================================================================
    # Actions
    # =========================================================================

    def create_self_invoice(self, amount_sats: int, description: str,
                            expiry: int = 3600) -> Dict[str, Any]:
        label = f"treasury-rebalance-{uuid.uuid4().hex}"
        result = self._call("invoice", amount_msat=amount_sats * 1000, label=label,
                            description=description, expiry=expiry)
        return {
            "label": label,
            "bolt11": result.get("bolt11"),
            "payment_hash": result["payment_hash"],
            "payment_secret": result.get("payment_secret"),
        }

    def _hop_policy(self, channel_id: str, source: str) -> Dict[str, int]:
        """Fee and CLTV policy the source node advertises for a channel."""
        for entry in self._call("listchannels", short_channel_id=channel_id).get("channels", []):
            if entry.get("source") == source:
                return {
                    "base_msat": parse_msat(entry.get("base_fee_millisatoshi", 0)),
                    "ppm": int(entry.get("fee_per_millionth", 0)),
                    "delay": int(entry.get("delay", 0)),
                }
        # Unannounced channels: the peer's policy is only in listpeerchannels
        for ch in self._call("listpeerchannels", id=source).get("channels", []):
            if ch.get("short_channel_id") != channel_id:
                continue
            remote = (ch.get("updates") or {}).get("remote")
            if remote:
                return {
                    "base_msat": parse_msat(remote.get("fee_base_msat", 0)),
                    "ppm": int(remote.get("fee_proportional_millionths", 0)),
                    "delay": int(remote.get("cltv_expiry_delta", 0)),
                }
        raise ExternalCallFailure("listchannels", f"no channel policy for {channel_id} from {source}")

    @staticmethod
    def _forward_fee(policy: Dict[str, int], amount_msat: int) -> int:
        return policy["base_msat"] + (amount_msat * policy["ppm"]) // 1_000_000

    def build_circular_route(self, outgoing: ChannelSnapshot, incoming: ChannelSnapshot,
                             amount_sats: int, max_hops: int = 6,
                             final_cltv: int = 18) -> Dict[str, Any]:
        """
        Build a route that leaves through `outgoing` and returns through `incoming`.

        The middle section comes from getroute between the two peers with our
        own node excluded; the first and last hops are our two channels. Amounts
        and delays are accumulated backwards from the final hop.

        Returns:
            Dict with the hop list, the msat amount sent and the fee in msat
        """
        own_id = self.own_pubkey()
        amount_msat = amount_sats * 1000

        # Last hop: incoming peer forwards to us over the incoming channel
        last_policy = self._hop_policy(incoming.channel_id, incoming.peer_id)
        final_hop = {
            "id": own_id,
            "channel": incoming.channel_id,
            "direction": _channel_direction(incoming.peer_id, own_id),
            "amount_msat": amount_msat,
            "delay": final_cltv,
            "style": "tlv",
        }
        into_incoming_peer = amount_msat + self._forward_fee(last_policy, amount_msat)
        delay_at_incoming_peer = final_cltv + last_policy["delay"]

        if outgoing.peer_id == incoming.peer_id:
            # Two channels to the same peer: out and straight back
            first_hop = {
                "id": outgoing.peer_id,
                "channel": outgoing.channel_id,
                "direction": _channel_direction(own_id, outgoing.peer_id),
                "amount_msat": into_incoming_peer,
                "delay": delay_at_incoming_peer,
                "style": "tlv",
            }
            return {
                "route": [first_hop, final_hop],
                "amount_msat": amount_msat,
                "sent_msat": into_incoming_peer,
                "fee_msat": into_incoming_peer - amount_msat,
            }

        middle = self._call(
            "getroute",
            id=incoming.peer_id,
            amount_msat=into_incoming_peer,
            riskfactor=10,
            cltv=delay_at_incoming_peer,
            fromid=outgoing.peer_id,
            exclude=[own_id],
            maxhops=max(1, max_hops - 2),
        ).get("route", [])
        if not middle:
            raise ExternalCallFailure(
                "getroute", f"no route from {outgoing.peer_id[:16]}... to {incoming.peer_id[:16]}..."
            )

        middle_hops = [{
            "id": hop["id"],
            "channel": hop["channel"],
            "direction": int(hop["direction"]),
            "amount_msat": parse_msat(hop["amount_msat"]),
            "delay": int(hop["delay"]),
            "style": hop.get("style", "tlv"),
        } for hop in middle]

        # First hop: we hand the outgoing peer enough to pay its own forwarding fee
        first_policy = self._hop_policy(middle_hops[0]["channel"], outgoing.peer_id)
        first_amount = middle_hops[0]["amount_msat"] + self._forward_fee(
            first_policy, middle_hops[0]["amount_msat"]
        )
        first_hop = {
            "id": outgoing.peer_id,
            "channel": outgoing.channel_id,
            "direction": _channel_direction(own_id, outgoing.peer_id),
            "amount_msat": first_amount,
            "delay": middle_hops[0]["delay"] + first_policy["delay"],
            "style": "tlv",
        }

        route = [first_hop] + middle_hops + [final_hop]
        return {
            "route": route,
            "amount_msat": amount_msat,
            "sent_msat": first_amount,
            "fee_msat": first_amount - amount_msat,
        }

    def pay_route(self, route: List[Dict[str, Any]], invoice: Dict[str, Any],
                  amount_msat: int, timeout: int = 60) -> Dict[str, Any]:
        """Send along a prebuilt route and wait for the outcome."""
        params = {
            "route": route,
            "payment_hash": invoice["payment_hash"],
            "amount_msat": amount_msat,
        }
        if invoice.get("payment_secret"):
            params["payment_secret"] = invoice["payment_secret"]
        self._call("sendpay", **params)
        result = self._wait_for_payment(invoice["payment_hash"], timeout)

        sent_msat = parse_msat(result.get("amount_sent_msat", 0))
        delivered_msat = parse_msat(result.get("amount_msat", amount_msat))
        return {
            "payment_hash": invoice["payment_hash"],
            "payment_preimage": result.get("payment_preimage"),
            "amount_sent_msat": sent_msat,
            "fee_msat": max(0, sent_msat - delivered_msat),
        }

    def open_channel(self, peer_id: str, capacity_sats: int) -> Dict[str, Any]:
        result = self._call("fundchannel", id=peer_id, amount=capacity_sats, announce=True)
        return {"funding_txid": result.get("txid"), "channel_id": result.get("channel_id")}

    def close_channel(self, channel_id: str, force: bool = False) -> Dict[str, Any]:
        params = {"id": channel_id}
        if force:
            # Fall back to a unilateral close after one second
            params["unilateraltimeout"] = 1
        result = self._call("close", **params)
        txid = result.get("txid")
        if not txid and result.get("txids"):
            txid = result["txids"][0]
        return {"closing_txid": txid, "type": result.get("type")}

    def set_channel_fee(self, channel_id: str, base_fee_msat: int, fee_rate_ppm: int) -> Dict[str, Any]:
        return self._call("setchannel", id=channel_id, feebase=base_fee_msat, feeppm=fee_rate_ppm)
