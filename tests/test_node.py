"""
Tests for the node gateway over a mocked lightningd RPC.

Tests:
- Channel snapshot parsing (pending/closed filtering, reserves, activity)
- On-chain balance and forward history normalization
- RpcError wrapping and waitsendpay polling
- Circular route construction
"""

from unittest.mock import patch

import pytest
from pyln.client import RpcError

from treasury_ops.errors import ExternalCallFailure
from treasury_ops.node import NodeGateway, WAITSENDPAY_POLL_SECONDS


OWN_ID = "02" + "a" * 64
PEER_OUT = "03" + "b" * 64
PEER_IN = "03" + "c" * 64


@pytest.fixture
def gateway(mock_plugin, mock_rpc):
    mock_plugin.rpc = mock_rpc
    return NodeGateway(mock_plugin)


def peer_channel(scid, peer_id, state="CHANNELD_NORMAL", total=1_000_000_000, to_us=400_000_000,
                 connected=True, opener="local", funding_txid=None, **extra):
    channel = {
        "peer_id": peer_id,
        "peer_connected": connected,
        "state": state,
        "short_channel_id": scid,
        "total_msat": total,
        "to_us_msat": to_us,
        "our_reserve_msat": 10_000_000,
        "their_reserve_msat": 10_000_000,
        "opener": opener,
        "funding_txid": funding_txid,
    }
    channel.update(extra)
    return channel


class TestSnapshots:
    """Test listpeerchannels parsing."""

    def test_open_channel_parsed(self, gateway, mock_rpc):
        mock_rpc.listpeerchannels.return_value = {"channels": [
            peer_channel("100x1x0", PEER_OUT, funding_txid="f" * 64),
        ]}

        ch = gateway.list_channels()[0]

        assert ch.channel_id == "100x1x0"
        assert ch.capacity == 1_000_000
        assert ch.local_balance == 400_000
        assert ch.remote_balance == 600_000
        assert ch.local_reserve == 10_000
        assert ch.local_available == 390_000
        assert ch.local_ratio_ppm == 400_000
        assert ch.is_active is True
        assert ch.funding_txid == "f" * 64

    def test_pending_and_closed_excluded(self, gateway, mock_rpc):
        mock_rpc.listpeerchannels.return_value = {"channels": [
            peer_channel("100x1x0", PEER_OUT),
            peer_channel(None, PEER_IN, state="CHANNELD_AWAITING_LOCKIN", funding_txid="e" * 64),
            peer_channel("90x1x0", PEER_IN, state="ONCHAIN"),
        ]}

        assert [c.channel_id for c in gateway.list_channels()] == ["100x1x0"]
        pending = gateway.list_pending_opens()
        assert len(pending) == 1
        assert pending[0].peer_id == PEER_IN
        assert pending[0].capacity == 1_000_000
        assert pending[0].funding_txid == "e" * 64

    def test_remote_opened_pending_not_ours(self, gateway, mock_rpc):
        mock_rpc.listpeerchannels.return_value = {"channels": [
            peer_channel(None, PEER_IN, state="CHANNELD_AWAITING_LOCKIN", opener="remote"),
        ]}
        assert gateway.list_pending_opens() == []

    def test_disconnected_peer_inactive(self, gateway, mock_rpc):
        mock_rpc.listpeerchannels.return_value = {"channels": [
            peer_channel("100x1x0", PEER_OUT, connected=False),
        ]}
        assert gateway.list_channels()[0].is_active is False

    def test_msat_strings_accepted(self, gateway, mock_rpc):
        mock_rpc.listpeerchannels.return_value = {"channels": [
            peer_channel("100x1x0", PEER_OUT, total="2000000000msat", to_us="500000000msat"),
        ]}
        ch = gateway.list_channels()[0]
        assert ch.capacity == 2_000_000
        assert ch.local_balance == 500_000


class TestReads:
    """Test wallet and forward reads."""

    def test_confirmed_onchain_only(self, gateway, mock_rpc):
        mock_rpc.listfunds.return_value = {"outputs": [
            {"amount_msat": 100_000_000, "status": "confirmed"},
            {"amount_msat": 50_000_000, "status": "unconfirmed"},
            {"amount_msat": 70_000_000, "status": "confirmed", "reserved": True},
        ]}
        assert gateway.confirmed_onchain_sats() == 100_000

    def test_settled_forwards_since(self, gateway, mock_rpc):
        mock_rpc.listforwards.return_value = {"forwards": [
            {"in_channel": "1x1x0", "out_channel": "2x1x0", "in_msat": 1_001_000,
             "out_msat": 1_000_000, "fee_msat": 1_000, "received_time": 1_700_000_000.5},
            {"in_channel": "1x1x0", "out_channel": "2x1x0", "in_msat": 2_002_000,
             "out_msat": 2_000_000, "fee_msat": 2_000, "received_time": 1_600_000_000.0},
        ]}

        forwards = gateway.list_settled_forwards(since_timestamp=1_650_000_000)

        mock_rpc.listforwards.assert_called_once_with(status="settled")
        assert len(forwards) == 1
        assert forwards[0]["timestamp"] == 1_700_000_000
        assert forwards[0]["fee_msat"] == 1_000

    def test_own_pubkey_cached(self, gateway, mock_rpc):
        assert gateway.own_pubkey() == OWN_ID
        assert gateway.own_pubkey() == OWN_ID
        assert mock_rpc.getinfo.call_count == 1


class TestActions:
    """Test action calls and error wrapping."""

    def test_rpc_error_wrapped(self, gateway, mock_rpc):
        mock_rpc.fundchannel.side_effect = RpcError(
            "fundchannel", {"id": PEER_OUT}, {"code": 301, "message": "Peer not connected"}
        )

        with pytest.raises(ExternalCallFailure) as exc_info:
            gateway.open_channel(PEER_OUT, 500_000)

        assert exc_info.value.method == "fundchannel"
        assert exc_info.value.message == "fundchannel failed: Peer not connected"

    def test_open_channel(self, gateway, mock_rpc):
        mock_rpc.fundchannel.return_value = {"txid": "f" * 64, "channel_id": "c" * 64}
        result = gateway.open_channel(PEER_OUT, 500_000)
        mock_rpc.fundchannel.assert_called_once_with(id=PEER_OUT, amount=500_000, announce=True)
        assert result["funding_txid"] == "f" * 64

    def test_force_close_sets_unilateral_timeout(self, gateway, mock_rpc):
        mock_rpc.close.return_value = {"type": "unilateral", "txid": "d" * 64}
        result = gateway.close_channel("100x1x0", force=True)
        mock_rpc.close.assert_called_once_with(id="100x1x0", unilateraltimeout=1)
        assert result["closing_txid"] == "d" * 64

    def test_mutual_close_txids_list(self, gateway, mock_rpc):
        mock_rpc.close.return_value = {"type": "mutual", "txids": ["d" * 64]}
        result = gateway.close_channel("100x1x0")
        mock_rpc.close.assert_called_once_with(id="100x1x0")
        assert result["closing_txid"] == "d" * 64

    def test_pay_route_reports_fee(self, gateway, mock_rpc):
        mock_rpc.waitsendpay.return_value = {
            "status": "complete",
            "amount_msat": 50_000_000,
            "amount_sent_msat": 50_006_000,
            "payment_preimage": "e" * 64,
        }
        invoice = {"payment_hash": "ab" * 32, "payment_secret": "cd" * 32}

        result = gateway.pay_route([{"id": OWN_ID}], invoice, 50_000_000, timeout=30)

        mock_rpc.sendpay.assert_called_once_with(
            route=[{"id": OWN_ID}], payment_hash="ab" * 32, amount_msat=50_000_000,
            payment_secret="cd" * 32,
        )
        mock_rpc.waitsendpay.assert_called_once_with(
            payment_hash="ab" * 32, timeout=WAITSENDPAY_POLL_SECONDS)
        assert result["fee_msat"] == 6_000

    def test_pay_route_polls_while_pending(self, gateway, mock_rpc):
        mock_rpc.waitsendpay.side_effect = [
            RpcError("waitsendpay", {}, {"code": 200, "message": "Timed out while waiting"}),
            {"status": "complete", "amount_msat": 50_000_000, "amount_sent_msat": 50_001_000},
        ]
        invoice = {"payment_hash": "ab" * 32}

        result = gateway.pay_route([{"id": OWN_ID}], invoice, 50_000_000, timeout=30)

        assert mock_rpc.waitsendpay.call_count == 2
        for call in mock_rpc.waitsendpay.call_args_list:
            assert call.kwargs["timeout"] <= WAITSENDPAY_POLL_SECONDS
        assert result["fee_msat"] == 1_000

    def test_pay_route_gives_up_at_deadline(self, gateway, mock_rpc):
        mock_rpc.waitsendpay.side_effect = RpcError(
            "waitsendpay", {}, {"code": 200, "message": "Timed out while waiting"}
        )

        with patch("treasury_ops.node.time") as mock_time:
            mock_time.monotonic.side_effect = [0, 0, 2]
            with pytest.raises(ExternalCallFailure) as exc_info:
                gateway.pay_route([{"id": OWN_ID}], {"payment_hash": "ab" * 32}, 50_000_000, timeout=4)

        assert mock_rpc.waitsendpay.call_count == 2
        assert exc_info.value.method == "waitsendpay"

    def test_pay_route_failure_not_retried(self, gateway, mock_rpc):
        mock_rpc.waitsendpay.side_effect = RpcError(
            "waitsendpay", {}, {"code": 204, "message": "failed: WIRE_TEMPORARY_CHANNEL_FAILURE"}
        )

        with pytest.raises(ExternalCallFailure):
            gateway.pay_route([{"id": OWN_ID}], {"payment_hash": "ab" * 32}, 50_000_000)

        mock_rpc.waitsendpay.assert_called_once()

    def test_self_invoice(self, gateway, mock_rpc):
        mock_rpc.invoice.return_value = {"bolt11": "lnbcrt...", "payment_hash": "ab" * 32,
                                         "payment_secret": "cd" * 32}
        invoice = gateway.create_self_invoice(50_000, "rebalance")
        kwargs = mock_rpc.invoice.call_args.kwargs
        assert kwargs["amount_msat"] == 50_000_000
        assert kwargs["label"].startswith("treasury-rebalance-")
        assert invoice["payment_hash"] == "ab" * 32


class TestCircularRoute:
    """Test forced route construction."""

    def test_same_peer_route(self, gateway, mock_rpc, make_channel):
        mock_rpc.listchannels.return_value = {"channels": [
            {"source": PEER_OUT, "destination": OWN_ID, "base_fee_millisatoshi": 1000,
             "fee_per_millionth": 100, "delay": 6},
        ]}
        out_ch = make_channel("1x1x0", PEER_OUT, local=800_000)
        in_ch = make_channel("2x1x0", PEER_OUT, local=100_000)

        route = gateway.build_circular_route(out_ch, in_ch, 50_000)

        assert len(route["route"]) == 2
        first, last = route["route"]
        assert last["id"] == OWN_ID
        assert last["amount_msat"] == 50_000_000
        assert last["delay"] == 18
        assert first["channel"] == "1x1x0"
        assert first["amount_msat"] == 50_006_000
        assert first["delay"] == 24
        assert route["fee_msat"] == 6_000
        mock_rpc.getroute.assert_not_called()

    def test_route_through_middle(self, gateway, mock_rpc, make_channel):
        policies = {
            "2x1x0": {"source": PEER_IN, "base_fee_millisatoshi": 0, "fee_per_millionth": 0, "delay": 6},
            "5x1x0": {"source": PEER_OUT, "base_fee_millisatoshi": 1000, "fee_per_millionth": 1000, "delay": 10},
        }
        mock_rpc.listchannels.side_effect = lambda short_channel_id: {
            "channels": [policies[short_channel_id]]
        }
        mock_rpc.getroute.return_value = {"route": [
            {"id": PEER_IN, "channel": "5x1x0", "direction": 1, "amount_msat": 50_000_000,
             "delay": 24, "style": "tlv"},
        ]}
        out_ch = make_channel("1x1x0", PEER_OUT, local=800_000)
        in_ch = make_channel("2x1x0", PEER_IN, local=100_000)

        route = gateway.build_circular_route(out_ch, in_ch, 50_000)

        assert [hop["channel"] for hop in route["route"]] == ["1x1x0", "5x1x0", "2x1x0"]
        assert route["route"][0]["amount_msat"] == 50_051_000
        assert route["route"][0]["delay"] == 34
        assert route["fee_msat"] == 51_000
        kwargs = mock_rpc.getroute.call_args.kwargs
        assert kwargs["fromid"] == PEER_OUT
        assert kwargs["id"] == PEER_IN
        assert kwargs["exclude"] == [OWN_ID]

    def test_no_route(self, gateway, mock_rpc, make_channel):
        mock_rpc.listchannels.return_value = {"channels": [
            {"source": PEER_IN, "base_fee_millisatoshi": 0, "fee_per_millionth": 0, "delay": 6},
        ]}
        mock_rpc.getroute.return_value = {"route": []}
        with pytest.raises(ExternalCallFailure):
            gateway.build_circular_route(make_channel("1x1x0", PEER_OUT),
                                         make_channel("2x1x0", PEER_IN), 50_000)
