"""
Tests for the capital guardrails in front of channel opens.

Tests:
- Capacity bounds independent of policy
- Reserve and deploy-ratio scenario
- Pending capital from both the ledger and the node (deduplicated)
- Per-peer cooldown and daily limits
"""

import time
import pytest

from treasury_ops.capital_guardrails import CapitalGuardrails
from treasury_ops.errors import GuardrailViolation
from treasury_ops.ledger import ActionKind
from treasury_ops.node import PendingOpen


PEER_A = "02" + "a" * 64
PEER_B = "02" + "b" * 64
PEER_C = "02" + "c" * 64

AMPLE_POLICY = dict(
    min_onchain_reserve=0,
    max_deploy_ratio_ppm=1_000_000,
    max_pending_opens=100,
    max_peer_capacity=100_000_000,
    peer_cooldown_minutes=0,
    max_expansions_per_day=100,
    max_daily_deploy=100_000_000,
)


@pytest.fixture
def guardrails(mock_plugin, database, stub_node, ledger, policies):
    return CapitalGuardrails(mock_plugin, database, stub_node, ledger, policies)


def violation_check(guardrails, peer_id, capacity):
    with pytest.raises(GuardrailViolation) as exc_info:
        guardrails.assert_can_expand(peer_id, capacity)
    return exc_info.value


class TestCapacityBounds:
    """Test the fixed channel size bounds."""

    @pytest.mark.parametrize("capacity", [100_000, 500_000, 1_999_999, 2_000_000])
    def test_in_bounds_passes_with_ample_policy(self, guardrails, policies, stub_node, capacity):
        policies.update_capital_policy(**AMPLE_POLICY)
        stub_node.confirmed_onchain_sats.return_value = 100_000_000
        assert guardrails.assert_can_expand(PEER_A, capacity)["allowed"] is True

    @pytest.mark.parametrize("capacity", [99_999, 2_000_001])
    def test_out_of_bounds_always_fails(self, guardrails, policies, stub_node, capacity):
        policies.update_capital_policy(**AMPLE_POLICY)
        stub_node.confirmed_onchain_sats.return_value = 100_000_000
        err = violation_check(guardrails, PEER_A, capacity)
        assert err.check == "capacity_bounds"

    def test_bounds_checked_before_node_is_read(self, guardrails, stub_node):
        violation_check(guardrails, PEER_A, 99_999)
        stub_node.confirmed_onchain_sats.assert_not_called()


class TestReserveAndDeployRatio:
    """Test the reserve / deploy-ratio scenario with the default policy."""

    def test_first_request_passes(self, guardrails, stub_node, make_channel):
        stub_node.confirmed_onchain_sats.return_value = 500_000
        stub_node.list_channels.return_value = [make_channel("1x1x0", PEER_B, capacity=100_000)]

        result = guardrails.assert_can_expand(PEER_A, 150_000)

        assert result["allowed"] is True
        assert result["exposure"]["deployed"] == 100_000
        assert result["exposure"]["pending_deployed"] == 0

    def test_second_request_fails_deploy_ratio(self, guardrails, stub_node, make_channel):
        stub_node.confirmed_onchain_sats.return_value = 500_000
        stub_node.list_channels.return_value = [
            make_channel("1x1x0", PEER_B, capacity=100_000),
            make_channel("2x1x0", PEER_A, capacity=150_000),
        ]

        err = violation_check(guardrails, PEER_C, 150_000)

        assert err.check == "deploy_ratio"
        assert err.limit == 300_000
        assert err.current == 250_000
        assert err.would_be == 400_000

    def test_pending_first_request_hits_reserve_first(self, guardrails, ledger, stub_node, make_channel):
        """With the first open still pending, the reserve check fails before deploy ratio."""
        stub_node.confirmed_onchain_sats.return_value = 500_000
        stub_node.list_channels.return_value = [make_channel("1x1x0", PEER_B, capacity=100_000)]
        ledger.create(ActionKind.EXPANSION, peer_id=PEER_A, capacity_sats=150_000)

        err = violation_check(guardrails, PEER_C, 150_000)

        assert err.check == "onchain_reserve"
        assert err.would_be == 200_000
        assert err.to_dict()["policy"] is True


class TestPendingCapital:
    """Test the ledger / node pending union."""

    def test_out_of_band_node_open_counts(self, guardrails, stub_node):
        stub_node.confirmed_onchain_sats.return_value = 2_000_000
        stub_node.list_pending_opens.return_value = [PendingOpen(PEER_C, 200_000, "f" * 64)]

        err = violation_check(guardrails, PEER_A, 100_000)

        assert err.check == "pending_opens"
        assert err.current == 1

    def test_ledger_record_seen_on_node_counted_once(self, guardrails, ledger, stub_node):
        record = ledger.create(ActionKind.EXPANSION, peer_id=PEER_A, capacity_sats=150_000)
        ledger.mark_submitted(ActionKind.EXPANSION, record.id, reference="a" * 64)
        stub_node.confirmed_onchain_sats.return_value = 2_000_000
        stub_node.list_pending_opens.return_value = [PendingOpen(PEER_A, 150_000, "a" * 64)]

        exposure = guardrails.exposure(PEER_A)

        assert exposure.pending_opens == 1
        assert exposure.pending_deployed == 150_000
        assert exposure.peer_deployed == 150_000

    def test_distinct_pending_are_summed(self, guardrails, ledger, stub_node):
        ledger.create(ActionKind.EXPANSION, peer_id=PEER_A, capacity_sats=150_000)
        stub_node.list_pending_opens.return_value = [PendingOpen(PEER_B, 200_000, "b" * 64)]

        exposure = guardrails.exposure()

        assert exposure.pending_opens == 2
        assert exposure.pending_deployed == 350_000

    def test_failed_records_not_pending(self, guardrails, ledger):
        record = ledger.create(ActionKind.EXPANSION, peer_id=PEER_A, capacity_sats=150_000)
        ledger.mark_failed(ActionKind.EXPANSION, record.id, "fundchannel failed: no funds")
        assert guardrails.exposure().pending_opens == 0

    def test_peer_capacity_includes_existing_channels(self, guardrails, stub_node, make_channel):
        stub_node.confirmed_onchain_sats.return_value = 5_000_000
        stub_node.list_channels.return_value = [make_channel("1x1x0", PEER_A, capacity=200_000)]

        err = violation_check(guardrails, PEER_A, 150_000)

        assert err.check == "peer_capacity"
        assert err.would_be == 350_000


class TestCooldownAndDailyLimits:
    """Test per-peer cooldown and 24h limits from the ledger."""

    def _succeeded(self, ledger, peer_id, capacity, created_at):
        record = ledger.create(ActionKind.EXPANSION, created_at=created_at,
                               peer_id=peer_id, capacity_sats=capacity)
        ledger.mark_succeeded(ActionKind.EXPANSION, record.id, reference=peer_id[-8:])

    def test_recent_expansion_blocks_peer(self, guardrails, ledger, policies, stub_node):
        policies.update_capital_policy(**dict(AMPLE_POLICY, peer_cooldown_minutes=720))
        stub_node.confirmed_onchain_sats.return_value = 10_000_000
        self._succeeded(ledger, PEER_A, 150_000, int(time.time()) - 600)

        err = violation_check(guardrails, PEER_A, 150_000)

        assert err.check == "peer_cooldown"
        assert err.current == 10
        # other peers are unaffected
        assert guardrails.assert_can_expand(PEER_B, 150_000)["allowed"] is True

    def test_cooldown_expires(self, guardrails, ledger, policies, stub_node):
        policies.update_capital_policy(**dict(AMPLE_POLICY, peer_cooldown_minutes=720))
        stub_node.confirmed_onchain_sats.return_value = 10_000_000
        self._succeeded(ledger, PEER_A, 150_000, int(time.time()) - 721 * 60)
        assert guardrails.assert_can_expand(PEER_A, 150_000)["allowed"] is True

    def test_failed_expansion_does_not_start_cooldown(self, guardrails, ledger, policies, stub_node):
        policies.update_capital_policy(**dict(AMPLE_POLICY, peer_cooldown_minutes=720))
        stub_node.confirmed_onchain_sats.return_value = 10_000_000
        record = ledger.create(ActionKind.EXPANSION, peer_id=PEER_A, capacity_sats=150_000)
        ledger.mark_failed(ActionKind.EXPANSION, record.id, "rejected")
        assert guardrails.assert_can_expand(PEER_A, 150_000)["allowed"] is True

    def test_daily_expansion_count(self, guardrails, ledger, policies, stub_node):
        policies.update_capital_policy(**dict(AMPLE_POLICY, max_expansions_per_day=3))
        stub_node.confirmed_onchain_sats.return_value = 10_000_000
        now = int(time.time())
        for peer in (PEER_A, PEER_B, PEER_C):
            self._succeeded(ledger, peer, 100_000, now - 3600)

        err = violation_check(guardrails, "02" + "d" * 64, 100_000)
        assert err.check == "daily_expansions"

    def test_daily_deploy(self, guardrails, ledger, policies, stub_node):
        policies.update_capital_policy(**dict(AMPLE_POLICY, max_daily_deploy=400_000))
        stub_node.confirmed_onchain_sats.return_value = 10_000_000
        now = int(time.time())
        self._succeeded(ledger, PEER_A, 150_000, now - 3600)
        self._succeeded(ledger, PEER_B, 150_000, now - 1800)

        err = violation_check(guardrails, PEER_C, 150_000)

        assert err.check == "daily_deploy"
        assert err.current == 300_000
        assert err.would_be == 450_000

    def test_yesterdays_expansions_not_counted(self, guardrails, ledger, policies, stub_node):
        policies.update_capital_policy(**dict(AMPLE_POLICY, max_daily_deploy=400_000))
        stub_node.confirmed_onchain_sats.return_value = 10_000_000
        self._succeeded(ledger, PEER_A, 350_000, int(time.time()) - 2 * 86400)
        assert guardrails.assert_can_expand(PEER_B, 150_000)["allowed"] is True


class TestCheck:
    """Test the non-raising preview."""

    def test_check_reports_violation(self, guardrails):
        result = guardrails.check(PEER_A, 50_000)
        assert result["allowed"] is False
        assert result["check"] == "capacity_bounds"
        assert result["error_type"] == "guardrail_violation"
