"""
Tests for expansion recommendations and guarded channel opens.
"""

import pytest

from treasury_ops.capital_guardrails import CapitalGuardrails
from treasury_ops.errors import ExternalCallFailure, GuardrailViolation
from treasury_ops.expansion import ExpansionManager, priority_score, recommend, suggested_capacity
from treasury_ops.ledger import ActionKind, ExecutionStatus
from treasury_ops.liquidity_health import HealthClass, LiquidityHealthClassifier, evaluate_channel


PEER_A = "02" + "a" * 64
PEER_B = "02" + "b" * 64


class TestRecommendations:
    """Test sizing and prioritization."""

    def test_suggested_capacity(self):
        assert suggested_capacity(1_000_000, 50_000) == 800_000

    def test_suggested_capacity_clamped(self):
        assert suggested_capacity(1_000_000, 440_000) == 100_000
        assert suggested_capacity(10_000_000, 0) == 2_000_000

    def test_priority_score(self):
        assert priority_score(HealthClass.CRITICAL, -150_000, 0.9) == 130
        assert priority_score(HealthClass.OUTBOUND_STARVED, -5_000, 0.05) == 110
        assert priority_score(HealthClass.WEAK, -60_000, 0.15) == 70

    def test_recommend_filters_and_sorts(self, make_channel):
        records = [
            evaluate_channel(make_channel("1x1x0", PEER_A, local=120_000), -5_000),
            evaluate_channel(make_channel("2x1x0", PEER_B, local=50_000), -200_000),
            evaluate_channel(make_channel("3x1x0", PEER_B, local=50_000), 10_000),
            evaluate_channel(make_channel("4x1x0", PEER_A, local=50_000, is_active=False), -200_000),
            evaluate_channel(make_channel("5x1x0", PEER_A, local=500_000), -200_000),
        ]

        recs = recommend(records)

        assert [r.channel_id for r in recs] == ["2x1x0", "1x1x0"]
        assert recs[0].priority_score == 130
        assert recs[0].suggested_capacity == 800_000


@pytest.fixture
def manager(mock_plugin, database, stub_node, ledger, policies):
    policies.update_capital_policy(
        min_onchain_reserve=0, max_deploy_ratio_ppm=1_000_000, max_pending_opens=10,
        max_peer_capacity=10_000_000, peer_cooldown_minutes=0, max_expansions_per_day=10,
        max_daily_deploy=10_000_000,
    )
    stub_node.confirmed_onchain_sats.return_value = 10_000_000
    stub_node.open_channel.return_value = {"funding_txid": "f" * 64, "channel_id": "c" * 64}
    health = LiquidityHealthClassifier(mock_plugin, database, stub_node)
    guardrails = CapitalGuardrails(mock_plugin, database, stub_node, ledger, policies)
    return ExpansionManager(mock_plugin, database, stub_node, ledger, health, guardrails)


class TestExpansionExecute:
    """Test ledgered channel opens."""

    def test_open_submits_record(self, manager, stub_node, ledger):
        result = manager.execute(PEER_A, 500_000)

        stub_node.open_channel.assert_called_once_with(PEER_A, 500_000)
        assert result["execution"]["status"] == "submitted"
        assert result["execution"]["funding_txid"] == "f" * 64
        assert ledger.list_pending(ActionKind.EXPANSION)[0].params["capacity_sats"] == 500_000

    def test_violation_makes_no_node_call(self, manager, stub_node, ledger):
        with pytest.raises(GuardrailViolation):
            manager.execute(PEER_A, 50_000)
        stub_node.open_channel.assert_not_called()
        assert ledger.list(ActionKind.EXPANSION) == []

    def test_open_failure_marks_failed(self, manager, stub_node, ledger):
        stub_node.open_channel.side_effect = ExternalCallFailure("fundchannel", "insufficient funds")

        with pytest.raises(ExternalCallFailure):
            manager.execute(PEER_A, 500_000)

        record = ledger.list(ActionKind.EXPANSION)[0]
        assert record.status == ExecutionStatus.FAILED
        assert "insufficient funds" in record.error

    def test_dry_run(self, manager, stub_node, ledger):
        result = manager.execute(PEER_A, 500_000, dry_run=True)
        assert result["dry_run"] is True
        assert result["allowed"] is True
        stub_node.open_channel.assert_not_called()
        assert ledger.list(ActionKind.EXPANSION) == []

    def test_second_open_sees_first_as_pending(self, manager, policies):
        """A second call is constrained by the first call's pending record."""
        policies.update_capital_policy(max_pending_opens=1)
        manager.execute(PEER_A, 500_000)

        with pytest.raises(GuardrailViolation) as exc_info:
            manager.execute(PEER_B, 500_000)
        assert exc_info.value.check == "pending_opens"

    def test_recommendations_saved(self, manager, stub_node, database, make_channel):
        stub_node.list_channels.return_value = [make_channel("1x1x0", PEER_A, local=50_000)]
        database.record_forward("9x9x9", "1x1x0", 20_002_000, 20_000_000, 2_000)

        recs = manager.get_recommendations(save=True)

        assert len(recs) == 1
        conn = database._get_connection()
        assert conn.execute("SELECT COUNT(*) FROM expansion_recommendations").fetchone()[0] == 1
