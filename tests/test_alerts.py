"""
Tests for operator alerts.
"""

import pytest
from unittest.mock import MagicMock

from treasury_ops.alerts import AlertsAggregator
from treasury_ops.config import Config
from treasury_ops.errors import ExternalCallFailure
from treasury_ops.rotation import RotationCandidate


def candidate(score):
    return RotationCandidate(
        channel_id="1x1x0", peer_id="02" + "a" * 64, capacity=1_000_000, local_balance=500_000,
        roi_ppm=-600, net_fees=-300, rebalance_costs=300, forwarded_volume=0, payback_days=None,
        rotation_score=score, reason="negative roi (-600 ppm); no forwarding volume",
    )


@pytest.fixture
def rotation():
    manager = MagicMock()
    manager.get_candidates.return_value = []
    return manager


def build(mock_plugin, database, stub_node, policies, loss_cap, rotation, config=None):
    return AlertsAggregator(mock_plugin, config or Config(), database, stub_node,
                            policies, loss_cap, rotation)


def alert_types(alerts):
    return {a.type for a in alerts}


class TestAlerts:

    def test_quiet_node_has_no_alerts(self, mock_plugin, database, stub_node, policies, loss_cap, rotation):
        stub_node.confirmed_onchain_sats.return_value = 1_000_000
        assert build(mock_plugin, database, stub_node, policies, loss_cap, rotation).compute() == []

    def test_rotation_candidates(self, mock_plugin, database, stub_node, policies, loss_cap, rotation):
        stub_node.confirmed_onchain_sats.return_value = 1_000_000
        rotation.get_candidates.return_value = [candidate(250)]

        alerts = build(mock_plugin, database, stub_node, policies, loss_cap, rotation).compute()

        assert alerts[0].type == "ROTATION_CANDIDATES_PRESENT"
        assert alerts[0].severity == "critical"

    def test_mild_rotation_is_warning(self, mock_plugin, database, stub_node, policies, loss_cap, rotation):
        stub_node.confirmed_onchain_sats.return_value = 1_000_000
        rotation.get_candidates.return_value = [candidate(100)]
        alerts = build(mock_plugin, database, stub_node, policies, loss_cap, rotation).compute()
        assert alerts[0].severity == "warning"

    def test_loss_cap_exceeded(self, mock_plugin, database, stub_node, policies, loss_cap, rotation):
        stub_node.confirmed_onchain_sats.return_value = 1_000_000
        database.record_rebalance_cost("circular", 100_000, 5_000)

        alerts = build(mock_plugin, database, stub_node, policies, loss_cap, rotation).compute()

        assert alert_types(alerts) == {"DAILY_LOSS_CAP_EXCEEDED"}
        assert alerts[0].data == {"spent": 5_000, "cap": 5_000}

    def test_loss_cap_near(self, mock_plugin, database, stub_node, policies, loss_cap, rotation):
        stub_node.confirmed_onchain_sats.return_value = 1_000_000
        database.record_rebalance_cost("circular", 100_000, 4_000)
        alerts = build(mock_plugin, database, stub_node, policies, loss_cap, rotation).compute()
        assert alert_types(alerts) == {"DAILY_LOSS_CAP_NEAR"}

    def test_reserve_breached(self, mock_plugin, database, stub_node, policies, loss_cap, rotation):
        stub_node.confirmed_onchain_sats.return_value = 100_000
        alerts = build(mock_plugin, database, stub_node, policies, loss_cap, rotation).compute()
        assert alert_types(alerts) == {"ONCHAIN_RESERVE_BREACHED"}

    def test_reserve_near(self, mock_plugin, database, stub_node, policies, loss_cap, rotation):
        stub_node.confirmed_onchain_sats.return_value = 330_000
        alerts = build(mock_plugin, database, stub_node, policies, loss_cap, rotation).compute()
        assert alert_types(alerts) == {"ONCHAIN_RESERVE_NEAR"}

    def test_node_failure_skips_reserve_check(self, mock_plugin, database, stub_node, policies,
                                              loss_cap, rotation):
        stub_node.confirmed_onchain_sats.side_effect = ExternalCallFailure("listfunds", "down")
        assert build(mock_plugin, database, stub_node, policies, loss_cap, rotation).compute() == []

    def test_scheduler_simulation(self, mock_plugin, database, stub_node, policies, loss_cap, rotation):
        stub_node.confirmed_onchain_sats.return_value = 1_000_000
        config = Config(scheduler_enabled=True, scheduler_dry_run=True)
        alerts = build(mock_plugin, database, stub_node, policies, loss_cap, rotation, config).compute()
        assert alert_types(alerts) == {"SCHEDULER_SIMULATION_MODE"}
        assert alerts[0].severity == "info"
