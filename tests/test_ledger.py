"""
Tests for the execution ledger state machine.
"""

import pytest

from treasury_ops.errors import InvalidTransition
from treasury_ops.ledger import ActionKind, ExecutionStatus


PEER_A = "02" + "a" * 64


def new_expansion(ledger, capacity=150_000, created_at=None):
    return ledger.create(ActionKind.EXPANSION, created_at=created_at,
                         peer_id=PEER_A, capacity_sats=capacity)


class TestTransitions:
    """Test allowed and forbidden moves."""

    def test_full_lifecycle(self, ledger):
        record = new_expansion(ledger)
        assert record.status == ExecutionStatus.REQUESTED
        assert record.reference is None

        record = ledger.mark_submitted(ActionKind.EXPANSION, record.id, reference="a" * 64)
        assert record.status == ExecutionStatus.SUBMITTED
        assert record.reference == "a" * 64

        record = ledger.mark_succeeded(ActionKind.EXPANSION, record.id)
        assert record.status == ExecutionStatus.SUCCEEDED
        assert record.reference == "a" * 64
        assert record.is_terminal

    def test_requested_can_finish_directly(self, ledger):
        record = new_expansion(ledger)
        record = ledger.mark_failed(ActionKind.EXPANSION, record.id, "fundchannel failed: no funds")
        assert record.status == ExecutionStatus.FAILED
        assert record.error == "fundchannel failed: no funds"

    def test_succeeded_is_write_once(self, ledger):
        record = new_expansion(ledger)
        ledger.mark_succeeded(ActionKind.EXPANSION, record.id, reference="a" * 64)

        with pytest.raises(InvalidTransition):
            ledger.mark_failed(ActionKind.EXPANSION, record.id, "late failure")
        with pytest.raises(InvalidTransition):
            ledger.mark_succeeded(ActionKind.EXPANSION, record.id, reference="b" * 64)

        stored = ledger.get(ActionKind.EXPANSION, record.id)
        assert stored.status == ExecutionStatus.SUCCEEDED
        assert stored.reference == "a" * 64
        assert stored.error is None

    def test_failed_is_write_once(self, ledger):
        record = new_expansion(ledger)
        ledger.mark_failed(ActionKind.EXPANSION, record.id, "first")
        with pytest.raises(InvalidTransition):
            ledger.mark_submitted(ActionKind.EXPANSION, record.id, reference="a" * 64)
        assert ledger.get(ActionKind.EXPANSION, record.id).error == "first"

    def test_submitted_twice_rejected(self, ledger):
        record = new_expansion(ledger)
        ledger.mark_submitted(ActionKind.EXPANSION, record.id)
        with pytest.raises(InvalidTransition):
            ledger.mark_submitted(ActionKind.EXPANSION, record.id)

    def test_cannot_return_to_requested(self, ledger):
        record = new_expansion(ledger)
        with pytest.raises(InvalidTransition):
            ledger.transition(ActionKind.EXPANSION, record.id, ExecutionStatus.REQUESTED)

    def test_missing_record(self, ledger):
        with pytest.raises(InvalidTransition) as exc_info:
            ledger.mark_failed(ActionKind.REBALANCE, 999, "boom")
        assert "not found" in exc_info.value.message


class TestKinds:
    """Test per-kind parameters and isolation."""

    def test_unknown_parameter_rejected(self, ledger):
        with pytest.raises(ValueError):
            ledger.create(ActionKind.EXPANSION, peer_id=PEER_A, capacity_sats=1, channel_id="1x1x0")

    def test_rotation_params_round_trip(self, ledger):
        record = ledger.create(ActionKind.ROTATION, channel_id="1x1x0", peer_id=PEER_A,
                               capacity_sats=1_000_000, local_sats=400_000, roi_ppm=-600,
                               reason="negative roi (-600 ppm)", is_force_close=True)
        data = record.to_dict()
        assert data["kind"] == "rotation"
        assert data["is_force_close"] is True
        assert data["roi_ppm"] == -600
        assert data["closing_txid"] is None

    def test_kinds_are_independent(self, ledger):
        new_expansion(ledger)
        assert ledger.list(ActionKind.ROTATION) == []
        assert ledger.status_counts(ActionKind.EXPANSION)["requested"] == 1
        assert ledger.status_counts(ActionKind.REBALANCE) == {
            "requested": 0, "submitted": 0, "succeeded": 0, "failed": 0,
        }


class TestListing:
    """Test list ordering and pending filters."""

    def test_newest_first(self, ledger):
        older = new_expansion(ledger, created_at=1_700_000_000)
        newer = new_expansion(ledger, created_at=1_700_000_100)
        assert [r.id for r in ledger.list(ActionKind.EXPANSION)] == [newer.id, older.id]

    def test_list_pending(self, ledger):
        requested = new_expansion(ledger)
        submitted = new_expansion(ledger)
        ledger.mark_submitted(ActionKind.EXPANSION, submitted.id)
        done = new_expansion(ledger)
        ledger.mark_succeeded(ActionKind.EXPANSION, done.id)

        pending_ids = {r.id for r in ledger.list_pending(ActionKind.EXPANSION)}
        assert pending_ids == {requested.id, submitted.id}
