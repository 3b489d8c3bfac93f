"""
Execution ledger for cl-treasury-ops

One state machine shared by the three action kinds (expansion, rotation,
rebalance). Each kind keeps its own table and its own result reference
column, but they all move through:

    requested -> submitted -> succeeded | failed
    requested ------------->  succeeded | failed

The `requested` row is written before any node call. Terminal states are
write-once; the database enforces that with a status guard on UPDATE.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .errors import InvalidTransition


class ExecutionStatus(Enum):
    REQUESTED = "requested"
    SUBMITTED = "submitted"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({ExecutionStatus.SUCCEEDED, ExecutionStatus.FAILED})

# Statuses that count as capital or risk still in flight
PENDING_STATUSES = (ExecutionStatus.REQUESTED.value, ExecutionStatus.SUBMITTED.value)

# Allowed source statuses for each target status
_ALLOWED_SOURCES: Dict[ExecutionStatus, Tuple[ExecutionStatus, ...]] = {
    ExecutionStatus.SUBMITTED: (ExecutionStatus.REQUESTED,),
    ExecutionStatus.SUCCEEDED: (ExecutionStatus.REQUESTED, ExecutionStatus.SUBMITTED),
    ExecutionStatus.FAILED: (ExecutionStatus.REQUESTED, ExecutionStatus.SUBMITTED),
}


@dataclass(frozen=True)
class KindSpec:
    table: str
    reference_column: str
    param_columns: Tuple[str, ...]


class ActionKind(Enum):
    EXPANSION = KindSpec(
        table="expansion_executions",
        reference_column="funding_txid",
        param_columns=("peer_id", "capacity_sats"),
    )
    ROTATION = KindSpec(
        table="rotation_executions",
        reference_column="closing_txid",
        param_columns=("channel_id", "peer_id", "capacity_sats", "local_sats",
                       "roi_ppm", "reason", "is_force_close"),
    )
    REBALANCE = KindSpec(
        table="rebalance_executions",
        reference_column="payment_hash",
        param_columns=("type", "tokens", "outgoing_channel", "incoming_channel",
                       "max_fee_sats"),
    )

    @property
    def spec(self) -> KindSpec:
        return self.value


@dataclass
class ExecutionRecord:
    id: int
    kind: ActionKind
    status: ExecutionStatus
    params: Dict[str, Any]
    reference: Optional[str]
    fee_paid_sats: Optional[int]
    error: Optional[str]
    created_at: int
    updated_at: int

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "id": self.id,
            "kind": self.kind.name.lower(),
            "status": self.status.value,
            self.kind.spec.reference_column: self.reference,
            "fee_paid_sats": self.fee_paid_sats,
            "error": self.error,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }
        result.update(self.params)
        return result


class ExecutionLedger:
    """Typed access to the three execution tables."""

    def __init__(self, database):
        self.database = database

    def _to_record(self, kind: ActionKind, row: Dict[str, Any]) -> ExecutionRecord:
        spec = kind.spec
        params = {column: row.get(column) for column in spec.param_columns}
        if "is_force_close" in params:
            params["is_force_close"] = bool(params["is_force_close"])
        return ExecutionRecord(
            id=row["id"],
            kind=kind,
            status=ExecutionStatus(row["status"]),
            params=params,
            reference=row.get(spec.reference_column),
            fee_paid_sats=row.get("fee_paid_sats"),
            error=row.get("error"),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def create(self, kind: ActionKind, created_at: Optional[int] = None,
               **params) -> ExecutionRecord:
        """Write a `requested` record. Must happen before any node call."""
        spec = kind.spec
        unknown = set(params) - set(spec.param_columns)
        if unknown:
            raise ValueError(f"Unknown {kind.name.lower()} parameters: {sorted(unknown)}")
        if "is_force_close" in params:
            params["is_force_close"] = 1 if params["is_force_close"] else 0
        execution_id = self.database.insert_execution(
            spec.table, params, ExecutionStatus.REQUESTED.value, created_at=created_at
        )
        return self.get(kind, execution_id)

    def get(self, kind: ActionKind, execution_id: int) -> Optional[ExecutionRecord]:
        row = self.database.get_execution(kind.spec.table, execution_id)
        return self._to_record(kind, row) if row else None

    def transition(self, kind: ActionKind, execution_id: int, status: ExecutionStatus,
                   reference: Optional[str] = None, fee_paid_sats: Optional[int] = None,
                   error: Optional[str] = None) -> ExecutionRecord:
        """
        Move a record forward. Raises InvalidTransition if the record is
        missing or its current status does not allow the move.
        """
        if status == ExecutionStatus.REQUESTED:
            raise InvalidTransition("Records cannot be moved back to 'requested'")
        sources = [s.value for s in _ALLOWED_SOURCES[status]]
        changed = self.database.transition_execution(
            kind.spec.table, execution_id, status.value, sources,
            reference_column=kind.spec.reference_column,
            reference=reference, fee_paid_sats=fee_paid_sats, error=error,
        )
        if not changed:
            current = self.get(kind, execution_id)
            if current is None:
                raise InvalidTransition(f"{kind.name.lower()} execution {execution_id} not found")
            raise InvalidTransition(
                f"{kind.name.lower()} execution {execution_id} cannot move "
                f"from '{current.status.value}' to '{status.value}'"
            )
        return self.get(kind, execution_id)

    def mark_submitted(self, kind: ActionKind, execution_id: int,
                       reference: Optional[str] = None) -> ExecutionRecord:
        return self.transition(kind, execution_id, ExecutionStatus.SUBMITTED, reference=reference)

    def mark_succeeded(self, kind: ActionKind, execution_id: int,
                       reference: Optional[str] = None,
                       fee_paid_sats: Optional[int] = None) -> ExecutionRecord:
        return self.transition(kind, execution_id, ExecutionStatus.SUCCEEDED,
                               reference=reference, fee_paid_sats=fee_paid_sats)

    def mark_failed(self, kind: ActionKind, execution_id: int, error: str) -> ExecutionRecord:
        return self.transition(kind, execution_id, ExecutionStatus.FAILED, error=error)

    def list(self, kind: ActionKind, limit: int = 50,
             statuses: Optional[List[ExecutionStatus]] = None) -> List[ExecutionRecord]:
        wanted = [s.value for s in statuses] if statuses else None
        rows = self.database.list_executions(kind.spec.table, limit=limit, statuses=wanted)
        return [self._to_record(kind, row) for row in rows]

    def list_pending(self, kind: ActionKind, limit: int = 500) -> List[ExecutionRecord]:
        return self.list(kind, limit=limit,
                         statuses=[ExecutionStatus.REQUESTED, ExecutionStatus.SUBMITTED])

    def status_counts(self, kind: ActionKind) -> Dict[str, int]:
        counts = {status.value: 0 for status in ExecutionStatus}
        counts.update(self.database.count_executions_by_status(kind.spec.table))
        return counts
