"""
Ledger reconciliation for cl-treasury-ops

Moves `submitted` expansion and rotation records to a terminal state once
the node shows the outcome:
- expansion succeeds when its funding txid is a CHANNELD_NORMAL channel
- rotation succeeds when the channel is closed or no longer listed
Records left pending longer than pending_timeout_hours are failed, including
`requested` records whose node call never happened.
"""

import time
from typing import Dict, Optional

from .ledger import ActionKind, ExecutionStatus
from .node import CLOSED_STATES, NORMAL_STATE


class LedgerReconciler:

    def __init__(self, plugin, config, node, ledger):
        self.plugin = plugin
        self.config = config
        self.node = node
        self.ledger = ledger

    def _timed_out(self, created_at: int, now: int) -> bool:
        return now - created_at > self.config.snapshot().pending_timeout_hours * 3600

    def _fail_if_abandoned(self, kind: ActionKind, record, now: int) -> int:
        """Fail a `requested` record older than the pending timeout; returns 1 if failed."""
        if not self._timed_out(record.created_at, now):
            return 0
        self.ledger.mark_failed(kind, record.id, "abandoned before submission")
        return 1

    def reconcile(self, now: Optional[int] = None) -> Dict[str, int]:
        now = now or int(time.time())
        counts = {"succeeded": 0, "failed": 0}

        by_txid = self.node.channel_states_by_txid()
        for record in self.ledger.list_pending(ActionKind.EXPANSION):
            if record.status != ExecutionStatus.SUBMITTED:
                counts["failed"] += self._fail_if_abandoned(ActionKind.EXPANSION, record, now)
                continue
            state = by_txid.get(record.reference) if record.reference else None
            if state == NORMAL_STATE:
                self.ledger.mark_succeeded(ActionKind.EXPANSION, record.id)
                counts["succeeded"] += 1
            elif state in CLOSED_STATES or self._timed_out(record.created_at, now):
                self.ledger.mark_failed(ActionKind.EXPANSION, record.id,
                                        f"channel state {state}" if state else
                                        "timed out awaiting confirmation")
                counts["failed"] += 1

        by_id = self.node.channel_states_by_id()
        for record in self.ledger.list_pending(ActionKind.ROTATION):
            if record.status != ExecutionStatus.SUBMITTED:
                counts["failed"] += self._fail_if_abandoned(ActionKind.ROTATION, record, now)
                continue
            state = by_id.get(record.params["channel_id"])
            if state is None or state in CLOSED_STATES:
                self.ledger.mark_succeeded(ActionKind.ROTATION, record.id)
                counts["succeeded"] += 1
            elif self._timed_out(record.created_at, now):
                self.ledger.mark_failed(ActionKind.ROTATION, record.id,
                                        "timed out awaiting confirmation")
                counts["failed"] += 1

        if counts["succeeded"] or counts["failed"]:
            self.plugin.log(
                f"Ledger reconciled: {counts['succeeded']} succeeded, {counts['failed']} failed"
            )
        return counts
