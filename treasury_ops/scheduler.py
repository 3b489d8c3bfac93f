"""
Rebalance Scheduler module for cl-treasury-ops

One periodic, non-reentrant control loop. Each tick:
1. returns immediately if another tick holds the lock
2. skips unless the node role is 'treasury'
3. skips if a rebalance succeeded within the cooldown
4. ranks starved/critical active channels worst-first as receivers
5. pairs each with the single best donor (other peer, highest local ratio)
6. sizes the transfer and checks viability, moving on when either fails
7. consults the loss cap; a halt aborts the whole tick
8. in dry-run logs the decision, otherwise executes exactly one rebalance
"""

import threading
import time
from typing import Dict, List, Optional, Any

from .errors import LossCapExceeded, TreasuryError, ViabilityError
from .liquidity_health import HealthClass
from .metrics import MetricNames, METRIC_HELP
from .node import ChannelSnapshot
from .rebalancer import PairSelection

RECEIVER_CLASSES = (HealthClass.OUTBOUND_STARVED, HealthClass.CRITICAL)

TREASURY_ROLE = 'treasury'


class RebalanceScheduler:

    def __init__(self, plugin, config, database, node, health, rebalancer, loss_cap,
                 metrics_exporter=None):
        self.plugin = plugin
        self.config = config
        self.database = database
        self.node = node
        self.health = health
        self.rebalancer = rebalancer
        self.loss_cap = loss_cap
        self.metrics_exporter = metrics_exporter

        self._lock = threading.Lock()
        self.last_result: Optional[Dict[str, Any]] = None
        self.last_run_at: Optional[int] = None

    @property
    def running(self) -> bool:
        return self._lock.locked()

    def tick(self) -> Dict[str, Any]:
        """Run one scheduler pass unless another is in progress."""
        if not self._lock.acquire(blocking=False):
            self.plugin.log("Scheduler: previous tick still running, skipping", level='debug')
            return {"status": "skipped", "reason": "tick already running"}
        try:
            result = self._run_tick()
        finally:
            self._lock.release()

        self.last_result = result
        self.last_run_at = int(time.time())
        self._export(result)
        return result

    def _export(self, result: Dict[str, Any]) -> None:
        if not self.metrics_exporter:
            return
        self.metrics_exporter.inc_counter(
            MetricNames.SCHEDULER_TICKS_TOTAL, 1, {"outcome": result["status"]},
            METRIC_HELP.get(MetricNames.SCHEDULER_TICKS_TOTAL, "")
        )
        self.metrics_exporter.set_gauge(
            MetricNames.SYSTEM_LAST_RUN_TIMESTAMP, self.last_run_at, {"task": "scheduler"},
            METRIC_HELP.get(MetricNames.SYSTEM_LAST_RUN_TIMESTAMP, "")
        )

    def _run_tick(self) -> Dict[str, Any]:
        cfg = self.config.snapshot()

        if cfg.node_role != TREASURY_ROLE:
            return {"status": "skipped", "reason": f"node role is '{cfg.node_role}'"}

        now = int(time.time())
        last_success = self.database.get_last_rebalance_success_time()
        if last_success is not None and now - last_success < cfg.rebalance_cooldown_minutes * 60:
            remaining = cfg.rebalance_cooldown_minutes * 60 - (now - last_success)
            self.plugin.log(f"Scheduler: cooldown active ({remaining}s remaining)", level='debug')
            return {"status": "skipped", "reason": "cooldown", "cooldown_remaining_seconds": remaining}

        channels = self.node.list_channels()
        by_id = {ch.channel_id: ch for ch in channels}
        records = self.health.compute(channels)
        receivers = sorted(
            (r for r in records if r.is_active and r.health_classification in RECEIVER_CLASSES),
            key=lambda r: r.imbalance_ratio,
        )
        if not receivers:
            return {"status": "idle", "reason": "no unhealthy receivers"}

        for record in receivers:
            receiver = by_id[record.channel_id]
            donor = self._best_donor(receiver, channels)
            if donor is None:
                self.plugin.log(f"Scheduler: no donor for {receiver.channel_id}", level='debug')
                continue

            tokens = min(
                cfg.rebalance_default_tokens,
                cfg.rebalance_max_tokens,
                max(0, donor.local_available - cfg.rebalance_default_max_fee_sats
                    - cfg.rebalance_safety_buffer_sats),
                max(0, receiver.remote_available - cfg.rebalance_safety_buffer_sats),
            )
            if tokens <= 0:
                continue

            selection = PairSelection(donor, receiver, tokens, cfg.rebalance_default_max_fee_sats)
            try:
                self.rebalancer.check_pair(donor, receiver, tokens, cfg.rebalance_default_max_fee_sats)
            except ViabilityError as e:
                self.plugin.log(
                    f"Scheduler: {donor.channel_id} -> {receiver.channel_id} not viable: {e.message}",
                    level='debug'
                )
                continue

            try:
                self.loss_cap.assert_not_exceeded(cfg.rebalance_default_max_fee_sats)
            except LossCapExceeded as e:
                self.plugin.log(f"Scheduler: halted by loss cap: {e.message}", level='warn')
                return {"status": "halted", "error": e.message}

            if cfg.scheduler_dry_run:
                self.plugin.log(
                    f"[DRY RUN] Scheduler: would rebalance {tokens} sats "
                    f"{donor.channel_id} -> {receiver.channel_id} "
                    f"(receiver {record.health_classification.value}, imbalance {record.imbalance_ratio})"
                )
                return {"status": "dry_run", "selection": selection.to_dict()}

            self.plugin.log(
                f"Scheduler: rebalancing {tokens} sats {donor.channel_id} -> {receiver.channel_id}"
            )
            try:
                result = self.rebalancer.execute(selection)
            except TreasuryError as e:
                return {"status": "failed", "error": e.message, "selection": selection.to_dict()}
            return {"status": "executed", **result}

        return {"status": "idle", "reason": "no viable receiver/donor pair"}

    @staticmethod
    def _best_donor(receiver: ChannelSnapshot,
                    channels: List[ChannelSnapshot]) -> Optional[ChannelSnapshot]:
        donors = [
            ch for ch in channels
            if ch.is_active and ch.channel_id != receiver.channel_id and ch.peer_id != receiver.peer_id
        ]
        if not donors:
            return None
        return max(donors, key=lambda ch: ch.local_ratio_ppm)

    def status(self) -> Dict[str, Any]:
        cfg = self.config.snapshot()
        return {
            "enabled": cfg.scheduler_enabled,
            "dry_run": cfg.scheduler_dry_run,
            "node_role": cfg.node_role,
            "interval_seconds": cfg.rebalance_interval,
            "running": self.running,
            "last_run_at": self.last_run_at,
            "last_result": self.last_result,
        }
