#!/usr/bin/env python3
"""
cl-treasury-ops: A Treasury Operations Plugin for Core Lightning

This plugin runs a Lightning node as an automated capital allocator. It
watches the liquidity of every channel, decides when a channel is
unhealthy, unprofitable or undercapitalized, and drives corrective actions
while enforcing hard financial limits:

1. Liquidity health classification and dynamic fee targets
2. Channel/peer profitability metrics and rotation (closure) candidates
3. Capital guardrails in front of every channel open
4. A daily loss cap over rebalance spend
5. Circular (self-payment) rebalancing, manual or scheduled
6. An execution ledger recording every expansion, rotation and rebalance

Dependencies:
- pyln-client: Core Lightning plugin framework

Author: cl-treasury-ops contributors
License: MIT
"""

import os
import time
import random
import signal
import threading
from dataclasses import asdict
from typing import Dict, Optional, Any

from pyln.client import Plugin

from treasury_ops.config import Config, CONFIG_FIELD_TYPES, IMMUTABLE_CONFIG_KEYS
from treasury_ops.database import Database
from treasury_ops.errors import TreasuryError
from treasury_ops.node import NodeGateway
from treasury_ops.ledger import ExecutionLedger, ActionKind
from treasury_ops.policies import PolicyStore
from treasury_ops.liquidity_health import LiquidityHealthClassifier
from treasury_ops.channel_metrics import ChannelMetricsAggregator
from treasury_ops.fee_engine import DynamicFeeEngine
from treasury_ops.rotation import RotationManager
from treasury_ops.capital_guardrails import CapitalGuardrails
from treasury_ops.loss_cap import DailyLossCapGuard
from treasury_ops.rebalancer import CircularRebalancer
from treasury_ops.scheduler import RebalanceScheduler, TREASURY_ROLE
from treasury_ops.expansion import ExpansionManager
from treasury_ops.reconcile import LedgerReconciler
from treasury_ops.alerts import AlertsAggregator
from treasury_ops.summary import TreasurySummary
from treasury_ops.metrics import PrometheusExporter, MetricNames, METRIC_HELP
from treasury_ops.ppm import parse_msat


# Initialize the plugin
plugin = Plugin()

# =============================================================================
# GRACEFUL SHUTDOWN SUPPORT
# =============================================================================
# Background loops sleep on this event so `lightning-cli plugin stop`
# (SIGTERM) ends them immediately instead of after their interval.

shutdown_event = threading.Event()

# =============================================================================
# THREAD-SAFE RPC WRAPPER
# =============================================================================
# Background loops and RPC method handlers share one RPC connection;
# this lock serializes calls to lightningd. Waiters give up after
# RPC_LOCK_TIMEOUT_SECONDS instead of queueing behind a slow call forever.

RPC_LOCK = threading.Lock()
RPC_LOCK_TIMEOUT_SECONDS = 10


class RpcLockTimeoutError(TimeoutError):
    """Raised when the RPC lock cannot be acquired within the timeout."""
    pass


class ThreadSafeRpcProxy:
    """Wraps plugin.rpc so every call holds RPC_LOCK."""

    def __init__(self, rpc):
        self._rpc = rpc

    def __getattr__(self, name):
        attr = getattr(self._rpc, name)
        if not callable(attr):
            return attr

        def wrapper(*args, **kwargs):
            acquired = RPC_LOCK.acquire(timeout=RPC_LOCK_TIMEOUT_SECONDS)
            if not acquired:
                raise RpcLockTimeoutError(
                    f"RPC lock acquisition timed out after {RPC_LOCK_TIMEOUT_SECONDS}s "
                    f"calling {name}"
                )
            try:
                return attr(*args, **kwargs)
            finally:
                RPC_LOCK.release()
        return wrapper


class ThreadSafePluginProxy:
    """A proxy for the Plugin object that provides thread-safe RPC access."""

    def __init__(self, plugin_instance: Plugin):
        self._plugin = plugin_instance
        self.rpc = ThreadSafeRpcProxy(plugin_instance.rpc)

    def log(self, message, level='info'):
        self._plugin.log(message, level=level)

    def __getattr__(self, name):
        return getattr(self._plugin, name)


# Global instances (initialized in init)
config: Optional[Config] = None
database: Optional[Database] = None
safe_plugin: Optional[ThreadSafePluginProxy] = None
node: Optional[NodeGateway] = None
ledger: Optional[ExecutionLedger] = None
policies: Optional[PolicyStore] = None
health: Optional[LiquidityHealthClassifier] = None
channel_metrics: Optional[ChannelMetricsAggregator] = None
fee_engine: Optional[DynamicFeeEngine] = None
rotation: Optional[RotationManager] = None
guardrails: Optional[CapitalGuardrails] = None
loss_cap: Optional[DailyLossCapGuard] = None
rebalancer: Optional[CircularRebalancer] = None
scheduler: Optional[RebalanceScheduler] = None
expansion: Optional[ExpansionManager] = None
reconciler: Optional[LedgerReconciler] = None
alerts: Optional[AlertsAggregator] = None
summary: Optional[TreasurySummary] = None
metrics_exporter: Optional[PrometheusExporter] = None


# =============================================================================
# PLUGIN OPTIONS
# =============================================================================

plugin.add_option(
    name='treasury-ops-db-path',
    default='~/.lightning/treasury_ops.db',
    description='Path to the SQLite database for storing state'
)

plugin.add_option(
    name='treasury-ops-role',
    default='treasury',
    description="Node role; only 'treasury' nodes run the autonomous scheduler"
)

plugin.add_option(
    name='treasury-ops-rebalance-interval',
    default='600',
    description='Interval in seconds between scheduler ticks (default: 10 min)'
)

plugin.add_option(
    name='treasury-ops-sync-interval',
    default='300',
    description='Interval in seconds for refreshing the channel cache (default: 5 min)'
)

plugin.add_option(
    name='treasury-ops-reconcile-interval',
    default='900',
    description='Interval in seconds for ledger reconciliation (default: 15 min)'
)

plugin.add_option(
    name='treasury-ops-min-incoming-remote-ppm',
    default='200000',
    description='Minimum remote ratio (ppm) for the incoming side of a rebalance'
)

plugin.add_option(
    name='treasury-ops-min-outgoing-local-ppm',
    default='200000',
    description='Minimum local ratio (ppm) for the outgoing side of a rebalance'
)

plugin.add_option(
    name='treasury-ops-safety-buffer-sats',
    default='1000',
    description='Sats kept above channel reserves when sizing rebalances'
)

plugin.add_option(
    name='treasury-ops-scheduler-enabled',
    default='false',
    description='Run the autonomous rebalance scheduler (default: false)'
)

plugin.add_option(
    name='treasury-ops-scheduler-dry-run',
    default='true',
    description='Log scheduler decisions without paying (default: true)'
)

plugin.add_option(
    name='treasury-ops-default-tokens',
    default='100000',
    description='Default sats per scheduled rebalance'
)

plugin.add_option(
    name='treasury-ops-max-tokens',
    default='500000',
    description='Maximum sats per scheduled rebalance'
)

plugin.add_option(
    name='treasury-ops-default-max-fee-sats',
    default='100',
    description='Maximum fee in sats for a scheduled rebalance'
)

plugin.add_option(
    name='treasury-ops-cooldown-minutes',
    default='60',
    description='Minutes after a successful rebalance before the scheduler acts again'
)

plugin.add_option(
    name='treasury-ops-hub-peer-id',
    default='',
    description='Designated hub peer that is never rotated (empty = none)'
)

plugin.add_option(
    name='treasury-ops-rotation-close-fee-sats',
    default='3000',
    description='Worst-case on-chain fee charged against the loss cap for a close'
)

plugin.add_option(
    name='treasury-ops-pay-timeout-seconds',
    default='60',
    description='Seconds to wait for a circular payment to resolve'
)

plugin.add_option(
    name='treasury-ops-pending-timeout-hours',
    default='72',
    description='Hours before a submitted open/close is marked failed'
)

plugin.add_option(
    name='treasury-ops-enable-prometheus',
    default='false',
    description='Enable Prometheus metrics exporter (default: false)'
)

plugin.add_option(
    name='treasury-ops-prometheus-port',
    default='9810',
    description='Port for Prometheus metrics HTTP server (default: 9810)'
)


# =============================================================================
# INITIALIZATION
# =============================================================================

@plugin.init()
def init(options: Dict[str, Any], configuration: Dict[str, Any], plugin: Plugin, **kwargs):
    """
    Initialize the Treasury Operations plugin.

    1. Parse options and load persisted overrides
    2. Initialize the database and hydrate forwards
    3. Wire components (composition root)
    4. Start background loops
    """
    global config, database, safe_plugin, node, ledger, policies, health, channel_metrics
    global fee_engine, rotation, guardrails, loss_cap, rebalancer, scheduler, expansion
    global reconciler, alerts, summary, metrics_exporter

    plugin.log("Initializing cl-treasury-ops plugin...")

    config = Config(
        db_path=os.path.expanduser(options['treasury-ops-db-path']),
        node_role=options['treasury-ops-role'],
        rebalance_interval=int(options['treasury-ops-rebalance-interval']),
        sync_interval=int(options['treasury-ops-sync-interval']),
        reconcile_interval=int(options['treasury-ops-reconcile-interval']),
        rebalance_min_incoming_remote_ppm=int(options['treasury-ops-min-incoming-remote-ppm']),
        rebalance_min_outgoing_local_ppm=int(options['treasury-ops-min-outgoing-local-ppm']),
        rebalance_safety_buffer_sats=int(options['treasury-ops-safety-buffer-sats']),
        scheduler_enabled=options['treasury-ops-scheduler-enabled'].lower() == 'true',
        scheduler_dry_run=options['treasury-ops-scheduler-dry-run'].lower() == 'true',
        rebalance_default_tokens=int(options['treasury-ops-default-tokens']),
        rebalance_max_tokens=int(options['treasury-ops-max-tokens']),
        rebalance_default_max_fee_sats=int(options['treasury-ops-default-max-fee-sats']),
        rebalance_cooldown_minutes=int(options['treasury-ops-cooldown-minutes']),
        hub_peer_id=options['treasury-ops-hub-peer-id'],
        rotation_close_fee_sats=int(options['treasury-ops-rotation-close-fee-sats']),
        pay_timeout_seconds=int(options['treasury-ops-pay-timeout-seconds']),
        pending_timeout_hours=int(options['treasury-ops-pending-timeout-hours']),
        enable_prometheus=options['treasury-ops-enable-prometheus'].lower() == 'true',
        prometheus_port=int(options['treasury-ops-prometheus-port']),
    )

    safe_plugin = ThreadSafePluginProxy(plugin)

    database = Database(config.db_path, safe_plugin)
    database.initialize()

    try:
        config.load_overrides(database)
        if config._version > 0:
            plugin.log(f"Loaded config overrides from database (version {config._version})")
    except Exception as e:
        plugin.log(f"Warning: Could not load config overrides: {e}", level='warn')

    plugin.log(f"Configuration loaded: role={config.node_role}, "
               f"scheduler_enabled={config.scheduler_enabled}, "
               f"scheduler_dry_run={config.scheduler_dry_run}")

    if config.enable_prometheus:
        metrics_exporter = PrometheusExporter(port=config.prometheus_port, plugin=safe_plugin)
        if not metrics_exporter.start_server():
            plugin.log("Prometheus metrics disabled due to server startup failure", level='warn')
            metrics_exporter = None
    else:
        metrics_exporter = None

    node = NodeGateway(safe_plugin)
    ledger = ExecutionLedger(database)
    policies = PolicyStore(database)
    loss_cap = DailyLossCapGuard(safe_plugin, database, policies)
    health = LiquidityHealthClassifier(safe_plugin, database, node)
    channel_metrics = ChannelMetricsAggregator(safe_plugin, database, node)
    fee_engine = DynamicFeeEngine(safe_plugin, database, node, policies, health)
    rotation = RotationManager(safe_plugin, config, node, ledger, channel_metrics, loss_cap)
    guardrails = CapitalGuardrails(safe_plugin, database, node, ledger, policies)
    rebalancer = CircularRebalancer(safe_plugin, config, database, node, ledger, loss_cap)
    scheduler = RebalanceScheduler(safe_plugin, config, database, node, health, rebalancer,
                                   loss_cap, metrics_exporter)
    expansion = ExpansionManager(safe_plugin, database, node, ledger, health, guardrails)
    reconciler = LedgerReconciler(safe_plugin, config, node, ledger)
    alerts = AlertsAggregator(safe_plugin, config, database, node, policies, loss_cap, rotation)
    summary = TreasurySummary(database, ledger)

    # Create the capital policy row with defaults on first start
    policies.get_capital_policy()

    # =========================================================================
    # FORWARDS TABLE HYDRATION
    # =========================================================================
    # forward_event keeps the table current while running; this fills the
    # gap left while the plugin was stopped.
    try:
        last_forward_ts = database.get_latest_forward_timestamp() or 0
        forwards = node.list_settled_forwards(since_timestamp=last_forward_ts)
        inserted = database.bulk_insert_forwards(forwards)
        plugin.log(f"Hydration complete: inserted {inserted} forwards into local database")
    except Exception as e:
        plugin.log(f"Warning: Forwards hydration failed: {e}", level='warn')

    def run_periodic(name: str, interval_key: str, startup_delay: int, task):
        """Interruptible loop with +/- 20% jitter; errors are logged, never raised."""
        if shutdown_event.wait(startup_delay):
            plugin.log(f"{name} loop cancelled during startup delay")
            return

        while not shutdown_event.is_set():
            try:
                task()
            except Exception as e:
                plugin.log(f"Error in {name}: {e}", level='error')

            interval = getattr(config, interval_key)
            jitter_seconds = int(interval * 0.2)
            sleep_time = interval + random.randint(-jitter_seconds, jitter_seconds)
            plugin.log(f"{name} sleeping for {sleep_time}s", level='debug')

            if shutdown_event.wait(sleep_time):
                plugin.log(f"{name} loop stopping due to shutdown signal")
                break

    def scheduler_task():
        cfg = config.snapshot()
        if not cfg.scheduler_enabled or cfg.node_role != TREASURY_ROLE:
            return
        result = scheduler.tick()
        plugin.log(f"Scheduler tick: {result.get('status')}", level='debug')

    def sync_task():
        channels = node.list_channels()
        database.replace_channel_cache(
            {
                "channel_id": ch.channel_id,
                "peer_id": ch.peer_id,
                "capacity": ch.capacity,
                "local_balance": ch.local_balance,
                "remote_balance": ch.remote_balance,
                "is_active": ch.is_active,
            }
            for ch in channels
        )
        if metrics_exporter:
            update_gauges(channels)

    def reconcile_task():
        reconciler.reconcile()

    def handle_shutdown_signal(signum, frame):
        """Set the shutdown event so all background loops exit promptly."""
        plugin.log("Received SIGTERM, initiating clean shutdown...", level='info')
        shutdown_event.set()

        if metrics_exporter:
            try:
                metrics_exporter.stop_server()
            except Exception as e:
                plugin.log(f"Error stopping metrics server: {e}", level='warn')

        if database:
            try:
                database.close()
            except Exception as e:
                plugin.log(f"Error closing database: {e}", level='warn')

    signal.signal(signal.SIGTERM, handle_shutdown_signal)

    threading.Thread(target=run_periodic, args=("channel sync", "sync_interval", 10, sync_task),
                     daemon=True, name="channel-sync").start()
    threading.Thread(target=run_periodic, args=("ledger reconcile", "reconcile_interval", 60, reconcile_task),
                     daemon=True, name="ledger-reconcile").start()
    threading.Thread(target=run_periodic, args=("rebalance scheduler", "rebalance_interval", 120, scheduler_task),
                     daemon=True, name="rebalance-scheduler").start()

    plugin.log("cl-treasury-ops plugin initialized successfully!")
    return None


def update_gauges(channels=None):
    """Refresh Prometheus gauges for loss cap and channel health."""
    status = loss_cap.status()
    metrics_exporter.set_gauge(MetricNames.DAILY_LOSS_SATS, status["spent_24h_sats"], None,
                               METRIC_HELP[MetricNames.DAILY_LOSS_SATS])
    metrics_exporter.set_gauge(MetricNames.DAILY_LOSS_CAP_SATS, status["max_daily_loss"], None,
                               METRIC_HELP[MetricNames.DAILY_LOSS_CAP_SATS])
    for classification, count in health.summarize(health.compute(channels)).items():
        metrics_exporter.set_gauge(MetricNames.CHANNELS_BY_HEALTH, count,
                                   {"classification": classification},
                                   METRIC_HELP[MetricNames.CHANNELS_BY_HEALTH])
    metrics_exporter.set_gauge(MetricNames.SYSTEM_LAST_RUN_TIMESTAMP, int(time.time()),
                               {"task": "sync"}, METRIC_HELP[MetricNames.SYSTEM_LAST_RUN_TIMESTAMP])


def _error_response(e: Exception) -> Dict[str, Any]:
    if isinstance(e, TreasuryError):
        return e.to_dict()
    return {"status": "error", "error": str(e)}


def _to_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.lower() in ('true', '1', 'yes', 'on')
    return bool(value)


NOT_READY = {"error": "Plugin not fully initialized"}


# =============================================================================
# RPC METHODS - Exposed to lightning-cli
# =============================================================================

@plugin.method("treasury-status")
def treasury_status(plugin: Plugin) -> Dict[str, Any]:
    """
    Treasury summary: liquidity, forwarding, costs and execution counts.

    Usage: lightning-cli treasury-status
    """
    if summary is None:
        return NOT_READY
    try:
        return {
            "status": "running",
            "role": config.node_role,
            "summary": summary.build(),
            "loss_cap": loss_cap.status(),
            "scheduler": scheduler.status(),
        }
    except Exception as e:
        return _error_response(e)


@plugin.method("treasury-health")
def treasury_health(plugin: Plugin) -> Dict[str, Any]:
    """
    Liquidity health classification for every channel.

    Usage: lightning-cli treasury-health
    """
    if health is None:
        return NOT_READY
    try:
        records = health.compute()
        return {
            "channels": [r.to_dict() for r in records],
            "summary": health.summarize(records),
        }
    except Exception as e:
        return _error_response(e)


@plugin.method("treasury-metrics")
def treasury_metrics(plugin: Plugin, channel_id: Optional[str] = None) -> Dict[str, Any]:
    """
    Per-channel profitability metrics.

    Usage: lightning-cli treasury-metrics [channel_id]
    """
    if channel_metrics is None:
        return NOT_READY
    try:
        metrics = channel_metrics.compute()
        if channel_id:
            metrics = [m for m in metrics if m.channel_id == channel_id]
            if not metrics:
                return {"status": "error", "error": f"Channel {channel_id} not found"}
        return {"channels": [m.to_dict() for m in metrics]}
    except Exception as e:
        return _error_response(e)


@plugin.method("treasury-peers")
def treasury_peers(plugin: Plugin) -> Dict[str, Any]:
    """
    Per-peer roll-up and score (best first).

    Usage: lightning-cli treasury-peers
    """
    if channel_metrics is None:
        return NOT_READY
    try:
        return {"peers": [p.to_dict() for p in channel_metrics.peer_scores()]}
    except Exception as e:
        return _error_response(e)


@plugin.method("treasury-fee-policy")
def treasury_fee_policy(plugin: Plugin, action: str = "get",
                        base_fee_msat: Optional[int] = None,
                        fee_rate_ppm: Optional[int] = None) -> Dict[str, Any]:
    """
    Get or set the base fee policy used by dynamic fees.

    Usage:
      lightning-cli treasury-fee-policy get
      lightning-cli treasury-fee-policy set [base_fee_msat] [fee_rate_ppm]
    """
    if policies is None:
        return NOT_READY
    try:
        if action == "get":
            return {"fee_policy": policies.get_fee_policy().to_dict()}
        if action == "set":
            policy = policies.set_fee_policy(base_fee_msat, fee_rate_ppm)
            plugin.log(f"FEE POLICY UPDATE: base={policy.base_fee_msat}msat rate={policy.fee_rate_ppm}ppm")
            return {"status": "success", "fee_policy": policy.to_dict()}
        return {"error": f"Unknown action: {action}. Use 'get' or 'set'"}
    except Exception as e:
        return _error_response(e)


@plugin.method("treasury-fees")
def treasury_fees(plugin: Plugin, action: str = "preview") -> Dict[str, Any]:
    """
    Dynamic fee targets by health classification.

    Usage:
      lightning-cli treasury-fees preview   # compute targets only
      lightning-cli treasury-fees apply     # push targets to channels and log them
    """
    if fee_engine is None:
        return NOT_READY
    try:
        if action == "preview":
            return {"adjustments": [a.to_dict() for a in fee_engine.compute_adjustments()]}
        if action == "apply":
            return {"status": "success", **fee_engine.apply()}
        return {"error": f"Unknown action: {action}. Use 'preview' or 'apply'"}
    except Exception as e:
        return _error_response(e)


@plugin.method("treasury-capital-policy")
def treasury_capital_policy(plugin: Plugin, action: str = "get", **kwargs) -> Dict[str, Any]:
    """
    Get or partially update the capital policy.

    Usage:
      lightning-cli treasury-capital-policy get
      lightning-cli -k treasury-capital-policy action=set max_daily_loss=8000
      lightning-cli treasury-capital-policy mark-applied
    """
    if policies is None:
        return NOT_READY
    try:
        if action == "get":
            return {"capital_policy": policies.get_capital_policy().to_dict()}
        if action == "set":
            policy = policies.update_capital_policy(**kwargs)
            plugin.log(f"CAPITAL POLICY UPDATE: {kwargs}")
            return {"status": "success", "capital_policy": policy.to_dict()}
        if action == "mark-applied":
            return {"status": "success", "capital_policy": policies.mark_capital_policy_applied().to_dict()}
        return {"error": f"Unknown action: {action}. Use 'get', 'set' or 'mark-applied'"}
    except Exception as e:
        return _error_response(e)


@plugin.method("treasury-can-expand")
def treasury_can_expand(plugin: Plugin, peer_id: str, capacity: int) -> Dict[str, Any]:
    """
    Evaluate the capital guardrails for a proposed channel open.

    Usage: lightning-cli treasury-can-expand peer_id capacity
    """
    if guardrails is None:
        return NOT_READY
    try:
        return guardrails.check(peer_id, int(capacity))
    except Exception as e:
        return _error_response(e)


@plugin.method("treasury-expansions")
def treasury_expansions(plugin: Plugin, action: str = "recommend",
                        peer_id: Optional[str] = None, capacity: Optional[int] = None,
                        dry_run: bool = False, save: bool = False,
                        limit: int = 50) -> Dict[str, Any]:
    """
    Expansion recommendations and guarded channel opens.

    Usage:
      lightning-cli treasury-expansions recommend [save=true]
      lightning-cli -k treasury-expansions action=execute peer_id=... capacity=... [dry_run=true]
      lightning-cli treasury-expansions list
    """
    if expansion is None:
        return NOT_READY
    try:
        if action == "recommend":
            recs = expansion.get_recommendations(save=_to_bool(save))
            return {"recommendations": [r.to_dict() for r in recs]}
        if action == "execute":
            if not peer_id or capacity is None:
                return {"error": "Usage: treasury-expansions execute <peer_id> <capacity>"}
            return {"status": "success",
                    **expansion.execute(peer_id, int(capacity), dry_run=_to_bool(dry_run))}
        if action == "list":
            return {"executions": [r.to_dict() for r in ledger.list(ActionKind.EXPANSION, int(limit))]}
        return {"error": f"Unknown action: {action}. Use 'recommend', 'execute' or 'list'"}
    except Exception as e:
        return _error_response(e)


@plugin.method("treasury-rotation")
def treasury_rotation(plugin: Plugin, action: str = "candidates",
                      channel_id: Optional[str] = None, force_close: bool = False,
                      dry_run: bool = False, limit: int = 50) -> Dict[str, Any]:
    """
    Rotation (closure) candidates and guarded closes.

    Usage:
      lightning-cli treasury-rotation candidates
      lightning-cli -k treasury-rotation action=execute channel_id=... [force_close=true] [dry_run=true]
      lightning-cli treasury-rotation list
    """
    if rotation is None:
        return NOT_READY
    try:
        if action == "candidates":
            return {"candidates": [c.to_dict() for c in rotation.get_candidates()]}
        if action == "execute":
            if not channel_id:
                return {"error": "Usage: treasury-rotation execute <channel_id>"}
            return {"status": "success",
                    **rotation.execute(channel_id, force_close=_to_bool(force_close),
                                       dry_run=_to_bool(dry_run))}
        if action == "list":
            return {"executions": [r.to_dict() for r in ledger.list(ActionKind.ROTATION, int(limit))]}
        return {"error": f"Unknown action: {action}. Use 'candidates', 'execute' or 'list'"}
    except Exception as e:
        return _error_response(e)


@plugin.method("treasury-rebalance")
def treasury_rebalance(plugin: Plugin, tokens: int, max_fee_sats: int,
                       outgoing_channel: Optional[str] = None,
                       incoming_channel: Optional[str] = None,
                       dry_run: bool = False) -> Dict[str, Any]:
    """
    Manual circular rebalance; channels omitted are auto-selected.

    Usage: lightning-cli -k treasury-rebalance tokens=... max_fee_sats=...
           [outgoing_channel=...] [incoming_channel=...] [dry_run=true]
    """
    if rebalancer is None:
        return NOT_READY
    try:
        result = rebalancer.manual_rebalance(
            int(tokens), int(max_fee_sats),
            outgoing_channel=outgoing_channel,
            incoming_channel=incoming_channel,
            dry_run=_to_bool(dry_run),
        )
        return {"status": "success", **result}
    except Exception as e:
        return _error_response(e)


@plugin.method("treasury-rebalances")
def treasury_rebalances(plugin: Plugin, limit: int = 50) -> Dict[str, Any]:
    """
    Recent rebalance executions and costs.

    Usage: lightning-cli treasury-rebalances [limit]
    """
    if ledger is None:
        return NOT_READY
    return {
        "executions": [r.to_dict() for r in ledger.list(ActionKind.REBALANCE, int(limit))],
        "costs": database.list_rebalance_costs(int(limit)),
        "loss_cap": loss_cap.status(),
    }


@plugin.method("treasury-scheduler")
def treasury_scheduler(plugin: Plugin, action: str = "status") -> Dict[str, Any]:
    """
    Scheduler status or a manual tick (same overlap guard as the loop).

    Usage:
      lightning-cli treasury-scheduler status
      lightning-cli treasury-scheduler tick
    """
    if scheduler is None:
        return NOT_READY
    try:
        if action == "status":
            return scheduler.status()
        if action == "tick":
            return scheduler.tick()
        return {"error": f"Unknown action: {action}. Use 'status' or 'tick'"}
    except Exception as e:
        return _error_response(e)


@plugin.method("treasury-alerts")
def treasury_alerts(plugin: Plugin) -> Dict[str, Any]:
    """
    Operator alerts across rotation, loss cap, guardrails and scheduler.

    Usage: lightning-cli treasury-alerts
    """
    if alerts is None:
        return NOT_READY
    try:
        items = alerts.compute()
        return {"alerts": [a.to_dict() for a in items], "count": len(items)}
    except Exception as e:
        return _error_response(e)


@plugin.method("treasury-config")
def treasury_config(plugin: Plugin, action: str, key: str = None, value: str = None) -> Dict[str, Any]:
    """
    Get or set runtime configuration.

    Usage:
      lightning-cli treasury-config get                  # Get all config
      lightning-cli treasury-config get <key>            # Get specific key
      lightning-cli treasury-config set <key> <value>    # Set key
      lightning-cli treasury-config reset <key>          # Remove override
      lightning-cli treasury-config list-mutable         # List changeable keys
    """
    if config is None or database is None:
        return NOT_READY

    if action == "get":
        if key:
            if not hasattr(config, key) or key.startswith('_'):
                return {"error": f"Unknown config key: {key}"}
            return {"key": key, "value": getattr(config, key), "version": config._version}
        return {"config": asdict(config.snapshot()), "version": config._version}

    if action == "set":
        if not key or value is None:
            return {"error": "Usage: treasury-config set <key> <value>"}
        result = config.update_runtime(database, key, str(value))
        if result.get("status") == "success":
            plugin.log(
                f"CONFIG UPDATE: {key} changed from {result['old_value']} "
                f"to {result['new_value']} (v{result['version']})",
                level='info'
            )
        return result

    if action == "reset":
        if not key:
            return {"error": "Usage: treasury-config reset <key>"}
        if database.delete_config_override(key):
            return {
                "status": "success",
                "message": f"Override for '{key}' removed. Restart plugin to apply default."
            }
        return {"error": f"No override found for '{key}'"}

    if action == "list-mutable":
        mutable = [k for k in CONFIG_FIELD_TYPES.keys() if k not in IMMUTABLE_CONFIG_KEYS]
        return {"mutable_keys": sorted(mutable), "count": len(mutable)}

    return {"error": f"Unknown action: {action}. Use 'get', 'set', 'reset', or 'list-mutable'"}


# =============================================================================
# NOTIFICATIONS
# =============================================================================

@plugin.subscribe("forward_event")
def on_forward_event(forward_event: Dict, plugin: Plugin, **kwargs):
    """Record settled forwards for flow velocity and profitability metrics."""
    if database is None:
        return
    if forward_event.get("status") != "settled":
        return

    in_channel = (forward_event.get("in_channel") or "").replace(':', 'x')
    out_channel = (forward_event.get("out_channel") or "").replace(':', 'x')
    if not in_channel or not out_channel:
        return

    try:
        database.record_forward(
            in_channel, out_channel,
            parse_msat(forward_event.get("in_msat", 0)),
            parse_msat(forward_event.get("out_msat", 0)),
            parse_msat(forward_event.get("fee_msat", 0)),
            int(forward_event.get("received_time", 0) or 0),
        )
    except Exception as e:
        plugin.log(f"Error recording forward: {e}", level='warn')


if __name__ == "__main__":
    plugin.run()
