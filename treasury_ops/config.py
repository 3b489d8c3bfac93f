"""
Configuration module for cl-treasury-ops

Contains the Config dataclass that holds all tunable parameters
for the Treasury Operations plugin.

- ConfigSnapshot: Immutable snapshot for thread-safe cycle execution
- Runtime configuration updates via RPC, persisted as overrides
"""

from dataclasses import dataclass, field, fields
from typing import Dict, Any, FrozenSet, TYPE_CHECKING

if TYPE_CHECKING:
    from .database import Database


# Immutable keys that cannot be changed at runtime
IMMUTABLE_CONFIG_KEYS: FrozenSet[str] = frozenset({
    'db_path',
    'node_role',  # Role decides whether autonomous execution is allowed at all
})

# Type mapping for config fields (for validation)
CONFIG_FIELD_TYPES: Dict[str, type] = {
    'rebalance_interval': int,
    'sync_interval': int,
    'reconcile_interval': int,
    'rebalance_min_incoming_remote_ppm': int,
    'rebalance_min_outgoing_local_ppm': int,
    'rebalance_safety_buffer_sats': int,
    'scheduler_enabled': bool,
    'scheduler_dry_run': bool,
    'rebalance_default_tokens': int,
    'rebalance_max_tokens': int,
    'rebalance_default_max_fee_sats': int,
    'rebalance_cooldown_minutes': int,
    'hub_peer_id': str,
    'rotation_close_fee_sats': int,
    'pay_timeout_seconds': int,
    'route_max_hops': int,
    'final_cltv_delta': int,
    'pending_timeout_hours': int,
    'enable_prometheus': bool,
    'prometheus_port': int,
}

# Range constraints for numeric fields
CONFIG_FIELD_RANGES: Dict[str, tuple] = {
    'rebalance_interval': (60, 86400),
    'sync_interval': (60, 86400),
    'reconcile_interval': (60, 86400),
    'rebalance_min_incoming_remote_ppm': (0, 1000000),
    'rebalance_min_outgoing_local_ppm': (0, 1000000),
    'rebalance_safety_buffer_sats': (0, 10000000),
    'rebalance_default_tokens': (1, 100000000),
    'rebalance_max_tokens': (1, 100000000),
    'rebalance_default_max_fee_sats': (0, 1000000),
    'rebalance_cooldown_minutes': (0, 10080),
    'rotation_close_fee_sats': (0, 1000000),
    'pay_timeout_seconds': (1, 600),
    'route_max_hops': (1, 20),
    'final_cltv_delta': (9, 2016),
    'pending_timeout_hours': (1, 720),
    'prometheus_port': (1024, 65535),
}


# Default chain cost assumptions
class ChainCostDefaults:
    """
    Default assumptions for on-chain costs.

    The close cost is the worst-case fee charged against the daily loss cap
    before a rotation close is issued.
    """

    CHANNEL_CLOSE_COST_SATS: int = 3000


@dataclass
class Config:
    """
    Configuration container for the Treasury Operations plugin.

    All values can be set via plugin options at startup.
    """

    # Database path
    db_path: str = '~/.lightning/treasury_ops.db'

    # Node role: only 'treasury' nodes run the autonomous scheduler
    node_role: str = 'treasury'

    # Timer intervals (in seconds)
    rebalance_interval: int = 600   # 10 minutes
    sync_interval: int = 300        # 5 minutes
    reconcile_interval: int = 900   # 15 minutes

    # Circular rebalance viability thresholds
    rebalance_min_incoming_remote_ppm: int = 200000  # Incoming must have >= 20% remote
    rebalance_min_outgoing_local_ppm: int = 200000   # Outgoing must have >= 20% local
    rebalance_safety_buffer_sats: int = 1000         # Headroom kept above reserves

    # Rebalance scheduler
    scheduler_enabled: bool = False
    scheduler_dry_run: bool = True
    rebalance_default_tokens: int = 100000
    rebalance_max_tokens: int = 500000
    rebalance_default_max_fee_sats: int = 100
    rebalance_cooldown_minutes: int = 60

    # Designated hub/self peer, never rotated ('' = no exclusion)
    hub_peer_id: str = ''

    # Rotation
    rotation_close_fee_sats: int = ChainCostDefaults.CHANNEL_CLOSE_COST_SATS

    # Payment / routing
    pay_timeout_seconds: int = 60
    route_max_hops: int = 6
    final_cltv_delta: int = 18

    # Ledger reconciliation: submitted records older than this are failed
    pending_timeout_hours: int = 72

    # Prometheus Metrics
    enable_prometheus: bool = False
    prometheus_port: int = 9810

    # Internal version tracking (not a user-configurable option)
    _version: int = field(default=0, repr=False, compare=False)

    def snapshot(self) -> 'ConfigSnapshot':
        """
        Create an immutable snapshot for cycle execution.

        Scheduler ticks and operator operations capture a snapshot once and
        read only from it, so a runtime update mid-cycle is never half-seen.
        """
        return ConfigSnapshot.from_config(self)

    def load_overrides(self, database: 'Database') -> None:
        """Load config overrides from database on startup."""
        overrides = database.get_all_config_overrides()
        for key, value in overrides.items():
            if hasattr(self, key) and key not in IMMUTABLE_CONFIG_KEYS:
                self._apply_override(key, value)
        self._version = database.get_config_version()

    def _apply_override(self, key: str, value: str) -> None:
        """Apply a single override with type conversion."""
        try:
            setattr(self, key, _convert(key, value))
        except (ValueError, TypeError):
            pass  # Keep default if conversion fails

    def update_runtime(self, database: 'Database', key: str, value: str) -> Dict[str, Any]:
        """
        Transactional runtime update: Validate -> Write DB -> Read-Back -> Update Memory.

        Returns:
            Dict with status, old_value, new_value, version
        """
        if key in IMMUTABLE_CONFIG_KEYS:
            return {"error": f"Key '{key}' cannot be changed at runtime"}

        if not hasattr(self, key) or key.startswith('_'):
            return {"error": f"Unknown config key: {key}"}

        field_type = CONFIG_FIELD_TYPES.get(key, str)
        try:
            typed_value = _convert(key, value)
        except (ValueError, TypeError) as e:
            return {"error": f"Invalid value for {key} (expected {field_type.__name__}): {e}"}

        if key in CONFIG_FIELD_RANGES:
            min_val, max_val = CONFIG_FIELD_RANGES[key]
            if not (min_val <= typed_value <= max_val):
                return {"error": f"Value {typed_value} out of range [{min_val}, {max_val}] for {key}"}

        old_value = getattr(self, key)

        new_version = database.set_config_override(key, value)

        # Read back so memory never diverges from what was persisted
        read_back = database.get_config_override(key)
        if read_back != value:
            return {"error": "Database write verification failed"}

        setattr(self, key, typed_value)
        self._version = new_version

        return {
            "status": "success",
            "key": key,
            "old_value": old_value,
            "new_value": typed_value,
            "version": new_version
        }


def _convert(key: str, value: str) -> Any:
    field_type = CONFIG_FIELD_TYPES.get(key, str)
    if field_type == bool:
        return str(value).lower() in ('true', '1', 'yes', 'on')
    if field_type == int:
        return int(value)
    if field_type == float:
        return float(value)
    return value


@dataclass(frozen=True)
class ConfigSnapshot:
    """
    Immutable configuration snapshot for thread-safe cycle execution.

    Usage:
        def tick(self):
            cfg = self.config.snapshot()  # Immutable for this cycle
            # All logic uses cfg, never self.config directly
    """
    db_path: str
    node_role: str

    # Timer intervals (in seconds)
    rebalance_interval: int
    sync_interval: int
    reconcile_interval: int

    # Circular rebalance viability thresholds
    rebalance_min_incoming_remote_ppm: int
    rebalance_min_outgoing_local_ppm: int
    rebalance_safety_buffer_sats: int

    # Rebalance scheduler
    scheduler_enabled: bool
    scheduler_dry_run: bool
    rebalance_default_tokens: int
    rebalance_max_tokens: int
    rebalance_default_max_fee_sats: int
    rebalance_cooldown_minutes: int

    hub_peer_id: str
    rotation_close_fee_sats: int

    # Payment / routing
    pay_timeout_seconds: int
    route_max_hops: int
    final_cltv_delta: int

    pending_timeout_hours: int

    # Prometheus Metrics
    enable_prometheus: bool
    prometheus_port: int

    # Version tracking
    version: int = 0

    @classmethod
    def from_config(cls, config: 'Config') -> 'ConfigSnapshot':
        """Create snapshot from mutable Config."""
        values = {f.name: getattr(config, f.name) for f in fields(cls) if f.name != 'version'}
        return cls(version=config._version, **values)
