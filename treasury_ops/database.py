"""
Database module for cl-treasury-ops

Handles SQLite persistence for:
- Settled forwards (flow and fee history)
- Channel cache (reporting copy of the last node snapshot)
- Capital and fee policy singletons
- Execution ledgers (expansion, rotation, rebalance)
- Rebalance costs (loss cap input)
- Fee application log and expansion recommendations
- Runtime config overrides
"""

import sqlite3
import os
import time
import threading
from contextlib import contextmanager
from typing import Dict, List, Optional, Any, Iterable, Generator


# Execution ledger tables; the only table names interpolated into SQL
EXECUTION_TABLES = frozenset({
    'expansion_executions',
    'rotation_executions',
    'rebalance_executions',
})

CAPITAL_POLICY_COLUMNS = (
    'min_onchain_reserve',
    'max_deploy_ratio_ppm',
    'max_pending_opens',
    'max_peer_capacity',
    'peer_cooldown_minutes',
    'max_expansions_per_day',
    'max_daily_deploy',
    'max_daily_loss',
)


class Database:
    """
    SQLite database manager for the Treasury Operations plugin.

    The store is shared by every component and re-read on each decision;
    aggregate queries return 0 or empty results when no rows match.

    Thread Safety:
    - Each thread gets its own SQLite connection via threading.local(), so
      a batch transaction on one thread never absorbs another thread's writes
    - WAL mode lets the background loops read while another thread writes
    """

    def __init__(self, db_path: str, plugin):
        """
        Initialize the database connection.

        Args:
            db_path: Path to SQLite database file
            plugin: Reference to the pyln Plugin for logging
        """
        self.db_path = os.path.expanduser(db_path)
        self.plugin = plugin
        self._local = threading.local()

    def _get_connection(self) -> sqlite3.Connection:
        """Get or create the calling thread's database connection."""
        conn = getattr(self._local, 'conn', None)
        if conn is None:
            directory = os.path.dirname(self.db_path)
            if directory:
                os.makedirs(directory, exist_ok=True)

            conn = sqlite3.connect(
                self.db_path,
                isolation_level=None,  # Autocommit mode
                timeout=30.0  # Wait for another thread's write lock
            )
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL;")
            self._local.conn = conn
            self.plugin.log(
                f"Database: created connection for thread {threading.current_thread().name}",
                level='debug'
            )
        return conn

    @contextmanager
    def transaction(self) -> Generator[sqlite3.Connection, None, None]:
        """
        Atomic multi-statement write on this thread's connection.

        Yields:
            sqlite3.Connection: The thread-local connection inside BEGIN IMMEDIATE
        """
        conn = self._get_connection()
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        conn.execute("COMMIT")

    def initialize(self):
        """Create database tables if they don't exist."""
        conn = self._get_connection()

        # Real-time forwards tracking
        conn.execute("""
            CREATE TABLE IF NOT EXISTS forwards (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                in_channel TEXT NOT NULL,
                out_channel TEXT NOT NULL,
                in_msat INTEGER NOT NULL,
                out_msat INTEGER NOT NULL,
                fee_msat INTEGER NOT NULL,
                timestamp INTEGER NOT NULL
            )
        """)

        # Reporting cache of the last channel snapshot (never a decision input)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS channel_cache (
                channel_id TEXT PRIMARY KEY,
                peer_id TEXT NOT NULL,
                capacity INTEGER NOT NULL,
                local_balance INTEGER NOT NULL,
                remote_balance INTEGER NOT NULL,
                is_active INTEGER NOT NULL,
                updated_at INTEGER NOT NULL
            )
        """)

        # Capital policy singleton (id = 1)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS capital_policy (
                id INTEGER PRIMARY KEY CHECK (id = 1),
                min_onchain_reserve INTEGER NOT NULL,
                max_deploy_ratio_ppm INTEGER NOT NULL,
                max_pending_opens INTEGER NOT NULL,
                max_peer_capacity INTEGER NOT NULL,
                peer_cooldown_minutes INTEGER NOT NULL,
                max_expansions_per_day INTEGER NOT NULL,
                max_daily_deploy INTEGER NOT NULL,
                max_daily_loss INTEGER NOT NULL,
                updated_at INTEGER NOT NULL,
                last_applied_at INTEGER
            )
        """)

        # Fee policy singleton (id = 1); fee_rate_ppm = 0 means "not configured"
        conn.execute("""
            CREATE TABLE IF NOT EXISTS fee_policy (
                id INTEGER PRIMARY KEY CHECK (id = 1),
                base_fee_msat INTEGER NOT NULL DEFAULT 0,
                fee_rate_ppm INTEGER NOT NULL DEFAULT 0,
                updated_at INTEGER NOT NULL,
                last_applied_at INTEGER
            )
        """)

        # Execution ledgers: status is 'requested' | 'submitted' | 'succeeded' | 'failed'
        conn.execute("""
            CREATE TABLE IF NOT EXISTS expansion_executions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                peer_id TEXT NOT NULL,
                capacity_sats INTEGER NOT NULL,
                status TEXT NOT NULL,
                funding_txid TEXT,
                fee_paid_sats INTEGER,
                error TEXT,
                created_at INTEGER NOT NULL,
                updated_at INTEGER NOT NULL
            )
        """)

        conn.execute("""
            CREATE TABLE IF NOT EXISTS rotation_executions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                channel_id TEXT NOT NULL,
                peer_id TEXT NOT NULL,
                capacity_sats INTEGER NOT NULL DEFAULT 0,
                local_sats INTEGER NOT NULL DEFAULT 0,
                roi_ppm INTEGER NOT NULL DEFAULT 0,
                reason TEXT,
                is_force_close INTEGER NOT NULL DEFAULT 0,
                status TEXT NOT NULL,
                closing_txid TEXT,
                fee_paid_sats INTEGER,
                error TEXT,
                created_at INTEGER NOT NULL,
                updated_at INTEGER NOT NULL
            )
        """)

        conn.execute("""
            CREATE TABLE IF NOT EXISTS rebalance_executions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                type TEXT NOT NULL,
                tokens INTEGER NOT NULL,
                outgoing_channel TEXT NOT NULL,
                incoming_channel TEXT NOT NULL,
                max_fee_sats INTEGER NOT NULL,
                status TEXT NOT NULL,
                payment_hash TEXT,
                fee_paid_sats INTEGER,
                error TEXT,
                created_at INTEGER NOT NULL,
                updated_at INTEGER NOT NULL
            )
        """)

        # Append-only rebalance spend; the loss cap sums this table
        conn.execute("""
            CREATE TABLE IF NOT EXISTS rebalance_costs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                type TEXT NOT NULL,  -- 'circular', 'loop_out', 'loop_in', 'manual'
                tokens INTEGER NOT NULL,
                fee_paid_sats INTEGER NOT NULL,
                related_channel TEXT,
                created_at INTEGER NOT NULL
            )
        """)

        # Applied fee targets audit log
        conn.execute("""
            CREATE TABLE IF NOT EXISTS channel_fee_log (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                channel_id TEXT NOT NULL,
                peer_id TEXT NOT NULL,
                classification TEXT NOT NULL,
                base_fee_rate_ppm INTEGER NOT NULL,
                target_fee_rate_ppm INTEGER NOT NULL,
                applied INTEGER NOT NULL,
                error TEXT,
                applied_at INTEGER NOT NULL
            )
        """)

        conn.execute("""
            CREATE TABLE IF NOT EXISTS expansion_recommendations (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                channel_id TEXT NOT NULL,
                peer_id TEXT NOT NULL,
                suggested_capacity INTEGER NOT NULL,
                priority_score INTEGER NOT NULL,
                reason TEXT,
                created_at INTEGER NOT NULL
            )
        """)

        # Runtime config overrides
        conn.execute("""
            CREATE TABLE IF NOT EXISTS config_overrides (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                version INTEGER NOT NULL,
                updated_at INTEGER NOT NULL
            )
        """)

        # Create indexes for common queries
        conn.execute("CREATE INDEX IF NOT EXISTS idx_forwards_time ON forwards(timestamp)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_forwards_channels ON forwards(in_channel, out_channel)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_rebalance_costs_time ON rebalance_costs(created_at)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_expansion_exec_peer ON expansion_executions(peer_id, created_at)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_expansion_exec_status ON expansion_executions(status)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_rotation_exec_status ON rotation_executions(status)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_rebalance_exec_status ON rebalance_executions(status, created_at)")

        self.plugin.log("Database initialized successfully")

    # =========================================================================
    # Forward Tracking Methods
    # =========================================================================

    def record_forward(self, in_channel: str, out_channel: str,
                       in_msat: int, out_msat: int, fee_msat: int,
                       timestamp: Optional[int] = None):
        """Record a settled forward."""
        conn = self._get_connection()
        ts = int(timestamp) if timestamp else int(time.time())

        conn.execute("""
            INSERT INTO forwards
            (in_channel, out_channel, in_msat, out_msat, fee_msat, timestamp)
            VALUES (?, ?, ?, ?, ?, ?)
        """, (in_channel, out_channel, in_msat, out_msat, fee_msat, ts))

    def bulk_insert_forwards(self, forwards: Iterable[Dict[str, Any]]) -> int:
        """Insert many forwards in one transaction. Returns the row count."""
        rows = [
            (f['in_channel'], f['out_channel'], f['in_msat'], f['out_msat'],
             f['fee_msat'], int(f['timestamp']))
            for f in forwards
        ]
        if not rows:
            return 0
        with self.transaction() as conn:
            conn.executemany("""
                INSERT INTO forwards
                (in_channel, out_channel, in_msat, out_msat, fee_msat, timestamp)
                VALUES (?, ?, ?, ?, ?, ?)
            """, rows)
        return len(rows)

    def get_latest_forward_timestamp(self) -> Optional[int]:
        """Timestamp of the newest stored forward, or None when empty."""
        conn = self._get_connection()
        row = conn.execute("SELECT MAX(timestamp) as latest FROM forwards").fetchone()
        return row['latest'] if row and row['latest'] is not None else None

    def get_forward_flows(self, since_timestamp: int) -> Dict[str, Dict[str, int]]:
        """
        Per-channel forwarded volume split by direction since a timestamp.

        `incoming` counts forwards that entered through the channel,
        `outgoing` those that left through it. Values are in sats.
        """
        conn = self._get_connection()
        flows: Dict[str, Dict[str, int]] = {}

        for row in conn.execute("""
            SELECT in_channel as channel_id, COALESCE(SUM(out_msat), 0) as volume_msat
            FROM forwards WHERE timestamp >= ? GROUP BY in_channel
        """, (since_timestamp,)).fetchall():
            entry = flows.setdefault(row['channel_id'], {'incoming': 0, 'outgoing': 0})
            entry['incoming'] += row['volume_msat'] // 1000

        for row in conn.execute("""
            SELECT out_channel as channel_id, COALESCE(SUM(out_msat), 0) as volume_msat
            FROM forwards WHERE timestamp >= ? GROUP BY out_channel
        """, (since_timestamp,)).fetchall():
            entry = flows.setdefault(row['channel_id'], {'incoming': 0, 'outgoing': 0})
            entry['outgoing'] += row['volume_msat'] // 1000

        return flows

    def get_forward_totals(self, since_timestamp: int = 0) -> Dict[str, Dict[str, int]]:
        """
        Per-channel forwarded volume and fees, counting a forward on both hops.

        Returns {channel_id: {"volume": sats, "fees": sats}}.
        """
        conn = self._get_connection()
        totals: Dict[str, Dict[str, int]] = {}

        for column in ('in_channel', 'out_channel'):
            rows = conn.execute(f"""
                SELECT {column} as channel_id,
                       COALESCE(SUM(out_msat), 0) as volume_msat,
                       COALESCE(SUM(fee_msat), 0) as fee_msat
                FROM forwards WHERE timestamp >= ? GROUP BY {column}
            """, (since_timestamp,)).fetchall()
            for row in rows:
                entry = totals.setdefault(row['channel_id'], {'volume': 0, 'fees': 0})
                entry['volume'] += row['volume_msat'] // 1000
                entry['fees'] += row['fee_msat'] // 1000

        return totals

    def get_forward_summary(self, since_timestamp: int = 0) -> Dict[str, int]:
        """Node-wide forwarded volume and earned fees (each forward once)."""
        conn = self._get_connection()
        row = conn.execute("""
            SELECT COUNT(*) as forward_count,
                   COALESCE(SUM(out_msat), 0) as volume_msat,
                   COALESCE(SUM(fee_msat), 0) as fee_msat
            FROM forwards WHERE timestamp >= ?
        """, (since_timestamp,)).fetchone()
        return {
            'forward_count': row['forward_count'],
            'volume_sats': row['volume_msat'] // 1000,
            'fees_sats': row['fee_msat'] // 1000,
        }

    # =========================================================================
    # Channel Cache Methods
    # =========================================================================

    def replace_channel_cache(self, channels: Iterable[Dict[str, Any]]) -> int:
        """Replace the cached channel set with a fresh snapshot."""
        now = int(time.time())
        rows = [
            (c['channel_id'], c['peer_id'], c['capacity'], c['local_balance'],
             c['remote_balance'], 1 if c['is_active'] else 0, now)
            for c in channels
        ]
        with self.transaction() as conn:
            conn.execute("DELETE FROM channel_cache")
            conn.executemany("""
                INSERT INTO channel_cache
                (channel_id, peer_id, capacity, local_balance, remote_balance, is_active, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, rows)
        return len(rows)

    def get_cached_channels(self) -> List[Dict[str, Any]]:
        conn = self._get_connection()
        rows = conn.execute("SELECT * FROM channel_cache ORDER BY channel_id").fetchall()
        return [dict(row) for row in rows]

    # =========================================================================
    # Policy Methods
    # =========================================================================

    def get_capital_policy(self) -> Optional[Dict[str, Any]]:
        conn = self._get_connection()
        row = conn.execute("SELECT * FROM capital_policy WHERE id = 1").fetchone()
        return dict(row) if row else None

    def insert_capital_policy(self, values: Dict[str, int]) -> None:
        """Insert the singleton row if absent (concurrent inserts are ignored)."""
        conn = self._get_connection()
        now = int(time.time())
        columns = ', '.join(CAPITAL_POLICY_COLUMNS)
        placeholders = ', '.join('?' * len(CAPITAL_POLICY_COLUMNS))
        conn.execute(f"""
            INSERT OR IGNORE INTO capital_policy (id, {columns}, updated_at)
            VALUES (1, {placeholders}, ?)
        """, (*[int(values[c]) for c in CAPITAL_POLICY_COLUMNS], now))

    def update_capital_policy(self, updates: Dict[str, int]) -> None:
        """Partially update the capital policy row."""
        unknown = set(updates) - set(CAPITAL_POLICY_COLUMNS)
        if unknown:
            raise ValueError(f"Unknown capital policy fields: {sorted(unknown)}")
        if not updates:
            return
        conn = self._get_connection()
        assignments = ', '.join(f"{column} = ?" for column in updates)
        conn.execute(
            f"UPDATE capital_policy SET {assignments}, updated_at = ? WHERE id = 1",
            (*updates.values(), int(time.time()))
        )

    def mark_capital_policy_applied(self) -> None:
        conn = self._get_connection()
        conn.execute("UPDATE capital_policy SET last_applied_at = ? WHERE id = 1",
                     (int(time.time()),))

    def get_fee_policy(self) -> Optional[Dict[str, Any]]:
        conn = self._get_connection()
        row = conn.execute("SELECT * FROM fee_policy WHERE id = 1").fetchone()
        return dict(row) if row else None

    def set_fee_policy(self, base_fee_msat: int, fee_rate_ppm: int) -> None:
        conn = self._get_connection()
        now = int(time.time())
        conn.execute("""
            INSERT INTO fee_policy (id, base_fee_msat, fee_rate_ppm, updated_at)
            VALUES (1, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                base_fee_msat = excluded.base_fee_msat,
                fee_rate_ppm = excluded.fee_rate_ppm,
                updated_at = excluded.updated_at
        """, (base_fee_msat, fee_rate_ppm, now))

    def mark_fee_policy_applied(self) -> None:
        conn = self._get_connection()
        conn.execute("UPDATE fee_policy SET last_applied_at = ? WHERE id = 1",
                     (int(time.time()),))

    # =========================================================================
    # Execution Ledger Methods
    # =========================================================================

    def _check_table(self, table: str) -> None:
        if table not in EXECUTION_TABLES:
            raise ValueError(f"Unknown execution table: {table}")

    def insert_execution(self, table: str, params: Dict[str, Any], status: str,
                         created_at: Optional[int] = None) -> int:
        """Insert a ledger row and return its id."""
        self._check_table(table)
        conn = self._get_connection()
        now = int(created_at) if created_at is not None else int(time.time())
        columns = list(params.keys()) + ['status', 'created_at', 'updated_at']
        values = list(params.values()) + [status, now, now]
        cursor = conn.execute(
            f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({', '.join('?' * len(columns))})",
            values
        )
        return cursor.lastrowid

    def transition_execution(self, table: str, execution_id: int, new_status: str,
                             from_statuses: Iterable[str],
                             reference_column: str,
                             reference: Optional[str] = None,
                             fee_paid_sats: Optional[int] = None,
                             error: Optional[str] = None) -> bool:
        """
        Move a ledger row to new_status only if it is currently in from_statuses.

        The status guard lives in the WHERE clause so a terminal row can never
        be rewritten, even by a concurrent writer. Returns True if a row changed.
        """
        self._check_table(table)
        sources = list(from_statuses)
        conn = self._get_connection()
        cursor = conn.execute(f"""
            UPDATE {table}
            SET status = ?,
                {reference_column} = COALESCE(?, {reference_column}),
                fee_paid_sats = COALESCE(?, fee_paid_sats),
                error = COALESCE(?, error),
                updated_at = ?
            WHERE id = ? AND status IN ({', '.join('?' * len(sources))})
        """, (new_status, reference, fee_paid_sats, error, int(time.time()),
              execution_id, *sources))
        return cursor.rowcount > 0

    def get_execution(self, table: str, execution_id: int) -> Optional[Dict[str, Any]]:
        self._check_table(table)
        conn = self._get_connection()
        row = conn.execute(f"SELECT * FROM {table} WHERE id = ?", (execution_id,)).fetchone()
        return dict(row) if row else None

    def list_executions(self, table: str, limit: int = 50,
                        statuses: Optional[Iterable[str]] = None) -> List[Dict[str, Any]]:
        self._check_table(table)
        conn = self._get_connection()
        if statuses:
            wanted = list(statuses)
            rows = conn.execute(f"""
                SELECT * FROM {table}
                WHERE status IN ({', '.join('?' * len(wanted))})
                ORDER BY created_at DESC, id DESC LIMIT ?
            """, (*wanted, limit)).fetchall()
        else:
            rows = conn.execute(f"""
                SELECT * FROM {table} ORDER BY created_at DESC, id DESC LIMIT ?
            """, (limit,)).fetchall()
        return [dict(row) for row in rows]

    def count_executions_by_status(self, table: str) -> Dict[str, int]:
        self._check_table(table)
        conn = self._get_connection()
        rows = conn.execute(f"""
            SELECT status, COUNT(*) as cnt FROM {table} GROUP BY status
        """).fetchall()
        return {row['status']: row['cnt'] for row in rows}

    def get_expansion_activity_since(self, since_timestamp: int,
                                     statuses: Iterable[str]) -> Dict[str, int]:
        """Count and summed capacity of expansions created since a timestamp."""
        wanted = list(statuses)
        conn = self._get_connection()
        row = conn.execute(f"""
            SELECT COUNT(*) as cnt, COALESCE(SUM(capacity_sats), 0) as total
            FROM expansion_executions
            WHERE created_at >= ? AND status IN ({', '.join('?' * len(wanted))})
        """, (since_timestamp, *wanted)).fetchone()
        return {'count': row['cnt'], 'capacity_sats': row['total']}

    def get_last_expansion_time(self, peer_id: str, statuses: Iterable[str]) -> Optional[int]:
        wanted = list(statuses)
        conn = self._get_connection()
        row = conn.execute(f"""
            SELECT MAX(created_at) as last_time FROM expansion_executions
            WHERE peer_id = ? AND status IN ({', '.join('?' * len(wanted))})
        """, (peer_id, *wanted)).fetchone()
        return row['last_time'] if row and row['last_time'] is not None else None

    def get_last_rebalance_success_time(self) -> Optional[int]:
        """Most recent succeeded rebalance execution (scheduler cooldown)."""
        conn = self._get_connection()
        row = conn.execute("""
            SELECT MAX(updated_at) as last_time FROM rebalance_executions
            WHERE status = 'succeeded'
        """).fetchone()
        return row['last_time'] if row and row['last_time'] is not None else None

    # =========================================================================
    # Rebalance Cost Methods
    # =========================================================================

    def record_rebalance_cost(self, cost_type: str, tokens: int, fee_paid_sats: int,
                              related_channel: Optional[str] = None,
                              timestamp: Optional[int] = None) -> int:
        conn = self._get_connection()
        ts = int(timestamp) if timestamp is not None else int(time.time())
        cursor = conn.execute("""
            INSERT INTO rebalance_costs (type, tokens, fee_paid_sats, related_channel, created_at)
            VALUES (?, ?, ?, ?, ?)
        """, (cost_type, tokens, fee_paid_sats, related_channel, ts))
        return cursor.lastrowid

    def get_rebalance_fees_since(self, since_timestamp: int) -> int:
        """Total rebalance fees paid since a timestamp (0 if none)."""
        conn = self._get_connection()
        row = conn.execute("""
            SELECT COALESCE(SUM(fee_paid_sats), 0) as total_fees
            FROM rebalance_costs WHERE created_at >= ?
        """, (since_timestamp,)).fetchone()
        return row['total_fees'] if row else 0

    def get_rebalance_costs_by_channel(self) -> Dict[str, int]:
        conn = self._get_connection()
        rows = conn.execute("""
            SELECT related_channel, COALESCE(SUM(fee_paid_sats), 0) as total
            FROM rebalance_costs WHERE related_channel IS NOT NULL
            GROUP BY related_channel
        """).fetchall()
        return {row['related_channel']: row['total'] for row in rows}

    def list_rebalance_costs(self, limit: int = 50) -> List[Dict[str, Any]]:
        conn = self._get_connection()
        rows = conn.execute("""
            SELECT * FROM rebalance_costs ORDER BY created_at DESC, id DESC LIMIT ?
        """, (limit,)).fetchall()
        return [dict(row) for row in rows]

    # =========================================================================
    # Fee Log & Recommendation Methods
    # =========================================================================

    def record_channel_fee(self, channel_id: str, peer_id: str, classification: str,
                           base_fee_rate_ppm: int, target_fee_rate_ppm: int,
                           applied: bool, error: Optional[str] = None) -> None:
        conn = self._get_connection()
        conn.execute("""
            INSERT INTO channel_fee_log
            (channel_id, peer_id, classification, base_fee_rate_ppm, target_fee_rate_ppm,
             applied, error, applied_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """, (channel_id, peer_id, classification, base_fee_rate_ppm, target_fee_rate_ppm,
              1 if applied else 0, error, int(time.time())))

    def get_recent_channel_fees(self, limit: int = 50) -> List[Dict[str, Any]]:
        conn = self._get_connection()
        rows = conn.execute("""
            SELECT * FROM channel_fee_log ORDER BY applied_at DESC, id DESC LIMIT ?
        """, (limit,)).fetchall()
        return [dict(row) for row in rows]

    def save_expansion_recommendations(self, recommendations: Iterable[Dict[str, Any]]) -> int:
        conn = self._get_connection()
        now = int(time.time())
        rows = [
            (r['channel_id'], r['peer_id'], r['suggested_capacity'],
             r['priority_score'], r.get('reason'), now)
            for r in recommendations
        ]
        conn.executemany("""
            INSERT INTO expansion_recommendations
            (channel_id, peer_id, suggested_capacity, priority_score, reason, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
        """, rows)
        return len(rows)

    # =========================================================================
    # Config Override Methods
    # =========================================================================

    def get_config_version(self) -> int:
        conn = self._get_connection()
        row = conn.execute("SELECT MAX(version) as v FROM config_overrides").fetchone()
        return row['v'] if row and row['v'] is not None else 0

    def set_config_override(self, key: str, value: str) -> int:
        """Persist an override and return the new config version."""
        conn = self._get_connection()
        new_version = self.get_config_version() + 1
        conn.execute("""
            INSERT OR REPLACE INTO config_overrides (key, value, version, updated_at)
            VALUES (?, ?, ?, ?)
        """, (key, value, new_version, int(time.time())))
        return new_version

    def get_config_override(self, key: str) -> Optional[str]:
        conn = self._get_connection()
        row = conn.execute("SELECT value FROM config_overrides WHERE key = ?", (key,)).fetchone()
        return row['value'] if row else None

    def get_all_config_overrides(self) -> Dict[str, str]:
        conn = self._get_connection()
        rows = conn.execute("SELECT key, value FROM config_overrides").fetchall()
        return {row['key']: row['value'] for row in rows}

    def delete_config_override(self, key: str) -> bool:
        conn = self._get_connection()
        cursor = conn.execute("DELETE FROM config_overrides WHERE key = ?", (key,))
        return cursor.rowcount > 0

    def close(self):
        """Close the calling thread's connection."""
        conn = getattr(self._local, 'conn', None)
        if conn:
            conn.close()
            self._local.conn = None
