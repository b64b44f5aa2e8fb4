"""
Ledger storage using SQLite.

Every invariant of the ledger is enforced here rather than in application
memory: conditional UPDATEs for quota debits and order resolution, a
provisioning table keyed by order id for idempotent provisioning, and
IMMEDIATE transactions so multi-statement units serialize on the write lock.

Security features:
- Prepared statements (SQL injection protection)
- Audit logging for all subscription and order mutations

Performance features:
- WAL journal mode so readers never block the single writer
- Busy timeout instead of failing fast when another process holds the lock
"""

import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS usage_records (
    user_id TEXT NOT NULL,
    quota_type TEXT NOT NULL,
    usage_date TEXT NOT NULL,
    count INTEGER NOT NULL DEFAULT 0,
    updated_at TEXT NOT NULL,

    PRIMARY KEY (user_id, quota_type, usage_date),
    CHECK (count >= 0)
);

CREATE TABLE IF NOT EXISTS subscriptions (
    user_id TEXT PRIMARY KEY,
    tier TEXT NOT NULL,
    status TEXT NOT NULL,
    monthly_quota_limit INTEGER NOT NULL DEFAULT 0,
    monthly_quota_used INTEGER NOT NULL DEFAULT 0,
    current_period_start TEXT NOT NULL,
    current_period_end TEXT NOT NULL,
    auto_renew INTEGER NOT NULL DEFAULT 1,
    grace_period_ends_at TEXT,
    cancelled_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,

    CHECK (status IN ('active', 'cancelled', 'grace_period', 'expired')),
    CHECK (monthly_quota_used >= 0),
    CHECK (monthly_quota_limit >= 0),
    CHECK (auto_renew IN (0, 1))
);

CREATE TABLE IF NOT EXISTS provisionings (
    order_id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    tier TEXT NOT NULL,
    provisioned_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS payment_orders (
    order_id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    type TEXT NOT NULL,
    tier TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    amount TEXT NOT NULL,
    currency TEXT NOT NULL,
    presentment_url TEXT,
    provider_reference TEXT,
    failure_reason TEXT,
    created_at TEXT NOT NULL,
    expires_at TEXT,
    paid_at TEXT,
    resolved_at TEXT,

    CHECK (status IN ('pending', 'success', 'failed')),
    CHECK (type IN ('initial', 'renewal'))
);

CREATE TABLE IF NOT EXISTS audit_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp TEXT NOT NULL,
    user_id TEXT,
    action TEXT NOT NULL,
    resource_type TEXT NOT NULL,
    resource_id TEXT,
    details TEXT
);

CREATE INDEX IF NOT EXISTS idx_usage_user_date ON usage_records(user_id, usage_date);
CREATE INDEX IF NOT EXISTS idx_subscriptions_status ON subscriptions(status);
CREATE INDEX IF NOT EXISTS idx_orders_user ON payment_orders(user_id);
CREATE INDEX IF NOT EXISTS idx_orders_status ON payment_orders(status);
CREATE INDEX IF NOT EXISTS idx_audit_user ON audit_log(user_id);
CREATE INDEX IF NOT EXISTS idx_audit_timestamp ON audit_log(timestamp);
"""


def format_ts(value: datetime | None) -> str | None:
    """
    Serialize a timestamp as fixed-width UTC ISO 8601.

    Fixed width keeps lexicographic order equal to chronological order, which
    the expiry queries rely on.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%S.%f+00:00")


def parse_ts(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value)


class LedgerDatabase:
    """
    Durable store for usage records, subscriptions and payment orders.

    One connection per instance (per process). Connections run in autocommit
    mode; multi-statement units go through transaction(), which takes the
    write lock up front with BEGIN IMMEDIATE.
    """

    def __init__(self, db_path: str = "./data/ledger.db", busy_timeout_seconds: float = 5.0):
        """
        Initialize ledger database.

        Args:
            db_path: Path to SQLite database file
            busy_timeout_seconds: How long to wait for a competing writer
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.busy_timeout_seconds = busy_timeout_seconds

        # Connection will be created lazily
        self._conn: sqlite3.Connection | None = None
        self._initialized = False

    async def initialize(self) -> None:
        """
        Initialize database schema.

        Idempotent - safe to call multiple times and from multiple processes.
        """
        if self._initialized:
            return

        logger.info(f"Initializing ledger database at {self.db_path}")

        conn = self._get_connection()
        try:
            conn.execute("PRAGMA journal_mode = WAL")
            conn.executescript(SCHEMA)
        except sqlite3.Error as e:
            logger.error(f"Failed to initialize database: {e}")
            raise

        self._initialized = True
        logger.info("Ledger database initialized successfully")

    def _get_connection(self) -> sqlite3.Connection:
        """Get database connection (creates if needed)."""
        if self._conn is None:
            self._conn = sqlite3.connect(
                str(self.db_path),
                timeout=self.busy_timeout_seconds,
                isolation_level=None,
                check_same_thread=False,
            )
            self._conn.row_factory = sqlite3.Row
        return self._conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """
        Run a unit of work under the database write lock.

        Commits on normal exit, rolls back on any exception.
        """
        conn = self._get_connection()
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        else:
            conn.execute("COMMIT")

    def fetch_one(self, query: str, params: tuple = ()) -> sqlite3.Row | None:
        return self._get_connection().execute(query, params).fetchone()

    def fetch_all(self, query: str, params: tuple = ()) -> list[sqlite3.Row]:
        return self._get_connection().execute(query, params).fetchall()

    def log_audit(
        self,
        conn: sqlite3.Connection,
        action: str,
        resource_type: str,
        user_id: str | None = None,
        resource_id: str | None = None,
        details: str | None = None,
    ) -> None:
        """
        Append an audit row inside the caller's transaction.

        Args:
            conn: Connection holding the open transaction
            action: Action performed (PROVISION, CANCEL, RESOLVE, ...)
            resource_type: Type of resource (subscription, payment_order)
            user_id: Affected user
            resource_id: ID of affected resource
            details: Additional details
        """
        conn.execute(
            """
            INSERT INTO audit_log (
                timestamp, user_id, action, resource_type, resource_id, details
            ) VALUES (?, ?, ?, ?, ?, ?)
            """,
            (format_ts(datetime.now(UTC)), user_id, action, resource_type, resource_id, details),
        )

    def close(self) -> None:
        """Close database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None
            self._initialized = False


# Global instance
_db: LedgerDatabase | None = None


async def get_ledger_db() -> LedgerDatabase:
    """
    Get global ledger database instance.

    Returns:
        LedgerDatabase: Initialized database
    """
    global _db
    if _db is None:
        from quota_ledger.config import get_settings

        storage = get_settings().storage
        _db = LedgerDatabase(
            db_path=storage.db_path, busy_timeout_seconds=storage.busy_timeout_seconds
        )
        await _db.initialize()
    return _db
