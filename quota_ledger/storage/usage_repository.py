"""
Repository for free-tier daily usage counters.
"""

import logging
from datetime import UTC, date, datetime

from quota_ledger.models.usage import QuotaType, UsageRecord
from quota_ledger.storage.database import LedgerDatabase, format_ts

logger = logging.getLogger(__name__)


class UsageRecordRepository:
    """Daily usage counters keyed by (user_id, quota_type, date)."""

    def __init__(self, db: LedgerDatabase):
        self.db = db

    async def increment_if_below(
        self, user_id: str, quota_type: QuotaType, day: date, limit: int
    ) -> int | None:
        """
        Atomically add one to today's counter if the result stays within limit.

        Creates the day's record on first use. The debit is a single
        conditional UPDATE, so concurrent callers are linearized by the store.

        Returns:
            int: The counter value after the increment, or None if refused
        """
        now = format_ts(datetime.now(UTC))
        key = (user_id, quota_type.value, day.isoformat())

        with self.db.transaction() as conn:
            conn.execute(
                """
                INSERT OR IGNORE INTO usage_records (
                    user_id, quota_type, usage_date, count, updated_at
                ) VALUES (?, ?, ?, 0, ?)
                """,
                (*key, now),
            )
            cursor = conn.execute(
                """
                UPDATE usage_records
                SET count = count + 1,
                    updated_at = ?
                WHERE user_id = ? AND quota_type = ? AND usage_date = ?
                  AND count + 1 <= ?
                """,
                (now, *key, limit),
            )
            if cursor.rowcount == 0:
                return None

            row = conn.execute(
                """
                SELECT count FROM usage_records
                WHERE user_id = ? AND quota_type = ? AND usage_date = ?
                """,
                key,
            ).fetchone()

        return row["count"]

    async def get_count(self, user_id: str, quota_type: QuotaType, day: date) -> int:
        row = self.db.fetch_one(
            """
            SELECT count FROM usage_records
            WHERE user_id = ? AND quota_type = ? AND usage_date = ?
            """,
            (user_id, quota_type.value, day.isoformat()),
        )
        return row["count"] if row else 0

    async def get_records(self, user_id: str, day: date) -> list[UsageRecord]:
        """Get all of a user's counters for one calendar day."""
        rows = self.db.fetch_all(
            """
            SELECT user_id, quota_type, usage_date, count FROM usage_records
            WHERE user_id = ? AND usage_date = ?
            ORDER BY quota_type
            """,
            (user_id, day.isoformat()),
        )
        return [
            UsageRecord(
                user_id=row["user_id"],
                quota_type=QuotaType(row["quota_type"]),
                date=date.fromisoformat(row["usage_date"]),
                count=row["count"],
            )
            for row in rows
        ]
