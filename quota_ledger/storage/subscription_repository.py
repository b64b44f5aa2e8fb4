"""
Repository for per-user subscriptions and the provisioning ledger.
"""

import logging
import sqlite3
from collections.abc import Callable
from datetime import datetime

from quota_ledger.models.subscription import (
    Subscription,
    SubscriptionStatus,
    SubscriptionTier,
)
from quota_ledger.storage.database import LedgerDatabase, format_ts, parse_ts

logger = logging.getLogger(__name__)

# Columns a status transition may touch alongside the status itself
_TRANSITION_COLUMNS = {"auto_renew", "grace_period_ends_at", "cancelled_at"}


def _row_to_subscription(row: sqlite3.Row) -> Subscription:
    return Subscription(
        user_id=row["user_id"],
        tier=SubscriptionTier(row["tier"]),
        status=SubscriptionStatus(row["status"]),
        monthly_quota_limit=row["monthly_quota_limit"],
        monthly_quota_used=row["monthly_quota_used"],
        current_period_start=parse_ts(row["current_period_start"]),
        current_period_end=parse_ts(row["current_period_end"]),
        auto_renew=bool(row["auto_renew"]),
        grace_period_ends_at=parse_ts(row["grace_period_ends_at"]),
        cancelled_at=parse_ts(row["cancelled_at"]),
        created_at=parse_ts(row["created_at"]),
        updated_at=parse_ts(row["updated_at"]),
    )


def _select(conn: sqlite3.Connection, user_id: str) -> Subscription | None:
    row = conn.execute("SELECT * FROM subscriptions WHERE user_id = ?", (user_id,)).fetchone()
    return _row_to_subscription(row) if row else None


class SubscriptionRepository:
    """
    Subscriptions keyed by user_id, plus one provisioning row per paid order.

    Status writes are compare-and-swap on the previous status.
    """

    def __init__(self, db: LedgerDatabase):
        self.db = db

    async def get(self, user_id: str) -> Subscription | None:
        row = self.db.fetch_one("SELECT * FROM subscriptions WHERE user_id = ?", (user_id,))
        return _row_to_subscription(row) if row else None

    async def increment_monthly_usage(self, user_id: str, now: datetime) -> Subscription | None:
        """
        Debit one unit of monthly quota if the subscription has paid access
        and the debit keeps used within limit.

        Returns:
            Subscription after the debit, or None if the conditional update
            matched nothing (exhausted, or access lost concurrently)
        """
        now_ts = format_ts(now)
        with self.db.transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE subscriptions
                SET monthly_quota_used = monthly_quota_used + 1,
                    updated_at = ?
                WHERE user_id = ?
                  AND monthly_quota_used + 1 <= monthly_quota_limit
                  AND (
                      status IN ('active', 'grace_period')
                      OR (status = 'cancelled' AND current_period_end > ?)
                  )
                """,
                (now_ts, user_id, now_ts),
            )
            if cursor.rowcount == 0:
                return None
            return _select(conn, user_id)

    async def provision(
        self,
        user_id: str,
        order_id: str | None,
        build: Callable[[Subscription | None], Subscription],
        now: datetime,
    ) -> tuple[Subscription, bool]:
        """
        Write a freshly provisioned subscription, at most once per order.

        The provisioning row and the subscription upsert commit together.
        `build` receives the current record (read under the write lock) and
        returns the record to store.

        Args:
            user_id: Subscriber
            order_id: Paid order funding this provisioning (None for comps)
            build: Computes the new subscription from the current one
            now: Provisioning timestamp

        Returns:
            tuple: (subscription, applied) where applied is False when the
            order had already been provisioned
        """
        with self.db.transaction() as conn:
            current = _select(conn, user_id)

            if order_id is not None:
                cursor = conn.execute(
                    """
                    INSERT OR IGNORE INTO provisionings (order_id, user_id, tier, provisioned_at)
                    VALUES (?, ?, '', ?)
                    """,
                    (order_id, user_id, format_ts(now)),
                )
                if cursor.rowcount == 0:
                    logger.info(
                        "Order already provisioned, skipping",
                        extra={"user_id": user_id, "order_id": order_id},
                    )
                    return current, False

            sub = build(current)
            if order_id is not None:
                conn.execute(
                    "UPDATE provisionings SET tier = ? WHERE order_id = ?",
                    (sub.tier.value, order_id),
                )

            conn.execute(
                """
                INSERT INTO subscriptions (
                    user_id, tier, status, monthly_quota_limit, monthly_quota_used,
                    current_period_start, current_period_end, auto_renew,
                    grace_period_ends_at, cancelled_at, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                    tier = excluded.tier,
                    status = excluded.status,
                    monthly_quota_limit = excluded.monthly_quota_limit,
                    monthly_quota_used = excluded.monthly_quota_used,
                    current_period_start = excluded.current_period_start,
                    current_period_end = excluded.current_period_end,
                    auto_renew = excluded.auto_renew,
                    grace_period_ends_at = excluded.grace_period_ends_at,
                    cancelled_at = excluded.cancelled_at,
                    updated_at = excluded.updated_at
                """,
                (
                    sub.user_id,
                    sub.tier.value,
                    sub.status.value,
                    sub.monthly_quota_limit,
                    sub.monthly_quota_used,
                    format_ts(sub.current_period_start),
                    format_ts(sub.current_period_end),
                    1 if sub.auto_renew else 0,
                    format_ts(sub.grace_period_ends_at),
                    format_ts(sub.cancelled_at),
                    format_ts(sub.created_at),
                    format_ts(sub.updated_at),
                ),
            )

            self.db.log_audit(
                conn,
                action="PROVISION",
                resource_type="subscription",
                user_id=user_id,
                resource_id=order_id,
                details=(
                    f"tier={sub.tier.value} limit={sub.monthly_quota_limit} "
                    f"period_end={format_ts(sub.current_period_end)}"
                ),
            )

            return _select(conn, user_id), True

    async def compare_and_set_status(
        self,
        user_id: str,
        expected: SubscriptionStatus,
        target: SubscriptionStatus,
        now: datetime,
        **fields,
    ) -> Subscription | None:
        """
        Move a subscription from `expected` to `target` status.

        Args:
            user_id: Subscriber
            expected: Status the record must currently have
            target: New status
            now: Timestamp for updated_at
            **fields: Extra columns to set (auto_renew, grace_period_ends_at, cancelled_at)

        Returns:
            Updated subscription, or None if the record was not in `expected`
        """
        unknown = set(fields) - _TRANSITION_COLUMNS
        if unknown:
            raise ValueError(f"Cannot set columns on transition: {sorted(unknown)}")

        updates = ["status = ?", "updated_at = ?"]
        params: list = [target.value, format_ts(now)]
        for column, value in fields.items():
            updates.append(f"{column} = ?")
            if isinstance(value, datetime) or value is None:
                params.append(format_ts(value))
            elif isinstance(value, bool):
                params.append(1 if value else 0)
            else:
                params.append(value)
        params.extend([user_id, expected.value])

        with self.db.transaction() as conn:
            cursor = conn.execute(
                f"UPDATE subscriptions SET {', '.join(updates)} WHERE user_id = ? AND status = ?",
                params,
            )
            if cursor.rowcount == 0:
                return None

            self.db.log_audit(
                conn,
                action="TRANSITION",
                resource_type="subscription",
                user_id=user_id,
                resource_id=user_id,
                details=f"{expected.value}->{target.value}",
            )
            return _select(conn, user_id)

    async def list_due_for_lifecycle(self, now: datetime) -> list[Subscription]:
        """Subscriptions whose period or grace window has run out."""
        now_ts = format_ts(now)
        rows = self.db.fetch_all(
            """
            SELECT * FROM subscriptions
            WHERE (status IN ('active', 'cancelled') AND current_period_end <= ?)
               OR (status = 'grace_period' AND grace_period_ends_at <= ?)
            ORDER BY user_id
            """,
            (now_ts, now_ts),
        )
        return [_row_to_subscription(row) for row in rows]

    async def is_provisioned(self, order_id: str) -> bool:
        row = self.db.fetch_one("SELECT 1 FROM provisionings WHERE order_id = ?", (order_id,))
        return row is not None
