"""
Repository for payment orders.
"""

import logging
import sqlite3
from datetime import datetime
from decimal import Decimal

from quota_ledger.errors import ConflictError
from quota_ledger.models.payment import PaymentOrder, PaymentStatus, PaymentType
from quota_ledger.models.subscription import SubscriptionTier
from quota_ledger.storage.database import LedgerDatabase, format_ts, parse_ts

logger = logging.getLogger(__name__)


def _row_to_order(row: sqlite3.Row) -> PaymentOrder:
    return PaymentOrder(
        order_id=row["order_id"],
        user_id=row["user_id"],
        type=PaymentType(row["type"]),
        tier=SubscriptionTier(row["tier"]),
        status=PaymentStatus(row["status"]),
        amount=Decimal(row["amount"]),
        currency=row["currency"],
        presentment_url=row["presentment_url"],
        provider_reference=row["provider_reference"],
        failure_reason=row["failure_reason"],
        created_at=parse_ts(row["created_at"]),
        expires_at=parse_ts(row["expires_at"]),
        paid_at=parse_ts(row["paid_at"]),
        resolved_at=parse_ts(row["resolved_at"]),
    )


class PaymentOrderRepository:
    """
    Payment orders keyed by order_id.

    Orders are written once as PENDING and resolved at most once.
    """

    def __init__(self, db: LedgerDatabase):
        self.db = db

    async def create(self, order: PaymentOrder) -> PaymentOrder:
        """
        Persist a new order.

        Raises:
            ConflictError: If the order_id is already taken
        """
        try:
            with self.db.transaction() as conn:
                conn.execute(
                    """
                    INSERT INTO payment_orders (
                        order_id, user_id, type, tier, status, amount, currency,
                        presentment_url, provider_reference, failure_reason,
                        created_at, expires_at, paid_at, resolved_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        order.order_id,
                        order.user_id,
                        order.type.value,
                        order.tier.value,
                        order.status.value,
                        str(order.amount),
                        order.currency,
                        order.presentment_url,
                        order.provider_reference,
                        order.failure_reason,
                        format_ts(order.created_at),
                        format_ts(order.expires_at),
                        format_ts(order.paid_at),
                        format_ts(order.resolved_at),
                    ),
                )
                self.db.log_audit(
                    conn,
                    action="CREATE",
                    resource_type="payment_order",
                    user_id=order.user_id,
                    resource_id=order.order_id,
                    details=f"type={order.type.value} tier={order.tier.value} amount={order.amount}",
                )
        except sqlite3.IntegrityError as e:
            raise ConflictError(f"Order {order.order_id} already exists") from e

        logger.info(
            "Payment order created",
            extra={"user_id": order.user_id, "order_id": order.order_id},
        )
        return order

    async def exists(self, order_id: str) -> bool:
        row = self.db.fetch_one("SELECT 1 FROM payment_orders WHERE order_id = ?", (order_id,))
        return row is not None

    async def get(self, order_id: str) -> PaymentOrder | None:
        row = self.db.fetch_one("SELECT * FROM payment_orders WHERE order_id = ?", (order_id,))
        return _row_to_order(row) if row else None

    async def resolve(
        self,
        order_id: str,
        status: PaymentStatus,
        now: datetime,
        provider_reference: str | None = None,
        paid_at: datetime | None = None,
        failure_reason: str | None = None,
    ) -> PaymentOrder | None:
        """
        Resolve a PENDING order to SUCCESS or FAILED.

        Conditional on the row still being PENDING, so of two concurrent
        resolutions exactly one wins.

        Returns:
            The resolved order, or None if it was no longer pending
        """
        if not status.is_resolved:
            raise ValueError("Orders can only be resolved to success or failed")

        if status == PaymentStatus.SUCCESS and paid_at is None:
            paid_at = now

        with self.db.transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE payment_orders
                SET status = ?,
                    provider_reference = COALESCE(?, provider_reference),
                    paid_at = ?,
                    failure_reason = ?,
                    resolved_at = ?
                WHERE order_id = ? AND status = 'pending'
                """,
                (
                    status.value,
                    provider_reference,
                    format_ts(paid_at) if status == PaymentStatus.SUCCESS else None,
                    failure_reason if status == PaymentStatus.FAILED else None,
                    format_ts(now),
                    order_id,
                ),
            )
            if cursor.rowcount == 0:
                return None

            row = conn.execute(
                "SELECT * FROM payment_orders WHERE order_id = ?", (order_id,)
            ).fetchone()
            order = _row_to_order(row)
            self.db.log_audit(
                conn,
                action="RESOLVE",
                resource_type="payment_order",
                user_id=order.user_id,
                resource_id=order_id,
                details=f"status={status.value}",
            )

        return order

    async def correct_to_success(
        self,
        order_id: str,
        now: datetime,
        provider_reference: str | None = None,
        paid_at: datetime | None = None,
    ) -> PaymentOrder | None:
        """
        Flip a FAILED order to SUCCESS after the provider reported it paid.

        Conditional on the row still being FAILED. The previous failure
        reason is kept in the audit log.

        Returns:
            The corrected order, or None if it was not failed
        """
        with self.db.transaction() as conn:
            previous = conn.execute(
                "SELECT failure_reason FROM payment_orders WHERE order_id = ? AND status = 'failed'",
                (order_id,),
            ).fetchone()
            if previous is None:
                return None

            conn.execute(
                """
                UPDATE payment_orders
                SET status = 'success',
                    provider_reference = COALESCE(?, provider_reference),
                    paid_at = ?,
                    failure_reason = NULL,
                    resolved_at = ?
                WHERE order_id = ? AND status = 'failed'
                """,
                (provider_reference, format_ts(paid_at or now), format_ts(now), order_id),
            )

            row = conn.execute(
                "SELECT * FROM payment_orders WHERE order_id = ?", (order_id,)
            ).fetchone()
            order = _row_to_order(row)
            self.db.log_audit(
                conn,
                action="CORRECT",
                resource_type="payment_order",
                user_id=order.user_id,
                resource_id=order_id,
                details=f"failed -> success (was: {previous['failure_reason']})",
            )

        logger.warning(
            "Failed order corrected to success",
            extra={"user_id": order.user_id, "order_id": order_id},
        )
        return order

    async def list_unprovisioned_successes(self) -> list[PaymentOrder]:
        """Successful orders with no provisioning row."""
        rows = self.db.fetch_all(
            """
            SELECT o.* FROM payment_orders o
            LEFT JOIN provisionings p ON p.order_id = o.order_id
            WHERE o.status = 'success' AND p.order_id IS NULL
            ORDER BY o.resolved_at
            """
        )
        return [_row_to_order(row) for row in rows]

    async def list_expired_pending(self, now: datetime) -> list[PaymentOrder]:
        """Pending orders whose presentment window has closed."""
        rows = self.db.fetch_all(
            """
            SELECT * FROM payment_orders
            WHERE status = 'pending' AND expires_at IS NOT NULL AND expires_at <= ?
            ORDER BY created_at
            """,
            (format_ts(now),),
        )
        return [_row_to_order(row) for row in rows]

    async def list_for_user(self, user_id: str, limit: int = 50) -> list[PaymentOrder]:
        rows = self.db.fetch_all(
            """
            SELECT * FROM payment_orders WHERE user_id = ?
            ORDER BY created_at DESC LIMIT ?
            """,
            (user_id, limit),
        )
        return [_row_to_order(row) for row in rows]
