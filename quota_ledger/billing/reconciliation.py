"""
Reconciliation job.

Scheduled sweep (see scripts/run_reconciliation.py) that repairs what the
request path can leave behind:

1. Successful orders without a provisioning record are provisioned again
   (idempotent, keyed by order id)
2. Pending orders past their presentment window are failed
3. Subscription lifecycle edges driven by time are applied
"""

import logging
from collections.abc import Callable
from datetime import UTC, datetime

from pydantic import BaseModel, Field

from quota_ledger.billing.payment_gateway import PaymentGateway
from quota_ledger.billing.subscription_service import SubscriptionService
from quota_ledger.errors import ReconciliationError
from quota_ledger.observability.metrics import track_reconciliation_replay
from quota_ledger.storage.payment_repository import PaymentOrderRepository

logger = logging.getLogger(__name__)


class ReconciliationReport(BaseModel):
    """Outcome of one reconciliation run."""

    started_at: datetime
    replayed: int = 0
    replay_failures: list[str] = Field(default_factory=list, description="Order ids still unprovisioned")
    expired_orders: int = 0
    expired_subscriptions: int = 0
    entered_grace_period: int = 0

    @property
    def ok(self) -> bool:
        return not self.replay_failures


class ReconciliationJob:
    """Runs the three reconciliation sweeps in order."""

    def __init__(
        self,
        gateway: PaymentGateway,
        subscription_service: SubscriptionService,
        payment_repository: PaymentOrderRepository,
        clock: Callable[[], datetime] | None = None,
    ):
        self.gateway = gateway
        self.subscription_service = subscription_service
        self.payment_repository = payment_repository
        self.clock = clock or (lambda: datetime.now(UTC))

    async def run_once(self) -> ReconciliationReport:
        """
        Run one full reconciliation pass.

        Replay failures are logged and reported, never dropped; the next
        run picks the same orders up again.
        """
        now = self.clock()
        report = ReconciliationReport(started_at=now)

        for order in await self.payment_repository.list_unprovisioned_successes():
            try:
                await self.gateway.replay_provisioning(order.order_id)
            except ReconciliationError as e:
                track_reconciliation_replay(False)
                report.replay_failures.append(order.order_id)
                logger.error(
                    "Provisioning replay failed",
                    extra={"user_id": e.user_id, "order_id": e.order_id, "error": str(e)},
                )
                continue

            track_reconciliation_replay(True)
            report.replayed += 1
            logger.info(
                "Provisioning replayed",
                extra={"user_id": order.user_id, "order_id": order.order_id},
            )

        report.expired_orders = await self.gateway.expire_stale_orders(now)

        lifecycle = await self.subscription_service.process_lifecycle(now)
        report.expired_subscriptions = lifecycle.get("expired", 0)
        report.entered_grace_period = lifecycle.get("grace_period", 0)

        logger.info(
            "Reconciliation run complete",
            extra={
                "replayed": report.replayed,
                "replay_failures": len(report.replay_failures),
                "expired_orders": report.expired_orders,
                "expired_subscriptions": report.expired_subscriptions,
                "entered_grace_period": report.entered_grace_period,
            },
        )
        return report
