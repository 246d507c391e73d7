"""Per-workspace customer aggregates kept in step with session outcomes."""
from typing import Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from sandbox_gateway.database.models import Customer, CustomerCurrencyTotal
from sandbox_gateway.database.statements import insert_ignore
from sandbox_gateway.utils import Clock, new_id, utc_now

logger = structlog.get_logger(__name__)


class CustomerLedger:
    """
    Upserts customers and maintains their running totals.

    Counters move with single UPDATE statements so concurrent completions
    never lose an increment. Callers own the transaction.
    """

    def __init__(self, clock: Clock = utc_now):
        self.clock = clock

    async def find(self, db: AsyncSession, workspace_id: str, email: str) -> Optional[Customer]:
        result = await db.execute(
            select(Customer).where(
                Customer.workspace_id == workspace_id,
                Customer.email == email.lower(),
            )
        )
        return result.scalar_one_or_none()

    async def ensure(
        self,
        db: AsyncSession,
        workspace_id: str,
        email: str,
        name: Optional[str],
        currency: str,
    ) -> bool:
        """
        Make sure a customer exists for (workspace, email).

        Returns:
            bool: True if the customer was created by this call
        """
        created = await insert_ignore(
            db,
            Customer,
            {
                "id": new_id("cust"),
                "workspace_id": workspace_id,
                "email": email.lower(),
                "name": name,
                "currency": currency,
                "total_transactions": 0,
                "created_at": self.clock(),
            },
            index_elements=["workspace_id", "email"],
        )
        if created:
            logger.info("customer_created", workspace_id=workspace_id, email=email.lower())
        return created

    async def _adjust(
        self,
        db: AsyncSession,
        workspace_id: str,
        email: str,
        currency: str,
        count_delta: int,
        amount_delta: int,
    ) -> None:
        await self.ensure(db, workspace_id, email, None, currency)
        customer = await self.find(db, workspace_id, email)

        await db.execute(
            update(Customer)
            .where(Customer.id == customer.id)
            .values(total_transactions=Customer.total_transactions + count_delta)
        )
        await insert_ignore(
            db,
            CustomerCurrencyTotal,
            {"customer_id": customer.id, "currency": currency, "count": 0, "total": 0},
            index_elements=["customer_id", "currency"],
        )
        await db.execute(
            update(CustomerCurrencyTotal)
            .where(
                CustomerCurrencyTotal.customer_id == customer.id,
                CustomerCurrencyTotal.currency == currency,
            )
            .values(
                count=CustomerCurrencyTotal.count + count_delta,
                total=CustomerCurrencyTotal.total + amount_delta,
            )
        )

    async def record_completed(
        self, db: AsyncSession, workspace_id: str, email: str, currency: str, amount: int
    ) -> None:
        await self._adjust(db, workspace_id, email, currency, 1, amount)

    async def record_refund(
        self, db: AsyncSession, workspace_id: str, email: str, currency: str, amount: int
    ) -> None:
        """Reverse a completed payment (fully or partially) in the aggregates."""
        await self._adjust(db, workspace_id, email, currency, -1, -amount)

    async def currency_total(
        self, db: AsyncSession, workspace_id: str, email: str, currency: str
    ) -> int:
        customer = await self.find(db, workspace_id, email)
        if customer is None:
            return 0
        result = await db.execute(
            select(CustomerCurrencyTotal.total).where(
                CustomerCurrencyTotal.customer_id == customer.id,
                CustomerCurrencyTotal.currency == currency,
            )
        )
        return result.scalar_one_or_none() or 0
