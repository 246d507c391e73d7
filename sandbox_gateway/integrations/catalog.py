"""Read-only access to catalog data owned by catalog management."""
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from sandbox_gateway.database.models import Plan, Product


class CatalogReader:
    """Looks up plans and products. Never writes."""

    async def get_plan(self, db: AsyncSession, workspace_id: str, plan_id: str) -> Optional[Plan]:
        plan = await db.get(Plan, plan_id)
        if plan is None or plan.workspace_id != workspace_id:
            return None
        return plan

    async def get_product(
        self, db: AsyncSession, workspace_id: str, product_id: str
    ) -> Optional[Product]:
        product = await db.get(Product, product_id)
        if product is None or product.workspace_id != workspace_id:
            return None
        return product
