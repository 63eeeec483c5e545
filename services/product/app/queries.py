"""
Product Service — クエリハンドラ (CQRS の Read 側)
"""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .tables import products


def _to_dict(row) -> dict:
    return {
        "id": row.id,
        "name": row.name,
        "description": row.description,
        "category": row.category,
        "price": float(row.price),
        "stock": row.stock,
        "createdAt": row.created_at.isoformat() if row.created_at else None,
        "updatedAt": row.updated_at.isoformat() if row.updated_at else None,
    }


async def get_product(session: AsyncSession, product_id: str) -> dict | None:
    result = await session.execute(select(products).where(products.c.id == product_id))
    row = result.fetchone()
    if not row:
        return None
    return _to_dict(row)


async def list_products(session: AsyncSession) -> list[dict]:
    result = await session.execute(select(products).order_by(products.c.name))
    return [_to_dict(row) for row in result.fetchall()]


async def list_by_category(session: AsyncSession, category: str) -> list[dict]:
    result = await session.execute(
        select(products).where(products.c.category == category).order_by(products.c.name)
    )
    return [_to_dict(row) for row in result.fetchall()]
