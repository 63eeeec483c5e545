"""
Order Service — クエリハンドラ (CQRS の Read 側)
"""

from collections import defaultdict
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .aggregate import OrderAggregate
from .tables import order_items, orders


async def _load_many(session: AsyncSession, stmt) -> list[OrderAggregate]:
    rows = (await session.execute(stmt)).fetchall()
    if not rows:
        return []

    result = await session.execute(
        select(order_items)
        .where(order_items.c.order_id.in_([row.id for row in rows]))
        .order_by(order_items.c.id)
    )
    items_by_order = defaultdict(list)
    for item in result.fetchall():
        items_by_order[item.order_id].append(item)

    return [OrderAggregate.from_rows(row, items_by_order[row.id]) for row in rows]


async def load_order(session: AsyncSession, order_id: UUID) -> OrderAggregate | None:
    """注文 1 件を明細ごと読み込む。なければ None。"""
    found = await _load_many(session, select(orders).where(orders.c.id == order_id))
    return found[0] if found else None


async def get_order(session: AsyncSession, order_id: UUID) -> dict | None:
    order = await load_order(session, order_id)
    return order.to_dict() if order else None


async def list_orders(session: AsyncSession) -> list[dict]:
    """全注文を新しい順に取得する。"""
    stmt = select(orders).order_by(orders.c.created_at.desc())
    return [order.to_dict() for order in await _load_many(session, stmt)]


async def list_user_orders(session: AsyncSession, user_id: str) -> list[dict]:
    stmt = (
        select(orders)
        .where(orders.c.user_id == user_id)
        .order_by(orders.c.created_at.desc())
    )
    return [order.to_dict() for order in await _load_many(session, stmt)]
