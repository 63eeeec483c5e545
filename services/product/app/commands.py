"""
Product Service — コマンドハンドラ (CQRS の Write 側)

商品カタログの保守と、引き当てプロトコルの在庫所有者側を担う。
在庫ステップはバスまたは Order Service の直接呼び出しから少なくとも 1 回届き、
高々 1 回だけ適用される:

    kind        在庫の変化                    スキップ条件
    ─────────   ──────────────────────────   ─────────────────────────────
    reserved    stock - quantity             restore 済み (遅着)
    confirmed   なし (引き当てを確定)          -
    restored    stock + quantity             confirm 済み、または未引き当て

適用したステップは ``inventory_ledger`` に主キー (order_id, product_id, kind)
で記録する。2 回目の配送はこのキーに当たって何もしない。
在庫の書き込みは商品の ``version`` による compare-and-swap。
"""

import logging
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import delete, insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from services.shared.bus import EventBus
from services.shared.events import (
    InventoryChange,
    InventoryUpdated,
    ProductChanged,
    ProductDeleted,
)

from . import queries
from .tables import inventory_ledger, products

logger = logging.getLogger(__name__)

MAX_CAS_ATTEMPTS = 5


class StockConflict(Exception):
    """CAS 更新の最中に在庫カウンタが変わり続けた"""


async def create_product(
    session: AsyncSession,
    bus: EventBus,
    name: str,
    price: float,
    stock: int = 0,
    category: str | None = None,
    description: str = "",
    product_id: str | None = None,
) -> dict:
    now = datetime.now(timezone.utc)
    product_id = product_id or uuid4().hex
    await session.execute(
        insert(products).values(
            id=product_id,
            name=name,
            description=description,
            category=category,
            price=price,
            stock=stock,
            version=1,
            created_at=now,
            updated_at=now,
        )
    )
    await session.commit()

    product = await queries.get_product(session, product_id)
    await bus.publish_best_effort(ProductChanged(product=product), "product.created")
    return product


async def update_product(
    session: AsyncSession,
    bus: EventBus,
    product_id: str,
    changes: dict,
) -> dict | None:
    """
    商品更新コマンド

    在庫を編集した場合は、変更前後の在庫数を載せた inventory.updated も発行する。
    """
    for attempt in range(1, MAX_CAS_ATTEMPTS + 1):
        result = await session.execute(select(products).where(products.c.id == product_id))
        row = result.fetchone()
        if not row:
            return None

        values = {key: value for key, value in changes.items() if value is not None}
        result = await session.execute(
            update(products)
            .where(products.c.id == product_id, products.c.version == row.version)
            .values(
                **values,
                version=row.version + 1,
                updated_at=datetime.now(timezone.utc),
            )
        )
        if result.rowcount == 1:
            await session.commit()
            break
        await session.rollback()
        logger.info("Product %s changed concurrently (attempt %d)", product_id, attempt)
    else:
        raise StockConflict(f"Product {product_id} kept changing; update abandoned")

    product = await queries.get_product(session, product_id)
    await bus.publish_best_effort(ProductChanged(product=product), "product.updated")

    if "stock" in values and values["stock"] != row.stock:
        await bus.publish_best_effort(
            InventoryUpdated(
                product_id=product_id,
                stock=values["stock"],
                previous_stock=row.stock,
            )
        )
    return product


async def delete_product(session: AsyncSession, bus: EventBus, product_id: str) -> bool:
    product = await queries.get_product(session, product_id)
    if not product:
        return False

    await session.execute(delete(products).where(products.c.id == product_id))
    await session.commit()
    logger.info("Deleted product %s (%s)", product_id, product["name"])

    await bus.publish_best_effort(
        ProductDeleted(product_id=product_id, product_name=product["name"])
    )
    return True


# ── 在庫引き当てプロトコル ──────────────────────


async def _applied_kinds(session: AsyncSession, change: InventoryChange) -> set[str]:
    result = await session.execute(
        select(inventory_ledger.c.kind).where(
            inventory_ledger.c.order_id == change.order_id,
            inventory_ledger.c.product_id == change.product_id,
        )
    )
    return set(result.scalars().all())


async def _adjust_stock(session: AsyncSession, product_id: str, delta: int) -> bool:
    for attempt in range(1, MAX_CAS_ATTEMPTS + 1):
        result = await session.execute(
            select(products.c.stock, products.c.version).where(products.c.id == product_id)
        )
        row = result.fetchone()
        if not row:
            logger.warning("Product %s no longer exists; stock change skipped", product_id)
            return False

        new_stock = row.stock + delta
        if new_stock < 0:
            logger.warning(
                "Product %s oversold: stock %d, change %d", product_id, row.stock, delta
            )

        result = await session.execute(
            update(products)
            .where(products.c.id == product_id, products.c.version == row.version)
            .values(
                stock=new_stock,
                version=row.version + 1,
                updated_at=datetime.now(timezone.utc),
            )
        )
        if result.rowcount == 1:
            return True
        logger.info("Stock of %s changed concurrently (attempt %d)", product_id, attempt)

    raise StockConflict(f"Stock of product {product_id} kept changing")


async def apply_inventory_change(session: AsyncSession, change: InventoryChange) -> bool:
    """
    引き当てステップを一度だけ適用する。適用済みなら False を返す。

    1. 台帳で同じ注文・商品の適用済み kind を確認
    2. 必要なら在庫を CAS で増減
    3. 台帳に記録
    """
    already = await _applied_kinds(session, change)
    if change.kind in already:
        logger.info(
            "inventory.%s for order %s product %s already applied",
            change.kind,
            change.order_id,
            change.product_id,
        )
        return False

    try:
        await session.execute(
            insert(inventory_ledger).values(
                order_id=change.order_id,
                product_id=change.product_id,
                kind=change.kind,
                quantity=change.quantity,
                applied_at=datetime.now(timezone.utc),
            )
        )
    except IntegrityError:
        # 同じステップの並行配送が先に台帳に書き込んだ
        await session.rollback()
        return False

    delta = 0
    if change.kind == "reserved" and "restored" not in already:
        delta = -change.quantity
    elif change.kind == "restored" and "reserved" in already and "confirmed" not in already:
        delta = change.quantity

    if delta:
        await _adjust_stock(session, change.product_id, delta)
    await session.commit()

    logger.info(
        "Applied inventory.%s for order %s product %s (stock %+d)",
        change.kind,
        change.order_id,
        change.product_id,
        delta,
    )
    return True
