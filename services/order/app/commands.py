"""
Order Service — コマンドハンドラ (CQRS の Write 側)

各コマンドは先に永続化し、その後でバスに話す。永続化の成功が正であり、
その後の発行に失敗してもログに残して捨てる (在庫ステップは直接経路で送る) だけで、
書き込みを取り消すことはない。

既存の注文への書き込みは ``version`` による compare-and-swap:

    UPDATE orders SET ..., version = :v + 1 WHERE id = :id AND version = :v

他の書き手が先に更新していたら、読み直してからリトライする。
"""

import logging
from collections.abc import Sequence
from datetime import datetime, timezone
from typing import Protocol
from uuid import UUID, uuid4

from sqlalchemy import delete, insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from services.shared.bus import EventBus
from services.shared.events import OrderCreated, OrderDeleted, OrderStatusUpdated

from . import queries
from .aggregate import (
    ENTRY_STATUSES,
    TERMINAL_STATUSES,
    OrderAggregate,
    OrderItem,
    OrderStatus,
)
from .clients import CatalogClient
from .errors import (
    ConcurrencyConflict,
    InsufficientStock,
    OrderNotFound,
    OrderValidationError,
    ReferenceNotFound,
)
from .reservation import InventoryReservations
from .tables import order_items, orders

logger = logging.getLogger(__name__)

MAX_CAS_ATTEMPTS = 3
USER_DELETED_NOTE = "User account has been deleted"
PRODUCT_DELETED_NOTE = "Product {name} is no longer available"

_TERMINAL = [status.value for status in TERMINAL_STATUSES]


class OrderLine(Protocol):
    product_id: str
    quantity: int


def _parse_status(status: str | OrderStatus) -> OrderStatus:
    try:
        return OrderStatus(status)
    except ValueError:
        allowed = ", ".join(s.value for s in OrderStatus)
        raise OrderValidationError(
            f"Unknown status '{status}'; expected one of: {allowed}"
        ) from None


def _merge_lines(lines: Sequence[OrderLine]) -> dict[str, int]:
    """商品ごとの要求数量 (初出順)"""
    requested: dict[str, int] = {}
    for line in lines:
        if not line.product_id:
            raise OrderValidationError("Every product line needs a productId")
        if line.quantity is None or line.quantity <= 0:
            raise OrderValidationError(
                f"Quantity for product {line.product_id} must be a positive integer"
            )
        requested[line.product_id] = requested.get(line.product_id, 0) + line.quantity
    return requested


async def create_order(
    session: AsyncSession,
    catalog: CatalogClient,
    reservations: InventoryReservations,
    bus: EventBus,
    user_id: str,
    products: Sequence[OrderLine],
    status: str | OrderStatus = OrderStatus.PROCESSING,
) -> OrderAggregate:
    """
    注文作成コマンド

    1. リクエストと参照先エンティティをすべて検証 (まだ書き込まない)
    2. 明細ごとに価格・商品名のスナップショットを付けて注文を保存
    3. 全明細の在庫を引き当て (イベントバス、または直接呼び出し)
    4. order.created を発行

    1 で失敗したら注文全体を中止する。何も保存せず、何も引き当てない。
    """
    if not user_id:
        raise OrderValidationError("User ID and products array are required")
    if not products:
        raise OrderValidationError("User ID and products array are required")

    initial_status = _parse_status(status)
    if initial_status not in ENTRY_STATUSES:
        raise OrderValidationError(
            f"New orders start as pending or processing, not {initial_status.value}"
        )

    requested = _merge_lines(products)

    if await catalog.get_user(user_id) is None:
        raise ReferenceNotFound(f"User {user_id} not found")

    items: list[OrderItem] = []
    for product_id, quantity in requested.items():
        product = await catalog.get_product(product_id)
        if product is None:
            raise ReferenceNotFound(f"Product with ID {product_id} not found")
        if quantity > product["stock"]:
            raise InsufficientStock(
                f"Not enough stock for product {product['name']}. "
                f"Available: {product['stock']}"
            )
        items.append(
            OrderItem(
                product_id=product_id,
                quantity=quantity,
                name=product["name"],
                price=float(product["price"]),
            )
        )

    order = OrderAggregate.create(
        uuid4(), user_id, items, initial_status, datetime.now(timezone.utc)
    )

    await session.execute(
        insert(orders).values(
            id=order.id,
            user_id=order.user_id,
            total_amount=order.total_amount,
            status=order.status.value,
            status_note=None,
            user_deleted=False,
            inventory_state=order.inventory_state.value,
            version=order.version,
            created_at=order.created_at,
            updated_at=order.updated_at,
        )
    )
    await session.execute(
        insert(order_items),
        [
            {
                "order_id": order.id,
                "product_id": item.product_id,
                "quantity": item.quantity,
                "name": item.name,
                "price": item.price,
            }
            for item in order.items
        ],
    )
    await session.commit()
    logger.info(
        "Created order %s for user %s (%d items, total %.2f)",
        order.id,
        order.user_id,
        len(order.items),
        order.total_amount,
    )

    await reservations.reserve(order)
    await bus.publish_best_effort(OrderCreated(order=order.to_payload()))
    return order


async def update_order_status(
    session: AsyncSession,
    reservations: InventoryReservations,
    bus: EventBus,
    order_id: UUID,
    status: str | OrderStatus,
) -> OrderAggregate:
    """
    ステータス更新コマンド

    ``affected`` は削除リコンサイル専用で、それ以外はどのステータスからでも
    遷移できる。completed / cancelled への遷移は初回だけ引き当てを精算する。

    1. CAS で新しいステータスを保存
    2. 引き当てを精算 (confirm / restore)
    3. order.status_updated を発行
    """
    new_status = _parse_status(status)
    if new_status is OrderStatus.AFFECTED:
        raise OrderValidationError(
            "Status 'affected' is set by reconciliation and cannot be requested"
        )

    for attempt in range(1, MAX_CAS_ATTEMPTS + 1):
        order = await queries.load_order(session, order_id)
        if order is None:
            raise OrderNotFound(f"Order {order_id} not found")

        old_status = order.status
        expected_version = order.version
        action = order.change_status(new_status)
        now = datetime.now(timezone.utc)

        result = await session.execute(
            update(orders)
            .where(orders.c.id == order_id, orders.c.version == expected_version)
            .values(
                status=order.status.value,
                inventory_state=order.inventory_state.value,
                version=expected_version + 1,
                updated_at=now,
            )
        )
        if result.rowcount == 1:
            await session.commit()
            order.version = expected_version + 1
            order.updated_at = now
            break

        await session.rollback()
        logger.info("Order %s changed concurrently (attempt %d)", order_id, attempt)
    else:
        raise ConcurrencyConflict(
            f"Order {order_id} kept changing; status update abandoned"
        )

    logger.info("Order %s: %s -> %s", order_id, old_status.value, new_status.value)

    if action is not None:
        await reservations.settle(action, order)
    await bus.publish_best_effort(
        OrderStatusUpdated(
            order_id=order.id,
            user_id=order.user_id,
            old_status=old_status.value,
            new_status=new_status.value,
        )
    )
    return order


async def delete_order(
    session: AsyncSession,
    reservations: InventoryReservations,
    bus: EventBus,
    order_id: UUID,
) -> OrderAggregate:
    """
    注文削除コマンド

    引き当てが未精算の注文は、レコードが消える前にキャンセルと同じく
    在庫を戻す。
    """
    for attempt in range(1, MAX_CAS_ATTEMPTS + 1):
        order = await queries.load_order(session, order_id)
        if order is None:
            raise OrderNotFound(f"Order {order_id} not found")

        await session.execute(
            delete(order_items).where(order_items.c.order_id == order_id)
        )
        result = await session.execute(
            delete(orders).where(
                orders.c.id == order_id, orders.c.version == order.version
            )
        )
        if result.rowcount == 1:
            break

        await session.rollback()
        logger.info("Order %s changed concurrently (attempt %d)", order_id, attempt)
    else:
        raise ConcurrencyConflict(f"Order {order_id} kept changing; delete abandoned")

    # Product 側は restore を (注文, 商品) ごとに一度だけ適用するので、
    # コミット前に送った restore の後でコミットが失敗しても害はない
    action = order.release_for_deletion()
    if action is not None:
        await reservations.settle(action, order)

    await session.commit()
    logger.info("Deleted order %s (status %s)", order_id, order.status.value)

    await bus.publish_best_effort(OrderDeleted(order_id=order.id, user_id=order.user_id))
    return order


# ── 削除リコンサイル ────────────────────────────


async def mark_user_orders_affected(session: AsyncSession, user_id: str) -> int:
    """削除されたユーザーの未完了注文すべてに印を付け、変更件数を返す。"""
    now = datetime.now(timezone.utc)
    result = await session.execute(
        update(orders)
        .where(orders.c.user_id == user_id, orders.c.status.not_in(_TERMINAL))
        .values(
            status=OrderStatus.AFFECTED.value,
            status_note=USER_DELETED_NOTE,
            user_deleted=True,
            version=orders.c.version + 1,
            updated_at=now,
        )
    )
    await session.commit()
    return result.rowcount


async def mark_product_orders_affected(
    session: AsyncSession, product_id: str, product_name: str
) -> int:
    """削除された商品を含む未完了注文に、注文ごとに一度だけ印を付ける。"""
    result = await session.execute(
        select(orders.c.id)
        .distinct()
        .join(order_items, order_items.c.order_id == orders.c.id)
        .where(order_items.c.product_id == product_id, orders.c.status.not_in(_TERMINAL))
    )
    order_ids = result.scalars().all()

    note = PRODUCT_DELETED_NOTE.format(name=product_name)
    now = datetime.now(timezone.utc)
    changed = 0
    for order_id in order_ids:
        result = await session.execute(
            update(orders)
            .where(orders.c.id == order_id, orders.c.status.not_in(_TERMINAL))
            .values(
                status=OrderStatus.AFFECTED.value,
                status_note=note,
                version=orders.c.version + 1,
                updated_at=now,
            )
        )
        changed += result.rowcount
    await session.commit()
    return changed
