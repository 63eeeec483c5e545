"""
Shared — イベントエンベロープ

サービス境界をまたぐイベントはすべてここで一度だけ定義する。
発行側と購読側はイベント種別ごとに同じペイロード形状を共有する。
フィールド名は Python 側で snake_case、ワイヤ上では camelCase。

    topic               routing key             envelope
    ─────────────────   ─────────────────────   ───────────────────
    order_events        order.created           OrderCreated
                        order.status_updated    OrderStatusUpdated
                        order.deleted           OrderDeleted
    inventory_events    inventory.reserved      InventoryReserved
                        inventory.confirmed     InventoryConfirmed
                        inventory.restored      InventoryRestored
                        inventory.updated       InventoryUpdated
    user_events         user.created/updated    UserChanged
                        user.deleted            UserDeleted
    product_events      product.created/updated ProductChanged
                        product.deleted         ProductDeleted
"""

from datetime import datetime
from typing import Any, ClassVar
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

ORDER_EVENTS = "order_events"
INVENTORY_EVENTS = "inventory_events"
USER_EVENTS = "user_events"
PRODUCT_EVENTS = "product_events"


class Envelope(BaseModel):
    """バスに流すペイロードの基底クラス"""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        coerce_numbers_to_str=True,
    )

    topic: ClassVar[str]
    routing_key: ClassVar[str]

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


# ── order_events ────────────────────────────────


class OrderItemPayload(Envelope):
    product_id: str
    quantity: int = Field(gt=0)
    name: str
    price: float


class OrderPayload(Envelope):
    id: UUID
    user_id: str
    total_amount: float
    status: str
    status_note: str | None = None
    user_deleted: bool = False
    items: list[OrderItemPayload]
    created_at: datetime
    updated_at: datetime


class OrderCreated(Envelope):
    """注文が受け付けられ永続化された"""
    topic = ORDER_EVENTS
    routing_key = "order.created"

    order: OrderPayload


class OrderStatusUpdated(Envelope):
    topic = ORDER_EVENTS
    routing_key = "order.status_updated"

    order_id: UUID
    user_id: str
    old_status: str
    new_status: str


class OrderDeleted(Envelope):
    topic = ORDER_EVENTS
    routing_key = "order.deleted"

    order_id: UUID
    user_id: str


# ── inventory_events ────────────────────────────


class InventoryChange(Envelope):
    """注文明細 1 行分の在庫引き当て。注文 ID で相関付ける。"""
    topic = INVENTORY_EVENTS
    kind: ClassVar[str]

    product_id: str
    quantity: int = Field(gt=0)
    order_id: UUID


class InventoryReserved(InventoryChange):
    kind = "reserved"
    routing_key = "inventory.reserved"


class InventoryConfirmed(InventoryChange):
    kind = "confirmed"
    routing_key = "inventory.confirmed"


class InventoryRestored(InventoryChange):
    kind = "restored"
    routing_key = "inventory.restored"


INVENTORY_CHANGES: dict[str, type[InventoryChange]] = {
    cls.kind: cls for cls in (InventoryReserved, InventoryConfirmed, InventoryRestored)
}


class InventoryUpdated(Envelope):
    """商品レコード上で在庫が直接編集された"""
    topic = INVENTORY_EVENTS
    routing_key = "inventory.updated"

    product_id: str
    stock: int
    previous_stock: int


# ── user_events / product_events ────────────────


class UserChanged(Envelope):
    topic = USER_EVENTS

    user: dict[str, Any]


class UserDeleted(Envelope):
    topic = USER_EVENTS
    routing_key = "user.deleted"

    user_id: str


class ProductChanged(Envelope):
    topic = PRODUCT_EVENTS

    product: dict[str, Any]


class ProductDeleted(Envelope):
    topic = PRODUCT_EVENTS
    routing_key = "product.deleted"

    product_id: str
    product_name: str
