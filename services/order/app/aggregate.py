"""
Order Service — 注文集約 (Order Aggregate)

注文のステータス遷移と、各遷移が在庫側に引き起こす副作用を扱う。

ステータス遷移 (信頼できる呼び出し元からの更新なので制限は緩い):

    pending / processing ──▶ ``affected`` 以外の任意のステータス
    ``affected`` には削除リコンサイルからのみ入る

在庫引き当ての状態 (注文ごとに保持):

    reserved ──(status → completed)──▶ confirmed
    reserved ──(status → cancelled)──▶ restored
    reserved ──(order deleted)───────▶ restored

``confirmed`` と ``restored`` は吸収状態。一度精算された引き当てに対して、
その後のステータス変更が補償を再発行することはない。
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from uuid import UUID

from services.shared.events import OrderItemPayload, OrderPayload


class OrderStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    AFFECTED = "affected"


ENTRY_STATUSES = frozenset({OrderStatus.PENDING, OrderStatus.PROCESSING})
TERMINAL_STATUSES = frozenset({OrderStatus.COMPLETED, OrderStatus.CANCELLED})


class InventoryState(str, Enum):
    RESERVED = "reserved"
    CONFIRMED = "confirmed"
    RESTORED = "restored"


class InventoryAction(str, Enum):
    """在庫の持ち主に対して負っている補償 (restore) または確定 (confirm)"""
    CONFIRM = "confirmed"
    RESTORE = "restored"


@dataclass
class OrderItem:
    product_id: str
    quantity: int
    name: str
    price: float

    @property
    def subtotal(self) -> float:
        return self.price * self.quantity


class OrderAggregate:
    """
    注文集約 — 1 件の注文とその明細。

    ``total_amount`` は作成時に各明細の価格スナップショットから確定し、
    作成後に再計算されることはない。
    """

    def __init__(self) -> None:
        self.id: UUID | None = None
        self.user_id: str = ""
        self.items: list[OrderItem] = []
        self.total_amount: float = 0
        self.status: OrderStatus = OrderStatus.PENDING
        self.status_note: str | None = None
        self.user_deleted: bool = False
        self.inventory_state: InventoryState = InventoryState.RESERVED
        self.version: int = 0
        self.created_at: datetime | None = None
        self.updated_at: datetime | None = None

    @classmethod
    def create(
        cls,
        order_id: UUID,
        user_id: str,
        items: list[OrderItem],
        status: OrderStatus,
        now: datetime,
    ) -> "OrderAggregate":
        agg = cls()
        agg.id = order_id
        agg.user_id = user_id
        agg.items = list(items)
        agg.total_amount = round(sum(item.subtotal for item in items), 2)
        agg.status = status
        agg.version = 1
        agg.created_at = now
        agg.updated_at = now
        return agg

    @classmethod
    def from_rows(cls, row, item_rows) -> "OrderAggregate":
        agg = cls()
        agg.id = row.id
        agg.user_id = row.user_id
        agg.total_amount = float(row.total_amount)
        agg.status = OrderStatus(row.status)
        agg.status_note = row.status_note
        agg.user_deleted = bool(row.user_deleted)
        agg.inventory_state = InventoryState(row.inventory_state)
        agg.version = row.version
        agg.created_at = row.created_at
        agg.updated_at = row.updated_at
        agg.items = [
            OrderItem(
                product_id=item.product_id,
                quantity=item.quantity,
                name=item.name,
                price=float(item.price),
            )
            for item in item_rows
        ]
        return agg

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    # ── ステータス遷移 ──────────────────────────

    def change_status(self, new_status: OrderStatus) -> InventoryAction | None:
        """``new_status`` に遷移し、それに伴う在庫アクションを返す。"""
        old_status = self.status
        self.status = new_status

        if new_status == old_status:
            return None
        if self.inventory_state is not InventoryState.RESERVED:
            return None

        if new_status is OrderStatus.COMPLETED:
            self.inventory_state = InventoryState.CONFIRMED
            return InventoryAction.CONFIRM
        if new_status is OrderStatus.CANCELLED:
            self.inventory_state = InventoryState.RESTORED
            return InventoryAction.RESTORE
        return None

    def release_for_deletion(self) -> InventoryAction | None:
        """未精算の注文を削除するとキャンセル同様に在庫を戻す。"""
        if self.inventory_state is not InventoryState.RESERVED:
            return None
        self.inventory_state = InventoryState.RESTORED
        return InventoryAction.RESTORE

    # ── シリアライズ ────────────────────────────

    def to_payload(self) -> OrderPayload:
        return OrderPayload(
            id=self.id,
            user_id=self.user_id,
            total_amount=self.total_amount,
            status=self.status.value,
            status_note=self.status_note,
            user_deleted=self.user_deleted,
            items=[
                OrderItemPayload(
                    product_id=item.product_id,
                    quantity=item.quantity,
                    name=item.name,
                    price=item.price,
                )
                for item in self.items
            ],
            created_at=self.created_at,
            updated_at=self.updated_at,
        )

    def to_dict(self) -> dict:
        return self.to_payload().to_payload()
