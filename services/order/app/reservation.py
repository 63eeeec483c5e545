"""
Order Service — 在庫引き当てプロトコル

注文の各明細は次の状態をたどる:

    reserved ──▶ confirmed      (注文完了)
             └─▶ restored       (注文キャンセル / 削除)

各ステップは 2 つの経路のどちらかで Product Service に届けられる:

    EVENT_BUS     inventory_events / inventory.<kind>  (通常経路)
    DIRECT_CALL   POST /commands/inventory/apply       (バス停止時)

どちらの経路も同じエンベロープを運び、Product 側の同じ適用台帳
(一度だけ適用) に入るので、呼び出し側はどちらが使われたかを気にしなくてよい。
両経路で失敗したステップはログに残して運用者に任せ、注文そのものは
ロールバックしない。
"""

import logging
from enum import Enum

from services.shared.bus import BusUnavailableError, EventBus
from services.shared.events import (
    InventoryChange,
    InventoryConfirmed,
    InventoryReserved,
    InventoryRestored,
)

from .aggregate import InventoryAction, OrderAggregate
from .clients import CatalogClient
from .errors import CatalogUnavailable

logger = logging.getLogger(__name__)


class DeliveryPath(str, Enum):
    EVENT_BUS = "event_bus"
    DIRECT_CALL = "direct_call"


class InventoryReservations:
    """注文の引き当て・確定・戻しを、バス優先・直接呼び出しを代替として届ける"""

    def __init__(self, bus: EventBus, catalog: CatalogClient) -> None:
        self.bus = bus
        self.catalog = catalog

    async def reserve(self, order: OrderAggregate) -> list[DeliveryPath | None]:
        return await self._deliver_all(InventoryReserved, order)

    async def confirm(self, order: OrderAggregate) -> list[DeliveryPath | None]:
        return await self._deliver_all(InventoryConfirmed, order)

    async def restore(self, order: OrderAggregate) -> list[DeliveryPath | None]:
        return await self._deliver_all(InventoryRestored, order)

    async def settle(
        self, action: InventoryAction, order: OrderAggregate
    ) -> list[DeliveryPath | None]:
        if action is InventoryAction.CONFIRM:
            return await self.confirm(order)
        return await self.restore(order)

    async def _deliver_all(
        self, change_type: type[InventoryChange], order: OrderAggregate
    ) -> list[DeliveryPath | None]:
        paths = []
        for item in order.items:
            change = change_type(
                product_id=item.product_id,
                quantity=item.quantity,
                order_id=order.id,
            )
            paths.append(await self._deliver(change))
        return paths

    async def _deliver(self, change: InventoryChange) -> DeliveryPath | None:
        try:
            await self.bus.publish_event(change)
        except BusUnavailableError as e:
            logger.warning(
                "Event bus unavailable (%s); applying %s directly", e, change.routing_key
            )
        else:
            logger.info(
                "inventory.%s product=%s qty=%d order=%s via %s",
                change.kind,
                change.product_id,
                change.quantity,
                change.order_id,
                DeliveryPath.EVENT_BUS.value,
            )
            return DeliveryPath.EVENT_BUS

        try:
            await self.catalog.apply_inventory(change)
        except CatalogUnavailable as e:
            logger.error(
                "inventory.%s for order %s product %s was not delivered: %s",
                change.kind,
                change.order_id,
                change.product_id,
                e,
            )
            return None

        logger.info(
            "inventory.%s product=%s qty=%d order=%s via %s",
            change.kind,
            change.product_id,
            change.quantity,
            change.order_id,
            DeliveryPath.DIRECT_CALL.value,
        )
        return DeliveryPath.DIRECT_CALL
