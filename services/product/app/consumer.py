"""
Product Service — inventory_events コンシューマ

Order Service が発行した引き当てステップを適用する。コンシューマグループは
共有・永続なので、このサービスの停止中に発行されたステップも復帰後に届く。
ハンドラが失敗したメッセージは ACK されず、バスが再配送する。
"""

import logging

from sqlalchemy.ext.asyncio import async_sessionmaker

from services.shared.bus import EventBus
from services.shared.events import INVENTORY_CHANGES, INVENTORY_EVENTS

from . import commands

logger = logging.getLogger(__name__)

INVENTORY_EVENTS_GROUP = "products-inventory-events"


class InventoryConsumer:
    def __init__(self, session_factory: async_sessionmaker) -> None:
        self.session_factory = session_factory

    def bind(self, bus: EventBus) -> None:
        bus.subscribe(INVENTORY_EVENTS, "inventory.#", self.handle, INVENTORY_EVENTS_GROUP)

    async def handle(self, payload: dict, routing_key: str) -> None:
        kind = routing_key.rsplit(".", 1)[-1]
        change_type = INVENTORY_CHANGES.get(kind)
        if change_type is None:
            # inventory.updated は自分が発行した通知
            logger.debug("Ignoring %s", routing_key)
            return

        change = change_type.model_validate(payload)
        async with self.session_factory() as session:
            await commands.apply_inventory_change(session, change)
