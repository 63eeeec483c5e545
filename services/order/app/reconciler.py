"""
Order Service — エンティティ削除のリコンサイラ

ユーザーと商品は別サービスにあるので、未完了の注文の下から消えることを
外部キーで防ぐことはできない。代わりに Order Service は削除イベントを
購読し、影響を受けた注文に印を付ける:

  ┌───────────────┐  user_events/user.#        ┌───────────────┐
  │ User Service  │ ─────────────────────────▶ │               │
  └───────────────┘                            │ Order Service │──▶ status = affected
  ┌───────────────┐  product_events/product.#  │  (reconciler) │
  │Product Service│ ─────────────────────────▶ │               │
  └───────────────┘                            └───────────────┘

完了・キャンセル済みの注文には触れない。ここからは何も発行せず、
引き当てにも触れない。リプレイしても結果は同じ。
"""

import logging

from sqlalchemy.ext.asyncio import async_sessionmaker

from services.shared.bus import EventBus
from services.shared.events import PRODUCT_EVENTS, USER_EVENTS, ProductDeleted, UserDeleted

from . import commands

logger = logging.getLogger(__name__)

USER_EVENTS_GROUP = "orders-user-events"
PRODUCT_EVENTS_GROUP = "orders-product-events"


class DeletionReconciler:
    def __init__(self, session_factory: async_sessionmaker) -> None:
        self.session_factory = session_factory

    def bind(self, bus: EventBus) -> None:
        bus.subscribe(USER_EVENTS, "user.#", self.on_user_event, USER_EVENTS_GROUP)
        bus.subscribe(
            PRODUCT_EVENTS, "product.#", self.on_product_event, PRODUCT_EVENTS_GROUP
        )

    async def on_user_event(self, payload: dict, routing_key: str) -> None:
        """user.deleted を受けて、そのユーザーの未完了注文を affected にする"""
        logger.info("Received user event: %s", routing_key)
        if routing_key != UserDeleted.routing_key:
            return

        event = UserDeleted.model_validate(payload)
        async with self.session_factory() as session:
            changed = await commands.mark_user_orders_affected(session, event.user_id)
        logger.info("User %s deleted: %d orders marked affected", event.user_id, changed)

    async def on_product_event(self, payload: dict, routing_key: str) -> None:
        """product.deleted を受けて、その商品を含む未完了注文を affected にする"""
        logger.info("Received product event: %s", routing_key)
        if routing_key != ProductDeleted.routing_key:
            return

        event = ProductDeleted.model_validate(payload)
        async with self.session_factory() as session:
            changed = await commands.mark_product_orders_affected(
                session, event.product_id, event.product_name
            )
        logger.info(
            "Product %s (%s) deleted: %d orders marked affected",
            event.product_id,
            event.product_name,
            changed,
        )
