import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock
from uuid import uuid4

import pytest
from conftest import RecordingBus
from redis.exceptions import ResponseError

from services.order.app import commands, queries
from services.order.app.aggregate import InventoryState, OrderStatus
from services.order.app.errors import (
    ConcurrencyConflict,
    InsufficientStock,
    OrderNotFound,
    OrderValidationError,
    ReferenceNotFound,
)
from services.order.app.reservation import InventoryReservations
from services.shared.bus import EventBus


def line(product_id: str, quantity: int):
    return SimpleNamespace(product_id=product_id, quantity=quantity)


@pytest.fixture
def reservations(bus, catalog):
    return InventoryReservations(bus, catalog)


async def place(session, catalog, reservations, bus, *lines, user_id="user-1", **kw):
    return await commands.create_order(
        session, catalog, reservations, bus, user_id, list(lines), **kw
    )


class TestCreateOrder:
    async def test_creates_processing_order_and_reserves(
        self, session, catalog, reservations, bus
    ):
        order = await place(session, catalog, reservations, bus, line("p1", 1))

        assert order.status is OrderStatus.PROCESSING
        assert len(order.items) == 1
        assert bus.routing_keys() == ["inventory.reserved", "order.created"]
        reserved = bus.payloads("inventory.reserved")[0]
        assert reserved == {
            "productId": "p1",
            "quantity": 1,
            "orderId": str(order.id),
        }

        stored = await queries.get_order(session, order.id)
        assert stored["status"] == "processing"
        assert stored["totalAmount"] == 10.0

    async def test_total_matches_item_snapshots(self, session, catalog, reservations, bus):
        order = await place(
            session, catalog, reservations, bus, line("p1", 2), line("p2", 3)
        )
        stored = await queries.get_order(session, order.id)
        assert stored["totalAmount"] == pytest.approx(
            sum(item["price"] * item["quantity"] for item in stored["items"])
        )
        assert stored["totalAmount"] == 27.5

    async def test_duplicate_lines_are_merged(self, session, catalog, reservations, bus):
        order = await place(
            session, catalog, reservations, bus, line("p2", 1), line("p2", 2)
        )
        assert [(item.product_id, item.quantity) for item in order.items] == [("p2", 3)]

    async def test_insufficient_stock_persists_nothing(
        self, session, catalog, reservations, bus
    ):
        with pytest.raises(InsufficientStock, match="Available: 5"):
            await place(session, catalog, reservations, bus, line("p1", 6))

        assert await queries.list_orders(session) == []
        assert bus.published == []

    async def test_one_bad_line_aborts_the_whole_order(
        self, session, catalog, reservations, bus
    ):
        with pytest.raises(ReferenceNotFound):
            await place(
                session, catalog, reservations, bus, line("p1", 1), line("missing", 1)
            )
        assert await queries.list_orders(session) == []
        assert bus.published == []

    async def test_unknown_user(self, session, catalog, reservations, bus):
        with pytest.raises(ReferenceNotFound, match="User nobody"):
            await place(session, catalog, reservations, bus, line("p1", 1), user_id="nobody")

    async def test_requires_products(self, session, catalog, reservations, bus):
        with pytest.raises(OrderValidationError):
            await place(session, catalog, reservations, bus)

    async def test_rejects_non_positive_quantity(self, session, catalog, reservations, bus):
        with pytest.raises(OrderValidationError):
            await place(session, catalog, reservations, bus, line("p1", 0))

    async def test_rejects_non_entry_status(self, session, catalog, reservations, bus):
        with pytest.raises(OrderValidationError):
            await place(
                session, catalog, reservations, bus, line("p1", 1), status="completed"
            )

    async def test_reserves_directly_when_bus_is_down(self, session, catalog):
        bus = RecordingBus(connected=False)
        reservations = InventoryReservations(bus, catalog)

        order = await place(session, catalog, reservations, bus, line("p1", 2))

        assert [(c.kind, c.product_id, c.quantity) for c in catalog.applied] == [
            ("reserved", "p1", 2)
        ]
        # the order survives a bus outage
        assert await queries.get_order(session, order.id) is not None


class TestUpdateStatus:
    async def test_completing_confirms_each_item_once(
        self, session, catalog, reservations, bus
    ):
        order = await place(
            session, catalog, reservations, bus, line("p1", 1), line("p2", 1)
        )
        bus.published.clear()

        updated = await commands.update_order_status(
            session, reservations, bus, order.id, "completed"
        )
        assert updated.status is OrderStatus.COMPLETED
        assert updated.inventory_state is InventoryState.CONFIRMED
        assert bus.routing_keys().count("inventory.confirmed") == 2
        status_event = bus.payloads("order.status_updated")[0]
        assert status_event["oldStatus"] == "processing"
        assert status_event["newStatus"] == "completed"

        bus.published.clear()
        await commands.update_order_status(
            session, reservations, bus, order.id, "completed"
        )
        assert "inventory.confirmed" not in bus.routing_keys()

    async def test_cancelling_restores_each_item(
        self, session, catalog, reservations, bus
    ):
        order = await place(
            session, catalog, reservations, bus, line("p1", 1), line("p2", 4)
        )
        bus.published.clear()

        await commands.update_order_status(
            session, reservations, bus, order.id, "cancelled"
        )
        restored = bus.payloads("inventory.restored")
        assert sorted((p["productId"], p["quantity"]) for p in restored) == [
            ("p1", 1),
            ("p2", 4),
        ]

    async def test_settled_orders_never_compensate_again(
        self, session, catalog, reservations, bus
    ):
        order = await place(session, catalog, reservations, bus, line("p1", 1))
        await commands.update_order_status(
            session, reservations, bus, order.id, "completed"
        )
        bus.published.clear()

        await commands.update_order_status(
            session, reservations, bus, order.id, "cancelled"
        )
        assert "inventory.restored" not in bus.routing_keys()

    async def test_version_increments(self, session, catalog, reservations, bus):
        order = await place(session, catalog, reservations, bus, line("p1", 1))
        updated = await commands.update_order_status(
            session, reservations, bus, order.id, "shipped"
        )
        assert updated.version == 2

    async def test_affected_cannot_be_requested(
        self, session, catalog, reservations, bus
    ):
        order = await place(session, catalog, reservations, bus, line("p1", 1))
        with pytest.raises(OrderValidationError):
            await commands.update_order_status(
                session, reservations, bus, order.id, "affected"
            )

    async def test_unknown_status(self, session, catalog, reservations, bus):
        order = await place(session, catalog, reservations, bus, line("p1", 1))
        with pytest.raises(OrderValidationError, match="Unknown status"):
            await commands.update_order_status(
                session, reservations, bus, order.id, "lost"
            )

    async def test_missing_order(self, session, reservations, bus):
        with pytest.raises(OrderNotFound):
            await commands.update_order_status(
                session, reservations, bus, uuid4(), "shipped"
            )


class TestDeleteOrder:
    async def test_open_order_restores_stock(self, session, catalog, reservations, bus):
        order = await place(session, catalog, reservations, bus, line("p1", 3))
        bus.published.clear()

        await commands.delete_order(session, reservations, bus, order.id)

        assert bus.routing_keys() == ["inventory.restored", "order.deleted"]
        assert await queries.get_order(session, order.id) is None

    async def test_completed_order_restores_nothing(
        self, session, catalog, reservations, bus
    ):
        order = await place(session, catalog, reservations, bus, line("p1", 3))
        await commands.update_order_status(
            session, reservations, bus, order.id, "completed"
        )
        bus.published.clear()

        await commands.delete_order(session, reservations, bus, order.id)
        assert bus.routing_keys() == ["order.deleted"]

    async def test_missing_order(self, session, reservations, bus):
        with pytest.raises(OrderNotFound):
            await commands.delete_order(session, reservations, bus, uuid4())


class TestConcurrency:
    async def test_stale_version_gives_up_after_retries(
        self, session, catalog, reservations, bus, monkeypatch
    ):
        order = await place(session, catalog, reservations, bus, line("p1", 1))
        await commands.update_order_status(
            session, reservations, bus, order.id, "shipped"
        )

        loads = []

        async def stale_load(session, order_id):
            loads.append(order_id)
            order.version = 1
            return order

        monkeypatch.setattr(queries, "load_order", stale_load)
        with pytest.raises(ConcurrencyConflict):
            await commands.update_order_status(
                session, reservations, bus, order.id, "delivered"
            )
        assert len(loads) == commands.MAX_CAS_ATTEMPTS


class TestSettlementPaths:
    async def test_cancelled_order_never_confirms(
        self, session, catalog, reservations, bus
    ):
        order = await place(session, catalog, reservations, bus, line("p1", 1))
        await commands.update_order_status(
            session, reservations, bus, order.id, "cancelled"
        )
        bus.published.clear()

        updated = await commands.update_order_status(
            session, reservations, bus, order.id, "completed"
        )
        assert updated.status is OrderStatus.COMPLETED
        assert updated.inventory_state is InventoryState.RESTORED
        assert bus.routing_keys() == ["order.status_updated"]

    @pytest.mark.parametrize(
        "status, kind", [("completed", "confirmed"), ("cancelled", "restored")]
    )
    async def test_settles_directly_when_bus_is_down(
        self, session, catalog, reservations, bus, status, kind
    ):
        order = await place(
            session, catalog, reservations, bus, line("p1", 1), line("p2", 2)
        )
        bus.connected = False

        await commands.update_order_status(session, reservations, bus, order.id, status)

        assert [(c.kind, c.product_id, c.quantity) for c in catalog.applied] == [
            (kind, "p1", 1),
            (kind, "p2", 2),
        ]

    async def test_delete_restores_directly_when_bus_is_down(
        self, session, catalog, reservations, bus
    ):
        order = await place(session, catalog, reservations, bus, line("p1", 3))
        bus.connected = False

        await commands.delete_order(session, reservations, bus, order.id)

        assert [(c.kind, c.quantity) for c in catalog.applied] == [("restored", 3)]


def redis_client() -> AsyncMock:
    client = AsyncMock()

    async def xreadgroup(*args, **kwargs):
        await asyncio.sleep(0.01)
        return []

    client.xreadgroup.side_effect = xreadgroup
    client.xadd.return_value = b"1-0"
    return client


class TestBusRefusesWrites:
    @pytest.fixture
    async def live_bus(self):
        client = redis_client()
        bus = EventBus(
            "redis://test",
            service_name="order-service",
            retry_delay=0,
            client_factory=lambda url: client,
        )
        await bus.start()
        await asyncio.wait_for(bus.wait_until_connected(), timeout=1)
        yield bus, client
        await bus.close()

    async def test_cancel_still_restores_through_direct_path(
        self, session, catalog, live_bus
    ):
        bus, client = live_bus
        reservations = InventoryReservations(bus, catalog)
        order = await place(session, catalog, reservations, bus, line("p1", 2))

        client.xadd.side_effect = ResponseError(
            "MISCONF Redis is configured to save RDB snapshots"
        )
        updated = await commands.update_order_status(
            session, reservations, bus, order.id, "cancelled"
        )

        assert updated.inventory_state is InventoryState.RESTORED
        assert [(c.kind, c.product_id, c.quantity) for c in catalog.applied] == [
            ("restored", "p1", 2)
        ]

    async def test_delete_succeeds_when_writes_are_refused(
        self, session, catalog, live_bus
    ):
        bus, client = live_bus
        reservations = InventoryReservations(bus, catalog)
        order = await place(session, catalog, reservations, bus, line("p1", 1))

        client.xadd.side_effect = ResponseError(
            "READONLY You can't write against a read only replica."
        )
        await commands.delete_order(session, reservations, bus, order.id)

        assert await queries.get_order(session, order.id) is None
        assert [c.kind for c in catalog.applied] == ["restored"]
