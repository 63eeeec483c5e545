"""Shared fixtures: in-memory database, a recording bus and catalog fakes."""

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from services.order.app import tables as order_tables
from services.product.app import tables as product_tables
from services.shared.bus import BusUnavailableError
from services.shared.events import Envelope
from services.user.app import tables as user_tables


class RecordingBus:
    """Stands in for EventBus; keeps what was published and what was bound."""

    def __init__(self, connected: bool = True) -> None:
        self.connected = connected
        self.published: list[tuple[str, str, dict]] = []
        self.bindings: list[tuple[str, str, object, str | None]] = []

    def declare_exchange(self, topic: str) -> None:
        pass

    def subscribe(self, topic, pattern, handler, consumer_group=None):
        self.bindings.append((topic, pattern, handler, consumer_group))

    async def publish(self, topic: str, routing_key: str, payload: dict) -> str:
        if not self.connected:
            raise BusUnavailableError("event bus is not connected")
        self.published.append((topic, routing_key, payload))
        return f"{len(self.published)}-0"

    async def publish_event(self, event: Envelope, routing_key: str | None = None) -> str:
        return await self.publish(
            event.topic, routing_key or event.routing_key, event.to_payload()
        )

    async def publish_best_effort(
        self, event: Envelope, routing_key: str | None = None
    ) -> bool:
        try:
            await self.publish_event(event, routing_key)
        except BusUnavailableError:
            return False
        return True

    def routing_keys(self) -> list[str]:
        return [key for _topic, key, _payload in self.published]

    def payloads(self, routing_key: str) -> list[dict]:
        return [p for _topic, key, p in self.published if key == routing_key]


class FakeCatalog:
    """In-memory user/product lookups plus a log of direct inventory calls."""

    def __init__(self) -> None:
        self.users: dict[str, dict] = {}
        self.products: dict[str, dict] = {}
        self.applied: list = []

    def add_user(self, user_id: str) -> None:
        self.users[user_id] = {"id": user_id, "name": f"user {user_id}"}

    def add_product(self, product_id: str, name: str, price: float, stock: int) -> None:
        self.products[product_id] = {
            "id": product_id,
            "name": name,
            "price": price,
            "stock": stock,
        }

    async def get_user(self, user_id: str) -> dict | None:
        return self.users.get(user_id)

    async def get_product(self, product_id: str) -> dict | None:
        return self.products.get(product_id)

    async def apply_inventory(self, change) -> None:
        self.applied.append(change)


@pytest.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    await order_tables.create_all(engine)
    await product_tables.create_all(engine)
    await user_tables.create_all(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def bus():
    return RecordingBus()


@pytest.fixture
def catalog():
    catalog = FakeCatalog()
    catalog.add_user("user-1")
    catalog.add_product("p1", "Keyboard", 10.0, 5)
    catalog.add_product("p2", "Mouse", 2.5, 10)
    return catalog
