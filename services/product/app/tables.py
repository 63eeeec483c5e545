"""
Product Service — テーブル定義

``products`` は商品カタログと在庫カウンタを持つ。``inventory_ledger`` は
適用済みの引き当てステップを (order, product, kind) ごとに 1 行記録し、
在庫イベントが再配送されても二重に適用されないようにする。
"""

from sqlalchemy import (
    Column,
    DateTime,
    Integer,
    MetaData,
    Numeric,
    PrimaryKeyConstraint,
    String,
    Table,
    Text,
    Uuid,
)
from sqlalchemy.ext.asyncio import AsyncEngine

metadata = MetaData()

products = Table(
    "products",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("name", String(255), nullable=False),
    Column("description", Text, nullable=False, default=""),
    Column("category", String(100), nullable=True, index=True),
    Column("price", Numeric(10, 2, asdecimal=False), nullable=False),
    Column("stock", Integer, nullable=False, default=0),
    Column("version", Integer, nullable=False, default=1),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

inventory_ledger = Table(
    "inventory_ledger",
    metadata,
    Column("order_id", Uuid, nullable=False),
    Column("product_id", String(64), nullable=False),
    Column("kind", String(20), nullable=False),
    Column("quantity", Integer, nullable=False),
    Column("applied_at", DateTime(timezone=True), nullable=False),
    PrimaryKeyConstraint("order_id", "product_id", "kind"),
)


async def create_all(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
