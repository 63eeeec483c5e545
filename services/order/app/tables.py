"""
Order Service — テーブル定義

Database per Service: Order Service が所有するのは ``orders`` と
``order_items`` だけ。ユーザーと商品は別サービスの DB にあるので、
``user_id`` と ``product_id`` は外部キー制約のないただの参照。
"""

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Uuid,
)
from sqlalchemy.ext.asyncio import AsyncEngine

metadata = MetaData()

orders = Table(
    "orders",
    metadata,
    Column("id", Uuid, primary_key=True),
    Column("user_id", String(64), nullable=False, index=True),
    Column("total_amount", Numeric(10, 2, asdecimal=False), nullable=False),
    Column("status", String(20), nullable=False),
    Column("status_note", String(255), nullable=True),
    Column("user_deleted", Boolean, nullable=False, default=False),
    # reserved → confirmed | restored。精算後は変わらない
    Column("inventory_state", String(20), nullable=False),
    Column("version", Integer, nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

order_items = Table(
    "order_items",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column(
        "order_id",
        Uuid,
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    ),
    Column("product_id", String(64), nullable=False, index=True),
    Column("quantity", Integer, nullable=False),
    Column("name", String(255), nullable=False),
    Column("price", Numeric(10, 2, asdecimal=False), nullable=False),
)


async def create_all(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
