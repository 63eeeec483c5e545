"""
User Service — コマンドハンドラ (CQRS の Write 側)

変更はコミット後に user_events で通知する。Order Service は
``user.deleted`` を受けてそのユーザーの未完了注文に印を付ける。
"""

import logging
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import delete, insert, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from services.shared.bus import EventBus
from services.shared.events import UserChanged, UserDeleted

from . import queries
from .tables import users

logger = logging.getLogger(__name__)


class UserConflict(Exception):
    """``users`` の一意カラムに同じ値が既にある"""


class DuplicateEmail(UserConflict):
    def __init__(self, email: str) -> None:
        super().__init__(f"Email {email} is already registered")
        self.email = email


class DuplicateUserId(UserConflict):
    def __init__(self, user_id: str) -> None:
        super().__init__(f"User {user_id} already exists")
        self.user_id = user_id


async def create_user(
    session: AsyncSession,
    bus: EventBus,
    name: str,
    email: str,
    role: str = "customer",
    user_id: str | None = None,
) -> dict:
    """
    ユーザー作成コマンド

    一意制約違反は、同じ ID が既にあれば DuplicateUserId、
    そうでなければ DuplicateEmail として報告する。
    """
    now = datetime.now(timezone.utc)
    user_id = user_id or uuid4().hex
    try:
        await session.execute(
            insert(users).values(
                id=user_id,
                name=name,
                email=email,
                role=role,
                created_at=now,
                updated_at=now,
            )
        )
        await session.commit()
    except IntegrityError:
        await session.rollback()
        if await queries.get_user(session, user_id) is not None:
            raise DuplicateUserId(user_id)
        raise DuplicateEmail(email)

    user = await queries.get_user(session, user_id)
    logger.info("Created user %s", user_id)
    await bus.publish_best_effort(UserChanged(user=user), "user.created")
    return user


async def update_user(
    session: AsyncSession, bus: EventBus, user_id: str, changes: dict
) -> dict | None:
    values = {key: value for key, value in changes.items() if value is not None}
    try:
        result = await session.execute(
            update(users)
            .where(users.c.id == user_id)
            .values(**values, updated_at=datetime.now(timezone.utc))
        )
        await session.commit()
    except IntegrityError:
        await session.rollback()
        raise DuplicateEmail(values.get("email", ""))
    if result.rowcount == 0:
        return None

    user = await queries.get_user(session, user_id)
    await bus.publish_best_effort(UserChanged(user=user), "user.updated")
    return user


async def delete_user(session: AsyncSession, bus: EventBus, user_id: str) -> bool:
    result = await session.execute(delete(users).where(users.c.id == user_id))
    await session.commit()
    if result.rowcount == 0:
        return False

    logger.info("Deleted user %s", user_id)
    await bus.publish_best_effort(UserDeleted(user_id=user_id))
    return True
