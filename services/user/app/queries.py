"""
User Service — クエリハンドラ (CQRS の Read 側)
"""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .tables import users


def _to_dict(row) -> dict:
    return {
        "id": row.id,
        "name": row.name,
        "email": row.email,
        "role": row.role,
        "createdAt": row.created_at.isoformat() if row.created_at else None,
        "updatedAt": row.updated_at.isoformat() if row.updated_at else None,
    }


async def get_user(session: AsyncSession, user_id: str) -> dict | None:
    result = await session.execute(select(users).where(users.c.id == user_id))
    row = result.fetchone()
    if not row:
        return None
    return _to_dict(row)


async def list_users(session: AsyncSession) -> list[dict]:
    result = await session.execute(select(users).order_by(users.c.created_at))
    return [_to_dict(row) for row in result.fetchall()]
