from typing import Iterable, Optional, Protocol, Set

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncEngine

from . import models, schemas


class IdentityDirectory(Protocol):
    async def verified(self, user_ids: Iterable[int]) -> Set[int]: ...

    async def profile(self, user_id: int) -> Optional[schemas.UserProfile]: ...

    async def push_token(self, user_id: int) -> Optional[str]: ...


class UserDirectory:
    """Read-only view over the `users` table kept by the account service."""

    def __init__(self, engine: AsyncEngine):
        self.engine = engine

    async def verified(self, user_ids: Iterable[int]) -> Set[int]:
        ids = set(user_ids)
        if not ids:
            return set()
        sel = select(models.users.c.id).where(models.users.c.id.in_(ids), models.users.c.is_verified.is_(True))
        async with self.engine.connect() as conn:
            res = await conn.execute(sel)
            return {row[0] for row in res}

    async def profile(self, user_id: int) -> Optional[schemas.UserProfile]:
        u = models.users
        sel = select(u.c.id, u.c.full_name, u.c.email, u.c.phone, u.c.is_verified).where(u.c.id == user_id)
        async with self.engine.connect() as conn:
            row = (await conn.execute(sel)).first()
        if not row:
            return None
        return schemas.UserProfile(**row._mapping)

    async def push_token(self, user_id: int) -> Optional[str]:
        sel = select(models.users.c.push_token).where(models.users.c.id == user_id)
        async with self.engine.connect() as conn:
            return (await conn.execute(sel)).scalar_one_or_none()
