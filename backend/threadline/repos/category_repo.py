from __future__ import annotations

from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from threadline.db.models import ThreadCategory
from threadline.utils.time_utils import utc_now


class CategoryRepo:
    """Repository for thread categories."""

    def __init__(self, db: AsyncSession) -> None:
        self._db = db

    async def get_category(self, category_id: str) -> Optional[ThreadCategory]:
        result = await self._db.execute(
            select(ThreadCategory).where(ThreadCategory.id == category_id)
        )
        return result.scalar_one_or_none()

    async def create_category(
        self,
        category_id: str,
        name: str,
        description: Optional[str] = None,
        color: Optional[str] = None,
    ) -> ThreadCategory:
        category = ThreadCategory(
            id=category_id,
            name=name,
            description=description,
            color=color,
            is_active=True,
            created_at=utc_now(),
        )
        self._db.add(category)
        await self._db.flush()
        return category
