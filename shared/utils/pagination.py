"""
shared/utils/pagination.py
Offset pagination used by every list endpoint.
"""

from typing import Any, Sequence

from sqlalchemy import Select, func, select
from sqlalchemy.ext.asyncio import AsyncSession


def page_response(items: Sequence[Any], total: int, page: int, page_size: int) -> dict:
    return {
        "items": list(items),
        "total": total,
        "page": page,
        "page_size": page_size,
        "total_pages": -(-total // page_size),  # Ceiling division
    }


async def paginate_query(db: AsyncSession, query: Select, page: int, page_size: int) -> tuple[list, int]:
    """Run count + page fetch for a select. Returns (rows, total)."""
    total = await db.scalar(select(func.count()).select_from(query.order_by(None).subquery()))
    result = await db.execute(query.offset((page - 1) * page_size).limit(page_size))
    return list(result.scalars().all()), total or 0
