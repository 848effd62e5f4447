# repos.py

from __future__ import annotations

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from Sheetbridge import models


async def list_import_history(
    s: AsyncSession, *, user_id: str, page: int = 1, per_page: int = 20
) -> tuple[list[models.ImportHistory], int]:
    """Newest-first page of a user's import attempts plus the total count."""
    total = (
        await s.execute(
            select(func.count())
            .select_from(models.ImportHistory)
            .where(models.ImportHistory.user_id == user_id)
        )
    ).scalar_one()
    q = await s.execute(
        select(models.ImportHistory)
        .where(models.ImportHistory.user_id == user_id)
        .order_by(models.ImportHistory.imported_at.desc(), models.ImportHistory.id.desc())
        .offset((page - 1) * per_page)
        .limit(per_page)
    )
    return list(q.scalars().all()), int(total)


async def get_import_history(
    s: AsyncSession, *, import_id: int, user_id: str
) -> models.ImportHistory | None:
    q = await s.execute(
        select(models.ImportHistory).where(
            models.ImportHistory.id == import_id,
            models.ImportHistory.user_id == user_id,
        )
    )
    return q.scalar_one_or_none()


async def list_master_data_imports(
    s: AsyncSession, *, import_history_id: int
) -> list[models.MasterDataImport]:
    q = await s.execute(
        select(models.MasterDataImport)
        .where(models.MasterDataImport.import_history_id == import_history_id)
        .order_by(models.MasterDataImport.id)
    )
    return list(q.scalars().all())


async def get_character_for_user(
    s: AsyncSession, *, character_id: int, user_id: str
) -> models.Character | None:
    q = await s.execute(
        select(models.Character).where(
            models.Character.id == character_id,
            models.Character.user_id == user_id,
        )
    )
    return q.scalar_one_or_none()


async def latest_successful_import(
    s: AsyncSession, *, character_id: int
) -> models.ImportHistory | None:
    q = await s.execute(
        select(models.ImportHistory)
        .where(
            models.ImportHistory.character_id == character_id,
            models.ImportHistory.status == models.ImportStatus.success,
        )
        .order_by(models.ImportHistory.imported_at.desc(), models.ImportHistory.id.desc())
        .limit(1)
    )
    return q.scalar_one_or_none()


async def healthcheck(s: AsyncSession) -> None:
    """Lightweight DB check to confirm connectivity and basic query works."""
    await s.execute(select(models.ImportHistory.id).limit(1))
