from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from tunedesk.database.models import FileModification, FileStatus, Modification, TuningFile


def _with_relations(query):
    return query.options(
        selectinload(TuningFile.user),
        selectinload(TuningFile.file_modifications).selectinload(FileModification.modification),
    )


async def get_tuning_file(db: AsyncSession, file_id: str) -> TuningFile | None:
    result = await db.execute(_with_relations(select(TuningFile).where(TuningFile.id == file_id)))
    return result.scalar_one_or_none()


async def get_tuning_file_for_update(db: AsyncSession, file_id: str) -> TuningFile | None:
    """Row-locked read; concurrent mutations of the same file queue behind this transaction."""
    result = await db.execute(
        _with_relations(select(TuningFile).where(TuningFile.id == file_id)).with_for_update(of=TuningFile)
    )
    return result.scalar_one_or_none()


async def get_user_tuning_files(db: AsyncSession, user_id: str, *, limit: int = 50) -> list[TuningFile]:
    result = await db.execute(
        _with_relations(select(TuningFile).where(TuningFile.user_id == user_id))
        .order_by(TuningFile.upload_date.desc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def get_open_tuning_files(db: AsyncSession, *, limit: int = 20) -> list[TuningFile]:
    result = await db.execute(
        _with_relations(
            select(TuningFile).where(TuningFile.status.in_((FileStatus.RECEIVED.value, FileStatus.PENDING.value)))
        )
        .order_by(TuningFile.upload_date.asc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def get_modifications_by_ids(db: AsyncSession, modification_ids: list[int]) -> list[Modification]:
    if not modification_ids:
        return []
    result = await db.execute(select(Modification).where(Modification.id.in_(modification_ids)))
    return list(result.scalars().all())
