from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tunedesk.database.models import AuditAction, AuditLog


def _as_text(value) -> str | None:
    if value is None:
        return None
    return str(value)


async def append_audit_entry(
    db: AsyncSession,
    *,
    file_id: str,
    actor_id: str,
    action: AuditAction,
    old_value=None,
    new_value=None,
) -> AuditLog:
    """Stage an audit row in the caller's transaction; the caller commits."""
    entry = AuditLog(
        file_id=file_id,
        actor_id=actor_id,
        action=action.value,
        old_value=_as_text(old_value),
        new_value=_as_text(new_value),
    )
    db.add(entry)
    await db.flush()
    return entry


async def get_file_audit_trail(db: AsyncSession, file_id: str, *, limit: int = 100) -> list[AuditLog]:
    result = await db.execute(
        select(AuditLog)
        .where(AuditLog.file_id == file_id)
        .order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
        .limit(limit)
    )
    return list(result.scalars().all())
