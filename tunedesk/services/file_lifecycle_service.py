from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from typing import Any
from uuid import uuid4

import structlog
from aiogram import html
from fastapi import HTTPException, status
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from tunedesk.bots.keyboards import file_status_keyboard
from tunedesk.config import settings
from tunedesk.database.crud.audit_log import append_audit_entry
from tunedesk.database.crud.tuning_file import get_modifications_by_ids, get_tuning_file_for_update
from tunedesk.database.models import AuditAction, FileModification, FileStatus, PaymentStatus, TuningFile, User
from tunedesk.services.countdown import format_time_text
from tunedesk.services.delivery import FanOutReport
from tunedesk.services.notification_service import (
    FILE_ADMIN_COMMENT,
    FILE_ESTIMATED_TIME,
    FILE_READY,
    FILE_RECEIVED,
    FILE_STATUS_UPDATE,
    FILE_UPDATE_BY_ADMIN,
    NEW_FILE_UPLOAD,
    PAYMENT_CONFIRMED,
    PRICE_SET,
    NotificationEvent,
    NotificationService,
)


logger = structlog.get_logger(__name__)

MIN_ESTIMATE_MINUTES = 1
MAX_ESTIMATE_MINUTES = 7 * 24 * 60
MAX_ADMIN_NOTES_LENGTH = 2000
# Largest value a Numeric(10, 2) column holds
MAX_PRICE = Decimal('99999999.99')

PUSH_FILE_STATUS_UPDATE = 'file_status_update'
PUSH_ESTIMATED_TIME_UPDATE = 'estimated_time_update'

_STATUS_LABELS = {
    FileStatus.RECEIVED.value: 'received',
    FileStatus.PENDING.value: 'in progress',
    FileStatus.READY.value: 'ready for download',
}


def _now_utc() -> datetime:
    return datetime.now(UTC)


def _bad_request(error_code: str, field_name: str, message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_400_BAD_REQUEST,
        detail={'error_code': error_code, 'field': field_name, 'message': message},
    )


def _enum_value(value, enum_cls) -> str | None:
    if isinstance(value, enum_cls):
        return value.value
    try:
        return enum_cls(str(value).strip().upper()).value
    except ValueError:
        return None


def _validate_minutes(minutes) -> int:
    value = None
    if isinstance(minutes, int) and not isinstance(minutes, bool):
        value = minutes
    elif isinstance(minutes, str) and minutes.strip().isdigit():
        value = int(minutes.strip())
    if value is None:
        raise _bad_request('INVALID_ESTIMATED_TIME', 'estimated_minutes', 'Estimated time must be a whole number of minutes')
    if not MIN_ESTIMATE_MINUTES <= value <= MAX_ESTIMATE_MINUTES:
        raise _bad_request(
            'INVALID_ESTIMATED_TIME',
            'estimated_minutes',
            f'Estimated time must be between {MIN_ESTIMATE_MINUTES} and {MAX_ESTIMATE_MINUTES} minutes',
        )
    return value


def _format_size(size: int | None) -> str:
    if not size:
        return '0 B'
    if size < 1024:
        return f'{size} B'
    if size < 1024 * 1024:
        return f'{size / 1024:.1f} KB'
    return f'{size / (1024 * 1024):.1f} MB'


@dataclass(frozen=True)
class Actor:
    """Who performed a mutation; ``id`` is what lands in the audit trail."""

    id: str
    display_name: str
    user_id: str | None = None

    @classmethod
    def from_user(cls, user: User) -> Actor:
        return cls(id=user.id, display_name=user.full_name, user_id=user.id)

    @classmethod
    def bot(cls, role: str, username: str | None = None) -> Actor:
        display = f'@{username}' if username else f'{role} bot'
        return cls(id=f'bot:{role}', display_name=display)


@dataclass
class MutationResult:
    file: TuningFile
    changed: bool = True
    old_value: Any = None
    new_value: Any = None
    reports: list[FanOutReport] = field(default_factory=list)


class FileLifecycleController:
    """Every change to a tuning file goes through here.

    Each operation locks the row, validates, writes the change together with its
    audit entry, commits, and only then notifies. Notification problems are
    reported on the result and never undo or fail the mutation.
    """

    def __init__(
        self,
        db: AsyncSession,
        notifier: NotificationService | None = None,
        clock: Callable[[], datetime] = _now_utc,
    ):
        self.db = db
        self.notifier = notifier
        self._clock = clock

    async def _load_for_update(self, file_id: str) -> TuningFile:
        file = await get_tuning_file_for_update(self.db, file_id)
        if file is None:
            await self.db.rollback()
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail={'error_code': 'FILE_NOT_FOUND', 'field': 'file_id', 'message': 'File not found'},
            )
        return file

    async def _reject(self, error_code: str, field_name: str, message: str) -> None:
        await self.db.rollback()
        raise _bad_request(error_code, field_name, message)

    async def _audit(self, file: TuningFile, actor: Actor, action: AuditAction, old_value=None, new_value=None):
        await append_audit_entry(
            self.db,
            file_id=file.id,
            actor_id=actor.id,
            action=action,
            old_value=old_value,
            new_value=new_value,
        )

    async def _notify_owner(self, file: TuningFile, **event_fields) -> FanOutReport | None:
        if self.notifier is None:
            return None
        event = NotificationEvent(user_id=file.user_id, file_id=file.id, **event_fields)
        return await self.notifier.notify(self.db, event)

    async def _notify_staff(self, file: TuningFile, actor: Actor | None, **event_fields) -> list[FanOutReport]:
        if self.notifier is None:
            return []
        event = NotificationEvent(user_id='', file_id=file.id, **event_fields)
        return await self.notifier.notify_staff(self.db, event, exclude_user_id=actor.user_id if actor else None)

    # Status

    async def set_status(
        self,
        file_id: str,
        new_status,
        actor: Actor,
        estimated_minutes: int | None = None,
        skip_if_unchanged: bool = False,
    ) -> MutationResult:
        status_value = _enum_value(new_status, FileStatus)
        if status_value is None:
            raise _bad_request('INVALID_STATUS', 'status', f'Unknown status: {new_status}')
        if estimated_minutes is not None:
            if status_value != FileStatus.PENDING.value:
                raise _bad_request(
                    'INVALID_STATE',
                    'estimated_minutes',
                    'An estimated time can only be set together with PENDING',
                )
            estimated_minutes = _validate_minutes(estimated_minutes)

        file = await self._load_for_update(file_id)
        old_status = file.status

        if skip_if_unchanged and old_status == status_value and estimated_minutes is None:
            # Releases the row lock without expiring the loaded file
            await self.db.commit()
            logger.info('Status unchanged, skipping', file_id=file.id, status=status_value, actor_id=actor.id)
            return MutationResult(file=file, changed=False, old_value=old_status, new_value=status_value)

        if status_value == FileStatus.READY.value and not file.modified_r2_key:
            await self._reject(
                'MODIFIED_FILE_REQUIRED',
                'status',
                'Upload the modified file before marking it READY',
            )

        now = self._clock()
        file.status = status_value
        file.updated_date = now
        estimate_set = False
        if status_value == FileStatus.PENDING.value:
            if estimated_minutes is not None:
                file.estimated_processing_time = estimated_minutes
                file.estimated_processing_time_set_at = now
                estimate_set = True
        else:
            file.estimated_processing_time = None
            file.estimated_processing_time_set_at = None

        await self._audit(file, actor, AuditAction.STATUS_CHANGE, old_status, status_value)
        if estimate_set:
            await self._audit(file, actor, AuditAction.ESTIMATED_TIME_SET, None, estimated_minutes)
        await self.db.commit()

        logger.info(
            'File status changed',
            file_id=file.id,
            old_status=old_status,
            new_status=status_value,
            estimated_minutes=estimated_minutes,
            actor_id=actor.id,
        )

        result = MutationResult(file=file, changed=True, old_value=old_status, new_value=status_value)
        result.reports = await self._fan_out_status(file, old_status, actor, estimate_set)
        return result

    async def _fan_out_status(
        self,
        file: TuningFile,
        old_status: str,
        actor: Actor,
        estimate_set: bool,
    ) -> list[FanOutReport]:
        new_status = file.status
        name = file.original_filename
        if new_status == FileStatus.READY.value:
            notification_type = FILE_READY
            title = 'File Ready for Download'
            message = f'Your file "{name}" is ready for download!'
        else:
            notification_type = FILE_STATUS_UPDATE
            title = 'File Status Updated'
            message = f'Your file "{name}" is now {_STATUS_LABELS.get(new_status, new_status)}.'

        reports = []
        owner_report = await self._notify_owner(
            file,
            notification_type=notification_type,
            title=title,
            message=message,
            push_type=PUSH_FILE_STATUS_UPDATE,
            payload={
                'fileName': name,
                'oldStatus': old_status,
                'newStatus': new_status,
                'estimatedProcessingTime': file.estimated_processing_time,
            },
        )
        if owner_report:
            reports.append(owner_report)

        if estimate_set:
            estimate_report = await self._fan_out_estimate(file)
            if estimate_report:
                reports.append(estimate_report)

        reports.extend(
            await self._notify_staff(
                file,
                actor,
                notification_type=FILE_UPDATE_BY_ADMIN,
                title='File status changed',
                message=f'{actor.display_name} moved "{name}" from {old_status} to {new_status}',
                payload={'oldStatus': old_status, 'newStatus': new_status},
            )
        )
        return reports

    async def _fan_out_estimate(self, file: TuningFile) -> FanOutReport | None:
        time_text = format_time_text(file.estimated_processing_time)
        return await self._notify_owner(
            file,
            notification_type=FILE_ESTIMATED_TIME,
            title='Processing Started',
            message=f'We started working on "{file.original_filename}". Estimated time: {time_text}.',
            push_type=PUSH_ESTIMATED_TIME_UPDATE,
            payload={
                'fileName': file.original_filename,
                'estimatedTime': file.estimated_processing_time,
                'timeText': time_text,
                'status': FileStatus.PENDING.value,
            },
        )

    async def set_estimated_time(self, file_id: str, minutes: int, actor: Actor) -> MutationResult:
        minutes = _validate_minutes(minutes)
        file = await self._load_for_update(file_id)
        if file.status != FileStatus.PENDING.value:
            await self._reject('INVALID_STATE', 'status', 'Estimated time can only be set while the file is PENDING')

        old_minutes = file.estimated_processing_time
        now = self._clock()
        file.estimated_processing_time = minutes
        file.estimated_processing_time_set_at = now
        file.updated_date = now
        await self._audit(file, actor, AuditAction.ESTIMATED_TIME_SET, old_minutes, minutes)
        await self.db.commit()

        logger.info('Estimated time set', file_id=file.id, minutes=minutes, actor_id=actor.id)

        result = MutationResult(file=file, old_value=old_minutes, new_value=minutes)
        report = await self._fan_out_estimate(file)
        if report:
            result.reports.append(report)
        return result

    # Commercial fields

    async def set_price(self, file_id: str, price, actor: Actor) -> MutationResult:
        try:
            amount = Decimal(str(price))
        except (InvalidOperation, ValueError):
            amount = None
        if amount is None or not amount.is_finite() or amount < 0:
            raise _bad_request('INVALID_PRICE', 'price', 'Price must be a non-negative number')
        if amount > MAX_PRICE:
            raise _bad_request('INVALID_PRICE', 'price', f'Price must not exceed {MAX_PRICE}')
        amount = amount.quantize(Decimal('0.01'))

        file = await self._load_for_update(file_id)
        old_price = file.price
        file.price = amount
        file.updated_date = self._clock()
        await self._audit(file, actor, AuditAction.PRICE_SET, old_price, amount)
        await self.db.commit()

        logger.info('File price set', file_id=file.id, old_price=str(old_price), new_price=str(amount), actor_id=actor.id)

        result = MutationResult(file=file, old_value=old_price, new_value=amount)
        report = await self._notify_owner(
            file,
            notification_type=PRICE_SET,
            title='Price Set for Your File',
            message=f'Price has been set for your file "{file.original_filename}": {amount} {settings.CURRENCY_LABEL}',
            payload={'fileName': file.original_filename, 'price': str(amount)},
        )
        if report:
            result.reports.append(report)
        return result

    async def set_payment_status(self, file_id: str, payment_status, actor: Actor) -> MutationResult:
        value = _enum_value(payment_status, PaymentStatus)
        if value is None:
            raise _bad_request('INVALID_PAYMENT_STATUS', 'payment_status', f'Unknown payment status: {payment_status}')

        file = await self._load_for_update(file_id)
        old_value = file.payment_status
        file.payment_status = value
        file.updated_date = self._clock()
        await self._audit(file, actor, AuditAction.PAYMENT_STATUS_CHANGE, old_value, value)
        await self.db.commit()

        logger.info('Payment status changed', file_id=file.id, old=old_value, new=value, actor_id=actor.id)

        result = MutationResult(file=file, old_value=old_value, new_value=value)
        if value == PaymentStatus.PAID.value and old_value != PaymentStatus.PAID.value:
            report = await self._notify_owner(
                file,
                notification_type=PAYMENT_CONFIRMED,
                title='Payment Confirmed',
                message=f'Payment confirmed for your file "{file.original_filename}". Processing will begin shortly.',
                payload={'fileName': file.original_filename},
            )
            if report:
                result.reports.append(report)
        return result

    async def set_admin_notes(self, file_id: str, notes: str | None, actor: Actor) -> MutationResult:
        notes = notes or ''
        if len(notes) > MAX_ADMIN_NOTES_LENGTH:
            raise _bad_request(
                'NOTES_TOO_LONG',
                'admin_notes',
                f'Notes must be at most {MAX_ADMIN_NOTES_LENGTH} characters',
            )

        file = await self._load_for_update(file_id)
        old_notes = file.admin_notes
        file.admin_notes = notes or None
        file.updated_date = self._clock()
        await self._audit(file, actor, AuditAction.ADMIN_NOTES_UPDATED, old_notes, notes or None)
        await self.db.commit()

        logger.info('Admin notes updated', file_id=file.id, length=len(notes), actor_id=actor.id)

        result = MutationResult(file=file, old_value=old_notes, new_value=notes or None)
        if notes.strip():
            report = await self._notify_owner(
                file,
                notification_type=FILE_ADMIN_COMMENT,
                title='Admin Comment Added',
                message=f'Admin has added a comment to your file "{file.original_filename}": {notes}',
                payload={'fileName': file.original_filename, 'comment': notes},
            )
            if report:
                result.reports.append(report)
            result.reports.extend(
                await self._notify_staff(
                    file,
                    actor,
                    notification_type=FILE_UPDATE_BY_ADMIN,
                    title='File comment added',
                    message=f'{actor.display_name} commented on "{file.original_filename}"',
                )
            )
        return result

    # Deliverables

    async def attach_modified_file(
        self,
        file_id: str,
        *,
        r2_key: str,
        filename: str,
        size: int,
        content_type: str | None,
        actor: Actor,
    ) -> MutationResult:
        if not r2_key or not r2_key.strip():
            raise _bad_request('INVALID_MODIFIED_FILE', 'r2_key', 'Storage key is required')
        if not filename or not filename.strip():
            raise _bad_request('INVALID_MODIFIED_FILE', 'filename', 'Filename is required')
        if size is None or size < 0:
            raise _bad_request('INVALID_MODIFIED_FILE', 'size', 'Size must be non-negative')

        file = await self._load_for_update(file_id)
        previous_key = file.modified_r2_key
        now = self._clock()
        file.modified_r2_key = r2_key.strip()
        file.modified_filename = filename.strip()
        file.modified_file_size = size
        file.modified_file_type = content_type
        file.modified_upload_date = now
        file.updated_date = now
        await self._audit(file, actor, AuditAction.MODIFIED_FILE_UPLOADED, previous_key, file.modified_r2_key)
        await self.db.commit()

        logger.info('Modified file attached', file_id=file.id, r2_key=file.modified_r2_key, actor_id=actor.id)

        return await self.set_status(file_id, FileStatus.READY, actor, skip_if_unchanged=True)

    async def register_upload(
        self,
        user: User,
        *,
        filename: str,
        r2_key: str,
        size: int,
        content_type: str | None = None,
        modification_ids: list[int] | None = None,
        comment: str | None = None,
        dtc_codes: str | None = None,
    ) -> MutationResult:
        if not filename or not filename.strip():
            raise _bad_request('INVALID_UPLOAD', 'filename', 'Filename is required')
        if not r2_key or not r2_key.strip():
            raise _bad_request('INVALID_UPLOAD', 'r2_key', 'Storage key is required')
        if size is None or size < 0:
            raise _bad_request('INVALID_UPLOAD', 'size', 'Size must be non-negative')

        requested = sorted(set(modification_ids or []))
        modifications = await get_modifications_by_ids(self.db, requested)
        if len(modifications) != len(requested):
            raise _bad_request('INVALID_MODIFICATION', 'modification_ids', 'Unknown modification selected')

        now = self._clock()
        file = TuningFile(
            id=str(uuid4()),
            user_id=user.id,
            original_filename=filename.strip(),
            r2_key=r2_key.strip(),
            file_size=size,
            file_type=content_type,
            status=FileStatus.RECEIVED.value,
            payment_status=PaymentStatus.NOT_PAID.value,
            price=Decimal('0'),
            customer_comment=(comment or '').strip() or None,
            dtc_codes=(dtc_codes or '').strip() or None,
            upload_date=now,
            updated_date=now,
        )
        for modification in modifications:
            file.file_modifications.append(FileModification(modification_id=modification.id, modification=modification))

        try:
            self.db.add(file)
            await self.db.flush()
            await self._audit(file, Actor.from_user(user), AuditAction.FILE_UPLOADED, None, file.original_filename)
            await self.db.commit()
        except IntegrityError as exc:
            await self.db.rollback()
            logger.warning('Upload rejected as duplicate', user_id=user.id, r2_key=r2_key, exc=exc)
            raise _bad_request('DUPLICATE_UPLOAD', 'r2_key', 'This upload was already registered') from exc

        logger.info('File upload registered', file_id=file.id, user_id=user.id, filename=file.original_filename)

        result = MutationResult(file=file, old_value=None, new_value=FileStatus.RECEIVED.value)
        await self._fan_out_upload(file, user, result)
        return result

    async def _fan_out_upload(self, file: TuningFile, user: User, result: MutationResult) -> None:
        if self.notifier is None:
            return
        name = file.original_filename
        labels = file.modification_labels

        report = await self._notify_owner(
            file,
            notification_type=FILE_RECEIVED,
            title='File Received',
            message=f'We received your file "{name}". Our team will review it shortly.',
            payload={'fileName': name, 'status': FileStatus.RECEIVED.value},
        )
        if report:
            result.reports.append(report)

        result.reports.extend(
            await self._notify_staff(
                file,
                None,
                notification_type=NEW_FILE_UPLOAD,
                title='New File Upload',
                message=f'{user.full_name} uploaded "{name}"',
                payload={'fileName': name, 'customerEmail': user.email, 'modifications': labels},
            )
        )

        lines = [
            f'📁 {html.bold("New file upload")}',
            '',
            f'👤 {html.quote(user.full_name)} ({html.quote(user.email or "")})',
            f'📄 {html.quote(name)} ({_format_size(file.file_size)})',
        ]
        if labels:
            lines.append(f'🔧 {html.quote(", ".join(labels))}')
        if file.customer_comment:
            lines.append(f'💬 {html.quote(file.customer_comment)}')
        if file.dtc_codes:
            lines.append(f'⚠️ DTC: {html.quote(file.dtc_codes)}')
        lines.append(f'🆔 {html.code(file.id)}')

        await self.notifier.alert_staff_chats(
            '\n'.join(lines),
            keyboard_for=lambda scope: file_status_keyboard(scope, file.id, file.status),
        )
