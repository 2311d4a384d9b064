from aiogram.types import InlineKeyboardButton, InlineKeyboardMarkup

from tunedesk.bots.callback_data import (
    SUBJECT_CANCEL,
    SUBJECT_ESTIMATED_TIME,
    SUBJECT_STATUS,
    SUBJECT_TIME,
    build_callback_data,
)
from tunedesk.database.models import FileStatus
from tunedesk.services.countdown import format_time_text


ESTIMATE_CHOICES_MINUTES = (5, 10, 15, 20, 30, 45, 60, 120, 240, 1440)


def _status_button(scope: str, file_id: str, status: FileStatus, current: str | None, label: str, icon: str):
    text = f'{icon} {status.value}' if current == status.value else f'{icon} {label}'
    return InlineKeyboardButton(text=text, callback_data=build_callback_data(scope, SUBJECT_STATUS, file_id, status.value))


def file_status_keyboard(scope: str, file_id: str, current_status: str | None = None) -> InlineKeyboardMarkup:
    estimate_label = '⏰ Change Time' if current_status == FileStatus.PENDING.value else '⏰ Set Estimated Time'
    return InlineKeyboardMarkup(
        inline_keyboard=[
            [_status_button(scope, file_id, FileStatus.READY, current_status, 'Set to READY', '✅')],
            [_status_button(scope, file_id, FileStatus.PENDING, current_status, 'Set to PENDING', '⏳')],
            [
                InlineKeyboardButton(
                    text=estimate_label,
                    callback_data=build_callback_data(scope, SUBJECT_ESTIMATED_TIME, file_id),
                )
            ],
        ]
    )


def estimate_picker_keyboard(scope: str, file_id: str) -> InlineKeyboardMarkup:
    rows: list[list[InlineKeyboardButton]] = []
    row: list[InlineKeyboardButton] = []
    for minutes in ESTIMATE_CHOICES_MINUTES:
        row.append(
            InlineKeyboardButton(
                text=format_time_text(minutes),
                callback_data=build_callback_data(scope, SUBJECT_TIME, file_id, minutes),
            )
        )
        if len(row) == 3:
            rows.append(row)
            row = []
    if row:
        rows.append(row)
    rows.append(
        [InlineKeyboardButton(text='❌ Cancel', callback_data=build_callback_data(scope, SUBJECT_CANCEL, file_id))]
    )
    return InlineKeyboardMarkup(inline_keyboard=rows)
