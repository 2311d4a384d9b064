"""Inline-button payloads: ``<scope>_<subject>_<fileId>[_<ARG>]``.

Scopes and subjects may themselves contain underscores (``file_admin``,
``estimated_time``), so the payload is split around the file id, which is
always a UUID and never contains the delimiter.
"""

from __future__ import annotations

import re
from dataclasses import dataclass


DELIMITER = '_'
MAX_CALLBACK_BYTES = 64

SUBJECT_STATUS = 'status'
SUBJECT_ESTIMATED_TIME = 'estimated_time'
SUBJECT_TIME = 'time'
SUBJECT_CANCEL = 'cancel'

# Multi-token scopes checked before falling back to a single-token scope
KNOWN_SCOPES = ('super_admin', 'file_admin', 'customer')

_UUID_RE = re.compile(r'^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$')


@dataclass(frozen=True)
class CallbackPayload:
    scope: str
    subject: str
    file_id: str
    argument: str | None = None

    @property
    def status(self) -> str | None:
        if self.subject != SUBJECT_STATUS or not self.argument:
            return None
        return self.argument.upper()

    def encode(self) -> str:
        return build_callback_data(self.scope, self.subject, self.file_id, self.argument)


def build_callback_data(scope: str, subject: str, file_id: str, argument: str | int | None = None) -> str:
    if not _UUID_RE.match(file_id):
        raise ValueError(f'file id must be a UUID: {file_id!r}')
    parts = [scope, subject, file_id]
    if argument is not None:
        parts.append(str(argument))
    data = DELIMITER.join(parts)
    if len(data.encode()) > MAX_CALLBACK_BYTES:
        raise ValueError(f'callback data exceeds {MAX_CALLBACK_BYTES} bytes: {data!r}')
    return data


def _split_head(tokens: list[str]) -> tuple[str, str] | None:
    for scope in KNOWN_SCOPES:
        scope_tokens = scope.split(DELIMITER)
        if tokens[: len(scope_tokens)] == scope_tokens and len(tokens) > len(scope_tokens):
            return scope, DELIMITER.join(tokens[len(scope_tokens) :])
    if len(tokens) < 2:
        return None
    return tokens[0], DELIMITER.join(tokens[1:])


def parse_callback_data(data: str | None) -> CallbackPayload | None:
    if not data:
        return None
    tokens = data.split(DELIMITER)
    file_index = next((i for i, token in enumerate(tokens) if _UUID_RE.match(token)), None)
    if file_index is None:
        return None

    head = _split_head(tokens[:file_index])
    if head is None:
        return None
    scope, subject = head

    argument = DELIMITER.join(tokens[file_index + 1 :]) or None
    return CallbackPayload(scope=scope, subject=subject, file_id=tokens[file_index].lower(), argument=argument)
