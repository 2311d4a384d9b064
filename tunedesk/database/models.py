from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.sql import func


class AwareDateTime(TypeDecorator):
    """DateTime that auto-converts naive values to UTC-aware on load from DB.

    Handles SQLite and pre-TIMESTAMPTZ databases that return naive datetimes.
    """

    impl = DateTime
    cache_ok = True

    def __init__(self):
        super().__init__(timezone=True)

    def process_result_value(self, value, dialect):
        if value is not None and isinstance(value, datetime) and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value


Base = declarative_base()


def _new_uuid() -> str:
    return str(uuid4())


class FileStatus(Enum):
    RECEIVED = 'RECEIVED'
    PENDING = 'PENDING'
    READY = 'READY'


class PaymentStatus(Enum):
    NOT_PAID = 'NOT_PAID'
    PAID = 'PAID'


class AuditAction(Enum):
    FILE_UPLOADED = 'FILE_UPLOADED'
    STATUS_CHANGE = 'STATUS_CHANGE'
    ESTIMATED_TIME_SET = 'ESTIMATED_TIME_SET'
    PRICE_SET = 'PRICE_SET'
    PAYMENT_STATUS_CHANGE = 'PAYMENT_STATUS_CHANGE'
    ADMIN_NOTES_UPDATED = 'ADMIN_NOTES_UPDATED'
    MODIFIED_FILE_UPLOADED = 'MODIFIED_FILE_UPLOADED'


class User(Base):
    __tablename__ = 'users'

    id = Column(String(36), primary_key=True, default=_new_uuid)
    email = Column(String(255), unique=True, nullable=False, index=True)
    first_name = Column(String(255), nullable=True)
    last_name = Column(String(255), nullable=True)
    is_admin = Column(Boolean, default=False, nullable=False)
    created_at = Column(AwareDateTime(), default=func.now())

    # Customer bot linkage
    telegram_chat_id = Column(String(64), unique=True, nullable=True, index=True)
    telegram_username = Column(String(255), nullable=True)
    telegram_linked_at = Column(AwareDateTime(), nullable=True)

    tuning_files = relationship('TuningFile', back_populates='user')

    @property
    def full_name(self) -> str:
        name = ' '.join(filter(None, [self.first_name, self.last_name]))
        if name:
            return name
        return self.email.split('@')[0] if self.email else f'User {self.id}'


class Modification(Base):
    __tablename__ = 'modifications'

    id = Column(Integer, primary_key=True, index=True)
    code = Column(String(50), unique=True, nullable=False)
    label = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    created_at = Column(AwareDateTime(), default=func.now())

    file_modifications = relationship('FileModification', back_populates='modification')


class TuningFile(Base):
    __tablename__ = 'tuning_files'
    __table_args__ = (Index('ix_tuning_files_status_upload', 'status', 'upload_date'),)

    id = Column(String(36), primary_key=True, default=_new_uuid)
    user_id = Column(String(36), ForeignKey('users.id', ondelete='CASCADE'), nullable=False, index=True)
    original_filename = Column(String(255), nullable=False)
    r2_key = Column(String(512), nullable=False, unique=True)
    file_size = Column(BigInteger, nullable=False, default=0)
    file_type = Column(String(255), nullable=True)

    status = Column(String(20), nullable=False, default=FileStatus.RECEIVED.value)
    payment_status = Column(String(20), nullable=False, default=PaymentStatus.NOT_PAID.value)
    price = Column(Numeric(10, 2), nullable=False, default=Decimal('0'))

    # Countdown window; meaningful only while status is PENDING
    estimated_processing_time = Column(Integer, nullable=True)
    estimated_processing_time_set_at = Column(AwareDateTime(), nullable=True)

    customer_comment = Column(Text, nullable=True)
    admin_notes = Column(Text, nullable=True)
    dtc_codes = Column(Text, nullable=True)

    modified_r2_key = Column(String(512), nullable=True)
    modified_filename = Column(String(255), nullable=True)
    modified_file_size = Column(BigInteger, nullable=True)
    modified_file_type = Column(String(255), nullable=True)
    modified_upload_date = Column(AwareDateTime(), nullable=True)

    upload_date = Column(AwareDateTime(), default=func.now(), nullable=False)
    updated_date = Column(AwareDateTime(), default=func.now(), onupdate=func.now())

    user = relationship('User', back_populates='tuning_files')
    file_modifications = relationship('FileModification', back_populates='tuning_file', cascade='all, delete-orphan')
    audit_logs = relationship('AuditLog', back_populates='tuning_file', order_by='AuditLog.created_at')

    @property
    def modification_labels(self) -> list[str]:
        return [fm.modification.label for fm in self.file_modifications if fm.modification]

    @property
    def is_ready(self) -> bool:
        return self.status == FileStatus.READY.value


class FileModification(Base):
    __tablename__ = 'file_modifications'
    __table_args__ = (UniqueConstraint('file_id', 'modification_id', name='uq_file_modifications_file_modification'),)

    id = Column(Integer, primary_key=True, index=True)
    file_id = Column(String(36), ForeignKey('tuning_files.id', ondelete='CASCADE'), nullable=False, index=True)
    modification_id = Column(Integer, ForeignKey('modifications.id', ondelete='CASCADE'), nullable=False)

    tuning_file = relationship('TuningFile', back_populates='file_modifications')
    modification = relationship('Modification', back_populates='file_modifications')


class AuditLog(Base):
    __tablename__ = 'audit_logs'
    __table_args__ = (Index('ix_audit_logs_file_created', 'file_id', 'created_at'),)

    id = Column(Integer, primary_key=True, index=True)
    file_id = Column(String(36), ForeignKey('tuning_files.id', ondelete='CASCADE'), nullable=False)
    actor_id = Column(String(64), nullable=False)
    action = Column(String(50), nullable=False)
    old_value = Column(Text, nullable=True)
    new_value = Column(Text, nullable=True)
    created_at = Column(AwareDateTime(), default=func.now(), nullable=False)

    tuning_file = relationship('TuningFile', back_populates='audit_logs')


class UserNotification(Base):
    __tablename__ = 'user_notifications'
    __table_args__ = (Index('ix_user_notifications_user_read', 'user_id', 'is_read'),)

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(36), ForeignKey('users.id', ondelete='CASCADE'), nullable=False, index=True)
    notification_type = Column(String(50), nullable=False)
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)
    payload = Column(JSON, nullable=True, default=dict)
    file_id = Column(String(36), ForeignKey('tuning_files.id', ondelete='SET NULL'), nullable=True)
    is_read = Column(Boolean, default=False, nullable=False)
    read_at = Column(AwareDateTime(), nullable=True)
    created_at = Column(AwareDateTime(), default=func.now(), nullable=False)

    user = relationship('User', backref='notifications')
