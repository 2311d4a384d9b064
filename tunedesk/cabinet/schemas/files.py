from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field


class CountdownInfo(BaseModel):
    estimated_minutes: int
    time_text: str
    set_at: datetime
    remaining_ms: int
    percent_complete: float
    expired: bool


class ModifiedFileInfo(BaseModel):
    r2_key: str
    filename: str | None = None
    file_size: int | None = None
    file_type: str | None = None
    uploaded_at: datetime | None = None


class TuningFileResponse(BaseModel):
    id: str
    original_filename: str
    file_size: int
    file_type: str | None = None
    status: str
    payment_status: str
    price: Decimal
    estimated_processing_time: int | None = None
    estimated_processing_time_set_at: datetime | None = None
    countdown: CountdownInfo | None = None
    customer_comment: str | None = None
    dtc_codes: str | None = None
    modifications: list[str] = Field(default_factory=list)
    modified_file: ModifiedFileInfo | None = None
    upload_date: datetime | None = None
    updated_date: datetime | None = None


class TuningFileListResponse(BaseModel):
    items: list[TuningFileResponse]
    total: int


class AuditEntryResponse(BaseModel):
    id: int
    actor_id: str
    action: str
    old_value: str | None = None
    new_value: str | None = None
    created_at: datetime | None = None


class AdminTuningFileResponse(TuningFileResponse):
    user_id: str
    customer_name: str | None = None
    customer_email: str | None = None
    r2_key: str
    admin_notes: str | None = None
    audit_trail: list[AuditEntryResponse] = Field(default_factory=list)


class ConfirmUploadRequest(BaseModel):
    r2_key: str = Field(..., min_length=1, max_length=512)
    filename: str = Field(..., min_length=1, max_length=255)
    file_size: int = Field(..., ge=0)
    content_type: str | None = Field(default=None, max_length=255)
    modification_ids: list[int] = Field(default_factory=list)
    customer_comment: str | None = Field(default=None, max_length=2000)
    dtc_codes: str | None = Field(default=None, max_length=1000)


class UpdateStatusRequest(BaseModel):
    status: str = Field(..., min_length=1, max_length=20)
    estimated_minutes: int | None = None


class SetPriceRequest(BaseModel):
    price: Decimal


class SetPaymentRequest(BaseModel):
    payment_status: str = Field(..., min_length=1, max_length=20)


class AddNoteRequest(BaseModel):
    admin_notes: str | None = None


class UploadModifiedRequest(BaseModel):
    r2_key: str = Field(..., min_length=1, max_length=512)
    filename: str = Field(..., min_length=1, max_length=255)
    file_size: int = Field(..., ge=0)
    content_type: str | None = Field(default=None, max_length=255)


class FileMutationResponse(BaseModel):
    success: bool = True
    changed: bool = True
    file: AdminTuningFileResponse
