from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from tunedesk.cabinet.schemas.files import (
    AdminTuningFileResponse,
    AuditEntryResponse,
    ConfirmUploadRequest,
    CountdownInfo,
    ModifiedFileInfo,
    TuningFileListResponse,
    TuningFileResponse,
)
from tunedesk.database.crud.tuning_file import get_tuning_file, get_user_tuning_files
from tunedesk.database.models import TuningFile, User
from tunedesk.services.countdown import compute_countdown
from tunedesk.services.file_lifecycle_service import FileLifecycleController

from ..dependencies import get_cabinet_db, get_current_cabinet_user, get_file_controller


router = APIRouter(prefix='/files', tags=['Cabinet Files'])


def _file_fields(file: TuningFile) -> dict:
    countdown = compute_countdown(file)
    modified = None
    # The deliverable is only exposed once the file is READY
    if file.is_ready and file.modified_r2_key:
        modified = ModifiedFileInfo(
            r2_key=file.modified_r2_key,
            filename=file.modified_filename,
            file_size=file.modified_file_size,
            file_type=file.modified_file_type,
            uploaded_at=file.modified_upload_date,
        )
    return {
        'id': file.id,
        'original_filename': file.original_filename,
        'file_size': file.file_size or 0,
        'file_type': file.file_type,
        'status': file.status,
        'payment_status': file.payment_status,
        'price': file.price,
        'estimated_processing_time': file.estimated_processing_time,
        'estimated_processing_time_set_at': file.estimated_processing_time_set_at,
        'countdown': CountdownInfo(**countdown.as_dict()) if countdown else None,
        'customer_comment': file.customer_comment,
        'dtc_codes': file.dtc_codes,
        'modifications': file.modification_labels,
        'modified_file': modified,
        'upload_date': file.upload_date,
        'updated_date': file.updated_date,
    }


def build_file_response(file: TuningFile) -> TuningFileResponse:
    return TuningFileResponse(**_file_fields(file))


def build_admin_file_response(file: TuningFile, audit_trail=()) -> AdminTuningFileResponse:
    owner = file.user
    fields = _file_fields(file)
    if file.modified_r2_key and fields['modified_file'] is None:
        # Staff always see the deliverable they attached
        fields['modified_file'] = ModifiedFileInfo(
            r2_key=file.modified_r2_key,
            filename=file.modified_filename,
            file_size=file.modified_file_size,
            file_type=file.modified_file_type,
            uploaded_at=file.modified_upload_date,
        )
    return AdminTuningFileResponse(
        **fields,
        user_id=file.user_id,
        customer_name=owner.full_name if owner else None,
        customer_email=owner.email if owner else None,
        r2_key=file.r2_key,
        admin_notes=file.admin_notes,
        audit_trail=[
            AuditEntryResponse(
                id=entry.id,
                actor_id=entry.actor_id,
                action=entry.action,
                old_value=entry.old_value,
                new_value=entry.new_value,
                created_at=entry.created_at,
            )
            for entry in audit_trail
        ],
    )


@router.post('/confirm-upload', response_model=TuningFileResponse, status_code=status.HTTP_201_CREATED)
async def confirm_upload(
    request: ConfirmUploadRequest,
    user: User = Depends(get_current_cabinet_user),
    controller: FileLifecycleController = Depends(get_file_controller),
):
    result = await controller.register_upload(
        user,
        filename=request.filename,
        r2_key=request.r2_key,
        size=request.file_size,
        content_type=request.content_type,
        modification_ids=request.modification_ids,
        comment=request.customer_comment,
        dtc_codes=request.dtc_codes,
    )
    return build_file_response(result.file)


@router.get('', response_model=TuningFileListResponse)
async def list_files(
    limit: int = Query(50, ge=1, le=100),
    user: User = Depends(get_current_cabinet_user),
    db: AsyncSession = Depends(get_cabinet_db),
):
    files = await get_user_tuning_files(db, user.id, limit=limit)
    items = [build_file_response(file) for file in files]
    return TuningFileListResponse(items=items, total=len(items))


@router.get('/{file_id}', response_model=TuningFileResponse)
async def get_file(
    file_id: str,
    user: User = Depends(get_current_cabinet_user),
    db: AsyncSession = Depends(get_cabinet_db),
):
    file = await get_tuning_file(db, file_id)
    if file is None or file.user_id != user.id:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={'error_code': 'FILE_NOT_FOUND', 'field': 'file_id', 'message': 'File not found'},
        )
    return build_file_response(file)
