from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from tunedesk.cabinet.schemas.files import (
    AddNoteRequest,
    AdminTuningFileResponse,
    FileMutationResponse,
    SetPaymentRequest,
    SetPriceRequest,
    UpdateStatusRequest,
    UploadModifiedRequest,
)
from tunedesk.database.crud.audit_log import get_file_audit_trail
from tunedesk.database.crud.tuning_file import get_tuning_file
from tunedesk.database.models import User
from tunedesk.services.file_lifecycle_service import Actor, FileLifecycleController, MutationResult

from ..dependencies import get_cabinet_db, get_file_controller, require_staff
from .files import build_admin_file_response


router = APIRouter(prefix='/admin/files', tags=['Cabinet Admin Files'])


def _mutation_response(result: MutationResult) -> FileMutationResponse:
    return FileMutationResponse(changed=result.changed, file=build_admin_file_response(result.file))


@router.get('/{file_id}', response_model=AdminTuningFileResponse)
async def get_admin_file(
    file_id: str,
    admin: User = Depends(require_staff),
    db: AsyncSession = Depends(get_cabinet_db),
):
    _ = admin
    file = await get_tuning_file(db, file_id)
    if file is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={'error_code': 'FILE_NOT_FOUND', 'field': 'file_id', 'message': 'File not found'},
        )
    audit_trail = await get_file_audit_trail(db, file_id)
    return build_admin_file_response(file, audit_trail)


@router.post('/{file_id}/update-status', response_model=FileMutationResponse)
async def update_status(
    file_id: str,
    payload: UpdateStatusRequest,
    admin: User = Depends(require_staff),
    controller: FileLifecycleController = Depends(get_file_controller),
):
    result = await controller.set_status(
        file_id,
        payload.status,
        Actor.from_user(admin),
        estimated_minutes=payload.estimated_minutes,
    )
    return _mutation_response(result)


@router.post('/{file_id}/set-price', response_model=FileMutationResponse)
async def set_price(
    file_id: str,
    payload: SetPriceRequest,
    admin: User = Depends(require_staff),
    controller: FileLifecycleController = Depends(get_file_controller),
):
    result = await controller.set_price(file_id, payload.price, Actor.from_user(admin))
    return _mutation_response(result)


@router.post('/{file_id}/set-payment', response_model=FileMutationResponse)
async def set_payment(
    file_id: str,
    payload: SetPaymentRequest,
    admin: User = Depends(require_staff),
    controller: FileLifecycleController = Depends(get_file_controller),
):
    result = await controller.set_payment_status(file_id, payload.payment_status, Actor.from_user(admin))
    return _mutation_response(result)


@router.post('/{file_id}/add-note', response_model=FileMutationResponse)
async def add_note(
    file_id: str,
    payload: AddNoteRequest,
    admin: User = Depends(require_staff),
    controller: FileLifecycleController = Depends(get_file_controller),
):
    result = await controller.set_admin_notes(file_id, payload.admin_notes, Actor.from_user(admin))
    return _mutation_response(result)


@router.post('/{file_id}/upload-modified', response_model=FileMutationResponse)
async def upload_modified(
    file_id: str,
    payload: UploadModifiedRequest,
    admin: User = Depends(require_staff),
    controller: FileLifecycleController = Depends(get_file_controller),
):
    result = await controller.attach_modified_file(
        file_id,
        r2_key=payload.r2_key,
        filename=payload.filename,
        size=payload.file_size,
        content_type=payload.content_type,
        actor=Actor.from_user(admin),
    )
    return _mutation_response(result)
