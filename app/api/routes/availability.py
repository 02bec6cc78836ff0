from datetime import date, datetime

from fastapi import APIRouter, Depends, Query, Response, status

from app.core.config import get_settings
from app.schemas.auth import CurrentUserResponse
from app.schemas.booking import (
    AvailabilityResponse,
    ManualBlockCreateRequest,
    ManualBlockResponse,
    TimeSlotResponse,
)
from app.services.auth_service import require_instructor
from app.services.availability_service import AvailabilityService

router = APIRouter(prefix="/availability", tags=["availability"])


@router.get("/{instructor_id}/slots", response_model=AvailabilityResponse)
def list_free_slots(
    instructor_id: str,
    day: date = Query(..., alias="date"),
    appointment_type_id: str = Query(..., min_length=1),
) -> AvailabilityResponse:
    service = AvailabilityService()
    appointment_type, slots = service.free_slots_for_type(instructor_id, day, appointment_type_id)
    return AvailabilityResponse(
        instructor_id=instructor_id,
        day=day,
        appointment_type_id=appointment_type.id,
        duration_minutes=appointment_type.duration_minutes,
        timezone=get_settings().booking_timezone,
        slots=[TimeSlotResponse.model_validate(slot) for slot in slots],
    )


@router.post("/blocks", response_model=ManualBlockResponse, status_code=status.HTTP_201_CREATED)
def create_manual_block(
    payload: ManualBlockCreateRequest,
    current_user: CurrentUserResponse = Depends(require_instructor),
) -> ManualBlockResponse:
    service = AvailabilityService()
    block = service.create_manual_block(
        current_user.id,
        start_time=payload.start_time,
        end_time=payload.end_time,
        reason=payload.reason,
    )
    return ManualBlockResponse.model_validate(block)


@router.get("/blocks", response_model=list[ManualBlockResponse])
def list_manual_blocks(
    start: datetime | None = Query(default=None),
    end: datetime | None = Query(default=None),
    current_user: CurrentUserResponse = Depends(require_instructor),
) -> list[ManualBlockResponse]:
    service = AvailabilityService()
    return [
        ManualBlockResponse.model_validate(block)
        for block in service.list_manual_blocks(current_user.id, start, end)
    ]


@router.delete("/blocks/{block_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_manual_block(
    block_id: str,
    current_user: CurrentUserResponse = Depends(require_instructor),
) -> Response:
    service = AvailabilityService()
    service.delete_manual_block(block_id, actor_id=current_user.id, actor_is_admin=current_user.is_admin)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
