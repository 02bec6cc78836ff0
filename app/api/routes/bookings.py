from fastapi import APIRouter, BackgroundTasks, Depends, status

from app.schemas.auth import CurrentUserResponse
from app.schemas.booking import (
    AppointmentResponse,
    BookingRequest,
    BookingResponse,
    RescheduleRequest,
)
from app.services.auth_service import require_current_user
from app.services.booking_models import StudentContact
from app.services.booking_service import BookingResult, BookingService
from app.services.calendar_sync_queue import run_calendar_sync

router = APIRouter(prefix="/bookings", tags=["bookings"])


@router.post("", response_model=BookingResponse, status_code=status.HTTP_201_CREATED)
def create_booking(
    payload: BookingRequest,
    background_tasks: BackgroundTasks,
    current_user: CurrentUserResponse = Depends(require_current_user),
) -> BookingResponse:
    service = BookingService()
    result = service.book(
        instructor_id=payload.instructor_id,
        student_id=current_user.id,
        appointment_type_id=payload.appointment_type_id,
        start_time=payload.start_time,
        end_time=payload.end_time,
        student_contact=StudentContact(
            name=payload.student_name or current_user.full_name,
            email=payload.student_email or current_user.email,
            phone=payload.student_phone or current_user.phone,
            notes=payload.notes,
        ),
    )
    background_tasks.add_task(run_calendar_sync)
    return _to_booking_response(result)


@router.post("/{appointment_id}/reschedule", response_model=BookingResponse)
def reschedule_booking(
    appointment_id: str,
    payload: RescheduleRequest,
    background_tasks: BackgroundTasks,
    current_user: CurrentUserResponse = Depends(require_current_user),
) -> BookingResponse:
    service = BookingService()
    result = service.reschedule(
        appointment_id=appointment_id,
        actor=current_user,
        start_time=payload.start_time,
        end_time=payload.end_time,
    )
    background_tasks.add_task(run_calendar_sync)
    return _to_booking_response(result)


def _to_booking_response(result: BookingResult) -> BookingResponse:
    return BookingResponse(
        appointment=AppointmentResponse.model_validate(result.appointment),
        calendar_sync=result.calendar_sync,
        warnings=result.warnings,
    )
