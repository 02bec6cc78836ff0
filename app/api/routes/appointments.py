from fastapi import APIRouter, BackgroundTasks, Depends, Query

from app.core.config import get_settings
from app.schemas.auth import CurrentUserResponse
from app.schemas.booking import (
    AppointmentDisplayResponse,
    AppointmentResponse,
    AppointmentStatusChangeRequest,
)
from app.services.appointment_display import build_display_fields
from app.services.appointment_service import AppointmentService
from app.services.auth_service import AuthService, require_current_user, require_instructor
from app.services.booking_errors import AppointmentNotFoundError
from app.services.booking_models import AppointmentStatus
from app.services.calendar_sync_queue import run_calendar_sync

router = APIRouter(prefix="/appointments", tags=["appointments"])


@router.get("/mine", response_model=list[AppointmentResponse])
def list_my_appointments(
    current_user: CurrentUserResponse = Depends(require_current_user),
) -> list[AppointmentResponse]:
    service = AppointmentService()
    return [
        AppointmentResponse.model_validate(appointment)
        for appointment in service.list_for_student(current_user.id)
    ]


@router.get("/instructor", response_model=list[AppointmentResponse])
def list_instructor_appointments(
    status_filter: list[AppointmentStatus] | None = Query(default=None, alias="status"),
    current_user: CurrentUserResponse = Depends(require_instructor),
) -> list[AppointmentResponse]:
    service = AppointmentService()
    return [
        AppointmentResponse.model_validate(appointment)
        for appointment in service.list_for_instructor(current_user.id, status_filter)
    ]


@router.get("/{appointment_id}", response_model=AppointmentResponse)
def get_appointment(
    appointment_id: str,
    current_user: CurrentUserResponse = Depends(require_current_user),
) -> AppointmentResponse:
    service = AppointmentService()
    return AppointmentResponse.model_validate(service.get_for_actor(appointment_id, current_user))


@router.get("/{appointment_id}/display", response_model=AppointmentDisplayResponse)
def get_appointment_display(
    appointment_id: str,
    current_user: CurrentUserResponse = Depends(require_current_user),
) -> AppointmentDisplayResponse:
    service = AppointmentService()
    appointment = service.get_for_actor(appointment_id, current_user)
    appointment_type = service.store.get_appointment_type(appointment.appointment_type_id)
    if not appointment_type:
        raise AppointmentNotFoundError("Appointment type not found.")
    instructor = AuthService().get_user(appointment.instructor_id)
    fields = build_display_fields(
        appointment,
        appointment_type,
        instructor_name=instructor.full_name if instructor else "",
        timezone=get_settings().booking_timezone,
    )
    return AppointmentDisplayResponse(appointment_id=appointment.id, fields=fields)


@router.post("/{appointment_id}/approve", response_model=AppointmentResponse)
def approve_appointment(
    appointment_id: str,
    background_tasks: BackgroundTasks,
    current_user: CurrentUserResponse = Depends(require_instructor),
) -> AppointmentResponse:
    service = AppointmentService()
    appointment = service.approve(appointment_id, current_user)
    background_tasks.add_task(run_calendar_sync)
    return AppointmentResponse.model_validate(appointment)


@router.post("/{appointment_id}/reject", response_model=AppointmentResponse)
def reject_appointment(
    appointment_id: str,
    background_tasks: BackgroundTasks,
    payload: AppointmentStatusChangeRequest | None = None,
    current_user: CurrentUserResponse = Depends(require_instructor),
) -> AppointmentResponse:
    service = AppointmentService()
    appointment = service.reject(appointment_id, current_user, payload.reason if payload else None)
    background_tasks.add_task(run_calendar_sync)
    return AppointmentResponse.model_validate(appointment)


@router.post("/{appointment_id}/cancel", response_model=AppointmentResponse)
def cancel_appointment(
    appointment_id: str,
    background_tasks: BackgroundTasks,
    payload: AppointmentStatusChangeRequest | None = None,
    current_user: CurrentUserResponse = Depends(require_current_user),
) -> AppointmentResponse:
    service = AppointmentService()
    appointment = service.cancel(appointment_id, current_user, payload.reason if payload else None)
    background_tasks.add_task(run_calendar_sync)
    return AppointmentResponse.model_validate(appointment)


@router.post("/{appointment_id}/complete", response_model=AppointmentResponse)
def complete_appointment(
    appointment_id: str,
    background_tasks: BackgroundTasks,
    current_user: CurrentUserResponse = Depends(require_instructor),
) -> AppointmentResponse:
    service = AppointmentService()
    appointment = service.complete(appointment_id, current_user)
    background_tasks.add_task(run_calendar_sync)
    return AppointmentResponse.model_validate(appointment)
