from fastapi import APIRouter, Depends, status

from app.schemas.auth import CurrentUserResponse
from app.schemas.booking import (
    AppointmentTypeCreateRequest,
    AppointmentTypeResponse,
    AppointmentTypeUpdateRequest,
)
from app.services.appointment_type_service import AppointmentTypeService
from app.services.auth_service import require_instructor

router = APIRouter(tags=["appointment-types"])


@router.get(
    "/instructors/{instructor_id}/appointment-types",
    response_model=list[AppointmentTypeResponse],
)
def list_instructor_appointment_types(instructor_id: str) -> list[AppointmentTypeResponse]:
    service = AppointmentTypeService()
    return [
        AppointmentTypeResponse.model_validate(appointment_type)
        for appointment_type in service.list_active(instructor_id)
    ]


@router.get("/appointment-types/mine", response_model=list[AppointmentTypeResponse])
def list_my_appointment_types(
    current_user: CurrentUserResponse = Depends(require_instructor),
) -> list[AppointmentTypeResponse]:
    service = AppointmentTypeService()
    return [
        AppointmentTypeResponse.model_validate(appointment_type)
        for appointment_type in service.list_owned(current_user.id)
    ]


@router.post(
    "/appointment-types",
    response_model=AppointmentTypeResponse,
    status_code=status.HTTP_201_CREATED,
)
def create_appointment_type(
    payload: AppointmentTypeCreateRequest,
    current_user: CurrentUserResponse = Depends(require_instructor),
) -> AppointmentTypeResponse:
    service = AppointmentTypeService()
    return AppointmentTypeResponse.model_validate(service.create(current_user, payload))


@router.patch("/appointment-types/{appointment_type_id}", response_model=AppointmentTypeResponse)
def update_appointment_type(
    appointment_type_id: str,
    payload: AppointmentTypeUpdateRequest,
    current_user: CurrentUserResponse = Depends(require_instructor),
) -> AppointmentTypeResponse:
    service = AppointmentTypeService()
    return AppointmentTypeResponse.model_validate(
        service.update(current_user, appointment_type_id, payload),
    )
