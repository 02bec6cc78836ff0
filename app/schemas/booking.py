from datetime import date, datetime

from pydantic import BaseModel, ConfigDict, Field

from app.services.booking_models import AppointmentStatus


class AppointmentTypeCreateRequest(BaseModel):
    title: str = Field(min_length=1, max_length=200)
    duration_minutes: int = Field(gt=0, le=24 * 60)
    price: float = Field(ge=0)
    requires_approval: bool = False
    is_active: bool = True
    description: str | None = None


class AppointmentTypeUpdateRequest(BaseModel):
    title: str | None = Field(default=None, min_length=1, max_length=200)
    duration_minutes: int | None = Field(default=None, gt=0, le=24 * 60)
    price: float | None = Field(default=None, ge=0)
    requires_approval: bool | None = None
    is_active: bool | None = None
    description: str | None = None


class AppointmentTypeResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    instructor_id: str
    title: str
    duration_minutes: int
    price: float
    requires_approval: bool
    is_active: bool
    description: str | None = None


class TimeSlotResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    start: datetime
    end: datetime


class AvailabilityResponse(BaseModel):
    instructor_id: str
    day: date
    appointment_type_id: str
    duration_minutes: int
    timezone: str
    slots: list[TimeSlotResponse] = Field(default_factory=list)


class ManualBlockCreateRequest(BaseModel):
    start_time: datetime
    end_time: datetime
    reason: str | None = Field(default=None, max_length=500)


class ManualBlockResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    instructor_id: str
    start_time: datetime
    end_time: datetime
    reason: str | None = None


class StudentContactResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    name: str
    email: str
    phone: str | None = None
    notes: str | None = None


class AppointmentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    instructor_id: str
    student_id: str
    appointment_type_id: str
    start_time: datetime
    end_time: datetime
    status: AppointmentStatus
    student_contact: StudentContactResponse
    external_event_id: str | None = None
    status_reason: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class BookingRequest(BaseModel):
    instructor_id: str = Field(min_length=1)
    appointment_type_id: str = Field(min_length=1)
    start_time: datetime
    end_time: datetime
    student_name: str | None = None
    student_email: str | None = None
    student_phone: str | None = None
    notes: str | None = Field(default=None, max_length=2000)


class RescheduleRequest(BaseModel):
    start_time: datetime
    end_time: datetime


class AppointmentStatusChangeRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=1000)


class BookingResponse(BaseModel):
    appointment: AppointmentResponse
    calendar_sync: str
    warnings: list[str] = Field(default_factory=list)


class AppointmentDisplayResponse(BaseModel):
    appointment_id: str
    fields: dict[str, str] = Field(default_factory=dict)
