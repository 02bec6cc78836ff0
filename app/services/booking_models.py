from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum
from typing import Any


class AppointmentStatus(str, Enum):
    pending = "pending"
    confirmed = "confirmed"
    rejected = "rejected"
    cancelled = "cancelled"
    completed = "completed"


ACTIVE_STATUSES = frozenset({AppointmentStatus.pending, AppointmentStatus.confirmed})


class BusySource(str, Enum):
    appointment = "appointment"
    manual_block = "manual_block"
    external_calendar = "external_calendar"


@dataclass(frozen=True)
class BusyInterval:
    start: datetime
    end: datetime
    source: BusySource
    external_event_id: str | None = None

    def overlaps(self, start: datetime, end: datetime) -> bool:
        return self.start < end and start < self.end


@dataclass(frozen=True)
class TimeSlot:
    start: datetime
    end: datetime

    @property
    def duration_minutes(self) -> int:
        return int((self.end - self.start).total_seconds() // 60)


@dataclass(frozen=True)
class StudentContact:
    name: str
    email: str
    phone: str | None = None
    notes: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "email": self.email,
            "phone": self.phone,
            "notes": self.notes,
        }

    @classmethod
    def from_record(cls, record: Mapping[str, Any] | None) -> StudentContact:
        record = record or {}
        return cls(
            name=str(record.get("name") or ""),
            email=str(record.get("email") or ""),
            phone=_optional_text(record.get("phone")),
            notes=_optional_text(record.get("notes")),
        )


@dataclass(frozen=True)
class AppointmentType:
    id: str
    instructor_id: str
    title: str
    duration_minutes: int
    price: float
    requires_approval: bool = False
    is_active: bool = True
    description: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> AppointmentType:
        return cls(
            id=str(record.get("_id", "")),
            instructor_id=str(record.get("instructor_id", "")),
            title=str(record.get("title", "")),
            duration_minutes=int(record.get("duration_minutes", 0)),
            price=float(record.get("price", 0)),
            requires_approval=bool(record.get("requires_approval", False)),
            is_active=bool(record.get("is_active", True)),
            description=_optional_text(record.get("description")),
            created_at=_as_utc(record.get("created_at")),
            updated_at=_as_utc(record.get("updated_at")),
        )


@dataclass(frozen=True)
class Appointment:
    id: str
    instructor_id: str
    student_id: str
    appointment_type_id: str
    start_time: datetime
    end_time: datetime
    status: AppointmentStatus
    student_contact: StudentContact
    external_event_id: str | None = None
    status_reason: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    def with_changes(self, **changes: Any) -> Appointment:
        return replace(self, **changes)

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> Appointment:
        return cls(
            id=str(record.get("_id", "")),
            instructor_id=str(record.get("instructor_id", "")),
            student_id=str(record.get("student_id", "")),
            appointment_type_id=str(record.get("appointment_type_id", "")),
            start_time=_as_utc(record.get("start_time")),
            end_time=_as_utc(record.get("end_time")),
            status=AppointmentStatus(str(record.get("status", AppointmentStatus.pending.value))),
            student_contact=StudentContact.from_record(record.get("student_contact")),
            external_event_id=_optional_text(record.get("external_event_id")),
            status_reason=_optional_text(record.get("status_reason")),
            created_at=_as_utc(record.get("created_at")),
            updated_at=_as_utc(record.get("updated_at")),
        )


@dataclass(frozen=True)
class ManualBlock:
    id: str
    instructor_id: str
    start_time: datetime
    end_time: datetime
    reason: str | None = None
    created_at: datetime | None = None

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> ManualBlock:
        return cls(
            id=str(record.get("_id", "")),
            instructor_id=str(record.get("instructor_id", "")),
            start_time=_as_utc(record.get("start_time")),
            end_time=_as_utc(record.get("end_time")),
            reason=_optional_text(record.get("reason")),
            created_at=_as_utc(record.get("created_at")),
        )


@dataclass
class CalendarCredential:
    """OAuth tokens for one instructor's Google Calendar connection.

    Mutable on purpose: a refresh swaps the access token and expiry in place
    and the owning sync service persists the result.
    """

    instructor_id: str
    access_token: str
    refresh_token: str
    token_expiry: datetime
    calendar_id: str = "primary"
    blocking_enabled: bool = True
    updated_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def expires_within(self, *, now: datetime, leeway_seconds: int) -> bool:
        return (self.token_expiry - now).total_seconds() <= leeway_seconds

    def to_dict(self) -> dict[str, Any]:
        return {
            "instructor_id": self.instructor_id,
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_expiry": self.token_expiry,
            "calendar_id": self.calendar_id,
            "blocking_enabled": self.blocking_enabled,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> CalendarCredential:
        return cls(
            instructor_id=str(record.get("instructor_id", "")),
            access_token=str(record.get("access_token", "")),
            refresh_token=str(record.get("refresh_token", "")),
            token_expiry=_as_utc(record.get("token_expiry")),
            calendar_id=str(record.get("calendar_id") or "primary"),
            blocking_enabled=record.get("blocking_enabled") is not False,
            updated_at=_as_utc(record.get("updated_at")) or datetime.now(UTC),
        )


def _optional_text(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    cleaned = value.strip()
    return cleaned or None


def _as_utc(value: Any) -> datetime | None:
    if not isinstance(value, datetime):
        return None
    # pymongo hands back naive datetimes that are already UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)
