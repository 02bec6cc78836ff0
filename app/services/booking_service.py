from __future__ import annotations

import logging
import re
from collections.abc import Callable, Iterator
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

from app.core.config import Settings, get_settings
from app.schemas.auth import CurrentUserResponse
from app.services.availability_service import AvailabilityService
from app.services.booking_errors import (
    AppointmentNotFoundError,
    BookingConflictError,
    BookingValidationError,
    InvalidTransitionError,
    PermissionDeniedError,
)
from app.services.booking_models import (
    Appointment,
    AppointmentStatus,
    AppointmentType,
    StudentContact,
)
from app.services.booking_store import BookingLease, BookingStore, create_booking_store
from app.services.calendar_credential_store import (
    CalendarCredentialStore,
    create_calendar_credential_store,
)
from app.services.calendar_sync_queue import (
    CalendarSyncAction,
    CalendarSyncQueue,
    CalendarSyncTask,
    get_calendar_sync_queue,
)

logger = logging.getLogger(__name__)

_EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


@dataclass(frozen=True)
class BookingResult:
    appointment: Appointment
    calendar_sync: str
    warnings: list[str] = field(default_factory=list)


class BookingService:
    def __init__(
        self,
        settings: Settings | None = None,
        store: BookingStore | None = None,
        credential_store: CalendarCredentialStore | None = None,
        availability_service: AvailabilityService | None = None,
        sync_queue: CalendarSyncQueue | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.store = store or create_booking_store(self.settings)
        self.credential_store = credential_store or create_calendar_credential_store(self.settings)
        self.clock = clock or (lambda: datetime.now(UTC))
        self.availability_service = availability_service or AvailabilityService(
            settings=self.settings,
            store=self.store,
            credential_store=self.credential_store,
            clock=self.clock,
        )
        self.sync_queue = sync_queue or get_calendar_sync_queue()

    def book(
        self,
        *,
        instructor_id: str,
        student_id: str,
        appointment_type_id: str,
        start_time: datetime,
        end_time: datetime,
        student_contact: StudentContact,
    ) -> BookingResult:
        appointment_type = self.store.get_appointment_type(appointment_type_id)
        if not appointment_type or appointment_type.instructor_id != instructor_id:
            raise BookingValidationError("Appointment type does not belong to this instructor.")
        if not appointment_type.is_active:
            raise BookingValidationError("Appointment type is not active.")
        if student_id == instructor_id:
            raise BookingValidationError("Instructors cannot book their own appointments.")
        contact = _validate_contact(student_contact)
        start_time, end_time = self._validate_slot(appointment_type, start_time, end_time)

        initial_status = (
            AppointmentStatus.pending if appointment_type.requires_approval else AppointmentStatus.confirmed
        )
        with self._instructor_critical_section(instructor_id) as lease:
            self._assert_slot_free(instructor_id, start_time, end_time)
            self._assert_lease_held(lease, instructor_id)
            appointment = self.store.create_appointment(
                instructor_id=instructor_id,
                student_id=student_id,
                appointment_type_id=appointment_type.id,
                start_time=start_time,
                end_time=end_time,
                status=initial_status,
                student_contact=contact,
            )

        logger.info(
            "booking_created appointment_id=%s instructor_id=%s student_id=%s status=%s start=%s",
            appointment.id,
            instructor_id,
            student_id,
            appointment.status.value,
            appointment.start_time.isoformat(),
        )
        return self._enqueue_sync(appointment, CalendarSyncAction.create)

    def reschedule(
        self,
        *,
        appointment_id: str,
        actor: CurrentUserResponse,
        start_time: datetime,
        end_time: datetime,
    ) -> BookingResult:
        appointment = self.store.get_appointment(appointment_id)
        if not appointment:
            raise AppointmentNotFoundError("Appointment not found.")
        if actor.id not in {appointment.student_id, appointment.instructor_id} and actor.role != "admin":
            raise PermissionDeniedError("You cannot reschedule this appointment.")
        if not appointment.is_active:
            raise InvalidTransitionError(
                f"Cannot reschedule an appointment in status {appointment.status.value}.",
            )

        appointment_type = self.store.get_appointment_type(appointment.appointment_type_id)
        if not appointment_type:
            raise BookingValidationError("Appointment type no longer exists.")
        start_time, end_time = self._validate_slot(appointment_type, start_time, end_time)

        with self._instructor_critical_section(appointment.instructor_id) as lease:
            self._assert_slot_free(
                appointment.instructor_id,
                start_time,
                end_time,
                exclude_appointment_id=appointment.id,
                exclude_external_event_id=appointment.external_event_id,
            )
            self._assert_lease_held(lease, appointment.instructor_id)
            updated = self.store.update_appointment(
                appointment.id,
                {"start_time": start_time, "end_time": end_time},
                expected_status=appointment.status,
            )
        if not updated:
            raise InvalidTransitionError("Appointment changed while rescheduling; reload and retry.")

        logger.info(
            "booking_rescheduled appointment_id=%s instructor_id=%s start=%s",
            updated.id,
            updated.instructor_id,
            updated.start_time.isoformat(),
        )
        return self._enqueue_sync(updated, CalendarSyncAction.update)

    def _validate_slot(
        self,
        appointment_type: AppointmentType,
        start_time: datetime,
        end_time: datetime,
    ) -> tuple[datetime, datetime]:
        if start_time.tzinfo is None or end_time.tzinfo is None:
            raise BookingValidationError("Slot times must include a timezone offset.")
        start_time = start_time.astimezone(UTC)
        end_time = end_time.astimezone(UTC)
        if start_time >= end_time:
            raise BookingValidationError("Slot start must be before its end.")
        if end_time - start_time != timedelta(minutes=appointment_type.duration_minutes):
            raise BookingValidationError(
                f"Slot length must be exactly {appointment_type.duration_minutes} minutes.",
            )
        if start_time < self.clock():
            raise BookingValidationError("Cannot book a slot in the past.")
        if not self.availability_service.is_within_working_hours(start_time, end_time):
            raise BookingValidationError("Slot is outside working hours.")
        return start_time, end_time

    def _assert_slot_free(
        self,
        instructor_id: str,
        start_time: datetime,
        end_time: datetime,
        *,
        exclude_appointment_id: str | None = None,
        exclude_external_event_id: str | None = None,
    ) -> None:
        busy_intervals = self.availability_service.collect_busy_intervals(
            instructor_id,
            start_time,
            end_time,
            exclude_appointment_id=exclude_appointment_id,
            exclude_external_event_id=exclude_external_event_id,
        )
        conflict = next(
            (interval for interval in busy_intervals if interval.overlaps(start_time, end_time)),
            None,
        )
        if conflict:
            logger.info(
                "booking_conflict instructor_id=%s start=%s source=%s",
                instructor_id,
                start_time.isoformat(),
                conflict.source.value,
            )
            raise BookingConflictError()

    @contextmanager
    def _instructor_critical_section(self, instructor_id: str) -> Iterator[BookingLease]:
        with ExitStack() as stack:
            try:
                lease = stack.enter_context(
                    self.store.instructor_lock(
                        instructor_id,
                        timeout_seconds=self.settings.booking_lock_timeout_seconds,
                    ),
                )
            except TimeoutError as exc:
                logger.warning("booking_lock_timeout instructor_id=%s", instructor_id)
                raise BookingConflictError() from exc
            yield lease

    def _assert_lease_held(self, lease: BookingLease, instructor_id: str) -> None:
        if not lease.confirm():
            logger.warning("booking_lock_lost instructor_id=%s", instructor_id)
            raise BookingConflictError()

    def _enqueue_sync(self, appointment: Appointment, action: CalendarSyncAction) -> BookingResult:
        self.sync_queue.enqueue(
            CalendarSyncTask(
                appointment_id=appointment.id,
                instructor_id=appointment.instructor_id,
                action=action,
            ),
        )
        warnings: list[str] = []
        connected = (
            self.settings.google_calendar_configured
            and self.credential_store.get_credential(appointment.instructor_id) is not None
        )
        if not connected:
            warnings.append("Instructor calendar is not connected; the event will not be mirrored.")
        return BookingResult(
            appointment=appointment,
            calendar_sync="queued" if connected else "not_connected",
            warnings=warnings,
        )


def _validate_contact(contact: StudentContact) -> StudentContact:
    name = contact.name.strip()
    email = contact.email.strip().lower()
    if not name:
        raise BookingValidationError("Student name is required.")
    if not _EMAIL_PATTERN.match(email):
        raise BookingValidationError("Student email is not valid.")
    return StudentContact(
        name=name,
        email=email,
        phone=(contact.phone or "").strip() or None,
        notes=(contact.notes or "").strip() or None,
    )
