from __future__ import annotations

import logging
from collections.abc import Callable

from app.core.config import Settings, get_settings
from app.schemas.auth import CurrentUserResponse
from app.services.booking_errors import (
    AppointmentNotFoundError,
    InvalidTransitionError,
    PermissionDeniedError,
)
from app.services.booking_models import Appointment, AppointmentStatus
from app.services.booking_store import BookingStore, create_booking_store
from app.services.calendar_sync_queue import (
    CalendarSyncAction,
    CalendarSyncQueue,
    CalendarSyncTask,
    get_calendar_sync_queue,
)

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[AppointmentStatus, frozenset[AppointmentStatus]] = {
    AppointmentStatus.pending: frozenset(
        {AppointmentStatus.confirmed, AppointmentStatus.rejected, AppointmentStatus.cancelled},
    ),
    AppointmentStatus.confirmed: frozenset({AppointmentStatus.cancelled, AppointmentStatus.completed}),
    AppointmentStatus.rejected: frozenset(),
    AppointmentStatus.cancelled: frozenset(),
    AppointmentStatus.completed: frozenset(),
}


def can_transition(current: AppointmentStatus, target: AppointmentStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


class AppointmentService:
    def __init__(
        self,
        settings: Settings | None = None,
        store: BookingStore | None = None,
        sync_queue: CalendarSyncQueue | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.store = store or create_booking_store(self.settings)
        self.sync_queue = sync_queue or get_calendar_sync_queue()

    def get_for_actor(self, appointment_id: str, actor: CurrentUserResponse) -> Appointment:
        appointment = self._get(appointment_id)
        if not _is_participant(appointment, actor) and not actor.is_admin:
            raise PermissionDeniedError("You cannot view this appointment.")
        return appointment

    def list_for_student(self, student_id: str) -> list[Appointment]:
        return self.store.list_appointments(student_id=student_id)

    def list_for_instructor(
        self,
        instructor_id: str,
        statuses: list[AppointmentStatus] | None = None,
    ) -> list[Appointment]:
        return self.store.list_appointments(instructor_id=instructor_id, statuses=statuses)

    def approve(self, appointment_id: str, actor: CurrentUserResponse) -> Appointment:
        return self._transition(
            appointment_id,
            actor,
            AppointmentStatus.confirmed,
            is_allowed=_is_owning_instructor,
        )

    def reject(
        self,
        appointment_id: str,
        actor: CurrentUserResponse,
        reason: str | None = None,
    ) -> Appointment:
        return self._transition(
            appointment_id,
            actor,
            AppointmentStatus.rejected,
            is_allowed=_is_owning_instructor,
            reason=reason,
        )

    def cancel(
        self,
        appointment_id: str,
        actor: CurrentUserResponse,
        reason: str | None = None,
    ) -> Appointment:
        return self._transition(
            appointment_id,
            actor,
            AppointmentStatus.cancelled,
            is_allowed=_is_participant,
            reason=reason,
        )

    def complete(self, appointment_id: str, actor: CurrentUserResponse) -> Appointment:
        return self._transition(
            appointment_id,
            actor,
            AppointmentStatus.completed,
            is_allowed=_is_owning_instructor,
        )

    def _transition(
        self,
        appointment_id: str,
        actor: CurrentUserResponse,
        target: AppointmentStatus,
        *,
        is_allowed: Callable[[Appointment, CurrentUserResponse], bool],
        reason: str | None = None,
    ) -> Appointment:
        appointment = self._get(appointment_id)
        if not is_allowed(appointment, actor) and not actor.is_admin:
            raise PermissionDeniedError(f"You cannot mark this appointment as {target.value}.")
        if not can_transition(appointment.status, target):
            raise InvalidTransitionError(
                f"Cannot move appointment from {appointment.status.value} to {target.value}.",
            )

        updates: dict[str, object] = {"status": target}
        cleaned_reason = (reason or "").strip()
        if cleaned_reason:
            updates["status_reason"] = cleaned_reason
        updated = self.store.update_appointment(
            appointment.id,
            updates,
            expected_status=appointment.status,
        )
        if not updated:
            current = self._get(appointment_id)
            raise InvalidTransitionError(
                f"Cannot move appointment from {current.status.value} to {target.value}.",
            )

        logger.info(
            "appointment_status_changed appointment_id=%s from=%s to=%s actor_id=%s",
            updated.id,
            appointment.status.value,
            updated.status.value,
            actor.id,
        )
        self.sync_queue.enqueue(
            CalendarSyncTask(
                appointment_id=updated.id,
                instructor_id=updated.instructor_id,
                action=CalendarSyncAction.update if updated.is_active else CalendarSyncAction.delete,
            ),
        )
        return updated

    def _get(self, appointment_id: str) -> Appointment:
        appointment = self.store.get_appointment(appointment_id)
        if not appointment:
            raise AppointmentNotFoundError("Appointment not found.")
        return appointment


def _is_owning_instructor(appointment: Appointment, actor: CurrentUserResponse) -> bool:
    return appointment.instructor_id == actor.id


def _is_participant(appointment: Appointment, actor: CurrentUserResponse) -> bool:
    return actor.id in {appointment.instructor_id, appointment.student_id}
