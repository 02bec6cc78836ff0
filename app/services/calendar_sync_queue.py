from __future__ import annotations

import logging
import threading
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from functools import lru_cache

from app.core.config import Settings, get_settings
from app.services.booking_store import BookingStore, create_booking_store
from app.services.calendar_credential_store import (
    CalendarCredentialStore,
    create_calendar_credential_store,
)
from app.services.calendar_sync_service import CalendarSyncService, create_calendar_sync_service

logger = logging.getLogger(__name__)

_PROCESSING_LOCK = threading.Lock()


class CalendarSyncAction(str, Enum):
    create = "create"
    update = "update"
    delete = "delete"


@dataclass(frozen=True)
class CalendarSyncTask:
    appointment_id: str
    instructor_id: str
    action: CalendarSyncAction
    enqueued_at: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass(frozen=True)
class CalendarSyncOutcome:
    task: CalendarSyncTask
    status: str
    external_event_id: str | None = None


class CalendarSyncQueue:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._tasks: deque[CalendarSyncTask] = deque()

    def enqueue(self, task: CalendarSyncTask) -> None:
        with self._lock:
            self._tasks.append(task)
        logger.info(
            "calendar_sync_enqueued appointment_id=%s action=%s",
            task.appointment_id,
            task.action.value,
        )

    def drain(self) -> list[CalendarSyncTask]:
        with self._lock:
            tasks = list(self._tasks)
            self._tasks.clear()
        return tasks

    def __len__(self) -> int:
        with self._lock:
            return len(self._tasks)


class CalendarSyncWorker:
    """Reconcile queued appointments with their mirrored calendar events.

    The action on a task is only a hint; the worker always compares the
    appointment's current state with its stored event id, so stale or
    duplicated tasks converge on the same result.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        queue: CalendarSyncQueue | None = None,
        booking_store: BookingStore | None = None,
        credential_store: CalendarCredentialStore | None = None,
        sync_service_factory: Callable[[str], CalendarSyncService | None] | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.queue = queue or get_calendar_sync_queue()
        self.booking_store = booking_store or create_booking_store(self.settings)
        self.credential_store = credential_store or create_calendar_credential_store(self.settings)
        self.sync_service_factory = sync_service_factory or self._default_sync_service_factory

    def run_pending(self) -> list[CalendarSyncOutcome]:
        with _PROCESSING_LOCK:
            outcomes: list[CalendarSyncOutcome] = []
            for task in self.queue.drain():
                try:
                    outcomes.append(self.process(task))
                except Exception:
                    logger.exception(
                        "calendar_sync_task_crashed appointment_id=%s action=%s",
                        task.appointment_id,
                        task.action.value,
                    )
                    outcomes.append(CalendarSyncOutcome(task=task, status="failed"))
            return outcomes

    def process(self, task: CalendarSyncTask) -> CalendarSyncOutcome:
        appointment = self.booking_store.get_appointment(task.appointment_id)
        if not appointment:
            return CalendarSyncOutcome(task=task, status="skipped")
        if not appointment.is_active and not appointment.external_event_id:
            return CalendarSyncOutcome(task=task, status="skipped")

        sync_service = self.sync_service_factory(appointment.instructor_id)
        if not sync_service:
            return CalendarSyncOutcome(task=task, status="not_connected")

        appointment_type = self.booking_store.get_appointment_type(appointment.appointment_type_id)
        if not appointment.is_active:
            if not sync_service.delete_event_for_appointment(appointment):
                return self._failed(task)
            self.booking_store.update_appointment(appointment.id, {"external_event_id": None})
            return CalendarSyncOutcome(task=task, status="deleted")

        if appointment.external_event_id:
            if not sync_service.update_event_for_appointment(appointment, appointment_type):
                return self._failed(task)
            return CalendarSyncOutcome(
                task=task,
                status="updated",
                external_event_id=appointment.external_event_id,
            )

        event_id = sync_service.create_event_for_appointment(appointment, appointment_type)
        if not event_id:
            return self._failed(task)
        self.booking_store.update_appointment(appointment.id, {"external_event_id": event_id})
        return CalendarSyncOutcome(task=task, status="created", external_event_id=event_id)

    def _failed(self, task: CalendarSyncTask) -> CalendarSyncOutcome:
        logger.warning(
            "calendar_sync_failed appointment_id=%s action=%s",
            task.appointment_id,
            task.action.value,
        )
        return CalendarSyncOutcome(task=task, status="failed")

    def _default_sync_service_factory(self, instructor_id: str) -> CalendarSyncService | None:
        return create_calendar_sync_service(
            instructor_id,
            settings=self.settings,
            credential_store=self.credential_store,
        )


def run_calendar_sync() -> None:
    CalendarSyncWorker().run_pending()


@lru_cache
def get_calendar_sync_queue() -> CalendarSyncQueue:
    return CalendarSyncQueue()


def clear_calendar_sync_queue_cache() -> None:
    get_calendar_sync_queue.cache_clear()
