from datetime import UTC, datetime

import pytest

from app.core.config import Settings
from app.services.booking_models import Appointment, AppointmentStatus, AppointmentType, StudentContact
from app.services.booking_store import InMemoryBookingStore
from app.services.calendar_credential_store import InMemoryCalendarCredentialStore
from app.services.calendar_sync_queue import (
    CalendarSyncAction,
    CalendarSyncQueue,
    CalendarSyncTask,
    CalendarSyncWorker,
)

INSTRUCTOR_ID = "instructor-1"


class _RecordingSyncService:
    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.created: list[str] = []
        self.updated: list[tuple[str, str | None]] = []
        self.deleted: list[str | None] = []

    def create_event_for_appointment(
        self,
        appointment: Appointment,
        appointment_type: AppointmentType | None,
    ) -> str | None:
        if self.fail:
            return None
        self.created.append(appointment.id)
        return f"event-{appointment.id}"

    def update_event_for_appointment(
        self,
        appointment: Appointment,
        appointment_type: AppointmentType | None,
    ) -> bool:
        self.updated.append((appointment.id, appointment_type.title if appointment_type else None))
        return not self.fail

    def delete_event_for_appointment(self, appointment: Appointment) -> bool:
        self.deleted.append(appointment.external_event_id)
        return not self.fail


@pytest.fixture
def store() -> InMemoryBookingStore:
    return InMemoryBookingStore()


def _worker(
    store: InMemoryBookingStore,
    queue: CalendarSyncQueue,
    sync_service: _RecordingSyncService | None,
) -> CalendarSyncWorker:
    return CalendarSyncWorker(
        settings=Settings(booking_data_store="memory", user_data_store="memory"),
        queue=queue,
        booking_store=store,
        credential_store=InMemoryCalendarCredentialStore(),
        sync_service_factory=lambda _instructor_id: sync_service,
    )


def _appointment(store: InMemoryBookingStore, status: AppointmentStatus = AppointmentStatus.confirmed) -> Appointment:
    lesson = store.create_appointment_type(
        instructor_id=INSTRUCTOR_ID,
        title="Private lesson",
        duration_minutes=60,
        price=45.0,
        requires_approval=False,
    )
    return store.create_appointment(
        instructor_id=INSTRUCTOR_ID,
        student_id="student-1",
        appointment_type_id=lesson.id,
        start_time=datetime(2030, 3, 4, 10, tzinfo=UTC),
        end_time=datetime(2030, 3, 4, 11, tzinfo=UTC),
        status=status,
        student_contact=StudentContact(name="Sam Student", email="sam@example.com"),
    )


def _task(appointment: Appointment, action: CalendarSyncAction) -> CalendarSyncTask:
    return CalendarSyncTask(appointment_id=appointment.id, instructor_id=INSTRUCTOR_ID, action=action)


def test_queue_drains_in_fifo_order() -> None:
    queue = CalendarSyncQueue()
    first = CalendarSyncTask(appointment_id="a", instructor_id=INSTRUCTOR_ID, action=CalendarSyncAction.create)
    second = CalendarSyncTask(appointment_id="b", instructor_id=INSTRUCTOR_ID, action=CalendarSyncAction.delete)

    queue.enqueue(first)
    queue.enqueue(second)

    assert len(queue) == 2
    assert queue.drain() == [first, second]
    assert len(queue) == 0


def test_worker_creates_event_and_stores_its_id(store: InMemoryBookingStore) -> None:
    appointment = _appointment(store)
    queue = CalendarSyncQueue()
    queue.enqueue(_task(appointment, CalendarSyncAction.create))
    sync_service = _RecordingSyncService()

    outcomes = _worker(store, queue, sync_service).run_pending()

    assert [(outcome.status, outcome.external_event_id) for outcome in outcomes] == [
        ("created", f"event-{appointment.id}"),
    ]
    assert store.get_appointment(appointment.id).external_event_id == f"event-{appointment.id}"


def test_worker_updates_existing_event(store: InMemoryBookingStore) -> None:
    appointment = _appointment(store)
    store.update_appointment(appointment.id, {"external_event_id": "event-9"})
    queue = CalendarSyncQueue()
    queue.enqueue(_task(appointment, CalendarSyncAction.update))
    sync_service = _RecordingSyncService()

    outcomes = _worker(store, queue, sync_service).run_pending()

    assert [outcome.status for outcome in outcomes] == ["updated"]
    assert sync_service.updated == [(appointment.id, "Private lesson")]
    assert sync_service.created == []


def test_worker_deletes_event_for_inactive_appointment(store: InMemoryBookingStore) -> None:
    appointment = _appointment(store)
    store.update_appointment(
        appointment.id,
        {"external_event_id": "event-9", "status": AppointmentStatus.cancelled},
    )
    queue = CalendarSyncQueue()
    queue.enqueue(_task(appointment, CalendarSyncAction.delete))
    sync_service = _RecordingSyncService()

    outcomes = _worker(store, queue, sync_service).run_pending()

    assert [outcome.status for outcome in outcomes] == ["deleted"]
    assert sync_service.deleted == ["event-9"]
    assert store.get_appointment(appointment.id).external_event_id is None


def test_stale_create_task_for_cancelled_appointment_is_skipped(store: InMemoryBookingStore) -> None:
    appointment = _appointment(store, AppointmentStatus.cancelled)
    queue = CalendarSyncQueue()
    queue.enqueue(_task(appointment, CalendarSyncAction.create))
    queue.enqueue(
        CalendarSyncTask(appointment_id="missing", instructor_id=INSTRUCTOR_ID, action=CalendarSyncAction.update),
    )
    sync_service = _RecordingSyncService()

    outcomes = _worker(store, queue, sync_service).run_pending()

    assert [outcome.status for outcome in outcomes] == ["skipped", "skipped"]
    assert sync_service.created == []


def test_duplicate_create_tasks_create_a_single_event(store: InMemoryBookingStore) -> None:
    appointment = _appointment(store)
    queue = CalendarSyncQueue()
    queue.enqueue(_task(appointment, CalendarSyncAction.create))
    queue.enqueue(_task(appointment, CalendarSyncAction.create))
    sync_service = _RecordingSyncService()

    outcomes = _worker(store, queue, sync_service).run_pending()

    assert [outcome.status for outcome in outcomes] == ["created", "updated"]
    assert sync_service.created == [appointment.id]


def test_worker_reports_not_connected_and_failed(store: InMemoryBookingStore) -> None:
    appointment = _appointment(store)
    queue = CalendarSyncQueue()
    queue.enqueue(_task(appointment, CalendarSyncAction.create))

    assert [outcome.status for outcome in _worker(store, queue, None).run_pending()] == ["not_connected"]

    queue.enqueue(_task(appointment, CalendarSyncAction.create))
    outcomes = _worker(store, queue, _RecordingSyncService(fail=True)).run_pending()

    assert [outcome.status for outcome in outcomes] == ["failed"]
    assert store.get_appointment(appointment.id).external_event_id is None


def test_worker_survives_crashing_sync_service(store: InMemoryBookingStore) -> None:
    appointment = _appointment(store)
    queue = CalendarSyncQueue()
    queue.enqueue(_task(appointment, CalendarSyncAction.create))

    class _Crashing(_RecordingSyncService):
        def create_event_for_appointment(self, appointment, appointment_type):  # type: ignore[no-untyped-def]
            raise RuntimeError("boom")

    outcomes = _worker(store, queue, _Crashing()).run_pending()

    assert [outcome.status for outcome in outcomes] == ["failed"]
    assert len(queue) == 0
