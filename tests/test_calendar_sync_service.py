import io
import json
from datetime import UTC, datetime, timedelta
from urllib import error

import pytest

from app.core.config import Settings
from app.services.booking_models import (
    Appointment,
    AppointmentStatus,
    AppointmentType,
    CalendarCredential,
    StudentContact,
)
from app.services.booking_service import BookingService
from app.services.booking_store import InMemoryBookingStore
from app.services.calendar_credential_store import InMemoryCalendarCredentialStore
from app.services.calendar_sync_queue import CalendarSyncQueue, CalendarSyncWorker
from app.services.calendar_sync_service import (
    CalendarSyncService,
    build_event_description,
    build_event_summary,
    create_calendar_sync_service,
)

NOW = datetime(2030, 3, 4, 6, 0, tzinfo=UTC)
INSTRUCTOR_ID = "instructor-1"


class _MockResponse:
    def __init__(self, payload: dict[str, object]) -> None:
        self._payload = json.dumps(payload).encode("utf-8")

    def __enter__(self) -> "_MockResponse":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:  # type: ignore[no-untyped-def]
        return False

    def read(self) -> bytes:
        return self._payload


def _token_error(status_code: int) -> error.HTTPError:
    return error.HTTPError(
        url="https://oauth2.googleapis.com/token",
        code=status_code,
        msg="error",
        hdrs=None,
        fp=io.BytesIO(json.dumps({"error": "invalid_grant"}).encode("utf-8")),
    )


def _settings(**overrides: object) -> Settings:
    values: dict[str, object] = {
        "booking_data_store": "memory",
        "user_data_store": "memory",
        "booking_timezone": "UTC",
        "google_calendar_client_id": "client-id",
        "google_calendar_client_secret": "client-secret",
        "google_calendar_event_timezone": "UTC",
    }
    values.update(overrides)
    return Settings(**values)


def _credential(expiry: datetime) -> CalendarCredential:
    return CalendarCredential(
        instructor_id=INSTRUCTOR_ID,
        access_token="stale-access",
        refresh_token="refresh-token",
        token_expiry=expiry,
    )


def _appointment(**overrides: object) -> Appointment:
    values: dict[str, object] = {
        "id": "appt-1",
        "instructor_id": INSTRUCTOR_ID,
        "student_id": "student-1",
        "appointment_type_id": "type-1",
        "start_time": datetime(2030, 3, 4, 10, tzinfo=UTC),
        "end_time": datetime(2030, 3, 4, 11, tzinfo=UTC),
        "status": AppointmentStatus.confirmed,
        "student_contact": StudentContact(
            name="Sam Student",
            email="sam@example.com",
            phone="555-0100",
            notes="First lesson",
        ),
    }
    values.update(overrides)
    return Appointment(**values)


def _lesson() -> AppointmentType:
    return AppointmentType(
        id="type-1",
        instructor_id=INSTRUCTOR_ID,
        title="Private lesson",
        duration_minutes=60,
        price=45.0,
    )


def _sync_service(
    credential_store: InMemoryCalendarCredentialStore,
    expiry: datetime,
) -> CalendarSyncService:
    credential = _credential(expiry)
    credential_store.save_credential(credential)
    return CalendarSyncService(
        credential=credential,
        settings=_settings(),
        credential_store=credential_store,
        clock=lambda: NOW,
    )


def test_expired_token_is_refreshed_before_calendar_call(monkeypatch: pytest.MonkeyPatch) -> None:
    calls: list[str] = []

    def fake_urlopen(req, timeout=10):  # type: ignore[no-untyped-def]
        if "oauth2.googleapis.com/token" in req.full_url:
            calls.append("refresh")
            return _MockResponse({"access_token": "fresh-access", "expires_in": 3600})
        calls.append(req.headers["Authorization"])
        return _MockResponse({"id": "event-1"})

    monkeypatch.setattr("app.services.google_calendar_client.request.urlopen", fake_urlopen)
    credential_store = InMemoryCalendarCredentialStore()
    service = _sync_service(credential_store, NOW - timedelta(minutes=5))

    event_id = service.create_event_for_appointment(_appointment(), _lesson())

    assert event_id == "event-1"
    assert calls == ["refresh", "Bearer fresh-access"]
    stored = credential_store.get_credential(INSTRUCTOR_ID)
    assert stored is not None
    assert stored.access_token == "fresh-access"
    assert stored.refresh_token == "refresh-token"
    assert stored.token_expiry > NOW


def test_token_within_leeway_is_refreshed_early(monkeypatch: pytest.MonkeyPatch) -> None:
    calls: list[str] = []

    def fake_urlopen(req, timeout=10):  # type: ignore[no-untyped-def]
        if "oauth2.googleapis.com/token" in req.full_url:
            calls.append("refresh")
            return _MockResponse({"access_token": "fresh-access", "refresh_token": "rotated"})
        calls.append("calendar")
        return _MockResponse({"items": []})

    monkeypatch.setattr("app.services.google_calendar_client.request.urlopen", fake_urlopen)
    credential_store = InMemoryCalendarCredentialStore()
    service = _sync_service(credential_store, NOW + timedelta(seconds=120))

    assert service.list_busy_intervals(NOW, NOW + timedelta(days=1)) == []
    assert calls == ["refresh", "calendar"]
    assert credential_store.get_credential(INSTRUCTOR_ID).refresh_token == "rotated"


def test_rejected_refresh_disconnects_instructor(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_urlopen(req, timeout=10):  # type: ignore[no-untyped-def]
        if "oauth2.googleapis.com/token" in req.full_url:
            raise _token_error(400)
        raise AssertionError("Calendar API must not be called after a rejected refresh.")

    monkeypatch.setattr("app.services.google_calendar_client.request.urlopen", fake_urlopen)
    credential_store = InMemoryCalendarCredentialStore()
    service = _sync_service(credential_store, NOW - timedelta(minutes=5))

    assert service.create_event_for_appointment(_appointment(), _lesson()) is None
    assert service.disconnected
    assert credential_store.get_credential(INSTRUCTOR_ID) is None
    assert service.list_busy_intervals(NOW, NOW + timedelta(days=1)) == []


def test_transient_refresh_failure_keeps_connection(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_urlopen(req, timeout=10):  # type: ignore[no-untyped-def]
        raise error.URLError("connection reset")

    monkeypatch.setattr("app.services.google_calendar_client.request.urlopen", fake_urlopen)
    credential_store = InMemoryCalendarCredentialStore()
    service = _sync_service(credential_store, NOW - timedelta(minutes=5))

    assert service.create_event_for_appointment(_appointment(), _lesson()) is None
    assert not service.disconnected
    assert credential_store.get_credential(INSTRUCTOR_ID) is not None


def test_booking_commits_even_when_calendar_refresh_is_rejected(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_urlopen(req, timeout=10):  # type: ignore[no-untyped-def]
        raise _token_error(400)

    monkeypatch.setattr("app.services.google_calendar_client.request.urlopen", fake_urlopen)
    settings = _settings(working_hours_start="09:00", working_hours_end="17:00")
    store = InMemoryBookingStore()
    credential_store = InMemoryCalendarCredentialStore()
    credential_store.save_credential(_credential(NOW - timedelta(minutes=5)))
    queue = CalendarSyncQueue()
    lesson = store.create_appointment_type(
        instructor_id=INSTRUCTOR_ID,
        title="Private lesson",
        duration_minutes=60,
        price=45.0,
        requires_approval=False,
    )

    def sync_factory(instructor_id: str) -> CalendarSyncService | None:
        return create_calendar_sync_service(
            instructor_id,
            settings=settings,
            credential_store=credential_store,
            clock=lambda: NOW,
        )

    booking_service = BookingService(
        settings=settings,
        store=store,
        credential_store=credential_store,
        sync_queue=queue,
        clock=lambda: NOW,
    )
    booking_service.availability_service.calendar_sync_factory = sync_factory

    result = booking_service.book(
        instructor_id=INSTRUCTOR_ID,
        student_id="student-1",
        appointment_type_id=lesson.id,
        start_time=datetime(2030, 3, 4, 10, tzinfo=UTC),
        end_time=datetime(2030, 3, 4, 11, tzinfo=UTC),
        student_contact=StudentContact(name="Sam Student", email="sam@example.com"),
    )

    assert result.appointment.status == AppointmentStatus.confirmed
    assert store.get_appointment(result.appointment.id) is not None
    assert credential_store.get_credential(INSTRUCTOR_ID) is None

    outcomes = CalendarSyncWorker(
        settings=settings,
        queue=queue,
        booking_store=store,
        credential_store=credential_store,
        sync_service_factory=sync_factory,
    ).run_pending()
    assert [outcome.status for outcome in outcomes] == ["not_connected"]


def test_factory_requires_configuration_and_credential() -> None:
    credential_store = InMemoryCalendarCredentialStore()

    assert create_calendar_sync_service(
        INSTRUCTOR_ID,
        settings=_settings(),
        credential_store=credential_store,
    ) is None

    credential_store.save_credential(_credential(NOW + timedelta(hours=1)))
    assert create_calendar_sync_service(
        INSTRUCTOR_ID,
        settings=_settings(google_calendar_client_id=""),
        credential_store=credential_store,
    ) is None
    assert isinstance(
        create_calendar_sync_service(INSTRUCTOR_ID, settings=_settings(), credential_store=credential_store),
        CalendarSyncService,
    )


def test_event_summary_and_description_carry_student_details() -> None:
    appointment = _appointment()

    assert build_event_summary(appointment, _lesson()) == "Private lesson - Sam Student"
    assert build_event_summary(appointment, None) == "Appointment - Sam Student"
    assert build_event_description(appointment, _lesson()).splitlines() == [
        "Type: Private lesson",
        "Student: Sam Student",
        "Email: sam@example.com",
        "Phone: 555-0100",
        "Notes: First lesson",
    ]
