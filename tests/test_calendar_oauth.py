import json
from datetime import UTC, datetime, timedelta
from urllib.parse import parse_qs, urlparse

import pytest
from fastapi import HTTPException
from fastapi.testclient import TestClient

from app.core.config import Settings, get_settings
from app.main import app
from app.schemas.auth import CurrentUserResponse
from app.services.booking_errors import BookingValidationError, OAuthStateError, PermissionDeniedError
from app.services.booking_models import CalendarCredential
from app.services.booking_store import clear_booking_store_cache
from app.services.calendar_credential_store import (
    InMemoryCalendarCredentialStore,
    clear_calendar_credential_store_cache,
)
from app.services.calendar_oauth_service import CalendarOAuthService
from app.services.google_calendar_client import GoogleCalendarAuthError, GoogleTokenGrant
from app.services.user_store import InMemoryUserStore, clear_user_store_cache

NOW = datetime(2030, 3, 4, 6, 0, tzinfo=UTC)


def _settings(**overrides: object) -> Settings:
    values: dict[str, object] = {
        "booking_data_store": "memory",
        "user_data_store": "memory",
        "auth_secret_key": "test-secret",
        "google_calendar_client_id": "client-id",
        "google_calendar_client_secret": "client-secret",
        "google_calendar_redirect_uri": "http://localhost:8000/api/calendar/google/callback",
        "oauth_state_ttl_minutes": 10,
    }
    values.update(overrides)
    return Settings(**values)


class _Clock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class _OAuthHarness:
    def __init__(self, **settings_overrides: object) -> None:
        self.clock = _Clock(NOW)
        self.user_store = InMemoryUserStore()
        self.credential_store = InMemoryCalendarCredentialStore()
        self.service = CalendarOAuthService(
            settings=_settings(**settings_overrides),
            credential_store=self.credential_store,
            user_store=self.user_store,
            clock=self.clock,
        )
        record = self.user_store.create_user(
            email="ines@example.com",
            full_name="Ines Instructor",
            password_hash="unused",
            role="instructor",
        )
        self.instructor = CurrentUserResponse(
            id=str(record["_id"]),
            email="ines@example.com",
            full_name="Ines Instructor",
            role="instructor",
        )

    def state(self) -> str:
        url = self.service.build_authorization_url(self.instructor)
        return parse_qs(urlparse(url).query)["state"][0]


def _grant(refresh_token: str | None = "refresh-token") -> GoogleTokenGrant:
    return GoogleTokenGrant(
        access_token="access-token",
        refresh_token=refresh_token,
        expires_at=NOW + timedelta(hours=1),
    )


@pytest.fixture
def harness(monkeypatch: pytest.MonkeyPatch) -> _OAuthHarness:
    monkeypatch.setattr(
        "app.services.calendar_oauth_service.exchange_authorization_code",
        lambda **kwargs: _grant(),
    )
    return _OAuthHarness()


def test_authorization_url_requests_offline_calendar_access(harness: _OAuthHarness) -> None:
    url = harness.service.build_authorization_url(harness.instructor)

    parsed = urlparse(url)
    query = parse_qs(parsed.query)
    assert parsed.netloc == "accounts.google.com"
    assert query["client_id"] == ["client-id"]
    assert query["redirect_uri"] == ["http://localhost:8000/api/calendar/google/callback"]
    assert query["response_type"] == ["code"]
    assert query["access_type"] == ["offline"]
    assert query["prompt"] == ["consent"]
    assert query["scope"][0].split() == [
        "https://www.googleapis.com/auth/calendar.events",
        "https://www.googleapis.com/auth/calendar.calendarlist.readonly",
    ]
    assert query["state"][0]


def test_students_cannot_start_calendar_authorization(harness: _OAuthHarness) -> None:
    student = CurrentUserResponse(id="student-1", email="sam@example.com", full_name="Sam", role="student")

    with pytest.raises(PermissionDeniedError):
        harness.service.build_authorization_url(student)


def test_unconfigured_oauth_is_reported_as_unavailable() -> None:
    harness = _OAuthHarness(google_calendar_client_id="")

    with pytest.raises(HTTPException) as exc_info:
        harness.service.build_authorization_url(harness.instructor)
    assert exc_info.value.status_code == 503


def test_callback_stores_credential_for_state_subject(harness: _OAuthHarness) -> None:
    credential = harness.service.complete_authorization(code="auth-code", state=harness.state())

    assert credential.instructor_id == harness.instructor.id
    stored = harness.credential_store.get_credential(harness.instructor.id)
    assert stored is not None
    assert stored.refresh_token == "refresh-token"
    assert stored.calendar_id == "primary"
    status = harness.service.get_status(harness.instructor.id)
    assert (status.configured, status.authorized, status.calendar_id) == (True, True, "primary")


def test_expired_state_is_rejected(harness: _OAuthHarness) -> None:
    state = harness.state()
    harness.clock.now = NOW + timedelta(minutes=11)

    with pytest.raises(OAuthStateError):
        harness.service.complete_authorization(code="auth-code", state=state)
    assert harness.credential_store.get_credential(harness.instructor.id) is None


def test_tampered_state_is_rejected(harness: _OAuthHarness) -> None:
    state = harness.state()
    payload_segment, signature_segment = state.split(".")
    tampered = f"{payload_segment}x.{signature_segment}"

    with pytest.raises(OAuthStateError):
        harness.service.complete_authorization(code="auth-code", state=tampered)
    with pytest.raises(OAuthStateError):
        harness.service.complete_authorization(code="auth-code", state="not-a-token")


def test_state_signed_with_another_secret_is_rejected(harness: _OAuthHarness) -> None:
    other = CalendarOAuthService(
        settings=_settings(auth_secret_key="other-secret"),
        credential_store=harness.credential_store,
        user_store=harness.user_store,
        clock=harness.clock,
    )
    state = other.build_authorization_url(harness.instructor)
    foreign_state = parse_qs(urlparse(state).query)["state"][0]

    with pytest.raises(OAuthStateError):
        harness.service.complete_authorization(code="auth-code", state=foreign_state)


def test_replayed_state_is_rejected(harness: _OAuthHarness) -> None:
    state = harness.state()
    harness.service.complete_authorization(code="auth-code", state=state)

    with pytest.raises(OAuthStateError, match="already been used"):
        harness.service.complete_authorization(code="auth-code", state=state)


def test_reconnect_without_refresh_token_keeps_previous_one(
    harness: _OAuthHarness,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    harness.credential_store.save_credential(
        CalendarCredential(
            instructor_id=harness.instructor.id,
            access_token="old-access",
            refresh_token="original-refresh",
            token_expiry=NOW,
            calendar_id="lessons@group.calendar.google.com",
        ),
    )
    monkeypatch.setattr(
        "app.services.calendar_oauth_service.exchange_authorization_code",
        lambda **kwargs: _grant(refresh_token=None),
    )

    credential = harness.service.complete_authorization(code="auth-code", state=harness.state())

    assert credential.access_token == "access-token"
    assert credential.refresh_token == "original-refresh"
    assert credential.calendar_id == "lessons@group.calendar.google.com"


def test_first_connection_without_refresh_token_fails(
    harness: _OAuthHarness,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setattr(
        "app.services.calendar_oauth_service.exchange_authorization_code",
        lambda **kwargs: _grant(refresh_token=None),
    )

    with pytest.raises(HTTPException) as exc_info:
        harness.service.complete_authorization(code="auth-code", state=harness.state())
    assert exc_info.value.status_code == 502


def test_failed_code_exchange_is_a_gateway_error(
    harness: _OAuthHarness,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    def reject(**kwargs):  # type: ignore[no-untyped-def]
        raise GoogleCalendarAuthError("Google OAuth token HTTP 400: invalid_grant")

    monkeypatch.setattr("app.services.calendar_oauth_service.exchange_authorization_code", reject)

    with pytest.raises(HTTPException) as exc_info:
        harness.service.complete_authorization(code="bad-code", state=harness.state())
    assert exc_info.value.status_code == 502


def test_calendar_id_and_disconnect(harness: _OAuthHarness) -> None:
    with pytest.raises(BookingValidationError):
        harness.service.set_calendar_id(harness.instructor, "lessons@group.calendar.google.com")

    harness.service.complete_authorization(code="auth-code", state=harness.state())
    updated = harness.service.set_calendar_id(harness.instructor, "  lessons@group.calendar.google.com ")

    assert updated.calendar_id == "lessons@group.calendar.google.com"
    assert harness.service.disconnect(harness.instructor) is True
    assert harness.service.disconnect(harness.instructor) is False
    assert harness.service.get_status(harness.instructor.id).authorized is False


def test_blocking_toggle_persists_and_survives_reconnect(harness: _OAuthHarness) -> None:
    with pytest.raises(BookingValidationError):
        harness.service.set_blocking_enabled(harness.instructor, False)

    harness.service.complete_authorization(code="auth-code", state=harness.state())
    harness.service.set_blocking_enabled(harness.instructor, False)
    harness.service.complete_authorization(code="auth-code", state=harness.state())

    assert harness.credential_store.get_credential(harness.instructor.id).blocking_enabled is False
    assert harness.service.get_status(harness.instructor.id).blocking_enabled is False


class _CalendarListResponse:
    def __init__(self, payload: dict[str, object]) -> None:
        self._body = json.dumps(payload).encode("utf-8")

    def __enter__(self) -> "_CalendarListResponse":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:  # type: ignore[no-untyped-def]
        return False

    def read(self) -> bytes:
        return self._body


_CALENDAR_LIST = {
    "items": [
        {"id": "ines@example.com", "summary": "Ines", "primary": True, "accessRole": "owner"},
        {"id": "lessons@group.calendar.google.com", "summary": "Lessons", "accessRole": "writer"},
    ],
}


def test_list_calendars_marks_the_selected_calendar(
    harness: _OAuthHarness,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setattr(
        "app.services.google_calendar_client.request.urlopen",
        lambda req, timeout=10: _CalendarListResponse(_CALENDAR_LIST),
    )
    harness.service.complete_authorization(code="auth-code", state=harness.state())

    calendars = harness.service.list_calendars(harness.instructor)
    assert [(item.id, item.selected) for item in calendars] == [
        ("ines@example.com", True),
        ("lessons@group.calendar.google.com", False),
    ]

    harness.service.set_calendar_id(harness.instructor, "lessons@group.calendar.google.com")
    calendars = harness.service.list_calendars(harness.instructor)
    assert [item.id for item in calendars if item.selected] == ["lessons@group.calendar.google.com"]


def test_list_calendars_requires_connection_and_reports_provider_failure(
    harness: _OAuthHarness,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    def fail(req, timeout=10):  # type: ignore[no-untyped-def]
        raise ConnectionResetError("peer reset")

    monkeypatch.setattr("app.services.google_calendar_client.request.urlopen", fail)

    with pytest.raises(BookingValidationError):
        harness.service.list_calendars(harness.instructor)

    harness.service.complete_authorization(code="auth-code", state=harness.state())
    with pytest.raises(HTTPException) as exc_info:
        harness.service.list_calendars(harness.instructor)
    assert exc_info.value.status_code == 502
    assert harness.credential_store.get_credential(harness.instructor.id) is not None


@pytest.fixture
def api_client(monkeypatch: pytest.MonkeyPatch) -> TestClient:
    monkeypatch.setenv("USER_DATA_STORE", "memory")
    monkeypatch.setenv("BOOKING_DATA_STORE", "memory")
    monkeypatch.setenv("GOOGLE_CALENDAR_CLIENT_ID", "client-id")
    monkeypatch.setenv("GOOGLE_CALENDAR_CLIENT_SECRET", "client-secret")
    monkeypatch.setenv("FRONTEND_BASE_URL", "http://frontend.test")
    monkeypatch.setattr(
        "app.services.calendar_oauth_service.exchange_authorization_code",
        lambda **kwargs: _grant(),
    )
    _clear_caches()
    yield TestClient(app)
    _clear_caches()


def _clear_caches() -> None:
    clear_user_store_cache()
    clear_booking_store_cache()
    clear_calendar_credential_store_cache()
    get_settings.cache_clear()


def _register_instructor(client: TestClient) -> dict[str, str]:
    response = client.post(
        "/api/auth/register",
        json={
            "full_name": "Ines Instructor",
            "email": "ines@example.com",
            "password": "password123",
            "role": "instructor",
        },
    )
    assert response.status_code == 201
    return {"Authorization": f"Bearer {response.json()['access_token']}"}


def test_callback_route_connects_and_redirects(api_client: TestClient) -> None:
    headers = _register_instructor(api_client)
    url_response = api_client.get("/api/calendar/google/authorization-url", headers=headers)
    assert url_response.status_code == 200
    state = parse_qs(urlparse(url_response.json()["authorization_url"]).query)["state"][0]

    callback = api_client.get(
        "/api/calendar/google/callback",
        params={"code": "auth-code", "state": state},
        follow_redirects=False,
    )

    assert callback.status_code == 302
    location = urlparse(callback.headers["location"])
    assert f"{location.scheme}://{location.netloc}{location.path}" == "http://frontend.test/instructor/calendar"
    assert parse_qs(location.query)["gcal_status"] == ["connected"]
    status_response = api_client.get("/api/calendar/google/status", headers=headers)
    assert status_response.json() == {
        "configured": True,
        "authorized": True,
        "calendar_id": "primary",
        "blocking_enabled": True,
    }

    replay = api_client.get(
        "/api/calendar/google/callback",
        params={"code": "auth-code", "state": state},
        follow_redirects=False,
    )
    assert parse_qs(urlparse(replay.headers["location"]).query)["gcal_status"] == ["error"]


def test_callback_route_reports_provider_error(api_client: TestClient) -> None:
    response = api_client.get(
        "/api/calendar/google/callback",
        params={"error": "access_denied"},
        follow_redirects=False,
    )

    assert response.status_code == 302
    query = parse_qs(urlparse(response.headers["location"]).query)
    assert query == {"gcal_status": ["error"], "gcal_message": ["access_denied"]}


def test_calendar_routes_require_instructor_role(api_client: TestClient) -> None:
    response = api_client.post(
        "/api/auth/register",
        json={"full_name": "Sam Student", "email": "sam@example.com", "password": "password123"},
    )
    headers = {"Authorization": f"Bearer {response.json()['access_token']}"}

    assert api_client.get("/api/calendar/google/status", headers=headers).status_code == 403
    assert api_client.get("/api/calendar/google/status").status_code == 401


def test_calendar_listing_and_blocking_routes(api_client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(
        "app.services.google_calendar_client.request.urlopen",
        lambda req, timeout=10: _CalendarListResponse(_CALENDAR_LIST),
    )
    headers = _register_instructor(api_client)
    url_response = api_client.get("/api/calendar/google/authorization-url", headers=headers)
    state = parse_qs(urlparse(url_response.json()["authorization_url"]).query)["state"][0]
    api_client.get(
        "/api/calendar/google/callback",
        params={"code": "auth-code", "state": state},
        follow_redirects=False,
    )

    listed = api_client.get("/api/calendar/google/calendars", headers=headers)
    assert listed.status_code == 200
    assert [item["id"] for item in listed.json()] == [
        "ines@example.com",
        "lessons@group.calendar.google.com",
    ]

    toggled = api_client.post("/api/calendar/google/blocking", json={"enabled": False}, headers=headers)
    assert toggled.status_code == 200
    assert toggled.json()["blocking_enabled"] is False
