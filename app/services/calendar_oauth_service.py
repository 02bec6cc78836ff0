from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from urllib.parse import urlencode

from fastapi import HTTPException, status

from app.core.config import Settings, get_settings
from app.schemas.auth import CurrentUserResponse
from app.schemas.calendar import CalendarListItem, CalendarStatusResponse
from app.services.booking_errors import BookingValidationError, OAuthStateError, PermissionDeniedError
from app.services.booking_models import CalendarCredential
from app.services.calendar_credential_store import (
    CalendarCredentialStore,
    create_calendar_credential_store,
)
from app.services.calendar_sync_service import CalendarSyncService
from app.services.google_calendar_client import GoogleCalendarError, exchange_authorization_code
from app.services.security_utils import create_oauth_state_token, decode_oauth_state_token
from app.services.user_store import UserStore, create_user_store

logger = logging.getLogger(__name__)

GOOGLE_OAUTH_AUTHORIZE_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_CALENDAR_SCOPES = (
    "https://www.googleapis.com/auth/calendar.events",
    "https://www.googleapis.com/auth/calendar.calendarlist.readonly",
)


class CalendarOAuthService:
    def __init__(
        self,
        settings: Settings | None = None,
        credential_store: CalendarCredentialStore | None = None,
        user_store: UserStore | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.credential_store = credential_store or create_calendar_credential_store(self.settings)
        self.user_store = user_store or create_user_store(self.settings)
        self.clock = clock or (lambda: datetime.now(UTC))

    def build_authorization_url(self, current_user: CurrentUserResponse) -> str:
        self._assert_instructor(current_user)
        self._assert_configured()
        state_token, _ = create_oauth_state_token(
            subject_id=current_user.id,
            secret_key=self.settings.auth_secret_key,
            ttl_minutes=self.settings.oauth_state_ttl_minutes,
            issued_at=self.clock(),
        )
        query = urlencode(
            {
                "client_id": self.settings.google_calendar_client_id,
                "redirect_uri": self.settings.google_calendar_redirect_uri,
                "response_type": "code",
                "scope": " ".join(GOOGLE_CALENDAR_SCOPES),
                "state": state_token,
                "prompt": "consent",
                "access_type": "offline",
                "include_granted_scopes": "true",
            },
        )
        return f"{GOOGLE_OAUTH_AUTHORIZE_URL}?{query}"

    def complete_authorization(self, *, code: str, state: str) -> CalendarCredential:
        self._assert_configured()
        instructor_id = self._consume_state(state)

        try:
            grant = exchange_authorization_code(
                code=code,
                client_id=self.settings.google_calendar_client_id,
                client_secret=self.settings.google_calendar_client_secret,
                redirect_uri=self.settings.google_calendar_redirect_uri,
                timeout_seconds=self.settings.google_calendar_api_timeout_seconds,
            )
        except GoogleCalendarError as exc:
            logger.warning("calendar_code_exchange_failed instructor_id=%s error=%s", instructor_id, exc)
            raise HTTPException(
                status_code=status.HTTP_502_BAD_GATEWAY,
                detail="Failed to exchange Google authorization code.",
            ) from exc

        existing = self.credential_store.get_credential(instructor_id)
        refresh_token = grant.refresh_token or (existing.refresh_token if existing else "")
        if not refresh_token:
            raise HTTPException(
                status_code=status.HTTP_502_BAD_GATEWAY,
                detail="Google token response did not include refresh_token.",
            )

        credential = CalendarCredential(
            instructor_id=instructor_id,
            access_token=grant.access_token,
            refresh_token=refresh_token,
            token_expiry=grant.expires_at,
            calendar_id=existing.calendar_id if existing else "primary",
            blocking_enabled=existing.blocking_enabled if existing else True,
        )
        self.credential_store.save_credential(credential)
        logger.info("calendar_connected instructor_id=%s", instructor_id)
        return credential

    def disconnect(self, current_user: CurrentUserResponse) -> bool:
        self._assert_instructor(current_user)
        removed = self.credential_store.delete_credential(current_user.id)
        if removed:
            logger.info("calendar_disconnected instructor_id=%s reason=user_request", current_user.id)
        return removed

    def set_calendar_id(self, current_user: CurrentUserResponse, calendar_id: str) -> CalendarCredential:
        self._assert_instructor(current_user)
        cleaned_calendar_id = calendar_id.strip()
        if not cleaned_calendar_id:
            raise BookingValidationError("calendar_id must not be empty.")
        credential = self._require_credential(current_user.id)
        credential.calendar_id = cleaned_calendar_id
        return self.credential_store.save_credential(credential)

    def set_blocking_enabled(self, current_user: CurrentUserResponse, enabled: bool) -> CalendarCredential:
        self._assert_instructor(current_user)
        credential = self._require_credential(current_user.id)
        credential.blocking_enabled = enabled
        logger.info("calendar_blocking_updated instructor_id=%s enabled=%s", current_user.id, enabled)
        return self.credential_store.save_credential(credential)

    def list_calendars(self, current_user: CurrentUserResponse) -> list[CalendarListItem]:
        self._assert_instructor(current_user)
        self._assert_configured()
        credential = self._require_credential(current_user.id)
        sync_service = CalendarSyncService(
            credential=credential,
            settings=self.settings,
            credential_store=self.credential_store,
            clock=self.clock,
        )
        calendars = sync_service.list_calendars()
        if calendars is None:
            raise HTTPException(
                status_code=status.HTTP_502_BAD_GATEWAY,
                detail="Failed to list Google calendars.",
            )
        return [
            CalendarListItem(
                id=calendar.calendar_id,
                summary=calendar.summary,
                primary=calendar.primary,
                access_role=calendar.access_role,
                selected=calendar.calendar_id == credential.calendar_id
                or (calendar.primary and credential.calendar_id == "primary"),
            )
            for calendar in calendars
        ]

    def get_status(self, instructor_id: str) -> CalendarStatusResponse:
        credential = self.credential_store.get_credential(instructor_id)
        return CalendarStatusResponse(
            configured=self.settings.google_calendar_configured,
            authorized=credential is not None,
            calendar_id=credential.calendar_id if credential else None,
            blocking_enabled=credential.blocking_enabled if credential else None,
        )

    def _consume_state(self, state: str) -> str:
        now = self.clock()
        payload = decode_oauth_state_token(state, self.settings.auth_secret_key, now=now)
        if not payload:
            raise OAuthStateError("Invalid or expired OAuth state.")

        issued_at = payload.get("iat")
        max_age = timedelta(minutes=self.settings.oauth_state_ttl_minutes)
        if not isinstance(issued_at, int) or now - datetime.fromtimestamp(issued_at, UTC) > max_age:
            raise OAuthStateError("Invalid or expired OAuth state.")

        instructor_id = str(payload["sub"]).strip()
        user_record = self.user_store.get_user_by_id(instructor_id)
        if not user_record or user_record.get("role") not in {"instructor", "admin"}:
            raise OAuthStateError("OAuth state does not reference an instructor.")

        expires_at = datetime.fromtimestamp(int(payload.get("exp", issued_at)), UTC)
        if not self.credential_store.consume_oauth_state_nonce(str(payload["nonce"]), expires_at=expires_at):
            raise OAuthStateError("OAuth state has already been used.")
        return instructor_id

    def _require_credential(self, instructor_id: str) -> CalendarCredential:
        credential = self.credential_store.get_credential(instructor_id)
        if not credential:
            raise BookingValidationError("Google Calendar is not connected.")
        return credential

    def _assert_instructor(self, current_user: CurrentUserResponse) -> None:
        if current_user.role not in {"instructor", "admin"}:
            raise PermissionDeniedError("Only instructors can manage a calendar connection.")

    def _assert_configured(self) -> None:
        if not self.settings.google_calendar_configured:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail=(
                    "Google Calendar OAuth is not configured. "
                    "Define GOOGLE_CALENDAR_CLIENT_ID, GOOGLE_CALENDAR_CLIENT_SECRET and "
                    "GOOGLE_CALENDAR_REDIRECT_URI."
                ),
            )
