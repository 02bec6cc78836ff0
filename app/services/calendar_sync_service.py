from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime

from app.core.config import Settings, get_settings
from app.services.booking_models import (
    Appointment,
    AppointmentType,
    BusyInterval,
    BusySource,
    CalendarCredential,
)
from app.services.calendar_credential_store import (
    CalendarCredentialStore,
    create_calendar_credential_store,
)
from app.services.google_calendar_client import (
    GoogleCalendarAuthError,
    GoogleCalendarClient,
    GoogleCalendarError,
    GoogleCalendarSummary,
    GoogleTokenGrant,
)

logger = logging.getLogger(__name__)


class CalendarSyncService:
    """Mirror appointments of one instructor into their Google Calendar.

    Every public method swallows provider failures and reports them through
    its return value, so callers on the booking path never see a provider
    exception.
    """

    def __init__(
        self,
        *,
        credential: CalendarCredential,
        settings: Settings | None = None,
        credential_store: CalendarCredentialStore | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.credential = credential
        self.credential_store = credential_store or create_calendar_credential_store(self.settings)
        self.clock = clock or (lambda: datetime.now(UTC))
        self.disconnected = False
        self.client = GoogleCalendarClient(
            access_token=credential.access_token,
            refresh_token=credential.refresh_token,
            client_id=self.settings.google_calendar_client_id,
            client_secret=self.settings.google_calendar_client_secret,
            calendar_id=credential.calendar_id,
            timeout_seconds=self.settings.google_calendar_api_timeout_seconds,
            default_timezone=self.settings.google_calendar_event_timezone,
            on_token_refreshed=self._persist_refreshed_token,
        )

    @property
    def instructor_id(self) -> str:
        return self.credential.instructor_id

    @property
    def blocks_availability(self) -> bool:
        return self.credential.blocking_enabled

    def list_busy_intervals(self, start: datetime, end: datetime) -> list[BusyInterval]:
        if not self._ensure_fresh_token():
            return []
        try:
            busy_events = self.client.list_busy_events(time_min=start, time_max=end)
        except GoogleCalendarAuthError as exc:
            self._disconnect(exc)
            return []
        except GoogleCalendarError as exc:
            logger.warning(
                "calendar_busy_listing_failed instructor_id=%s error=%s",
                self.instructor_id,
                exc,
            )
            return []
        return [
            BusyInterval(
                start=busy_event.start,
                end=busy_event.end,
                source=BusySource.external_calendar,
                external_event_id=busy_event.event_id,
            )
            for busy_event in busy_events
        ]

    def list_calendars(self) -> list[GoogleCalendarSummary] | None:
        if not self._ensure_fresh_token():
            return None
        try:
            return self.client.list_calendars()
        except GoogleCalendarAuthError as exc:
            self._disconnect(exc)
            return None
        except GoogleCalendarError as exc:
            logger.warning("calendar_listing_failed instructor_id=%s error=%s", self.instructor_id, exc)
            return None

    def create_event_for_appointment(
        self,
        appointment: Appointment,
        appointment_type: AppointmentType | None,
    ) -> str | None:
        if not self._ensure_fresh_token():
            return None
        try:
            event_id = self.client.create_event(
                summary=build_event_summary(appointment, appointment_type),
                description=build_event_description(appointment, appointment_type),
                start=appointment.start_time,
                end=appointment.end_time,
                attendee_emails=[appointment.student_contact.email],
            )
        except GoogleCalendarAuthError as exc:
            self._disconnect(exc)
            return None
        except GoogleCalendarError as exc:
            logger.warning(
                "calendar_event_create_failed appointment_id=%s instructor_id=%s error=%s",
                appointment.id,
                self.instructor_id,
                exc,
            )
            return None
        logger.info(
            "calendar_event_created appointment_id=%s event_id=%s",
            appointment.id,
            event_id,
        )
        return event_id

    def update_event_for_appointment(
        self,
        appointment: Appointment,
        appointment_type: AppointmentType | None,
    ) -> bool:
        if not appointment.external_event_id:
            return False
        if not self._ensure_fresh_token():
            return False
        try:
            self.client.update_event(
                appointment.external_event_id,
                summary=build_event_summary(appointment, appointment_type),
                description=build_event_description(appointment, appointment_type),
                start=appointment.start_time,
                end=appointment.end_time,
                attendee_emails=[appointment.student_contact.email],
            )
        except GoogleCalendarAuthError as exc:
            self._disconnect(exc)
            return False
        except GoogleCalendarError as exc:
            logger.warning(
                "calendar_event_update_failed appointment_id=%s event_id=%s error=%s",
                appointment.id,
                appointment.external_event_id,
                exc,
            )
            return False
        return True

    def delete_event_for_appointment(self, appointment: Appointment) -> bool:
        if not appointment.external_event_id:
            return True
        if not self._ensure_fresh_token():
            return False
        try:
            self.client.delete_event(appointment.external_event_id)
        except GoogleCalendarAuthError as exc:
            self._disconnect(exc)
            return False
        except GoogleCalendarError as exc:
            logger.warning(
                "calendar_event_delete_failed appointment_id=%s event_id=%s error=%s",
                appointment.id,
                appointment.external_event_id,
                exc,
            )
            return False
        logger.info(
            "calendar_event_deleted appointment_id=%s event_id=%s",
            appointment.id,
            appointment.external_event_id,
        )
        return True

    def _ensure_fresh_token(self) -> bool:
        if self.disconnected:
            return False
        if not self.credential.expires_within(
            now=self.clock(),
            leeway_seconds=self.settings.google_calendar_token_refresh_leeway_seconds,
        ):
            return True
        try:
            self.client.refresh_access_token()
        except GoogleCalendarAuthError as exc:
            self._disconnect(exc)
            return False
        except GoogleCalendarError as exc:
            logger.warning(
                "calendar_token_refresh_failed instructor_id=%s error=%s",
                self.instructor_id,
                exc,
            )
            return False
        return True

    def _persist_refreshed_token(self, grant: GoogleTokenGrant) -> None:
        self.credential.access_token = grant.access_token
        self.credential.token_expiry = grant.expires_at
        if grant.refresh_token:
            self.credential.refresh_token = grant.refresh_token
        self.credential_store.save_credential(self.credential)
        logger.info("calendar_token_refreshed instructor_id=%s", self.instructor_id)

    def _disconnect(self, exc: Exception) -> None:
        self.disconnected = True
        self.credential_store.delete_credential(self.instructor_id)
        logger.warning(
            "calendar_disconnected instructor_id=%s reason=refresh_rejected error=%s",
            self.instructor_id,
            exc,
        )


def build_event_summary(appointment: Appointment, appointment_type: AppointmentType | None) -> str:
    type_title = appointment_type.title if appointment_type else "Appointment"
    return f"{type_title} - {appointment.student_contact.name}"


def build_event_description(
    appointment: Appointment,
    appointment_type: AppointmentType | None,
) -> str:
    contact = appointment.student_contact
    lines = [
        f"Type: {appointment_type.title if appointment_type else 'Appointment'}",
        f"Student: {contact.name}",
        f"Email: {contact.email}",
    ]
    if contact.phone:
        lines.append(f"Phone: {contact.phone}")
    if contact.notes:
        lines.append(f"Notes: {contact.notes}")
    return "\n".join(lines)


def create_calendar_sync_service(
    instructor_id: str,
    *,
    settings: Settings | None = None,
    credential_store: CalendarCredentialStore | None = None,
    clock: Callable[[], datetime] | None = None,
) -> CalendarSyncService | None:
    resolved_settings = settings or get_settings()
    if not resolved_settings.google_calendar_configured:
        return None
    resolved_store = credential_store or create_calendar_credential_store(resolved_settings)
    credential = resolved_store.get_credential(instructor_id)
    if not credential:
        return None
    return CalendarSyncService(
        credential=credential,
        settings=resolved_settings,
        credential_store=resolved_store,
        clock=clock,
    )
