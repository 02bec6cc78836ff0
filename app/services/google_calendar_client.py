import http.client
import json
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, date, datetime, time, timedelta
from typing import Any
from urllib import error, parse, request
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

GOOGLE_OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"
_DEFAULT_TOKEN_LIFETIME_SECONDS = 3600
_EVENTS_PAGE_SIZE = 250


class GoogleCalendarError(Exception):
    pass


class GoogleCalendarAuthError(GoogleCalendarError):
    """The provider rejected the refresh token; the connection must be dropped."""


@dataclass(frozen=True)
class GoogleTokenGrant:
    access_token: str
    refresh_token: str | None
    expires_at: datetime


@dataclass(frozen=True)
class GoogleBusyEvent:
    event_id: str | None
    start: datetime
    end: datetime


@dataclass(frozen=True)
class GoogleCalendarSummary:
    calendar_id: str
    summary: str
    primary: bool
    access_role: str


class GoogleCalendarClient:
    def __init__(
        self,
        *,
        access_token: str,
        refresh_token: str = "",
        client_id: str = "",
        client_secret: str = "",
        calendar_id: str = "primary",
        timeout_seconds: float = 10.0,
        default_timezone: str = "UTC",
        api_base_url: str = GOOGLE_CALENDAR_API_BASE_URL,
        oauth_token_url: str = GOOGLE_OAUTH_TOKEN_URL,
        on_token_refreshed: Callable[[GoogleTokenGrant], None] | None = None,
    ) -> None:
        self.access_token = access_token
        self.refresh_token = refresh_token
        self.client_id = client_id
        self.client_secret = client_secret
        self.calendar_id = calendar_id
        self.timeout_seconds = timeout_seconds
        self.default_timezone = default_timezone
        self.api_base_url = api_base_url.rstrip("/")
        self.oauth_token_url = oauth_token_url
        self.on_token_refreshed = on_token_refreshed

    def create_event(
        self,
        *,
        summary: str,
        description: str,
        start: datetime,
        end: datetime,
        attendee_emails: list[str] | None = None,
    ) -> str:
        payload = self._build_event_payload(
            summary=summary,
            description=description,
            start=start,
            end=end,
            attendee_emails=attendee_emails,
        )
        endpoint_path = f"{self._events_path()}?{parse.urlencode({'sendUpdates': 'all'})}"
        response_payload = self._request_json("POST", endpoint_path, payload=payload)
        event_id = response_payload.get("id")
        if not isinstance(event_id, str) or not event_id.strip():
            raise GoogleCalendarError("Google Calendar create event response missing id.")
        return event_id

    def update_event(
        self,
        event_id: str,
        *,
        summary: str,
        description: str,
        start: datetime,
        end: datetime,
        attendee_emails: list[str] | None = None,
    ) -> None:
        payload = self._build_event_payload(
            summary=summary,
            description=description,
            start=start,
            end=end,
            attendee_emails=attendee_emails,
        )
        endpoint_path = f"{self._event_path(event_id)}?{parse.urlencode({'sendUpdates': 'all'})}"
        self._request_json("PATCH", endpoint_path, payload=payload)

    def delete_event(self, event_id: str) -> None:
        endpoint_path = f"{self._event_path(event_id)}?{parse.urlencode({'sendUpdates': 'all'})}"
        try:
            self._request_json("DELETE", endpoint_path)
        except GoogleCalendarError as exc:
            # Already removed on the provider side.
            if isinstance(exc.__cause__, error.HTTPError) and exc.__cause__.code in {404, 410}:
                return
            raise

    def list_busy_events(self, *, time_min: datetime, time_max: datetime) -> list[GoogleBusyEvent]:
        busy_events: list[GoogleBusyEvent] = []
        page_token: str | None = None
        while True:
            query: dict[str, str] = {
                "timeMin": _to_rfc3339(time_min),
                "timeMax": _to_rfc3339(time_max),
                "singleEvents": "true",
                "orderBy": "startTime",
                "maxResults": str(_EVENTS_PAGE_SIZE),
            }
            if page_token:
                query["pageToken"] = page_token
            response_payload = self._request_json(
                "GET",
                f"{self._events_path()}?{parse.urlencode(query)}",
            )
            calendar_timezone = response_payload.get("timeZone")
            if not isinstance(calendar_timezone, str) or not calendar_timezone.strip():
                calendar_timezone = self.default_timezone

            raw_items = response_payload.get("items")
            for raw_item in raw_items if isinstance(raw_items, list) else []:
                busy_event = self._parse_busy_event(raw_item, calendar_timezone)
                if busy_event:
                    busy_events.append(busy_event)

            next_page_token = response_payload.get("nextPageToken")
            if not isinstance(next_page_token, str) or not next_page_token:
                return busy_events
            page_token = next_page_token

    def list_calendars(self) -> list[GoogleCalendarSummary]:
        calendars: list[GoogleCalendarSummary] = []
        page_token: str | None = None
        while True:
            query: dict[str, str] = {"minAccessRole": "writer"}
            if page_token:
                query["pageToken"] = page_token
            response_payload = self._request_json("GET", f"/users/me/calendarList?{parse.urlencode(query)}")

            raw_items = response_payload.get("items")
            for raw_item in raw_items if isinstance(raw_items, list) else []:
                if not isinstance(raw_item, dict):
                    continue
                calendar_id = raw_item.get("id")
                if not isinstance(calendar_id, str) or not calendar_id.strip():
                    continue
                calendars.append(
                    GoogleCalendarSummary(
                        calendar_id=calendar_id,
                        summary=str(raw_item.get("summaryOverride") or raw_item.get("summary") or calendar_id),
                        primary=raw_item.get("primary") is True,
                        access_role=str(raw_item.get("accessRole") or ""),
                    )
                )

            next_page_token = response_payload.get("nextPageToken")
            if not isinstance(next_page_token, str) or not next_page_token:
                return calendars
            page_token = next_page_token

    def refresh_access_token(self) -> GoogleTokenGrant:
        if not self._can_refresh_access_token():
            raise GoogleCalendarAuthError(
                "Google Calendar refresh token flow is not configured.",
            )
        grant = _post_token_form(
            self.oauth_token_url,
            {
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "refresh_token": self.refresh_token,
                "grant_type": "refresh_token",
            },
            timeout_seconds=self.timeout_seconds,
        )
        self.access_token = grant.access_token
        if grant.refresh_token:
            self.refresh_token = grant.refresh_token
        if self.on_token_refreshed:
            self.on_token_refreshed(grant)
        return grant

    def _build_event_payload(
        self,
        *,
        summary: str,
        description: str,
        start: datetime,
        end: datetime,
        attendee_emails: list[str] | None,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "summary": self._truncate(summary, 500),
            "description": self._truncate(description, 8000),
            "start": self._to_datetime_payload(start),
            "end": self._to_datetime_payload(end),
        }
        normalized_attendees = self._normalize_attendee_emails(attendee_emails)
        if normalized_attendees:
            payload["attendees"] = [{"email": email} for email in normalized_attendees]
        return payload

    def _to_datetime_payload(self, value: datetime) -> dict[str, Any]:
        event_timezone = _resolve_zone(self.default_timezone)
        aware_value = value if value.tzinfo else value.replace(tzinfo=UTC)
        return {
            "dateTime": aware_value.astimezone(event_timezone).isoformat(),
            "timeZone": self.default_timezone,
        }

    def _parse_busy_event(
        self,
        raw_item: Any,
        calendar_timezone: str,
    ) -> GoogleBusyEvent | None:
        if not isinstance(raw_item, dict):
            return None
        if raw_item.get("status") == "cancelled":
            return None
        if raw_item.get("transparency") == "transparent":
            return None

        start = self._parse_event_boundary(raw_item.get("start"), calendar_timezone)
        end = self._parse_event_boundary(raw_item.get("end"), calendar_timezone)
        if not start or not end or end <= start:
            return None

        raw_event_id = raw_item.get("id")
        event_id = raw_event_id if isinstance(raw_event_id, str) and raw_event_id else None
        return GoogleBusyEvent(event_id=event_id, start=start, end=end)

    def _parse_event_boundary(self, raw_boundary: Any, calendar_timezone: str) -> datetime | None:
        if not isinstance(raw_boundary, dict):
            return None
        raw_datetime = raw_boundary.get("dateTime")
        if isinstance(raw_datetime, str) and raw_datetime.strip():
            try:
                parsed = datetime.fromisoformat(raw_datetime.strip().replace("Z", "+00:00"))
            except ValueError:
                return None
            if parsed.tzinfo is None:
                boundary_timezone = raw_boundary.get("timeZone") or calendar_timezone
                parsed = parsed.replace(tzinfo=_resolve_zone(str(boundary_timezone)))
            return parsed.astimezone(UTC)

        # All-day events carry a bare date that starts at local midnight.
        raw_date = raw_boundary.get("date")
        if isinstance(raw_date, str) and raw_date.strip():
            try:
                parsed_date = date.fromisoformat(raw_date.strip())
            except ValueError:
                return None
            local_midnight = datetime.combine(parsed_date, time.min, tzinfo=_resolve_zone(calendar_timezone))
            return local_midnight.astimezone(UTC)
        return None

    def _events_path(self) -> str:
        return f"/calendars/{parse.quote(self.calendar_id, safe='')}/events"

    def _event_path(self, event_id: str) -> str:
        cleaned_event_id = event_id.strip()
        if not cleaned_event_id:
            raise GoogleCalendarError("Google Calendar event id is empty.")
        return f"{self._events_path()}/{parse.quote(cleaned_event_id, safe='')}"

    def _normalize_attendee_emails(self, attendee_emails: list[str] | None) -> list[str]:
        if not attendee_emails:
            return []
        normalized: list[str] = []
        seen: set[str] = set()
        for raw_email in attendee_emails:
            cleaned = raw_email.strip().lower()
            if not cleaned or "@" not in cleaned:
                continue
            if cleaned in seen:
                continue
            seen.add(cleaned)
            normalized.append(cleaned)
        return normalized

    def _request_json(
        self,
        method: str,
        path: str,
        payload: dict[str, Any] | None = None,
        *,
        allow_refresh: bool = True,
    ) -> dict[str, Any]:
        if not self.access_token and self._can_refresh_access_token():
            self.refresh_access_token()

        target = f"{self.api_base_url}{path}"
        raw_payload: bytes | None = None
        if payload is not None:
            raw_payload = json.dumps(payload).encode("utf-8")

        req = request.Request(
            target,
            data=raw_payload,
            method=method,
            headers={
                "Authorization": f"Bearer {self.access_token}",
                "Content-Type": "application/json",
            },
        )

        try:
            with request.urlopen(req, timeout=self.timeout_seconds) as response:
                response_body = response.read()
        except TimeoutError as exc:
            raise GoogleCalendarError("Google Calendar API request timed out.") from exc
        except error.HTTPError as exc:
            if exc.code == 401 and allow_refresh and self._can_refresh_access_token():
                self.refresh_access_token()
                return self._request_json(method, path, payload, allow_refresh=False)
            body = exc.read().decode("utf-8", errors="ignore")
            raise GoogleCalendarError(
                f"Google Calendar API HTTP {exc.code}: {body or 'empty response body'}",
            ) from exc
        except error.URLError as exc:
            raise GoogleCalendarError(
                f"Google Calendar API connection error: {exc.reason}",
            ) from exc
        except (OSError, http.client.HTTPException) as exc:
            raise GoogleCalendarError(f"Google Calendar API connection error: {exc!r}") from exc

        if not response_body.strip():
            return {}
        try:
            parsed_body = json.loads(response_body.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise GoogleCalendarError("Google Calendar API returned invalid JSON.") from exc

        if not isinstance(parsed_body, dict):
            raise GoogleCalendarError("Google Calendar API response is not a JSON object.")
        return parsed_body

    def _can_refresh_access_token(self) -> bool:
        return bool(
            self.refresh_token.strip()
            and self.client_id.strip()
            and self.client_secret.strip()
        )

    def _truncate(self, value: str, limit: int) -> str:
        if len(value) <= limit:
            return value
        return value[: limit - 3] + "..."


def exchange_authorization_code(
    *,
    code: str,
    client_id: str,
    client_secret: str,
    redirect_uri: str,
    timeout_seconds: float = 10.0,
    oauth_token_url: str = GOOGLE_OAUTH_TOKEN_URL,
) -> GoogleTokenGrant:
    return _post_token_form(
        oauth_token_url,
        {
            "code": code,
            "client_id": client_id,
            "client_secret": client_secret,
            "redirect_uri": redirect_uri,
            "grant_type": "authorization_code",
        },
        timeout_seconds=timeout_seconds,
    )


def _post_token_form(
    token_url: str,
    form: dict[str, str],
    *,
    timeout_seconds: float,
) -> GoogleTokenGrant:
    body = parse.urlencode(form).encode("utf-8")
    req = request.Request(
        token_url,
        data=body,
        headers={"Content-Type": "application/x-www-form-urlencoded"},
        method="POST",
    )
    requested_at = datetime.now(UTC)
    try:
        with request.urlopen(req, timeout=timeout_seconds) as response:
            response_body = response.read()
    except TimeoutError as exc:
        raise GoogleCalendarError("Google OAuth token request timed out.") from exc
    except error.HTTPError as exc:
        body_text = exc.read().decode("utf-8", errors="ignore")
        message = f"Google OAuth token HTTP {exc.code}: {body_text or 'empty response body'}"
        if exc.code in {400, 401}:
            raise GoogleCalendarAuthError(message) from exc
        raise GoogleCalendarError(message) from exc
    except error.URLError as exc:
        raise GoogleCalendarError(
            f"Google OAuth token connection error: {exc.reason}",
        ) from exc
    except (OSError, http.client.HTTPException) as exc:
        raise GoogleCalendarError(f"Google OAuth token connection error: {exc!r}") from exc

    try:
        payload = json.loads(response_body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise GoogleCalendarError("Google OAuth token endpoint returned invalid JSON.") from exc

    if not isinstance(payload, dict):
        raise GoogleCalendarError("Google OAuth token response is not a JSON object.")
    access_token = payload.get("access_token")
    if not isinstance(access_token, str) or not access_token.strip():
        raise GoogleCalendarError("Google OAuth token response did not include access_token.")

    raw_refresh_token = payload.get("refresh_token")
    refresh_token = raw_refresh_token.strip() if isinstance(raw_refresh_token, str) else ""
    raw_expires_in = payload.get("expires_in")
    try:
        expires_in = int(raw_expires_in)
    except (TypeError, ValueError):
        expires_in = _DEFAULT_TOKEN_LIFETIME_SECONDS
    return GoogleTokenGrant(
        access_token=access_token.strip(),
        refresh_token=refresh_token or None,
        expires_at=requested_at + timedelta(seconds=expires_in),
    )


def _to_rfc3339(value: datetime) -> str:
    aware_value = value if value.tzinfo else value.replace(tzinfo=UTC)
    return aware_value.astimezone(UTC).isoformat().replace("+00:00", "Z")


def _resolve_zone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name.strip() or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        return ZoneInfo("UTC")
