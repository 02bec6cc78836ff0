from urllib.parse import urlencode

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import RedirectResponse

from app.core.config import get_settings
from app.schemas.auth import CurrentUserResponse
from app.schemas.calendar import (
    CalendarAuthorizationUrlResponse,
    CalendarBlockingUpdateRequest,
    CalendarDisconnectResponse,
    CalendarIdUpdateRequest,
    CalendarListItem,
    CalendarStatusResponse,
)
from app.services.auth_service import require_instructor
from app.services.booking_errors import OAuthStateError
from app.services.calendar_oauth_service import CalendarOAuthService

router = APIRouter(prefix="/calendar/google", tags=["calendar"])


@router.get("/authorization-url", response_model=CalendarAuthorizationUrlResponse)
def get_authorization_url(
    current_user: CurrentUserResponse = Depends(require_instructor),
) -> CalendarAuthorizationUrlResponse:
    service = CalendarOAuthService()
    return CalendarAuthorizationUrlResponse(
        authorization_url=service.build_authorization_url(current_user),
    )


@router.get("/callback")
def finish_google_calendar_oauth(
    code: str | None = Query(default=None),
    state: str | None = Query(default=None),
    error: str | None = Query(default=None),
) -> RedirectResponse:
    if error:
        return _build_calendar_redirect("error", error)
    if not code or not state:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="Missing code or state.",
        )

    service = CalendarOAuthService()
    try:
        service.complete_authorization(code=code, state=state)
    except OAuthStateError as exc:
        return _build_calendar_redirect("error", str(exc))
    return _build_calendar_redirect("connected", "connected")


@router.get("/status", response_model=CalendarStatusResponse)
def get_calendar_status(
    current_user: CurrentUserResponse = Depends(require_instructor),
) -> CalendarStatusResponse:
    service = CalendarOAuthService()
    return service.get_status(current_user.id)


@router.post("/disconnect", response_model=CalendarDisconnectResponse)
def disconnect_calendar(
    current_user: CurrentUserResponse = Depends(require_instructor),
) -> CalendarDisconnectResponse:
    service = CalendarOAuthService()
    return CalendarDisconnectResponse(disconnected=service.disconnect(current_user))


@router.post("/calendar-id", response_model=CalendarStatusResponse)
def update_calendar_id(
    payload: CalendarIdUpdateRequest,
    current_user: CurrentUserResponse = Depends(require_instructor),
) -> CalendarStatusResponse:
    service = CalendarOAuthService()
    service.set_calendar_id(current_user, payload.calendar_id)
    return service.get_status(current_user.id)


@router.get("/calendars", response_model=list[CalendarListItem])
def list_google_calendars(
    current_user: CurrentUserResponse = Depends(require_instructor),
) -> list[CalendarListItem]:
    service = CalendarOAuthService()
    return service.list_calendars(current_user)


@router.post("/blocking", response_model=CalendarStatusResponse)
def update_calendar_blocking(
    payload: CalendarBlockingUpdateRequest,
    current_user: CurrentUserResponse = Depends(require_instructor),
) -> CalendarStatusResponse:
    service = CalendarOAuthService()
    service.set_blocking_enabled(current_user, payload.enabled)
    return service.get_status(current_user.id)


def _build_calendar_redirect(status_value: str, message: str) -> RedirectResponse:
    frontend_base_url = get_settings().frontend_base_url.rstrip("/")
    query = urlencode(
        {
            "gcal_status": status_value,
            "gcal_message": message,
        },
    )
    return RedirectResponse(url=f"{frontend_base_url}/instructor/calendar?{query}", status_code=302)
