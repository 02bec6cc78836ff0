from pydantic import BaseModel, Field


class CalendarStatusResponse(BaseModel):
    configured: bool
    authorized: bool
    calendar_id: str | None = None
    blocking_enabled: bool | None = None


class CalendarAuthorizationUrlResponse(BaseModel):
    authorization_url: str


class CalendarIdUpdateRequest(BaseModel):
    calendar_id: str = Field(min_length=1)


class CalendarBlockingUpdateRequest(BaseModel):
    enabled: bool


class CalendarListItem(BaseModel):
    id: str
    summary: str
    primary: bool = False
    access_role: str = ""
    selected: bool = False


class CalendarDisconnectResponse(BaseModel):
    disconnected: bool
