from typing import Literal

from pydantic import BaseModel


class CurrentUserResponse(BaseModel):
    id: str
    email: str
    full_name: str
    role: str
    phone: str | None = None

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    @property
    def is_instructor(self) -> bool:
        return self.role == "instructor"


class RegisterRequest(BaseModel):
    full_name: str
    email: str
    password: str
    role: Literal["student", "instructor"] = "student"
    phone: str | None = None


class LoginRequest(BaseModel):
    email: str
    password: str


class AuthTokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in_seconds: int
    user: CurrentUserResponse
