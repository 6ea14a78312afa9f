"""Request/response schemas for auth and user endpoints."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from app.models.enums import UserStatus


class LoginRequest(BaseModel):
    """Credentials for login. ``identifier`` is a username or an email address."""

    identifier: str = Field(..., min_length=1, max_length=255, description="Username or email")
    password: str = Field(..., min_length=1, max_length=256, description="Password")


class RegisterRequest(BaseModel):
    username: str = Field(..., min_length=3, max_length=100)
    email: str = Field(..., min_length=3, max_length=255)
    password: str = Field(..., min_length=1, max_length=256)
    first_name: str | None = Field(default=None, max_length=100)
    last_name: str | None = Field(default=None, max_length=100)


class RefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=128)


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(..., min_length=1, max_length=256)
    new_password: str = Field(..., min_length=1, max_length=256)


class RevokeTokenRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=128)


class TokenResponse(BaseModel):
    """Access/refresh token pair returned by login and refresh."""

    access_token: str = Field(..., description="JWT access token")
    refresh_token: str = Field(..., description="Opaque refresh token; single use")
    token_type: str = Field(default="bearer", description="Token type")
    expires_at: datetime = Field(..., description="Access token expiry (UTC)")
    refresh_token_expires_at: datetime


class RevokeResponse(BaseModel):
    revoked: int = Field(..., description="Number of refresh tokens revoked")


class UserResponse(BaseModel):
    """User as returned by the API (never includes the password hash)."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    username: str
    email: str
    first_name: str | None = None
    last_name: str | None = None
    status: UserStatus
    project_id: str | None = None
    last_login_at: datetime | None = None
    created_at: datetime | None = None


class UsersListResponse(BaseModel):
    users: list[UserResponse]


class UserStatusUpdate(BaseModel):
    status: UserStatus
