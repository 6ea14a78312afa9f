"""Login, registration, token refresh/revocation, and the auth dependencies used by every router."""

from typing import Annotated, Callable

from fastapi import APIRouter, Depends, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.database import get_db, storage_errors
from app.core.errors import Forbidden, Unauthorized
from app.core.tokens import TokenAuthority
from app.models import PermissionType, User
from app.schemas.auth import (
    ChangePasswordRequest,
    LoginRequest,
    RefreshRequest,
    RegisterRequest,
    RevokeResponse,
    RevokeTokenRequest,
    TokenResponse,
    UserResponse,
)
from app.services.audit import AuditRecorder
from app.services.auth import AuthService, TokenPair
from app.services.permission_graph import PermissionGraph

router = APIRouter()
security = HTTPBearer(auto_error=False)


def client_ip(request: Request) -> str | None:
    return request.client.host if request.client else None


def user_agent(request: Request) -> str | None:
    return request.headers.get("user-agent")


def get_authority(request: Request) -> TokenAuthority:
    return request.app.state.token_authority


def get_recorder(request: Request) -> AuditRecorder:
    return request.app.state.audit_recorder


def get_auth_service(
    db: Annotated[Session, Depends(get_db)],
    authority: Annotated[TokenAuthority, Depends(get_authority)],
    recorder: Annotated[AuditRecorder, Depends(get_recorder)],
) -> AuthService:
    return AuthService(db, authority, recorder, settings)


def get_current_user(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)],
    service: Annotated[AuthService, Depends(get_auth_service)],
) -> User:
    """Dependency: require a valid Bearer access token for an active user. Raises 401 otherwise."""
    if credentials is None:
        raise Unauthorized("Not authenticated")
    return service.authenticate(credentials.credentials)


def require_permission(feature_code: str, kind: PermissionType) -> Callable[..., User]:
    """
    Dependency factory: the caller must hold ``kind`` on ``feature_code`` in their
    own tenant scope. Resolved from the permission graph on every request.
    """

    def dependency(
        current_user: Annotated[User, Depends(get_current_user)],
        db: Annotated[Session, Depends(get_db)],
    ) -> User:
        with storage_errors(db):
            allowed = PermissionGraph(db, current_user.project_id).has_permission(
                current_user.id, feature_code, kind
            )
        if not allowed:
            raise Forbidden(f"{kind.value} permission on {feature_code} required")
        return current_user

    return dependency


def _token_response(pair: TokenPair) -> TokenResponse:
    return TokenResponse(
        access_token=pair.access_token,
        refresh_token=pair.refresh_token,
        expires_at=pair.access_token_expires_at,
        refresh_token_expires_at=pair.refresh_token_expires_at,
    )


@router.post("/login", response_model=TokenResponse)
def login(
    body: LoginRequest,
    request: Request,
    service: Annotated[AuthService, Depends(get_auth_service)],
) -> TokenResponse:
    """
    Authenticate with username or email and password; returns an access/refresh pair.
    Include the access token in the Authorization header as: Bearer <access_token>
    """
    pair = service.login(
        body.identifier,
        body.password,
        ip_address=client_ip(request),
        user_agent=user_agent(request),
    )
    return _token_response(pair)


@router.post("/register", response_model=UserResponse, status_code=status.HTTP_201_CREATED)
def register(
    body: RegisterRequest,
    request: Request,
    service: Annotated[AuthService, Depends(get_auth_service)],
) -> UserResponse:
    user = service.register(
        body.username,
        body.email,
        body.password,
        first_name=body.first_name,
        last_name=body.last_name,
        ip_address=client_ip(request),
        user_agent=user_agent(request),
    )
    return UserResponse.model_validate(user)


@router.post("/refresh-token", response_model=TokenResponse)
def refresh_token(
    body: RefreshRequest,
    request: Request,
    service: Annotated[AuthService, Depends(get_auth_service)],
) -> TokenResponse:
    """Exchange a refresh token for a new pair. Each refresh token works once."""
    pair = service.refresh(
        body.refresh_token,
        ip_address=client_ip(request),
        user_agent=user_agent(request),
    )
    return _token_response(pair)


@router.post("/change-password", response_model=RevokeResponse)
def change_password(
    body: ChangePasswordRequest,
    request: Request,
    current_user: Annotated[User, Depends(get_current_user)],
    service: Annotated[AuthService, Depends(get_auth_service)],
) -> RevokeResponse:
    revoked = service.change_password(
        current_user.id,
        body.current_password,
        body.new_password,
        ip_address=client_ip(request),
        user_agent=user_agent(request),
    )
    return RevokeResponse(revoked=revoked)


@router.post("/revoke-token", response_model=RevokeResponse)
def revoke_token(
    body: RevokeTokenRequest,
    request: Request,
    current_user: Annotated[User, Depends(get_current_user)],
    service: Annotated[AuthService, Depends(get_auth_service)],
) -> RevokeResponse:
    """Revoke one of the caller's refresh tokens (no-op if already inactive)."""
    revoked = service.revoke_token(
        body.refresh_token,
        user_id=current_user.id,
        ip_address=client_ip(request),
        user_agent=user_agent(request),
    )
    return RevokeResponse(revoked=int(revoked))


@router.post("/revoke-all-tokens", response_model=RevokeResponse)
def revoke_all_tokens(
    request: Request,
    current_user: Annotated[User, Depends(get_current_user)],
    service: Annotated[AuthService, Depends(get_auth_service)],
) -> RevokeResponse:
    """Log out everywhere: revoke every active refresh token of the caller."""
    revoked = service.revoke_all_tokens(
        current_user.id,
        ip_address=client_ip(request),
        user_agent=user_agent(request),
    )
    return RevokeResponse(revoked=revoked)


@router.get("/me", response_model=UserResponse)
def me(current_user: Annotated[User, Depends(get_current_user)]) -> UserResponse:
    return UserResponse.model_validate(current_user)
