"""FastAPI application entrypoint. No business logic; only wiring, lifecycle and error mapping."""

from dotenv import load_dotenv

load_dotenv()

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from app.api.v1 import router as v1_router
from app.core.config import settings
from app.core.database import SessionLocal
from app.core.errors import (
    AccountNotActive,
    AlreadyExists,
    CycleDetected,
    Forbidden,
    GatekeeperError,
    InvalidCredentials,
    ModuleNotEmpty,
    NotFound,
    PolicyViolation,
    StorageUnavailable,
    Unauthorized,
)
from app.core.rate_limit import limiter, rate_limit_exceeded_handler
from app.core.tokens import TokenAuthority
from app.services.audit import AuditRecorder

logger = logging.getLogger(__name__)

ERROR_STATUS: dict[type[GatekeeperError], int] = {
    InvalidCredentials: status.HTTP_401_UNAUTHORIZED,
    Unauthorized: status.HTTP_401_UNAUTHORIZED,
    AccountNotActive: status.HTTP_403_FORBIDDEN,
    Forbidden: status.HTTP_403_FORBIDDEN,
    NotFound: status.HTTP_404_NOT_FOUND,
    AlreadyExists: status.HTTP_409_CONFLICT,
    CycleDetected: status.HTTP_409_CONFLICT,
    ModuleNotEmpty: status.HTTP_409_CONFLICT,
    PolicyViolation: status.HTTP_422_UNPROCESSABLE_ENTITY,
    StorageUnavailable: status.HTTP_503_SERVICE_UNAVAILABLE,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the token authority and audit writer once; stop the writer on shutdown."""
    app.state.token_authority = TokenAuthority.from_settings(settings)
    recorder = AuditRecorder(
        SessionLocal,
        async_mode=settings.AUDIT_ASYNC,
        queue_size=settings.AUDIT_QUEUE_SIZE,
        retries=settings.AUDIT_WRITE_RETRIES,
    )
    recorder.start()
    app.state.audit_recorder = recorder
    try:
        yield
    finally:
        recorder.stop()


app = FastAPI(
    title="Gatekeeper API",
    version="0.1.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if settings.APP_ENV == "dev" else [],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# SlowAPIMiddleware finds the limiter on app.state.limiter.
app.state.limiter = limiter
app.add_middleware(SlowAPIMiddleware)
app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)


@app.exception_handler(GatekeeperError)
async def gatekeeper_error_handler(request: Request, exc: GatekeeperError) -> JSONResponse:
    """Translate service errors to HTTP. Only the classification and message are returned."""
    status_code = ERROR_STATUS.get(type(exc), status.HTTP_400_BAD_REQUEST)
    content: dict = {"detail": exc.message, "code": exc.code}
    headers = None
    if isinstance(exc, PolicyViolation):
        content["violations"] = exc.violations
    if status_code == status.HTTP_401_UNAUTHORIZED:
        headers = {"WWW-Authenticate": "Bearer"}
    elif isinstance(exc, StorageUnavailable):
        headers = {"Retry-After": "1"}
    return JSONResponse(status_code=status_code, content=content, headers=headers)


app.include_router(v1_router, prefix=settings.API_V1_PREFIX)


@limiter.exempt
@app.get("/")
def root() -> dict[str, str]:
    """Root route; minimal payload for discovery."""
    return {"message": "Gatekeeper API"}
