"""Health check endpoint with database and audit writer status. Not rate limited."""

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.database import check_db_connected, get_db
from app.core.rate_limit import limiter
from app.schemas.health import HealthResponse

router = APIRouter()


@limiter.exempt
@router.get("", response_model=HealthResponse)
def get_health(request: Request, db: Session = Depends(get_db)) -> HealthResponse:
    """
    Return service health status and database connectivity.
    Used by load balancers and monitoring.
    """
    connected = check_db_connected(db)
    recorder = request.app.state.audit_recorder
    if not recorder.async_mode:
        audit_writer = "sync"
    else:
        audit_writer = "running" if recorder.running else "stopped"

    return HealthResponse(
        status="ok" if connected else "degraded",
        environment=settings.APP_ENV,
        database="connected" if connected else "disconnected",
        audit_writer=audit_writer,
    )
