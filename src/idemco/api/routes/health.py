"""Health check endpoint for the idemco API."""

from datetime import UTC, datetime

from fastapi import APIRouter
from pydantic import BaseModel

from idemco import __version__

router = APIRouter(tags=["Health"])


class HealthResponse(BaseModel):
    """Health check response schema."""

    status: str
    time: str
    version: str


@router.get("/health", response_model=HealthResponse)
def get_health() -> HealthResponse:
    """Return status "ok", the current time (ISO-8601) and the package version."""
    return HealthResponse(
        status="ok",
        time=datetime.now(UTC).isoformat(),
        version=__version__,
    )
