"""
Shared FastAPI dependencies.

Callers are identified by the opaque `X-User-ID` header set by the fronting
identity layer; this service does not verify it.
"""

from __future__ import annotations

from typing import Optional
from uuid import UUID

from fastapi import BackgroundTasks, Header, HTTPException, status

from src.api.clock import Clock, system_clock
from src.api.db import SessionLocal
from src.api.services.geo_markers import DeferredGeoMarkerSink, GeoMarkerSink, SessionGeoMarkerSink


def _unauthorized(detail: str) -> HTTPException:
    """Create a standardized 401 exception."""
    return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=detail)


# PUBLIC_INTERFACE
def get_current_user_id(x_user_id: Optional[str] = Header(default=None)) -> UUID:
    """
    Return the calling user's id from the X-User-ID header.

    Raises:
        HTTPException(401): if the header is missing or not a UUID.
    """
    if not x_user_id:
        raise _unauthorized("Missing X-User-ID header.")
    try:
        return UUID(x_user_id)
    except ValueError:
        raise _unauthorized("Invalid X-User-ID header.")


# PUBLIC_INTERFACE
def get_clock() -> Clock:
    """Clock used for timestamps and surge pricing."""
    return system_clock


# PUBLIC_INTERFACE
def get_geo_sink(background_tasks: BackgroundTasks) -> GeoMarkerSink:
    """Geo-marker sink that writes after the response has been sent."""
    return DeferredGeoMarkerSink(background_tasks, SessionGeoMarkerSink(SessionLocal))
