"""
Best-effort pickup markers for the hub heatmap.

Ride creation publishes one marker per ride after the ride row is committed.
Writers here never raise into the caller: a lost marker costs one heatmap
point, not a ride.
"""

from __future__ import annotations

import logging
from typing import Callable, Protocol
from uuid import UUID

from fastapi import BackgroundTasks
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from src.api.models.ride import RideRequestGeo

logger = logging.getLogger(__name__)


class GeoMarkerSink(Protocol):
    """Destination for pickup markers."""

    def publish(self, ride_id: UUID, lat: float, lng: float) -> None:
        ...


class SessionGeoMarkerSink:
    """Writes markers to `ride_requests_geo` using a session of its own."""

    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    def publish(self, ride_id: UUID, lat: float, lng: float) -> None:
        db = self._session_factory()
        try:
            db.add(RideRequestGeo(ride_id=ride_id, lat=lat, lng=lng))
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            logger.exception("Failed to record geo marker for ride %s", ride_id)
        finally:
            db.close()


class DeferredGeoMarkerSink:
    """
    Queues marker writes as FastAPI background tasks.

    The write runs after the HTTP response is sent, outside the ride-creation
    transaction.
    """

    def __init__(self, background_tasks: BackgroundTasks, sink: GeoMarkerSink):
        self._background_tasks = background_tasks
        self._sink = sink

    def publish(self, ride_id: UUID, lat: float, lng: float) -> None:
        self._background_tasks.add_task(self._sink.publish, ride_id, lat, lng)


class NullGeoMarkerSink:
    """Discards markers."""

    def publish(self, ride_id: UUID, lat: float, lng: float) -> None:
        return None
