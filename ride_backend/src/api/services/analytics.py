"""
Read-only analytics for the rider/driver timeline card and the control hub.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional
from uuid import UUID

from sqlalchemy import desc, select
from sqlalchemy.orm import Session

from src.api.models.ride import RejectionReason, Ride, RideRejection, RideRequestGeo


@dataclass(frozen=True)
class RideTimeline:
    ride_id: UUID
    minutes_to_accept: Optional[int]
    minutes_to_arrive: Optional[int]
    trip_minutes: Optional[int]


@dataclass(frozen=True)
class HubSummary:
    rides_considered: int
    avg_minutes_to_accept: int
    avg_trip_minutes: int
    rejection_counts: Dict[RejectionReason, int]


@dataclass(frozen=True)
class HeatmapPoint:
    lat: float
    lng: float
    count: int


def _minutes_between(start: Optional[datetime], end: Optional[datetime]) -> Optional[float]:
    if start is None or end is None:
        return None
    return (end - start).total_seconds() / 60


def _whole_minutes(start: Optional[datetime], end: Optional[datetime]) -> Optional[int]:
    minutes = _minutes_between(start, end)
    # Truncate toward zero like a "minutes elapsed" counter.
    return None if minutes is None else int(minutes)


def _average(values: List[float]) -> int:
    if not values:
        return 0
    return round(sum(values) / len(values))


# PUBLIC_INTERFACE
def ride_timeline(ride: Ride) -> RideTimeline:
    """Elapsed whole minutes between lifecycle milestones; None where a milestone is missing."""
    return RideTimeline(
        ride_id=ride.id,
        minutes_to_accept=_whole_minutes(ride.requested_at, ride.accepted_at),
        minutes_to_arrive=_whole_minutes(ride.accepted_at, ride.driver_arrived_at),
        trip_minutes=_whole_minutes(ride.started_at, ride.completed_at),
    )


# PUBLIC_INTERFACE
def recent_rejections(db: Session, *, limit: int = 50) -> List[RideRejection]:
    """Newest rejections first."""
    stmt = select(RideRejection).order_by(desc(RideRejection.created_at)).limit(limit)
    return list(db.scalars(stmt).all())


# PUBLIC_INTERFACE
def hub_summary(db: Session, *, window: int = 100, rejection_window: int = 50) -> HubSummary:
    """
    Averages over the `window` most recent rides plus rejection counts per reason
    over the `rejection_window` most recent rejections.
    """
    rides = list(db.scalars(select(Ride).order_by(desc(Ride.created_at)).limit(window)).all())

    accept_minutes = [
        m for m in (_minutes_between(r.requested_at, r.accepted_at) for r in rides) if m is not None
    ]
    trip_minutes = [
        m for m in (_minutes_between(r.started_at, r.completed_at) for r in rides) if m is not None
    ]
    counts = Counter(r.reason for r in recent_rejections(db, limit=rejection_window))

    return HubSummary(
        rides_considered=len(rides),
        avg_minutes_to_accept=_average(accept_minutes),
        avg_trip_minutes=_average(trip_minutes),
        rejection_counts=dict(counts),
    )


# PUBLIC_INTERFACE
def request_heatmap(db: Session, *, limit: int = 50) -> List[HeatmapPoint]:
    """
    Bucket pickup markers on a 0.01-degree grid, densest bucket first.

    Each bucket reports the coordinates of the first marker that landed in it.
    """
    rows = db.execute(select(RideRequestGeo.lat, RideRequestGeo.lng).order_by(RideRequestGeo.created_at)).all()

    buckets: Dict[tuple, List] = {}
    for lat, lng in rows:
        key = (round(lat, 2), round(lng, 2))
        if key not in buckets:
            buckets[key] = [lat, lng, 0]
        buckets[key][2] += 1

    points = [HeatmapPoint(lat=lat, lng=lng, count=count) for lat, lng, count in buckets.values()]
    points.sort(key=lambda p: p.count, reverse=True)
    return points[:limit]
