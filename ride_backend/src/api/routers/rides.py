from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator, List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from src.api.clock import Clock
from src.api.db import get_db
from src.api.deps import get_clock, get_current_user_id, get_geo_sink
from src.api.models.ride import Ride, RideStatus
from src.api.schemas.ride import (
    CancellationPublic,
    FareQuotePublic,
    FareQuoteRequest,
    RejectionPublic,
    RideCancelRequest,
    RideCreateRequest,
    RideHistoryResponse,
    RidePublic,
    RideRejectRequest,
    RideTimelinePublic,
)
from src.api.services import analytics, ride_lifecycle
from src.api.services.exceptions import PreconditionFailedError, RideNotFoundError, RideValidationError
from src.api.services.geo_markers import GeoMarkerSink
from src.api.services.pricing import quote_fare

router = APIRouter(prefix="/rides", tags=["rides"])


def _to_public(ride: Ride) -> RidePublic:
    """Convert ORM Ride row to public schema."""
    return RidePublic.model_validate(ride)


@contextmanager
def _service_errors() -> Iterator[None]:
    """Translate ride service errors into HTTP errors."""
    try:
        yield
    except RideNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    except PreconditionFailedError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    except RideValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc))


@router.post(
    "/quote",
    response_model=FareQuotePublic,
    summary="Quote a fare",
    description="Estimate the fare for a prospective ride at the current surge level. Nothing is persisted.",
    operation_id="rides_quote",
)
def quote(payload: FareQuoteRequest, clock: Clock = Depends(get_clock)) -> FareQuotePublic:
    """Return distance, base price, surge and estimated price."""
    q = quote_fare(payload.pickup_lat, payload.pickup_lng, payload.dropoff_lat, payload.dropoff_lng, clock=clock)
    return FareQuotePublic(
        distance_km=q.distance_km,
        base_price=q.base_price,
        surge_multiplier=q.surge_multiplier,
        estimated_price=q.estimated_price,
        is_peak=q.is_peak,
    )


@router.post(
    "",
    response_model=RidePublic,
    status_code=status.HTTP_201_CREATED,
    summary="Request a ride",
    description="Rider creates a new ride request (status=requested). The caller is the rider.",
    operation_id="rides_create",
)
def create_ride(
    payload: RideCreateRequest,
    db: Session = Depends(get_db),
    rider_id: UUID = Depends(get_current_user_id),
    clock: Clock = Depends(get_clock),
    geo_sink: GeoMarkerSink = Depends(get_geo_sink),
) -> RidePublic:
    """
    Create a new ride request.

    Pricing:
    - base_price from pickup/dropoff distance
    - surge_multiplier from the current local hour/weekday
    """
    with _service_errors():
        ride = ride_lifecycle.create_ride(db, payload, rider_id, clock=clock, geo_sink=geo_sink)
    return _to_public(ride)


@router.get(
    "",
    response_model=List[RidePublic],
    summary="List rides for current user",
    description="List rides by role (rider or driver) with optional status filter and pagination.",
    operation_id="rides_list",
)
def list_rides(
    role: str = Query(..., pattern="^(rider|driver)$", description="List rides for current user as rider or driver."),
    status_filter: Optional[RideStatus] = Query(default=None, alias="status", description="Optional ride status filter."),
    limit: int = Query(default=50, ge=1, le=200, description="Max rides to return."),
    offset: int = Query(default=0, ge=0, description="Offset for pagination."),
    db: Session = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
) -> List[RidePublic]:
    """List the caller's rides, newest first."""
    with _service_errors():
        rides = ride_lifecycle.list_rides(
            db, role=role, user_id=user_id, status=status_filter, limit=limit, offset=offset
        )
    return [_to_public(r) for r in rides]


@router.get(
    "/available",
    response_model=List[RidePublic],
    summary="List rides awaiting a driver",
    description="Rides in status=requested, newest first. Used by the driver view.",
    operation_id="rides_list_available",
)
def list_available_rides(
    limit: int = Query(default=50, ge=1, le=200, description="Max rides to return."),
    offset: int = Query(default=0, ge=0, description="Offset for pagination."),
    db: Session = Depends(get_db),
) -> List[RidePublic]:
    """List open ride requests."""
    return [_to_public(r) for r in ride_lifecycle.list_available_rides(db, limit=limit, offset=offset)]


@router.get(
    "/{ride_id}",
    response_model=RidePublic,
    summary="Get ride by id",
    description="Return ride details.",
    operation_id="rides_get_by_id",
)
def get_ride(ride_id: UUID, db: Session = Depends(get_db)) -> RidePublic:
    """Get ride details."""
    with _service_errors():
        ride = ride_lifecycle.get_ride(db, ride_id)
    return _to_public(ride)


@router.get(
    "/{ride_id}/history",
    response_model=RideHistoryResponse,
    summary="Get ride audit history",
    description="Return rejection and cancellation records for a ride (oldest to newest).",
    operation_id="rides_get_history",
)
def get_ride_history(ride_id: UUID, db: Session = Depends(get_db)) -> RideHistoryResponse:
    """Get ride audit records."""
    with _service_errors():
        history = ride_lifecycle.get_ride_history(db, ride_id)
    return RideHistoryResponse(
        ride_id=history.ride_id,
        rejections=[RejectionPublic.model_validate(r) for r in history.rejections],
        cancellations=[CancellationPublic.model_validate(c) for c in history.cancellations],
    )


@router.get(
    "/{ride_id}/timeline",
    response_model=RideTimelinePublic,
    summary="Get ride time analytics",
    description="Minutes from request to acceptance, acceptance to arrival, and trip duration.",
    operation_id="rides_get_timeline",
)
def get_ride_timeline(ride_id: UUID, db: Session = Depends(get_db)) -> RideTimelinePublic:
    """Get elapsed minutes between lifecycle milestones."""
    with _service_errors():
        ride = ride_lifecycle.get_ride(db, ride_id)
    t = analytics.ride_timeline(ride)
    return RideTimelinePublic(
        ride_id=t.ride_id,
        minutes_to_accept=t.minutes_to_accept,
        minutes_to_arrive=t.minutes_to_arrive,
        trip_minutes=t.trip_minutes,
    )


@router.post(
    "/{ride_id}/accept",
    response_model=RidePublic,
    summary="Accept a ride",
    description="Driver accepts a requested ride; the final price is frozen. The caller is the driver.",
    operation_id="rides_accept",
)
def accept_ride(
    ride_id: UUID,
    db: Session = Depends(get_db),
    driver_id: UUID = Depends(get_current_user_id),
    clock: Clock = Depends(get_clock),
) -> RidePublic:
    """
    Accept a ride.

    Rules:
    - Ride must be in status=requested; otherwise 409.
    - When two drivers race, exactly one succeeds.
    """
    with _service_errors():
        ride = ride_lifecycle.accept_ride(db, ride_id, driver_id, clock=clock)
    return _to_public(ride)


@router.post(
    "/{ride_id}/reject",
    response_model=RidePublic,
    summary="Reject a ride",
    description="Driver declines a requested ride with a reason. The ride becomes rejected.",
    operation_id="rides_reject",
)
def reject_ride(
    ride_id: UUID,
    payload: RideRejectRequest,
    db: Session = Depends(get_db),
    driver_id: UUID = Depends(get_current_user_id),
    clock: Clock = Depends(get_clock),
) -> RidePublic:
    """Reject a ride and record the reason."""
    with _service_errors():
        ride = ride_lifecycle.reject_ride(db, ride_id, driver_id, payload.reason, payload.notes, clock=clock)
    return _to_public(ride)


@router.post(
    "/{ride_id}/arrived",
    response_model=RidePublic,
    summary="Mark driver arrived",
    description="Driver reached the pickup point (accepted -> driver_arrived).",
    operation_id="rides_driver_arrived",
)
def driver_arrived(ride_id: UUID, db: Session = Depends(get_db), clock: Clock = Depends(get_clock)) -> RidePublic:
    """Mark the driver as arrived."""
    with _service_errors():
        ride = ride_lifecycle.driver_arrived(db, ride_id, clock=clock)
    return _to_public(ride)


@router.post(
    "/{ride_id}/start",
    response_model=RidePublic,
    summary="Start a ride",
    description="Rider picked up (driver_arrived -> in_progress).",
    operation_id="rides_start",
)
def start_ride(ride_id: UUID, db: Session = Depends(get_db), clock: Clock = Depends(get_clock)) -> RidePublic:
    """Start the trip."""
    with _service_errors():
        ride = ride_lifecycle.start_ride(db, ride_id, clock=clock)
    return _to_public(ride)


@router.post(
    "/{ride_id}/complete",
    response_model=RidePublic,
    summary="Complete a ride",
    description="Trip finished (in_progress -> completed).",
    operation_id="rides_complete",
)
def complete_ride(ride_id: UUID, db: Session = Depends(get_db), clock: Clock = Depends(get_clock)) -> RidePublic:
    """Complete the trip."""
    with _service_errors():
        ride = ride_lifecycle.complete_ride(db, ride_id, clock=clock)
    return _to_public(ride)


@router.post(
    "/{ride_id}/cancel",
    response_model=RidePublic,
    summary="Cancel a ride",
    description="Cancel a non-terminal ride. Rider cancellations record a penalty (5 early, 15 after acceptance).",
    operation_id="rides_cancel",
)
def cancel_ride(
    ride_id: UUID,
    payload: RideCancelRequest,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> RidePublic:
    """Cancel a ride and record the cancellation."""
    with _service_errors():
        ride = ride_lifecycle.cancel_ride(db, ride_id, payload.cancelled_by, clock=clock)
    return _to_public(ride)
