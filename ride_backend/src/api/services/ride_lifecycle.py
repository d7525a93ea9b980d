"""
Core ride lifecycle operations.

Every transition re-reads the ride, checks the status it is allowed to start
from, and writes with a conditional UPDATE (`... WHERE status IN (sources)`).
When the conditional write touches no rows another writer got there first and
the call fails with PreconditionFailedError; there are no internal retries.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union
from uuid import UUID

from pydantic import ValidationError
from sqlalchemy import desc, select, update
from sqlalchemy.orm import Session

from src.api.clock import Clock, system_clock
from src.api.models.ride import (
    ACTIVE_STATUSES,
    CancelledBy,
    RejectionReason,
    Ride,
    RideCancellation,
    RideRejection,
    RideStatus,
)
from src.api.schemas.ride import RideCreateRequest
from src.api.services.cancellation import compute_cancellation_penalty
from src.api.services.exceptions import (
    PreconditionFailedError,
    RideNotFoundError,
    RideValidationError,
)
from src.api.services.geo_markers import GeoMarkerSink, NullGeoMarkerSink
from src.api.services.pricing import (
    calculate_base_price,
    compute_final_price,
    get_surge_multiplier,
    local_time,
)

logger = logging.getLogger(__name__)


@dataclass
class RideHistory:
    """Audit rows attached to a ride."""
    ride_id: UUID
    rejections: List[RideRejection]
    cancellations: List[RideCancellation]


# ===================== Helpers =====================

def _coerce_uuid(value: Any, field: str) -> UUID:
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except (TypeError, ValueError):
        raise RideValidationError(f"Invalid {field}: {value!r}.")


def _coerce_enum(enum_cls, value: Any, field: str):
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise RideValidationError(f"Invalid {field}: {value!r}. Allowed: {allowed}.")


def _load_ride(db: Session, ride_id: Union[UUID, str]) -> Ride:
    if not isinstance(ride_id, UUID):
        try:
            ride_id = UUID(str(ride_id))
        except ValueError:
            raise RideNotFoundError(f"Ride {ride_id!r} not found.")
    ride = db.scalar(select(Ride).where(Ride.id == ride_id))
    if ride is None:
        raise RideNotFoundError(f"Ride {ride_id} not found.")
    return ride


def _require_status(ride: Ride, sources: Iterable[RideStatus], action: str) -> None:
    """Fail without writing when the ride's status does not permit `action`."""
    sources = frozenset(sources)
    if ride.status not in sources:
        allowed = ", ".join(sorted(s.value for s in sources))
        logger.warning(
            "Refusing to %s ride %s: status is %s (requires %s)", action, ride.id, ride.status.value, allowed
        )
        raise PreconditionFailedError(
            f"Cannot {action} ride in status '{ride.status.value}' (requires: {allowed}).",
            current_status=ride.status,
        )


def _apply_transition(
    db: Session,
    ride: Ride,
    *,
    sources: Iterable[RideStatus],
    values: Dict[str, Any],
    action: str,
    audit_rows: Iterable[Any] = (),
) -> Ride:
    """
    Conditionally update the ride and insert audit rows in one transaction.

    Raises PreconditionFailedError when the ride no longer matches `sources`.
    """
    sources = frozenset(sources)
    ride_id = ride.id
    result = db.execute(
        update(Ride)
        .where(Ride.id == ride_id, Ride.status.in_(list(sources)))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        db.rollback()
        logger.warning("Lost race to %s ride %s: status changed concurrently", action, ride_id)
        raise PreconditionFailedError(f"Cannot {action} ride {ride_id}: it was modified concurrently.")

    for row in audit_rows:
        db.add(row)
    db.commit()
    db.refresh(ride)
    logger.info("Ride %s: %s -> %s", ride.id, action, ride.status.value)
    return ride


# ===================== Rider Operations =====================

# PUBLIC_INTERFACE
def create_ride(
    db: Session,
    payload: Union[RideCreateRequest, Mapping[str, Any]],
    rider_id: Union[UUID, str],
    *,
    clock: Optional[Clock] = None,
    geo_sink: Optional[GeoMarkerSink] = None,
) -> Ride:
    """
    Price and persist a new ride in status `requested`.

    Args:
        db: SQLAlchemy session
        payload: pickup/dropoff coordinates and address labels
        rider_id: requesting rider
        clock: "now" source for surge pricing and timestamps
        geo_sink: receives the pickup marker once the ride is committed

    Returns:
        The persisted Ride

    Raises:
        RideValidationError: if the payload is malformed (nothing is written)
    """
    clock = clock or system_clock
    geo_sink = geo_sink or NullGeoMarkerSink()

    if not isinstance(payload, RideCreateRequest):
        try:
            payload = RideCreateRequest.model_validate(payload)
        except ValidationError as exc:
            raise RideValidationError("Invalid ride request.", errors=exc.errors()) from exc
    rider_id = _coerce_uuid(rider_id, "rider_id")

    now = clock.now()
    ride = Ride(
        rider_id=rider_id,
        driver_id=None,
        pickup_lat=payload.pickup_lat,
        pickup_lng=payload.pickup_lng,
        pickup_address=payload.pickup_address,
        dropoff_lat=payload.dropoff_lat,
        dropoff_lng=payload.dropoff_lng,
        dropoff_address=payload.dropoff_address,
        base_price=calculate_base_price(
            payload.pickup_lat, payload.pickup_lng, payload.dropoff_lat, payload.dropoff_lng
        ),
        surge_multiplier=get_surge_multiplier(local_time(now)),
        final_price=None,
        status=RideStatus.requested,
        requested_at=now,
        created_at=now,
        updated_at=now,
    )
    db.add(ride)
    db.commit()
    db.refresh(ride)
    logger.info(
        "Ride %s requested by rider %s (base=%s, surge=%s)", ride.id, rider_id, ride.base_price, ride.surge_multiplier
    )

    try:
        geo_sink.publish(ride.id, payload.pickup_lat, payload.pickup_lng)
    except Exception:
        logger.exception("Failed to publish geo marker for ride %s", ride.id)

    return ride


# ===================== Driver Operations =====================

# PUBLIC_INTERFACE
def accept_ride(
    db: Session,
    ride_id: Union[UUID, str],
    driver_id: Union[UUID, str],
    *,
    clock: Optional[Clock] = None,
) -> Ride:
    """
    Assign the driver and freeze the final price.

    Raises:
        RideNotFoundError: unknown ride
        PreconditionFailedError: ride is not `requested` (or was taken concurrently)
    """
    clock = clock or system_clock
    driver_id = _coerce_uuid(driver_id, "driver_id")
    ride = _load_ride(db, ride_id)
    sources = {RideStatus.requested}
    _require_status(ride, sources, "accept")

    now = clock.now()
    return _apply_transition(
        db,
        ride,
        sources=sources,
        action="accept",
        values={
            "driver_id": driver_id,
            "status": RideStatus.accepted,
            "accepted_at": now,
            "final_price": compute_final_price(ride.base_price, ride.surge_multiplier),
            "updated_at": now,
        },
    )


# PUBLIC_INTERFACE
def reject_ride(
    db: Session,
    ride_id: Union[UUID, str],
    driver_id: Union[UUID, str],
    reason: Union[RejectionReason, str],
    notes: Optional[str] = None,
    *,
    clock: Optional[Clock] = None,
) -> Ride:
    """
    Record a driver's rejection and move the ride to terminal `rejected`.

    The ride is not returned to the pool for other drivers.
    """
    clock = clock or system_clock
    driver_id = _coerce_uuid(driver_id, "driver_id")
    reason = _coerce_enum(RejectionReason, reason, "reason")
    ride = _load_ride(db, ride_id)
    sources = {RideStatus.requested}
    _require_status(ride, sources, "reject")

    now = clock.now()
    rejection = RideRejection(
        ride_id=ride.id,
        driver_id=driver_id,
        reason=reason,
        notes=notes or None,
        created_at=now,
    )
    return _apply_transition(
        db,
        ride,
        sources=sources,
        action="reject",
        values={"status": RideStatus.rejected, "updated_at": now},
        audit_rows=[rejection],
    )


# PUBLIC_INTERFACE
def driver_arrived(db: Session, ride_id: Union[UUID, str], *, clock: Optional[Clock] = None) -> Ride:
    """Mark the driver as arrived at pickup (accepted -> driver_arrived)."""
    clock = clock or system_clock
    ride = _load_ride(db, ride_id)
    sources = {RideStatus.accepted}
    _require_status(ride, sources, "mark arrival for")

    now = clock.now()
    return _apply_transition(
        db,
        ride,
        sources=sources,
        action="mark arrival for",
        values={"status": RideStatus.driver_arrived, "driver_arrived_at": now, "updated_at": now},
    )


# PUBLIC_INTERFACE
def start_ride(db: Session, ride_id: Union[UUID, str], *, clock: Optional[Clock] = None) -> Ride:
    """Start the trip (driver_arrived -> in_progress)."""
    clock = clock or system_clock
    ride = _load_ride(db, ride_id)
    sources = {RideStatus.driver_arrived}
    _require_status(ride, sources, "start")

    now = clock.now()
    return _apply_transition(
        db,
        ride,
        sources=sources,
        action="start",
        values={"status": RideStatus.in_progress, "started_at": now, "updated_at": now},
    )


# PUBLIC_INTERFACE
def complete_ride(db: Session, ride_id: Union[UUID, str], *, clock: Optional[Clock] = None) -> Ride:
    """Complete the trip (in_progress -> completed). Not idempotent."""
    clock = clock or system_clock
    ride = _load_ride(db, ride_id)
    sources = {RideStatus.in_progress}
    _require_status(ride, sources, "complete")

    now = clock.now()
    return _apply_transition(
        db,
        ride,
        sources=sources,
        action="complete",
        values={"status": RideStatus.completed, "completed_at": now, "updated_at": now},
    )


# ===================== Shared Operations =====================

# PUBLIC_INTERFACE
def cancel_ride(
    db: Session,
    ride_id: Union[UUID, str],
    cancelled_by: Union[CancelledBy, str],
    *,
    clock: Optional[Clock] = None,
) -> Ride:
    """
    Cancel a ride from any non-terminal status.

    The penalty is computed from the status the ride had when it was read and
    recorded on a RideCancellation row in the same transaction.

    Raises:
        RideValidationError: unknown cancelling party
        RideNotFoundError: unknown ride
        PreconditionFailedError: ride already completed, cancelled or rejected
    """
    clock = clock or system_clock
    cancelled_by = _coerce_enum(CancelledBy, cancelled_by, "cancelled_by")
    ride = _load_ride(db, ride_id)
    _require_status(ride, ACTIVE_STATUSES, "cancel")

    now = clock.now()
    # Only the status that was actually read is accepted by the conditional
    # write, so the penalty always matches the status it was computed from.
    sources = {ride.status}
    cancellation = RideCancellation(
        ride_id=ride.id,
        cancelled_by=cancelled_by,
        penalty_applied=compute_cancellation_penalty(cancelled_by, ride.status),
        created_at=now,
    )
    return _apply_transition(
        db,
        ride,
        sources=sources,
        action="cancel",
        values={"status": RideStatus.cancelled, "cancelled_at": now, "updated_at": now},
        audit_rows=[cancellation],
    )


# ===================== Queries =====================

# PUBLIC_INTERFACE
def get_ride(db: Session, ride_id: Union[UUID, str]) -> Ride:
    """Return the ride or raise RideNotFoundError."""
    return _load_ride(db, ride_id)


# PUBLIC_INTERFACE
def list_rides(
    db: Session,
    *,
    role: str,
    user_id: Union[UUID, str],
    status: Optional[Union[RideStatus, str]] = None,
    limit: int = 50,
    offset: int = 0,
) -> List[Ride]:
    """List a rider's or driver's rides, newest first."""
    user_id = _coerce_uuid(user_id, "user_id")
    if role == "rider":
        stmt = select(Ride).where(Ride.rider_id == user_id)
    elif role == "driver":
        stmt = select(Ride).where(Ride.driver_id == user_id)
    else:
        raise RideValidationError(f"Invalid role: {role!r}. Allowed: rider, driver.")

    if status is not None:
        stmt = stmt.where(Ride.status == _coerce_enum(RideStatus, status, "status"))

    stmt = stmt.order_by(desc(Ride.created_at)).limit(limit).offset(offset)
    return list(db.scalars(stmt).all())


# PUBLIC_INTERFACE
def list_available_rides(db: Session, *, limit: int = 50, offset: int = 0) -> List[Ride]:
    """Rides waiting for a driver (status `requested`), newest first."""
    stmt = (
        select(Ride)
        .where(Ride.status == RideStatus.requested)
        .order_by(desc(Ride.created_at))
        .limit(limit)
        .offset(offset)
    )
    return list(db.scalars(stmt).all())


# PUBLIC_INTERFACE
def get_ride_history(db: Session, ride_id: Union[UUID, str]) -> RideHistory:
    """Rejection and cancellation rows for a ride, oldest first."""
    ride = _load_ride(db, ride_id)
    rejections = db.scalars(
        select(RideRejection).where(RideRejection.ride_id == ride.id).order_by(RideRejection.created_at.asc())
    ).all()
    cancellations = db.scalars(
        select(RideCancellation)
        .where(RideCancellation.ride_id == ride.id)
        .order_by(RideCancellation.created_at.asc())
    ).all()
    return RideHistory(ride_id=ride.id, rejections=list(rejections), cancellations=list(cancellations))
