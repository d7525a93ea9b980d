from __future__ import annotations

import enum
import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import DateTime, Enum, Float, ForeignKey, Index, Numeric, Text, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column

from src.api.models.base import Base


class RideStatus(str, enum.Enum):
    """
    Ride status values matching the Postgres enum `ride_status`.

    Flow: requested -> accepted -> driver_arrived -> in_progress -> completed.
    Terminal branches: rejected (from requested) and cancelled (from any
    non-terminal status).
    """

    requested = "requested"
    accepted = "accepted"
    driver_arrived = "driver_arrived"
    in_progress = "in_progress"
    completed = "completed"
    cancelled = "cancelled"
    rejected = "rejected"


TERMINAL_STATUSES = frozenset({RideStatus.completed, RideStatus.cancelled, RideStatus.rejected})
ACTIVE_STATUSES = frozenset(set(RideStatus) - TERMINAL_STATUSES)


class RejectionReason(str, enum.Enum):
    """Reasons a driver may give when declining a requested ride."""

    traffic = "traffic"
    too_far = "too_far"
    vehicle_issue = "vehicle_issue"
    personal = "personal"
    other = "other"


class CancelledBy(str, enum.Enum):
    """Party that cancelled a ride."""

    rider = "rider"
    driver = "driver"
    system = "system"


class Ride(Base):
    """
    ORM model for the `rides` table.

    `status` is the single source of truth; the lifecycle timestamps are
    written as a side effect of transitions and never reset.
    """

    __tablename__ = "rides"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    rider_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    driver_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True, index=True)

    pickup_lat: Mapped[float] = mapped_column(Float, nullable=False)
    pickup_lng: Mapped[float] = mapped_column(Float, nullable=False)
    pickup_address: Mapped[str] = mapped_column(Text, nullable=False)
    dropoff_lat: Mapped[float] = mapped_column(Float, nullable=False)
    dropoff_lng: Mapped[float] = mapped_column(Float, nullable=False)
    dropoff_address: Mapped[str] = mapped_column(Text, nullable=False)

    base_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    surge_multiplier: Mapped[Decimal] = mapped_column(Numeric(4, 2), nullable=False, server_default="1.00")
    # Frozen at acceptance.
    final_price: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)

    status: Mapped[RideStatus] = mapped_column(
        Enum(RideStatus, name="ride_status"),
        nullable=False,
        server_default=RideStatus.requested.value,
        index=True,
    )

    requested_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    accepted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    driver_arrived_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        index=True,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )


class RideRejection(Base):
    """
    ORM model for `ride_rejections`: one row per driver decline.

    Append-only; rows are never updated or deleted.
    """

    __tablename__ = "ride_rejections"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    ride_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("rides.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    driver_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    reason: Mapped[RejectionReason] = mapped_column(
        Enum(RejectionReason, name="rejection_reason"),
        nullable=False,
        index=True,
    )
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        index=True,
    )


class RideCancellation(Base):
    """
    ORM model for `ride_cancellations`.

    `penalty_applied` is informational; settlement is handled by billing.
    """

    __tablename__ = "ride_cancellations"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    ride_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("rides.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    cancelled_by: Mapped[CancelledBy] = mapped_column(Enum(CancelledBy, name="cancelled_by"), nullable=False)
    penalty_applied: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, server_default="0")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )


class RideRequestGeo(Base):
    """Pickup marker written best-effort on ride creation; feeds the hub heatmap."""

    __tablename__ = "ride_requests_geo"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    ride_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("rides.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    lat: Mapped[float] = mapped_column(Float, nullable=False)
    lng: Mapped[float] = mapped_column(Float, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )


# Extra composite indexes to support common list queries efficiently.
Index("idx_rides_rider_created_at", Ride.rider_id, Ride.created_at.desc())
Index("idx_rides_driver_created_at", Ride.driver_id, Ride.created_at.desc())
Index("idx_rides_status_created_at", Ride.status, Ride.created_at.desc())
