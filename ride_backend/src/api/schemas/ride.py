from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from src.api.models.ride import CancelledBy, RejectionReason, RideStatus


def _reject_bool(value):
    # bool is an int subclass and would otherwise coerce to 0.0 / 1.0.
    if isinstance(value, bool):
        raise ValueError("Coordinates must be numbers, not booleans.")
    return value


class RideCreateRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    # Coordinates are intentionally not range-checked.
    pickup_lat: float = Field(..., allow_inf_nan=False, description="Pickup latitude in degrees.")
    pickup_lng: float = Field(..., allow_inf_nan=False, description="Pickup longitude in degrees.")
    pickup_address: str = Field(..., min_length=1, max_length=500, description="Pickup address label.")
    dropoff_lat: float = Field(..., allow_inf_nan=False, description="Dropoff latitude in degrees.")
    dropoff_lng: float = Field(..., allow_inf_nan=False, description="Dropoff longitude in degrees.")
    dropoff_address: str = Field(..., min_length=1, max_length=500, description="Dropoff address label.")

    @field_validator("pickup_lat", "pickup_lng", "dropoff_lat", "dropoff_lng", mode="before")
    @classmethod
    def reject_bool_coordinates(cls, value):
        return _reject_bool(value)


class FareQuoteRequest(BaseModel):
    pickup_lat: float = Field(..., allow_inf_nan=False, description="Pickup latitude in degrees.")
    pickup_lng: float = Field(..., allow_inf_nan=False, description="Pickup longitude in degrees.")
    dropoff_lat: float = Field(..., allow_inf_nan=False, description="Dropoff latitude in degrees.")
    dropoff_lng: float = Field(..., allow_inf_nan=False, description="Dropoff longitude in degrees.")

    @field_validator("pickup_lat", "pickup_lng", "dropoff_lat", "dropoff_lng", mode="before")
    @classmethod
    def reject_bool_coordinates(cls, value):
        return _reject_bool(value)


class FareQuotePublic(BaseModel):
    distance_km: float = Field(..., description="Great-circle distance in km.")
    base_price: Decimal = Field(..., description="Distance-derived fare before surge.")
    surge_multiplier: Decimal = Field(..., description="Current time-of-day surge multiplier.")
    estimated_price: Decimal = Field(..., description="base_price * surge_multiplier, rounded to cents.")
    is_peak: bool = Field(..., description="True when a surge applies.")


class RideRejectRequest(BaseModel):
    reason: RejectionReason = Field(
        ...,
        description="Rejection reason. Allowed: traffic, too_far, vehicle_issue, personal, other.",
    )
    notes: Optional[str] = Field(default=None, max_length=1000, description="Optional free-text notes.")


class RideCancelRequest(BaseModel):
    cancelled_by: CancelledBy = Field(..., description="Cancelling party: rider, driver or system.")


class RidePublic(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID = Field(..., description="Ride id.")
    rider_id: UUID = Field(..., description="Rider who requested the ride.")
    driver_id: Optional[UUID] = Field(default=None, description="Accepting driver (null until accepted).")

    pickup_lat: float = Field(..., description="Pickup latitude.")
    pickup_lng: float = Field(..., description="Pickup longitude.")
    pickup_address: str = Field(..., description="Pickup address label.")
    dropoff_lat: float = Field(..., description="Dropoff latitude.")
    dropoff_lng: float = Field(..., description="Dropoff longitude.")
    dropoff_address: str = Field(..., description="Dropoff address label.")

    base_price: Decimal = Field(..., description="Distance-derived fare before surge.")
    surge_multiplier: Decimal = Field(..., description="Surge multiplier captured at request time.")
    final_price: Optional[Decimal] = Field(default=None, description="Fare frozen at acceptance (nullable).")

    status: RideStatus = Field(..., description="Current ride status.")

    requested_at: datetime = Field(..., description="When the ride was requested.")
    accepted_at: Optional[datetime] = Field(default=None, description="When a driver accepted.")
    driver_arrived_at: Optional[datetime] = Field(default=None, description="When the driver reached pickup.")
    started_at: Optional[datetime] = Field(default=None, description="When the trip started.")
    completed_at: Optional[datetime] = Field(default=None, description="When the trip completed.")
    cancelled_at: Optional[datetime] = Field(default=None, description="When the ride was cancelled.")
    updated_at: datetime = Field(..., description="When the ride was last updated.")


class RejectionPublic(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID = Field(..., description="Rejection id.")
    ride_id: UUID = Field(..., description="Ride id.")
    driver_id: UUID = Field(..., description="Driver who declined.")
    reason: RejectionReason = Field(..., description="Rejection reason.")
    notes: Optional[str] = Field(default=None, description="Free-text notes.")
    created_at: datetime = Field(..., description="When the rejection was recorded.")


class CancellationPublic(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID = Field(..., description="Cancellation id.")
    ride_id: UUID = Field(..., description="Ride id.")
    cancelled_by: CancelledBy = Field(..., description="Cancelling party.")
    penalty_applied: Decimal = Field(..., description="Informational penalty amount.")
    created_at: datetime = Field(..., description="When the cancellation was recorded.")


class RideHistoryResponse(BaseModel):
    ride_id: UUID = Field(..., description="Ride id.")
    rejections: List[RejectionPublic] = Field(..., description="Driver rejections (oldest -> newest).")
    cancellations: List[CancellationPublic] = Field(..., description="Cancellation records (at most one).")


class RideTimelinePublic(BaseModel):
    ride_id: UUID = Field(..., description="Ride id.")
    minutes_to_accept: Optional[int] = Field(default=None, description="Requested -> accepted, whole minutes.")
    minutes_to_arrive: Optional[int] = Field(default=None, description="Accepted -> driver arrived, whole minutes.")
    trip_minutes: Optional[int] = Field(default=None, description="Started -> completed, whole minutes.")


class HubSummaryPublic(BaseModel):
    rides_considered: int = Field(..., description="Number of recent rides the averages were taken over.")
    avg_minutes_to_accept: int = Field(..., description="Average requested -> accepted time, rounded.")
    avg_trip_minutes: int = Field(..., description="Average started -> completed time, rounded.")
    rejection_counts: Dict[RejectionReason, int] = Field(..., description="Rejection count per reason.")


class HeatmapPointPublic(BaseModel):
    lat: float = Field(..., description="Latitude of the first marker in the bucket.")
    lng: float = Field(..., description="Longitude of the first marker in the bucket.")
    count: int = Field(..., description="Number of requests in the bucket.")
