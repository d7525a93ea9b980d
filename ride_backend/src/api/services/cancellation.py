"""Cancellation penalty policy."""

from __future__ import annotations

from decimal import Decimal

from src.api.models.ride import CancelledBy, RideStatus

# Rider cancels before any driver committed.
CANCEL_PENALTY_RIDER_EARLY = Decimal("5.00")
# Rider cancels after a driver accepted.
CANCEL_PENALTY_RIDER_LATE = Decimal("15.00")
CANCEL_PENALTY_NONE = Decimal("0.00")


# PUBLIC_INTERFACE
def compute_cancellation_penalty(cancelled_by: CancelledBy | str, current_status: RideStatus | str) -> Decimal:
    """
    Penalty recorded on the cancellation row.

    Drivers and the system never pass a penalty on to the rider. The amount is
    audit-only; charging it is billing's job.
    """
    if CancelledBy(cancelled_by) is not CancelledBy.rider:
        return CANCEL_PENALTY_NONE
    if RideStatus(current_status) is RideStatus.requested:
        return CANCEL_PENALTY_RIDER_EARLY
    return CANCEL_PENALTY_RIDER_LATE
