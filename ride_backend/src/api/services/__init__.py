"""
Ride services - lifecycle, pricing and cancellation policy.

This package handles:
    - Pricing rides (distance fare + time-of-day surge)
    - Creating ride requests
    - Accepting/rejecting rides
    - Arrival, start and completion
    - Cancelling rides and recording penalties
    - Querying rides and their audit history
"""

from .cancellation import compute_cancellation_penalty
from .exceptions import (
    PreconditionFailedError,
    RideNotFoundError,
    RideServiceError,
    RideValidationError,
)
from .pricing import (
    calculate_base_price,
    compute_final_price,
    get_surge_multiplier,
    quote_fare,
)
from .ride_lifecycle import (
    accept_ride,
    cancel_ride,
    complete_ride,
    create_ride,
    driver_arrived,
    get_ride,
    get_ride_history,
    list_available_rides,
    list_rides,
    reject_ride,
    start_ride,
)

__all__ = [
    # Pricing
    "calculate_base_price",
    "compute_final_price",
    "get_surge_multiplier",
    "quote_fare",
    # Cancellation policy
    "compute_cancellation_penalty",
    # Lifecycle operations
    "create_ride",
    "accept_ride",
    "reject_ride",
    "driver_arrived",
    "start_ride",
    "complete_ride",
    "cancel_ride",
    # Queries
    "get_ride",
    "list_rides",
    "list_available_rides",
    "get_ride_history",
    # Exceptions
    "RideServiceError",
    "RideNotFoundError",
    "PreconditionFailedError",
    "RideValidationError",
]
