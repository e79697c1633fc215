"""
Vehicle and request enumerations.

Defines the fixed vocabularies of the allocation engine.
"""

import enum


class VehicleType(str, enum.Enum):
    """Rentable vehicle classes."""
    TWO_WHEELER = "2-wheeler"
    THREE_WHEELER_5_8 = "3-wheeler (5.8)"
    THREE_WHEELER_10 = "3-wheeler (10)"
    FOUR_WHEELER = "4-wheeler"


class VehicleStatus(str, enum.Enum):
    """
    Operational status of a vehicle.
    
    States:
        INACTIVE: Idle, available for allocation (initial state)
        ACTIVE: Currently rented to a driver
        UNDER_REPAIR: Pulled from service because a spare replaced it
    """
    INACTIVE = "INACTIVE"
    ACTIVE = "ACTIVE"
    UNDER_REPAIR = "UNDER_REPAIR"


class VehicleAction(str, enum.Enum):
    """Whether the tracking device lets the vehicle run."""
    ENABLE = "ENABLE"
    DISABLE = "DISABLE"


class RequestType(str, enum.Enum):
    """Kind of vehicle request."""
    PRIMARY = "PRIMARY"  # Main rental for a date range
    SPARE = "SPARE"  # Temporary replacement while the primary is broken


class RequestStatus(str, enum.Enum):
    """Vehicle request status enumeration."""
    PENDING = "PENDING"  # Created by the driver, no vehicle yet
    APPROVED = "APPROVED"  # Manually approved, still awaiting a vehicle
    PROCESSED = "PROCESSED"  # Vehicle allocated
    REJECTED = "REJECTED"  # Denied


class PaymentStatus(str, enum.Enum):
    """Payment result as reported by the payment collaborator."""
    CONFIRMED = "CONFIRMED"
    PENDING = "PENDING"
    FAILED = "FAILED"


# Rental value per period when the operator does not set one
DEFAULT_RENTAL_VALUE = 600.0

# Requests that still wait for a vehicle
ALLOCATABLE_STATUSES = (RequestStatus.PENDING, RequestStatus.APPROVED)

# Vehicle statuses the deactivation routine moves to INACTIVE
DEACTIVATABLE_STATUSES = (VehicleStatus.ACTIVE, VehicleStatus.UNDER_REPAIR)
