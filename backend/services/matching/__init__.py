"""
Driver matching and dispatch service.

This module handles:
    - Mapping service tiers to compatible vehicle classes
    - Ranking available drivers around a pickup point
    - Reserving and assigning the best driver, widening the search radius
      step by step when nobody can be reserved
"""

from .candidates import CandidateSource, DriverCandidate, InMemoryCandidateSource
from .dispatch_engine import (
    DispatchAttempt,
    DispatchEngine,
    DispatchOutcome,
    DISPATCHABLE_STATUSES,
    rank_candidates,
    search_radii,
)
from .vehicle_classes import compatible_vehicle_classes
from .exceptions import (
    DispatchError,
    InvalidOrderStatusError,
    NoCompatibleVehicleClassError,
    SearchExhaustedError,
)

__all__ = [
    "CandidateSource",
    "DriverCandidate",
    "InMemoryCandidateSource",
    "DispatchAttempt",
    "DispatchEngine",
    "DispatchOutcome",
    "DISPATCHABLE_STATUSES",
    "rank_candidates",
    "search_radii",
    "compatible_vehicle_classes",
    # Exceptions
    "DispatchError",
    "InvalidOrderStatusError",
    "NoCompatibleVehicleClassError",
    "SearchExhaustedError",
]
