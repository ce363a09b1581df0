"""
Driver candidates and the candidate-source contract.

A candidate source is the external collaborator that knows where drivers are
and owns the atomic reservation primitive. Production sources live in
drivers.services (database) and realtime.geo (Redis GEO); the in-memory
source here backs tests and single-process setups.
"""

import threading
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Protocol

from common.utils.geo import Point, validate_heading, validate_point, within_radius


@dataclass(frozen=True)
class DriverCandidate:
    """Snapshot of a driver as supplied for one dispatch attempt."""
    driver_id: str
    position: Point
    heading_degrees: float = 0.0
    vehicle_class: str = "standard"
    rating: float = 0.0
    is_available: bool = True

    def __post_init__(self):
        object.__setattr__(self, "driver_id", str(self.driver_id))
        object.__setattr__(self, "position", validate_point(self.position))
        object.__setattr__(self, "heading_degrees", validate_heading(self.heading_degrees))


class CandidateSource(Protocol):
    """What the dispatch engine needs from a driver location/availability service."""

    def search(self, center: Point, radius_km: float, vehicle_class: str) -> List[DriverCandidate]:
        ...

    def reserve(self, driver_id: str, order_id: str) -> bool:
        """Atomically claim a driver for an order; idempotent per order_id."""
        ...


class InMemoryCandidateSource:
    """
    Thread-safe candidate source holding driver snapshots in a dict.

    `reserve` is a compare-and-set under a lock: it succeeds when the driver
    is available and unreserved, or already reserved for the same order.
    """

    def __init__(self, candidates: Iterable[DriverCandidate] = ()):
        self._lock = threading.Lock()
        self._drivers: Dict[str, DriverCandidate] = {}
        self._reservations: Dict[str, str] = {}
        self.search_calls: List[tuple] = []
        for candidate in candidates:
            self.upsert(candidate)

    def upsert(self, candidate: DriverCandidate) -> None:
        with self._lock:
            self._drivers[candidate.driver_id] = candidate

    def remove(self, driver_id: str) -> None:
        with self._lock:
            self._drivers.pop(str(driver_id), None)
            self._reservations.pop(str(driver_id), None)

    def search(self, center: Point, radius_km: float, vehicle_class: str) -> List[DriverCandidate]:
        with self._lock:
            self.search_calls.append((tuple(center), radius_km, vehicle_class))
            drivers = list(self._drivers.values())
            reserved = set(self._reservations)
        return [
            d for d in drivers
            if d.is_available
            and d.driver_id not in reserved
            and d.vehicle_class == vehicle_class
            and within_radius(center, d.position, radius_km)
        ]

    def reserve(self, driver_id: str, order_id: str) -> bool:
        driver_id = str(driver_id)
        with self._lock:
            driver = self._drivers.get(driver_id)
            if driver is None or not driver.is_available:
                return False
            holder = self._reservations.get(driver_id)
            if holder is not None:
                return holder == order_id
            self._reservations[driver_id] = order_id
            return True

    def release(self, driver_id: str, order_id: str) -> bool:
        driver_id = str(driver_id)
        with self._lock:
            if self._reservations.get(driver_id) != order_id:
                return False
            del self._reservations[driver_id]
            return True

    def reserved_by(self, driver_id: str) -> Optional[str]:
        with self._lock:
            return self._reservations.get(str(driver_id))
