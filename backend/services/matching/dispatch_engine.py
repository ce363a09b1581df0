"""
Driver dispatch with radius expansion.

Search pattern (concentric rings around the pickup point):
1. Query the candidate source at the current radius for every vehicle class
   the order's tier accepts
2. Rank compatible, available drivers by distance, then by rating
3. Reserve the best one atomically through the source; on refusal try the
   next-ranked driver
4. If nobody could be reserved, widen the radius by one step and repeat,
   never beyond max_radius_km
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from common.utils.geo import distance_km
from services.order_lifecycle.events import publish_safely
from services.order_lifecycle.models import Order, OrderStatus

from .candidates import DriverCandidate
from .exceptions import InvalidOrderStatusError, SearchExhaustedError
from .vehicle_classes import compatible_vehicle_classes

logger = logging.getLogger(__name__)


DISPATCHABLE_STATUSES = frozenset({OrderStatus.PENDING, OrderStatus.CONFIRMED})

# Tolerance when comparing accumulated float radii against the cap
_RADIUS_EPSILON = 1e-9


class DispatchOutcome(str, Enum):
    MATCHED = "matched"
    EXHAUSTED = "exhausted"


@dataclass(frozen=True)
class DispatchAttempt:
    """Result of one dispatch call (one or more radius rounds)."""
    order_id: str
    radius_km: float
    candidate_count: int
    outcome: DispatchOutcome
    elapsed_seconds: float
    attempt_count: int = 1
    radii_km: Tuple[float, ...] = field(default_factory=tuple)
    driver_id: Optional[str] = None
    reservation_failures: int = 0

    @property
    def matched(self) -> bool:
        return self.outcome is DispatchOutcome.MATCHED

    def raise_for_outcome(self) -> "DispatchAttempt":
        """Raise SearchExhaustedError for an exhausted attempt, else return self."""
        if self.outcome is DispatchOutcome.EXHAUSTED:
            raise SearchExhaustedError(
                f"No driver found for order {self.order_id} within {self.radius_km:g} km",
                attempt=self,
            )
        return self

    def as_dict(self) -> Dict[str, Any]:
        return {
            "order_id": self.order_id,
            "radius_km": self.radius_km,
            "candidate_count": self.candidate_count,
            "outcome": self.outcome.value,
            "elapsed_seconds": round(self.elapsed_seconds, 4),
            "attempt_count": self.attempt_count,
            "radii_km": list(self.radii_km),
            "driver_id": self.driver_id,
            "reservation_failures": self.reservation_failures,
        }


def search_radii(initial_radius_km: float, max_radius_km: float, radius_step_km: float) -> List[float]:
    """
    Strictly increasing arithmetic sequence of radii starting at
    `initial_radius_km`, bounded by `max_radius_km`.

    Raises:
        ValueError: On non-positive values or initial > max
    """
    if initial_radius_km <= 0 or max_radius_km <= 0 or radius_step_km <= 0:
        raise ValueError("Search radii and step must be positive")
    if initial_radius_km > max_radius_km + _RADIUS_EPSILON:
        raise ValueError(
            f"initial_radius_km ({initial_radius_km}) exceeds max_radius_km ({max_radius_km})"
        )

    radii = []
    n = 0
    while True:
        radius = initial_radius_km + n * radius_step_km
        if radius > max_radius_km + _RADIUS_EPSILON:
            break
        radii.append(float(radius))
        n += 1
    return radii


def rank_candidates(pickup, candidates: List[DriverCandidate]) -> List[Tuple[DriverCandidate, float]]:
    """Sort candidates nearest first; ties go to the higher rating, then driver_id."""
    scored = [(candidate, distance_km(pickup, candidate.position)) for candidate in candidates]
    scored.sort(key=lambda item: (item[1], -item[0].rating, item[0].driver_id))
    return scored


class DispatchEngine:
    """
    Selects, reserves and assigns a driver for an order.

    Args:
        state_machine: OrderStateMachine used for the driver_assigned transition
        publisher: Optional sink receiving every DispatchAttempt
        clock: Monotonic clock used for elapsed_seconds
    """

    def __init__(self, state_machine, publisher: Any = None, clock: Callable[[], float] = time.monotonic):
        self.state_machine = state_machine
        self.publisher = publisher
        self.clock = clock

    def dispatch(
        self,
        order: Order,
        candidate_source,
        initial_radius_km: float = 5.0,
        max_radius_km: float = 25.0,
        radius_step_km: float = 5.0,
        actor: str = "dispatcher",
        attempt_offset: int = 0,
    ) -> DispatchAttempt:
        """
        Find and assign a driver for `order`.

        Returns:
            DispatchAttempt with outcome matched (order is now driver_assigned)
            or exhausted (order left in its pre-dispatch status)

        Raises:
            InvalidOrderStatusError: Order is not pending or confirmed
            NoCompatibleVehicleClassError: Order's tier has no vehicle class
            ValueError: Invalid radius arguments
        """
        if order.status not in DISPATCHABLE_STATUSES:
            raise InvalidOrderStatusError(
                f"Order {order.order_id} is {order.status.value}; only pending or confirmed orders can be dispatched"
            )

        vehicle_classes = compatible_vehicle_classes(order.kind, order.service_tier)
        radii = search_radii(initial_radius_km, max_radius_km, radius_step_km)

        started = self.clock()
        searched: List[float] = []
        refused: Set[str] = set()
        candidate_count = 0

        for round_number, radius in enumerate(radii, start=1):
            searched.append(radius)
            ranked = rank_candidates(
                order.pickup_point,
                self._gather(order, candidate_source, radius, vehicle_classes),
            )
            candidate_count = len(ranked)

            logger.info(
                "Dispatch order %s round %d: %d candidate(s) within %gkm (%s)",
                order.order_id, attempt_offset + round_number, candidate_count,
                radius, ",".join(vehicle_classes),
            )

            for candidate, distance in ranked:
                if candidate.driver_id in refused:
                    continue
                if not candidate_source.reserve(candidate.driver_id, order.order_id):
                    refused.add(candidate.driver_id)
                    logger.warning(
                        "Driver %s could not be reserved for order %s; trying next candidate",
                        candidate.driver_id, order.order_id,
                    )
                    continue

                self._assign(
                    order, candidate_source, candidate, actor,
                    metadata={
                        "radius_km": radius,
                        "distance_km": round(distance, 4),
                        "attempt": attempt_offset + round_number,
                    },
                )
                return self._finish(
                    order, DispatchOutcome.MATCHED, started, searched,
                    candidate_count, attempt_offset, refused, driver_id=candidate.driver_id,
                )

        logger.info(
            "Dispatch order %s exhausted after %d round(s) up to %gkm",
            order.order_id, len(searched), searched[-1],
        )
        return self._finish(
            order, DispatchOutcome.EXHAUSTED, started, searched,
            candidate_count, attempt_offset, refused,
        )

    def expand_search(
        self,
        order: Order,
        candidate_source,
        previous_attempt: DispatchAttempt,
        radius_step_km: float = 5.0,
        max_radius_km: Optional[float] = None,
        actor: str = "dispatcher",
    ) -> DispatchAttempt:
        """
        Manually widen a search that came back exhausted.

        Starts one step beyond the previous attempt's last radius and keeps
        counting rounds from where it stopped. Without `max_radius_km` a
        single wider ring is searched.
        """
        if previous_attempt.order_id != order.order_id:
            raise ValueError("previous_attempt belongs to a different order")

        initial = previous_attempt.radius_km + radius_step_km
        return self.dispatch(
            order,
            candidate_source,
            initial_radius_km=initial,
            max_radius_km=max(initial, max_radius_km or initial),
            radius_step_km=radius_step_km,
            actor=actor,
            attempt_offset=previous_attempt.attempt_count,
        )

    # ---------------------- Helpers ----------------------

    def _gather(self, order: Order, candidate_source, radius: float, vehicle_classes) -> List[DriverCandidate]:
        """Query every compatible class and keep only genuinely eligible drivers."""
        seen: Dict[str, DriverCandidate] = {}
        for vehicle_class in vehicle_classes:
            for candidate in candidate_source.search(order.pickup_point, radius, vehicle_class):
                seen.setdefault(candidate.driver_id, candidate)

        return [
            candidate for candidate in seen.values()
            if candidate.is_available
            and candidate.vehicle_class in vehicle_classes
            and distance_km(order.pickup_point, candidate.position) <= radius + _RADIUS_EPSILON
        ]

    def _assign(self, order: Order, candidate_source, candidate: DriverCandidate, actor: str, metadata: Dict[str, Any]):
        try:
            # pending orders pass through confirmed; the lifecycle has no shortcut edge
            if order.status is OrderStatus.PENDING:
                self.state_machine.transition(order, OrderStatus.CONFIRMED, actor, {"auto": True})
            self.state_machine.transition(
                order,
                OrderStatus.DRIVER_ASSIGNED,
                actor,
                metadata,
                driver_id=candidate.driver_id,
            )
        except Exception:
            release = getattr(candidate_source, "release", None)
            if release is not None:
                try:
                    release(candidate.driver_id, order.order_id)
                except Exception:
                    logger.exception(
                        "Failed to release driver %s after aborted assignment of order %s",
                        candidate.driver_id, order.order_id,
                    )
            raise

    def _finish(
        self,
        order: Order,
        outcome: DispatchOutcome,
        started: float,
        searched: List[float],
        candidate_count: int,
        attempt_offset: int,
        refused: Set[str],
        driver_id: Optional[str] = None,
    ) -> DispatchAttempt:
        attempt = DispatchAttempt(
            order_id=order.order_id,
            radius_km=searched[-1],
            candidate_count=candidate_count,
            outcome=outcome,
            elapsed_seconds=max(0.0, self.clock() - started),
            attempt_count=attempt_offset + len(searched),
            radii_km=tuple(searched),
            driver_id=driver_id,
            reservation_failures=len(refused),
        )
        publish_safely(self.publisher, attempt)
        return attempt
