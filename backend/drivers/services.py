"""
Database-backed candidate source.

`reserve` is a single conditional UPDATE, so two dispatchers in different
processes can never both claim the same driver.
"""

import logging
from typing import List

from django.db.models import Q
from django.utils import timezone

from common.utils.geo import Point, bounding_box, distance_km, longitude_ranges, validate_point
from drivers.models import DriverProfile
from services.matching.candidates import DriverCandidate
from services.tracking.samples import PositionSample

logger = logging.getLogger(__name__)


def to_candidate(profile: DriverProfile) -> DriverCandidate:
    return DriverCandidate(
        driver_id=profile.driver_id,
        position=Point(float(profile.current_latitude), float(profile.current_longitude)),
        heading_degrees=profile.heading_degrees,
        vehicle_class=profile.vehicle_class,
        rating=profile.rating,
        is_available=profile.is_available and profile.reserved_order_id is None,
    )


class DatabaseCandidateSource:
    """Candidate source over the driver_profiles table."""

    def search(self, center, radius_km: float, vehicle_class: str) -> List[DriverCandidate]:
        """
        Available, unreserved drivers of `vehicle_class` within `radius_km` of `center`.

        A bounding box narrows the query in SQL; the exact haversine check
        runs in Python.
        """
        center = validate_point(center)
        min_lat, max_lat, _, _ = bounding_box(center, radius_km)

        # Two longitude bands when the box straddles the antimeridian
        in_longitude = Q()
        for low, high in longitude_ranges(center, radius_km):
            in_longitude |= Q(current_longitude__gte=low, current_longitude__lte=high)

        profiles = DriverProfile.objects.filter(
            in_longitude,
            is_available=True,
            reserved_order_id__isnull=True,
            vehicle_class=vehicle_class,
            current_latitude__isnull=False,
            current_longitude__isnull=False,
            current_latitude__gte=min_lat,
            current_latitude__lte=max_lat,
        )

        candidates = []
        for profile in profiles:
            candidate = to_candidate(profile)
            if distance_km(center, candidate.position) <= radius_km:
                candidates.append(candidate)
        return candidates

    def reserve(self, driver_id: str, order_id: str) -> bool:
        """Claim a driver for an order; repeat calls for the same order succeed."""
        updated = (
            DriverProfile.objects
            .filter(driver_id=driver_id, is_available=True)
            .filter(Q(reserved_order_id__isnull=True) | Q(reserved_order_id=order_id))
            .update(reserved_order_id=order_id)
        )
        if not updated:
            logger.debug("Reservation of driver %s for order %s refused", driver_id, order_id)
        return bool(updated)

    def release(self, driver_id: str, order_id: str) -> bool:
        """Undo a reservation, but only if this order still holds it."""
        updated = (
            DriverProfile.objects
            .filter(driver_id=driver_id, reserved_order_id=order_id)
            .update(reserved_order_id=None)
        )
        return bool(updated)

    def update_location(self, sample: PositionSample) -> bool:
        """Persist the latest position of a driver. Returns False for unknown drivers."""
        updated = DriverProfile.objects.filter(driver_id=sample.entity_id).update(
            current_latitude=round(sample.lat, 6),
            current_longitude=round(sample.lng, 6),
            heading_degrees=sample.heading_degrees,
            last_location_update=timezone.now(),
        )
        return bool(updated)


def record_driver_location(sample: PositionSample) -> int:
    """
    Ingest one driver position report.

    Persists the position, refreshes the Redis GEO index when dispatch runs
    on Redis, and fans the sample out to open tracking sessions.

    Returns:
        Number of tracking sessions that received the sample
    """
    from services.runtime import get_dispatch_config, get_location_feed

    if not DatabaseCandidateSource().update_location(sample):
        logger.warning("Location report for unknown driver %s", sample.entity_id)

    if get_dispatch_config()["CANDIDATE_SOURCE"] == "redis":
        from realtime.geo import get_redis_candidate_source

        profile = DriverProfile.objects.filter(driver_id=sample.entity_id).first()
        if profile is not None:
            get_redis_candidate_source().update_driver_location(
                sample,
                vehicle_class=profile.vehicle_class,
                rating=profile.rating,
                is_available=profile.is_available,
            )

    return get_location_feed().publish(sample)
