"""
Redis GEO-based candidate source.

This module provides:
- Geospatial indexing of driver locations using Redis GEO
- Fast proximity queries for dispatch (GEOSEARCH)
- Atomic, cross-process driver reservation (SET NX EX)
- Driver metadata with TTL so silent drivers drop out automatically

Architecture:
- Drivers are indexed in a Redis GEO set keyed by driver id
- Vehicle class, rating and availability live in a per-driver hash
- A reservation is a string key holding the order id; whoever sets it first
  owns the driver. The key carries a TTL until the assignment commits, then
  hold() persists it until release
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import redis
from django.conf import settings

from common.utils.geo import Point, validate_point
from services.matching.candidates import DriverCandidate
from services.tracking.samples import PositionSample

logger = logging.getLogger(__name__)


# ---------------------- Configuration ----------------------

REDIS_GEO_CONFIG = {
    # Key names
    "DRIVERS_GEO_KEY": "drivers:geo",               # GEOADD key for driver positions
    "DRIVER_META_PREFIX": "driver:meta:",            # HSET for driver metadata
    "DRIVER_RESERVATION_PREFIX": "driver:reservation:",  # SET NX key per reserved driver

    # TTL values (seconds)
    "DRIVER_META_TTL": 120,            # Driver drops out after 2 min without updates

    # Query limits
    "SEARCH_LIMIT": 50,
}

# Delete the reservation only if it still belongs to this order
_RELEASE_SCRIPT = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    return redis.call('DEL', KEYS[1])
end
return 0
"""

# Drop the TTL only if the reservation still belongs to this order
_HOLD_SCRIPT = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    redis.call('PERSIST', KEYS[1])
    return 1
end
return 0
"""


# ---------------------- Redis Connection ----------------------

def get_redis_client() -> redis.Redis:
    """Get Redis client for GEO operations."""
    return redis.Redis.from_url(
        getattr(settings, 'REDIS_GEO_URL', settings.CELERY_BROKER_URL),
        decode_responses=True
    )


# ---------------------- Candidate Source ----------------------

class RedisCandidateSource:
    """
    Candidate source over Redis GEO.

    Provides:
    - search(): GEOSEARCH + metadata filter
    - reserve()/hold()/release(): atomic reservation keys
    - update_driver_location()/remove_driver(): index maintenance
    """

    def __init__(self, redis_client: Optional[redis.Redis] = None, reservation_ttl: int = 300):
        self._redis = redis_client or get_redis_client()
        self._config = REDIS_GEO_CONFIG
        self.reservation_ttl = int(reservation_ttl)

    def _meta_key(self, driver_id: str) -> str:
        return f"{self._config['DRIVER_META_PREFIX']}{driver_id}"

    def _reservation_key(self, driver_id: str) -> str:
        return f"{self._config['DRIVER_RESERVATION_PREFIX']}{driver_id}"

    # ---------------------- Driver Location Updates ----------------------

    def update_driver_location(
        self,
        sample: PositionSample,
        vehicle_class: Optional[str] = None,
        rating: Optional[float] = None,
        is_available: Optional[bool] = None,
    ) -> bool:
        """Index a driver's latest position and refresh its metadata TTL."""
        try:
            meta_key = self._meta_key(sample.entity_id)
            self._redis.geoadd(
                self._config["DRIVERS_GEO_KEY"],
                (sample.lng, sample.lat, sample.entity_id),
            )

            meta: Dict[str, Any] = {"heading_degrees": str(sample.heading_degrees)}
            if vehicle_class is not None:
                meta["vehicle_class"] = vehicle_class
            if rating is not None:
                meta["rating"] = str(rating)
            if is_available is not None:
                meta["is_available"] = "1" if is_available else "0"

            self._redis.hset(meta_key, mapping=meta)
            self._redis.expire(meta_key, self._config["DRIVER_META_TTL"])
            return True
        except redis.RedisError as e:
            logger.exception("Failed to update driver location: %s", e)
            return False

    def remove_driver(self, driver_id: str) -> bool:
        """Remove driver from GEO index and drop its metadata."""
        try:
            self._redis.zrem(self._config["DRIVERS_GEO_KEY"], str(driver_id))
            self._redis.delete(self._meta_key(driver_id))
            return True
        except redis.RedisError as e:
            logger.exception("Failed to remove driver: %s", e)
            return False

    # ---------------------- Nearby Driver Queries ----------------------

    def search(self, center, radius_km: float, vehicle_class: str) -> List[DriverCandidate]:
        """
        Query available, unreserved drivers of one class using GEOSEARCH.

        Returns:
            List of DriverCandidate sorted by distance
        """
        center = validate_point(center)
        try:
            results = self._redis.geosearch(
                self._config["DRIVERS_GEO_KEY"],
                longitude=center.lng,
                latitude=center.lat,
                radius=radius_km,
                unit="km",
                sort="ASC",
                count=self._config["SEARCH_LIMIT"] * 2,  # Fetch more to filter by class
                withdist=True,
                withcoord=True,
            )
        except redis.RedisError as e:
            logger.exception("Failed to query nearby drivers: %s", e)
            return []

        if not results:
            return []

        # One round trip for every hit's metadata and reservation flag
        pipe = self._redis.pipeline(transaction=False)
        for item in results:
            pipe.hgetall(self._meta_key(item[0]))
            pipe.exists(self._reservation_key(item[0]))
        try:
            replies = pipe.execute()
        except redis.RedisError as e:
            logger.exception("Failed to load driver metadata: %s", e)
            return []

        candidates = []
        for item, meta, reserved in zip(results, replies[0::2], replies[1::2]):
            driver_id = item[0]
            coords = item[2]  # (lon, lat)

            if not meta:
                continue
            if meta.get("vehicle_class") != vehicle_class:
                continue
            if meta.get("is_available") != "1":
                continue
            if reserved:
                continue

            candidates.append(DriverCandidate(
                driver_id=driver_id,
                position=Point(float(coords[1]), float(coords[0])),
                heading_degrees=float(meta.get("heading_degrees", 0.0)),
                vehicle_class=vehicle_class,
                rating=float(meta.get("rating", 0.0)),
                is_available=True,
            ))

            if len(candidates) >= self._config["SEARCH_LIMIT"]:
                break

        return candidates

    # ---------------------- Reservations ----------------------

    def reserve(self, driver_id: str, order_id: str) -> bool:
        """SET NX the reservation key; a key already holding this order counts as success."""
        key = self._reservation_key(driver_id)
        try:
            if self._redis.set(key, order_id, nx=True, ex=self.reservation_ttl):
                return True
            return self._redis.get(key) == order_id
        except redis.RedisError as e:
            logger.exception("Failed to reserve driver %s: %s", driver_id, e)
            return False

    def release(self, driver_id: str, order_id: str) -> bool:
        """Delete the reservation key if this order still holds it."""
        try:
            return bool(self._redis.eval(_RELEASE_SCRIPT, 1, self._reservation_key(driver_id), order_id))
        except redis.RedisError as e:
            logger.exception("Failed to release driver %s: %s", driver_id, e)
            return False

    def hold(self, driver_id: str, order_id: str) -> bool:
        """Keep this order's reservation until release(); the pre-assignment TTL is dropped."""
        try:
            return bool(self._redis.eval(_HOLD_SCRIPT, 1, self._reservation_key(driver_id), order_id))
        except redis.RedisError as e:
            logger.exception("Failed to hold driver %s for order %s: %s", driver_id, order_id, e)
            return False

    def reserved_by(self, driver_id: str) -> Optional[str]:
        return self._redis.get(self._reservation_key(driver_id))


# ---------------------- Singleton Instance ----------------------

_redis_candidate_source: Optional[RedisCandidateSource] = None


def get_redis_candidate_source() -> RedisCandidateSource:
    """Get singleton RedisCandidateSource instance."""
    global _redis_candidate_source
    if _redis_candidate_source is None:
        from services.runtime import get_dispatch_config
        _redis_candidate_source = RedisCandidateSource(
            reservation_ttl=get_dispatch_config()["RESERVATION_TTL_SECONDS"],
        )
    return _redis_candidate_source
