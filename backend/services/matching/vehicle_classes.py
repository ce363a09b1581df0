"""
Service tier to vehicle class compatibility.

Delivery tiers map to a single class (flash bikes, flex cars, maxicharge
trucks). Transport tiers accept their own class and, for eco and standard,
the next class up so a rider is never refused because only a nicer car is
nearby.
"""

from typing import Tuple

from services.order_lifecycle.models import OrderKind

from .exceptions import NoCompatibleVehicleClassError


DELIVERY_TIER_CLASSES = {
    "flash": ("moto",),
    "flex": ("standard",),
    "maxicharge": ("truck",),
}

TRANSPORT_TIER_CLASSES = {
    "moto": ("moto",),
    "eco": ("eco", "standard"),
    "standard": ("standard", "premium"),
    "premium": ("premium",),
}

_TIERS_BY_KIND = {
    OrderKind.DELIVERY: DELIVERY_TIER_CLASSES,
    OrderKind.TRANSPORT: TRANSPORT_TIER_CLASSES,
}


def compatible_vehicle_classes(kind, service_tier: str) -> Tuple[str, ...]:
    """
    Vehicle classes allowed to serve an order.

    Args:
        kind: OrderKind (or its string value)
        service_tier: Tier name, case-insensitive

    Returns:
        Tuple of vehicle class names, in preference order

    Raises:
        NoCompatibleVehicleClassError: If the tier is unknown for this kind
    """
    tiers = _TIERS_BY_KIND[OrderKind(kind)]
    classes = tiers.get((service_tier or "").strip().lower())
    if not classes:
        raise NoCompatibleVehicleClassError(
            f"No vehicle class serves {OrderKind(kind).value} tier {service_tier!r}"
        )
    return classes
