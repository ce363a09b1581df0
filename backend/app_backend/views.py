import logging

from channels.layers import get_channel_layer
from django.utils import timezone
from rest_framework import status
from rest_framework.decorators import api_view, permission_classes
from rest_framework.permissions import AllowAny
from rest_framework.response import Response

from drivers.models import DriverProfile
from orders.models import Order
from orders.tasks import redispatch_order_task
from services.runtime import get_dispatch_config, get_tracking_manager

logger = logging.getLogger(__name__)


def _check_database():
    return {
        "open_orders": Order.objects.exclude(status__in=["delivered", "cancelled"]).count(),
        "available_drivers": DriverProfile.objects.filter(
            is_available=True, reserved_order_id__isnull=True
        ).count(),
    }


def _check_channel_layer():
    if get_channel_layer() is None:
        raise RuntimeError("no channel layer configured")


def _check_redis_geo():
    from realtime.geo import get_redis_client
    get_redis_client().ping()


def _check_celery():
    if redispatch_order_task.name not in redispatch_order_task.app.tasks:
        raise RuntimeError("redispatch task not registered")


@api_view(["GET"])
@permission_classes([AllowAny])
def health_check(request):
    """
    Health of everything dispatch depends on.

    The Redis GEO index is only checked when it is the active candidate
    source; otherwise dispatch runs on the database alone.
    """
    config = get_dispatch_config()
    checks = [
        ("database", _check_database),
        ("channels", _check_channel_layer),
        ("celery", _check_celery),
    ]
    if config["CANDIDATE_SOURCE"] == "redis":
        checks.append(("redis_geo", _check_redis_geo))

    health_status = {
        "status": "healthy",
        "timestamp": timezone.now().isoformat(),
        "candidate_source": config["CANDIDATE_SOURCE"],
        "services": {},
    }

    for name, check in checks:
        try:
            details = check()
        except Exception as e:
            logger.warning("Health check %s failed: %s", name, e)
            health_status["services"][name] = f"unhealthy: {e}"
            health_status["status"] = "unhealthy"
            continue
        health_status["services"][name] = "healthy"
        if details:
            health_status.update(details)

    health_status["tracking_sessions"] = len(get_tracking_manager().open_sessions())

    status_code = (
        status.HTTP_200_OK
        if health_status["status"] == "healthy"
        else status.HTTP_503_SERVICE_UNAVAILABLE
    )
    return Response(health_status, status=status_code)
