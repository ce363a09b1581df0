"""Celery tasks for order-related background processing."""

from celery import shared_task
import logging

logger = logging.getLogger(__name__)


@shared_task
def redispatch_order_task(order_id: str, initial_radius_km: float = None, attempt_count: int = 0):
    """
    Celery task that searches one radius ring for an order.

    Scheduled right after an order is created with auto_dispatch. While the
    ring comes back exhausted the task re-schedules itself one radius step
    wider, REDISPATCH_COUNTDOWN_SECONDS later, until MAX_RADIUS_KM is passed.
    attempt_count carries the rounds searched so far along the chain.
    """
    from orders.repository import OrderNotFoundError
    from orders.services import dispatch_order
    from services.matching import InvalidOrderStatusError
    from services.runtime import get_dispatch_config

    config = get_dispatch_config()
    radius = float(initial_radius_km or config["INITIAL_RADIUS_KM"])

    try:
        _, attempt = dispatch_order(
            order_id,
            initial_radius_km=radius,
            max_radius_km=radius,
            attempt_offset=attempt_count,
        )
    except OrderNotFoundError:
        logger.warning("Order %s not found for redispatch task", order_id)
        return None
    except InvalidOrderStatusError as e:
        logger.info("Order %s no longer dispatchable: %s", order_id, e)
        return None

    if attempt.matched:
        logger.info("Order %s matched with driver %s at %gkm", order_id, attempt.driver_id, radius)
        return attempt.as_dict()

    next_radius = radius + float(config["RADIUS_STEP_KM"])
    if next_radius <= float(config["MAX_RADIUS_KM"]) + 1e-9:
        redispatch_order_task.apply_async(
            args=[order_id, next_radius, attempt.attempt_count],
            countdown=config["REDISPATCH_COUNTDOWN_SECONDS"],
        )
        logger.info("Order %s exhausted at %gkm; retrying at %gkm", order_id, radius, next_radius)
    else:
        logger.info("Order %s exhausted up to the %gkm cap", order_id, radius)
    return attempt.as_dict()
