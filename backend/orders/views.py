import functools
import logging

from rest_framework import status
from rest_framework.decorators import api_view, permission_classes
from rest_framework.permissions import AllowAny
from rest_framework.response import Response

from common.utils.geo import InvalidCoordinateError
from services.matching import InvalidOrderStatusError, NoCompatibleVehicleClassError
from services.order_lifecycle import MissingReasonError, OrderLifecycleError

from .models import Order
from .repository import OrderNotFoundError
from .serializers import (
    DispatchRequestSerializer,
    ExpandSearchSerializer,
    OrderCancelSerializer,
    OrderCreateSerializer,
    OrderSerializer,
    TransitionSerializer,
)
from .services import (
    DispatchNotStartedError,
    cancel_order as cancel_order_service,
    dispatch_order as dispatch_order_service,
    expand_order_search,
    tracking_snapshot,
    transition_order,
)

logger = logging.getLogger(__name__)

LOCKED_ORDER_MESSAGE = 'This order can no longer be modified.'
EXHAUSTED_MESSAGE = 'No driver found, expand search?'


def handle_order_errors(view):
    """Translate core errors into HTTP responses."""

    @functools.wraps(view)
    def wrapper(request, *args, **kwargs):
        try:
            return view(request, *args, **kwargs)
        except OrderNotFoundError:
            return Response({'error': 'Order not found'}, status=status.HTTP_404_NOT_FOUND)
        except MissingReasonError as e:
            return Response({'error': str(e)}, status=status.HTTP_400_BAD_REQUEST)
        except (OrderLifecycleError, InvalidOrderStatusError) as e:
            return Response(
                {'error': LOCKED_ORDER_MESSAGE, 'detail': str(e)},
                status=status.HTTP_409_CONFLICT
            )
        except (NoCompatibleVehicleClassError, InvalidCoordinateError, DispatchNotStartedError) as e:
            return Response({'error': str(e)}, status=status.HTTP_400_BAD_REQUEST)

    return wrapper


def _order_data(order_id):
    return OrderSerializer(Order.objects.get(order_id=order_id)).data


def _attempt_response(order, attempt):
    return Response({
        'order': _order_data(order.order_id),
        'attempt': attempt.as_dict(),
        'message': 'Driver assigned' if attempt.matched else EXHAUSTED_MESSAGE,
    }, status=status.HTTP_200_OK)


# ==================== Order APIs ====================

@api_view(['POST'])
@permission_classes([AllowAny])
def create_order(request):
    """Create a new transport or delivery order"""
    serializer = OrderCreateSerializer(data=request.data)
    if serializer.is_valid():
        order = serializer.save()

        if serializer.validated_data.get('auto_dispatch'):
            from .tasks import redispatch_order_task
            redispatch_order_task.delay(order.order_id)

        return Response(_order_data(order.order_id), status=status.HTTP_201_CREATED)

    return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)


@api_view(['GET'])
@permission_classes([AllowAny])
def get_order(request, order_id):
    """Order details with transition history"""
    record = Order.objects.filter(order_id=order_id).first()
    if record is None:
        return Response({'error': 'Order not found'}, status=status.HTTP_404_NOT_FOUND)
    return Response(OrderSerializer(record).data)


# ==================== Dispatch APIs ====================

@api_view(['POST'])
@permission_classes([AllowAny])
@handle_order_errors
def dispatch_order(request, order_id):
    """Search for a driver with a growing radius and assign the best one"""
    serializer = DispatchRequestSerializer(data=request.data)
    if not serializer.is_valid():
        return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

    order, attempt = dispatch_order_service(order_id, **serializer.validated_data)
    return _attempt_response(order, attempt)


@api_view(['POST'])
@permission_classes([AllowAny])
@handle_order_errors
def expand_search(request, order_id):
    """Widen an exhausted search beyond its last radius"""
    serializer = ExpandSearchSerializer(data=request.data)
    if not serializer.is_valid():
        return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

    order, attempt = expand_order_search(order_id, **serializer.validated_data)
    return _attempt_response(order, attempt)


# ==================== Lifecycle APIs ====================

@api_view(['POST'])
@permission_classes([AllowAny])
@handle_order_errors
def transition(request, order_id):
    """Move an order to another status"""
    serializer = TransitionSerializer(data=request.data)
    if not serializer.is_valid():
        return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

    data = serializer.validated_data
    order = transition_order(
        order_id,
        data['status'],
        actor=data.get('actor', 'system'),
        reason=data.get('reason') or None,
        note=data.get('note') or None,
    )
    return Response(_order_data(order.order_id))


@api_view(['POST'])
@permission_classes([AllowAny])
@handle_order_errors
def cancel_order(request, order_id):
    """Cancel an order with a reason"""
    serializer = OrderCancelSerializer(data=request.data)
    if not serializer.is_valid():
        return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

    data = serializer.validated_data
    order = cancel_order_service(
        order_id,
        data['reason'],
        actor=data.get('actor', 'customer'),
        note=data.get('note') or None,
    )
    return Response({
        **_order_data(order.order_id),
        'message': 'Order cancelled successfully',
    })


# ==================== Tracking APIs ====================

@api_view(['GET'])
@permission_classes([AllowAny])
@handle_order_errors
def order_tracking(request, order_id):
    """Latest smoothed driver position, distance remaining and ETA"""
    snapshot = tracking_snapshot(order_id)
    if snapshot is None:
        return Response(
            {'error': 'No active tracking for this order'},
            status=status.HTTP_404_NOT_FOUND
        )
    return Response(snapshot)
