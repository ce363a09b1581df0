from rest_framework import serializers

from services.matching import NoCompatibleVehicleClassError, compatible_vehicle_classes
from services.order_lifecycle import OrderKind, OrderStatus
from services.runtime import get_dispatch_config

from .models import Order, OrderEvent
from .repository import DjangoOrderRepository


class OrderEventSerializer(serializers.ModelSerializer):
    """Serializer for the transition history of an order"""

    class Meta:
        model = OrderEvent
        fields = ['from_status', 'to_status', 'actor', 'at', 'metadata']


class OrderSerializer(serializers.ModelSerializer):
    """Serializer for Orders, including their transition history"""
    events = serializers.SerializerMethodField()

    class Meta:
        model = Order
        fields = ['order_id', 'kind', 'service_tier',
                  'pickup_latitude', 'pickup_longitude',
                  'destination_latitude', 'destination_longitude',
                  'status', 'assigned_driver_id',
                  'created_at', 'updated_at', 'confirmed_at', 'assigned_at',
                  'picked_up_at', 'in_transit_at', 'delivered_at', 'cancelled_at',
                  'cancellation_code', 'cancellation_reason', 'events']
        read_only_fields = fields

    def get_events(self, obj):
        events = OrderEvent.objects.filter(order_id=obj.order_id)
        return OrderEventSerializer(events, many=True).data


class OrderCreateSerializer(serializers.Serializer):
    """Serializer for creating orders"""
    kind = serializers.ChoiceField(choices=[kind.value for kind in OrderKind])
    service_tier = serializers.CharField(max_length=30)
    pickup_latitude = serializers.FloatField(min_value=-90, max_value=90)
    pickup_longitude = serializers.FloatField(min_value=-180, max_value=180)
    destination_latitude = serializers.FloatField(min_value=-90, max_value=90)
    destination_longitude = serializers.FloatField(min_value=-180, max_value=180)
    # Queue a background dispatch right after creation
    auto_dispatch = serializers.BooleanField(default=False, required=False)

    def validate(self, attrs):
        try:
            compatible_vehicle_classes(attrs['kind'], attrs['service_tier'])
        except NoCompatibleVehicleClassError as e:
            raise serializers.ValidationError({'service_tier': str(e)})
        attrs['service_tier'] = attrs['service_tier'].strip().lower()
        return attrs

    def create(self, validated_data):
        return DjangoOrderRepository().create_order(
            kind=validated_data['kind'],
            service_tier=validated_data['service_tier'],
            pickup_point=(validated_data['pickup_latitude'], validated_data['pickup_longitude']),
            destination_point=(validated_data['destination_latitude'], validated_data['destination_longitude']),
        )


class DispatchRequestSerializer(serializers.Serializer):
    """Optional radius overrides for a dispatch run"""
    initial_radius_km = serializers.FloatField(min_value=0.001, required=False)
    max_radius_km = serializers.FloatField(min_value=0.001, required=False)
    radius_step_km = serializers.FloatField(min_value=0.001, required=False)

    def validate(self, attrs):
        # Overrides are checked against the configured radii they are combined with
        config = get_dispatch_config()
        initial = attrs.get('initial_radius_km', float(config['INITIAL_RADIUS_KM']))
        maximum = attrs.get('max_radius_km', float(config['MAX_RADIUS_KM']))
        if maximum < initial:
            raise serializers.ValidationError(
                'max_radius_km (%g) must be at least initial_radius_km (%g)' % (maximum, initial)
            )
        return attrs


class ExpandSearchSerializer(serializers.Serializer):
    radius_step_km = serializers.FloatField(min_value=0.001, required=False)
    max_radius_km = serializers.FloatField(min_value=0.001, required=False, allow_null=True)


class TransitionSerializer(serializers.Serializer):
    """Serializer for a generic status change"""
    status = serializers.ChoiceField(choices=[status.value for status in OrderStatus])
    actor = serializers.CharField(max_length=64, default='system', required=False)
    reason = serializers.CharField(required=False, allow_blank=True)
    note = serializers.CharField(required=False, allow_blank=True)

    def validate_status(self, value):
        # Drivers are only assigned through dispatch, which reserves them first
        if value == OrderStatus.DRIVER_ASSIGNED.value:
            raise serializers.ValidationError('Drivers are assigned by dispatching the order')
        return value


class OrderCancelSerializer(serializers.Serializer):
    """Serializer for order cancellation"""
    reason = serializers.CharField()
    note = serializers.CharField(required=False, allow_blank=True)
    actor = serializers.CharField(max_length=64, default='customer', required=False)
