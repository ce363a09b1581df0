"""Tells what to show in the Django admin interface for orders app"""

from django.contrib import admin
from .models import DispatchAttemptLog, Order, OrderEvent


@admin.register(Order)
class OrderAdmin(admin.ModelAdmin):
    """Order admin; status changes go through the API so the audit log stays complete"""
    list_display = ['order_id', 'kind', 'service_tier', 'status', 'assigned_driver_id', 'created_at', 'delivered_at', 'cancelled_at']
    list_filter = ['kind', 'status', 'service_tier', 'created_at']
    search_fields = ['order_id', 'assigned_driver_id']
    readonly_fields = ['status', 'assigned_driver_id', 'created_at', 'updated_at', 'confirmed_at', 'assigned_at',
                       'picked_up_at', 'in_transit_at', 'delivered_at', 'cancelled_at',
                       'cancellation_code', 'cancellation_reason']
    date_hierarchy = 'created_at'


@admin.register(OrderEvent)
class OrderEventAdmin(admin.ModelAdmin):
    list_display = ("order_id", "from_status", "to_status", "actor", "at")
    list_filter = ("to_status",)
    search_fields = ("order_id", "actor")


@admin.register(DispatchAttemptLog)
class DispatchAttemptLogAdmin(admin.ModelAdmin):
    list_display = ("order_id", "radius_km", "candidate_count", "outcome", "driver_id", "created_at")
    list_filter = ("outcome",)
    search_fields = ("order_id", "driver_id")
