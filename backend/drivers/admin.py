from django.contrib import admin

from drivers.models import DriverProfile
from drivers.services import DatabaseCandidateSource
from orders.models import Order


@admin.register(DriverProfile)
class DriverProfileAdmin(admin.ModelAdmin):
    """Admin panel for drivers as dispatch sees them"""

    list_display = [
        "driver_id",
        "vehicle_class",
        "rating",
        "is_available",
        "reserved_order_id",
        "current_latitude",
        "current_longitude",
        "last_location_update",
    ]

    list_filter = [
        "vehicle_class",
        "is_available",
    ]

    search_fields = [
        "driver_id",
        "display_name",
        "vehicle_number",
        "reserved_order_id",
    ]

    fieldsets = (
        (None, {"fields": ("driver_id", "display_name", "vehicle_number", "vehicle_class", "rating")}),
        ("Dispatch", {"fields": ("is_available", "reserved_order_id")}),
        ("Location", {"fields": ("current_latitude", "current_longitude", "heading_degrees", "last_location_update")}),
    )

    readonly_fields = [
        "reserved_order_id",
        "last_location_update",
    ]

    actions = ["release_finished_reservations"]
    ordering = ("driver_id",)

    @admin.action(description="Release reservations held by delivered/cancelled orders")
    def release_finished_reservations(self, request, queryset):
        held = queryset.filter(reserved_order_id__isnull=False)
        finished = set(
            Order.objects
            .filter(order_id__in=held.values_list("reserved_order_id", flat=True))
            .filter(status__in=["delivered", "cancelled"])
            .values_list("order_id", flat=True)
        )

        source = DatabaseCandidateSource()
        released = sum(
            source.release(profile.driver_id, profile.reserved_order_id)
            for profile in held.filter(reserved_order_id__in=finished)
        )
        self.message_user(request, f"Released {released} driver(s).")
