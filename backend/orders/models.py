from django.db import models

from services.order_lifecycle.models import CancellationReason, OrderKind, OrderStatus


class Order(models.Model):
    """Persistent copy of a transport/delivery order; mutated only through the state machine."""

    KIND_CHOICES = [(kind.value, kind.value.title()) for kind in OrderKind]
    STATUS_CHOICES = [(status.value, status.value.replace('_', ' ').title()) for status in OrderStatus]
    CANCELLATION_CHOICES = [(reason.value, reason.label) for reason in CancellationReason]

    order_id = models.CharField(max_length=64, unique=True)
    kind = models.CharField(max_length=20, choices=KIND_CHOICES)
    service_tier = models.CharField(max_length=30)

    # Pickup & destination
    pickup_latitude = models.DecimalField(max_digits=9, decimal_places=6)
    pickup_longitude = models.DecimalField(max_digits=9, decimal_places=6)
    destination_latitude = models.DecimalField(max_digits=9, decimal_places=6)
    destination_longitude = models.DecimalField(max_digits=9, decimal_places=6)

    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default='pending', db_index=True)
    assigned_driver_id = models.CharField(max_length=64, null=True, blank=True)

    # Timestamps
    created_at = models.DateTimeField()
    updated_at = models.DateTimeField(null=True, blank=True)
    confirmed_at = models.DateTimeField(null=True, blank=True)
    assigned_at = models.DateTimeField(null=True, blank=True)
    picked_up_at = models.DateTimeField(null=True, blank=True)
    in_transit_at = models.DateTimeField(null=True, blank=True)
    delivered_at = models.DateTimeField(null=True, blank=True)
    cancelled_at = models.DateTimeField(null=True, blank=True)

    cancellation_code = models.CharField(max_length=30, choices=CANCELLATION_CHOICES, null=True, blank=True)
    cancellation_reason = models.TextField(null=True, blank=True)

    class Meta:
        db_table = 'orders'
        ordering = ['-created_at']

    def __str__(self):
        return f"Order {self.order_id} - {self.kind}/{self.service_tier} - {self.status}"


class OrderEvent(models.Model):
    """Append-only log of committed status transitions."""

    order_id = models.CharField(max_length=64, db_index=True)
    from_status = models.CharField(max_length=20)
    to_status = models.CharField(max_length=20)
    actor = models.CharField(max_length=64)
    at = models.DateTimeField()
    metadata = models.JSONField(default=dict, blank=True)

    class Meta:
        db_table = 'order_events'
        ordering = ['at', 'id']

    def __str__(self):
        return f"{self.order_id}: {self.from_status} -> {self.to_status} ({self.actor})"


class DispatchAttemptLog(models.Model):
    """One row per dispatch call; drives 'searching' timers and manual expansion."""

    OUTCOME_CHOICES = [
        ('matched', 'Matched'),
        ('exhausted', 'Exhausted'),
    ]

    order_id = models.CharField(max_length=64, db_index=True)
    radius_km = models.FloatField()
    candidate_count = models.PositiveIntegerField(default=0)
    outcome = models.CharField(max_length=20, choices=OUTCOME_CHOICES)
    elapsed_seconds = models.FloatField(default=0.0)
    attempt_count = models.PositiveIntegerField(default=1)
    radii_km = models.JSONField(default=list, blank=True)
    driver_id = models.CharField(max_length=64, null=True, blank=True)
    reservation_failures = models.PositiveIntegerField(default=0)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'dispatch_attempts'
        ordering = ['-created_at', '-id']

    def __str__(self):
        return f"Dispatch {self.order_id} @ {self.radius_km}km -> {self.outcome}"
