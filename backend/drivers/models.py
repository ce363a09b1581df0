from django.db import models
from django.utils import timezone


class DriverProfile(models.Model):
    """Driver availability, vehicle and live location as seen by dispatch"""
    VEHICLE_CLASS_CHOICES = [
        ('moto', 'Moto'),
        ('eco', 'Eco'),
        ('standard', 'Standard'),
        ('premium', 'Premium'),
        ('truck', 'Truck'),
    ]

    driver_id = models.CharField(max_length=64, unique=True)
    display_name = models.CharField(max_length=100, blank=True)

    # Vehicle details
    vehicle_number = models.CharField(max_length=20, blank=True)
    vehicle_class = models.CharField(max_length=20, choices=VEHICLE_CLASS_CHOICES, default='standard')
    rating = models.FloatField(default=0.0)

    # Availability & reservation (reserved_order_id is the atomic claim)
    is_available = models.BooleanField(default=False)
    reserved_order_id = models.CharField(max_length=64, null=True, blank=True)

    # Status & location
    current_latitude = models.DecimalField(max_digits=10, decimal_places=6, null=True, blank=True)
    current_longitude = models.DecimalField(max_digits=10, decimal_places=6, null=True, blank=True)
    heading_degrees = models.FloatField(default=0.0)
    last_location_update = models.DateTimeField(default=timezone.now)

    class Meta:
        db_table = 'driver_profiles'

    def __str__(self):
        return f"{self.driver_id} - {self.vehicle_class}"
