from decimal import Decimal

from django.db import models

from services.order_lifecycle.types import DriverStatus


class DriverAvailability(models.Model):
    """Driver availability status and last known position"""

    driver_id = models.CharField(max_length=64, primary_key=True)

    # Status & location
    status = models.CharField(max_length=20, choices=DriverStatus.CHOICES, default=DriverStatus.OFFLINE, db_index=True)
    latitude = models.FloatField(null=True, blank=True)
    longitude = models.FloatField(null=True, blank=True)
    last_location_update = models.DateTimeField(null=True, blank=True)

    rating = models.DecimalField(max_digits=3, decimal_places=2, default=Decimal('5.00'))
    total_orders = models.PositiveIntegerField(default=0)

    class Meta:
        db_table = 'driver_profiles'

    def __str__(self):
        return f"{self.driver_id} - {self.status}"
