import uuid

from django.db import models

from services.order_lifecycle.types import OrderStatus, OrderType, ServiceType


class Order(models.Model):
    """Trip order. Status and lifecycle timestamps are written only by the order state machine."""

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    order_number = models.CharField(max_length=32, unique=True)

    # Parties (ids issued by the identity service)
    passenger_id = models.CharField(max_length=64, db_index=True)
    driver_id = models.CharField(max_length=64, null=True, blank=True, db_index=True)

    # Pickup location
    pickup_latitude = models.FloatField()
    pickup_longitude = models.FloatField()
    pickup_address = models.TextField(blank=True, default='')
    pickup_poi_id = models.CharField(max_length=64, null=True, blank=True)

    # Dropoff location
    dropoff_latitude = models.FloatField()
    dropoff_longitude = models.FloatField()
    dropoff_address = models.TextField(blank=True, default='')
    dropoff_poi_id = models.CharField(max_length=64, null=True, blank=True)

    # Classification
    order_type = models.CharField(max_length=20, choices=OrderType.CHOICES, default=OrderType.IMMEDIATE)
    service_type = models.CharField(max_length=20, choices=ServiceType.CHOICES, default=ServiceType.STANDARD)
    scheduled_time = models.DateTimeField(null=True, blank=True)

    status = models.CharField(max_length=20, choices=OrderStatus.CHOICES, default=OrderStatus.PENDING, db_index=True)

    # Timestamps
    created_at = models.DateTimeField()
    accepted_at = models.DateTimeField(null=True, blank=True)
    arrived_at = models.DateTimeField(null=True, blank=True)
    started_at = models.DateTimeField(null=True, blank=True)
    completed_at = models.DateTimeField(null=True, blank=True)
    cancelled_at = models.DateTimeField(null=True, blank=True)

    # Client-computed estimates
    estimated_distance_km = models.DecimalField(max_digits=10, decimal_places=2, null=True, blank=True)
    estimated_duration_min = models.PositiveIntegerField(null=True, blank=True)
    estimated_price = models.DecimalField(max_digits=10, decimal_places=2, null=True, blank=True)

    # Actuals, set on completion
    actual_distance_km = models.DecimalField(max_digits=10, decimal_places=2, null=True, blank=True)
    actual_duration_min = models.PositiveIntegerField(null=True, blank=True)
    final_price = models.DecimalField(max_digits=10, decimal_places=2, null=True, blank=True)

    cancelled_by = models.CharField(max_length=64, null=True, blank=True)
    cancel_reason = models.TextField(blank=True, default='')
    passenger_note = models.TextField(blank=True, default='')

    # Dispatch
    offer_round = models.PositiveIntegerField(default=0)
    offered_at = models.DateTimeField(null=True, blank=True)

    version = models.PositiveIntegerField(default=1)
    updated_at = models.DateTimeField()

    class Meta:
        db_table = 'orders'
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['status', 'offered_at'], name='orders_status_offered_idx'),
        ]

    def __str__(self):
        return f"Order {self.order_number} - {self.passenger_id} - {self.status}"


class OrderOffer(models.Model):
    """Which drivers were offered the order, per offer round (0 = closest driver)."""

    order = models.ForeignKey(
        Order,
        on_delete=models.CASCADE,
        related_name='offers'
    )
    driver_id = models.CharField(max_length=64)
    offer_round = models.PositiveIntegerField()
    rank = models.PositiveIntegerField()
    distance_km = models.FloatField()
    sent_at = models.DateTimeField()

    class Meta:
        db_table = 'order_offers'
        ordering = ['offer_round', 'rank']
        constraints = [
            models.UniqueConstraint(
                fields=['order', 'offer_round', 'driver_id'],
                name='unique_order_round_driver'
            )
        ]

    def __str__(self):
        return f"Offer #{self.id} - Order {self.order_id} round {self.offer_round} -> Driver {self.driver_id}"


class TrackPoint(models.Model):
    """Append-only driver position history of one order."""

    order = models.ForeignKey(
        Order,
        on_delete=models.CASCADE,
        related_name='track_points'
    )
    driver_id = models.CharField(max_length=64)
    latitude = models.FloatField()
    longitude = models.FloatField()
    accuracy = models.FloatField(null=True, blank=True)
    speed = models.FloatField(null=True, blank=True)
    bearing = models.FloatField(null=True, blank=True)
    timestamp = models.DateTimeField()
    received_at = models.DateTimeField()

    class Meta:
        db_table = 'order_track_points'
        ordering = ['timestamp', 'id']

    def __str__(self):
        return f"Track point {self.latitude},{self.longitude} - Order {self.order_id}"
