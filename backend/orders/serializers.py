from decimal import Decimal

from rest_framework import serializers

from services.order_lifecycle.types import OrderType, ServiceType


class LocationSerializer(serializers.Serializer):
    """Serializer for an order endpoint"""
    latitude = serializers.FloatField()
    longitude = serializers.FloatField()
    address = serializers.CharField(allow_blank=True)
    poi_id = serializers.CharField(allow_null=True)


class OrderSnapshotSerializer(serializers.Serializer):
    """Serializer for the full state of an order (fan-out payload)"""
    order_id = serializers.CharField()
    order_number = serializers.CharField()
    passenger_id = serializers.CharField()
    driver_id = serializers.CharField(allow_null=True)
    pickup = LocationSerializer()
    dropoff = LocationSerializer()
    order_type = serializers.CharField()
    service_type = serializers.CharField()
    status = serializers.CharField()
    scheduled_time = serializers.DateTimeField(allow_null=True)
    created_at = serializers.DateTimeField()
    accepted_at = serializers.DateTimeField(allow_null=True)
    arrived_at = serializers.DateTimeField(allow_null=True)
    started_at = serializers.DateTimeField(allow_null=True)
    completed_at = serializers.DateTimeField(allow_null=True)
    cancelled_at = serializers.DateTimeField(allow_null=True)
    estimated_distance_km = serializers.DecimalField(max_digits=10, decimal_places=2, allow_null=True)
    estimated_duration_min = serializers.IntegerField(allow_null=True)
    estimated_price = serializers.DecimalField(max_digits=10, decimal_places=2, allow_null=True)
    actual_distance_km = serializers.DecimalField(max_digits=10, decimal_places=2, allow_null=True)
    actual_duration_min = serializers.IntegerField(allow_null=True)
    final_price = serializers.DecimalField(max_digits=10, decimal_places=2, allow_null=True)
    cancelled_by = serializers.CharField(allow_null=True)
    cancel_reason = serializers.CharField(allow_blank=True)
    passenger_note = serializers.CharField(allow_blank=True)
    offer_round = serializers.IntegerField()
    version = serializers.IntegerField()
    updated_at = serializers.DateTimeField()


class CreateOrderSerializer(serializers.Serializer):
    """Serializer for validating a new trip request"""
    pickup_latitude = serializers.FloatField(min_value=-90, max_value=90)
    pickup_longitude = serializers.FloatField(min_value=-180, max_value=180)
    pickup_address = serializers.CharField(required=False, allow_blank=True, default="")
    pickup_poi_id = serializers.CharField(required=False, allow_null=True, allow_blank=True, default=None)

    dropoff_latitude = serializers.FloatField(min_value=-90, max_value=90)
    dropoff_longitude = serializers.FloatField(min_value=-180, max_value=180)
    dropoff_address = serializers.CharField(required=False, allow_blank=True, default="")
    dropoff_poi_id = serializers.CharField(required=False, allow_null=True, allow_blank=True, default=None)

    order_type = serializers.ChoiceField(choices=OrderType.CHOICES, default=OrderType.IMMEDIATE)
    service_type = serializers.ChoiceField(choices=ServiceType.CHOICES, default=ServiceType.STANDARD)
    scheduled_time = serializers.DateTimeField(required=False, allow_null=True, default=None)

    # Client-computed estimates
    estimated_distance_km = serializers.DecimalField(
        max_digits=10, decimal_places=2, min_value=Decimal("0"), required=False, allow_null=True, default=None
    )
    estimated_duration_min = serializers.IntegerField(min_value=0, required=False, allow_null=True, default=None)
    estimated_price = serializers.DecimalField(
        max_digits=10, decimal_places=2, min_value=Decimal("0"), required=False, allow_null=True, default=None
    )

    passenger_note = serializers.CharField(required=False, allow_blank=True, default="", max_length=500)

    def validate(self, attrs):
        if attrs["order_type"] == OrderType.SCHEDULED and attrs.get("scheduled_time") is None:
            raise serializers.ValidationError({"scheduled_time": "Scheduled orders need a scheduled_time."})
        if attrs["order_type"] == OrderType.IMMEDIATE:
            attrs["scheduled_time"] = None
        return attrs


class CompleteOrderSerializer(serializers.Serializer):
    """Serializer for the actuals reported when a trip ends"""
    final_price = serializers.DecimalField(max_digits=10, decimal_places=2, min_value=Decimal("0"))
    actual_distance_km = serializers.DecimalField(max_digits=10, decimal_places=2, min_value=Decimal("0"))
    actual_duration_min = serializers.IntegerField(min_value=0)


class LocationFixSerializer(serializers.Serializer):
    """Serializer for one raw position fix sent by a driver device"""
    latitude = serializers.FloatField(min_value=-90, max_value=90)
    longitude = serializers.FloatField(min_value=-180, max_value=180)
    timestamp = serializers.DateTimeField()
    accuracy = serializers.FloatField(required=False, allow_null=True, default=None)
    speed = serializers.FloatField(required=False, allow_null=True, default=None)
    bearing = serializers.FloatField(required=False, allow_null=True, default=None)


class TrackPointSerializer(serializers.Serializer):
    order_id = serializers.CharField()
    driver_id = serializers.CharField()
    latitude = serializers.FloatField()
    longitude = serializers.FloatField()
    accuracy = serializers.FloatField(allow_null=True)
    speed = serializers.FloatField(allow_null=True)
    bearing = serializers.FloatField(allow_null=True)
    timestamp = serializers.DateTimeField()
    received_at = serializers.DateTimeField()
