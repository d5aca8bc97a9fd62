from rest_framework import serializers

from orders.serializers import OrderSnapshotSerializer
from services.order_lifecycle.types import DriverStatus


class DriverAvailabilitySerializer(serializers.Serializer):
    """Serializer for a driver's availability record"""
    driver_id = serializers.CharField()
    status = serializers.CharField()
    latitude = serializers.FloatField(allow_null=True)
    longitude = serializers.FloatField(allow_null=True)
    last_location_update = serializers.DateTimeField(allow_null=True)
    rating = serializers.DecimalField(max_digits=3, decimal_places=2)
    total_orders = serializers.IntegerField()


class DriverStatusSerializer(serializers.Serializer):
    """Serializer for a driver's online/offline toggle; busy is never set by the driver"""
    status = serializers.ChoiceField(choices=[
        (DriverStatus.ONLINE, "Online"),
        (DriverStatus.OFFLINE, "Offline"),
    ])


class PendingOrdersQuerySerializer(serializers.Serializer):
    """Query of the pending-orders list; without coordinates the driver's last position is used"""
    latitude = serializers.FloatField(min_value=-90, max_value=90, required=False)
    longitude = serializers.FloatField(min_value=-180, max_value=180, required=False)
    radius_km = serializers.FloatField(min_value=0.1, max_value=50, required=False)
    limit = serializers.IntegerField(min_value=1, max_value=50, default=20)

    def validate(self, attrs):
        if ("latitude" in attrs) != ("longitude" in attrs):
            raise serializers.ValidationError("latitude and longitude must be given together")
        return attrs


class NearbyOrderSerializer(serializers.Serializer):
    order = OrderSnapshotSerializer()
    distance_km = serializers.FloatField()
