from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from drivers.serializers import (
    DriverAvailabilitySerializer,
    DriverStatusSerializer,
    NearbyOrderSerializer,
    PendingOrdersQuerySerializer,
)
from orders.permissions import IsDriver
from orders.serializers import OrderSnapshotSerializer
from services.order_lifecycle.exceptions import InvalidInput
from services.order_lifecycle.types import DriverStatus, Location, OrderStatus
from services.wiring import get_services


class DriverStatusView(APIView):
    permission_classes = [IsAuthenticated, IsDriver]

    def get(self, request):
        record = get_services().availability.get_status(request.user.id)
        return Response(DriverAvailabilitySerializer(record).data)

    def put(self, request):
        serializer = DriverStatusSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        new_status = serializer.validated_data["status"]

        availability = get_services().availability
        if new_status == DriverStatus.ONLINE:
            record = availability.go_online(request.user.id)
        else:
            record = availability.go_offline(request.user.id)

        return Response({
            "message": f"Status updated to {record.status}",
            **DriverAvailabilitySerializer(record).data,
        })


#    HTTP fallback for the websocket "location" message.
class DriverLocationUpdateView(APIView):
    permission_classes = [IsAuthenticated, IsDriver]

    def post(self, request):
        published = get_services().availability.report_location(
            request.user.id,
            request.data,
            order_id=request.data.get("order_id"),
        )
        if published is None:
            return Response({"published": False, "message": "Location not published"})

        return Response({
            "published": True,
            "latitude": published.latitude,
            "longitude": published.longitude,
        })


class DriverCurrentOrderView(APIView):
    permission_classes = [IsAuthenticated, IsDriver]

    def get(self, request):
        order = get_services().state_machine.current_order_for_driver(request.user.id)
        if not order:
            return Response({"message": "No active order"}, status=404)

        return Response(OrderSnapshotSerializer(order).data)


class DriverOrderHistoryView(APIView):
    permission_classes = [IsAuthenticated, IsDriver]

    def get(self, request):
        completed = get_services().state_machine.orders_for_driver(request.user.id, OrderStatus.COMPLETED)
        serialized = OrderSnapshotSerializer(completed, many=True).data

        return Response({"count": len(serialized), "orders": serialized})


class DriverPendingOrdersView(APIView):
    """
    GET: Pending orders near the driver, closest pickup first.

    Lets a driver refresh after losing a claim or missing an offer push.
    """
    permission_classes = [IsAuthenticated, IsDriver]

    def get(self, request):
        query = PendingOrdersQuerySerializer(data=request.query_params)
        query.is_valid(raise_exception=True)
        params = query.validated_data

        services = get_services()
        if "latitude" in params:
            here = Location(params["latitude"], params["longitude"])
        else:
            record = services.availability.get_status(request.user.id)
            if not record.has_position:
                raise InvalidInput(
                    f"Driver {request.user.id} has no known position",
                    user_message="Share your location to see nearby orders.",
                )
            here = Location(record.latitude, record.longitude)

        radius_km = params.get("radius_km", services.coordinator.search_radius_km)
        nearby = services.state_machine.pending_orders_near(here, radius_km=radius_km, limit=params["limit"])
        serialized = NearbyOrderSerializer(nearby, many=True).data

        return Response({"count": len(serialized), "radius_km": radius_km, "orders": serialized})
