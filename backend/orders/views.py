from rest_framework import status
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from orders.permissions import IsDriver, IsPassenger
from orders.serializers import OrderSnapshotSerializer, TrackPointSerializer
from services.order_lifecycle.exceptions import DependencyUnavailable, InvalidInput
from services.order_lifecycle.types import Role
from services.wiring import get_services


def _snapshot_response(order, status_code=status.HTTP_200_OK):
    return Response(OrderSnapshotSerializer(order).data, status=status_code)


class OrderListCreateView(APIView):
    """
    GET: Orders of the calling passenger or driver (optional ?status=).
    POST: Passenger creates an order; the first offer round opens right away.
    """
    permission_classes = [IsAuthenticated]

    def get(self, request):
        state_machine = get_services().state_machine
        caller = request.user.caller
        status_filter = request.query_params.get("status")

        if caller.role == Role.DRIVER:
            orders = state_machine.orders_for_driver(caller.user_id, status_filter)
        else:
            orders = state_machine.orders_for_passenger(caller.user_id, status_filter)

        serialized = OrderSnapshotSerializer(orders, many=True).data
        return Response({"count": len(serialized), "orders": serialized})

    def post(self, request):
        services = get_services()
        order = services.state_machine.create(request.user.caller, request.data)
        try:
            candidate_set = services.coordinator.open_for_offers(order.order_id)
        except DependencyUnavailable:
            # The offer sweep opens the first round once the lookup is back
            candidate_set = None

        found = len(candidate_set) if candidate_set is not None else 0
        return Response({
            "order": OrderSnapshotSerializer(services.state_machine.get(order.order_id)).data,
            "offer_round": candidate_set.offer_round if candidate_set is not None else 0,
            "candidates": found,
            "message": "Searching for nearby drivers..." if found else "No drivers nearby yet.",
        }, status=status.HTTP_201_CREATED)


class OrderDetailView(APIView):
    permission_classes = [IsAuthenticated]

    def get(self, request, order_id):
        order = get_services().state_machine.get(order_id)
        if request.user.id not in (order.passenger_id, order.driver_id):
            return Response({"error": "Not your order"}, status=status.HTTP_403_FORBIDDEN)
        return _snapshot_response(order)


class OrderAcceptView(APIView):
    """
    POST: Driver claims an order. Losing the race returns 409 with the reason.
    """
    permission_classes = [IsAuthenticated, IsDriver]

    def post(self, request, order_id):
        offer_round = request.data.get("offer_round")
        if offer_round is not None:
            try:
                offer_round = int(offer_round)
            except (TypeError, ValueError):
                raise InvalidInput("offer_round must be an integer")

        result = get_services().coordinator.attempt_claim(order_id, request.user.id, offer_round=offer_round)
        if not result.success:
            return Response(
                {"error": result.message, **result.error.as_dict()},
                status=status.HTTP_409_CONFLICT,
            )
        return _snapshot_response(result.order)


class OrderArriveView(APIView):
    permission_classes = [IsAuthenticated, IsDriver]

    def post(self, request, order_id):
        return _snapshot_response(get_services().state_machine.mark_arrived(order_id, request.user.caller))


class OrderStartView(APIView):
    permission_classes = [IsAuthenticated, IsDriver]

    def post(self, request, order_id):
        return _snapshot_response(get_services().state_machine.start_trip(order_id, request.user.caller))


class OrderCompleteView(APIView):
    permission_classes = [IsAuthenticated, IsDriver]

    def post(self, request, order_id):
        order = get_services().state_machine.complete(
            order_id,
            request.user.caller,
            final_price=request.data.get("final_price"),
            actual_distance_km=request.data.get("actual_distance_km"),
            actual_duration_min=request.data.get("actual_duration_min"),
        )
        return _snapshot_response(order)


class OrderCancelView(APIView):
    """
    POST: Passenger or assigned driver cancels; offered drivers are told.
    """
    permission_classes = [IsAuthenticated]

    def post(self, request, order_id):
        reason = request.data.get("reason", "") or ""
        order = get_services().coordinator.cancel(order_id, request.user.caller, str(reason))
        return _snapshot_response(order)


class OrderTrackView(APIView):
    permission_classes = [IsAuthenticated]

    def get(self, request, order_id):
        state_machine = get_services().state_machine
        order = state_machine.get(order_id)
        if request.user.id not in (order.passenger_id, order.driver_id):
            return Response({"error": "Not your order"}, status=status.HTTP_403_FORBIDDEN)

        points = TrackPointSerializer(state_machine.track_history(order_id), many=True).data
        return Response({"order_id": order.order_id, "count": len(points), "points": points})


class PassengerCurrentOrderView(APIView):
    permission_classes = [IsAuthenticated, IsPassenger]

    def get(self, request):
        orders = get_services().state_machine.orders_for_passenger(request.user.id)
        active = next((o for o in orders if o.is_active), None)
        if active is None:
            return Response({"has_active_order": False, "message": "No active order found"})
        return Response({"has_active_order": True, "order": OrderSnapshotSerializer(active).data})
