from django.urls import path

from .views import (
    DriverCurrentOrderView,
    DriverLocationUpdateView,
    DriverOrderHistoryView,
    DriverPendingOrdersView,
    DriverStatusView,
)

urlpatterns = [
    path("status/", DriverStatusView.as_view(), name="driver-status"),
    path("location/", DriverLocationUpdateView.as_view(), name="driver-location"),
    path("current-order/", DriverCurrentOrderView.as_view(), name="driver-current-order"),
    path("history/", DriverOrderHistoryView.as_view(), name="driver-history"),
    path("pending-orders/", DriverPendingOrdersView.as_view(), name="driver-pending-orders"),
]
