from django.urls import path

from .views import (
    OrderAcceptView,
    OrderArriveView,
    OrderCancelView,
    OrderCompleteView,
    OrderDetailView,
    OrderListCreateView,
    OrderStartView,
    OrderTrackView,
    PassengerCurrentOrderView,
)

app_name = "orders"

urlpatterns = [
    path("", OrderListCreateView.as_view(), name="order-list"),
    path("current/", PassengerCurrentOrderView.as_view(), name="current-order"),
    path("<str:order_id>/", OrderDetailView.as_view(), name="order-detail"),
    path("<str:order_id>/accept/", OrderAcceptView.as_view(), name="order-accept"),
    path("<str:order_id>/arrive/", OrderArriveView.as_view(), name="order-arrive"),
    path("<str:order_id>/start/", OrderStartView.as_view(), name="order-start"),
    path("<str:order_id>/complete/", OrderCompleteView.as_view(), name="order-complete"),
    path("<str:order_id>/cancel/", OrderCancelView.as_view(), name="order-cancel"),
    path("<str:order_id>/track/", OrderTrackView.as_view(), name="order-track"),
]
