from django.urls import include, path

from .views import health_check

urlpatterns = [
    path("health/", health_check),  # Health check endpoint

    # Order APIs (create, claim, lifecycle steps, cancel, track)
    path('api/orders/', include('orders.urls')),

    # Driver APIs (availability, location, current order, history)
    path('api/driver/', include('drivers.urls')),
]
