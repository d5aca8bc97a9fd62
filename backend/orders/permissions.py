from rest_framework.permissions import BasePermission

from services.order_lifecycle.types import Role


class IsPassenger(BasePermission):
    """Allows access only to callers with role == 'passenger'."""
    def has_permission(self, request, view):
        user = getattr(request, "user", None)
        if not user or not user.is_authenticated:
            return False
        return getattr(user, "role", None) == Role.PASSENGER


class IsDriver(BasePermission):
    """Allows access only to callers with role == 'driver'."""
    def has_permission(self, request, view):
        user = getattr(request, "user", None)
        if not user or not user.is_authenticated:
            return False
        return getattr(user, "role", None) == Role.DRIVER
