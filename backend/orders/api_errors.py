"""Maps dispatch errors onto HTTP responses for the REST API."""

from rest_framework import status
from rest_framework.response import Response
from rest_framework.views import exception_handler

from services.order_lifecycle.exceptions import (
    DependencyUnavailable,
    DispatchError,
    InvalidInput,
    NotFound,
    PreconditionFailed,
    Unauthorized,
)

STATUS_CODES = {
    InvalidInput: status.HTTP_400_BAD_REQUEST,
    NotFound: status.HTTP_404_NOT_FOUND,
    PreconditionFailed: status.HTTP_409_CONFLICT,
    Unauthorized: status.HTTP_403_FORBIDDEN,
    DependencyUnavailable: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def dispatch_exception_handler(exc, context):
    if not isinstance(exc, DispatchError):
        return exception_handler(exc, context)

    code = status.HTTP_500_INTERNAL_SERVER_ERROR
    for error_class, status_code in STATUS_CODES.items():
        if isinstance(exc, error_class):
            code = status_code
            break

    body = exc.as_dict()
    if exc.details:
        body["errors"] = exc.details
    return Response(body, status=code)
