"""Request-scoped middleware for the orders API.

``RequestIdMiddleware`` gives every request an identifier, taken from the
incoming ``X-Request-ID`` header or generated (UUIDv4). The id is stored on
the request, in ``REQUEST_ID_CTX`` for logging and outgoing HTTP calls, and
echoed back in the ``X-Request-ID`` response header.

``ApiSizeLimitMiddleware`` rejects ``/api/`` requests whose declared body
exceeds ``settings.API_MAX_BYTES`` with 413 before any view parses them.
"""

import contextvars
import uuid

from django.conf import settings
from django.http import JsonResponse
from django.utils.deprecation import MiddlewareMixin

REQUEST_ID_CTX = contextvars.ContextVar("request_id", default="-")


class RequestIdMiddleware(MiddlewareMixin):
    """Django middleware that sets and returns a per-request identifier.

    Attributes:
        HEADER (str): Incoming header in ``request.META`` casing.
        RESPONSE_HEADER (str): Header added to outgoing responses.
    """

    HEADER = "HTTP_X_REQUEST_ID"
    RESPONSE_HEADER = "X-Request-ID"

    def process_request(self, request):
        rid = request.META.get(self.HEADER) or str(uuid.uuid4())
        request.request_id = rid
        REQUEST_ID_CTX.set(rid)

    def process_response(self, request, response):
        rid = getattr(request, "request_id", None) or REQUEST_ID_CTX.get()
        response[self.RESPONSE_HEADER] = rid
        return response


class ApiSizeLimitMiddleware(MiddlewareMixin):
    def process_request(self, request):
        if not request.path.startswith("/api/"):
            return None
        clen = request.META.get("CONTENT_LENGTH")
        limit = getattr(settings, "API_MAX_BYTES", 1024 * 1024)
        if clen and clen.isdigit() and int(clen) > limit:
            return JsonResponse({"detail": "PAYLOAD_TOO_LARGE"}, status=413)
        return None
