"""Request correlation and payload guard middleware.

``RequestIdMiddleware`` gives every request an id: the incoming
``X-Request-Id`` header when the client (or the load balancer) sent one,
a fresh UUIDv4 otherwise. The id is stored on ``request.request_id`` and
in ``REQUEST_ID_CTX`` so log records and outgoing HTTP calls made while
serving the request carry it, and it is echoed back in ``X-Request-ID``.

``ApiSizeLimitMiddleware`` refuses oversized bodies on ``/api/`` before
any view parses them.
"""

import contextvars
import os
import re
import uuid

from django.http import JsonResponse
from django.utils.deprecation import MiddlewareMixin

REQUEST_ID_CTX = contextvars.ContextVar("request_id", default="-")
MAX_API_BYTES = int(os.getenv("API_MAX_BYTES", str(1 * 1024 * 1024)))

# ids are echoed into headers and logs, so only accept a conservative charset
_VALID_RID = re.compile(r"[A-Za-z0-9._-]{1,128}")


class RequestIdMiddleware(MiddlewareMixin):
    HEADER = "HTTP_X_REQUEST_ID"
    RESPONSE_HEADER = "X-Request-ID"

    def process_request(self, request):
        rid = request.META.get(self.HEADER, "")
        if not _VALID_RID.fullmatch(rid):
            rid = str(uuid.uuid4())
        request.request_id = rid
        request._request_id_token = REQUEST_ID_CTX.set(rid)

    def process_response(self, request, response):
        rid = getattr(request, "request_id", REQUEST_ID_CTX.get())
        response[self.RESPONSE_HEADER] = rid
        token = getattr(request, "_request_id_token", None)
        if token is not None:
            # gthread workers reuse threads; do not leak the id into the next request
            REQUEST_ID_CTX.reset(token)
        return response


class ApiSizeLimitMiddleware(MiddlewareMixin):
    def process_request(self, request):
        if request.path.startswith("/api/"):
            clen = request.META.get("CONTENT_LENGTH")
            if clen and clen.isdigit() and int(clen) > MAX_API_BYTES:
                return JsonResponse({"detail": "PAYLOAD_TOO_LARGE"}, status=413)
