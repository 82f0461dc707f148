"""Request telemetry middleware for the TriageQ API

Tags every response with an X-Request-ID (echoing the caller's when present),
records per-method latency and counts responses by status class.
"""

from __future__ import annotations

import uuid
from collections.abc import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from triageq.observability.telemetry import counter, time_block

REQUEST_ID_HEADER = "X-Request-ID"


class RequestTelemetryMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex[:16]

        with time_block(f"api.{request.method.lower()}.latency"):
            response = await call_next(request)

        counter(f"api.responses.{response.status_code // 100}xx")
        response.headers[REQUEST_ID_HEADER] = request_id
        return response
