"""FastAPI server for TriageQ"""

from __future__ import annotations

from typing import Any

from dotenv import load_dotenv
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from triageq.api.middleware.request_telemetry import RequestTelemetryMiddleware
from triageq.api.routes.health import router as health_router
from triageq.api.routes.triage import router as triage_router
from triageq.config import API_HOST, API_PORT, APP_VERSION, DEBUG
from triageq.observability.logging import get_logger
from triageq.observability.telemetry import counter, log_event
from triageq.utils.redaction import redact

# Load environment variables from .env file
load_dotenv()

app = FastAPI(title="TriageQ API", version=APP_VERSION)

logger = get_logger(__name__)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """
    Reject malformed trigger input with 400 without leaking validation internals.
    """
    logger.warning("Validation error on %s: %s", redact(str(request.url)), exc.errors())
    counter("api.validation_errors")

    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={
            "detail": "Invalid request format. Please check your request and try again.",
            "error_count": len(exc.errors()),
            "invalid_fields": [str(err["loc"][-1]) for err in exc.errors()],
        },
    )


app.add_middleware(RequestTelemetryMiddleware)

app.include_router(health_router)
app.include_router(triage_router)

log_event("api.startup", service="triageq", version=APP_VERSION)


@app.get("/")
def root() -> dict[str, Any]:
    return {
        "service": "TriageQ API",
        "version": APP_VERSION,
        "status": "running",
        "endpoints": {
            "health": "/health",
            "trigger": "/api/triage/batches",
            "status": "/api/triage/batches/{batch_id}?user_id=",
        },
    }


def main() -> None:
    """Run the API under uvicorn."""
    import uvicorn

    uvicorn.run("triageq.api.app:app", host=API_HOST, port=API_PORT, reload=DEBUG)


if __name__ == "__main__":
    main()
