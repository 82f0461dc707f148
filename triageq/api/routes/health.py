"""Health check endpoint for the TriageQ API.

Provides a liveness check for Cloud Run monitoring.
"""

from __future__ import annotations

import os
from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter

from triageq.config import APP_VERSION
from triageq.observability.telemetry import get_p95

router = APIRouter(tags=["health"])


@router.get("/health")
def health_check() -> dict[str, Any]:
    """Health check endpoint.

    Returns service status, version, credential readiness for Vertex AI
    (presence only, no API call) and recent workflow latency.
    """
    has_project = bool(os.getenv("GOOGLE_CLOUD_PROJECT"))

    return {
        "status": "healthy",
        "service": "TriageQ API",
        "version": APP_VERSION,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "llm": {
            "ready": has_project,
            "google_cloud_project": has_project,
        },
        "workflow": {
            "run_p95_seconds": round(get_p95("workflow.run.latency"), 3),
        },
    }
