"""Trigger and status endpoints for the triage workflow.

Routes are plain ``def`` so FastAPI runs the blocking workflow in its
threadpool instead of on the event loop.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, ConfigDict, Field, field_validator

from triageq.api.dependencies import get_workflow
from triageq.api.middleware.auth import require_api_key
from triageq.config import BATCH_MAX_IDS
from triageq.observability.logging import get_logger
from triageq.observability.telemetry import counter
from triageq.storage.models import Batch
from triageq.triage.errors import (
    BatchInProgressError,
    LeaseLostError,
    StageFailedError,
    WorkflowCancelledError,
)
from triageq.triage.workflow import TriageWorkflow
from triageq.utils.redaction import redact

router = APIRouter(prefix="/api/triage", tags=["triage"])
logger = get_logger(__name__)


# ============================================================================
# Request/Response Models
# ============================================================================


class TriggerRequest(BaseModel):
    """One arrival batch, as sent by the mail sync trigger."""

    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(..., alias="userId", min_length=1, max_length=200)
    user_email: str = Field(default="", alias="userEmail", max_length=320)
    external_ids: list[str] = Field(..., alias="externalIds", min_length=1, max_length=BATCH_MAX_IDS)
    batch_id: str | None = Field(default=None, alias="batchId", max_length=200)

    @field_validator("user_id")
    @classmethod
    def _user_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("userId must not be blank")
        return value.strip()

    @field_validator("external_ids")
    @classmethod
    def _ids_not_blank(cls, value: list[str]) -> list[str]:
        ids = [v.strip() for v in value if v and v.strip()]
        if not ids:
            raise ValueError("externalIds must contain at least one id")
        return ids


class TriggerResponse(BaseModel):
    batchId: str
    stored: int
    summarized: int
    highPriorityCount: int
    notificationSent: bool


# ============================================================================
# Endpoints
# ============================================================================


@router.post("/batches", response_model=TriggerResponse)
def trigger_batch(
    request: TriggerRequest,
    workflow: TriageWorkflow = Depends(get_workflow),
    authenticated: bool = Depends(require_api_key),
) -> dict[str, Any]:
    """
    Run (or resume) the triage workflow for one batch.

    Returns 409 while another run owns the batch and 503 when a stage failed
    (the batch stays resumable by resubmitting it).
    """
    batch = Batch(
        batch_id=request.batch_id or "",
        user_id=request.user_id,
        user_email=request.user_email,
        external_ids=request.external_ids,
    )
    counter("api.triage.trigger")

    try:
        result = workflow.run(batch)
    except (BatchInProgressError, LeaseLostError):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Batch is already being processed",
        ) from None
    except (StageFailedError, WorkflowCancelledError) as e:
        logger.error("Batch %s did not complete: %s", batch.batch_id, e)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"Batch interrupted at stage '{e.stage}'; resubmit to resume",
        ) from None

    logger.info(
        "Batch %s for user %s finished: %s",
        batch.batch_id,
        redact(batch.user_id),
        result.to_dict(),
    )
    return {"batchId": batch.batch_id, **result.to_dict()}


@router.get("/batches/{batch_id}")
def get_batch_status(
    batch_id: str,
    user_id: str = Query(..., min_length=1),
    workflow: TriageWorkflow = Depends(get_workflow),
    authenticated: bool = Depends(require_api_key),
) -> dict[str, Any]:
    """Checkpoint status for one batch."""
    checkpoint = workflow.status(user_id, batch_id)
    if checkpoint is None:
        raise HTTPException(status_code=404, detail="Batch not found") from None

    return {
        "batchId": checkpoint.batch_id,
        "stage": checkpoint.stage,
        "status": checkpoint.status,
        "failedStage": checkpoint.failed_stage,
        "error": checkpoint.error,
        "attempts": checkpoint.attempts,
        "notificationClaimed": checkpoint.notification_claimed,
        "result": TriageWorkflow.result_from(checkpoint).to_dict(),
        "updatedAt": checkpoint.updated_at,
    }
