"""TriageQ - Urgent-mail triage and push notification workflow"""

from __future__ import annotations

__version__ = "1.0.0"


# Lazy imports for the triage workflow
def __getattr__(name: str):
    """
    Lazy imports to avoid loading heavy dependencies when only importing lightweight modules.
    """
    if name in ("Batch", "MessageRecord", "SummaryRecord", "WorkflowCheckpoint"):
        from triageq.storage import models

        return getattr(models, name)

    if name in ("TriageWorkflow", "TriageResult"):
        from triageq.triage import workflow

        return getattr(workflow, name)

    msg = f"module {__name__!r} has no attribute {name!r}"
    raise AttributeError(msg)


__all__ = [
    "Batch",
    "MessageRecord",
    "SummaryRecord",
    "TriageResult",
    "TriageWorkflow",
    "WorkflowCheckpoint",
]
