"""
Composition root for the API process.

Builds one TriageWorkflow wired to the real adapters (SQLite, Gmail, Gemini,
Expo). Tests replace `get_workflow` through FastAPI dependency overrides.
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from triageq.config import USER_DIRECTORY_PATH
from triageq.gmail.client import GmailMessageSource
from triageq.gmail.fetcher import MailFetcher
from triageq.infrastructure.database import get_database
from triageq.infrastructure.settings import PROJECT_ROOT
from triageq.infrastructure.user_directory import YamlUserDirectory
from triageq.observability.logging import get_logger
from triageq.storage.checkpoint import CheckpointStore
from triageq.storage.message_store import MessageStore
from triageq.triage.filters import SubscriptionFilter
from triageq.triage.notifications import ExpoPushGateway
from triageq.triage.summarizer import Summarizer
from triageq.triage.workflow import TriageWorkflow

logger = get_logger(__name__)


@lru_cache(maxsize=1)
def get_user_directory() -> YamlUserDirectory:
    path = Path(USER_DIRECTORY_PATH) if USER_DIRECTORY_PATH else PROJECT_ROOT / "config" / "users.yaml"
    return YamlUserDirectory(path)


@lru_cache(maxsize=1)
def get_workflow() -> TriageWorkflow:
    """
    Get or create the process-wide workflow.

    Side Effects:
        - Opens the database pool and initializes the schema on first call
    """
    db = get_database()
    store = MessageStore(db)
    directory = get_user_directory()

    workflow = TriageWorkflow(
        store=store,
        checkpoints=CheckpointStore(db),
        fetcher=MailFetcher(store, GmailMessageSource(directory)),
        summarizer=Summarizer(),
        subscription_filter=SubscriptionFilter(store),
        gateway=ExpoPushGateway(directory),
        user_lookup=directory.exists,
    )
    logger.info("Triage workflow initialized (db=%s)", db.path)
    return workflow
