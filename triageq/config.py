"""Centralized configuration for the TriageQ backend.

Re-exports everything from triageq.infrastructure.settings so provider settings
are importable from one place, then adds typed constants for the database,
workflow, LLM and push settings. Environment variable overrides use safe
defaults so the app starts without extra env configuration.
"""

from __future__ import annotations

import os

from triageq.infrastructure.settings import *  # noqa: F401, F403  re-export provider settings

# --- App ---
APP_VERSION: str = "1.0.0"

# --- Database ---
DB_PATH: str = os.getenv("TRIAGEQ_DB_PATH", "")
DB_POOL_SIZE: int = int(os.getenv("TRIAGEQ_DB_POOL_SIZE", "5"))
DB_POOL_TIMEOUT: float = float(os.getenv("TRIAGEQ_DB_POOL_TIMEOUT", "5.0"))
DB_CONNECT_TIMEOUT: float = float(os.getenv("TRIAGEQ_DB_CONNECT_TIMEOUT", "30.0"))
DB_TEMP_CONN_MAX: int = int(os.getenv("TRIAGEQ_DB_TEMP_CONN_MAX", "10"))
DB_RETRY_MAX: int = int(os.getenv("TRIAGEQ_DB_RETRY_MAX", "5"))
DB_RETRY_BASE_DELAY: float = float(os.getenv("TRIAGEQ_DB_RETRY_BASE_DELAY", "0.1"))
DB_RETRY_MAX_DELAY: float = float(os.getenv("TRIAGEQ_DB_RETRY_MAX_DELAY", "2.0"))
DB_RETRY_JITTER: float = float(os.getenv("TRIAGEQ_DB_RETRY_JITTER", "0.1"))

# --- Triage Workflow ---
HIGH_PRIORITY_THRESHOLD: int = int(os.getenv("TRIAGEQ_HIGH_PRIORITY_THRESHOLD", "70"))
STAGE_MAX_ATTEMPTS: int = int(os.getenv("TRIAGEQ_STAGE_MAX_ATTEMPTS", "3"))
STAGE_RETRY_BASE_DELAY: float = float(os.getenv("TRIAGEQ_STAGE_RETRY_BASE_DELAY", "0.5"))
BATCH_LEASE_SECONDS: int = int(os.getenv("TRIAGEQ_BATCH_LEASE_SECONDS", "900"))
BATCH_MAX_IDS: int = int(os.getenv("TRIAGEQ_BATCH_MAX_IDS", "500"))
REUSE_EXISTING_SUMMARIES: bool = (
    os.getenv("TRIAGEQ_REUSE_EXISTING_SUMMARIES", "true").lower() == "true"
)

# --- Mail Fetch ---
FETCH_MAX_WORKERS: int = int(os.getenv("TRIAGEQ_FETCH_MAX_WORKERS", "4"))
FETCH_TIMEOUT_SECONDS: float = float(os.getenv("TRIAGEQ_FETCH_TIMEOUT", "20"))
FETCH_MAX_RETRIES: int = int(os.getenv("TRIAGEQ_FETCH_MAX_RETRIES", "3"))
BODY_PREVIEW_CHARS: int = 500

# --- LLM ---
LLM_TIMEOUT_SECONDS: int = int(os.getenv("TRIAGEQ_LLM_TIMEOUT", "30"))
LLM_MAX_RETRIES: int = int(os.getenv("TRIAGEQ_LLM_MAX_RETRIES", "3"))
SUMMARIZE_MAX_WORKERS: int = int(os.getenv("TRIAGEQ_SUMMARIZE_MAX_WORKERS", "4"))
SUMMARIZE_BODY_CHARS: int = 2000

# --- Push Notifications ---
PUSH_TIMEOUT_SECONDS: float = float(os.getenv("TRIAGEQ_PUSH_TIMEOUT", "10"))
PUSH_MAX_RETRIES: int = int(os.getenv("TRIAGEQ_PUSH_MAX_RETRIES", "3"))

# --- API ---
USER_DIRECTORY_PATH: str = os.getenv("TRIAGEQ_USER_DIRECTORY_PATH", "")
API_KEY: str | None = os.getenv("TRIAGEQ_API_KEY")
