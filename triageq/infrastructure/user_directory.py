"""
File-backed user directory for the API composition root.

OAuth token exchange/refresh and push-token registration live outside this
service; whatever performs them writes the current tokens to a YAML file:

    users:
      user-123:
        email: jane@example.com
        gmail_access_token: ya29....
        push_tokens:
          - ExponentPushToken[xxxx]

The directory answers the three questions the workflow asks: does this user
exist, how do I reach their mailbox, and which devices do I notify.
"""

from __future__ import annotations

import threading
from pathlib import Path
from typing import Any

import yaml
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build

from triageq.observability.logging import get_logger
from triageq.utils.redaction import redact

logger = get_logger(__name__)


class YamlUserDirectory:
    """Implements GmailServiceProvider and PushTokenDirectory over a YAML file."""

    def __init__(self, path: Path):
        self.path = path
        self._lock = threading.Lock()
        self._users: dict[str, dict[str, Any]] = {}
        self._mtime: float | None = None
        self._reload_if_changed()

    def _reload_if_changed(self) -> None:
        with self._lock:
            if not self.path.exists():
                if self._mtime is not None:
                    logger.warning("User directory %s disappeared", self.path)
                self._users, self._mtime = {}, None
                return

            mtime = self.path.stat().st_mtime
            if mtime == self._mtime:
                return

            with open(self.path) as f:
                data = yaml.safe_load(f) or {}
            self._users = {str(k): v or {} for k, v in (data.get("users") or {}).items()}
            self._mtime = mtime
            logger.info("Loaded %d users from %s", len(self._users), self.path)

    def _user(self, user_id: str) -> dict[str, Any] | None:
        self._reload_if_changed()
        return self._users.get(user_id)

    def exists(self, user_id: str) -> bool:
        return self._user(user_id) is not None

    def tokens_for(self, user_id: str) -> list[str]:
        user = self._user(user_id) or {}
        return [str(t) for t in user.get("push_tokens") or [] if t]

    def build_gmail_service(self, user_id: str) -> Any:
        """
        Build authenticated Gmail API service

        Raises:
            ValueError: If the user has no access token
        """
        user = self._user(user_id) or {}
        token = user.get("gmail_access_token")
        if not token:
            raise ValueError(f"No Gmail credentials for user {redact(user_id)}")

        credentials = Credentials(token=token)
        return build("gmail", "v1", credentials=credentials, cache_discovery=False)
