"""Authentication for the TriageQ trigger API"""

from __future__ import annotations

import secrets

from fastapi import Header, HTTPException, status

from triageq.config import API_KEY
from triageq.observability.logging import get_logger

logger = get_logger(__name__)


class APIKeyAuth:
    """
    Shared-secret authentication for trigger callers (mail webhooks, schedulers).

    The key is read from TRIAGEQ_API_KEY. Without it every request is accepted,
    which is only meant for local development.
    """

    def __init__(self, api_key: str | None = API_KEY):
        self.api_key = api_key
        if not self.api_key:
            logger.warning("TRIAGEQ_API_KEY not set - trigger endpoints are unprotected!")

    def verify_api_key(self, authorization: str | None) -> bool:
        """
        Verify API key from Authorization header.

        Expected format: "Bearer {api_key}"
        """
        if not self.api_key:
            return True

        if not authorization:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Missing authorization header",
                headers={"WWW-Authenticate": "Bearer"},
            )

        try:
            scheme, token = authorization.split()
            if scheme.lower() != "bearer":
                raise ValueError("Invalid authentication scheme")
        except ValueError as e:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid authorization header format. Expected: Bearer {api_key}",
                headers={"WWW-Authenticate": "Bearer"},
            ) from e

        # Timing-safe comparison
        if not secrets.compare_digest(token, self.api_key):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Invalid API key",
            )

        return True


auth = APIKeyAuth()


def require_api_key(authorization: str | None = Header(None)) -> bool:
    """
    Dependency for endpoints that require the trigger API key.

    Usage:
        @router.post("/api/triage/batches")
        def trigger(authenticated: bool = Depends(require_api_key)):
            ...
    """
    return auth.verify_api_key(authorization)
