"""Security helpers for the console API."""
from __future__ import annotations

import secrets
from typing import Dict, Mapping

from fastapi import HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from .database import Database
from .models import Account, ApprovalStatus, AccountStatus, Role


class AdminTokenAuth:
    """Bearer token authentication for administrators.

    Each token maps to the ``user_id`` of the administrator acting with it.
    Tokens are compared in constant time and the mapped account must still be
    an approved, active admin.
    """

    def __init__(self, tokens: Mapping[str, str], database: Database) -> None:
        token_map: Dict[str, str] = {
            token.strip(): actor.strip() for token, actor in tokens.items() if token.strip() and actor.strip()
        }
        if not token_map:
            raise ValueError("At least one API token must be provided")
        self._tokens = token_map
        self._database = database
        self._bearer = HTTPBearer(auto_error=False)

    async def __call__(self, request: Request) -> Account:
        credentials: HTTPAuthorizationCredentials | None = await self._bearer(request)  # type: ignore[assignment]
        if credentials is None or credentials.scheme.lower() != "bearer":
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing bearer token")

        return self.authenticate(credentials.credentials)

    def authenticate(self, provided: str) -> Account:
        """Return the administrator behind ``provided`` or raise 403."""

        actor_id = None
        for token, candidate in self._tokens.items():
            if secrets.compare_digest(provided, token):
                actor_id = candidate
                break

        if actor_id is None:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid API token")

        actor = self._database.get_account(actor_id)
        if (
            actor is None
            or actor.role is not Role.ADMIN
            or actor.approval_status is not ApprovalStatus.APPROVED
            or actor.status is not AccountStatus.ACTIVE
        ):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Token does not belong to an active administrator",
            )
        return actor


__all__ = ["AdminTokenAuth"]
