"""Client for the external identity provider's admin API."""
from __future__ import annotations

import logging
from typing import Optional

import httpx

logger = logging.getLogger("agency_console.identity")


class IdentityProviderError(RuntimeError):
    """Raised when the identity provider rejects or fails a request."""

    retryable = True


class IdentityProviderClient:
    """Revokes login credentials held by the identity provider.

    The provider exposes ``DELETE {base_url}/auth/v1/admin/users/{user_id}``
    authenticated with a service-role key.
    """

    def __init__(
        self,
        base_url: str,
        service_key: str,
        *,
        timeout: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        cleaned = base_url.strip().rstrip("/")
        if not cleaned:
            raise ValueError("Identity provider URL must not be empty")
        if not service_key:
            raise ValueError("Identity provider service key must not be empty")
        self._base_url = cleaned
        self._client = httpx.Client(
            base_url=cleaned,
            timeout=timeout,
            transport=transport,
            headers={
                "apikey": service_key,
                "Authorization": f"Bearer {service_key}",
            },
        )

    @property
    def base_url(self) -> str:
        return self._base_url

    def delete_user(self, user_id: str) -> None:
        """Delete the credential for ``user_id``; an already-missing user is fine."""

        try:
            response = self._client.delete(f"/auth/v1/admin/users/{user_id}")
        except httpx.HTTPError as exc:
            raise IdentityProviderError(f"Failed to contact identity provider: {exc}") from exc

        if response.status_code == 404:
            logger.info("Identity provider had no credential for %s", user_id)
            return
        if response.status_code >= 400:
            detail = response.text.strip() or response.reason_phrase
            raise IdentityProviderError(
                f"Identity provider responded with {response.status_code}: {detail}"
            )
        logger.info("Revoked identity provider credential for %s", user_id)

    def close(self) -> None:
        self._client.close()


__all__ = ["IdentityProviderClient", "IdentityProviderError"]
