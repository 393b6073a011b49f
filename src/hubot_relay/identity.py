"""Bearer-token identity resolution against Firebase Authentication."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from .errors import AuthError

logger = logging.getLogger(__name__)

LOOKUP_URL = "https://identitytoolkit.googleapis.com/v1/accounts:lookup"
TIMEOUT = httpx.Timeout(10.0, connect=5.0)


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    """Token from an ``Authorization`` header; None when no credential was sent."""
    if authorization is None or not authorization.strip():
        return None
    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise AuthError("Malformed authorization header")
    return parts[1]


class IdentityResolver:
    """Verifies ID tokens and yields the user's email.

    Without an API key verification is disabled: every caller is anonymous and
    routes that need a verified identity answer 401.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        *,
        lookup_url: str = LOOKUP_URL,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._api_key = api_key or None
        self.lookup_url = lookup_url
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=TIMEOUT)
        if not self.enabled:
            logger.warning("Identity service credentials missing; token verification disabled")

    @property
    def enabled(self) -> bool:
        return self._api_key is not None

    async def resolve(self, authorization: Optional[str]) -> Optional[str]:
        """Verified identifier, or None for anonymous callers. Raises AuthError on a bad token."""
        token = bearer_token(authorization)
        if token is None:
            return None
        if not self.enabled:
            logger.debug("Ignoring bearer token: verification disabled")
            return None
        return await self._verify(token)

    async def require(self, authorization: Optional[str]) -> str:
        if not self.enabled:
            raise AuthError("Authentication is not configured on this server")
        identifier = await self.resolve(authorization)
        if identifier is None:
            raise AuthError("Authentication required")
        return identifier

    async def _verify(self, token: str) -> str:
        try:
            r = await self._client.post(
                self.lookup_url,
                params={"key": self._api_key},
                json={"idToken": token},
            )
        except httpx.HTTPError as e:
            logger.warning("Identity service unreachable: %s", e)
            raise AuthError("Could not verify credential") from e

        if r.status_code != 200:
            raise AuthError("Invalid or expired token")
        try:
            users = r.json().get("users") or []
        except (ValueError, AttributeError) as e:
            raise AuthError("Invalid or expired token") from e
        if not users:
            raise AuthError("Invalid or expired token")
        identifier = _identifier(users[0])
        if not identifier:
            raise AuthError("Token carries no user identifier")
        return identifier

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


def _identifier(user: Dict[str, Any]) -> Optional[str]:
    return user.get("email") or user.get("localId")
