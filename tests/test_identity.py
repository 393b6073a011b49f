from __future__ import annotations

import asyncio

import httpx
import pytest

from hubot_relay.errors import AuthError
from hubot_relay.identity import IdentityResolver, bearer_token

from conftest import make_identity


def test_bearer_token_parsing():
    assert bearer_token(None) is None
    assert bearer_token("  ") is None
    assert bearer_token("Bearer abc") == "abc"
    assert bearer_token("bearer abc") == "abc"
    with pytest.raises(AuthError):
        bearer_token("Token abc")
    with pytest.raises(AuthError):
        bearer_token("Bearer")


def test_missing_credential_is_anonymous(identity):
    assert asyncio.run(identity.resolve(None)) is None


def test_valid_token_yields_email(identity):
    assert asyncio.run(identity.resolve("Bearer token-alice")) == "alice@x.com"
    assert asyncio.run(identity.require("Bearer token-bob")) == "bob@x.com"


def test_invalid_token_is_auth_error(identity):
    with pytest.raises(AuthError, match="Invalid or expired"):
        asyncio.run(identity.resolve("Bearer expired"))


def test_require_rejects_anonymous(identity):
    with pytest.raises(AuthError, match="Authentication required"):
        asyncio.run(identity.require(None))


def test_disabled_verification_treats_everyone_as_anonymous(caplog):
    resolver = make_identity(enabled=False)
    assert resolver.enabled is False
    assert asyncio.run(resolver.resolve("Bearer token-alice")) is None
    with pytest.raises(AuthError, match="not configured"):
        asyncio.run(resolver.require("Bearer token-alice"))
    assert "token verification disabled" in caplog.text


def test_unreachable_identity_service_is_auth_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("down", request=request)

    resolver = IdentityResolver("k", client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
    with pytest.raises(AuthError, match="Could not verify"):
        asyncio.run(resolver.resolve("Bearer token-alice"))


def test_user_without_email_falls_back_to_local_id():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"users": [{"localId": "uid-42"}]})

    resolver = IdentityResolver("k", client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
    assert asyncio.run(resolver.resolve("Bearer t")) == "uid-42"
