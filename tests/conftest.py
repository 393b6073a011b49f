"""Pytest configuration and shared fixtures."""
from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import httpx
import pytest

# Ensure src/ is on the import path (for local imports without installing as package)
SRC_PATH = Path(__file__).resolve().parent.parent / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from hubot_relay.errors import UpstreamError  # noqa: E402
from hubot_relay.identity import IdentityResolver  # noqa: E402
from hubot_relay.store import ConversationStore, MemoryDocumentStore  # noqa: E402

TOKENS = {
    "token-alice": "alice@x.com",
    "token-bob": "bob@x.com",
}


class FakeGateway:
    """Completion gateway double that records every call."""

    def __init__(self, reply: str = "ok", *, fail: Optional[Exception] = None) -> None:
        self.reply = reply
        self.fail = fail
        self.calls: List[Tuple[str, str, str]] = []

    async def complete(self, message: str, *, knowledge_base: str = "", system_prompt: str = "") -> str:
        self.calls.append((message, knowledge_base, system_prompt))
        if self.fail is not None:
            raise self.fail
        return self.reply


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def _lookup_handler(request: httpx.Request) -> httpx.Response:
    token = json.loads(request.content or b"{}").get("idToken")
    email = TOKENS.get(token)
    if email is None:
        return httpx.Response(400, json={"error": {"message": "INVALID_ID_TOKEN"}})
    return httpx.Response(200, json={"users": [{"localId": token, "email": email}]})


def make_identity(enabled: bool = True) -> IdentityResolver:
    client = httpx.AsyncClient(transport=httpx.MockTransport(_lookup_handler))
    return IdentityResolver("test-key" if enabled else None, client=client)


def auth(token: str) -> Dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture(scope="session")
def project_root() -> Path:
    """Return the root directory of the project."""
    return Path(__file__).resolve().parent.parent


@pytest.fixture(scope="function")
def gateway() -> FakeGateway:
    return FakeGateway(reply="ok")


@pytest.fixture(scope="function")
def failing_gateway() -> FakeGateway:
    return FakeGateway(fail=UpstreamError("Completion service returned 503: overloaded"))


@pytest.fixture(scope="function")
def identity() -> IdentityResolver:
    return make_identity()


@pytest.fixture(scope="function")
def db() -> MemoryDocumentStore:
    return MemoryDocumentStore()


@pytest.fixture(scope="function")
def conversations(db: MemoryDocumentStore) -> ConversationStore:
    return ConversationStore(db)


@pytest.fixture(scope="function")
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture(scope="function")
def clean_env(monkeypatch: pytest.MonkeyPatch):
    """Ensure tests run with a clean environment (no leftover vars)."""
    for var in [
        "HUBOT_RELAY_CONFIG",
        "OPENAI_API_KEY",
        "OPENAI_BASE_URL",
        "OPENAI_MODEL",
        "FIREBASE_API_KEY",
        "FIREBASE_DATABASE_URL",
        "FIREBASE_DATABASE_SECRET",
        "PORT",
        "LOG_LEVEL",
    ]:
        monkeypatch.delenv(var, raising=False)
    yield
