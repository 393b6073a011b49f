"""Conversation persistence on top of a remote key/value document database."""
from __future__ import annotations

import asyncio
import copy
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Protocol, Tuple

import httpx

from .dedup import ANONYMOUS
from .errors import PersistenceError
from .models import ConversationEntry, current_entries, entry_dicts

logger = logging.getLogger(__name__)

TIMEOUT = httpx.Timeout(10.0, connect=5.0)


def user_key(identifier: Optional[str]) -> str:
    """Storage-safe key for a verified identifier: every '.' becomes '_'."""
    if not identifier:
        return ANONYMOUS
    return identifier.replace(".", "_")


def _split(path: str) -> List[str]:
    return [p for p in path.strip("/").split("/") if p]


# -----------------------------
# Document stores
# -----------------------------
class DocumentStore(Protocol):
    async def get(self, path: str) -> Any: ...

    async def set(self, path: str, value: Any) -> None: ...


class MemoryDocumentStore:
    """Nested-dict document store living in process memory.

    Values are deep-copied on the way in and out so callers never share
    structure with the store, the same as a remote round-trip.
    """

    def __init__(self, data: Optional[Dict[str, Any]] = None) -> None:
        self._root: Dict[str, Any] = copy.deepcopy(data) if data else {}

    async def get(self, path: str) -> Any:
        node: Any = self._root
        for part in _split(path):
            if not isinstance(node, dict) or part not in node:
                return None
            node = node[part]
        return copy.deepcopy(node)

    async def set(self, path: str, value: Any) -> None:
        parts = _split(path)
        if not parts:
            self._root = copy.deepcopy(value) if isinstance(value, dict) else {}
            return
        node = self._root
        for part in parts[:-1]:
            child = node.get(part)
            if not isinstance(child, dict):
                child = {}
                node[part] = child
            node = child
        if value is None:
            node.pop(parts[-1], None)
        else:
            node[parts[-1]] = copy.deepcopy(value)

    async def aclose(self) -> None:
        return None


class RealtimeDatabase:
    """Firebase Realtime Database REST client (``GET``/``PUT {url}/{path}.json``)."""

    def __init__(
        self,
        url: str,
        *,
        auth_token: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        if not url:
            raise ValueError("database url is required")
        self.url = url.rstrip("/")
        self._auth = auth_token
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout) if timeout else TIMEOUT
        )

    def _endpoint(self, path: str) -> str:
        return f"{self.url}/{'/'.join(_split(path))}.json"

    def _params(self) -> Dict[str, str]:
        return {"auth": self._auth} if self._auth else {}

    async def get(self, path: str) -> Any:
        try:
            r = await self._client.get(self._endpoint(path), params=self._params())
            r.raise_for_status()
            return r.json()
        except (httpx.HTTPError, ValueError) as e:
            raise PersistenceError(f"Database read failed for {path!r}: {e}") from e

    async def set(self, path: str, value: Any) -> None:
        try:
            r = await self._client.put(self._endpoint(path), params=self._params(), json=value)
            r.raise_for_status()
        except httpx.HTTPError as e:
            raise PersistenceError(f"Database write failed for {path!r}: {e}") from e

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


# -----------------------------
# Conversation store
# -----------------------------
def _as_list(value: Any) -> List[Any]:
    if value is None:
        return []
    if isinstance(value, list):
        return [v for v in value if v is not None]
    if isinstance(value, dict):
        # Firebase returns sparse arrays as objects keyed by index.
        try:
            return [value[k] for k in sorted(value, key=int)]
        except (TypeError, ValueError):
            return list(value.values())
    return []


class ConversationStore:
    """Read-modify-write access to one user's full conversation sequence.

    Layout:
        <root>/<user_key>   # list of entries, rewritten whole on every save

    ``append_exchange`` and ``rewrite`` are serialized per user key inside
    this process. Writers in other processes can still interleave.
    """

    def __init__(self, db: DocumentStore, *, root: str = "conversations") -> None:
        self.db = db
        self.root = root.strip("/")
        # key -> (lock, number of tasks holding or waiting on it)
        self._locks: Dict[str, Tuple[asyncio.Lock, int]] = {}

    def _path(self, key: str) -> str:
        return f"{self.root}/{key}"

    @asynccontextmanager
    async def _locked(self, key: str) -> AsyncIterator[None]:
        lock, users = self._locks.get(key, (None, 0))
        if lock is None:
            lock = asyncio.Lock()
        self._locks[key] = (lock, users + 1)
        try:
            async with lock:
                yield
        finally:
            lock, users = self._locks[key]
            if users == 1:
                del self._locks[key]
            else:
                self._locks[key] = (lock, users - 1)

    async def load(self, key: str) -> List[Dict[str, Any]]:
        """Full stored sequence for ``key``; empty when nothing was ever written."""
        return _as_list(await self.db.get(self._path(key)))

    async def save(self, key: str, entries: List[Any]) -> None:
        await self.db.set(self._path(key), list(entries))

    async def append_exchange(self, key: str, user_text: str, reply: str) -> List[Dict[str, Any]]:
        async with self._locked(key):
            stored = await self.load(key)
            history = current_entries(stored)
            dropped = len(stored) - len(history)
            if dropped:
                logger.info("Dropping %d non-current entries for %s", dropped, key)
            history.append(ConversationEntry(role="user", content=user_text))
            history.append(ConversationEntry(role="assistant", content=reply))
            out = entry_dicts(history)
            await self.save(key, out)
            return out

    async def rewrite(
        self, key: str, fn: Callable[[List[Any]], Optional[List[Any]]]
    ) -> Tuple[List[Any], Optional[List[Any]]]:
        """Reload ``key`` under its lock and save ``fn(entries)``.

        ``fn`` returns ``None`` to leave the stored sequence untouched.
        Returns the entries as loaded and what was saved (or ``None``).
        """
        async with self._locked(key):
            stored = await self.load(key)
            updated = fn(stored)
            if updated is not None:
                await self.save(key, updated)
            return stored, updated

    async def list_conversations(self) -> Dict[str, List[Dict[str, Any]]]:
        data = await self.db.get(self.root)
        if not isinstance(data, dict):
            return {}
        return {k: _as_list(v) for k, v in data.items()}
