"""In-process request deduplication keyed by (user, message content).

The registry maps an idempotency key to either the ``PROCESSING`` sentinel or
the final reply. ``begin`` is plain synchronous code: under the asyncio event
loop no other task can run between its lookup and its insert, which is what
makes two concurrent identical requests resolve to a single upstream call.

Completed entries expire ``retention_seconds`` after completion. Expiry is
checked lazily on access instead of scheduling one timer per key, and an
optional ``max_entries`` cap drops the oldest completed entries first.
"""

from __future__ import annotations

import base64
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

logger = logging.getLogger(__name__)

DEFAULT_RETENTION_SECONDS = 30 * 60
ANONYMOUS = "unknown"
KEY_SEPARATOR = ":"


class BeginStatus(str, Enum):
    NEW = "new"
    IN_FLIGHT = "in_flight"
    DONE = "done"


@dataclass(frozen=True)
class Begin:
    status: BeginStatus
    result: Optional[str] = None


class _Processing:
    def __repr__(self) -> str:
        return "PROCESSING"


PROCESSING = _Processing()


@dataclass
class _Record:
    value: object                       # PROCESSING or the reply text
    expires_at: Optional[float] = None  # set on completion


def derive_key(identifier: Optional[str], message: str) -> str:
    """Content-addressed key: the same (user, text) always maps to the same key."""
    encoded = base64.b64encode(message.encode("utf-8")).decode("ascii")
    return f"{identifier or ANONYMOUS}{KEY_SEPARATOR}{encoded}"


class DeduplicationGuard:
    """Bounded-lifetime idempotency registry.

    State per key: ABSENT -> PROCESSING -> DONE(result) -> ABSENT (on expiry).
    ``release`` takes a PROCESSING key straight back to ABSENT so a failed
    upstream call does not block retries.
    """

    def __init__(
        self,
        retention_seconds: float = DEFAULT_RETENTION_SECONDS,
        *,
        max_entries: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if retention_seconds <= 0:
            raise ValueError("retention_seconds must be positive")
        self.retention_seconds = float(retention_seconds)
        self.max_entries = max_entries
        self._clock = clock
        self._records: "OrderedDict[str, _Record]" = OrderedDict()

    # --------- core API ----------
    def begin(self, key: str) -> Begin:
        # No awaits in here; check and insert happen in one step.
        record = self._live(key)
        if record is None:
            self._records[key] = _Record(PROCESSING)
            self._enforce_cap()
            return Begin(BeginStatus.NEW)
        if record.value is PROCESSING:
            return Begin(BeginStatus.IN_FLIGHT)
        return Begin(BeginStatus.DONE, result=str(record.value))

    def complete(self, key: str, result: str) -> None:
        expires_at = self._clock() + self.retention_seconds
        self._records.pop(key, None)
        # Re-insert so completion order drives cap eviction.
        self._records[key] = _Record(result, expires_at)
        self._enforce_cap()

    def release(self, key: str) -> bool:
        """Forget an in-flight key. Completed entries are left alone."""
        record = self._records.get(key)
        if record is not None and record.value is PROCESSING:
            del self._records[key]
            return True
        return False

    def state(self, key: str) -> Optional[object]:
        """PROCESSING, the cached reply, or None when absent/expired."""
        record = self._live(key)
        return None if record is None else record.value

    def sweep(self) -> int:
        now = self._clock()
        expired = [k for k, r in self._records.items() if r.expires_at is not None and r.expires_at <= now]
        for k in expired:
            del self._records[k]
        if expired:
            logger.debug("Evicted %d expired idempotency records", len(expired))
        return len(expired)

    def clear(self) -> None:
        self._records.clear()

    def __len__(self) -> int:
        self.sweep()
        return len(self._records)

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and self._live(key) is not None

    # --------- internals ----------
    def _live(self, key: str) -> Optional[_Record]:
        record = self._records.get(key)
        if record is None:
            return None
        if record.expires_at is not None and record.expires_at <= self._clock():
            del self._records[key]
            return None
        return record

    def _enforce_cap(self) -> None:
        if not self.max_entries or len(self._records) <= self.max_entries:
            return
        self.sweep()
        for key in list(self._records):
            if len(self._records) <= self.max_entries:
                break
            if self._records[key].value is not PROCESSING:
                del self._records[key]
