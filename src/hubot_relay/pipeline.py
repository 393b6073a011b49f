"""End-to-end handling of one inbound chat message.

identity -> validation -> deduplication -> completion -> guard completion
-> best-effort persistence -> reply
"""
from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Optional, Protocol

from .blobs import TextBlob
from .dedup import BeginStatus, DeduplicationGuard, derive_key
from .errors import UpstreamError, ValidationError
from .identity import IdentityResolver
from .models import MessageRequest, parse_message_request
from .store import ConversationStore, user_key

logger = logging.getLogger(__name__)

_CONTROL_WS = re.compile(r"[\n\r\t]+")

STATUS_OK = "ok"
STATUS_PROCESSING = "processing"
PROCESSING_MESSAGE = "Your previous identical message is still being processed. Please wait."


class Completer(Protocol):
    async def complete(self, message: str, *, knowledge_base: str = "", system_prompt: str = "") -> str: ...


def normalize_message(text: str) -> str:
    """Collapse newline/carriage-return/tab runs into one space and trim."""
    return _CONTROL_WS.sub(" ", text or "").strip()


@dataclass(frozen=True)
class PipelineResult:
    status: str
    reply: Optional[str] = None
    replayed: bool = False

    @property
    def processing(self) -> bool:
        return self.status == STATUS_PROCESSING


class MessagePipeline:
    def __init__(
        self,
        *,
        identity: IdentityResolver,
        guard: DeduplicationGuard,
        gateway: Completer,
        conversations: ConversationStore,
        knowledge_base: TextBlob,
        system_prompt: TextBlob,
    ) -> None:
        self.identity = identity
        self.guard = guard
        self.gateway = gateway
        self.conversations = conversations
        self.knowledge_base = knowledge_base
        self.system_prompt = system_prompt

    async def handle(self, request: MessageRequest, authorization: Optional[str] = None) -> PipelineResult:
        identifier = await self.identity.resolve(authorization)
        return await self._process(identifier, request)

    async def handle_body(
        self, body: bytes, content_type: Optional[str] = None, authorization: Optional[str] = None
    ) -> PipelineResult:
        """Like :meth:`handle` for a raw HTTP body; identity is checked before the body is parsed."""
        identifier = await self.identity.resolve(authorization)
        return await self._process(identifier, parse_message_request(body, content_type))

    async def _process(self, identifier: Optional[str], request: MessageRequest) -> PipelineResult:
        message = normalize_message(request.message)
        if not message:
            raise ValidationError("Message is required")

        key = derive_key(identifier, message)
        begin = self.guard.begin(key)
        if begin.status is BeginStatus.IN_FLIGHT:
            logger.info("Duplicate request still in flight for %s", identifier or "anonymous")
            return PipelineResult(STATUS_PROCESSING)
        if begin.status is BeginStatus.DONE:
            logger.info("Replaying cached reply for %s", identifier or "anonymous")
            return PipelineResult(STATUS_OK, reply=begin.result, replayed=True)

        try:
            reply = await self.gateway.complete(
                message,
                knowledge_base=self.knowledge_base.value,
                system_prompt=self.system_prompt.value,
            )
        except UpstreamError as e:
            self.guard.release(key)
            logger.warning("Completion failed for %s: %s", identifier or "anonymous", e)
            raise
        except asyncio.CancelledError:
            self.guard.release(key)
            raise
        except Exception as e:
            self.guard.release(key)
            logger.exception("Unexpected completion failure")
            raise UpstreamError(f"Completion failed: {e}") from e

        self.guard.complete(key, reply)

        await self._save(user_key(identifier), message, reply)
        return PipelineResult(STATUS_OK, reply=reply)

    async def _save(self, key: str, message: str, reply: str) -> None:
        try:
            await self.conversations.append_exchange(key, message, reply)
        except Exception:
            # The caller already has the reply; a lost write is only logged.
            logger.exception("Failed to persist conversation for %s", key)
