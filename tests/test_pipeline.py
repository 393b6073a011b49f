from __future__ import annotations

import asyncio

import pytest

from hubot_relay.blobs import TextBlob
from hubot_relay.dedup import DeduplicationGuard, derive_key
from hubot_relay.errors import AuthError, PersistenceError, UpstreamError, ValidationError
from hubot_relay.models import MessageRequest
from hubot_relay.pipeline import MessagePipeline, normalize_message
from hubot_relay.store import ConversationStore

from conftest import FakeGateway, auth, make_identity


def _pipeline(gateway, conversations, *, guard=None, identity=None, kb="", system="Be nice."):
    return MessagePipeline(
        identity=identity or make_identity(),
        guard=guard if guard is not None else DeduplicationGuard(),
        gateway=gateway,
        conversations=conversations,
        knowledge_base=TextBlob("knowledge base", kb),
        system_prompt=TextBlob("system prompt", system),
    )


def test_normalize_message_collapses_control_whitespace():
    assert normalize_message("  a\n\nb\tc\r\nd ") == "a b c d"
    assert normalize_message("\n\t") == ""


def test_new_message_calls_gateway_and_persists(gateway, conversations):
    pipe = _pipeline(gateway, conversations, kb="Office opens at 9.")
    result = asyncio.run(pipe.handle(MessageRequest(message="when\ndo you open?"), auth("token-alice")["Authorization"]))

    assert result.status == "ok"
    assert result.reply == "ok"
    assert gateway.calls == [("when do you open?", "Office opens at 9.", "Be nice.")]

    history = asyncio.run(conversations.load("alice@x_com"))
    assert [(e["role"], e["content"]) for e in history] == [
        ("user", "when do you open?"),
        ("assistant", "ok"),
    ]
    assert all(e["timestamp"] for e in history)


def test_anonymous_caller_uses_unknown_key(gateway, conversations):
    pipe = _pipeline(gateway, conversations)
    asyncio.run(pipe.handle(MessageRequest(message="hello")))
    assert len(asyncio.run(conversations.load("unknown"))) == 2


def test_repeat_replays_cached_reply_without_side_effects(gateway, conversations):
    pipe = _pipeline(gateway, conversations)
    first = asyncio.run(pipe.handle(MessageRequest(message="hello")))
    second = asyncio.run(pipe.handle(MessageRequest(message="hello")))

    assert second.reply == first.reply
    assert second.replayed
    assert len(gateway.calls) == 1
    assert len(asyncio.run(conversations.load("unknown"))) == 2


def test_concurrent_identical_requests_call_gateway_once(conversations):
    class SlowGateway(FakeGateway):
        async def complete(self, message, *, knowledge_base="", system_prompt=""):
            self.calls.append((message, knowledge_base, system_prompt))
            await asyncio.sleep(0.01)
            return "slow answer"

    gateway = SlowGateway()
    pipe = _pipeline(gateway, conversations)

    async def run_both():
        return await asyncio.gather(
            pipe.handle(MessageRequest(message="hello")),
            pipe.handle(MessageRequest(message="hello")),
        )

    results = asyncio.run(run_both())
    assert len(gateway.calls) == 1
    assert sorted(r.status for r in results) == ["ok", "processing"]

    retry = asyncio.run(pipe.handle(MessageRequest(message="hello")))
    assert retry.reply == "slow answer"
    assert len(gateway.calls) == 1


def test_different_users_same_text_are_independent(gateway, conversations):
    pipe = _pipeline(gateway, conversations)
    asyncio.run(pipe.handle(MessageRequest(message="hi"), "Bearer token-alice"))
    asyncio.run(pipe.handle(MessageRequest(message="hi"), "Bearer token-bob"))
    assert len(gateway.calls) == 2


def test_empty_message_is_rejected_before_guard(gateway, conversations, db):
    guard = DeduplicationGuard()
    pipe = _pipeline(gateway, conversations, guard=guard)
    with pytest.raises(ValidationError):
        asyncio.run(pipe.handle(MessageRequest(message=" \n\t ")))
    assert len(guard) == 0
    assert gateway.calls == []
    assert asyncio.run(db.get("conversations")) is None


def test_invalid_token_fails_before_anything_else(gateway, conversations):
    guard = DeduplicationGuard()
    pipe = _pipeline(gateway, conversations, guard=guard)
    with pytest.raises(AuthError):
        asyncio.run(pipe.handle(MessageRequest(message="hi"), "Bearer forged"))
    assert len(guard) == 0
    assert gateway.calls == []


def test_raw_body_checks_identity_before_parsing(gateway, conversations):
    pipe = _pipeline(gateway, conversations)
    with pytest.raises(AuthError):
        asyncio.run(pipe.handle_body(b"", "application/json", "Bearer forged"))
    with pytest.raises(ValidationError):
        asyncio.run(pipe.handle_body(b"", "application/json", "Bearer token-alice"))

    result = asyncio.run(pipe.handle_body(b'{"message": "hi"}', "application/json", "Bearer token-alice"))
    assert result.reply == "ok"
    assert gateway.calls[0][0] == "hi"


def test_upstream_failure_releases_key_for_retry(failing_gateway, conversations):
    guard = DeduplicationGuard()
    pipe = _pipeline(failing_gateway, conversations, guard=guard)
    with pytest.raises(UpstreamError):
        asyncio.run(pipe.handle(MessageRequest(message="hi")))
    assert derive_key(None, "hi") not in guard

    failing_gateway.fail = None
    failing_gateway.reply = "recovered"
    result = asyncio.run(pipe.handle(MessageRequest(message="hi")))
    assert result.reply == "recovered"
    assert len(failing_gateway.calls) == 2


def test_unexpected_gateway_error_is_wrapped(conversations):
    gateway = FakeGateway(fail=RuntimeError("boom"))
    guard = DeduplicationGuard()
    pipe = _pipeline(gateway, conversations, guard=guard)
    with pytest.raises(UpstreamError):
        asyncio.run(pipe.handle(MessageRequest(message="hi")))
    assert len(guard) == 0


def test_persistence_failure_is_swallowed(gateway, caplog):
    class BrokenDB:
        async def get(self, path):
            raise PersistenceError("database down")

        async def set(self, path, value):
            raise PersistenceError("database down")

    guard = DeduplicationGuard()
    pipe = _pipeline(gateway, ConversationStore(BrokenDB()), guard=guard)
    result = asyncio.run(pipe.handle(MessageRequest(message="hi")))

    assert result.reply == "ok"
    assert guard.state(derive_key(None, "hi")) == "ok"
    assert "Failed to persist conversation" in caplog.text


def test_latest_blob_values_are_read_per_call(gateway, conversations):
    pipe = _pipeline(gateway, conversations)
    pipe.knowledge_base.set("v1")
    asyncio.run(pipe.handle(MessageRequest(message="one")))
    pipe.knowledge_base.append("v2")
    asyncio.run(pipe.handle(MessageRequest(message="two")))
    assert [c[1] for c in gateway.calls] == ["v1", "v1\nv2"]


def test_repeat_after_retention_window_calls_gateway_again(gateway, conversations, clock):
    pipe = _pipeline(gateway, conversations, guard=DeduplicationGuard(30 * 60, clock=clock))
    asyncio.run(pipe.handle(MessageRequest(message="hello")))
    clock.advance(30 * 60 - 1)
    asyncio.run(pipe.handle(MessageRequest(message="hello")))
    assert len(gateway.calls) == 1

    clock.advance(1)
    result = asyncio.run(pipe.handle(MessageRequest(message="hello")))
    assert not result.replayed
    assert len(gateway.calls) == 2
    assert len(asyncio.run(conversations.load("unknown"))) == 4
