"""FastAPI application relaying chat messages to a completion service."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, File, Header, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.routing import APIRoute

from . import __version__
from .blobs import TextBlob, check_upload_name, decode_upload, load_seed
from .cleanup import cleanup_conversations
from .completion import create_from_config
from .config import load_config, validate_config
from .dedup import DEFAULT_RETENTION_SECONDS, DeduplicationGuard
from .errors import AccessDeniedError, DeprecatedEndpointError, RelayError
from .identity import IdentityResolver
from .models import parse_text_body
from .pipeline import PROCESSING_MESSAGE, STATUS_PROCESSING, Completer, MessagePipeline
from .prompts import DEFAULT_SYSTEM_PROMPT
from .store import ConversationStore, MemoryDocumentStore, RealtimeDatabase, user_key

logger = logging.getLogger(__name__)


# -----------------------------
# Service construction
# -----------------------------
def _make_identity(cfg: Dict[str, Any]) -> IdentityResolver:
    return IdentityResolver(cfg.get("identity", {}).get("api_key"))


def _make_conversations(cfg: Dict[str, Any]) -> ConversationStore:
    db_cfg = cfg.get("database", {})
    root = db_cfg.get("root") or "conversations"
    url = db_cfg.get("url")
    if not url:
        logger.warning("No database configured; conversations are kept in process memory")
        return ConversationStore(MemoryDocumentStore(), root=root)
    db = RealtimeDatabase(
        url,
        auth_token=db_cfg.get("auth_token"),
        timeout=float(db_cfg.get("timeout_seconds", 10.0)),
    )
    return ConversationStore(db, root=root)


def _make_guard(cfg: Dict[str, Any]) -> DeduplicationGuard:
    dedup_cfg = cfg.get("dedup", {})
    max_entries = dedup_cfg.get("max_entries")
    return DeduplicationGuard(
        float(dedup_cfg.get("retention_seconds", DEFAULT_RETENTION_SECONDS)),
        max_entries=int(max_entries) if max_entries else None,
    )


def _make_blobs(cfg: Dict[str, Any]) -> tuple[TextBlob, TextBlob]:
    prompts_cfg = cfg.get("prompts", {})
    kb = TextBlob("knowledge base", load_seed(prompts_cfg.get("knowledge_base_file")) or "")
    system = TextBlob(
        "system prompt",
        load_seed(prompts_cfg.get("system_prompt_file")) or DEFAULT_SYSTEM_PROMPT,
    )
    return kb, system


async def _close(*services: Any) -> None:
    for svc in services:
        aclose = getattr(svc, "aclose", None)
        if aclose is None:
            continue
        try:
            await aclose()
        except Exception:
            logger.exception("Failed to close %s", type(svc).__name__)


async def _read_upload(file: Optional[UploadFile]) -> str:
    name = check_upload_name(file.filename if file is not None else None)
    try:
        data = await file.read()
    finally:
        await file.close()
    return decode_upload(data, name)


def _last_timestamp(entries: List[Any]) -> Optional[str]:
    stamps = [e.get("timestamp") for e in entries if isinstance(e, dict) and e.get("timestamp")]
    return max(stamps) if stamps else None


# -----------------------------
# App factory
# -----------------------------
def create_app(
    config_path: Optional[str] = None,
    gateway: Optional[Completer] = None,
    conversations: Optional[ConversationStore] = None,
    identity: Optional[IdentityResolver] = None,
    guard: Optional[DeduplicationGuard] = None,
    config: Optional[Dict[str, Any]] = None,
) -> FastAPI:
    cfg = config if config is not None else load_config(config_path)

    # Services
    if gateway is None:
        validate_config(cfg)
        gateway = create_from_config(cfg)
    identity = identity or _make_identity(cfg)
    conversations = conversations or _make_conversations(cfg)
    guard = guard or _make_guard(cfg)
    knowledge_base, system_prompt = _make_blobs(cfg)

    pipeline = MessagePipeline(
        identity=identity,
        guard=guard,
        gateway=gateway,
        conversations=conversations,
        knowledge_base=knowledge_base,
        system_prompt=system_prompt,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(
            "Relay ready (persistence=%s, identity verification=%s)",
            type(conversations.db).__name__,
            identity.enabled,
        )
        yield
        guard.clear()
        await _close(gateway, identity, conversations.db)

    app = FastAPI(title="Hubot Relay", version=__version__, lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cfg.get("server", {}).get("cors_origins") or ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.pipeline = pipeline
    app.state.guard = guard
    app.state.conversations = conversations
    app.state.knowledge_base = knowledge_base
    app.state.system_prompt = system_prompt

    @app.exception_handler(RelayError)
    async def relay_error(request: Request, exc: RelayError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.warning("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.payload())

    # -------------------------
    # Chat
    # -------------------------
    @app.post("/hubot/message")
    async def hubot_message(request: Request, authorization: Optional[str] = Header(None)):
        result = await pipeline.handle_body(
            await request.body(), request.headers.get("content-type"), authorization
        )
        if result.processing:
            return JSONResponse(
                status_code=202,
                content={"message": PROCESSING_MESSAGE, "status": STATUS_PROCESSING},
            )
        return {"reply": result.reply}

    # -------------------------
    # Knowledge base / system prompt
    # -------------------------
    def mount_blob_routes(blob: TextBlob, *, slug: str, field: str, label: str) -> None:
        async def replace(request: Request) -> Dict[str, Any]:
            blob.set(parse_text_body(await request.body(), request.headers.get("content-type")))
            return {"message": f"{label} updated", "length": len(blob), "status": "success"}

        async def append(request: Request) -> Dict[str, Any]:
            blob.append(parse_text_body(await request.body(), request.headers.get("content-type")))
            return {"message": f"{label} appended", "length": len(blob), "status": "success"}

        async def replace_upload(file: Optional[UploadFile] = File(None)) -> Dict[str, Any]:
            blob.set(await _read_upload(file))
            return {"message": f"{label} updated from file", "length": len(blob), "status": "success"}

        async def append_upload(file: Optional[UploadFile] = File(None)) -> Dict[str, Any]:
            blob.append(await _read_upload(file))
            return {"message": f"{label} appended from file", "length": len(blob), "status": "success"}

        async def show() -> Dict[str, Any]:
            return {field: blob.value, "length": len(blob), "status": "success"}

        app.add_api_route(f"/hubot/{slug}", replace, methods=["POST"])
        app.add_api_route(f"/hubot/add-{slug}", append, methods=["POST"])
        app.add_api_route(f"/hubot/{slug}-upload", replace_upload, methods=["POST"])
        app.add_api_route(f"/hubot/add-{slug}-upload", append_upload, methods=["POST"])
        app.add_api_route(f"/hubot/show-{slug}", show, methods=["GET"])

    mount_blob_routes(knowledge_base, slug="kb", field="knowledgeBase", label="Knowledge base")
    mount_blob_routes(system_prompt, slug="system", field="systemPrompt", label="System prompt")

    # -------------------------
    # Conversations
    # -------------------------
    async def conversation_payload(identifier: Optional[str]) -> Dict[str, Any]:
        key = user_key(identifier)
        entries = await conversations.load(key)
        return {"email": identifier, "userKey": key, "conversation": entries, "count": len(entries)}

    @app.get("/get-conversation/{email}")
    async def get_conversation_for(email: str, authorization: Optional[str] = Header(None)):
        caller = await identity.require(authorization)
        if caller.casefold() != email.casefold():
            raise AccessDeniedError("You can only access your own conversation")
        return await conversation_payload(caller)

    @app.get("/get-conversation")
    async def get_own_conversation(authorization: Optional[str] = Header(None)):
        return await conversation_payload(await identity.resolve(authorization))

    @app.get("/get-all-users")
    async def get_all_users(authorization: Optional[str] = Header(None)):
        await identity.require(authorization)
        data = await conversations.list_conversations()
        users = [
            {"userKey": key, "messageCount": len(entries), "lastMessageAt": _last_timestamp(entries)}
            for key, entries in sorted(data.items())
        ]
        return {"users": users, "totalUsers": len(users)}

    @app.post("/admin/cleanup-database")
    async def cleanup_database(authorization: Optional[str] = Header(None)):
        caller = await identity.require(authorization)
        logger.info("Database cleanup requested by %s", caller)
        report = await cleanup_conversations(conversations)
        return {"status": "success", **report.to_dict()}

    # -------------------------
    # Legacy
    # -------------------------
    @app.post("/save-query")
    async def save_query():
        raise DeprecatedEndpointError(
            "Queries are now saved automatically with every message", replacement="/hubot/message"
        )

    @app.get("/get-queries")
    async def get_queries():
        raise DeprecatedEndpointError("This endpoint has been removed", replacement="/get-conversation")

    @app.get("/get-queries/{email}")
    async def get_queries_for(email: str):
        raise DeprecatedEndpointError(
            "This endpoint has been removed", replacement=f"/get-conversation/{email}"
        )

    # -------------------------
    # Health
    # -------------------------
    @app.get("/health")
    async def health() -> Dict[str, Any]:
        endpoints = sorted(
            f"{method} {route.path}"
            for route in app.routes
            if isinstance(route, APIRoute)
            for method in sorted(route.methods or ())
        )
        return {
            "status": "ok",
            "version": __version__,
            "endpoints": endpoints,
            "persistence": isinstance(conversations.db, RealtimeDatabase),
            "identityVerification": identity.enabled,
        }

    return app
