"""Gateway to an OpenAI-compatible chat-completions service."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

from .errors import ConfigError, UpstreamError

logger = logging.getLogger(__name__)


# -----------------------------
# Types & defaults
# -----------------------------
DEFAULT_BASE_URL = "https://api.openai.com/v1"
DEFAULT_MODEL = "gpt-4o-mini"


@dataclass
class GenerationConfig:
    model: str = DEFAULT_MODEL
    max_tokens: int = 1024
    temperature: float = 0.7
    timeout_seconds: float = 60.0


# -----------------------------
# Gateway
# -----------------------------
class CompletionGateway:
    """One HTTP call per message: system prompt + knowledge base + user text in, reply out."""

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str = DEFAULT_BASE_URL,
        config: Optional[GenerationConfig] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        if not api_key:
            raise ConfigError("Completion service API key is required")
        self._api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.config = config or GenerationConfig()
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(self.config.timeout_seconds))

    async def complete(
        self,
        message: str,
        *,
        knowledge_base: str = "",
        system_prompt: str = "",
    ) -> str:
        payload = {
            "model": self.config.model,
            "messages": self._build_messages(message, knowledge_base, system_prompt),
            "max_tokens": self.config.max_tokens,
            "temperature": self.config.temperature,
        }
        try:
            r = await self._client.post(
                f"{self.base_url}/chat/completions",
                json=payload,
                headers={"Authorization": f"Bearer {self._api_key}"},
                timeout=self.config.timeout_seconds,
            )
        except httpx.TimeoutException as e:
            raise UpstreamError(f"Completion service timed out after {self.config.timeout_seconds:g}s") from e
        except httpx.HTTPError as e:
            raise UpstreamError(f"Completion service unreachable: {e}") from e

        if r.status_code >= 400:
            raise UpstreamError(f"Completion service returned {r.status_code}: {_error_detail(r)}")

        try:
            text = r.json()["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise UpstreamError("Completion service returned an unexpected payload") from e
        if not isinstance(text, str) or not text.strip():
            raise UpstreamError("Completion service returned an empty reply")
        return text.strip()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    # -------------------------
    # Internals
    # -------------------------
    def _build_messages(
        self,
        message: str,
        knowledge_base: str,
        system_prompt: str,
    ) -> List[Dict[str, str]]:
        msgs: List[Dict[str, str]] = []
        if system_prompt.strip():
            msgs.append({"role": "system", "content": system_prompt})
        if knowledge_base.strip():
            msgs.append({
                "role": "system",
                "content": "Use the following knowledge base when it is relevant:\n\n" + knowledge_base,
            })
        msgs.append({"role": "user", "content": message})
        return msgs


def _error_detail(r: httpx.Response) -> str:
    try:
        body = r.json()
    except ValueError:
        return (r.text or "").strip()[:200] or r.reason_phrase
    if isinstance(body, dict):
        err = body.get("error")
        if isinstance(err, dict) and err.get("message"):
            return str(err["message"])
        if isinstance(err, str):
            return err
    return str(body)[:200]


# -----------------------------
# Convenience factory
# -----------------------------
def create_from_config(cfg: Dict[str, Any]) -> CompletionGateway:
    """Create a CompletionGateway from the ``completion`` section of a config dict."""
    comp = (cfg or {}).get("completion", {}) if isinstance(cfg, dict) else {}
    gen = GenerationConfig(
        model=str(comp.get("model") or DEFAULT_MODEL),
        max_tokens=int(comp.get("max_tokens", 1024)),
        temperature=float(comp.get("temperature", 0.7)),
        timeout_seconds=float(comp.get("timeout_seconds", 60.0)),
    )
    return CompletionGateway(
        str(comp.get("api_key") or ""),
        base_url=str(comp.get("base_url") or DEFAULT_BASE_URL),
        config=gen,
    )
