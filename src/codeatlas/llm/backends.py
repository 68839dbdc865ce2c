"""Generative text backends used by the generation gateway.

Each backend performs exactly one request per ``complete()`` call with the
credential it is handed, and reports any failure as a ``BackendError``
carrying the HTTP status (``None`` for network errors and timeouts) and the
raw error body. Retrying and credential rotation belong to the gateway, so
backends never retry on their own.

Usage::

    from codeatlas.llm.backends import get_backend

    backend = get_backend("gemini", model="gemini-2.0-flash")
    text = await backend.complete("Explain asyncio.", credential="AIza...")
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any

import httpx
import openai
from openai import AsyncOpenAI

from ..errors import BackendError

logger = logging.getLogger("codeatlas.llm.backends")

# ── Defaults ──────────────────────────────────────────────────────────────

DEFAULT_BACKEND = "gemini"
DEFAULT_TEMPERATURE = 0.2
DEFAULT_MAX_TOKENS = 4096
DEFAULT_TIMEOUT = 60.0

_DEFAULT_MODELS: dict[str, str] = {
    "gemini": "gemini-2.0-flash",
    "openai": "gpt-4o-mini",
}

_GEMINI_API = "https://generativelanguage.googleapis.com/v1"


# ══════════════════════════════════════════════════════════════════════════
# Base class
# ══════════════════════════════════════════════════════════════════════════


class TextBackend(ABC):
    """Abstract base for all generative text backends."""

    name: str = "base"

    def __init__(
        self,
        *,
        model: str | None = None,
        temperature: float = DEFAULT_TEMPERATURE,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        self.model = model or _DEFAULT_MODELS.get(self.name, "")
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.timeout = timeout

    @abstractmethod
    async def complete(self, prompt: str, *, credential: str) -> str:
        """Send *prompt* once using *credential* and return the generated text."""

    async def aclose(self) -> None:
        """Release network resources."""

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} model={self.model}>"


# ══════════════════════════════════════════════════════════════════════════
# Google Gemini (REST)
# ══════════════════════════════════════════════════════════════════════════


class GeminiBackend(TextBackend):
    """Gemini ``generateContent`` endpoint, authenticated with an API key."""

    name = "gemini"

    def __init__(
        self,
        *,
        base_url: str = _GEMINI_API,
        top_k: int = 32,
        top_p: float = 0.95,
        transport: httpx.AsyncBaseTransport | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self.base_url = base_url.rstrip("/")
        self.top_k = top_k
        self.top_p = top_p
        self._client = httpx.AsyncClient(timeout=self.timeout, transport=transport)

    async def complete(self, prompt: str, *, credential: str) -> str:
        url = f"{self.base_url}/models/{self.model}:generateContent"
        body = {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": {
                "temperature": self.temperature,
                "topK": self.top_k,
                "topP": self.top_p,
                "maxOutputTokens": self.max_tokens,
            },
        }
        try:
            resp = await self._client.post(url, params={"key": credential}, json=body)
        except httpx.TimeoutException as exc:
            raise BackendError(f"Gemini request timed out after {self.timeout}s") from exc
        except httpx.HTTPError as exc:
            raise BackendError(f"Gemini request failed: {exc}") from exc

        if not resp.is_success:
            raise BackendError(
                f"Gemini returned HTTP {resp.status_code}",
                status=resp.status_code,
                body=resp.text,
            )

        try:
            data = resp.json()
        except ValueError as exc:
            raise BackendError(
                f"Gemini returned a non-JSON body with HTTP {resp.status_code}",
                status=resp.status_code,
                body=resp.text,
            ) from exc
        if not isinstance(data, dict):
            raise BackendError(
                f"Gemini returned a {type(data).__name__} instead of an object",
                status=resp.status_code,
                body=resp.text,
            )

        candidates = data.get("candidates") or []
        if not candidates:
            logger.warning(
                "Gemini returned no candidates (prompt feedback: %s)",
                data.get("promptFeedback"),
            )
            return ""
        content = candidates[0].get("content") if isinstance(candidates[0], dict) else None
        parts = content.get("parts") if isinstance(content, dict) else None
        if not isinstance(parts, list):
            return ""
        return "".join(
            part["text"] for part in parts if isinstance(part, dict) and isinstance(part.get("text"), str)
        )

    async def aclose(self) -> None:
        await self._client.aclose()


# ══════════════════════════════════════════════════════════════════════════
# OpenAI (and OpenAI-compatible servers)
# ══════════════════════════════════════════════════════════════════════════


class OpenAIBackend(TextBackend):
    """Chat completions on OpenAI or any OpenAI-compatible endpoint.

    One ``AsyncOpenAI`` client is kept per credential. SDK-level retries
    are disabled so the gateway's rotation loop is the only retry policy.
    """

    name = "openai"

    def __init__(self, *, base_url: str | None = None, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.base_url = base_url
        self._clients: dict[str, AsyncOpenAI] = {}

    def _client_for(self, credential: str) -> AsyncOpenAI:
        client = self._clients.get(credential)
        if client is None:
            client = AsyncOpenAI(
                api_key=credential,
                base_url=self.base_url,
                timeout=self.timeout,
                max_retries=0,
            )
            self._clients[credential] = client
        return client

    async def complete(self, prompt: str, *, credential: str) -> str:
        client = self._client_for(credential)
        try:
            resp = await client.chat.completions.create(
                model=self.model,
                temperature=self.temperature,
                max_tokens=self.max_tokens,
                messages=[{"role": "user", "content": prompt}],
            )
        except openai.APIStatusError as exc:
            raise BackendError(
                f"OpenAI returned HTTP {exc.status_code}",
                status=exc.status_code,
                body=str(exc.body or exc.message),
            ) from exc
        except openai.APIConnectionError as exc:
            raise BackendError(f"OpenAI request failed: {exc}") from exc

        if not resp.choices:
            return ""
        return resp.choices[0].message.content or ""

    async def aclose(self) -> None:
        for client in self._clients.values():
            await client.close()
        self._clients.clear()


# ══════════════════════════════════════════════════════════════════════════
# Factory
# ══════════════════════════════════════════════════════════════════════════

_BACKENDS: dict[str, type[TextBackend]] = {
    "gemini": GeminiBackend,
    "google": GeminiBackend,
    "openai": OpenAIBackend,
}

SUPPORTED_BACKENDS = sorted(_BACKENDS)


def get_backend(name: str = DEFAULT_BACKEND, **kwargs: Any) -> TextBackend:
    """Create a backend by name (``gemini`` or ``openai``)."""
    cls = _BACKENDS.get(name.lower().strip())
    if cls is None:
        raise ValueError(
            f"Unknown backend '{name}'. Supported: {', '.join(SUPPORTED_BACKENDS)}"
        )
    return cls(**kwargs)


def default_model_for(name: str) -> str:
    """Return the default model name for a given backend."""
    cls = _BACKENDS.get(name.lower().strip())
    return _DEFAULT_MODELS.get(cls.name if cls else name, "")
