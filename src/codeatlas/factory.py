"""Wire fetcher, gateway, store, orchestrator and assistant from ``Settings``."""

from __future__ import annotations

import logging

from .assistant import CodebaseAssistant
from .config import Settings
from .llm.backends import get_backend
from .llm.gateway import CredentialPool, GenerationGateway
from .pipeline.orchestrator import Orchestrator
from .source.github import GitHubFetcher
from .store import JsonFileResultStore, ResultStore

logger = logging.getLogger("codeatlas.factory")


def build_gateway(settings: Settings) -> GenerationGateway:
    """Raises ValueError when no backend credential is configured."""
    if not settings.credentials:
        raise ValueError(
            f"No API keys configured for backend '{settings.backend}'. "
            "Set GEMINI_API_KEYS or OPENAI_API_KEYS."
        )
    kwargs = {"model": settings.model, "timeout": settings.timeout}
    if settings.base_url and settings.backend == "openai":
        kwargs["base_url"] = settings.base_url
    backend = get_backend(settings.backend, **kwargs)
    logger.info(
        "Using %s backend (%s) with %d credential(s)",
        settings.backend, backend.model, len(settings.credentials),
    )
    return GenerationGateway(
        backend,
        CredentialPool(settings.credentials),
        retry_delay=settings.retry_delay,
    )


def build_store(settings: Settings) -> ResultStore:
    return JsonFileResultStore(settings.store_dir)


def build_orchestrator(
    settings: Settings | None = None,
    *,
    gateway: GenerationGateway | None = None,
    store: ResultStore | None = None,
) -> Orchestrator:
    settings = settings or Settings.from_env()
    return Orchestrator(
        GitHubFetcher(settings.github_token, timeout=settings.timeout),
        gateway or build_gateway(settings),
        store or build_store(settings),
        tree_depth=settings.tree_depth,
        changed_limit=settings.changed_limit,
        sample_limit=settings.sample_limit,
    )


def build_assistant(
    settings: Settings | None = None,
    *,
    gateway: GenerationGateway | None = None,
    store: ResultStore | None = None,
) -> CodebaseAssistant:
    settings = settings or Settings.from_env()
    return CodebaseAssistant(
        gateway or build_gateway(settings),
        store or build_store(settings),
        free_message_limit=settings.free_message_limit,
    )
