"""Runtime settings, environment loading and logging setup."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping

from .llm.backends import DEFAULT_BACKEND


# ---------------------------------------------------------------------------
# Default workspace root
# ---------------------------------------------------------------------------
DEFAULT_ROOT = Path.home() / ".codeatlas"


def _split_keys(value: str | None) -> list[str]:
    if not value:
        return []
    return [k.strip() for k in value.replace("\n", ",").split(",") if k.strip()]


@dataclass
class Settings:
    """Everything needed to wire an orchestrator and an assistant."""

    github_token: str | None = None
    backend: str = DEFAULT_BACKEND
    credentials: list[str] = field(default_factory=list)
    model: str | None = None
    base_url: str | None = None
    root: Path = field(default_factory=lambda: DEFAULT_ROOT)
    timeout: float = 60.0
    retry_delay: float = 0.0
    tree_depth: int = 2
    changed_limit: int = 10
    sample_limit: int = 5
    free_message_limit: int = 5

    # Workspace layout
    @property
    def store_dir(self) -> Path:
        return self.root / "store"

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------
    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> Settings:
        """Build settings from ``CODEATLAS_*`` and provider variables.

        ``GEMINI_API_KEYS`` / ``OPENAI_API_KEYS`` take a comma-separated
        list and win over the single-key variables.
        """
        env = os.environ if environ is None else environ
        backend = env.get("CODEATLAS_BACKEND", DEFAULT_BACKEND).strip().lower()
        if backend in ("gemini", "google"):
            keys = _split_keys(env.get("GEMINI_API_KEYS")) or _split_keys(env.get("GEMINI_API_KEY"))
        else:
            keys = _split_keys(env.get("OPENAI_API_KEYS")) or _split_keys(env.get("OPENAI_API_KEY"))

        settings = cls(
            github_token=env.get("GITHUB_TOKEN") or None,
            backend=backend,
            credentials=keys,
            model=env.get("CODEATLAS_MODEL") or None,
            base_url=env.get("OPENAI_BASE_URL") or None,
        )
        if env.get("CODEATLAS_STORE_DIR"):
            settings.root = Path(env["CODEATLAS_STORE_DIR"]).expanduser()
        if env.get("CODEATLAS_TIMEOUT"):
            try:
                settings.timeout = float(env["CODEATLAS_TIMEOUT"])
            except ValueError as exc:
                raise ValueError(
                    f"CODEATLAS_TIMEOUT must be a number, got {env['CODEATLAS_TIMEOUT']!r}"
                ) from exc
        return settings


def configure_logging(verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%H:%M:%S",
    )
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.DEBUG if verbose else logging.WARNING)
