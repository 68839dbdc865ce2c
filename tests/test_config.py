"""Tests for settings loading and component wiring."""

from __future__ import annotations

from pathlib import Path

import pytest

from codeatlas.config import Settings
from codeatlas.factory import build_assistant, build_gateway, build_orchestrator
from codeatlas.llm.backends import GeminiBackend, OpenAIBackend
from codeatlas.store import JsonFileResultStore


class TestSettingsFromEnv:
    def test_defaults(self):
        settings = Settings.from_env({})
        assert settings.backend == "gemini"
        assert settings.credentials == []
        assert settings.github_token is None
        assert settings.timeout == 60.0

    def test_gemini_key_list_wins(self):
        settings = Settings.from_env({
            "GEMINI_API_KEYS": "a, b,,c",
            "GEMINI_API_KEY": "single",
        })
        assert settings.credentials == ["a", "b", "c"]

    def test_single_key(self):
        assert Settings.from_env({"GEMINI_API_KEY": "only"}).credentials == ["only"]

    def test_openai_backend(self):
        settings = Settings.from_env({
            "CODEATLAS_BACKEND": "OpenAI",
            "OPENAI_API_KEY": "sk-1",
            "GEMINI_API_KEY": "ignored",
            "OPENAI_BASE_URL": "http://localhost:8000/v1",
            "CODEATLAS_MODEL": "local-model",
        })
        assert settings.backend == "openai"
        assert settings.credentials == ["sk-1"]
        assert settings.base_url == "http://localhost:8000/v1"
        assert settings.model == "local-model"

    def test_store_dir_and_timeout(self, tmp_path):
        settings = Settings.from_env({
            "CODEATLAS_STORE_DIR": str(tmp_path),
            "CODEATLAS_TIMEOUT": "12.5",
            "GITHUB_TOKEN": "ghp_x",
        })
        assert settings.store_dir == Path(tmp_path) / "store"
        assert settings.timeout == 12.5
        assert settings.github_token == "ghp_x"

    def test_bad_timeout(self):
        with pytest.raises(ValueError, match="CODEATLAS_TIMEOUT"):
            Settings.from_env({"CODEATLAS_TIMEOUT": "soon"})


class TestFactory:
    def test_gateway_requires_credentials(self):
        with pytest.raises(ValueError, match="No API keys"):
            build_gateway(Settings())

    def test_gateway_pool_and_backend(self):
        gateway = build_gateway(Settings(credentials=["a", "b"], model="gemini-test"))
        assert isinstance(gateway.backend, GeminiBackend)
        assert gateway.backend.model == "gemini-test"
        assert gateway.max_attempts == 4

    def test_openai_base_url(self):
        gateway = build_gateway(
            Settings(backend="openai", credentials=["sk"], base_url="http://localhost:1234/v1")
        )
        assert isinstance(gateway.backend, OpenAIBackend)
        assert gateway.backend.base_url == "http://localhost:1234/v1"

    def test_orchestrator_and_assistant(self, tmp_path):
        settings = Settings(credentials=["k"], root=tmp_path, changed_limit=3, free_message_limit=2)
        orch = build_orchestrator(settings)
        assert isinstance(orch.store, JsonFileResultStore)
        assert orch.store.root == tmp_path / "store"
        assert orch.changed_limit == 3

        assistant = build_assistant(settings, gateway=orch.gateway, store=orch.store)
        assert assistant.free_message_limit == 2
        assert assistant.gateway is orch.gateway
