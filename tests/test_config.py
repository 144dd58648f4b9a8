"""Tests for settings loading and provider selection."""

from __future__ import annotations

import json
import os

import pytest

from live_assist.config import (
    RagProviderKind,
    RagSettings,
    RecordingSettings,
    Settings,
    load_settings,
    parse_extensions,
    resolve_provider_kind,
)
from live_assist.errors import ConfigurationError


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    for key in list(os.environ):
        if key.startswith("LIVE_ASSIST_") or key == "GEMINI_API_KEY":
            monkeypatch.delenv(key)


@pytest.fixture
def settings_file(tmp_path):
    def write(data) -> str:
        path = tmp_path / "settings.json"
        path.write_text(json.dumps(data), encoding="utf-8")
        return str(path)

    return write


class TestLoadSettings:
    def test_defaults(self):
        settings = load_settings(None)

        assert settings == Settings()
        assert settings.rag.enabled is False
        assert settings.rag.top_k == 4
        assert settings.rag.min_score == pytest.approx(0.08)
        assert settings.recording.max_duration_seconds == pytest.approx(600.0)
        assert not settings.gemini.is_configured

    def test_missing_file_uses_defaults(self, tmp_path):
        assert load_settings(tmp_path / "absent.json") == Settings()

    def test_file_values(self, settings_file):
        path = settings_file(
            {
                "server": {"port": 5000},
                "rag": {"enabled": True, "allowed_extensions": "md, .TXT", "provider": "GeminiFileSearch"},
                "memory": {"max_messages": 8},
                "unknown": {"ignored": True},
            }
        )

        settings = load_settings(path)

        assert settings.server.port == 5000
        assert settings.rag.enabled is True
        assert settings.rag.allowed_extensions == frozenset({".md", ".txt"})
        assert settings.rag.top_k == 4
        assert settings.memory.max_messages == 8

    def test_environment_overrides_file(self, settings_file, monkeypatch):
        path = settings_file({"rag": {"enabled": True, "top_k": 2, "folder": "docs"}})
        monkeypatch.setenv("LIVE_ASSIST_RAG__TOP_K", "7")
        monkeypatch.setenv("LIVE_ASSIST_RAG__ENABLED", "off")
        monkeypatch.setenv("LIVE_ASSIST_RECORDING__MAX_MINUTES", "0.5")
        monkeypatch.setenv("LIVE_ASSIST_RAG__DEFAULT_QUERY", "pricing")

        settings = load_settings(path)

        assert settings.rag.top_k == 7
        assert settings.rag.enabled is False
        assert settings.rag.folder == "docs"
        assert settings.recording.max_minutes == pytest.approx(0.5)
        assert settings.rag.default_query == "pricing"

    def test_api_key_environment_wins(self, settings_file, monkeypatch):
        path = settings_file({"gemini": {"api_key": "from-file"}})

        assert load_settings(path).gemini.api_key == "from-file"
        monkeypatch.setenv("GEMINI_API_KEY", " from-env ")
        assert load_settings(path).gemini.api_key == "from-env"

    def test_invalid_number_raises(self, monkeypatch):
        monkeypatch.setenv("LIVE_ASSIST_SERVER__PORT", "abc")
        with pytest.raises(ConfigurationError, match="server.port"):
            load_settings(None)

    def test_invalid_boolean_raises(self, settings_file):
        with pytest.raises(ConfigurationError, match="rag.enabled"):
            load_settings(settings_file({"rag": {"enabled": "maybe"}}))

    def test_non_object_file_raises(self, settings_file):
        with pytest.raises(ConfigurationError):
            load_settings(settings_file([1, 2, 3]))

    def test_malformed_file_raises(self, tmp_path):
        path = tmp_path / "broken.json"
        path.write_text("{not json", encoding="utf-8")
        with pytest.raises(ConfigurationError):
            load_settings(path)

    def test_sections_are_frozen(self):
        settings = Settings()
        with pytest.raises(ValueError):
            settings.rag.top_k = 9


class TestProviderKind:
    @pytest.mark.parametrize(
        "name, expected",
        [
            ("Local", RagProviderKind.LOCAL),
            ("GeminiEmbeddings", RagProviderKind.REMOTE_EMBEDDING),
            ("embeddings", RagProviderKind.REMOTE_EMBEDDING),
            ("GeminiFileSearch", RagProviderKind.MANAGED_STORE),
            ("filesearch", RagProviderKind.MANAGED_STORE),
            ("something-else", RagProviderKind.LOCAL),
            (None, RagProviderKind.LOCAL),
        ],
    )
    def test_aliases(self, name, expected):
        assert resolve_provider_kind(True, name) is expected

    def test_disabled_is_local(self):
        assert resolve_provider_kind(False, "GeminiFileSearch") is RagProviderKind.LOCAL


def test_parse_extensions_accepts_lists():
    assert parse_extensions(["md", ".Txt", " "]) == frozenset({".md", ".txt"})
    assert parse_extensions(None) == frozenset()


def test_extension_field_is_normalised():
    assert RagSettings(allowed_extensions=["MD", "txt"]).allowed_extensions == frozenset({".md", ".txt"})


def test_recording_duration_floor():
    assert RecordingSettings(max_minutes=0).max_duration_seconds == pytest.approx(1.0)
