"""Settings for the live-assist host, loaded from JSON and environment."""

from __future__ import annotations

import json
import logging
import os
import tempfile
from contextvars import ContextVar
from enum import Enum
from pathlib import Path
from typing import Annotated, Any, FrozenSet, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic_settings import (
    BaseSettings,
    InitSettingsSource,
    NoDecode,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    SettingsError,
)

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

ENV_PREFIX = "LIVE_ASSIST_"
API_KEY_ENV = "GEMINI_API_KEY"

_file_values: ContextVar[Optional[dict]] = ContextVar("live_assist_settings_file", default=None)


def parse_extensions(raw: Any) -> FrozenSet[str]:
    """Normalise ``"md, .TXT"`` or ``["md"]`` into ``{".md", ".txt"}``."""

    if not raw:
        return frozenset()
    parts = raw.split(",") if isinstance(raw, str) else list(raw)
    extensions = set()
    for part in parts:
        value = str(part).strip().lower()
        if not value:
            continue
        extensions.add(value if value.startswith(".") else "." + value)
    return frozenset(extensions)


class _Section(BaseModel):
    model_config = ConfigDict(frozen=True, protected_namespaces=())


class ServerSettings(_Section):
    port: int = 43127
    host: str = "0.0.0.0"


class RecordingSettings(_Section):
    max_minutes: float = 10.0
    min_audio_bytes: int = 8192
    artifacts_dir: Optional[str] = None
    keep_sessions: int = 5
    sample_rate: int = 16000
    input_device: Optional[str] = None
    system_device: Optional[str] = None

    @property
    def max_duration_seconds(self) -> float:
        return max(1.0, self.max_minutes * 60.0)

    @property
    def artifacts_root(self) -> Path:
        if self.artifacts_dir:
            return Path(self.artifacts_dir).expanduser()
        return Path(tempfile.gettempdir()) / "live-assist"


class GeminiSettings(_Section):
    api_key: Optional[str] = None
    model: str = "gemini-3-flash-preview"
    model_audio: Optional[str] = None
    model_vision: Optional[str] = None
    answer_max_output_tokens: int = 2048
    thinking_level: Optional[str] = None
    response_language: Optional[str] = None
    system_prompt: Optional[str] = None
    timeout_seconds: float = 120.0

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key and self.api_key.strip())

    @property
    def audio_model(self) -> str:
        return self.model_audio or self.model

    @property
    def vision_model(self) -> str:
        return self.model_vision or self.model


class LoggingSettings(_Section):
    verbose: bool = True
    max_text_chars: int = 1200


class StreamSettings(_Section):
    enabled: bool = True
    fps: int = 10
    jpeg_quality: int = 70
    max_width: int = 1280
    max_height: int = 720


class MemorySettings(_Section):
    max_messages: int = 0


class RagSettings(_Section):
    """Immutable retrieval configuration shared by every provider variant."""

    enabled: bool = False
    provider: str = "Local"
    folder: str = "rag"
    max_files: int = 500
    max_file_size_mb: int = 10
    chunk_chars: int = 1000
    chunk_overlap: int = 200
    top_k: int = 4
    max_context_chars: int = 4000
    min_score: float = 0.08
    query_max_chars: int = 400
    default_query: Optional[str] = None
    use_for_audio: bool = False
    use_for_screenshot: bool = True
    use_for_follow_up: bool = True
    allowed_extensions: Annotated[FrozenSet[str], NoDecode] = frozenset()
    embedding_model: str = "gemini-embedding-001"
    embedding_task_document: str = "RETRIEVAL_DOCUMENT"
    embedding_task_query: str = "RETRIEVAL_QUERY"
    embedding_output_dim: int = 0
    embedding_batch_size: int = 16
    file_search_store_name: Optional[str] = None
    file_search_display_name: str = "live-assist-rag"
    file_search_upload_on_start: bool = True
    file_search_metadata_filter: Optional[str] = None
    file_search_chunk_max_tokens: int = 0
    file_search_chunk_max_overlap_tokens: int = 0
    file_search_operation_timeout_seconds: float = 600.0
    file_search_operation_poll_seconds: float = 5.0

    @field_validator("allowed_extensions", mode="before")
    @classmethod
    def _normalise_extensions(cls, value: Any) -> FrozenSet[str]:
        return parse_extensions(value)


class Settings(BaseSettings):
    """Host settings: constructor values, then ``LIVE_ASSIST_`` variables, then the JSON file.

    Nested fields use ``__`` in variable names, e.g. ``LIVE_ASSIST_RAG__TOP_K=6``.
    """

    model_config = SettingsConfigDict(
        env_prefix=ENV_PREFIX,
        env_nested_delimiter="__",
        extra="ignore",
        frozen=True,
    )

    server: ServerSettings = Field(default_factory=ServerSettings)
    recording: RecordingSettings = Field(default_factory=RecordingSettings)
    gemini: GeminiSettings = Field(default_factory=GeminiSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    stream: StreamSettings = Field(default_factory=StreamSettings)
    memory: MemorySettings = Field(default_factory=MemorySettings)
    rag: RagSettings = Field(default_factory=RagSettings)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return init_settings, env_settings, InitSettingsSource(settings_cls, _file_values.get() or {})


class RagProviderKind(str, Enum):
    LOCAL = "local"
    REMOTE_EMBEDDING = "remote_embedding"
    MANAGED_STORE = "managed_store"


_EMBEDDING_ALIASES = {"geminiembeddings", "geminiembedding", "embeddings", "gemini"}
_FILE_SEARCH_ALIASES = {"geminifilesearch", "filesearch", "geminifilesearchtool", "geminifs"}


def resolve_provider_kind(enabled: bool, name: Optional[str]) -> RagProviderKind:
    """Map the configured provider name onto one of the supported backends."""

    if not enabled or not name:
        return RagProviderKind.LOCAL
    value = name.strip().lower()
    if value in _FILE_SEARCH_ALIASES:
        return RagProviderKind.MANAGED_STORE
    if value in _EMBEDDING_ALIASES:
        return RagProviderKind.REMOTE_EMBEDDING
    return RagProviderKind.LOCAL


# ----------------------------------------------------------------------
# Loading
# ----------------------------------------------------------------------


def load_settings(path: str | Path | None = None) -> Settings:
    """Build settings from defaults, an optional JSON file and the environment."""

    raw = _read_settings_file(Path(path)) if path is not None else {}
    token = _file_values.set(raw)
    try:
        settings = Settings()
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid settings: {_describe(exc)}") from exc
    except SettingsError as exc:
        raise ConfigurationError(f"Invalid settings: {exc}") from exc
    finally:
        _file_values.reset(token)

    api_key = os.environ.get(API_KEY_ENV, "").strip()
    if api_key:
        gemini = settings.gemini.model_copy(update={"api_key": api_key})
        settings = settings.model_copy(update={"gemini": gemini})
    elif settings.gemini.is_configured:
        logger.info("Using gemini.api_key from settings file.")
    return settings


def _read_settings_file(config_path: Path) -> dict:
    if not config_path.exists():
        logger.info("Settings file %s not found; using defaults", config_path)
        return {}
    try:
        raw = json.loads(config_path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        raise ConfigurationError(f"Cannot read settings file {config_path}: {exc}") from exc
    if not isinstance(raw, dict):
        raise ConfigurationError(f"Settings file {config_path} must contain a JSON object")
    return raw


def _describe(exc: ValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}" for error in exc.errors()
    )
