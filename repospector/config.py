"""RepoSpector application configuration.

Loads settings from two YAML files:
  * repospector.settings.yaml  — non-secret configuration
  * repospector.secrets.yaml   — secrets (never committed)

Every field has a default, so a missing or partial settings file yields the
documented behaviour.  The remote embedding API key may also come from the
``OPENAI_API_KEY`` environment variable when the secrets file omits it.
"""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, Literal, Optional

import yaml
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

SETTINGS_FILE = Path("repospector.settings.yaml")
SECRETS_FILE  = Path("repospector.secrets.yaml")

API_KEY_ENV_VAR = "OPENAI_API_KEY"


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.warning("Config file not found: %s", path)
        return {}
    with path.open(encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


# ---------------------------------------------------------------------------
# Secrets models
# ---------------------------------------------------------------------------


class EmbeddingSecrets(BaseModel):
    api_key: Optional[str] = None


class Secrets(BaseModel):
    embedding: EmbeddingSecrets = Field(default_factory=EmbeddingSecrets)


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class ServerSettings(BaseModel):
    host: str = "0.0.0.0"
    port: int = 8000


class LoggingSettings(BaseModel):
    level: str = "info"


class EmbeddingSettings(BaseModel):
    """Which embedding strategy to run and how to reach it."""
    provider:                Literal["local", "remote"] = "local"
    local_model:             str   = "sentence-transformers/all-MiniLM-L6-v2"
    local_dim:               int   = Field(default=384, ge=1)
    remote_model:            str   = "text-embedding-3-small"
    remote_dim:              int   = Field(default=1536, ge=1)
    base_url:                str   = "https://api.openai.com/v1"
    max_attempts:            int   = Field(default=3, ge=1)
    backoff_base_seconds:    float = Field(default=0.5, ge=0)
    request_timeout_seconds: float = Field(default=30.0, gt=0)


class RagSettings(BaseModel):
    """Indexing and retrieval knobs."""
    enabled:             bool  = True
    batch_size:          int   = Field(default=20, ge=1)
    min_score:           float = 0.3
    max_chunks_per_file: int   = Field(default=4, ge=1)
    default_limit:       int   = Field(default=20, ge=1)
    cache_ttl_seconds:   float = Field(default=300.0, gt=0)
    cache_max_size:      int   = Field(default=100, ge=1)
    target_model:        str   = "gpt-4.1-mini"
    reserved_tokens:     int   = Field(default=2000, ge=0)
    overlap_tokens:      int   = Field(default=200, ge=0)
    max_chunk_tokens:    int   = Field(default=1000, ge=1)
    tokens_per_char:     float = Field(default=0.25, gt=0)
    hybrid_search:       bool  = False
    rerank:              bool  = False
    query_expansion:     bool  = False


class StorageSettings(BaseModel):
    backend: Literal["memory", "duckdb"] = "duckdb"
    db_path: str = "repospector_vectors.duckdb"


class AppConfig(BaseModel):
    server:    ServerSettings    = Field(default_factory=ServerSettings)
    logging:   LoggingSettings   = Field(default_factory=LoggingSettings)
    embedding: EmbeddingSettings = Field(default_factory=EmbeddingSettings)
    rag:       RagSettings       = Field(default_factory=RagSettings)
    storage:   StorageSettings   = Field(default_factory=StorageSettings)
    secrets:   Secrets           = Field(default_factory=Secrets)

    @property
    def embedding_api_key(self) -> Optional[str]:
        """API key for the remote provider: secrets file first, then env."""
        return self.secrets.embedding.api_key or os.environ.get(API_KEY_ENV_VAR) or None


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------


def _resolve_db_path(config: AppConfig, settings_path: Path) -> None:
    """Anchor a relative ``storage.db_path`` to the settings file directory."""
    db_path = Path(config.storage.db_path)
    if not db_path.is_absolute() and settings_path.exists():
        config.storage.db_path = str(settings_path.resolve().parent / db_path)


def load_config(
    settings_path: Optional[Path] = None,
    secrets_path: Optional[Path] = None,
) -> AppConfig:
    """Load and merge settings + secrets into a single *AppConfig* object."""
    settings_path = Path(settings_path) if settings_path else SETTINGS_FILE
    secrets_path  = Path(secrets_path) if secrets_path else settings_path.with_name(SECRETS_FILE.name)

    settings_data = _load_yaml(settings_path)
    secrets_data  = _load_yaml(secrets_path)

    # Secrets live under the "secrets" key in AppConfig
    settings_data["secrets"] = secrets_data

    config = AppConfig(**settings_data)
    _resolve_db_path(config, settings_path)

    logger.info(
        "Settings loaded (server=%s:%s, embedding.provider=%s, storage.backend=%s, rag.enabled=%s)",
        config.server.host,
        config.server.port,
        config.embedding.provider,
        config.storage.backend,
        config.rag.enabled,
    )
    return config


_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Return the process-wide configuration, loading it on first use."""
    global _config
    if _config is None:
        _config = load_config()
    return _config
