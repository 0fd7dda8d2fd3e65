"""kbase configuration loader.

Priority (high → low):
  1. CLI flags           (handled at call site, not in this module)
  2. Environment variables  (KBASE_EMBEDDING_MODEL, KBASE_GENERATION_MODEL,
                             KBASE_LOG_LEVEL, KBASE_DB)
  3. Per-project kbase.yaml
  4. Global ~/.kbase/config.yaml  (defaults only, no API keys)
  5. Hardcoded defaults

Per-tenant retrieval overrides live under ``tenants.<tenant_id>.retrieval``
and are resolved with ``KbConfig.retrieval_for()``.
All YAML reads use yaml.safe_load(), never yaml.load().
"""

from __future__ import annotations

import os
import re
import warnings
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any

import yaml

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_GLOBAL_CONFIG_DIR: Path = Path.home() / ".kbase"
_GLOBAL_CONFIG_PATH: Path = _GLOBAL_CONFIG_DIR / "config.yaml"
_PROJECT_CONFIG_NAME: str = "kbase.yaml"

# Key names that suggest a credential; forbidden in the global config.
# Does NOT match legitimate keys like token_budget, max_tokens.
_API_KEY_RE: re.Pattern[str] = re.compile(
    r"api[_\-]?(?:key|secret)"
    r"|_token$"
    r"|^token$"
    r"|_secret$"
    r"|^secret$"
    r"|passw(?:ord|d)"
    r"|credential",
    re.IGNORECASE,
)

_KNOWN_SECTIONS: frozenset[str] = frozenset(
    [
        "database",
        "embedding",
        "generation",
        "retrieval",
        "chunking",
        "ingest",
        "permissions",
        "tenants",
        "logging",
    ]
)

DEFAULT_ALLOWED_ROLES: tuple[str, ...] = ("support", "operations", "admin")


class ConfigError(ValueError):
    """Raised when a config file contains an invalid or forbidden value."""


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------


@dataclass
class DatabaseCfg:
    path: str = ".kbase.db"


@dataclass
class EmbeddingCfg:
    """Embedding capability and batching (kbase.yaml: embedding:)."""

    model: str = "openai/text-embedding-3-small"
    dimensions: int = 1536
    batch_size: int = 64
    max_batch_chars: int = 200_000
    concurrency: int = 4
    max_attempts: int = 3
    backoff_seconds: float = 1.0
    backoff_max_seconds: float = 20.0


@dataclass
class GenerationCfg:
    """Answer composition (kbase.yaml: generation:)."""

    model: str = "openai/gpt-4o-mini"
    temperature: float = 0.2
    max_tokens: int = 1024
    max_chunk_chars: int = 2000
    token_budget: int = 6000
    fallback_on_error: bool = True
    min_query_terms: int = 2
    score_floor: float = 0.0


@dataclass
class RetrievalCfg:
    """Retrieval pipeline (kbase.yaml: retrieval:, tenants.<id>.retrieval:)."""

    top_k: int = 8
    overfetch: int = 5
    max_candidates: int = 100
    hybrid_enabled: bool = True
    rerank_enabled: bool = False
    rerank_model: str = "openai/gpt-4o-mini"
    rerank_window: int = 20
    timeout_ms: int = 8000
    vector_weight: float = 0.65
    keyword_weight: float = 0.35
    doc_cap: int | None = None


@dataclass
class ChunkingCfg:
    """Sliding window size in token-equivalents (4 chars ≈ 1 token)."""

    chunk_size: int = 250
    overlap: float = 0.12


@dataclass
class IngestCfg:
    max_file_mb: int = 20
    default_allowed_roles: list[str] = field(default_factory=lambda: list(DEFAULT_ALLOWED_ROLES))
    workers: int = 2
    # Re-run interrupted documents when the CLI starts. Only safe when no
    # other process is ingesting into the same database.
    recover_on_startup: bool = False


@dataclass
class LoggingCfg:
    level: str = "INFO"
    json: bool = False


def _default_permissions() -> dict[str, list[str]]:
    return {
        "admin": ["kb.read", "kb.write"],
        "operations": ["kb.read", "kb.write"],
        "support": ["kb.read"],
    }


@dataclass
class KbConfig:
    """Root configuration object, built by load_config() from merged YAML layers."""

    database: DatabaseCfg = field(default_factory=DatabaseCfg)
    embedding: EmbeddingCfg = field(default_factory=EmbeddingCfg)
    generation: GenerationCfg = field(default_factory=GenerationCfg)
    retrieval: RetrievalCfg = field(default_factory=RetrievalCfg)
    chunking: ChunkingCfg = field(default_factory=ChunkingCfg)
    ingest: IngestCfg = field(default_factory=IngestCfg)
    logging: LoggingCfg = field(default_factory=LoggingCfg)
    permissions: dict[str, list[str]] = field(default_factory=_default_permissions)
    tenant_retrieval: dict[str, dict[str, Any]] = field(default_factory=dict)

    def retrieval_for(self, tenant_id: str) -> RetrievalCfg:
        """Return the retrieval settings for *tenant_id* (global + overrides)."""
        overrides = self.tenant_retrieval.get(tenant_id)
        if not overrides:
            return self.retrieval
        return _parse_section(RetrievalCfg, overrides, self.retrieval)


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------


def _check_no_api_keys(data: dict[str, Any], source: Path) -> None:
    """Raise ConfigError if *data* contains any API-key-like key names."""

    def _scan(obj: Any, path: str) -> None:
        if isinstance(obj, dict):
            for k, v in obj.items():
                full = f"{path}.{k}" if path else k
                if _API_KEY_RE.search(str(k)):
                    raise ConfigError(
                        f"Global config '{source}' contains a forbidden key '{full}'.\n"
                        f"  API keys must be set via environment variables, not config files.\n"
                        f"  Remove '{full}' from {source.name} and use:\n"
                        f"    export {str(k).upper().replace('-', '_')}=<value>"
                    )
                _scan(v, full)

    _scan(data, "")


def _warn_unknown_keys(data: dict[str, Any], source: Path) -> None:
    for key in data:
        if key not in _KNOWN_SECTIONS:
            warnings.warn(
                f"Unknown config key '{key}' in '{source}'; ignored.",
                UserWarning,
                stacklevel=4,
            )


def _validate(cfg: KbConfig) -> None:
    if cfg.embedding.dimensions < 1:
        raise ConfigError(f"embedding.dimensions must be >= 1, got {cfg.embedding.dimensions}")
    if cfg.embedding.batch_size < 1 or cfg.embedding.concurrency < 1:
        raise ConfigError("embedding.batch_size and embedding.concurrency must be >= 1")
    if cfg.embedding.max_attempts < 1:
        raise ConfigError("embedding.max_attempts must be >= 1")
    if cfg.chunking.chunk_size < 1:
        raise ConfigError("chunking.chunk_size must be >= 1")
    if not 0.0 <= cfg.chunking.overlap < 1.0:
        raise ConfigError("chunking.overlap must be in [0.0, 1.0)")
    if not cfg.ingest.default_allowed_roles:
        raise ConfigError("ingest.default_allowed_roles must not be empty")
    for tenant_id in cfg.tenant_retrieval:
        if cfg.retrieval_for(tenant_id).timeout_ms < 1:
            raise ConfigError(f"tenants.{tenant_id}.retrieval.timeout_ms must be >= 1")


# ---------------------------------------------------------------------------
# Merge + build
# ---------------------------------------------------------------------------


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Return a new dict that is *base* deep-merged with *override*."""
    result = dict(base)
    for k, v in override.items():
        if k in result and isinstance(result[k], dict) and isinstance(v, dict):
            result[k] = _deep_merge(result[k], v)
        else:
            result[k] = v
    return result


def _coerce(value: Any, current: Any) -> Any:
    if value is None:
        return None
    if isinstance(current, bool):
        return bool(value)
    if isinstance(current, int):
        return int(value)
    if isinstance(current, float):
        return float(value)
    if isinstance(current, list):
        return [str(v) for v in value]
    if isinstance(current, str):
        return str(value)
    return value


def _parse_section(cls: type, raw: dict[str, Any] | None, defaults: Any) -> Any:
    """Build a section dataclass from *raw*, falling back to *defaults* per field."""
    if not raw:
        return defaults
    updates: dict[str, Any] = {}
    for f in fields(cls):
        if f.name in raw:
            updates[f.name] = _coerce(raw[f.name], getattr(defaults, f.name))
    return replace(defaults, **updates)


def _cfg_from_dict(data: dict[str, Any]) -> KbConfig:
    """Build a *KbConfig* from a merged raw YAML dict."""
    cfg = KbConfig()
    cfg.database = _parse_section(DatabaseCfg, data.get("database"), cfg.database)
    cfg.embedding = _parse_section(EmbeddingCfg, data.get("embedding"), cfg.embedding)
    cfg.generation = _parse_section(GenerationCfg, data.get("generation"), cfg.generation)
    cfg.retrieval = _parse_section(RetrievalCfg, data.get("retrieval"), cfg.retrieval)
    cfg.chunking = _parse_section(ChunkingCfg, data.get("chunking"), cfg.chunking)
    cfg.ingest = _parse_section(IngestCfg, data.get("ingest"), cfg.ingest)
    cfg.logging = _parse_section(LoggingCfg, data.get("logging"), cfg.logging)

    if "permissions" in data:
        cfg.permissions = {
            str(role): [str(p) for p in (perms or [])]
            for role, perms in (data["permissions"] or {}).items()
        }

    for tenant_id, tenant_raw in (data.get("tenants") or {}).items():
        retrieval = (tenant_raw or {}).get("retrieval")
        if retrieval:
            cfg.tenant_retrieval[str(tenant_id)] = dict(retrieval)

    return cfg


def _apply_env_overrides(cfg: KbConfig) -> KbConfig:
    """Apply KBASE_* environment variable overrides."""
    if model := os.environ.get("KBASE_GENERATION_MODEL"):
        cfg.generation.model = model
    if model := os.environ.get("KBASE_EMBEDDING_MODEL"):
        cfg.embedding.model = model
    if level := os.environ.get("KBASE_LOG_LEVEL"):
        cfg.logging.level = level
    if db_path := os.environ.get("KBASE_DB"):
        cfg.database.path = db_path
    return cfg


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def load_config(
    project_dir: Path | None = None,
    *,
    global_config_path: Path | None = None,
) -> KbConfig:
    """Load and return a merged *KbConfig*.

    Applies layers in order: global → per-project → env vars.

    Args:
        project_dir: Directory to search for *kbase.yaml*. Defaults to CWD.
        global_config_path: Override the global config path (for testing).

    Raises:
        ConfigError: If the global config contains API-key-like fields or a
            value is out of range.
    """
    global_path = global_config_path if global_config_path is not None else _GLOBAL_CONFIG_PATH
    search_dir = project_dir if project_dir is not None else Path.cwd()

    merged: dict[str, Any] = {}

    if global_path.exists():
        raw_global = yaml.safe_load(global_path.read_text(encoding="utf-8")) or {}
        _check_no_api_keys(raw_global, global_path)
        _warn_unknown_keys(raw_global, global_path)
        merged = _deep_merge(merged, raw_global)

    project_cfg_path = search_dir / _PROJECT_CONFIG_NAME
    if project_cfg_path.exists():
        raw_project = yaml.safe_load(project_cfg_path.read_text(encoding="utf-8")) or {}
        _warn_unknown_keys(raw_project, project_cfg_path)
        merged = _deep_merge(merged, raw_project)

    cfg = _apply_env_overrides(_cfg_from_dict(merged))
    _validate(cfg)
    return cfg
