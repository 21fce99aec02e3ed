"""Concierge configuration loader.

Priority (high → low):
  1. CLI flags           (handled at call site, not in this module)
  2. Environment variables  (CONCIERGE_GENERATION_MODEL, CONCIERGE_EMBEDDING_MODEL)
  3. Per-project concierge.yaml  (next to concierge.db)
  4. Global ~/.concierge/config.yaml  (model defaults only, no API keys)
  5. Hardcoded defaults

Global config must never contain API keys; use environment variables instead.
All YAML reads use yaml.safe_load(), never yaml.load().
"""

from __future__ import annotations

import os
import re
import warnings
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_GLOBAL_CONFIG_DIR: Path = Path.home() / ".concierge"
_GLOBAL_CONFIG_PATH: Path = _GLOBAL_CONFIG_DIR / "config.yaml"
_PROJECT_CONFIG_NAME: str = "concierge.yaml"

# Fields that suggest a credential; forbidden in global config.
# Does NOT match legitimate config keys like max_tokens or account_sid.
_API_KEY_RE: re.Pattern[str] = re.compile(
    r"api[_\-]?(?:key|secret)"  # api_key, api-key, api_secret, apikey
    r"|_token$"                  # auth_token, access_token (suffix)
    r"|^token$"                  # exactly "token" (standalone)
    r"|_secret$"                 # client_secret (suffix)
    r"|^secret$"                 # exactly "secret" (standalone)
    r"|passw(?:ord|d)"           # password, passwd
    r"|credential",              # credential, credentials
    re.IGNORECASE,
)

# Known top-level sections; unknown keys produce a warning
_KNOWN_SECTIONS: frozenset[str] = frozenset(
    ["embedding", "generation", "retrieval", "ingestion", "limits", "messaging"]
)


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class ConfigError(ValueError):
    """Raised when a config file contains an invalid or forbidden value."""


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------


@dataclass
class EmbeddingCfg:
    """Embedding model configuration (concierge.yaml: embedding:).

    Attributes:
        model: LiteLLM embedding model string (provider/model format).
        dimensions: Vector length produced by *model*. The vec index is created
            with exactly this dimension and rejects any other.
        timeout: Per-call deadline in seconds.
    """

    model: str = "gemini/text-embedding-004"
    dimensions: int = 768
    timeout: float = 20.0


@dataclass
class GenerationCfg:
    """LLM generation configuration (concierge.yaml: generation:)."""

    model: str = "gemini/gemini-2.5-flash"
    vision_model: str = "gemini/gemini-2.0-flash"
    timeout: float = 30.0
    max_tokens: int = 500
    temperature: float = 0.7


@dataclass
class RetrievalCfg:
    """Retrieval pipeline configuration (concierge.yaml: retrieval:).

    Attributes:
        top_k_retrieve: Candidates requested from the nearest-neighbour search.
        top_n_return: Maximum chunks placed in the prompt context.
        max_chunks_per_doc: Diversity cap: chunks accepted per source document.
        score_threshold: Maximum cosine distance admitted (lower = better match).
    """

    top_k_retrieve: int = 20
    top_n_return: int = 8
    max_chunks_per_doc: int = 2
    score_threshold: float = 0.7


@dataclass
class IngestionCfg:
    """Splitting and write batching (concierge.yaml: ingestion:)."""

    chunk_size: int = 1200
    boundary_slack: int = 200
    min_chunk_chars: int = 50
    write_batch_size: int = 75
    max_ops_per_commit: int = 450


@dataclass
class LimitsCfg:
    """Per-tenant and per-session caps (concierge.yaml: limits:)."""

    max_docs: int = 20
    max_chunks: int = 2000
    max_messages_per_session: int = 30
    max_upload_mb: int = 10
    max_pdf_pages: int = 50


@dataclass
class MessagingCfg:
    """Outbound messaging channel (concierge.yaml: messaging:).

    The Twilio auth token is read from ``TWILIO_AUTH_TOKEN`` only.
    """

    from_number: str = ""
    account_sid: str = ""
    status_callback_url: str = ""
    timeout: float = 15.0


@dataclass
class ConciergeConfig:
    """Root configuration object, built by load_config() from merged YAML layers."""

    embedding: EmbeddingCfg = field(default_factory=EmbeddingCfg)
    generation: GenerationCfg = field(default_factory=GenerationCfg)
    retrieval: RetrievalCfg = field(default_factory=RetrievalCfg)
    ingestion: IngestionCfg = field(default_factory=IngestionCfg)
    limits: LimitsCfg = field(default_factory=LimitsCfg)
    messaging: MessagingCfg = field(default_factory=MessagingCfg)


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
    """Emit a UserWarning for unrecognised top-level keys."""
    for key in data:
        if key not in _KNOWN_SECTIONS:
            warnings.warn(
                f"Unknown config key '{key}' in '{source}' (ignored).",
                UserWarning,
                stacklevel=4,
            )


def _validate(cfg: ConciergeConfig) -> None:
    """Raise ConfigError for values the pipeline cannot work with."""
    r = cfg.retrieval
    if r.top_n_return < 1 or r.top_k_retrieve < r.top_n_return:
        raise ConfigError(
            f"retrieval.top_k_retrieve ({r.top_k_retrieve}) must be >= "
            f"retrieval.top_n_return ({r.top_n_return}) >= 1"
        )
    if r.max_chunks_per_doc < 1:
        raise ConfigError("retrieval.max_chunks_per_doc must be >= 1")
    if cfg.embedding.dimensions < 1:
        raise ConfigError("embedding.dimensions must be >= 1")
    i = cfg.ingestion
    if i.write_batch_size < 1 or i.max_ops_per_commit < 1:
        raise ConfigError("ingestion batch sizes must be >= 1")
    if i.chunk_size < i.min_chunk_chars:
        raise ConfigError("ingestion.chunk_size must be >= ingestion.min_chunk_chars")


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


def _cfg_from_dict(data: dict[str, Any]) -> ConciergeConfig:
    """Build a *ConciergeConfig* from a merged raw YAML dict."""
    cfg = ConciergeConfig()

    if "embedding" in data:
        e = data["embedding"]
        cfg.embedding = EmbeddingCfg(
            model=str(e.get("model", cfg.embedding.model)),
            dimensions=int(e.get("dimensions", cfg.embedding.dimensions)),
            timeout=float(e.get("timeout", cfg.embedding.timeout)),
        )

    if "generation" in data:
        g = data["generation"]
        cfg.generation = GenerationCfg(
            model=str(g.get("model", cfg.generation.model)),
            vision_model=str(g.get("vision_model", cfg.generation.vision_model)),
            timeout=float(g.get("timeout", cfg.generation.timeout)),
            max_tokens=int(g.get("max_tokens", cfg.generation.max_tokens)),
            temperature=float(g.get("temperature", cfg.generation.temperature)),
        )

    if "retrieval" in data:
        r = data["retrieval"]
        cfg.retrieval = RetrievalCfg(
            top_k_retrieve=int(r.get("top_k_retrieve", cfg.retrieval.top_k_retrieve)),
            top_n_return=int(r.get("top_n_return", cfg.retrieval.top_n_return)),
            max_chunks_per_doc=int(
                r.get("max_chunks_per_doc", cfg.retrieval.max_chunks_per_doc)
            ),
            score_threshold=float(r.get("score_threshold", cfg.retrieval.score_threshold)),
        )

    if "ingestion" in data:
        i = data["ingestion"]
        cfg.ingestion = IngestionCfg(
            chunk_size=int(i.get("chunk_size", cfg.ingestion.chunk_size)),
            boundary_slack=int(i.get("boundary_slack", cfg.ingestion.boundary_slack)),
            min_chunk_chars=int(i.get("min_chunk_chars", cfg.ingestion.min_chunk_chars)),
            write_batch_size=int(i.get("write_batch_size", cfg.ingestion.write_batch_size)),
            max_ops_per_commit=int(
                i.get("max_ops_per_commit", cfg.ingestion.max_ops_per_commit)
            ),
        )

    if "limits" in data:
        lim = data["limits"]
        cfg.limits = LimitsCfg(
            max_docs=int(lim.get("max_docs", cfg.limits.max_docs)),
            max_chunks=int(lim.get("max_chunks", cfg.limits.max_chunks)),
            max_messages_per_session=int(
                lim.get("max_messages_per_session", cfg.limits.max_messages_per_session)
            ),
            max_upload_mb=int(lim.get("max_upload_mb", cfg.limits.max_upload_mb)),
            max_pdf_pages=int(lim.get("max_pdf_pages", cfg.limits.max_pdf_pages)),
        )

    if "messaging" in data:
        m = data["messaging"]
        cfg.messaging = MessagingCfg(
            from_number=str(m.get("from_number", cfg.messaging.from_number)),
            account_sid=str(m.get("account_sid", cfg.messaging.account_sid)),
            status_callback_url=str(
                m.get("status_callback_url", cfg.messaging.status_callback_url)
            ),
            timeout=float(m.get("timeout", cfg.messaging.timeout)),
        )

    return cfg


def _apply_env_overrides(cfg: ConciergeConfig) -> ConciergeConfig:
    """Apply CONCIERGE_* environment variable overrides."""
    if model := os.environ.get("CONCIERGE_GENERATION_MODEL"):
        cfg.generation.model = model
    if model := os.environ.get("CONCIERGE_EMBEDDING_MODEL"):
        cfg.embedding.model = model
    return cfg


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def load_config(
    project_dir: Path | None = None,
    *,
    global_config_path: Path | None = None,
) -> ConciergeConfig:
    """Load and return a merged *ConciergeConfig*.

    Applies layers in order: global → per-project → env vars.
    CLI flag overrides must be applied by the caller after this function.

    Args:
        project_dir: Directory to search for *concierge.yaml*. Defaults to CWD.
        global_config_path: Override the global config path (for testing).

    Returns:
        Fully merged *ConciergeConfig* with env var overrides applied.

    Raises:
        ConfigError: If global config contains API-key-like fields, or a
            value is out of range.
    """
    global_path = global_config_path if global_config_path is not None else _GLOBAL_CONFIG_PATH
    search_dir = project_dir if project_dir is not None else Path.cwd()

    merged: dict[str, Any] = {}

    # Layer 1: global config
    if global_path.exists():
        raw_global = yaml.safe_load(global_path.read_text(encoding="utf-8")) or {}
        _check_no_api_keys(raw_global, global_path)
        _warn_unknown_keys(raw_global, global_path)
        merged = _deep_merge(merged, raw_global)

    # Layer 2: per-project config
    project_cfg_path = search_dir / _PROJECT_CONFIG_NAME
    if project_cfg_path.exists():
        raw_project = yaml.safe_load(project_cfg_path.read_text(encoding="utf-8")) or {}
        _warn_unknown_keys(raw_project, project_cfg_path)
        merged = _deep_merge(merged, raw_project)

    cfg = _cfg_from_dict(merged)

    # Layer 3: env var overrides
    cfg = _apply_env_overrides(cfg)

    _validate(cfg)
    return cfg


def ensure_global_config(
    global_config_path: Path | None = None,
) -> Path:
    """Create ``~/.concierge/config.yaml`` with defaults if it does not exist.

    Creates parent directory with mode 0o700 and the config file with
    mode 0o600 (owner-readable only).
    """
    target = global_config_path if global_config_path is not None else _GLOBAL_CONFIG_PATH
    target.parent.mkdir(mode=0o700, parents=True, exist_ok=True)

    if not target.exists():
        content = (
            "# Concierge global configuration: model defaults only.\n"
            "# NEVER store API keys here. Use environment variables:\n"
            "#   export GEMINI_API_KEY=...\n"
            "#   export TWILIO_AUTH_TOKEN=...\n"
            "\n"
            "embedding:\n"
            "  model: gemini/text-embedding-004\n"
            "  dimensions: 768\n"
            "\n"
            "generation:\n"
            "  model: gemini/gemini-2.5-flash\n"
        )
        target.write_text(content, encoding="utf-8")
        target.chmod(0o600)

    return target
