"""localkb configuration loader.

Priority (high → low):
  1. CLI flags           (handled at the call site, not in this module)
  2. Environment variables  (LOCALKB_EMBEDDING_MODEL, LOCALKB_GENERATION_MODEL,
     LOCALKB_MODE, LOCALKB_UPDATE_POLICY, OLLAMA_HOST)
  3. Per-project localkb.yaml  (in the project directory)
  4. Global ~/.localkb/config.yaml  (model defaults only, no API keys)
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

_GLOBAL_CONFIG_DIR: Path = Path.home() / ".localkb"
_GLOBAL_CONFIG_PATH: Path = _GLOBAL_CONFIG_DIR / "config.yaml"
_PROJECT_CONFIG_NAME: str = "localkb.yaml"

# Fields that suggest an API key are forbidden in global config.
# Does NOT match legitimate config keys like max_tokens or top_k.
_API_KEY_RE: re.Pattern[str] = re.compile(
    r"api[_\-]?(?:key|secret)"  # api_key, api-key, api_secret, apikey
    r"|_token$"                  # github_token, access_token, auth_token (suffix)
    r"|^token$"                  # exactly "token" (standalone)
    r"|_secret$"                 # my_secret, client_secret (suffix)
    r"|^secret$"                 # exactly "secret" (standalone)
    r"|passw(?:ord|d)"           # password, passwd
    r"|credential",              # credential, credentials
    re.IGNORECASE,
)

_KNOWN_SECTIONS: frozenset[str] = frozenset(
    [
        "paths",
        "embedding",
        "generation",
        "chunking",
        "store",
        "retrieval",
        "examples",
        "conversation",
        "engine",
    ]
)

UPDATE_POLICIES: frozenset[str] = frozenset(["append", "replace"])
ENGINE_MODES: frozenset[str] = frozenset(["rag", "llm", "hybrid"])


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class ConfigError(ValueError):
    """Raised when a config file contains an invalid or forbidden value."""


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------


@dataclass
class PathsCfg:
    """Filesystem layout (localkb.yaml: paths:).

    Attributes:
        data_dir: One sub-directory of documents per knowledge base.
        db_dir: One ``<kb>.db`` file per knowledge base.
        examples_dir: One sub-directory of ``*.jsonl`` few-shot examples per KB.
        cache_dir: Example embedding index cache (``<kb>.json``).
    """

    data_dir: str = "data"
    db_dir: str = "db"
    examples_dir: str = "llm"
    cache_dir: str = ".cache/llm_index"


@dataclass
class EmbeddingCfg:
    """Embedding model configuration (localkb.yaml: embedding:)."""

    model: str = "ollama/nomic-embed-text"


@dataclass
class GenerationCfg:
    """Generation backend configuration (localkb.yaml: generation:).

    ``model`` answers from retrieved context, ``fewshot_model`` answers from
    examples and conversation history.
    """

    model: str = "ollama/qwen2.5:1.5b"
    fewshot_model: str = "ollama/qwen2.5:1.5b"
    api_base: str | None = None
    max_tokens: int = 64
    fewshot_max_tokens: int = 128
    fewshot_temperature: float = 0.1
    num_retries: int = 2


@dataclass
class ChunkingCfg:
    """Segmenter sizes in characters (localkb.yaml: chunking:)."""

    chunk_size: int = 1100
    overlap: int = 120


@dataclass
class StoreCfg:
    """Incremental update behaviour (localkb.yaml: store:)."""

    update_policy: str = "append"  # append | replace
    max_workers: int = 1


@dataclass
class RetrievalCfg:
    """Ranker configuration (localkb.yaml: retrieval:)."""

    top_k: int = 6
    fts_candidates: int = 40
    min_similarity: float = 0.35


@dataclass
class ExamplesCfg:
    """Few-shot example selection (localkb.yaml: examples:)."""

    per_kb_k: int = 6
    confidence_threshold: float = 0.35


@dataclass
class ConversationCfg:
    """Conversation router configuration (localkb.yaml: conversation:)."""

    top_k: int = 5
    relevance_threshold: float = 0.38
    history_window: int = 6
    max_context_terms: int = 16
    rewrite_terms: int = 8
    paraphrase: bool = False
    session_ttl_seconds: float = 3600.0
    max_sessions: int = 1000


@dataclass
class EngineCfg:
    """One-shot answering mode (localkb.yaml: engine:)."""

    mode: str = "hybrid"  # rag | llm | hybrid


@dataclass
class LocalKBConfig:
    """Root configuration object, built by load_config() from merged YAML layers."""

    paths: PathsCfg = field(default_factory=PathsCfg)
    embedding: EmbeddingCfg = field(default_factory=EmbeddingCfg)
    generation: GenerationCfg = field(default_factory=GenerationCfg)
    chunking: ChunkingCfg = field(default_factory=ChunkingCfg)
    store: StoreCfg = field(default_factory=StoreCfg)
    retrieval: RetrievalCfg = field(default_factory=RetrievalCfg)
    examples: ExamplesCfg = field(default_factory=ExamplesCfg)
    conversation: ConversationCfg = field(default_factory=ConversationCfg)
    engine: EngineCfg = field(default_factory=EngineCfg)


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


def _validate(cfg: LocalKBConfig) -> None:
    """Raise ConfigError for values the engine cannot work with."""
    if cfg.store.update_policy not in UPDATE_POLICIES:
        raise ConfigError(
            f"store.update_policy must be one of {sorted(UPDATE_POLICIES)}, "
            f"got '{cfg.store.update_policy}'"
        )
    if cfg.engine.mode not in ENGINE_MODES:
        raise ConfigError(
            f"engine.mode must be one of {sorted(ENGINE_MODES)}, got '{cfg.engine.mode}'"
        )
    if cfg.chunking.chunk_size < 1:
        raise ConfigError("chunking.chunk_size must be >= 1")
    if cfg.chunking.overlap < 0:
        raise ConfigError("chunking.overlap must be >= 0")
    if cfg.store.max_workers < 1:
        raise ConfigError("store.max_workers must be >= 1")
    for name, value in (
        ("retrieval.top_k", cfg.retrieval.top_k),
        ("retrieval.fts_candidates", cfg.retrieval.fts_candidates),
        ("examples.per_kb_k", cfg.examples.per_kb_k),
        ("conversation.top_k", cfg.conversation.top_k),
        ("conversation.max_context_terms", cfg.conversation.max_context_terms),
        ("conversation.max_sessions", cfg.conversation.max_sessions),
    ):
        if value < 1:
            raise ConfigError(f"{name} must be >= 1, got {value}")


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


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    raw = data.get(name) or {}
    if not isinstance(raw, dict):
        raise ConfigError(f"'{name}' must be a mapping, got {type(raw).__name__}")
    return raw


def _read_yaml(path: Path) -> dict[str, Any]:
    """Parse one config file; an empty file is an empty mapping."""
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"{path} is not valid YAML: {exc}") from exc
    if not isinstance(raw, dict):
        raise ConfigError(f"{path} must contain a mapping, got {type(raw).__name__}")
    return raw


def _cfg_from_dict(data: dict[str, Any]) -> LocalKBConfig:
    """Build a *LocalKBConfig* from a merged raw YAML dict."""
    cfg = LocalKBConfig()

    if "paths" in data:
        p = _section(data, "paths")
        cfg.paths = PathsCfg(
            data_dir=str(p.get("data_dir", cfg.paths.data_dir)),
            db_dir=str(p.get("db_dir", cfg.paths.db_dir)),
            examples_dir=str(p.get("examples_dir", cfg.paths.examples_dir)),
            cache_dir=str(p.get("cache_dir", cfg.paths.cache_dir)),
        )

    if "embedding" in data:
        e = _section(data, "embedding")
        cfg.embedding = EmbeddingCfg(model=str(e.get("model", cfg.embedding.model)))

    if "generation" in data:
        g = _section(data, "generation")
        d = cfg.generation
        cfg.generation = GenerationCfg(
            model=str(g.get("model", d.model)),
            fewshot_model=str(g.get("fewshot_model", d.fewshot_model)),
            api_base=g.get("api_base") or d.api_base,
            max_tokens=int(g.get("max_tokens", d.max_tokens)),
            fewshot_max_tokens=int(g.get("fewshot_max_tokens", d.fewshot_max_tokens)),
            fewshot_temperature=float(g.get("fewshot_temperature", d.fewshot_temperature)),
            num_retries=int(g.get("num_retries", d.num_retries)),
        )

    if "chunking" in data:
        c = _section(data, "chunking")
        cfg.chunking = ChunkingCfg(
            chunk_size=int(c.get("chunk_size", cfg.chunking.chunk_size)),
            overlap=int(c.get("overlap", cfg.chunking.overlap)),
        )

    if "store" in data:
        s = _section(data, "store")
        cfg.store = StoreCfg(
            update_policy=str(s.get("update_policy", cfg.store.update_policy)),
            max_workers=int(s.get("max_workers", cfg.store.max_workers)),
        )

    if "retrieval" in data:
        r = _section(data, "retrieval")
        cfg.retrieval = RetrievalCfg(
            top_k=int(r.get("top_k", cfg.retrieval.top_k)),
            fts_candidates=int(r.get("fts_candidates", cfg.retrieval.fts_candidates)),
            min_similarity=float(r.get("min_similarity", cfg.retrieval.min_similarity)),
        )

    if "examples" in data:
        x = _section(data, "examples")
        cfg.examples = ExamplesCfg(
            per_kb_k=int(x.get("per_kb_k", cfg.examples.per_kb_k)),
            confidence_threshold=float(
                x.get("confidence_threshold", cfg.examples.confidence_threshold)
            ),
        )

    if "conversation" in data:
        cv = _section(data, "conversation")
        d2 = cfg.conversation
        cfg.conversation = ConversationCfg(
            top_k=int(cv.get("top_k", d2.top_k)),
            relevance_threshold=float(cv.get("relevance_threshold", d2.relevance_threshold)),
            history_window=int(cv.get("history_window", d2.history_window)),
            max_context_terms=int(cv.get("max_context_terms", d2.max_context_terms)),
            rewrite_terms=int(cv.get("rewrite_terms", d2.rewrite_terms)),
            paraphrase=bool(cv.get("paraphrase", d2.paraphrase)),
            session_ttl_seconds=float(cv.get("session_ttl_seconds", d2.session_ttl_seconds)),
            max_sessions=int(cv.get("max_sessions", d2.max_sessions)),
        )

    if "engine" in data:
        en = _section(data, "engine")
        cfg.engine = EngineCfg(mode=str(en.get("mode", cfg.engine.mode)).lower())

    return cfg


def _apply_env_overrides(cfg: LocalKBConfig) -> LocalKBConfig:
    """Apply LOCALKB_* (and OLLAMA_HOST) environment variable overrides."""
    if model := os.environ.get("LOCALKB_EMBEDDING_MODEL"):
        cfg.embedding.model = model
    if model := os.environ.get("LOCALKB_GENERATION_MODEL"):
        cfg.generation.model = model
        cfg.generation.fewshot_model = model
    if mode := os.environ.get("LOCALKB_MODE"):
        cfg.engine.mode = mode.lower()
    if policy := os.environ.get("LOCALKB_UPDATE_POLICY"):
        cfg.store.update_policy = policy.lower()
    if cfg.generation.api_base is None and (host := os.environ.get("OLLAMA_HOST")):
        cfg.generation.api_base = host
    return cfg


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def load_config(
    project_dir: Path | None = None,
    *,
    global_config_path: Path | None = None,
) -> LocalKBConfig:
    """Load and return a merged *LocalKBConfig*.

    Applies layers in order: global → per-project → env vars.
    CLI flag overrides must be applied by the caller after this function.

    Args:
        project_dir: Directory to search for *localkb.yaml*. Defaults to CWD.
        global_config_path: Override the global config path (for testing).

    Returns:
        Fully merged *LocalKBConfig* with env var overrides applied.

    Raises:
        ConfigError: If a file is not valid YAML, global config contains
            API-key-like fields, or a value is malformed or out of range.
    """
    global_path = global_config_path if global_config_path is not None else _GLOBAL_CONFIG_PATH
    search_dir = project_dir if project_dir is not None else Path.cwd()

    merged: dict[str, Any] = {}

    # Layer 1: global config
    if global_path.exists():
        raw_global = _read_yaml(global_path)
        _check_no_api_keys(raw_global, global_path)
        _warn_unknown_keys(raw_global, global_path)
        merged = _deep_merge(merged, raw_global)

    # Layer 2: per-project config
    project_cfg_path = search_dir / _PROJECT_CONFIG_NAME
    if project_cfg_path.exists():
        raw_project = _read_yaml(project_cfg_path)
        _warn_unknown_keys(raw_project, project_cfg_path)
        merged = _deep_merge(merged, raw_project)

    try:
        cfg = _cfg_from_dict(merged)
    except ConfigError:
        raise
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"invalid configuration value: {exc}") from exc

    # Layer 3: env var overrides
    cfg = _apply_env_overrides(cfg)

    _validate(cfg)
    return cfg
