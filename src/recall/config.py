"""recall configuration loader.

Priority (high → low):
  1. CLI flags           (handled at call site — not in this module)
  2. Environment variables  (RECALL_DB_PATH, RECALL_EMBEDDING_MODEL,
                             RECALL_EMBEDDING_DIMENSIONS)
  3. Per-directory recall.yaml
  4. Global ~/.recall/config.yaml  (no API keys)
  5. Hardcoded defaults

Global config must never contain API keys; use environment variables instead.
All YAML reads use yaml.safe_load() — never yaml.load().
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

_GLOBAL_CONFIG_DIR: Path = Path.home() / ".recall"
_GLOBAL_CONFIG_PATH: Path = _GLOBAL_CONFIG_DIR / "config.yaml"
_PROJECT_CONFIG_NAME: str = "recall.yaml"

DEFAULT_DB_PATH: Path = _GLOBAL_CONFIG_DIR / "recall.db"

# Fields that suggest an API key — forbidden in global config.
_API_KEY_RE: re.Pattern[str] = re.compile(
    r"api[_\-]?(?:key|secret)"  # api_key, api-key, api_secret, apikey
    r"|_token$"                  # github_token, access_token (suffix)
    r"|^token$"                  # exactly "token"
    r"|_secret$"                 # client_secret (suffix)
    r"|^secret$"                 # exactly "secret"
    r"|passw(?:ord|d)"           # password, passwd
    r"|credential",              # credential, credentials
    re.IGNORECASE,
)

_KNOWN_SECTIONS: frozenset[str] = frozenset(
    ["store", "embedding", "retrieval", "bridge", "queue"]
)

INBOUND_MODES: frozenset[str] = frozenset(["draft_only", "disabled"])

# Channels shown in the bridge rollout summary, each defaulting to draft_only.
BRIDGE_ROLLOUT_CHANNELS: tuple[str, ...] = ("telegram", "discord", "signal", "viber", "linkedin")


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class ConfigError(ValueError):
    """Raised when a config file contains an invalid or forbidden value."""


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------


@dataclass
class StoreCfg:
    """SQLite store location and lock handling (recall.yaml: store:)."""

    path: str = str(DEFAULT_DB_PATH)
    busy_timeout_ms: int = 5_000
    lock_retries: int = 5


@dataclass
class EmbeddingCfg:
    """Embedding model configuration (recall.yaml: embedding:)."""

    model: str = "openai/text-embedding-3-small"
    dimensions: int | None = None  # learned from the probe embedding when unset
    timeout: float = 30.0
    cache_size: int = 2_048
    num_retries: int = 2


@dataclass
class RetrievalCfg:
    """Hybrid search configuration (recall.yaml: retrieval:)."""

    top_k: int = 5
    rrf_k: int = 60
    candidate_multiplier: int = 4


@dataclass
class BridgeChannelCfg:
    """Inbound policy for a single bridge channel."""

    inbound_mode: str = "draft_only"


@dataclass
class BridgeCfg:
    """Channel bridge policy (recall.yaml: bridge:)."""

    default_mode: str = "draft_only"
    channels: dict[str, BridgeChannelCfg] = field(
        default_factory=lambda: {c: BridgeChannelCfg() for c in BRIDGE_ROLLOUT_CHANNELS}
    )
    event_log_limit: int = 50


@dataclass
class QueueCfg:
    """Background work queue sizing (recall.yaml: queue:)."""

    max_size: int = 256
    workers: int = 1


@dataclass
class RecallConfig:
    """Root configuration object, built by load_config() from merged YAML layers."""

    store: StoreCfg = field(default_factory=StoreCfg)
    embedding: EmbeddingCfg = field(default_factory=EmbeddingCfg)
    retrieval: RetrievalCfg = field(default_factory=RetrievalCfg)
    bridge: BridgeCfg = field(default_factory=BridgeCfg)
    queue: QueueCfg = field(default_factory=QueueCfg)


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
                f"Unknown config key '{key}' in '{source}' — ignored.",
                UserWarning,
                stacklevel=4,
            )


def normalize_inbound_mode(value: Any, fallback: str = "draft_only") -> str:
    """Return *value* as a valid inbound mode, or *fallback* if unrecognised."""
    mode = str(value or "").strip().lower()
    return mode if mode in INBOUND_MODES else fallback


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


def _cfg_from_dict(data: dict[str, Any]) -> RecallConfig:
    """Build a *RecallConfig* from a merged raw YAML dict."""
    cfg = RecallConfig()

    if "store" in data:
        s = data["store"] or {}
        cfg.store = StoreCfg(
            path=str(s.get("path", cfg.store.path)),
            busy_timeout_ms=int(s.get("busy_timeout_ms", cfg.store.busy_timeout_ms)),
            lock_retries=int(s.get("lock_retries", cfg.store.lock_retries)),
        )

    if "embedding" in data:
        e = data["embedding"] or {}
        dims = e.get("dimensions", cfg.embedding.dimensions)
        cfg.embedding = EmbeddingCfg(
            model=str(e.get("model", cfg.embedding.model)),
            dimensions=int(dims) if dims is not None else None,
            timeout=float(e.get("timeout", cfg.embedding.timeout)),
            cache_size=int(e.get("cache_size", cfg.embedding.cache_size)),
            num_retries=int(e.get("num_retries", cfg.embedding.num_retries)),
        )

    if "retrieval" in data:
        r = data["retrieval"] or {}
        cfg.retrieval = RetrievalCfg(
            top_k=int(r.get("top_k", cfg.retrieval.top_k)),
            rrf_k=int(r.get("rrf_k", cfg.retrieval.rrf_k)),
            candidate_multiplier=int(
                r.get("candidate_multiplier", cfg.retrieval.candidate_multiplier)
            ),
        )

    if "bridge" in data:
        b = data["bridge"] or {}
        default_mode = normalize_inbound_mode(b.get("default_mode"), cfg.bridge.default_mode)
        channels = {c: BridgeChannelCfg() for c in BRIDGE_ROLLOUT_CHANNELS}
        for name, raw in (b.get("channels") or {}).items():
            mode = raw.get("inbound_mode") if isinstance(raw, dict) else raw
            channels[str(name).lower()] = BridgeChannelCfg(
                inbound_mode=normalize_inbound_mode(mode)
            )
        cfg.bridge = BridgeCfg(
            default_mode=default_mode,
            channels=channels,
            event_log_limit=int(b.get("event_log_limit", cfg.bridge.event_log_limit)),
        )

    if "queue" in data:
        q = data["queue"] or {}
        cfg.queue = QueueCfg(
            max_size=int(q.get("max_size", cfg.queue.max_size)),
            workers=int(q.get("workers", cfg.queue.workers)),
        )

    return cfg


def _apply_env_overrides(cfg: RecallConfig) -> RecallConfig:
    """Apply RECALL_* environment variable overrides."""
    if path := os.environ.get("RECALL_DB_PATH"):
        cfg.store.path = path
    if model := os.environ.get("RECALL_EMBEDDING_MODEL"):
        cfg.embedding.model = model
    if dims := os.environ.get("RECALL_EMBEDDING_DIMENSIONS"):
        try:
            cfg.embedding.dimensions = int(dims)
        except ValueError as exc:
            raise ConfigError(
                f"RECALL_EMBEDDING_DIMENSIONS must be an integer, got '{dims}'"
            ) from exc
    return cfg


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def load_config(
    project_dir: Path | None = None,
    *,
    global_config_path: Path | None = None,
) -> RecallConfig:
    """Load and return a merged *RecallConfig*.

    Applies layers in order: global → per-directory → env vars.
    CLI flag overrides must be applied by the caller after this function.

    Args:
        project_dir: Directory to search for *recall.yaml*. Defaults to CWD.
        global_config_path: Override the global config path (for testing).

    Raises:
        ConfigError: If global config contains API-key-like fields or an
            environment override is malformed.
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

    # Layer 2: per-directory config
    project_cfg_path = search_dir / _PROJECT_CONFIG_NAME
    if project_cfg_path.exists():
        raw_project = yaml.safe_load(project_cfg_path.read_text(encoding="utf-8")) or {}
        _warn_unknown_keys(raw_project, project_cfg_path)
        merged = _deep_merge(merged, raw_project)

    cfg = _cfg_from_dict(merged)

    # Layer 3: env var overrides
    return _apply_env_overrides(cfg)


def ensure_global_config(
    global_config_path: Path | None = None,
) -> Path:
    """Create ``~/.recall/config.yaml`` with defaults if it does not exist.

    Creates parent directory with mode 0o700 and the config file with
    mode 0o600 (owner-readable only).
    """
    target = global_config_path if global_config_path is not None else _GLOBAL_CONFIG_PATH
    target.parent.mkdir(mode=0o700, parents=True, exist_ok=True)

    if not target.exists():
        content = (
            "# recall global configuration — no API keys here.\n"
            "# Set provider keys via environment variables:\n"
            "#   export OPENAI_API_KEY=sk-...\n"
            "\n"
            "embedding:\n"
            "  model: openai/text-embedding-3-small\n"
            "\n"
            "bridge:\n"
            "  default_mode: draft_only\n"
        )
        target.write_text(content, encoding="utf-8")
        target.chmod(0o600)

    return target
