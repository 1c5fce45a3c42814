"""Configuration for streamchat.

Config discovery (first match wins):
  1. ``--config`` flag
  2. ``./streamchat.yaml``
  3. ``~/.config/streamchat/config.yaml``
  4. Built-in defaults
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from streamchat.errors import ConfigError

_logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Config data structures
# ---------------------------------------------------------------------------

@dataclass
class ProviderSpec:
    """Connection settings for the chat-completions provider."""

    name: str = "openrouter"
    url: str = "https://openrouter.ai/api/v1"
    api_key: str = ""
    api_key_env: str = "OPENROUTER_API_KEY"
    default_model: str = "openai/gpt-4o-mini"
    timeout: float = 120
    app_name: str = "streamchat"
    app_url: str = ""
    extra_params: dict[str, Any] = field(default_factory=dict)


@dataclass
class StreamingSpec:
    """Coalescing bounds: flush every N chunks or every T milliseconds."""

    batch_chunks: int = 2
    flush_interval_ms: int = 60

    @property
    def flush_interval(self) -> float:
        return self.flush_interval_ms / 1000


@dataclass
class RetrySpec:
    """Backoff settings for transient provider failures."""

    max_retries: int = 3
    base_delay: float = 1.0  # seconds -- exponential: 1, 2, 4
    max_delay: float = 60.0
    jitter: bool = False


@dataclass
class RateLimitSpec:
    """Client-side rate limiting."""

    requests_per_minute: int = 0  # 0 = unlimited
    default_cooldown: float = 60.0


@dataclass
class DefaultsSpec:
    """Default request parameters."""

    max_tokens: int = 2000
    temperature: float = 0.7


@dataclass
class ChatConfig:
    """Top-level config for streamchat."""

    provider: ProviderSpec = field(default_factory=ProviderSpec)
    streaming: StreamingSpec = field(default_factory=StreamingSpec)
    retry: RetrySpec = field(default_factory=RetrySpec)
    rate_limit: RateLimitSpec = field(default_factory=RateLimitSpec)
    defaults: DefaultsSpec = field(default_factory=DefaultsSpec)
    db_path: str = "~/.streamchat/chats.db"


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

_SEARCH_PATHS = [
    Path("./streamchat.yaml"),
    Path.home() / ".config" / "streamchat" / "config.yaml",
]


def _parse_section(cls: type, raw: dict[str, Any] | None) -> Any:
    """Build a spec dataclass from *raw*, ignoring unknown keys."""
    if not raw:
        return cls()
    if not isinstance(raw, dict):
        raise ConfigError(f"Expected a mapping for {cls.__name__}, got {type(raw).__name__}")
    known = {
        k: v for k, v in raw.items()
        if v is not None and k in cls.__dataclass_fields__
    }
    unknown = sorted(set(raw) - set(known))
    if unknown:
        _logger.warning("Ignoring unknown %s keys: %s", cls.__name__, ", ".join(unknown))
    return cls(**known)


def load_config(path: str | Path | None = None) -> ChatConfig:
    """Load configuration from YAML.

    Parameters
    ----------
    path:
        Explicit config path.  If *None*, search default locations.

    Returns
    -------
    ChatConfig
    """
    config_path: Path | None = None

    if path is not None:
        config_path = Path(path)
        if not config_path.exists():
            _logger.warning("Config file not found: %s; using defaults", path)
            return ChatConfig()
    else:
        for candidate in _SEARCH_PATHS:
            if candidate.exists():
                config_path = candidate
                break

    if config_path is None:
        _logger.info("No config file found; using defaults")
        return ChatConfig()

    _logger.info("Loading config from %s", config_path)
    try:
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {config_path}: {e}") from e

    if not isinstance(raw, dict):
        raise ConfigError(f"Config root in {config_path} must be a mapping")

    return ChatConfig(
        provider=_parse_section(ProviderSpec, raw.get("provider")),
        streaming=_parse_section(StreamingSpec, raw.get("streaming")),
        retry=_parse_section(RetrySpec, raw.get("retry")),
        rate_limit=_parse_section(RateLimitSpec, raw.get("rate_limit")),
        defaults=_parse_section(DefaultsSpec, raw.get("defaults")),
        db_path=raw.get("db_path", "~/.streamchat/chats.db"),
    )
