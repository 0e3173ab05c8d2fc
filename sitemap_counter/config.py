from __future__ import annotations
import logging
from dataclasses import dataclass, fields, replace
from typing import Any, Mapping, Optional

import yaml

from sitemap_counter.errors import ConfigError

logger = logging.getLogger(__name__)

# browser UA; some hosts refuse bare python clients
DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/115.0.0.0 Safari/537.36"
)


@dataclass(frozen=True)
class CounterConfig:
    max_concurrency: int = 8
    max_depth: int = 10
    timeout_per_fetch: float = 15.0  # seconds, read timeout and total transfer budget
    connect_timeout: float = 5.0
    max_body_bytes: int = 50 * 1024 * 1024  # sitemap protocol caps uncompressed files at 50MB
    max_retries: int = 2
    backoff_seconds: float = 0.5
    max_backoff: float = 4.0
    max_redirects: int = 5
    user_agent: str = DEFAULT_USER_AGENT
    total_timeout: Optional[float] = None  # whole-run deadline, None = no limit
    debug: bool = False

    def __post_init__(self) -> None:
        if self.max_concurrency < 1:
            raise ConfigError("max_concurrency must be >= 1")
        if self.max_depth < 0:
            raise ConfigError("max_depth must be >= 0")
        if self.max_retries < 0:
            raise ConfigError("max_retries must be >= 0")
        if self.max_redirects < 0:
            raise ConfigError("max_redirects must be >= 0")
        if self.max_body_bytes <= 0:
            raise ConfigError("max_body_bytes must be > 0")
        if self.timeout_per_fetch <= 0 or self.connect_timeout <= 0:
            raise ConfigError("timeouts must be > 0")
        if self.total_timeout is not None and self.total_timeout <= 0:
            raise ConfigError("total_timeout must be > 0 when set")

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "CounterConfig":
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigError(f"unknown config option(s): {', '.join(unknown)}")
        try:
            return cls(**dict(data))
        except TypeError as exc:
            raise ConfigError(str(exc)) from exc

    def override(self, **changes: Any) -> "CounterConfig":
        """
        copy with the given options replaced, skipping None values
        (so unset CLI flags don't clobber the config file)
        """
        changes = {k: v for k, v in changes.items() if v is not None}
        if not changes:
            return self
        return replace(self, **changes)


def load_config(path: str | None) -> CounterConfig:
    """
    read a YAML config file; keys map 1:1 onto CounterConfig fields
    an empty file or no path at all gives the defaults
    """
    if not path:
        return CounterConfig()
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except OSError as exc:
        raise ConfigError(f"cannot read config {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"invalid YAML in {path}: {exc}") from exc

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigError(f"config {path} must be a mapping, got {type(data).__name__}")
    logger.debug("Loaded config from %s: %s", path, ", ".join(sorted(data)))
    return CounterConfig.from_mapping(data)
