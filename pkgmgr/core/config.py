# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
pkgmgr Configuration - Single source of truth.
YAML is king. Env vars only for the log level.

The Config value is built once by the caller and passed into every
component constructor. There is no module-level instance.
"""

import os
import yaml
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Optional

from pkgmgr.core.errors import ConfigurationError


TIE_BREAK_POLICIES = ("declaration", "priority")


# =============================================================================
# CONFIGURATION DATACLASS
# =============================================================================

@dataclass(frozen=True)
class Config:
    """
    Immutable package manager configuration.
    All values from YAML. No hidden state.
    """

    # -- Paths --
    install_root: str = "/"
    state_dir: str = "/var/lib/pkgmgr"
    cache_dir: str = "/var/cache/pkgmgr"
    repositories_conf: str = "/etc/pkgmgr/repositories.conf"

    # -- Fetch --
    fetch_workers: int = 4
    http_timeout: float = 30.0

    # -- Resolver --
    tie_break: str = "declaration"

    # -- Logging --
    log_level: str = "INFO"
    log_format: str = "json"

    def __post_init__(self):
        if self.tie_break not in TIE_BREAK_POLICIES:
            raise ConfigurationError(
                f"Unknown tie_break policy {self.tie_break!r}; expected one of {', '.join(TIE_BREAK_POLICIES)}"
            )
        if self.fetch_workers < 1:
            raise ConfigurationError("fetch_workers must be at least 1")

    # -- Derived paths --
    @property
    def install_root_path(self) -> Path:
        return Path(self.install_root)

    @property
    def installed_file(self) -> Path:
        return Path(self.state_dir) / "installed.json"

    @property
    def journal_file(self) -> Path:
        return Path(self.state_dir) / "journal.json"

    @property
    def history_file(self) -> Path:
        return Path(self.state_dir) / "transactions.jsonl"

    @property
    def lock_file(self) -> Path:
        return Path(self.state_dir) / "lock"

    @property
    def index_file(self) -> Path:
        return Path(self.state_dir) / "package-index.json"

    @property
    def archive_dir(self) -> Path:
        return Path(self.cache_dir) / "archives"

    @property
    def staging_dir(self) -> Path:
        return Path(self.cache_dir) / "staging"

    @property
    def backup_dir(self) -> Path:
        return Path(self.state_dir) / "backups"

    def with_overrides(self, **changes: Any) -> "Config":
        """Return a copy with some fields replaced."""
        return replace(self, **changes)


# =============================================================================
# LOADER
# =============================================================================

def load_config(path: Optional[str] = None) -> Config:
    """
    Load configuration from YAML.
    Returns defaults if file doesn't exist.
    """
    if path is None or not Path(path).exists():
        return Config(log_level=os.getenv("LOG_LEVEL", "INFO"))

    try:
        with open(path) as f:
            y = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {path}: {e}", config_file=str(path))

    if not isinstance(y, dict):
        raise ConfigurationError(f"Configuration root must be a mapping: {path}", config_file=str(path))

    # Helper to safely navigate nested dicts
    def get(d: dict, *keys, default=None):
        for k in keys:
            if not isinstance(d, dict):
                return default
            d = d.get(k, {})
        return d if d != {} else default

    defaults = Config()
    return Config(
        # Paths
        install_root=get(y, "paths", "install_root") or defaults.install_root,
        state_dir=get(y, "paths", "state_dir") or defaults.state_dir,
        cache_dir=get(y, "paths", "cache_dir") or defaults.cache_dir,
        repositories_conf=get(y, "paths", "repositories_conf") or defaults.repositories_conf,

        # Fetch
        fetch_workers=int(get(y, "fetch", "workers") or defaults.fetch_workers),
        http_timeout=float(get(y, "fetch", "timeout") or defaults.http_timeout),

        # Resolver
        tie_break=get(y, "resolver", "tie_break") or defaults.tie_break,

        # Logging
        log_level=os.getenv("LOG_LEVEL") or get(y, "logging", "level") or defaults.log_level,
        log_format=get(y, "logging", "format") or defaults.log_format,
    )
