# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Repository Configuration Loader

Single responsibility: Load and manage repository definitions from repositories.conf
"""

import configparser
import logging
from pathlib import Path
from typing import Dict

from pkgmgr.core.errors import ConfigurationError
from pkgmgr.models.package_models import RepositoryConfig

logger = logging.getLogger(__name__)


class RepositoryConfigLoader:
    """Loads repository configurations from INI-style repositories.conf"""

    def __init__(self, config_path: Path):
        """
        Initialize configuration loader.

        Args:
            config_path: Path to repositories.conf file
        """
        self.config_path = Path(config_path)

    def load(self) -> Dict[str, RepositoryConfig]:
        """
        Load repository configurations from repositories.conf

        Sections keep their declaration order; `position` records it so the
        resolver can tie-break equal versions by it.

        Returns:
            Dictionary of repository configs keyed by name, in declaration order
        """
        repositories = {}

        if not self.config_path.exists():
            logger.warning(f"No repositories.conf found at {self.config_path}")
            return repositories

        config = configparser.ConfigParser()
        try:
            config.read(self.config_path)
        except configparser.Error as e:
            raise ConfigurationError(f"Invalid repositories.conf: {e}", config_file=str(self.config_path))

        for position, section in enumerate(config.sections()):
            try:
                repo = RepositoryConfig(
                    name=section,
                    display_name=config.get(section, "name", fallback=section),
                    url=config.get(section, "url"),
                    enabled=config.getboolean(section, "enabled", fallback=True),
                    priority=config.getint(section, "priority", fallback=50),
                    position=position,
                )
            except (configparser.Error, ValueError) as e:
                raise ConfigurationError(
                    f"Invalid repository section [{section}]: {e}",
                    config_file=str(self.config_path)
                )
            repositories[section] = repo
            logger.info(f"Loaded repository: {section} ({repo.url})")

        return repositories

    def save(self, repositories: Dict[str, RepositoryConfig]):
        """
        Save repository configurations back to repositories.conf

        Persists runtime changes (enable/disable) to disk, keeping the order.

        Args:
            repositories: Dictionary of repository configurations
        """
        config = configparser.ConfigParser()

        for name, repo in sorted(repositories.items(), key=lambda item: item[1].position):
            config[name] = {
                "name": repo.display_name,
                "url": repo.url,
                "enabled": str(repo.enabled).lower(),
                "priority": str(repo.priority),
            }

        self.config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.config_path, "w") as f:
            config.write(f)

        logger.info(f"Saved {len(repositories)} repositories to {self.config_path}")
