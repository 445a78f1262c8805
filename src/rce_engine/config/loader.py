"""
Config Loader - Resolve the settings of one project.

A project is the directory the recorder is started for (``RCE_WORK_DIR``,
or the current directory). Its YAML file and ``.env`` are looked up
relative to that directory, so ``rce stop`` run from another shell with the
same ``RCE_WORK_DIR`` sees the same workspace as the running ``rce dev``.
"""

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from dotenv import load_dotenv
from pydantic import ValidationError

from rce_engine.config.settings import Settings
from rce_engine.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

ENV_FILES = (".env", ".env.local")


def project_dir() -> Path:
    """The directory a run belongs to."""
    return Path(os.environ.get("RCE_WORK_DIR") or os.getcwd())


class ConfigLoader:
    """
    Builds Settings from a project's config file, env and overrides.

    Priority order (highest to lowest):
    1. Explicit overrides passed to load()
    2. Environment variables (``RCE__SECTION__KEY``)
    3. Config file
    4. Default values

    Relative entries of DEFAULT_CONFIG_PATHS are searched in the project
    directory; the first existing file wins.
    """

    DEFAULT_CONFIG_PATHS = [
        Path("rce.config.yaml"),
        Path("rce.config.yml"),
        Path(".rce") / "config.yaml",
        Path.home() / ".config" / "rce" / "config.yaml",
    ]

    def __init__(self, config_path: Optional[Union[str, Path]] = None, base_dir: Optional[Path] = None):
        """
        Args:
            config_path: Explicit config file; it must exist
            base_dir: Project directory (``project_dir()`` if None)
        """
        self.config_path = Path(config_path) if config_path else None
        self.base_dir = base_dir or project_dir()
        self.source: Optional[Path] = None

    def candidates(self) -> List[Path]:
        return [self.base_dir / path for path in self.DEFAULT_CONFIG_PATHS]

    def find_config_file(self) -> Optional[Path]:
        if self.config_path:
            if not self.config_path.exists():
                raise ConfigurationError(f"Config file not found: {self.config_path}")
            return self.config_path
        for path in self.candidates():
            if path.is_file():
                return path
        return None

    def read_file(self, path: Path) -> Dict[str, Any]:
        """
        Parse a config file into a settings mapping.

        Unknown top-level sections are dropped with a warning, and a relative
        ``workspace.work_dir`` is taken relative to the file's directory.
        """
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {path}: {e}")
        except OSError as e:
            raise ConfigurationError(f"Cannot read config file {path}: {e}")

        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ConfigurationError(f"Config file {path} must contain a mapping")

        known = set(Settings.model_fields)
        for key in [key for key in data if key not in known]:
            logger.warning(f"Ignoring unknown section '{key}' in {path}")
            del data[key]

        workspace = data.get("workspace")
        if isinstance(workspace, dict) and workspace.get("work_dir"):
            work_dir = Path(str(workspace["work_dir"])).expanduser()
            if not work_dir.is_absolute():
                workspace["work_dir"] = str((path.parent / work_dir).resolve())
        return data

    def load_env_file(self, env_file: Optional[Union[str, Path]] = None) -> Optional[Path]:
        """Load ``env_file`` or the project's first ``.env`` file (existing env wins)."""
        if env_file:
            path = Path(env_file)
            if not path.exists():
                raise ConfigurationError(f"Env file not found: {path}")
            load_dotenv(path)
            return path
        for name in ENV_FILES:
            path = self.base_dir / name
            if path.is_file():
                load_dotenv(path)
                return path
        return None

    def load(
        self,
        env_file: Optional[Union[str, Path]] = None,
        overrides: Optional[Dict[str, Any]] = None,
    ) -> Settings:
        """
        Raises:
            ConfigurationError: For a missing or malformed file, or values
                that fail validation
        """
        loaded_env = self.load_env_file(env_file)
        if loaded_env:
            logger.debug(f"Loaded environment from {loaded_env}")

        file_config: Dict[str, Any] = {}
        self.source = self.find_config_file()
        if self.source:
            logger.debug(f"Loading config from {self.source}")
            file_config = self.read_file(self.source)

        where = self.source or "environment"
        try:
            # Anything not in the file comes from RCE__* env vars
            settings = Settings(**file_config)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid settings in {where}: {e}")

        if overrides:
            try:
                settings = settings.merge_with(overrides)
            except ValidationError as e:
                raise ConfigurationError(f"Invalid option: {e}")
        return settings


def load_config(
    config_path: Optional[Union[str, Path]] = None,
    env_file: Optional[Union[str, Path]] = None,
    **overrides: Any,
) -> Settings:
    """
    Load the settings of the current project.

    Example:
        >>> settings = load_config()
        >>> settings = load_config(config_path="rce.config.yaml")
        >>> settings = load_config(browser={"headless": True})
    """
    return ConfigLoader(config_path).load(env_file=env_file, overrides=overrides or None)
