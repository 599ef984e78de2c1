"""Configuration management for wchtools.

Options are merged from built-in defaults, the user's ``~/.wchtoolsoptions``
file, a ``.wchtoolsoptions`` file in the current working directory and a few
``WCHTOOLS_*`` environment variables. Any top-level key whose value is a
dictionary is treated as a per-service section, e.g.::

    {"retry_max_attempts": 3, "types": {"retry_max_attempts": 5}}
"""

import json
import logging
import os
from pathlib import Path
from typing import Any, Optional

from .exceptions import WchConfigError

logger = logging.getLogger(__name__)

OPTIONS_FILE_NAME = ".wchtoolsoptions"

DEFAULT_OPTIONS: dict[str, Any] = {
    "retry_max_attempts": 3,
    "retry_min_timeout": 1.0,
    "retry_max_timeout": 10.0,
    "retry_factor": 2.0,
    "retry_randomize": False,
    "retry_status_codes": [],
    "retry_body_error_codes": [],
    "retry_network_errors": False,
    "retry_push_max_stalled_passes": 1,
    "concurrent_limit": 5,
    "limit": 100,
    "request_timeout": 60.0,
    "use_hashes": True,
    "create_only": False,
    "force_override": False,
    "rewrite_on_push": True,
    "save_file_on_conflict": False,
    "relogin_interval": None,
    "user_agent": "pywchtools",
}

ENV_OPTIONS = {
    "WCHTOOLS_BASE_URL": "base_url",
    "WCHTOOLS_USERNAME": "username",
    "WCHTOOLS_PASSWORD": "password",
    "WCHTOOLS_TENANT_ID": "tenant_id",
}


class Config:
    """Layered options provider."""

    def __init__(self, load_defaults: bool = True):
        """Initialize configuration.

        Args:
            load_defaults: Read the home and working directory options files
                and the environment (default: True)
        """
        self._options: dict[str, Any] = {}
        if load_defaults:
            for path in (Path.home() / OPTIONS_FILE_NAME, Path.cwd() / OPTIONS_FILE_NAME):
                self._load_quietly(path)
            self._load_env()

    def _load_quietly(self, path: Path) -> None:
        if not path.is_file():
            return
        try:
            self.load_file(path)
        except WchConfigError as e:
            logger.warning(f"Ignoring options file: {e}")

    def _load_env(self) -> None:
        for env_name, key in ENV_OPTIONS.items():
            value = os.environ.get(env_name)
            if value:
                self._options[key] = value

    def load_file(self, path: Path) -> None:
        """Merge options from a JSON options file.

        Args:
            path: Options file to read

        Raises:
            WchConfigError: If the file can't be read or isn't a JSON object
        """
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise WchConfigError(f"Failed to read options file {path}: {e}") from e
        if not isinstance(data, dict):
            raise WchConfigError(f"Options file {path} must contain a JSON object")
        self.merge(data)
        logger.debug(f"Loaded options from {path}")

    def merge(self, options: dict[str, Any]) -> None:
        """Merge options, combining per-service sections key by key."""
        for key, value in options.items():
            current = self._options.get(key)
            if isinstance(value, dict) and isinstance(current, dict):
                current.update(value)
            else:
                self._options[key] = value

    def get_property(self, service: Optional[str], key: str) -> Any:
        """Get an option value, preferring the service section.

        Args:
            service: Artifact type name (e.g. "types") or None
            key: Option name

        Returns:
            Configured value, or None if the option is not set
        """
        if service:
            section = self._options.get(service)
            if isinstance(section, dict) and key in section:
                return section[key]
        return self._options.get(key)

    def set_property(self, key: str, value: Any) -> None:
        """Set a global option value."""
        self._options[key] = value

    @property
    def base_url(self) -> Optional[str]:
        """Get the configured authoring service base URL."""
        return self._options.get("base_url")

    @property
    def username(self) -> Optional[str]:
        """Get the configured login user name."""
        return self._options.get("username")

    @property
    def password(self) -> Optional[str]:
        """Get the configured login password."""
        return self._options.get("password")


config = Config()
