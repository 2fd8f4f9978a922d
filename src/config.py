"""Gateway configuration management.

Configuration is loaded from a single YAML file:
- backend: Coordination server base URL (e.g. http://127.0.0.1:8080)
- bind/port: Listener address for the public-facing ingress
- public_url: Externally visible URL (tunnel hostname)
- rules: Ordered rewrite rule table (see ingress.rules)
- admin_command: Command prefix for the backend's administrative CLI

Resolution order when no explicit path is given:
1. $HEADGATE_CONFIG environment variable
2. /usr/local/etc/headgate/config.yaml (FHS)
3. /etc/headgate/config.yaml
4. Built-in defaults
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse

import yaml

logger = logging.getLogger(__name__)

DEFAULT_BACKEND = 'http://127.0.0.1:8080'
DEFAULT_BIND = '127.0.0.1'
DEFAULT_PORT = 80
DEFAULT_CAPABILITY_VERSION = 88
DEFAULT_UPGRADE_PATHS = ('/ts2021',)
DEFAULT_EXPIRATION = '1h'
DEFAULT_BACKEND_CONFIG = Path('/opt/headscale/headscale-config/config.yaml')
PLACEHOLDER_SERVER_URL = 'https://your-tailscale-hostname.ts.net'

CONFIG_SEARCH_PATHS = (
    Path('/usr/local/etc/headgate/config.yaml'),
    Path('/etc/headgate/config.yaml'),
)


class ConfigError(Exception):
    """Configuration error."""


@dataclass
class GatewayConfig:
    """Configuration for the ingress and the credential tooling.

    Values are immutable once the server has started; handlers receive
    them through explicit construction, never through module state.
    """
    backend: str = DEFAULT_BACKEND
    bind: str = DEFAULT_BIND
    port: int = DEFAULT_PORT
    public_url: str = ''
    backend_config: Path = DEFAULT_BACKEND_CONFIG
    capability_version: int = DEFAULT_CAPABILITY_VERSION
    upgrade_paths: tuple = DEFAULT_UPGRADE_PATHS
    rules: Optional[list] = None  # None = built-in table
    timeout: float = 30.0
    connect_timeout: float = 10.0
    close_grace: float = 5.0
    admin_command: list = field(default_factory=lambda: ['headscale'])
    default_expiration: str = DEFAULT_EXPIRATION
    source: Optional[Path] = None

    def __post_init__(self):
        if isinstance(self.backend_config, str):
            self.backend_config = Path(self.backend_config)
        if isinstance(self.admin_command, str):
            self.admin_command = self.admin_command.split()
        self.upgrade_paths = tuple(self.upgrade_paths)

        parsed = urlparse(self.backend)
        if parsed.scheme not in ('http', 'https') or not parsed.hostname:
            raise ConfigError(f"backend must be an http(s) URL, got: {self.backend!r}")
        if self.public_url:
            parsed = urlparse(self.public_url)
            if parsed.scheme not in ('http', 'https') or not parsed.hostname:
                raise ConfigError(f"public_url must be an http(s) URL, got: {self.public_url!r}")
        if not isinstance(self.capability_version, int) or self.capability_version < 1:
            raise ConfigError(
                f"capability_version must be a positive integer, got: {self.capability_version!r}"
            )

    @classmethod
    def from_dict(cls, data: dict, source: Optional[Path] = None) -> 'GatewayConfig':
        """Build config from a parsed YAML mapping, ignoring unknown keys."""
        known = {
            'backend', 'bind', 'port', 'public_url', 'backend_config',
            'capability_version', 'upgrade_paths', 'rules', 'timeout',
            'connect_timeout', 'close_grace', 'admin_command', 'default_expiration',
        }
        unknown = sorted(set(data) - known)
        if unknown:
            logger.warning("Ignoring unknown config keys: %s", ", ".join(unknown))
        values = {k: v for k, v in data.items() if k in known}
        try:
            return cls(source=source, **values)
        except TypeError as e:
            raise ConfigError(f"Invalid configuration: {e}") from e

    def server_url(self) -> str:
        """Externally reachable server URL.

        public_url wins; otherwise the backend's own server_url setting;
        otherwise a placeholder the operator must replace.
        """
        if self.public_url:
            return self.public_url.rstrip('/')
        if self.backend_config.exists():
            try:
                backend_settings = _parse_yaml(self.backend_config)
            except (OSError, yaml.YAMLError, ConfigError) as e:
                logger.warning("Cannot read %s: %s", self.backend_config, e)
            else:
                if url := backend_settings.get('server_url'):
                    return str(url).rstrip('/')
        return PLACEHOLDER_SERVER_URL


def _parse_yaml(path: Path) -> dict:
    """Parse a YAML file and return contents."""
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ConfigError(f"{path}: expected a mapping at top level")
    return data


def find_config_file() -> Optional[Path]:
    """Discover the config file.

    Returns:
        Path to the config file, or None when no file is present.

    Raises:
        ConfigError: If $HEADGATE_CONFIG points at a missing file
    """
    if env_path := os.environ.get('HEADGATE_CONFIG'):
        path = Path(env_path)
        if path.exists():
            return path
        raise ConfigError(f"HEADGATE_CONFIG={env_path} does not exist")

    for candidate in CONFIG_SEARCH_PATHS:
        if candidate.exists():
            return candidate
    return None


def load_config(path: Optional[Path] = None) -> GatewayConfig:
    """Load gateway configuration.

    Args:
        path: Explicit config file (must exist). When None, the file is
            discovered; built-in defaults apply if nothing is found.

    Returns:
        GatewayConfig

    Raises:
        ConfigError: If the file is missing, unreadable, or invalid
    """
    if path is not None:
        path = Path(path)
        if not path.exists():
            raise ConfigError(f"Config file not found: {path}")
    else:
        path = find_config_file()
        if path is None:
            logger.debug("No config file found, using defaults")
            return GatewayConfig()

    try:
        data = _parse_yaml(path)
    except yaml.YAMLError as e:
        raise ConfigError(f"{path}: invalid YAML: {e}") from e
    except OSError as e:
        raise ConfigError(f"{path}: {e}") from e

    logger.debug("Loaded config from %s", path)
    return GatewayConfig.from_dict(data, source=path)
