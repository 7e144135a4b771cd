"""Configuration management for adbpair.

Settings come from an optional YAML file. Anything missing, unreadable or
not a mapping falls back to the dataclass defaults.
"""

import logging
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Callable

import yaml

logger = logging.getLogger(__name__)

DEFAULT_DATA_DIR = "~/.config/adbpair"
DEFAULT_CONFIG_PATH = Path("~/.config/adbpair/config.yaml")

FileReader = Callable[[Path], dict[str, Any] | None]


@dataclass
class Config:
    """adbpair configuration."""

    log_level: str = "INFO"
    log_file: str | None = None
    key_name: str = "adbpair"  # appended to the exported public key
    handshake_timeout: float = 30.0  # seconds, per pairing attempt
    data_dir: str = DEFAULT_DATA_DIR

    @property
    def key_file(self) -> Path:
        """Encrypted RSA private key blob."""
        return Path(self.data_dir).expanduser() / "adbkey"

    @property
    def master_key_file(self) -> Path:
        """Master key used to wrap the RSA private key."""
        return Path(self.data_dir).expanduser() / "master.key"

    @property
    def trusted_keys_file(self) -> Path:
        """Public keys of peers that completed pairing."""
        return Path(self.data_dir).expanduser() / "trusted_keys.json"


def get_config_path(custom_path: Path | None = None) -> Path:
    """Return custom_path, or ~/.config/adbpair/config.yaml when it is None."""
    return custom_path if custom_path is not None else DEFAULT_CONFIG_PATH.expanduser()


def _read_yaml(path: Path) -> dict[str, Any] | None:
    try:
        data = yaml.safe_load(path.read_text())
    except FileNotFoundError:
        return None
    except yaml.YAMLError as e:
        logger.warning(f"Ignoring unparseable config {path}: {e}")
        return None
    return data if isinstance(data, dict) else None


def load_config(path: Path | None = None, file_reader: FileReader | None = None) -> Config:
    """Load configuration.

    Args:
        path: Config file; the default location when None.
        file_reader: Returns the parsed mapping for a path, or None. Tests
            inject this instead of touching the filesystem.

    Returns:
        Config with file values applied over the defaults.

    Raises:
        ValueError: If handshake_timeout is not positive.
    """
    data = (file_reader or _read_yaml)(get_config_path(path))
    if not data:
        return Config()

    known = {f.name for f in fields(Config)}
    for key in data.keys() - known:
        logger.warning(f"Unknown config key ignored: {key}")

    config = Config(**{key: value for key, value in data.items() if key in known})
    config.handshake_timeout = float(config.handshake_timeout)

    if config.handshake_timeout <= 0:
        raise ValueError(f"handshake_timeout must be positive, got {config.handshake_timeout}")

    return config
