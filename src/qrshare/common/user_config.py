"""
User Configuration Management

Manages user-editable settings stored in a JSON file.
Settings can be changed without modifying code.
"""
import json
import logging
from pathlib import Path
from typing import Any, List, Optional
from dataclasses import dataclass, asdict, fields

from qrshare import config

logger = logging.getLogger(__name__)

# Conversion constant
KB = 1024


def default_config_file() -> Path:
    return config.get_data_dir() / "config.json"


@dataclass
class ShareConfig:
    """User configuration for QR Share"""

    # Server
    port_range_start: int = config.DEFAULT_PORT_START
    port_range_end: int = config.DEFAULT_PORT_END
    session_timeout_minutes: int = config.SESSION_TIMEOUT_SECONDS // 60
    chunk_size_kb: int = config.CHUNK_SIZE // KB

    # Client
    connect_timeout: float = config.CONNECT_TIMEOUT
    read_timeout: float = config.READ_TIMEOUT
    max_retries: int = config.MAX_RETRIES
    retry_delay: float = config.RETRY_DELAY
    download_dir: str = ""  # empty means the platform default

    @property
    def chunk_size(self) -> int:
        return self.chunk_size_kb * KB

    @property
    def port_range(self) -> tuple:
        return (self.port_range_start, self.port_range_end)

    def resolved_download_dir(self) -> Path:
        if self.download_dir:
            return Path(self.download_dir).expanduser()
        return config.get_download_dir()

    def validate(self) -> List[str]:
        """Return a list of problems, empty when the config is usable"""
        errors = []
        for name in ('port_range_start', 'port_range_end'):
            value = getattr(self, name)
            if not isinstance(value, int) or not 0 < value <= 65535:
                errors.append(f"{name} must be a port number between 1 and 65535")
        if not errors and self.port_range_start > self.port_range_end:
            errors.append("port_range_start must not exceed port_range_end")
        if self.session_timeout_minutes <= 0:
            errors.append("session_timeout_minutes must be positive")
        if self.chunk_size_kb <= 0:
            errors.append("chunk_size_kb must be positive")
        if self.connect_timeout <= 0:
            errors.append("connect_timeout must be positive")
        if self.read_timeout <= 0:
            errors.append("read_timeout must be positive")
        if self.max_retries < 1:
            errors.append("max_retries must be at least 1")
        if self.retry_delay < 0:
            errors.append("retry_delay must not be negative")
        return errors

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> 'ShareConfig':
        """Create config from dict, using defaults for missing or unknown keys"""
        defaults = cls()
        for key, value in data.items():
            if hasattr(defaults, key):
                setattr(defaults, key, value)
            else:
                logger.debug(f"Ignoring unknown config key: {key}")
        return defaults


def _coerce(current: Any, value: Any) -> Any:
    """Convert a CLI string to the type of the existing setting"""
    if not isinstance(value, str):
        return value
    if isinstance(current, bool):
        return value.lower() in ('1', 'true', 'yes', 'on')
    if isinstance(current, int):
        return int(value)
    if isinstance(current, float):
        return float(value)
    return value


class ConfigManager:
    """Loads, saves and edits a ShareConfig file"""

    def __init__(self, config_path: Optional[Path] = None):
        self.config_path = Path(config_path) if config_path else default_config_file()
        self._config: Optional[ShareConfig] = None

    def load(self) -> ShareConfig:
        """Load configuration from file, falling back to defaults"""
        path = self.config_path

        if path.exists():
            try:
                with open(path, 'r') as f:
                    data = json.load(f)
                loaded = ShareConfig.from_dict(data)
                problems = loaded.validate()
                if problems:
                    logger.warning(f"Invalid config in {path}: {'; '.join(problems)}; using defaults")
                    loaded = ShareConfig()
                self._config = loaded
                logger.info(f"Loaded config from {path}")
            except (OSError, ValueError, TypeError) as e:
                logger.warning(f"Failed to load config: {e}, using defaults")
                self._config = ShareConfig()
        else:
            logger.info("No config file found, using defaults")
            self._config = ShareConfig()

        return self._config

    def save(self) -> bool:
        """Save configuration to file"""
        try:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.config_path, 'w') as f:
                json.dump(self.get().to_dict(), f, indent=2)
            logger.info(f"Saved config to {self.config_path}")
            return True
        except OSError as e:
            logger.error(f"Failed to save config: {e}")
            return False

    def get(self) -> ShareConfig:
        """Get current configuration"""
        if self._config is None:
            self.load()
        return self._config

    def set(self, key: str, value: Any) -> bool:
        """Set a configuration value, rejecting unknown keys and invalid results"""
        current = self.get()
        if key not in {f.name for f in fields(ShareConfig)}:
            logger.error(f"Unknown config key: {key}")
            return False

        try:
            new_value = _coerce(getattr(current, key), value)
        except ValueError:
            logger.error(f"Invalid value for {key}: {value!r}")
            return False

        candidate = ShareConfig.from_dict({**current.to_dict(), key: new_value})
        problems = candidate.validate()
        if problems:
            logger.error(f"Rejected {key}={value!r}: {'; '.join(problems)}")
            return False

        self._config = candidate
        return self.save()

    def reset(self) -> ShareConfig:
        """Reset to default configuration"""
        self._config = ShareConfig()
        self.save()
        return self._config


def format_config(cfg: ShareConfig, config_path: Path) -> str:
    """Readable multi-line summary of the configuration"""
    lines = [
        "",
        "=" * 50,
        "  QR Share - Configuration",
        "=" * 50,
        "",
        "  Sending:",
        f"    Port Range:      {cfg.port_range_start}-{cfg.port_range_end}",
        f"    Session Timeout: {cfg.session_timeout_minutes} min",
        f"    Chunk Size:      {cfg.chunk_size_kb} KB",
        "",
        "  Receiving:",
        f"    Connect Timeout: {cfg.connect_timeout}s",
        f"    Read Timeout:    {cfg.read_timeout}s",
        f"    Max Attempts:    {cfg.max_retries}",
        f"    Retry Delay:     {cfg.retry_delay}s",
        f"    Download Folder: {cfg.resolved_download_dir()}",
        "",
        f"  Config File: {config_path}",
        "=" * 50,
        "",
    ]
    return "\n".join(lines)
