"""
Configuration for QR Share
"""
import os
import sys
import logging
from pathlib import Path

logger = logging.getLogger(__name__)

# Network Settings
DEFAULT_PORT_START = 8080
DEFAULT_PORT_END = 8090
CHUNK_SIZE = 64 * 1024  # 64KB chunks for file streaming
CONNECT_TIMEOUT = 30.0  # seconds
READ_TIMEOUT = 60.0  # seconds, idle time between chunks

# Session
SESSION_TIMEOUT_SECONDS = 60 * 60  # 1 hour
TOKEN_LENGTH = 32
MIN_TOKEN_LENGTH = 16
SHUTDOWN_GRACE_SECONDS = 2.0  # let the last response flush before stopping

# QR payload
QR_VERSION = "1.0"

# Downloads
STORAGE_BUFFER = 10 * 1024 * 1024  # 10MB headroom on top of the file size
MAX_RETRIES = 3
RETRY_DELAY = 2.0
DOWNLOAD_DIR_ENV_VAR = "QRSHARE_DOWNLOAD_DIR"

# Logging
LOG_LEVEL = os.environ.get("QRSHARE_LOG_LEVEL", "INFO")


def get_data_dir() -> Path:
    """Platform-specific directory for user data (config, logs)."""
    if sys.platform == 'win32':
        base = Path(os.environ.get('LOCALAPPDATA', Path.home() / 'AppData' / 'Local'))
    elif sys.platform == 'darwin':
        base = Path.home() / 'Library' / 'Application Support'
    else:
        base = Path(os.environ.get('XDG_CONFIG_HOME', Path.home() / '.config'))
    d = base / 'QRShare'
    d.mkdir(parents=True, exist_ok=True)
    return d


def get_download_dir() -> Path:
    """
    Directory received files are saved to.

    QRSHARE_DOWNLOAD_DIR wins; otherwise a QRShare folder inside the user's
    Downloads directory (falling back to the home directory when there is none).
    """
    override = os.environ.get(DOWNLOAD_DIR_ENV_VAR)
    if override:
        return Path(override).expanduser()

    downloads = Path.home() / 'Downloads'
    if not downloads.is_dir():
        downloads = Path.home()
    return downloads / 'QRShare'


def get_log_file() -> Path:
    """Log file location inside the data directory"""
    return get_data_dir() / 'qrshare.log'
