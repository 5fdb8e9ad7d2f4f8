"""
Transfer session model

A TransferSession is the set of connection facts that locate and authorize a
single file transfer: where the sender listens, which file it serves, and
the bearer token that gates it. Sessions are immutable; the receiving side
rebuilds an equivalent value from the decoded QR payload.
"""
import os
import re
import time
import string
import secrets
import logging
from pathlib import Path
from datetime import datetime, timedelta
from dataclasses import dataclass, field, replace
from typing import Union

from qrshare import config
from qrshare.common.errors import (
    FileSystemError, FileSystemErrorType, ServerError, ServerErrorType,
    NetworkError, NetworkErrorType,
)

logger = logging.getLogger(__name__)

TOKEN_ALPHABET = string.ascii_letters + string.digits
_TOKEN_PATTERN = re.compile(r"[a-zA-Z0-9]+")

DEFAULT_SESSION_TIMEOUT = timedelta(seconds=config.SESSION_TIMEOUT_SECONDS)


def generate_security_token(length: int = config.TOKEN_LENGTH) -> str:
    """Generate a cryptographically secure alphanumeric token"""
    return ''.join(secrets.choice(TOKEN_ALPHABET) for _ in range(length))


def generate_session_id() -> str:
    """Unique session id: millisecond timestamp plus a random suffix"""
    timestamp = int(time.time() * 1000)
    return f"session_{timestamp}_{generate_security_token(8)}"


def validate_security_token(token: str) -> bool:
    """Check that a token is long enough and only uses allowed characters"""
    if not isinstance(token, str) or not token:
        return False
    if len(token) < config.MIN_TOKEN_LENGTH:
        return False
    return bool(_TOKEN_PATTERN.fullmatch(token))


@dataclass(frozen=True)
class TransferSession:
    """Connection details and metadata for one file transfer"""
    session_id: str
    file_path: str
    file_name: str
    file_size: int
    ip_address: str
    port: int
    security_token: str = field(repr=False)
    created_at: datetime = field(default_factory=datetime.now)
    session_timeout: timedelta = DEFAULT_SESSION_TIMEOUT

    @classmethod
    def create(
        cls,
        file_path: Union[str, Path],
        ip_address: str,
        port: int,
        session_timeout: timedelta = DEFAULT_SESSION_TIMEOUT,
    ) -> 'TransferSession':
        """
        Create a fresh session for serving a file.

        Raises:
            FileSystemError: file missing, not a regular file, or unreadable
            NetworkError: no IP address to serve on
            ServerError: no port to serve on
        """
        path = Path(file_path)
        if not path.is_file():
            raise FileSystemError(f"File does not exist: {path}", FileSystemErrorType.FILE_NOT_FOUND,
                                  context={"path": str(path)})
        if not os.access(path, os.R_OK):
            raise FileSystemError(f"File is not readable: {path}", FileSystemErrorType.PERMISSION_DENIED,
                                  context={"path": str(path)})
        if not ip_address:
            raise NetworkError("Could not determine local IP address", NetworkErrorType.NO_NETWORK)
        if not port or port <= 0:
            raise ServerError("No available port", ServerErrorType.PORT_UNAVAILABLE)

        session = cls(
            session_id=generate_session_id(),
            file_path=str(path),
            file_name=path.name,
            file_size=path.stat().st_size,
            ip_address=ip_address,
            port=port,
            security_token=generate_security_token(),
            created_at=datetime.now(),
            session_timeout=session_timeout,
        )
        logger.debug(f"Created session {session.session_id} for {path.name}")
        return session

    def is_expired(self) -> bool:
        return datetime.now() - self.created_at > self.session_timeout

    def is_valid(self) -> bool:
        """Not expired, token well-formed, and a usable endpoint"""
        if self.is_expired():
            return False
        if not self.security_token or len(self.security_token) < config.MIN_TOKEN_LENGTH:
            return False
        if not self.session_id:
            return False
        if not self.ip_address or self.port <= 0:
            return False
        return True

    @property
    def base_url(self) -> str:
        return f"http://{self.ip_address}:{self.port}"

    @property
    def auth_params(self) -> dict:
        """Query parameters that authorize /info and /file requests"""
        return {'sessionId': self.session_id, 'token': self.security_token}

    def copy_with(self, **changes) -> 'TransferSession':
        return replace(self, **changes)

    def to_dict(self) -> dict:
        """Loggable view of the session. The token is left out."""
        return {
            'sessionId': self.session_id,
            'fileName': self.file_name,
            'fileSize': self.file_size,
            'ipAddress': self.ip_address,
            'port': self.port,
            'createdAt': self.created_at.isoformat(),
            'expired': self.is_expired(),
        }

    def __str__(self) -> str:
        return (f"TransferSession(sessionId: {self.session_id}, fileName: {self.file_name}, "
                f"fileSize: {self.file_size}, ipAddress: {self.ip_address}, port: {self.port}, "
                f"isExpired: {self.is_expired()})")
