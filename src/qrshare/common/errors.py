"""
Error taxonomy for QR Share

Every failure that leaves the core is a QRShareError subclass carrying:
- a technical message (for logs)
- a user-facing message and suggested actions (for whatever UI drives the core)
- a typed kind that decides whether the failure is retryable

Low-level exceptions (socket, HTTP, timeout, filesystem, JSON) are translated
once, by exception type, in translate_exception().
"""
import errno
import json
import asyncio
from enum import Enum
from dataclasses import dataclass
from typing import Optional, Dict, List, Any

import aiohttp


class ErrorSeverity(Enum):
    """How loudly an error should be surfaced"""
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


@dataclass(frozen=True)
class ErrorAction:
    """A recovery step the user can take"""
    label: str
    description: str

    def to_dict(self) -> dict:
        return {"label": self.label, "description": self.description}


class _RetryableKind(Enum):
    """Enum whose members are (code, retryable) pairs"""

    def __init__(self, code: str, retryable: bool):
        self.code = code
        self.retryable = retryable


class NetworkErrorType(_RetryableKind):
    CONNECTION_TIMEOUT = ("connection_timeout", True)
    CONNECTION_REFUSED = ("connection_refused", True)
    NO_NETWORK = ("no_network", False)
    SERVER_UNAVAILABLE = ("server_unavailable", True)


class FileSystemErrorType(_RetryableKind):
    INSUFFICIENT_STORAGE = ("insufficient_storage", False)
    PERMISSION_DENIED = ("permission_denied", False)
    FILE_NOT_FOUND = ("file_not_found", True)
    CORRUPTED_FILE = ("corrupted_file", True)


class QRCodeErrorType(_RetryableKind):
    INVALID_FORMAT = ("invalid_format", True)
    UNSUPPORTED_VERSION = ("unsupported_version", True)
    INVALID_SESSION = ("invalid_session", False)
    CAMERA_PERMISSION_DENIED = ("camera_permission_denied", False)
    CAMERA_UNAVAILABLE = ("camera_unavailable", True)


class ServerErrorType(_RetryableKind):
    PORT_UNAVAILABLE = ("port_unavailable", True)
    AUTHENTICATION_FAILED = ("authentication_failed", True)
    SESSION_EXPIRED = ("session_expired", False)
    ALREADY_RUNNING = ("already_running", False)


class PermissionErrorType(_RetryableKind):
    CAMERA = ("camera_permission", False)
    STORAGE = ("storage_permission", False)
    NETWORK = ("network_permission", False)


class TransferErrorType(_RetryableKind):
    CANCELLED = ("transfer_cancelled", False)
    DOWNLOAD_IN_PROGRESS = ("download_in_progress", False)


_RETRY = ErrorAction("Retry", "Try the operation again")
_RESCAN = ErrorAction("Rescan QR", "Scan the QR code again")
_NEW_QR = ErrorAction("Get New QR", "Ask the sender to share the file again")

# User-facing message per error kind
USER_MESSAGES: Dict[Enum, str] = {
    NetworkErrorType.CONNECTION_TIMEOUT: "Connection timed out. Please check your network and try again.",
    NetworkErrorType.CONNECTION_REFUSED: "The sending device refused the connection.",
    NetworkErrorType.NO_NETWORK: "No network connection is available.",
    NetworkErrorType.SERVER_UNAVAILABLE: "The sending device is not reachable right now.",

    FileSystemErrorType.INSUFFICIENT_STORAGE: "Not enough storage space to receive the file.",
    FileSystemErrorType.PERMISSION_DENIED: "Permission denied when accessing the file or folder.",
    FileSystemErrorType.FILE_NOT_FOUND: "The selected file could not be found.",
    FileSystemErrorType.CORRUPTED_FILE: "The received file is incomplete or corrupted.",

    QRCodeErrorType.INVALID_FORMAT: "The QR code format is invalid. Please scan a valid file sharing QR code.",
    QRCodeErrorType.UNSUPPORTED_VERSION: "This QR code was made by a different version of QR Share.",
    QRCodeErrorType.INVALID_SESSION: "The sharing session is invalid or has expired.",
    QRCodeErrorType.CAMERA_PERMISSION_DENIED: "Camera access is needed to scan QR codes.",
    QRCodeErrorType.CAMERA_UNAVAILABLE: "The camera is not available.",

    ServerErrorType.PORT_UNAVAILABLE: "No free network port was found for sharing.",
    ServerErrorType.AUTHENTICATION_FAILED: "The sender rejected the request. The QR code may be out of date.",
    ServerErrorType.SESSION_EXPIRED: "The sharing session has expired.",
    ServerErrorType.ALREADY_RUNNING: "A file is already being shared.",

    PermissionErrorType.CAMERA: "Camera permission is required.",
    PermissionErrorType.STORAGE: "Storage permission is required.",
    PermissionErrorType.NETWORK: "Network permission is required.",

    TransferErrorType.CANCELLED: "The transfer was cancelled.",
    TransferErrorType.DOWNLOAD_IN_PROGRESS: "A download is already in progress.",
}

SUGGESTED_ACTIONS: Dict[Enum, List[ErrorAction]] = {
    NetworkErrorType.CONNECTION_TIMEOUT: [
        _RETRY,
        ErrorAction("Check Network", "Ensure both devices are on the same Wi-Fi network"),
    ],
    NetworkErrorType.CONNECTION_REFUSED: [_RETRY, _RESCAN],
    NetworkErrorType.NO_NETWORK: [
        ErrorAction("Check Wi-Fi", "Connect to a Wi-Fi network or enable a hotspot"),
    ],
    NetworkErrorType.SERVER_UNAVAILABLE: [
        _RETRY,
        ErrorAction("Ask Sender", "Ask the sender to restart file sharing"),
    ],

    FileSystemErrorType.INSUFFICIENT_STORAGE: [
        ErrorAction("Free Space", "Delete some files to make space"),
    ],
    FileSystemErrorType.PERMISSION_DENIED: [
        ErrorAction("Grant Permission", "Allow storage access in settings"),
    ],
    FileSystemErrorType.FILE_NOT_FOUND: [
        ErrorAction("Try Again", "Select the file again"),
    ],
    FileSystemErrorType.CORRUPTED_FILE: [
        ErrorAction("Retry Download", "Download the file again"),
    ],

    QRCodeErrorType.INVALID_FORMAT: [
        ErrorAction("Scan Again", "Try scanning the QR code again"),
        ErrorAction("Check QR Code", "Make sure you're scanning the correct QR code"),
    ],
    QRCodeErrorType.UNSUPPORTED_VERSION: [
        ErrorAction("Update App", "Install the same QR Share version on both devices"),
    ],
    QRCodeErrorType.INVALID_SESSION: [_NEW_QR],
    QRCodeErrorType.CAMERA_PERMISSION_DENIED: [
        ErrorAction("Grant Permission", "Allow camera access in settings"),
    ],
    QRCodeErrorType.CAMERA_UNAVAILABLE: [
        ErrorAction("Restart App", "Close and reopen the app"),
    ],

    ServerErrorType.PORT_UNAVAILABLE: [
        ErrorAction("Try Again", "A different port may be free"),
    ],
    ServerErrorType.AUTHENTICATION_FAILED: [
        _RESCAN,
        ErrorAction("Ask for New QR", "Ask the sender to generate a new QR code"),
    ],
    ServerErrorType.SESSION_EXPIRED: [_NEW_QR],
    ServerErrorType.ALREADY_RUNNING: [
        ErrorAction("Stop Sharing", "Stop the current share before starting a new one"),
    ],

    PermissionErrorType.CAMERA: [
        ErrorAction("Open Settings", "Grant camera permission in settings"),
    ],
    PermissionErrorType.STORAGE: [
        ErrorAction("Open Settings", "Grant storage permission in settings"),
    ],
    PermissionErrorType.NETWORK: [
        ErrorAction("Open Settings", "Grant network permission in settings"),
    ],

    TransferErrorType.CANCELLED: [
        ErrorAction("Start Again", "Scan the QR code again to restart the download"),
    ],
    TransferErrorType.DOWNLOAD_IN_PROGRESS: [
        ErrorAction("Wait", "Wait for the current download to finish or cancel it"),
    ],
}


class QRShareError(Exception):
    """Base class for all QR Share errors"""

    default_severity = ErrorSeverity.ERROR

    def __init__(
        self,
        message: str,
        kind: Optional[Enum] = None,
        user_message: Optional[str] = None,
        severity: Optional[ErrorSeverity] = None,
        context: Optional[Dict[str, Any]] = None,
        original: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.message = message
        self.kind = kind
        self._user_message = user_message
        self.severity = severity or self.default_severity
        self.context = context or {}
        self.original = original

    @property
    def code(self) -> str:
        return self.kind.code if self.kind is not None else "unknown"

    @property
    def retryable(self) -> bool:
        return bool(self.kind is not None and self.kind.retryable)

    @property
    def user_message(self) -> str:
        if self._user_message:
            return self._user_message
        return USER_MESSAGES.get(self.kind, "An unexpected error occurred. Please try again.")

    @property
    def suggested_actions(self) -> List[ErrorAction]:
        return list(SUGGESTED_ACTIONS.get(self.kind, [_RETRY]))

    def describe(self) -> str:
        """Multi-line description for terminal output"""
        result = f"Error: {self.user_message}"
        for action in self.suggested_actions:
            result += f"\n  Suggestion: {action.label} - {action.description}"
        return result

    def to_dict(self) -> dict:
        return {
            "code": self.code,
            "message": self.message,
            "userMessage": self.user_message,
            "retryable": self.retryable,
            "severity": self.severity.value,
            "actions": [a.to_dict() for a in self.suggested_actions],
        }

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.code!r}, {self.message!r})"


class NetworkError(QRShareError):
    pass


class FileSystemError(QRShareError):
    pass


class QRCodeError(QRShareError):
    """Malformed or unsupported QR payload. `field` names the offending field when known."""

    def __init__(self, message: str, kind: Optional[Enum] = QRCodeErrorType.INVALID_FORMAT,
                 field: Optional[str] = None, **kwargs):
        super().__init__(message, kind, **kwargs)
        self.field = field


class ServerError(QRShareError):
    pass


class AccessPermissionError(QRShareError):
    """Missing camera/storage/network permission; never retried automatically"""

    default_severity = ErrorSeverity.WARNING

    @property
    def retryable(self) -> bool:
        return False


class TransferError(QRShareError):
    pass


class UnknownError(QRShareError):
    """Anything we could not classify. Retryable, like a generic failure."""

    @property
    def retryable(self) -> bool:
        return True


def translate_exception(exc: BaseException, context: Optional[Dict[str, Any]] = None) -> QRShareError:
    """
    Map a low-level exception to the error taxonomy.

    Classification is by exception type and errno only.
    """
    if isinstance(exc, QRShareError):
        return exc

    # aiohttp errors first: several of them also subclass OSError / TimeoutError.
    # ClientResponseError is checked before str(exc), which needs its request_info
    if isinstance(exc, aiohttp.ClientResponseError):
        if exc.status == 403:
            return ServerError(f"HTTP 403: {exc.message}", ServerErrorType.AUTHENTICATION_FAILED,
                               context=context, original=exc)
        return NetworkError(f"HTTP {exc.status}: {exc.message}", NetworkErrorType.SERVER_UNAVAILABLE,
                            context=context, original=exc)

    detail = str(exc) or type(exc).__name__

    if isinstance(exc, aiohttp.ClientConnectorError):
        if isinstance(exc.os_error, ConnectionRefusedError):
            return NetworkError(f"Connection refused: {detail}", NetworkErrorType.CONNECTION_REFUSED,
                                context=context, original=exc)
        if exc.os_error is not None and exc.os_error.errno in (errno.ENETUNREACH, errno.EHOSTUNREACH):
            return NetworkError(f"Network unreachable: {detail}", NetworkErrorType.NO_NETWORK,
                                context=context, original=exc)
        return NetworkError(f"Cannot connect: {detail}", NetworkErrorType.SERVER_UNAVAILABLE,
                            context=context, original=exc)

    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return NetworkError(f"Connection timeout: {detail}", NetworkErrorType.CONNECTION_TIMEOUT,
                            context=context, original=exc)

    if isinstance(exc, aiohttp.ClientError):
        return NetworkError(f"HTTP error: {detail}", NetworkErrorType.SERVER_UNAVAILABLE,
                            context=context, original=exc)

    if isinstance(exc, ConnectionRefusedError):
        return NetworkError(f"Connection refused: {detail}", NetworkErrorType.CONNECTION_REFUSED,
                            context=context, original=exc)

    if isinstance(exc, FileNotFoundError):
        return FileSystemError(f"File not found: {detail}", FileSystemErrorType.FILE_NOT_FOUND,
                               context=context, original=exc)

    if isinstance(exc, PermissionError):
        return FileSystemError(f"Permission denied: {detail}", FileSystemErrorType.PERMISSION_DENIED,
                               context=context, original=exc)

    if isinstance(exc, OSError):
        if exc.errno == errno.ENOSPC:
            return FileSystemError(f"No space left: {detail}", FileSystemErrorType.INSUFFICIENT_STORAGE,
                                   context=context, original=exc)
        if exc.errno == errno.EADDRINUSE:
            return ServerError(f"Port unavailable: {detail}", ServerErrorType.PORT_UNAVAILABLE,
                               context=context, original=exc)
        if exc.errno in (errno.ENETUNREACH, errno.EHOSTUNREACH):
            return NetworkError(f"Network unreachable: {detail}", NetworkErrorType.NO_NETWORK,
                                context=context, original=exc)
        return NetworkError(f"Network error: {detail}", NetworkErrorType.SERVER_UNAVAILABLE,
                            context=context, original=exc)

    if isinstance(exc, json.JSONDecodeError):
        return QRCodeError(f"Invalid QR code format: {detail}", QRCodeErrorType.INVALID_FORMAT,
                           context=context, original=exc)

    return UnknownError(f"{type(exc).__name__}: {detail}", context=context, original=exc)


def format_error(error: QRShareError, details: Optional[str] = None) -> str:
    """Format error message for display"""
    result = error.describe()
    if details:
        result = f"{result}\n  Details: {details}"
    return result
