"""
Transfer Client - downloads the file offered by a TransferServer

The receiving side rebuilds a TransferSession from the scanned QR payload and
hands it to TransferClient. A download runs these gates in order:

1. /health must answer 200
2. /info gives the authoritative file size
3. a collision-free save path is chosen
4. /file is streamed to disk chunk by chunk, publishing progress
5. (with retry) the size on disk must match the announced size
"""
import os
import re
import asyncio
import logging
from enum import Enum
from pathlib import Path
from typing import Awaitable, Callable, Optional, TypeVar, Union

import aiohttp
import psutil

from qrshare import config
from qrshare.common.errors import (
    QRShareError, NetworkError, NetworkErrorType, FileSystemError, FileSystemErrorType,
    ServerError, ServerErrorType, TransferError, TransferErrorType, translate_exception,
)
from qrshare.common.progress import ProgressBroadcaster, TransferProgress, format_bytes
from qrshare.common.retry import RetryPolicy, retry_async
from qrshare.common.session import TransferSession

logger = logging.getLogger(__name__)

MAX_FILE_NAME_LENGTH = 255
_INVALID_NAME_CHARS = re.compile(r'[<>:"/\\|?*]')

T = TypeVar("T")


class ClientState(Enum):
    """Where a download is in its lifecycle"""
    IDLE = "idle"
    CONNECTING = "connecting"
    DOWNLOADING = "downloading"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


def sanitize_file_name(file_name: str) -> str:
    """Replace characters that are invalid in file names and cap the length"""
    sanitized = _INVALID_NAME_CHARS.sub('_', file_name).strip()
    if sanitized in ('', '.', '..'):
        sanitized = 'download'

    if len(sanitized) > MAX_FILE_NAME_LENGTH:
        stem, dot, extension = sanitized.rpartition('.')
        if dot and len(extension) + 1 < MAX_FILE_NAME_LENGTH:
            extension = '.' + extension
            sanitized = stem[:MAX_FILE_NAME_LENGTH - len(extension)] + extension
        else:
            sanitized = sanitized[:MAX_FILE_NAME_LENGTH]

    return sanitized


def get_unique_path(path: Path) -> Path:
    """Get a unique path if file already exists (name_1.ext, name_2.ext, ...)"""
    if not path.exists():
        return path

    stem = path.stem
    suffix = path.suffix
    counter = 1

    while path.exists():
        path = path.parent / f"{stem}_{counter}{suffix}"
        counter += 1

    return path


def _existing_ancestor(path: Path) -> Path:
    """Closest existing directory at or above path"""
    path = path.expanduser().absolute()
    while not path.exists() and path != path.parent:
        path = path.parent
    return path


class TransferClient:
    """
    Downloads one file at a time from a transfer server.

    Usage:
        client = TransferClient()
        client.progress.subscribe(lambda p: print(p.get_progress_string()))
        session = QRCodec().decode(scanned_text)
        path = await client.download_file_with_retry(session)
    """

    def __init__(self,
                 download_dir: Optional[Union[str, Path]] = None,
                 connect_timeout: float = config.CONNECT_TIMEOUT,
                 read_timeout: float = config.READ_TIMEOUT,
                 chunk_size: int = config.CHUNK_SIZE,
                 storage_buffer: int = config.STORAGE_BUFFER):
        self.download_dir = Path(download_dir).expanduser() if download_dir else config.get_download_dir()
        self.connect_timeout = connect_timeout
        self.read_timeout = read_timeout
        self.chunk_size = chunk_size
        self.storage_buffer = storage_buffer

        self.progress = ProgressBroadcaster()
        self.state = ClientState.IDLE

        self._http: Optional[aiohttp.ClientSession] = None
        self._task: Optional[asyncio.Future] = None
        self._cancelled = False
        self._expected_size: Optional[int] = None

    @property
    def is_downloading(self) -> bool:
        return self._task is not None

    def _timeout(self) -> aiohttp.ClientTimeout:
        # Connection-level limits only; a large file may take as long as it needs
        return aiohttp.ClientTimeout(total=None, sock_connect=self.connect_timeout, sock_read=self.read_timeout)

    def _check_not_busy(self):
        # Attempts made by the retry loop run inside its own task
        if self._task is not None and asyncio.current_task() is not self._task:
            raise TransferError("Download already in progress", TransferErrorType.DOWNLOAD_IN_PROGRESS)

    async def _run_cancellable(self, operation: Awaitable[T]) -> T:
        """Run operation as the client's download task so cancel_download() can abort it"""
        if self._task is not None:
            return await operation

        self._cancelled = False
        self._task = asyncio.ensure_future(operation)
        try:
            return await self._task
        except asyncio.CancelledError as e:
            if not self._cancelled:
                raise
            self.state = ClientState.CANCELLED
            raise TransferError("Download cancelled", TransferErrorType.CANCELLED, original=e) from e
        finally:
            self._task = None

    async def validate_connection(self, ip_address: str, port: int, token: Optional[str] = None) -> bool:
        """
        Check that the server answers /health.

        The health endpoint is unauthenticated, so the token is not checked
        here; a bad token only shows up when /info or /file is requested.
        """
        url = f"http://{ip_address}:{port}/health"
        try:
            async with aiohttp.ClientSession(timeout=self._timeout()) as http:
                async with http.get(url) as response:
                    await response.read()
                    return response.status == 200
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            logger.debug(f"Health check for {ip_address}:{port} failed: {e}")
            return False

    async def download_file(self, session: TransferSession,
                            custom_path: Optional[Union[str, Path]] = None) -> Path:
        """
        Download the session's file.

        Args:
            session: Session decoded from the QR payload
            custom_path: Exact destination; otherwise a free name in download_dir

        Returns:
            Path of the downloaded file

        Raises:
            TransferError: another download is active, or this one was cancelled
            ServerError: session invalid/expired or token rejected
            NetworkError: server unreachable or the connection failed
            FileSystemError: the file could not be written
        """
        self._check_not_busy()
        if not session.is_valid():
            raise ServerError("Invalid or expired session", ServerErrorType.SESSION_EXPIRED,
                              context={"sessionId": session.session_id})

        return await self._run_cancellable(self._download(session, custom_path))

    async def _download(self, session: TransferSession, custom_path: Optional[Union[str, Path]]) -> Path:
        self._expected_size = None
        self.state = ClientState.CONNECTING
        self._http = aiohttp.ClientSession(timeout=self._timeout())

        try:
            if not await self.validate_connection(session.ip_address, session.port, session.security_token):
                raise NetworkError(f"Cannot connect to server at {session.ip_address}:{session.port}",
                                   NetworkErrorType.SERVER_UNAVAILABLE)

            file_info = await self._get_file_info(session)
            file_size = file_info.get('fileSize')
            if not isinstance(file_size, int) or isinstance(file_size, bool):
                file_size = session.file_size
            self._expected_size = file_size

            save_path = self.resolve_save_path(session.file_name, custom_path)

            self.state = ClientState.DOWNLOADING
            await self._perform_download(session, save_path, file_size)

            self.state = ClientState.COMPLETED
            logger.info(f"Downloaded {session.file_name} to {save_path}")
            return save_path

        except Exception as e:
            self.state = ClientState.FAILED
            error = translate_exception(e, context={"sessionId": session.session_id})
            if error is e:
                raise
            raise error from e

        finally:
            http, self._http = self._http, None
            await http.close()

    async def _get_file_info(self, session: TransferSession) -> dict:
        url = f"{session.base_url}/info/{session.session_id}"
        async with self._http.get(url, params=session.auth_params) as response:
            self._check_status(response, "Failed to get file info")
            return await response.json()

    async def _perform_download(self, session: TransferSession, save_path: Path, file_size: int):
        url = f"{session.base_url}/file/{session.session_id}"
        async with self._http.get(url, params=session.auth_params) as response:
            self._check_status(response, "Download failed")

            progress = TransferProgress.start(file_size)
            self.progress.publish(progress)
            downloaded = 0

            try:
                with open(save_path, 'wb') as out:
                    async for chunk in response.content.iter_chunked(self.chunk_size):
                        out.write(chunk)
                        downloaded += len(chunk)
                        self.progress.publish(progress.update_progress(downloaded))
            except BaseException:
                self.progress.publish(progress.update_progress(downloaded).abort())
                self._remove_partial(save_path)
                raise

            self.progress.publish(progress.complete())

    @staticmethod
    def _check_status(response: aiohttp.ClientResponse, what: str):
        if response.status == 200:
            return
        if response.status == 403:
            raise ServerError(f"{what}: HTTP 403", ServerErrorType.AUTHENTICATION_FAILED)
        raise NetworkError(f"{what}: HTTP {response.status}", NetworkErrorType.SERVER_UNAVAILABLE,
                           context={"status": response.status})

    def _remove_partial(self, path: Path):
        try:
            path.unlink()
            logger.info(f"Removed partial download {path}")
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Could not remove partial download {path}: {e}")

    def resolve_save_path(self, file_name: str, custom_path: Optional[Union[str, Path]] = None) -> Path:
        """Destination for a download; creates the parent directory"""
        if custom_path:
            path = Path(custom_path).expanduser()
            path.parent.mkdir(parents=True, exist_ok=True)
            return path

        self.download_dir.mkdir(parents=True, exist_ok=True)
        return get_unique_path(self.download_dir / sanitize_file_name(file_name))

    async def cancel_download(self):
        """
        Abort the in-flight download, if any. The partial file is removed.

        Also stops download_file_with_retry while it waits between attempts.
        """
        task = self._task
        if task is None or task.done():
            return
        logger.info("Cancelling download")
        self._cancelled = True
        task.cancel()

    def has_enough_storage(self, required_bytes: int, directory: Optional[Path] = None) -> bool:
        """
        Whether the target filesystem has room for required_bytes plus a buffer.

        If free space cannot be determined, assume there is enough.
        """
        target = _existing_ancestor(directory or self.download_dir)
        try:
            free = psutil.disk_usage(str(target)).free
        except OSError as e:
            logger.warning(f"Could not determine free space on {target}: {e}; assuming enough")
            return True
        return free > required_bytes + self.storage_buffer

    @staticmethod
    def validate_downloaded_file(path: Union[str, Path], expected_size: int) -> bool:
        """Basic integrity check: the file exists and has the expected size"""
        try:
            return os.path.getsize(path) == expected_size
        except OSError:
            return False

    async def download_file_with_retry(self, session: TransferSession,
                                       custom_path: Optional[Union[str, Path]] = None,
                                       max_retries: int = config.MAX_RETRIES,
                                       retry_delay: float = config.RETRY_DELAY,
                                       policy: Optional[RetryPolicy] = None,
                                       on_retry: Optional[Callable[[int, QRShareError], None]] = None) -> Path:
        """
        Download with a storage pre-check, retries and a size check.

        Retryable failures are retried (fixed retry_delay between attempts unless
        a policy is given). Storage shortfall fails before the first attempt;
        a size mismatch after download is reported and not retried here, and
        neither is a rejected token.

        Raises:
            FileSystemError: INSUFFICIENT_STORAGE before download,
                             CORRUPTED_FILE after a size mismatch
            QRShareError: the last failure once attempts run out
        """
        self._check_not_busy()

        target_dir = Path(custom_path).expanduser().parent if custom_path else self.download_dir
        if not self.has_enough_storage(session.file_size, target_dir):
            raise FileSystemError(
                f"Insufficient storage space. Need {format_bytes(session.file_size)} "
                f"plus {format_bytes(self.storage_buffer)} headroom in {target_dir}",
                FileSystemErrorType.INSUFFICIENT_STORAGE,
                context={"required": session.file_size},
            )

        if policy is None:
            policy = RetryPolicy(max_retries=max_retries, initial_delay=retry_delay, max_delay=retry_delay,
                                 backoff_multiplier=1.0, use_jitter=False)

        def _should_retry(error: QRShareError) -> bool:
            # A rejected token needs a fresh scan, not the same request again
            return error.retryable and error.kind not in (FileSystemErrorType.CORRUPTED_FILE,
                                                          ServerErrorType.AUTHENTICATION_FAILED)

        downloaded_path = await self._run_cancellable(retry_async(
            lambda: self.download_file(session, custom_path),
            policy=policy,
            should_retry=_should_retry,
            on_retry=on_retry,
        ))

        expected = self._expected_size if self._expected_size is not None else session.file_size
        if not self.validate_downloaded_file(downloaded_path, expected):
            actual = downloaded_path.stat().st_size if downloaded_path.exists() else 0
            self.state = ClientState.FAILED
            raise FileSystemError(
                f"Downloaded file validation failed: expected {expected} bytes, got {actual}",
                FileSystemErrorType.CORRUPTED_FILE,
                context={"path": str(downloaded_path), "expected": expected, "actual": actual},
            )

        return downloaded_path
