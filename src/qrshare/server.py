"""
Transfer Server - serves one file over HTTP to whoever holds the session token

The server runs on the sending device. It binds to the local network address
found by NetworkDiscovery, exposes three endpoints and stops itself shortly
after the file has been streamed completely.

Endpoints:
    GET /health                                  no auth, reachability check
    GET /info/{sessionId}?sessionId=..&token=..  file metadata
    GET /file/{sessionId}?sessionId=..&token=..  file bytes

Only one session is served at a time; starting a second one while running is
rejected.
"""
import hmac
import time
import asyncio
import logging
from enum import Enum
from pathlib import Path
from datetime import timedelta
from typing import Callable, Optional, Union

from aiohttp import web

from qrshare import config
from qrshare.common.errors import (
    FileSystemError, FileSystemErrorType, NetworkError, NetworkErrorType,
    ServerError, ServerErrorType,
)
from qrshare.common.network import NetworkDiscovery
from qrshare.common.progress import ProgressBroadcaster, TransferProgress
from qrshare.common.session import TransferSession, DEFAULT_SESSION_TIMEOUT

logger = logging.getLogger(__name__)

CORS_HEADERS = {
    'Access-Control-Allow-Origin': '*',
    'Access-Control-Allow-Methods': 'GET, POST, OPTIONS',
    'Access-Control-Allow-Headers': 'Content-Type, Authorization',
    'Access-Control-Max-Age': '86400',
}

CONTENT_TYPES = {
    'pdf': 'application/pdf',
    'jpg': 'image/jpeg',
    'jpeg': 'image/jpeg',
    'png': 'image/png',
    'gif': 'image/gif',
    'txt': 'text/plain',
    'json': 'application/json',
    'zip': 'application/zip',
    'mp4': 'video/mp4',
    'mp3': 'audio/mpeg',
}
DEFAULT_CONTENT_TYPE = 'application/octet-stream'

AUTH_ERROR = 'Invalid or expired token'
NOT_FOUND_ERROR = 'Endpoint not found'


def get_content_type(file_name: str) -> str:
    """MIME type from the file extension"""
    if '.' not in file_name:
        return DEFAULT_CONTENT_TYPE
    extension = file_name.rsplit('.', 1)[-1].lower()
    return CONTENT_TYPES.get(extension, DEFAULT_CONTENT_TYPE)


def _json_error(message: str, status: int) -> web.Response:
    return web.json_response({'error': message}, status=status, headers=CORS_HEADERS)


@web.middleware
async def cors_middleware(request: web.Request, handler):
    """Answer preflight requests and add CORS headers to every response"""
    if request.method == 'OPTIONS':
        return web.Response(status=200, headers=CORS_HEADERS)

    try:
        response = await handler(request)
    except (web.HTTPNotFound, web.HTTPMethodNotAllowed):
        response = _json_error(NOT_FOUND_ERROR, 404)

    if not response.prepared:
        response.headers.update(CORS_HEADERS)
    return response


@web.middleware
async def access_log_middleware(request: web.Request, handler):
    """Log method, path, status and duration of every request"""
    start = time.monotonic()
    try:
        response = await handler(request)
    except web.HTTPException as e:
        duration_ms = int((time.monotonic() - start) * 1000)
        logger.info(f"{request.method} {request.path} - {e.status} ({duration_ms}ms)")
        raise

    duration_ms = int((time.monotonic() - start) * 1000)
    logger.info(f"{request.method} {request.path} - {response.status} ({duration_ms}ms)")
    return response


class ServerState(Enum):
    """Server lifecycle"""
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


class TransferServer:
    """
    HTTP server for a single file transfer session.

    Usage:
        server = TransferServer()
        server.progress.subscribe(lambda p: print(p.percentage))
        session = await server.start("report.pdf")
        payload = QRCodec().encode(session)
        await server.wait_closed()
    """

    def __init__(self,
                 discovery: Optional[NetworkDiscovery] = None,
                 chunk_size: int = config.CHUNK_SIZE,
                 session_timeout: timedelta = DEFAULT_SESSION_TIMEOUT,
                 shutdown_grace: float = config.SHUTDOWN_GRACE_SECONDS,
                 idle_timeout: float = config.READ_TIMEOUT,
                 on_session_ready: Optional[Callable[[TransferSession], None]] = None):
        """
        Args:
            discovery: Source of the IP address and port to bind
            chunk_size: Bytes read from disk per write
            session_timeout: Lifetime of the session token
            shutdown_grace: Seconds to wait after a complete transfer before stopping
            idle_timeout: Keep-alive timeout for idle connections
            on_session_ready: Called with the session once the server is listening
        """
        self.discovery = discovery or NetworkDiscovery()
        self.chunk_size = chunk_size
        self.session_timeout = session_timeout
        self.shutdown_grace = shutdown_grace
        self.idle_timeout = idle_timeout
        self.on_session_ready = on_session_ready

        self.progress = ProgressBroadcaster()

        self._state = ServerState.STOPPED
        self._session: Optional[TransferSession] = None
        self._runner: Optional[web.AppRunner] = None
        self._last_progress: Optional[TransferProgress] = None
        self._transfer_finished = False
        self._shutdown_task: Optional[asyncio.Task] = None
        self._closed = asyncio.Event()

    @property
    def state(self) -> ServerState:
        return self._state

    @property
    def current_session(self) -> Optional[TransferSession]:
        return self._session

    @property
    def is_running(self) -> bool:
        return self._state is ServerState.RUNNING

    async def start(self, file_path: Union[str, Path]) -> TransferSession:
        """
        Start serving a file.

        Returns:
            The new session (to be encoded into the QR code)

        Raises:
            ServerError: already running, or no port could be bound
            FileSystemError: the file does not exist
            NetworkError: no local network address
        """
        if self._state is not ServerState.STOPPED:
            raise ServerError(f"Server is already {self._state.value}", ServerErrorType.ALREADY_RUNNING)

        path = Path(file_path)
        if not path.is_file():
            raise FileSystemError(f"File does not exist: {path}", FileSystemErrorType.FILE_NOT_FOUND,
                                  context={"path": str(path)})

        self._state = ServerState.STARTING
        runner = None
        try:
            ip_address = self.discovery.get_local_ip_address()
            if ip_address is None:
                raise NetworkError("Could not determine local IP address", NetworkErrorType.NO_NETWORK)

            port = self.discovery.find_available_port()
            if port is None:
                raise ServerError("No available ports found", ServerErrorType.PORT_UNAVAILABLE)

            session = TransferSession.create(path, ip_address, port, self.session_timeout)

            runner = web.AppRunner(
                self._create_app(),
                access_log=None,
                keepalive_timeout=self.idle_timeout,
                shutdown_timeout=1.0,
            )
            await runner.setup()
            site = web.TCPSite(runner, ip_address, port)
            try:
                await site.start()
            except OSError as e:
                raise ServerError(f"Could not bind {ip_address}:{port}: {e}",
                                  ServerErrorType.PORT_UNAVAILABLE, original=e) from e
        except BaseException:
            if runner is not None:
                await runner.cleanup()
            self._state = ServerState.STOPPED
            raise

        self._runner = runner
        self._session = session
        self._transfer_finished = False
        self._last_progress = None
        self._closed = asyncio.Event()
        self._state = ServerState.RUNNING

        logger.info(f"Serving {session.file_name} ({session.file_size} bytes) "
                    f"at {session.base_url} [{session.session_id}]")
        self._publish(TransferProgress.start(session.file_size))

        if self.on_session_ready:
            self.on_session_ready(session)
        return session

    async def stop(self):
        """
        Stop the listener and end the session.

        Publishes one terminal progress frame for an active session: completed
        if the file was fully streamed, aborted otherwise.
        """
        if self._state in (ServerState.STOPPED, ServerState.STOPPING):
            return

        self._state = ServerState.STOPPING
        session = self._session

        if self._shutdown_task and self._shutdown_task is not asyncio.current_task():
            self._shutdown_task.cancel()
        self._shutdown_task = None

        runner, self._runner = self._runner, None
        try:
            if runner is not None:
                await runner.cleanup()
        finally:
            self._session = None
            self._state = ServerState.STOPPED

            if session is not None:
                last = self._last_progress or TransferProgress.start(session.file_size)
                if self._transfer_finished:
                    self._publish(last.complete())
                else:
                    logger.warning(f"Server stopped before {session.file_name} was fully sent")
                    self._publish(last.abort())

            self._closed.set()
            logger.info("Transfer server stopped")

    async def wait_closed(self):
        """Wait until the server has stopped"""
        if self._state is ServerState.STOPPED:
            return
        await self._closed.wait()

    def validate_token(self, session_id: str, token: str) -> bool:
        """True only for the running session's id and token, before expiry"""
        session = self._session
        if session is None:
            return False
        if not hmac.compare_digest(session.session_id.encode(), (session_id or '').encode()):
            return False
        if not hmac.compare_digest(session.security_token.encode(), (token or '').encode()):
            return False
        if session.is_expired():
            return False
        return True

    def _publish(self, progress: TransferProgress):
        self._last_progress = progress
        self.progress.publish(progress)

    def _create_app(self) -> web.Application:
        app = web.Application(middlewares=[cors_middleware, access_log_middleware])
        app.router.add_get('/health', self._handle_health, allow_head=False)
        app.router.add_get('/info/{session_id}', self._handle_info, allow_head=False)
        app.router.add_get('/file/{session_id}', self._handle_file, allow_head=False)
        return app

    def _authorize(self, request: web.Request) -> Optional[web.Response]:
        """Error response for a request that may not touch the session, else None"""
        session = self._session
        if session is None or request.match_info['session_id'] != session.session_id:
            return _json_error(NOT_FOUND_ERROR, 404)

        query = request.query
        if not self.validate_token(query.get('sessionId', ''), query.get('token', '')):
            logger.warning(f"Rejected {request.path} from {request.remote}: bad or expired token")
            return _json_error(AUTH_ERROR, 403)
        return None

    async def _handle_health(self, request: web.Request) -> web.Response:
        session_id = self._session.session_id if self._session else None
        return web.json_response({'status': 'healthy', 'sessionId': session_id})

    async def _handle_info(self, request: web.Request) -> web.Response:
        denied = self._authorize(request)
        if denied is not None:
            return denied

        session = self._session
        return web.json_response({
            'sessionId': session.session_id,
            'fileName': session.file_name,
            'fileSize': session.file_size,
            'contentType': get_content_type(session.file_name),
        })

    async def _handle_file(self, request: web.Request) -> web.StreamResponse:
        denied = self._authorize(request)
        if denied is not None:
            return denied

        session = self._session
        try:
            f = open(session.file_path, 'rb')
        except OSError as e:
            logger.error(f"Failed to open {session.file_path}: {e}")
            return _json_error(f"Failed to serve file: {e}", 500)

        response = web.StreamResponse(status=200, headers={
            'Content-Type': get_content_type(session.file_name),
            'Content-Disposition': f'attachment; filename="{session.file_name}"',
            'Accept-Ranges': 'bytes',
            **CORS_HEADERS,
        })
        response.content_length = session.file_size

        loop = asyncio.get_running_loop()
        progress = TransferProgress.start(session.file_size)
        bytes_sent = 0

        with f:
            await response.prepare(request)
            logger.info(f"Streaming {session.file_name} to {request.remote}")
            try:
                while True:
                    chunk = await loop.run_in_executor(None, f.read, self.chunk_size)
                    if not chunk:
                        break
                    # write() waits on the transport, so the receiver sets the pace
                    await response.write(chunk)
                    bytes_sent += len(chunk)
                    self._publish(progress.update_progress(bytes_sent))
            except ConnectionResetError as e:
                logger.warning(f"Receiver {request.remote} disconnected after {bytes_sent} bytes: {e}")
                return response

        await response.write_eof()
        self._transfer_finished = True
        self._publish(progress.complete())
        logger.info(f"Finished sending {session.file_name} ({bytes_sent} bytes)")

        self._shutdown_task = asyncio.create_task(self._stop_after(self.shutdown_grace))
        return response

    async def _stop_after(self, delay: float):
        await asyncio.sleep(delay)
        await self.stop()
