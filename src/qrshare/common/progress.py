"""
Transfer progress tracking.

Provides:
- TransferProgress: immutable snapshot with percentage, speed and ETA
- ProgressBroadcaster: fan-out of snapshots to any number of listeners
- format_bytes / format_time helpers
"""
import time
import asyncio
import logging
from enum import Enum
from dataclasses import dataclass, replace
from typing import Callable, List, Optional, AsyncIterator

logger = logging.getLogger(__name__)


class TransferOutcome(Enum):
    """How a transfer ended"""
    COMPLETED = "completed"
    ABORTED = "aborted"


@dataclass(frozen=True)
class TransferProgress:
    """Snapshot of a transfer. Every change produces a new instance."""
    bytes_transferred: int
    total_bytes: int
    start_time: float
    last_update_time: Optional[float] = None
    outcome: Optional[TransferOutcome] = None

    @classmethod
    def start(cls, total_bytes: int) -> 'TransferProgress':
        now = time.time()
        return cls(bytes_transferred=0, total_bytes=total_bytes, start_time=now, last_update_time=now)

    def update_progress(self, bytes_transferred: int) -> 'TransferProgress':
        return replace(self, bytes_transferred=bytes_transferred, last_update_time=time.time())

    def complete(self) -> 'TransferProgress':
        return replace(self, bytes_transferred=self.total_bytes, last_update_time=time.time(),
                       outcome=TransferOutcome.COMPLETED)

    def abort(self) -> 'TransferProgress':
        """Terminal frame for a transfer that stopped before finishing"""
        return replace(self, last_update_time=time.time(), outcome=TransferOutcome.ABORTED)

    @property
    def percentage(self) -> float:
        if self.total_bytes <= 0:
            return 0.0
        return (self.bytes_transferred / self.total_bytes) * 100.0

    @property
    def is_complete(self) -> bool:
        return self.bytes_transferred >= self.total_bytes > 0

    @property
    def has_started(self) -> bool:
        return self.bytes_transferred > 0

    @property
    def is_terminal(self) -> bool:
        return self.outcome is not None

    @property
    def elapsed_seconds(self) -> float:
        current = self.last_update_time if self.last_update_time is not None else time.time()
        return current - self.start_time

    @property
    def speed_bytes_per_second(self) -> float:
        elapsed = self.elapsed_seconds
        if elapsed <= 0:
            return 0.0
        return self.bytes_transferred / elapsed

    @property
    def estimated_time_remaining(self) -> int:
        """Seconds left at the current average speed, 0 when complete or unknown"""
        speed = self.speed_bytes_per_second
        if self.is_complete or speed <= 0:
            return 0
        remaining = self.total_bytes - self.bytes_transferred
        return round(remaining / speed)

    @property
    def formatted_speed(self) -> str:
        speed = self.speed_bytes_per_second
        if speed >= 1024 * 1024:
            return f"{speed / (1024 * 1024):.1f} MB/s"
        elif speed >= 1024:
            return f"{speed / 1024:.1f} KB/s"
        return f"{speed:.0f} B/s"

    @property
    def formatted_eta(self) -> str:
        if self.is_complete:
            return "Complete"
        eta = self.estimated_time_remaining
        if eta == 0:
            return "Calculating..."
        return format_time(eta)

    @property
    def formatted_progress(self) -> str:
        return (f"{format_bytes(self.bytes_transferred)} / {format_bytes(self.total_bytes)} "
                f"({self.percentage:.1f}%)")

    def get_progress_string(self) -> str:
        """One-line progress bar for terminal output"""
        bar_width = 20
        filled = int(bar_width * min(self.percentage, 100.0) / 100)
        bar = '█' * filled + '░' * (bar_width - filled)
        return f"[{bar}] {self.formatted_progress} - {self.formatted_speed} - ETA: {self.formatted_eta}"

    def __str__(self) -> str:
        return f"TransferProgress({self.formatted_progress}, {self.formatted_speed}, ETA: {self.formatted_eta})"


class ProgressBroadcaster:
    """
    Publish progress snapshots to independent listeners.

    Listeners are either plain callbacks (subscribe) or async iterators
    (stream). Publishing never blocks: a failing callback is logged and
    skipped, and a listener whose queue is full loses its oldest snapshot.

    Usage:
        broadcaster = ProgressBroadcaster()
        unsubscribe = broadcaster.subscribe(lambda p: print(p.percentage))
        async for progress in broadcaster.stream():
            ...
    """

    def __init__(self, max_pending: int = 64):
        self.max_pending = max_pending
        self.latest: Optional[TransferProgress] = None
        self._callbacks: List[Callable[[TransferProgress], None]] = []
        self._queues: List[asyncio.Queue] = []

    def subscribe(self, callback: Callable[[TransferProgress], None]) -> Callable[[], None]:
        """Register a callback. Returns a function that removes it."""
        self._callbacks.append(callback)

        def unsubscribe():
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return unsubscribe

    @property
    def listener_count(self) -> int:
        return len(self._callbacks) + len(self._queues)

    def publish(self, progress: TransferProgress):
        """Deliver a snapshot to every listener"""
        self.latest = progress

        for callback in list(self._callbacks):
            try:
                callback(progress)
            except Exception as e:
                logger.error(f"Progress callback error: {e}")

        for queue in list(self._queues):
            if queue.full():
                queue.get_nowait()
            queue.put_nowait(progress)

    async def stream(self) -> AsyncIterator[TransferProgress]:
        """Yield snapshots as they are published, ending after a terminal one"""
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.max_pending)
        self._queues.append(queue)
        try:
            while True:
                progress = await queue.get()
                yield progress
                if progress.is_terminal:
                    break
        finally:
            self._queues.remove(queue)


def format_bytes(size: float) -> str:
    """Format byte size as human-readable string"""
    if size < 1024:
        return f"{int(size)} B"
    for unit in ['KB', 'MB', 'GB']:
        size /= 1024.0
        if abs(size) < 1024.0:
            return f"{size:.1f} {unit}"
    return f"{size:.1f} GB"


def format_time(seconds: float) -> str:
    """Format seconds as human-readable time"""
    if seconds <= 0:
        return "calculating..."
    if seconds < 60:
        return f"{int(seconds)}s"
    elif seconds < 3600:
        mins = int(seconds / 60)
        secs = int(seconds % 60)
        return f"{mins}m {secs}s"
    else:
        hours = int(seconds / 3600)
        mins = int((seconds % 3600) / 60)
        return f"{hours}h {mins}m"
