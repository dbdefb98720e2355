"""Per-request resources: cancellation, job slots and scratch directories."""

import asyncio
import logging
import shutil
import tempfile
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Awaitable, Iterator, TypeVar

from .errors import BusyError, ConversionCancelled

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CancellationToken:
    """One-shot signal set by the transport when the client goes away."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise ConversionCancelled()

    async def run(self, aw: Awaitable[T]) -> T:
        """Await aw, abandoning it as soon as the token is cancelled."""
        self.raise_if_cancelled()
        task = asyncio.ensure_future(aw)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
            if not task.done():
                task.cancel()
                await asyncio.wait({task})
        if task.cancelled():
            raise ConversionCancelled()
        return task.result()


class AdmissionController:
    """Counted job slots that fail fast instead of queueing.

    The counter is only touched from the event loop, so acquire and release
    need no lock.
    """

    def __init__(self, capacity: int, *, retry_after: int = 2) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self.retry_after = retry_after
        self._held = 0

    @property
    def in_flight(self) -> int:
        return self._held

    def try_acquire(self) -> bool:
        if self._held >= self.capacity:
            return False
        self._held += 1
        return True

    def release(self) -> None:
        if self._held <= 0:
            raise RuntimeError("release() called without a matching acquire")
        self._held -= 1

    @contextmanager
    def slot(self) -> Iterator[None]:
        if not self.try_acquire():
            raise BusyError(self.retry_after)
        try:
            yield
        finally:
            self.release()


class ScratchArea:
    """A private temp directory for one request, removed recursively on exit."""

    def __init__(self, root: Path, key: str) -> None:
        self._root = Path(root)
        self._key = key
        self._path: Path | None = None

    @property
    def path(self) -> Path:
        if self._path is None:
            raise RuntimeError("scratch area has not been created")
        return self._path

    def create(self) -> "ScratchArea":
        self._root.mkdir(parents=True, exist_ok=True)
        self._path = Path(tempfile.mkdtemp(prefix=f"{self._key}-", dir=self._root))
        return self

    def cleanup(self) -> None:
        if self._path is None:
            return
        path, self._path = self._path, None
        shutil.rmtree(path, ignore_errors=True)
        if path.exists():
            logger.warning("scratch directory %s could not be removed", path)

    def __enter__(self) -> "ScratchArea":
        return self.create()

    def __exit__(self, *exc_info: object) -> None:
        self.cleanup()


def purge_stale_scratch(root: Path, max_age_sec: float) -> int:
    """Remove scratch directories left behind by a previous process."""
    root = Path(root)
    if not root.is_dir():
        return 0
    cutoff = time.time() - max_age_sec
    removed = 0
    for entry in root.iterdir():
        if entry.is_dir() and entry.stat().st_mtime < cutoff:
            shutil.rmtree(entry, ignore_errors=True)
            removed += 1
    if removed:
        logger.info("purged %d stale scratch directories from %s", removed, root)
    return removed
