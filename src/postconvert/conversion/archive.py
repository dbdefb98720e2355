"""Incremental ZIP assembly over an async sequence of page images."""

import asyncio
import io
import logging
import zipfile
from typing import AsyncIterable, AsyncIterator

from .resources import CancellationToken

logger = logging.getLogger(__name__)


class _ChunkSink(io.RawIOBase):
    """Write-only, non-seekable buffer that hands out what was written so far.

    zipfile falls back to data descriptors on non-seekable outputs, so the
    archive can be emitted front to back without rewinding.
    """

    def __init__(self) -> None:
        super().__init__()
        self._chunks: list[bytes] = []

    def writable(self) -> bool:
        return True

    def write(self, data) -> int:  # type: ignore[override]
        chunk = bytes(data)
        if chunk:
            self._chunks.append(chunk)
        return len(chunk)

    def drain(self) -> bytes:
        data = b"".join(self._chunks)
        self._chunks.clear()
        return data


class ArchiveStreamer:
    def __init__(
        self,
        *,
        compression: int = zipfile.ZIP_DEFLATED,
        entry_width: int = 3,
        extension: str = "jpg",
    ) -> None:
        self._compression = compression
        self._entry_width = entry_width
        self._extension = extension

    def entry_name(self, sequence: int) -> str:
        """1-based, zero-padded so lexical order equals page order."""
        return f"{sequence:0{self._entry_width}d}.{self._extension}"

    async def stream(self, pages: AsyncIterable[bytes], cancel: CancellationToken) -> AsyncIterator[bytes]:
        """Yield archive bytes as each page is added.

        Pages are pulled one at a time, so closing this generator early stops
        any further page production upstream.
        """
        sink = _ChunkSink()
        archive = zipfile.ZipFile(sink, mode="w", compression=self._compression)
        finished = False
        try:
            sequence = 0
            async for page in pages:
                cancel.raise_if_cancelled()
                sequence += 1
                await asyncio.to_thread(archive.writestr, self.entry_name(sequence), page)
                chunk = sink.drain()
                if chunk:
                    yield chunk
            cancel.raise_if_cancelled()
            archive.close()
            finished = True
            tail = sink.drain()
            if tail:
                yield tail
            logger.debug("archive finalized with %d entries", sequence)
        finally:
            if not finished:
                # Abandon without writing a central directory.
                archive.fp = None
