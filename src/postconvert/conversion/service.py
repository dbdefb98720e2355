import asyncio
import logging
from contextlib import aclosing
from pathlib import Path
from typing import AsyncIterator, Awaitable, Callable

from .archive import ArchiveStreamer
from .detect import detect_format, is_pdf
from .errors import ConversionCancelled, ConversionError, UnsupportedMediaTypeError
from .interfaces import ConversionRequest, DetectedFormat, HeifDecoder, ImageNormalizer, RenderedPage
from .pdf import PdfPageRenderer
from .resources import ScratchArea

logger = logging.getLogger(__name__)

Strategy = Callable[[ConversionRequest], Awaitable[bytes]]


class ArchiveJob:
    """Rendered pages of one PDF, ready to be streamed as a ZIP.

    Owns the request's scratch area; close() is safe to call more than once.
    """

    def __init__(
        self,
        request: ConversionRequest,
        pages: list[RenderedPage],
        scratch: ScratchArea,
        renderer: PdfPageRenderer,
        streamer: ArchiveStreamer,
    ) -> None:
        self.request = request
        self.pages = pages
        self.completed = False
        self._scratch = scratch
        self._renderer = renderer
        self._streamer = streamer

    @property
    def page_count(self) -> int:
        return len(self.pages)

    async def body(self) -> AsyncIterator[bytes]:
        pages = self._renderer.normalized_pages(self.pages, self.request)
        try:
            async with aclosing(pages), aclosing(self._streamer.stream(pages, self.request.cancel)) as chunks:
                async for chunk in chunks:
                    yield chunk
            self.completed = True
        finally:
            if not self.completed:
                self.request.cancel.cancel()
            self.close()

    def close(self) -> None:
        self._scratch.cleanup()


class ConversionService:
    """Core conversion pipeline.

    Framework-agnostic: the HTTP layer hands over a ConversionRequest and gets
    back JPEG bytes or an ArchiveJob. Decoders, rasterizer and archive writer
    are injected so each can be replaced in tests.
    """

    def __init__(
        self,
        normalizer: ImageNormalizer,
        heif_decoder: HeifDecoder,
        pdf_renderer: PdfPageRenderer,
        archive_streamer: ArchiveStreamer,
        *,
        scratch_root: Path,
    ) -> None:
        self._normalizer = normalizer
        self._heif = heif_decoder
        self._pdf = pdf_renderer
        self._archive = archive_streamer
        self._scratch_root = Path(scratch_root)

    def detect(self, request: ConversionRequest) -> str:
        return detect_format(request.data, request.content_type, request.filename, self._normalizer.probe)

    async def convert_image(self, request: ConversionRequest) -> bytes:
        """Convert one upload to a single JPEG (first page for PDFs)."""
        fmt = self.detect(request)
        logger.info("request_id=%s format=%s bytes=%d", request.request_id, fmt, len(request.data))
        if fmt == DetectedFormat.UNSUPPORTED:
            raise UnsupportedMediaTypeError()
        if fmt == DetectedFormat.PDF:
            with ScratchArea(self._scratch_root, request.request_id) as scratch:
                return await self._pdf.first_page(request, scratch)
        return await self._first_success(self._strategies(fmt), request)

    async def open_archive(self, request: ConversionRequest) -> ArchiveJob:
        """Render all pages of a PDF; errors surface here, before any archive byte."""
        if not is_pdf(request.data, request.content_type, request.filename):
            raise UnsupportedMediaTypeError("this endpoint accepts PDF input only")
        scratch = ScratchArea(self._scratch_root, request.request_id).create()
        try:
            pages = await self._pdf.render_pages(request, scratch)
        except BaseException:
            scratch.cleanup()
            raise
        return ArchiveJob(request, pages, scratch, self._pdf, self._archive)

    def _strategies(self, fmt: str) -> list[Strategy]:
        if fmt == DetectedFormat.HEIC:
            return [self._via_raster_decoder_lenient, self._via_heif_decoder]
        return [self._via_raster_decoder]

    async def _first_success(self, strategies: list[Strategy], request: ConversionRequest) -> bytes:
        last_error: ConversionError | None = None
        for strategy in strategies:
            request.cancel.raise_if_cancelled()
            try:
                return await strategy(request)
            except ConversionCancelled:
                raise
            except ConversionError as exc:
                last_error = exc
                logger.info("request_id=%s %s failed: %s", request.request_id, strategy.__name__, exc.message)
        assert last_error is not None
        raise last_error

    async def _via_raster_decoder(self, request: ConversionRequest) -> bytes:
        return await asyncio.to_thread(self._normalizer.normalize, request.data, request.options)

    async def _via_raster_decoder_lenient(self, request: ConversionRequest) -> bytes:
        return await asyncio.to_thread(
            self._normalizer.normalize, request.data, request.options, report_unsupported=False
        )

    async def _via_heif_decoder(self, request: ConversionRequest) -> bytes:
        pixels = await self._heif.decode(request.data)
        request.cancel.raise_if_cancelled()
        return await asyncio.to_thread(self._normalizer.normalize, pixels, request.options)
