import asyncio
import logging
import re
from pathlib import Path
from typing import AsyncIterator

from .errors import PdfRenderFailedError, PdfTooManyPagesError
from .interfaces import ConversionRequest, ImageNormalizer, PdfRasterizer, RenderedPage
from .resources import ScratchArea

logger = logging.getLogger(__name__)

# pdftoppm zero-pads the page number to the width of the last page number.
PAGE_FILE_RE = re.compile(r"^page-(\d+)\.jpg$")


def collect_pages(directory: Path) -> list[RenderedPage]:
    """Page files in numeric page order ("page-2" before "page-10")."""
    pages = []
    for entry in directory.iterdir():
        match = PAGE_FILE_RE.match(entry.name)
        if match and entry.is_file():
            pages.append(RenderedPage(index=int(match.group(1)), path=entry))
    pages.sort(key=lambda page: page.index)
    return pages


class PdfPageRenderer:
    """Turns PDF bytes into normalized JPEG pages via an external rasterizer."""

    def __init__(
        self,
        rasterizer: PdfRasterizer,
        normalizer: ImageNormalizer,
        *,
        single_timeout: float = 60.0,
        archive_timeout: float = 600.0,
    ) -> None:
        self._rasterizer = rasterizer
        self._normalizer = normalizer
        self._single_timeout = single_timeout
        self._archive_timeout = archive_timeout

    async def first_page(self, request: ConversionRequest, scratch: ScratchArea) -> bytes:
        request.cancel.raise_if_cancelled()
        pdf_path = await self._materialize(request, scratch)
        prefix = scratch.path / "first"
        await request.cancel.run(
            self._rasterizer.rasterize(
                pdf_path,
                prefix,
                dpi=request.options.pdf_dpi,
                last_page=1,
                single_file=True,
                timeout=request.time_budget(self._single_timeout),
            )
        )
        page_path = prefix.with_name(prefix.name + ".jpg")
        if not page_path.is_file():
            raise PdfRenderFailedError()
        request.cancel.raise_if_cancelled()
        return await self.normalize_page(RenderedPage(index=1, path=page_path), request)

    async def render_pages(self, request: ConversionRequest, scratch: ScratchArea) -> list[RenderedPage]:
        """Render every page, enforcing the page bound before any re-encoding."""
        request.cancel.raise_if_cancelled()
        max_pages = request.options.pdf_max_pages
        pdf_path = await self._materialize(request, scratch)
        pages_dir = scratch.path / "pages"
        pages_dir.mkdir()
        # One page past the bound is enough to know the document is too long.
        await request.cancel.run(
            self._rasterizer.rasterize(
                pdf_path,
                pages_dir / "page",
                dpi=request.options.pdf_dpi,
                last_page=max_pages + 1,
                single_file=False,
                timeout=request.time_budget(self._archive_timeout),
            )
        )
        pages = collect_pages(pages_dir)
        if not pages:
            raise PdfRenderFailedError()
        if len(pages) > max_pages:
            logger.info("request_id=%s rejected PDF with more than %d pages", request.request_id, max_pages)
            raise PdfTooManyPagesError.for_limit(max_pages)
        logger.info("request_id=%s rendered %d PDF pages at %d dpi", request.request_id, len(pages), request.options.pdf_dpi)
        return pages

    async def normalized_pages(self, pages: list[RenderedPage], request: ConversionRequest) -> AsyncIterator[bytes]:
        for page in pages:
            request.cancel.raise_if_cancelled()
            yield await self.normalize_page(page, request)

    async def normalize_page(self, page: RenderedPage, request: ConversionRequest) -> bytes:
        data = await asyncio.to_thread(page.path.read_bytes)
        return await asyncio.to_thread(
            self._normalizer.normalize, data, request.options, report_unsupported=False
        )

    @staticmethod
    async def _materialize(request: ConversionRequest, scratch: ScratchArea) -> Path:
        pdf_path = scratch.path / "input.pdf"
        await asyncio.to_thread(pdf_path.write_bytes, request.data)
        return pdf_path
