import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from .resources import CancellationToken


class DetectedFormat:
    PDF = "pdf"
    HEIC = "heic"
    RASTER = "raster"
    UNSUPPORTED = "unsupported"


class Fit:
    INSIDE = "inside"
    COVER = "cover"
    CONTAIN = "contain"
    FILL = "fill"
    OUTSIDE = "outside"

    ALL = (INSIDE, COVER, CONTAIN, FILL, OUTSIDE)


@dataclass(frozen=True)
class ConversionOptions:
    quality: int = 85
    max_dimension: int | None = None
    width: int | None = None
    height: int | None = None
    fit: str = Fit.INSIDE
    without_enlargement: bool = True
    pdf_dpi: int = 300
    pdf_max_pages: int = 50


@dataclass(frozen=True)
class ConversionRequest:
    data: bytes
    content_type: str
    filename: str
    request_id: str
    options: ConversionOptions = field(default_factory=ConversionOptions)
    cancel: CancellationToken = field(default_factory=CancellationToken)
    deadline: float | None = None

    def time_budget(self, budget: float) -> float:
        """Clamp a subprocess timeout budget to what is left before the deadline."""
        if self.deadline is None:
            return budget
        return max(0.0, min(budget, self.deadline - time.monotonic()))


@dataclass(frozen=True)
class RawPixels:
    """Decoded pixel buffer handed from a decoder to the normalizer."""

    data: bytes
    width: int
    height: int
    mode: str
    stride: int

    @property
    def channels(self) -> int:
        return len(self.mode)


@dataclass(frozen=True)
class RenderedPage:
    index: int
    path: Path


class ImageNormalizer(Protocol):
    def probe(self, data: bytes) -> bool:
        """Return True when the bytes carry a header the decoder understands."""

    def normalize(self, source: "bytes | RawPixels", options: ConversionOptions, *, report_unsupported: bool = True) -> bytes:
        """Decode, orient, resize and re-encode to JPEG.

        Decode failures raise UnsupportedMediaTypeError when report_unsupported
        is set, ConversionError otherwise.

        This is a blocking call; callers should offload to threads.
        """


class HeifDecoder(Protocol):
    async def decode(self, data: bytes) -> RawPixels:
        ...


class PdfRasterizer(Protocol):
    binary: str

    async def rasterize(
        self,
        pdf_path: Path,
        output_prefix: Path,
        *,
        dpi: int,
        last_page: int,
        single_file: bool,
        timeout: float,
    ) -> None:
        """Render pages of pdf_path to JPEG files named after output_prefix.

        Raises MissingDependencyError, ConversionTimeoutError or
        PdfRenderFailedError.
        """


class SecurityGateway(Protocol):
    def verify(self, secret: str, token: str) -> bool:
        ...
