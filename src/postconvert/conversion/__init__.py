"""
Domain layer for image normalization.
Provides the conversion pipeline (detection, decoders, PDF rendering, archive
streaming) and the per-request resources it runs under, so front-ends (HTTP or
others) can use the same core logic.
"""

from .archive import ArchiveStreamer
from .errors import ConversionError
from .interfaces import ConversionOptions, ConversionRequest, DetectedFormat, Fit, RawPixels, RenderedPage
from .pdf import PdfPageRenderer
from .resources import AdmissionController, CancellationToken, ScratchArea
from .service import ArchiveJob, ConversionService
