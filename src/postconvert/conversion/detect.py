from typing import Callable

from .interfaces import DetectedFormat

PDF_MAGIC = b"%PDF-"
HEIF_BRANDS = (b"heic", b"heif", b"heix", b"hevc", b"hevx", b"mif1", b"msf1")
# Compatible-brand lists can run well past the minimal 32-byte ftyp box.
HEIF_SCAN_LIMIT = 256


def is_pdf(data: bytes, content_type: str, filename: str) -> bool:
    if (content_type or "").strip().lower().startswith("application/pdf"):
        return True
    if (filename or "").strip().lower().endswith(".pdf"):
        return True
    return data[: len(PDF_MAGIC)] == PDF_MAGIC


def has_heif_signature(data: bytes) -> bool:
    if len(data) < 16 or data[4:8] != b"ftyp":
        return False
    window = data[8:min(len(data), HEIF_SCAN_LIMIT)]
    return any(brand in window for brand in HEIF_BRANDS)


def detect_format(
    data: bytes,
    content_type: str,
    filename: str,
    probe: Callable[[bytes], bool],
) -> str:
    """Classify an upload as PDF, HEIC, RASTER or UNSUPPORTED.

    probe is only consulted for generic raster candidates; HEIC buffers skip
    it since the raster decoder is expected to reject them.
    """
    if is_pdf(data, content_type, filename):
        return DetectedFormat.PDF
    if has_heif_signature(data):
        return DetectedFormat.HEIC
    if probe(data):
        return DetectedFormat.RASTER
    return DetectedFormat.UNSUPPORTED
