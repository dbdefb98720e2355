"""Environment-backed runtime settings."""

import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path

from postconvert.conversion.options import OptionDefaults

logger = logging.getLogger(__name__)

TRUE_VALUES = {"1", "true", "yes", "on"}


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in TRUE_VALUES


def _env_int(name: str, default: int, *, lo: int = 1, hi: int | None = None) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw.strip())
    except ValueError:
        logger.warning("[settings] Invalid %s=%s; using %s", name, raw, default)
        return default
    if value < lo or (hi is not None and value > hi):
        logger.warning("[settings] Out-of-range %s=%s; using %s", name, raw, default)
        return default
    return value


@dataclass(frozen=True)
class ServiceSettings:
    converter_token: str = ""
    max_upload_mb: int = 30
    scratch_dir: Path = Path(tempfile.gettempdir()) / "postconvert"
    scratch_max_age_sec: int = 3600
    max_concurrent_conversions: int = 1
    admission_guards_archive: bool = False
    busy_retry_after_sec: int = 2
    single_timeout_sec: int = 60
    archive_timeout_sec: int = 600
    pdftoppm_bin: str = "pdftoppm"
    max_image_pixels: int = 200_000_000
    jpeg_quality_default: int = 85
    pdf_dpi_default: int = 300
    pdf_max_pages_default: int = 50
    pdf_max_pages_limit: int = 200
    log_level: str = "INFO"
    log_file: str | None = None

    @property
    def max_upload_bytes(self) -> int:
        return self.max_upload_mb * 1024 * 1024

    def option_defaults(self) -> OptionDefaults:
        return OptionDefaults(
            quality=self.jpeg_quality_default,
            pdf_dpi=self.pdf_dpi_default,
            pdf_max_pages=min(self.pdf_max_pages_default, self.pdf_max_pages_limit),
            pdf_max_pages_limit=self.pdf_max_pages_limit,
        )


def load_settings() -> ServiceSettings:
    """Read settings from the environment; bad values fall back to defaults."""
    d = ServiceSettings()
    return ServiceSettings(
        converter_token=os.getenv("CONVERTER_TOKEN", ""),
        max_upload_mb=_env_int("MAX_UPLOAD_MB", d.max_upload_mb),
        scratch_dir=Path(os.getenv("SCRATCH_DIR", str(d.scratch_dir))).resolve(),
        scratch_max_age_sec=_env_int("SCRATCH_MAX_AGE_SEC", d.scratch_max_age_sec),
        max_concurrent_conversions=_env_int("MAX_CONCURRENT_CONVERSIONS", d.max_concurrent_conversions),
        admission_guards_archive=_env_bool("ADMISSION_GUARDS_ARCHIVE", d.admission_guards_archive),
        busy_retry_after_sec=_env_int("BUSY_RETRY_AFTER_SEC", d.busy_retry_after_sec),
        single_timeout_sec=_env_int("SINGLE_TIMEOUT_SEC", d.single_timeout_sec),
        archive_timeout_sec=_env_int("ARCHIVE_TIMEOUT_SEC", d.archive_timeout_sec),
        pdftoppm_bin=os.getenv("PDFTOPPM_BIN", d.pdftoppm_bin),
        max_image_pixels=_env_int("MAX_IMAGE_PIXELS", d.max_image_pixels),
        jpeg_quality_default=_env_int("JPEG_QUALITY_DEFAULT", d.jpeg_quality_default, lo=40, hi=100),
        pdf_dpi_default=_env_int("PDF_DPI_DEFAULT", d.pdf_dpi_default, lo=72, hi=600),
        pdf_max_pages_default=_env_int("PDF_MAX_PAGES_DEFAULT", d.pdf_max_pages_default, hi=200),
        pdf_max_pages_limit=_env_int("PDF_MAX_PAGES_LIMIT", d.pdf_max_pages_limit, hi=200),
        log_level=os.getenv("LOG_LEVEL", d.log_level).upper(),
        log_file=os.getenv("LOG_FILE") or None,
    )
