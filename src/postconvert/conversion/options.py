"""Header-to-options parsing.

Option headers never cause an error: anything missing, non-numeric or out of
range silently falls back to the configured default.
"""

from dataclasses import dataclass
from typing import Mapping

from .interfaces import ConversionOptions, Fit

TRUE_VALUES = {"1", "true", "yes", "on"}
FALSE_VALUES = {"0", "false", "no", "off"}


@dataclass(frozen=True)
class OptionDefaults:
    quality: int = 85
    quality_min: int = 40
    pdf_dpi: int = 300
    pdf_dpi_min: int = 72
    pdf_dpi_max: int = 600
    pdf_max_pages: int = 50
    pdf_max_pages_limit: int = 200
    max_dimension_limit: int = 10000


def _int_in_range(raw: str | None, lo: int, hi: int, default: int) -> int:
    if raw is None:
        return default
    try:
        value = int(raw.strip())
    except ValueError:
        return default
    if value < lo or value > hi:
        return default
    return value


def _dimension(raw: str | None, limit: int) -> int | None:
    if raw is None:
        return None
    try:
        value = int(raw.strip())
    except ValueError:
        return None
    if value <= 0 or value > limit:
        return None
    return value


def _flag(raw: str | None, default: bool) -> bool:
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in TRUE_VALUES:
        return True
    if value in FALSE_VALUES:
        return False
    return default


def parse_options(headers: Mapping[str, str], defaults: OptionDefaults | None = None) -> ConversionOptions:
    d = defaults or OptionDefaults()
    fit = (headers.get("x-fit") or "").strip().lower()
    return ConversionOptions(
        quality=_int_in_range(headers.get("x-jpeg-quality"), d.quality_min, 100, d.quality),
        max_dimension=_dimension(headers.get("x-max-dimension"), d.max_dimension_limit),
        width=_dimension(headers.get("x-width"), d.max_dimension_limit),
        height=_dimension(headers.get("x-height"), d.max_dimension_limit),
        fit=fit if fit in Fit.ALL else Fit.INSIDE,
        without_enlargement=_flag(headers.get("x-without-enlargement"), True),
        pdf_dpi=_int_in_range(headers.get("x-pdf-dpi"), d.pdf_dpi_min, d.pdf_dpi_max, d.pdf_dpi),
        pdf_max_pages=_int_in_range(headers.get("x-pdf-max-pages"), 1, d.pdf_max_pages_limit, d.pdf_max_pages),
    )
