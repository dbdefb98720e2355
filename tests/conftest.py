"""
Shared fixtures: generated images, a fake PDF rasterizer and a configured API.
"""
import io
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from PIL import Image

from postconvert import webapi
from postconvert.config import ServiceSettings
from postconvert.conversion import ArchiveStreamer, ConversionRequest, ConversionService, PdfPageRenderer
from postconvert.conversion.adapters import PillowHeifDecoder, PillowNormalizer

TOKEN = "test-token"
AUTH = {"Authorization": f"Bearer {TOKEN}"}
FAKE_PDF = b"%PDF-1.4\n%fake document\n%%EOF\n"


def make_image(fmt: str = "JPEG", size: tuple[int, int] = (64, 48), mode: str = "RGB", color=(200, 30, 30), **save_kwargs) -> bytes:
    buffer = io.BytesIO()
    Image.new(mode, size, color).save(buffer, format=fmt, **save_kwargs)
    return buffer.getvalue()


def open_image(data: bytes) -> Image.Image:
    image = Image.open(io.BytesIO(data))
    image.load()
    return image


def page_jpeg(index: int) -> bytes:
    """Page images whose width encodes their page number."""
    return make_image(size=(100 + index, 60), color=(index * 10 % 255, 0, 0))


class FakeRasterizer:
    """Stands in for pdftoppm: writes page files the way poppler names them."""

    binary = "fake-pdftoppm"

    def __init__(self, page_count: int = 3, *, zero_pad: bool = False) -> None:
        self.page_count = page_count
        self.zero_pad = zero_pad
        self.calls: list[dict] = []

    async def rasterize(self, pdf_path: Path, output_prefix: Path, *, dpi: int, last_page: int, single_file: bool, timeout: float) -> None:
        self.calls.append({"dpi": dpi, "last_page": last_page, "single_file": single_file, "timeout": timeout})
        assert pdf_path.is_file()
        if single_file:
            output_prefix.with_name(output_prefix.name + ".jpg").write_bytes(page_jpeg(1))
            return
        count = min(self.page_count, last_page)
        width = len(str(self.page_count)) if self.zero_pad else 1
        for index in range(1, count + 1):
            name = f"{output_prefix.name}-{index:0{width}d}.jpg"
            (output_prefix.parent / name).write_bytes(page_jpeg(index))


class CountingNormalizer(PillowNormalizer):
    def __init__(self) -> None:
        super().__init__()
        self.calls = 0

    def normalize(self, *args, **kwargs) -> bytes:
        self.calls += 1
        return super().normalize(*args, **kwargs)


def make_service(scratch_root: Path, rasterizer=None, normalizer=None, heif_decoder=None) -> ConversionService:
    normalizer = normalizer or PillowNormalizer()
    renderer = PdfPageRenderer(rasterizer or FakeRasterizer(), normalizer, single_timeout=5, archive_timeout=5)
    return ConversionService(
        normalizer,
        heif_decoder or PillowHeifDecoder(),
        renderer,
        ArchiveStreamer(),
        scratch_root=scratch_root,
    )


def make_request(data: bytes, content_type: str = "application/octet-stream", filename: str = "", **kwargs) -> ConversionRequest:
    return ConversionRequest(data=data, content_type=content_type, filename=filename, request_id="req-test", **kwargs)


@pytest.fixture
def jpeg_bytes() -> bytes:
    return make_image("JPEG", (64, 48))


@pytest.fixture
def scratch_root(tmp_path: Path) -> Path:
    root = tmp_path / "scratch"
    root.mkdir()
    return root


@pytest.fixture
def settings(scratch_root: Path) -> ServiceSettings:
    return ServiceSettings(converter_token=TOKEN, scratch_dir=scratch_root, max_upload_mb=1)


@pytest.fixture
def configure_api(monkeypatch):
    """Configure the module-level API state; restored after the test."""
    monkeypatch.setattr(webapi, "SETTINGS", None)
    monkeypatch.setattr(webapi, "SERVICE", None)
    monkeypatch.setattr(webapi, "ADMISSION", None)

    def _configure(settings: ServiceSettings, **kwargs) -> None:
        webapi.configure(settings, **kwargs)

    return _configure


@pytest.fixture
def client(configure_api, settings, scratch_root) -> TestClient:
    configure_api(settings, service=make_service(scratch_root, FakeRasterizer(page_count=12)))
    return TestClient(webapi.app)
