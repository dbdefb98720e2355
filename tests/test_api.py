import asyncio
import io
import logging
import os
import time
import zipfile

import httpx
import pytest
from argon2 import PasswordHasher
from fastapi.testclient import TestClient
from PIL import Image

from conftest import AUTH, FAKE_PDF, TOKEN, CountingNormalizer, FakeRasterizer, make_image, make_service, open_image
from postconvert import webapi
from postconvert.config import ServiceSettings
from postconvert.conversion import AdmissionController
from postconvert.conversion.adapters import PdftoppmRasterizer


def assert_envelope(response, status: int, code: str) -> dict:
    assert response.status_code == status
    body = response.json()
    assert body["error"] == code
    assert body["message"]
    assert body["requestId"] == response.headers["x-request-id"]
    return body


class TestHealth:
    def test_health(self, client):
        assert client.get("/health").json() == {"status": "ok"}

    def test_root(self, client):
        assert client.get("/").json()["status"] == "ok"

    def test_health_needs_no_token(self, client):
        assert client.get("/health").status_code == 200


class TestAuthorization:
    def test_missing_token(self, client, jpeg_bytes):
        assert_envelope(client.post("/convert", content=jpeg_bytes), 401, "unauthorized")

    def test_wrong_scheme(self, client, jpeg_bytes):
        response = client.post("/convert", content=jpeg_bytes, headers={"Authorization": f"Basic {TOKEN}"})
        assert_envelope(response, 401, "unauthorized")

    def test_invalid_token(self, client, jpeg_bytes):
        response = client.post("/convert", content=jpeg_bytes, headers={"Authorization": "Bearer nope"})
        assert_envelope(response, 401, "unauthorized")

    def test_archive_endpoint_requires_token(self, client):
        assert_envelope(client.post("/convert/pdf", content=FAKE_PDF), 401, "unauthorized")

    def test_unset_secret_rejects_everything(self, configure_api, settings, scratch_root, jpeg_bytes):
        configure_api(ServiceSettings(scratch_dir=scratch_root), service=make_service(scratch_root))
        response = TestClient(webapi.app).post("/convert", content=jpeg_bytes, headers=AUTH)
        assert_envelope(response, 401, "unauthorized")

    def test_argon2_hashed_secret(self, configure_api, settings, scratch_root, jpeg_bytes):
        hashed = ServiceSettings(
            converter_token=PasswordHasher().hash(TOKEN), scratch_dir=scratch_root, max_upload_mb=1
        )
        configure_api(hashed, service=make_service(scratch_root))
        client = TestClient(webapi.app)
        assert client.post("/convert", content=jpeg_bytes, headers=AUTH).status_code == 200
        bad = client.post("/convert", content=jpeg_bytes, headers={"Authorization": "Bearer other"})
        assert_envelope(bad, 401, "unauthorized")


class TestRequestId:
    def test_inbound_id_is_echoed(self, client, jpeg_bytes):
        response = client.post("/convert", content=jpeg_bytes, headers={**AUTH, "x-request-id": "abc-123.x_y"})
        assert response.headers["x-request-id"] == "abc-123.x_y"

    def test_inbound_id_on_error(self, client):
        response = client.post("/convert", content=b"", headers={"x-request-id": "trace-1"})
        assert assert_envelope(response, 401, "unauthorized")["requestId"] == "trace-1"

    def test_unsafe_id_is_replaced(self, client, jpeg_bytes):
        response = client.post("/convert", content=jpeg_bytes, headers={**AUTH, "x-request-id": "bad id!"})
        request_id = response.headers["x-request-id"]
        assert request_id != "bad id!"
        assert len(request_id) == 32


class TestConvert:
    def test_jpeg_response(self, client, jpeg_bytes):
        response = client.post("/convert", content=jpeg_bytes, headers={**AUTH, "content-type": "image/jpeg"})
        assert response.status_code == 200
        assert response.headers["content-type"] == "image/jpeg"
        assert open_image(response.content).size == (64, 48)

    def test_png_with_options(self, client):
        headers = {**AUTH, "content-type": "image/png", "x-width": "50", "x-height": "50", "x-fit": "fill"}
        response = client.post("/convert", content=make_image("PNG", (200, 100)), headers=headers)
        assert response.status_code == 200
        assert open_image(response.content).size == (50, 50)

    def test_bad_option_values_fall_back(self, client, jpeg_bytes):
        headers = {**AUTH, "x-jpeg-quality": "loud", "x-max-dimension": "-1", "x-fit": "stretch"}
        assert client.post("/convert", content=jpeg_bytes, headers=headers).status_code == 200

    def test_pdf_first_page(self, client):
        headers = {**AUTH, "content-type": "application/pdf"}
        response = client.post("/convert", content=FAKE_PDF, headers=headers)
        assert response.status_code == 200
        assert open_image(response.content).size == (101, 60)

    def test_empty_body(self, client):
        assert_envelope(client.post("/convert", content=b"", headers=AUTH), 400, "empty_body")

    def test_payload_too_large(self, client):
        response = client.post("/convert", content=b"\xff" * (1024 * 1024 + 1), headers=AUTH)
        assert_envelope(response, 413, "payload_too_large")

    def test_unsupported(self, client):
        response = client.post("/convert", content=b"just some text", headers={**AUTH, "content-type": "text/plain"})
        assert_envelope(response, 415, "unsupported_media_type")

    def test_missing_pdftoppm(self, configure_api, settings, scratch_root, tmp_path):
        rasterizer = PdftoppmRasterizer(str(tmp_path / "missing-pdftoppm"))
        configure_api(settings, service=make_service(scratch_root, rasterizer))
        response = TestClient(webapi.app).post("/convert", content=FAKE_PDF, headers=AUTH)
        body = assert_envelope(response, 500, "missing_dependency")
        assert "missing-pdftoppm" in body["message"]
        assert list(scratch_root.iterdir()) == []


class TestConvertPdf:
    def test_zip_of_pages(self, client, scratch_root):
        headers = {**AUTH, "content-type": "application/pdf", "x-filename": "Quarterly Report.pdf"}
        response = client.post("/convert/pdf", content=FAKE_PDF, headers=headers)

        assert response.status_code == 200
        assert response.headers["content-type"] == "application/zip"
        assert response.headers["content-disposition"] == 'attachment; filename="Quarterly_Report.zip"'
        assert response.headers["x-page-count"] == "12"
        with zipfile.ZipFile(io.BytesIO(response.content)) as archive:
            assert archive.namelist() == [f"{n:03d}.jpg" for n in range(1, 13)]
            assert open_image(archive.read("010.jpg")).size == (110, 60)
        assert list(scratch_root.iterdir()) == []

    def test_default_archive_name(self, client):
        response = client.post("/convert/pdf", content=FAKE_PDF, headers=AUTH)
        assert response.headers["content-disposition"] == 'attachment; filename="pages.zip"'

    def test_too_many_pages(self, client, scratch_root):
        headers = {**AUTH, "content-type": "application/pdf", "x-pdf-max-pages": "5"}
        response = client.post("/convert/pdf", content=FAKE_PDF, headers=headers)
        assert_envelope(response, 413, "pdf_too_many_pages")
        assert response.headers["content-type"] == "application/json"
        assert list(scratch_root.iterdir()) == []

    def test_non_pdf(self, client):
        response = client.post("/convert/pdf", content=make_image("PNG"), headers={**AUTH, "content-type": "image/png"})
        assert_envelope(response, 415, "unsupported_media_type")

    def test_empty_body(self, client):
        assert_envelope(client.post("/convert/pdf", content=b"", headers=AUTH), 400, "empty_body")

    def test_guarded_archive_when_busy(self, configure_api, settings, scratch_root):
        guarded = ServiceSettings(
            converter_token=TOKEN, scratch_dir=scratch_root, max_upload_mb=1, admission_guards_archive=True
        )
        admission = AdmissionController(1, retry_after=5)
        configure_api(guarded, service=make_service(scratch_root, FakeRasterizer(2)), admission=admission)
        client = TestClient(webapi.app)

        assert admission.try_acquire()
        response = client.post("/convert/pdf", content=FAKE_PDF, headers=AUTH)
        assert_envelope(response, 429, "busy")
        assert response.headers["retry-after"] == "5"

        admission.release()
        assert client.post("/convert/pdf", content=FAKE_PDF, headers=AUTH).status_code == 200
        assert admission.in_flight == 0


class BlockingService:
    """Holds convert_image open until the test lets it finish."""

    def __init__(self) -> None:
        self.started = asyncio.Event()
        self.finish = asyncio.Event()

    async def convert_image(self, request) -> bytes:
        self.started.set()
        await self.finish.wait()
        return make_image()


@pytest.mark.asyncio
async def test_concurrent_conversion_is_refused(configure_api, settings, jpeg_bytes):
    service = BlockingService()
    configure_api(settings, service=service)
    transport = httpx.ASGITransport(app=webapi.app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        first = asyncio.create_task(client.post("/convert", content=jpeg_bytes, headers=AUTH))
        await asyncio.wait_for(service.started.wait(), timeout=5)

        busy = await client.post("/convert", content=jpeg_bytes, headers=AUTH)
        assert_envelope(busy, 429, "busy")
        assert busy.headers["retry-after"] == "2"

        service.finish.set()
        assert (await first).status_code == 200
        after = await client.post("/convert", content=jpeg_bytes, headers=AUTH)
        assert after.status_code == 200


def test_lifespan_purges_stale_scratch(configure_api, settings, scratch_root, monkeypatch):
    stale = scratch_root / "old-request"
    stale.mkdir()
    stamp = time.time() - 2 * settings.scratch_max_age_sec
    os.utime(stale, (stamp, stamp))
    logging_calls = []
    monkeypatch.setattr(webapi, "setup_logging", lambda *args: logging_calls.append(args))
    configure_api(settings, service=make_service(scratch_root))

    with TestClient(webapi.app) as client:
        assert client.get("/health").status_code == 200

    assert not stale.exists()
    assert logging_calls == [("INFO", None)]


def asgi_scope(path: str, body_length: int, spec_version: str = "2.3") -> dict:
    return {
        "type": "http",
        "asgi": {"version": "3.0", "spec_version": spec_version},
        "http_version": "1.1",
        "method": "POST",
        "scheme": "http",
        "path": path,
        "raw_path": path.encode(),
        "query_string": b"",
        "root_path": "",
        "headers": [
            (b"host", b"testserver"),
            (b"authorization", f"Bearer {TOKEN}".encode()),
            (b"content-type", b"application/pdf"),
            (b"content-length", str(body_length).encode()),
        ],
        "client": ("testclient", 50000),
        "server": ("testserver", 80),
    }


class TestClientDisconnect:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("spec_version", ["2.3", "2.4"])
    async def test_disconnect_mid_archive_stops_work(self, configure_api, scratch_root, caplog, spec_version):
        guarded = ServiceSettings(
            converter_token=TOKEN, scratch_dir=scratch_root, max_upload_mb=1, admission_guards_archive=True
        )
        admission = AdmissionController(1)
        normalizer = CountingNormalizer()
        service = make_service(scratch_root, FakeRasterizer(12), normalizer=normalizer)
        configure_api(guarded, service=service, admission=admission)

        first_chunk_sent = asyncio.Event()
        body_delivered = False
        messages = []

        async def receive():
            nonlocal body_delivered
            if not body_delivered:
                body_delivered = True
                return {"type": "http.request", "body": FAKE_PDF, "more_body": False}
            await first_chunk_sent.wait()
            return {"type": "http.disconnect"}

        async def send(message):
            messages.append(message)
            if message["type"] == "http.response.body" and message.get("body"):
                first_chunk_sent.set()

        scope = asgi_scope("/convert/pdf", len(FAKE_PDF), spec_version)
        with caplog.at_level(logging.INFO):
            await asyncio.wait_for(webapi.app(scope, receive, send), timeout=10)

        assert messages[0]["status"] == 200
        assert first_chunk_sent.is_set()
        assert 1 <= normalizer.calls < 12
        assert list(scratch_root.iterdir()) == []
        assert admission.in_flight == 0
        assert "archive abandoned" in caplog.text
        assert not [record for record in caplog.records if record.levelno >= logging.ERROR]

    @pytest.mark.asyncio
    async def test_disconnect_during_upload(self, configure_api, settings, scratch_root, caplog):
        normalizer = CountingNormalizer()
        configure_api(settings, service=make_service(scratch_root, FakeRasterizer(2), normalizer=normalizer))
        messages = []

        async def receive():
            return {"type": "http.disconnect"}

        async def send(message):
            messages.append(message)

        with caplog.at_level(logging.INFO):
            await asyncio.wait_for(webapi.app(asgi_scope("/convert", 4096), receive, send), timeout=10)

        assert messages[0]["status"] == 499
        assert normalizer.calls == 0
        assert list(scratch_root.iterdir()) == []
        assert "client disconnected during upload" in caplog.text
        assert not [record for record in caplog.records if record.levelno >= logging.ERROR]


def test_build_service_sets_pixel_cap(monkeypatch, settings):
    monkeypatch.setattr(Image, "MAX_IMAGE_PIXELS", Image.MAX_IMAGE_PIXELS)
    webapi.build_service(ServiceSettings(scratch_dir=settings.scratch_dir, max_image_pixels=12_345))
    assert Image.MAX_IMAGE_PIXELS == 12_345
