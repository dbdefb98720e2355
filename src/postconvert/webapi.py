import asyncio
import logging
import os
import re
import time
import uuid
from contextlib import asynccontextmanager, contextmanager
from typing import Callable, Iterator

from fastapi import FastAPI, Header, Request
from fastapi.responses import JSONResponse, Response, StreamingResponse
from PIL import Image
from starlette.requests import ClientDisconnect
from starlette.types import Receive, Scope, Send

from postconvert import __version__
from postconvert.config import ServiceSettings, load_settings
from postconvert.conversion import (
    AdmissionController,
    ArchiveJob,
    ArchiveStreamer,
    CancellationToken,
    ConversionRequest,
    ConversionService,
    PdfPageRenderer,
)
from postconvert.conversion.adapters import Argon2Security, PdftoppmRasterizer, PillowHeifDecoder, PillowNormalizer
from postconvert.conversion.errors import (
    BusyError,
    ConversionCancelled,
    ConversionError,
    EmptyBodyError,
    PayloadTooLargeError,
    UnauthorizedError,
)
from postconvert.conversion.interfaces import SecurityGateway
from postconvert.conversion.options import parse_options
from postconvert.conversion.resources import purge_stale_scratch
from postconvert.logging_config import setup_logging

logger = logging.getLogger(__name__)

REQUEST_ID_RE = re.compile(r"[A-Za-z0-9._-]{1,64}")
FILENAME_UNSAFE_RE = re.compile(r"[^A-Za-z0-9._-]+")

SETTINGS: ServiceSettings | None = None
SERVICE: ConversionService | None = None
ADMISSION: AdmissionController | None = None
SECURITY: SecurityGateway = Argon2Security()


def build_service(settings: ServiceSettings) -> ConversionService:
    # Process-wide: Pillow refuses headers above twice this value before any decode.
    Image.MAX_IMAGE_PIXELS = settings.max_image_pixels
    normalizer = PillowNormalizer(settings.max_image_pixels)
    renderer = PdfPageRenderer(
        PdftoppmRasterizer(settings.pdftoppm_bin),
        normalizer,
        single_timeout=settings.single_timeout_sec,
        archive_timeout=settings.archive_timeout_sec,
    )
    return ConversionService(
        normalizer,
        PillowHeifDecoder(),
        renderer,
        ArchiveStreamer(),
        scratch_root=settings.scratch_dir,
    )


def configure(
    settings: ServiceSettings,
    *,
    service: ConversionService | None = None,
    admission: AdmissionController | None = None,
) -> None:
    global SETTINGS, SERVICE, ADMISSION
    SETTINGS = settings
    SERVICE = service or build_service(settings)
    ADMISSION = admission or AdmissionController(
        settings.max_concurrent_conversions, retry_after=settings.busy_retry_after_sec
    )


def _state() -> tuple[ServiceSettings, ConversionService, AdmissionController]:
    if SETTINGS is None or SERVICE is None or ADMISSION is None:
        configure(load_settings())
    assert SETTINGS is not None and SERVICE is not None and ADMISSION is not None
    return SETTINGS, SERVICE, ADMISSION


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings, _, _ = _state()
    setup_logging(settings.log_level, settings.log_file)
    if not settings.converter_token:
        logger.warning("CONVERTER_TOKEN is not set; every conversion request will be rejected")
    await asyncio.to_thread(purge_stale_scratch, settings.scratch_dir, settings.scratch_max_age_sec)
    yield


app = FastAPI(
    title="postconvert",
    version=os.getenv("POSTCONVERT_VERSION", __version__),
    description=(
        "Normalizes untrusted image, HEIC and PDF uploads into upright, "
        "metadata-free JPEG output."
    ),
    lifespan=lifespan,
)


def _request_id(request: Request) -> str:
    request_id = getattr(request.state, "request_id", None)
    if request_id is None:
        inbound = request.headers.get("x-request-id", "")
        request_id = inbound if REQUEST_ID_RE.fullmatch(inbound) else uuid.uuid4().hex
        request.state.request_id = request_id
    return request_id


@app.exception_handler(ConversionError)
async def _conversion_error_handler(request: Request, exc: ConversionError) -> JSONResponse:
    request_id = _request_id(request)
    headers = {"x-request-id": request_id}
    if isinstance(exc, BusyError):
        headers["Retry-After"] = str(exc.retry_after)
    body = {"error": exc.code, "message": exc.message, "requestId": request_id}
    return JSONResponse(status_code=exc.status_code, content=body, headers=headers)


@contextmanager
def _failures_logged(request_id: str) -> Iterator[None]:
    """Log pipeline failures server-side; callers only see the envelope."""
    try:
        yield
    except ConversionCancelled:
        logger.info("request_id=%s client disconnected; conversion abandoned", request_id)
        raise
    except ConversionError as exc:
        if exc.status_code >= 500:
            logger.error("request_id=%s %s: %s", request_id, exc.code, exc.message, exc_info=True)
        else:
            logger.info("request_id=%s rejected: %s", request_id, exc.code)
        raise
    except Exception as exc:
        logger.exception("request_id=%s unexpected conversion failure", request_id)
        raise ConversionError() from exc


def _authorize(settings: ServiceSettings, auth_header: str | None) -> None:
    if not auth_header:
        raise UnauthorizedError("missing bearer token")
    scheme, _, rest = auth_header.partition(" ")
    token = rest.strip()
    if scheme.lower() != "bearer" or not token:
        raise UnauthorizedError("missing bearer token")
    if not SECURITY.verify(settings.converter_token, token):
        raise UnauthorizedError("invalid bearer token")


async def _read_body(request: Request, settings: ServiceSettings) -> bytes:
    max_bytes = settings.max_upload_bytes
    declared = request.headers.get("content-length", "")
    if declared.isdigit() and int(declared) > max_bytes:
        raise PayloadTooLargeError.for_limit(settings.max_upload_mb)
    body = bytearray()
    try:
        async for chunk in request.stream():
            body.extend(chunk)
            if len(body) > max_bytes:
                raise PayloadTooLargeError.for_limit(settings.max_upload_mb)
    except ClientDisconnect as exc:
        logger.info("request_id=%s client disconnected during upload", _request_id(request))
        raise ConversionCancelled() from exc
    if not body:
        raise EmptyBodyError()
    return bytes(body)


async def _build_request(
    request: Request,
    settings: ServiceSettings,
    filename: str | None,
    timeout_sec: int,
) -> ConversionRequest:
    data = await _read_body(request, settings)
    return ConversionRequest(
        data=data,
        content_type=request.headers.get("content-type", ""),
        filename=filename or "",
        request_id=_request_id(request),
        options=parse_options(request.headers, settings.option_defaults()),
        cancel=CancellationToken(),
        deadline=time.monotonic() + timeout_sec,
    )


async def _watch_disconnect(request: Request, cancel: CancellationToken) -> None:
    # The body is already consumed, so the next ASGI message is the disconnect.
    while True:
        message = await request.receive()
        if message["type"] == "http.disconnect":
            cancel.cancel()
            return


def _archive_filename(filename: str | None) -> str:
    stem = (filename or "").rsplit("/", 1)[-1]
    if stem.lower().endswith(".pdf"):
        stem = stem[:-4]
    stem = FILENAME_UNSAFE_RE.sub("_", stem).strip("._")[:100]
    return f"{stem or 'pages'}.zip"


class ArchiveResponse(StreamingResponse):
    """Streams an ArchiveJob and releases its resources on every exit path,
    including a client that disconnects mid-stream."""

    def __init__(self, job: ArchiveJob, *, filename: str, on_close: Callable[[], None]) -> None:
        headers = {
            "content-disposition": f'attachment; filename="{filename}"',
            "x-page-count": str(job.page_count),
            "x-request-id": job.request.request_id,
        }
        super().__init__(job.body(), media_type="application/zip", headers=headers)
        self._job = job
        self._on_close = on_close

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        try:
            await super().__call__(scope, receive, send)
        except (ClientDisconnect, ConversionCancelled):
            self._job.request.cancel.cancel()
        finally:
            await self.body_iterator.aclose()  # type: ignore[attr-defined]
            self._job.close()
            self._on_close()
            if not self._job.completed:
                logger.info(
                    "request_id=%s client disconnected; archive abandoned", self._job.request.request_id
                )


@app.get("/")
def root() -> dict[str, str]:
    return {"service": "postconvert", "status": "ok"}


@app.get("/health")
def health() -> dict[str, str]:
    """Basic health check endpoint."""
    return {"status": "ok"}


@app.post("/convert")
async def convert(
    request: Request,
    authorization: str | None = Header(None),
    x_filename: str | None = Header(None),
) -> Response:
    """Convert one raw-body upload (image, HEIC or PDF first page) to JPEG."""
    settings, service, admission = _state()
    request_id = _request_id(request)
    _authorize(settings, authorization)
    conversion = await _build_request(request, settings, x_filename, settings.single_timeout_sec)

    watcher = asyncio.create_task(_watch_disconnect(request, conversion.cancel))
    try:
        with _failures_logged(request_id), admission.slot():
            jpeg = await service.convert_image(conversion)
    finally:
        watcher.cancel()

    logger.info("request_id=%s converted %d bytes to %d byte JPEG", request_id, len(conversion.data), len(jpeg))
    return Response(content=jpeg, media_type="image/jpeg", headers={"x-request-id": request_id})


@app.post("/convert/pdf")
async def convert_pdf(
    request: Request,
    authorization: str | None = Header(None),
    x_filename: str | None = Header(None),
) -> Response:
    """Render every page of a PDF and stream them back as a ZIP of JPEGs.

    Archive jobs are not admission-controlled unless ADMISSION_GUARDS_ARCHIVE
    is set; the page bound and upload size cap limit them instead.
    """
    settings, service, admission = _state()
    request_id = _request_id(request)
    _authorize(settings, authorization)
    conversion = await _build_request(request, settings, x_filename, settings.archive_timeout_sec)

    holds_slot = False
    if settings.admission_guards_archive:
        if not admission.try_acquire():
            raise BusyError(admission.retry_after)
        holds_slot = True
    watcher = asyncio.create_task(_watch_disconnect(request, conversion.cancel))

    def release() -> None:
        watcher.cancel()
        if holds_slot:
            admission.release()

    try:
        with _failures_logged(request_id):
            job = await service.open_archive(conversion)
    except BaseException:
        release()
        raise

    logger.info("request_id=%s streaming %d page archive", request_id, job.page_count)
    return ArchiveResponse(job, filename=_archive_filename(x_filename), on_close=release)


def run() -> None:
    """Run the ASGI server using uvicorn.

    Exposes the app at host:port (default 0.0.0.0:8080). Set PORT env var to override.
    """
    import uvicorn

    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", "8080"))
    reload = os.getenv("RELOAD", "false").lower() in {"1", "true", "yes", "on"}

    uvicorn.run("postconvert.webapi:app", host=host, port=port, reload=reload)


if __name__ == "__main__":
    run()
