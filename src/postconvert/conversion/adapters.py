import asyncio
import hmac
import io
import logging
from pathlib import Path
from typing import Any, Callable

import pillow_heif
from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError
from PIL import Image, ImageOps, UnidentifiedImageError

from .errors import (
    ConversionError,
    ConversionTimeoutError,
    MissingDependencyError,
    PdfRenderFailedError,
    UnsupportedMediaTypeError,
)
from .interfaces import ConversionOptions, Fit, HeifDecoder, ImageNormalizer, PdfRasterizer, RawPixels, SecurityGateway

logger = logging.getLogger(__name__)

WHITE = (255, 255, 255)
DEFAULT_MAX_PIXELS = 200_000_000


def _target_box(width: int, height: int, options: ConversionOptions) -> tuple[int, int, str] | None:
    if options.width or options.height:
        box_w = options.width or max(1, round(width * options.height / height))
        box_h = options.height or max(1, round(height * options.width / width))
        return box_w, box_h, options.fit
    if options.max_dimension:
        return options.max_dimension, options.max_dimension, Fit.INSIDE
    return None


def _resized(image: Image.Image, size: tuple[int, int]) -> Image.Image:
    if image.size == size:
        return image
    return image.resize(size, Image.Resampling.LANCZOS)


def resize_image(image: Image.Image, options: ConversionOptions, background: tuple[int, int, int] = WHITE) -> Image.Image:
    """Resize following the fit modes of ConversionOptions.

    inside/contain scale down into the box, cover/outside scale to cover it,
    fill stretches to it. cover crops and contain pads to the box. With
    without_enlargement no side is ever scaled up.
    """
    box = _target_box(image.width, image.height, options)
    if box is None:
        return image
    box_w, box_h, fit = box
    width, height = image.size
    grow = not options.without_enlargement

    if fit == Fit.FILL:
        if not grow:
            box_w, box_h = min(box_w, width), min(box_h, height)
        return _resized(image, (box_w, box_h))

    if fit in (Fit.INSIDE, Fit.CONTAIN):
        scale = min(box_w / width, box_h / height)
    else:
        scale = max(box_w / width, box_h / height)
    if not grow:
        scale = min(scale, 1.0)
    size = (max(1, round(width * scale)), max(1, round(height * scale)))
    resized = _resized(image, size)

    if fit == Fit.COVER:
        crop_w, crop_h = min(box_w, size[0]), min(box_h, size[1])
        left, top = (size[0] - crop_w) // 2, (size[1] - crop_h) // 2
        return resized.crop((left, top, left + crop_w, top + crop_h))
    if fit == Fit.CONTAIN:
        canvas_size = (box_w, box_h) if grow else (min(box_w, width), min(box_h, height))
        fill = background if resized.mode == "RGB" else 255
        canvas = Image.new(resized.mode, canvas_size, fill)
        canvas.paste(resized, ((canvas_size[0] - size[0]) // 2, (canvas_size[1] - size[1]) // 2))
        return canvas
    return resized


class PillowNormalizer(ImageNormalizer):
    def __init__(self, max_pixels: int = DEFAULT_MAX_PIXELS, *, background: tuple[int, int, int] = WHITE) -> None:
        self._max_pixels = max_pixels
        self._background = background

    def probe(self, data: bytes) -> bool:
        try:
            with Image.open(io.BytesIO(data)):
                return True
        except Image.DecompressionBombError:
            # Recognised but oversized; normalize() reports it.
            return True
        except (UnidentifiedImageError, OSError, SyntaxError, ValueError):
            return False

    def normalize(
        self,
        source: bytes | RawPixels,
        options: ConversionOptions,
        *,
        report_unsupported: bool = True,
    ) -> bytes:
        if isinstance(source, RawPixels):
            image = self._from_pixels(source)
        else:
            image = self._decode(source, report_unsupported)
            image = self._orient(image)
        try:
            image = self._flatten(image)
            image = resize_image(image, options, self._background)
            return self._encode(image, options.quality)
        except (OSError, ValueError) as exc:
            raise ConversionError("JPEG encoding failed") from exc

    def _decode_error(self, message: str, report_unsupported: bool) -> ConversionError:
        if report_unsupported:
            return UnsupportedMediaTypeError(message)
        return ConversionError(message)

    def _check_pixels(self, width: int, height: int, report_unsupported: bool) -> None:
        if width * height > self._max_pixels:
            raise self._decode_error(
                f"image of {width}x{height} exceeds the {self._max_pixels} pixel limit", report_unsupported
            )

    def _decode(self, data: bytes, report_unsupported: bool) -> Image.Image:
        try:
            image = Image.open(io.BytesIO(data))
            self._check_pixels(image.width, image.height, report_unsupported)
            image.load()
        except Image.DecompressionBombError as exc:
            raise self._decode_error("image exceeds the pixel limit", report_unsupported) from exc
        except (UnidentifiedImageError, OSError, SyntaxError, ValueError) as exc:
            raise self._decode_error("input could not be decoded as an image", report_unsupported) from exc
        return image

    def _from_pixels(self, pixels: RawPixels) -> Image.Image:
        self._check_pixels(pixels.width, pixels.height, False)
        try:
            return Image.frombuffer(
                pixels.mode, (pixels.width, pixels.height), pixels.data, "raw", pixels.mode, pixels.stride, 1
            )
        except ValueError as exc:
            raise ConversionError("decoded pixel buffer is malformed") from exc

    @staticmethod
    def _orient(image: Image.Image) -> Image.Image:
        try:
            return ImageOps.exif_transpose(image)
        except (OSError, ValueError, SyntaxError):
            # Unreadable EXIF block; keep stored orientation.
            logger.debug("ignoring unreadable EXIF orientation")
            return image

    def _flatten(self, image: Image.Image) -> Image.Image:
        if image.mode in ("RGB", "L"):
            return image
        if image.mode in ("RGBA", "LA", "PA") or (image.mode == "P" and "transparency" in image.info):
            rgba = image.convert("RGBA")
            flat = Image.new("RGB", rgba.size, self._background)
            flat.paste(rgba, mask=rgba.getchannel("A"))
            return flat
        return image.convert("RGB")

    @staticmethod
    def _encode(image: Image.Image, quality: int) -> bytes:
        buffer = io.BytesIO()
        # The JPEG writer falls back to image.info for comment, exif and icc_profile.
        image.info = {}
        image.save(
            buffer,
            format="JPEG",
            quality=quality,
            subsampling=0,
            optimize=True,
            progressive=True,
        )
        return buffer.getvalue()


class PillowHeifDecoder(HeifDecoder):
    """Decode the first image of a HEIC/HEIF container with libheif."""

    def __init__(self, opener: Callable[..., Any] | None = None) -> None:
        self._open = opener or pillow_heif.open_heif

    async def decode(self, data: bytes) -> RawPixels:
        # Blocking libheif decode runs in a worker thread; one await resolves it.
        return await asyncio.to_thread(self._decode_first, data)

    def _decode_first(self, data: bytes) -> RawPixels:
        try:
            heif_file = self._open(io.BytesIO(data), convert_hdr_to_8bit=True)
            if len(heif_file) == 0:
                raise ConversionError("HEIF container holds no decodable images")
            item = heif_file[0]
            width, height = item.size
            return RawPixels(data=bytes(item.data), width=width, height=height, mode=item.mode, stride=item.stride)
        except (ValueError, RuntimeError, OSError, EOFError) as exc:
            raise ConversionError("HEIF decode failed") from exc


class PdftoppmRasterizer(PdfRasterizer):
    """Render PDF pages to JPEG files with poppler's pdftoppm."""

    def __init__(self, binary: str = "pdftoppm", *, intermediate_quality: int = 95) -> None:
        self.binary = binary
        self._quality = intermediate_quality

    def command(self, pdf_path: Path, output_prefix: Path, *, dpi: int, last_page: int, single_file: bool) -> list[str]:
        cmd = [
            self.binary,
            "-jpeg",
            "-jpegopt", f"quality={self._quality}",
            "-r", str(dpi),
            "-f", "1",
            "-l", str(last_page),
        ]
        if single_file:
            cmd.append("-singlefile")
        cmd += [str(pdf_path), str(output_prefix)]
        return cmd

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
        cmd = self.command(pdf_path, output_prefix, dpi=dpi, last_page=last_page, single_file=single_file)
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd, stdout=asyncio.subprocess.DEVNULL, stderr=asyncio.subprocess.PIPE
            )
        except (FileNotFoundError, PermissionError) as exc:
            raise MissingDependencyError.for_binary(self.binary) from exc

        try:
            _, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise ConversionTimeoutError.after(timeout) from exc
        finally:
            if proc.returncode is None:
                proc.kill()
                await proc.wait()

        if proc.returncode != 0:
            logger.warning(
                "%s exited with status %s: %s",
                self.binary,
                proc.returncode,
                stderr.decode("utf-8", errors="replace").strip()[:500],
            )
            raise PdfRenderFailedError("PDF could not be rendered")


class Argon2Security(SecurityGateway):
    """Compare a bearer token with the operator secret.

    The secret may be configured as an Argon2 PHC string ("$argon2id$...")
    or as the plain token, which is compared in constant time.
    """

    def __init__(self) -> None:
        self._hasher = PasswordHasher()

    def verify(self, secret: str, token: str) -> bool:
        if not secret or not token:
            return False
        if secret.startswith("$argon2"):
            try:
                return self._hasher.verify(secret, token)
            except (VerificationError, InvalidHashError):
                return False
        return hmac.compare_digest(secret.encode("utf-8"), token.encode("utf-8"))
