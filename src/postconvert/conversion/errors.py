"""Error taxonomy for the conversion pipeline.

Every failure the boundary can report is a ConversionError subclass carrying a
stable machine code, the HTTP status it maps to and a message that is safe to
show the caller. Diagnostic detail stays in the logs.
"""


class ConversionError(Exception):
    """Catch-all decode/encode/subprocess failure."""

    code: str = "conversion_failed"
    status_code: int = 500

    def __init__(self, message: str = "conversion failed") -> None:
        super().__init__(message)
        self.message = message


class UnauthorizedError(ConversionError):
    code = "unauthorized"
    status_code = 401

    def __init__(self, message: str = "missing or invalid bearer token") -> None:
        super().__init__(message)


class EmptyBodyError(ConversionError):
    code = "empty_body"
    status_code = 400

    def __init__(self, message: str = "request body is empty") -> None:
        super().__init__(message)


class PayloadTooLargeError(ConversionError):
    code = "payload_too_large"
    status_code = 413

    @staticmethod
    def for_limit(max_upload_mb: int) -> "PayloadTooLargeError":
        return PayloadTooLargeError(f"upload exceeds {max_upload_mb} MB")


class UnsupportedMediaTypeError(ConversionError):
    code = "unsupported_media_type"
    status_code = 415

    def __init__(self, message: str = "input is not a supported image or PDF") -> None:
        super().__init__(message)


class BusyError(ConversionError):
    """Admission controller is at capacity."""

    code = "busy"
    status_code = 429

    def __init__(self, retry_after: int, message: str = "converter is busy, retry shortly") -> None:
        super().__init__(message)
        self.retry_after = retry_after


class PdfTooManyPagesError(ConversionError):
    code = "pdf_too_many_pages"
    status_code = 413

    @staticmethod
    def for_limit(max_pages: int) -> "PdfTooManyPagesError":
        return PdfTooManyPagesError(f"PDF has more than {max_pages} pages")


class PdfRenderFailedError(ConversionError):
    code = "pdf_render_failed"
    status_code = 500

    def __init__(self, message: str = "PDF rendering produced no pages") -> None:
        super().__init__(message)


class MissingDependencyError(ConversionError):
    """A host binary the pipeline shells out to is not installed."""

    code = "missing_dependency"
    status_code = 500

    @staticmethod
    def for_binary(binary: str) -> "MissingDependencyError":
        return MissingDependencyError(f"missing dependency: {binary} is not installed on the server")


class ConversionTimeoutError(ConversionError):
    code = "conversion_timeout"
    status_code = 500

    @staticmethod
    def after(seconds: float) -> "ConversionTimeoutError":
        return ConversionTimeoutError(f"conversion timed out after {seconds:.0f}s")


class ConversionCancelled(ConversionError):
    """The client went away; raised at the next stage boundary."""

    code = "cancelled"
    status_code = 499

    def __init__(self, message: str = "request cancelled by client") -> None:
        super().__init__(message)
