import io

import pdfplumber
from PIL import Image

from docextract.api.v1.schemas import FileMetadata

ALLOWED_MIME_TYPES = ("image/jpeg", "image/png", "image/webp", "application/pdf")

_PDF_MIME = "application/pdf"
_BYTES_PER_MB = 1024 * 1024

_ENCRYPTED_MESSAGE = (
    "The file is encrypted and cannot be processed. "
    "Please upload an unprotected version."
)
_STRUCTURE_MESSAGE = (
    "The PDF file is missing required structural data and cannot be processed."
)
_UNREADABLE_PDF_MESSAGE = (
    "The PDF file could not be read. "
    "Please make sure it's a valid, non-corrupted document."
)
_ENCRYPTION_MARKERS = ("encrypt", "password")
_STRUCTURE_MARKERS = ("trailer", "startxref", "xref")


class FileValidationError(Exception):
    def __init__(self, message: str, metadata: FileMetadata | None = None) -> None:
        super().__init__(message)
        self.metadata = metadata


class UnsupportedFormatError(FileValidationError):
    pass


class FileTooLargeError(FileValidationError):
    pass


class TooManyPagesError(FileValidationError):
    pass


class EncryptedPDFError(FileValidationError):
    pass


class CorruptPDFError(FileValidationError):
    pass


class LowResolutionError(FileValidationError):
    pass


class UnreadableImageError(FileValidationError):
    pass


def classify_pdf_error(exc: Exception) -> FileValidationError:
    """Map a decoder failure to the message shown to the uploader."""
    # pdfplumber wraps pdfminer errors, so the repr carries the inner one too.
    detail = f"{type(exc).__name__} {exc!r}".lower()
    if any(marker in detail for marker in _ENCRYPTION_MARKERS):
        return EncryptedPDFError(_ENCRYPTED_MESSAGE)
    if any(marker in detail for marker in _STRUCTURE_MARKERS):
        return CorruptPDFError(_STRUCTURE_MESSAGE)
    return CorruptPDFError(_UNREADABLE_PDF_MESSAGE)


class FileIntegrityValidator:
    def __init__(
        self,
        *,
        max_file_size_mb: int = 20,
        max_pdf_pages: int = 50,
        min_image_width: int = 800,
        min_image_height: int = 600,
        min_pdf_width: int = 500,
        min_pdf_height: int = 500,
    ) -> None:
        self._max_size_mb = max_file_size_mb
        self._max_pages = max_pdf_pages
        self._min_image = (min_image_width, min_image_height)
        self._min_pdf = (min_pdf_width, min_pdf_height)

    def validate(
        self, declared_mime: str, declared_size: int, file_bytes: bytes
    ) -> FileMetadata:
        self.validate_format(declared_mime)
        self.validate_size(declared_size)
        if declared_mime == _PDF_MIME:
            return self.validate_pdf(file_bytes, declared_size)
        return self.validate_image(file_bytes, declared_mime, declared_size)

    def validate_format(self, mime_type: str) -> None:
        if mime_type not in ALLOWED_MIME_TYPES:
            raise UnsupportedFormatError(
                f"Only {', '.join(ALLOWED_MIME_TYPES)} formats are accepted. "
                f"Got: {mime_type}"
            )

    def validate_size(self, size: int) -> None:
        if size > self._max_size_mb * _BYTES_PER_MB:
            raise FileTooLargeError(
                f"File size exceeds limit of {self._max_size_mb}MB. "
                f"File size: {size / _BYTES_PER_MB:.2f}MB"
            )

    def validate_pdf(self, file_bytes: bytes, size: int) -> FileMetadata:
        try:
            with pdfplumber.open(io.BytesIO(file_bytes)) as pdf:
                page_count = len(pdf.pages)
                encrypted = pdf.doc.encryption is not None
                first_page = pdf.pages[0] if page_count else None
                width = round(first_page.width) if first_page else 0
                height = round(first_page.height) if first_page else 0
        except Exception as exc:
            raise classify_pdf_error(exc) from exc

        if first_page is None:
            raise CorruptPDFError(_UNREADABLE_PDF_MESSAGE)
        metadata = FileMetadata(
            mimeType=_PDF_MIME,
            fileSize=size,
            width=width,
            height=height,
            pageCount=page_count,
            format="pdf",
        )
        if page_count > self._max_pages:
            raise TooManyPagesError(
                f"This document has {page_count} pages. "
                f"The maximum allowed is {self._max_pages}.",
                metadata,
            )
        if encrypted:
            raise EncryptedPDFError(_ENCRYPTED_MESSAGE, metadata)
        min_width, min_height = self._min_pdf
        if width < min_width or height < min_height:
            raise LowResolutionError(
                f"The PDF resolution is too low: {width}x{height}. "
                f"The minimum required is {min_width}x{min_height}.",
                metadata,
            )
        return metadata

    def validate_image(
        self, file_bytes: bytes, mime_type: str, size: int
    ) -> FileMetadata:
        try:
            with Image.open(io.BytesIO(file_bytes)) as image:
                width, height = image.size
                image_format = (image.format or "unknown").lower()
        except (OSError, ValueError, Image.DecompressionBombError) as exc:
            raise UnreadableImageError(
                "The image file couldn't be opened. "
                "Please check the format and try again."
            ) from exc

        if not width or not height:
            raise UnreadableImageError("Unable to read image dimensions.")
        metadata = FileMetadata(
            mimeType=mime_type,
            fileSize=size,
            width=width,
            height=height,
            format=image_format,
        )
        min_width, min_height = self._min_image
        if width < min_width or height < min_height:
            raise LowResolutionError(
                f"The image resolution is too low: {width}x{height}. "
                f"The minimum required is {min_width}x{min_height}.",
                metadata,
            )
        return metadata
