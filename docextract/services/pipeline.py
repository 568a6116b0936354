import asyncio
import logging
import time
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from docextract.api.v1.schemas import (
    DocumentKind,
    ExtractionResult,
    FileMetadata,
    Invoice,
    Receipt,
    UnifiedDocument,
)
from docextract.core.logging import ContextLoggerAdapter, LoggerLike, bind_logger
from docextract.services.file_validator import (
    FileIntegrityValidator,
    FileValidationError,
)
from docextract.services.parser import ParseError, parse_document
from docextract.services.provider import ExtractionProvider, ProviderError, RemoteHandle
from docextract.services.response_schemas import RESPONSE_SCHEMAS
from docextract.services.retry import RetryingExtractor
from docextract.services.validator import ExtractionValidator

logger = logging.getLogger(__name__)


class Stage(StrEnum):
    VALIDATING = "validating"
    UPLOADING = "uploading"
    EXTRACTING = "extracting"
    PARSING = "parsing"
    VALIDATING_RESULT = "validating_result"
    CLEANUP = "cleanup"
    DONE = "done"


@dataclass(frozen=True)
class UploadedFile:
    mime_type: str
    size: int
    filename: str | None = None


class _Run:
    """Mutable progress of one invocation; never shared between calls."""

    def __init__(self, log: ContextLoggerAdapter) -> None:
        self.log = log
        self.history = [Stage.VALIDATING]

    @property
    def active_stage(self) -> Stage:
        """Last working stage; cleanup runs on the way out of any of them."""
        return next(s for s in reversed(self.history) if s is not Stage.CLEANUP)

    def enter(self, stage: Stage) -> None:
        self.history.append(stage)
        self.log.debug("Entering %s", stage, extra={"stage": str(stage)})


class ExtractionPipeline:
    """Validate, upload, extract, parse and check one business document.

    Every call is independent: the remote file created for a call is deleted
    before that call returns, whatever the outcome.
    """

    def __init__(
        self,
        provider: ExtractionProvider,
        file_validator: FileIntegrityValidator,
        retrying: RetryingExtractor,
        validator: ExtractionValidator | None = None,
        *,
        log: LoggerLike | None = None,
        clock: Callable[[], float] = time.monotonic,
        default_timeout: float | None = None,
    ) -> None:
        self._provider = provider
        self._file_validator = file_validator
        self._retrying = retrying
        self._validator = validator or ExtractionValidator()
        self._log = log or logger
        self._clock = clock
        self._default_timeout = default_timeout

    async def extract_invoice(
        self, file: UploadedFile, file_bytes: bytes, *, timeout: float | None = None
    ) -> ExtractionResult[Invoice]:
        return await self._extract(file, file_bytes, "invoice", timeout)

    async def extract_receipt(
        self, file: UploadedFile, file_bytes: bytes, *, timeout: float | None = None
    ) -> ExtractionResult[Receipt]:
        return await self._extract(file, file_bytes, "receipt", timeout)

    async def extract_document(
        self, file: UploadedFile, file_bytes: bytes, *, timeout: float | None = None
    ) -> ExtractionResult[UnifiedDocument]:
        return await self._extract(file, file_bytes, "document", timeout)

    async def _extract(
        self,
        file: UploadedFile,
        file_bytes: bytes,
        kind: DocumentKind,
        timeout: float | None,
    ) -> ExtractionResult[Any]:
        start = self._clock()
        run = _Run(
            bind_logger(
                self._log,
                {"document_kind": kind, "file_name": file.filename or "unknown"},
            )
        )
        run.log.info(
            "Processing %s",
            kind,
            extra={"file_size": file.size, "mime_type": file.mime_type},
        )
        metadata = FileMetadata(mimeType=file.mime_type, fileSize=file.size)

        try:
            async with asyncio.timeout(
                timeout if timeout is not None else self._default_timeout
            ):
                metadata = await asyncio.to_thread(
                    self._file_validator.validate, file.mime_type, file.size, file_bytes
                )
                display_name = file.filename or f"{kind}-{int(time.time() * 1000)}"
                async with self._remote_file(
                    run, file_bytes, metadata.mimeType, display_name
                ) as handle:
                    run.enter(Stage.EXTRACTING)
                    raw = await self._retrying.run(
                        lambda: self._provider.extract(
                            handle, kind, RESPONSE_SCHEMAS[kind]
                        ),
                        log=run.log,
                    )
                    run.enter(Stage.PARSING)
                    document = parse_document(raw, kind)
                    run.enter(Stage.VALIDATING_RESULT)
                    report = self._validator.validate(document, kind)
        except FileValidationError as exc:
            run.log.info("File rejected: %s", exc)
            return self._failure(run, start, str(exc), exc.metadata or metadata)
        except ProviderError as exc:
            run.log.error(
                "Provider failed during %s",
                run.active_stage,
                exc_info=True,
                extra={"status_code": exc.status_code, "retryable": exc.retryable},
            )
            return self._failure(run, start, exc.message, metadata)
        except ParseError as exc:
            run.log.error("Unparseable provider response", exc_info=True)
            return self._failure(run, start, str(exc), metadata)

        if report.warnings:
            run.log.warning("Validation warnings: %s", report.warnings)
        run.enter(Stage.DONE)
        duration_ms = self._elapsed_ms(start)
        run.log.info("Extraction completed in %dms", duration_ms)
        return ExtractionResult(
            success=True,
            data=document,
            errors=report.errors,
            warnings=report.warnings,
            durationMs=duration_ms,
            metadata=metadata,
        )

    @asynccontextmanager
    async def _remote_file(
        self, run: _Run, file_bytes: bytes, mime_type: str, display_name: str
    ) -> AsyncIterator[RemoteHandle]:
        run.enter(Stage.UPLOADING)
        try:
            handle = await self._provider.upload(file_bytes, mime_type, display_name)
        except asyncio.CancelledError:
            run.log.warning("Upload interrupted; the remote file may be orphaned")
            raise
        run.log.info("File uploaded", extra={"remote_file": handle.name})
        try:
            yield handle
        finally:
            run.enter(Stage.CLEANUP)
            await self._release(run, handle)

    async def _release(self, run: _Run, handle: RemoteHandle) -> None:
        try:
            await self._provider.delete(handle)
        except Exception:
            run.log.error(
                "Failed to clean up remote file",
                exc_info=True,
                extra={"remote_file": handle.name},
            )
        else:
            run.log.debug("Remote file deleted", extra={"remote_file": handle.name})

    def _failure(
        self, run: _Run, start: float, message: str, metadata: FileMetadata
    ) -> ExtractionResult[Any]:
        run.enter(Stage.DONE)
        return ExtractionResult(
            success=False,
            error=message,
            durationMs=self._elapsed_ms(start),
            metadata=metadata,
        )

    def _elapsed_ms(self, start: float) -> int:
        return int((self._clock() - start) * 1000)
