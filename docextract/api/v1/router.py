import logging
import time
import uuid
from typing import Any

from fastapi import APIRouter, Request, UploadFile
from fastapi.responses import JSONResponse

from docextract.api.v1.schemas import DocumentKind, ExtractionResult
from docextract.services.pipeline import ExtractionPipeline, UploadedFile

logger = logging.getLogger(__name__)

router = APIRouter()


async def _run(
    kind: DocumentKind, file: UploadFile, request: Request
) -> JSONResponse:
    request_id = str(uuid.uuid4())
    start = time.monotonic()
    status_code = 500
    file_size_bytes: int | None = None
    outcome: str | None = None
    result: ExtractionResult[Any] | None = None

    try:
        file_bytes = await file.read()
        file_size_bytes = file.size if file.size is not None else len(file_bytes)
        uploaded = UploadedFile(
            mime_type=file.content_type or "application/octet-stream",
            size=file_size_bytes,
            filename=file.filename,
        )
        pipeline: ExtractionPipeline = request.app.state.pipeline
        if kind == "invoice":
            result = await pipeline.extract_invoice(uploaded, file_bytes)
        elif kind == "receipt":
            result = await pipeline.extract_receipt(uploaded, file_bytes)
        else:
            result = await pipeline.extract_document(uploaded, file_bytes)

        status_code = 200 if result.success else 422
        outcome = "success" if result.success else "failed"
        return JSONResponse(
            result.model_dump(mode="json"),
            status_code=status_code,
            headers={"X-Request-Id": request_id},
        )
    finally:
        duration_ms = int((time.monotonic() - start) * 1000)
        logger.info(
            "extract complete",
            extra={
                "request_id": request_id,
                "method": request.method,
                "path": str(request.url.path),
                "status_code": status_code,
                "document_kind": kind,
                "file_size_bytes": file_size_bytes,
                "outcome": outcome,
                "error_count": len(result.errors) if result else 0,
                "warning_count": len(result.warnings) if result else 0,
                "duration_ms": duration_ms,
            },
        )


@router.post("/extract")
async def extract_document(file: UploadFile, request: Request) -> JSONResponse:
    return await _run("document", file, request)


@router.post("/extract/invoice")
async def extract_invoice(file: UploadFile, request: Request) -> JSONResponse:
    return await _run("invoice", file, request)


@router.post("/extract/receipt")
async def extract_receipt(file: UploadFile, request: Request) -> JSONResponse:
    return await _run("receipt", file, request)
