import logging
from collections.abc import AsyncGenerator, Awaitable, Callable
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.responses import Response

from docextract.api.v1.router import router
from docextract.core.config import Settings, get_settings
from docextract.core.logging import configure_logging
from docextract.services.file_validator import FileIntegrityValidator
from docextract.services.gemini import GeminiProvider
from docextract.services.pipeline import ExtractionPipeline
from docextract.services.provider import ExtractionProvider
from docextract.services.retry import RetryingExtractor, RetryPolicy

logger = logging.getLogger(__name__)


def build_pipeline(
    settings: Settings, provider: ExtractionProvider
) -> ExtractionPipeline:
    return ExtractionPipeline(
        provider=provider,
        file_validator=FileIntegrityValidator(
            max_file_size_mb=settings.max_file_size_mb,
            max_pdf_pages=settings.max_pdf_pages,
            min_image_width=settings.min_image_width,
            min_image_height=settings.min_image_height,
            min_pdf_width=settings.min_pdf_width,
            min_pdf_height=settings.min_pdf_height,
        ),
        retrying=RetryingExtractor(
            RetryPolicy(
                max_retries=settings.max_retries,
                base_delay_ms=settings.retry_base_delay_ms,
                max_jitter_ms=settings.retry_max_jitter_ms,
            )
        ),
        default_timeout=settings.extraction_timeout_seconds,
    )


@asynccontextmanager
async def lifespan(application: FastAPI) -> AsyncGenerator[None, None]:
    application.state.pipeline_ready = False
    settings = get_settings()
    configure_logging(settings.log_level)
    provider = GeminiProvider(
        settings.gemini_api_key,
        base_url=settings.gemini_api_url,
        model=settings.gemini_model,
        timeout_seconds=settings.provider_timeout_seconds,
        poll_attempts=settings.file_poll_attempts,
        poll_interval_seconds=settings.file_poll_interval_ms / 1000,
    )
    try:
        application.state.pipeline = build_pipeline(settings, provider)
        application.state.pipeline_ready = True
        yield
    finally:
        application.state.pipeline_ready = False
        await provider.aclose()


app = FastAPI(title="Document Extraction", lifespan=lifespan)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(
    request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    return JSONResponse({"error": exc.detail}, status_code=exc.status_code)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    return JSONResponse({"error": str(exc)}, status_code=422)


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse({"error": "Internal processing failure"}, status_code=500)


@app.middleware("http")
async def require_pipeline_ready(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    if request.url.path.startswith("/api/") and not getattr(
        app.state, "pipeline_ready", False
    ):
        return JSONResponse(
            {"error": "Service unavailable: extraction pipeline is not ready"},
            status_code=503,
        )
    return await call_next(request)


app.include_router(router, prefix="/api/v1")


@app.get("/health")
async def health() -> JSONResponse:
    return JSONResponse(
        {"status": "ok", "pipeline_ready": getattr(app.state, "pipeline_ready", False)}
    )
