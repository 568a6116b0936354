from collections.abc import AsyncGenerator, Generator
from unittest.mock import MagicMock

import pytest
from httpx import ASGITransport, AsyncClient

from docextract.core.config import get_settings
from docextract.main import app
from docextract.services.pipeline import ExtractionPipeline

TEST_GEMINI_KEY = "test-gemini-key"


@pytest.fixture
def mock_settings(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("GEMINI_API_KEY", TEST_GEMINI_KEY)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def pipeline() -> MagicMock:
    """Pipeline double whose extract_* coroutines are configured per test."""
    return MagicMock(spec=ExtractionPipeline)


@pytest.fixture
async def client(
    monkeypatch: pytest.MonkeyPatch, pipeline: MagicMock
) -> AsyncGenerator[AsyncClient, None]:
    monkeypatch.setenv("GEMINI_API_KEY", TEST_GEMINI_KEY)
    get_settings.cache_clear()
    app.state.pipeline = pipeline
    app.state.pipeline_ready = True
    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test"
    ) as ac:
        yield ac
    app.state.pipeline_ready = False
    get_settings.cache_clear()
