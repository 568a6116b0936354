import asyncio
import json
import logging
from collections.abc import Callable

import httpx
import pytest

from docextract.services.gemini import (
    GeminiProvider,
    build_prompt,
    extract_candidate_text,
)
from docextract.services.provider import ProviderError, RemoteHandle
from docextract.services.response_schemas import RESPONSE_SCHEMAS

BASE_URL = "https://gemini.test"
UPLOAD_SESSION = "https://gemini.test/upload/session/1"

Handler = Callable[[httpx.Request], httpx.Response]


def _provider(handler: Handler, poll_attempts: int = 3) -> GeminiProvider:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return GeminiProvider(
        "secret",
        base_url=BASE_URL,
        model="test-model",
        poll_attempts=poll_attempts,
        poll_interval_seconds=0,
        client=client,
    )


def _file(state: str = "ACTIVE") -> dict[str, str]:
    return {"name": "files/abc", "uri": f"{BASE_URL}/v1beta/files/abc", "state": state}


def _upload_handler(
    finalize_state: str = "ACTIVE", poll_states: list[str] | None = None
) -> tuple[Handler, list[httpx.Request]]:
    seen: list[httpx.Request] = []
    polls = list(poll_states or [])

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if request.url.path == "/upload/v1beta/files":
            return httpx.Response(200, headers={"x-goog-upload-url": UPLOAD_SESSION})
        if str(request.url) == UPLOAD_SESSION:
            return httpx.Response(200, json={"file": _file(finalize_state)})
        if request.method == "GET" and request.url.path == "/v1beta/files/abc":
            return httpx.Response(200, json=_file(polls.pop(0)))
        if request.method == "DELETE" and request.url.path == "/v1beta/files/abc":
            return httpx.Response(200)
        return httpx.Response(500)

    return handler, seen


def _answer(text: str, finish_reason: str = "STOP") -> dict[str, object]:
    return {
        "candidates": [
            {"content": {"parts": [{"text": text}]}, "finishReason": finish_reason}
        ]
    }


async def test_upload_runs_resumable_protocol() -> None:
    handler, seen = _upload_handler()
    provider = _provider(handler)

    handle = await provider.upload(b"%PDF-1.4", "application/pdf", "invoice.pdf")

    assert handle == RemoteHandle(
        name="files/abc",
        uri=f"{BASE_URL}/v1beta/files/abc",
        mime_type="application/pdf",
    )
    start, finalize = seen
    assert start.headers["X-Goog-Upload-Protocol"] == "resumable"
    assert start.headers["X-Goog-Upload-Header-Content-Length"] == "8"
    assert start.headers["X-goog-api-key"] == "secret"
    assert json.loads(start.content) == {"file": {"display_name": "invoice.pdf"}}
    assert finalize.headers["X-Goog-Upload-Command"] == "upload, finalize"
    assert finalize.content == b"%PDF-1.4"


async def test_upload_polls_until_file_is_active() -> None:
    handler, seen = _upload_handler("PROCESSING", ["PROCESSING", "ACTIVE"])

    handle = await _provider(handler).upload(b"img", "image/png", "scan.png")

    assert handle.name == "files/abc"
    assert [r.method for r in seen] == ["POST", "POST", "GET", "GET"]


async def test_failed_processing_is_terminal() -> None:
    handler, _ = _upload_handler("PROCESSING", ["FAILED"])

    with pytest.raises(ProviderError, match="File processing failed") as exc_info:
        await _provider(handler).upload(b"img", "image/png", "scan.png")
    assert exc_info.value.retryable is False


async def test_processing_that_never_finishes_times_out_as_retryable() -> None:
    handler, _ = _upload_handler("PROCESSING", ["PROCESSING"] * 2)

    with pytest.raises(ProviderError, match="timeout") as exc_info:
        await _provider(handler, poll_attempts=2).upload(b"x", "image/png", "a.png")
    assert exc_info.value.status_code == 504
    assert exc_info.value.retryable is True


@pytest.mark.parametrize(
    "poll_states", [["FAILED"], ["PROCESSING", "PROCESSING"]], ids=["failed", "timeout"]
)
async def test_unusable_upload_deletes_the_created_file(poll_states: list[str]) -> None:
    handler, seen = _upload_handler("PROCESSING", poll_states)

    with pytest.raises(ProviderError):
        await _provider(handler, poll_attempts=2).upload(b"x", "image/png", "a.png")

    assert (seen[-1].method, seen[-1].url.path) == ("DELETE", "/v1beta/files/abc")


async def test_failed_discard_is_logged_with_file_name(
    caplog: pytest.LogCaptureFixture,
) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/upload/v1beta/files":
            return httpx.Response(200, headers={"x-goog-upload-url": UPLOAD_SESSION})
        if str(request.url) == UPLOAD_SESSION:
            return httpx.Response(200, json={"file": _file("PROCESSING")})
        if request.method == "GET":
            return httpx.Response(200, json=_file("FAILED"))
        return httpx.Response(503)

    with caplog.at_level(logging.WARNING, logger="docextract.services.gemini"):
        with pytest.raises(ProviderError, match="File processing failed"):
            await _provider(handler).upload(b"x", "image/png", "a.png")

    assert any(
        "files/abc" in r.getMessage() and "orphaned" in r.getMessage()
        for r in caplog.records
        if r.name == "docextract.services.gemini"
    )


async def test_cancelled_polling_logs_possible_orphan(
    caplog: pytest.LogCaptureFixture,
) -> None:
    polling = asyncio.Event()
    seen: list[httpx.Request] = []

    async def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if request.url.path == "/upload/v1beta/files":
            return httpx.Response(200, headers={"x-goog-upload-url": UPLOAD_SESSION})
        if str(request.url) == UPLOAD_SESSION:
            return httpx.Response(200, json={"file": _file("PROCESSING")})
        polling.set()
        await asyncio.Event().wait()
        return httpx.Response(500)

    provider = _provider(handler)  # type: ignore[arg-type]
    with caplog.at_level(logging.WARNING, logger="docextract.services.gemini"):
        task = asyncio.create_task(provider.upload(b"x", "image/png", "a.png"))
        await polling.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    assert [r.method for r in seen] == ["POST", "POST", "GET"]
    assert any(
        "files/abc" in r.getMessage() and "orphaned" in r.getMessage()
        for r in caplog.records
        if r.name == "docextract.services.gemini"
    )


async def test_upload_answer_without_uri_is_malformed_and_discarded() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if request.url.path == "/upload/v1beta/files":
            return httpx.Response(200, headers={"x-goog-upload-url": UPLOAD_SESSION})
        if str(request.url) == UPLOAD_SESSION:
            return httpx.Response(
                200, json={"file": {"name": "files/abc", "state": "ACTIVE"}}
            )
        return httpx.Response(200)

    with pytest.raises(ProviderError, match="malformed") as exc_info:
        await _provider(handler).upload(b"x", "image/png", "a.png")

    assert exc_info.value.status_code == 502
    assert exc_info.value.retryable is True
    assert seen[-1].method == "DELETE"


@pytest.mark.parametrize(
    "finalize",
    [
        httpx.Response(200, text="<html>gateway hiccup</html>"),
        httpx.Response(200, json=[{"file": _file()}]),
        httpx.Response(200, json={"file": "files/abc"}),
        httpx.Response(200, json={"file": {"state": "ACTIVE"}}),
    ],
    ids=["html", "list", "file-not-object", "no-name"],
)
async def test_malformed_upload_answer_becomes_provider_error(
    finalize: httpx.Response,
) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/upload/v1beta/files":
            return httpx.Response(200, headers={"x-goog-upload-url": UPLOAD_SESSION})
        return finalize

    with pytest.raises(ProviderError, match="malformed") as exc_info:
        await _provider(handler).upload(b"x", "image/png", "a.png")
    assert exc_info.value.status_code == 502


async def test_malformed_status_poll_becomes_provider_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/upload/v1beta/files":
            return httpx.Response(200, headers={"x-goog-upload-url": UPLOAD_SESSION})
        if str(request.url) == UPLOAD_SESSION:
            return httpx.Response(200, json={"file": _file("PROCESSING")})
        if request.method == "GET":
            return httpx.Response(200, text="not json")
        return httpx.Response(200)

    with pytest.raises(ProviderError, match="Failed to check file status: malformed"):
        await _provider(handler).upload(b"x", "image/png", "a.png")


@pytest.mark.parametrize(
    "answer",
    [
        httpx.Response(200, text="<html>gateway hiccup</html>"),
        httpx.Response(200, json=[_answer('{"amount": 1}')]),
        httpx.Response(200, json={"candidates": ["oops"]}),
        httpx.Response(200, json={"candidates": {"text": "{}"}}),
    ],
    ids=["html", "list", "candidate-not-object", "candidates-not-list"],
)
async def test_malformed_extract_answer_is_retryable_provider_error(
    answer: httpx.Response,
) -> None:
    handle = RemoteHandle(name="files/abc", uri="gs://abc", mime_type="image/png")

    with pytest.raises(ProviderError, match="Gemini API error: malformed") as exc_info:
        await _provider(lambda request: answer).extract(
            handle, "receipt", RESPONSE_SCHEMAS["receipt"]
        )
    assert exc_info.value.status_code == 502
    assert exc_info.value.retryable is True


@pytest.mark.parametrize(
    ("status", "retryable"),
    [(400, False), (403, False), (408, True), (429, True), (500, True), (503, True)],
)
async def test_http_status_decides_retryability(status: int, retryable: bool) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status, json={"error": {"message": "upstream said no"}})

    with pytest.raises(ProviderError) as exc_info:
        await _provider(handler).upload(b"x", "image/png", "a.png")

    assert exc_info.value.status_code == status
    assert exc_info.value.retryable is retryable
    assert exc_info.value.message == "Upload initiation failed: upstream said no"


async def test_missing_upload_url_is_retryable() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200)

    with pytest.raises(ProviderError, match="No upload URL") as exc_info:
        await _provider(handler).upload(b"x", "image/png", "a.png")
    assert exc_info.value.retryable is True


async def test_transport_errors_are_retryable() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(ProviderError, match="ConnectError") as exc_info:
        await _provider(handler).upload(b"x", "image/png", "a.png")
    assert exc_info.value.retryable is True
    assert exc_info.value.status_code is None


async def test_extract_sends_prompt_file_and_schema() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=_answer('{"amount": 4.2}'))

    handle = RemoteHandle(name="files/abc", uri="gs://abc", mime_type="image/png")
    text = await _provider(handler).extract(
        handle, "receipt", RESPONSE_SCHEMAS["receipt"]
    )

    assert text == '{"amount": 4.2}'
    (request,) = seen
    assert request.url.path == "/v1beta/models/test-model:generateContent"
    body = json.loads(request.content)
    prompt, file_part = body["contents"][0]["parts"]
    assert prompt == {"text": build_prompt("receipt")}
    assert file_part == {
        "file_data": {"mime_type": "image/png", "file_uri": "gs://abc"}
    }
    config = body["generationConfig"]
    assert config["response_mime_type"] == "application/json"
    assert config["response_schema"] == RESPONSE_SCHEMAS["receipt"]


async def test_delete_tolerates_missing_file() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.method == "DELETE"
        assert request.url.path == "/v1beta/files/abc"
        return httpx.Response(404)

    handle = RemoteHandle(name="files/abc", uri="gs://abc", mime_type="image/png")
    await _provider(handler).delete(handle)


async def test_delete_failure_raises() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500)

    handle = RemoteHandle(name="files/abc", uri="gs://abc", mime_type="image/png")
    with pytest.raises(ProviderError, match="File deletion failed"):
        await _provider(handler).delete(handle)


async def test_injected_client_is_not_closed() -> None:
    transport = httpx.MockTransport(lambda request: httpx.Response(200))
    client = httpx.AsyncClient(transport=transport)
    provider = GeminiProvider("secret", client=client)

    await provider.aclose()

    assert not client.is_closed
    await client.aclose()


@pytest.mark.parametrize(
    ("body", "message", "retryable"),
    [
        ({"candidates": []}, "No response from model", False),
        (_answer("{}", "SAFETY"), "Content filtered for safety reasons", False),
        (_answer("{}", "RECITATION"), "Content filtered due to recitation", False),
        (_answer("{}", "MAX_TOKENS"), "Response truncated", True),
        (_answer(""), "No content in response", False),
    ],
)
def test_unusable_candidates_raise(
    body: dict[str, object], message: str, retryable: bool
) -> None:
    with pytest.raises(ProviderError, match=message) as exc_info:
        extract_candidate_text(body)
    assert exc_info.value.retryable is retryable


def test_each_kind_has_its_own_prompt() -> None:
    prompts = {build_prompt(kind) for kind in ("invoice", "receipt", "document")}
    assert len(prompts) == 3
    assert "minor units" in build_prompt("invoice")
