import asyncio
import logging
from typing import Any

import httpx

from docextract.api.v1.schemas import DocumentKind
from docextract.services.provider import (
    ExtractionProvider,
    ProviderError,
    RemoteHandle,
    is_retryable_status,
)

logger = logging.getLogger(__name__)

_BASE_PROMPT = (
    "Extract information from this document. The document is financial, so "
    "every value must be extracted with maximum accuracy and all extracted "
    "figures must be consistent with each other."
)

_KIND_PROMPTS: dict[DocumentKind, str] = {
    "invoice": (
        "\nProvide all monetary values in minor units (cents) and percentages "
        "as numbers (20% = 20). Extract every line item, including those on "
        "later pages. If a field cannot be recognised, return null instead of "
        "an empty string."
    ),
    "receipt": (
        "\nOnly extract purchased items with prices as line items. Amounts "
        "stay in the original currency with a period as decimal separator; "
        "quantity defaults to 1. Fill 'description' with a short summary of "
        "the purchase."
    ),
    "document": (
        "\nClassify the document as invoice or receipt. Provide all amounts in "
        "minor units (cents). Read the VAT table row by row and keep the rate, "
        "base and amount of each row together in one tax_breakdown entry; "
        "include 0% rows and skip the totals row."
    ),
}

_TERMINAL_FINISH_REASONS = {
    "SAFETY": "Content filtered for safety reasons",
    "RECITATION": "Content filtered due to recitation",
}


def build_prompt(document_kind: DocumentKind) -> str:
    return _BASE_PROMPT + _KIND_PROMPTS[document_kind]


def _error_message(response: httpx.Response) -> str:
    try:
        body: Any = response.json()
    except ValueError:
        return response.reason_phrase
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
    return response.reason_phrase


def _raise_for_status(response: httpx.Response, action: str) -> None:
    if response.is_success:
        return
    raise ProviderError(
        f"{action}: {_error_message(response)}",
        status_code=response.status_code,
        retryable=is_retryable_status(response.status_code),
    )


def _malformed(action: str) -> ProviderError:
    return ProviderError(
        f"{action}: malformed response from provider",
        status_code=502,
        retryable=is_retryable_status(502),
    )


def _json_body(response: httpx.Response, action: str) -> dict[str, Any]:
    """Decode a successful answer, which must be a JSON object."""
    try:
        body: Any = response.json()
    except ValueError:
        raise _malformed(action) from None
    if not isinstance(body, dict):
        raise _malformed(action)
    return body


def extract_candidate_text(body: dict[str, Any]) -> str:
    """Return the JSON text of the first candidate of a generateContent answer."""
    candidates = body.get("candidates") or []
    if not isinstance(candidates, list):
        raise _malformed("Gemini API error")
    if not candidates:
        raise ProviderError("No response from model", status_code=500)
    candidate = candidates[0]
    if not isinstance(candidate, dict):
        raise _malformed("Gemini API error")
    finish_reason = candidate.get("finishReason")
    if finish_reason in _TERMINAL_FINISH_REASONS:
        raise ProviderError(_TERMINAL_FINISH_REASONS[finish_reason], status_code=400)
    if finish_reason == "MAX_TOKENS":
        raise ProviderError(
            "Response truncated - try with smaller document",
            status_code=400,
            retryable=True,
        )
    content = candidate.get("content")
    parts = content.get("parts") if isinstance(content, dict) else None
    part = parts[0] if isinstance(parts, list) and parts else None
    text = part.get("text") if isinstance(part, dict) else None
    if not text:
        raise ProviderError("No content in response", status_code=500)
    if not isinstance(text, str):
        raise _malformed("Gemini API error")
    return text


class GeminiProvider(ExtractionProvider):
    """Extraction provider backed by the Gemini Files and generateContent APIs."""

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str = "https://generativelanguage.googleapis.com",
        model: str = "gemini-2.5-flash-lite",
        timeout_seconds: float = 60.0,
        poll_attempts: int = 10,
        poll_interval_seconds: float = 2.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._model = model
        self._poll_attempts = poll_attempts
        self._poll_interval = poll_interval_seconds
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        headers = {"X-goog-api-key": self._api_key, **kwargs.pop("headers", {})}
        try:
            return await self._client.request(method, url, headers=headers, **kwargs)
        except httpx.TransportError as exc:
            raise ProviderError(
                f"Provider unreachable: {exc.__class__.__name__}", retryable=True
            ) from exc

    async def upload(
        self, file_bytes: bytes, mime_type: str, display_name: str
    ) -> RemoteHandle:
        start = await self._send(
            "POST",
            f"{self._base_url}/upload/v1beta/files",
            headers={
                "X-Goog-Upload-Protocol": "resumable",
                "X-Goog-Upload-Command": "start",
                "X-Goog-Upload-Header-Content-Length": str(len(file_bytes)),
                "X-Goog-Upload-Header-Content-Type": mime_type,
            },
            json={"file": {"display_name": display_name}},
        )
        _raise_for_status(start, "Upload initiation failed")
        upload_url = start.headers.get("x-goog-upload-url")
        if not upload_url:
            raise ProviderError(
                "No upload URL received", status_code=500, retryable=True
            )

        finished = await self._send(
            "POST",
            upload_url,
            headers={
                "X-Goog-Upload-Offset": "0",
                "X-Goog-Upload-Command": "upload, finalize",
            },
            content=file_bytes,
        )
        _raise_for_status(finished, "File upload failed")
        file_info = _json_body(finished, "File upload failed").get("file")
        name = file_info.get("name") if isinstance(file_info, dict) else None
        if not isinstance(name, str) or not name:
            raise _malformed("File upload failed")
        logger.info("Uploaded %s to provider", name)

        # The file exists remotely from here on but the caller has no handle yet.
        try:
            if file_info.get("state") != "ACTIVE":
                file_info = await self._wait_until_active(name)
            uri = file_info.get("uri")
            if not isinstance(uri, str) or not uri:
                raise _malformed("File upload failed")
        except asyncio.CancelledError:
            logger.warning("Upload of %s interrupted; it may be orphaned", name)
            raise
        except Exception:
            await self._discard(RemoteHandle(name=name, uri="", mime_type=mime_type))
            raise
        return RemoteHandle(name=name, uri=uri, mime_type=mime_type)

    async def _discard(self, handle: RemoteHandle) -> None:
        try:
            await self.delete(handle)
        except ProviderError:
            logger.warning(
                "Failed to discard %s; the remote file may be orphaned",
                handle.name,
                exc_info=True,
            )
        else:
            logger.info("Discarded unusable remote file %s", handle.name)

    async def _wait_until_active(self, name: str) -> dict[str, Any]:
        for _ in range(self._poll_attempts):
            response = await self._send("GET", f"{self._base_url}/v1beta/{name}")
            _raise_for_status(response, "Failed to check file status")
            file_info = _json_body(response, "Failed to check file status")
            state = file_info.get("state")
            if state == "ACTIVE":
                return file_info
            if state == "FAILED":
                raise ProviderError("File processing failed", status_code=500)
            await asyncio.sleep(self._poll_interval)
        raise ProviderError("File processing timeout", status_code=504, retryable=True)

    async def extract(
        self,
        handle: RemoteHandle,
        document_kind: DocumentKind,
        target_schema: dict[str, Any],
    ) -> str:
        body = {
            "contents": [
                {
                    "parts": [
                        {"text": build_prompt(document_kind)},
                        {
                            "file_data": {
                                "mime_type": handle.mime_type,
                                "file_uri": handle.uri,
                            }
                        },
                    ]
                }
            ],
            "generationConfig": {
                "response_mime_type": "application/json",
                "response_schema": target_schema,
                "temperature": 0.2,
                "maxOutputTokens": 4096,
            },
        }
        response = await self._send(
            "POST",
            f"{self._base_url}/v1beta/models/{self._model}:generateContent",
            json=body,
        )
        _raise_for_status(response, "Gemini API error")
        return extract_candidate_text(_json_body(response, "Gemini API error"))

    async def delete(self, handle: RemoteHandle) -> None:
        response = await self._send("DELETE", f"{self._base_url}/v1beta/{handle.name}")
        if response.status_code == 404:
            logger.info("Remote file %s was already gone", handle.name)
            return
        _raise_for_status(response, "File deletion failed")
