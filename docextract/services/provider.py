"""Contract between the pipeline and a remote extraction provider."""

import abc
from dataclasses import dataclass
from typing import Any

from docextract.api.v1.schemas import DocumentKind

_RETRYABLE_STATUS = frozenset({408, 429})


class ProviderError(Exception):
    """A provider call failed.

    ``retryable`` is decided by the adapter from the provider's answer; the
    retry loop never looks at anything else.
    """

    def __init__(
        self, message: str, status_code: int | None = None, retryable: bool = False
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.retryable = retryable


def is_retryable_status(status_code: int) -> bool:
    return status_code in _RETRYABLE_STATUS or status_code >= 500


@dataclass(frozen=True)
class RemoteHandle:
    """Reference to a file held by the provider; must be deleted after use."""

    name: str
    uri: str
    mime_type: str


class ExtractionProvider(abc.ABC):
    @abc.abstractmethod
    async def upload(
        self, file_bytes: bytes, mime_type: str, display_name: str
    ) -> RemoteHandle:
        """Store *file_bytes* remotely and return a handle to it."""

    @abc.abstractmethod
    async def extract(
        self,
        handle: RemoteHandle,
        document_kind: DocumentKind,
        target_schema: dict[str, Any],
    ) -> str:
        """Run extraction on *handle* and return the provider's raw JSON text."""

    @abc.abstractmethod
    async def delete(self, handle: RemoteHandle) -> None:
        """Remove the remote file behind *handle*."""
