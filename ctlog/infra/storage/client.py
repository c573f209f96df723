"""Storage backend protocol, upload options and error types.

The CT log core only talks to object storage through ``Backend``; keys are
logical keys, the backend decides how they map onto the store.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol, Sequence

if TYPE_CHECKING:
    from prometheus_client.registry import Collector

    from ctlog.infra.storage.hedge import CancelScope

DEFAULT_CONTENT_TYPE = "application/octet-stream"
IMMUTABLE_CACHE_CONTROL = "public, max-age=604800, immutable"


class StorageError(RuntimeError):
    """Raised when object storage operations fail."""

    def __init__(self, message: str, *, op: str | None = None, key: str | None = None) -> None:
        super().__init__(message)
        self.op = op
        self.key = key


class ConfigError(StorageError):
    """The backend could not be configured (credentials, region, endpoint)."""


class CompressError(StorageError):
    """The upload body could not be gzip-compressed."""


class NetworkError(StorageError):
    """The request failed after the retryer gave up."""


class DecodeError(StorageError):
    """A gzip-encoded response body did not decode."""


class ReadError(StorageError):
    """A response body read failed or was truncated."""


class ProtocolError(StorageError):
    """The store returned a response the backend refuses to trust."""


@dataclass(frozen=True, slots=True)
class UploadOptions:
    """Per-call upload options."""

    content_type: str = ""
    compress: bool = False
    immutable: bool = False

    @property
    def resolved_content_type(self) -> str:
        return self.content_type or DEFAULT_CONTENT_TYPE


class Backend(Protocol):
    """Protocol implemented by object storage backends.

    Implementations must be safe for concurrent use and keep no per-request
    state between calls.
    """

    def upload(
        self,
        key: str,
        data: bytes,
        options: UploadOptions | None = None,
        *,
        scope: "CancelScope | None" = None,
    ) -> None:
        """Store ``data`` under ``key``.

        Raises:
            CompressError: If ``options.compress`` is set and compression fails.
            NetworkError: If no attempt wrote the object.
        """
        ...

    def fetch(self, key: str, *, scope: "CancelScope | None" = None) -> bytes:
        """Return the content stored under ``key``, decompressed if needed.

        Raises:
            NetworkError: If the request fails.
            DecodeError: If a gzip-encoded body does not decode.
            ReadError: If reading the body fails.
        """
        ...

    def list(self, prefix: str, *, scope: "CancelScope | None" = None) -> Sequence[str]:
        """Return all keys starting with ``prefix``.

        Raises:
            NetworkError: If the request fails.
            ProtocolError: If the listing is truncated or contains foreign keys.
        """
        ...

    def copy(self, src: str, dst: str, *, scope: "CancelScope | None" = None) -> None:
        """Copy ``src`` to ``dst`` on the server side."""
        ...

    def delete(self, key: str, *, scope: "CancelScope | None" = None) -> None:
        """Delete ``key`` unconditionally."""
        ...

    def metrics(self) -> tuple[Collector, ...]:
        """Return the backend's metric collectors for registration."""
        ...
