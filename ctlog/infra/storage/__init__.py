"""Object storage backends for the CT log.

This module provides a protocol-based abstraction over object storage, with
an S3-compatible implementation that hedges slow uploads.
"""

from .client import (
    Backend,
    CompressError,
    ConfigError,
    DecodeError,
    NetworkError,
    ProtocolError,
    ReadError,
    StorageError,
    UploadOptions,
)
from .hedge import CancelScope, Cancelled
from .s3_client import S3Backend

__all__ = [
    "Backend",
    "CancelScope",
    "Cancelled",
    "CompressError",
    "ConfigError",
    "DecodeError",
    "NetworkError",
    "ProtocolError",
    "ReadError",
    "S3Backend",
    "StorageError",
    "UploadOptions",
]
