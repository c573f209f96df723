"""S3-compatible storage backend for the CT log.

Works with AWS S3, Tigris and other S3-compatible object stores. Uploads are
hedged: if the PUT has not completed after a short delay, an identical PUT is
raced against it.

Dependencies:
    - boto3
    - botocore
    - prometheus_client
"""

from __future__ import annotations

import gzip
import logging
import time
import zlib
from concurrent.futures import ThreadPoolExecutor
from typing import TYPE_CHECKING, Any

from botocore.exceptions import BotoCoreError

from ctlog.infra.observability.metrics import S3Metrics
from ctlog.infra.observability.transport import instrument_client
from ctlog.infra.storage.client import (
    IMMUTABLE_CACHE_CONTROL,
    CompressError,
    ConfigError,
    DecodeError,
    NetworkError,
    ProtocolError,
    ReadError,
    UploadOptions,
)
from ctlog.infra.storage.hedge import CancelScope, bind_scope, run_hedged
from ctlog.infra.storage.retry import install_cancellation, install_retryer

if TYPE_CHECKING:
    from prometheus_client.registry import Collector

    from ctlog.common.config import Settings

# Tigris interprets If-Match: "" as "only create if the object does not exist".
CONDITIONAL_WRITE_ENDPOINTS = frozenset({"https://fly.storage.tigris.dev"})

# Each upload holds at most two workers: the primary PUT and its hedge.
MAX_PUT_WORKERS = 64


class S3Backend:
    """Object storage backend over an S3-compatible HTTP API.

    Every key is stored as ``key_prefix + key``; keys handed back to callers
    have the prefix stripped. Safe for concurrent use.
    """

    def __init__(
        self,
        *,
        region: str,
        bucket: str,
        endpoint: str | None = None,
        key_prefix: str = "",
        logger: logging.Logger | None = None,
        max_put_workers: int = MAX_PUT_WORKERS,
    ) -> None:
        """Initialize the backend and its S3 client.

        Args:
            region: AWS region the client is bound to.
            bucket: Target bucket name.
            endpoint: Optional base URL for S3-compatible stores.
            key_prefix: String prepended to every key; may be empty.
            logger: Logger for debug events; defaults to ``ctlog.s3``.
            max_put_workers: Size of the thread pool running PUT attempts.

        Raises:
            ConfigError: If credentials cannot be resolved or the client
                cannot be created.
        """
        self.bucket = bucket
        self.key_prefix = key_prefix
        self.endpoint = endpoint or None
        self.log = logger or logging.getLogger("ctlog.s3")
        self._metrics = S3Metrics.create()
        self._executor = ThreadPoolExecutor(
            max_workers=max_put_workers, thread_name_prefix="s3-put"
        )
        self.client = self._build_client(
            region=region, endpoint=self.endpoint, metrics=self._metrics
        )

    @classmethod
    def from_settings(
        cls, settings: "Settings", *, logger: logging.Logger | None = None
    ) -> "S3Backend":
        """Build a backend from application settings.

        Args:
            settings: Loaded settings; ``S3_BUCKET`` must be set.
            logger: Optional logger passed through to the backend.

        Returns:
            A ready-to-use ``S3Backend``.

        Raises:
            ConfigError: If no bucket is configured or the client cannot be
                created.
        """
        if not settings.S3_BUCKET:
            raise ConfigError("S3_BUCKET is required for the S3 backend", op="configure")
        return cls(
            region=settings.S3_REGION,
            bucket=settings.S3_BUCKET,
            endpoint=settings.S3_ENDPOINT_URL,
            key_prefix=settings.S3_KEY_PREFIX,
            logger=logger,
        )

    @staticmethod
    def _build_client(*, region: str, endpoint: str | None, metrics: S3Metrics) -> Any:
        """Create an instrumented boto3 S3 client."""
        try:
            import boto3
            from botocore.config import Config
        except ImportError as exc:
            raise ConfigError(
                "boto3 and botocore are required for the S3 backend. "
                "Install with: pip install boto3",
                op="configure",
            ) from exc

        try:
            session = boto3.session.Session(region_name=region)
            if session.get_credentials() is None:
                raise ConfigError(
                    "failed to load AWS config for S3 backend: no credentials found",
                    op="configure",
                )
            client = session.client(
                "s3",
                endpoint_url=endpoint,
                config=Config(
                    retries={"mode": "standard", "max_attempts": 3},
                    # Plain PUT bodies: no aws-chunked encoding or checksum trailer.
                    request_checksum_calculation="when_required",
                    response_checksum_validation="when_required",
                ),
            )
        except (BotoCoreError, ValueError) as exc:
            raise ConfigError(
                f"failed to load AWS config for S3 backend: {exc}", op="configure"
            ) from exc

        install_retryer(client)
        install_cancellation(client)
        instrument_client(client, requests=metrics.requests, duration=metrics.duration)
        return client

    def _conditional_writes(self) -> bool:
        return self.endpoint in CONDITIONAL_WRITE_ENDPOINTS

    def upload(
        self,
        key: str,
        data: bytes,
        options: UploadOptions | None = None,
        *,
        scope: CancelScope | None = None,
    ) -> None:
        """Upload ``data`` under ``key``, hedging slow PUTs."""
        start = time.perf_counter()
        options = options or UploadOptions()
        content_type = options.resolved_content_type

        params: dict[str, Any] = {
            "Bucket": self.bucket,
            "Key": self.key_prefix + key,
            "ContentType": content_type,
        }
        body = data
        if options.compress:
            body = self._compress(key, data)
            params["ContentEncoding"] = "gzip"
        if options.immutable:
            params["CacheControl"] = IMMUTABLE_CACHE_CONTROL
            # As an extra safety measure against concurrent sequencers, only
            # create immutable objects if they don't exist yet. The lock
            # protects against signing a split tree, but a losing sequencer
            # could still overwrite the data tiles of the winning one.
            if self._conditional_writes():
                params["IfMatch"] = ""
        params["Body"] = body
        params["ContentLength"] = len(body)

        def put_object() -> Any:
            return self.client.put_object(**params)

        err: Exception | None = None
        try:
            run_hedged(
                put_object,
                executor=self._executor,
                parent=scope,
                on_launch=self._metrics.hedges.inc,
                on_win=self._metrics.hedge_wins.inc,
                log=self.log,
                log_message="S3 PUT hedge",
                log_fields={"key": key},
            )
        except Exception as exc:
            err = exc

        self.log.debug(
            "S3 PUT",
            extra={
                "extra": {
                    "key": key,
                    "size": len(body),
                    "compress": options.compress,
                    "type": content_type,
                    "immutable": options.immutable,
                    "elapsed_ms": round((time.perf_counter() - start) * 1000, 3),
                    "err": repr(err) if err else None,
                }
            },
        )
        self._metrics.upload_size.observe(len(body))
        if err is not None:
            raise NetworkError(
                f"failed to upload {key!r} to S3: {err}", op="upload", key=key
            ) from err

    def _compress(self, key: str, data: bytes) -> bytes:
        try:
            compressed = gzip.compress(data)
        except (OSError, zlib.error) as exc:
            raise CompressError(
                f"failed to compress {key!r}: {exc}", op="upload", key=key
            ) from exc
        if data:
            self._metrics.compress_ratio.observe(len(compressed) / len(data))
        return compressed

    def fetch(self, key: str, *, scope: CancelScope | None = None) -> bytes:
        """Download ``key``, transparently decoding gzip content encoding."""
        try:
            with bind_scope(scope):
                response = self.client.get_object(
                    Bucket=self.bucket, Key=self.key_prefix + key
                )
        except Exception as exc:
            self.log.debug("S3 GET", extra={"extra": {"key": key, "err": repr(exc)}})
            raise NetworkError(
                f"failed to fetch {key!r} from S3: {exc}", op="fetch", key=key
            ) from exc

        encoding = response.get("ContentEncoding")
        self.log.debug(
            "S3 GET",
            extra={
                "extra": {
                    "key": key,
                    "size": response.get("ContentLength"),
                    "encoding": encoding,
                }
            },
        )
        body = response["Body"]
        try:
            if encoding == "gzip":
                with gzip.GzipFile(fileobj=body, mode="rb") as reader:
                    return reader.read()
            return body.read()
        except (gzip.BadGzipFile, zlib.error) as exc:
            raise DecodeError(
                f"failed to decompress {key!r} from S3: {exc}", op="fetch", key=key
            ) from exc
        except (OSError, EOFError, BotoCoreError) as exc:
            raise ReadError(
                f"failed to read {key!r} from S3: {exc}", op="fetch", key=key
            ) from exc
        finally:
            body.close()

    def copy(self, src: str, dst: str, *, scope: CancelScope | None = None) -> None:
        """Copy ``src`` to ``dst`` within the bucket."""
        try:
            with bind_scope(scope):
                self.client.copy_object(
                    Bucket=self.bucket,
                    CopySource=f"{self.bucket}/{self.key_prefix}{src}",
                    Key=self.key_prefix + dst,
                )
        except Exception as exc:
            self.log.debug(
                "S3 COPY", extra={"extra": {"from": src, "to": dst, "err": repr(exc)}}
            )
            raise NetworkError(
                f"failed to copy {src!r} to {dst!r} on S3: {exc}", op="copy", key=src
            ) from exc
        self.log.debug("S3 COPY", extra={"extra": {"from": src, "to": dst}})

    def delete(self, key: str, *, scope: CancelScope | None = None) -> None:
        """Delete ``key``."""
        try:
            with bind_scope(scope):
                self.client.delete_object(Bucket=self.bucket, Key=self.key_prefix + key)
        except Exception as exc:
            self.log.debug("S3 DELETE", extra={"extra": {"key": key, "err": repr(exc)}})
            raise NetworkError(
                f"failed to delete {key!r} from S3: {exc}", op="delete", key=key
            ) from exc
        self.log.debug("S3 DELETE", extra={"extra": {"key": key}})

    def metrics(self) -> tuple[Collector, ...]:
        return self._metrics.collectors()

    def close(self) -> None:
        """Release the PUT worker pool without waiting for losing attempts."""
        self._executor.shutdown(wait=False)

    def list(self, prefix: str, *, scope: CancelScope | None = None) -> list[str]:
        """List keys under ``prefix`` in a single, non-paginated request.

        A truncated listing is an error rather than a partial result: callers
        pick prefixes narrow enough to fit in one page.
        """
        full_prefix = self.key_prefix + prefix
        try:
            with bind_scope(scope):
                response = self.client.list_objects_v2(
                    Bucket=self.bucket, Prefix=full_prefix
                )
        except Exception as exc:
            self.log.debug("S3 LIST", extra={"extra": {"prefix": prefix, "err": repr(exc)}})
            raise NetworkError(
                f"failed to list {prefix!r} from S3: {exc}", op="list", key=prefix
            ) from exc

        contents = response.get("Contents") or []
        self.log.debug(
            "S3 LIST", extra={"extra": {"prefix": prefix, "count": len(contents)}}
        )

        keys = []
        for entry in contents:
            object_key = entry.get("Key")
            if not object_key:
                raise ProtocolError(
                    f"failed to list {prefix!r} from S3: nil key", op="list", key=prefix
                )
            if not object_key.startswith(full_prefix):
                raise ProtocolError(
                    f"failed to list {prefix!r} from S3: strange response {object_key!r}",
                    op="list",
                    key=prefix,
                )
            keys.append(object_key[len(self.key_prefix):])
        if response.get("IsTruncated"):
            raise ProtocolError(
                f"failed to list {prefix!r} from S3: response truncated",
                op="list",
                key=prefix,
            )
        return keys
