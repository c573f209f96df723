#!/usr/bin/env python3
"""Exercise the S3 backend against a real bucket.

Usage:
  .venv/bin/python scripts/s3_smoke.py --key smoke/test
  .venv/bin/python scripts/s3_smoke.py --key smoke/test --compress --keep

Reads S3_* settings from the environment or .env, uploads a small object,
fetches and lists it back, then deletes it unless --keep is given.
"""

from __future__ import annotations

import argparse
import logging
import sys

from prometheus_client import CollectorRegistry, generate_latest

from ctlog.common.config import get_settings
from ctlog.common.logging import setup_logging
from ctlog.infra.storage import S3Backend, StorageError, UploadOptions


def smoke(backend: S3Backend, *, key: str, compress: bool, keep: bool) -> None:
    payload = b"ctlog smoke test\n" * 64
    backend.upload(key, payload, UploadOptions(content_type="text/plain", compress=compress))
    if backend.fetch(key) != payload:
        raise RuntimeError(f"fetched content of {key!r} does not match upload")
    parent = key.rsplit("/", 1)[0] + "/" if "/" in key else key
    if key not in backend.list(parent):
        raise RuntimeError(f"{key!r} missing from listing of {parent!r}")
    if not keep:
        backend.delete(key)


def main() -> None:
    parser = argparse.ArgumentParser(description="S3 backend smoke test")
    parser.add_argument("--key", default="smoke/object", help="Object key to write")
    parser.add_argument("--compress", action="store_true", help="gzip the body")
    parser.add_argument("--keep", action="store_true", help="Do not delete the object")
    args = parser.parse_args()

    settings = get_settings()
    setup_logging(settings.LOG_LEVEL)
    logger = logging.getLogger("ctlog.smoke")

    try:
        backend = S3Backend.from_settings(settings)
        try:
            smoke(backend, key=args.key, compress=args.compress, keep=args.keep)
        finally:
            backend.close()
    except StorageError as exc:
        logger.error("smoke test failed: %s", exc, extra={"extra": {"key": exc.key}})
        sys.exit(1)

    if settings.ENABLE_METRICS:
        registry = CollectorRegistry()
        for collector in backend.metrics():
            registry.register(collector)
        print(generate_latest(registry).decode())


if __name__ == "__main__":
    main()
