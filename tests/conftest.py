from __future__ import annotations

from unittest.mock import patch

import pytest
from prometheus_client import CollectorRegistry

from ctlog.common.config import get_settings
from ctlog.infra.storage.s3_client import S3Backend
from tests.infra.fake_s3 import FakeS3Client


@pytest.fixture(autouse=True)
def clear_settings_cache():
    get_settings.cache_clear()  # type: ignore[attr-defined]
    yield
    get_settings.cache_clear()  # type: ignore[attr-defined]


@pytest.fixture()
def fake_s3():
    return FakeS3Client()


@pytest.fixture()
def make_backend(fake_s3):
    """Build S3Backends around the fake client, metrics in a private registry."""
    built: list[S3Backend] = []

    def _make(
        *, key_prefix: str = "log/", endpoint: str | None = None
    ) -> tuple[S3Backend, CollectorRegistry]:
        with patch.object(S3Backend, "_build_client", return_value=fake_s3):
            backend = S3Backend(
                region="us-east-1",
                bucket="test-bucket",
                endpoint=endpoint,
                key_prefix=key_prefix,
            )
        built.append(backend)
        registry = CollectorRegistry()
        for collector in backend.metrics():
            registry.register(collector)
        return backend, registry

    yield _make
    for backend in built:
        backend.close()


@pytest.fixture()
def backend(make_backend):
    return make_backend()[0]

