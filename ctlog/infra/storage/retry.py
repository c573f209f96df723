"""botocore retry and cancellation hooks for the S3 client."""

from __future__ import annotations

from typing import Any

from botocore.retries import quota, standard

from ctlog.infra.storage.hedge import current_scope

MAX_ATTEMPTS = 3
# Retries are cheap and frequent; slow requests are handled by hedging.
MAX_BACKOFF_SECONDS = 0.005


def install_retryer(
    client: Any,
    *,
    max_attempts: int = MAX_ATTEMPTS,
    max_backoff: float = MAX_BACKOFF_SECONDS,
) -> standard.RetryHandler:
    """Replace the standard retry handler with one using a clamped backoff.

    The client must have been created with ``retries={"mode": "standard"}``.
    """
    service = client.meta.service_model.service_id.hyphenize()
    client.meta.events.unregister(
        f"needs-retry.{service}", unique_id=f"retry-config-{service}"
    )
    retry_quota = standard.RetryQuotaChecker(quota.RetryQuota())
    client.meta.events.register(
        f"after-call.{service}", retry_quota.release_retry_quota
    )
    handler = standard.RetryHandler(
        retry_policy=standard.RetryPolicy(
            retry_checker=standard.StandardRetryConditions(max_attempts=max_attempts),
            retry_backoff=standard.ExponentialBackoff(max_backoff=max_backoff),
        ),
        retry_event_adapter=standard.RetryEventAdapter(),
        retry_quota=retry_quota,
    )
    client.meta.events.register(
        f"needs-retry.{service}",
        handler.needs_retry,
        unique_id=f"retry-config-{service}",
    )
    return handler


def abort_if_cancelled(**kwargs: Any) -> None:
    """``before-send`` hook: stop an attempt whose scope was cancelled."""
    scope = current_scope()
    if scope is not None:
        scope.check()


def install_cancellation(client: Any) -> None:
    service = client.meta.service_model.service_id.hyphenize()
    client.meta.events.register(
        f"before-send.{service}",
        abort_if_cancelled,
        unique_id=f"ctlog-cancel-{service}",
    )
