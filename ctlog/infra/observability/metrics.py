from __future__ import annotations

from dataclasses import dataclass

from prometheus_client import REGISTRY, CollectorRegistry, Counter, Summary
from prometheus_client.registry import Collector
from prometheus_summary import Summary as QuantileSummary

# (quantile, allowed error) pairs over a rolling window of age buckets.
REQUEST_DURATION_OBJECTIVES = ((0.5, 0.05), (0.75, 0.025), (0.9, 0.01), (0.99, 0.001))
UPLOAD_SIZE_OBJECTIVES = ((0.5, 0.05), (0.9, 0.01), (0.99, 0.001))
SUMMARY_MAX_AGE_SECONDS = 60
SUMMARY_AGE_BUCKETS = 6


@dataclass(frozen=True)
class S3Metrics:
    """Collectors owned by one S3 backend.

    The collectors are created unregistered so that several backends can live
    in one process; callers register them with ``register``.
    """

    requests: Counter
    duration: QuantileSummary
    upload_size: QuantileSummary
    compress_ratio: Summary
    hedges: Counter
    hedge_wins: Counter

    @classmethod
    def create(cls) -> "S3Metrics":
        return cls(
            requests=Counter(
                "s3_requests_total",
                "S3 HTTP requests performed, by method and response code.",
                ["method", "code"],
                registry=None,
            ),
            duration=QuantileSummary(
                "s3_request_duration_seconds",
                "S3 HTTP request latencies, by method and response code.",
                ["method", "code"],
                registry=None,
                invariants=REQUEST_DURATION_OBJECTIVES,
                max_age_seconds=SUMMARY_MAX_AGE_SECONDS,
                age_buckets=SUMMARY_AGE_BUCKETS,
            ),
            upload_size=QuantileSummary(
                "s3_upload_size_bytes",
                "S3 (compressed) body size in bytes for object puts.",
                registry=None,
                invariants=UPLOAD_SIZE_OBJECTIVES,
                max_age_seconds=SUMMARY_MAX_AGE_SECONDS,
                age_buckets=SUMMARY_AGE_BUCKETS,
            ),
            compress_ratio=Summary(
                "s3_compress_ratio",
                "Ratio of compressed to uncompressed body size for compressible object puts.",
                registry=None,
            ),
            hedges=Counter(
                "s3_hedges_total",
                "S3 hedge requests that were launched because the main request was too slow.",
                registry=None,
            ),
            hedge_wins=Counter(
                "s3_hedges_successful_total",
                "S3 hedge requests that completed before the main request.",
                registry=None,
            ),
        )

    def collectors(self) -> tuple[Collector, ...]:
        return (
            self.requests,
            self.duration,
            self.upload_size,
            self.compress_ratio,
            self.hedges,
            self.hedge_wins,
        )

    def register(self, registry: CollectorRegistry = REGISTRY) -> None:
        for collector in self.collectors():
            registry.register(collector)
