"""HTTP transport instrumentation for botocore clients.

botocore sends every attempt through ``client._endpoint.http_session``, so
wrapping that session observes each wire request, retries included.
"""

from __future__ import annotations

import time
from typing import Any

from prometheus_client import Counter, Summary


class InstrumentedHTTPSession:
    """Wraps a botocore HTTP session and records request count and latency.

    Requests that raise before a response is received are not observed.
    """

    def __init__(self, session: Any, *, requests: Counter, duration: Summary) -> None:
        self._session = session
        self._requests = requests
        self._duration = duration

    def send(self, request: Any) -> Any:
        start = time.perf_counter()
        response = self._session.send(request)
        elapsed = time.perf_counter() - start

        method = str(request.method).lower()
        code = str(response.status_code)
        self._requests.labels(method, code).inc()
        self._duration.labels(method, code).observe(elapsed)
        return response

    def __getattr__(self, name: str) -> Any:
        return getattr(self._session, name)


def instrument_client(client: Any, *, requests: Counter, duration: Summary) -> Any:
    endpoint = client._endpoint
    endpoint.http_session = InstrumentedHTTPSession(
        endpoint.http_session, requests=requests, duration=duration
    )
    return client
