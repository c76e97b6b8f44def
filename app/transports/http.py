"""Shared HTTP plumbing for transports that talk to web APIs."""

import logging
import time
from typing import Any

import httpx

from app.services.backoff import is_retryable_status
from app.transports.base import DeliveryResult

logger = logging.getLogger(__name__)

MAX_RESPONSE_BODY = 2000


class HttpTransport:
    """Base class for transports that POST to an HTTP endpoint.

    The httpx client is injectable so tests can plug in
    ``httpx.MockTransport``; otherwise a client is created lazily and
    reused across sends.
    """

    channel = "http"

    def __init__(
        self,
        client: httpx.Client | None = None,
        retry_client_errors: bool = False,
    ) -> None:
        self._client = client
        self.retry_client_errors = retry_client_errors

    @property
    def client(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(follow_redirects=False)
        return self._client

    def close(self) -> None:
        if self._client is not None:
            self._client.close()

    def post(self, url: str, timeout: float, **kwargs: Any) -> DeliveryResult:
        """POST and classify the outcome.

        2xx is success; other statuses fail with retryability decided by
        the status code; timeouts and connection errors are retryable.
        """
        start_time = time.monotonic()
        try:
            response = self.client.post(url, timeout=timeout, **kwargs)
        except httpx.TimeoutException:
            logger.warning(
                f"[{self.channel}] Request timed out",
                extra={"url": url, "timeout_seconds": timeout},
            )
            return DeliveryResult.failed(
                f"Request timeout after {timeout:g}s",
                response_time_ms=_elapsed_ms(start_time),
            )
        except httpx.RequestError as e:
            logger.warning(
                f"[{self.channel}] Request failed",
                extra={"url": url, "error": str(e)},
            )
            return DeliveryResult.failed(
                f"Request error: {e}"[:500],
                response_time_ms=_elapsed_ms(start_time),
            )

        response_time_ms = _elapsed_ms(start_time)
        response_body = response.text[:MAX_RESPONSE_BODY] if response.text else None

        if 200 <= response.status_code < 300:
            return DeliveryResult.ok(
                response.status_code,
                response_body=response_body,
                response_time_ms=response_time_ms,
            )

        return DeliveryResult.failed(
            f"HTTP {response.status_code}",
            status_code=response.status_code,
            retryable=is_retryable_status(response.status_code, self.retry_client_errors),
            response_body=response_body,
            response_time_ms=response_time_ms,
        )


def _elapsed_ms(start_time: float) -> int:
    return int((time.monotonic() - start_time) * 1000)
