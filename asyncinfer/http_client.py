"""Default HTTP implementation of the inference client."""

from __future__ import annotations

import re
from collections.abc import Mapping
from datetime import datetime, timezone

import httpx

from asyncinfer.api import ClientError, ErrorCategory, InferenceClient

_INTEGER = re.compile(r"[+-]?\d+")
_HTTP_DATE_FORMATS = (
    "%a, %d %b %Y %H:%M:%S GMT",
    "%A, %d-%b-%y %H:%M:%S GMT",
    "%a %b %d %H:%M:%S %Y",
)


class HTTPInferenceClient(InferenceClient):
    """Sends inference requests as HTTP POSTs through an httpx client."""

    def __init__(self, client: httpx.AsyncClient | None = None) -> None:
        self._client = client if client is not None else httpx.AsyncClient(timeout=None)

    async def send_request(self, url: str, headers: Mapping[str, str], payload: bytes) -> bytes:
        """POST ``payload`` and return the body; raise ClientError on failure."""
        try:
            request = self._client.build_request(
                "POST", url, headers=dict(headers), content=payload
            )
        except (httpx.InvalidURL, ValueError, TypeError) as exc:
            raise ClientError(
                ErrorCategory.INVALID_REQUEST, "failed to create request", raw_error=exc
            ) from exc

        try:
            response = await self._client.send(request, stream=True)
        except (httpx.HTTPError, OSError) as exc:
            raise ClientError(
                ErrorCategory.UNKNOWN, "failed to send request", raw_error=exc
            ) from exc

        try:
            body = await response.aread()
        except (httpx.HTTPError, OSError) as exc:
            # The request may have succeeded, so reading failures are retryable.
            raise ClientError(
                ErrorCategory.SERVER, "failed to read response", raw_error=exc
            ) from exc
        finally:
            await response.aclose()

        status = response.status_code
        if status == 429:
            retry_after = parse_retry_after(response.headers.get("Retry-After", ""))
            raise ClientError(
                ErrorCategory.RATE_LIMIT,
                f"rate limited: status code {status}",
                retry_after=retry_after or 0.0,
            )
        if 400 <= status < 500:
            raise ClientError(ErrorCategory.INVALID_REQUEST, f"client error: status code {status}")
        if 500 <= status < 600:
            raise ClientError(ErrorCategory.SERVER, f"server error: status code {status}")
        return body


def parse_retry_after(value: str) -> float | None:
    """Seconds to wait from a Retry-After value, or None if absent or invalid.

    Accepts a non-negative number of seconds or an HTTP date (IMF-fixdate,
    RFC 850 or asctime); a date in the past gives 0.
    """
    if not value:
        return None
    if _INTEGER.fullmatch(value):
        seconds = int(value)
        if seconds >= 0:
            return float(seconds)
    for fmt in _HTTP_DATE_FORMATS:
        try:
            when = datetime.strptime(value, fmt).replace(tzinfo=timezone.utc)
        except ValueError:
            continue
        return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())
    return None