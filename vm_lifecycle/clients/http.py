import logging
import time
from dataclasses import dataclass
from typing import Any

import httpx


logger = logging.getLogger(__name__)

# Client errors are deterministic; only these are worth another attempt.
RETRYABLE_CLIENT_STATUS = {408, 409, 423, 429}


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int
    sleep_sec: float
    # Upper bound on a server-supplied Retry-After delay.
    max_retry_after_sec: float = 60.0


class RequestFailure(RuntimeError):
    def __init__(
        self,
        *,
        method: str,
        url: str,
        attempts: int,
        error_type: str,
        detail: str,
        status_code: int | None = None,
        response_text: str | None = None,
    ):
        self.method = method
        self.url = url
        self.attempts = attempts
        self.error_type = error_type
        self.detail = detail
        self.status_code = status_code
        self.response_text = response_text
        super().__init__(
            f"request failed after {attempts} attempts: {method} {url} ({error_type}: {detail})"
        )


def _is_retryable(status_code: int) -> bool:
    return status_code >= 500 or status_code in RETRYABLE_CLIENT_STATUS


def _retry_delay(retry: RetryPolicy, response: httpx.Response | None) -> float:
    if response is None:
        return retry.sleep_sec
    header = response.headers.get("Retry-After", "")
    try:
        requested = float(header)
    except ValueError:
        return retry.sleep_sec
    return max(retry.sleep_sec, min(requested, retry.max_retry_after_sec))


def request_with_retry(
    client: httpx.Client, method: str, url: str, retry: RetryPolicy, **kwargs: Any
) -> httpx.Response:
    error: Exception | None = None
    status_code: int | None = None
    response_text: str | None = None
    detail = "unknown error"
    error_type = "RuntimeError"
    failed_response: httpx.Response | None = None
    attempt = 0
    while attempt < retry.attempts:
        attempt += 1
        try:
            response = client.request(method, url, **kwargs)
            response.raise_for_status()
            return response
        except httpx.HTTPStatusError as exc:
            error = exc
            failed_response = exc.response
            status_code = exc.response.status_code
            response_text = exc.response.text
            body = (exc.response.text or "").strip()
            detail = (
                f"HTTP {status_code}: {body[:240]}" if body else f"HTTP {status_code}"
            )
            error_type = exc.__class__.__name__
            if not _is_retryable(status_code):
                break
        except httpx.RequestError as exc:
            error = exc
            failed_response = None
            detail = str(exc)
            error_type = exc.__class__.__name__
        if attempt < retry.attempts:
            delay = _retry_delay(retry, failed_response)
            logger.debug(
                "retrying %s %s in %gs after attempt %d: %s", method, url, delay, attempt, detail
            )
            time.sleep(delay)
    raise RequestFailure(
        method=method,
        url=url,
        attempts=attempt,
        error_type=error_type,
        detail=detail,
        status_code=status_code,
        response_text=response_text,
    ) from error
