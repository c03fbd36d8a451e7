import logging
import time
from dataclasses import dataclass
from typing import Any

import httpx


logger = logging.getLogger(__name__)

# Clone/start/move requests are never replayed; a duplicate would act twice.
IDEMPOTENT_METHODS = frozenset({"GET", "PUT", "DELETE"})


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int = 1
    sleep_sec: float = 0

    def attempts_for(self, method: str) -> int:
        if method.upper() in IDEMPOTENT_METHODS:
            return max(self.attempts, 1)
        return 1


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
            f"{method} {url} failed after {attempts} attempt(s) ({error_type}: {detail})"
        )

    @property
    def is_not_found(self) -> bool:
        return self.status_code == 404

    def mentions(self, text: str) -> bool:
        haystack = f"{self.detail}\n{self.response_text or ''}".lower()
        return text.lower() in haystack


def _describe_status_error(response: httpx.Response) -> str:
    # The cluster puts its human readable error in the HTTP reason phrase
    # and validation errors in an "errors" object.
    detail = f"HTTP {response.status_code}"
    if response.reason_phrase:
        detail = f"{detail} {response.reason_phrase}"
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        errors = payload.get("errors")
        if isinstance(errors, dict) and errors:
            joined = "; ".join(f"{key}: {value}" for key, value in errors.items())
            return f"{detail}: {joined}"
        message = payload.get("message")
        if isinstance(message, str) and message.strip():
            return f"{detail}: {message.strip()}"
    body = (response.text or "").strip()
    return f"{detail}: {body[:240]}" if body else detail


def request_with_retry(
    client: httpx.Client, method: str, url: str, retry: RetryPolicy, **kwargs: Any
) -> httpx.Response:
    attempts = retry.attempts_for(method)
    error: Exception | None = None
    status_code: int | None = None
    response_text: str | None = None
    detail = "unknown error"
    error_type = "RuntimeError"
    for attempt in range(1, attempts + 1):
        try:
            response = client.request(method, url, **kwargs)
            response.raise_for_status()
            return response
        except httpx.HTTPStatusError as exc:
            error = exc
            status_code = exc.response.status_code
            response_text = exc.response.text
            detail = _describe_status_error(exc.response)
            error_type = exc.__class__.__name__
            if status_code < 500:
                attempts = attempt
                break
        except httpx.RequestError as exc:
            error = exc
            detail = str(exc)
            error_type = exc.__class__.__name__
        if attempt < attempts:
            logger.debug(
                "retrying request method=%s url=%s attempt=%s detail=%s",
                method,
                url,
                attempt,
                detail,
            )
            time.sleep(retry.sleep_sec)
    raise RequestFailure(
        method=method,
        url=url,
        attempts=attempts,
        error_type=error_type,
        detail=detail,
        status_code=status_code,
        response_text=response_text,
    ) from error
