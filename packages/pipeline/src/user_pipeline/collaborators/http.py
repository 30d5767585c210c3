from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, TypeVar

import httpx
import structlog
from tenacity import (
    RetryCallState,
    RetryError,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
)
from tenacity.wait import wait_base

from user_pipeline.core import PipelineError, TransientError

log = structlog.get_logger(__name__)

T = TypeVar("T")

RETRYABLE_STATUSES = frozenset({408, 429, 500, 502, 503, 504})
# source archives above this size are refused
DEFAULT_MAX_ARCHIVE_BYTES = 256 * 1024 * 1024


class HttpFetchError(PipelineError):
    """A download did not produce a usable response."""


class HttpStatusError(HttpFetchError):
    def __init__(self, *, url: str, status_code: int) -> None:
        super().__init__(f"HTTP {status_code} for GET {url}")
        self.url = url
        self.status_code = status_code


class HttpRetriesExceeded(HttpFetchError, TransientError):
    def __init__(self, *, url: str, attempts: int, last_error: BaseException) -> None:
        super().__init__(f"Gave up on GET {url} after {attempts} attempt(s): {last_error}")
        self.url = url
        self.attempts = attempts
        self.last_error = last_error


class ArchiveTooLarge(HttpFetchError):
    pass


class _RetryableStatus(Exception):
    def __init__(self, status_code: int) -> None:
        super().__init__(f"HTTP {status_code}")
        self.status_code = status_code


class DeterministicExponentialBackoff(wait_base):
    """Sleeps base, 2*base, 4*base ... between attempts, capped, without jitter."""

    def __init__(self, *, base: float, cap: float) -> None:
        self.base = base
        self.cap = cap

    def __call__(self, retry_state: RetryCallState) -> float:
        failed = retry_state.attempt_number
        return min(self.cap, self.base * 2 ** (failed - 1))


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    max_attempts: int = 3
    base_s: float = 0.5
    cap_s: float = 4.0


def _log_retry(what: str) -> Callable[[RetryCallState], None]:
    def _hook(state: RetryCallState) -> None:
        exc = state.outcome.exception() if state.outcome else None
        log.warning(
            "retrying",
            what=what,
            attempt=state.attempt_number,
            sleep_s=state.next_action.sleep if state.next_action else None,
            error=str(exc) if exc else None,
        )

    return _hook


def run_with_retries(
    fn: Callable[[], T],
    *,
    what: str,
    policy: RetryPolicy,
    retry_on: tuple[type[BaseException], ...],
    on_exhausted: Callable[[int, BaseException], Exception],
) -> T:
    """
    Call `fn` until it returns, retrying only exceptions listed in `retry_on`.

    Once `policy.max_attempts` is spent the last error is handed to
    `on_exhausted(attempts, error)` and the exception it returns is raised.
    Anything not in `retry_on` propagates from the attempt that raised it.
    """
    retrying = Retrying(
        stop=stop_after_attempt(max(1, policy.max_attempts)),
        wait=DeterministicExponentialBackoff(base=policy.base_s, cap=policy.cap_s),
        retry=retry_if_exception_type(retry_on),
        before_sleep=_log_retry(what),
    )
    try:
        return retrying(fn)
    except RetryError as e:
        last = e.last_attempt.exception()
        assert last is not None
        raise on_exhausted(e.last_attempt.attempt_number, last) from last


def make_http_client(
    *,
    timeout: httpx.Timeout | None = None,
    user_agent: str = "user-pipeline/0.1",
    transport: httpx.BaseTransport | None = None,
) -> httpx.Client:
    return httpx.Client(
        timeout=timeout or httpx.Timeout(60.0, connect=5.0),
        follow_redirects=True,
        headers={"User-Agent": user_agent},
        transport=transport,
    )


def download(
    client: httpx.Client,
    url: str,
    *,
    policy: RetryPolicy = RetryPolicy(),
    max_bytes: int = DEFAULT_MAX_ARCHIVE_BYTES,
) -> bytes:
    """
    GET `url` and return the body.

    Timeouts, transport errors and 408/429/5xx are retried per `policy`;
    other non-200 statuses and oversized bodies fail at once.
    """

    def _once() -> bytes:
        with client.stream("GET", url) as resp:
            if resp.status_code in RETRYABLE_STATUSES:
                raise _RetryableStatus(resp.status_code)
            if resp.status_code != 200:
                raise HttpStatusError(url=url, status_code=resp.status_code)
            buf = bytearray()
            for chunk in resp.iter_bytes():
                buf.extend(chunk)
                if len(buf) > max_bytes:
                    raise ArchiveTooLarge(f"{url} is larger than {max_bytes} bytes")
            return bytes(buf)

    return run_with_retries(
        _once,
        what=f"GET {url}",
        policy=policy,
        retry_on=(httpx.TransportError, _RetryableStatus),
        on_exhausted=lambda attempts, last: HttpRetriesExceeded(
            url=url, attempts=attempts, last_error=last
        ),
    )
