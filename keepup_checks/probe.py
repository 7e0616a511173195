from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable

import httpx

from keepup_checks.endpoints import Endpoint, safe_url


LOGGER = logging.getLogger("keepup-checks")

Sleep = Callable[[float], Awaitable[None]]


class FailureCause(str, Enum):
    TIMEOUT = "timeout"
    SERVER_ERROR = "server_error"
    CLIENT_ERROR = "client_error"
    TRANSPORT_ERROR = "transport_error"

    @property
    def retryable(self) -> bool:
        # 4xx (and other non-5xx statuses) are deterministic; retrying cannot fix them.
        return self is not FailureCause.CLIENT_ERROR


class OutcomeKind(str, Enum):
    SUCCESS = "success"
    TRANSIENT_FAILURE = "transient_failure"
    TERMINAL_FAILURE = "terminal_failure"


@dataclass(frozen=True)
class ProbeOutcome:
    kind: OutcomeKind
    attempt: int
    cause: FailureCause | None = None
    status_code: int | None = None
    error: str | None = None
    elapsed_ms: float | None = None

    @property
    def ok(self) -> bool:
        return self.kind is OutcomeKind.SUCCESS

    def describe(self) -> str:
        if self.ok:
            return f"ok status={self.status_code}"
        parts = [self.cause.value if self.cause else "unknown"]
        if self.status_code is not None:
            parts.append(f"status={self.status_code}")
        if self.error:
            parts.append(f"error={self.error}")
        return " ".join(parts)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    timeout_seconds: float = 5.0
    base_delay_seconds: float = 0.5

    def backoff_delay(self, attempt: int) -> float:
        return float(self.base_delay_seconds) * (2 ** int(attempt))


def classify_status(status_code: int) -> FailureCause | None:
    if 200 <= status_code < 300:
        return None
    if 500 <= status_code < 600:
        return FailureCause.SERVER_ERROR
    return FailureCause.CLIENT_ERROR


async def _attempt_once(
    client: httpx.AsyncClient, endpoint: Endpoint, policy: RetryPolicy, attempt: int
) -> ProbeOutcome:
    started = time.perf_counter()

    def _elapsed() -> float:
        return round((time.perf_counter() - started) * 1000.0, 3)

    try:
        # client.get() reads the whole body before returning, so the connection
        # goes back to the pool whatever the status turns out to be.
        resp = await asyncio.wait_for(
            client.get(endpoint.url, follow_redirects=True, timeout=policy.timeout_seconds),
            timeout=policy.timeout_seconds,
        )
    except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
        return ProbeOutcome(
            kind=OutcomeKind.TRANSIENT_FAILURE,
            attempt=attempt,
            cause=FailureCause.TIMEOUT,
            error=f"{type(exc).__name__}: {exc}" if str(exc) else type(exc).__name__,
            elapsed_ms=_elapsed(),
        )
    except (httpx.HTTPError, httpx.InvalidURL, OSError, ValueError) as exc:
        return ProbeOutcome(
            kind=OutcomeKind.TRANSIENT_FAILURE,
            attempt=attempt,
            cause=FailureCause.TRANSPORT_ERROR,
            error=f"{type(exc).__name__}: {exc}",
            elapsed_ms=_elapsed(),
        )

    cause = classify_status(resp.status_code)
    if cause is None:
        return ProbeOutcome(
            kind=OutcomeKind.SUCCESS,
            attempt=attempt,
            status_code=resp.status_code,
            elapsed_ms=_elapsed(),
        )
    return ProbeOutcome(
        kind=OutcomeKind.TRANSIENT_FAILURE if cause.retryable else OutcomeKind.TERMINAL_FAILURE,
        attempt=attempt,
        cause=cause,
        status_code=resp.status_code,
        elapsed_ms=_elapsed(),
    )


async def probe_endpoint(
    client: httpx.AsyncClient,
    endpoint: Endpoint,
    policy: RetryPolicy,
    *,
    sleep: Sleep = asyncio.sleep,
) -> ProbeOutcome:
    """
    Probe one endpoint until it succeeds, hits a non-retryable status, or the
    attempt budget is spent. Always returns a terminal outcome.
    """
    max_attempts = max(1, int(policy.max_attempts))
    url = safe_url(endpoint.url)
    attempt = 1
    while True:
        LOGGER.debug("Probe attempt url=%s attempt=%s/%s", url, attempt, max_attempts)
        outcome = await _attempt_once(client, endpoint, policy, attempt)

        if outcome.ok:
            LOGGER.info("Probe ok url=%s attempt=%s status=%s", url, attempt, outcome.status_code)
            return outcome

        if outcome.kind is OutcomeKind.TERMINAL_FAILURE:
            LOGGER.warning(
                "Probe failed (not retried) url=%s attempt=%s %s", url, attempt, outcome.describe()
            )
            return outcome

        if attempt >= max_attempts:
            LOGGER.warning(
                "Probe failed after %s attempts url=%s %s", attempt, url, outcome.describe()
            )
            return ProbeOutcome(
                kind=OutcomeKind.TERMINAL_FAILURE,
                attempt=attempt,
                cause=outcome.cause,
                status_code=outcome.status_code,
                error=outcome.error,
                elapsed_ms=outcome.elapsed_ms,
            )

        delay = policy.backoff_delay(attempt)
        LOGGER.warning(
            "Probe attempt failed url=%s attempt=%s/%s %s retry_in_seconds=%s",
            url,
            attempt,
            max_attempts,
            outcome.describe(),
            round(delay, 3),
        )
        await sleep(delay)
        attempt += 1
