from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Sequence

from keepup_checks.endpoints import Endpoint, safe_url
from keepup_checks.probe import FailureCause, OutcomeKind, ProbeOutcome


LOGGER = logging.getLogger("keepup-checks")

ProbeFn = Callable[[Endpoint], Awaitable[ProbeOutcome]]


async def _safe_probe(probe: ProbeFn, endpoint: Endpoint) -> tuple[Endpoint, ProbeOutcome]:
    try:
        return endpoint, await probe(endpoint)
    except Exception as exc:
        err = f"{type(exc).__name__}: {exc}"
        LOGGER.exception("Probe crashed url=%s error=%s", safe_url(endpoint.url), err)
        return endpoint, ProbeOutcome(
            kind=OutcomeKind.TERMINAL_FAILURE,
            attempt=1,
            cause=FailureCause.TRANSPORT_ERROR,
            error=err,
        )


async def run_all(
    endpoints: Sequence[Endpoint],
    probe: ProbeFn,
    *,
    concurrency_limit: int,
) -> list[tuple[Endpoint, ProbeOutcome]]:
    """
    Probe every endpoint once with at most `concurrency_limit` in flight.

    Endpoints are dispatched in order; results come back in completion order.
    Returns only after every dispatched probe has settled.
    """
    limit = max(1, int(concurrency_limit))
    pending_endpoints = list(endpoints)
    in_flight: set[asyncio.Task[tuple[Endpoint, ProbeOutcome]]] = set()
    results: list[tuple[Endpoint, ProbeOutcome]] = []

    next_idx = 0
    while next_idx < len(pending_endpoints) or in_flight:
        while next_idx < len(pending_endpoints) and len(in_flight) < limit:
            endpoint = pending_endpoints[next_idx]
            next_idx += 1
            in_flight.add(asyncio.create_task(_safe_probe(probe, endpoint)))

        done, in_flight = await asyncio.wait(in_flight, return_when=asyncio.FIRST_COMPLETED)
        for task in done:
            results.append(task.result())

    return results
