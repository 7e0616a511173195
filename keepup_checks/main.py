from __future__ import annotations

import argparse
import asyncio
import logging
import os
import time
from dataclasses import dataclass, field
from pathlib import Path

import httpx

from keepup_checks.endpoints import Endpoint, safe_url
from keepup_checks.escalation import EscalationDecision, Escalator
from keepup_checks.idempotency import IdempotencyGuard, IdempotencyStore, open_store
from keepup_checks.probe import ProbeOutcome, RetryPolicy, Sleep, probe_endpoint
from keepup_checks.runner import run_all
from keepup_checks.settings import CheckSettings, ConfigurationError, load_settings
from keepup_checks.trigger_client import TriggerConfig


LOGGER = logging.getLogger("keepup-checks")


@dataclass
class TickReport:
    results: list[tuple[Endpoint, ProbeOutcome]] = field(default_factory=list)
    escalations: dict[str, EscalationDecision] = field(default_factory=dict)
    elapsed_seconds: float = 0.0

    @property
    def failed(self) -> list[tuple[Endpoint, ProbeOutcome]]:
        return [(e, o) for e, o in self.results if not o.ok]

    def outcome_for(self, url: str) -> ProbeOutcome | None:
        for endpoint, outcome in self.results:
            if endpoint.url == url:
                return outcome
        return None


def build_trigger_config(settings: CheckSettings) -> TriggerConfig | None:
    if not settings.escalation_enabled:
        return None
    return TriggerConfig(
        url=settings.deploy_api_url,
        token=settings.deploy_token,
        token_header=settings.token_header,
        timeout_seconds=settings.trigger_timeout_seconds,
    )


def build_escalator(
    settings: CheckSettings, http_client: httpx.AsyncClient, store: IdempotencyStore
) -> Escalator:
    guard: IdempotencyGuard | None = None
    if settings.client_guard_enabled:
        guard = IdempotencyGuard(
            store,
            key=settings.flag_key,
            done_value=settings.flag_value,
            ttl_seconds=settings.flag_ttl_seconds,
        )
    return Escalator(
        http_client=http_client,
        trigger_cfg=build_trigger_config(settings),
        keywords=settings.escalation_keywords,
        reason=settings.escalation_reason,
        guard=guard,
    )


async def run_tick(
    settings: CheckSettings,
    *,
    probe_client: httpx.AsyncClient,
    escalator: Escalator,
    sleep: Sleep = asyncio.sleep,
) -> TickReport:
    started = time.monotonic()
    endpoints = settings.endpoints
    policy = RetryPolicy(
        max_attempts=settings.max_attempts,
        timeout_seconds=settings.timeout_seconds,
        base_delay_seconds=settings.retry_base_delay_seconds,
    )
    LOGGER.info("Tick started endpoints=%s concurrency=%s", len(endpoints), settings.concurrency)

    async def _probe(endpoint: Endpoint) -> ProbeOutcome:
        return await probe_endpoint(probe_client, endpoint, policy, sleep=sleep)

    report = TickReport()
    report.results = await run_all(endpoints, _probe, concurrency_limit=settings.concurrency)

    # Escalate one at a time so a second eligible failure sees the flag the first one wrote.
    for endpoint, outcome in report.results:
        if outcome.ok:
            continue
        try:
            decision = await escalator.escalate(endpoint, outcome)
        except Exception:
            LOGGER.exception("Escalation crashed url=%s", safe_url(endpoint.url))
            decision = EscalationDecision.DELIVERY_FAILED
        report.escalations[endpoint.url] = decision

    report.elapsed_seconds = time.monotonic() - started
    LOGGER.info(
        "Tick complete endpoints=%s failed=%s triggered=%s elapsed_seconds=%s",
        len(report.results),
        len(report.failed),
        sum(1 for d in report.escalations.values() if d is EscalationDecision.TRIGGERED),
        round(report.elapsed_seconds, 3),
    )
    return report


async def run_loop(settings: CheckSettings, *, once: bool) -> int:
    settings.validate()
    if not settings.escalation_enabled:
        LOGGER.warning("Missing DEPLOY_API_URL and/or FIXED_TOKEN; remediation escalation disabled")

    store = open_store(settings.state_db_path)
    async with httpx.AsyncClient() as http_client:
        escalator = build_escalator(settings, http_client, store)
        while True:
            report = await run_tick(settings, probe_client=http_client, escalator=escalator)
            if once:
                return 0
            sleep_for = max(0.0, float(settings.interval_seconds) - report.elapsed_seconds)
            LOGGER.info("Sleeping until next tick sleep_seconds=%s", round(sleep_for, 3))
            await asyncio.sleep(sleep_for)


def main() -> int:
    parser = argparse.ArgumentParser(description="Endpoint reachability monitor with remediation escalation")
    parser.add_argument("--config", default=None, help="Optional YAML config overriding environment settings")
    parser.add_argument("--once", action="store_true", help="Run one tick and exit")
    parser.add_argument(
        "--log-level",
        default=os.getenv("LOG_LEVEL", "INFO"),
        help="Logging level (INFO, WARNING, ...)",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    # Keep request URLs (and anything in them) out of the log.
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    try:
        settings = load_settings(Path(args.config) if args.config else None)
        return asyncio.run(run_loop(settings, once=bool(args.once)))
    except ConfigurationError as exc:
        LOGGER.error("Invalid configuration: %s", exc)
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
