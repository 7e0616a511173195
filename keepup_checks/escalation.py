from __future__ import annotations

import logging
from enum import Enum
from typing import Iterable

import httpx

from keepup_checks.endpoints import Endpoint, safe_url
from keepup_checks.idempotency import IdempotencyGuard
from keepup_checks.probe import ProbeOutcome
from keepup_checks.trigger_client import RemediationRequest, TriggerConfig, send_trigger


LOGGER = logging.getLogger("keepup-checks")


class EscalationDecision(str, Enum):
    NOT_FAILED = "not_failed"
    NOT_ELIGIBLE = "not_eligible"
    DISABLED = "disabled"
    SUPPRESSED = "suppressed"
    TRIGGERED = "triggered"
    DELIVERY_FAILED = "delivery_failed"


def is_escalation_eligible(endpoint: Endpoint, keywords: Iterable[str]) -> bool:
    url = (endpoint.url or "").lower()
    return any(kw and kw.lower() in url for kw in keywords)


class Escalator:
    def __init__(
        self,
        *,
        http_client: httpx.AsyncClient,
        trigger_cfg: TriggerConfig | None,
        keywords: Iterable[str],
        reason: str,
        guard: IdempotencyGuard | None = None,
    ) -> None:
        self.http_client = http_client
        self.trigger_cfg = trigger_cfg
        self.keywords = tuple(keywords)
        self.reason = reason
        self.guard = guard

    async def _guard_allows(self, url: str) -> bool:
        if self.guard is None:
            return True
        try:
            allowed = await self.guard.should_trigger()
        except Exception:
            # The receiver re-checks its own flag; an unreadable store here only costs a call.
            LOGGER.exception("Idempotency read failed; triggering anyway url=%s key=%s", url, self.guard.key)
            return True
        if not allowed:
            LOGGER.info("Escalation suppressed (flag already set) url=%s key=%s", url, self.guard.key)
        return allowed

    async def _record_trigger(self, url: str) -> None:
        if self.guard is None:
            return
        try:
            await self.guard.mark_done()
        except Exception:
            LOGGER.exception("Idempotency write failed url=%s key=%s", url, self.guard.key)
            return
        LOGGER.info(
            "Idempotency flag written key=%s ttl_seconds=%s", self.guard.key, self.guard.ttl_seconds
        )

    async def escalate(self, endpoint: Endpoint, outcome: ProbeOutcome) -> EscalationDecision:
        url = safe_url(endpoint.url)
        if outcome.ok:
            return EscalationDecision.NOT_FAILED

        if not is_escalation_eligible(endpoint, self.keywords):
            LOGGER.info("Terminal failure not eligible for escalation url=%s %s", url, outcome.describe())
            return EscalationDecision.NOT_ELIGIBLE

        if self.trigger_cfg is None:
            LOGGER.info("Escalation disabled (no trigger configured) url=%s", url)
            return EscalationDecision.DISABLED

        if not await self._guard_allows(url):
            return EscalationDecision.SUPPRESSED

        LOGGER.warning("Escalating terminal failure url=%s reason=%s %s", url, self.reason, outcome.describe())
        result = await send_trigger(
            self.http_client,
            self.trigger_cfg,
            RemediationRequest(reason=self.reason, url=endpoint.url),
        )
        if not result.succeeded:
            LOGGER.error(
                "Remediation trigger failed url=%s status_code=%s error=%s body=%s",
                url,
                result.status_code,
                result.error,
                result.body,
            )
            return EscalationDecision.DELIVERY_FAILED

        LOGGER.info("Remediation trigger ok url=%s status_code=%s body=%s", url, result.status_code, result.body)
        await self._record_trigger(url)
        return EscalationDecision.TRIGGERED
