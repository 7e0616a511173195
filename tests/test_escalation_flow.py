from __future__ import annotations

import asyncio
import base64
import json
from collections import Counter

import httpx
import pytest

from deploy_receiver.app import create_app
from deploy_receiver.settings import ReceiverSettings
from keepup_checks.endpoints import Endpoint
from keepup_checks.escalation import EscalationDecision, Escalator, is_escalation_eligible
from keepup_checks.idempotency import MemoryIdempotencyStore
from keepup_checks.main import build_escalator, run_tick
from keepup_checks.probe import FailureCause, OutcomeKind, ProbeOutcome
from keepup_checks.settings import CheckSettings


RECEIVER_URL = "https://receiver.test/deploy"


class _Clock:
    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


async def _no_sleep(_seconds: float) -> None:
    return None


def _settings(url_list: str, **overrides) -> CheckSettings:
    base = dict(
        url_list=url_list,
        deploy_api_url=RECEIVER_URL,
        deploy_token="deploy-token",
        token_header="X-Deploy-Token",
        escalation_keywords=("galaxy",),
        escalation_reason="final_retry_failed",
        timeout_seconds=1.0,
        max_attempts=3,
        retry_base_delay_seconds=0.0,
        concurrency=2,
        client_guard_enabled=True,
        flag_key="flag",
        flag_value="deployed",
        flag_ttl_seconds=10_800,
        state_db_path="",
    )
    base.update(overrides)
    return CheckSettings(**base)


class _FakeNetwork:
    """Probe targets plus a stub receiver, all behind one MockTransport."""

    def __init__(self, *, statuses: dict[str, int], receiver_status: int = 200) -> None:
        self.statuses = statuses
        self.receiver_status = receiver_status
        self.attempts: Counter[str] = Counter()
        self.trigger_calls: list[dict] = []
        self.trigger_headers: list[httpx.Headers] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def handler(self, request: httpx.Request) -> httpx.Response:
        host = request.url.host
        if host == "receiver.test":
            self.trigger_calls.append(json.loads(request.content))
            self.trigger_headers.append(request.headers)
            return httpx.Response(self.receiver_status, json={"ok": self.receiver_status == 200})

        self.attempts[host] += 1
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(0.01)
        finally:
            self.in_flight -= 1
        return httpx.Response(self.statuses.get(host, 200), text="body")


def test_escalation_gate_is_case_insensitive_substring() -> None:
    assert is_escalation_eligible(Endpoint("https://GALAXY.test/"), ("galaxy",))
    assert is_escalation_eligible(Endpoint("https://api.test/galaxy/health"), ("nebula", "galaxy"))
    assert not is_escalation_eligible(Endpoint("https://down.test/"), ("galaxy",))
    assert not is_escalation_eligible(Endpoint("https://galaxy.test/"), ())


@pytest.mark.asyncio
async def test_ok_and_down_without_keyword_never_trigger() -> None:
    net = _FakeNetwork(statuses={"down.test": 503})
    settings = _settings("https://ok.test/\nhttps://down.test/")
    store = MemoryIdempotencyStore()

    async with httpx.AsyncClient(transport=httpx.MockTransport(net.handler)) as client:
        report = await run_tick(
            settings, probe_client=client, escalator=build_escalator(settings, client, store), sleep=_no_sleep
        )

    assert net.max_in_flight == 2
    assert net.attempts["ok.test"] == 1
    assert net.attempts["down.test"] == 3
    assert report.outcome_for("https://ok.test/").ok
    down = report.outcome_for("https://down.test/")
    assert down.kind is OutcomeKind.TERMINAL_FAILURE
    assert down.cause is FailureCause.SERVER_ERROR
    assert report.escalations == {"https://down.test/": EscalationDecision.NOT_ELIGIBLE}
    assert net.trigger_calls == []
    assert await store.get("flag") is None


@pytest.mark.asyncio
async def test_galaxy_failure_triggers_once_per_window() -> None:
    net = _FakeNetwork(statuses={"galaxy.test": 503})
    settings = _settings("https://galaxy.test/")
    clock = _Clock()
    store = MemoryIdempotencyStore(clock=clock)

    async with httpx.AsyncClient(transport=httpx.MockTransport(net.handler)) as client:
        escalator = build_escalator(settings, client, store)

        first = await run_tick(settings, probe_client=client, escalator=escalator, sleep=_no_sleep)
        assert net.attempts["galaxy.test"] == 3
        assert first.escalations == {"https://galaxy.test/": EscalationDecision.TRIGGERED}
        assert net.trigger_calls == [{"reason": "final_retry_failed", "url": "https://galaxy.test/"}]
        assert net.trigger_headers[0]["X-Deploy-Token"] == "deploy-token"
        rec = await store.get_record("flag")
        assert rec is not None
        assert rec.value == "deployed"
        assert rec.expires_at_ts == pytest.approx(clock.now + 10_800)

        clock.now += 60 * 60
        second = await run_tick(settings, probe_client=client, escalator=escalator, sleep=_no_sleep)
        assert net.attempts["galaxy.test"] == 6
        assert second.escalations == {"https://galaxy.test/": EscalationDecision.SUPPRESSED}
        assert len(net.trigger_calls) == 1

        clock.now += 2 * 60 * 60
        third = await run_tick(settings, probe_client=client, escalator=escalator, sleep=_no_sleep)
        assert third.escalations == {"https://galaxy.test/": EscalationDecision.TRIGGERED}
        assert len(net.trigger_calls) == 2


@pytest.mark.asyncio
async def test_two_eligible_failures_in_one_tick_trigger_once() -> None:
    net = _FakeNetwork(statuses={"galaxy-a.test": 503, "galaxy-b.test": 404})
    settings = _settings("https://galaxy-a.test/\nhttps://galaxy-b.test/")
    store = MemoryIdempotencyStore()

    async with httpx.AsyncClient(transport=httpx.MockTransport(net.handler)) as client:
        report = await run_tick(
            settings, probe_client=client, escalator=build_escalator(settings, client, store), sleep=_no_sleep
        )

    assert net.attempts["galaxy-b.test"] == 1
    assert len(net.trigger_calls) == 1
    assert sorted(d.value for d in report.escalations.values()) == ["suppressed", "triggered"]


@pytest.mark.asyncio
async def test_delivery_failure_does_not_write_flag() -> None:
    net = _FakeNetwork(statuses={"galaxy.test": 500}, receiver_status=502)
    settings = _settings("https://galaxy.test/")
    store = MemoryIdempotencyStore()

    async with httpx.AsyncClient(transport=httpx.MockTransport(net.handler)) as client:
        escalator = build_escalator(settings, client, store)
        first = await run_tick(settings, probe_client=client, escalator=escalator, sleep=_no_sleep)
        assert first.escalations["https://galaxy.test/"] is EscalationDecision.DELIVERY_FAILED
        assert await store.get("flag") is None

        second = await run_tick(settings, probe_client=client, escalator=escalator, sleep=_no_sleep)
        assert second.escalations["https://galaxy.test/"] is EscalationDecision.DELIVERY_FAILED

    # One POST per tick, never retried inside a tick.
    assert len(net.trigger_calls) == 2


@pytest.mark.asyncio
async def test_preset_flag_suppresses_trigger() -> None:
    net = _FakeNetwork(statuses={})
    store = MemoryIdempotencyStore()
    await store.put("flag", "deployed", ttl_seconds=10_800)

    async with httpx.AsyncClient(transport=httpx.MockTransport(net.handler)) as client:
        escalator = build_escalator(_settings("https://galaxy.test/"), client, store)
        failure = ProbeOutcome(
            kind=OutcomeKind.TERMINAL_FAILURE, attempt=3, cause=FailureCause.TIMEOUT, error="TimeoutError"
        )
        decision = await escalator.escalate(Endpoint("https://galaxy.test/"), failure)

    assert decision is EscalationDecision.SUPPRESSED
    assert net.trigger_calls == []


class _BrokenStore(MemoryIdempotencyStore):
    async def get(self, key: str) -> str | None:
        raise OSError("store unreachable")


@pytest.mark.asyncio
async def test_unreadable_store_does_not_block_trigger() -> None:
    net = _FakeNetwork(statuses={})
    async with httpx.AsyncClient(transport=httpx.MockTransport(net.handler)) as client:
        escalator = build_escalator(_settings("https://galaxy.test/"), client, _BrokenStore())
        failure = ProbeOutcome(kind=OutcomeKind.TERMINAL_FAILURE, attempt=1, cause=FailureCause.CLIENT_ERROR, status_code=403)
        decision = await escalator.escalate(Endpoint("https://galaxy.test/"), failure)

    assert decision is EscalationDecision.TRIGGERED
    assert len(net.trigger_calls) == 1


@pytest.mark.asyncio
async def test_missing_trigger_config_disables_escalation() -> None:
    async with httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200))) as client:
        escalator = Escalator(
            http_client=client, trigger_cfg=None, keywords=("galaxy",), reason="final_retry_failed"
        )
        failure = ProbeOutcome(kind=OutcomeKind.TERMINAL_FAILURE, attempt=3, cause=FailureCause.SERVER_ERROR)
        assert await escalator.escalate(Endpoint("https://galaxy.test/"), failure) is EscalationDecision.DISABLED
        ok = ProbeOutcome(kind=OutcomeKind.SUCCESS, attempt=1, status_code=200)
        assert await escalator.escalate(Endpoint("https://galaxy.test/"), ok) is EscalationDecision.NOT_FAILED


class _ContentApi:
    def __init__(self, text: str) -> None:
        self.text = text
        self.sha = "sha-1"
        self.gets = 0
        self.puts: list[dict] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        if request.method == "GET":
            self.gets += 1
            b64 = base64.b64encode(self.text.encode("utf-8")).decode("ascii")
            return httpx.Response(200, json={"content": b64, "sha": self.sha})
        body = json.loads(request.content)
        self.puts.append(body)
        self.text = base64.b64decode(body["content"]).decode("utf-8")
        self.sha = f"sha-{len(self.puts) + 1}"
        return httpx.Response(200, json={"content": {"sha": self.sha}})


@pytest.mark.asyncio
async def test_receiver_is_authoritative_when_client_guard_is_off() -> None:
    content_api = _ContentApi("# Project\n\nHello\n")
    receiver = create_app(
        ReceiverSettings(
            deploy_token="deploy-token",
            github_token="gh-token",
            content_api_url="https://api.github.test/repos/o/r/contents/README.md",
            branch="main",
            timestamp_local_tz="UTC",
        ),
        store=MemoryIdempotencyStore(),
        transport=httpx.MockTransport(content_api.handler),
    )
    net = _FakeNetwork(statuses={"galaxy.test": 503})
    settings = _settings("https://galaxy.test/", client_guard_enabled=False)
    client_store = MemoryIdempotencyStore()

    async with httpx.AsyncClient(transport=httpx.MockTransport(net.handler)) as probe_client, httpx.AsyncClient(
        transport=httpx.ASGITransport(app=receiver), base_url="https://receiver.test"
    ) as trigger_client:
        escalator = build_escalator(settings, trigger_client, client_store)
        first = await run_tick(settings, probe_client=probe_client, escalator=escalator, sleep=_no_sleep)
        second = await run_tick(settings, probe_client=probe_client, escalator=escalator, sleep=_no_sleep)

    # Both ticks reached the receiver, but only the first one changed the document.
    assert first.escalations["https://galaxy.test/"] is EscalationDecision.TRIGGERED
    assert second.escalations["https://galaxy.test/"] is EscalationDecision.TRIGGERED
    assert len(content_api.puts) == 1
    assert content_api.gets == 1
    assert "## 🕒 Last updated" in content_api.text
    assert await client_store.get("flag") is None
