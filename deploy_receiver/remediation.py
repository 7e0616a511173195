from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable

import httpx

from deploy_receiver.content import ContentApiConfig, decode_content, get_file, update_file, update_timestamp_section
from deploy_receiver.settings import ReceiverSettings
from keepup_checks.idempotency import IdempotencyGuard
from keepup_checks.settings import ConfigurationError


LOGGER = logging.getLogger("deploy-receiver")

Now = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def content_config(settings: ReceiverSettings) -> ContentApiConfig:
    missing = settings.missing_remediation_config()
    if missing:
        raise ConfigurationError(f"Required settings not configured: {', '.join(missing)}")
    return ContentApiConfig(
        api_url=settings.content_api_url,
        token=settings.github_token,
        branch=settings.branch,
        commit_message=settings.commit_message,
        committer_name=settings.committer_name,
        committer_email=settings.committer_email,
        timeout_seconds=settings.content_timeout_seconds,
    )


async def run_remediation(
    settings: ReceiverSettings,
    *,
    http_client: httpx.AsyncClient,
    guard: IdempotencyGuard,
    now: Now = utc_now,
) -> dict[str, Any]:
    """
    Re-check the flag, rewrite the timestamp section, then set the flag.

    Any exception propagates; the caller turns it into a 500 and the flag
    stays unwritten so a later trigger can try again.
    """
    cfg = content_config(settings)

    if await guard.is_done():
        LOGGER.info("Remediation skipped (flag already set) key=%s", guard.key)
        return {"skipped": True, "reason": "already done"}

    file = await get_file(http_client, cfg)
    raw = decode_content(file.content)
    updated = update_timestamp_section(
        raw,
        heading=settings.timestamp_heading,
        now=now(),
        local_tz_name=settings.timestamp_local_tz,
    )
    if updated == raw:
        LOGGER.info("Remediation no-op (content unchanged)")
        return {"skipped": True, "reason": "no-op"}

    await update_file(http_client, cfg, sha=file.sha, text=updated)

    if await guard.claim():
        LOGGER.info("Idempotency flag written key=%s ttl_seconds=%s", guard.key, guard.ttl_seconds)
    elif await guard.is_done():
        # Another trigger finished in the same window; the content converges either way.
        LOGGER.info("Idempotency flag already written by a concurrent remediation key=%s", guard.key)
    else:
        await guard.mark_done()
        LOGGER.info("Idempotency flag overwritten key=%s ttl_seconds=%s", guard.key, guard.ttl_seconds)
    return {"deployed": True}
