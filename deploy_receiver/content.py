from __future__ import annotations

import base64
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import httpx
from pydantic import ValidationError

from deploy_receiver.schema import ContentFile


LOGGER = logging.getLogger("deploy-receiver")

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"


class ContentApiError(RuntimeError):
    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


@dataclass(frozen=True)
class ContentApiConfig:
    api_url: str
    token: str
    branch: str = ""
    commit_message: str = "chore: auto update README timestamp"
    committer_name: str = "deploy-receiver[bot]"
    committer_email: str = "deploy-receiver@users.noreply.github.com"
    timeout_seconds: float = 30.0


def _headers(token: str) -> dict[str, str]:
    return {
        "Authorization": f"Bearer {token}",
        "Accept": "application/vnd.github+json",
        "Content-Type": "application/json",
        "User-Agent": "deploy-receiver",
    }


def decode_content(b64: str) -> str:
    return base64.b64decode((b64 or "").replace("\n", "")).decode("utf-8")


def encode_content(text: str) -> str:
    return base64.b64encode(text.encode("utf-8")).decode("ascii")


async def get_file(client: httpx.AsyncClient, cfg: ContentApiConfig) -> ContentFile:
    params = {"ref": cfg.branch} if cfg.branch else None
    LOGGER.info("Reading document api_url=%s branch=%s", cfg.api_url, cfg.branch or None)
    resp = await client.get(cfg.api_url, headers=_headers(cfg.token), params=params, timeout=cfg.timeout_seconds)
    if not resp.is_success:
        LOGGER.error("Content read failed status_code=%s body=%s", resp.status_code, resp.text[:500])
        raise ContentApiError(f"Failed to read file: {resp.status_code}", status_code=resp.status_code)
    try:
        return ContentFile.model_validate(resp.json())
    except (ValueError, ValidationError) as exc:
        raise ContentApiError(f"Unexpected content API response: {exc}") from exc


async def update_file(client: httpx.AsyncClient, cfg: ContentApiConfig, *, sha: str, text: str) -> None:
    body: dict[str, Any] = {
        "message": cfg.commit_message,
        "content": encode_content(text),
        "sha": sha,
        "committer": {"name": cfg.committer_name, "email": cfg.committer_email},
    }
    if cfg.branch:
        body["branch"] = cfg.branch
    LOGGER.info("Writing document api_url=%s branch=%s", cfg.api_url, cfg.branch or None)
    resp = await client.put(cfg.api_url, headers=_headers(cfg.token), json=body, timeout=cfg.timeout_seconds)
    if not resp.is_success:
        LOGGER.error("Content write failed status_code=%s body=%s", resp.status_code, resp.text[:500])
        raise ContentApiError(f"Failed to commit file: {resp.status_code}", status_code=resp.status_code)


def load_timezone(name: str):
    cleaned = (name or "").strip()
    if not cleaned or cleaned.upper() == "UTC":
        return timezone.utc
    try:
        return ZoneInfo(cleaned)
    except (ZoneInfoNotFoundError, ValueError):
        LOGGER.warning("Timezone not found; falling back to UTC tz=%s", cleaned)
        return timezone.utc


def build_timestamp_section(heading: str, now: datetime, local_tz_name: str) -> str:
    now_utc = now.astimezone(timezone.utc)
    local = now_utc.astimezone(load_timezone(local_tz_name))
    return (
        f"\n{heading}\n\n"
        f"**UTC**: `{now_utc.strftime(TIMESTAMP_FORMAT)}`  \n"
        f"**{local_tz_name or 'UTC'}**: `{local.strftime(TIMESTAMP_FORMAT)}`  \n\n"
        "> ⚡ This timestamp is updated automatically by the deploy receiver\n"
    )


def update_timestamp_section(
    content: str, *, heading: str, now: datetime, local_tz_name: str = "UTC"
) -> str:
    """
    Replace the first section that starts at `heading` (up to the next `#`/`##`
    heading or end of text), or append one. Applying it twice with the same
    `now` returns the same text.
    """
    section = build_timestamp_section(heading, now, local_tz_name)
    pattern = re.compile(re.escape(heading) + r"[\s\S]*?(?=\n## |\n# |\n?\Z)")
    if pattern.search(content):
        return pattern.sub(lambda _m: section.strip(), content, count=1)
    return content.rstrip() + "\n" + section
