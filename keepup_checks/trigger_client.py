from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import httpx


@dataclass(frozen=True)
class TriggerConfig:
    url: str
    token: str
    token_header: str = "X-Deploy-Token"
    timeout_seconds: float = 15.0


@dataclass(frozen=True)
class RemediationRequest:
    reason: str
    url: str

    def to_payload(self) -> dict[str, Any]:
        return {"reason": self.reason, "url": self.url}


@dataclass(frozen=True)
class RemediationResult:
    succeeded: bool
    status_code: int | None
    body: str
    error: str | None = None


def _truncate(text: str, limit: int = 2000) -> str:
    s = text or ""
    return s if len(s) <= limit else s[:limit] + "…"


async def send_trigger(
    client: httpx.AsyncClient, cfg: TriggerConfig, request: RemediationRequest
) -> RemediationResult:
    """
    One POST, no retries. Non-2xx and transport errors come back as a failed
    result instead of raising.
    """
    try:
        resp = await client.post(
            cfg.url,
            headers={"Content-Type": "application/json", cfg.token_header: cfg.token},
            json=request.to_payload(),
            timeout=cfg.timeout_seconds,
        )
    except (httpx.HTTPError, httpx.InvalidURL) as exc:
        return RemediationResult(
            succeeded=False,
            status_code=None,
            body="",
            error=f"{type(exc).__name__}: {exc}",
        )

    # Non-streaming response: the body has already been read in full.
    body = _truncate(resp.text)
    return RemediationResult(
        succeeded=resp.is_success,
        status_code=resp.status_code,
        body=body,
        error=None if resp.is_success else f"http_status_{resp.status_code}",
    )
