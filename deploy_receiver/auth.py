from __future__ import annotations

import hmac
from typing import Any

from fastapi import Request

from deploy_receiver.settings import ReceiverSettings


def get_settings(req: Request) -> ReceiverSettings:
    settings: Any = getattr(req.app.state, "settings", None)
    if not isinstance(settings, ReceiverSettings):
        raise RuntimeError("Receiver settings not configured")
    return settings


def is_authorized(req: Request, settings: ReceiverSettings) -> bool:
    provided = (req.headers.get(settings.token_header) or "").strip()
    expected = (settings.deploy_token or "").strip()
    # An unset secret never authorizes anything.
    if not provided or not expected:
        return False
    return hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))
