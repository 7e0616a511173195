from __future__ import annotations

import logging
from typing import Any

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import ValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from deploy_receiver.auth import get_settings, is_authorized
from deploy_receiver.remediation import Now, utc_now, run_remediation
from deploy_receiver.schema import DeployRequest
from deploy_receiver.settings import ReceiverSettings
from keepup_checks.endpoints import safe_url
from keepup_checks.idempotency import IdempotencyGuard, IdempotencyStore, open_store


LOGGER = logging.getLogger("deploy-receiver")


def _json(obj: dict[str, Any], status_code: int = 200) -> JSONResponse:
    return JSONResponse(content=obj, status_code=status_code)


async def _parse_deploy_request(req: Request) -> DeployRequest | None:
    try:
        payload = await req.json()
    except ValueError:
        return None
    if not isinstance(payload, dict):
        return None
    try:
        return DeployRequest.model_validate(payload)
    except ValidationError:
        return None


def create_app(
    settings: ReceiverSettings | None = None,
    *,
    store: IdempotencyStore | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
    now: Now = utc_now,
) -> FastAPI:
    """
    `store` and `transport` default to the configured store and a real network
    transport; tests pass their own.
    """
    app = FastAPI(title="Deploy Receiver", version="0.1.0", docs_url=None, redoc_url=None, openapi_url=None)
    app.state.settings = settings or ReceiverSettings()
    app.state.store = store if store is not None else open_store(app.state.settings.state_db_path)
    app.state.transport = transport

    @app.on_event("startup")
    def _startup() -> None:
        settings: ReceiverSettings = app.state.settings
        if not settings.deploy_token:
            LOGGER.warning("DEPLOY_TOKEN not set; every %s request will be rejected", settings.deploy_path)
        missing = settings.missing_remediation_config()
        if missing:
            LOGGER.warning("Remediation config incomplete missing=%s; requests will fail with 500", missing)

    @app.exception_handler(StarletteHTTPException)
    async def _http_exception(req: Request, exc: StarletteHTTPException):
        # Unknown paths and wrong methods look the same to callers.
        if exc.status_code in {404, 405}:
            return PlainTextResponse("Not Found", status_code=404)
        return _json({"ok": False, "error": str(exc.detail)}, exc.status_code)

    async def deploy(req: Request) -> JSONResponse:
        settings = get_settings(req)
        LOGGER.info("Deploy called")

        if not is_authorized(req, settings):
            LOGGER.warning("Unauthorized deploy request")
            return _json({"ok": False, "error": "Unauthorized"}, 401)

        body = await _parse_deploy_request(req)
        if body is not None:
            LOGGER.info("Deploy trigger reason=%s url=%s", body.reason or None, safe_url(body.url) or None)

        guard = IdempotencyGuard(
            app.state.store,
            key=settings.flag_key,
            done_value=settings.flag_value,
            ttl_seconds=settings.flag_ttl_seconds,
        )
        try:
            async with httpx.AsyncClient(transport=app.state.transport) as client:
                result = await run_remediation(settings, http_client=client, guard=guard, now=now)
        except Exception as exc:
            LOGGER.exception("Deploy failed error=%s", exc)
            return _json({"ok": False, "error": str(exc) or type(exc).__name__}, 500)

        LOGGER.info("Deploy finished result=%s", result)
        return _json({"ok": True, "result": result})

    app.add_api_route(app.state.settings.deploy_path, deploy, methods=["POST"])
    return app
