"""FastAPI webhook receiver for GeWe callbacks.

Request handling:
1. ``/healthz`` answers ``ok`` for any method, without auth
2. Anything other than ``POST <path>`` is a 404
3. Shared-secret check (header, then ``token`` query parameter)
4. JSON decode and normalization (400 on failure)
5. Duplicate ``appId:newMessageId`` callbacks are acknowledged and dropped
6. 200 is returned; the message is processed after the response is sent
"""

from __future__ import annotations

import hmac
import logging
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING

from fastapi import BackgroundTasks, FastAPI, Request, Response
from fastapi.responses import JSONResponse, PlainTextResponse

from gewe_bridge.models import AuditEvent, AuditEventType, InboundMessage, RiskLevel
from gewe_bridge.webhook.idempotency import IdempotencyCache
from gewe_bridge.webhook.normalizer import parse_webhook_payload, payload_to_message

if TYPE_CHECKING:
    from gewe_bridge.audit.logger import AuditLogger

logger = logging.getLogger(__name__)

HEALTH_PATH = "/healthz"
DEFAULT_WEBHOOK_PATH = "/webhook"
TOKEN_HEADERS = ("x-gewe-callback-token", "x-webhook-token", "x-gewe-token")
_ALL_METHODS = ["GET", "HEAD", "POST", "PUT", "DELETE", "PATCH", "OPTIONS"]

MessageHandler = Callable[[InboundMessage], Awaitable[None]]


def resolve_webhook_token(request: Request) -> str | None:
    """First non-empty token header, in precedence order."""
    for name in TOKEN_HEADERS:
        value = request.headers.get(name, "").strip()
        if value:
            return value
    return None


def _matches(candidate: str | None, secret: str) -> bool:
    if not candidate:
        return False
    return hmac.compare_digest(candidate.encode(), secret.encode())


def validate_webhook_secret(request: Request, secret: str | None) -> bool:
    if not secret:
        return True
    if _matches(resolve_webhook_token(request), secret):
        return True
    return _matches(request.query_params.get("token"), secret)


def create_webhook_app(
    path: str,
    secret: str | None,
    on_message: MessageHandler,
    dedupe: IdempotencyCache | None = None,
    audit_logger: AuditLogger | None = None,
) -> FastAPI:
    """Create the webhook FastAPI app for one account."""
    app = FastAPI(docs_url=None, redoc_url=None, openapi_url=None)
    webhook_path = path.strip() or DEFAULT_WEBHOOK_PATH
    if not webhook_path.startswith("/"):
        webhook_path = f"/{webhook_path}"
    secret = (secret or "").strip() or None
    seen = dedupe or IdempotencyCache()
    app.state.dedupe = seen

    def audit(event: AuditEvent) -> None:
        if audit_logger:
            audit_logger.log(event)

    async def process(message: InboundMessage) -> None:
        try:
            await on_message(message)
        except Exception:
            logger.exception("Webhook processing failed for %s", message.dedupe_key)

    @app.api_route(HEALTH_PATH, methods=_ALL_METHODS)
    async def health() -> Response:
        return PlainTextResponse("ok")

    @app.api_route("/{rest:path}", methods=_ALL_METHODS)
    async def webhook(request: Request, background_tasks: BackgroundTasks) -> Response:
        if request.url.path != webhook_path or request.method != "POST":
            return Response(status_code=404)

        if not validate_webhook_secret(request, secret):
            audit(AuditEvent(
                event_type=AuditEventType.WEBHOOK_AUTH_FAILURE,
                source_ip=request.client.host if request.client else None,
                action=f"{request.method} {request.url.path}",
                result="failure",
                risk_level=RiskLevel.HIGH,
            ))
            return JSONResponse(
                {"error": f"Missing or invalid webhook token for {webhook_path}"},
                status_code=401,
            )

        payload = parse_webhook_payload(await request.body())
        if payload is None:
            return JSONResponse({"error": "Invalid JSON payload"}, status_code=400)
        message = payload_to_message(payload)
        if message is None:
            return JSONResponse({"error": "Invalid webhook payload"}, status_code=400)

        if seen.is_duplicate(message.dedupe_key):
            logger.debug("Duplicate callback %s ignored", message.dedupe_key)
            audit(AuditEvent(
                event_type=AuditEventType.WEBHOOK_DUPLICATE,
                source_ip=request.client.host if request.client else None,
                action="dedupe",
                result="dropped",
                risk_level=RiskLevel.INFO,
                details={"key": message.dedupe_key},
            ))
            return Response(status_code=200)

        background_tasks.add_task(process, message)
        return Response(status_code=200)

    return app

