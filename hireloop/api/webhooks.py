"""
Webhook Endpoints

Receives events from:
- Linear: issue, project and comment changes (drives the candidate workflow)
- Resend: inbound candidate replies (delivered through Svix)

Only authentication and payload errors are returned to the sender as 4xx.
Failures inside a handler are logged and acknowledged so the sender does not
redeliver something that would fail the same way again. Infrastructure
failures before routing (org config unreachable) return 500 so the delivery
is retried.
"""
import base64
import hashlib
import hmac
import json
import logging
import time
from typing import Any, Dict, Mapping, Optional

from fastapi import APIRouter, Header, Request
from fastapi.responses import JSONResponse

from hireloop.core.config import get_settings
from hireloop.core.org_config import OrganizationAccount, get_org_config_store
from hireloop.core.state_machine import TransitionEngine
from hireloop.services.comment_relay import handle_comment_to_email
from hireloop.services.email_replies import handle_email_received
from hireloop.services.errors import (
    ErrorCode,
    HireloopError,
    PayloadError,
    WebhookAuthError,
    to_http_exception,
)
from hireloop.services.job_publication import handle_project_change
from hireloop.services.logging import log_webhook_event
from hireloop.services.notifications import EmailClient, ResendEmailClient
from hireloop.services.record_store import LinearRecordStore, RecordStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


def record_store_for(account: OrganizationAccount) -> RecordStore:
    return LinearRecordStore(account.access_token)


def engine_for(account: OrganizationAccount) -> TransitionEngine:
    return TransitionEngine(record_store_for(account))


def get_email_client() -> EmailClient:
    return ResendEmailClient()


# ==================== VERIFICATION ====================

def verify_linear_signature(body: bytes, signature: Optional[str], secret: str) -> None:
    """HMAC-SHA256 (hex) of the raw body, as sent in `Linear-Signature`."""
    if not secret:
        raise HireloopError(ErrorCode.CONFIG_MISSING, "Webhook secret not configured")
    if not signature:
        raise WebhookAuthError(ErrorCode.MISSING_SIGNATURE, "Missing Linear-Signature header")
    expected = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    if not hmac.compare_digest(expected, signature.strip()):
        raise WebhookAuthError(ErrorCode.INVALID_SIGNATURE, "Invalid signature")


def check_webhook_timestamp(payload: Dict[str, Any], max_skew_seconds: int, now: Optional[float] = None) -> None:
    """Reject events whose `webhookTimestamp` (ms) is too far from now."""
    raw = payload.get("webhookTimestamp")
    try:
        timestamp_ms = int(raw)
    except (TypeError, ValueError):
        raise WebhookAuthError(ErrorCode.STALE_EVENT, "Missing or invalid webhookTimestamp")
    now_ms = (now if now is not None else time.time()) * 1000
    if abs(now_ms - timestamp_ms) > max_skew_seconds * 1000:
        raise WebhookAuthError(ErrorCode.STALE_EVENT, "Webhook timestamp outside allowed window")


def verify_svix_signature(
    body: bytes,
    headers: Mapping[str, str],
    secret: str,
    tolerance_seconds: int = 300,
    now: Optional[float] = None,
) -> None:
    """
    Verify a Svix-signed delivery (Resend webhooks).

    The signature is base64 HMAC-SHA256 over `{svix-id}.{svix-timestamp}.{body}`
    keyed with the base64 part of the `whsec_...` secret. `svix-signature` may
    carry several space-separated `v1,<sig>` entries.
    """
    if not secret:
        raise HireloopError(ErrorCode.CONFIG_MISSING, "Webhook secret not configured")
    msg_id = headers.get("svix-id")
    timestamp = headers.get("svix-timestamp")
    signatures = headers.get("svix-signature")
    if not msg_id or not timestamp or not signatures:
        raise WebhookAuthError(ErrorCode.MISSING_SIGNATURE, "Missing Svix headers")

    try:
        sent_at = int(timestamp)
    except ValueError:
        raise WebhookAuthError(ErrorCode.STALE_EVENT, "Invalid svix-timestamp")
    now = now if now is not None else time.time()
    if abs(now - sent_at) > tolerance_seconds:
        raise WebhookAuthError(ErrorCode.STALE_EVENT, "Webhook timestamp outside allowed window")

    key = base64.b64decode(secret[len("whsec_"):] if secret.startswith("whsec_") else secret)
    signed = f"{msg_id}.{timestamp}.".encode() + body
    expected = base64.b64encode(hmac.new(key, signed, hashlib.sha256).digest()).decode()

    for entry in signatures.split():
        version, _, value = entry.partition(",")
        if version == "v1" and hmac.compare_digest(expected, value):
            return
    raise WebhookAuthError(ErrorCode.INVALID_SIGNATURE, "Invalid signature")


def parse_payload(body: bytes) -> Dict[str, Any]:
    try:
        payload = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise PayloadError("Invalid JSON")
    if not isinstance(payload, dict):
        raise PayloadError("Payload must be a JSON object")
    return payload


def org_slug_from_url(url: Optional[str]) -> Optional[str]:
    """`https://linear.app/{org}/issue/...` -> `{org}`."""
    if not url:
        return None
    parts = url.split("/")
    return parts[3] if len(parts) > 3 and parts[3] else None


# ==================== LINEAR ====================

async def route_linear_event(payload: Dict[str, Any], account: OrganizationAccount) -> bool:
    """Dispatch one Linear event. Returns False when no handler applies."""
    entity_type = payload.get("type")
    action = payload.get("action")
    data = payload.get("data") or {}
    entity_id = data.get("id")
    if not entity_id:
        logger.error(f"Missing entity id in {entity_type}:{action} event")
        return False

    if entity_type == "Project" and action in ("create", "update"):
        engine = engine_for(account)
        await handle_project_change(engine.store, engine.model, engine.meters, account, entity_id)
        return True

    if entity_type == "Issue" and action in ("create", "update"):
        # A new issue enters as Todo + New; the engine sends the confirmation.
        await engine_for(account).handle_issue_update(account, entity_id)
        return True

    if entity_type == "Comment" and action == "create":
        engine = engine_for(account)
        await handle_comment_to_email(engine.dispatcher, account, entity_id, data.get("issueId"))
        return True

    logger.info(f"Unhandled webhook event {entity_type}:{action}")
    return False


@router.post("/linear")
async def linear_webhook(
    request: Request,
    linear_signature: Optional[str] = Header(None, alias="Linear-Signature"),
):
    """
    Receive Linear webhooks.

    Events we act on:
    - Project create/update: job description enhancement
    - Issue create/update: candidate state machine
    - Comment create: relay the comment to the candidate by email
    """
    started = time.time()
    settings = get_settings()
    body = await request.body()

    try:
        verify_linear_signature(body, linear_signature, settings.linear_webhook_secret)
        payload = parse_payload(body)
        check_webhook_timestamp(payload, settings.webhook_max_skew_seconds)
    except HireloopError as e:
        logger.warning(f"Rejected Linear webhook: {e.detail or e.message}")
        log_webhook_event("linear:unknown", False, (time.time() - started) * 1000, error_type=e.code.value)
        raise to_http_exception(e)

    event_type = f"{payload.get('type')}:{payload.get('action')}"
    slug = org_slug_from_url(payload.get("url"))
    if not slug:
        logger.error(f"Could not extract organization from webhook url for {event_type}")
        log_webhook_event(event_type, True, (time.time() - started) * 1000, handled=False)
        return {"success": True}

    try:
        account = await get_org_config_store().get(slug)
    except Exception as e:
        logger.error(f"Failed to load org config for {slug}: {e}")
        log_webhook_event(event_type, False, (time.time() - started) * 1000, error_type="OrgConfigUnavailable")
        return JSONResponse(status_code=500, content={"success": False, "error": "Organization config unavailable"})

    if account is None:
        logger.error(f"Organization config not found for {slug}")
        log_webhook_event(event_type, True, (time.time() - started) * 1000, handled=False, org=slug)
        return {"success": True}

    handled = False
    error_type = None
    try:
        handled = await route_linear_event(payload, account)
    except Exception as e:
        error_type = type(e).__name__
        logger.error(f"Error handling {event_type} for {slug}: {e}")

    log_webhook_event(
        event_type,
        error_type is None,
        (time.time() - started) * 1000,
        error_type=error_type,
        handled=handled,
        org=slug,
    )
    return {"success": True}


# ==================== RESEND ====================

@router.post("/email/inbound")
async def inbound_email_webhook(request: Request):
    """Receive Resend webhooks; `email.received` is a candidate reply."""
    started = time.time()
    body = await request.body()

    try:
        verify_svix_signature(body, request.headers, get_settings().resend_webhook_secret)
        payload = parse_payload(body)
    except HireloopError as e:
        logger.warning(f"Rejected Resend webhook: {e.detail or e.message}")
        log_webhook_event("resend:unknown", False, (time.time() - started) * 1000, error_type=e.code.value)
        raise to_http_exception(e)

    event_type = payload.get("type") or "unknown"
    if event_type != "email.received":
        logger.info(f"Ignoring Resend event {event_type}")
        log_webhook_event(f"resend:{event_type}", True, (time.time() - started) * 1000, handled=False)
        return {"success": True}

    try:
        outcome = await handle_email_received(
            payload.get("data") or {},
            get_org_config_store(),
            get_email_client(),
            record_store_for,
        )
    except Exception as e:
        logger.error(f"Failed to add inbound email reply: {e}")
        log_webhook_event(
            "resend:email.received", False, (time.time() - started) * 1000, error_type=type(e).__name__
        )
        return JSONResponse(status_code=500, content={"success": False, "error": "Failed to process email"})

    log_webhook_event(
        "resend:email.received",
        True,
        (time.time() - started) * 1000,
        handled=outcome.added,
        reason=outcome.reason,
    )
    return {"success": True}
