"""
Webhook endpoint tests: signature checks, routing and delivery outcomes.
"""
import asyncio
import base64
import hashlib
import hmac
import json
import time

import pytest
from fastapi.testclient import TestClient

from conftest import RESEND_SECRET_KEY, RESEND_WEBHOOK_SECRET
from hireloop.api import webhooks
from hireloop.core import config as config_module
from hireloop.core.org_config import OrgConfigStore
from hireloop.services.email_replies import ReplyOutcome
from hireloop.services.errors import ErrorCode, WebhookAuthError
from main import app

client = TestClient(app)


def linear_body(entity_type="Issue", action="update", data=None, timestamp_ms=None, url=None):
    payload = {
        "type": entity_type,
        "action": action,
        "data": data if data is not None else {"id": "issue-1"},
        "url": url if url is not None else "https://linear.app/acme/issue/HIR-12/ada-lovelace",
        "webhookTimestamp": timestamp_ms if timestamp_ms is not None else int(time.time() * 1000),
    }
    return json.dumps(payload).encode()


def linear_headers(body, secret="linear-secret"):
    signature = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return {"Linear-Signature": signature, "Content-Type": "application/json"}


def svix_headers(body, msg_id="msg_2Lh9", timestamp=None, key=RESEND_SECRET_KEY):
    timestamp = str(timestamp if timestamp is not None else int(time.time()))
    signed = f"{msg_id}.{timestamp}.".encode() + body
    signature = base64.b64encode(hmac.new(key, signed, hashlib.sha256).digest()).decode()
    return {
        "svix-id": msg_id,
        "svix-timestamp": timestamp,
        "svix-signature": f"v1,bm90LXRoaXMtb25l v1,{signature}",
        "Content-Type": "application/json",
    }


class RecordingEngine:
    def __init__(self, fail=False):
        self.calls = []
        self.fail = fail
        self.store = object()
        self.model = object()
        self.meters = object()
        self.dispatcher = object()

    async def handle_issue_update(self, account, issue_id):
        if self.fail:
            raise RuntimeError("linear timeout")
        self.calls.append((account.org_slug, issue_id))


@pytest.fixture
def org_account(fake_redis, account):
    asyncio.run(OrgConfigStore(fake_redis).save(account))
    return account


@pytest.fixture
def engine(monkeypatch):
    engine = RecordingEngine()
    monkeypatch.setattr(webhooks, "engine_for", lambda account: engine)
    monkeypatch.setattr(webhooks, "get_org_config_store", lambda: OrgConfigStore())
    return engine


class TestLinearWebhook:
    def test_issue_update_runs_engine(self, org_account, engine):
        body = linear_body()
        response = client.post("/webhooks/linear", content=body, headers=linear_headers(body))

        assert response.status_code == 200
        assert response.json() == {"success": True}
        assert engine.calls == [("acme", "issue-1")]

    def test_issue_create_runs_engine(self, org_account, engine):
        body = linear_body(action="create")
        client.post("/webhooks/linear", content=body, headers=linear_headers(body))
        assert engine.calls == [("acme", "issue-1")]

    def test_invalid_signature(self, org_account, engine):
        body = linear_body()
        response = client.post("/webhooks/linear", content=body, headers=linear_headers(body, secret="wrong"))

        assert response.status_code == 401
        assert response.json()["detail"]["error"] == "INVALID_SIGNATURE"
        assert engine.calls == []

    def test_missing_signature(self, org_account, engine):
        response = client.post("/webhooks/linear", content=linear_body())
        assert response.status_code == 401
        assert response.json()["detail"]["error"] == "MISSING_SIGNATURE"

    def test_stale_timestamp(self, org_account, engine):
        body = linear_body(timestamp_ms=int((time.time() - 3600) * 1000))
        response = client.post("/webhooks/linear", content=body, headers=linear_headers(body))

        assert response.status_code == 401
        assert response.json()["detail"]["error"] == "STALE_EVENT"
        assert engine.calls == []

    def test_signed_garbage_is_bad_request(self, org_account, engine):
        body = b"not json"
        response = client.post("/webhooks/linear", content=body, headers=linear_headers(body))
        assert response.status_code == 400

    def test_unconfigured_secret(self, org_account, engine, monkeypatch):
        monkeypatch.delenv("LINEAR_WEBHOOK_SECRET")
        config_module.reset_settings()
        body = linear_body()

        response = client.post("/webhooks/linear", content=body, headers=linear_headers(body))

        assert response.status_code == 500

    def test_unknown_organization_is_acknowledged(self, fake_redis, engine):
        body = linear_body(url="https://linear.app/unknown-org/issue/X-1")
        response = client.post("/webhooks/linear", content=body, headers=linear_headers(body))

        assert response.status_code == 200
        assert engine.calls == []

    def test_org_store_outage_asks_for_redelivery(self, org_account, engine, fake_redis):
        fake_redis.fail = True
        body = linear_body()

        response = client.post("/webhooks/linear", content=body, headers=linear_headers(body))

        assert response.status_code == 500
        assert response.json()["success"] is False

    def test_handler_failure_is_acknowledged(self, org_account, monkeypatch):
        monkeypatch.setattr(webhooks, "engine_for", lambda account: RecordingEngine(fail=True))
        body = linear_body()

        response = client.post("/webhooks/linear", content=body, headers=linear_headers(body))

        assert response.status_code == 200
        assert response.json() == {"success": True}

    def test_comment_create_is_relayed(self, org_account, engine, monkeypatch):
        relayed = []

        async def fake_relay(dispatcher, account, comment_id, issue_id=None):
            relayed.append((dispatcher, comment_id, issue_id))

        monkeypatch.setattr(webhooks, "handle_comment_to_email", fake_relay)
        body = linear_body("Comment", "create", {"id": "comment-9", "issueId": "issue-1"})

        client.post("/webhooks/linear", content=body, headers=linear_headers(body))

        assert relayed == [(engine.dispatcher, "comment-9", "issue-1")]
        assert engine.calls == []

    def test_project_update_is_enhanced(self, org_account, engine, monkeypatch):
        projects = []

        async def fake_project_change(store, model, meters, account, project_id):
            projects.append((store, project_id))

        monkeypatch.setattr(webhooks, "handle_project_change", fake_project_change)
        body = linear_body("Project", "update", {"id": "project-1"}, url="https://linear.app/acme/project/backend")

        client.post("/webhooks/linear", content=body, headers=linear_headers(body))

        assert projects == [(engine.store, "project-1")]


def test_route_ignores_unhandled_events(engine, account):
    assert asyncio.run(webhooks.route_linear_event({"type": "Cycle", "action": "update", "data": {"id": "c"}}, account)) is False
    assert asyncio.run(webhooks.route_linear_event({"type": "Issue", "action": "remove", "data": {"id": "i"}}, account)) is False
    assert asyncio.run(webhooks.route_linear_event({"type": "Issue", "action": "update", "data": {}}, account)) is False
    assert engine.calls == []


class TestInboundEmailWebhook:
    def test_received_email_is_handled(self, monkeypatch):
        received = []

        async def fake_handle(data, org_store, email_client, store_factory):
            received.append(data)
            return ReplyOutcome(added=True, issue_id="issue-1")

        monkeypatch.setattr(webhooks, "handle_email_received", fake_handle)
        body = json.dumps({"type": "email.received", "data": {"email_id": "em_1"}}).encode()

        response = client.post("/webhooks/email/inbound", content=body, headers=svix_headers(body))

        assert response.status_code == 200
        assert received == [{"email_id": "em_1"}]

    def test_other_events_are_ignored(self, monkeypatch):
        async def fail(*args):
            raise AssertionError("should not be called")

        monkeypatch.setattr(webhooks, "handle_email_received", fail)
        body = json.dumps({"type": "email.delivered", "data": {}}).encode()

        response = client.post("/webhooks/email/inbound", content=body, headers=svix_headers(body))

        assert response.status_code == 200

    def test_bad_signature(self):
        body = json.dumps({"type": "email.received", "data": {}}).encode()
        response = client.post("/webhooks/email/inbound", content=body, headers=svix_headers(body, key=b"other"))
        assert response.status_code == 401

    def test_store_failure_asks_for_redelivery(self, monkeypatch):
        async def broken(*args):
            raise RuntimeError("linear 502")

        monkeypatch.setattr(webhooks, "handle_email_received", broken)
        body = json.dumps({"type": "email.received", "data": {}}).encode()

        response = client.post("/webhooks/email/inbound", content=body, headers=svix_headers(body))

        assert response.status_code == 500


class TestVerification:
    def test_svix_old_timestamp(self):
        body = b"{}"
        headers = svix_headers(body, timestamp=1_000)
        with pytest.raises(WebhookAuthError) as exc_info:
            webhooks.verify_svix_signature(body, headers, RESEND_WEBHOOK_SECRET, now=1_000 + 301)
        assert exc_info.value.code == ErrorCode.STALE_EVENT

    def test_svix_within_tolerance(self):
        body = b"{}"
        headers = svix_headers(body, timestamp=1_000)
        webhooks.verify_svix_signature(body, headers, RESEND_WEBHOOK_SECRET, now=1_000 + 299)

    def test_svix_missing_headers(self):
        with pytest.raises(WebhookAuthError) as exc_info:
            webhooks.verify_svix_signature(b"{}", {}, RESEND_WEBHOOK_SECRET)
        assert exc_info.value.code == ErrorCode.MISSING_SIGNATURE

    def test_linear_timestamp_window(self):
        webhooks.check_webhook_timestamp({"webhookTimestamp": 1_000_000}, 60, now=1_030)
        with pytest.raises(WebhookAuthError):
            webhooks.check_webhook_timestamp({"webhookTimestamp": 1_000_000}, 60, now=1_061)
        with pytest.raises(WebhookAuthError):
            webhooks.check_webhook_timestamp({}, 60, now=1_000)

    @pytest.mark.parametrize(
        "url,slug",
        [
            ("https://linear.app/acme/issue/HIR-1/title", "acme"),
            ("https://linear.app/acme", "acme"),
            ("https://linear.app/", None),
            (None, None),
        ],
    )
    def test_org_slug_from_url(self, url, slug):
        assert webhooks.org_slug_from_url(url) == slug


class TestHealth:
    def test_healthy(self, monkeypatch):
        for key in ("POLAR_ACCESS_TOKEN", "RESEND_API_KEY", "LLM_API_KEY", "REDIS_URL"):
            monkeypatch.setenv(key, "set")
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["checks"]["redis"] == "ok"

    def test_degraded_when_redis_is_down(self, fake_redis, monkeypatch):
        for key in ("POLAR_ACCESS_TOKEN", "RESEND_API_KEY", "LLM_API_KEY", "REDIS_URL"):
            monkeypatch.setenv(key, "set")
        fake_redis.fail = True
        response = client.get("/health")
        assert response.status_code == 503
        assert response.json()["status"] == "degraded"
