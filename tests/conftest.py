"""
Shared fixtures: in-memory collaborators for the candidate workflow.

Every fake implements the same ABC as the production client, so the engine,
dispatcher and meter guard run unchanged against them.
"""
import base64
import dataclasses
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.append(str(ROOT))

from hireloop.core import config as config_module
from hireloop.core import redis as redis_module
from hireloop.core.org_config import OrganizationAccount
from hireloop.models.records import (
    Attachment,
    CandidateRecord,
    CandidateStatus,
    Comment,
    JobPosting,
    LabelSet,
    RecordPatch,
    StateLabel,
)
from hireloop.models.screening import ScreeningResult
from hireloop.services.ai_screening import ScreeningModel
from hireloop.services.billing import BillingClient
from hireloop.services.candidate_metadata import embed_candidate_metadata, generate_candidate_metadata
from hireloop.services.notifications import EmailClient, OutboundEmail
from hireloop.services.record_store import RecordStore

RESEND_SECRET_KEY = b"resend-test-signing-key"
RESEND_WEBHOOK_SECRET = "whsec_" + base64.b64encode(RESEND_SECRET_KEY).decode()


class FakeRedis:
    """Just enough of redis.asyncio.Redis for meters, sessions and org config."""

    def __init__(self):
        self.data: Dict[str, Any] = {}
        self.ttls: Dict[str, int] = {}
        self.fail = False

    def _check(self):
        if self.fail:
            raise RedisConnectionError("redis down")

    async def get(self, key):
        self._check()
        value = self.data.get(key)
        return None if value is None else str(value)

    async def set(self, key, value, nx=False, ex=None):
        self._check()
        if nx and key in self.data:
            return None
        self.data[key] = str(value)
        if ex is not None:
            self.ttls[key] = ex
        return True

    async def incr(self, key):
        self._check()
        self.data[key] = str(int(self.data.get(key, 0)) + 1)
        return int(self.data[key])

    async def decr(self, key):
        self._check()
        self.data[key] = str(int(self.data.get(key, 0)) - 1)
        return int(self.data[key])

    async def expire(self, key, seconds):
        self._check()
        self.ttls[key] = seconds
        return key in self.data

    async def exists(self, *keys):
        self._check()
        return sum(1 for key in keys if key in self.data)

    async def delete(self, *keys):
        self._check()
        removed = 0
        for key in keys:
            if self.data.pop(key, None) is not None:
                removed += 1
        return removed

    async def rpush(self, key, value):
        self._check()
        self.data.setdefault(key, []).append(value)
        return len(self.data[key])

    async def lpush(self, key, value):
        self._check()
        self.data.setdefault(key, []).insert(0, value)
        return len(self.data[key])

    async def lpop(self, key):
        self._check()
        items = self.data.get(key) or []
        if not items:
            return None
        return items.pop(0)

    async def lrange(self, key, start, end):
        self._check()
        items = self.data.get(key) or []
        return items[start:] if end == -1 else items[start:end + 1]

    async def ping(self):
        self._check()
        return True

    async def aclose(self):
        pass


class FakeRecordStore(RecordStore):
    def __init__(self):
        self.records: Dict[str, CandidateRecord] = {}
        self.projects: Dict[str, JobPosting] = {}
        self.comments: Dict[str, List[Comment]] = {}
        self.attachments: Dict[str, List[Attachment]] = {}
        self.updates: List[RecordPatch] = []
        self.project_updates: List[Dict[str, Any]] = []
        self.fail_update = False
        self._comment_seq = 0

    async def get_record(self, issue_id):
        # Callers get a snapshot, as they would from the API
        record = self.records.get(issue_id)
        if record is None:
            return None
        return dataclasses.replace(record, label_ids=dict(record.label_ids))

    async def get_project(self, project_id):
        return self.projects.get(project_id)

    async def update_record(self, record, patch):
        self.updates.append(patch)
        if self.fail_update:
            raise RuntimeError("issueUpdate failed")
        stored = self.records[record.id]
        if patch.status is not None:
            stored.status = patch.status
            stored.status_name = patch.status.value
        stored.labels = patch.apply_to(stored.labels)
        stored.label_ids = {name: f"label-{name}" for name in stored.labels.names()}
        if patch.description is not None:
            stored.description = patch.description

    async def add_comment(self, issue_id, body):
        self._comment_seq += 1
        comment = Comment(
            id=f"comment-{self._comment_seq}",
            body=body,
            created_at=f"2026-01-01T00:00:{self._comment_seq:02d}Z",
            issue_id=issue_id,
        )
        self.comments.setdefault(issue_id, []).append(comment)
        return comment.id

    async def update_comment(self, comment_id, body):
        for comments in self.comments.values():
            for comment in comments:
                if comment.id == comment_id:
                    comment.body = body
                    return

    async def get_comment(self, comment_id):
        for comments in self.comments.values():
            for comment in comments:
                if comment.id == comment_id:
                    return comment
        return None

    async def list_comments(self, issue_id):
        return sorted(self.comments.get(issue_id, []), key=lambda c: c.created_at, reverse=True)

    async def ensure_label(self, name):
        return f"label-{name}"

    async def get_attachments(self, issue_id):
        return list(self.attachments.get(issue_id, []))

    async def get_team_state_id(self, team_id, state_name):
        return f"state-{state_name}"

    async def get_organization_name(self):
        return "Acme"

    async def update_project(self, project, content, label_ids):
        self.project_updates.append({"id": project.id, "content": content, "label_ids": label_ids})

    async def ensure_project_label(self, name):
        return f"project-label-{name}"

    def comment_bodies(self, issue_id: str) -> List[str]:
        return [c.body for c in self.comments.get(issue_id, [])]


class FakeBilling(BillingClient):
    def __init__(self, balances=None, benefits=None):
        self.balances: Dict[str, int] = dict(balances or {})
        self.benefits = set(benefits or [])
        self.fail_balance = False
        self.fail_ingest = False
        self.ingested: List[Dict[str, Any]] = []
        self.balance_calls = 0

    async def get_balance(self, tenant, meter_name):
        self.balance_calls += 1
        if self.fail_balance:
            raise ConnectionError("polar unreachable")
        return self.balances.get(meter_name, 0)

    async def list_meter_balances(self, tenant):
        if self.fail_balance:
            raise ConnectionError("polar unreachable")
        return [{"meter_name": name, "balance": balance} for name, balance in self.balances.items()]

    async def ingest_usage_event(self, event):
        if self.fail_ingest:
            raise ConnectionError("polar unreachable")
        self.ingested.append(event)

    async def has_benefit(self, tenant, benefit_id):
        return benefit_id in self.benefits


class FakeModel(ScreeningModel):
    def __init__(self, result: Optional[ScreeningResult] = None, error: Optional[Exception] = None):
        self.result = result or ScreeningResult(confidence="high", reasoning="Strong match")
        self.error = error
        self.pointers = ["Ask about the payments migration", "Probe on-call experience", "Discuss notice period"]
        self.pointer_error: Optional[Exception] = None
        self.score_calls = 0
        self.enhance_calls = 0

    async def score(self, candidate_text, job_text):
        self.score_calls += 1
        if self.error:
            raise self.error
        return self.result

    async def generate_pointers(self, job_text, candidate_text):
        if self.pointer_error:
            raise self.pointer_error
        return list(self.pointers)

    async def enhance_job_description(self, content, tone_of_voice=""):
        self.enhance_calls += 1
        if self.error:
            raise self.error
        return f"# Enhanced\n\n{content}"


class FakeEmailClient(EmailClient):
    def __init__(self):
        self.sent: List[OutboundEmail] = []
        self.fail = False
        self.received: Dict[str, str] = {}

    async def send(self, email):
        if self.fail:
            raise ConnectionError("resend unreachable")
        self.sent.append(email)
        return f"msg-{len(self.sent)}"

    async def get_received_email_text(self, email_id):
        return self.received.get(email_id)


CANDIDATE_DESCRIPTION = embed_candidate_metadata(
    "**Name:** Ada Lovelace\n**Email:** ada@example.com\n\nSenior backend engineer, 8 years of Python.",
    generate_candidate_metadata("Ada Lovelace", "ada@example.com"),
)

JOB_CONTENT = "# Backend Engineer\n\nWe need 5+ years of Python and distributed systems experience."


def make_record(status=CandidateStatus.TODO, labels=(StateLabel.NEW,), description=CANDIDATE_DESCRIPTION, **kwargs):
    label_set = LabelSet.of(*labels)
    return CandidateRecord(
        id=kwargs.pop("id", "issue-1"),
        status=status,
        status_name=status.value if status else "",
        labels=label_set,
        description=description,
        title="Ada Lovelace",
        project_id=kwargs.pop("project_id", "project-1"),
        team_id="team-1",
        label_ids={name: f"label-{name}" for name in label_set.names()},
        **kwargs,
    )


def make_project(**kwargs):
    return JobPosting(
        id=kwargs.pop("id", "project-1"),
        name=kwargs.pop("name", "Backend Engineer"),
        status=kwargs.pop("status", "In Progress"),
        content=kwargs.pop("content", JOB_CONTENT),
        initiative_ids=kwargs.pop("initiative_ids", ["initiative-ats"]),
        label_ids=kwargs.pop("label_ids", {}),
    )


@pytest.fixture(autouse=True)
def settings(monkeypatch):
    monkeypatch.setenv("LINEAR_WEBHOOK_SECRET", "linear-secret")
    monkeypatch.setenv("RESEND_WEBHOOK_SECRET", RESEND_WEBHOOK_SECRET)
    monkeypatch.setenv("POLAR_EMAIL_COMMUNICATION_BENEFIT_ID", "benefit-email")
    monkeypatch.setenv("POLAR_AI_SCREENING_BENEFIT_ID", "benefit-ai")
    monkeypatch.setenv("RESEND_REPLY_DOMAIN", "replies.hireloop.test")
    monkeypatch.setenv("APP_URL", "https://app.hireloop.test")
    monkeypatch.delenv("ADMIN_ALERT_WEBHOOK_URL", raising=False)
    config_module.reset_settings()
    yield config_module.get_settings()
    config_module.reset_settings()


@pytest.fixture(autouse=True)
def fake_redis():
    client = FakeRedis()
    redis_module.set_redis(client)
    yield client
    redis_module.set_redis(None)


@pytest.fixture
def account():
    return OrganizationAccount(
        access_token="lin_oauth_token",
        org_id="org-uuid-1",
        org_slug="acme",
        org_name="Acme",
        ats_container_id="initiative-ats",
    )


@pytest.fixture
def store():
    store = FakeRecordStore()
    store.projects["project-1"] = make_project()
    return store


@pytest.fixture
def billing():
    return FakeBilling(
        balances={"candidate_screenings": 5, "job_descriptions": 2},
        benefits={"benefit-email", "benefit-ai"},
    )


@pytest.fixture
def model():
    return FakeModel()


@pytest.fixture
def email_client():
    return FakeEmailClient()
