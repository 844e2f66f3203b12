import asyncio
import json

import httpx
import pytest

from conftest import make_record
from hireloop.models.records import CandidateStatus, RecordPatch, StateLabel
from hireloop.services import record_store
from hireloop.services.errors import CollaboratorError
from hireloop.services.record_store import LinearRecordStore, merge_label_ids

ISSUE = {
    "id": "issue-1",
    "title": "Ada Lovelace",
    "description": "Bio",
    "state": {"id": "state-todo", "name": "Todo"},
    "team": {"id": "team-1"},
    "project": {"id": "project-1"},
    "labels": {"nodes": [
        {"id": "lbl-new", "name": "New"},
        {"id": "lbl-urgent", "name": "Urgent"},
    ]},
}


class FakeLinear:
    """Answers GraphQL operations by name and records every request."""

    def __init__(self, responses):
        self.responses = responses
        self.requests = []

    def __call__(self, request):
        body = json.loads(request.content)
        self.requests.append(body)
        for name, data in self.responses.items():
            if name in body["query"]:
                if isinstance(data, httpx.Response):
                    return data
                return httpx.Response(200, json={"data": data})
        return httpx.Response(200, json={"errors": [{"message": "unexpected query"}]})

    def operations(self):
        return [body["query"].split("(")[0].split()[-1] for body in self.requests]


@pytest.fixture
def linear(monkeypatch):
    def install(responses):
        fake = FakeLinear(responses)
        real_client = httpx.AsyncClient
        monkeypatch.setattr(
            record_store.httpx,
            "AsyncClient",
            lambda **kwargs: real_client(transport=httpx.MockTransport(fake), **kwargs),
        )
        return fake

    return install


def test_get_record(linear):
    linear({"query Issue(": {"issue": ISSUE}})
    record = asyncio.run(LinearRecordStore("token").get_record("issue-1"))

    assert record.status == CandidateStatus.TODO
    assert record.labels.names() == ["New"]
    assert record.label_ids == {"New": "lbl-new", "Urgent": "lbl-urgent"}
    assert record.project_id == "project-1"


def test_unknown_status_is_kept_by_name(linear):
    linear({"query Issue(": {"issue": {**ISSUE, "state": {"id": "s", "name": "Backlog"}}}})
    record = asyncio.run(LinearRecordStore("token").get_record("issue-1"))
    assert record.status is None
    assert record.status_name == "Backlog"


def test_update_record_is_one_mutation(linear):
    fake = linear({
        "query TeamStates(": {"team": {"states": {"nodes": [{"id": "state-triage", "name": "Triage"}]}}},
        "query IssueLabels(": {"issueLabels": {"nodes": [{"id": "lbl-pre", "name": "Pre-screened"}]}},
        "mutation IssueUpdate(": {"issueUpdate": {"success": True}},
    })
    record = make_record(labels=(StateLabel.NEW,))
    record.label_ids = {"New": "lbl-new", "Urgent": "lbl-urgent"}
    patch = RecordPatch(
        status=CandidateStatus.TRIAGE,
        add_labels=[StateLabel.PRE_SCREENED],
        remove_labels=[StateLabel.NEW],
    )

    asyncio.run(LinearRecordStore("token").update_record(record, patch))

    assert fake.operations().count("IssueUpdate") == 1
    update = fake.requests[-1]["variables"]["input"]
    assert update["stateId"] == "state-triage"
    assert update["labelIds"] == ["lbl-urgent", "lbl-pre"]
    assert "description" not in update


def test_missing_label_is_created(linear):
    fake = linear({
        "query IssueLabels(": {"issueLabels": {"nodes": []}},
        "mutation IssueLabelCreate(": {"issueLabelCreate": {"success": True, "issueLabel": {"id": "lbl-created"}}},
    })
    assert asyncio.run(LinearRecordStore("token").ensure_label("Processed")) == "lbl-created"
    assert fake.requests[-1]["variables"]["input"]["color"] == "#5E6AD2"


def test_graphql_errors_raise(linear):
    linear({})
    with pytest.raises(CollaboratorError) as exc_info:
        asyncio.run(LinearRecordStore("token").get_record("issue-1"))
    assert exc_info.value.detail == "unexpected query"


def test_comments_are_newest_first(linear):
    linear({"query IssueComments(": {"issue": {"comments": {"nodes": [
        {"id": "c1", "body": "first", "createdAt": "2026-01-01T10:00:00Z", "user": {"id": "u1", "name": "Grace"}},
        {"id": "c2", "body": "second", "createdAt": "2026-01-02T10:00:00Z", "user": None},
    ]}}}})
    comments = asyncio.run(LinearRecordStore("token").list_comments("issue-1"))
    assert [c.id for c in comments] == ["c2", "c1"]
    assert comments[1].user_name == "Grace"
    assert comments[0].issue_id == "issue-1"


def test_merge_label_ids_keeps_foreign_labels():
    record = make_record(labels=(StateLabel.PROCESSED,))
    record.label_ids = {"Processed": "lbl-proc", "Senior": "lbl-senior"}
    patch = RecordPatch(add_labels=[StateLabel.PRE_SCREENED], remove_labels=[StateLabel.PROCESSED])

    assert merge_label_ids(record, patch, {"Pre-screened": "lbl-pre"}) == ["lbl-senior", "lbl-pre"]
