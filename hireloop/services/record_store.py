"""
Record Store

Linear is the system of record for candidates (issues), job postings
(projects) and workflow status. The engine talks to it through the
RecordStore interface; LinearRecordStore implements it over Linear's
GraphQL API with httpx.

Every request goes through with_retry; GraphQL errors are raised as
CollaboratorError("linear", ...).
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import httpx

from hireloop.core.config import get_settings
from hireloop.models.records import (
    Attachment,
    CandidateRecord,
    CandidateStatus,
    Comment,
    JobPosting,
    LabelSet,
    RecordPatch,
)
from hireloop.services.errors import CollaboratorError
from hireloop.services.retry import raise_for_status, with_retry

logger = logging.getLogger(__name__)

LABEL_COLOR = "#5E6AD2"

# Workflow state type and color used when a team is missing one of ours
WORKFLOW_STATE_DETAILS = {
    CandidateStatus.TODO.value: ("unstarted", "#bec2c8"),
    CandidateStatus.TRIAGE.value: ("triage", "#f2c94c"),
    CandidateStatus.IN_PROGRESS.value: ("started", "#5e6ad2"),
    CandidateStatus.DECLINED.value: ("canceled", "#95a2b3"),
}


class RecordStore(ABC):
    """Read/write access to one organization's candidates and job postings."""

    @abstractmethod
    async def get_record(self, issue_id: str) -> Optional[CandidateRecord]:
        """Fetch an issue with its current status and labels."""

    @abstractmethod
    async def get_project(self, project_id: str) -> Optional[JobPosting]:
        """Fetch a project with its status, content, initiatives and labels."""

    @abstractmethod
    async def update_record(self, record: CandidateRecord, patch: RecordPatch) -> None:
        """
        Commit `patch` to `record` in one issue update.

        Labels outside the workflow vocabulary that are already on the issue
        are kept.
        """

    @abstractmethod
    async def add_comment(self, issue_id: str, body: str) -> Optional[str]:
        """Add a comment; returns the new comment id."""

    @abstractmethod
    async def update_comment(self, comment_id: str, body: str) -> None:
        ...

    @abstractmethod
    async def get_comment(self, comment_id: str) -> Optional[Comment]:
        ...

    @abstractmethod
    async def list_comments(self, issue_id: str) -> List[Comment]:
        """All comments on the issue, newest first."""

    @abstractmethod
    async def ensure_label(self, name: str) -> str:
        """Return the id of the workspace label `name`, creating it if needed."""

    @abstractmethod
    async def get_attachments(self, issue_id: str) -> List[Attachment]:
        ...

    @abstractmethod
    async def get_team_state_id(self, team_id: str, state_name: str) -> str:
        """Return the team's workflow state id for `state_name`, creating it if needed."""

    @abstractmethod
    async def get_organization_name(self) -> str:
        ...

    @abstractmethod
    async def ensure_project_label(self, name: str) -> str:
        """Return the id of the project label `name`, creating it if needed."""

    @abstractmethod
    async def update_project(self, project: JobPosting, content: str, label_ids: List[str]) -> None:
        ...


ISSUE_QUERY = """
query Issue($id: String!) {
  issue(id: $id) {
    id
    title
    description
    state { id name }
    team { id }
    project { id }
    labels { nodes { id name } }
  }
}
"""

PROJECT_QUERY = """
query Project($id: String!) {
  project(id: $id) {
    id
    name
    content
    description
    status { name }
    initiatives { nodes { id } }
    labels { nodes { id name } }
  }
}
"""

ISSUE_UPDATE_MUTATION = """
mutation IssueUpdate($id: String!, $input: IssueUpdateInput!) {
  issueUpdate(id: $id, input: $input) { success }
}
"""

COMMENT_CREATE_MUTATION = """
mutation CommentCreate($input: CommentCreateInput!) {
  commentCreate(input: $input) { success comment { id } }
}
"""

COMMENT_UPDATE_MUTATION = """
mutation CommentUpdate($id: String!, $input: CommentUpdateInput!) {
  commentUpdate(id: $id, input: $input) { success }
}
"""

COMMENT_QUERY = """
query Comment($id: String!) {
  comment(id: $id) {
    id
    body
    createdAt
    user { id name }
    issue { id }
  }
}
"""

ISSUE_COMMENTS_QUERY = """
query IssueComments($id: String!) {
  issue(id: $id) {
    comments(first: 100) { nodes { id body createdAt user { id name } } }
  }
}
"""

ISSUE_LABELS_QUERY = """
query IssueLabels($name: String!) {
  issueLabels(filter: { name: { eq: $name } }) { nodes { id name } }
}
"""

ISSUE_LABEL_CREATE_MUTATION = """
mutation IssueLabelCreate($input: IssueLabelCreateInput!) {
  issueLabelCreate(input: $input) { success issueLabel { id } }
}
"""

ATTACHMENTS_QUERY = """
query IssueAttachments($id: String!) {
  issue(id: $id) {
    attachments { nodes { id title url } }
  }
}
"""

TEAM_STATES_QUERY = """
query TeamStates($id: String!) {
  team(id: $id) {
    states { nodes { id name } }
  }
}
"""

WORKFLOW_STATE_CREATE_MUTATION = """
mutation WorkflowStateCreate($input: WorkflowStateCreateInput!) {
  workflowStateCreate(input: $input) { success workflowState { id } }
}
"""

ORGANIZATION_QUERY = """
query Organization {
  organization { id name urlKey }
}
"""

PROJECT_LABELS_QUERY = """
query ProjectLabels {
  projectLabels { nodes { id name } }
}
"""

PROJECT_LABEL_CREATE_MUTATION = """
mutation ProjectLabelCreate($input: ProjectLabelCreateInput!) {
  projectLabelCreate(input: $input) { success projectLabel { id } }
}
"""

PROJECT_UPDATE_MUTATION = """
mutation ProjectUpdate($id: String!, $input: ProjectUpdateInput!) {
  projectUpdate(id: $id, input: $input) { success }
}
"""


def _nodes(container: Optional[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return (container or {}).get("nodes") or []


def merge_label_ids(record: CandidateRecord, patch: RecordPatch, resolved: Dict[str, str]) -> List[str]:
    """Label ids after applying `patch`, keeping every label the patch does not remove."""
    removed = {label.value for label in patch.remove_labels}
    merged = {name: label_id for name, label_id in record.label_ids.items() if name not in removed}
    for label in patch.add_labels:
        merged[label.value] = resolved[label.value]
    return list(dict.fromkeys(merged.values()))


class LinearRecordStore(RecordStore):
    """
    RecordStore over the Linear GraphQL API.

    One instance per organization; the access token comes from the
    organization's stored config.
    """

    def __init__(self, access_token: str, api_url: Optional[str] = None, timeout: float = 30.0):
        self.api_url = api_url or get_settings().linear_api_url
        self.timeout = timeout
        self.headers = {
            "Authorization": f"Bearer {access_token}",
            "Content-Type": "application/json",
        }

    async def _execute(self, query: str, variables: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        async def _post() -> Dict[str, Any]:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    self.api_url,
                    headers=self.headers,
                    json={"query": query, "variables": variables or {}},
                )
            raise_for_status("linear", response)
            payload = response.json()
            if payload.get("errors"):
                message = "; ".join(e.get("message", "") for e in payload["errors"])
                raise CollaboratorError("linear", detail=message, status_code=400)
            return payload.get("data") or {}

        return await with_retry(_post, label="linear")

    async def get_record(self, issue_id: str) -> Optional[CandidateRecord]:
        data = await self._execute(ISSUE_QUERY, {"id": issue_id})
        issue = data.get("issue")
        if not issue:
            return None

        labels = _nodes(issue.get("labels"))
        state_name = (issue.get("state") or {}).get("name", "")
        return CandidateRecord(
            id=issue["id"],
            status=CandidateStatus.parse(state_name),
            status_name=state_name,
            labels=LabelSet.from_names(label["name"] for label in labels),
            description=issue.get("description") or "",
            title=issue.get("title") or "",
            project_id=(issue.get("project") or {}).get("id"),
            team_id=(issue.get("team") or {}).get("id"),
            label_ids={label["name"]: label["id"] for label in labels},
        )

    async def get_project(self, project_id: str) -> Optional[JobPosting]:
        data = await self._execute(PROJECT_QUERY, {"id": project_id})
        project = data.get("project")
        if not project:
            return None
        return JobPosting(
            id=project["id"],
            name=project.get("name") or "",
            status=(project.get("status") or {}).get("name", ""),
            content=project.get("content") or project.get("description") or "",
            initiative_ids=[node["id"] for node in _nodes(project.get("initiatives"))],
            label_ids={node["name"]: node["id"] for node in _nodes(project.get("labels"))},
        )

    async def update_record(self, record: CandidateRecord, patch: RecordPatch) -> None:
        update: Dict[str, Any] = {}
        if patch.status is not None:
            if not record.team_id:
                raise CollaboratorError("linear", detail=f"Issue {record.id} has no team")
            update["stateId"] = await self.get_team_state_id(record.team_id, patch.status.value)
        if patch.add_labels or patch.remove_labels:
            resolved = {label.value: await self.ensure_label(label.value) for label in patch.add_labels}
            update["labelIds"] = merge_label_ids(record, patch, resolved)
        if patch.description is not None:
            update["description"] = patch.description

        data = await self._execute(ISSUE_UPDATE_MUTATION, {"id": record.id, "input": update})
        if not (data.get("issueUpdate") or {}).get("success"):
            raise CollaboratorError("linear", detail=f"issueUpdate rejected for {record.id}", status_code=400)
        logger.info(f"Updated issue {record.id}: {sorted(update.keys())}")

    async def add_comment(self, issue_id: str, body: str) -> Optional[str]:
        data = await self._execute(COMMENT_CREATE_MUTATION, {"input": {"issueId": issue_id, "body": body}})
        result = data.get("commentCreate") or {}
        if not result.get("success"):
            return None
        return (result.get("comment") or {}).get("id")

    async def update_comment(self, comment_id: str, body: str) -> None:
        await self._execute(COMMENT_UPDATE_MUTATION, {"id": comment_id, "input": {"body": body}})

    async def get_comment(self, comment_id: str) -> Optional[Comment]:
        data = await self._execute(COMMENT_QUERY, {"id": comment_id})
        node = data.get("comment")
        if not node:
            return None
        return self._comment(node, issue_id=(node.get("issue") or {}).get("id"))

    async def list_comments(self, issue_id: str) -> List[Comment]:
        data = await self._execute(ISSUE_COMMENTS_QUERY, {"id": issue_id})
        nodes = _nodes((data.get("issue") or {}).get("comments"))
        comments = [self._comment(node, issue_id=issue_id) for node in nodes]
        comments.sort(key=lambda c: c.created_at, reverse=True)
        return comments

    async def ensure_label(self, name: str) -> str:
        data = await self._execute(ISSUE_LABELS_QUERY, {"name": name})
        for node in _nodes(data.get("issueLabels")):
            if node.get("name") == name:
                return node["id"]

        data = await self._execute(
            ISSUE_LABEL_CREATE_MUTATION,
            {"input": {"name": name, "color": LABEL_COLOR}},
        )
        label = (data.get("issueLabelCreate") or {}).get("issueLabel")
        if not label:
            raise CollaboratorError("linear", detail=f"Failed to ensure label: {name}", status_code=400)
        logger.info(f"Created label {name}")
        return label["id"]

    async def get_attachments(self, issue_id: str) -> List[Attachment]:
        data = await self._execute(ATTACHMENTS_QUERY, {"id": issue_id})
        nodes = _nodes((data.get("issue") or {}).get("attachments"))
        return [
            Attachment(id=node["id"], title=node.get("title") or "", url=node.get("url") or "")
            for node in nodes
        ]

    async def get_team_state_id(self, team_id: str, state_name: str) -> str:
        data = await self._execute(TEAM_STATES_QUERY, {"id": team_id})
        for node in _nodes((data.get("team") or {}).get("states")):
            if node.get("name", "").lower() == state_name.lower():
                return node["id"]

        state_type, color = WORKFLOW_STATE_DETAILS.get(state_name, ("unstarted", "#bec2c8"))
        data = await self._execute(
            WORKFLOW_STATE_CREATE_MUTATION,
            {"input": {"teamId": team_id, "name": state_name, "type": state_type, "color": color}},
        )
        state = (data.get("workflowStateCreate") or {}).get("workflowState")
        if not state:
            raise CollaboratorError("linear", detail=f"Failed to create state {state_name}", status_code=400)
        logger.info(f"Created workflow state {state_name} for team {team_id}")
        return state["id"]

    async def get_organization_name(self) -> str:
        data = await self._execute(ORGANIZATION_QUERY)
        return (data.get("organization") or {}).get("name") or ""

    async def ensure_project_label(self, name: str) -> str:
        data = await self._execute(PROJECT_LABELS_QUERY)
        for node in _nodes(data.get("projectLabels")):
            if node.get("name") == name:
                return node["id"]

        data = await self._execute(
            PROJECT_LABEL_CREATE_MUTATION,
            {"input": {"name": name, "color": LABEL_COLOR}},
        )
        label = (data.get("projectLabelCreate") or {}).get("projectLabel")
        if not label:
            raise CollaboratorError("linear", detail=f"Failed to ensure project label: {name}", status_code=400)
        logger.info(f"Created project label {name}")
        return label["id"]

    async def update_project(self, project: JobPosting, content: str, label_ids: List[str]) -> None:
        await self._execute(
            PROJECT_UPDATE_MUTATION,
            {"id": project.id, "input": {"content": content, "labelIds": label_ids}},
        )

    @staticmethod
    def _comment(node: Dict[str, Any], issue_id: Optional[str] = None) -> Comment:
        user = node.get("user") or {}
        return Comment(
            id=node["id"],
            body=node.get("body") or "",
            created_at=node.get("createdAt") or "",
            user_id=user.get("id"),
            user_name=user.get("name"),
            issue_id=issue_id,
        )
