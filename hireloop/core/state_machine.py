"""
Candidate Workflow State Machine

Advances a candidate issue one step per webhook delivery. The current state
is read fresh from Linear (status + workflow labels); nothing is cached
between deliveries.

    Todo + New                       -> parse CV / cover letter
    Todo + Processed                 -> AI screening (metered)
    In Progress + Pre-screened       -> AI screening interview invitation
    Declined                         -> rejection email

Each step commits exactly one issue update. Linear emits an update webhook
for every write, so a second write in the same step would re-enter the
machine. Trace comments and emails go out after the commit; they never
touch status or labels.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from hireloop.core.org_config import OrganizationAccount
from hireloop.models.records import (
    Attachment,
    CandidateRecord,
    CandidateStatus,
    JobPosting,
    LabelSet,
    RecordPatch,
    StateLabel,
)
from hireloop.services.ai_screening import (
    ScreeningModel,
    format_pointers,
    format_reasoning_comment,
    generate_pointers_with_fallback,
    get_screening_model,
)
from hireloop.services.billing import BillingClient, get_billing_client
from hireloop.services.candidate_metadata import extract_candidate_contact, get_clean_description
from hireloop.services.document_parser import fetch_and_parse
from hireloop.services.interview_sessions import (
    ScreeningSession,
    create_screening_session,
    session_link,
)
from hireloop.services.notifications import (
    EmailClient,
    EmailKind,
    NotificationDispatcher,
    ResendEmailClient,
)
from hireloop.services.record_store import RecordStore
from hireloop.services.usage_meters import UsageMeterGuard, get_usage_meter_guard

logger = logging.getLogger(__name__)

SCREENING_METER = "candidate_screenings"

INSUFFICIENT_BALANCE_COMMENT = (
    "*Candidate screening skipped due to insufficient balance. Manual review required.*"
)
MISSING_CONTENT_COMMENT = (
    "*Candidate screening skipped: the job description or the candidate application is empty. "
    "Manual review required.*"
)


class Transition(str, Enum):
    PROCESS_DOCUMENTS = "process_documents"
    RUN_SCREENING = "run_screening"
    SEND_SCREENING_INVITATION = "send_screening_invitation"
    SEND_REJECTION = "send_rejection"
    NONE = "none"


def decide_transition(status: Optional[CandidateStatus], labels: LabelSet) -> Transition:
    """Pick the step for a record from its status and workflow labels alone."""
    if status == CandidateStatus.TODO:
        if labels.has(StateLabel.NEW):
            return Transition.PROCESS_DOCUMENTS
        if labels.has(StateLabel.PROCESSED):
            return Transition.RUN_SCREENING
        return Transition.NONE

    if status == CandidateStatus.IN_PROGRESS:
        if labels.has(StateLabel.PRE_SCREENED) and not labels.has(StateLabel.SCREENING_INVITATION_SENT):
            return Transition.SEND_SCREENING_INVITATION
        return Transition.NONE

    if status == CandidateStatus.DECLINED and not labels.has(StateLabel.REJECTION_EMAIL_SENT):
        return Transition.SEND_REJECTION

    return Transition.NONE


@dataclass
class EngineOutcome:
    """What one engine invocation did, for logs and tests."""

    transition: Transition
    committed: bool = False
    patch: Optional[RecordPatch] = None
    notes: List[str] = field(default_factory=list)


@dataclass
class _Step:
    """A branch's single patch plus the side-channel work to run after it commits."""

    patch: RecordPatch
    comments: List[str] = field(default_factory=list)
    notifications: List[Tuple[EmailKind, Dict[str, Any]]] = field(default_factory=list)
    notes: List[str] = field(default_factory=list)


def select_documents(attachments: List[Attachment]) -> Tuple[Optional[Attachment], Optional[Attachment]]:
    """First CV/resume and first cover letter attachment, by title."""
    cv = None
    cover_letter = None
    for attachment in attachments:
        title = attachment.title.lower()
        if cv is None and ("cv" in title or "resume" in title):
            cv = attachment
        elif cover_letter is None and "cover letter" in title:
            cover_letter = attachment
    return cv, cover_letter


class TransitionEngine:
    """Runs the candidate state machine for one organization."""

    def __init__(
        self,
        store: RecordStore,
        billing: Optional[BillingClient] = None,
        meters: Optional[UsageMeterGuard] = None,
        model: Optional[ScreeningModel] = None,
        email_client: Optional[EmailClient] = None,
        redis=None,
    ):
        self.store = store
        self.billing = billing or get_billing_client()
        self.meters = meters or get_usage_meter_guard()
        self.model = model or get_screening_model()
        self.redis = redis
        self.dispatcher = NotificationDispatcher(store, self.billing, email_client or ResendEmailClient())

    async def handle_issue_update(self, account: OrganizationAccount, issue_id: str) -> EngineOutcome:
        """Advance `issue_id` by at most one step."""
        record = await self.store.get_record(issue_id)
        if record is None:
            logger.error(f"Issue {issue_id} not found")
            return EngineOutcome(Transition.NONE, notes=["issue_not_found"])

        project = await self._scoped_project(account, record)
        if project is None:
            return EngineOutcome(Transition.NONE, notes=["out_of_scope"])

        transition = decide_transition(record.status, record.labels)
        if transition == Transition.NONE:
            logger.info(
                f"No transition for {issue_id} (status={record.status_name!r}, labels={record.labels.names()})"
            )
            return EngineOutcome(transition)

        logger.info(f"Running {transition.value} for {issue_id}")
        started = time.time()
        if transition == Transition.PROCESS_DOCUMENTS:
            step = await self._process_documents(account, record, project)
        elif transition == Transition.RUN_SCREENING:
            step = await self._run_screening(account, record, project)
        elif transition == Transition.SEND_SCREENING_INVITATION:
            step = await self._prepare_invitation(account, record, project)
        else:
            step = await self._prepare_rejection(account, record, project)

        outcome = EngineOutcome(transition, patch=step.patch, notes=step.notes)
        if not step.patch.is_empty():
            try:
                await self.store.update_record(record, step.patch)
                outcome.committed = True
            except Exception as e:
                logger.error(f"Failed to commit {transition.value} for {issue_id}: {e}")
                outcome.notes.append("commit_failed")
                return outcome

        await self._run_side_channel(account, record, step)
        logger.info(
            f"Completed {transition.value} for {issue_id} in {(time.time() - started) * 1000:.0f}ms"
        )
        return outcome

    async def _scoped_project(self, account: OrganizationAccount, record: CandidateRecord) -> Optional[JobPosting]:
        if not record.project_id:
            logger.info(f"Issue {record.id} has no project, skipping")
            return None
        project = await self.store.get_project(record.project_id)
        if project is None:
            logger.warning(f"Project {record.project_id} for issue {record.id} not found")
            return None
        if not account.ats_container_id or account.ats_container_id not in project.initiative_ids:
            logger.info(f"Project {project.id} is outside the ATS container, skipping {record.id}")
            return None
        return project

    async def _run_side_channel(self, account: OrganizationAccount, record: CandidateRecord, step: _Step) -> None:
        for body in step.comments:
            try:
                await self.store.add_comment(record.id, body)
            except Exception as e:
                logger.error(f"Failed to add trace comment to {record.id}: {e}")
        for kind, context in step.notifications:
            result = await self.dispatcher.send(kind, account, record, context)
            if result.sent:
                step.notes.append(f"{kind.value}_sent")

    async def _organization_name(self, account: OrganizationAccount) -> str:
        if account.org_name:
            return account.org_name
        try:
            return await self.store.get_organization_name() or "Our Team"
        except Exception as e:
            logger.warning(f"Could not fetch organization name: {e}")
            return "Our Team"

    async def _process_documents(
        self,
        account: OrganizationAccount,
        record: CandidateRecord,
        project: JobPosting,
    ) -> _Step:
        try:
            attachments = await self.store.get_attachments(record.id)
        except Exception as e:
            logger.error(f"Failed to list attachments for {record.id}: {e}")
            attachments = []

        cv, cover_letter = select_documents(attachments)
        sections = []
        for attachment, heading, default_name in (
            (cv, "CV Content", "cv.pdf"),
            (cover_letter, "Cover Letter Content", "cover-letter.pdf"),
        ):
            if attachment is None or not attachment.url:
                continue
            try:
                text = await fetch_and_parse(attachment.url, attachment.title or default_name)
            except Exception as e:
                logger.error(f"Failed to parse {attachment.title!r} on {record.id}: {e}")
                continue
            sections.append(f"## {heading}\n\n{text}\n\n")

        patch = RecordPatch(
            add_labels=[StateLabel.PROCESSED],
            remove_labels=[StateLabel.NEW],
        )
        if sections:
            patch.description = f"{record.description}\n\n---\n\n{''.join(sections)}"

        step = _Step(patch=patch, notes=[f"documents_parsed:{len(sections)}"])
        step.notifications.append((EmailKind.CONFIRMATION, {
            "position_title": project.name or "Position",
            "organization_name": await self._organization_name(account),
        }))
        return step

    async def _run_screening(
        self,
        account: OrganizationAccount,
        record: CandidateRecord,
        project: JobPosting,
    ) -> _Step:
        pre_screened = dict(add_labels=[StateLabel.PRE_SCREENED], remove_labels=[StateLabel.PROCESSED])

        check = await self.meters.check_and_reserve(account.org_id, SCREENING_METER)
        if not check.allowed:
            logger.warning(f"Insufficient screening balance for {account.org_id}, moving {record.id} to Triage")
            return _Step(
                patch=RecordPatch(status=CandidateStatus.TRIAGE, **pre_screened),
                comments=[INSUFFICIENT_BALANCE_COMMENT],
                notes=["meter_denied"],
            )

        candidate_text = get_clean_description(record.description).strip()
        job_text = project.content.strip()
        if not candidate_text or not job_text:
            logger.error(
                f"Missing content for screening {record.id} "
                f"(candidate={bool(candidate_text)}, job={bool(job_text)})"
            )
            await self.meters.release(account.org_id, SCREENING_METER, degraded=check.degraded)
            return _Step(
                patch=RecordPatch(status=CandidateStatus.TRIAGE, **pre_screened),
                comments=[MISSING_CONTENT_COMMENT],
                notes=["missing_content"],
            )

        try:
            result = await self.model.score(candidate_text, job_text)
        except Exception as e:
            logger.error(f"AI screening failed for {record.id}: {e}")
            await self.meters.release(account.org_id, SCREENING_METER, degraded=check.degraded)
            return _Step(
                patch=RecordPatch(status=CandidateStatus.TRIAGE, **pre_screened),
                comments=[f"*AI pre-screening failed. Error: {e}. Manual review required.*"],
                notes=["screening_failed"],
            )

        await self.meters.record_usage_event(
            account.org_id, SCREENING_METER, {"issue_id": record.id, "confidence": result.confidence.value}
        )
        return _Step(
            patch=RecordPatch(status=result.recommended_status, **pre_screened),
            comments=[format_reasoning_comment(result)],
            notes=[f"confidence:{result.confidence.value}"],
        )

    async def _prepare_invitation(
        self,
        account: OrganizationAccount,
        record: CandidateRecord,
        project: JobPosting,
    ) -> _Step:
        patch = RecordPatch(add_labels=[StateLabel.SCREENING_INVITATION_SENT])

        if not await self.dispatcher.has_benefit(EmailKind.SCREENING_INVITATION, account):
            logger.info(f"{account.org_slug} lacks the AI screening benefit, marking {record.id} without invitation")
            return _Step(patch=patch, notes=["benefit_not_granted"])

        contact = extract_candidate_contact(record.description)
        if contact is None:
            logger.error(f"No candidate contact on {record.id}, marking without invitation")
            return _Step(patch=patch, notes=["no_contact"])

        candidate_text = record.description
        pointers = await generate_pointers_with_fallback(self.model, project.content, candidate_text)
        organization_name = await self._organization_name(account)

        try:
            secret = await create_screening_session(
                ScreeningSession(
                    linear_org=account.org_slug,
                    issue_id=record.id,
                    candidate_name=contact["name"],
                    candidate_email=contact["email"],
                    company_name=organization_name,
                    job_description=project.content,
                    candidate_application=candidate_text,
                    conversation_pointers=format_pointers(pointers),
                ),
                redis=self.redis,
            )
        except Exception as e:
            # No label: the next delivery retries the invitation.
            logger.error(f"Failed to create screening session for {record.id}: {e}")
            return _Step(
                patch=RecordPatch(),
                comments=[f"*Failed to create AI screening session. Error: {e}*"],
                notes=["session_failed"],
            )

        context = {
            "position_title": project.name or "Position",
            "organization_name": organization_name,
            "session_link": session_link(secret),
            "secret": secret,
        }
        return _Step(patch=patch, notifications=[(EmailKind.SCREENING_INVITATION, context)])

    async def _prepare_rejection(
        self,
        account: OrganizationAccount,
        record: CandidateRecord,
        project: JobPosting,
    ) -> _Step:
        context = {
            "position_title": project.name or "Position",
            "organization_name": await self._organization_name(account),
        }
        return _Step(
            patch=RecordPatch(add_labels=[StateLabel.REJECTION_EMAIL_SENT]),
            notifications=[(EmailKind.REJECTION, context)],
        )
