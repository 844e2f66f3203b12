"""
Candidate Notifications

Transactional email to candidates through Resend templates:
- confirmation: application received
- rejection: application declined
- screening_invitation: link to the AI screening interview
- comment: a recruiter's issue comment relayed by email

Every send is gated on the organization's benefit (fail-closed) and leaves
a trace comment on the issue. The trace comment is created before sending
so its id can be encoded in the reply-to address; its `Message-ID:` footer
is filled in once the provider returns an id.
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

import httpx

from hireloop.core.config import get_settings
from hireloop.core.org_config import OrganizationAccount
from hireloop.models.records import CandidateRecord, StateLabel
from hireloop.services.billing import (
    BillingClient,
    check_ai_screening_benefit,
    check_email_communication_benefit,
)
from hireloop.services.candidate_metadata import extract_candidate_contact
from hireloop.services.email_threading import (
    build_thread_references,
    generate_reply_to_address,
    get_last_message_id,
)
from hireloop.services.errors import NotificationError
from hireloop.services.record_store import RecordStore
from hireloop.services.retry import raise_for_status, with_retry

logger = logging.getLogger(__name__)


class EmailKind(str, Enum):
    CONFIRMATION = "confirmation"
    REJECTION = "rejection"
    SCREENING_INVITATION = "screening_invitation"
    COMMENT = "comment"


@dataclass(frozen=True)
class EmailTemplate:
    subject: str
    heading: str
    note: str = ""
    benefit: str = "email_communication"
    sent_label: Optional[StateLabel] = None


TEMPLATES: Dict[EmailKind, EmailTemplate] = {
    EmailKind.CONFIRMATION: EmailTemplate(
        subject="Application Received - {position_title}",
        heading="Confirmation email sent to {email}",
        note="Replies to this email will be added as comments to this issue.",
    ),
    EmailKind.REJECTION: EmailTemplate(
        subject="Update on your application for {position_title}",
        heading="Rejection email sent to {email}",
        note="This candidate has been notified of the decision.",
        sent_label=StateLabel.REJECTION_EMAIL_SENT,
    ),
    EmailKind.SCREENING_INVITATION: EmailTemplate(
        subject="AI Screening Interview - {position_title}",
        heading="AI Screening invitation sent to {email}",
        note="The candidate has been invited to complete an AI-powered screening interview.",
        benefit="ai_screening",
        sent_label=StateLabel.SCREENING_INVITATION_SENT,
    ),
    EmailKind.COMMENT: EmailTemplate(
        subject="Update on your application for {position_title}",
        heading="Comment email sent to {email} by {commenter_name}",
    ),
}

FAILURE_NAMES = {
    EmailKind.CONFIRMATION: "confirmation",
    EmailKind.REJECTION: "rejection",
    EmailKind.SCREENING_INVITATION: "AI screening invitation",
    EmailKind.COMMENT: "comment",
}


@dataclass
class DispatchResult:
    sent: bool
    message_id: Optional[str] = None
    skipped_reason: Optional[str] = None
    error: Optional[str] = None


@dataclass
class OutboundEmail:
    to: str
    subject: str
    template_id: str
    variables: Dict[str, str]
    reply_to: Optional[str] = None
    headers: Dict[str, str] = field(default_factory=dict)
    idempotency_key: Optional[str] = None
    tags: List[Dict[str, str]] = field(default_factory=list)


class EmailClient(ABC):
    """Outbound transactional email."""

    @abstractmethod
    async def send(self, email: OutboundEmail) -> str:
        """Send `email`; returns the provider message id."""

    @abstractmethod
    async def get_received_email_text(self, email_id: str) -> Optional[str]:
        """Plain-text body of an inbound email."""


class ResendEmailClient(EmailClient):
    """
    Client for the Resend API.

    Resend API: https://resend.com/docs/api-reference
    """

    def __init__(self, api_key: Optional[str] = None, api_url: Optional[str] = None):
        settings = get_settings()
        self.api_key = api_key or settings.resend_api_key
        self.api_url = (api_url or settings.resend_api_url).rstrip("/")
        self.from_email = settings.resend_from_email
        if not self.api_key:
            logger.warning("Resend API key not configured")
        self.headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    async def send(self, email: OutboundEmail) -> str:
        payload: Dict[str, Any] = {
            "from": self.from_email,
            "to": [email.to],
            "subject": email.subject,
            "template": {"id": email.template_id, "variables": email.variables},
            "headers": email.headers,
            "tags": email.tags,
        }
        if email.reply_to:
            payload["reply_to"] = email.reply_to
        headers = dict(self.headers)
        if email.idempotency_key:
            headers["Idempotency-Key"] = email.idempotency_key

        async def _post() -> str:
            async with httpx.AsyncClient(timeout=15.0) as client:
                response = await client.post(f"{self.api_url}/emails", headers=headers, json=payload)
            raise_for_status("resend", response)
            return response.json().get("id") or "unknown"

        message_id = await with_retry(_post, label="resend.send")
        logger.info(f"Email sent to {email.to}: {email.subject} ({message_id})")
        return message_id

    async def get_received_email_text(self, email_id: str) -> Optional[str]:
        async def _get() -> Optional[str]:
            async with httpx.AsyncClient(timeout=15.0) as client:
                response = await client.get(
                    f"{self.api_url}/emails/receiving/{email_id}", headers=self.headers
                )
            if response.status_code == 404:
                return None
            raise_for_status("resend", response)
            return response.json().get("text")

        return await with_retry(_get, label="resend.receiving")


def trace_comment_body(kind: EmailKind, email: str, message_id: str, context: Dict[str, Any]) -> str:
    template = TEMPLATES[kind]
    parts = [f"*{template.heading.format(email=email, **_string_context(context))}*"]
    if template.note:
        parts.append(template.note)
    if context.get("secret"):
        parts.append(f"Secret: {context['secret'][:8]}...")
    parts.append("---")
    parts.append(f"Message-ID: {message_id}")
    return "\n\n".join(parts)


def failure_comment_body(kind: EmailKind, email: str, error: str) -> str:
    return f"*Failed to send {FAILURE_NAMES[kind]} email to {email}. Error: {error}*"


def threading_headers(kind: EmailKind, comment_bodies: List[str]) -> Dict[str, str]:
    """Email headers for a send, given the issue's comment bodies newest first."""
    headers = {"X-Email-Type": kind.value}
    last_message_id = get_last_message_id(comment_bodies)
    references = build_thread_references(comment_bodies)
    if last_message_id:
        headers["In-Reply-To"] = f"<{last_message_id}>"
    if references:
        headers["References"] = " ".join(f"<{ref}>" for ref in references)
    return headers


def _string_context(context: Dict[str, Any]) -> Dict[str, str]:
    return {key: str(value) for key, value in context.items() if value is not None}


class NotificationDispatcher:
    """Sends one kind of candidate email for one issue, with its trace comments."""

    def __init__(self, store: RecordStore, billing: BillingClient, email_client: EmailClient):
        self.store = store
        self.billing = billing
        self.email_client = email_client

    async def has_benefit(self, kind: EmailKind, account: OrganizationAccount) -> bool:
        if TEMPLATES[kind].benefit == "ai_screening":
            return await check_ai_screening_benefit(self.billing, account.org_id)
        return await check_email_communication_benefit(self.billing, account.org_id)

    async def send(
        self,
        kind: EmailKind,
        account: OrganizationAccount,
        record: CandidateRecord,
        context: Dict[str, Any],
    ) -> DispatchResult:
        """
        Send `kind` to the candidate on `record`. Never raises.

        `context` supplies template variables: position_title and
        organization_name always, session_link and secret for invitations,
        comment_body and commenter_name for relayed comments.
        """
        template = TEMPLATES[kind]
        if template.sent_label and record.labels.has(template.sent_label):
            logger.info(f"{kind.value} already sent for {record.id} (label present), skipping")
            return DispatchResult(sent=False, skipped_reason="already_sent")

        if not await self.has_benefit(kind, account):
            logger.info(f"{account.org_slug} lacks {template.benefit} benefit, skipping {kind.value} email")
            return DispatchResult(sent=False, skipped_reason="benefit_not_granted")

        contact = extract_candidate_contact(record.description)
        if not contact:
            logger.error(f"Could not extract candidate contact from {record.id}, skipping {kind.value} email")
            return DispatchResult(sent=False, skipped_reason="no_contact")
        email = contact["email"]

        try:
            return await self._send(kind, account, record, context, contact)
        except Exception as e:
            logger.error(f"Failed to send {kind.value} email for {record.id}: {e}")
            await self._add_failure_comment(kind, record.id, email, str(e))
            return DispatchResult(sent=False, error=str(e))

    async def _send(
        self,
        kind: EmailKind,
        account: OrganizationAccount,
        record: CandidateRecord,
        context: Dict[str, Any],
        contact: Dict[str, str],
    ) -> DispatchResult:
        template = TEMPLATES[kind]
        email = contact["email"]

        comment_id = await self.store.add_comment(
            record.id, trace_comment_body(kind, email, "pending", context)
        )
        if not comment_id:
            raise NotificationError(kind.value, "could not create trace comment")

        comments = await self.store.list_comments(record.id)
        headers = threading_headers(kind, [c.body for c in comments])

        template_id = get_settings().template_ids.get(kind.value, "")
        variables = {
            "candidate_name": contact["name"],
            "organization_name": context.get("organization_name") or "Our Team",
            "position_title": context.get("position_title") or "Position",
        }
        for key in ("session_link", "comment_body", "commenter_name"):
            if context.get(key):
                variables[key] = str(context[key])

        message_id = await self.email_client.send(OutboundEmail(
            to=email,
            subject=template.subject.format(**{**variables, **_string_context(context)}),
            template_id=template_id,
            variables=variables,
            reply_to=generate_reply_to_address(account.org_slug, comment_id),
            headers=headers,
            idempotency_key=context.get("idempotency_key") or f"{kind.value}-{record.id}",
            tags=[{"name": "type", "value": kind.value}],
        ))

        try:
            await self.store.update_comment(
                comment_id, trace_comment_body(kind, email, message_id, context)
            )
        except Exception as e:
            # The email went out; only the footer is stale.
            logger.error(f"Failed to record Message-ID {message_id} on {comment_id}: {e}")

        logger.info(f"{kind.value} email sent for {record.id} ({message_id})")
        return DispatchResult(sent=True, message_id=message_id)

    async def _add_failure_comment(self, kind: EmailKind, issue_id: str, email: str, error: str) -> None:
        try:
            await self.store.add_comment(issue_id, failure_comment_body(kind, email, error))
        except Exception as e:
            logger.error(f"Failed to add email failure comment to {issue_id}: {e}")
