"""
Comment-to-email relay.

A recruiter's comment on a candidate issue is emailed to the candidate,
threaded onto the earlier emails of the conversation. Comments written by
this service (trace notes, screening results) are recognised and skipped.
"""
import logging
from typing import Optional

from hireloop.core.org_config import OrganizationAccount
from hireloop.services.notifications import DispatchResult, EmailKind, NotificationDispatcher

logger = logging.getLogger(__name__)

SYSTEM_MARKERS = (
    "This candidate was automatically added",
    "AI Pre-screening Result",
    "Confirmation email sent",
    "Failed to send confirmation email",
    "Comment email sent",
)


def is_system_comment(body: str) -> bool:
    """True for comments posted by this service rather than by a person."""
    if "Message-ID:" in body:
        return True
    trimmed = body.strip()
    if trimmed.startswith("*") and "*" in trimmed[1:]:
        return True
    return any(marker in body for marker in SYSTEM_MARKERS)


async def handle_comment_to_email(
    dispatcher: NotificationDispatcher,
    account: OrganizationAccount,
    comment_id: str,
    issue_id: Optional[str] = None,
) -> Optional[DispatchResult]:
    """Send comment `comment_id` to the candidate. Returns None when nothing was attempted."""
    store = dispatcher.store
    comment = await store.get_comment(comment_id)
    if comment is None:
        logger.error(f"Comment {comment_id} not found")
        return None

    if is_system_comment(comment.body):
        logger.info(f"Skipping system comment {comment_id}")
        return None

    issue_id = issue_id or comment.issue_id
    if not issue_id:
        logger.error(f"Comment {comment_id} is not attached to an issue")
        return None

    record = await store.get_record(issue_id)
    if record is None:
        logger.error(f"Issue {issue_id} not found")
        return None
    if not record.project_id:
        logger.info(f"Issue {issue_id} has no project, skipping comment relay")
        return None

    project = await store.get_project(record.project_id)
    if project is None or not account.ats_container_id or account.ats_container_id not in project.initiative_ids:
        logger.info(f"Issue {issue_id} is outside the ATS container, skipping comment relay")
        return None

    result = await dispatcher.send(
        EmailKind.COMMENT,
        account,
        record,
        {
            "position_title": project.name or "Position",
            "organization_name": account.org_name or None,
            "comment_body": comment.body,
            "commenter_name": comment.user_name or "Team Member",
            "idempotency_key": f"comment-{comment_id}",
        },
    )
    if result.sent:
        logger.info(f"Relayed comment {comment_id} on {issue_id} ({result.message_id})")
    return result
