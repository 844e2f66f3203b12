"""
Inbound email replies.

Candidates reply to `{org_slug}+{comment_id}@{reply domain}`. The comment id
leads back to the issue, and the cleaned reply is added to it as a comment
with a From / Message-ID footer so later outbound emails thread onto it.
"""
import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from hireloop.core.config import get_settings
from hireloop.core.org_config import OrganizationAccount, OrgConfigStore
from hireloop.services.email_threading import (
    clean_email_content,
    format_email_comment_with_metadata,
    parse_reply_to_address,
)
from hireloop.services.notifications import EmailClient
from hireloop.services.record_store import RecordStore

logger = logging.getLogger(__name__)

_SENDER_NAME = re.compile(r"^(.+?)\s*<.+>$")


@dataclass
class ReplyOutcome:
    added: bool
    reason: Optional[str] = None
    issue_id: Optional[str] = None


def find_reply_address(recipients: List[str], reply_domain: Optional[str] = None) -> Optional[str]:
    domain = reply_domain or get_settings().resend_reply_domain
    for address in recipients:
        if domain in address:
            return address
    return None


def sender_display_name(sender: str) -> str:
    match = _SENDER_NAME.match(sender)
    return match.group(1).strip() if match else sender


def reply_message_id(sender: str, now_ms: Optional[int] = None) -> str:
    """Stable-enough id for a reply comment: sender without punctuation plus a ms timestamp."""
    now_ms = now_ms if now_ms is not None else int(time.time() * 1000)
    return f"{re.sub(r'[^a-z0-9]', '', sender, flags=re.IGNORECASE)}_{now_ms}"


async def handle_email_received(
    data: Dict[str, Any],
    org_store: OrgConfigStore,
    email_client: EmailClient,
    store_factory: Callable[[OrganizationAccount], RecordStore],
) -> ReplyOutcome:
    """
    Add an inbound reply to its issue.

    Unroutable emails are logged and dropped. Record store failures are
    raised so the provider redelivers.
    """
    sender = data.get("from") or ""
    recipients = data.get("to") or []
    if isinstance(recipients, str):
        recipients = [recipients]

    address = find_reply_address(recipients)
    if address is None:
        logger.error(f"No reply address in recipients {recipients} from {sender}")
        return ReplyOutcome(added=False, reason="no_reply_address")

    parsed = parse_reply_to_address(address)
    if parsed is None:
        logger.error(f"Could not parse reply address {address} - orphaned email")
        return ReplyOutcome(added=False, reason="unparseable_address")

    account = await org_store.get(parsed["org_slug"])
    if account is None:
        logger.error(f"No org config for {parsed['org_slug']} - orphaned email")
        return ReplyOutcome(added=False, reason="unknown_org")

    store = store_factory(account)
    comment = await store.get_comment(parsed["comment_id"])
    if comment is None or not comment.issue_id:
        logger.error(f"Comment {parsed['comment_id']} not found - orphaned email")
        return ReplyOutcome(added=False, reason="unknown_thread")

    email_id = data.get("email_id")
    try:
        raw = await email_client.get_received_email_text(email_id) if email_id else data.get("text")
    except Exception as e:
        logger.error(f"Error reading received email {email_id}: {e}")
        return ReplyOutcome(added=False, reason="unreadable", issue_id=comment.issue_id)

    if not raw:
        logger.warning(f"Email from {sender} has no content")
        return ReplyOutcome(added=False, reason="empty", issue_id=comment.issue_id)

    body = format_email_comment_with_metadata(
        clean_email_content(raw),
        sender_display_name(sender),
        reply_message_id(sender),
    )
    await store.add_comment(comment.issue_id, body)
    logger.info(f"Added email reply from {sender} to issue {comment.issue_id}")
    return ReplyOutcome(added=True, issue_id=comment.issue_id)
