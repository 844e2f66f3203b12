"""
Email threading without a database.

Everything needed to route a reply back to its issue is carried by the
email itself and by the issue's comments:
- the reply-to address encodes the org slug and the trace comment id
  (`acme+comment_xyz@replies.example.com`)
- each trace comment ends with a `Message-ID:` footer, so the comment
  history doubles as the thread's header chain
"""
import logging
import re
from typing import Dict, List, Optional, Sequence

from hireloop.core.config import get_settings

logger = logging.getLogger(__name__)

_REPLY_TO_PATTERN = re.compile(r"^([^+]+)\+([^@]+)@")
_MESSAGE_ID_PATTERN = re.compile(r"Message-ID:\s*<?([^>\s]+)>?", re.IGNORECASE)

# Footer values written before the provider id is known, or when it never was
PLACEHOLDER_MESSAGE_IDS = {"pending", "unknown"}


def generate_reply_to_address(org_slug: str, comment_id: str, domain: Optional[str] = None) -> str:
    domain = domain or get_settings().resend_reply_domain
    return f"{org_slug}+{comment_id}@{domain}"


def parse_reply_to_address(email: str) -> Optional[Dict[str, str]]:
    """Split `org+comment@domain` into its org slug and comment id."""
    match = _REPLY_TO_PATTERN.match(email.strip()) if email else None
    if not match:
        logger.warning(f"Failed to parse reply-to address: {email}")
        return None
    return {"org_slug": match.group(1), "comment_id": match.group(2)}


def extract_message_id_from_comment(comment_body: str) -> Optional[str]:
    match = _MESSAGE_ID_PATTERN.search(comment_body or "")
    if not match:
        return None
    message_id = match.group(1)
    if message_id.lower() in PLACEHOLDER_MESSAGE_IDS:
        return None
    return message_id


def get_last_message_id(comments: Sequence[str]) -> Optional[str]:
    """First Message-ID found in `comments` (newest first), for In-Reply-To."""
    for body in comments:
        message_id = extract_message_id_from_comment(body)
        if message_id:
            return message_id
    return None


def build_thread_references(comments: Sequence[str]) -> List[str]:
    """
    Every Message-ID in the history, oldest first, for the References header.

    `comments` is newest first, the same order get_last_message_id takes.
    """
    message_ids = [
        message_id
        for message_id in (extract_message_id_from_comment(body) for body in comments)
        if message_id
    ]
    message_ids.reverse()
    return message_ids


def clean_email_content(email_body: str) -> str:
    """Strip quoted history, signature separators and HTML from a reply."""
    cleaned = re.sub(r"^>.*$", "", email_body, flags=re.MULTILINE)
    cleaned = re.sub(r"On .+? wrote:", "", cleaned, flags=re.IGNORECASE)
    cleaned = re.sub(r"^--\s*$", "", cleaned, flags=re.MULTILINE)
    cleaned = re.sub(r"\n{3,}", "\n\n", cleaned)
    cleaned = re.sub(r"<[^>]*>", "", cleaned)
    return cleaned.strip()


def format_email_comment_with_metadata(email_body: str, sender_name: str, message_id: str) -> str:
    return f"{email_body}\n\n---\n\nFrom: {sender_name}\nMessage-ID: {message_id}"
