"""
Candidate metadata embedded in issue descriptions.

Contact details live in an HTML comment at the top of the description so
they survive people editing the markdown around them:

    <!-- candidate-metadata:{"email": ..., "name": ..., "threadId": ...} -->
"""
from __future__ import annotations

import json
import re
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

METADATA_VERSION = 1

_METADATA_PATTERN = re.compile(r"<!-- candidate-metadata:(.+?) -->")
_METADATA_BLOCK = re.compile(r"<!-- candidate-metadata:.+? -->\n?\n?")
_NAME_LINE = re.compile(r"^\s*\*{0,2}Name:?\*{0,2}:?\s*(.+)", re.IGNORECASE | re.MULTILINE)
_EMAIL_LINE = re.compile(
    r"^\s*\*{0,2}Email:?\*{0,2}:?\s*\[?([a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,})",
    re.IGNORECASE | re.MULTILINE,
)
_ANY_EMAIL = re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}")


@dataclass
class CandidateMetadata:
    email: str
    name: str
    thread_id: str
    created_at: str
    version: int = METADATA_VERSION

    def to_json(self) -> str:
        return json.dumps({
            "email": self.email,
            "name": self.name,
            "threadId": self.thread_id,
            "createdAt": self.created_at,
            "version": self.version,
        })

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Optional["CandidateMetadata"]:
        email = data.get("email")
        name = data.get("name")
        thread_id = data.get("threadId")
        if not email or not name or not thread_id:
            return None
        return cls(
            email=email,
            name=name,
            thread_id=thread_id,
            created_at=data.get("createdAt", ""),
            version=int(data.get("version", METADATA_VERSION)),
        )


def generate_candidate_metadata(name: str, email: str) -> CandidateMetadata:
    return CandidateMetadata(
        email=email,
        name=name,
        thread_id=str(uuid.uuid4()),
        created_at=datetime.now(timezone.utc).isoformat(),
    )


def embed_candidate_metadata(description: str, metadata: CandidateMetadata) -> str:
    return f"<!-- candidate-metadata:{metadata.to_json()} -->\n\n{description}"


def extract_candidate_metadata(description: Optional[str]) -> Optional[CandidateMetadata]:
    """Return the embedded metadata, or None when absent or malformed."""
    if not description:
        return None
    match = _METADATA_PATTERN.search(description)
    if not match:
        return None
    try:
        data = json.loads(match.group(1))
    except json.JSONDecodeError:
        return None
    if not isinstance(data, dict):
        return None
    return CandidateMetadata.from_dict(data)


def update_candidate_metadata(description: str, **changes: Any) -> str:
    existing = extract_candidate_metadata(description)
    if existing is None:
        raise ValueError("No existing candidate metadata found in description")
    merged = CandidateMetadata(**{**asdict(existing), **changes})
    return embed_candidate_metadata(_METADATA_BLOCK.sub("", description, count=1), merged)


def get_clean_description(description: str) -> str:
    return _METADATA_BLOCK.sub("", description or "", count=1).strip()


def extract_candidate_contact(description: Optional[str]) -> Optional[Dict[str, str]]:
    """
    Candidate name and email from an issue description.

    Prefers the embedded metadata block; falls back to `Name:` / `Email:`
    markdown lines, then to any email-looking token, for issues created
    before metadata existed.
    """
    metadata = extract_candidate_metadata(description)
    if metadata:
        return {"name": metadata.name, "email": metadata.email}
    if not description:
        return None

    email_match = _EMAIL_LINE.search(description) or _ANY_EMAIL.search(description)
    if not email_match:
        return None
    email = email_match.group(1) if email_match.re is _EMAIL_LINE else email_match.group(0)

    name_match = _NAME_LINE.search(description)
    name = name_match.group(1).strip().strip("*").strip() if name_match else "Candidate"
    return {"name": name, "email": email}
