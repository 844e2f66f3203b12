"""
Candidate workflow records as read from (and written back to) Linear.

Issues are candidates, projects are job postings. Workflow state is the
pair (status, labels); there is no private database.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, FrozenSet, Iterable, List, Optional


class CandidateStatus(str, Enum):
    TODO = "Todo"
    TRIAGE = "Triage"
    IN_PROGRESS = "In Progress"
    DECLINED = "Declined"

    @classmethod
    def parse(cls, name: Optional[str]) -> Optional["CandidateStatus"]:
        for status in cls:
            if status.value == name:
                return status
        return None


class StateLabel(str, Enum):
    NEW = "New"
    PROCESSED = "Processed"
    PRE_SCREENED = "Pre-screened"
    REJECTION_EMAIL_SENT = "Rejection-Email-Sent"
    SCREENING_INVITATION_SENT = "Screening-Invitation-Sent"

    @classmethod
    def parse(cls, name: str) -> Optional["StateLabel"]:
        for label in cls:
            if label.value == name:
                return label
        return None


@dataclass(frozen=True)
class LabelSet:
    """Immutable set of workflow labels. Names outside the vocabulary are dropped."""

    labels: FrozenSet[StateLabel] = frozenset()

    @classmethod
    def from_names(cls, names: Iterable[str]) -> "LabelSet":
        parsed = (StateLabel.parse(name) for name in names)
        return cls(frozenset(label for label in parsed if label is not None))

    @classmethod
    def of(cls, *labels: StateLabel) -> "LabelSet":
        return cls(frozenset(labels))

    def has(self, label: StateLabel) -> bool:
        return label in self.labels

    def with_label(self, label: StateLabel) -> "LabelSet":
        return LabelSet(self.labels | {label})

    def without(self, label: StateLabel) -> "LabelSet":
        return LabelSet(self.labels - {label})

    def names(self) -> List[str]:
        return sorted(label.value for label in self.labels)

    def __contains__(self, label: object) -> bool:
        return label in self.labels

    def __len__(self) -> int:
        return len(self.labels)


@dataclass
class CandidateRecord:
    """A candidate issue. `label_ids` maps every label name on the issue to its id."""

    id: str
    status: Optional[CandidateStatus]
    labels: LabelSet
    description: str = ""
    title: str = ""
    project_id: Optional[str] = None
    team_id: Optional[str] = None
    label_ids: Dict[str, str] = field(default_factory=dict)
    status_name: str = ""


@dataclass
class Comment:
    id: str
    body: str
    created_at: str = ""
    user_id: Optional[str] = None
    user_name: Optional[str] = None
    issue_id: Optional[str] = None


@dataclass
class Attachment:
    id: str
    title: str
    url: str


@dataclass
class JobPosting:
    """A job posting (Linear project)."""

    id: str
    name: str
    status: str
    content: str = ""
    initiative_ids: List[str] = field(default_factory=list)
    label_ids: Dict[str, str] = field(default_factory=dict)


@dataclass
class MeterBalance:
    remote_balance: int
    local_reservation: Optional[int] = None
    degraded: bool = False


@dataclass
class RecordPatch:
    """
    The one composite mutation an engine invocation commits.

    Label changes are expressed as names; the record store resolves them to
    ids and merges them with the labels already on the issue, so labels set
    by people are never dropped.
    """

    status: Optional[CandidateStatus] = None
    add_labels: List[StateLabel] = field(default_factory=list)
    remove_labels: List[StateLabel] = field(default_factory=list)
    description: Optional[str] = None

    def is_empty(self) -> bool:
        return (
            self.status is None
            and not self.add_labels
            and not self.remove_labels
            and self.description is None
        )

    def apply_to(self, labels: LabelSet) -> LabelSet:
        result = labels
        for label in self.remove_labels:
            result = result.without(label)
        for label in self.add_labels:
            result = result.with_label(label)
        return result
