from hireloop.models.records import (
    Attachment,
    CandidateRecord,
    CandidateStatus,
    Comment,
    JobPosting,
    LabelSet,
    MeterBalance,
    RecordPatch,
    StateLabel,
)
from hireloop.models.screening import ScreeningConfidence, ScreeningResult

__all__ = [
    "Attachment",
    "CandidateRecord",
    "CandidateStatus",
    "Comment",
    "JobPosting",
    "LabelSet",
    "MeterBalance",
    "RecordPatch",
    "StateLabel",
    "ScreeningConfidence",
    "ScreeningResult",
]
