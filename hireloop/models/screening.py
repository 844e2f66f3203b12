"""AI screening result model."""
from enum import Enum
from typing import List

from pydantic import Field, computed_field

from hireloop.models.base import HLBaseModel
from hireloop.models.records import CandidateStatus


class ScreeningConfidence(str, Enum):
    HIGH = "high"
    LOW = "low"
    AMBIGUOUS = "ambiguous"


CONFIDENCE_TO_STATUS = {
    ScreeningConfidence.HIGH: CandidateStatus.IN_PROGRESS,
    ScreeningConfidence.LOW: CandidateStatus.DECLINED,
    ScreeningConfidence.AMBIGUOUS: CandidateStatus.TRIAGE,
}


def status_for_confidence(confidence: ScreeningConfidence) -> CandidateStatus:
    return CONFIDENCE_TO_STATUS[ScreeningConfidence(confidence)]


class ScreeningResult(HLBaseModel):
    confidence: ScreeningConfidence
    reasoning: str = "No reasoning provided"
    matched_criteria: List[str] = Field(default_factory=list)
    concerns: List[str] = Field(default_factory=list)

    @computed_field
    @property
    def recommended_status(self) -> CandidateStatus:
        return status_for_confidence(self.confidence)
