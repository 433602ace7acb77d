"""Feedback Event, calibration counters and the assembled feedback memory."""

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class FeedbackDecision(str, Enum):
    APPROVED = "approved"
    REJECTED = "rejected"


class FeedbackSignal(str, Enum):
    LIKE = "like"
    DISLIKE = "dislike"


class OutcomeType(str, Enum):
    FALSE_REJECT = "false_reject"           # QA rejected, human approved
    FALSE_APPROVE = "false_approve"         # QA approved, human rejected
    CONFIRMED_CORRECT = "confirmed_correct"


class UserStrictness(str, Enum):
    LENIENT = "lenient"
    BALANCED = "balanced"
    STRICT = "strict"


class FeedbackContext(BaseModel):
    """Snapshot of what the human was looking at."""

    model_config = ConfigDict(extra="allow", frozen=True)

    room_name: Optional[str] = None
    camera_id: Optional[str] = None
    space_type: Optional[str] = None
    change_request: Optional[str] = None
    render_kind: Optional[str] = None


class FeedbackEvent(BaseModel):
    """One immutable human signal. Append-only."""

    model_config = ConfigDict(frozen=True)

    id: str
    owner_id: str
    step_id: int
    pipeline_id: Optional[str] = None
    decision: FeedbackDecision
    signal: Optional[FeedbackSignal] = None     # Set for like/dislike votes
    score: Optional[int] = Field(default=None, ge=0, le=100)
    reason_text: str = ""
    category: str = "other"
    qa_original_status: Optional[str] = None    # "approved" | "rejected" | "pending"
    context: FeedbackContext = FeedbackContext()
    created_at: datetime


class CalibrationStat(BaseModel):
    """Per (owner, step, category) tally of how QA agreed with humans."""

    owner_id: str
    step_id: int
    category: str
    false_reject_count: int = 0
    false_approve_count: int = 0
    confirmed_correct_count: int = 0

    @property
    def total(self) -> int:
        return (
            self.false_reject_count
            + self.false_approve_count
            + self.confirmed_correct_count
        )


class CalibrationHints(BaseModel):
    false_reject_rate: int = 0              # Percent
    false_approve_rate: int = 0             # Percent
    user_strictness: UserStrictness = UserStrictness.BALANCED
    total_decisions: int = 0


class FeedbackMemory(BaseModel):
    """The bounded context assembled for the next generation/QA prompt."""

    owner_id: str
    step_id: int
    recent_examples: List[FeedbackEvent] = []
    learned_preferences: List[str] = []
    calibration_hints: CalibrationHints = CalibrationHints()
    examples_count: int = 0
    built_at: datetime


class FeedbackRecordResult(BaseModel):
    """What ingesting one feedback event changed."""

    event_id: str
    outcome_type: OutcomeType
    rule_id: Optional[str] = None
    rule_status: Optional[str] = None
    rule_created: bool = False
