"""QA Verdict and Retry State — inputs and outputs of the retry decision."""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class QAStatus(str, Enum):
    PASS = "PASS"
    FAIL = "FAIL"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class RetrySuggestionType(str, Enum):
    PROMPT_DELTA = "prompt_delta"
    SETTINGS_DELTA = "settings_delta"
    SEED_CHANGE = "seed_change"
    INPUT_CHANGE = "input_change"
    MANUAL_REVIEW = "manual_review"


class RetrySuggestion(BaseModel):
    type: RetrySuggestionType
    instruction: str = ""
    priority: Optional[int] = None


class QAReason(BaseModel):
    code: str                               # e.g., "GEOMETRY_DISTORTION"
    description: str = ""


class QAVerdict(BaseModel):
    """Structured machine-QA verdict. Severity and confidence are mandatory."""

    status: QAStatus
    severity: Severity
    confidence_score: float = Field(ge=0.0, le=1.0)
    retry_suggestion: RetrySuggestion
    reasons: List[QAReason] = []
    reason_short: str = ""


class TaskStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    QA_PASS = "qa_pass"
    QA_FAIL = "qa_fail"
    BLOCKED_FOR_HUMAN = "blocked_for_human"


TERMINAL_STATUSES = (TaskStatus.QA_PASS, TaskStatus.BLOCKED_FOR_HUMAN)


class RetryDelta(BaseModel):
    """What changes between one attempt and the next."""

    changes_made: List[str] = []
    prompt_adjustments: List[str] = []
    settings_adjustments: Dict[str, Any] = {}
    new_seed: Optional[int] = None


class RetryState(BaseModel):
    """Per generation task. Mutated once per attempt."""

    task_id: str
    step_id: Optional[int] = None
    attempt_count: int = Field(ge=0, default=0)
    max_attempts: int = Field(ge=1, default=5)
    auto_retry_enabled: bool = True
    current_status: TaskStatus = TaskStatus.PENDING
    last_verdict: Optional[QAVerdict] = None
    last_retry_delta: Optional[RetryDelta] = None
    created_at: datetime
    updated_at: datetime

    @property
    def is_terminal(self) -> bool:
        return self.current_status in TERMINAL_STATUSES


class RetryEligibility(BaseModel):
    eligible: bool
    reason: str


class RetryAction(str, Enum):
    PROCEED = "proceed"
    RETRY = "retry"
    BLOCK_FOR_HUMAN = "block_for_human"


class RetryDecision(BaseModel):
    """What the pipeline should do next. `reason` is shown to humans on block."""

    action: RetryAction
    eligible: bool
    reason: str
    retry_delay_seconds: Optional[int] = None
    retry_delta: Optional[RetryDelta] = None
