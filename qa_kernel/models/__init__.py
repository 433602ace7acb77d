"""QA Kernel data models."""

from qa_kernel.models.config import (
    DecayScheduleConfig,
    KernelConfig,
    LearningConfig,
    MemoryConfig,
    RetryConfig,
)
from qa_kernel.models.feedback import (
    CalibrationHints,
    CalibrationStat,
    FeedbackContext,
    FeedbackDecision,
    FeedbackEvent,
    FeedbackMemory,
    FeedbackRecordResult,
    FeedbackSignal,
    OutcomeType,
    UserStrictness,
)
from qa_kernel.models.retry import (
    QAReason,
    QAStatus,
    QAVerdict,
    RetryAction,
    RetryDecision,
    RetryDelta,
    RetryEligibility,
    RetryState,
    RetrySuggestion,
    RetrySuggestionType,
    Severity,
    TaskStatus,
)
from qa_kernel.models.rule import (
    EscalationLevel,
    PipelineInstanceRule,
    PolicyRule,
    RuleChangeRecord,
    RuleChangeType,
    RuleOverride,
    RuleStatus,
    ScopeLevel,
    StrengthStage,
)

__all__ = [
    "CalibrationHints",
    "CalibrationStat",
    "DecayScheduleConfig",
    "EscalationLevel",
    "FeedbackContext",
    "FeedbackDecision",
    "FeedbackEvent",
    "FeedbackMemory",
    "FeedbackRecordResult",
    "FeedbackSignal",
    "KernelConfig",
    "LearningConfig",
    "MemoryConfig",
    "OutcomeType",
    "PipelineInstanceRule",
    "PolicyRule",
    "QAReason",
    "QAStatus",
    "QAVerdict",
    "RetryAction",
    "RetryConfig",
    "RetryDecision",
    "RetryDelta",
    "RetryEligibility",
    "RetryState",
    "RetrySuggestion",
    "RetrySuggestionType",
    "RuleChangeRecord",
    "RuleChangeType",
    "RuleOverride",
    "RuleStatus",
    "ScopeLevel",
    "Severity",
    "StrengthStage",
    "TaskStatus",
    "UserStrictness",
]
