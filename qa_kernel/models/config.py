"""Kernel configuration — thresholds for learning, decay, retry and memory."""

from typing import List

from pydantic import BaseModel, Field

from qa_kernel.models.retry import RetrySuggestionType, Severity


class LearningConfig(BaseModel):
    """Rule lifecycle, strength, escalation and decay thresholds."""

    promotion_min_pipelines: int = 3        # Distinct runs before user scope
    pipeline_rule_visibility_min_triggers: int = 2

    strength_check_threshold: int = 3
    strength_guard_threshold: int = 6
    escalation_critical_threshold: int = 2
    escalation_system_threshold: int = 4

    min_confidence_for_blocking: float = Field(ge=0.0, le=1.0, default=0.7)
    min_confidence_sample: int = 5

    time_decay_per_day: int = 2
    good_behavior_decay: int = 5
    false_positive_decay: int = 30
    guard_demotion_health: int = 30
    check_demotion_health: int = 15
    decay_window_hours: int = 24
    decay_window_grace_minutes: int = 30   # Scheduler jitter tolerated before a day is skipped

    activation_support_threshold: int = 3   # Pending -> active
    rule_similarity_threshold: float = 0.6
    min_rule_text_length: int = 10

    max_cas_retries: int = 5


class RetryConfig(BaseModel):
    """Retry engine safety rules."""

    default_max_attempts_per_step: int = 5
    max_total_attempts_per_run: int = 20
    base_retry_delay_seconds: int = 2
    max_retry_delay_seconds: int = 30
    blocking_severities: List[Severity] = [Severity.CRITICAL]
    blocking_suggestions: List[RetrySuggestionType] = [
        RetrySuggestionType.MANUAL_REVIEW,
    ]
    min_confidence_for_auto_retry: float = 0.3


class MemoryConfig(BaseModel):
    """Feedback memory bounds."""

    default_limit: int = 20
    max_preferences: int = 10
    max_rule_preferences: int = 5
    max_pattern_preferences: int = 8
    min_rule_support: int = 2
    min_pattern_count: int = 2
    max_examples_in_prompt: int = 5
    max_block_chars: int = 2048


class DecayScheduleConfig(BaseModel):
    cron: str = "0 3 * * *"                 # Daily, 03:00 UTC


class KernelConfig(BaseModel):
    learning: LearningConfig = LearningConfig()
    retry: RetryConfig = RetryConfig()
    memory: MemoryConfig = MemoryConfig()
    schedule: DecayScheduleConfig = DecayScheduleConfig()
