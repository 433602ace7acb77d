"""Policy Rule — a durable constraint learned from human feedback."""

from datetime import datetime
from enum import Enum
from typing import Optional, Tuple

from pydantic import BaseModel, Field


class ScopeLevel(str, Enum):
    PIPELINE = "pipeline"   # One pipeline run only
    USER = "user"           # Personal, learned across runs
    GLOBAL = "global"       # Shared by every owner


class StrengthStage(str, Enum):
    """UI-facing severity. Controls how forcefully a human is warned."""
    NUDGE = "nudge"   # Hint only
    CHECK = "check"   # Warn before proceeding
    GUARD = "guard"   # Block unless overridden
    LAW = "law"       # Manual promotion only


class EscalationLevel(str, Enum):
    """Prompt placement. Higher sections get more model attention."""
    BODY = "body"
    CRITICAL = "critical"
    SYSTEM = "system"


class RuleStatus(str, Enum):
    ACTIVE = "active"
    PENDING = "pending"
    DISABLED = "disabled"   # Terminal, kept for audit


class PolicyRule(BaseModel):
    """A learned textual constraint with a lifecycle, strength, health and confidence."""

    id: str
    owner_id: str
    scope_level: ScopeLevel = ScopeLevel.USER
    step_id: Optional[int] = None           # None = applies to every step
    category: str                           # e.g., "geometry", "room_type"
    rule_text: str
    status: RuleStatus = RuleStatus.ACTIVE

    violation_count: int = Field(ge=0, default=1)
    support_count: int = Field(ge=0, default=1)   # Human confirmations
    strength_stage: StrengthStage = StrengthStage.NUDGE
    escalation_level: EscalationLevel = EscalationLevel.BODY

    health: int = Field(ge=0, le=100, default=100)
    confidence_score: float = Field(ge=0.0, le=1.0, default=1.0)
    triggered_count: int = Field(ge=0, default=0)
    approved_despite_trigger: int = Field(ge=0, default=0)
    rejected_due_to_trigger: int = Field(ge=0, default=0)

    user_muted: bool = False
    user_locked: bool = False

    source_pipeline_id: Optional[str] = None
    created_at: datetime
    last_triggered_at: Optional[datetime] = None
    last_health_decay_at: Optional[datetime] = None
    version: int = 0                        # Optimistic concurrency token

    @property
    def key(self) -> Tuple[str, str, str, Optional[int]]:
        return (self.scope_level.value, self.category, self.rule_text, self.step_id)

    @property
    def decay_exempt(self) -> bool:
        return self.user_muted or self.user_locked

    @property
    def is_disabled(self) -> bool:
        return self.status == RuleStatus.DISABLED


class PipelineInstanceRule(BaseModel):
    """Ephemeral counterpart of a PolicyRule, scoped to one pipeline run."""

    id: str
    pipeline_id: str
    owner_id: str
    step_id: int
    category: str
    rule_text: str
    trigger_count: int = Field(ge=1, default=1)
    first_triggered_at: datetime
    last_triggered_at: datetime
    closed_at: Optional[datetime] = None    # Set when the run completes


class RuleChangeType(str, Enum):
    ACTIVATION = "activation"           # pending -> active
    ESCALATION = "escalation"           # body -> critical -> system
    STRENGTH = "strength"               # nudge -> check -> guard (and back)
    SCOPE_PROMOTION = "scope_promotion" # pipeline -> user -> global
    DISABLED = "disabled"               # health reached 0 or profile reset


class RuleChangeRecord(BaseModel):
    """Audit row. Shows the rule set changing over time."""

    id: str
    rule_id: str
    owner_id: str
    change_type: RuleChangeType
    from_value: Optional[str] = None
    to_value: Optional[str] = None
    trigger_reason: str                 # e.g., "4th violation", "3 pipelines"
    rule_text: str
    category: str
    violation_count: int = 0
    support_count: int = 0
    created_at: datetime


class RuleOverride(BaseModel):
    """A human clicked "proceed anyway" past a warning."""

    id: str
    rule_id: str
    pipeline_id: str
    owner_id: str
    step_id: Optional[int] = None
    strength_stage: StrengthStage
    override_reason: Optional[str] = None
    created_at: datetime
