"""
Strength & Escalation State Machine.

Two classifiers read the same violation counter but serve different readers:

  strength_stage   — how forcefully a human is warned (nudge/check/guard/law)
  escalation_level — which prompt section the rule text lands in
                     (body/critical/system)

They are computed independently. Escalation is deliberately not gated by
confidence: a low-confidence rule still earns prompt visibility, it just
never blocks a human.

Both functions are pure and idempotent; recomputing from the same inputs
always yields the same answer.
"""

from typing import Optional

from qa_kernel.models.config import LearningConfig
from qa_kernel.models.rule import EscalationLevel, PolicyRule, StrengthStage

_DEFAULT_CONFIG = LearningConfig()


def calculate_strength_stage(
    violation_count: int,
    confidence_score: float,
    config: Optional[LearningConfig] = None,
) -> StrengthStage:
    """
    Automatic strength. Never returns LAW; that stage is manual only.
    Low-confidence rules stay at NUDGE no matter how often they fire.
    """
    cfg = config or _DEFAULT_CONFIG
    if confidence_score < cfg.min_confidence_for_blocking:
        return StrengthStage.NUDGE
    if violation_count >= cfg.strength_guard_threshold:
        return StrengthStage.GUARD
    if violation_count >= cfg.strength_check_threshold:
        return StrengthStage.CHECK
    return StrengthStage.NUDGE


def calculate_escalation_level(
    violation_count: int,
    config: Optional[LearningConfig] = None,
) -> EscalationLevel:
    """Prompt placement. Has no effect on whether a human is blocked."""
    cfg = config or _DEFAULT_CONFIG
    if violation_count >= cfg.escalation_system_threshold:
        return EscalationLevel.SYSTEM
    if violation_count >= cfg.escalation_critical_threshold:
        return EscalationLevel.CRITICAL
    return EscalationLevel.BODY


def enforce_confidence_cap(
    rule: PolicyRule, config: Optional[LearningConfig] = None
) -> PolicyRule:
    """Drop any rule below the blocking confidence back to NUDGE, LAW included."""
    cfg = config or _DEFAULT_CONFIG
    if rule.confidence_score < cfg.min_confidence_for_blocking:
        rule.strength_stage = StrengthStage.NUDGE
    return rule


def classify(rule: PolicyRule, config: Optional[LearningConfig] = None) -> PolicyRule:
    """
    Recompute both classifications from the rule's counters.
    A manually promoted LAW survives as long as confidence holds.
    """
    cfg = config or _DEFAULT_CONFIG
    keep_law = (
        rule.strength_stage == StrengthStage.LAW
        and rule.confidence_score >= cfg.min_confidence_for_blocking
    )
    if not keep_law:
        rule.strength_stage = calculate_strength_stage(
            rule.violation_count, rule.confidence_score, cfg
        )
    rule.escalation_level = calculate_escalation_level(rule.violation_count, cfg)
    return rule


def ordinal(n: int) -> str:
    """1 -> '1st', 2 -> '2nd', 11 -> '11th'."""
    if 10 <= n % 100 <= 20:
        suffix = "th"
    else:
        suffix = {1: "st", 2: "nd", 3: "rd"}.get(n % 10, "th")
    return f"{n}{suffix}"
