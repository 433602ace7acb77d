"""Tests for the strength & escalation state machine."""

from datetime import datetime

import pytest

from qa_kernel.learning.strength import (
    calculate_escalation_level,
    calculate_strength_stage,
    classify,
    enforce_confidence_cap,
    ordinal,
)
from qa_kernel.models.rule import EscalationLevel, PolicyRule, StrengthStage


def _make_rule(**overrides) -> PolicyRule:
    data = dict(
        id="rule_1",
        owner_id="owner_1",
        step_id=2,
        category="geometry",
        rule_text="Preserve angled walls",
        created_at=datetime.utcnow(),
    )
    data.update(overrides)
    return PolicyRule(**data)


class TestStrengthStage:
    @pytest.mark.parametrize("violations,expected", [
        (0, StrengthStage.NUDGE),
        (1, StrengthStage.NUDGE),
        (2, StrengthStage.NUDGE),
        (3, StrengthStage.CHECK),
        (5, StrengthStage.CHECK),
        (6, StrengthStage.GUARD),
        (100, StrengthStage.GUARD),
    ])
    def test_thresholds_at_full_confidence(self, violations, expected):
        assert calculate_strength_stage(violations, 1.0) == expected

    @pytest.mark.parametrize("violations", [1, 3, 6, 50, 1000])
    def test_low_confidence_is_always_nudge(self, violations):
        assert calculate_strength_stage(violations, 0.69) == StrengthStage.NUDGE

    def test_confidence_threshold_is_inclusive(self):
        assert calculate_strength_stage(6, 0.7) == StrengthStage.GUARD

    def test_never_returns_law(self):
        stages = {calculate_strength_stage(v, c) for v in range(0, 40) for c in (0.0, 0.5, 0.7, 1.0)}
        assert StrengthStage.LAW not in stages


class TestEscalationLevel:
    @pytest.mark.parametrize("violations,expected", [
        (0, EscalationLevel.BODY),
        (1, EscalationLevel.BODY),
        (2, EscalationLevel.CRITICAL),
        (3, EscalationLevel.CRITICAL),
        (4, EscalationLevel.SYSTEM),
        (9, EscalationLevel.SYSTEM),
    ])
    def test_thresholds(self, violations, expected):
        assert calculate_escalation_level(violations) == expected

    def test_escalation_ignores_confidence(self):
        """A low-confidence rule still reaches the system section of the prompt."""
        rule = classify(_make_rule(violation_count=5, confidence_score=0.2))
        assert rule.escalation_level == EscalationLevel.SYSTEM
        assert rule.strength_stage == StrengthStage.NUDGE


class TestClassify:
    def test_recompute_is_idempotent(self):
        rule = classify(_make_rule(violation_count=4))
        again = classify(rule.model_copy(deep=True))
        assert again == rule

    def test_law_survives_while_confident(self):
        rule = classify(_make_rule(violation_count=1, strength_stage=StrengthStage.LAW))
        assert rule.strength_stage == StrengthStage.LAW

    def test_law_dropped_when_confidence_falls(self):
        rule = classify(_make_rule(
            violation_count=8,
            strength_stage=StrengthStage.LAW,
            confidence_score=0.5,
        ))
        assert rule.strength_stage == StrengthStage.NUDGE

    def test_confidence_cap_applies_to_any_stage(self):
        for stage in StrengthStage:
            rule = enforce_confidence_cap(_make_rule(strength_stage=stage, confidence_score=0.1))
            assert rule.strength_stage == StrengthStage.NUDGE


class TestOrdinal:
    @pytest.mark.parametrize("n,expected", [
        (1, "1st"), (2, "2nd"), (3, "3rd"), (4, "4th"),
        (11, "11th"), (12, "12th"), (13, "13th"), (21, "21st"), (102, "102nd"),
    ])
    def test_suffixes(self, n, expected):
        assert ordinal(n) == expected
