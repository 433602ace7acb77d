"""Tests for the feedback memory builder and the rule constraint block."""

from datetime import datetime, timedelta

import pytest

from qa_kernel.learning.feedback import event_from_vote
from qa_kernel.memory.builder import (
    FeedbackMemoryBuilder,
    build_calibration_hints,
    extract_preferences,
)
from qa_kernel.memory.constraints import constraint_stack_depth, format_rule_constraints
from qa_kernel.models.config import MemoryConfig
from qa_kernel.models.feedback import (
    CalibrationStat,
    FeedbackContext,
    FeedbackDecision,
    FeedbackEvent,
    FeedbackSignal,
    OutcomeType,
    UserStrictness,
)
from qa_kernel.models.rule import EscalationLevel, PolicyRule, RuleStatus
from qa_kernel.store.rule_store import RuleStore


NOW = datetime(2026, 3, 1, 12, 0, 0)


def _make_event(n: int, decision=FeedbackDecision.REJECTED, reason="Bed is floating above the floor", **overrides):
    data = dict(
        id=f"fb_{n}",
        owner_id="owner_1",
        step_id=2,
        decision=decision,
        reason_text=reason,
        created_at=NOW + timedelta(minutes=n),
    )
    data.update(overrides)
    return FeedbackEvent(**data)


def _make_rule(n: int, **overrides) -> PolicyRule:
    data = dict(
        id=f"rule_{n}",
        owner_id="owner_1",
        step_id=2,
        category="geometry",
        rule_text=f"Rule number {n}",
        support_count=3,
        created_at=NOW,
        last_health_decay_at=NOW,
    )
    data.update(overrides)
    return PolicyRule(**data)


class TestCalibrationHints:
    def test_defaults_with_no_data(self):
        hints = build_calibration_hints([], [])
        assert hints.false_reject_rate == 0
        assert hints.total_decisions == 0
        assert hints.user_strictness == UserStrictness.BALANCED

    def test_rates_are_percentages(self):
        stats = [
            CalibrationStat(owner_id="o", step_id=2, category="a", false_reject_count=1,
                            confirmed_correct_count=1),
            CalibrationStat(owner_id="o", step_id=2, category="b", false_approve_count=1),
        ]
        hints = build_calibration_hints(stats, [])
        assert hints.false_reject_rate == 33
        assert hints.false_approve_rate == 33

    def test_strict_from_rejection_rate(self):
        examples = [_make_event(i) for i in range(7)] + [
            _make_event(10 + i, decision=FeedbackDecision.APPROVED) for i in range(3)
        ]
        assert build_calibration_hints([], examples).user_strictness == UserStrictness.STRICT

    def test_strict_from_low_scores(self):
        examples = [_make_event(i, decision=FeedbackDecision.APPROVED, score=30) for i in range(4)]
        assert build_calibration_hints([], examples).user_strictness == UserStrictness.STRICT

    def test_lenient(self):
        examples = [_make_event(i, decision=FeedbackDecision.APPROVED, score=80) for i in range(5)]
        assert build_calibration_hints([], examples).user_strictness == UserStrictness.LENIENT

    def test_lenient_needs_scores_above_default(self):
        """Without scores the average is 50, which is never lenient."""
        examples = [_make_event(i, decision=FeedbackDecision.APPROVED) for i in range(5)]
        assert build_calibration_hints([], examples).user_strictness == UserStrictness.BALANCED


class TestPreferences:
    def test_rules_need_support(self):
        rules = [_make_rule(1, support_count=5), _make_rule(2, support_count=1)]
        assert extract_preferences(rules, []) == ["[geometry] Rule number 1"]

    def test_only_top_five_rules(self):
        rules = [_make_rule(i) for i in range(8)]
        assert len(extract_preferences(rules, [])) == 5

    def test_keyword_patterns_need_two_hits(self):
        examples = [
            _make_event(1, reason="bed too big"),
            _make_event(2, reason="Bed placement wrong"),
            _make_event(3, reason="window missing"),
        ]
        prefs = extract_preferences([], examples)
        assert prefs == ["User frequently rejects due to bed-related issues (2x)"]

    def test_approval_patterns(self):
        examples = [
            _make_event(i, decision=FeedbackDecision.APPROVED, reason=f"Lovely render {i}")
            for i in range(3)
        ]
        prefs = extract_preferences([], examples)
        assert prefs == ['User approval patterns: "Lovely render 0; Lovely render 1"']

    def test_capped_at_ten(self):
        rules = [_make_rule(i) for i in range(5)]
        reasons = ["bed wall door window scale", "color light seam artifact kitchen"]
        examples = [_make_event(i, reason=reasons[i % 2]) for i in range(4)]
        examples += [
            _make_event(20 + i, decision=FeedbackDecision.APPROVED, reason="Looks great overall")
            for i in range(3)
        ]
        prefs = extract_preferences(rules, examples)
        assert len(prefs) <= 10
        assert sum(p.startswith("User frequently") for p in prefs) == 3


class TestFeedbackMemoryBuilder:
    def setup_method(self):
        self.store = RuleStore()
        self.builder = FeedbackMemoryBuilder(self.store)

    def test_empty_memory_formats_to_nothing(self):
        memory = self.builder.build("owner_1", 2)
        assert memory.examples_count == 0
        assert self.builder.format(memory) == ""

    def test_merges_decisions_and_votes_by_recency(self):
        self.store.append_feedback(_make_event(1))
        self.store.append_feedback(event_from_vote(
            "owner_1", 2, FeedbackSignal.LIKE, score=90, comment="Great light",
            created_at=NOW + timedelta(minutes=5),
        ))
        self.store.append_feedback(_make_event(3))
        memory = self.builder.build("owner_1", 2)
        assert memory.examples_count == 3
        assert [e.decision for e in memory.recent_examples] == [
            FeedbackDecision.APPROVED,
            FeedbackDecision.REJECTED,
            FeedbackDecision.REJECTED,
        ]
        assert memory.recent_examples[0].signal == FeedbackSignal.LIKE

    def test_limit_applies(self):
        for i in range(30):
            self.store.append_feedback(_make_event(i))
        memory = self.builder.build("owner_1", 2, limit=10)
        assert len(memory.recent_examples) == 10
        assert memory.recent_examples[0].id == "fb_29"

    def test_zero_limit_is_honored(self):
        for i in range(3):
            self.store.append_feedback(_make_event(i))
        memory = self.builder.build("owner_1", 2, limit=0)
        assert memory.recent_examples == []
        assert memory.examples_count == 0

    def test_format_carries_precedence_statement(self):
        self.store.append_feedback(_make_event(
            1, context=FeedbackContext(space_type="bedroom")
        ))
        block = self.builder.format(self.builder.build("owner_1", 2))
        assert "hard rules always win over soft human preference" in block.lower()
        assert "=== CALIBRATION ===" in block
        assert 'REJECTED: "Bed is floating above the floor" [bedroom]' in block
        assert block.startswith("=" * 67)
        assert block.endswith("=" * 67)

    def test_at_most_five_examples(self):
        for i in range(12):
            self.store.append_feedback(_make_event(i, reason=f"Reason text number {i}"))
        block = self.builder.format(self.builder.build("owner_1", 2))
        assert "5. REJECTED" in block
        assert "6. REJECTED" not in block

    def test_calibration_warning(self):
        for _ in range(2):
            self.store.increment_calibration("owner_1", 2, "geometry", OutcomeType.FALSE_REJECT)
        self.store.increment_calibration("owner_1", 2, "geometry", OutcomeType.CONFIRMED_CORRECT)
        self.store.append_feedback(_make_event(1))
        block = self.builder.format(self.builder.build("owner_1", 2))
        assert "67% of past rejections were overturned" in block

    def test_block_stays_bounded(self):
        long_reason = "x" * 100
        for i in range(20):
            self.store.append_feedback(_make_event(i, reason=f"bed wall {i} {long_reason}"))
        for i in range(5):
            self.store.create_rule(_make_rule(i, rule_text=f"{'Very long rule text ' * 20}{i}"))
        builder = FeedbackMemoryBuilder(self.store, MemoryConfig(max_block_chars=1500))
        block = builder.format(builder.build("owner_1", 2))
        assert 0 < len(block) <= 1500
        assert "hard rules always win" in block

    def test_compact_summary(self):
        self.store.append_feedback(_make_event(1))
        self.store.append_feedback(_make_event(2))
        summary = self.builder.compact_summary(self.builder.build("owner_1", 2))
        assert summary == {
            "step": 2,
            "examples_count": 2,
            "preferences_count": 1,
            "strictness": "strict",
            "false_reject_rate": 0,
        }


class TestConstraintBlock:
    def test_grouped_by_escalation(self):
        rules = [
            _make_rule(1, escalation_level=EscalationLevel.BODY, rule_text="Body rule"),
            _make_rule(2, escalation_level=EscalationLevel.SYSTEM, rule_text="System rule"),
            _make_rule(3, escalation_level=EscalationLevel.CRITICAL, rule_text="Critical rule"),
        ]
        block = format_rule_constraints(rules)
        assert block.index("System rule") < block.index("Critical rule") < block.index("Body rule")
        assert "SYSTEM-LEVEL CONSTRAINTS" in block

    def test_inactive_rules_excluded(self):
        rules = [_make_rule(1, status=RuleStatus.PENDING)]
        assert format_rule_constraints(rules) == ""
        assert constraint_stack_depth(rules)["total"] == 0

    def test_stack_depth(self):
        rules = [
            _make_rule(1, escalation_level=EscalationLevel.SYSTEM),
            _make_rule(2, escalation_level=EscalationLevel.SYSTEM),
            _make_rule(3),
        ]
        assert constraint_stack_depth(rules) == {
            "total": 3,
            "by_level": {"body": 1, "critical": 0, "system": 2},
        }
