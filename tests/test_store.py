"""Tests for the SQLite rule store."""

import threading
from datetime import datetime, timedelta

import pytest

from qa_kernel.errors import ConcurrentUpdateError, RuleNotFoundError
from qa_kernel.models.feedback import (
    FeedbackContext,
    FeedbackDecision,
    FeedbackEvent,
    FeedbackSignal,
    OutcomeType,
)
from qa_kernel.models.rule import PolicyRule, RuleStatus, ScopeLevel
from qa_kernel.store.rule_store import GLOBAL_OWNER, RuleStore


NOW = datetime(2026, 3, 1, 12, 0, 0)


def _make_rule(rule_id: str = "rule_1", **overrides) -> PolicyRule:
    data = dict(
        id=rule_id,
        owner_id="owner_1",
        step_id=2,
        category="geometry",
        rule_text="Preserve angled walls",
        created_at=NOW,
        last_health_decay_at=NOW,
    )
    data.update(overrides)
    return PolicyRule(**data)


def _make_event(event_id: str, minutes: int, **overrides) -> FeedbackEvent:
    data = dict(
        id=event_id,
        owner_id="owner_1",
        step_id=2,
        decision=FeedbackDecision.REJECTED,
        reason_text="Wall angles were straightened",
        created_at=NOW + timedelta(minutes=minutes),
    )
    data.update(overrides)
    return FeedbackEvent(**data)


class TestPolicyRules:
    def setup_method(self):
        self.store = RuleStore()

    def test_create_and_get_round_trip(self):
        rule, created = self.store.create_rule(_make_rule(user_locked=True))
        assert created
        fetched = self.store.get_rule("rule_1")
        assert fetched == rule
        assert fetched.user_locked is True
        assert fetched.created_at == NOW

    def test_create_is_idempotent_on_key(self):
        first, created_first = self.store.create_rule(_make_rule("rule_1"))
        second, created_second = self.store.create_rule(_make_rule("rule_2"))
        assert created_first and not created_second
        assert second.id == first.id == "rule_1"
        assert len(self.store.list_rules()) == 1

    def test_null_step_is_part_of_the_key(self):
        self.store.create_rule(_make_rule("rule_1", step_id=None))
        _, created = self.store.create_rule(_make_rule("rule_2", step_id=None))
        assert not created
        _, created = self.store.create_rule(_make_rule("rule_3", step_id=3))
        assert created

    def test_step_filter_includes_stepless_rules(self):
        self.store.create_rule(_make_rule("rule_1", step_id=2))
        self.store.create_rule(_make_rule("rule_2", step_id=None, rule_text="Any step"))
        self.store.create_rule(_make_rule("rule_3", step_id=4, rule_text="Other step"))
        ids = {r.id for r in self.store.list_rules(owner_id="owner_1", step_id=2)}
        assert ids == {"rule_1", "rule_2"}

    def test_active_rules_for_step_include_global(self):
        self.store.create_rule(_make_rule("rule_1", support_count=1))
        self.store.create_rule(_make_rule(
            "rule_2",
            owner_id=GLOBAL_OWNER,
            scope_level=ScopeLevel.GLOBAL,
            support_count=5,
        ))
        self.store.create_rule(_make_rule("rule_3", owner_id="owner_2"))
        self.store.create_rule(_make_rule(
            "rule_4", rule_text="Pending one", status=RuleStatus.PENDING
        ))
        rules = self.store.list_active_rules_for_step("owner_1", 2)
        assert [r.id for r in rules] == ["rule_2", "rule_1"]

    def test_due_for_decay_excludes_recent_and_exempt(self):
        old = NOW - timedelta(days=2)
        self.store.create_rule(_make_rule("rule_1", rule_text="old", last_health_decay_at=old))
        self.store.create_rule(_make_rule("rule_2", rule_text="fresh"))
        self.store.create_rule(_make_rule(
            "rule_3", rule_text="muted", last_health_decay_at=old, user_muted=True
        ))
        self.store.create_rule(_make_rule(
            "rule_4", rule_text="dead", last_health_decay_at=old,
            status=RuleStatus.DISABLED, health=0,
        ))
        due = self.store.list_rules_due_for_decay(NOW - timedelta(hours=24))
        assert [r.id for r in due] == ["rule_1"]


class TestOptimisticUpdate:
    def setup_method(self):
        self.store = RuleStore()
        self.store.create_rule(_make_rule())

    def test_update_bumps_version(self):
        def bump(rule):
            rule.violation_count += 1
            return rule

        update = self.store.update_rule("rule_1", bump)
        assert update.before.violation_count == 1
        assert update.after.violation_count == 2
        assert update.after.version == 1
        assert self.store.get_rule("rule_1").version == 1

    def test_noop_returns_none(self):
        assert self.store.update_rule("rule_1", lambda r: None) is None
        assert self.store.update_rule("rule_1", lambda r: r) is None
        assert self.store.get_rule("rule_1").version == 0

    def test_missing_rule(self):
        with pytest.raises(RuleNotFoundError):
            self.store.update_rule("nope", lambda r: r)

    def test_retries_when_a_concurrent_write_wins(self):
        calls = []

        def bump(rule):
            calls.append(rule.version)
            if len(calls) == 1:
                # Someone else commits between our read and our write.
                self.store._conn.execute(
                    "UPDATE policy_rule SET violation_count = 7, version = version + 1 WHERE id = ?",
                    ("rule_1",),
                )
                self.store._conn.commit()
            rule.violation_count += 1
            return rule

        update = self.store.update_rule("rule_1", bump)
        assert calls == [0, 1]
        assert update.after.violation_count == 8
        assert self.store.get_rule("rule_1").version == 2

    def test_gives_up_after_max_retries(self):
        def always_lose(rule):
            self.store._conn.execute(
                "UPDATE policy_rule SET version = version + 1 WHERE id = ?", ("rule_1",)
            )
            self.store._conn.commit()
            rule.health -= 1
            return rule

        with pytest.raises(ConcurrentUpdateError):
            self.store.update_rule("rule_1", always_lose, max_retries=3)

    def test_parallel_increments_are_not_lost(self):
        def bump(rule):
            rule.violation_count += 1
            return rule

        def worker():
            for _ in range(10):
                self.store.update_rule("rule_1", bump, max_retries=1000)

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert self.store.get_rule("rule_1").violation_count == 41


class TestPipelineRules:
    def setup_method(self):
        self.store = RuleStore()

    def _track(self, pipeline_id: str, text: str = "Preserve angled walls"):
        return self.store.upsert_pipeline_rule(
            f"pir_{pipeline_id}_{text}", "owner_1", pipeline_id, 2, "geometry", text, NOW
        )

    def test_upsert_creates_then_increments(self):
        assert self._track("pipe_1").trigger_count == 1
        assert self._track("pipe_1").trigger_count == 2
        assert len(self.store.list_pipeline_rules("pipe_1")) == 1

    def test_distinct_pipeline_count(self):
        for pipeline_id in ("pipe_1", "pipe_1", "pipe_2", "pipe_3"):
            self._track(pipeline_id)
        assert self.store.count_distinct_pipelines(
            "owner_1", 2, "geometry", "Preserve angled walls"
        ) == 3

    def test_closed_runs_still_count(self):
        self._track("pipe_1")
        assert self.store.close_pipeline_rules("pipe_1", NOW) == 1
        assert self.store.count_distinct_pipelines(
            "owner_1", 2, "geometry", "Preserve angled walls"
        ) == 1
        assert self.store.list_pipeline_rules("pipe_1")[0].closed_at == NOW

    def test_min_trigger_filter_and_keys(self):
        self._track("pipe_1", "a")
        self._track("pipe_1", "b")
        self._track("pipe_1", "b")
        visible = self.store.list_pipeline_rules("pipe_1", 2, min_triggers=2)
        assert [r.rule_text for r in visible] == ["b"]
        assert self.store.triggered_keys("pipe_1", 2) == {("geometry", "a"), ("geometry", "b")}


class TestCalibrationAndFeedback:
    def setup_method(self):
        self.store = RuleStore()

    def test_calibration_counters_accumulate(self):
        self.store.increment_calibration("owner_1", 2, "geometry", OutcomeType.FALSE_REJECT)
        self.store.increment_calibration("owner_1", 2, "geometry", OutcomeType.FALSE_REJECT)
        stat = self.store.increment_calibration(
            "owner_1", 2, "geometry", OutcomeType.CONFIRMED_CORRECT
        )
        assert stat.false_reject_count == 2
        assert stat.confirmed_correct_count == 1
        assert stat.total == 3

    def test_recent_feedback_splits_decisions_and_votes(self):
        self.store.append_feedback(_make_event("fb_1", 1))
        self.store.append_feedback(_make_event("fb_2", 3))
        self.store.append_feedback(_make_event(
            "fb_3", 2,
            decision=FeedbackDecision.APPROVED,
            signal=FeedbackSignal.LIKE,
            score=80,
            context=FeedbackContext(room_name="Kitchen", extra_field="kept"),
        ))
        decisions = self.store.recent_feedback("owner_1", 2)
        votes = self.store.recent_feedback("owner_1", 2, votes=True)
        assert [e.id for e in decisions] == ["fb_2", "fb_1"]
        assert [e.id for e in votes] == ["fb_3"]
        assert votes[0].context.room_name == "Kitchen"
        assert votes[0].score == 80
