"""End-to-end tests: verdicts and human feedback flowing through the kernel."""

from datetime import datetime, timedelta

import pytest

from qa_kernel.errors import RuleStoreError
from qa_kernel.kernel import QAPolicyKernel
from qa_kernel.models.feedback import FeedbackDecision
from qa_kernel.models.retry import RetryAction, TaskStatus
from qa_kernel.models.rule import EscalationLevel, RuleStatus, ScopeLevel
from qa_kernel.store.rule_store import RuleStore


OWNER = "owner_1"


def _fail_verdict(code: str = "GEOMETRY_DISTORTION", description: str = "Angled wall was straightened",
                  severity: str = "medium", confidence: float = 0.6) -> dict:
    return {
        "status": "FAIL",
        "severity": severity,
        "confidence_score": confidence,
        "retry_suggestion": {"type": "prompt_delta", "instruction": "Keep walls angled"},
        "reasons": [{"code": code, "description": description}],
    }


class TestKernelFlow:
    def setup_method(self):
        self.kernel = QAPolicyKernel(store=RuleStore())

    def _attempt(self, pipeline_id: str, verdict=None, state=None):
        state = state or self.kernel.retry.new_state(f"task_{pipeline_id}", step_id=2)
        self.kernel.retry.begin_attempt(state)
        decision = self.kernel.handle_verdict(
            state, verdict or _fail_verdict(), owner_id=OWNER, pipeline_id=pipeline_id
        )
        return state, decision

    def test_failure_tracks_pipeline_rule(self):
        _, decision = self._attempt("pipe_1")
        assert decision.action == RetryAction.RETRY
        tracked = self.kernel.store.list_pipeline_rules("pipe_1")
        assert len(tracked) == 1
        assert tracked[0].category == "geometry_distortion"
        assert tracked[0].rule_text == "Angled wall was straightened"

    def test_rule_promoted_after_three_runs(self):
        for pipeline_id in ("pipe_1", "pipe_2"):
            self._attempt(pipeline_id)
        assert self.kernel.store.list_rules(owner_id=OWNER) == []
        self._attempt("pipe_3")
        rules = self.kernel.store.list_rules(owner_id=OWNER)
        assert len(rules) == 1
        assert rules[0].scope_level == ScopeLevel.USER

    def test_repeats_inside_one_run_never_promote(self):
        state = None
        for _ in range(4):
            state, _ = self._attempt("pipe_1", state=state)
        assert self.kernel.store.list_rules(owner_id=OWNER) == []
        assert self.kernel.lifecycle.get_active_pipeline_rules("pipe_1", 2)[0].trigger_count == 4

    def test_pass_does_not_learn(self):
        verdict = _fail_verdict()
        verdict["status"] = "PASS"
        state, decision = self._attempt("pipe_1", verdict)
        assert decision.action == RetryAction.PROCEED
        assert state.current_status == TaskStatus.QA_PASS
        assert self.kernel.store.list_pipeline_rules("pipe_1") == []

    def test_invalid_verdict_blocks_without_learning(self):
        state, decision = self._attempt("pipe_1", {"status": "FAIL", "reasons": []})
        assert decision.action == RetryAction.BLOCK_FOR_HUMAN
        assert state.current_status == TaskStatus.BLOCKED_FOR_HUMAN

    def test_store_failure_does_not_change_decision(self, monkeypatch):
        def locked(*args, **kwargs):
            raise RuleStoreError("database is locked")

        monkeypatch.setattr(self.kernel.store, "find_rule", locked)
        state, decision = self._attempt("pipe_1")
        assert decision.action == RetryAction.RETRY
        assert state.current_status == TaskStatus.QA_FAIL

    def test_human_outcomes_adjust_confidence(self):
        for pipeline_id in ("pipe_1", "pipe_2", "pipe_3"):
            self._attempt(pipeline_id)
        rule = self.kernel.store.list_rules(owner_id=OWNER)[0]
        for _ in range(8):
            self.kernel.record_human_outcome([rule.id], FeedbackDecision.REJECTED)
        for _ in range(2):
            self.kernel.record_human_outcome([rule.id], FeedbackDecision.APPROVED)
        rule = self.kernel.store.get_rule(rule.id)
        assert rule.triggered_count == 10
        assert rule.confidence_score == pytest.approx(0.8)
        assert rule.health == 40

    def test_outcome_for_missing_rule_is_skipped(self):
        assert self.kernel.record_human_outcome(["rule_missing"], FeedbackDecision.APPROVED) == []

    def test_complete_pipeline_rewards_silent_rules(self):
        for pipeline_id in ("pipe_1", "pipe_2", "pipe_3"):
            self._attempt(pipeline_id)
        self._attempt("pipe_4", _fail_verdict(code="SCALE_MISMATCH", description="Sofa too big"))
        result = self.kernel.complete_pipeline(OWNER, "pipe_4", 2)
        assert result == {"decayed": 1, "closed": 1}
        rule = self.kernel.store.list_rules(owner_id=OWNER)[0]
        assert rule.health == 95

    def test_escalated_rule_reaches_prompt(self):
        for pipeline_id in ("pipe_1", "pipe_2", "pipe_3", "pipe_4"):
            self._attempt(pipeline_id)
        rule = self.kernel.store.list_rules(owner_id=OWNER)[0]
        assert rule.escalation_level == EscalationLevel.CRITICAL
        context = self.kernel.prompt_context(OWNER, 2)
        assert "CRITICAL CONSTRAINTS" in context["constraints_block"]
        assert "Angled wall was straightened" in context["constraints_block"]
        assert context["summary"]["step"] == 2

    def test_decay_sweep_through_kernel(self):
        for pipeline_id in ("pipe_1", "pipe_2", "pipe_3"):
            self._attempt(pipeline_id)
        result = self.kernel.run_decay_sweep(datetime.utcnow() + timedelta(days=2))
        assert result.decayed == 1
        rule = self.kernel.store.list_rules(owner_id=OWNER)[0]
        assert rule.health == 98
        assert rule.status == RuleStatus.ACTIVE

    def test_completion_survives_a_failing_rule(self, monkeypatch):
        verdict = _fail_verdict()
        verdict["reasons"].append({"code": "SCALE_MISMATCH", "description": "Sofa too big"})
        for pipeline_id in ("pipe_1", "pipe_2", "pipe_3"):
            self._attempt(pipeline_id, verdict)
        self._attempt("pipe_4", _fail_verdict(code="LIGHTING", description="Room is too dark"))
        broken, healthy = self.kernel.store.list_rules(owner_id=OWNER)
        original = self.kernel.store.update_rule

        def flaky(rule_id, mutate, max_retries=5):
            if rule_id == broken.id:
                raise RuleStoreError("db unavailable")
            return original(rule_id, mutate, max_retries)

        monkeypatch.setattr(self.kernel.store, "update_rule", flaky)
        result = self.kernel.complete_pipeline(OWNER, "pipe_4", 2)
        assert result == {"decayed": 1, "closed": 1}
        assert self.kernel.store.get_rule(healthy.id).health == 95
        assert self.kernel.store.get_rule(broken.id).health == 100
        assert self.kernel.store.list_pipeline_rules("pipe_4")[0].closed_at is not None

    def test_completion_survives_a_failing_close(self, monkeypatch):
        for pipeline_id in ("pipe_1", "pipe_2", "pipe_3"):
            self._attempt(pipeline_id)

        def locked(*args, **kwargs):
            raise RuleStoreError("database is locked")

        monkeypatch.setattr(self.kernel.store, "close_pipeline_rules", locked)
        result = self.kernel.complete_pipeline(OWNER, "pipe_9", 2)
        assert result == {"decayed": 1, "closed": 0}

    def test_completion_survives_unreadable_rules(self, monkeypatch):
        self._attempt("pipe_1")

        def locked(*args, **kwargs):
            raise RuleStoreError("database is locked")

        monkeypatch.setattr(self.kernel.store, "triggered_keys", locked)
        result = self.kernel.complete_pipeline(OWNER, "pipe_1", 2)
        assert result == {"decayed": 0, "closed": 1}
