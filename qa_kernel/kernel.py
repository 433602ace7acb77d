"""
QA Policy Kernel — wires the components into one control loop.

  attempt finishes -> QA verdict -> Retry Decision Engine decides
  -> Lifecycle Manager + Decay Engine update rules from the verdict
     and from any human outcome
  -> Feedback Memory Builder reads the updated store for the next attempt

The kernel itself holds no learning state; every component reads and writes
the Rule Store, so any number of kernels can serve the same database.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from qa_kernel.errors import QAKernelError
from qa_kernel.learning.decay import HealthDecayEngine
from qa_kernel.learning.decay_job import DecaySchedule, DecaySweepResult, run_time_decay_sweep
from qa_kernel.learning.feedback import FeedbackRecorder
from qa_kernel.learning.lifecycle import RuleLifecycleManager, retry_once
from qa_kernel.memory.builder import FeedbackMemoryBuilder
from qa_kernel.memory.constraints import format_rule_constraints
from qa_kernel.models.config import KernelConfig
from qa_kernel.models.feedback import (
    FeedbackDecision,
    FeedbackEvent,
    FeedbackMemory,
    FeedbackRecordResult,
)
from qa_kernel.models.retry import QAStatus, QAVerdict, RetryDecision, RetryState
from qa_kernel.models.rule import PolicyRule
from qa_kernel.retry.engine import RetryDecisionEngine
from qa_kernel.store.rule_store import RuleStore

logger = logging.getLogger(__name__)


class QAPolicyKernel:
    def __init__(self, store: Optional[RuleStore] = None, config: Optional[KernelConfig] = None):
        self.config = config or KernelConfig()
        self.store = store or RuleStore()
        self.lifecycle = RuleLifecycleManager(self.store, self.config.learning)
        self.decay = HealthDecayEngine(self.store, self.config.learning)
        self.feedback = FeedbackRecorder(self.store, self.config.learning)
        self.retry = RetryDecisionEngine(self.config.retry)
        self.memory = FeedbackMemoryBuilder(self.store, self.config.memory)
        self.schedule = DecaySchedule(self.config.schedule)

    def handle_verdict(
        self,
        state: RetryState,
        verdict: Union[QAVerdict, Dict[str, Any], None],
        owner_id: str,
        pipeline_id: str,
        step_id: Optional[int] = None,
        total_attempts_in_run: int = 0,
    ) -> RetryDecision:
        """
        Decide the task's next move, then learn from the verdict's failure
        reasons. Learning happens after the decision and cannot change it.
        """
        parsed = self.retry.parse_verdict(verdict)
        decision = self.retry.evaluate(state, parsed, total_attempts_in_run)

        step = step_id if step_id is not None else state.step_id
        if parsed is None or parsed.status != QAStatus.FAIL or step is None:
            return decision

        for reason in parsed.reasons:
            self.lifecycle.observe_violation(
                owner_id=owner_id,
                pipeline_id=pipeline_id,
                step_id=step,
                category=reason.code.lower(),
                rule_text=reason.description or reason.code,
            )
        return decision

    def record_human_outcome(
        self, rule_ids: List[str], decision: FeedbackDecision
    ) -> List[PolicyRule]:
        """
        Attribute a human decision to the rules that fired on the output.
        Approved means each rule was a false positive; rejected confirms it.
        """
        updated = []
        for rule_id in rule_ids:
            try:
                if decision == FeedbackDecision.APPROVED:
                    rule = self.decay.apply_false_positive_decay(rule_id)
                else:
                    rule = self.decay.record_confirmed_trigger(rule_id)
            except QAKernelError as exc:
                logger.warning("Outcome for rule %s not recorded: %s", rule_id, exc.message)
                continue
            if rule is not None:
                updated.append(rule)
        return updated

    def record_feedback(self, event: FeedbackEvent) -> FeedbackRecordResult:
        return self.feedback.record(event)

    def complete_pipeline(self, owner_id: str, pipeline_id: str, step_id: int) -> Dict[str, int]:
        """Reward silent rules and close the run's instance rules."""
        # Raises only from the reads made before any rule is decayed.
        decayed = retry_once(
            "good_behavior_decay",
            lambda: self.decay.apply_good_behavior_decay(owner_id, step_id, pipeline_id),
        ) or []
        closed = self.lifecycle.complete_pipeline(pipeline_id)
        logger.info(
            "Pipeline %s complete: %d rules decayed, %d instance rules closed",
            pipeline_id,
            len(decayed),
            closed,
        )
        return {"decayed": len(decayed), "closed": closed}

    def build_memory(self, owner_id: str, step_id: int, limit: Optional[int] = None) -> FeedbackMemory:
        return self.memory.build(owner_id, step_id, limit)

    def prompt_context(self, owner_id: str, step_id: int) -> Dict[str, Any]:
        """Everything injected into the next prompt for this owner and step."""
        memory = self.build_memory(owner_id, step_id)
        rules = self.store.list_active_rules_for_step(owner_id, step_id, limit=50)
        return {
            "feedback_block": self.memory.format(memory),
            "constraints_block": format_rule_constraints(rules),
            "summary": self.memory.compact_summary(memory),
        }

    def run_decay_sweep(self, now: Optional[datetime] = None) -> DecaySweepResult:
        return run_time_decay_sweep(self.store, now, self.config.learning)
