"""
Feedback ingestion — turns one human signal into calibration and candidate rules.

When the human agrees with machine QA the event only moves the calibration
counters. When they disagree and say why, the reason becomes evidence for a
user rule: a similar pending/active rule gains support (and activates once
enough humans agreed), otherwise a new pending rule is opened.
"""

import logging
import re
from datetime import datetime
from typing import Optional, Tuple
from uuid import uuid4

from qa_kernel.learning.audit import log_rule_changes
from qa_kernel.learning.lifecycle import retry_once
from qa_kernel.learning.strength import classify
from qa_kernel.models.config import LearningConfig
from qa_kernel.models.feedback import (
    FeedbackContext,
    FeedbackDecision,
    FeedbackEvent,
    FeedbackRecordResult,
    FeedbackSignal,
    OutcomeType,
)
from qa_kernel.models.rule import PolicyRule, RuleStatus, ScopeLevel
from qa_kernel.store.rule_store import RuleStore

logger = logging.getLogger(__name__)

_WORD_SPLIT = re.compile(r"\s+")


def classify_outcome(
    decision: FeedbackDecision, qa_original_status: Optional[str]
) -> OutcomeType:
    """Compare the human decision with what machine QA said."""
    if decision == FeedbackDecision.APPROVED and qa_original_status == "rejected":
        return OutcomeType.FALSE_REJECT
    if decision == FeedbackDecision.REJECTED and qa_original_status == "approved":
        return OutcomeType.FALSE_APPROVE
    return OutcomeType.CONFIRMED_CORRECT


def word_similarity(text_a: str, text_b: str) -> float:
    """Jaccard similarity over words longer than three characters."""
    words_a = {w for w in _WORD_SPLIT.split(text_a.lower().strip()) if len(w) > 3}
    words_b = {w for w in _WORD_SPLIT.split(text_b.lower().strip()) if len(w) > 3}
    if not words_a or not words_b:
        return 0.0
    return len(words_a & words_b) / len(words_a | words_b)


def event_from_vote(
    owner_id: str,
    step_id: int,
    signal: FeedbackSignal,
    score: Optional[int] = None,
    comment: str = "",
    category: str = "other",
    pipeline_id: Optional[str] = None,
    qa_original_status: Optional[str] = None,
    context: Optional[FeedbackContext] = None,
    created_at: Optional[datetime] = None,
) -> FeedbackEvent:
    """A like counts as an approval, a dislike as a rejection."""
    decision = (
        FeedbackDecision.APPROVED if signal == FeedbackSignal.LIKE
        else FeedbackDecision.REJECTED
    )
    return FeedbackEvent(
        id=f"fb_{uuid4().hex[:12]}",
        owner_id=owner_id,
        step_id=step_id,
        pipeline_id=pipeline_id,
        decision=decision,
        signal=signal,
        score=score,
        reason_text=comment or f"User {signal.value}d the output",
        category=category,
        qa_original_status=qa_original_status,
        context=context or FeedbackContext(),
        created_at=created_at or datetime.utcnow(),
    )


class FeedbackRecorder:
    """Appends feedback events and derives calibration and candidate rules."""

    def __init__(self, store: RuleStore, config: Optional[LearningConfig] = None):
        self.store = store
        self.config = config or LearningConfig()

    def record(self, event: FeedbackEvent) -> FeedbackRecordResult:
        self.store.append_feedback(event)
        outcome = classify_outcome(event.decision, event.qa_original_status)
        result = FeedbackRecordResult(event_id=event.id, outcome_type=outcome)
        retry_once(
            "increment_calibration",
            lambda: self.store.increment_calibration(
                event.owner_id, event.step_id, event.category, outcome
            ),
        )

        reason = event.reason_text.strip()
        if outcome == OutcomeType.CONFIRMED_CORRECT:
            return result
        if len(reason) < self.config.min_rule_text_length:
            return result

        learned = retry_once("feedback rule learning", lambda: self._learn_rule(event, reason))
        if learned is None:
            return result
        rule, created = learned
        result.rule_id = rule.id
        result.rule_status = rule.status.value
        result.rule_created = created

        logger.info(
            "Feedback %s recorded: outcome=%s rule=%s status=%s",
            event.id,
            outcome.value,
            result.rule_id,
            result.rule_status,
        )
        return result

    def _learn_rule(self, event: FeedbackEvent, reason: str) -> Tuple[PolicyRule, bool]:
        matched = self._find_similar_rule(event, reason)
        if matched is not None:
            return self._add_support(matched.id), False
        return self._open_pending_rule(event, reason)

    def _find_similar_rule(self, event: FeedbackEvent, reason: str) -> Optional[PolicyRule]:
        for rule in self.store.list_rules(
            owner_id=event.owner_id, scope_level=ScopeLevel.USER
        ):
            if rule.is_disabled or rule.step_id != event.step_id:
                continue
            if rule.category != event.category:
                continue
            if word_similarity(reason, rule.rule_text) >= self.config.rule_similarity_threshold:
                return rule
        return None

    def _add_support(self, rule_id: str) -> PolicyRule:
        threshold = self.config.activation_support_threshold

        def _support(rule: PolicyRule) -> Optional[PolicyRule]:
            if rule.is_disabled:
                return None
            rule.support_count += 1
            if rule.status == RuleStatus.PENDING and rule.support_count >= threshold:
                rule.status = RuleStatus.ACTIVE
            return rule

        update = self.store.update_rule(rule_id, _support, self.config.max_cas_retries)
        if update is None:
            return self.store.get_rule(rule_id)
        log_rule_changes(self.store, update, f"{update.after.support_count} human confirmations")
        if update.after.status != update.before.status:
            logger.info("Rule activated: %r", update.after.rule_text)
        else:
            logger.debug(
                "Rule support %r: %d", update.after.rule_text, update.after.support_count
            )
        return update.after

    def _open_pending_rule(self, event: FeedbackEvent, reason: str):
        now = event.created_at
        rule = classify(PolicyRule(
            id=f"rule_{uuid4().hex[:12]}",
            owner_id=event.owner_id,
            scope_level=ScopeLevel.USER,
            step_id=event.step_id,
            category=event.category,
            rule_text=reason[:500],
            status=RuleStatus.PENDING,
            source_pipeline_id=event.pipeline_id,
            created_at=now,
            last_health_decay_at=now,
        ), self.config)
        stored, created = self.store.create_rule(rule)
        if created:
            logger.info("Created pending rule from feedback: %r", stored.rule_text[:50])
        return stored, created
