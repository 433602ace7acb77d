"""
Health & Confidence Decay Engine.

Rules age. Three decay paths drain a rule's 0-100 health bar:

  time decay          -2 per 24h window, demotes guard/check as health drops
  good-behavior decay -5 when a completed task did not trigger the rule
  false-positive      -30 when the rule fired but a human approved anyway

Exactly one path fires per rule per event. Muted and locked rules are
skipped by all three. Health 0 disables the rule for good.

The transition functions are pure (rule in, rule out, or None for no-op)
so the store can re-run them under optimistic concurrency.
"""

import logging
from datetime import datetime, timedelta
from typing import List, Optional

from qa_kernel.errors import QAKernelError
from qa_kernel.learning.audit import log_rule_changes
from qa_kernel.learning.strength import enforce_confidence_cap
from qa_kernel.models.config import LearningConfig
from qa_kernel.models.rule import PolicyRule, RuleStatus, StrengthStage
from qa_kernel.store.rule_store import RuleStore, RuleUpdate

logger = logging.getLogger(__name__)

_DEFAULT_CONFIG = LearningConfig()


def calculate_confidence(
    triggered_count: int,
    approved_despite_trigger: int,
    rejected_due_to_trigger: int,
    min_sample: int = 5,
) -> float:
    """
    Fraction of a rule's triggers later confirmed by a human rejecting the
    same output. Below `min_sample` triggers the optimistic prior of 1.0 holds.
    """
    if triggered_count < min_sample:
        return 1.0
    return max(0.0, min(1.0, rejected_due_to_trigger / triggered_count))


def _drain(rule: PolicyRule, amount: int) -> PolicyRule:
    rule.health = max(0, min(100, rule.health - amount))
    if rule.health == 0:
        rule.status = RuleStatus.DISABLED
    return rule


def _decayable(rule: PolicyRule) -> bool:
    return not rule.decay_exempt and not rule.is_disabled and rule.health > 0


def decay_cutoff(now: datetime, config: Optional[LearningConfig] = None) -> datetime:
    """Rules last decayed at or before this instant are due for time decay."""
    cfg = config or _DEFAULT_CONFIG
    return now - timedelta(
        hours=cfg.decay_window_hours, minutes=-cfg.decay_window_grace_minutes
    )


def time_decay(
    rule: PolicyRule, now: datetime, config: Optional[LearningConfig] = None
) -> Optional[PolicyRule]:
    """Daily tick. No-op if the rule was already decayed inside the window."""
    cfg = config or _DEFAULT_CONFIG
    if not _decayable(rule) or rule.status != RuleStatus.ACTIVE:
        return None
    if rule.last_health_decay_at is not None and rule.last_health_decay_at > decay_cutoff(now, cfg):
        return None

    _drain(rule, cfg.time_decay_per_day)
    if rule.health <= cfg.guard_demotion_health and rule.strength_stage == StrengthStage.GUARD:
        rule.strength_stage = StrengthStage.CHECK
    elif rule.health <= cfg.check_demotion_health and rule.strength_stage == StrengthStage.CHECK:
        rule.strength_stage = StrengthStage.NUDGE
    rule.last_health_decay_at = now
    return rule


def good_behavior_decay(
    rule: PolicyRule, config: Optional[LearningConfig] = None
) -> Optional[PolicyRule]:
    """The rule stayed silent through a whole task."""
    cfg = config or _DEFAULT_CONFIG
    if not _decayable(rule):
        return None
    return _drain(rule, cfg.good_behavior_decay)


def false_positive_decay(
    rule: PolicyRule, config: Optional[LearningConfig] = None
) -> Optional[PolicyRule]:
    """The rule fired, a human approved the output anyway."""
    cfg = config or _DEFAULT_CONFIG
    if not _decayable(rule):
        return None
    rule.triggered_count += 1
    rule.approved_despite_trigger += 1
    rule.confidence_score = calculate_confidence(
        rule.triggered_count,
        rule.approved_despite_trigger,
        rule.rejected_due_to_trigger,
        cfg.min_confidence_sample,
    )
    _drain(rule, cfg.false_positive_decay)
    return enforce_confidence_cap(rule, cfg)


def confirmed_trigger(
    rule: PolicyRule, config: Optional[LearningConfig] = None
) -> Optional[PolicyRule]:
    """The rule fired and a human rejected the same output. Not a decay."""
    cfg = config or _DEFAULT_CONFIG
    if rule.is_disabled:
        return None
    rule.triggered_count += 1
    rule.rejected_due_to_trigger += 1
    rule.confidence_score = calculate_confidence(
        rule.triggered_count,
        rule.approved_despite_trigger,
        rule.rejected_due_to_trigger,
        cfg.min_confidence_sample,
    )
    return enforce_confidence_cap(rule, cfg)


class HealthDecayEngine:
    """Applies decay transitions against the store and records what changed."""

    def __init__(self, store: RuleStore, config: Optional[LearningConfig] = None):
        self.store = store
        self.config = config or LearningConfig()

    def _apply(self, rule_id: str, transition, reason: str) -> Optional[RuleUpdate]:
        update = self.store.update_rule(
            rule_id, transition, max_retries=self.config.max_cas_retries
        )
        if update is not None:
            log_rule_changes(self.store, update, reason)
        return update

    def apply_time_decay(
        self, rule_id: str, now: Optional[datetime] = None
    ) -> Optional[PolicyRule]:
        now = now or datetime.utcnow()
        update = self._apply(
            rule_id,
            lambda r: time_decay(r, now, self.config),
            "time decay",
        )
        if update is None:
            return None
        after = update.after
        if after.is_disabled:
            logger.info("Rule died: %r", after.rule_text)
        elif after.strength_stage != update.before.strength_stage:
            logger.info(
                "Rule weakened: %r (%s -> %s)",
                after.rule_text,
                update.before.strength_stage.value,
                after.strength_stage.value,
            )
        return after

    def apply_good_behavior_decay(
        self, owner_id: str, step_id: int, pipeline_id: str
    ) -> List[PolicyRule]:
        """Decay every active rule of the owner's step that stayed silent in the run."""
        triggered = self.store.triggered_keys(pipeline_id, step_id)
        decayed = []
        for rule in self.store.list_rules(
            owner_id=owner_id, step_id=step_id, status=RuleStatus.ACTIVE
        ):
            if (rule.category, rule.rule_text) in triggered:
                continue
            try:
                update = self._apply(
                    rule.id,
                    lambda r: good_behavior_decay(r, self.config),
                    f"silent through pipeline {pipeline_id}",
                )
            except QAKernelError as exc:
                logger.warning("Good behavior decay skipped for rule %s: %s", rule.id, exc.message)
                continue
            if update is not None:
                logger.debug(
                    "Good behavior decay: %r (health %d -> %d)",
                    rule.rule_text,
                    update.before.health,
                    update.after.health,
                )
                decayed.append(update.after)
        return decayed

    def apply_false_positive_decay(self, rule_id: str) -> Optional[PolicyRule]:
        update = self._apply(
            rule_id,
            lambda r: false_positive_decay(r, self.config),
            "approved despite trigger",
        )
        if update is None:
            return None
        logger.info(
            "False positive decay: %r (health %d -> %d, confidence %.2f -> %.2f)",
            update.after.rule_text,
            update.before.health,
            update.after.health,
            update.before.confidence_score,
            update.after.confidence_score,
        )
        return update.after

    def record_confirmed_trigger(self, rule_id: str) -> Optional[PolicyRule]:
        update = self._apply(
            rule_id,
            lambda r: confirmed_trigger(r, self.config),
            "rejected due to trigger",
        )
        if update is None:
            return None
        logger.debug(
            "Confidence %r: %.2f -> %.2f",
            update.after.rule_text,
            update.before.confidence_score,
            update.after.confidence_score,
        )
        return update.after
