"""
Rule Lifecycle Manager — ephemeral -> personal -> global.

Level 1 (pipeline): every QA violation inside a run is tracked as a
PipelineInstanceRule. Temporary, but kept after the run closes so that
recurrence across runs can be counted.

Level 2 (user): once the same (step, category, rule_text) shows up in enough
*distinct* pipeline runs, a durable PolicyRule is created for the owner.
Counting runs instead of raw triggers keeps one pathological run from
minting a rule on its own.

Level 3 (global): explicit, manual copy of a user rule that every owner reads.

Promotion is one-way and additive. A promoted rule is never demoted back to
pipeline scope; it can only be disabled by decay or by a profile reset.
"""

import logging
from datetime import datetime
from typing import Callable, List, Optional, TypeVar
from uuid import uuid4

from qa_kernel.errors import InvalidTransitionError, QAKernelError, RuleNotFoundError
from qa_kernel.learning.audit import log_rule_changes, log_scope_promotion
from qa_kernel.learning.strength import classify, ordinal
from qa_kernel.models.config import LearningConfig
from qa_kernel.models.rule import (
    PipelineInstanceRule,
    PolicyRule,
    RuleOverride,
    RuleStatus,
    ScopeLevel,
    StrengthStage,
)
from qa_kernel.store.rule_store import GLOBAL_OWNER, RuleStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


def retry_once(label: str, fn: Callable[[], T]) -> Optional[T]:
    """Learning must never stop the pipeline: retry once, then log and give up."""
    for attempt in (1, 2):
        try:
            return fn()
        except QAKernelError as exc:
            if attempt == 2:
                logger.warning("%s failed, learning skipped: %s", label, exc.message)
    return None


class RuleLifecycleManager:
    """Creates, counts, promotes and hands user controls over policy rules."""

    def __init__(self, store: RuleStore, config: Optional[LearningConfig] = None):
        self.store = store
        self.config = config or LearningConfig()

    # --- Level 1: pipeline instance rules ---

    def track_violation(
        self,
        owner_id: str,
        pipeline_id: str,
        step_id: int,
        category: str,
        rule_text: str,
        now: Optional[datetime] = None,
    ) -> Optional[PipelineInstanceRule]:
        """Create or bump the run's instance rule. Never raises."""
        now = now or datetime.utcnow()
        tracked = retry_once(
            "track_violation",
            lambda: self.store.upsert_pipeline_rule(
                rule_id=f"pir_{uuid4().hex[:12]}",
                owner_id=owner_id,
                pipeline_id=pipeline_id,
                step_id=step_id,
                category=category,
                rule_text=rule_text,
                now=now,
            ),
        )
        if tracked is not None:
            logger.debug(
                "Pipeline rule triggered %dx: %r", tracked.trigger_count, rule_text
            )
        return tracked

    def get_active_pipeline_rules(
        self, pipeline_id: str, step_id: int
    ) -> List[PipelineInstanceRule]:
        """Instance rules that have repeated inside the run."""
        return self.store.list_pipeline_rules(
            pipeline_id,
            step_id,
            min_triggers=self.config.pipeline_rule_visibility_min_triggers,
        )

    def complete_pipeline(self, pipeline_id: str, now: Optional[datetime] = None) -> int:
        """Close the run's instance rules. Rows stay for distinct-run counting."""
        now = now or datetime.utcnow()
        closed = retry_once(
            "complete_pipeline", lambda: self.store.close_pipeline_rules(pipeline_id, now)
        )
        return closed or 0

    # --- Level 2: promotion to user scope ---

    def check_promotion_eligible(
        self, owner_id: str, step_id: int, category: str, rule_text: str
    ) -> bool:
        runs = self.store.count_distinct_pipelines(owner_id, step_id, category, rule_text)
        return runs >= self.config.promotion_min_pipelines

    def promote_to_user(
        self,
        owner_id: str,
        step_id: int,
        category: str,
        rule_text: str,
        source_pipeline_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> PolicyRule:
        """Idempotent: a concurrent promotion of the same key returns the existing rule."""
        now = now or datetime.utcnow()
        rule = classify(PolicyRule(
            id=f"rule_{uuid4().hex[:12]}",
            owner_id=owner_id,
            scope_level=ScopeLevel.USER,
            step_id=step_id,
            category=category,
            rule_text=rule_text,
            violation_count=1,
            source_pipeline_id=source_pipeline_id,
            created_at=now,
            last_triggered_at=now,
            last_health_decay_at=now,
        ), self.config)
        stored, created = self.store.create_rule(rule)
        if created:
            runs = self.store.count_distinct_pipelines(owner_id, step_id, category, rule_text)
            log_scope_promotion(
                self.store, stored, ScopeLevel.PIPELINE.value, f"seen in {runs} pipelines"
            )
            logger.info("Promoted to user level: %r (%d pipelines)", rule_text, runs)
        return stored

    def observe_violation(
        self,
        owner_id: str,
        pipeline_id: str,
        step_id: int,
        category: str,
        rule_text: str,
        now: Optional[datetime] = None,
    ) -> Optional[PolicyRule]:
        """
        Full path for one violation: track it in the run, then either count it
        against the owner's existing rule or promote it if it now qualifies.
        Returns the user rule touched, if any. Never raises.
        """
        tracked = self.track_violation(owner_id, pipeline_id, step_id, category, rule_text, now)
        if tracked is None:
            return None

        def _learn() -> Optional[PolicyRule]:
            existing = self.store.find_rule(
                owner_id, ScopeLevel.USER, category, rule_text, step_id
            )
            if existing is not None:
                if existing.is_disabled:
                    return existing
                return self.record_rule_violation(existing.id, now)
            if self.check_promotion_eligible(owner_id, step_id, category, rule_text):
                return self.promote_to_user(
                    owner_id, step_id, category, rule_text, pipeline_id, now
                )
            return None

        return retry_once("observe_violation", _learn)

    def record_rule_violation(
        self, rule_id: str, now: Optional[datetime] = None
    ) -> PolicyRule:
        """Count one more firing and re-derive strength and escalation."""
        now = now or datetime.utcnow()

        def _bump(rule: PolicyRule) -> Optional[PolicyRule]:
            if rule.is_disabled:
                return None
            rule.violation_count += 1
            rule.last_triggered_at = now
            return classify(rule, self.config)

        update = self.store.update_rule(rule_id, _bump, self.config.max_cas_retries)
        if update is None:
            return self._require(rule_id)

        after = update.after
        log_rule_changes(self.store, update, f"{ordinal(after.violation_count)} violation")
        if after.escalation_level != update.before.escalation_level:
            logger.info(
                "Rule %r escalated to %s (%d violations)",
                after.rule_text,
                after.escalation_level.value,
                after.violation_count,
            )
        if after.strength_stage != update.before.strength_stage:
            logger.info(
                "Rule %r strength %s -> %s",
                after.rule_text,
                update.before.strength_stage.value,
                after.strength_stage.value,
            )
        return after

    # --- Level 3: global ---

    def promote_to_global(self, rule_id: str) -> PolicyRule:
        """Copy an active user rule into global scope. Idempotent."""
        source = self._require(rule_id)
        if source.scope_level == ScopeLevel.GLOBAL:
            return source
        if source.status != RuleStatus.ACTIVE:
            raise InvalidTransitionError(
                f"Only active rules can go global (rule is {source.status.value})",
                details={"rule_id": rule_id},
            )
        now = datetime.utcnow()
        copy = source.model_copy(update={
            "id": f"rule_{uuid4().hex[:12]}",
            "owner_id": GLOBAL_OWNER,
            "scope_level": ScopeLevel.GLOBAL,
            "user_muted": False,
            "user_locked": False,
            "created_at": now,
            "last_health_decay_at": now,
            "version": 0,
        })
        stored, created = self.store.create_rule(copy)
        if created:
            log_scope_promotion(
                self.store, stored, source.scope_level.value, f"promoted from {source.id}"
            )
            logger.info("Promoted to global: %r", stored.rule_text)
        return stored

    # --- User controls ---

    def _require(self, rule_id: str) -> PolicyRule:
        rule = self.store.get_rule(rule_id)
        if rule is None:
            raise RuleNotFoundError(rule_id)
        return rule

    def _set(self, rule_id: str, mutate, reason: str) -> PolicyRule:
        update = self.store.update_rule(rule_id, mutate, self.config.max_cas_retries)
        if update is None:
            return self._require(rule_id)
        log_rule_changes(self.store, update, reason)
        return update.after

    def set_muted(self, rule_id: str, muted: bool) -> PolicyRule:
        def _mute(rule: PolicyRule) -> PolicyRule:
            rule.user_muted = muted
            return rule
        return self._set(rule_id, _mute, "muted by user" if muted else "unmuted by user")

    def set_locked(self, rule_id: str, locked: bool) -> PolicyRule:
        def _lock(rule: PolicyRule) -> PolicyRule:
            rule.user_locked = locked
            return rule
        return self._set(rule_id, _lock, "locked by user" if locked else "unlocked by user")

    def promote_to_law(self, rule_id: str) -> PolicyRule:
        """The only way to reach LAW. Refused for rules that could not block anyway."""
        rule = self._require(rule_id)
        if rule.status != RuleStatus.ACTIVE:
            raise InvalidTransitionError(
                f"Cannot promote a {rule.status.value} rule to law",
                details={"rule_id": rule_id},
            )
        if rule.confidence_score < self.config.min_confidence_for_blocking:
            raise InvalidTransitionError(
                f"Confidence {rule.confidence_score:.2f} is below "
                f"{self.config.min_confidence_for_blocking:.2f}; low-confidence rules never block",
                details={"rule_id": rule_id},
            )

        def _law(r: PolicyRule) -> Optional[PolicyRule]:
            if r.confidence_score < self.config.min_confidence_for_blocking:
                return None
            r.strength_stage = StrengthStage.LAW
            return r
        return self._set(rule_id, _law, "manual promotion")

    def demote_from_law(self, rule_id: str) -> PolicyRule:
        def _unlaw(rule: PolicyRule) -> Optional[PolicyRule]:
            if rule.strength_stage != StrengthStage.LAW:
                return None
            rule.strength_stage = StrengthStage.NUDGE
            return classify(rule, self.config)
        return self._set(rule_id, _unlaw, "manual demotion")

    def record_override(
        self,
        rule_id: str,
        pipeline_id: str,
        override_reason: Optional[str] = None,
    ) -> RuleOverride:
        """Audit a "proceed anyway" click. Does not itself decay the rule."""
        rule = self._require(rule_id)
        override = RuleOverride(
            id=f"ovr_{uuid4().hex[:12]}",
            rule_id=rule.id,
            pipeline_id=pipeline_id,
            owner_id=rule.owner_id,
            step_id=rule.step_id,
            strength_stage=rule.strength_stage,
            override_reason=override_reason[:500] if override_reason else None,
            created_at=datetime.utcnow(),
        )
        self.store.append_override(override)
        logger.info("User overrode %s rule %s", rule.strength_stage.value, rule.id)
        return override

    def reset_profile(self, owner_id: str) -> int:
        """Fresh start: disable every user-scope rule the owner has."""
        def _disable(rule: PolicyRule) -> Optional[PolicyRule]:
            if rule.is_disabled:
                return None
            rule.status = RuleStatus.DISABLED
            return rule

        disabled = 0
        for rule in self.store.list_rules(owner_id=owner_id, scope_level=ScopeLevel.USER):
            update = self.store.update_rule(rule.id, _disable, self.config.max_cas_retries)
            if update is not None:
                log_rule_changes(self.store, update, "profile reset")
                disabled += 1
        logger.info("Owner %s reset their learning profile (%d rules)", owner_id, disabled)
        return disabled
