"""
Retry Decision Engine — proceed, retry, or hand the task to a human.

Consumes a structured QA verdict and the task's RetryState. Every failed
attempt is checked against a fixed, ordered list of safety rules; the first
rule that fails is the reason a human sees:

  1. auto-retry disabled for the step
  2. max attempts per step reached
  3. blocking severity (critical)
  4. blocking suggestion (manual_review)
  5. QA confidence too low to trust its own suggestion

A retry that clears all five still has to fit under the run-level cap.
Anything that cannot be parsed as a verdict is treated as the most
conservative outcome: no retry, manual review.
"""

import logging
import random
from datetime import datetime
from typing import Any, Dict, Optional, Union

from pydantic import ValidationError

from qa_kernel.errors import InvalidTransitionError
from qa_kernel.models.config import RetryConfig
from qa_kernel.models.retry import (
    QAStatus,
    QAVerdict,
    RetryAction,
    RetryDecision,
    RetryDelta,
    RetryEligibility,
    RetryState,
    RetrySuggestionType,
    TaskStatus,
)

logger = logging.getLogger(__name__)

_MAX_SEED = 2147483647

INVALID_VERDICT_REASON = "Invalid QA verdict requires manual review"

# Reason code -> (prompt constraint, change description)
_REASON_ADJUSTMENTS = {
    "GEOMETRY_DISTORTION": (
        "CRITICAL: Preserve ALL wall angles exactly as shown. Do NOT straighten angled walls.",
        "Added geometry preservation constraint",
    ),
    "SCALE_MISMATCH": (
        "CRITICAL: Maintain exact scale and proportions from floor plan dimensions.",
        "Added scale preservation constraint",
    ),
    "STYLE_INCONSISTENCY": (
        "CRITICAL: Match the design style exactly as specified in the style reference.",
        "Added style consistency constraint",
    ),
    "MISSING_FURNISHINGS": (
        "CRITICAL: Include all required furniture items for this room type.",
        "Added furniture completeness constraint",
    ),
}
_REASON_ADJUSTMENTS["WALL_RECTIFICATION"] = _REASON_ADJUSTMENTS["GEOMETRY_DISTORTION"]
_REASON_ADJUSTMENTS["FURNITURE_MISMATCH"] = _REASON_ADJUSTMENTS["SCALE_MISMATCH"]


def calculate_retry_delay(attempt_number: int, base: int = 2, cap: int = 30) -> int:
    """Exponential backoff in seconds. `attempt_number` is 1-indexed."""
    if attempt_number < 1:
        raise ValueError("attempt_number is 1-indexed")
    # Cap the exponent so huge attempt numbers don't build huge ints.
    exponent = min(attempt_number - 1, 32)
    return min(base * (2 ** exponent), cap)


def build_retry_delta(verdict: QAVerdict, rng: Optional[random.Random] = None) -> RetryDelta:
    """Changes to make on the next attempt, from the suggestion and reason codes."""
    rng = rng or random.Random()
    suggestion = verdict.retry_suggestion
    changes, prompt_adjustments = [], []
    settings: Dict[str, Any] = {}

    if suggestion.type == RetrySuggestionType.PROMPT_DELTA:
        if suggestion.instruction:
            prompt_adjustments.append(suggestion.instruction)
            changes.append(f"Applied prompt constraint: {suggestion.instruction}")
    elif suggestion.type == RetrySuggestionType.SETTINGS_DELTA:
        settings["temperature"] = 0.3
        settings["guidance_scale"] = 12
        changes.append("Reduced creativity (temperature=0.3, guidance=12)")
    elif suggestion.type == RetrySuggestionType.SEED_CHANGE:
        seed = rng.randrange(_MAX_SEED)
        return RetryDelta(changes_made=[f"Changed seed to {seed}"], new_seed=seed)
    elif suggestion.type == RetrySuggestionType.INPUT_CHANGE:
        settings["input_modified"] = True
        changes.append("Flagged for input modification")
    else:
        seed = rng.randrange(_MAX_SEED)
        return RetryDelta(changes_made=[f"Generic retry with new seed {seed}"], new_seed=seed)

    for reason in verdict.reasons:
        adjustment = _REASON_ADJUSTMENTS.get(reason.code.upper())
        if adjustment and adjustment[0] not in prompt_adjustments:
            prompt_adjustments.append(adjustment[0])
            changes.append(adjustment[1])

    return RetryDelta(
        changes_made=changes,
        prompt_adjustments=prompt_adjustments,
        settings_adjustments=settings,
        new_seed=rng.randrange(_MAX_SEED),
    )


class RetryDecisionEngine:
    """Stateless policy over a caller-owned RetryState."""

    def __init__(self, config: Optional[RetryConfig] = None, rng: Optional[random.Random] = None):
        self.config = config or RetryConfig()
        self._rng = rng or random.Random()

    def new_state(
        self,
        task_id: str,
        step_id: Optional[int] = None,
        auto_retry_enabled: bool = True,
        max_attempts: Optional[int] = None,
    ) -> RetryState:
        now = datetime.utcnow()
        return RetryState(
            task_id=task_id,
            step_id=step_id,
            max_attempts=max_attempts or self.config.default_max_attempts_per_step,
            auto_retry_enabled=auto_retry_enabled,
            created_at=now,
            updated_at=now,
        )

    def retry_delay(self, attempt_number: int) -> int:
        return calculate_retry_delay(
            attempt_number,
            self.config.base_retry_delay_seconds,
            self.config.max_retry_delay_seconds,
        )

    def is_eligible(self, state: RetryState, verdict: QAVerdict) -> RetryEligibility:
        """Ordered safety checks. The first failing check is the reported reason."""
        if not state.auto_retry_enabled:
            return RetryEligibility(eligible=False, reason="Auto-retry is disabled for this step")

        if state.attempt_count >= state.max_attempts:
            return RetryEligibility(
                eligible=False,
                reason=f"Max attempts reached ({state.attempt_count}/{state.max_attempts})",
            )

        if verdict.severity in self.config.blocking_severities:
            return RetryEligibility(
                eligible=False,
                reason=f"Severity '{verdict.severity.value}' requires manual review",
            )

        if verdict.retry_suggestion.type in self.config.blocking_suggestions:
            return RetryEligibility(
                eligible=False,
                reason=f"Suggestion type '{verdict.retry_suggestion.type.value}' requires manual review",
            )

        if verdict.confidence_score < self.config.min_confidence_for_auto_retry:
            return RetryEligibility(
                eligible=False,
                reason=f"Low confidence ({verdict.confidence_score}) requires manual review",
            )

        return RetryEligibility(
            eligible=True,
            reason=f"Auto-retry eligible (attempt {state.attempt_count + 1}/{state.max_attempts})",
        )

    def parse_verdict(self, raw: Union[QAVerdict, Dict[str, Any], None]) -> Optional[QAVerdict]:
        """A verdict missing severity or confidence is unusable; returns None."""
        if isinstance(raw, QAVerdict):
            return raw
        if raw is None:
            return None
        try:
            return QAVerdict.model_validate(raw)
        except ValidationError as exc:
            logger.warning("Unparseable QA verdict: %d errors", exc.error_count())
            return None

    def begin_attempt(self, state: RetryState) -> RetryState:
        """Start the next generation attempt. The first attempt is not a retry."""
        if state.is_terminal:
            raise InvalidTransitionError(
                f"Task {state.task_id} is {state.current_status.value}",
                details={"task_id": state.task_id},
            )
        if state.attempt_count > 0 and not state.auto_retry_enabled:
            raise InvalidTransitionError(
                "Auto-retry is disabled for this step",
                details={"task_id": state.task_id},
            )
        if state.attempt_count >= state.max_attempts:
            raise InvalidTransitionError(
                f"Max attempts reached ({state.attempt_count}/{state.max_attempts})",
                details={"task_id": state.task_id},
            )
        state.attempt_count += 1
        state.current_status = TaskStatus.RUNNING
        state.updated_at = datetime.utcnow()
        logger.debug("Task %s attempt %d/%d", state.task_id, state.attempt_count, state.max_attempts)
        return state

    def evaluate(
        self,
        state: RetryState,
        verdict: Union[QAVerdict, Dict[str, Any], None],
        total_attempts_in_run: int = 0,
    ) -> RetryDecision:
        """Decide what happens after an attempt and move `state` accordingly."""
        if state.is_terminal:
            raise InvalidTransitionError(
                f"Task {state.task_id} is already {state.current_status.value}",
                details={"task_id": state.task_id},
            )

        parsed = self.parse_verdict(verdict)
        state.updated_at = datetime.utcnow()

        if parsed is None:
            state.current_status = TaskStatus.BLOCKED_FOR_HUMAN
            logger.info("Task %s blocked: invalid verdict", state.task_id)
            return RetryDecision(
                action=RetryAction.BLOCK_FOR_HUMAN,
                eligible=False,
                reason=INVALID_VERDICT_REASON,
            )

        state.last_verdict = parsed
        if parsed.status == QAStatus.PASS:
            state.current_status = TaskStatus.QA_PASS
            return RetryDecision(action=RetryAction.PROCEED, eligible=False, reason="QA passed")

        eligibility = self.is_eligible(state, parsed)
        if eligibility.eligible and total_attempts_in_run >= self.config.max_total_attempts_per_run:
            eligibility = RetryEligibility(
                eligible=False,
                reason=(
                    f"Run attempt limit reached "
                    f"({total_attempts_in_run}/{self.config.max_total_attempts_per_run})"
                ),
            )

        if not eligibility.eligible:
            state.current_status = TaskStatus.BLOCKED_FOR_HUMAN
            logger.info("Task %s blocked for human: %s", state.task_id, eligibility.reason)
            return RetryDecision(
                action=RetryAction.BLOCK_FOR_HUMAN,
                eligible=False,
                reason=eligibility.reason,
            )

        delta = build_retry_delta(parsed, self._rng)
        state.current_status = TaskStatus.QA_FAIL
        state.last_retry_delta = delta
        delay = self.retry_delay(max(1, state.attempt_count))
        logger.info(
            "Task %s will retry in %ds: %s", state.task_id, delay, eligibility.reason
        )
        return RetryDecision(
            action=RetryAction.RETRY,
            eligible=True,
            reason=eligibility.reason,
            retry_delay_seconds=delay,
            retry_delta=delta,
        )

    def set_auto_retry(self, state: RetryState, enabled: bool) -> RetryState:
        state.auto_retry_enabled = enabled
        state.updated_at = datetime.utcnow()
        return state
