"""
Daily time-decay sweep.

A plain periodic task: select the rules not decayed in the last window and
apply the time-decay transition to each under optimistic concurrency. The
transition itself re-checks the window, so overlapping sweeps (or a sweep
racing a request-path update) decay each rule at most once per window.
"""

import logging
from datetime import datetime
from typing import Optional

from croniter import croniter
from pydantic import BaseModel

from qa_kernel.learning.audit import log_rule_changes
from qa_kernel.learning.decay import decay_cutoff, time_decay
from qa_kernel.models.config import DecayScheduleConfig, LearningConfig
from qa_kernel.store.rule_store import RuleStore

logger = logging.getLogger(__name__)


class DecaySweepResult(BaseModel):
    scanned: int = 0
    decayed: int = 0
    demoted: int = 0
    disabled: int = 0
    skipped: int = 0        # Decayed by someone else first, or no longer eligible
    failed: int = 0
    started_at: datetime
    finished_at: Optional[datetime] = None


class DecaySchedule:
    """When the sweep should fire. Cron expressions are evaluated in UTC."""

    def __init__(self, config: Optional[DecayScheduleConfig] = None):
        self.config = config or DecayScheduleConfig()
        if not croniter.is_valid(self.config.cron):
            raise ValueError(f"Invalid decay schedule: {self.config.cron!r}")

    def next_run(self, after: Optional[datetime] = None) -> datetime:
        return croniter(self.config.cron, after or datetime.utcnow()).get_next(datetime)

    def previous_run(self, before: Optional[datetime] = None) -> datetime:
        return croniter(self.config.cron, before or datetime.utcnow()).get_prev(datetime)

    def is_due(self, last_run: Optional[datetime], now: Optional[datetime] = None) -> bool:
        """True if a scheduled fire time has passed since `last_run`."""
        now = now or datetime.utcnow()
        if last_run is None:
            return True
        return self.next_run(last_run) <= now


def run_time_decay_sweep(
    store: RuleStore,
    now: Optional[datetime] = None,
    config: Optional[LearningConfig] = None,
) -> DecaySweepResult:
    """Decay every due rule once. A failing row is counted and the sweep goes on."""
    cfg = config or LearningConfig()
    now = now or datetime.utcnow()
    result = DecaySweepResult(started_at=now)

    candidates = store.list_rules_due_for_decay(decay_cutoff(now, cfg))
    result.scanned = len(candidates)

    for rule in candidates:
        try:
            update = store.update_rule(
                rule.id,
                lambda r: time_decay(r, now, cfg),
                max_retries=cfg.max_cas_retries,
            )
            if update is None:
                result.skipped += 1
                continue
            log_rule_changes(store, update, "time decay")
        except Exception:
            logger.exception("Time decay failed for rule %s", rule.id)
            result.failed += 1
            continue

        result.decayed += 1
        if update.after.is_disabled:
            result.disabled += 1
        elif update.after.strength_stage != update.before.strength_stage:
            result.demoted += 1

    result.finished_at = datetime.utcnow()
    logger.info(
        "Time decay sweep: scanned=%d decayed=%d demoted=%d disabled=%d skipped=%d failed=%d",
        result.scanned,
        result.decayed,
        result.demoted,
        result.disabled,
        result.skipped,
        result.failed,
    )
    return result
