"""Rule change log — records a transition only when a stored value actually changed."""

from datetime import datetime
from typing import List, Optional
from uuid import uuid4

from qa_kernel.models.rule import PolicyRule, RuleChangeRecord, RuleChangeType, RuleStatus
from qa_kernel.store.rule_store import RuleStore, RuleUpdate


def _record(
    rule: PolicyRule,
    change_type: RuleChangeType,
    from_value: Optional[str],
    to_value: Optional[str],
    reason: str,
    now: datetime,
) -> RuleChangeRecord:
    return RuleChangeRecord(
        id=f"chg_{uuid4().hex[:12]}",
        rule_id=rule.id,
        owner_id=rule.owner_id,
        change_type=change_type,
        from_value=from_value,
        to_value=to_value,
        trigger_reason=reason,
        rule_text=rule.rule_text,
        category=rule.category,
        violation_count=rule.violation_count,
        support_count=rule.support_count,
        created_at=now,
    )


def diff_rule(
    before: PolicyRule, after: PolicyRule, reason: str, now: Optional[datetime] = None
) -> List[RuleChangeRecord]:
    """Audit records for every classification that differs between two versions."""
    now = now or datetime.utcnow()
    records = []

    if before.status != after.status:
        if after.status == RuleStatus.ACTIVE and before.status == RuleStatus.PENDING:
            change_type = RuleChangeType.ACTIVATION
        else:
            change_type = RuleChangeType.DISABLED
        records.append(_record(
            after, change_type, before.status.value, after.status.value, reason, now
        ))

    if before.escalation_level != after.escalation_level:
        records.append(_record(
            after,
            RuleChangeType.ESCALATION,
            before.escalation_level.value,
            after.escalation_level.value,
            reason,
            now,
        ))

    if before.strength_stage != after.strength_stage:
        records.append(_record(
            after,
            RuleChangeType.STRENGTH,
            before.strength_stage.value,
            after.strength_stage.value,
            reason,
            now,
        ))

    return records


def log_rule_changes(store: RuleStore, update: RuleUpdate, reason: str) -> List[RuleChangeRecord]:
    records = diff_rule(update.before, update.after, reason)
    for record in records:
        store.append_change(record)
    return records


def log_scope_promotion(
    store: RuleStore,
    rule: PolicyRule,
    from_scope: str,
    reason: str,
) -> RuleChangeRecord:
    return store.append_change(_record(
        rule,
        RuleChangeType.SCOPE_PROMOTION,
        from_scope,
        rule.scope_level.value,
        reason,
        datetime.utcnow(),
    ))
