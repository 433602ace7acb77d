"""Rule constraint block — active rules laid out by escalation level for prompt injection."""

from typing import Dict, List

from qa_kernel.models.rule import EscalationLevel, PolicyRule, RuleStatus


def _by_level(rules: List[PolicyRule]) -> Dict[EscalationLevel, List[PolicyRule]]:
    grouped: Dict[EscalationLevel, List[PolicyRule]] = {level: [] for level in EscalationLevel}
    for rule in rules:
        if rule.status == RuleStatus.ACTIVE:
            grouped[rule.escalation_level].append(rule)
    return grouped


def format_rule_constraints(rules: List[PolicyRule]) -> str:
    """System rules first, then critical, then body. Empty string if no active rules."""
    grouped = _by_level(rules)
    lines = []

    if grouped[EscalationLevel.SYSTEM]:
        lines.append("=" * 56)
        lines.append("SYSTEM-LEVEL CONSTRAINTS (ABSOLUTE REQUIREMENTS)")
        lines.append("=" * 56)
        for i, rule in enumerate(grouped[EscalationLevel.SYSTEM], 1):
            lines.append(f"{i}. [{rule.category}] {rule.rule_text}")
            lines.append(
                f"   Confirmed: {rule.support_count}x | Violations: {rule.violation_count}x"
            )
        lines.append("")

    if grouped[EscalationLevel.CRITICAL]:
        lines.append("*** CRITICAL CONSTRAINTS (HIGH ATTENTION REQUIRED) ***")
        for i, rule in enumerate(grouped[EscalationLevel.CRITICAL], 1):
            lines.append(f"{i}. [{rule.category}] {rule.rule_text}")
            lines.append(
                f"   Confirmed: {rule.support_count}x | Violations: {rule.violation_count}x"
            )
        lines.append("")

    if grouped[EscalationLevel.BODY]:
        lines.append("=== LEARNED POLICY RULES (from user feedback) ===")
        for i, rule in enumerate(grouped[EscalationLevel.BODY], 1):
            lines.append(
                f"{i}. [{rule.category}] {rule.rule_text} (confirmed {rule.support_count}x)"
            )

    if not lines:
        return ""
    return "\n".join(lines).rstrip("\n") + "\n"


def constraint_stack_depth(rules: List[PolicyRule]) -> Dict[str, object]:
    grouped = _by_level(rules)
    by_level = {level.value: len(items) for level, items in grouped.items()}
    return {"total": sum(by_level.values()), "by_level": by_level}
