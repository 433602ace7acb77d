"""
Feedback Memory Builder — bounded, prioritized human context for the next prompt.

Reads the store (never a cache) and assembles:
  - recent approve/reject decisions and like/dislike votes, newest first
  - calibration hints: how often humans overturned machine QA, and how
    strict this human is
  - up to ten learned preferences from active rules and recurring
    rejection keywords

`format` renders the memory as one fenced text block capped at
`max_block_chars`. The block always restates that hard rules win over
soft human preference.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from qa_kernel.models.config import MemoryConfig
from qa_kernel.models.feedback import (
    CalibrationHints,
    CalibrationStat,
    FeedbackDecision,
    FeedbackEvent,
    FeedbackMemory,
    UserStrictness,
)
from qa_kernel.models.rule import PolicyRule
from qa_kernel.store.rule_store import RuleStore

logger = logging.getLogger(__name__)

FENCE = "=" * 67

# Keyword found in a rejection reason -> preference it suggests
REJECTION_PATTERNS = [
    ("bed", "bed-related issues"),
    ("furniture", "furniture placement issues"),
    ("wall", "wall/structural issues"),
    ("door", "door/opening issues"),
    ("window", "window issues"),
    ("scale", "scale/proportion issues"),
    ("color", "color/material issues"),
    ("light", "lighting issues"),
    ("seam", "seam/edge issues"),
    ("artifact", "visual artifacts"),
    ("bathroom", "bathroom fixture issues"),
    ("kitchen", "kitchen element issues"),
]

HEADER = "\n".join([
    FENCE,
    "HUMAN FEEDBACK MEMORY (Use as soft preferences, NOT hard rules)",
    FENCE,
    "",
    "CRITICAL: Human feedback influences BORDERLINE decisions only.",
    "HARD RULES ALWAYS TAKE PRECEDENCE over human preferences:",
    "- Layout fidelity (walls, doors, windows must match floor plan)",
    "- Camera intent (render must show specified camera angle)",
    "- Room connectivity (openings only to adjacent rooms)",
    "- Room type consistency (no invented rooms or structural elements)",
    "",
    "If human feedback contradicts hard rules, hard rules always win over "
    "soft human preference.",
    FENCE,
])


def _percent(part: int, total: int) -> int:
    """Whole percent, halves rounded up."""
    if total <= 0:
        return 0
    return int(part * 100 / total + 0.5)


def build_calibration_hints(
    stats: List[CalibrationStat], examples: List[FeedbackEvent]
) -> CalibrationHints:
    false_reject = sum(s.false_reject_count for s in stats)
    false_approve = sum(s.false_approve_count for s in stats)
    total = sum(s.total for s in stats)

    scores = [e.score for e in examples if e.score is not None]
    avg_score = sum(scores) / len(scores) if scores else 50.0

    rejections = sum(1 for e in examples if e.decision == FeedbackDecision.REJECTED)
    rejection_rate = rejections / len(examples) if examples else 0.5

    strictness = UserStrictness.BALANCED
    if avg_score > 65 and rejection_rate < 0.3:
        strictness = UserStrictness.LENIENT
    elif avg_score < 45 or rejection_rate > 0.6:
        strictness = UserStrictness.STRICT

    return CalibrationHints(
        false_reject_rate=_percent(false_reject, total),
        false_approve_rate=_percent(false_approve, total),
        user_strictness=strictness,
        total_decisions=len(examples),
    )


def extract_preferences(
    rules: List[PolicyRule],
    examples: List[FeedbackEvent],
    config: Optional[MemoryConfig] = None,
) -> List[str]:
    cfg = config or MemoryConfig()
    preferences = []

    for rule in rules[:cfg.max_rule_preferences]:
        if rule.support_count >= cfg.min_rule_support:
            preferences.append(f"[{rule.category}] {rule.rule_text}")

    rejection_reasons = [
        e.reason_text.lower()
        for e in examples
        if e.decision == FeedbackDecision.REJECTED and e.reason_text
    ]
    counts: Dict[str, int] = {}
    for reason in rejection_reasons:
        for keyword, pattern in REJECTION_PATTERNS:
            if keyword in reason:
                counts[pattern] = counts.get(pattern, 0) + 1
    for pattern, count in counts.items():
        if count >= cfg.min_pattern_count and len(preferences) < cfg.max_pattern_preferences:
            preferences.append(f"User frequently rejects due to {pattern} ({count}x)")

    approvals = [
        e.reason_text
        for e in examples
        if e.decision == FeedbackDecision.APPROVED and len(e.reason_text) > 5
    ]
    if len(approvals) >= 3:
        sample = "; ".join(approvals[:2])
        if len(sample) > 10 and len(preferences) < cfg.max_preferences:
            preferences.append(f'User approval patterns: "{sample[:100]}"')

    return preferences[:cfg.max_preferences]


class FeedbackMemoryBuilder:
    """Builds and renders the per (owner, step) feedback memory."""

    def __init__(self, store: RuleStore, config: Optional[MemoryConfig] = None):
        self.store = store
        self.config = config or MemoryConfig()

    def build(self, owner_id: str, step_id: int, limit: Optional[int] = None) -> FeedbackMemory:
        if limit is None:
            limit = self.config.default_limit
        decisions = self.store.recent_feedback(owner_id, step_id, limit, votes=False)
        votes = self.store.recent_feedback(owner_id, step_id, limit, votes=True)
        examples = sorted(decisions + votes, key=lambda e: e.created_at, reverse=True)

        stats = self.store.list_calibration_stats(owner_id, step_id)
        rules = self.store.list_active_rules_for_step(owner_id, step_id, limit=10)

        memory = FeedbackMemory(
            owner_id=owner_id,
            step_id=step_id,
            recent_examples=examples[:limit],
            learned_preferences=extract_preferences(rules, examples, self.config),
            calibration_hints=build_calibration_hints(stats, examples),
            examples_count=len(examples),
            built_at=datetime.utcnow(),
        )
        logger.debug(
            "Built memory for step %d: %d examples, %d preferences, strictness %s",
            step_id,
            memory.examples_count,
            len(memory.learned_preferences),
            memory.calibration_hints.user_strictness.value,
        )
        return memory

    def _calibration_note(self, hints: CalibrationHints) -> Optional[str]:
        if hints.total_decisions == 0:
            return None
        if hints.user_strictness == UserStrictness.STRICT:
            note = (
                "USER IS STRICT: They frequently reject outputs. "
                "Apply tighter constraints on borderline cases."
            )
        elif hints.user_strictness == UserStrictness.LENIENT:
            note = (
                "USER IS LENIENT: They usually approve outputs. "
                "Only reject for clear violations, be tolerant on minor issues."
            )
        else:
            note = "USER IS BALANCED: Apply standard QA thresholds."
        if hints.false_reject_rate > 30:
            note += (
                f" WARNING: {hints.false_reject_rate}% of past rejections were "
                "overturned by user (QA too strict)."
            )
        if hints.false_approve_rate > 30:
            note += (
                f" WARNING: {hints.false_approve_rate}% of past approvals were "
                "rejected by user (QA too lenient)."
            )
        return note

    @staticmethod
    def _example_line(index: int, event: FeedbackEvent) -> str:
        ctx = event.context.space_type or event.context.room_name or ""
        signal = f" [{event.signal.value}]" if event.signal else ""
        score = f" (score: {event.score}/100)" if event.score is not None else ""
        where = f" [{ctx}]" if ctx else ""
        return (
            f'{index}. {event.decision.value.upper()}{signal}{score}: '
            f'"{event.reason_text[:100]}"{where}'
        )

    def _render(self, calibration: Optional[str], preferences: List[str], examples: List[FeedbackEvent]) -> str:
        sections = [HEADER]
        if calibration:
            sections.append(f"\n=== CALIBRATION ===\n{calibration}")
        if preferences:
            sections.append("\n=== LEARNED USER PREFERENCES ===")
            sections.extend(f"{i}. {p}" for i, p in enumerate(preferences, 1))
        if examples:
            sections.append("\n=== RECENT USER DECISIONS (few-shot examples) ===")
            sections.extend(self._example_line(i, e) for i, e in enumerate(examples, 1))
        sections.append(f"\n{FENCE}")
        return "\n".join(sections)

    def format(self, memory: FeedbackMemory) -> str:
        """Prompt block, or "" when there is nothing worth injecting."""
        if memory.examples_count == 0 and not memory.learned_preferences:
            return ""

        calibration = self._calibration_note(memory.calibration_hints)
        preferences = list(memory.learned_preferences)
        examples = [
            e for e in memory.recent_examples if e.reason_text and len(e.reason_text) > 5
        ][:self.config.max_examples_in_prompt]

        block = self._render(calibration, preferences, examples)
        # Shed the least important content first: examples, then preferences.
        while len(block) > self.config.max_block_chars and (examples or preferences):
            if examples:
                examples.pop()
            else:
                preferences.pop()
            block = self._render(calibration, preferences, examples)
        if len(block) > self.config.max_block_chars:
            block = self._render(None, [], [])
        return block

    @staticmethod
    def compact_summary(memory: FeedbackMemory) -> Dict[str, Any]:
        return {
            "step": memory.step_id,
            "examples_count": memory.examples_count,
            "preferences_count": len(memory.learned_preferences),
            "strictness": memory.calibration_hints.user_strictness.value,
            "false_reject_rate": memory.calibration_hints.false_reject_rate,
        }
