"""Rule learning: lifecycle, strength, decay and feedback ingestion."""

from qa_kernel.learning.decay import HealthDecayEngine, calculate_confidence
from qa_kernel.learning.decay_job import DecaySchedule, DecaySweepResult, run_time_decay_sweep
from qa_kernel.learning.feedback import FeedbackRecorder, classify_outcome, event_from_vote
from qa_kernel.learning.lifecycle import RuleLifecycleManager
from qa_kernel.learning.strength import calculate_escalation_level, calculate_strength_stage

__all__ = [
    "DecaySchedule",
    "DecaySweepResult",
    "FeedbackRecorder",
    "HealthDecayEngine",
    "RuleLifecycleManager",
    "calculate_confidence",
    "calculate_escalation_level",
    "calculate_strength_stage",
    "classify_outcome",
    "event_from_vote",
    "run_time_decay_sweep",
]
