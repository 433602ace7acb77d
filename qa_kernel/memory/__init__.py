"""Prompt-side memory: human feedback and learned rule constraints."""

from qa_kernel.memory.builder import FeedbackMemoryBuilder
from qa_kernel.memory.constraints import constraint_stack_depth, format_rule_constraints

__all__ = ["FeedbackMemoryBuilder", "constraint_stack_depth", "format_rule_constraints"]
