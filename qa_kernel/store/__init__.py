"""Durable learning state."""

from qa_kernel.store.rule_store import GLOBAL_OWNER, RuleStore, RuleUpdate

__all__ = ["GLOBAL_OWNER", "RuleStore", "RuleUpdate"]
