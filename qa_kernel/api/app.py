"""
QA Kernel API — FastAPI endpoints.

Exposes the kernel's functionality via a REST API for:
- Generation task retry decisions
- Violation tracking and pipeline completion
- Human feedback and outcome attribution
- Rule inspection and user controls
- The daily decay sweep
- Prompt memory and constraint blocks
"""

from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from qa_kernel.errors import InvalidTransitionError, RuleNotFoundError
from qa_kernel.kernel import QAPolicyKernel
from qa_kernel.learning.feedback import event_from_vote
from qa_kernel.memory.constraints import constraint_stack_depth, format_rule_constraints
from qa_kernel.models.config import KernelConfig
from qa_kernel.models.feedback import (
    FeedbackContext,
    FeedbackDecision,
    FeedbackEvent,
    FeedbackSignal,
)
from qa_kernel.models.retry import RetryState
from qa_kernel.models.rule import RuleStatus, ScopeLevel
from qa_kernel.store.rule_store import RuleStore


# --- Request/Response Models ---

class TaskCreateRequest(BaseModel):
    task_id: Optional[str] = None
    step_id: Optional[int] = None
    auto_retry_enabled: bool = True
    max_attempts: Optional[int] = Field(default=None, ge=1)


class VerdictRequest(BaseModel):
    owner_id: str
    pipeline_id: str
    verdict: Dict[str, Any]                 # Validated by the retry engine
    total_attempts_in_run: int = 0


class ToggleRequest(BaseModel):
    enabled: bool


class ViolationRequest(BaseModel):
    owner_id: str
    pipeline_id: str
    step_id: int
    category: str
    rule_text: str


class PipelineCompleteRequest(BaseModel):
    owner_id: str
    step_id: int


class FeedbackRequest(BaseModel):
    owner_id: str
    step_id: int
    pipeline_id: Optional[str] = None
    decision: Optional[FeedbackDecision] = None
    signal: Optional[FeedbackSignal] = None
    score: Optional[int] = Field(default=None, ge=0, le=100)
    reason_text: str = ""
    category: str = "other"
    qa_original_status: Optional[str] = None
    context: FeedbackContext = FeedbackContext()


class OutcomeRequest(BaseModel):
    rule_ids: List[str]
    decision: FeedbackDecision


class OverrideRequest(BaseModel):
    pipeline_id: str
    reason: Optional[str] = None


class DecayRunRequest(BaseModel):
    now: Optional[datetime] = None


# --- Application Factory ---

def create_app(
    store: Optional[RuleStore] = None,
    config: Optional[KernelConfig] = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""

    app = FastAPI(
        title="QA Kernel API",
        description="QA policy learning and retry decision engine",
        version="0.1.0-alpha",
    )

    kernel = QAPolicyKernel(store=store, config=config)
    tasks: Dict[str, RetryState] = {}

    app.state.kernel = kernel
    app.state.tasks = tasks
    app.state.last_decay_run = None

    def _task(task_id: str) -> RetryState:
        if task_id not in tasks:
            raise HTTPException(404, "Task not found")
        return tasks[task_id]

    def _rule_call(fn, *args):
        try:
            return fn(*args)
        except RuleNotFoundError as exc:
            raise HTTPException(404, exc.to_dict())
        except InvalidTransitionError as exc:
            raise HTTPException(409, exc.to_dict())

    # === TASKS & RETRY ===

    @app.post("/tasks")
    def create_task(req: TaskCreateRequest):
        """Open retry tracking for a generation task."""
        task_id = req.task_id or f"task_{uuid4().hex[:12]}"
        if task_id in tasks:
            raise HTTPException(409, "Task already exists")
        state = kernel.retry.new_state(
            task_id,
            step_id=req.step_id,
            auto_retry_enabled=req.auto_retry_enabled,
            max_attempts=req.max_attempts,
        )
        tasks[task_id] = state
        return state.model_dump(mode="json")

    @app.get("/tasks/{task_id}")
    def get_task(task_id: str):
        return _task(task_id).model_dump(mode="json")

    @app.post("/tasks/{task_id}/attempts")
    def begin_attempt(task_id: str):
        """Start the next attempt."""
        state = _task(task_id)
        try:
            kernel.retry.begin_attempt(state)
        except InvalidTransitionError as exc:
            raise HTTPException(409, exc.to_dict())
        return state.model_dump(mode="json")

    @app.post("/tasks/{task_id}/verdict")
    def submit_verdict(task_id: str, req: VerdictRequest):
        """Submit the QA verdict for the current attempt."""
        state = _task(task_id)
        try:
            decision = kernel.handle_verdict(
                state,
                req.verdict,
                owner_id=req.owner_id,
                pipeline_id=req.pipeline_id,
                total_attempts_in_run=req.total_attempts_in_run,
            )
        except InvalidTransitionError as exc:
            raise HTTPException(409, exc.to_dict())
        return {
            "decision": decision.model_dump(mode="json"),
            "task": state.model_dump(mode="json"),
        }

    @app.put("/tasks/{task_id}/auto-retry")
    def set_auto_retry(task_id: str, req: ToggleRequest):
        state = kernel.retry.set_auto_retry(_task(task_id), req.enabled)
        return state.model_dump(mode="json")

    # === VIOLATIONS & PIPELINES ===

    @app.post("/violations")
    def record_violation(req: ViolationRequest):
        """Record one rule violation inside a pipeline run."""
        rule = kernel.lifecycle.observe_violation(
            req.owner_id, req.pipeline_id, req.step_id, req.category, req.rule_text
        )
        active = kernel.lifecycle.get_active_pipeline_rules(req.pipeline_id, req.step_id)
        return {
            "user_rule": rule.model_dump(mode="json") if rule else None,
            "active_pipeline_rules": [r.model_dump(mode="json") for r in active],
        }

    @app.post("/pipelines/{pipeline_id}/complete")
    def complete_pipeline(pipeline_id: str, req: PipelineCompleteRequest):
        return kernel.complete_pipeline(req.owner_id, pipeline_id, req.step_id)

    # === FEEDBACK ===

    @app.post("/feedback")
    def submit_feedback(req: FeedbackRequest):
        """Human approve/reject decision or like/dislike vote."""
        if req.signal is not None:
            event = event_from_vote(
                req.owner_id,
                req.step_id,
                req.signal,
                score=req.score,
                comment=req.reason_text,
                category=req.category,
                pipeline_id=req.pipeline_id,
                qa_original_status=req.qa_original_status,
                context=req.context,
            )
        elif req.decision is not None:
            event = FeedbackEvent(
                id=f"fb_{uuid4().hex[:12]}",
                owner_id=req.owner_id,
                step_id=req.step_id,
                pipeline_id=req.pipeline_id,
                decision=req.decision,
                score=req.score,
                reason_text=req.reason_text[:500],
                category=req.category,
                qa_original_status=req.qa_original_status,
                context=req.context,
                created_at=datetime.utcnow(),
            )
        else:
            raise HTTPException(422, "Either decision or signal is required")
        return kernel.record_feedback(event).model_dump(mode="json")

    @app.post("/outcomes")
    def record_outcome(req: OutcomeRequest):
        """Attribute a human decision to the rules that fired."""
        rules = kernel.record_human_outcome(req.rule_ids, req.decision)
        return [r.model_dump(mode="json") for r in rules]

    # === RULES ===

    @app.get("/rules")
    def list_rules(
        owner_id: Optional[str] = None,
        step_id: Optional[int] = None,
        status: Optional[RuleStatus] = None,
        scope_level: Optional[ScopeLevel] = None,
    ):
        rules = kernel.store.list_rules(owner_id, step_id, status, scope_level)
        return [r.model_dump(mode="json") for r in rules]

    @app.get("/rules/{rule_id}")
    def get_rule(rule_id: str):
        rule = kernel.store.get_rule(rule_id)
        if not rule:
            raise HTTPException(404, "Rule not found")
        return rule.model_dump(mode="json")

    @app.get("/rules/{rule_id}/history")
    def get_rule_history(rule_id: str, limit: int = 100):
        """Change log and overrides for a rule."""
        if not kernel.store.get_rule(rule_id):
            raise HTTPException(404, "Rule not found")
        return {
            "changes": [
                c.model_dump(mode="json")
                for c in kernel.store.list_changes(rule_id=rule_id, limit=limit)
            ],
            "overrides": [
                o.model_dump(mode="json") for o in kernel.store.list_overrides(rule_id)
            ],
        }

    @app.put("/rules/{rule_id}/mute")
    def mute_rule(rule_id: str, req: ToggleRequest):
        return _rule_call(kernel.lifecycle.set_muted, rule_id, req.enabled).model_dump(mode="json")

    @app.put("/rules/{rule_id}/lock")
    def lock_rule(rule_id: str, req: ToggleRequest):
        return _rule_call(kernel.lifecycle.set_locked, rule_id, req.enabled).model_dump(mode="json")

    @app.post("/rules/{rule_id}/promote-law")
    def promote_law(rule_id: str):
        """Manual promotion to LAW."""
        return _rule_call(kernel.lifecycle.promote_to_law, rule_id).model_dump(mode="json")

    @app.post("/rules/{rule_id}/demote-law")
    def demote_law(rule_id: str):
        return _rule_call(kernel.lifecycle.demote_from_law, rule_id).model_dump(mode="json")

    @app.post("/rules/{rule_id}/promote-global")
    def promote_global(rule_id: str):
        return _rule_call(kernel.lifecycle.promote_to_global, rule_id).model_dump(mode="json")

    @app.post("/rules/{rule_id}/override")
    def override_rule(rule_id: str, req: OverrideRequest):
        """Human proceeded past the rule's warning."""
        override = _rule_call(
            kernel.lifecycle.record_override, rule_id, req.pipeline_id, req.reason
        )
        return override.model_dump(mode="json")

    # === OWNERS ===

    @app.post("/owners/{owner_id}/reset")
    def reset_owner(owner_id: str):
        """Disable every user-scope rule the owner has learned."""
        return {"owner_id": owner_id, "disabled": kernel.lifecycle.reset_profile(owner_id)}

    # === DECAY ===

    @app.post("/decay/run")
    def run_decay(req: Optional[DecayRunRequest] = None):
        """Run the time-decay sweep (normally fired by an external scheduler)."""
        now = req.now if req and req.now else None
        result = kernel.run_decay_sweep(now)
        app.state.last_decay_run = result.started_at
        return result.model_dump(mode="json")

    @app.get("/decay/schedule")
    def decay_schedule():
        last = app.state.last_decay_run
        return {
            "cron": kernel.schedule.config.cron,
            "last_run": last.isoformat() if last else None,
            "next_run": kernel.schedule.next_run(last).isoformat(),
            "due": kernel.schedule.is_due(last),
        }

    # === MEMORY ===

    @app.get("/memory/{owner_id}/{step_id}")
    def get_memory(owner_id: str, step_id: int, limit: Optional[int] = None):
        """Feedback memory, the formatted prompt block and its compact summary."""
        memory = kernel.build_memory(owner_id, step_id, limit)
        return {
            "memory": memory.model_dump(mode="json"),
            "block": kernel.memory.format(memory),
            "summary": kernel.memory.compact_summary(memory),
        }

    @app.get("/constraints/{owner_id}/{step_id}")
    def get_constraints(owner_id: str, step_id: int):
        """Active rules laid out by escalation level."""
        rules = kernel.store.list_active_rules_for_step(owner_id, step_id, limit=50)
        return {
            "block": format_rule_constraints(rules),
            "depth": constraint_stack_depth(rules),
        }

    return app


# Default application instance
app = create_app()
