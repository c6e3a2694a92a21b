"""Pipeline state models shared across all steps."""

from __future__ import annotations

import enum
import math
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable

COST_PER_1K_TOKENS = 0.0015


class Step(str, enum.Enum):
    INGESTION = "ingestion"
    PLANNING = "planning"
    RETRIEVAL = "retrieval"
    EDITING = "editing"
    REFLECTION = "reflection"
    DEPLOYMENT = "deployment"
    RESPONDING = "responding"
    IDLE = "idle"
    ERROR = "error"


PLAN_ACTIONS = ("create", "edit", "delete", "search", "explain")


@dataclass
class PlanStep:
    id: str
    action: str                 # create|edit|delete|search|explain
    target_file: str
    description: str
    target_symbol: str | None = None
    rationale: str = ""
    completed: bool = False
    diff: str | None = None
    error: str | None = None
    attempts: int = 0           # reviewer rejections so far


@dataclass
class ExecutionPlan:
    goal: str
    intent: str
    steps: list[PlanStep] = field(default_factory=list)


@dataclass
class UnifiedDiff:
    file_path: str
    original_content: str
    patched_content: str
    diff: str
    target_symbol: str | None = None
    line_range: tuple[int, int] | None = None
    step_id: str = ""


@dataclass
class PatchResult:
    file_path: str
    success: bool
    error: str | None = None
    syntax_valid: bool = True


@dataclass
class TranscriptMessage:
    role: str                   # "user" | "assistant" | "system"
    content: str
    step: str = ""
    timestamp: float = field(default_factory=time.time)


@dataclass
class PipelineState:
    session_id: str = ""
    current_step: Step = Step.INGESTION
    goal_text: str = ""
    translated_goal_text: str = ""
    input_language: str = "en"
    intent: str = ""
    plan: ExecutionPlan | None = None
    current_step_index: int = 0
    pending_diffs: list[UnifiedDiff] = field(default_factory=list)
    applied_patches: list[PatchResult] = field(default_factory=list)
    transcript: list[TranscriptMessage] = field(default_factory=list)
    explanation_markdown: str = ""
    deployment_docs: str = ""
    tokens_used: int = 0
    estimated_cost: float = 0.0
    error: str | None = None
    failed_step: Step | None = None
    started_at: float = 0.0
    last_updated_at: float = 0.0

    @property
    def active_plan_step(self) -> PlanStep | None:
        if self.plan is None or self.current_step_index >= len(self.plan.steps):
            return None
        return self.plan.steps[self.current_step_index]

    def to_dict(self) -> dict:
        """JSON-friendly summary used by the CLI and HTTP surfaces."""
        plan = None
        if self.plan is not None:
            plan = {
                "goal": self.plan.goal,
                "intent": self.plan.intent,
                "steps": [
                    {
                        "id": s.id,
                        "action": s.action,
                        "target_file": s.target_file,
                        "target_symbol": s.target_symbol,
                        "description": s.description,
                        "completed": s.completed,
                        "error": s.error,
                        "attempts": s.attempts,
                    }
                    for s in self.plan.steps
                ],
            }
        return {
            "session_id": self.session_id,
            "current_step": self.current_step.value,
            "goal_text": self.goal_text,
            "input_language": self.input_language,
            "intent": self.intent,
            "plan": plan,
            "current_step_index": self.current_step_index,
            "pending_diffs": [d.file_path for d in self.pending_diffs],
            "applied_patches": [
                {"file_path": p.file_path, "success": p.success, "error": p.error}
                for p in self.applied_patches
            ],
            "transcript": [
                {"role": m.role, "content": m.content, "step": m.step}
                for m in self.transcript
            ],
            "tokens_used": self.tokens_used,
            "estimated_cost": self.estimated_cost,
            "error": self.error,
            "failed_step": self.failed_step.value if self.failed_step else None,
        }


@dataclass
class StepResult:
    success: bool
    next_step: Step
    updates: dict[str, Any] = field(default_factory=dict)
    user_message: str | None = None
    error: str | None = None
    tokens_used: int = 0        # delta for this invocation


@dataclass
class StepContext:
    collaborators: Any
    cancel: Any
    status: Callable[[str], None] = lambda message: None


def create_state(session_id=None, clock=time.time) -> PipelineState:
    now = clock()
    return PipelineState(
        session_id=session_id or uuid.uuid4().hex,
        started_at=now,
        last_updated_at=now,
    )


def estimate_tokens(text) -> int:
    """Rough token count: four characters per token."""
    return int(math.ceil(len(text or "") / 4))


def estimate_cost(tokens) -> float:
    return tokens / 1000 * COST_PER_1K_TOKENS


def apply_updates(state: PipelineState, updates, tokens_delta=0, clock=time.time) -> PipelineState:
    """Merge a handler's updates into `state` and re-establish invariants.

    Unknown keys raise AttributeError: a handler naming a field that does
    not exist is a programming error. Token usage only ever grows.
    """
    for key, value in (updates or {}).items():
        if key in ("tokens_used", "estimated_cost"):
            continue
        if not hasattr(state, key):
            raise AttributeError(f"PipelineState has no field {key!r}")
        setattr(state, key, value)

    state.tokens_used += max(0, int(tokens_delta))
    state.estimated_cost = estimate_cost(state.tokens_used)

    step_count = len(state.plan.steps) if state.plan else 0
    state.current_step_index = min(max(0, state.current_step_index), step_count)
    state.last_updated_at = clock()
    return state


def next_open_index(plan, start):
    """First index >= start whose plan step is not yet completed."""
    index = start
    while plan is not None and index < len(plan.steps) and plan.steps[index].completed:
        index += 1
    return index


def route_for_index(plan, index) -> Step:
    """Branch rule after a plan step: review when done, else the next action."""
    if plan is None or index >= len(plan.steps):
        return Step.REFLECTION
    if plan.steps[index].action == "search":
        return Step.RETRIEVAL
    return Step.EDITING
