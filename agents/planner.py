"""Planner agent: turns a goal into an ordered list of file-level actions."""

import logging

from agents.base import StepAgent
from config.defaults import DEFAULTS
from core.state import PLAN_ACTIONS, ExecutionPlan, PlanStep, Step, StepResult, route_for_index

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = """You are the planning stage of a code editing pipeline.
Given a goal and a repository file listing, produce the smallest ordered list
of file-level actions that achieves the goal.

Respond with a JSON object:
{
  "summary": "one sentence describing the change",
  "questions": ["clarifying question", ...],
  "steps": [
    {
      "action": "create" | "edit" | "delete" | "search" | "explain",
      "target_file": "relative/path.ext",
      "target_symbol": "functionOrClassName or null",
      "description": "what to do to this file",
      "rationale": "why this step is needed"
    }
  ]
}

Rules:
- Only ask questions when the goal cannot be planned without an answer; then
  return an empty "steps" list.
- Use "edit" with a target_symbol whenever the change is local to one function
  or class.
- Use "search" before editing when you do not know which file holds the code.
- Never invent files for "edit" or "delete" that are not in the listing.
"""


def build_plan(goal, intent, raw_steps):
    steps = []
    for item in raw_steps or []:
        if not isinstance(item, dict):
            continue
        action = str(item.get("action", "")).lower()
        if action not in PLAN_ACTIONS:
            logger.info("Dropping plan step with unknown action %r", action)
            continue
        steps.append(PlanStep(
            id=f"step-{len(steps) + 1}",
            action=action,
            target_file=item.get("target_file") or "",
            target_symbol=item.get("target_symbol") or None,
            description=item.get("description", ""),
            rationale=item.get("rationale", ""),
        ))
    return ExecutionPlan(goal=goal, intent=intent, steps=steps)


def describe_plan(plan):
    lines = [f"Plan ({len(plan.steps)} step{'s' if len(plan.steps) != 1 else ''}):"]
    for i, step in enumerate(plan.steps, 1):
        target = step.target_file
        if step.target_symbol:
            target += f" ({step.target_symbol})"
        lines.append(f"{i}. {step.action} {target}: {step.description}")
    return "\n".join(lines)


class PlannerAgent(StepAgent):
    """Produces an ExecutionPlan from the translated goal."""

    name = "planner"
    step = Step.PLANNING
    role = "planner"
    system_prompt = SYSTEM_PROMPT

    def run(self, state, ctx) -> StepResult:
        goal = state.translated_goal_text or state.goal_text
        collaborators = ctx.collaborators

        listing = collaborators.files.list()
        related = collaborators.search.search(goal, DEFAULTS["search_top_k"])

        parts = [f"Goal: {goal}", f"Intent: {state.intent or 'unknown'}", ""]
        parts.append("Repository files:")
        if listing:
            parts.extend(f"- {p}" for p in listing[:200])
        else:
            parts.append("(empty repository)")
        if related:
            parts.append("")
            parts.append("Most relevant files: " + ", ".join(related))

        ctx.status("Planning changes")
        result, reply = self.ask_json(ctx, "\n".join(parts))

        if not isinstance(result, dict):
            return StepResult(
                success=True,
                next_step=Step.RESPONDING,
                user_message="I could not turn that goal into a plan. Could you rephrase it?",
                tokens_used=reply.tokens_used,
            )

        questions = [q for q in result.get("questions") or [] if isinstance(q, str) and q.strip()]
        plan = build_plan(goal, state.intent, result.get("steps"))

        if questions and not plan.steps:
            return StepResult(
                success=True,
                next_step=Step.RESPONDING,
                updates={"plan": plan, "current_step_index": 0},
                user_message="Before I start, I need to know:\n" + "\n".join(f"- {q}" for q in questions),
                tokens_used=reply.tokens_used,
            )

        if not plan.steps:
            return StepResult(
                success=True,
                next_step=Step.RESPONDING,
                updates={"plan": plan, "current_step_index": 0},
                user_message="No changes are needed for that goal.",
                tokens_used=reply.tokens_used,
            )

        return StepResult(
            success=True,
            next_step=route_for_index(plan, 0),
            updates={
                "plan": plan,
                "current_step_index": 0,
                "pending_diffs": [],
                "applied_patches": [],
            },
            user_message=describe_plan(plan),
            tokens_used=reply.tokens_used,
        )
