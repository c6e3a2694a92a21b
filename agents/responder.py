"""Responder agent: closes the run with a summary for the user."""

from agents.base import StepAgent
from core.patches import diff_stats
from core.state import Step, StepResult


def summarize(state):
    if state.plan is None or not state.plan.steps:
        return ""
    applied = [p for p in state.applied_patches if p.success]
    failed = [p for p in state.applied_patches if not p.success]
    if not applied and not failed:
        return "Done. No files were changed."

    additions = deletions = 0
    for diff in state.pending_diffs:
        stats = diff_stats(diff.diff)
        additions += stats["additions"]
        deletions += stats["deletions"]

    parts = [f"Done. Changed {len(applied)} file(s), +{additions} -{deletions} lines."]
    if failed:
        parts.append("Could not apply: " + ", ".join(f"{p.file_path} ({p.error})" for p in failed))
    return "\n".join(parts)


class ResponderAgent(StepAgent):
    name = "responder"
    step = Step.RESPONDING

    def run(self, state, ctx) -> StepResult:
        return StepResult(success=True, next_step=Step.IDLE, user_message=summarize(state) or None)
