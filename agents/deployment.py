"""Deployment agent: reports that applied changes are ready to ship."""

from agents.base import StepAgent
from core.state import Step, StepResult


class DeploymentAgent(StepAgent):
    name = "deployment"
    step = Step.DEPLOYMENT

    def run(self, state, ctx) -> StepResult:
        applied = [p.file_path for p in state.applied_patches if p.success]
        lines = [f"{len(applied)} file(s) are ready to deploy:"]
        lines.extend(f"- {path}" for path in applied)
        if state.deployment_docs:
            lines += ["", state.deployment_docs]
        return StepResult(
            success=True,
            next_step=Step.RESPONDING,
            user_message="\n".join(lines),
        )
