"""Base class that every step agent extends."""

from abc import ABC, abstractmethod

from core.state import Step, StepResult


class StepAgent(ABC):
    """A pipeline step handler: run(state_snapshot, ctx) -> StepResult.

    Agents never mutate shared state. They work on the snapshot they are
    given and hand every change back in StepResult.updates.
    """

    name = "base"
    step = None                 # the Step this agent handles
    role = None                 # model gateway role, if the agent calls a model
    system_prompt = ""

    def __call__(self, state, ctx) -> StepResult:
        return self.run(state, ctx)

    @abstractmethod
    def run(self, state, ctx) -> StepResult:
        """Do this step's work and say where the pipeline goes next."""

    def ask(self, ctx, prompt, system=None, response_format=None):
        """Send a prompt through the gateway under this agent's role."""
        return ctx.collaborators.gateway.complete(
            self.role,
            system or self.system_prompt,
            prompt,
            response_format=response_format,
            on_status=ctx.status,
            cancel=ctx.cancel,
        )

    def ask_json(self, ctx, prompt, system=None):
        return ctx.collaborators.gateway.complete_json(
            self.role,
            system or self.system_prompt,
            prompt,
            on_status=ctx.status,
            cancel=ctx.cancel,
        )

    def fail(self, message, tokens_used=0, **updates) -> StepResult:
        updates["error"] = message
        updates.setdefault("failed_step", self.step)
        return StepResult(
            success=False,
            next_step=Step.ERROR,
            updates=updates,
            error=message,
            tokens_used=tokens_used,
        )
