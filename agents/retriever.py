"""Retrieval agent: answers "search" plan steps from the search index."""

from agents.base import StepAgent
from config.defaults import DEFAULTS
from core.state import Step, StepResult, next_open_index, route_for_index


class RetrieverAgent(StepAgent):
    name = "retriever"
    step = Step.RETRIEVAL

    def run(self, state, ctx) -> StepResult:
        plan = state.plan
        index = next_open_index(plan, state.current_step_index)
        if plan is None or index >= len(plan.steps):
            return StepResult(success=True, next_step=Step.REFLECTION,
                              updates={"current_step_index": index})

        step = plan.steps[index]
        query = " ".join(filter(None, [step.description, step.target_symbol, step.target_file]))
        ctx.status(f"Searching for {query}")
        hits = ctx.collaborators.search.search(query, DEFAULTS["search_top_k"])

        step.completed = True
        if hits:
            message = "Relevant files:\n" + "\n".join(f"- {h}" for h in hits)
        else:
            message = f"No files matched \"{query}\"."

        nxt = next_open_index(plan, index + 1)
        return StepResult(
            success=True,
            next_step=route_for_index(plan, nxt),
            updates={"plan": plan, "current_step_index": nxt},
            user_message=message,
        )
