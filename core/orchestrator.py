"""Main pipeline orchestrator: drives PipelineState through the step graph."""

import copy
import logging
import threading
import time

from agents.deployment import DeploymentAgent
from agents.editor import EditorAgent
from agents.ingestion import IngestionAgent
from agents.planner import PlannerAgent
from agents.responder import ResponderAgent
from agents.retriever import RetrieverAgent
from agents.reviewer import ReviewerAgent
from config.defaults import DEFAULTS
from core.cancel import CancelToken
from core.errors import RunCancelled, StepFailure, StepSmithError
from core.state import (
    Step,
    StepContext,
    StepResult,
    TranscriptMessage,
    apply_updates,
    create_state,
)

logger = logging.getLogger(__name__)

TERMINAL_STEPS = (Step.IDLE, Step.ERROR)


def default_handlers():
    return {
        Step.INGESTION: IngestionAgent(),
        Step.PLANNING: PlannerAgent(),
        Step.RETRIEVAL: RetrieverAgent(),
        Step.EDITING: EditorAgent(),
        Step.REFLECTION: ReviewerAgent(),
        Step.DEPLOYMENT: DeploymentAgent(),
        Step.RESPONDING: ResponderAgent(),
    }


class Orchestrator:
    """Runs one pipeline at a time: ingestion, planning, editing, reflection.

    Handlers receive a deep copy of the state and return a StepResult; only
    the orchestrator's merge mutates the live state. stop() may be called
    from any thread. snapshot() gives other threads a consistent copy.
    """

    def __init__(self, collaborators, handlers=None, max_iterations=None,
                 step_delay=None, on_status=None):
        self.collaborators = collaborators
        self.handlers = default_handlers() if handlers is None else dict(handlers)
        self.max_iterations = max_iterations or DEFAULTS["max_iterations"]
        self.step_delay = DEFAULTS["step_delay"] if step_delay is None else step_delay
        self.on_status = on_status
        self._lock = threading.RLock()
        self.cancel_token = CancelToken()
        self.state = create_state()

    # -- public API -------------------------------------------------------

    def run(self, goal, language=None):
        """Start a fresh run for `goal`. Returns the final state.

        `language` is the goal's language id; when omitted it is detected.
        """
        state = create_state()
        state.goal_text = goal
        state.input_language = language or ""
        state.transcript.append(
            TranscriptMessage(role="user", content=goal, step=Step.INGESTION.value)
        )
        with self._lock:
            self.cancel_token = token = CancelToken()
            self.state = state
        return self._drive(state, token)

    def resume(self):
        """Re-enter the step that failed. Returns the final state.

        Resuming into editing gives the step at the current index a fresh
        review budget.
        """
        with self._lock:
            state = self.state
            if state.current_step != Step.ERROR or state.failed_step is None:
                raise StepSmithError("Nothing to resume: the last run did not fail")
            logger.info("Resuming at %s", state.failed_step.value)
            self.cancel_token = token = CancelToken()
            if state.failed_step == Step.EDITING and state.plan is not None:
                if state.current_step_index < len(state.plan.steps):
                    state.plan.steps[state.current_step_index].attempts = 0
            state.current_step = state.failed_step
            state.error = None
            state.failed_step = None
        return self._drive(state, token)

    def stop(self):
        self.cancel_token.cancel()

    def reset(self):
        with self._lock:
            self.cancel_token.cancel()
            self.cancel_token = CancelToken()
            self.state = create_state()

    def snapshot(self):
        with self._lock:
            return copy.deepcopy(self.state)

    # -- drive loop -------------------------------------------------------

    def _status(self, message):
        logger.info("[%s] %s", self.state.current_step.value, message)
        if self.on_status:
            self.on_status(message)

    def _drive(self, state, token):
        # reset() swaps self.state; this run keeps writing to the one it started with
        iterations = 0
        while state.current_step not in TERMINAL_STEPS:
            if token.cancelled:
                self._stopped(state)
                break
            if iterations >= self.max_iterations:
                logger.warning("Iteration cap (%d) reached at %s",
                               self.max_iterations, state.current_step.value)
                self._fail(state, state.current_step, "Maximum iterations reached")
                break
            iterations += 1

            step = state.current_step
            result = self._invoke(state, step, token)
            if result is None:
                self._stopped(state)
                break
            self._merge(state, step, result, token)

            if state.current_step in TERMINAL_STEPS:
                break
            try:
                token.sleep(self.step_delay)
            except RunCancelled:
                self._stopped(state)
                break
        return state

    def _invoke(self, state, step, token):
        """Run the handler for `step`. Returns None if the run was cancelled."""
        handler = self.handlers.get(step)
        if handler is None:
            message = f"No handler registered for step {step.value}"
            return StepResult(success=False, next_step=Step.ERROR, error=message,
                              updates={"error": message, "failed_step": step})

        ctx = StepContext(collaborators=self.collaborators, cancel=token, status=self._status)
        logger.info("Entering %s", step.value)
        with self._lock:
            snapshot = copy.deepcopy(state)
        try:
            return handler(snapshot, ctx)
        except RunCancelled:
            return None
        except StepFailure as e:
            message = str(e)
        except Exception as e:
            logger.exception("%s step crashed", step.value)
            message = f"{step.value} failed: {e}"
        return StepResult(success=False, next_step=Step.ERROR, error=message,
                          updates={"error": message, "failed_step": step})

    def _merge(self, state, step, result, token):
        with self._lock:
            apply_updates(state, result.updates, result.tokens_used)
            state.current_step = result.next_step
            if not result.success:
                state.error = result.error or state.error or f"{step.value} failed"
                if state.failed_step is None:
                    state.failed_step = step
                state.current_step = Step.ERROR

        if result.user_message:
            self._say(state, result.user_message, step, token)
        if not result.success:
            self._append(state, "system", state.error, step)
            logger.warning("%s failed: %s", step.value, state.error)

    def _say(self, state, message, step, token):
        language = state.input_language or "en"
        if language != "en":
            try:
                message = self.collaborators.translator.translate(message, "en", language, cancel=token)
            except StepSmithError as e:
                logger.warning("Could not translate %s message: %s", step.value, e)
        self._append(state, "assistant", message, step)

    def _append(self, state, role, content, step):
        with self._lock:
            state.transcript.append(
                TranscriptMessage(role=role, content=content, step=step.value, timestamp=time.time())
            )

    def _fail(self, state, step, message):
        with self._lock:
            state.error = message
            state.failed_step = step
            state.current_step = Step.ERROR
        self._append(state, "system", message, step)

    def _stopped(self, state):
        step = state.current_step
        logger.info("Run stopped by user at %s", step.value)
        with self._lock:
            state.current_step = Step.IDLE
        self._append(state, "system", "Stopped by user", step)
