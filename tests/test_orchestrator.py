"""Tests for core.orchestrator: scripted model replies, verify the step loop."""

import json
import threading
from unittest.mock import MagicMock

import pytest

from agents.responder import ResponderAgent
from core.errors import StepSmithError
from core.orchestrator import Orchestrator, default_handlers
from core.patches import create_diff
from core.state import Step, StepResult

USER_TS = """import { db } from './db';

export function getUser(id) {
  return db.find(id);
}

export function listUsers() {
  return db.all();
}
"""

USER_TS_RETRY = USER_TS.replace("return db.find(id);", "return retry(() => db.find(id));")


def _plan(*steps):
    return json.dumps({"summary": "test plan", "questions": [], "steps": list(steps)})


def _create_step(path="src/config.ts"):
    return {"action": "create", "target_file": path, "target_symbol": None,
            "description": "Export the server port"}


def _messages(state, role="assistant"):
    return [m.content for m in state.transcript if m.role == role]


def _orchestrator(collaborators, **kwargs):
    kwargs.setdefault("step_delay", 0)
    return Orchestrator(collaborators, **kwargs)


# ---------------------------------------------------------------------------
# Full runs
# ---------------------------------------------------------------------------

def test_single_create_step_runs_to_idle(make_collaborators):
    collab = make_collaborators({
        "planner": [_plan(_create_step())],
        "editor": ["```ts\nexport const PORT = 3000;\n```"],
        "reviewer": ['{"valid": true, "issues": []}'],
    })
    state = _orchestrator(collab).run("Add a config file exporting the port")

    assert state.current_step == Step.IDLE
    assert state.error is None
    assert state.intent == "create"
    assert collab.files.read("src/config.ts") == "export const PORT = 3000;\n"
    # pending diffs are kept after they are applied
    assert [d.file_path for d in state.pending_diffs] == ["src/config.ts"]
    assert [(p.file_path, p.success) for p in state.applied_patches] == [("src/config.ts", True)]
    assert state.plan.steps[0].completed
    assert _messages(state)[-1] == "Done. Changed 1 file(s), +1 -0 lines."
    assert state.tokens_used > 0


def test_edit_with_symbol_applies_model_diff(make_collaborators):
    collab = make_collaborators(
        {
            "planner": [_plan({"action": "edit", "target_file": "src/user.ts",
                               "target_symbol": "getUser",
                               "description": "Wrap the lookup in retry"})],
            "editor": [create_diff("src/user.ts", USER_TS, USER_TS_RETRY)],
            "reviewer": ['{"valid": true}'],
        },
        files={"src/user.ts": USER_TS},
    )
    state = _orchestrator(collab).run("Make getUser retry")

    assert state.current_step == Step.IDLE
    assert collab.files.read("src/user.ts") == USER_TS_RETRY
    assert state.pending_diffs[0].target_symbol == "getUser"
    assert state.pending_diffs[0].line_range == (3, 5)
    editor_prompt = next(p for role, p in collab.gateway.calls if role == "editor")
    assert "Target symbol: getUser" in editor_prompt
    assert _messages(state)[-1] == "Done. Changed 1 file(s), +1 -1 lines."


def test_review_rejection_returns_to_editing(make_collaborators):
    collab = make_collaborators({
        "planner": [_plan(_create_step("src/a.ts"))],
        "editor": ["```ts\nexport const a = 1;\n```"],
        "reviewer": ['{"valid": false, "issues": ["missing export"]}', '{"valid": true}'],
    })
    state = _orchestrator(collab).run("Create module a")

    assert state.current_step == Step.IDLE
    assert state.plan.steps[0].attempts == 1
    assert collab.gateway.roles_called().count("editor") == 2
    assert any(m.startswith("Review found issues, revising:") for m in _messages(state))
    assert len(state.pending_diffs) == 1


def test_review_rejection_cap_fails_run(make_collaborators):
    collab = make_collaborators({
        "planner": [_plan(_create_step("src/a.ts"))],
        "editor": ["```ts\nexport const a = 1;\n```"],
        "reviewer": ['{"valid": false, "issues": ["missing export"]}'],
    })
    state = _orchestrator(collab).run("Create module a")

    assert state.current_step == Step.ERROR
    assert state.failed_step == Step.EDITING
    assert state.error == "Review rejected src/a.ts 3 times: missing export"
    assert state.plan.steps[0].attempts == 3
    assert state.current_step_index == 0
    assert state.pending_diffs == []
    assert not state.plan.steps[0].completed
    assert collab.files.read("src/a.ts") is None
    assert _messages(state, "system")[-1] == state.error


def test_resume_after_review_cap_edits_again(make_collaborators):
    collab = make_collaborators({
        "planner": [_plan(_create_step("src/a.ts"))],
        "editor": ["```ts\nexport const a = 1;\n```"],
        "reviewer": ['{"valid": false, "issues": ["missing export"]}'],
    })
    orch = _orchestrator(collab)
    assert orch.run("Create module a").current_step == Step.ERROR
    edits_before = collab.gateway.roles_called().count("editor")

    collab.gateway.replies["editor"] = ["```ts\nexport const a = 2;\n```"]
    collab.gateway.replies["reviewer"] = ['{"valid": true}']
    state = orch.resume()

    assert state.current_step == Step.IDLE
    assert collab.gateway.roles_called().count("editor") == edits_before + 1
    assert state.plan.steps[0].completed
    assert state.plan.steps[0].attempts == 0
    assert collab.files.read("src/a.ts") == "export const a = 2;\n"


LETTERS = "".join(f"{c}\n" for c in "abcdefghij")


def test_rejected_edit_redoes_later_edits_to_same_file(make_collaborators):
    upper_a = LETTERS.replace("a\n", "A\n", 1)
    upper_both = upper_a.replace("j\n", "J\n")
    revised_a = LETTERS.replace("a\n", "a2\n", 1)
    revised_both = revised_a.replace("j\n", "J\n")
    edit = {"action": "edit", "target_file": "m.txt", "target_symbol": None}
    collab = make_collaborators(
        {
            "planner": [_plan(dict(edit, description="Capitalise a"),
                              dict(edit, description="Capitalise j"))],
            "editor": [
                create_diff("m.txt", LETTERS, upper_a),
                create_diff("m.txt", upper_a, upper_both),
                create_diff("m.txt", LETTERS, revised_a),
                create_diff("m.txt", revised_a, revised_both),
            ],
            "reviewer": ['{"valid": false, "issues": ["wrong case"]}', '{"valid": true}'],
        },
        files={"m.txt": LETTERS},
    )
    state = _orchestrator(collab).run("Edit m.txt twice")

    assert state.current_step == Step.IDLE
    assert collab.gateway.roles_called().count("editor") == 4
    assert [(p.file_path, p.success) for p in state.applied_patches] == [
        ("m.txt", True), ("m.txt", True),
    ]
    assert collab.files.read("m.txt") == revised_both


def test_step_failure_message_is_kept(make_collaborators):
    collab = make_collaborators({})
    state = _orchestrator(collab).run("Refactor the parser")

    assert state.current_step == Step.ERROR
    assert state.failed_step == Step.PLANNING
    assert state.error == "No scripted reply for planner"


def test_messages_translated_to_input_language(make_collaborators):
    translator = MagicMock()
    translator.translate.side_effect = lambda text, source, target, cancel=None: f"[{target}] {text}"
    collab = make_collaborators({"planner": [_plan()]}, translator=translator)

    state = _orchestrator(collab).run("नमस्ते", language="hi")

    assert state.current_step == Step.IDLE
    assert state.input_language == "hi"
    assert state.translated_goal_text == "[en] नमस्ते"
    assert _messages(state) == ["[hi] No changes are needed for that goal."]
    translator.detect.assert_not_called()


# ---------------------------------------------------------------------------
# Loop control
# ---------------------------------------------------------------------------

def test_iteration_cap(make_collaborators):
    loop = MagicMock(return_value=StepResult(success=True, next_step=Step.INGESTION))
    orch = _orchestrator(make_collaborators(), handlers={Step.INGESTION: loop}, max_iterations=5)

    state = orch.run("spin")

    assert loop.call_count == 5
    assert state.current_step == Step.ERROR
    assert state.error == "Maximum iterations reached"
    assert state.failed_step == Step.INGESTION


def test_missing_handler_fails(make_collaborators):
    handlers = {Step.INGESTION: lambda s, c: StepResult(success=True, next_step=Step.PLANNING)}
    state = _orchestrator(make_collaborators(), handlers=handlers).run("goal")
    assert state.current_step == Step.ERROR
    assert state.error == "No handler registered for step planning"


def test_handlers_get_a_copy(make_collaborators):
    def ingest(state, ctx):
        state.goal_text = "mutated"
        state.transcript.clear()
        return StepResult(success=True, next_step=Step.IDLE)

    orch = _orchestrator(make_collaborators(), handlers={Step.INGESTION: ingest})
    state = orch.run("original goal")
    assert state.goal_text == "original goal"
    assert _messages(state, "user") == ["original goal"]


def test_tokens_never_decrease(make_collaborators):
    handlers = {
        Step.INGESTION: lambda s, c: StepResult(success=True, next_step=Step.PLANNING, tokens_used=30),
        Step.PLANNING: lambda s, c: StepResult(success=True, next_step=Step.RESPONDING,
                                               updates={"tokens_used": 0}, tokens_used=-50),
        Step.RESPONDING: ResponderAgent(),
    }
    state = _orchestrator(make_collaborators(), handlers=handlers).run("goal")
    assert state.tokens_used == 30
    assert state.estimated_cost == pytest.approx(30 / 1000 * 0.0015)


def test_crash_then_resume(make_collaborators):
    collab = make_collaborators({
        "planner": [_plan(_create_step())],
        "editor": ["```ts\nexport const PORT = 3000;\n```"],
        "reviewer": ['{"valid": true}'],
    })
    handlers = default_handlers()
    planner = handlers[Step.PLANNING]
    calls = []

    def flaky_planner(state, ctx):
        calls.append(state.current_step)
        if len(calls) == 1:
            raise RuntimeError("disk on fire")
        return planner(state, ctx)

    handlers[Step.PLANNING] = flaky_planner
    orch = _orchestrator(collab, handlers=handlers)

    state = orch.run("Add a config file")
    assert state.current_step == Step.ERROR
    assert state.failed_step == Step.PLANNING
    assert state.error == "planning failed: disk on fire"

    state = orch.resume()
    assert state.current_step == Step.IDLE
    assert state.error is None
    assert state.failed_step is None
    assert collab.files.read("src/config.ts") == "export const PORT = 3000;\n"


def test_resume_requires_failed_run(make_collaborators):
    orch = _orchestrator(make_collaborators())
    with pytest.raises(StepSmithError):
        orch.resume()


def test_stop_from_handler(make_collaborators):
    planning = MagicMock()

    def ingest(state, ctx):
        ctx.cancel.cancel()
        return StepResult(success=True, next_step=Step.PLANNING)

    orch = _orchestrator(make_collaborators(),
                         handlers={Step.INGESTION: ingest, Step.PLANNING: planning})
    state = orch.run("goal")

    assert state.current_step == Step.IDLE
    assert _messages(state, "system") == ["Stopped by user"]
    planning.assert_not_called()


def test_stop_from_another_thread(make_collaborators):
    entered = threading.Event()

    def slow_ingest(state, ctx):
        entered.set()
        ctx.cancel.sleep(30)
        return StepResult(success=True, next_step=Step.PLANNING)

    orch = _orchestrator(make_collaborators(), handlers={Step.INGESTION: slow_ingest})
    result = {}
    worker = threading.Thread(target=lambda: result.setdefault("state", orch.run("goal")))
    worker.start()
    assert entered.wait(5)
    orch.stop()
    worker.join(5)

    assert not worker.is_alive()
    state = result["state"]
    assert state.current_step == Step.IDLE
    assert _messages(state, "system") == ["Stopped by user"]


def test_reset_gives_fresh_state(make_collaborators):
    orch = _orchestrator(make_collaborators({}))
    first = orch.run("Refactor the parser")
    orch.reset()
    assert orch.state.current_step == Step.INGESTION
    assert orch.state.session_id != first.session_id
    assert orch.state.transcript == []


def test_reset_during_run_keeps_new_state_clean(make_collaborators):
    orch = _orchestrator(make_collaborators())

    def ingest(state, ctx):
        orch.reset()
        return StepResult(success=True, next_step=Step.PLANNING,
                          updates={"intent": "stale"}, user_message="old run")

    orch.handlers = {Step.INGESTION: ingest}
    old = orch.run("goal")

    assert old.intent == "stale"
    assert old.current_step == Step.IDLE
    assert orch.state.current_step == Step.INGESTION
    assert orch.state.intent == ""
    assert orch.state.goal_text == ""
    assert orch.state.transcript == []
