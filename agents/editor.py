"""Editor agent: turns one plan step into a unified diff.

Edits are surgical: for an "edit" step the target symbol is located with
the symbol extractor and only that chunk (plus a few lines of context) is
sent to the model, which answers with a diff. The diff is applied locally
and re-emitted in canonical form so reflection can validate it.
"""

import logging

from agents.base import StepAgent
from config.defaults import DEFAULTS
from core.errors import PatchApplyError
from core.patches import apply_patch, clean_diff_output, create_diff, diff_stats
from core.state import Step, StepResult, UnifiedDiff, next_open_index, route_for_index
from core.symbols import extract_chunk
from utils.language import detect_language
from utils.llm import strip_code_fences

logger = logging.getLogger(__name__)

CREATE_PROMPT = """You write complete source files for a code editing pipeline.
Return the full content of the requested file in a single fenced code block.
No explanations outside the block."""

EDIT_PROMPT = """You make minimal, surgical edits to existing source files.
You receive a numbered excerpt of a file. Return ONLY a unified diff against
the file, with "--- a/<path>" and "+++ b/<path>" headers and "@@" hunk headers
whose line numbers match the numbering shown. Keep at least 3 lines of
unchanged context around each change. Do not touch code outside the excerpt."""

EXPLAIN_PROMPT = """You explain code to a developer. Be concise and concrete.
Answer in Markdown."""


def numbered(lines, first_line=1):
    width = len(str(first_line + len(lines)))
    return "\n".join(f"{str(first_line + i).rjust(width)} | {line}" for i, line in enumerate(lines))


class EditorAgent(StepAgent):
    """Handles create, edit, delete and explain plan steps."""

    name = "editor"
    step = Step.EDITING
    role = "editor"

    def run(self, state, ctx) -> StepResult:
        plan = state.plan
        index = next_open_index(plan, state.current_step_index)
        if plan is None or index >= len(plan.steps):
            return StepResult(success=True, next_step=Step.REFLECTION,
                              updates={"current_step_index": index})

        step = plan.steps[index]
        if step.action == "search":
            return StepResult(success=True, next_step=Step.RETRIEVAL,
                              updates={"current_step_index": index})

        actions = {
            "create": self._create,
            "edit": self._edit,
            "delete": self._delete,
            "explain": self._explain,
        }
        ctx.status(f"{step.action.capitalize()} {step.target_file}")
        try:
            diff, message, tokens = actions[step.action](state, step, ctx)
        except PatchApplyError as e:
            step.error = str(e)
            return self.fail(
                f"Could not apply the edit to {step.target_file}: {e}",
                plan=plan,
                current_step_index=index,
            )

        pending = list(state.pending_diffs)
        step.completed = True
        step.error = None
        if diff is not None:
            diff.step_id = step.id
            step.diff = diff.diff
            pending.append(diff)

        nxt = next_open_index(plan, index + 1)
        return StepResult(
            success=True,
            next_step=route_for_index(plan, nxt),
            updates={"plan": plan, "current_step_index": nxt, "pending_diffs": pending},
            user_message=message,
            tokens_used=tokens,
        )

    # -- helpers ----------------------------------------------------------

    def _current_content(self, state, ctx, path):
        """Latest known content: a pending diff's output, else the store."""
        for d in reversed(state.pending_diffs):
            if d.file_path == path:
                return d.patched_content
        return ctx.collaborators.files.read(path)

    def _summary(self, verb, path, diff_text):
        stats = diff_stats(diff_text)
        return f"{verb} {path} (+{stats['additions']} -{stats['deletions']})"

    # -- actions ----------------------------------------------------------

    def _create(self, state, step, ctx):
        path = step.target_file
        original = self._current_content(state, ctx, path) or ""
        prompt = [
            f"File: {path}",
            f"Task: {step.description}",
            f"Overall goal: {state.translated_goal_text or state.goal_text}",
        ]
        if original:
            prompt += ["", "Current content:", original]
        reply = self.ask(ctx, "\n".join(prompt), system=CREATE_PROMPT)
        content = strip_code_fences(reply.text)

        diff_text = create_diff(path, original, content, DEFAULTS["diff_context_lines"])
        if not diff_text:
            return None, f"{path} is already up to date.", reply.tokens_used
        diff = UnifiedDiff(
            file_path=path,
            original_content=original,
            patched_content=content,
            diff=diff_text,
        )
        return diff, self._summary("Prepared", path, diff_text), reply.tokens_used

    def _edit(self, state, step, ctx):
        path = step.target_file
        original = self._current_content(state, ctx, path)
        if original is None:
            logger.info("%s does not exist; treating edit as create", path)
            return self._create(state, step, ctx)

        chunk = None
        if step.target_symbol:
            chunk = extract_chunk(
                original, step.target_symbol, detect_language(path),
                DEFAULTS["chunk_context_lines"], ctx.collaborators.extractor,
            )
        lines = original.split("\n")
        if chunk is None:
            if step.target_symbol:
                ctx.status(f"No target symbol found in {path}; using the whole file")
            excerpt = numbered(lines)
            line_range = None
        else:
            first = max(1, chunk.start_line - DEFAULTS["chunk_context_lines"])
            last = min(len(lines), chunk.end_line + DEFAULTS["chunk_context_lines"])
            excerpt = numbered(lines[first - 1:last], first)
            line_range = (chunk.start_line, chunk.end_line)

        prompt = "\n".join([
            f"File: {path}",
            f"Target symbol: {step.target_symbol or '(none)'}",
            f"Task: {step.description}",
            "",
            excerpt,
        ])
        reply = self.ask(ctx, prompt, system=EDIT_PROMPT)
        raw_diff = clean_diff_output(reply.text, path)
        if not raw_diff:
            raise PatchApplyError("the model did not return a diff")
        patched = apply_patch(original, raw_diff)

        diff_text = create_diff(path, original, patched, DEFAULTS["diff_context_lines"])
        if not diff_text:
            return None, f"No changes were needed in {path}.", reply.tokens_used
        diff = UnifiedDiff(
            file_path=path,
            original_content=original,
            patched_content=patched,
            diff=diff_text,
            target_symbol=step.target_symbol,
            line_range=line_range,
        )
        return diff, self._summary("Prepared", path, diff_text), reply.tokens_used

    def _delete(self, state, step, ctx):
        path = step.target_file
        original = self._current_content(state, ctx, path)
        if original is None:
            return None, f"{path} does not exist; nothing to delete.", 0
        diff_text = create_diff(path, original, "", DEFAULTS["diff_context_lines"])
        diff = UnifiedDiff(
            file_path=path,
            original_content=original,
            patched_content="",
            diff=diff_text,
        )
        return diff, self._summary("Prepared deletion of", path, diff_text), 0

    def _explain(self, state, step, ctx):
        path = step.target_file
        content = self._current_content(state, ctx, path) or ""
        if step.target_symbol and content:
            chunk = extract_chunk(content, step.target_symbol, detect_language(path),
                                  DEFAULTS["chunk_context_lines"], ctx.collaborators.extractor)
            if chunk is not None:
                content = chunk.text_with_context
        prompt = f"Question: {step.description}\n\nFile: {path}\n\n{content or '(file not found)'}"
        reply = self.ask(ctx, prompt, system=EXPLAIN_PROMPT)
        return None, reply.text.strip(), reply.tokens_used
