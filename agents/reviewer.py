"""Reflection agent: reviews pending diffs, applies the accepted ones."""

import logging
from concurrent.futures import ThreadPoolExecutor

from agents.base import StepAgent
from config.defaults import DEFAULTS
from core.errors import PatchApplyError, StepFailure
from core.patches import apply_patch, validate_patch
from core.state import PatchResult, Step, StepResult

logger = logging.getLogger(__name__)

REVIEW_PROMPT = """You review a single unified diff produced by an automated
code editor. Check that it does what the task asks, introduces no obvious
bugs, and leaves unrelated code alone.

Respond with JSON:
{"valid": true | false, "issues": ["..."], "suggestions": ["..."]}

Mark a diff invalid only for real defects, not for style preferences."""

EXPLAIN_PROMPT = """Explain the following code changes to the developer who
asked for them, in plain language, as Markdown. Cover what changed and why."""

DEPLOY_PROMPT = """Write short deployment notes (Markdown) for the following
code changes: what to build, configure or migrate, and how to verify."""


class ReviewerAgent(StepAgent):
    """Reviews every pending diff, then applies them through the file store."""

    name = "reviewer"
    step = Step.REFLECTION
    role = "reviewer"
    system_prompt = REVIEW_PROMPT

    def __init__(self, max_review_retries=None):
        self.max_review_retries = (
            DEFAULTS["max_review_retries"] if max_review_retries is None else max_review_retries
        )

    def run(self, state, ctx) -> StepResult:
        pending = list(state.pending_diffs)
        if not pending:
            return StepResult(
                success=True,
                next_step=Step.RESPONDING,
                user_message="There are no changes to apply.",
            )

        tokens = 0
        rejected = []
        for diff in pending:
            ctx.status(f"Reviewing {diff.file_path}")
            valid, issues, used = self._review(state, diff, ctx)
            tokens += used
            if not valid:
                rejected.append((diff, issues))

        if rejected:
            return self._reject(state, rejected, tokens)

        results = self._apply(pending, ctx)
        docs, used = self._write_docs(state, pending, ctx)
        tokens += used

        applied = [r.file_path for r in results if r.success]
        failed = [f"{r.file_path} ({r.error})" for r in results if not r.success]
        message = f"Applied {len(applied)} of {len(results)} change(s)."
        if failed:
            message += " Failed: " + ", ".join(failed)
        return StepResult(
            success=True,
            next_step=Step.DEPLOYMENT if applied else Step.RESPONDING,
            updates={
                "applied_patches": list(state.applied_patches) + results,
                "explanation_markdown": docs.get("explanation", ""),
                "deployment_docs": docs.get("deployment", ""),
            },
            user_message=message,
            tokens_used=tokens,
        )

    # -- review -----------------------------------------------------------

    def _review(self, state, diff, ctx):
        # A patch that no longer applies is rejected without asking a model.
        if diff.original_content and not validate_patch(diff.original_content, diff.diff):
            return False, ["The diff does not apply to the original file."], 0

        task = ""
        if state.plan is not None:
            task = next((s.description for s in state.plan.steps if s.id == diff.step_id), "")
        prompt = f"Task: {task}\nFile: {diff.file_path}\n\n{diff.diff}"
        result, reply = self.ask_json(ctx, prompt)
        if not isinstance(result, dict):
            logger.warning("Unparseable review for %s; accepting the diff", diff.file_path)
            return True, [], reply.tokens_used
        issues = [str(i) for i in result.get("issues") or []]
        return bool(result.get("valid", True)), issues, reply.tokens_used

    def _reject(self, state, rejected, tokens):
        plan = state.plan
        by_id = {s.id: i for i, s in enumerate(plan.steps)} if plan else {}
        rejected_ids = {d.step_id for d, _ in rejected}
        # file -> earliest rejected plan index touching it
        cut = {}
        notes = []
        capped = None

        for diff, issues in rejected:
            summary = "; ".join(issues) or "rejected by review"
            index = by_id.get(diff.step_id)
            if index is None:
                continue
            step = plan.steps[index]
            step.attempts += 1
            step.error = summary
            cut[diff.file_path] = min(index, cut.get(diff.file_path, index))
            notes.append(f"{diff.file_path}: {summary}")
            if capped is None and step.attempts > self.max_review_retries:
                capped = f"Review rejected {diff.file_path} {step.attempts} times: {summary}"

        if not cut:
            return self.fail("Review rejected changes that are not part of the plan.",
                             tokens_used=tokens)

        # Later diffs to a rejected file were built on top of the rejected
        # change, so they are dropped and their steps redone in order.
        remaining = []
        for diff in state.pending_diffs:
            index = by_id.get(diff.step_id)
            start = cut.get(diff.file_path)
            stale = start is not None and index is not None and index >= start
            if stale:
                plan.steps[index].completed = False
                plan.steps[index].diff = None
            if not stale and diff.step_id not in rejected_ids:
                remaining.append(diff)

        updates = {"plan": plan, "current_step_index": min(cut.values()), "pending_diffs": remaining}
        if capped:
            return self.fail(capped, tokens_used=tokens, failed_step=Step.EDITING, **updates)
        return StepResult(
            success=True,
            next_step=Step.EDITING,
            updates=updates,
            user_message="Review found issues, revising:\n" + "\n".join(f"- {n}" for n in notes),
            tokens_used=tokens,
        )

    # -- apply ------------------------------------------------------------

    def _apply(self, pending, ctx):
        files = ctx.collaborators.files
        results = []
        for diff in pending:
            base = files.read(diff.file_path) or ""
            try:
                patched = apply_patch(base, diff.diff)
            except PatchApplyError as e:
                logger.warning("Patch for %s failed: %s", diff.file_path, e)
                results.append(PatchResult(file_path=diff.file_path, success=False,
                                           error=str(e), syntax_valid=False))
                continue
            if diff.original_content and not patched:
                files.delete(diff.file_path)
            else:
                files.write(diff.file_path, patched)
            results.append(PatchResult(file_path=diff.file_path, success=True))
        return results

    # -- docs -------------------------------------------------------------

    def _write_docs(self, state, pending, ctx):
        """Generate the explanation and deployment notes concurrently.

        Returns (docs, tokens_used). A failed document is logged and left out.
        """
        docs = {}
        body = "\n\n".join(d.diff for d in pending)
        prompt = f"Goal: {state.translated_goal_text or state.goal_text}\n\n{body}"
        jobs = {"explanation": EXPLAIN_PROMPT, "deployment": DEPLOY_PROMPT}
        tokens = 0
        with ThreadPoolExecutor(max_workers=len(jobs)) as pool:
            futures = {
                key: pool.submit(ctx.collaborators.gateway.complete, "docs", system, prompt,
                                 on_status=ctx.status, cancel=ctx.cancel)
                for key, system in jobs.items()
            }
            for key, future in futures.items():
                try:
                    reply = future.result()
                except StepFailure as e:
                    logger.warning("Could not write %s notes: %s", key, e)
                    continue
                docs[key] = reply.text.strip()
                tokens += reply.tokens_used
        return docs, tokens
