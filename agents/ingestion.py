"""Ingestion step: detect the goal's language, translate it, classify intent."""

import logging
import re

from agents.base import StepAgent
from core.state import Step, StepResult

logger = logging.getLogger(__name__)

# Keywords that are prefix patterns (match word starts, e.g. "deploy" -> "deployment")
_PREFIX_KEYWORDS = {"deploy", "refactor", "optimi"}

INTENT_KEYWORDS = {
    "create": {
        "create": 3, "add": 2, "new": 2, "build": 2, "generate": 3,
        "scaffold": 3, "implement": 2, "write": 1,
    },
    "modify": {
        "change": 3, "update": 3, "modify": 3, "rename": 3, "refactor": 3,
        "replace": 2, "move": 1, "optimi": 2, "improve": 2, "edit": 3,
    },
    "fix": {
        "fix": 4, "bug": 4, "error": 3, "broken": 3, "crash": 3,
        "failing": 3, "issue": 2, "exception": 2,
    },
    "explain": {
        "explain": 4, "what": 2, "why": 2, "how": 2, "understand": 3,
        "describe": 3, "document": 2,
    },
    "deploy": {
        "deploy": 4, "release": 3, "terraform": 3, "infrastructure": 3,
        "aws": 2, "lambda": 2, "docker": 2, "kubernetes": 3,
    },
    "delete": {
        "delete": 4, "remove": 3, "drop": 2, "cleanup": 2,
    },
    "search": {
        "find": 3, "search": 4, "where": 2, "locate": 3, "list": 1,
    },
}


def classify_intent(goal):
    """Score a goal against each intent and return (intent, scores).

    Ties go to the intent listed first; a goal with no hits is "modify".
    """
    text = goal.lower()
    scores = {}
    for intent, kw_map in INTENT_KEYWORDS.items():
        score = 0
        for keyword, weight in kw_map.items():
            if keyword in _PREFIX_KEYWORDS:
                pat = r"\b" + re.escape(keyword)
            else:
                pat = r"\b" + re.escape(keyword) + r"\b"
            if re.search(pat, text):
                score += weight
        scores[intent] = score

    best = max(scores, key=lambda k: scores[k])
    if scores[best] == 0:
        return "modify", scores
    return best, scores


class IngestionAgent(StepAgent):
    """Normalizes the goal into English and tags its intent."""

    name = "ingestion"
    step = Step.INGESTION

    def run(self, state, ctx) -> StepResult:
        translator = ctx.collaborators.translator
        goal = state.goal_text.strip()
        if not goal:
            return self.fail("The goal is empty.")

        language = state.input_language or translator.detect(goal)
        translated = goal
        if language != "en":
            ctx.status(f"Translating goal from {language}")
            translated = translator.translate(goal, language, "en", cancel=ctx.cancel)

        intent, scores = classify_intent(translated)
        logger.info("Goal classified as %s (%s)", intent, scores)
        return StepResult(
            success=True,
            next_step=Step.PLANNING,
            updates={
                "input_language": language,
                "translated_goal_text": translated,
                "intent": intent,
            },
        )
