"""Language detection and translation of goals and transcript messages."""

import logging
import re

from config.providers import SUPPORTED_LANGUAGES

logger = logging.getLogger(__name__)

# Unicode block -> language id. Devanagari is shared by Hindi and Marathi;
# it is reported as Hindi.
SCRIPT_RANGES = [
    (0x0900, 0x097F, "hi"),
    (0x0980, 0x09FF, "bn"),
    (0x0A00, 0x0A7F, "pa"),
    (0x0A80, 0x0AFF, "gu"),
    (0x0B00, 0x0B7F, "or"),
    (0x0B80, 0x0BFF, "ta"),
    (0x0C00, 0x0C7F, "te"),
    (0x0C80, 0x0CFF, "kn"),
    (0x0D00, 0x0D7F, "ml"),
]

_CODE = re.compile(r"```.*?```|`[^`\n]+`", re.DOTALL)
_PLACEHOLDER = "__CODE_BLOCK_{}__"


def detect_script_language(text):
    """Guess a language id from the dominant Indic script; "en" otherwise."""
    counts = {}
    for ch in text or "":
        cp = ord(ch)
        for lo, hi, lang in SCRIPT_RANGES:
            if lo <= cp <= hi:
                counts[lang] = counts.get(lang, 0) + 1
                break
    if not counts:
        return "en"
    return max(counts, key=counts.get)


def protect_code(text):
    """Swap code spans for placeholders. Returns (text, blocks)."""
    blocks = []

    def stash(m):
        blocks.append(m.group(0))
        return _PLACEHOLDER.format(len(blocks) - 1)

    return _CODE.sub(stash, text), blocks


def restore_code(text, blocks):
    for i, block in enumerate(blocks):
        text = text.replace(_PLACEHOLDER.format(i), block)
    return text


class PassthroughTranslator:
    """Returns text unchanged. Used when no model is configured."""

    def detect(self, text):
        return detect_script_language(text)

    def translate(self, text, source, target, cancel=None):
        if source != target:
            logger.debug("No translator configured; leaving %s text as is", source)
        return text


class ModelTranslator:
    """Translates through the model gateway, leaving code untouched."""

    system_prompt = (
        "You are a translator for a software engineering assistant. Translate the "
        "user's text from {source} to {target}. Keep technical terms, file names and "
        "identifiers in English. Leave placeholders like __CODE_BLOCK_0__ exactly as "
        "they are. Return only the translation."
    )

    def __init__(self, gateway):
        self.gateway = gateway

    def detect(self, text):
        return detect_script_language(text)

    def translate(self, text, source, target, cancel=None):
        if source == target or not (text or "").strip():
            return text
        protected, blocks = protect_code(text)
        system = self.system_prompt.format(
            source=SUPPORTED_LANGUAGES.get(source, {}).get("name", source),
            target=SUPPORTED_LANGUAGES.get(target, {}).get("name", target),
        )
        reply = self.gateway.complete("translation", system, protected, cancel=cancel)
        return restore_code(reply.text.strip(), blocks)
