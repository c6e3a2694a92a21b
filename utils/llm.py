"""Claude API client and the role-based model gateway."""

import json
import logging
import os
import re
from dataclasses import dataclass

import anthropic

from config.defaults import DEFAULTS
from config.providers import ROLE_PROVIDERS
from core.errors import ProviderError, StepFailure, ThrottledError
from core.state import estimate_tokens

logger = logging.getLogger(__name__)

MODEL = DEFAULTS["model"]
MAX_TOKENS = DEFAULTS["max_tokens"]

JSON_INSTRUCTION = "\n\nIMPORTANT: Respond ONLY with valid JSON. No markdown fences, no commentary."


def get_client():
    """Return an Anthropic client. Raises if no API key is set."""
    api_key = os.environ.get("ANTHROPIC_API_KEY")
    if not api_key:
        raise RuntimeError(
            "ANTHROPIC_API_KEY environment variable is not set. "
            "Get a key at https://console.anthropic.com/ and run:\n"
            "  export ANTHROPIC_API_KEY='your-key-here'"
        )
    return anthropic.Anthropic(api_key=api_key)


@dataclass
class ModelRequest:
    system: str
    prompt: str
    max_tokens: int = MAX_TOKENS
    response_format: str | None = None     # "json" or None


@dataclass
class ModelReply:
    text: str
    provider: str
    tokens_used: int


class AnthropicProvider:
    """ModelProvider backed by the Anthropic messages API."""

    name = "anthropic"

    def __init__(self, client=None, model=None):
        self._client = client
        self.model = model or MODEL

    @property
    def client(self):
        if self._client is None:
            self._client = get_client()
        return self._client

    def complete(self, request: ModelRequest) -> str:
        system = request.system
        if request.response_format == "json":
            system = system + JSON_INSTRUCTION
        try:
            # Streaming avoids the SDK timeout for large max_tokens
            text = ""
            with self.client.messages.stream(
                model=self.model,
                max_tokens=request.max_tokens,
                system=system,
                messages=[{"role": "user", "content": request.prompt}],
            ) as stream:
                for chunk in stream.text_stream:
                    text += chunk
                final = stream.get_final_message()
        except anthropic.RateLimitError as e:
            raise ThrottledError(f"anthropic rate limited: {e}", provider=self.name) from e
        except anthropic.APIError as e:
            raise ProviderError(f"anthropic request failed: {e}", provider=self.name) from e

        if final.stop_reason == "max_tokens":
            logger.warning("anthropic response hit max_tokens (%d)", request.max_tokens)
        return text


class ModelGateway:
    """Routes a role's request through its provider chain.

    Each provider call goes through the retry supervisor (and so through
    admission control). When the supervisor gives up on one provider the
    next one in the role's chain is tried. If none succeed the step fails.
    """

    def __init__(self, providers, supervisor, routes=None):
        self.providers = providers
        self.supervisor = supervisor
        self.routes = routes or ROLE_PROVIDERS

    def chain(self, role):
        names = self.routes.get(role) or list(self.providers)
        return [(n, self.providers[n]) for n in names if n in self.providers]

    def complete(self, role, system, prompt, response_format=None,
                 max_tokens=None, on_status=None, cancel=None) -> ModelReply:
        request = ModelRequest(
            system=system,
            prompt=prompt,
            max_tokens=max_tokens or MAX_TOKENS,
            response_format=response_format,
        )
        estimate = estimate_tokens(system) + estimate_tokens(prompt)
        chain = self.chain(role)
        if not chain:
            raise StepFailure(f"No model provider is configured for {role}.")

        last_error = None
        for name, provider in chain:
            try:
                text = self.supervisor.call(
                    name, estimate, lambda p=provider: p.complete(request),
                    on_status=on_status, cancel=cancel,
                )
            except ProviderError as e:
                last_error = e
                logger.warning("Giving up on %s for %s: %s", name, role, e)
                continue
            return ModelReply(text=text, provider=name, tokens_used=estimate + estimate_tokens(text))

        raise StepFailure(
            f"The {role} model is unavailable ({last_error}). "
            "The pipeline has paused. Re-run the step to try again."
        )

    def complete_json(self, role, system, prompt, **kwargs):
        """Like complete() but parses the reply. Returns (data, reply)."""
        reply = self.complete(role, system, prompt, response_format="json", **kwargs)
        return parse_json_response(reply.text), reply


def parse_json_response(text):
    """Parse a model's JSON reply, tolerating fences and surrounding prose.

    Returns None when nothing parseable is found.
    """
    cleaned = (text or "").strip()
    if cleaned.startswith("```"):
        cleaned = re.sub(r"^```\w*\n?", "", cleaned)
        cleaned = re.sub(r"\n?```$", "", cleaned)
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError:
        pass
    m = re.search(r"(\{.*\}|\[.*\])", cleaned, re.DOTALL)
    if m:
        try:
            return json.loads(m.group(1))
        except json.JSONDecodeError:
            return None
    return None


def strip_code_fences(text):
    """Body of the first fenced block, or the text itself when unfenced."""
    m = re.search(r"```[^\n]*\n(.*?)```", text or "", re.DOTALL)
    if m:
        return m.group(1)
    return (text or "").strip() + "\n"
