"""Shared fakes: scripted model gateway, fake clock, in-memory collaborators."""

import threading

import pytest

from core.collaborators import Collaborators
from core.errors import StepFailure
from utils.filestore import MemoryFileStore
from utils.llm import ModelReply, parse_json_response
from utils.search import KeywordSearchIndex
from utils.translation import PassthroughTranslator


class ScriptedGateway:
    """Returns canned replies per role. The last reply for a role repeats."""

    def __init__(self, replies=None, tokens=10):
        self.replies = {role: list(texts) for role, texts in (replies or {}).items()}
        self.tokens = tokens
        self.calls = []
        self._lock = threading.Lock()

    def complete(self, role, system, prompt, response_format=None,
                 max_tokens=None, on_status=None, cancel=None):
        with self._lock:
            self.calls.append((role, prompt))
            queue = self.replies.get(role)
            if not queue:
                raise StepFailure(f"No scripted reply for {role}")
            text = queue.pop(0) if len(queue) > 1 else queue[0]
        return ModelReply(text=text, provider="fake", tokens_used=self.tokens)

    def complete_json(self, role, system, prompt, **kwargs):
        reply = self.complete(role, system, prompt, response_format="json", **kwargs)
        return parse_json_response(reply.text), reply

    def roles_called(self):
        return [role for role, _ in self.calls]


class FakeClock:
    def __init__(self, now=0.0):
        self.now = now
        self.sleeps = []

    def __call__(self):
        return self.now

    def sleep(self, seconds, cancel=None):
        if cancel is not None:
            cancel.raise_if_cancelled()
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock(now=120.5)


@pytest.fixture
def make_gateway():
    return ScriptedGateway


@pytest.fixture
def make_collaborators():
    """Factory: make_collaborators(replies=None, files=None, translator=None)."""

    def build(replies=None, files=None, translator=None):
        store = MemoryFileStore(files or {})
        return Collaborators(
            gateway=ScriptedGateway(replies),
            files=store,
            search=KeywordSearchIndex(store),
            translator=translator or PassthroughTranslator(),
        )

    return build
