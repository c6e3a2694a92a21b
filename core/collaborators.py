"""Wiring of the pipeline's external collaborators."""

import logging
import os
from dataclasses import dataclass, field
from typing import Any

import anthropic

from core.admission import AdmissionController
from core.counter_store import connect_counter_store
from core.retry import RetrySupervisor
from core.symbols import default_extractor
from utils.filestore import DirectoryFileStore, MemoryFileStore
from utils.llm import AnthropicProvider, ModelGateway
from utils.search import KeywordSearchIndex
from utils.translation import ModelTranslator, PassthroughTranslator

logger = logging.getLogger(__name__)


@dataclass
class Collaborators:
    gateway: Any                # ModelGateway
    files: Any                  # MemoryFileStore | DirectoryFileStore
    search: Any                 # KeywordSearchIndex
    translator: Any             # ModelTranslator | PassthroughTranslator
    admission: Any = None       # AdmissionController
    extractor: Any = field(default=default_extractor)


def build_collaborators(root=None, redis_url=None, api_key=None, files=None):
    """Wire the default collaborators from arguments and the environment.

    REDIS_URL selects the shared counter store ("memory://" for a
    process-local one); without it admission control runs unavailable.
    ANTHROPIC_API_KEY enables the Anthropic provider.
    """
    store = connect_counter_store(redis_url or os.environ.get("REDIS_URL", ""))
    if store is None:
        logger.info("No REDIS_URL configured; provider calls are not rate limited")
    admission = AdmissionController(store=store)
    supervisor = RetrySupervisor(admission)

    providers = {}
    if api_key or os.environ.get("ANTHROPIC_API_KEY"):
        client = None
        if api_key:
            client = anthropic.Anthropic(api_key=api_key)
        providers["anthropic"] = AnthropicProvider(client=client)
    else:
        logger.warning("ANTHROPIC_API_KEY is not set; model-backed steps will fail")
    gateway = ModelGateway(providers, supervisor)

    if files is None:
        files = DirectoryFileStore(root) if root else MemoryFileStore()

    translator = ModelTranslator(gateway) if providers else PassthroughTranslator()
    return Collaborators(
        gateway=gateway,
        files=files,
        search=KeywordSearchIndex(files),
        translator=translator,
        admission=admission,
    )
