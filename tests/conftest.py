"""
Shared fixtures: a scripted LLM, the hashing embedder and the in-memory store.
"""

import asyncio
import json

import pytest
import pytest_asyncio

from mnemograph.models import Scope
from mnemograph.pipeline import KnowledgeGraph
from mnemograph.prompts import ANSWER_SYSTEM_MESSAGE
from mnemograph.providers.base import LLMProvider
from mnemograph.providers.embedding import HashingEmbeddingProvider
from mnemograph.store.memory import InMemoryGraphStore

EMBEDDING_DIMS = 512

ALICE_TEXT = "Alice works for TechCorp as an engineer."


def extraction_json(entities=(), relationships=()):
    """Build an extraction reply from (label, props) and (from, type, to[, props]) tuples."""
    rels = []
    for rel in relationships:
        from_name, rel_type, to_name = rel[:3]
        rels.append(
            {"from": from_name, "to": to_name, "type": rel_type, "properties": rel[3] if len(rel) > 3 else {}}
        )
    return json.dumps(
        {"entities": [{"label": label, "properties": props} for label, props in entities], "relationships": rels}
    )


ALICE_EXTRACTION = extraction_json(
    [("Person", {"name": "Alice", "occupation": "Engineer"}), ("Company", {"name": "TechCorp"})],
    [("Alice", "WORKS_FOR", "TechCorp")],
)


class ScriptedLLM(LLMProvider):
    """Replies to extraction prompts by substring match, answers with a fixed string.

    ``queue`` replies take precedence over ``extractions``. A reply that is an
    exception instance is raised instead of returned.
    """

    provider = "scripted"
    model = "scripted-1"
    temperature = 0.0

    def __init__(self, extractions=None, answer="Alice works for TechCorp.", delay=0.0):
        self.extractions = dict(extractions or {})
        self.queue = []
        self.answer = answer
        self.delay = delay
        self.extraction_calls = []
        self.answer_calls = []
        self.closed = False

    async def generate(self, prompt, context="", system_message=None, temperature=None):
        if self.delay:
            await asyncio.sleep(self.delay)
        if system_message == ANSWER_SYSTEM_MESSAGE:
            self.answer_calls.append({"prompt": prompt, "context": context})
            return self.answer

        self.extraction_calls.append(prompt)
        if self.queue:
            reply = self.queue.pop(0)
        else:
            reply = extraction_json()
            for key, candidate in self.extractions.items():
                if key in prompt:
                    reply = candidate
                    break
        if isinstance(reply, BaseException):
            raise reply
        return reply

    async def aclose(self):
        self.closed = True


@pytest.fixture
def scope():
    return Scope(id="tenant-a", type="tenant", name="Tenant A")


@pytest.fixture
def store():
    return InMemoryGraphStore()


@pytest.fixture
def embedder():
    return HashingEmbeddingProvider(EMBEDDING_DIMS)


@pytest.fixture
def llm():
    return ScriptedLLM({ALICE_TEXT: ALICE_EXTRACTION})


@pytest_asyncio.fixture
async def kg(scope, store, embedder, llm):
    graph = KnowledgeGraph(scope=scope, store=store, embedder=embedder, llm=llm, similarity_threshold=0.1)
    await graph.initialize()
    yield graph
    await graph.close()


class Recorder:
    """Collects delivered events in order."""

    def __init__(self, bus, *event_types):
        self.events = []
        for et in event_types:
            bus.on(et, self.events.append)

    @property
    def types(self):
        return [e.type.value for e in self.events]
