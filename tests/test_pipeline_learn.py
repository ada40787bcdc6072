"""
KnowledgeGraph.learn: extraction to persisted, embedded, linked graph facts.
"""

import logging

import pytest

from conftest import ALICE_TEXT, Recorder, ScriptedLLM, extraction_json
from mnemograph.errors import ExtractionError, ProviderError, ProviderTimeout, ValidationError
from mnemograph.events import EventType
from mnemograph.models import LearnOptions, Scope
from mnemograph.pipeline import KnowledgeGraph


class TestLearn:

    async def test_learn_persists_entities_relationships_and_document(self, kg, store):
        result = await kg.learn(ALICE_TEXT, LearnOptions(context_name="onboarding"))

        assert result.created.entities == 2
        assert result.created.relationships == 1
        assert result.created.document == 1
        assert {e.name for e in result.entities} == {"Alice", "TechCorp"}
        assert result.relationships[0].type == "WORKS_FOR"
        assert result.context.name == "onboarding"
        assert result.context.scope_id == "tenant-a"
        assert result.summary.startswith("Extracted and created 2 entities and 1 relationships from text.")
        assert "Person: Alice" in result.summary
        assert "Alice --[WORKS_FOR]--> TechCorp" in result.summary

        alice = await store.find_entity_by_name("tenant-a", "alice")
        assert alice.embedding is not None and len(alice.embedding) == 512
        assert alice.context_ids == [result.context.id]
        assert alice.recorded_at is not None
        assert alice.valid_from == alice.recorded_at

        doc = await store.get_document("tenant-a", result.document.id)
        assert doc.embedding is not None
        assert set(doc.entity_ids) == {e.id for e in result.entities}

    async def test_embeddings_are_scrubbed_unless_requested(self, kg):
        plain = await kg.learn(ALICE_TEXT)
        assert all(e.embedding is None for e in plain.entities)
        assert plain.document.embedding is None

        full = await kg.learn(ALICE_TEXT, LearnOptions(include_embeddings=True))
        assert all(e.embedding is not None for e in full.entities)

    async def test_relearning_updates_instead_of_duplicating(self, kg):
        first = await kg.learn(ALICE_TEXT, LearnOptions(context_id="ctx-1"))
        second = await kg.learn(ALICE_TEXT, LearnOptions(context_id="ctx-2"))

        assert second.created.document == 0
        assert second.updated.document == 1
        assert second.created.entities == 0
        assert second.updated.entities == 2
        assert second.created.relationships == 0
        assert second.document.id == first.document.id
        assert {e.id for e in second.entities} == {e.id for e in first.entities}
        assert len(await kg.list_entities()) == 2
        assert len(await kg.list_relationships()) == 1
        assert len(await kg.list_documents()) == 1

        alice = next(e for e in second.entities if e.name == "Alice")
        assert alice.context_ids == ["ctx-1", "ctx-2"]

    async def test_entity_names_are_case_insensitive(self, kg, llm):
        llm.extractions["Alice moved"] = extraction_json([("Person", {"name": "ALICE", "city": "Berlin"})])
        first = await kg.learn(ALICE_TEXT)
        second = await kg.learn("Alice moved to Berlin.")

        alice_id = next(e.id for e in first.entities if e.name == "Alice")
        assert second.entities[0].id == alice_id
        merged = await kg.find_entity(alice_id)
        assert merged.properties["city"] == "Berlin"
        assert merged.properties["occupation"] == "Engineer"

    async def test_relationships_can_target_existing_entities(self, kg, llm):
        llm.extractions["Bob knows"] = extraction_json(
            [("Person", {"name": "Bob"})], [("Bob", "KNOWS", "Alice")]
        )
        first = await kg.learn(ALICE_TEXT)
        second = await kg.learn("Bob knows Alice from university.")

        alice_id = next(e.id for e in first.entities if e.name == "Alice")
        assert [e.name for e in second.entities] == ["Bob"]
        assert len(second.relationships) == 1
        assert second.relationships[0].to_id == alice_id
        assert "Bob --[KNOWS]--> Alice" in second.summary

    async def test_invalid_candidates_are_dropped_not_fatal(self, kg, llm, caplog):
        llm.extractions["Messy"] = extraction_json(
            [("Person", {"name": "Alice"}), ("Person", {"nickname": "nameless"})],
            [("Alice", "KNOWS", "Alice"), ("Alice", "WORKS_FOR", "Ghost Inc")],
        )
        with caplog.at_level(logging.WARNING, logger="mnemograph.extraction"):
            result = await kg.learn("Messy text about Alice.")

        assert [e.name for e in result.entities] == ["Alice"]
        assert result.relationships == []
        assert "Dropped extraction candidate" in caplog.text

    async def test_text_without_entities_still_records_document(self, kg):
        result = await kg.learn("Nothing notable happened today.")
        assert result.entities == []
        assert result.created.document == 1
        assert result.summary.startswith("Extracted and created 0 entities and 0 relationships")


class TestLearnEvents:

    async def test_event_sequence(self, kg):
        rec = Recorder(
            kg.events,
            EventType.LEARN_STARTED,
            EventType.EXTRACTION_STARTED,
            EventType.EXTRACTION_COMPLETED,
            EventType.DOCUMENT_CREATED,
            EventType.ENTITY_CREATED,
            EventType.RELATIONSHIP_CREATED,
            EventType.LEARN_COMPLETED,
        )
        result = await kg.learn(ALICE_TEXT)
        await kg.events.drain()

        assert rec.types[0] == "learn.started"
        assert rec.types[1:3] == ["extraction.started", "extraction.completed"]
        assert rec.types[-2:] == ["document.created", "learn.completed"]
        assert rec.types.count("entity.created") == 2
        assert rec.types.count("relationship.created") == 1
        assert rec.events[-1].result is result
        assert all(e.scope_id == "tenant-a" for e in rec.events)

    async def test_relearn_emits_updates(self, kg):
        await kg.learn(ALICE_TEXT)
        rec = Recorder(kg.events, EventType.ENTITY_UPDATED, EventType.ENTITY_CREATED, EventType.DOCUMENT_UPDATED)
        await kg.learn(ALICE_TEXT)
        await kg.events.drain()

        assert rec.types.count("entity.updated") == 2
        assert "entity.created" not in rec.types
        assert rec.types[-1] == "document.updated"

    async def test_event_payloads_carry_no_embeddings(self, kg):
        rec = Recorder(kg.events, EventType.ENTITY_CREATED)
        await kg.learn(ALICE_TEXT)
        await kg.events.drain()
        assert all(e.entity.embedding is None for e in rec.events)

    async def test_failure_emits_learn_failed(self, kg, llm, store):
        llm.queue = [ProviderError("LLM unavailable")]
        rec = Recorder(kg.events, EventType.LEARN_STARTED, EventType.LEARN_FAILED, EventType.LEARN_COMPLETED)

        with pytest.raises(ProviderError):
            await kg.learn(ALICE_TEXT)
        await kg.events.drain()

        assert rec.types == ["learn.started", "learn.failed"]
        assert isinstance(rec.events[1].error, ProviderError)
        assert await store.list_entities("tenant-a") == []


class TestLearnErrors:

    async def test_empty_text(self, kg):
        with pytest.raises(ValidationError):
            await kg.learn("   ")

    async def test_unparsable_extraction_after_retry(self, kg, llm):
        llm.queue = ["garbage", "more garbage"]
        with pytest.raises(ExtractionError):
            await kg.learn(ALICE_TEXT)

    async def test_timeout(self, scope, store, embedder):
        slow = KnowledgeGraph(scope=scope, store=store, embedder=embedder, llm=ScriptedLLM(delay=0.5))
        await slow.initialize()
        with pytest.raises(ProviderTimeout):
            await slow.learn(ALICE_TEXT, LearnOptions(timeout=0.01))
        await slow.close()

    async def test_validity_window_must_be_ordered(self, kg):
        with pytest.raises(ValidationError):
            await kg.learn(
                ALICE_TEXT, LearnOptions(valid_from="2021-01-01T00:00:00Z", valid_to="2020-01-01T00:00:00Z")
            )

    def test_scope_is_required(self, store, embedder, llm):
        with pytest.raises(ValidationError):
            KnowledgeGraph(scope=None, store=store, embedder=embedder, llm=llm)
        with pytest.raises(ValidationError):
            Scope(id="", type="tenant", name="x")


class TestTemporal:

    async def test_validity_bounds_are_stored(self, kg, store):
        result = await kg.learn(
            ALICE_TEXT,
            LearnOptions(valid_from="2020-01-01T00:00:00Z", valid_to="2021-01-01T00:00:00Z"),
        )
        rel = result.relationships[0]
        assert rel.valid_from == "2020-01-01T00:00:00.000000Z"
        assert rel.valid_to == "2021-01-01T00:00:00.000000Z"
        alice = await store.find_entity_by_name("tenant-a", "Alice")
        assert alice.valid_from == "2020-01-01T00:00:00.000000Z"
