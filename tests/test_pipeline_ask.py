"""
KnowledgeGraph.ask: seed search, expansion, grounding context and answer.
"""

import logging

import pytest

from conftest import ALICE_TEXT, Recorder, ScriptedLLM, extraction_json
from mnemograph.errors import ProviderTimeout, ValidationError
from mnemograph.events import EventType
from mnemograph.models import AskOptions, LearnOptions
from mnemograph.pipeline import KnowledgeGraph
from mnemograph.prompts import NO_RESULTS_ANSWER
from mnemograph.store.memory import InMemoryGraphStore

CAROL_TEXT = "Carol works for Globex."


class TestAsk:

    async def test_answer_is_grounded_in_the_subgraph(self, kg, llm):
        await kg.learn(ALICE_TEXT)
        result = await kg.ask("Where does Alice work?", AskOptions(include_stats=True))

        assert result.answer == "Alice works for TechCorp."
        assert {e.name for e in result.entities} >= {"Alice", "TechCorp"}
        assert [r.type for r in result.relationships] == ["WORKS_FOR"]
        assert result.context.startswith("Knowledge Graph Context:")
        assert "Alice --[WORKS_FOR]--> TechCorp" in result.context

        assert len(llm.answer_calls) == 1
        assert llm.answer_calls[0]["prompt"] == "Where does Alice work?"
        assert llm.answer_calls[0]["context"] == result.context

        stats = result.statistics
        assert stats.strategy == "both"
        assert stats.entities_found == len(result.entities)
        assert stats.relationships_found == 1
        assert stats.total_ms >= stats.llm_ms

    async def test_coworkers_and_acquaintances(self, kg, llm):
        text = "Alice works for Acme Corp. Bob works for TechCorp. Alice knows Bob."
        llm.extractions[text] = extraction_json(
            [
                ("Person", {"name": "Alice"}),
                ("Company", {"name": "Acme Corp"}),
                ("Person", {"name": "Bob"}),
                ("Company", {"name": "TechCorp"}),
            ],
            [("Alice", "WORKS_FOR", "Acme Corp"), ("Bob", "WORKS_FOR", "TechCorp"), ("Alice", "KNOWS", "Bob")],
        )
        llm.answer = "Bob knows Alice."

        learned = await kg.learn(text)
        assert learned.created.entities == 4
        assert sorted(r.type for r in learned.relationships) == ["KNOWS", "WORKS_FOR", "WORKS_FOR"]

        result = await kg.ask("Who works with Alice?", AskOptions(strategy="entities"))
        assert {"Alice", "Acme Corp", "Bob"} <= {e.name for e in result.entities}
        assert "Alice --[KNOWS]--> Bob" in result.context
        assert "Bob" in result.answer

    async def test_no_relevant_facts_short_circuits(self, kg, llm):
        await kg.learn(ALICE_TEXT)
        result = await kg.ask("zebra quantum", AskOptions(similarity_threshold=0.9, include_stats=True))

        assert result.answer == NO_RESULTS_ANSWER
        assert result.context == ""
        assert result.entities == [] and result.relationships == [] and result.documents == []
        assert llm.answer_calls == []
        assert result.statistics.llm_ms == 0.0

    async def test_empty_graph_short_circuits(self, kg, llm):
        result = await kg.ask("Where does Alice work?")
        assert result.answer == NO_RESULTS_ANSWER
        assert llm.answer_calls == []

    async def test_entities_strategy_skips_documents(self, kg):
        await kg.learn(ALICE_TEXT)
        result = await kg.ask("Alice", AskOptions(strategy="entities"))
        assert result.documents == []
        assert "Source Documents" not in result.context
        assert "Alice" in {e.name for e in result.entities}

    async def test_documents_strategy_seeds_from_document_entities(self, kg):
        await kg.learn(ALICE_TEXT)
        result = await kg.ask("Where does Alice work?", AskOptions(strategy="documents"))

        assert [d.text for d in result.documents] == [ALICE_TEXT]
        assert result.documents[0].similarity is not None
        assert {e.name for e in result.entities} == {"Alice", "TechCorp"}
        assert "Source Documents (1):" in result.context

    async def test_results_are_scrubbed_by_default(self, kg):
        await kg.learn(ALICE_TEXT)
        plain = await kg.ask("Where does Alice work?")
        assert all(e.embedding is None for e in plain.entities)
        assert all(d.embedding is None for d in plain.documents)

        full = await kg.ask("Where does Alice work?", AskOptions(include_embeddings=True))
        assert any(e.embedding is not None for e in full.entities)

    async def test_seeds_carry_similarity(self, kg):
        await kg.learn(ALICE_TEXT)
        result = await kg.ask("Alice", AskOptions(strategy="entities", max_depth=0))
        assert [e.name for e in result.entities] == ["Alice"]
        assert result.entities[0].similarity > 0.1

    async def test_query_events(self, kg):
        await kg.learn(ALICE_TEXT)
        rec = Recorder(kg.events, EventType.QUERY_STARTED, EventType.QUERY_COMPLETED)
        result = await kg.ask("Where does Alice work?")
        await kg.events.drain()

        assert rec.types == ["query.started", "query.completed"]
        assert rec.events[0].query == "Where does Alice work?"
        assert rec.events[1].result is result


class TestAskFilters:

    async def test_context_filter_restricts_seeds(self, kg, llm):
        llm.extractions[CAROL_TEXT] = extraction_json(
            [("Person", {"name": "Carol"}), ("Company", {"name": "Globex"})], [("Carol", "WORKS_FOR", "Globex")]
        )
        await kg.learn(ALICE_TEXT, LearnOptions(context_id="ctx-1"))
        await kg.learn(CAROL_TEXT, LearnOptions(context_id="ctx-2"))

        everywhere = await kg.ask("Carol")
        assert "Carol" in {e.name for e in everywhere.entities}

        restricted = await kg.ask("Carol", AskOptions(contexts=["ctx-1"]))
        assert restricted.answer == NO_RESULTS_ANSWER

    async def test_point_in_time_queries(self, kg):
        await kg.learn(
            ALICE_TEXT, LearnOptions(valid_from="2020-01-01T00:00:00Z", valid_to="2021-01-01T00:00:00Z")
        )

        during = await kg.ask("Alice", AskOptions(valid_at="2020-06-01T00:00:00Z"))
        after = await kg.ask("Alice", AskOptions(valid_at="2022-06-01T00:00:00Z"))

        assert "Alice" in {e.name for e in during.entities}
        assert after.answer == NO_RESULTS_ANSWER


class TestAskOptions:

    @pytest.mark.parametrize(
        "options",
        [
            AskOptions(strategy="everything"),
            AskOptions(top_k=0),
            AskOptions(max_nodes=0),
            AskOptions(max_depth=-1),
            AskOptions(similarity_threshold=1.5),
        ],
    )
    async def test_invalid_options_raise(self, kg, options):
        with pytest.raises(ValidationError):
            await kg.ask("Alice", options)

    async def test_empty_query(self, kg):
        with pytest.raises(ValidationError):
            await kg.ask("  ")

    async def test_answer_timeout(self, scope, embedder):
        store = InMemoryGraphStore()
        llm = ScriptedLLM({ALICE_TEXT: extraction_json([("Person", {"name": "Alice"})])})
        graph = KnowledgeGraph(scope=scope, store=store, embedder=embedder, llm=llm, similarity_threshold=0.1)
        await graph.initialize()
        await graph.learn(ALICE_TEXT)

        llm.delay = 0.5
        with pytest.raises(ProviderTimeout):
            await graph.ask("Alice", AskOptions(timeout=0.01))
        await graph.close()


class TestBruteForceFallback:

    async def test_store_without_vector_index_answers_the_same(self, scope, embedder, llm, caplog):
        graph = KnowledgeGraph(
            scope=scope,
            store=InMemoryGraphStore(vector_index=False),
            embedder=embedder,
            llm=llm,
            similarity_threshold=0.1,
        )
        await graph.initialize()
        await graph.learn(ALICE_TEXT)

        with caplog.at_level(logging.INFO, logger="mnemograph.retrieval"):
            result = await graph.ask("Where does Alice work?")
        await graph.close()

        assert result.answer == "Alice works for TechCorp."
        assert {e.name for e in result.entities} >= {"Alice", "TechCorp"}
        assert "falling back to brute-force scan" in caplog.text
