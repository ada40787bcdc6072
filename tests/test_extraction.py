"""
Extraction parsing and ontology validation tests.
"""

import json

import pytest

from conftest import ScriptedLLM, extraction_json
from mnemograph.errors import ExtractionError, ProviderError, ProviderTimeout
from mnemograph.events import EventBus, EventType
from mnemograph.extraction import ExtractionEngine, parse_extraction_response
from mnemograph.models import Entity
from mnemograph.ontology import DEFAULT_ONTOLOGY, EntityTypeDefinition, ExtractionPromptTemplate, Ontology


class TestParseExtractionResponse:

    def test_plain_json(self):
        entities, relationships = parse_extraction_response(
            extraction_json([("Person", {"name": "Alice"})], [("Alice", "KNOWS", "Bob")])
        )
        assert entities == [{"label": "Person", "properties": {"name": "Alice"}}]
        assert relationships[0]["type"] == "KNOWS"

    def test_code_fence_and_prose_are_tolerated(self):
        raw = 'Sure, here you go:\n```json\n{"entities": [], "relationships": []}\n```\nHope that helps.'
        assert parse_extraction_response(raw) == ([], [])

    def test_prose_around_bare_object(self):
        raw = 'Result: {"entities": [{"label": "Person", "properties": {"name": "A"}}]} done'
        entities, relationships = parse_extraction_response(raw)
        assert len(entities) == 1
        assert relationships == []

    @pytest.mark.parametrize(
        "raw",
        [
            "",
            "no json here",
            '{"entities": [,]}',
            '{"relationships": []}',
            '{"entities": {"label": "Person"}}',
            '{"entities": [], "relationships": "none"}',
        ],
    )
    def test_malformed_replies_raise(self, raw):
        with pytest.raises(ExtractionError):
            parse_extraction_response(raw)


class TestValidation:

    @pytest.fixture
    def engine(self):
        return ExtractionEngine(ScriptedLLM())

    async def test_duplicate_entities_merge_case_insensitively(self, engine):
        result = await engine.validate(
            [
                {"label": "Person", "properties": {"name": "Alice", "age": 30}},
                {"label": "Person", "properties": {"name": "alice", "city": "Paris", "occupation": "Engineer"}},
            ],
            [],
        )
        assert len(result.entities) == 1
        merged = result.entities[0].properties
        assert merged["occupation"] == "Engineer"
        assert merged["city"] == "Paris"
        assert merged["age"] == 30

    async def test_entities_without_name_or_label_are_rejected(self, engine):
        result = await engine.validate(
            [
                {"label": "Person", "properties": {"age": 3}},
                {"properties": {"name": "Nobody"}},
                "not an object",
                {"label": "Person", "properties": {"name": "Alice"}},
            ],
            [],
        )
        assert [e.name for e in result.entities] == ["Alice"]
        assert len(result.rejected) == 3
        assert "3 candidates rejected" in result.summary

    async def test_required_properties_are_enforced(self, engine):
        result = await engine.validate([{"label": "Film", "properties": {"name": "Heat"}}], [])
        assert result.entities == []
        assert "title" in result.rejected[0]

    async def test_labels_and_types_are_normalized(self, engine):
        result = await engine.validate(
            [
                {"label": "person", "properties": {"name": "Alice"}},
                {"label": "company", "properties": {"name": "TechCorp"}},
            ],
            [{"from": "Alice", "to": "TechCorp", "type": "works for"}],
        )
        assert {e.label for e in result.entities} == {"Person", "Company"}
        assert result.relationships[0].type == "WORKS_FOR"

    async def test_bad_relationships_are_dropped(self, engine):
        entities = [
            {"label": "Person", "properties": {"name": "Alice"}},
            {"label": "Company", "properties": {"name": "TechCorp"}},
        ]
        result = await engine.validate(
            entities,
            [
                {"from": "Alice", "to": "alice", "type": "KNOWS"},  # self-loop
                {"from": "Alice", "to": "Nowhere", "type": "WORKS_FOR"},  # unresolved
                {"from": "TechCorp", "to": "Alice", "type": "KNOWS"},  # endpoint labels
                {"from": "Alice", "to": "TechCorp", "type": "bad-type!"},  # malformed type
                {"from": "Alice", "type": "WORKS_FOR"},  # missing end
            ],
        )
        assert result.relationships == []
        assert len(result.rejected) == 5
        assert len(result.entities) == 2

    async def test_duplicate_relationships_collapse(self, engine):
        result = await engine.validate(
            [
                {"label": "Person", "properties": {"name": "Alice"}},
                {"label": "Company", "properties": {"name": "TechCorp"}},
            ],
            [
                {"from": "Alice", "to": "TechCorp", "type": "WORKS_FOR", "properties": {"since": 2020}},
                {"from": "alice", "to": "techcorp", "type": "WORKS_FOR", "properties": {"role": "Engineer"}},
            ],
        )
        assert len(result.relationships) == 1
        assert result.relationships[0].properties == {"since": 2020, "role": "Engineer"}

    async def test_relationships_resolve_existing_entities(self, engine):
        stored = Entity(id="ent-000007", label="Person", properties={"name": "Alice"}, scope_id="tenant-a")
        lookups = []

        async def resolve(name):
            lookups.append(name)
            return stored if name.lower() == "alice" else None

        result = await engine.validate(
            [{"label": "Person", "properties": {"name": "Bob"}}],
            [{"from": "Bob", "to": "Alice", "type": "KNOWS"}, {"from": "Bob", "to": "Carol", "type": "KNOWS"}],
            resolve_existing=resolve,
        )
        assert len(result.relationships) == 1
        assert result.relationships[0].to_name == "Alice"
        assert result.existing["alice"].id == "ent-000007"
        assert "Carol" in lookups

    async def test_reserved_and_nested_properties(self, engine):
        result = await engine.validate(
            [
                {
                    "label": "Person",
                    "properties": {
                        "name": "  Alice ",
                        "id": "spoofed",
                        "scope_id": "other-tenant",
                        "_internal": 1,
                        "address": {"city": "Paris"},
                        "skills": ["python", "go"],
                    },
                }
            ],
            [],
        )
        props = result.entities[0].properties
        assert props["name"] == "Alice"
        assert "id" not in props and "scope_id" not in props and "_internal" not in props
        assert json.loads(props["address"]) == {"city": "Paris"}
        assert props["skills"] == ["python", "go"]

    async def test_strict_ontology_rejects_undeclared_types(self):
        ontology = Ontology(entity_types=[EntityTypeDefinition(label="Person")], strict=True)
        engine = ExtractionEngine(ScriptedLLM(), ontology)
        result = await engine.validate(
            [
                {"label": "Person", "properties": {"name": "Alice"}},
                {"label": "Person", "properties": {"name": "Bob"}},
                {"label": "Spaceship", "properties": {"name": "Nostromo"}},
            ],
            [{"from": "Alice", "to": "Bob", "type": "KNOWS"}],
        )
        assert [e.name for e in result.entities] == ["Alice", "Bob"]
        assert result.relationships == []


class TestExtract:

    async def test_extract_emits_events(self):
        text = "Alice knows Bob."
        llm = ScriptedLLM(
            {
                text: extraction_json(
                    [("Person", {"name": "Alice"}), ("Person", {"name": "Bob"})], [("Alice", "KNOWS", "Bob")]
                )
            }
        )
        bus = EventBus()
        seen = []
        bus.on(EventType.EXTRACTION_STARTED, seen.append)
        bus.on(EventType.EXTRACTION_COMPLETED, seen.append)

        result = await ExtractionEngine(llm, events=bus).extract(text, scope_id="tenant-a")
        await bus.drain()

        assert result.summary == "Extracted 2 entities and 1 relationships"
        assert [e.type for e in seen] == [EventType.EXTRACTION_STARTED, EventType.EXTRACTION_COMPLETED]
        assert seen[1].result is result

    async def test_unparsable_reply_is_retried_once(self):
        llm = ScriptedLLM()
        llm.queue = ["I cannot do that", extraction_json([("Person", {"name": "Alice"})])]

        result = await ExtractionEngine(llm).extract("Alice exists.")

        assert [e.name for e in result.entities] == ["Alice"]
        assert len(llm.extraction_calls) == 2
        assert "could not be parsed" in llm.extraction_calls[1]

    async def test_second_unparsable_reply_fails(self):
        llm = ScriptedLLM()
        llm.queue = ["nope", "still nope"]
        with pytest.raises(ExtractionError):
            await ExtractionEngine(llm).extract("Alice exists.")
        assert len(llm.extraction_calls) == 2

    async def test_empty_text_is_rejected_before_calling_llm(self):
        llm = ScriptedLLM()
        with pytest.raises(ExtractionError):
            await ExtractionEngine(llm).extract("   ")
        assert llm.extraction_calls == []

    async def test_provider_errors_propagate(self):
        llm = ScriptedLLM()
        llm.queue = [ProviderError("upstream down")]
        with pytest.raises(ProviderError):
            await ExtractionEngine(llm).extract("Alice exists.")

    async def test_timeout_maps_to_provider_timeout(self):
        llm = ScriptedLLM(delay=0.5)
        with pytest.raises(ProviderTimeout):
            await ExtractionEngine(llm).extract("Alice exists.", timeout=0.01)

    def test_custom_template_parts_reach_system_prompt(self):
        template = ExtractionPromptTemplate(role="You are a genealogist.", semantic_constraints=[])
        engine = ExtractionEngine(ScriptedLLM(), DEFAULT_ONTOLOGY, template=template)
        assert engine.system_prompt.startswith("You are a genealogist.")
        assert "CRITICAL RULES:" in engine.system_prompt
        assert "semantically appropriate" not in engine.system_prompt
        assert "WORKS_FOR" in engine.system_prompt
