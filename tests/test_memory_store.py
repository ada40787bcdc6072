"""
In-memory graph store behaviour: identity, scoping, cascades and validity.
"""

import pytest

from mnemograph.errors import NotFoundError, VectorIndexUnavailable
from mnemograph.models import DocumentWrite, EntityWrite, RelationshipWrite, SearchFilters
from mnemograph.store.memory import InMemoryGraphStore

SCOPE = "tenant-a"


def _person(name, scope_id=SCOPE, **props):
    return EntityWrite(label="Person", properties={"name": name, **props}, scope_id=scope_id)


class TestEntities:

    async def test_upsert_is_case_insensitive_and_merges(self):
        store = InMemoryGraphStore()
        first, created = await store.upsert_entity(_person("Alice", age=30))
        second, created_again = await store.upsert_entity(
            EntityWrite(label="Person", properties={"name": "ALICE", "city": "Paris"}, scope_id=SCOPE, context_id="c2")
        )

        assert created and not created_again
        assert first.id == second.id
        assert second.properties["age"] == 30
        assert second.properties["city"] == "Paris"
        assert second.context_ids == ["c2"]

    async def test_same_name_in_two_scopes_are_distinct(self):
        store = InMemoryGraphStore()
        a, _ = await store.upsert_entity(_person("Alice"))
        b, _ = await store.upsert_entity(_person("Alice", scope_id="tenant-b"))

        assert a.id != b.id
        assert await store.get_entity("tenant-b", a.id) is None
        assert (await store.find_entity_by_name("tenant-b", "alice")).id == b.id

    async def test_returned_values_are_copies(self):
        store = InMemoryGraphStore()
        entity, _ = await store.upsert_entity(_person("Alice"))
        entity.properties["name"] = "Mallory"
        assert (await store.get_entity(SCOPE, entity.id)).name == "Alice"

    async def test_list_filters_and_pages(self):
        store = InMemoryGraphStore()
        for name in ("Alice", "Bob", "Carol"):
            await store.upsert_entity(_person(name))
        await store.upsert_entity(EntityWrite(label="Company", properties={"name": "TechCorp"}, scope_id=SCOPE))

        people = await store.list_entities(SCOPE, label="Person")
        assert [e.name for e in people] == ["Alice", "Bob", "Carol"]
        page = await store.list_entities(SCOPE, limit=2, offset=2)
        assert [e.name for e in page] == ["Carol", "TechCorp"]

    async def test_rename_rekeys_name_lookup(self):
        store = InMemoryGraphStore()
        entity, _ = await store.upsert_entity(_person("Alice"))
        await store.update_entity(SCOPE, entity.id, {"name": "Alicia"})

        assert await store.find_entity_by_name(SCOPE, "Alice") is None
        assert (await store.find_entity_by_name(SCOPE, "alicia")).id == entity.id


class TestRelationships:

    async def test_missing_endpoint_is_not_found(self):
        store = InMemoryGraphStore()
        alice, _ = await store.upsert_entity(_person("Alice"))
        with pytest.raises(NotFoundError):
            await store.upsert_relationship(
                RelationshipWrite(from_id=alice.id, to_id="ent-999999", type="KNOWS", scope_id=SCOPE)
            )

    async def test_endpoint_in_other_scope_is_not_found(self):
        store = InMemoryGraphStore()
        alice, _ = await store.upsert_entity(_person("Alice"))
        bob, _ = await store.upsert_entity(_person("Bob", scope_id="tenant-b"))
        with pytest.raises(NotFoundError):
            await store.upsert_relationship(
                RelationshipWrite(from_id=alice.id, to_id=bob.id, type="KNOWS", scope_id=SCOPE)
            )

    async def test_upsert_identity_is_endpoints_and_type(self):
        store = InMemoryGraphStore()
        alice, _ = await store.upsert_entity(_person("Alice"))
        bob, _ = await store.upsert_entity(_person("Bob"))

        r1, c1 = await store.upsert_relationship(
            RelationshipWrite(from_id=alice.id, to_id=bob.id, type="KNOWS", scope_id=SCOPE, properties={"since": 1})
        )
        r2, c2 = await store.upsert_relationship(
            RelationshipWrite(from_id=alice.id, to_id=bob.id, type="KNOWS", scope_id=SCOPE, properties={"how": "work"})
        )
        r3, c3 = await store.upsert_relationship(
            RelationshipWrite(from_id=bob.id, to_id=alice.id, type="KNOWS", scope_id=SCOPE)
        )

        assert (c1, c2, c3) == (True, False, True)
        assert r1.id == r2.id != r3.id
        assert r2.properties == {"since": 1, "how": "work"}

    async def test_delete_entity_cascades_relationships(self):
        store = InMemoryGraphStore()
        alice, _ = await store.upsert_entity(_person("Alice"))
        bob, _ = await store.upsert_entity(_person("Bob"))
        carol, _ = await store.upsert_entity(_person("Carol"))
        await store.upsert_relationship(RelationshipWrite(from_id=alice.id, to_id=bob.id, type="KNOWS", scope_id=SCOPE))
        await store.upsert_relationship(RelationshipWrite(from_id=carol.id, to_id=alice.id, type="KNOWS", scope_id=SCOPE))
        await store.upsert_relationship(RelationshipWrite(from_id=bob.id, to_id=carol.id, type="KNOWS", scope_id=SCOPE))

        assert await store.delete_entity(SCOPE, alice.id) == 2
        remaining = await store.list_relationships(SCOPE)
        assert [(r.from_id, r.to_id) for r in remaining] == [(bob.id, carol.id)]
        assert await store.delete_entity(SCOPE, alice.id) is None

    async def test_neighbors_respect_validity(self):
        store = InMemoryGraphStore()
        alice, _ = await store.upsert_entity(_person("Alice"))
        bob, _ = await store.upsert_entity(
            EntityWrite(
                label="Person",
                properties={"name": "Bob"},
                scope_id=SCOPE,
                valid_to="2021-01-01T00:00:00.000000Z",
            )
        )
        await store.upsert_relationship(RelationshipWrite(from_id=alice.id, to_id=bob.id, type="KNOWS", scope_id=SCOPE))

        rels, ents = await store.neighbors(SCOPE, [alice.id])
        assert [e.id for e in ents] == [bob.id]
        rels, ents = await store.neighbors(SCOPE, [alice.id], valid_at="2022-01-01T00:00:00.000000Z")
        assert rels == [] and ents == []


class TestDocuments:

    async def test_documents_dedup_by_hash_and_link_entities(self):
        store = InMemoryGraphStore()
        alice, _ = await store.upsert_entity(_person("Alice"))
        doc, created = await store.upsert_document(
            DocumentWrite(text="Alice.", content_hash="h1", scope_id=SCOPE, context_id="c1")
        )
        again, created_again = await store.upsert_document(
            DocumentWrite(text="Alice.", content_hash="h1", scope_id=SCOPE, context_id="c2")
        )
        await store.link_document_entities(SCOPE, doc.id, [alice.id, alice.id])

        assert created and not created_again
        assert again.id == doc.id
        assert again.context_ids == ["c1", "c2"]
        assert (await store.get_document(SCOPE, doc.id)).entity_ids == [alice.id]
        linked = await store.entities_for_documents(SCOPE, [doc.id], filters=SearchFilters())
        assert [e.id for e in linked] == [alice.id]

    async def test_delete_document_keeps_entities(self):
        store = InMemoryGraphStore()
        alice, _ = await store.upsert_entity(_person("Alice"))
        doc, _ = await store.upsert_document(DocumentWrite(text="Alice.", content_hash="h1", scope_id=SCOPE))
        await store.link_document_entities(SCOPE, doc.id, [alice.id])

        assert await store.delete_document(SCOPE, doc.id) is True
        assert await store.get_entity(SCOPE, alice.id) is not None
        assert await store.find_document_by_hash(SCOPE, "h1") is None
        assert await store.delete_document(SCOPE, doc.id) is False

    async def test_link_to_missing_document(self):
        store = InMemoryGraphStore()
        with pytest.raises(NotFoundError):
            await store.link_document_entities(SCOPE, "doc-000404", [])


class TestVectorSearch:

    async def test_no_index_raises_unavailable(self):
        store = InMemoryGraphStore()
        with pytest.raises(VectorIndexUnavailable):
            await store.find_by_vector([1.0, 0.0], SCOPE, top_k=1, filters=SearchFilters())

    async def test_filters_apply_before_top_k(self):
        store = InMemoryGraphStore()
        await store.create_vector_index("entity", 2)
        await store.upsert_entity(
            EntityWrite(label="Person", properties={"name": "Alice"}, scope_id=SCOPE, embedding=[1.0, 0.0], context_id="c1")
        )
        await store.upsert_entity(
            EntityWrite(label="Person", properties={"name": "Bob"}, scope_id=SCOPE, embedding=[0.6, 0.8], context_id="c2")
        )

        hits = await store.find_by_vector([1.0, 0.0], SCOPE, top_k=1, filters=SearchFilters(contexts=("c2",)))
        assert [(e.name, round(score, 2)) for e, score in hits] == [("Bob", 0.6)]
