"""LLM-driven entity and relationship extraction with ontology validation.

The engine asks the LLM for a JSON object with ``entities`` and
``relationships`` arrays, makes one corrective retry when the answer cannot
be parsed, and then filters the candidates:

- entities are deduplicated by case-insensitive name (richest property set
  wins, missing keys are filled in from the duplicates) and checked against
  the ontology (well-formed label, name present, required properties);
- relationships must resolve both ends to a surviving candidate or an
  entity already stored in the scope, must not be self-loops, must use a
  declared (or at least well-formed) type between allowed endpoint labels,
  and are deduplicated on (from, to, type).

Everything dropped is logged and listed in ``ExtractionResult.rejected``.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Awaitable, Callable

from .errors import ExtractionError, SchemaError
from .events import EventBus, EventType, ExtractionEvent
from .models import (
    SYSTEM_KEYS,
    Entity,
    EntityCandidate,
    ExtractionResult,
    RelationshipCandidate,
    name_of,
)
from .ontology import DEFAULT_ONTOLOGY, ExtractionPromptTemplate, Ontology, normalize_label, normalize_rel_type
from .prompts import build_corrective_prompt, build_extraction_system_prompt, build_extraction_user_prompt
from .providers.base import LLMProvider, with_timeout
from .text import identity_key

logger = logging.getLogger(__name__)

EXTRACTION_TEMPERATURE = 0.3

ResolveExisting = Callable[[str], Awaitable["Entity | None"]]

_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)
_OBJECT_RE = re.compile(r"\{.*\}", re.DOTALL)


def parse_extraction_response(raw: str) -> tuple[list[Any], list[Any]]:
    """Pull the ``entities`` / ``relationships`` arrays out of a model reply.

    Tolerates code fences and prose around the JSON object. Raises
    ExtractionError when no object with an ``entities`` array can be found.
    """
    if not raw or not raw.strip():
        raise ExtractionError("LLM returned an empty extraction response")

    text = raw.strip()
    fenced = _FENCE_RE.search(text)
    if fenced:
        text = fenced.group(1).strip()
    m = _OBJECT_RE.search(text)
    if not m:
        raise ExtractionError("No JSON object found in extraction response")
    try:
        data = json.loads(m.group(0))
    except json.JSONDecodeError as e:
        raise ExtractionError(f"Invalid JSON in extraction response: {e.msg}") from e

    if not isinstance(data, dict):
        raise ExtractionError("Extraction response is not a JSON object")
    entities = data.get("entities")
    relationships = data.get("relationships", [])
    if not isinstance(entities, list):
        raise ExtractionError('Extraction response has no "entities" array')
    if relationships is None:
        relationships = []
    if not isinstance(relationships, list):
        raise ExtractionError('"relationships" in extraction response is not an array')
    return entities, relationships


def _coerce_value(value: Any) -> Any:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, list) and all(isinstance(v, (str, int, float, bool)) for v in value):
        # Store drivers accept homogeneous primitive lists only.
        if len({type(v) for v in value}) <= 1:
            return value
    return json.dumps(value, sort_keys=True, ensure_ascii=False)


def _coerce_properties(props: Any, where: str) -> dict[str, Any]:
    if props is None:
        return {}
    if not isinstance(props, dict):
        raise SchemaError(f"{where} properties must be an object")
    out: dict[str, Any] = {}
    for key, value in props.items():
        key = str(key).strip()
        if not key or key in SYSTEM_KEYS or key.startswith("_"):
            logger.debug("Dropping reserved property %r from %s", key, where)
            continue
        if value is None:
            continue
        if isinstance(value, str):
            value = value.strip()
        out[key] = _coerce_value(value)
    return out


def _merge_candidates(group: list[EntityCandidate]) -> EntityCandidate:
    # Richest property set wins; gaps are filled from the others in order.
    base = max(group, key=lambda c: len(c.properties))
    merged = dict(base.properties)
    for other in group:
        for key, value in other.properties.items():
            merged.setdefault(key, value)
    return EntityCandidate(label=base.label, properties=merged)


class ExtractionEngine:
    def __init__(
        self,
        llm: LLMProvider,
        ontology: Ontology | None = None,
        *,
        template: ExtractionPromptTemplate | None = None,
        events: EventBus | None = None,
        temperature: float = EXTRACTION_TEMPERATURE,
    ):
        self.llm = llm
        self.ontology = ontology or DEFAULT_ONTOLOGY
        self.template = template
        self.events = events
        self.temperature = temperature
        self.system_prompt = build_extraction_system_prompt(self.ontology, template)

    def _emit(self, event: ExtractionEvent) -> None:
        if self.events is not None:
            self.events.emit(event)

    async def extract(
        self,
        text: str,
        *,
        scope_id: str | None = None,
        resolve_existing: ResolveExisting | None = None,
        timeout: float | None = None,
        on_validate: Callable[[], None] | None = None,
    ) -> ExtractionResult:
        if not text or not text.strip():
            raise ExtractionError("Cannot extract from empty text")

        self._emit(ExtractionEvent(type=EventType.EXTRACTION_STARTED, scope_id=scope_id, text=text))
        raw_entities, raw_relationships = await self._request(text, timeout)
        if on_validate is not None:
            on_validate()
        result = await self.validate(raw_entities, raw_relationships, resolve_existing=resolve_existing)
        self._emit(ExtractionEvent(type=EventType.EXTRACTION_COMPLETED, scope_id=scope_id, text=text, result=result))
        return result

    async def _request(self, text: str, timeout: float | None) -> tuple[list[Any], list[Any]]:
        raw = await with_timeout(
            self.llm.generate(
                build_extraction_user_prompt(text),
                system_message=self.system_prompt,
                temperature=self.temperature,
            ),
            timeout,
            what="LLM extraction",
        )
        try:
            return parse_extraction_response(raw)
        except ExtractionError as first:
            logger.warning("Unparsable extraction response (%s); retrying once with a corrective prompt", first)
            raw = await with_timeout(
                self.llm.generate(
                    build_corrective_prompt(text, raw, str(first)),
                    system_message=self.system_prompt,
                    temperature=self.temperature,
                ),
                timeout,
                what="LLM extraction retry",
            )
            try:
                return parse_extraction_response(raw)
            except ExtractionError as second:
                raise ExtractionError(f"Failed to parse extraction response after retry: {second}") from second

    async def validate(
        self,
        raw_entities: list[Any],
        raw_relationships: list[Any],
        *,
        resolve_existing: ResolveExisting | None = None,
    ) -> ExtractionResult:
        rejected: list[str] = []

        def reject(reason: str) -> None:
            logger.warning("Dropped extraction candidate: %s", reason)
            rejected.append(reason)

        # Entities: coerce, dedup by identity key, validate against the ontology.
        groups: dict[str, list[EntityCandidate]] = {}
        for i, item in enumerate(raw_entities):
            try:
                cand = self._entity_candidate(item, i)
            except SchemaError as e:
                reject(str(e))
                continue
            groups.setdefault(identity_key(cand.name), []).append(cand)

        entities: dict[str, EntityCandidate] = {}
        for key, group in groups.items():
            cand = _merge_candidates(group) if len(group) > 1 else group[0]
            try:
                self.ontology.check_entity(cand.label, cand.properties)
            except SchemaError as e:
                reject(f"entity {cand.name!r}: {e}")
                continue
            entities[key] = cand

        # Relationships: resolve endpoints, drop self-loops and bad types, dedup.
        existing: dict[str, Entity] = {}
        relationships: dict[tuple[str, str, str], RelationshipCandidate] = {}
        for i, item in enumerate(raw_relationships):
            try:
                rel = self._relationship_candidate(item, i)
            except SchemaError as e:
                reject(str(e))
                continue

            ends: list[tuple[str, str, str]] = []  # (key, canonical name, label)
            for name in (rel.from_name, rel.to_name):
                key = identity_key(name)
                if key in entities:
                    ends.append((key, entities[key].name, entities[key].label))
                    continue
                found = existing.get(key)
                if found is None and resolve_existing is not None:
                    found = await resolve_existing(name)
                if found is None:
                    break
                existing[key] = found
                ends.append((key, found.display_name, found.label))
            if len(ends) < 2:
                reject(f"relationship {rel.from_name!r} -[{rel.type}]-> {rel.to_name!r}: unresolved endpoint")
                continue

            (from_key, from_name, from_label), (to_key, to_name, to_label) = ends
            desc = f"relationship {from_name!r} -[{rel.type}]-> {to_name!r}"
            if from_key == to_key:
                reject(f"{desc}: self-referential")
                continue
            try:
                self.ontology.check_relationship_type(rel.type)
                self.ontology.check_endpoints(rel.type, from_label, to_label)
            except SchemaError as e:
                reject(f"{desc}: {e}")
                continue

            dedup_key = (from_key, to_key, rel.type)
            if dedup_key in relationships:
                for k, v in rel.properties.items():
                    relationships[dedup_key].properties.setdefault(k, v)
                continue
            relationships[dedup_key] = RelationshipCandidate(
                from_name=from_name, to_name=to_name, type=rel.type, properties=rel.properties
            )

        # Only keep existing entities that a surviving relationship uses.
        used = {k for f, t, _ in relationships for k in (f, t)}
        existing = {k: v for k, v in existing.items() if k in used}

        ents = list(entities.values())
        rels = list(relationships.values())
        summary = f"Extracted {len(ents)} entities and {len(rels)} relationships"
        if rejected:
            summary += f" ({len(rejected)} candidates rejected)"
        return ExtractionResult(
            entities=ents, relationships=rels, summary=summary, existing=existing, rejected=rejected
        )

    @staticmethod
    def _entity_candidate(item: Any, index: int) -> EntityCandidate:
        if not isinstance(item, dict):
            raise SchemaError(f"entity #{index} is not an object")
        label = item.get("label")
        if not isinstance(label, str) or not label.strip():
            raise SchemaError(f"entity #{index} has no label")
        props = _coerce_properties(item.get("properties"), f"entity #{index}")
        if name_of(props) is None:
            raise SchemaError(f"entity #{index} ({label}) has no name or title")
        return EntityCandidate(label=normalize_label(label), properties=props)

    @staticmethod
    def _relationship_candidate(item: Any, index: int) -> RelationshipCandidate:
        if not isinstance(item, dict):
            raise SchemaError(f"relationship #{index} is not an object")
        from_name, to_name, rel_type = item.get("from"), item.get("to"), item.get("type")
        for field_name, value in (("from", from_name), ("to", to_name), ("type", rel_type)):
            if not isinstance(value, str) or not value.strip():
                raise SchemaError(f"relationship #{index} has no {field_name!r}")
        return RelationshipCandidate(
            from_name=from_name.strip(),
            to_name=to_name.strip(),
            type=normalize_rel_type(rel_type),
            properties=_coerce_properties(item.get("properties"), f"relationship #{index}"),
        )
