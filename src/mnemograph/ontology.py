"""Ontology declarations used to guide and validate extraction.

An ontology declares entity types (with required properties) and
relationship types (with the entity labels allowed at either end). With
``strict=False`` (the default) undeclared labels and relationship types are
accepted as long as they are well-formed; declared ones are always enforced.
"""

from __future__ import annotations

import json
import re
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError

from .errors import SchemaError, ValidationError
from .models import NAME_KEYS, name_of

LABEL_RE = re.compile(r"^[A-Z][A-Za-z0-9_]*$")
REL_TYPE_RE = re.compile(r"^[A-Z][A-Z0-9_]*$")


def normalize_label(label: str) -> str:
    """Map free-form labels to PascalCase, e.g. tech company -> TechCompany."""
    parts = re.split(r"[\s\-]+", label.strip())
    return "".join(p[:1].upper() + p[1:] for p in parts if p)


def normalize_rel_type(rel_type: str) -> str:
    """Map free-form types to machine tokens, e.g. works-for -> WORKS_FOR."""
    s = re.sub(r"[\s\-]+", "_", rel_type.strip())
    return s.upper()


class EntityTypeDefinition(BaseModel):
    label: str
    description: str = ""
    examples: list[str] = Field(default_factory=list)
    required_properties: list[str] = Field(default_factory=list)
    optional_properties: list[str] = Field(default_factory=list)


class RelationshipTypeDefinition(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: str
    description: str = ""
    from_labels: list[str] = Field(alias="from")
    to_labels: list[str] = Field(alias="to")
    examples: list[str] = Field(default_factory=list)
    constraints: list[str] = Field(default_factory=list)


class Ontology(BaseModel):
    entity_types: list[EntityTypeDefinition] = Field(default_factory=list)
    relationship_types: list[RelationshipTypeDefinition] = Field(default_factory=list)
    strict: bool = False

    @classmethod
    def from_file(cls, path: str | Path) -> Ontology:
        try:
            raw = json.loads(Path(path).read_text(encoding="utf-8"))
            return cls.model_validate(raw)
        except (OSError, json.JSONDecodeError, PydanticValidationError) as e:
            raise ValidationError(f"Invalid ontology file {path}: {e}") from e

    def entity_type(self, label: str) -> EntityTypeDefinition | None:
        for et in self.entity_types:
            if et.label == label:
                return et
        return None

    def relationship_type(self, rel_type: str) -> RelationshipTypeDefinition | None:
        for rt in self.relationship_types:
            if rt.type == rel_type:
                return rt
        return None

    def check_entity(self, label: str, properties: dict[str, Any]) -> None:
        """Raise SchemaError if an entity violates the ontology."""
        if not LABEL_RE.match(label):
            raise SchemaError(f"Invalid entity label: {label!r}")
        if name_of(properties) is None:
            raise SchemaError(f"{label} entity has no {' or '.join(NAME_KEYS)} property")
        et = self.entity_type(label)
        if et is None:
            if self.strict:
                raise SchemaError(f"Entity label {label!r} is not declared")
            return
        missing = [p for p in et.required_properties if properties.get(p) in (None, "", [])]
        if missing:
            raise SchemaError(f"{label} entity is missing required properties: {', '.join(missing)}")

    def check_relationship_type(self, rel_type: str) -> None:
        if not REL_TYPE_RE.match(rel_type):
            raise SchemaError(f"Invalid relationship type: {rel_type!r}")
        if self.strict and self.relationship_type(rel_type) is None:
            raise SchemaError(f"Relationship type {rel_type!r} is not declared")

    def check_endpoints(self, rel_type: str, from_label: str, to_label: str) -> None:
        rt = self.relationship_type(rel_type)
        if rt is None:
            return
        if from_label not in rt.from_labels or to_label not in rt.to_labels:
            raise SchemaError(
                f"{rel_type} is not allowed from {from_label} to {to_label} "
                f"(from: {', '.join(rt.from_labels)}; to: {', '.join(rt.to_labels)})"
            )


class ExtractionPromptTemplate(BaseModel):
    """Overridable parts of the extraction system prompt."""

    role: str = "You are an expert at extracting knowledge graph structures from natural language text."
    task: str = (
        "Your task is to analyze the provided text and extract:\n"
        "1. Entities (people, places, organizations, concepts, works, etc.) with their properties\n"
        "2. Relationships between entities"
    )
    format_rules: list[str] = Field(
        default_factory=lambda: [
            "Entity labels should be singular, PascalCase (e.g., Person, Company, Film, Book, Location, Concept)",
            'Each entity must have at least a "name" property (or "title" if more appropriate for works/creations)',
            "Relationship types should be UPPERCASE with underscores (e.g., WORKS_FOR, LOCATED_IN, OWNS, CREATED)",
            'Relationships should reference entities by their "name" property (or "title" for works)',
            "Extract all relevant properties from the text for each entity",
        ]
    )
    extraction_constraints: list[str] = Field(
        default_factory=lambda: [
            "ONLY extract relationships that are EXPLICITLY stated in the text - do not infer or create relationships",
            "NEVER create self-referential relationships (from and to cannot be the same entity)",
            "NEVER create duplicate relationships (same from, to, and type combination)",
        ]
    )
    semantic_constraints: list[str] = Field(
        default_factory=lambda: [
            "FATHER_OF, MOTHER_OF, SON_OF, DAUGHTER_OF only for familial relationships between Persons",
            "CREATED, DIRECTED, WROTE, PRODUCED for creative works (Films, Books, etc.)",
            "WORKS_FOR, OWNS, FOUNDED for organizations",
            "INSPIRED_BY, BASED_ON for conceptual relationships",
            "SIMILAR_TO, RELATED_TO for comparisons",
            'Be precise: "X wrote Y" means Person wrote Work, not Work wrote Person',
        ]
    )
    output_format: str = """{
  "entities": [
    {"label": "Person", "properties": {"name": "Alice", "occupation": "Engineer"}}
  ],
  "relationships": [
    {"from": "Alice", "to": "TechCorp", "type": "WORKS_FOR", "properties": {}}
  ]
}"""


_PEOPLE = ["Person"]
_ORGS = ["Company", "Organization"]
_PLACES = ["Location"]
_WORKS = ["Film", "Book", "Work", "Product"]

DEFAULT_ONTOLOGY = Ontology(
    entity_types=[
        EntityTypeDefinition(label="Person", description="A human being", examples=["Alice", "Ada Lovelace"]),
        EntityTypeDefinition(label="Company", description="A business", examples=["Acme Corp"]),
        EntityTypeDefinition(label="Organization", description="A non-commercial organization"),
        EntityTypeDefinition(label="Location", description="A place, city or country"),
        EntityTypeDefinition(label="Concept", description="An abstract idea or topic"),
        EntityTypeDefinition(label="Event", description="Something that happened at a time"),
        EntityTypeDefinition(label="Film", required_properties=["title"]),
        EntityTypeDefinition(label="Book", required_properties=["title"]),
        EntityTypeDefinition(label="Product", description="A product or service"),
    ],
    relationship_types=[
        RelationshipTypeDefinition(type="WORKS_FOR", from_labels=_PEOPLE, to_labels=_ORGS),
        RelationshipTypeDefinition(type="FOUNDED", from_labels=_PEOPLE + _ORGS, to_labels=_ORGS),
        RelationshipTypeDefinition(type="OWNS", from_labels=_PEOPLE + _ORGS, to_labels=_ORGS + _WORKS + _PLACES),
        RelationshipTypeDefinition(type="KNOWS", from_labels=_PEOPLE, to_labels=_PEOPLE),
        RelationshipTypeDefinition(type="FATHER_OF", from_labels=_PEOPLE, to_labels=_PEOPLE),
        RelationshipTypeDefinition(type="MOTHER_OF", from_labels=_PEOPLE, to_labels=_PEOPLE),
        RelationshipTypeDefinition(type="WROTE", from_labels=_PEOPLE, to_labels=_WORKS),
        RelationshipTypeDefinition(type="DIRECTED", from_labels=_PEOPLE, to_labels=["Film"]),
        RelationshipTypeDefinition(
            type="LOCATED_IN", from_labels=_ORGS + _PLACES + ["Event"], to_labels=_PLACES
        ),
    ],
)
