from __future__ import annotations

from .ontology import ExtractionPromptTemplate, Ontology

ANSWER_SYSTEM_MESSAGE = (
    "You are a helpful assistant that answers questions based on knowledge graph context. "
    "Use the provided graph structure to give accurate, contextual answers."
)

NO_RESULTS_ANSWER = (
    "I could not find any relevant information in the knowledge graph to answer your question."
)


def build_extraction_system_prompt(
    ontology: Ontology, template: ExtractionPromptTemplate | None = None
) -> str:
    t = template or ExtractionPromptTemplate()
    parts: list[str] = [t.role, "", t.task, "", "CRITICAL RULES:"]
    parts.extend(f"- {rule}" for rule in t.format_rules)
    parts.extend(f"- {c}" for c in t.extraction_constraints)
    if t.semantic_constraints:
        parts.append("- Use semantically appropriate relationship types:")
        parts.extend(f"  * {c}" for c in t.semantic_constraints)

    if ontology.entity_types:
        parts += ["", "ENTITY TYPES:"]
        for et in ontology.entity_types:
            parts.append(f"- {et.label}: {et.description}".rstrip(": "))
            if et.examples:
                parts.append(f"  Examples: {', '.join(et.examples)}")
            if et.required_properties:
                parts.append(f"  Required properties: {', '.join(et.required_properties)}")
        if ontology.strict:
            parts.append("Use ONLY the entity types listed above.")

    if ontology.relationship_types:
        parts += ["", "RELATIONSHIP TYPES:"]
        for rt in ontology.relationship_types:
            parts.append(f"- {rt.type}: {rt.description}".rstrip(": "))
            parts.append(f"  From: {', '.join(rt.from_labels)}")
            parts.append(f"  To: {', '.join(rt.to_labels)}")
            if rt.examples:
                parts.append(f"  Examples: {', '.join(rt.examples)}")
            parts.extend(f"  Constraint: {c}" for c in rt.constraints)
        if ontology.strict:
            parts.append("Use ONLY the relationship types listed above.")

    parts += ["", "Return ONLY valid JSON in this format:", t.output_format]
    return "\n".join(parts)


def build_extraction_user_prompt(text: str) -> str:
    return f"Extract all entities and relationships from the following text:\n\n{text}"


def build_corrective_prompt(text: str, previous: str, error: str) -> str:
    """Second attempt after an unparsable response."""
    return (
        f"{build_extraction_user_prompt(text)}\n\n"
        f"Your previous response could not be parsed ({error}).\n"
        f"Previous response:\n{previous[:2000]}\n\n"
        'Respond again with ONLY a JSON object containing "entities" and "relationships" arrays.'
    )
