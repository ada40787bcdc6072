from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Literal

import pydantic
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ValidationError
from .models import Scope
from .ontology import DEFAULT_ONTOLOGY, Ontology

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


class MnemographSettings(BaseSettings):
    """Unified configuration for mnemograph.

    Environment variables are prefixed with MNEMOGRAPH_.
    """

    model_config = SettingsConfigDict(env_prefix="MNEMOGRAPH_", extra="ignore")

    # --- Core ---
    log_level: str = Field(default="INFO", description="Python logging level")

    # --- Graph store ---
    graph_store: Literal["neo4j", "memory"] = Field(default="neo4j", description="neo4j|memory")
    neo4j_uri: str = "bolt://localhost:7687"
    neo4j_user: str = "neo4j"
    neo4j_password: str | None = None
    neo4j_database: str = "neo4j"
    neo4j_max_pool_size: int = Field(default=50, gt=0)

    # --- Embeddings ---
    embedding_provider: Literal["openai", "sentence-transformers", "hashing"] = "openai"
    embedding_model: str = "text-embedding-3-small"
    embedding_dimensions: int | None = Field(
        default=None, gt=0, description="Required for unknown OpenAI models; hashing defaults to 384"
    )

    # --- LLM ---
    llm_provider: Literal["openai", "anthropic", "deepseek"] = "openai"
    llm_model: str | None = Field(default=None, description="Provider default when unset")
    llm_temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    llm_base_url: str | None = None

    # --- API keys ---
    openai_api_key: str | None = None
    anthropic_api_key: str | None = None
    deepseek_api_key: str | None = None

    # --- Scope ---
    scope_id: str | None = None
    scope_type: str = "tenant"
    scope_name: str | None = None

    # --- Ontology ---
    ontology_path: str | None = Field(default=None, description="JSON file with a custom ontology")

    # --- Pipeline ---
    provider_timeout_s: float | None = Field(default=60.0, gt=0)
    batch_concurrency: int = Field(default=1, gt=0)
    similarity_threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    top_k: int = Field(default=10, gt=0)
    max_depth: int = Field(default=2, ge=1, le=10)
    max_nodes: int = Field(default=50, gt=0)
    context_char_budget: int = Field(default=200_000, gt=0)

    @field_validator("log_level")
    @classmethod
    def _known_level(cls, v: str) -> str:
        level = (v or "INFO").upper()
        if not isinstance(logging.getLevelName(level), int):
            raise ValueError(f"unknown log level {v!r}")
        return level

    def scope(self) -> Scope:
        """Scope descriptor from ``scope_*``; raises ValidationError when scope_id is unset."""
        if not self.scope_id:
            raise ValidationError("MNEMOGRAPH_SCOPE_ID is required to build a scope")
        return Scope(id=self.scope_id, type=self.scope_type, name=self.scope_name or self.scope_id)


def load_settings(**overrides) -> MnemographSettings:
    """Build settings from the environment plus ``overrides``; fail fast on invalid values."""
    try:
        return MnemographSettings(**overrides)
    except pydantic.ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'settings'}: {err['msg']}" for err in e.errors()
        )
        raise ValidationError(f"Invalid configuration: {problems}") from e


@dataclass(slots=True)
class ConfigReport:
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


def validate_settings(settings: MnemographSettings) -> ConfigReport:
    """Collect every configuration problem without raising."""
    report = ConfigReport()

    if settings.graph_store == "neo4j":
        if not settings.neo4j_uri:
            report.errors.append("neo4j_uri is required")
        elif not settings.neo4j_uri.startswith(("bolt://", "bolt+s://", "neo4j://", "neo4j+s://")):
            report.warnings.append("neo4j_uri should start with bolt:// or neo4j://")
        if not settings.neo4j_password:
            report.errors.append("neo4j_password is required")

    if settings.embedding_provider == "openai" and not settings.openai_api_key:
        report.errors.append("openai_api_key is required for OpenAI embeddings")
    if settings.llm_provider == "openai" and not settings.openai_api_key:
        report.errors.append("openai_api_key is required for the OpenAI LLM")
    if settings.llm_provider == "deepseek" and not settings.deepseek_api_key:
        report.errors.append("deepseek_api_key is required for the DeepSeek LLM")
    if settings.llm_provider == "anthropic":
        if not settings.anthropic_api_key:
            report.errors.append("anthropic_api_key is required for the Anthropic LLM")
        if settings.llm_temperature > 1.0:
            report.errors.append("llm_temperature must be within [0, 1] for Anthropic models")

    if settings.embedding_provider == "hashing":
        report.warnings.append("hashing embeddings are lexical only; use them for tests and offline runs")
    if settings.graph_store == "memory":
        report.warnings.append("memory graph store is not persisted across restarts")
    if not settings.scope_id:
        report.warnings.append("scope_id is unset; pass a Scope explicitly")
    if settings.llm_temperature > 1.0 and settings.llm_provider != "anthropic":
        report.warnings.append("llm_temperature above 1.0 may produce inconsistent answers")
    return report


def load_ontology(settings: MnemographSettings) -> Ontology:
    if not settings.ontology_path:
        return DEFAULT_ONTOLOGY
    return Ontology.from_file(settings.ontology_path)


def configure_logging(level: str | None = None) -> None:
    logging.basicConfig(level=(level or "INFO").upper(), format=LOG_FORMAT)
