"""
Configuration management for the RMM memory core.

Provides centralized configuration for:
- Reranker (top-K / top-M, temperature, learning rate, baseline)
- Reflection triggers and consolidation retries
- Content-addressed caches
- Embedding and LLM providers
"""

import json
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, model_validator


class ConfigurationError(ValueError):
    """Raised when configuration or a collaborator does not match expectations."""


class RerankerConfig(BaseModel):
    """Configuration for the citation-rewarded reranker."""

    top_k: int = Field(
        default=20,
        description="Number of candidates fetched by similarity search",
        ge=1,
    )
    top_m: int = Field(
        default=5,
        description="Number of memories kept after reranking",
        ge=1,
    )
    temperature: float = Field(
        default=0.5,
        description="Softmax temperature applied to reranker scores",
        gt=0.0,
    )
    learning_rate: float = Field(
        default=0.001,
        description="REINFORCE step size",
        gt=0.0,
    )
    baseline: float = Field(
        default=0.5,
        description="Constant reward baseline subtracted before the update",
        ge=0.0,
        le=1.0,
    )
    clip_threshold: float = Field(
        default=100.0,
        description="Absolute bound applied to every weight after an update",
        gt=0.0,
    )
    selection: Literal["deterministic", "gumbel"] = Field(
        default="deterministic",
        description="Top-M selection: sort by score, or Gumbel-softmax sampling",
    )

    @model_validator(mode="after")
    def _check_top_m(self) -> "RerankerConfig":
        if self.top_m > self.top_k:
            raise ValueError(f"top_m ({self.top_m}) must not exceed top_k ({self.top_k})")
        return self


class ReflectionConfig(BaseModel):
    """Configuration for staged reflection triggers and retries."""

    min_turns: int = Field(
        default=2,
        description="Human turns required before a reflection may trigger",
        ge=1,
    )
    max_turns: int = Field(
        default=50,
        description="Human turns that force a reflection",
        ge=1,
    )
    min_inactivity_ms: int = Field(
        default=600_000,  # 10 minutes
        description="Inactivity required before a reflection may trigger",
        ge=0,
    )
    max_inactivity_ms: int = Field(
        default=1_800_000,  # 30 minutes
        description="Inactivity that forces a reflection",
        ge=0,
    )
    mode: Literal["strict", "relaxed"] = Field(
        default="strict",
        description="strict: turns AND inactivity; relaxed: turns OR inactivity",
    )
    max_retries: int = Field(
        default=3,
        description="Consolidation retries before the staged batch is dropped",
        ge=0,
    )
    retry_delay_ms: int = Field(
        default=1000,
        description="Base delay for exponential retry backoff",
        ge=0,
    )
    attempt_timeout_s: float | None = Field(
        default=None,
        description="Abort a consolidation attempt after this many seconds",
        gt=0.0,
    )
    speakers: list[Literal["speaker_1", "speaker_2"]] = Field(
        default=["speaker_1"],
        description="Speakers whose personal facts are extracted",
        min_length=1,
    )
    similar_memories_k: int = Field(
        default=5,
        description="Existing memories consulted for the add/merge decision",
        ge=1,
    )

    @model_validator(mode="after")
    def _check_bounds(self) -> "ReflectionConfig":
        if self.max_turns < self.min_turns:
            raise ValueError(
                f"max_turns ({self.max_turns}) must be >= min_turns ({self.min_turns})"
            )
        if self.max_inactivity_ms < self.min_inactivity_ms:
            raise ValueError(
                f"max_inactivity_ms ({self.max_inactivity_ms}) must be >= "
                f"min_inactivity_ms ({self.min_inactivity_ms})"
            )
        return self


class CacheConfig(BaseModel):
    """Configuration for the content-addressed caches."""

    embeddings_cache_path: Path | None = Field(
        default=None,
        description="Base path for the embedding cache (.bin + .index.jsonl)",
    )
    chat_cache_path: Path | None = Field(
        default=None,
        description="JSON-lines file for cached model responses",
    )
    namespace: str = Field(
        default="default",
        description="Cache namespace, usually the model identifier",
    )
    empty_response_retry_count: int = Field(
        default=1,
        description="Retries when a model returns empty text",
        ge=0,
    )


class EmbeddingConfig(BaseModel):
    """Configuration for embedding generation."""

    provider: Literal["ollama"] = Field(
        default="ollama",
        description="Embedding provider",
    )
    model: str = Field(
        default="nomic-embed-text",
        description="Embedding model name (e.g., nomic-embed-text for Ollama)",
    )
    ollama_base_url: str = Field(
        default="http://localhost:11434",
        description="Ollama server base URL",
    )
    timeout: float = Field(
        default=60.0,
        description="Request timeout in seconds",
    )


class LLMConfig(BaseModel):
    """Configuration for the extraction / update model."""

    provider: Literal["ollama"] = Field(
        default="ollama",
        description="LLM provider for memory operations",
    )
    model: str = Field(
        default="llama3.2",
        description="Model for memory operations (e.g., llama3.2 for Ollama)",
    )
    temperature: float = Field(
        default=0.0,
        description="Temperature for LLM responses",
        ge=0.0,
        le=2.0,
    )
    ollama_base_url: str = Field(
        default="http://localhost:11434",
        description="Ollama server base URL",
    )


class RMMConfig(BaseModel):
    """Master configuration for the reflective memory core."""

    reranker: RerankerConfig = Field(default_factory=RerankerConfig)
    reflection: ReflectionConfig = Field(default_factory=ReflectionConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    embedding: EmbeddingConfig = Field(default_factory=EmbeddingConfig)
    llm: LLMConfig = Field(default_factory=LLMConfig)

    owner_scope: str = Field(
        default="rmm",
        description="Leading namespace segment for all persisted state",
    )
    embedding_dimension: int | None = Field(
        default=None,
        description="Expected embedding size; inferred from the first vector when unset",
        ge=1,
    )
    debug: bool = Field(
        default=False,
        description="Enable debug logging",
    )

    @classmethod
    def from_file(cls, path: Path) -> "RMMConfig":
        """Load configuration from a JSON file."""
        path = Path(path)
        if path.suffix == ".json":
            with open(path) as f:
                data = json.load(f)
            return cls.model_validate(data)
        else:
            raise ConfigurationError(f"Unsupported config file format: {path.suffix}")

    def to_file(self, path: Path) -> None:
        """Save configuration to a JSON file."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            json.dump(self.model_dump(mode="json"), f, indent=2)
