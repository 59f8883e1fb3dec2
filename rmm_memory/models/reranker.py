"""
Reranker state: the two learned transforms plus the hyperparameters they were
trained under.
"""

from typing import Any

import numpy as np
from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator, model_validator

from rmm_memory.config import RerankerConfig


class RerankerWeights(BaseModel):
    """Query and memory transforms, both square D x D matrices."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    query_transform: np.ndarray
    memory_transform: np.ndarray

    @field_validator("query_transform", "memory_transform", mode="before")
    @classmethod
    def _as_float_matrix(cls, value: Any) -> np.ndarray:
        matrix = np.array(value, dtype=np.float64)
        if matrix.ndim != 2 or matrix.shape[0] != matrix.shape[1] or matrix.shape[0] == 0:
            raise ValueError(f"transform must be a non-empty square matrix, got shape {matrix.shape}")
        if not np.all(np.isfinite(matrix)):
            raise ValueError("transform contains non-finite values")
        return matrix

    @model_validator(mode="after")
    def _same_dimension(self) -> "RerankerWeights":
        if self.query_transform.shape != self.memory_transform.shape:
            raise ValueError(
                f"query transform {self.query_transform.shape} and memory transform "
                f"{self.memory_transform.shape} differ in shape"
            )
        return self

    @field_serializer("query_transform", "memory_transform")
    def _to_lists(self, value: np.ndarray) -> list[list[float]]:
        return value.tolist()

    @property
    def dimension(self) -> int:
        return int(self.query_transform.shape[0])


class RerankerState(BaseModel):
    """Persistable reranker state for one owner."""

    weights: RerankerWeights
    config: RerankerConfig = Field(default_factory=RerankerConfig)

    @property
    def dimension(self) -> int:
        return self.weights.dimension

    def to_store(self) -> dict[str, Any]:
        return self.model_dump(mode="json")

    @classmethod
    def from_store(cls, value: Any) -> "RerankerState":
        return cls.model_validate(value)
