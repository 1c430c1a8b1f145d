"""Value types shared by the parser, the executors and the fusion ranker."""

from dataclasses import dataclass, asdict
from enum import Enum
from typing import Any, Dict, FrozenSet

from pydantic import BaseModel, ConfigDict, Field, field_validator

DEFAULT_LIMIT = 10


class SearchType(str, Enum):
    """Closed set of sub-search kinds."""
    LEX = "lex"
    VEC = "vec"
    HYDE = "hyde"

    @property
    def is_semantic(self) -> bool:
        return self is not SearchType.LEX


class StructuredSubSearch(BaseModel):
    """One typed line of a structured query."""
    model_config = ConfigDict(frozen=True)

    type: SearchType
    query: str

    @field_validator("query")
    @classmethod
    def _strip_query(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("query must not be empty")
        return value


class SearchOptions(BaseModel):
    """Per-call filters applied to every sub-search and to the fused list.

    Attributes:
        collections: Collection names to search; empty means all collections
        limit: Maximum number of fused results
        min_score: Fused results scoring below this are dropped
    """
    model_config = ConfigDict(frozen=True)

    collections: FrozenSet[str] = frozenset()
    limit: int = Field(default=DEFAULT_LIMIT, ge=1)
    min_score: float = Field(default=0.0, ge=0.0)

    @field_validator("collections", mode="before")
    @classmethod
    def _coerce_collections(cls, value: Any) -> Any:
        if value is None:
            return frozenset()
        if isinstance(value, str):
            return frozenset([value])
        return frozenset(value)


@dataclass(frozen=True)
class RawHit:
    """Ranked hit from a single executor; score scale depends on the mode."""
    doc_id: str
    score: float


@dataclass(frozen=True)
class FusedResult:
    """Final ranked result returned to callers."""
    doc_id: str
    path: str
    score: float
    collection: str
    snippet: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class DocumentRef:
    """What a document lookup resolves a doc id to."""
    path: str
    collection: str
    snippet: str


class Document(BaseModel):
    """An indexed document. One file maps to one document."""
    doc_id: str
    collection: str
    path: str
    title: str = ""
    content: str
    sha256: str


__all__ = [
    "DEFAULT_LIMIT",
    "SearchType",
    "StructuredSubSearch",
    "SearchOptions",
    "RawHit",
    "FusedResult",
    "DocumentRef",
    "Document",
]
