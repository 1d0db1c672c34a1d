"""
Core data models for the long-term memory graph.
"""

from dataclasses import dataclass, field
from typing import List, Optional


@dataclass
class Memory:
    """A free-text memory node owned by one agent."""
    id: str
    text: str
    embedding: List[float]
    importance: float  # 0.0 to 1.0
    category: str  # preference|fact|decision|entity|other|core
    source: str  # user|auto-capture|auto-capture-assistant|memory-watcher|import
    extraction_status: str  # pending|complete|failed|skipped
    agent_id: str
    session_key: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


@dataclass
class Entity:
    """An entity node. The canonicalized name is the natural key."""
    id: str
    name: str
    type: str  # person|organization|location|event|concept
    aliases: List[str] = field(default_factory=list)
    description: Optional[str] = None
    embedding: Optional[List[float]] = None
    first_seen: Optional[str] = None
    last_seen: Optional[str] = None
    mention_count: int = 0


@dataclass
class Tag:
    """A lightweight topic label attached to memories."""
    name: str
    category: str = 'topic'


@dataclass
class SearchSignalResult:
    """A memory returned by one search signal, or by the fused hybrid search.

    The score is normalized to 0-1 within the signal that produced it.
    """
    id: str
    text: str
    category: str
    importance: float
    created_at: str
    score: float


@dataclass
class ExtractedEntity:
    name: str
    type: str
    aliases: Optional[List[str]] = None
    description: Optional[str] = None


@dataclass
class ExtractedRelationship:
    source: str
    target: str
    type: str
    confidence: float = 0.7


@dataclass
class ExtractedTag:
    name: str
    category: str = 'topic'


@dataclass
class ExtractionResult:
    """Validated LLM extraction output for one memory."""
    entities: List[ExtractedEntity] = field(default_factory=list)
    relationships: List[ExtractedRelationship] = field(default_factory=list)
    tags: List[ExtractedTag] = field(default_factory=list)
    category: Optional[str] = None

    def is_empty(self) -> bool:
        return not self.entities and not self.relationships and not self.tags


@dataclass
class ExtractionOutcome:
    """Result of an extraction call.

    ``result`` is None when the LLM call failed or returned unusable output;
    ``transient_failure`` records whether that failure is worth retrying later.
    """
    result: Optional[ExtractionResult]
    transient_failure: bool = False


@dataclass
class DuplicatePair:
    """Two entities judged to be the same; ``keep`` survives the merge."""
    keep_id: str
    keep_name: str
    remove_id: str
    remove_name: str
