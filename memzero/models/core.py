"""
Core data models for the long-term memory engine.

Entities and facts are separate collections addressed by stable ids; a fact
references its endpoint entities by id and never holds them directly.
"""

import re
import unicodedata
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

LITERAL_TYPE = 'literal'
DEFAULT_ENTITY_TYPE = 'entity'

_WHITESPACE = re.compile(r'\s+')
_NON_WORD = re.compile(r'[^\w]+')


def normalize_name(name: str) -> str:
    """Fold case and whitespace so paraphrased surface forms of one name converge."""
    return _WHITESPACE.sub(' ', unicodedata.normalize('NFKC', name)).strip().casefold()


def normalize_type(entity_type: Optional[str]) -> str:
    normalized = normalize_name(entity_type or '')
    return normalized.replace(' ', '_') or DEFAULT_ENTITY_TYPE


def normalize_predicate(predicate: str) -> str:
    """Normalize a predicate to snake_case ("Lives In" -> "lives_in")."""
    return _NON_WORD.sub('_', normalize_name(predicate)).strip('_')


class FactStatus(str, Enum):
    ACTIVE = 'active'
    SUPERSEDED = 'superseded'
    RETRACTED = 'retracted'


class DeltaKind(str, Enum):
    """Outcome of merging one candidate fact."""
    INSERTED = 'inserted'
    SUPERSEDED = 'superseded'
    DUPLICATE = 'duplicate'
    CONFIDENCE_REFRESHED = 'confidence_refreshed'
    RETRACTED = 'retracted'


@dataclass(frozen=True)
class Scope:
    """Isolation unit owning one memory graph.

    Attributes:
        user_id: Owning user, required
        agent_id: Agent/character the user talks to, optional
        user_aka: Alias used for the user's self references in extraction prompts
    """
    user_id: str
    agent_id: Optional[str] = None
    user_aka: Optional[str] = field(default=None, compare=False, hash=False)

    @property
    def tag(self) -> str:
        return f'{self.user_id}:{self.agent_id or ""}'

    @property
    def self_reference(self) -> str:
        return self.user_aka or 'user'


@dataclass
class Turn:
    """One conversational utterance."""
    role: str
    content: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))


@dataclass
class CandidateFact:
    """Unvalidated-by-store output of extraction: no correctness guarantee."""
    subject: str
    predicate: str
    object: str
    confidence: float
    subject_type: str = DEFAULT_ENTITY_TYPE
    object_type: str = DEFAULT_ENTITY_TYPE
    turn_index: Optional[int] = None
    negated: bool = False  # Turn states the relationship no longer holds


@dataclass
class Entity:
    """Represents an entity within a scope's graph."""
    id: str
    scope: str  # Scope tag the entity belongs to
    name: str  # Normalized name
    type: str
    created_at: int  # Epoch milliseconds

    @property
    def key(self):
        return self.name, self.type


@dataclass
class Fact:
    """Represents a subject-predicate-object edge within a scope's graph."""
    id: str
    scope: str
    subject_id: str
    subject_name: str
    predicate: str
    object_id: str
    object_name: str
    confidence: float
    source_turn: Optional[str]
    created_at: int  # Epoch milliseconds
    status: FactStatus = FactStatus.ACTIVE
    embedded: bool = False

    @property
    def statement(self) -> str:
        """Natural-language rendering used for embeddings and prompt context."""
        return f'{self.subject_name} {self.predicate.replace("_", " ")} {self.object_name}'

    @property
    def is_active(self) -> bool:
        return self.status == FactStatus.ACTIVE


@dataclass
class ScoredFact:
    """One row of a retrieval result."""
    fact: Fact
    score: float
    vector_similarity: float = 0.0
    graph_proximity: float = 0.0


@dataclass
class FactDelta:
    """A merge decision for one candidate (or a status change it caused)."""
    kind: DeltaKind
    fact: Fact
    previous: Optional[Fact] = None


@dataclass
class MergeResult:
    """Deltas applied by one ingest batch."""
    scope: str
    deltas: List[FactDelta] = field(default_factory=list)
    pending_embeddings: List[str] = field(default_factory=list)  # Fact ids awaiting an embedding record
    repaired_embeddings: int = 0

    def count(self, kind: DeltaKind) -> int:
        return sum(1 for delta in self.deltas if delta.kind == kind)

    @property
    def inserted(self) -> List[Fact]:
        return [delta.fact for delta in self.deltas if delta.kind == DeltaKind.INSERTED]

    def summary(self) -> dict:
        summary = {kind.value: self.count(kind) for kind in DeltaKind}
        summary['pending_embeddings'] = len(self.pending_embeddings)
        summary['repaired_embeddings'] = self.repaired_embeddings
        return summary
