"""
Fact Store Adapter: typed, scope-qualified operations over the graph and vector stores.
"""

from typing import Dict, Iterable, List, Optional, Sequence, Tuple, Union

from ..exceptions import ScopeIsolationViolation
from ..models.core import Entity, Fact, FactStatus, Scope
from ..utils.config import config
from ..utils.logging_config import get_logger
from ..utils.neptune_client import NeptuneClient
from ..utils.opensearch_client import OpenSearchClient

logger = get_logger(__name__)

ScopeLike = Union[Scope, str]


def require_scope(scope: Optional[ScopeLike]) -> str:
    """Resolve a scope to its tag, failing fast when it is missing.

    Args:
        scope: Scope instance or scope tag

    Returns:
        Scope tag used as the store filter

    Raises:
        ScopeIsolationViolation: If the scope is missing or blank
    """
    if isinstance(scope, Scope):
        if not scope.user_id or not scope.user_id.strip():
            raise ScopeIsolationViolation('Scope has no user_id')
        return scope.tag
    if isinstance(scope, str) and scope.strip() and not scope.startswith(':'):
        return scope
    raise ScopeIsolationViolation('Store operation issued without a scope filter', {'scope': scope})


def cosine_from_score(score: float) -> float:
    """Convert an OpenSearch cosinesimil score (1 + cosine) to a similarity in [0, 1]."""
    return min(1.0, max(0.0, score - 1.0))


class FactBatch:
    """Writes staged for one atomic commit. Every element must belong to the batch scope."""

    def __init__(self, scope: str):
        self.scope = scope
        self.entities: List[Entity] = []
        self.facts: List[Fact] = []
        self.status_updates: Dict[str, FactStatus] = {}
        self.confidence_updates: Dict[str, float] = {}
        self.committed = False

    def _check(self, element_scope: str, element_id: str):
        if self.committed:
            raise RuntimeError('Batch already committed')
        if element_scope != self.scope:
            raise ScopeIsolationViolation('Element scope does not match batch scope', {
                'batch': self.scope,
                'element': element_id,
                'element_scope': element_scope
            })

    def upsert_entity(self, entity: Entity) -> Entity:
        self._check(entity.scope, entity.id)
        self.entities.append(entity)
        return entity

    def insert_fact(self, fact: Fact) -> Fact:
        self._check(fact.scope, fact.id)
        self.facts.append(fact)
        return fact

    def update_fact_status(self, fact_id: str, status: FactStatus):
        self._check(self.scope, fact_id)
        self.status_updates[fact_id] = status

    def refresh_confidence(self, fact_id: str, confidence: float):
        self._check(self.scope, fact_id)
        self.confidence_updates[fact_id] = confidence

    @property
    def is_empty(self) -> bool:
        return not (self.entities or self.facts or self.status_updates or self.confidence_updates)

    def __len__(self) -> int:
        return len(self.entities) + len(self.facts) + len(self.status_updates) + len(self.confidence_updates)


class FactStore:
    """Scope-qualified read/write API over Neptune (entities, facts) and OpenSearch (embeddings)."""

    def __init__(self, neptune: Optional[NeptuneClient] = None, opensearch: Optional[OpenSearchClient] = None):
        """Initialize the fact store.

        Args:
            neptune: Graph client, built from the global config if None
            opensearch: Vector client, built from the global config if None
        """
        self.neptune = neptune or NeptuneClient(config.neptune)
        self.opensearch = opensearch or OpenSearchClient(config.opensearch)

        logger.info('Initialized FactStore')

    def ensure_index(self) -> str:
        """Create the embedding index if needed."""
        return self.opensearch.create_index_if_not_exists()

    def close(self):
        self.neptune.close()

    # Writes

    def begin(self, scope: ScopeLike) -> FactBatch:
        return FactBatch(require_scope(scope))

    def commit(self, batch: FactBatch) -> None:
        """Apply a batch in one graph transaction: either every write is visible or none is.

        Args:
            batch: Batch returned by `begin`

        Raises:
            NeptuneError: If the transaction fails after retries
        """
        scope = require_scope(batch.scope)
        if batch.committed:
            raise RuntimeError('Batch already committed')
        if batch.is_empty:
            batch.committed = True
            logger.debug(f'Skipping empty batch for scope {scope}')
            return

        self.neptune.commit_batch(scope, batch.entities, batch.facts, list(batch.status_updates.items()),
                                  list(batch.confidence_updates.items()))
        batch.committed = True
        logger.info(f'Committed batch for scope {scope}: {len(batch.entities)} entities, {len(batch.facts)} facts, '
                    f'{len(batch.status_updates)} status updates, {len(batch.confidence_updates)} confidence updates')

    def upsert_entity(self, scope: ScopeLike, entity: Entity) -> Entity:
        batch = self.begin(scope)
        batch.upsert_entity(entity)
        self.commit(batch)
        return entity

    def insert_fact(self, scope: ScopeLike, fact: Fact) -> Fact:
        batch = self.begin(scope)
        batch.insert_fact(fact)
        self.commit(batch)
        return fact

    def update_fact_status(self, scope: ScopeLike, fact_id: str, status: FactStatus) -> None:
        batch = self.begin(scope)
        batch.update_fact_status(fact_id, status)
        self.commit(batch)

    def insert_embedding(self, scope: ScopeLike, fact: Fact, vector: List[float]) -> None:
        """Write a fact's embedding record, then flag the fact as embedded.

        Args:
            scope: Scope of the fact
            fact: Committed fact
            vector: Embedding of `fact.statement`

        Raises:
            ScopeIsolationViolation: If the fact belongs to another scope
            StoreUnavailable: If either store write fails
        """
        tag = require_scope(scope)
        if fact.scope != tag:
            raise ScopeIsolationViolation('Fact scope does not match', {'scope': tag, 'fact': fact.id})

        self.opensearch.upsert_embedding(fact.id, tag, vector, fact.statement, fact.created_at, fact.status.value)
        self.neptune.mark_embedded(tag, [fact.id])
        fact.embedded = True

    # Reads

    def vector_search(self, scope: ScopeLike, vector: List[float], k: int) -> List[Tuple[str, float]]:
        """Nearest Active embedding records in the scope as (fact id, cosine similarity), best first.

        Status is filtered by the index, which can lag the graph after a failed
        re-index; callers still check status against the graph.
        """
        tag = require_scope(scope)
        if k < 1:
            return []
        return [(fact_id, cosine_from_score(score)) for fact_id, score in self.opensearch.vector_search(tag, vector, k)]

    def graph_neighbors(self, scope: ScopeLike, entity_ids: Iterable[str], max_hops: int = 1) -> List[Tuple[Fact, int]]:
        """Active facts reachable from the given entities, with their hop distance.

        A fact incident to a start entity is at hop 1; a fact incident to an entity
        first reached at hop n is at hop n + 1.

        Args:
            scope: Scope to traverse
            entity_ids: Start entities
            max_hops: Maximum hop distance, at least 1

        Returns:
            (fact, hops) pairs, each fact once at its smallest distance, nearest first
        """
        tag = require_scope(scope)
        if max_hops < 1:
            raise ValueError(f'max_hops must be >= 1, got {max_hops}')

        visited = set(entity_ids)
        frontier = sorted(visited)
        found: Dict[str, Tuple[Fact, int]] = {}

        for hop in range(1, max_hops + 1):
            if not frontier:
                break
            next_frontier = set()
            for fact in self.neptune.incident_facts(tag, frontier):
                if fact.id in found:
                    continue
                found[fact.id] = (fact, hop)
                for endpoint in (fact.subject_id, fact.object_id):
                    if endpoint not in visited:
                        next_frontier.add(endpoint)
            visited.update(next_frontier)
            frontier = sorted(next_frontier)

        return sorted(found.values(), key=lambda pair: pair[1])

    def find_entities(self, scope: ScopeLike, names: Sequence[str]) -> List[Entity]:
        return self.neptune.find_entities(require_scope(scope), list(names))

    def active_facts_for_subjects(self, scope: ScopeLike, subject_ids: Sequence[str]) -> List[Fact]:
        return self.neptune.active_facts_for_subjects(require_scope(scope), list(subject_ids))

    def get_facts(self, scope: ScopeLike, fact_ids: Sequence[str]) -> List[Fact]:
        return self.neptune.get_facts(require_scope(scope), list(fact_ids))

    def facts_missing_embeddings(self, scope: ScopeLike, limit: int = 100) -> List[Fact]:
        return self.neptune.facts_missing_embeddings(require_scope(scope), limit)
