"""
Hybrid retrieval: fuses vector similarity with graph proximity into one ranked fact list.
"""

from typing import Dict, List, Optional, Sequence, Set

from ..models.core import Fact, ScoredFact
from ..utils.bedrock_embed import BedrockEmbed
from ..utils.config import RetrievalConfig, config
from ..utils.logging_config import get_logger
from .fact_store import FactStore, ScopeLike, require_scope

logger = get_logger(__name__)


def graph_proximity(hops: int) -> float:
    return 1.0 / (1.0 + hops)


def ranking_key(result: ScoredFact):
    """Score descending, then most recent first, then fact id for a total order."""
    return -result.score, -result.fact.created_at, result.fact.id


def render_context(results: Sequence[ScoredFact]) -> str:
    """Render retrieved facts as a prompt context bundle, one statement per line.

    Args:
        results: Ranked retrieval results

    Returns:
        Context text; empty string if there are no results
    """
    return '\n'.join(f'- {result.fact.statement}' for result in results)


class HybridRetriever:
    """Rank a scope's Active facts for a query by vector similarity and graph proximity."""

    def __init__(self, store: FactStore, embed: Optional[BedrockEmbed] = None, retrieval_config: Optional[RetrievalConfig] = None):
        """Initialize the retriever.

        Args:
            store: Fact store adapter
            embed: Embedding client, built from the global config if None
            retrieval_config: RetrievalConfig instance, uses default if None
        """
        self.store = store
        self.embed = embed or BedrockEmbed(config.bedrock_embed)
        self.config = retrieval_config or config.retrieval

    def retrieve(self, scope: ScopeLike, query: str, k: Optional[int] = None) -> List[ScoredFact]:
        """Retrieve the top-k Active facts of a scope for a query.

        Vector hits seed a graph expansion over their endpoint entities. Each fact
        is scored `vector_weight * cosine + graph_weight * 1 / (1 + hops)`.
        Facts without an embedding record are only reachable through the graph.

        Args:
            scope: Scope to search
            query: Query text
            k: Maximum number of results, retrieval default if None

        Returns:
            At most k scored facts, best first; empty list for an empty scope or blank query

        Raises:
            ValueError: If k < 1
            ScopeIsolationViolation: If the scope is missing
            EmbeddingFailure: If the query cannot be embedded
            StoreUnavailable: If a store read fails
        """
        tag = require_scope(scope)
        k = self.config.default_k if k is None else k
        if k < 1:
            raise ValueError(f'k must be >= 1, got {k}')
        if not query or not query.strip():
            logger.debug('Blank query, nothing to retrieve')
            return []

        vector = self.embed.embed_query(query)
        hits = self.store.vector_search(tag, vector, max(k, self.config.vector_top_k))

        similarity: Dict[str, float] = {}
        for fact_id, cosine in hits:
            similarity.setdefault(fact_id, cosine)

        vector_facts = [fact for fact in self.store.get_facts(tag, list(similarity)) if fact.is_active]
        if not vector_facts:
            logger.debug(f'No vector candidates for scope {tag}')
            return []

        # Seed entity id -> ids of the vector facts touching it
        seeds: Dict[str, Set[str]] = {}
        for fact in vector_facts:
            for entity_id in (fact.subject_id, fact.object_id):
                seeds.setdefault(entity_id, set()).add(fact.id)

        vector_ids = {fact.id for fact in vector_facts}
        graph_only = []
        for fact, hops in self.store.graph_neighbors(tag, sorted(seeds), self.config.max_hops):
            if fact.id not in vector_ids and fact.is_active:
                graph_only.append((fact, hops))
        graph_only.sort(key=lambda pair: (pair[1], -pair[0].created_at, pair[0].id))
        graph_only = graph_only[:self.config.graph_top_k]

        results = []
        for fact in vector_facts:
            proximity = graph_proximity(1) if self._linked_to_other_hit(fact, seeds) else 0.0
            results.append(self._score(fact, similarity[fact.id], proximity))
        for fact, hops in graph_only:
            results.append(self._score(fact, 0.0, graph_proximity(hops)))

        results.sort(key=ranking_key)
        logger.debug(f'Retrieved {min(k, len(results))}/{len(results)} candidates for scope {tag} '
                     f'({len(vector_facts)} vector, {len(graph_only)} graph)')
        return results[:k]

    def _score(self, fact: Fact, cosine: float, proximity: float) -> ScoredFact:
        score = self.config.vector_weight * cosine + self.config.graph_weight * proximity
        return ScoredFact(fact=fact, score=score, vector_similarity=cosine, graph_proximity=proximity)

    @staticmethod
    def _linked_to_other_hit(fact: Fact, seeds: Dict[str, Set[str]]) -> bool:
        return any(seeds[entity_id] - {fact.id} for entity_id in (fact.subject_id, fact.object_id))
