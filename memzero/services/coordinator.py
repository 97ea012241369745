"""
Memory Session Coordinator: the ingest and retrieve entry points of the engine.
"""

import threading
from concurrent.futures import Future, ThreadPoolExecutor
from contextlib import contextmanager
from typing import Any, Dict, List, Mapping, Optional, Sequence, Set, Union

from ..models.core import MergeResult, Scope, ScoredFact, Turn
from ..utils.bedrock_embed import BedrockEmbed
from ..utils.config import MemoryConfig, config
from ..utils.health_check import components_status
from ..utils.logging_config import get_logger
from .extraction import ExtractionService
from .fact_store import FactStore, require_scope
from .merge import MergeResolver
from .retrieval import HybridRetriever, render_context

logger = get_logger(__name__)

TurnLike = Union[Turn, Mapping[str, str]]


def as_turns(turns: Sequence[TurnLike]) -> List[Turn]:
    """Accept Turn objects or message dicts with 'role' and 'content' keys."""
    converted = []
    for turn in turns:
        if isinstance(turn, Turn):
            converted.append(turn)
        elif 'id' in turn:
            converted.append(Turn(role=turn['role'], content=turn['content'], id=turn['id']))
        else:
            converted.append(Turn(role=turn['role'], content=turn['content']))
    return converted


class ScopeSequencer:
    """Per-scope tickets handed out at submission; a scope's merges run in ticket order.

    Scopes are independent. A ticket released without running (failed extraction,
    cancelled future) is skipped. State for a scope is dropped once every issued
    ticket has been released.
    """

    def __init__(self):
        self._cond = threading.Condition()
        self._issued: Dict[str, int] = {}
        self._serving: Dict[str, int] = {}
        self._released: Dict[str, Set[int]] = {}

    def take(self, tag: str) -> int:
        with self._cond:
            ticket = self._issued.get(tag, 0)
            self._issued[tag] = ticket + 1
            self._serving.setdefault(tag, ticket)
            self._released.setdefault(tag, set())
            return ticket

    @contextmanager
    def turn(self, tag: str, ticket: int):
        """Block until every earlier ticket of the scope is released, release this one on exit."""
        with self._cond:
            self._cond.wait_for(lambda: self._serving[tag] == ticket)
        try:
            yield
        finally:
            self.release(tag, ticket)

    def release(self, tag: str, ticket: int):
        with self._cond:
            released = self._released[tag]
            released.add(ticket)
            serving = self._serving[tag]
            while serving in released:
                released.remove(serving)
                serving += 1
            if serving == self._issued[tag]:
                del self._issued[tag]
                del self._serving[tag]
                del self._released[tag]
            else:
                self._serving[tag] = serving
            self._cond.notify_all()

    def __len__(self) -> int:
        with self._cond:
            return len(self._issued)


class MemoryCoordinator:
    """Facade over extraction, merge and retrieval with per-scope write serialization."""

    def __init__(self,
                 store: Optional[FactStore] = None,
                 extraction: Optional[ExtractionService] = None,
                 resolver: Optional[MergeResolver] = None,
                 retriever: Optional[HybridRetriever] = None,
                 memory_config: Optional[MemoryConfig] = None):
        """Initialize the coordinator, building any missing component from the global config.

        Args:
            store: Fact store adapter
            extraction: Extraction service
            resolver: Merge resolver
            retriever: Hybrid retriever
            memory_config: MemoryConfig instance, uses default if None
        """
        self.config = memory_config or config.memory
        self.store = store or FactStore()

        embed = None
        if resolver is None or retriever is None:
            embed = BedrockEmbed(config.bedrock_embed)
        self.extraction = extraction or ExtractionService()
        self.resolver = resolver or MergeResolver(self.store, embed, self.config)
        self.retriever = retriever or HybridRetriever(self.store, embed)

        self.sequencer = ScopeSequencer()
        self.executor = ThreadPoolExecutor(max_workers=self.config.ingest_workers, thread_name_prefix='memzero-ingest')

        logger.info(f'Initialized MemoryCoordinator with {self.config.ingest_workers} ingest workers')

    def ingest(self, scope: Scope, turns: Sequence[TurnLike]) -> 'Future[MergeResult]':
        """Schedule an ingest of completed turns.

        Ingests for one scope merge one at a time, in submission order; ingests
        for different scopes run in parallel. Cancelling the future before it
        starts drops the ingest.

        Args:
            scope: Scope the turns belong to
            turns: Conversation window, oldest first

        Returns:
            Future resolving to the MergeResult, or raising the ingest's error

        Raises:
            ScopeIsolationViolation: If the scope is missing
        """
        tag = require_scope(scope)
        window = as_turns(turns)
        ticket = self.sequencer.take(tag)
        try:
            future = self.executor.submit(self._ingest, scope, window, ticket)
        except RuntimeError:
            self.sequencer.release(tag, ticket)
            raise

        def release_if_cancelled(done: Future):
            if done.cancelled():
                self.sequencer.release(tag, ticket)

        future.add_done_callback(release_if_cancelled)
        return future

    def ingest_now(self, scope: Scope, turns: Sequence[TurnLike]) -> MergeResult:
        """Ingest turns in the calling thread, after any ingest already submitted for the scope.

        Raises:
            ExtractionParseError: If extraction output stays malformed; nothing is committed
            LLMProviderError: If the extraction call fails
            StoreUnavailable: If a store read or the commit fails; nothing is committed
        """
        tag = require_scope(scope)
        return self._ingest(scope, as_turns(turns), self.sequencer.take(tag))

    def _ingest(self, scope: Scope, window: List[Turn], ticket: int) -> MergeResult:
        # Extraction runs outside the scope's turn; repair, merge and commit inside it
        tag = scope.tag
        try:
            candidates = self.extraction.extract(scope, window)
        except Exception:
            self.sequencer.release(tag, ticket)
            raise

        with self.sequencer.turn(tag, ticket):
            repaired = self.resolver.repair_missing_embeddings(scope)
            result = self.resolver.merge(scope, candidates, window)
            result.repaired_embeddings = repaired

        logger.debug(f'Ingested {len(window)} turns for scope {tag}: {result.summary()}')
        return result

    def retrieve(self, scope: Scope, query: str, k: Optional[int] = None) -> List[ScoredFact]:
        """Retrieve ranked Active facts for a query. Read-only and lock-free."""
        return self.retriever.retrieve(scope, query, k)

    def build_context(self, scope: Scope, query: str, k: Optional[int] = None) -> str:
        """Retrieve and render the context bundle to inject into the next prompt."""
        return render_context(self.retrieve(scope, query, k))

    def health(self) -> Dict[str, Any]:
        """Health of the LLM, embedding, graph and vector clients this coordinator uses."""
        status = components_status(self.extraction.llm, self.resolver.embed, self.store.neptune, self.store.opensearch)
        unhealthy = [name for name, component in status.items() if not component['healthy']]
        if unhealthy:
            logger.warning(f'Unhealthy components: {", ".join(unhealthy)}')
        return status

    def close(self, wait: bool = True):
        """Stop accepting ingests, optionally wait for running ones, and close store connections."""
        self.executor.shutdown(wait=wait)
        self.store.close()
        logger.info('Closed MemoryCoordinator')

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.close()
