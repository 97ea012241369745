"""
Amazon Neptune graph database client with Gremlin Python driver and AWS SigV4 authentication.

Entities are `Entity` vertices and facts are `Fact` edges. Every vertex and edge
carries a `scope` property and every traversal filters on it.
"""

import time
from functools import wraps
from typing import Any, Dict, Iterable, List, Sequence, Tuple

from boto3 import Session
from botocore.auth import SigV4Auth
from botocore.awsrequest import AWSRequest
from gremlin_python.driver.aiohttp.transport import AiohttpTransport
from gremlin_python.driver.driver_remote_connection import DriverRemoteConnection
from gremlin_python.process.anonymous_traversal import traversal
from gremlin_python.process.graph_traversal import __
from gremlin_python.process.traversal import P, T

from ..exceptions import StoreUnavailable
from ..models.core import Entity, Fact, FactStatus
from .bedrock_llm import backoff_delay
from .config import NeptuneConfig
from .logging_config import get_logger
from .timestamp_utils import from_millis_str, to_millis_str

logger = get_logger(__name__)

_TRANSIENT_MARKERS = ('closing transport', 'concurrentmodification', 'timed out', 'timeout', 'connection')


class NeptuneError(StoreUnavailable):
    """Neptune failure surfaced after retries."""
    pass


def _is_transient(error: Exception) -> bool:
    if isinstance(error, (ConnectionError, TimeoutError)):
        return True
    message = str(error).lower()
    return any(marker in message for marker in _TRANSIENT_MARKERS)


def retry_on_connection_error(func):
    """Retry Neptune operations on transient errors, reconnecting between attempts."""

    @wraps(func)
    def wrapper(self, *args, **kwargs):
        attempts = self.config.retry_attempts
        for attempt in range(attempts):
            try:
                return func(self, *args, **kwargs)
            except NeptuneError:
                raise
            except Exception as e:
                if not _is_transient(e) or attempt == attempts - 1:
                    logger.error(f'Error in {func.__name__}: {e}')
                    raise NeptuneError(f'Failed to {func.__name__}: {e}', {'attempt': attempt + 1})
                logger.warning(f'Neptune {func.__name__} attempt {attempt + 1}/{attempts} failed: {e}. Reconnecting...')
                time.sleep(backoff_delay(self.config.retry_delay, attempt))
                self.close()
                self._connect()
        raise NeptuneError(f'Failed to {func.__name__} after {attempts} attempts')

    return wrapper


def _entity_from_element(data: Dict[Any, Any]) -> Entity:
    return Entity(id=str(data[T.id]),
                  scope=data['scope'],
                  name=data['name'],
                  type=data['type'],
                  created_at=from_millis_str(data.get('created_at')))


def _fact_from_element(data: Dict[Any, Any]) -> Fact:
    return Fact(id=str(data[T.id]),
                scope=data['scope'],
                subject_id=data['subject_id'],
                subject_name=data['subject_name'],
                predicate=data['predicate'],
                object_id=data['object_id'],
                object_name=data['object_name'],
                confidence=float(data.get('confidence', 0.0)),
                source_turn=data.get('source_turn') or None,
                created_at=from_millis_str(data.get('created_at')),
                status=FactStatus(data.get('status', FactStatus.ACTIVE.value)),
                embedded=bool(data.get('embedded', False)))


class NeptuneClient:
    """Amazon Neptune client using Gremlin Python driver with AWS authentication."""

    def __init__(self, config: NeptuneConfig):
        """
        Initialize Neptune client with Gremlin driver.

        Args:
            config: NeptuneConfig instance with connection parameters
        """
        self.config = config
        self.connection = None
        self.g = None
        self._connect()

        logger.info(f'Connected to Neptune at {config.endpoint}')

    def _connect(self):
        """Establish connection to Neptune."""
        conn_string = f'wss://{self.config.endpoint}:{self.config.port}/gremlin'

        credentials = Session().get_credentials()
        if credentials is None:
            raise NeptuneError('No AWS credentials found')
        creds = credentials.get_frozen_credentials()
        region = Session().region_name or self.config.region or 'us-east-1'

        # Signed websocket upgrade request
        request = AWSRequest(method='GET', url=conn_string, data=None)
        SigV4Auth(creds, 'neptune-db', region).add_auth(request)

        timeout = self.config.timeout
        self.connection = DriverRemoteConnection(conn_string,
                                                 'g',
                                                 headers=dict(request.headers.items()),
                                                 transport_factory=lambda: AiohttpTransport(
                                                     call_from_event_loop=True, read_timeout=timeout, write_timeout=timeout))
        self.g = traversal().with_remote(self.connection)

    def close(self):
        """Close the Neptune connection."""
        if self.connection is not None:
            self.connection.close()
            self.connection = None

    @retry_on_connection_error
    def find_entities(self, scope: str, names: Sequence[str]) -> List[Entity]:
        """
        Find entity vertices in a scope by normalized name.

        Args:
            scope: Scope tag
            names: Normalized entity names

        Returns:
            Matching entities (any type); empty list if none
        """
        if not names:
            return []
        rows = self.g.V().has_label('Entity').has('scope', scope).has('name', P.within(list(names))).element_map().to_list()
        return [_entity_from_element(row) for row in rows]

    @retry_on_connection_error
    def active_facts_for_subjects(self, scope: str, subject_ids: Sequence[str]) -> List[Fact]:
        """
        Get Active fact edges leaving the given subject vertices.

        Args:
            scope: Scope tag
            subject_ids: Entity ids

        Returns:
            Active facts whose subject is one of the given entities
        """
        if not subject_ids:
            return []
        rows = self.g.V(*subject_ids).has('scope', scope)\
            .out_e('Fact').has('scope', scope).has('status', FactStatus.ACTIVE.value)\
            .element_map().to_list()
        return [_fact_from_element(row) for row in rows]

    @retry_on_connection_error
    def get_facts(self, scope: str, fact_ids: Sequence[str]) -> List[Fact]:
        """Get fact edges by id. Ids outside the scope are silently absent."""
        if not fact_ids:
            return []
        rows = self.g.E(*fact_ids).has('scope', scope).element_map().to_list()
        return [_fact_from_element(row) for row in rows]

    @retry_on_connection_error
    def incident_facts(self, scope: str, entity_ids: Sequence[str]) -> List[Fact]:
        """
        Get Active fact edges touching the given entity vertices in either direction.

        Args:
            scope: Scope tag
            entity_ids: Entity ids

        Returns:
            Deduplicated Active facts incident to the entities
        """
        if not entity_ids:
            return []
        rows = self.g.V(*entity_ids).has('scope', scope)\
            .both_e('Fact').has('scope', scope).has('status', FactStatus.ACTIVE.value)\
            .dedup().element_map().to_list()
        return [_fact_from_element(row) for row in rows]

    @retry_on_connection_error
    def facts_missing_embeddings(self, scope: str, limit: int = 100) -> List[Fact]:
        """Get facts whose embedding record is missing or carries a stale status."""
        rows = self.g.E().has_label('Fact').has('scope', scope).has('embedded', False)\
            .limit(limit).element_map().to_list()
        return [_fact_from_element(row) for row in rows]

    @retry_on_connection_error
    def mark_embedded(self, scope: str, fact_ids: Sequence[str]) -> None:
        """Flag facts whose embedding record has been written."""
        if not fact_ids:
            return
        self.g.E(*fact_ids).has('scope', scope).property('embedded', True).iterate()
        logger.debug(f'Marked {len(fact_ids)} facts as embedded')

    @retry_on_connection_error
    def commit_batch(self,
                     scope: str,
                     entities: Iterable[Entity],
                     facts: Iterable[Fact],
                     status_updates: Iterable[Tuple[str, FactStatus]],
                     confidence_updates: Iterable[Tuple[str, float]]) -> None:
        """
        Write a batch of entity vertices, fact edges and fact updates in one transaction.

        Entity and fact writes are idempotent on id, so a retried commit converges.

        Args:
            scope: Scope tag written on every element and required by every update
            entities: New entity vertices
            facts: New fact edges (endpoints must exist or be in `entities`)
            status_updates: (fact id, new status) pairs
            confidence_updates: (fact id, new confidence) pairs

        Raises:
            NeptuneError: If the transaction fails; nothing from the batch is visible
        """
        tx = self.g.tx()
        gtx = tx.begin()
        try:
            for entity in entities:
                gtx.V(entity.id).fold().coalesce(
                    __.unfold(),
                    __.add_v('Entity').property(T.id, entity.id)
                    .property('scope', scope)
                    .property('name', entity.name)
                    .property('type', entity.type)
                    .property('created_at', to_millis_str(entity.created_at))).iterate()

            for fact in facts:
                gtx.E(fact.id).fold().coalesce(
                    __.unfold(),
                    __.V(fact.subject_id).add_e('Fact').to(__.V(fact.object_id)).property(T.id, fact.id)
                    .property('scope', scope)
                    .property('subject_id', fact.subject_id)
                    .property('subject_name', fact.subject_name)
                    .property('predicate', fact.predicate)
                    .property('object_id', fact.object_id)
                    .property('object_name', fact.object_name)
                    .property('confidence', fact.confidence)
                    .property('source_turn', fact.source_turn or '')
                    .property('created_at', to_millis_str(fact.created_at))
                    .property('status', fact.status.value)
                    .property('embedded', fact.embedded)).iterate()

            for fact_id, status in status_updates:
                gtx.E(fact_id).has('scope', scope).property('status', status.value)\
                    .property('embedded', False).property('updated_at', to_millis_str()).iterate()

            for fact_id, confidence in confidence_updates:
                gtx.E(fact_id).has('scope', scope).property('confidence', confidence)\
                    .property('updated_at', to_millis_str()).iterate()

            tx.commit()
        except Exception:
            if tx.is_open():
                tx.rollback()
            raise

    @retry_on_connection_error
    def health_check(self) -> bool:
        """
        Perform a health check on the Neptune service.

        Returns:
            True if service is healthy
        """
        self.g.V().limit(1).count().next()
        return True
