"""
Merge & conflict resolution: reconciles candidate facts with a scope's stored memory.
"""

import uuid
from typing import Dict, List, Optional, Sequence, Tuple

from ..exceptions import EmbeddingFailure, StoreUnavailable
from ..models.core import (CandidateFact, DeltaKind, Entity, Fact, FactDelta, FactStatus, MergeResult, Scope, Turn,
                           normalize_name, normalize_predicate, normalize_type)
from ..utils.bedrock_embed import BedrockEmbed
from ..utils.config import MemoryConfig, config
from ..utils.logging_config import get_logger
from ..utils.timestamp_utils import now_millis
from .fact_store import FactBatch, FactStore, require_scope

logger = get_logger(__name__)


class MergeResolver:
    """Decide insert / supersede / discard for each candidate and apply the batch atomically."""

    def __init__(self, store: FactStore, embed: Optional[BedrockEmbed] = None, memory_config: Optional[MemoryConfig] = None):
        """Initialize the resolver.

        Args:
            store: Fact store adapter
            embed: Embedding client, built from the global config if None
            memory_config: MemoryConfig instance, uses default if None
        """
        self.store = store
        self.embed = embed or BedrockEmbed(config.bedrock_embed)
        self.config = memory_config or config.memory

    def is_functional(self, predicate: str) -> bool:
        return predicate in self.config.functional_predicates

    def merge(self, scope: Scope, candidates: Sequence[CandidateFact], turns: Sequence[Turn] = ()) -> MergeResult:
        """Merge candidate facts into the scope's memory.

        Candidates are applied in order, so for a functional predicate the last
        conflicting value wins, including within one batch. A negated candidate
        retracts the Active fact with the same subject, predicate and object and
        never inserts anything. All graph writes are committed as one transaction.
        Embeddings of new facts, and of facts whose status changed, are written
        after the commit; a failed write is left for repair.

        Args:
            scope: Scope owning the memory
            candidates: Extracted candidate facts, oldest first
            turns: Turns the candidates were extracted from, for provenance

        Returns:
            MergeResult describing every applied delta

        Raises:
            ScopeIsolationViolation: If the scope is missing
            StoreUnavailable: If a store read or the batch commit fails; nothing is committed
        """
        tag = require_scope(scope)
        result = MergeResult(scope=tag)

        normalized = []
        for candidate in candidates:
            row = self._normalize(candidate)
            if row is None:
                logger.debug(f'Dropping degenerate candidate for scope {tag}: {candidate}')
                continue
            normalized.append((candidate, row))

        if not normalized:
            logger.debug(f'No candidates to merge for scope {tag}')
            return result

        names = sorted({row[0] for _, row in normalized} | {row[3] for _, row in normalized})
        entities: Dict[Tuple[str, str], Entity] = {entity.key: entity for entity in self.store.find_entities(tag, names)}
        known_ids = {entity.id for entity in entities.values()}

        subject_ids = sorted({entities[(row[0], row[1])].id for _, row in normalized if (row[0], row[1]) in entities})
        active: Dict[Tuple[str, str], List[Fact]] = {}
        for fact in self.store.active_facts_for_subjects(tag, subject_ids):
            active.setdefault((fact.subject_id, fact.predicate), []).append(fact)

        batch = self.store.begin(tag)
        staged_facts: Dict[str, Fact] = {}
        staged_entities = set()
        reindex: Dict[str, Fact] = {}
        timestamp = now_millis()

        for candidate, (subject_name, subject_type, predicate, object_name, object_type) in normalized:
            if candidate.negated:
                delta = self._retract(batch, entities, active, staged_facts, reindex,
                                      (subject_name, subject_type, predicate, object_name))
                if delta is not None:
                    result.deltas.append(delta)
                continue

            subject = self._resolve(tag, entities, subject_name, subject_type, timestamp)
            current = active.setdefault((subject.id, predicate), [])

            duplicate = next((fact for fact in current if fact.object_name == object_name), None)
            if duplicate is not None:
                result.deltas.append(self._refresh(batch, duplicate, candidate.confidence, staged_facts))
                continue

            obj = self._resolve(tag, entities, object_name, object_type, timestamp)
            for entity in (subject, obj):
                if entity.id not in known_ids and entity.id not in staged_entities:
                    batch.upsert_entity(entity)
                    staged_entities.add(entity.id)

            fact = Fact(id=str(uuid.uuid4()),
                        scope=tag,
                        subject_id=subject.id,
                        subject_name=subject.name,
                        predicate=predicate,
                        object_id=obj.id,
                        object_name=obj.name,
                        confidence=candidate.confidence,
                        source_turn=self._source_turn(candidate, turns),
                        created_at=timestamp)

            previous = None
            if self.is_functional(predicate) and current:
                for old in current:
                    self._set_status(batch, old, FactStatus.SUPERSEDED, staged_facts, reindex)
                    result.deltas.append(FactDelta(kind=DeltaKind.SUPERSEDED, fact=old))
                    logger.debug(f'Superseding {old.statement} with {fact.statement} in scope {tag}')
                previous = current[-1]
                current.clear()

            batch.insert_fact(fact)
            staged_facts[fact.id] = fact
            current.append(fact)
            result.deltas.append(FactDelta(kind=DeltaKind.INSERTED, fact=fact, previous=previous))

        self.store.commit(batch)

        # Status changes are re-indexed so vector search only ranks Active records
        written = list(staged_facts.values()) + list(reindex.values())
        result.pending_embeddings = self.write_embeddings(tag, written)
        logger.info(f'Merged {len(normalized)} candidates for scope {tag}: {result.summary()}')
        return result

    def repair_missing_embeddings(self, scope: Scope, limit: int = 100) -> int:
        """Embed committed facts whose embedding record is missing or carries a stale status.

        Args:
            scope: Scope to repair
            limit: Maximum number of facts repaired per call

        Returns:
            Number of facts repaired
        """
        tag = require_scope(scope)
        facts = self.store.facts_missing_embeddings(tag, limit)
        if not facts:
            return 0

        failed = self.write_embeddings(tag, facts)
        repaired = len(facts) - len(failed)
        logger.info(f'Repaired {repaired}/{len(facts)} missing embeddings for scope {tag}')
        return repaired

    def write_embeddings(self, scope: str, facts: Sequence[Fact]) -> List[str]:
        """Embed and index committed facts.

        Returns:
            Ids of facts whose embedding is deferred to a later repair
        """
        deferred = []
        for fact in facts:
            try:
                vector = self.embed.embed_document(fact.statement)
                self.store.insert_embedding(scope, fact, vector)
            except (EmbeddingFailure, StoreUnavailable) as e:
                logger.warning(f'Deferring embedding of fact {fact.id} in scope {scope}: {e}')
                deferred.append(fact.id)
        return deferred

    def _normalize(self, candidate: CandidateFact) -> Optional[Tuple[str, str, str, str, str]]:
        subject_name = normalize_name(candidate.subject)
        object_name = normalize_name(candidate.object)
        predicate = normalize_predicate(candidate.predicate)
        subject_type = normalize_type(candidate.subject_type)
        object_type = normalize_type(candidate.object_type)

        if not subject_name or not object_name or not predicate:
            return None
        if (subject_name, subject_type) == (object_name, object_type):
            return None
        return subject_name, subject_type, predicate, object_name, object_type

    @staticmethod
    def _set_status(batch: FactBatch, fact: Fact, status: FactStatus, staged_facts: Dict[str, Fact], reindex: Dict[str, Fact]):
        # A fact staged in this batch is written with its final status
        if fact.id not in staged_facts:
            batch.update_fact_status(fact.id, status)
            reindex[fact.id] = fact
        fact.status = status

    def _retract(self, batch: FactBatch, entities: Dict[Tuple[str, str], Entity], active: Dict[Tuple[str, str], List[Fact]],
                 staged_facts: Dict[str, Fact], reindex: Dict[str, Fact], row: Tuple[str, str, str, str]) -> Optional[FactDelta]:
        """Retract the Active fact a negated candidate names, if there is one."""
        subject_name, subject_type, predicate, object_name = row
        subject = entities.get((subject_name, subject_type))
        current = active.get((subject.id, predicate), []) if subject is not None else []
        match = next((fact for fact in current if fact.object_name == object_name), None)
        if match is None:
            logger.debug(f'No Active fact to retract for {subject_name} {predicate} {object_name} in scope {batch.scope}')
            return None

        self._set_status(batch, match, FactStatus.RETRACTED, staged_facts, reindex)
        current.remove(match)
        logger.debug(f'Retracting {match.statement} in scope {batch.scope}')
        return FactDelta(kind=DeltaKind.RETRACTED, fact=match)

    @staticmethod
    def _resolve(scope: str, entities: Dict[Tuple[str, str], Entity], name: str, entity_type: str, timestamp: int) -> Entity:
        entity = entities.get((name, entity_type))
        if entity is None:
            entity = Entity(id=str(uuid.uuid4()), scope=scope, name=name, type=entity_type, created_at=timestamp)
            entities[entity.key] = entity
        return entity

    @staticmethod
    def _refresh(batch: FactBatch, existing: Fact, confidence: float, staged_facts: Dict[str, Fact]) -> FactDelta:
        if confidence <= existing.confidence:
            return FactDelta(kind=DeltaKind.DUPLICATE, fact=existing)

        existing.confidence = max(existing.confidence, confidence)
        if existing.id not in staged_facts:
            batch.refresh_confidence(existing.id, existing.confidence)
        return FactDelta(kind=DeltaKind.CONFIDENCE_REFRESHED, fact=existing)

    @staticmethod
    def _source_turn(candidate: CandidateFact, turns: Sequence[Turn]) -> Optional[str]:
        if candidate.turn_index is None or not 0 <= candidate.turn_index < len(turns):
            return None
        return turns[candidate.turn_index].id
