"""In-memory stand-ins for the Neptune, OpenSearch, Bedrock embedding and LLM clients."""

import json
import math
import re
import threading
from dataclasses import replace
from typing import Dict, List

from memzero.exceptions import EmbeddingFailure
from memzero.models.core import Entity, Fact, FactStatus
from memzero.utils.neptune_client import NeptuneError
from memzero.utils.opensearch_client import OpenSearchError

_TOKEN = re.compile(r'[a-z0-9]+')
_SYNONYMS = {'i': 'user', 'me': 'user', 'my': 'user', 'moved': 'live', 'living': 'live'}


def facts_response(*facts: dict) -> str:
    """Render an extraction response the way the model answers after the ```json prefill."""
    return '\n' + json.dumps({'facts': list(facts)}) + '\n'


def fact(subject: str, predicate: str, obj: str, confidence: float = 0.9, **extra) -> dict:
    return {'subject': subject, 'predicate': predicate, 'object': obj, 'confidence': confidence, **extra}


class FakeNeptune:
    """Graph store keeping entities and facts in dicts, committing batches atomically."""

    def __init__(self):
        self.entities: Dict[str, Entity] = {}
        self.facts: Dict[str, Fact] = {}
        self.commits = 0
        self.fail_commit = False
        self.closed = False
        self._lock = threading.Lock()

    def find_entities(self, scope, names):
        with self._lock:
            return [replace(e) for e in self.entities.values() if e.scope == scope and e.name in set(names)]

    def active_facts_for_subjects(self, scope, subject_ids):
        with self._lock:
            return [
                replace(f) for f in self.facts.values()
                if f.scope == scope and f.subject_id in set(subject_ids) and f.status == FactStatus.ACTIVE
            ]

    def get_facts(self, scope, fact_ids):
        with self._lock:
            return [replace(self.facts[i]) for i in fact_ids if i in self.facts and self.facts[i].scope == scope]

    def incident_facts(self, scope, entity_ids):
        ids = set(entity_ids)
        with self._lock:
            return [
                replace(f) for f in self.facts.values()
                if f.scope == scope and f.status == FactStatus.ACTIVE and (f.subject_id in ids or f.object_id in ids)
            ]

    def facts_missing_embeddings(self, scope, limit=100):
        with self._lock:
            missing = [
                replace(f) for f in self.facts.values()
                if f.scope == scope and not f.embedded
            ]
        return missing[:limit]

    def mark_embedded(self, scope, fact_ids):
        with self._lock:
            for fact_id in fact_ids:
                if fact_id in self.facts and self.facts[fact_id].scope == scope:
                    self.facts[fact_id].embedded = True

    def commit_batch(self, scope, entities, facts, status_updates, confidence_updates):
        with self._lock:
            if self.fail_commit:
                raise NeptuneError('Failed to commit_batch: connection closed')

            new_entities = {e.id: replace(e) for e in entities}
            known = set(self.entities) | set(new_entities)
            new_facts = {}
            for f in facts:
                if f.subject_id not in known or f.object_id not in known:
                    raise NeptuneError(f'Failed to commit_batch: missing endpoint for fact {f.id}')
                new_facts[f.id] = replace(f)

            statuses = {}
            for fact_id, status in status_updates:
                if fact_id in self.facts and self.facts[fact_id].scope == scope:
                    statuses[fact_id] = status
            confidences = {}
            for fact_id, confidence in confidence_updates:
                if fact_id in self.facts and self.facts[fact_id].scope == scope:
                    confidences[fact_id] = confidence

            for entity_id, entity in new_entities.items():
                self.entities.setdefault(entity_id, entity)
            for fact_id, f in new_facts.items():
                self.facts.setdefault(fact_id, f)
            for fact_id, status in statuses.items():
                self.facts[fact_id].status = status
                self.facts[fact_id].embedded = False
            for fact_id, confidence in confidences.items():
                self.facts[fact_id].confidence = confidence
            self.commits += 1

    def active(self, scope, predicate=None) -> List[Fact]:
        return [
            f for f in self.facts.values()
            if f.scope == scope and f.status == FactStatus.ACTIVE and (predicate is None or f.predicate == predicate)
        ]

    def health_check(self):
        return True

    def close(self):
        self.closed = True


class FakeOpenSearch:
    """Vector store scoring with exact cosine, reporting scores as 1 + cosine like cosinesimil."""

    def __init__(self):
        self.docs: Dict[str, dict] = {}
        self.fail_writes = False
        self.index_created = False
        self._lock = threading.Lock()

    def create_index_if_not_exists(self):
        if self.index_created:
            return 'exists'
        self.index_created = True
        return 'created'

    def upsert_embedding(self, fact_id, scope, vector, statement, created_at, status='active'):
        if self.fail_writes:
            raise OpenSearchError('Failed to upsert_embedding: connection timed out')
        with self._lock:
            self.docs[fact_id] = {
                'fact_id': fact_id,
                'scope': scope,
                'status': status,
                'embedding': list(vector),
                'statement': statement,
                'created_at': created_at
            }
        return True

    def vector_search(self, scope, query_vector, top_k, status='active'):
        with self._lock:
            hits = [(doc['fact_id'], 1.0 + cosine(query_vector, doc['embedding']))
                    for doc in self.docs.values()
                    if doc['scope'] == scope and doc['status'] == status]
        hits.sort(key=lambda hit: (-hit[1], hit[0]))
        return hits[:top_k]

    def health_check(self):
        return True


def cosine(a, b) -> float:
    dot = sum(x * y for x, y in zip(a, b))
    norm = math.sqrt(sum(x * x for x in a)) * math.sqrt(sum(y * y for y in b))
    return dot / norm if norm else 0.0


def tokens(text: str) -> List[str]:
    result = []
    for token in _TOKEN.findall(text.lower()):
        token = _SYNONYMS.get(token, token)
        if len(token) > 3 and token.endswith('s'):
            token = token[:-1]
        result.append(token)
    return result


class BagOfWordsEmbed:
    """Deterministic embedder: one dimension per normalized word."""

    def __init__(self, dimension: int = 512):
        self.dimension = dimension
        self.vocabulary: Dict[str, int] = {}
        self.failing = False
        self.documents: List[str] = []
        self._lock = threading.Lock()

    def _embed(self, text):
        if self.failing:
            raise EmbeddingFailure('Bedrock Embed failed after 3 attempts: ThrottlingException')
        if not text or not text.strip():
            raise EmbeddingFailure('Empty text provided for embedding')
        vector = [0.0] * self.dimension
        with self._lock:
            for token in tokens(text):
                index = self.vocabulary.setdefault(token, len(self.vocabulary) % self.dimension)
                vector[index] += 1.0
        return vector

    def embed_document(self, text):
        vector = self._embed(text)
        self.documents.append(text)
        return vector

    def embed_query(self, text):
        return self._embed(text)

    def health_check(self):
        return not self.failing


class ScriptedLLM:
    """Returns queued responses in order and records every call."""

    def __init__(self, *responses: str):
        self.responses = list(responses)
        self.calls: List[dict] = []
        self._lock = threading.Lock()

    def queue(self, *responses: str):
        with self._lock:
            self.responses.extend(responses)

    def generate_response(self, messages, system_prompt, max_tokens=None, temperature=None, stop_sequences=None):
        with self._lock:
            self.calls.append({'messages': messages, 'system_prompt': system_prompt, 'stop_sequences': stop_sequences})
            if not self.responses:
                raise AssertionError('ScriptedLLM ran out of responses')
            return self.responses.pop(0), None

    @property
    def prompts(self) -> List[str]:
        return [call['messages'][0]['content'][0]['text'] for call in self.calls]

    def health_check(self):
        return True
