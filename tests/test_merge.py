"""Tests for services/merge.py: supersession, duplicate suppression, atomicity and embedding repair."""

import pytest

from memzero.models.core import CandidateFact, DeltaKind, FactStatus, Turn
from memzero.utils.neptune_client import NeptuneError


def candidate(subject, predicate, obj, confidence=0.9, **kwargs):
    return CandidateFact(subject=subject, predicate=predicate, object=obj, confidence=confidence, **kwargs)


def test_insert_creates_entities_and_embeds(resolver, neptune, opensearch, scope):
    result = resolver.merge(scope, [candidate('User', 'lives in', 'Tokyo', object_type='place')])

    assert result.count(DeltaKind.INSERTED) == 1
    inserted = result.inserted[0]
    assert (inserted.subject_name, inserted.predicate, inserted.object_name) == ('user', 'lives_in', 'tokyo')
    assert {(e.name, e.type) for e in neptune.entities.values()} == {('user', 'entity'), ('tokyo', 'place')}
    assert all(e.scope == scope.tag for e in neptune.entities.values())
    assert neptune.facts[inserted.id].embedded
    assert opensearch.docs[inserted.id]['statement'] == 'user lives in tokyo'
    assert result.pending_embeddings == []


def test_functional_predicate_supersedes_previous_value(resolver, neptune, scope):
    tokyo = resolver.merge(scope, [candidate('user', 'lives_in', 'Tokyo')]).inserted[0]

    result = resolver.merge(scope, [candidate('user', 'lives_in', 'Paris')])

    assert result.count(DeltaKind.SUPERSEDED) == 1
    assert result.count(DeltaKind.INSERTED) == 1
    assert neptune.facts[tokyo.id].status == FactStatus.SUPERSEDED
    active = neptune.active(scope.tag, 'lives_in')
    assert [f.object_name for f in active] == ['paris']
    assert result.inserted[0].subject_id == tokyo.subject_id


def test_superseded_fact_keeps_its_embedding(resolver, opensearch, scope):
    tokyo = resolver.merge(scope, [candidate('user', 'lives_in', 'Tokyo')]).inserted[0]
    resolver.merge(scope, [candidate('user', 'lives_in', 'Paris')])

    assert tokyo.id in opensearch.docs
    assert opensearch.docs[tokyo.id]['status'] == 'superseded'


def test_conflicting_values_in_one_batch_keep_only_the_last(resolver, neptune, scope):
    result = resolver.merge(scope, [candidate('user', 'lives_in', 'Tokyo'), candidate('user', 'lives_in', 'Paris')])

    assert result.count(DeltaKind.INSERTED) == 2
    assert [f.object_name for f in neptune.active(scope.tag, 'lives_in')] == ['paris']
    tokyo = next(f for f in neptune.facts.values() if f.object_name == 'tokyo')
    assert tokyo.status == FactStatus.SUPERSEDED
    assert tokyo.embedded


def test_in_batch_duplicate_yields_one_active_fact(resolver, neptune, scope):
    turns = [Turn('user', 'My favorite color is blue'), Turn('user', 'My favorite color is blue')]

    result = resolver.merge(scope, [candidate('user', 'likes', 'blue', turn_index=0), candidate('user', 'likes', 'Blue ', turn_index=1)], turns)

    assert result.count(DeltaKind.INSERTED) == 1
    assert result.count(DeltaKind.DUPLICATE) == 1
    active = neptune.active(scope.tag, 'likes')
    assert len(active) == 1
    assert active[0].source_turn == turns[0].id


def test_non_functional_predicate_accumulates_values(resolver, neptune, scope):
    resolver.merge(scope, [candidate('user', 'likes', 'blue')])
    resolver.merge(scope, [candidate('user', 'likes', 'green')])

    assert sorted(f.object_name for f in neptune.active(scope.tag, 'likes')) == ['blue', 'green']


def test_reingest_is_idempotent(resolver, neptune, scope):
    batch = [candidate('user', 'lives_in', 'Paris'), candidate('user', 'likes', 'blue')]
    resolver.merge(scope, batch)
    before = {f.id for f in neptune.active(scope.tag)}

    result = resolver.merge(scope, batch)

    assert result.count(DeltaKind.INSERTED) == 0
    assert result.count(DeltaKind.DUPLICATE) == 2
    assert {f.id for f in neptune.active(scope.tag)} == before
    assert len(neptune.entities) == 3


def test_duplicate_with_higher_confidence_refreshes_to_max(resolver, neptune, scope):
    fact = resolver.merge(scope, [candidate('user', 'likes', 'blue', 0.6)]).inserted[0]

    raised = resolver.merge(scope, [candidate('user', 'likes', 'blue', 0.8)])
    lowered = resolver.merge(scope, [candidate('user', 'likes', 'blue', 0.7)])

    assert raised.count(DeltaKind.CONFIDENCE_REFRESHED) == 1
    assert lowered.count(DeltaKind.DUPLICATE) == 1
    assert neptune.facts[fact.id].confidence == 0.8


def test_degenerate_candidates_are_dropped(resolver, neptune, scope):
    result = resolver.merge(scope, [candidate('Paris', 'is', ' paris'), candidate('user', '!!', 'blue')])

    assert result.deltas == []
    assert neptune.commits == 0
    assert neptune.entities == {}


def test_failed_commit_leaves_memory_untouched(resolver, neptune, opensearch, scope):
    tokyo = resolver.merge(scope, [candidate('user', 'lives_in', 'Tokyo')]).inserted[0]
    neptune.fail_commit = True

    with pytest.raises(NeptuneError):
        resolver.merge(scope, [candidate('user', 'lives_in', 'Paris'), candidate('user', 'likes', 'blue')])

    assert neptune.facts[tokyo.id].status == FactStatus.ACTIVE
    assert len(neptune.facts) == 1
    assert len(opensearch.docs) == 1


def test_embedding_failure_defers_and_repair_catches_up(resolver, neptune, opensearch, embed, scope):
    embed.failing = True
    result = resolver.merge(scope, [candidate('user', 'likes', 'blue')])
    fact_id = result.inserted[0].id

    assert result.pending_embeddings == [fact_id]
    assert neptune.facts[fact_id].status == FactStatus.ACTIVE
    assert not neptune.facts[fact_id].embedded
    assert fact_id not in opensearch.docs

    embed.failing = False
    assert resolver.repair_missing_embeddings(scope) == 1
    assert neptune.facts[fact_id].embedded
    assert fact_id in opensearch.docs
    assert resolver.repair_missing_embeddings(scope) == 0


def test_vector_store_failure_defers_embedding(resolver, neptune, opensearch, scope):
    opensearch.fail_writes = True

    result = resolver.merge(scope, [candidate('user', 'likes', 'blue')])

    assert len(result.pending_embeddings) == 1
    assert not neptune.facts[result.inserted[0].id].embedded


def test_scopes_do_not_share_entities_or_conflicts(resolver, neptune, scope, other_scope):
    resolver.merge(scope, [candidate('user', 'lives_in', 'Tokyo')])
    resolver.merge(other_scope, [candidate('user', 'lives_in', 'Paris')])

    assert [f.object_name for f in neptune.active(scope.tag, 'lives_in')] == ['tokyo']
    assert [f.object_name for f in neptune.active(other_scope.tag, 'lives_in')] == ['paris']
    assert len({e.id for e in neptune.entities.values() if e.name == 'user'}) == 2


def test_supersession_reindexes_the_old_record_as_superseded(resolver, neptune, opensearch, scope):
    tokyo = resolver.merge(scope, [candidate('user', 'lives_in', 'Tokyo')]).inserted[0]

    resolver.merge(scope, [candidate('user', 'lives_in', 'Paris')])

    assert opensearch.docs[tokyo.id]['status'] == 'superseded'
    assert neptune.facts[tokyo.id].embedded


def test_failed_reindex_is_repaired_later(resolver, neptune, opensearch, embed, scope):
    tokyo = resolver.merge(scope, [candidate('user', 'lives_in', 'Tokyo')]).inserted[0]
    embed.failing = True

    result = resolver.merge(scope, [candidate('user', 'lives_in', 'Paris')])

    assert tokyo.id in result.pending_embeddings
    assert opensearch.docs[tokyo.id]['status'] == 'active'
    assert not neptune.facts[tokyo.id].embedded

    embed.failing = False
    assert resolver.repair_missing_embeddings(scope) == 2
    assert opensearch.docs[tokyo.id]['status'] == 'superseded'


def test_negated_candidate_retracts_matching_fact(resolver, neptune, opensearch, scope):
    blue = resolver.merge(scope, [candidate('user', 'likes', 'blue')]).inserted[0]
    resolver.merge(scope, [candidate('user', 'likes', 'green')])

    result = resolver.merge(scope, [candidate('user', 'likes', 'Blue', negated=True)])

    assert result.count(DeltaKind.RETRACTED) == 1
    assert result.count(DeltaKind.INSERTED) == 0
    assert neptune.facts[blue.id].status == FactStatus.RETRACTED
    assert [f.object_name for f in neptune.active(scope.tag, 'likes')] == ['green']
    assert opensearch.docs[blue.id]['status'] == 'retracted'


def test_negated_candidate_without_match_changes_nothing(resolver, neptune, scope):
    resolver.merge(scope, [candidate('user', 'lives_in', 'Tokyo')])
    entities_before = dict(neptune.entities)

    result = resolver.merge(scope, [candidate('user', 'lives_in', 'Paris', negated=True),
                                    candidate('carol', 'likes', 'jazz', negated=True)])

    assert result.deltas == []
    assert [f.object_name for f in neptune.active(scope.tag, 'lives_in')] == ['tokyo']
    assert neptune.entities == entities_before


def test_negation_later_in_the_batch_retracts_staged_fact(resolver, neptune, scope):
    result = resolver.merge(scope, [candidate('user', 'likes', 'jazz'), candidate('user', 'likes', 'jazz', negated=True)])

    assert result.count(DeltaKind.INSERTED) == 1
    assert result.count(DeltaKind.RETRACTED) == 1
    assert neptune.active(scope.tag, 'likes') == []
    jazz = next(iter(neptune.facts.values()))
    assert jazz.status == FactStatus.RETRACTED
    assert jazz.embedded


def test_retracted_value_can_be_asserted_again(resolver, neptune, scope):
    resolver.merge(scope, [candidate('user', 'likes', 'blue')])
    resolver.merge(scope, [candidate('user', 'likes', 'blue', negated=True)])

    result = resolver.merge(scope, [candidate('user', 'likes', 'blue')])

    assert result.count(DeltaKind.INSERTED) == 1
    assert len(neptune.active(scope.tag, 'likes')) == 1
