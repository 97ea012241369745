"""Shared fixtures for all test modules."""
import os

# Keep configuration deterministic regardless of the developer's .env file.
os.environ.setdefault('LOG_LEVEL', 'WARNING')

import pytest

from fakes import BagOfWordsEmbed, FakeNeptune, FakeOpenSearch, ScriptedLLM
from memzero.models.core import Scope
from memzero.services.extraction import ExtractionService
from memzero.services.fact_store import FactStore
from memzero.services.merge import MergeResolver
from memzero.services.retrieval import HybridRetriever
from memzero.utils.config import ExtractionConfig, MemoryConfig, RetrievalConfig


@pytest.fixture
def scope():
    return Scope(user_id='alice', agent_id='coach')


@pytest.fixture
def other_scope():
    return Scope(user_id='bob', agent_id='coach')


@pytest.fixture
def neptune():
    return FakeNeptune()


@pytest.fixture
def opensearch():
    return FakeOpenSearch()


@pytest.fixture
def embed():
    return BagOfWordsEmbed()


@pytest.fixture
def llm():
    return ScriptedLLM()


@pytest.fixture
def memory_config():
    return MemoryConfig(functional_predicates=frozenset({'lives_in', 'works_at', 'favorite_color_is'}), ingest_workers=4)


@pytest.fixture
def retrieval_config():
    return RetrievalConfig(default_k=10, vector_top_k=20, graph_top_k=20, max_hops=1, vector_weight=0.7, graph_weight=0.3)


@pytest.fixture
def store(neptune, opensearch):
    return FactStore(neptune, opensearch)


@pytest.fixture
def extraction(llm):
    return ExtractionService(llm, ExtractionConfig(parse_attempts=3))


@pytest.fixture
def resolver(store, embed, memory_config):
    return MergeResolver(store, embed, memory_config)


@pytest.fixture
def retriever(store, embed, retrieval_config):
    return HybridRetriever(store, embed, retrieval_config)
