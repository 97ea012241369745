"""
Configuration management for AWS services and memory engine settings.
"""

import os
from dataclasses import dataclass, field
from typing import FrozenSet

from dotenv import load_dotenv

from ..models.core import normalize_predicate

load_dotenv()

DEFAULT_FUNCTIONAL_PREDICATES = ','.join([
    'lives_in',
    'works_at',
    'works_as',
    'name_is',
    'age_is',
    'born_in',
    'born_on',
    'married_to',
    'nationality_is',
    'favorite_color_is',
])


@dataclass
class BedrockLLMConfig:
    """Configuration for Amazon Bedrock LLM service."""
    region: str
    model_id: str
    max_tokens: int
    temperature: float
    retry_attempts: int
    retry_delay: float
    timeout: float


@dataclass
class BedrockEmbedConfig:
    """Configuration for Amazon Bedrock Embed service."""
    region: str
    model_id: str
    dimension: int
    retry_attempts: int
    retry_delay: float
    timeout: float


@dataclass
class NeptuneConfig:
    """Configuration for Amazon Neptune graph database."""
    endpoint: str
    port: int
    region: str
    timeout: float
    retry_attempts: int
    retry_delay: float


@dataclass
class OpenSearchConfig:
    """Configuration for OpenSearch."""
    endpoint: str
    port: int
    region: str
    service: str  # SigV4 service name: 'es' for managed domains
    index_name: str
    dimension: int
    timeout: float
    retry_attempts: int
    retry_delay: float


@dataclass
class ExtractionConfig:
    """Configuration for LLM fact extraction."""
    parse_attempts: int


@dataclass
class MemoryConfig:
    """Configuration for merge and ingest behavior."""
    functional_predicates: FrozenSet[str] = field(default_factory=frozenset)
    ingest_workers: int = 4


@dataclass
class RetrievalConfig:
    """Configuration for hybrid retrieval. Weights are fixed per deployment, not per call."""
    default_k: int
    vector_top_k: int
    graph_top_k: int
    max_hops: int
    vector_weight: float
    graph_weight: float


@dataclass
class AppConfig:
    """Main application configuration."""
    environment: str
    log_level: str
    bedrock_llm: BedrockLLMConfig
    bedrock_embed: BedrockEmbedConfig
    neptune: NeptuneConfig
    opensearch: OpenSearchConfig
    extraction: ExtractionConfig
    memory: MemoryConfig
    retrieval: RetrievalConfig


def parse_predicate_list(raw: str) -> FrozenSet[str]:
    """Parse a comma separated predicate list into normalized predicate names.

    Args:
        raw: Comma separated predicates, e.g. "lives_in, works at, works-for"

    Returns:
        Frozen set of snake_case predicates
    """
    predicates = set()
    for item in raw.split(','):
        item = normalize_predicate(item)
        if item:
            predicates.add(item)
    return frozenset(predicates)


def load_config() -> AppConfig:
    """Load configuration from environment variables with defaults."""
    environment = os.getenv('ENVIRONMENT', 'development')

    # Bedrock configuration
    bedrock_llm_config = BedrockLLMConfig(region=os.getenv('BEDROCK_LLM_AWS_REGION', 'us-east-1'),
                                          model_id=os.getenv('BEDROCK_LLM_MODEL_ID', 'anthropic.claude-3-sonnet-20240229-v1:0'),
                                          max_tokens=int(os.getenv('BEDROCK_LLM_MAX_TOKENS', '4096')),
                                          temperature=float(os.getenv('BEDROCK_LLM_TEMPERATURE', '0.0')),
                                          retry_attempts=int(os.getenv('BEDROCK_LLM_RETRY_ATTEMPTS', '3')),
                                          retry_delay=float(os.getenv('BEDROCK_LLM_RETRY_DELAY', '1.0')),
                                          timeout=float(os.getenv('BEDROCK_LLM_TIMEOUT', '60')))

    # Bedrock Embed configuration
    bedrock_embed_config = BedrockEmbedConfig(region=os.getenv('BEDROCK_EMBED_AWS_REGION', 'us-east-1'),
                                              model_id=os.getenv('BEDROCK_EMBED_MODEL_ID', 'amazon.titan-embed-text-v2:0'),
                                              dimension=int(os.getenv('BEDROCK_EMBED_DIMENSION', '1024')),
                                              retry_attempts=int(os.getenv('BEDROCK_EMBED_RETRY_ATTEMPTS', '3')),
                                              retry_delay=float(os.getenv('BEDROCK_EMBED_RETRY_DELAY', '1.0')),
                                              timeout=float(os.getenv('BEDROCK_EMBED_TIMEOUT', '10')))

    # Neptune configuration
    neptune_config = NeptuneConfig(endpoint=os.getenv('NEPTUNE_ENDPOINT', 'localhost'),
                                   port=int(os.getenv('NEPTUNE_PORT', '8182')),
                                   region=os.getenv('NEPTUNE_AWS_REGION', 'us-east-1'),
                                   timeout=float(os.getenv('NEPTUNE_TIMEOUT', '10')),
                                   retry_attempts=int(os.getenv('NEPTUNE_RETRY_ATTEMPTS', '3')),
                                   retry_delay=float(os.getenv('NEPTUNE_RETRY_DELAY', '0.5')))

    # Vector search configuration
    opensearch_config = OpenSearchConfig(endpoint=os.getenv('OPENSEARCH_ENDPOINT', 'localhost'),
                                         port=int(os.getenv('OPENSEARCH_PORT', '443')),
                                         region=os.getenv('OPENSEARCH_AWS_REGION', 'us-east-1'),
                                         service=os.getenv('OPENSEARCH_SERVICE', 'es'),
                                         index_name=os.getenv('OPENSEARCH_INDEX', 'memory_embeddings'),
                                         dimension=int(os.getenv('OPENSEARCH_DIMENSION', '1024')),
                                         timeout=float(os.getenv('OPENSEARCH_TIMEOUT', '10')),
                                         retry_attempts=int(os.getenv('OPENSEARCH_RETRY_ATTEMPTS', '3')),
                                         retry_delay=float(os.getenv('OPENSEARCH_RETRY_DELAY', '0.5')))

    extraction_config = ExtractionConfig(parse_attempts=int(os.getenv('EXTRACTION_PARSE_ATTEMPTS', '3')))

    # Memory configuration
    memory_config = MemoryConfig(functional_predicates=parse_predicate_list(
        os.getenv('MEMORY_FUNCTIONAL_PREDICATES', DEFAULT_FUNCTIONAL_PREDICATES)),
                                 ingest_workers=int(os.getenv('MEMORY_INGEST_WORKERS', '4')))

    retrieval_config = RetrievalConfig(default_k=int(os.getenv('RETRIEVAL_DEFAULT_K', '10')),
                                       vector_top_k=int(os.getenv('RETRIEVAL_VECTOR_TOP_K', '20')),
                                       graph_top_k=int(os.getenv('RETRIEVAL_GRAPH_TOP_K', '20')),
                                       max_hops=int(os.getenv('RETRIEVAL_MAX_HOPS', '1')),
                                       vector_weight=float(os.getenv('RETRIEVAL_VECTOR_WEIGHT', '0.7')),
                                       graph_weight=float(os.getenv('RETRIEVAL_GRAPH_WEIGHT', '0.3')))

    return AppConfig(environment=environment,
                     log_level=os.getenv('LOG_LEVEL', 'INFO'),
                     bedrock_llm=bedrock_llm_config,
                     bedrock_embed=bedrock_embed_config,
                     neptune=neptune_config,
                     opensearch=opensearch_config,
                     extraction=extraction_config,
                     memory=memory_config,
                     retrieval=retrieval_config)


# Global configuration instance
config = load_config()
