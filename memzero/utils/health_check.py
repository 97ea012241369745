"""
Health check utilities for the memory engine's external collaborators.
"""

from typing import Any, Callable, Dict

from .bedrock_embed import BedrockEmbed
from .bedrock_llm import BedrockLLM
from .config import config
from .logging_config import get_logger
from .neptune_client import NeptuneClient
from .opensearch_client import OpenSearchClient

logger = get_logger(__name__)


def _status(service: str, detail: Dict[str, Any], client: Any) -> Dict[str, Any]:
    try:
        healthy = client.health_check()
    except Exception as e:
        logger.warning(f'{service} health check raised: {e}')
        return {'healthy': False, 'service': service, 'error': str(e)}
    return {'healthy': bool(healthy), 'service': service, **detail}


def _built_status(service: str, detail: Dict[str, Any], build: Callable[[], Any]) -> Dict[str, Any]:
    """Build a client and run its health check, reporting construction errors as unhealthy."""
    try:
        client = build()
    except Exception as e:
        logger.warning(f'{service} client construction failed: {e}')
        return {'healthy': False, 'service': service, 'error': str(e)}
    try:
        return _status(service, detail, client)
    finally:
        if hasattr(client, 'close'):
            client.close()


def components_status(llm: Any, embed: Any, neptune: Any, opensearch: Any) -> Dict[str, Any]:
    """Health of already-built clients, keyed like `get_health_status`. Clients are left open."""
    return {
        'bedrock_llm': _status('Amazon Bedrock LLM', {}, llm),
        'bedrock_embed': _status('Amazon Bedrock Embed', {}, embed),
        'neptune': _status('Amazon Neptune', {}, neptune),
        'opensearch': _status('Amazon OpenSearch', {}, opensearch),
    }


def get_health_status() -> Dict[str, Any]:
    """Get detailed health status of all components.

    Returns:
        Dictionary with health status of each component
    """
    return {
        'bedrock_llm':
            _built_status('Amazon Bedrock LLM', {'model': config.bedrock_llm.model_id}, lambda: BedrockLLM(config.bedrock_llm)),
        'bedrock_embed':
            _built_status('Amazon Bedrock Embed', {'model': config.bedrock_embed.model_id}, lambda: BedrockEmbed(config.bedrock_embed)),
        'neptune':
            _built_status('Amazon Neptune', {'endpoint': config.neptune.endpoint}, lambda: NeptuneClient(config.neptune)),
        'opensearch':
            _built_status('Amazon OpenSearch', {'endpoint': config.opensearch.endpoint}, lambda: OpenSearchClient(config.opensearch)),
    }


def check_health() -> bool:
    """Check the health of all system components.

    Returns:
        True if all components are healthy, False otherwise
    """
    health_status = get_health_status()
    all_healthy = all(status.get('healthy', False) for status in health_status.values())

    if all_healthy:
        logger.info('All system components are healthy')
    else:
        unhealthy = [name for name, status in health_status.items() if not status.get('healthy', False)]
        logger.warning(f'Unhealthy components: {", ".join(unhealthy)}')

    return all_healthy


def get_system_info() -> Dict[str, Any]:
    """Get system information and configuration.

    Returns:
        Dictionary with system information
    """
    return {
        'service_name': 'memzero',
        'version': '0.1.0',
        'configuration': {
            'bedrock_llm_model': config.bedrock_llm.model_id,
            'bedrock_embed_model': config.bedrock_embed.model_id,
            'functional_predicates': sorted(config.memory.functional_predicates),
            'retrieval_weights': {
                'vector': config.retrieval.vector_weight,
                'graph': config.retrieval.graph_weight
            },
            'aws_region': config.bedrock_llm.region
        },
        'health_status': get_health_status()
    }
