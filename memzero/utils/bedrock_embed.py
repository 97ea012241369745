"""
Amazon Bedrock embedding client wrapper with retry logic and error handling.
"""

import json
import time
from typing import Any, List

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from ..exceptions import EmbeddingFailure
from .bedrock_llm import backoff_delay, is_retryable
from .config import BedrockEmbedConfig
from .logging_config import get_logger

logger = get_logger(__name__)


class BedrockEmbed:
    """Amazon Bedrock embedding client. Stateless request/response over invoke_model."""

    def __init__(self, config: BedrockEmbedConfig, client: Any = None):
        """
        Initialize Bedrock embedding client.

        Args:
            config: BedrockEmbedConfig instance with connection parameters
            client: Optional pre-built bedrock-runtime client
        """
        self.config = config
        self.model_id = config.model_id
        self.output_embedding_length = config.dimension

        if 'cohere' in self.model_id.lower() and self.output_embedding_length != 1024:
            raise EmbeddingFailure(f'Cohere models only support 1024 dimensions, got {self.output_embedding_length}')
        if 'titan' not in self.model_id.lower() and 'cohere' not in self.model_id.lower():
            raise EmbeddingFailure(f'Unsupported embedding model: {self.model_id}')

        self.bedrock = client or boto3.client(service_name='bedrock-runtime',
                                              region_name=config.region,
                                              config=BotoConfig(connect_timeout=config.timeout,
                                                                read_timeout=config.timeout,
                                                                retries={'max_attempts': 0}))

        logger.info(f'Initialized Bedrock Embed client with model: {self.model_id}')

    def _call_with_retry(self, data: dict) -> dict:
        """
        Make a Bedrock API call with retry logic.

        Args:
            data: Request data dictionary

        Returns:
            Response dictionary from Bedrock API

        Raises:
            EmbeddingFailure: If the request is rejected or all retry attempts fail
        """
        body = json.dumps(data)

        for attempt in range(self.config.retry_attempts):
            try:
                logger.debug(f'Bedrock Embed request attempt {attempt + 1}/{self.config.retry_attempts}')
                response = self.bedrock.invoke_model(body=body,
                                                     modelId=self.model_id,
                                                     accept='application/json',
                                                     contentType='application/json')
                return json.loads(response.get('body').read())

            except (ClientError, BotoCoreError) as e:
                if not is_retryable(e):
                    logger.error(f'Bedrock Embed request rejected: {e}')
                    raise EmbeddingFailure(f'Bedrock Embed request rejected: {e}', {'model': self.model_id})

                logger.warning(f'Bedrock Embed attempt {attempt + 1}/{self.config.retry_attempts} failed: {e}')
                if attempt < self.config.retry_attempts - 1:
                    time.sleep(backoff_delay(self.config.retry_delay, attempt))
                else:
                    raise EmbeddingFailure(f'Bedrock Embed failed after {self.config.retry_attempts} attempts: {e}',
                                           {'model': self.model_id})

            except json.JSONDecodeError as e:
                raise EmbeddingFailure(f'Malformed Bedrock Embed response: {e}', {'model': self.model_id})

        raise EmbeddingFailure(f'Bedrock Embed failed after {self.config.retry_attempts} attempts')

    def _embed(self, text: str, input_type: str) -> List[float]:
        if not text or not text.strip():
            raise EmbeddingFailure('Empty text provided for embedding')

        if 'titan' in self.model_id.lower():
            response = self._call_with_retry({'inputText': text, 'dimensions': self.output_embedding_length})
            embedding = response.get('embedding')
        else:
            response = self._call_with_retry({'input_type': input_type, 'texts': [text]})
            embeddings = response.get('embeddings') or [None]
            embedding = embeddings[0]

        if not isinstance(embedding, list) or len(embedding) != self.output_embedding_length:
            got = len(embedding) if isinstance(embedding, list) else type(embedding).__name__
            raise EmbeddingFailure(f'Malformed embedding: expected {self.output_embedding_length} floats, got {got}',
                                   {'model': self.model_id})
        try:
            return [float(value) for value in embedding]
        except (TypeError, ValueError) as e:
            raise EmbeddingFailure(f'Malformed embedding: non-numeric value: {e}', {'model': self.model_id})

    def embed_document(self, text: str) -> List[float]:
        """
        Generate the embedding stored for a fact statement.

        Args:
            text: Text to embed

        Returns:
            List of embedding values

        Raises:
            EmbeddingFailure: If embedding generation fails
        """
        return self._embed(text, 'search_document')

    def embed_query(self, text: str) -> List[float]:
        """
        Generate the embedding used to search fact statements.

        Args:
            text: Query text to embed

        Returns:
            List of embedding values

        Raises:
            EmbeddingFailure: If embedding generation fails
        """
        return self._embed(text, 'search_query')

    def health_check(self) -> bool:
        """
        Perform a health check on the Bedrock embedding service.

        Returns:
            True if service is healthy, False otherwise
        """
        try:
            return len(self.embed_document('test')) == self.output_embedding_length
        except EmbeddingFailure as e:
            logger.error(f'Bedrock Embed health check failed: {e}')
            return False
