"""
Amazon Bedrock LLM client wrapper with retry logic and error handling.
"""

import random
import time
from typing import Any, Dict, List, Optional, Tuple

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from ..exceptions import LLMProviderError
from .config import BedrockLLMConfig
from .logging_config import get_logger

logger = get_logger(__name__)

# Bedrock error codes that are worth another attempt.
RETRYABLE_ERROR_CODES = frozenset({
    'ThrottlingException',
    'ServiceUnavailableException',
    'ModelNotReadyException',
    'ModelTimeoutException',
    'InternalServerException',
})


def is_retryable(error: Exception) -> bool:
    """Whether a boto error is transient (throttling, timeout, connection loss)."""
    if isinstance(error, ClientError):
        return error.response.get('Error', {}).get('Code') in RETRYABLE_ERROR_CODES
    return isinstance(error, BotoCoreError)


def backoff_delay(base_delay: float, attempt: int) -> float:
    """Exponential backoff with jitter."""
    return base_delay * (2**attempt) + random.uniform(0, base_delay)


class BedrockLLM:
    """Amazon Bedrock LLM client with retry logic and error handling."""

    def __init__(self, config: BedrockLLMConfig, client: Any = None):
        """
        Initialize Bedrock LLM client.

        Args:
            config: BedrockLLMConfig instance with connection parameters
            client: Optional pre-built bedrock-runtime client
        """
        self.config = config
        self.model_id = config.model_id

        self.bedrock_runtime = client or boto3.client('bedrock-runtime',
                                                      region_name=config.region,
                                                      config=BotoConfig(
                                                          connect_timeout=config.timeout,
                                                          read_timeout=config.timeout,
                                                          retries={'max_attempts': 0}  # We handle retries manually
                                                      ))

        logger.info(f'Initialized Bedrock LLM client with model: {self.model_id}')

    def generate_response(self,
                          messages: List[Dict[str, Any]],
                          system_prompt: str,
                          max_tokens: Optional[int] = None,
                          temperature: Optional[float] = None,
                          stop_sequences: Optional[List[str]] = None) -> Tuple[str, Optional[Dict[str, Any]]]:
        """
        Generate a response using the Bedrock Converse stream API.

        Args:
            messages: List of message dictionaries in Bedrock format
            system_prompt: System prompt for the conversation
            max_tokens: Maximum tokens to generate (uses config default if None)
            temperature: Temperature for generation (uses config default if None)
            stop_sequences: Stop sequences for generation

        Returns:
            Tuple of (response_text, invoke_metrics)

        Raises:
            LLMProviderError: If the call fails or all retry attempts are exhausted
        """
        inf_params = {
            'maxTokens': max_tokens or self.config.max_tokens,
            'temperature': self.config.temperature if temperature is None else temperature,
            'stopSequences': stop_sequences or [],
        }
        system = [{'text': system_prompt}]

        for attempt in range(self.config.retry_attempts):
            try:
                logger.debug(f'Bedrock LLM request attempt {attempt + 1}/{self.config.retry_attempts}')

                stream = self.bedrock_runtime.converse_stream(modelId=self.model_id,
                                                              messages=messages,
                                                              system=system,
                                                              inferenceConfig=inf_params).get('stream')

                msg = ''
                invoke_metrics = None
                if stream:
                    for event in stream:
                        if 'contentBlockDelta' in event:
                            msg += event['contentBlockDelta']['delta']['text']
                        if 'metadata' in event:
                            invoke_metrics = {**event['metadata'].get('usage', {}), **event['metadata'].get('metrics', {})}

                logger.debug(f'Bedrock LLM response generated successfully (length: {len(msg)})')
                return msg, invoke_metrics

            except (ClientError, BotoCoreError) as e:
                if not is_retryable(e):
                    logger.error(f'Bedrock LLM request rejected: {e}')
                    raise LLMProviderError(f'Bedrock LLM request rejected: {e}', {'model': self.model_id})

                logger.warning(f'Bedrock LLM attempt {attempt + 1}/{self.config.retry_attempts} failed: {e}')
                if attempt < self.config.retry_attempts - 1:
                    time.sleep(backoff_delay(self.config.retry_delay, attempt))
                else:
                    raise LLMProviderError(f'Bedrock LLM failed after {self.config.retry_attempts} attempts: {e}',
                                           {'model': self.model_id})

        raise LLMProviderError(f'Bedrock LLM failed after {self.config.retry_attempts} attempts')

    def health_check(self) -> bool:
        """
        Perform a health check on the Bedrock LLM service.

        Returns:
            True if service is healthy, False otherwise
        """
        try:
            test_messages = [{'role': 'user', 'content': [{'text': 'Hi'}]}]
            response, _ = self.generate_response(messages=test_messages,
                                                 system_prompt="You are a helpful assistant. Respond with just 'OK'.",
                                                 max_tokens=10,
                                                 temperature=0.0)
            return len(response.strip()) > 0

        except LLMProviderError as e:
            logger.error(f'Bedrock LLM health check failed: {e}')
            return False
