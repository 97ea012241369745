"""
JSON utilities for LLM responses.
"""

import json
from typing import Any


def clean_json_response(response: str) -> str:
    """Strip code fence markers an LLM wraps around JSON.

    Args:
        response: Raw LLM response

    Returns:
        Cleaned JSON string
    """
    response = response.strip()

    if response.startswith('```json'):
        response = response[7:]
    elif response.startswith('```'):
        response = response[3:]

    if response.endswith('```'):
        response = response[:-3]

    return response.strip()


def load_llm_json(response: str) -> Any:
    """Clean and decode an LLM JSON response.

    Args:
        response: Raw LLM response

    Returns:
        Decoded JSON value

    Raises:
        json.JSONDecodeError: If the cleaned response is not valid JSON
    """
    return json.loads(clean_json_response(response))
