"""
Fact extraction service: turns a window of conversation turns into candidate facts.
"""

import json
from numbers import Real
from typing import Any, List, Optional, Sequence

from ..exceptions import ExtractionParseError
from ..models.core import DEFAULT_ENTITY_TYPE, CandidateFact, Scope, Turn
from ..utils.bedrock_llm import BedrockLLM
from ..utils.config import ExtractionConfig, config
from ..utils.json_utils import load_llm_json
from ..utils.logging_config import get_logger

logger = get_logger(__name__)

EXTRACTABLE_ROLES = ('user', 'assistant')

ENTITY_TYPES = 'person|place|organization|concept|event|object|activity|literal'

SYSTEM_PROMPT = """
You are an expert relationship extraction system. Extract facts from the conversation as subject-predicate-object triples.

Guidelines:
- Only extract facts that are explicitly stated. Do not infer or assume facts.
- Use short, timeless predicates in snake_case, such as lives_in, works_at, likes, has_pet, favorite_color_is.
- Express state changes as the new state: "I moved to Paris" becomes lives_in paris.
- When a turn explicitly says a relationship no longer holds ("I don't like blue anymore"), extract that relationship
  with "negated": true. Do not mark a fact negated just because a different value is mentioned.
- Use the entity's name as it appears in the conversation for subject and object.

Special handling for pronouns:
- If USER content contains self reference such as 'I', 'me', 'my' etc. then use "{self_reference}" as the entity
- If ASSISTANT content contains self reference such as 'I', 'me', 'my' etc. IGNORE

Entity types: {entity_types}. Use "literal" for values such as colors, numbers, dates.

Return a JSON object with this exact format:
```json
{{
  "facts": [
    {{
      "subject": "subject entity name",
      "subject_type": "person",
      "predicate": "relationship_name",
      "object": "object entity name or value",
      "object_type": "place",
      "confidence": 0.95,
      "turn": 0,
      "negated": false
    }}
  ]
}}
```

"turn" is the number of the turn the fact was stated in. "negated" is optional and defaults to false.
Confidence should be between 0.0 and 1.0.
Return {{"facts": []}} if no facts are found."""


def render_turns(turns: Sequence[Turn]) -> str:
    """Render user/assistant turns as numbered blocks, skipping blank content.

    Args:
        turns: Conversation window, oldest first

    Returns:
        Prompt text; empty string if nothing is renderable
    """
    blocks = []
    for index, turn in enumerate(turns):
        if turn.role in EXTRACTABLE_ROLES and turn.content and turn.content.strip():
            blocks.append(f'{turn.role.capitalize()} [{index}]:\n{turn.content.strip()}')
    return '\n\n'.join(blocks)


def _require_text(item: dict, key: str, position: int) -> str:
    value = item.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ExtractionParseError(f"Fact {position}: '{key}' must be a non-empty string", {'value': value})
    return ' '.join(value.split())


def _optional_type(item: dict, key: str, position: int) -> str:
    value = item.get(key)
    if value is None:
        return DEFAULT_ENTITY_TYPE
    if not isinstance(value, str):
        raise ExtractionParseError(f"Fact {position}: '{key}' must be a string", {'value': value})
    return value.strip() or DEFAULT_ENTITY_TYPE


def parse_candidates(payload: Any, turn_count: int) -> List[CandidateFact]:
    """Validate a decoded extraction response against the fact schema.

    Nothing is coerced: any violation rejects the whole response.

    Args:
        payload: Decoded JSON value
        turn_count: Number of turns in the window, bounds the optional 'turn' index

    Returns:
        Candidate facts in response order

    Raises:
        ExtractionParseError: If the payload does not match the schema
    """
    if not isinstance(payload, dict) or 'facts' not in payload:
        raise ExtractionParseError('Expected a JSON object with a "facts" list', {'got': type(payload).__name__})
    items = payload['facts']
    if not isinstance(items, list):
        raise ExtractionParseError('"facts" must be a list', {'got': type(items).__name__})

    candidates = []
    for position, item in enumerate(items):
        if not isinstance(item, dict):
            raise ExtractionParseError(f'Fact {position} must be an object', {'got': type(item).__name__})

        confidence = item.get('confidence')
        if isinstance(confidence, bool) or not isinstance(confidence, Real):
            raise ExtractionParseError(f"Fact {position}: 'confidence' must be a number", {'value': confidence})
        if not 0.0 <= confidence <= 1.0:
            raise ExtractionParseError(f"Fact {position}: 'confidence' out of range [0, 1]", {'value': confidence})

        turn_index = item.get('turn')
        if turn_index is not None:
            if isinstance(turn_index, bool) or not isinstance(turn_index, int) or not 0 <= turn_index < turn_count:
                raise ExtractionParseError(f"Fact {position}: 'turn' must be a turn index", {'value': turn_index})

        negated = item.get('negated', False)
        if not isinstance(negated, bool):
            raise ExtractionParseError(f"Fact {position}: 'negated' must be a boolean", {'value': negated})

        candidates.append(
            CandidateFact(subject=_require_text(item, 'subject', position),
                          predicate=_require_text(item, 'predicate', position),
                          object=_require_text(item, 'object', position),
                          confidence=float(confidence),
                          subject_type=_optional_type(item, 'subject_type', position),
                          object_type=_optional_type(item, 'object_type', position),
                          turn_index=turn_index,
                          negated=negated))
    return candidates


class ExtractionService:
    """Extract candidate facts from conversation turns using a Bedrock LLM."""

    def __init__(self, llm: Optional[BedrockLLM] = None, extraction_config: Optional[ExtractionConfig] = None):
        """Initialize the extraction service.

        Args:
            llm: LLM client, built from the global config if None
            extraction_config: ExtractionConfig instance, uses default if None
        """
        self.llm = llm or BedrockLLM(config.bedrock_llm)
        self.config = extraction_config or config.extraction

        logger.info('Initialized ExtractionService')

    def extract(self, scope: Scope, turns: Sequence[Turn]) -> List[CandidateFact]:
        """Extract candidate facts from a bounded window of turns.

        The output is approximate: candidates carry no correctness guarantee and
        are reconciled against stored memory by the merge step.

        Args:
            scope: Scope the turns belong to
            turns: Conversation window, oldest first

        Returns:
            Candidate facts; empty list if the turns carry no extractable knowledge

        Raises:
            ExtractionParseError: If every parse attempt produced malformed output
            LLMProviderError: If the LLM call fails after transport retries
        """
        if not turns:
            logger.warning('Empty turns provided for extraction')
            return []

        content = render_turns(turns)
        if not content:
            logger.debug('No content found for extraction')
            return []

        system_prompt = SYSTEM_PROMPT.format(self_reference=scope.self_reference, entity_types=ENTITY_TYPES)
        llm_messages = [{
            'role': 'user',
            'content': [{
                'text': f'Extract facts from the conversation:\n{content}'
            }]
        }, {
            'role': 'assistant',
            'content': [{
                'text': '```json'
            }]
        }]

        attempts = max(1, self.config.parse_attempts)
        last_error = None
        for attempt in range(attempts):
            response, _ = self.llm.generate_response(messages=llm_messages, system_prompt=system_prompt, stop_sequences=['```'])
            try:
                candidates = parse_candidates(load_llm_json(response), len(turns))
            except json.JSONDecodeError as e:
                last_error = ExtractionParseError(f'Malformed extraction JSON: {e}', {'scope': scope.tag})
            except ExtractionParseError as e:
                last_error = e
            else:
                logger.debug(f'Extracted {len(candidates)} candidate facts for scope {scope.tag}')
                return candidates

            logger.warning(f'Extraction parse attempt {attempt + 1}/{attempts} failed for scope {scope.tag}: {last_error}')

        logger.error(f'Extraction failed after {attempts} parse attempts for scope {scope.tag}')
        raise ExtractionParseError(f'Extraction output malformed after {attempts} attempts: {last_error.message}', {
            'scope': scope.tag,
            'attempts': attempts
        })
