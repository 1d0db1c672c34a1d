"""
Entity extraction pipeline: one LLM call per memory, strict validation of its output,
and the background job that writes the extracted graph.
"""

import logging
import uuid
from typing import Any, Dict, List, Optional

from ..models.core import ExtractedEntity, ExtractedRelationship, ExtractedTag, ExtractionOutcome, ExtractionResult
from ..models.schema import (ALLOWED_RELATIONSHIP_TYPES, DEFAULT_ENTITY_TYPE, ENTITY_TYPES, EXTRACTION_COMPLETE,
                             EXTRACTION_FAILED, EXTRACTION_SKIPPED, MEMORY_CATEGORIES)
from ..utils.bedrock_llm import BedrockLLMError
from ..utils.config import ExtractionConfig
from ..utils.json_utils import parse_json_object
from ..utils.logging_config import get_logger

logger = get_logger(__name__)

DEFAULT_RELATIONSHIP_CONFIDENCE = 0.7
DEFAULT_TAG_CATEGORY = 'topic'

EXTRACTION_SYSTEM_PROMPT = """
You are an entity extraction system for a personal memory store.
Extract entities, relationships and tags from the memory text, and classify the memory as a whole.

Return a JSON object with this exact format:
```json
{
  "category": "preference|fact|decision|entity|other",
  "entities": [
    {"name": "tarun", "type": "person", "aliases": ["boss"], "description": "brief description"}
  ],
  "relationships": [
    {"source": "tarun", "target": "abundent", "type": "WORKS_AT", "confidence": 0.95}
  ],
  "tags": [
    {"name": "neo4j", "category": "technology"}
  ]
}
```

Rules:
- Normalize entity names to lowercase
- Entity types: person, organization, location, event, concept
- Relationship types: WORKS_AT, LIVES_AT, KNOWS, MARRIED_TO, PREFERS, DECIDED, RELATED_TO
- Confidence: 0.0-1.0
- Only extract what's explicitly stated or strongly implied
- Return empty arrays if nothing to extract
- Keep entity descriptions brief (1 sentence max)"""


class EntityExtractionError(Exception):
    """Custom exception for entity extraction errors."""
    pass


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def validate_extraction_result(raw: Dict[str, Any]) -> ExtractionResult:
    """
    Validate and sanitize raw LLM extraction output.

    Each array is validated independently; invalid items are dropped.

    Args:
        raw: Parsed JSON object from the LLM

    Returns:
        ExtractionResult holding only well-formed items

    Raises:
        EntityExtractionError: If the output is not a JSON object
    """
    if not isinstance(raw, dict):
        raise EntityExtractionError(f'Expected JSON object, got {type(raw).__name__}')

    entities_raw = raw.get('entities') if isinstance(raw.get('entities'), list) else []
    relationships_raw = raw.get('relationships') if isinstance(raw.get('relationships'), list) else []
    tags_raw = raw.get('tags') if isinstance(raw.get('tags'), list) else []

    entities = []
    for item in entities_raw:
        if not isinstance(item, dict) or not isinstance(item.get('name'), str) or not isinstance(item.get('type'), str):
            continue
        name = item['name'].strip().lower()
        if not name:
            continue
        aliases = None
        if isinstance(item.get('aliases'), list):
            aliases = [a.strip().lower() for a in item['aliases'] if isinstance(a, str)]
        entities.append(
            ExtractedEntity(name=name,
                            type=item['type'] if item['type'] in ENTITY_TYPES else DEFAULT_ENTITY_TYPE,
                            aliases=aliases,
                            description=item['description'] if isinstance(item.get('description'), str) else None))

    relationships = []
    for item in relationships_raw:
        if not isinstance(item, dict):
            continue
        source, target, rel_type = item.get('source'), item.get('target'), item.get('type')
        if not all(isinstance(v, str) for v in (source, target, rel_type)):
            continue
        # Unknown types are dropped, never coerced
        if rel_type not in ALLOWED_RELATIONSHIP_TYPES:
            continue
        confidence = item.get('confidence')
        confidence = min(1.0, max(0.0, float(confidence))) if _is_number(confidence) else DEFAULT_RELATIONSHIP_CONFIDENCE
        relationships.append(
            ExtractedRelationship(source=source.strip().lower(),
                                  target=target.strip().lower(),
                                  type=rel_type,
                                  confidence=confidence))

    tags = []
    for item in tags_raw:
        if not isinstance(item, dict) or not isinstance(item.get('name'), str):
            continue
        name = item['name'].strip().lower()
        if not name:
            continue
        category = item['category'] if isinstance(item.get('category'), str) else DEFAULT_TAG_CATEGORY
        tags.append(ExtractedTag(name=name, category=category))

    category = raw.get('category')
    return ExtractionResult(entities=entities,
                            relationships=relationships,
                            tags=tags,
                            category=category if category in MEMORY_CATEGORIES else None)


def extract_entities(text: str, llm, config: ExtractionConfig) -> ExtractionOutcome:
    """
    Extract entities, relationships, tags and a category from a memory text.

    The LLM is called once; this function never loops on failure.

    Args:
        text: Memory text
        llm: LLM provider exposing ``complete(system_prompt, messages)``
        config: Extraction configuration

    Returns:
        ExtractionOutcome; ``result`` is None on any failure and
        ``transient_failure`` is set only for network, 5xx or timeout errors
    """
    if not config.enabled:
        return ExtractionOutcome(result=None)

    llm_messages = [{
        'role': 'user',
        'content': [{
            'text': f'Extract entities and relationships from this memory:\n"{text}"'
        }]
    }, {
        'role': 'assistant',
        'content': [{
            'text': '```json'
        }]
    }]

    try:
        response = llm.complete(EXTRACTION_SYSTEM_PROMPT, llm_messages, stop_sequences=['```'])
    except BedrockLLMError as e:
        logger.warning(f'LLM error during entity extraction (transient={e.transient}): {e}')
        return ExtractionOutcome(result=None, transient_failure=e.transient)
    except Exception as e:
        logger.error(f'Unexpected error during entity extraction: {e}')
        return ExtractionOutcome(result=None)

    if not response or not response.strip():
        logger.debug('Empty LLM response for entity extraction')
        return ExtractionOutcome(result=None)

    try:
        return ExtractionOutcome(result=validate_extraction_result(parse_json_object(response)))
    except EntityExtractionError as e:
        logger.warning(f'Failed to parse entity extraction JSON: {e}')
        return ExtractionOutcome(result=None)


def _mark(store, memory_id: str, status: str, log: logging.Logger) -> Optional[str]:
    """Write the extraction status; None when the write itself failed."""
    try:
        store.update_extraction_status(memory_id, status)
    except Exception as e:
        log.warning(f'Could not mark memory {memory_id[:8]} as {status}: {e}')
        return None
    return status


def run_background_extraction(memory_id: str,
                              text: str,
                              store,
                              embeddings,
                              llm,
                              config: ExtractionConfig,
                              log: Optional[logging.Logger] = None) -> Optional[str]:
    """
    Extract and persist the graph for one stored memory.

    Meant to run detached; errors are logged and recorded as the memory's
    extraction status, never raised.

    Flow:
    1. Call the LLM to extract entities, relationships and tags
    2. MERGE Entity nodes and create MENTIONS edges
    3. Create Entity->Entity relationships
    4. Tag the memory and apply the returned category
    5. Mark the memory complete (or failed/skipped)

    Returns:
        The final extraction status written for the memory, or None if
        that status could not be written
    """
    log = log or logger

    if not config.enabled:
        return _mark(store, memory_id, EXTRACTION_SKIPPED, log)

    try:
        outcome = extract_entities(text, llm, config)
        result = outcome.result

        if result is None:
            return _mark(store, memory_id, EXTRACTION_FAILED, log)

        # Empty extraction is valid: not every memory names an entity
        if result.is_empty():
            if result.category:
                store.update_memory_category(memory_id, result.category)
            return _mark(store, memory_id, EXTRACTION_COMPLETE, log)

        entity_embeddings: Dict[str, List[float]] = {}
        if result.entities:
            names = [e.name for e in result.entities]
            try:
                entity_embeddings = dict(zip(names, embeddings.embed_batch(names)))
            except Exception as e:
                log.debug(f'Entity embedding generation failed: {e}')

        for entity in result.entities:
            try:
                store.merge_entity(name=entity.name,
                                   entity_type=entity.type,
                                   entity_id=str(uuid.uuid4()),
                                   aliases=entity.aliases,
                                   description=entity.description,
                                   embedding=entity_embeddings.get(entity.name))
                store.create_mentions(memory_id, entity.name, 'context', 1.0)
            except Exception as e:
                log.warning(f"Entity merge failed for '{entity.name}': {e}")

        for rel in result.relationships:
            try:
                store.create_entity_relationship(rel.source, rel.target, rel.type, rel.confidence)
            except Exception as e:
                log.debug(f'Relationship creation failed: {rel.source}->{rel.target}: {e}')

        for tag in result.tags:
            try:
                store.tag_memory(memory_id, tag.name, tag.category)
            except Exception as e:
                log.debug(f"Tagging failed for '{tag.name}': {e}")

        if result.category:
            try:
                store.update_memory_category(memory_id, result.category)
            except Exception as e:
                log.debug(f'Category update failed for {memory_id[:8]}: {e}')

        status = _mark(store, memory_id, EXTRACTION_COMPLETE, log)
        log.info(f'Extraction complete for {memory_id[:8]}: {len(result.entities)} entities, '
                 f'{len(result.relationships)} rels, {len(result.tags)} tags')
        return status

    except Exception as e:
        log.warning(f'Extraction failed for {memory_id[:8]}: {e}')
        return _mark(store, memory_id, EXTRACTION_FAILED, log)


def _message_text(content: Any) -> str:
    """Flatten string or content-block message content into plain text."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for block in content:
            if isinstance(block, dict) and isinstance(block.get('text'), str):
                if block.get('type', 'text') == 'text':
                    parts.append(block['text'])
            elif isinstance(block, str):
                parts.append(block)
        return '\n'.join(parts)
    return ''


def _extract_role_messages(messages: List[Dict[str, Any]], role: str) -> List[str]:
    texts = []
    for msg in messages or []:
        if not isinstance(msg, dict) or msg.get('role') != role:
            continue
        text = _message_text(msg.get('content')).strip()
        if text:
            texts.append(text)
    return texts


def extract_user_messages(messages: List[Dict[str, Any]]) -> List[str]:
    """Return the non-empty text of every user message in a transcript."""
    return _extract_role_messages(messages, 'user')


def extract_assistant_messages(messages: List[Dict[str, Any]]) -> List[str]:
    return _extract_role_messages(messages, 'assistant')
