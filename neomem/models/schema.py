"""
Fixed graph schema: allowed values for categories, sources, statuses, entity and
relationship types, plus validators used before values reach query text.
"""

import re

MEMORY_CATEGORIES = ('preference', 'fact', 'decision', 'entity', 'other')
CORE_CATEGORY = 'core'
ALL_MEMORY_CATEGORIES = MEMORY_CATEGORIES + (CORE_CATEGORY, )

MEMORY_SOURCES = ('user', 'auto-capture', 'auto-capture-assistant', 'memory-watcher', 'import')

EXTRACTION_PENDING = 'pending'
EXTRACTION_COMPLETE = 'complete'
EXTRACTION_FAILED = 'failed'
EXTRACTION_SKIPPED = 'skipped'
EXTRACTION_STATUSES = (EXTRACTION_PENDING, EXTRACTION_COMPLETE, EXTRACTION_FAILED, EXTRACTION_SKIPPED)

ENTITY_TYPES = ('person', 'organization', 'location', 'event', 'concept')
DEFAULT_ENTITY_TYPE = 'concept'

# Relationship types are interpolated into Cypher (edge types cannot be parameterized),
# so only members of this set may ever reach query text.
ALLOWED_RELATIONSHIP_TYPES = frozenset(
    ('WORKS_AT', 'LIVES_AT', 'KNOWS', 'MARRIED_TO', 'PREFERS', 'DECIDED', 'RELATED_TO'))

UUID_PATTERN = re.compile(r'^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$', re.IGNORECASE)

_LUCENE_SPECIAL = re.compile(r'([+\-&|!(){}\[\]^"~*?:\\/])')


def validate_relationship_type(rel_type) -> bool:
    """Check a relationship type against the allowlist."""
    return isinstance(rel_type, str) and rel_type in ALLOWED_RELATIONSHIP_TYPES


def is_valid_memory_id(memory_id) -> bool:
    return isinstance(memory_id, str) and bool(UUID_PATTERN.fullmatch(memory_id))


def canonicalize_name(name: str) -> str:
    """Entity and tag names are stored trimmed and lowercased."""
    return name.strip().lower()


def escape_lucene(query: str) -> str:
    """Escape Lucene query syntax so user text is matched literally."""
    return _LUCENE_SPECIAL.sub(r'\\\1', query)
