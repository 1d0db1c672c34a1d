"""Shared fixtures for all test modules."""
import math
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from neomem.models.schema import CORE_CATEGORY
from neomem.utils.config import load_config

NOW = datetime(2026, 1, 1, tzinfo=timezone.utc)


def days_ago(days: float) -> str:
    return (NOW - timedelta(days=days)).isoformat()


@pytest.fixture
def app_config():
    """Complete configuration that passes validation."""
    cfg = load_config()
    return replace(cfg,
                   neo4j=replace(cfg.neo4j, uri='bolt://localhost:7687', username='neo4j', password='secret'),
                   bedrock_embed=replace(cfg.bedrock_embed, model_id='amazon.titan-embed-text-v2:0', dimension=4))


@pytest.fixture
def neo4j_session():
    """A mocked driver whose session() context manager yields the returned session mock."""
    session = MagicMock(name='session')
    driver = MagicMock(name='driver')
    driver.session.return_value.__enter__.return_value = session
    driver.session.return_value.__exit__.return_value = False
    return driver, session


def _cosine(a, b):
    dot = sum(x * y for x, y in zip(a, b))
    norm = math.sqrt(sum(x * x for x in a)) * math.sqrt(sum(y * y for y in b))
    return dot / norm if norm else 0.0


class FakeGraphStore:
    """In-memory stand-in for Neo4jClient covering the operations the sleep cycle uses."""

    def __init__(self, memories=None):
        self.memories = {m['id']: dict(m) for m in (memories or [])}
        self.statuses = {}
        self.entities = {}
        self.entity_pairs = []
        self.merged_pairs = []

    def list_memories_for_consolidation(self, agent_id=None):
        return [dict(m) for m in self.memories.values() if agent_id is None or m.get('agentId') == agent_id]

    def find_similar(self, embedding, threshold=0.95, limit=1, agent_id=None):
        matches = []
        for m in self.memories.values():
            if agent_id and m.get('agentId') != agent_id:
                continue
            score = _cosine(embedding, m['embedding'])
            if score >= threshold:
                matches.append({'id': m['id'], 'text': m['text'], 'score': score})
        return sorted(matches, key=lambda x: x['score'], reverse=True)[:limit]

    def merge_memory_cluster(self, keep_id, remove_ids):
        removed = 0
        for rid in remove_ids:
            if self.memories.pop(rid, None) is not None:
                removed += 1
        return removed

    def find_duplicate_entity_pairs(self):
        return list(self.entity_pairs)

    def merge_entity_pair(self, keep_id, remove_id):
        self.merged_pairs.append((keep_id, remove_id))
        return True

    def reconcile_entity_mention_counts(self):
        return 0

    def promote_to_core(self, ids):
        for memory_id in ids:
            m = self.memories[memory_id]
            m['categoryBeforeCore'] = m['category']
            m['category'] = CORE_CATEGORY
        return len(ids)

    def demote_from_core(self, ids):
        for memory_id in ids:
            m = self.memories[memory_id]
            m['category'] = m.pop('categoryBeforeCore', None) or 'other'
        return len(ids)

    def reset_failed_extractions(self, agent_id=None):
        reset = 0
        for m in self.memories.values():
            if m.get('extractionStatus') == 'failed':
                m['extractionStatus'] = 'pending'
                reset += 1
        return reset

    def list_pending_extractions(self, agent_id=None, limit=1000):
        return [{
            'id': m['id'],
            'text': m['text']
        } for m in self.memories.values() if m.get('extractionStatus') == 'pending'][:limit]

    def update_extraction_status(self, memory_id, status):
        self.statuses[memory_id] = status
        if memory_id in self.memories:
            self.memories[memory_id]['extractionStatus'] = status

    def update_memory_category(self, memory_id, category):
        m = self.memories.get(memory_id)
        if m and m['category'] != CORE_CATEGORY:
            m['category'] = category

    def merge_entity(self, name, entity_type, entity_id=None, aliases=None, description=None, embedding=None):
        self.entities.setdefault(name, {'id': entity_id, 'type': entity_type})
        return {'id': self.entities[name]['id'], 'name': name}

    def create_mentions(self, memory_id, entity_name, role='context', confidence=1.0):
        pass

    def create_entity_relationship(self, source_name, target_name, rel_type, confidence=1.0):
        return True

    def tag_memory(self, memory_id, tag_name, tag_category='topic', confidence=1.0):
        pass

    def delete_memories(self, ids):
        deleted = 0
        for memory_id in ids:
            if self.memories.pop(memory_id, None) is not None:
                deleted += 1
        return deleted

    def delete_orphan_entities(self):
        return 0

    def delete_orphan_tags(self):
        return 0


@pytest.fixture
def fake_store_factory():
    return FakeGraphStore
