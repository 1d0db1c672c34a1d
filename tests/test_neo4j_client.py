from unittest.mock import MagicMock

import pytest

from neomem.utils import neo4j_client
from neomem.utils.config import Neo4jConfig
from neomem.utils.neo4j_client import GraphStoreError, Neo4jClient, is_transient_error, retry_on_transient_error

MEMORY_ID = '3f2504e0-4f89-11d3-9a0c-0305e82c3301'


@pytest.fixture
def client(neo4j_session):
    driver, _ = neo4j_session
    c = Neo4jClient(Neo4jConfig(uri='bolt://localhost:7687', username='neo4j', password='pw', database='neo4j'),
                    dimension=4,
                    driver=driver)
    c.indexes_ready = True
    return c


@pytest.fixture
def session(neo4j_session):
    return neo4j_session[1]


@pytest.fixture(autouse=True)
def no_sleep(monkeypatch):
    monkeypatch.setattr(neo4j_client.time, 'sleep', lambda _: None)


# ---------------------------------------------------------------------------
# Input validation
# ---------------------------------------------------------------------------


@pytest.mark.parametrize('bad_id', ['', 'abc', "1' OR 1=1 --", MEMORY_ID + 'x', MEMORY_ID + '\n', None])
def test_delete_memory_rejects_non_uuid(client, session, bad_id):
    with pytest.raises(ValueError, match='Invalid memory ID'):
        client.delete_memory(bad_id)
    session.run.assert_not_called()


def test_delete_memory_decrements_mentions_then_deletes(client, session):
    session.run.side_effect = [MagicMock(), [{'deleted': 1}]]

    assert client.delete_memory(MEMORY_ID) is True
    first_query = session.run.call_args_list[0][0][0]
    assert 'mentionCount' in first_query
    assert 'DETACH DELETE' in session.run.call_args_list[1][0][0]


def test_relationship_outside_allowlist_is_not_executed(client, session):
    assert client.create_entity_relationship('tarun', 'abundent', 'OWNS') is False
    assert client.create_entity_relationship('tarun', 'abundent', 'KNOWS]->() DETACH DELETE (n) //') is False
    session.run.assert_not_called()


def test_allowlisted_relationship_is_interpolated(client, session):
    session.run.return_value = []

    assert client.create_entity_relationship('Tarun', 'Abundent', 'WORKS_AT', 0.9) is True
    query, params = session.run.call_args[0]
    assert '[r:WORKS_AT]' in query
    assert params['sourceName'] == 'tarun'
    assert params['targetName'] == 'abundent'
    assert params['confidence'] == 0.9


# ---------------------------------------------------------------------------
# Retry policy
# ---------------------------------------------------------------------------


def test_transient_error_detection():
    assert is_transient_error(RuntimeError('Neo.TransientError.Transaction.DeadlockDetected'))
    assert not is_transient_error(ValueError('syntax error'))


def test_retry_recovers_from_deadlock():
    calls = []

    class _Store:

        @retry_on_transient_error
        def write(self):
            calls.append(1)
            if len(calls) < 3:
                raise RuntimeError('DeadlockDetected')
            return 'ok'

    assert _Store().write() == 'ok'
    assert len(calls) == 3


def test_retry_gives_up_after_three_attempts():
    calls = []

    class _Store:

        @retry_on_transient_error
        def write(self):
            calls.append(1)
            raise RuntimeError('TransientError: lock timeout')

    with pytest.raises(RuntimeError):
        _Store().write()
    assert len(calls) == 3


def test_non_transient_error_is_not_retried(client, session):
    session.execute_write.side_effect = ValueError('constraint violation')

    with pytest.raises(ValueError):
        client.merge_entity('tarun', 'person')
    assert session.execute_write.call_count == 1


def test_merge_entity_retries_and_canonicalizes(client, session):
    tx = MagicMock()
    tx.run.return_value = [{'id': 'e-1', 'name': 'tarun'}]
    attempts = []

    def _flaky(fn):
        attempts.append(1)
        if len(attempts) == 1:
            raise RuntimeError('DeadlockDetected')
        return fn(tx)

    session.execute_write.side_effect = _flaky

    assert client.merge_entity('  Tarun ', 'person', aliases=['Boss', ' ']) == {'id': 'e-1', 'name': 'tarun'}
    assert len(attempts) == 2
    params = tx.run.call_args[0][1]
    assert params['name'] == 'tarun'
    assert params['aliases'] == ['boss']


# ---------------------------------------------------------------------------
# Read-side degradation
# ---------------------------------------------------------------------------


def test_search_signals_degrade_to_empty(client, session):
    session.run.side_effect = RuntimeError('There is no such index')

    assert client.vector_search([0.1] * 4, 10) == []
    assert client.bm25_search('coffee', 10) == []
    assert client.graph_search('tarun', 10) == []
    assert client.find_similar([0.1] * 4) == []


def test_bm25_scores_are_normalized_by_max(client, session):
    session.run.return_value = [
        {'id': 'a', 'text': 'x', 'category': 'fact', 'importance': 0.5, 'createdAt': 't', 'bm25Score': 4.0},
        {'id': 'b', 'text': 'y', 'category': 'fact', 'importance': 0.5, 'createdAt': 't', 'bm25Score': 2.0},
    ]

    results = client.bm25_search('coffee beans', 10, agent_id='agent-1')

    assert [(r.id, r.score) for r in results] == [('a', 1.0), ('b', 0.5)]
    params = session.run.call_args[0][1]
    assert params['agentId'] == 'agent-1'


def test_fulltext_queries_are_escaped(client, session):
    session.run.return_value = []

    client.bm25_search('c++ (fast)', 10)

    assert session.run.call_args[0][1]['query'] == 'c\\+\\+ \\(fast\\)'


def test_query_without_terms_skips_fulltext(client, session):
    assert client.bm25_search('*** ???', 10) == []
    assert client.graph_search('!!', 10) == []
    session.run.assert_not_called()


def test_graph_search_dedups_keeping_max_score(client, session):
    entity_records = [{'entityId': 'e-1', 'name': 'tarun', 'score': 2.1}]
    memory_records = [
        {'id': 'm-1', 'text': 'a', 'category': 'fact', 'importance': 0.5, 'createdAt': 't', 'graphScore': 1.0},
        {'id': 'm-2', 'text': 'b', 'category': 'fact', 'importance': 0.5, 'createdAt': 't', 'graphScore': 0.4},
        {'id': 'm-2', 'text': 'b', 'category': 'fact', 'importance': 0.5, 'createdAt': 't', 'graphScore': 0.6},
    ]
    session.run.side_effect = [entity_records, memory_records]

    results = client.graph_search('Tarun', 10, firing_threshold=0.3)

    assert [(r.id, r.score) for r in results] == [('m-1', 1.0), ('m-2', 0.6)]
    hop_query, params = session.run.call_args[0]
    assert 'DECIDED|KNOWS|LIVES_AT|MARRIED_TO|PREFERS|RELATED_TO|WORKS_AT' in hop_query
    assert params['firingThreshold'] == 0.3


def test_graph_search_without_entities_returns_empty(client, session):
    session.run.return_value = []

    assert client.graph_search('unknown thing', 10) == []
    assert session.run.call_count == 1


# ---------------------------------------------------------------------------
# Entity deduplication
# ---------------------------------------------------------------------------


def test_duplicate_pairs_prefer_higher_mention_count(client, session):
    session.run.return_value = [{
        'id1': 'e-2', 'name1': 'tarun sukhani', 'mc1': 3,
        'id2': 'e-1', 'name2': 'tarun', 'mc2': 5,
    }]

    pairs = client.find_duplicate_entity_pairs()

    assert len(pairs) == 1
    assert pairs[0].keep_name == 'tarun'
    assert pairs[0].keep_id == 'e-1'
    assert pairs[0].remove_name == 'tarun sukhani'


def test_duplicate_pairs_tie_keeps_shorter_name(client, session):
    session.run.return_value = [{
        'id1': 'e-1', 'name1': 'tarun sukhani', 'mc1': None,
        'id2': 'e-2', 'name2': 'tarun', 'mc2': 0,
    }]

    pair = client.find_duplicate_entity_pairs()[0]

    assert pair.keep_name == 'tarun'
    assert pair.remove_id == 'e-1'


def test_duplicate_pairs_higher_count_beats_shorter_name(client, session):
    session.run.return_value = [{
        'id1': 'e-1', 'name1': 'neo4j', 'mc1': 1,
        'id2': 'e-2', 'name2': 'neo4j aura', 'mc2': 7,
    }]

    assert client.find_duplicate_entity_pairs()[0].keep_name == 'neo4j aura'


def test_merge_entity_pair_bumps_by_transferred_count(client, session):
    tx = MagicMock()
    tx.run.side_effect = [[{'transferred': 2}], MagicMock(), MagicMock()]
    session.execute_write.side_effect = lambda fn: fn(tx)

    assert client.merge_entity_pair('keep', 'remove') is True
    assert tx.run.call_count == 3
    bump_query, bump_params = tx.run.call_args_list[1][0]
    assert 'mentionCount' in bump_query
    assert bump_params['transferred'] == 2
    assert 'DETACH DELETE' in tx.run.call_args_list[2][0][0]


def test_merge_entity_pair_skips_bump_when_nothing_transferred(client, session):
    tx = MagicMock()
    tx.run.side_effect = [[{'transferred': 0}], MagicMock()]
    session.execute_write.side_effect = lambda fn: fn(tx)

    assert client.merge_entity_pair('keep', 'remove') is True
    assert tx.run.call_count == 2


def test_merge_entity_pair_returns_false_on_error(client, session):
    session.execute_write.side_effect = RuntimeError('transaction terminated')

    assert client.merge_entity_pair('keep', 'remove') is False


def test_reconcile_only_touches_unset_counts(client, session):
    session.run.return_value = [{'updated': 4}]

    assert client.reconcile_entity_mention_counts() == 4
    assert 'mentionCount IS NULL' in session.run.call_args[0][0]


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------


def test_ensure_initialized_creates_schema_once(neo4j_session):
    driver, session = neo4j_session
    session.run.return_value = MagicMock()
    c = Neo4jClient(Neo4jConfig(uri='bolt://x', username='u', password='p', database='neo4j'), dimension=1024, driver=driver)

    c.ensure_initialized()
    first = session.run.call_count
    c.ensure_initialized()

    assert c.indexes_ready is True
    assert session.run.call_count == first
    statements = [call[0][0] for call in session.run.call_args_list]
    assert any('`vector.dimensions`: 1024' in s for s in statements)
    assert any('memory_fulltext_index' in s for s in statements)


def test_failed_schema_statement_is_skipped(neo4j_session):
    driver, session = neo4j_session
    ok = MagicMock()

    def _run(statement, *args):
        if 'entity_embedding_index' in statement:
            raise RuntimeError('equivalent index already exists')
        return ok

    session.run.side_effect = _run
    c = Neo4jClient(Neo4jConfig(uri='bolt://x', username='u', password='p', database='neo4j'), dimension=4, driver=driver)

    c.ensure_initialized()

    assert c.indexes_ready is True


def test_unreachable_database_raises_graph_store_error(neo4j_session):
    driver, session = neo4j_session
    session.run.side_effect = RuntimeError('ServiceUnavailable')
    c = Neo4jClient(Neo4jConfig(uri='bolt://x', username='u', password='p', database='neo4j'), dimension=4, driver=driver)

    with pytest.raises(GraphStoreError, match='connection failed'):
        c.ensure_initialized()
    assert c.indexes_ready is False
    assert c.health_check() is False


# ---------------------------------------------------------------------------
# Core tier and cluster merge
# ---------------------------------------------------------------------------


def test_list_by_category_orders_by_importance(client, session):
    session.run.return_value = [
        {'id': 'm-1', 'text': 'prefers tea', 'category': 'core', 'importance': 0.9, 'createdAt': '2026-01-01T00:00:00Z'},
        {'id': 'm-2', 'text': None, 'category': 'core', 'importance': None, 'createdAt': None},
    ]

    rows = client.list_by_category('core', limit=10, min_importance=0.2, agent_id='agent-1')

    assert [r['id'] for r in rows] == ['m-1', 'm-2']
    assert rows[1]['text'] == '' and rows[1]['importance'] == 0.0
    query, params = session.run.call_args[0]
    assert 'ORDER BY m.importance DESC' in query
    assert 'm.agentId = $agentId' in query
    assert params == {'category': 'core', 'minImportance': 0.2, 'limit': 10, 'agentId': 'agent-1'}


def test_list_by_category_spans_agents_without_agent_id(client, session):
    session.run.return_value = []

    assert client.list_by_category('core') == []
    assert 'agentId' not in session.run.call_args[0][0]


def test_cluster_merge_keeps_mention_counts_in_step(client, session):
    tx = MagicMock()
    tx.run.side_effect = [MagicMock(), MagicMock(), MagicMock(), [{'removed': 1}]]
    session.execute_write.side_effect = lambda fn: fn(tx)

    assert client.merge_memory_cluster('keep', ['dup']) == 1

    queries = [c[0][0] for c in tx.run.call_args_list]
    assert 'dupEdges' in queries[0] and 'mentionCount - dupEdges' in queries[0]
    assert 'ON CREATE' in queries[1]
    assert 'e.mentionCount = coalesce(e.mentionCount, 0) + 1' in queries[1]
