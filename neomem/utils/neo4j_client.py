"""
Neo4j graph store client for the memory graph.

Handles connection management, schema creation, memory CRUD, the three search
signals (vector, BM25, graph), entity/tag mutation, entity deduplication and
the bulk queries used by the sleep cycle.
"""

import threading
import time
import uuid
from functools import wraps
from typing import Any, Dict, List, Optional

from neo4j import GraphDatabase
from neo4j.exceptions import TransientError

from ..models.core import DuplicatePair, SearchSignalResult
from ..models.schema import (ALLOWED_RELATIONSHIP_TYPES, CORE_CATEGORY, EXTRACTION_FAILED, EXTRACTION_PENDING,
                             canonicalize_name, escape_lucene, is_valid_memory_id, validate_relationship_type)
from .config import Neo4jConfig
from .logging_config import get_logger
from .timestamp_utils import now_iso

logger = get_logger(__name__)

# Retry configuration for transient Neo4j errors (deadlocks, etc.)
TRANSIENT_RETRY_ATTEMPTS = 3
TRANSIENT_RETRY_BASE_DELAY = 0.5

# Graph signal: entity fulltext match floor and fan-out
ENTITY_MATCH_MIN_SCORE = 0.5
ENTITY_MATCH_LIMIT = 5
# Confidence assumed for edges written without one
DEFAULT_EDGE_CONFIDENCE = 0.7

# Built from the allowlist constant only
_HOP_RELATIONSHIP_PATTERN = '|'.join(sorted(ALLOWED_RELATIONSHIP_TYPES))

SCHEMA_STATEMENTS = (
    'CREATE CONSTRAINT memory_id_unique IF NOT EXISTS FOR (m:Memory) REQUIRE m.id IS UNIQUE',
    'CREATE CONSTRAINT entity_id_unique IF NOT EXISTS FOR (e:Entity) REQUIRE e.id IS UNIQUE',
    'CREATE CONSTRAINT tag_name_unique IF NOT EXISTS FOR (t:Tag) REQUIRE t.name IS UNIQUE',
    'CREATE FULLTEXT INDEX memory_fulltext_index IF NOT EXISTS FOR (m:Memory) ON EACH [m.text]',
    'CREATE FULLTEXT INDEX entity_fulltext_index IF NOT EXISTS FOR (e:Entity) ON EACH [e.name]',
    'CREATE INDEX memory_agent_index IF NOT EXISTS FOR (m:Memory) ON (m.agentId)',
    'CREATE INDEX memory_category_index IF NOT EXISTS FOR (m:Memory) ON (m.category)',
    'CREATE INDEX memory_created_index IF NOT EXISTS FOR (m:Memory) ON (m.createdAt)',
    'CREATE INDEX memory_extraction_index IF NOT EXISTS FOR (m:Memory) ON (m.extractionStatus)',
    'CREATE INDEX entity_type_index IF NOT EXISTS FOR (e:Entity) ON (e.type)',
    'CREATE INDEX entity_name_index IF NOT EXISTS FOR (e:Entity) ON (e.name)',
)

VECTOR_INDEX_TEMPLATE = """
CREATE VECTOR INDEX {name} IF NOT EXISTS
FOR (n:{label}) ON n.embedding
OPTIONS {{indexConfig: {{
  `vector.dimensions`: {dimension},
  `vector.similarity_function`: 'cosine'
}}}}
"""


class GraphStoreError(Exception):
    """Custom exception for graph store errors."""
    pass


def is_transient_error(error: Exception) -> bool:
    """Deadlocks and other transient transaction failures are safe to retry as-is."""
    if isinstance(error, TransientError):
        return True
    message = str(error)
    return 'DeadlockDetected' in message or 'TransientError' in message


def retry_on_transient_error(func):
    """Decorator to retry contended graph writes with exponential backoff.

    Only transient errors are retried; everything else propagates immediately.
    """

    @wraps(func)
    def wrapper(self, *args, **kwargs):
        for attempt in range(TRANSIENT_RETRY_ATTEMPTS):
            try:
                return func(self, *args, **kwargs)
            except Exception as e:
                if not is_transient_error(e) or attempt >= TRANSIENT_RETRY_ATTEMPTS - 1:
                    raise
                delay = TRANSIENT_RETRY_BASE_DELAY * (2**attempt)
                logger.warning(f'Transient error in {func.__name__}, retrying '
                               f'({attempt + 1}/{TRANSIENT_RETRY_ATTEMPTS}) in {delay:.1f}s: {e}')
                time.sleep(delay)

    return wrapper


def _has_search_terms(query: Optional[str]) -> bool:
    return any(ch.isalnum() for ch in query or '')


def _signal_result(record, score_key: str = 'score', score: Optional[float] = None) -> SearchSignalResult:
    return SearchSignalResult(id=record.get('id'),
                              text=record.get('text') or '',
                              category=record.get('category') or 'other',
                              importance=float(record.get('importance') or 0.0),
                              created_at=str(record.get('createdAt') or ''),
                              score=float(record.get(score_key) or 0.0) if score is None else score)


class Neo4jClient:
    """Neo4j client for the memory graph.

    The connection and schema are set up lazily on first use.
    """

    def __init__(self, config: Neo4jConfig, dimension: int, driver=None):
        """
        Initialize the client.

        Args:
            config: Neo4jConfig instance with connection parameters
            dimension: Embedding dimension used to size the vector indexes
            driver: Optional pre-built neo4j driver
        """
        self.config = config
        self.dimension = dimension
        self.driver = driver
        self.indexes_ready = False
        self._init_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Connection & schema
    # ------------------------------------------------------------------

    def ensure_initialized(self) -> None:
        """Connect and create constraints/indexes once; safe to call from any thread."""
        if self.driver is not None and self.indexes_ready:
            return
        with self._init_lock:
            try:
                if self.driver is None:
                    self.driver = GraphDatabase.driver(self.config.uri, auth=(self.config.username, self.config.password))
                if not self.indexes_ready:
                    with self._session() as session:
                        session.run('RETURN 1').consume()
            except Exception as e:
                logger.error(f'Failed to connect to Neo4j at {self.config.uri}: {e}')
                raise GraphStoreError(f'Neo4j connection failed: {e}')
            if not self.indexes_ready:
                logger.info(f'Connected to Neo4j at {self.config.uri}')
                self._ensure_schema()
                self.indexes_ready = True

    def _ensure_schema(self) -> None:
        statements = list(SCHEMA_STATEMENTS)
        statements.append(
            VECTOR_INDEX_TEMPLATE.format(name='memory_embedding_index', label='Memory', dimension=int(self.dimension)))
        statements.append(
            VECTOR_INDEX_TEMPLATE.format(name='entity_embedding_index', label='Entity', dimension=int(self.dimension)))

        with self._session() as session:
            for statement in statements:
                try:
                    session.run(statement).consume()
                except Exception as e:
                    # Index may already exist with a different configuration
                    logger.debug(f'Schema statement skipped: {e}')
        logger.info('Neo4j constraints and indexes ensured')

    def _session(self):
        return self.driver.session(database=self.config.database)

    def _run(self, cypher: str, **params) -> List[Any]:
        self.ensure_initialized()
        with self._session() as session:
            return list(session.run(cypher, params))

    def close(self) -> None:
        """Close the Neo4j driver."""
        if self.driver is not None:
            self.driver.close()
            self.driver = None
            self.indexes_ready = False
            logger.info('Neo4j connection closed')

    def verify_connection(self) -> bool:
        if self.driver is None:
            return False
        try:
            with self._session() as session:
                session.run('RETURN 1').consume()
            return True
        except Exception as e:
            logger.error(f'Neo4j connection verification failed: {e}')
            return False

    def health_check(self) -> bool:
        """
        Perform a health check on the graph store.

        Returns:
            True if service is healthy, False otherwise
        """
        try:
            self.ensure_initialized()
            return self.verify_connection()
        except Exception as e:
            logger.error(f'Neo4j health check failed: {e}')
            return False

    # ------------------------------------------------------------------
    # Memory CRUD
    # ------------------------------------------------------------------

    def store_memory(self,
                     memory_id: str,
                     text: str,
                     embedding: List[float],
                     importance: float,
                     category: str,
                     source: str,
                     extraction_status: str,
                     agent_id: str,
                     session_key: Optional[str] = None) -> str:
        """
        Create a Memory node.

        Returns:
            The stored memory ID
        """
        now = now_iso()
        records = self._run(
            """
            CREATE (m:Memory {
              id: $id, text: $text, embedding: $embedding,
              importance: $importance, category: $category,
              source: $source, extractionStatus: $extractionStatus,
              agentId: $agentId, sessionKey: $sessionKey,
              retrievalCount: 0,
              createdAt: $now, updatedAt: $now
            })
            RETURN m.id AS id
            """,
            id=memory_id,
            text=text,
            embedding=embedding,
            importance=importance,
            category=category,
            source=source,
            extractionStatus=extraction_status,
            agentId=agent_id,
            sessionKey=session_key,
            now=now)
        logger.debug(f'Stored memory {memory_id} for agent {agent_id}')
        return records[0].get('id') if records else memory_id

    def delete_memory(self, memory_id: str) -> bool:
        """
        Delete a memory and its relationships, decrementing mention counts of the entities it mentioned.

        Args:
            memory_id: Memory ID to delete (must be a UUID)

        Returns:
            True if a memory was deleted

        Raises:
            ValueError: If the ID is not a valid UUID
        """
        if not is_valid_memory_id(memory_id):
            raise ValueError(f'Invalid memory ID format: {memory_id!r}')

        self.ensure_initialized()
        with self._session() as session:
            session.run(
                """
                MATCH (m:Memory {id: $id})-[:MENTIONS]->(e:Entity)
                SET e.mentionCount = CASE WHEN coalesce(e.mentionCount, 0) > 0
                                          THEN e.mentionCount - 1 ELSE 0 END
                """, {
                    'id': memory_id
                }).consume()
            records = list(
                session.run(
                    """
                MATCH (m:Memory {id: $id})
                DETACH DELETE m
                RETURN count(*) AS deleted
                """, {'id': memory_id}))

        deleted = bool(records) and (records[0].get('deleted') or 0) > 0
        logger.debug(f'Deleted memory {memory_id}: {deleted}')
        return deleted

    def count_memories(self, agent_id: Optional[str] = None) -> int:
        if agent_id:
            records = self._run('MATCH (m:Memory {agentId: $agentId}) RETURN count(m) AS count', agentId=agent_id)
        else:
            records = self._run('MATCH (m:Memory) RETURN count(m) AS count')
        return int(records[0].get('count') or 0) if records else 0

    def list_by_category(self,
                         category: str,
                         limit: int = 50,
                         min_importance: float = 0.0,
                         agent_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """
        List memories of one category, most important first.

        Args:
            category: Memory category (e.g. 'core')
            limit: Maximum number of memories
            min_importance: Importance floor
            agent_id: Restrict to one agent (all agents if None)

        Returns:
            List of dicts with id, text, category, importance and created_at
        """
        agent_filter = 'AND m.agentId = $agentId' if agent_id else ''
        records = self._run(f"""
            MATCH (m:Memory)
            WHERE m.category = $category AND m.importance >= $minImportance {agent_filter}
            RETURN m.id AS id, m.text AS text, m.category AS category,
                   m.importance AS importance, m.createdAt AS createdAt
            ORDER BY m.importance DESC
            LIMIT $limit
            """,
                            category=category,
                            minImportance=min_importance,
                            limit=int(limit),
                            agentId=agent_id)
        return [{
            'id': r.get('id'),
            'text': r.get('text') or '',
            'category': r.get('category'),
            'importance': float(r.get('importance') or 0.0),
            'created_at': str(r.get('createdAt') or '')
        } for r in records]

    def get_memory_stats(self) -> List[Dict[str, Any]]:
        """Memory counts and average importance grouped by agent and category."""
        records = self._run("""
            MATCH (m:Memory)
            RETURN m.agentId AS agentId, m.category AS category,
                   count(m) AS count, avg(m.importance) AS avgImportance
            ORDER BY agentId, category
            """)
        return [{
            'agent_id': r.get('agentId'),
            'category': r.get('category'),
            'count': int(r.get('count') or 0),
            'avg_importance': float(r.get('avgImportance') or 0.0)
        } for r in records]

    def record_retrievals(self, memory_ids: List[str]) -> None:
        """Bump retrieval telemetry on memories returned by a search."""
        if not memory_ids:
            return
        self._run(
            """
            UNWIND $ids AS id
            MATCH (m:Memory {id: id})
            SET m.retrievalCount = coalesce(m.retrievalCount, 0) + 1,
                m.lastRetrievedAt = $now
            """,
            ids=list(memory_ids),
            now=now_iso())

    def update_extraction_status(self, memory_id: str, status: str) -> None:
        self._run(
            """
            MATCH (m:Memory {id: $id})
            SET m.extractionStatus = $status, m.updatedAt = $now
            """,
            id=memory_id,
            status=status,
            now=now_iso())

    def update_memory_category(self, memory_id: str, category: str) -> None:
        """Set a memory's category; core memories keep theirs until demoted."""
        self._run(
            """
            MATCH (m:Memory {id: $id})
            WHERE m.category <> $core
            SET m.category = $category, m.updatedAt = $now
            """,
            id=memory_id,
            category=category,
            core=CORE_CATEGORY,
            now=now_iso())

    def promote_to_core(self, memory_ids: List[str]) -> int:
        if not memory_ids:
            return 0
        records = self._run(
            """
            UNWIND $ids AS id
            MATCH (m:Memory {id: id})
            WHERE m.category <> $core
            SET m.categoryBeforeCore = m.category, m.category = $core, m.updatedAt = $now
            RETURN count(m) AS promoted
            """,
            ids=list(memory_ids),
            core=CORE_CATEGORY,
            now=now_iso())
        return int(records[0].get('promoted') or 0) if records else 0

    def demote_from_core(self, memory_ids: List[str]) -> int:
        if not memory_ids:
            return 0
        records = self._run(
            """
            UNWIND $ids AS id
            MATCH (m:Memory {id: id})
            WHERE m.category = $core
            SET m.category = coalesce(m.categoryBeforeCore, 'other'), m.updatedAt = $now
            REMOVE m.categoryBeforeCore
            RETURN count(m) AS demoted
            """,
            ids=list(memory_ids),
            core=CORE_CATEGORY,
            now=now_iso())
        return int(records[0].get('demoted') or 0) if records else 0

    # ------------------------------------------------------------------
    # Search signals (read side: errors degrade to an empty result)
    # ------------------------------------------------------------------

    def vector_search(self,
                      embedding: List[float],
                      limit: int,
                      min_score: float = 0.1,
                      agent_id: Optional[str] = None) -> List[SearchSignalResult]:
        """
        Signal 1: vector similarity over the memory embedding index.

        Returns:
            Memories ranked by cosine similarity (already 0-1)
        """
        try:
            agent_filter = 'AND node.agentId = $agentId' if agent_id else ''
            records = self._run(f"""
                CALL db.index.vector.queryNodes('memory_embedding_index', $limit, $embedding)
                YIELD node, score
                WHERE score >= $minScore {agent_filter}
                RETURN node.id AS id, node.text AS text, node.category AS category,
                       node.importance AS importance, node.createdAt AS createdAt,
                       score AS similarity
                ORDER BY score DESC
                """,
                                embedding=embedding,
                                limit=int(limit),
                                minScore=min_score,
                                agentId=agent_id)
            return [_signal_result(r, 'similarity') for r in records]
        except Exception as e:
            logger.warning(f'Vector search failed: {e}')
            return []

    def bm25_search(self, query: str, limit: int, agent_id: Optional[str] = None) -> List[SearchSignalResult]:
        """
        Signal 2: Lucene BM25 keyword search over memory text.

        Returns:
            Memories ranked by BM25, scores divided by the batch maximum
        """
        try:
            if not _has_search_terms(query):
                return []
            escaped = escape_lucene(query)

            agent_filter = 'WHERE node.agentId = $agentId' if agent_id else ''
            records = self._run(f"""
                CALL db.index.fulltext.queryNodes('memory_fulltext_index', $query)
                YIELD node, score
                {agent_filter}
                RETURN node.id AS id, node.text AS text, node.category AS category,
                       node.importance AS importance, node.createdAt AS createdAt,
                       score AS bm25Score
                ORDER BY score DESC
                LIMIT $limit
                """,
                                query=escaped,
                                limit=int(limit),
                                agentId=agent_id)
            if not records:
                return []

            max_score = max(float(r.get('bm25Score') or 0.0) for r in records) or 1.0
            return [_signal_result(r, score=float(r.get('bm25Score') or 0.0) / max_score) for r in records]
        except Exception as e:
            logger.warning(f'BM25 search failed: {e}')
            return []

    def graph_search(self,
                     query: str,
                     limit: int,
                     firing_threshold: float = 0.3,
                     agent_id: Optional[str] = None) -> List[SearchSignalResult]:
        """
        Signal 3: graph traversal from entities named in the query.

        1. Fulltext-match entities against the query (score >= 0.5, top 5)
        2. Memories mentioning a matched entity, scored by mention confidence
        3. Memories mentioning a one-hop neighbour reached through an allowlisted
           relationship with confidence >= firing_threshold, scored hop x mention

        Returns:
            Memories deduplicated by id (max score kept), sorted, truncated to limit
        """
        try:
            if not _has_search_terms(query):
                return []
            escaped = escape_lucene(query)

            entity_records = self._run("""
                CALL db.index.fulltext.queryNodes('entity_fulltext_index', $query)
                YIELD node, score
                WHERE score >= $minScore
                RETURN node.id AS entityId, node.name AS name, score
                ORDER BY score DESC
                LIMIT $entityLimit
                """,
                                       query=escaped,
                                       minScore=ENTITY_MATCH_MIN_SCORE,
                                       entityLimit=ENTITY_MATCH_LIMIT)
            entity_ids = [r.get('entityId') for r in entity_records if r.get('entityId')]
            if not entity_ids:
                return []

            agent_filter = 'AND m.agentId = $agentId' if agent_id else ''
            records = self._run(f"""
                UNWIND $entityIds AS eid
                MATCH (e:Entity {{id: eid}})<-[rm:MENTIONS]-(m:Memory)
                WHERE true {agent_filter}
                RETURN m.id AS id, m.text AS text, m.category AS category,
                       m.importance AS importance, m.createdAt AS createdAt,
                       max(coalesce(rm.confidence, 1.0)) AS graphScore

                UNION

                UNWIND $entityIds AS eid
                MATCH (e:Entity {{id: eid}})-[r1:{_HOP_RELATIONSHIP_PATTERN}]-(e2:Entity)
                WHERE coalesce(r1.confidence, {DEFAULT_EDGE_CONFIDENCE}) >= $firingThreshold
                MATCH (e2)<-[rm:MENTIONS]-(m:Memory)
                WHERE true {agent_filter}
                RETURN m.id AS id, m.text AS text, m.category AS category,
                       m.importance AS importance, m.createdAt AS createdAt,
                       max(coalesce(r1.confidence, {DEFAULT_EDGE_CONFIDENCE}) * coalesce(rm.confidence, 1.0)) AS graphScore
                """,
                                entityIds=entity_ids,
                                firingThreshold=firing_threshold,
                                agentId=agent_id)

            by_id: Dict[str, SearchSignalResult] = {}
            for record in records:
                memory_id = record.get('id')
                if not memory_id:
                    continue
                result = _signal_result(record, 'graphScore')
                existing = by_id.get(memory_id)
                if existing is None or result.score > existing.score:
                    by_id[memory_id] = result

            return sorted(by_id.values(), key=lambda r: r.score, reverse=True)[:limit]
        except Exception as e:
            logger.warning(f'Graph search failed: {e}')
            return []

    def find_similar(self,
                     embedding: List[float],
                     threshold: float = 0.95,
                     limit: int = 1,
                     agent_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """
        Find near-duplicate memories by vector similarity.

        Returns:
            List of dicts with id, text and score; empty if the index is not ready
        """
        try:
            agent_filter = 'AND node.agentId = $agentId' if agent_id else ''
            records = self._run(f"""
                CALL db.index.vector.queryNodes('memory_embedding_index', $limit, $embedding)
                YIELD node, score
                WHERE score >= $threshold {agent_filter}
                RETURN node.id AS id, node.text AS text, score AS similarity
                ORDER BY score DESC
                """,
                                embedding=embedding,
                                limit=int(limit),
                                threshold=threshold,
                                agentId=agent_id)
            return [{
                'id': r.get('id'),
                'text': r.get('text') or '',
                'score': float(r.get('similarity') or 0.0)
            } for r in records]
        except Exception as e:
            logger.debug(f'Similarity check failed: {e}')
            return []

    # ------------------------------------------------------------------
    # Entities, relationships, tags
    # ------------------------------------------------------------------

    @retry_on_transient_error
    def merge_entity(self,
                     name: str,
                     entity_type: str,
                     entity_id: Optional[str] = None,
                     aliases: Optional[List[str]] = None,
                     description: Optional[str] = None,
                     embedding: Optional[List[float]] = None) -> Dict[str, str]:
        """
        Upsert an Entity keyed by its canonical name.

        First sight creates the node with mentionCount 1; later sightings bump
        mentionCount and lastSeen and refresh optional fields only when provided.

        Returns:
            Dict with the stored entity's id and name
        """
        params = {
            'id': entity_id or str(uuid.uuid4()),
            'name': canonicalize_name(name),
            'type': entity_type,
            'aliases': [canonicalize_name(a) for a in (aliases or []) if a and a.strip()],
            'description': description,
            'embedding': embedding,
            'now': now_iso(),
        }

        def _merge(tx):
            return list(
                tx.run(
                    """
                MERGE (e:Entity {name: $name})
                ON CREATE SET
                  e.id = $id, e.type = $type, e.aliases = $aliases,
                  e.description = $description, e.embedding = $embedding,
                  e.firstSeen = $now, e.lastSeen = $now, e.mentionCount = 1
                ON MATCH SET
                  e.type = coalesce($type, e.type),
                  e.aliases = CASE WHEN size($aliases) = 0 THEN e.aliases
                                   ELSE coalesce(e.aliases, []) + [a IN $aliases WHERE NOT a IN coalesce(e.aliases, [])] END,
                  e.description = coalesce($description, e.description),
                  e.embedding = coalesce($embedding, e.embedding),
                  e.lastSeen = $now,
                  e.mentionCount = coalesce(e.mentionCount, 0) + 1
                RETURN e.id AS id, e.name AS name
                """, params))

        self.ensure_initialized()
        with self._session() as session:
            records = session.execute_write(_merge)
        record = records[0]
        return {'id': record.get('id'), 'name': record.get('name')}

    def create_mentions(self, memory_id: str, entity_name: str, role: str = 'context', confidence: float = 1.0) -> None:
        self._run(
            """
            MATCH (m:Memory {id: $memoryId})
            MATCH (e:Entity {name: $entityName})
            MERGE (m)-[r:MENTIONS]->(e)
            ON CREATE SET r.role = $role, r.confidence = $confidence
            """,
            memoryId=memory_id,
            entityName=canonicalize_name(entity_name),
            role=role,
            confidence=confidence)

    def create_entity_relationship(self, source_name: str, target_name: str, rel_type: str,
                                   confidence: float = 1.0) -> bool:
        """
        Create or strengthen a typed Entity->Entity relationship.

        The type is checked against the allowlist before it is placed in the
        query; anything else is logged and dropped.

        Returns:
            True if the statement was executed
        """
        if not validate_relationship_type(rel_type):
            logger.warning(f'Rejected invalid relationship type: {rel_type!r}')
            return False

        self._run(f"""
            MATCH (e1:Entity {{name: $sourceName}})
            MATCH (e2:Entity {{name: $targetName}})
            MERGE (e1)-[r:{rel_type}]->(e2)
            ON CREATE SET r.confidence = $confidence, r.createdAt = $now
            ON MATCH SET r.confidence = CASE WHEN $confidence > coalesce(r.confidence, 0.0)
                                             THEN $confidence ELSE r.confidence END
            """,
                  sourceName=canonicalize_name(source_name),
                  targetName=canonicalize_name(target_name),
                  confidence=confidence,
                  now=now_iso())
        return True

    def tag_memory(self, memory_id: str, tag_name: str, tag_category: str = 'topic', confidence: float = 1.0) -> None:
        self._run(
            """
            MERGE (t:Tag {name: $tagName})
            ON CREATE SET t.category = $tagCategory, t.createdAt = $now
            WITH t
            MATCH (m:Memory {id: $memoryId})
            MERGE (m)-[r:TAGGED]->(t)
            ON CREATE SET r.confidence = $confidence
            """,
            memoryId=memory_id,
            tagName=canonicalize_name(tag_name),
            tagCategory=tag_category,
            confidence=confidence,
            now=now_iso())

    # ------------------------------------------------------------------
    # Entity deduplication
    # ------------------------------------------------------------------

    def find_duplicate_entity_pairs(self) -> List[DuplicatePair]:
        """
        Find same-type entities whose names contain one another.

        The entity with more mentions is kept; on a tie the shorter name is
        treated as canonical. Missing mention counts count as 0.
        """
        records = self._run("""
            MATCH (e1:Entity), (e2:Entity)
            WHERE e1.id < e2.id
              AND e1.type = e2.type
              AND size(e1.name) > 2 AND size(e2.name) > 2
              AND (e1.name CONTAINS e2.name OR e2.name CONTAINS e1.name)
            RETURN e1.id AS id1, e1.name AS name1, e1.mentionCount AS mc1,
                   e2.id AS id2, e2.name AS name2, e2.mentionCount AS mc2
            """)

        pairs = []
        for r in records:
            mc1 = r.get('mc1') or 0
            mc2 = r.get('mc2') or 0
            name1 = r.get('name1') or ''
            name2 = r.get('name2') or ''
            if mc1 != mc2:
                keep_first = mc1 > mc2
            else:
                keep_first = len(name1) <= len(name2)

            if keep_first:
                pairs.append(DuplicatePair(r.get('id1'), name1, r.get('id2'), name2))
            else:
                pairs.append(DuplicatePair(r.get('id2'), name2, r.get('id1'), name1))
        return pairs

    def merge_entity_pair(self, keep_id: str, remove_id: str) -> bool:
        """
        Fold one entity into another in a single write transaction.

        MENTIONS edges are re-pointed to the kept entity (an existing edge is
        not duplicated), the kept mentionCount grows by the edges actually
        transferred, and the removed entity is detach-deleted.

        Returns:
            True on success, False if the transaction failed
        """

        def _merge(tx):
            records = list(
                tx.run(
                    """
                MATCH (remove:Entity {id: $removeId})<-[r:MENTIONS]-(m:Memory)
                MATCH (keep:Entity {id: $keepId})
                OPTIONAL MATCH (m)-[existing:MENTIONS]->(keep)
                WITH m, r, keep, existing IS NULL AS isNew
                MERGE (m)-[nr:MENTIONS]->(keep)
                ON CREATE SET nr.role = r.role, nr.confidence = r.confidence
                DELETE r
                RETURN sum(CASE WHEN isNew THEN 1 ELSE 0 END) AS transferred
                """, {
                        'keepId': keep_id,
                        'removeId': remove_id
                    }))
            transferred = int(records[0].get('transferred') or 0) if records else 0

            if transferred > 0:
                tx.run(
                    """
                    MATCH (keep:Entity {id: $keepId})
                    SET keep.mentionCount = coalesce(keep.mentionCount, 0) + $transferred
                    """, {
                        'keepId': keep_id,
                        'transferred': transferred
                    }).consume()

            tx.run('MATCH (e:Entity {id: $removeId}) DETACH DELETE e', {'removeId': remove_id}).consume()
            return transferred

        try:
            self.ensure_initialized()
            with self._session() as session:
                transferred = session.execute_write(_merge)
            logger.debug(f'Merged entity {remove_id} into {keep_id} ({transferred} mentions transferred)')
            return True
        except Exception as e:
            logger.error(f'Entity merge {remove_id} -> {keep_id} failed: {e}')
            return False

    def reconcile_entity_mention_counts(self) -> int:
        """Recompute mentionCount from MENTIONS edges wherever it is unset."""
        records = self._run("""
            MATCH (e:Entity)
            WHERE e.mentionCount IS NULL
            OPTIONAL MATCH (e)<-[r:MENTIONS]-(:Memory)
            WITH e, count(r) AS actual
            SET e.mentionCount = actual
            RETURN count(e) AS updated
            """)
        return int(records[0].get('updated') or 0) if records else 0

    # ------------------------------------------------------------------
    # Sleep cycle support
    # ------------------------------------------------------------------

    def list_memories_for_consolidation(self, agent_id: Optional[str] = None) -> List[Dict[str, Any]]:
        agent_filter = 'WHERE m.agentId = $agentId' if agent_id else ''
        records = self._run(f"""
            MATCH (m:Memory)
            {agent_filter}
            RETURN m.id AS id, m.text AS text, m.embedding AS embedding,
                   m.importance AS importance, m.category AS category,
                   m.agentId AS agentId, m.createdAt AS createdAt,
                   coalesce(m.retrievalCount, 0) AS retrievalCount,
                   m.lastRetrievedAt AS lastRetrievedAt
            ORDER BY m.createdAt ASC
            """,
                            agentId=agent_id)
        return [dict(r) for r in records]

    def list_pending_extractions(self, agent_id: Optional[str] = None, limit: int = 1000) -> List[Dict[str, str]]:
        agent_filter = 'AND m.agentId = $agentId' if agent_id else ''
        records = self._run(f"""
            MATCH (m:Memory)
            WHERE m.extractionStatus = $pending {agent_filter}
            RETURN m.id AS id, m.text AS text
            ORDER BY m.createdAt ASC
            LIMIT $limit
            """,
                            pending=EXTRACTION_PENDING,
                            agentId=agent_id,
                            limit=int(limit))
        return [{'id': r.get('id'), 'text': r.get('text') or ''} for r in records]

    def reset_failed_extractions(self, agent_id: Optional[str] = None) -> int:
        agent_filter = 'AND m.agentId = $agentId' if agent_id else ''
        records = self._run(f"""
            MATCH (m:Memory)
            WHERE m.extractionStatus = $failed {agent_filter}
            SET m.extractionStatus = $pending, m.updatedAt = $now
            RETURN count(m) AS reset
            """,
                            failed=EXTRACTION_FAILED,
                            pending=EXTRACTION_PENDING,
                            agentId=agent_id,
                            now=now_iso())
        return int(records[0].get('reset') or 0) if records else 0

    @retry_on_transient_error
    def merge_memory_cluster(self, keep_id: str, remove_ids: List[str]) -> int:
        """
        Collapse duplicate memories into a canonical one.

        Dependent MENTIONS/TAGGED edges move to the canonical memory, which
        takes the cluster's highest importance and summed retrieval count.

        Returns:
            Number of duplicate memories deleted
        """
        remove_ids = [i for i in remove_ids if i != keep_id]
        if not remove_ids:
            return 0

        def _merge(tx):
            # Each duplicate edge goes away; each edge newly created on keep counts once
            tx.run(
                """
                MATCH (dup:Memory)-[:MENTIONS]->(e:Entity)
                WHERE dup.id IN $removeIds
                WITH e, count(*) AS dupEdges
                SET e.mentionCount = CASE WHEN coalesce(e.mentionCount, 0) > dupEdges
                                          THEN e.mentionCount - dupEdges ELSE 0 END
                """, {
                    'removeIds': remove_ids
                }).consume()
            tx.run(
                """
                MATCH (keep:Memory {id: $keepId})
                UNWIND $removeIds AS rid
                MATCH (dup:Memory {id: rid})-[r:MENTIONS]->(e:Entity)
                MERGE (keep)-[nr:MENTIONS]->(e)
                ON CREATE SET nr.role = r.role, nr.confidence = r.confidence,
                              e.mentionCount = coalesce(e.mentionCount, 0) + 1
                """, {
                    'keepId': keep_id,
                    'removeIds': remove_ids
                }).consume()
            tx.run(
                """
                MATCH (keep:Memory {id: $keepId})
                UNWIND $removeIds AS rid
                MATCH (dup:Memory {id: rid})-[r:TAGGED]->(t:Tag)
                MERGE (keep)-[nr:TAGGED]->(t)
                ON CREATE SET nr.confidence = r.confidence
                """, {
                    'keepId': keep_id,
                    'removeIds': remove_ids
                }).consume()
            records = list(
                tx.run(
                    """
                MATCH (keep:Memory {id: $keepId})
                MATCH (dup:Memory) WHERE dup.id IN $removeIds
                WITH keep, collect(dup) AS dups
                SET keep.importance = reduce(x = keep.importance, d IN dups |
                                             CASE WHEN d.importance > x THEN d.importance ELSE x END),
                    keep.retrievalCount = coalesce(keep.retrievalCount, 0) +
                                          reduce(s = 0, d IN dups | s + coalesce(d.retrievalCount, 0)),
                    keep.updatedAt = $now
                FOREACH (d IN dups | DETACH DELETE d)
                RETURN size(dups) AS removed
                """, {
                        'keepId': keep_id,
                        'removeIds': remove_ids,
                        'now': now_iso()
                    }))
            return int(records[0].get('removed') or 0) if records else 0

        self.ensure_initialized()
        with self._session() as session:
            return session.execute_write(_merge)

    def delete_memories(self, memory_ids: List[str]) -> int:
        """Bulk-delete memories, decrementing mention counts of their entities."""
        ids = [i for i in memory_ids if is_valid_memory_id(i)]
        if len(ids) != len(memory_ids):
            logger.warning(f'Skipping {len(memory_ids) - len(ids)} memory IDs with invalid format')
        if not ids:
            return 0

        self.ensure_initialized()
        with self._session() as session:
            session.run(
                """
                UNWIND $ids AS id
                MATCH (m:Memory {id: id})-[:MENTIONS]->(e:Entity)
                SET e.mentionCount = CASE WHEN coalesce(e.mentionCount, 0) > 0
                                          THEN e.mentionCount - 1 ELSE 0 END
                """, {
                    'ids': ids
                }).consume()
            records = list(
                session.run(
                    """
                UNWIND $ids AS id
                MATCH (m:Memory {id: id})
                DETACH DELETE m
                RETURN count(*) AS deleted
                """, {'ids': ids}))
        return int(records[0].get('deleted') or 0) if records else 0

    def delete_orphan_entities(self) -> int:
        records = self._run("""
            MATCH (e:Entity)
            WHERE NOT (e)<-[:MENTIONS]-(:Memory)
            DETACH DELETE e
            RETURN count(*) AS removed
            """)
        return int(records[0].get('removed') or 0) if records else 0

    def delete_orphan_tags(self) -> int:
        records = self._run("""
            MATCH (t:Tag)
            WHERE NOT (t)<-[:TAGGED]-(:Memory)
            DETACH DELETE t
            RETURN count(*) AS removed
            """)
        return int(records[0].get('removed') or 0) if records else 0
