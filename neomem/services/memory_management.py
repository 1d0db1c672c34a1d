"""
Memory Management Service: capture, recall, forget and consolidation entry points.
"""

import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from ..models.core import SearchSignalResult
from ..models.schema import (CORE_CATEGORY, EXTRACTION_PENDING, EXTRACTION_SKIPPED, MEMORY_CATEGORIES, MEMORY_SOURCES,
                             is_valid_memory_id)
from ..utils.background import BackgroundRunner, get_background_runner
from ..utils.bedrock_embed import BedrockEmbed, BedrockEmbedError
from ..utils.bedrock_llm import BedrockLLM
from ..utils.config import AppConfig, validate_config
from ..utils.logging_config import get_logger
from ..utils.neo4j_client import Neo4jClient
from .attention_gate import noise_label, passes_assistant_attention_gate, passes_attention_gate
from .entity_extraction import extract_assistant_messages, extract_user_messages, run_background_extraction
from .search import hybrid_search
from .sleep_cycle import SleepCycleOptions, SleepCycleResult, run_sleep_cycle

logger = get_logger(__name__)

AUTO_CAPTURE_IMPORTANCE = 0.5
FORGET_MIN_SCORE = 0.7
FORGET_CANDIDATES = 5
FORGET_AUTO_DELETE_SCORE = 0.9
CORE_MEMORY_LIMIT = 50


class MemoryManagementError(Exception):
    """Custom exception for memory management errors."""
    pass


@dataclass
class StoreOutcome:
    """Result of a store call; ``created`` is False when a near-duplicate already existed."""
    id: str
    text: str
    created: bool
    similarity: Optional[float] = None


class MemoryManagementService:
    """Unified service for memory capture, retrieval, deletion and consolidation."""

    def __init__(self,
                 app_config: Optional[AppConfig] = None,
                 store: Optional[Neo4jClient] = None,
                 embeddings: Optional[BedrockEmbed] = None,
                 llm: Optional[BedrockLLM] = None,
                 runner: Optional[BackgroundRunner] = None):
        """
        Initialize the memory management service.

        Args:
            app_config: AppConfig instance, uses the global config if None
            store: Graph store client (built from config if None)
            embeddings: Embedding provider (built from config if None)
            llm: LLM provider (built from config if None)
            runner: Background runner for detached work (shared runner if None)

        Raises:
            ConfigError: If required configuration is missing
        """
        if app_config is None:
            from ..utils.config import config as default_config
            app_config = default_config
        validate_config(app_config)

        self.config = app_config
        self.embeddings = embeddings or BedrockEmbed(app_config.bedrock_embed)
        self.store = store or Neo4jClient(app_config.neo4j, self.embeddings.dimension)
        self.llm = llm or BedrockLLM(app_config.bedrock_llm)
        self.runner = runner or get_background_runner()

        logger.info('Initialized MemoryManagementService')

    @property
    def graph_enabled(self) -> bool:
        return self.config.extraction.enabled

    def store_memory(self,
                     text: str,
                     importance: float = 0.7,
                     category: str = 'other',
                     agent_id: str = 'default',
                     session_key: Optional[str] = None,
                     source: str = 'user') -> StoreOutcome:
        """
        Embed and store a memory, unless a near-duplicate already exists.

        Extraction is detached onto the background runner; this call returns
        before it finishes.

        Args:
            text: Memory text
            importance: Importance in [0, 1]
            category: One of preference, fact, decision, entity, other
            agent_id: Owning agent
            session_key: Optional session identifier
            source: Capture source

        Returns:
            StoreOutcome describing the stored or existing memory

        Raises:
            MemoryManagementError: If input is invalid or storing fails
        """
        text = (text or '').strip()
        if not text:
            raise MemoryManagementError('Memory text is required')
        if category not in MEMORY_CATEGORIES:
            raise MemoryManagementError(f'Invalid category: {category!r}')
        if source not in MEMORY_SOURCES:
            raise MemoryManagementError(f'Invalid source: {source!r}')
        importance = min(1.0, max(0.0, float(importance)))

        try:
            embedding = self.embeddings.embed(text)
        except BedrockEmbedError as e:
            logger.error(f'Embedding failed while storing memory: {e}')
            raise MemoryManagementError(f'Memory store failed: {e}')

        existing = self.store.find_similar(embedding,
                                           threshold=self.config.capture.dedup_threshold,
                                           limit=1,
                                           agent_id=agent_id)
        if existing:
            match = existing[0]
            logger.debug(f"Skipping duplicate of memory {match['id']} (similarity {match['score']:.3f})")
            return StoreOutcome(id=match['id'], text=match['text'], created=False, similarity=match['score'])

        extraction = self.config.extraction
        status = EXTRACTION_PENDING if extraction.enabled else EXTRACTION_SKIPPED
        memory_id = str(uuid.uuid4())

        try:
            self.store.store_memory(memory_id=memory_id,
                                    text=text,
                                    embedding=embedding,
                                    importance=importance,
                                    category=category,
                                    source=source,
                                    extraction_status=status,
                                    agent_id=agent_id,
                                    session_key=session_key)
        except Exception as e:
            logger.error(f'Graph store error while storing memory: {e}')
            raise MemoryManagementError(f'Memory store failed: {e}')

        if extraction.enabled and extraction.on_capture:
            self.runner.submit(run_background_extraction,
                               memory_id,
                               text,
                               self.store,
                               self.embeddings,
                               self.llm,
                               extraction,
                               description=f'extraction for {memory_id[:8]}')

        return StoreOutcome(id=memory_id, text=text, created=True)

    def auto_capture(self, messages: List[Dict[str, Any]], agent_id: str = 'default',
                     session_key: Optional[str] = None) -> int:
        """
        Store the messages of a conversation turn that pass the attention gate.

        Args:
            messages: Chat transcript with 'role' and 'content' keys
            agent_id: Owning agent
            session_key: Optional session identifier

        Returns:
            Number of new memories stored
        """
        if not self.config.capture.auto_capture:
            return 0

        candidates = []
        for text in extract_user_messages(messages):
            if passes_attention_gate(text):
                candidates.append((text, 'auto-capture'))
            else:
                logger.debug(f'Attention gate rejected user message ({noise_label(text) or "heuristics"})')

        if self.config.capture.capture_assistant:
            for text in extract_assistant_messages(messages):
                if passes_assistant_attention_gate(text):
                    candidates.append((text, 'auto-capture-assistant'))

        stored = 0
        for text, source in candidates:
            try:
                outcome = self.store_memory(text,
                                            importance=AUTO_CAPTURE_IMPORTANCE,
                                            category='other',
                                            agent_id=agent_id,
                                            session_key=session_key,
                                            source=source)
                if outcome.created:
                    stored += 1
            except MemoryManagementError as e:
                logger.warning(f'Auto-capture skipped a message: {e}')

        logger.debug(f'Auto-captured {stored} of {len(candidates)} candidate messages for agent {agent_id}')
        return stored

    def recall(self, query: str, limit: int = 5, agent_id: str = 'default') -> List[SearchSignalResult]:
        """Hybrid search over the agent's memories."""
        if not query or not query.strip():
            return []
        search = self.config.search
        return hybrid_search(self.store,
                             self.embeddings,
                             query,
                             limit=limit,
                             agent_id=agent_id,
                             graph_enabled=self.graph_enabled,
                             candidate_multiplier=search.candidate_multiplier,
                             firing_threshold=search.firing_threshold,
                             vector_min_score=search.vector_min_score,
                             runner=self.runner)

    def forget(self, memory_id: Optional[str] = None, query: Optional[str] = None,
               agent_id: str = 'default') -> Dict[str, Any]:
        """
        Delete a memory by id, or find one by query.

        A query deletes automatically only when exactly one candidate matches
        with similarity above 0.9; otherwise the candidates are returned.

        Returns:
            Dict with 'deleted' ids and 'candidates' for the caller to choose from

        Raises:
            MemoryManagementError: If neither argument is usable or the id is invalid
        """
        if memory_id:
            if not is_valid_memory_id(memory_id):
                raise MemoryManagementError(f'Invalid memory ID format: {memory_id!r}')
            deleted = self.store.delete_memory(memory_id)
            return {'deleted': [memory_id] if deleted else [], 'candidates': []}

        if not query or not query.strip():
            raise MemoryManagementError('Either memory_id or query is required')

        try:
            embedding = self.embeddings.embed(query, input_type='search_query')
        except BedrockEmbedError as e:
            raise MemoryManagementError(f'Memory forget failed: {e}')

        candidates = self.store.vector_search(embedding, FORGET_CANDIDATES, FORGET_MIN_SCORE, agent_id)
        if len(candidates) == 1 and candidates[0].score > FORGET_AUTO_DELETE_SCORE:
            deleted = self.store.delete_memory(candidates[0].id)
            return {'deleted': [candidates[0].id] if deleted else [], 'candidates': []}

        return {
            'deleted': [],
            'candidates': [{
                'id': c.id,
                'text': c.text,
                'score': c.score
            } for c in candidates]
        }

    def promote(self, memory_id: str) -> bool:
        """Manually promote a memory to the core tier."""
        if not is_valid_memory_id(memory_id):
            raise MemoryManagementError(f'Invalid memory ID format: {memory_id!r}')
        return self.store.promote_to_core([memory_id]) > 0

    def core_memories(self, agent_id: str = 'default', limit: int = CORE_MEMORY_LIMIT) -> List[Dict[str, Any]]:
        """Load the agent's core tier, most important first."""
        try:
            return self.store.list_by_category(CORE_CATEGORY, limit=limit, agent_id=agent_id)
        except Exception as e:
            logger.error(f'Graph store error while loading core memories: {e}')
            raise MemoryManagementError(f'Loading core memories failed: {e}')

    def stats(self, agent_id: Optional[str] = None) -> Dict[str, Any]:
        return {'total': self.store.count_memories(agent_id), 'breakdown': self.store.get_memory_stats()}

    def sleep(self, **overrides) -> SleepCycleResult:
        """Run a sleep cycle; keyword arguments override SleepCycleOptions fields."""
        options = SleepCycleOptions.from_config(self.config.sleep_cycle, **overrides)
        return run_sleep_cycle(self.store, self.embeddings, self.llm, self.config.extraction, options)

    def close(self, timeout: Optional[float] = 30.0) -> None:
        """Drain detached work and close the graph store connection."""
        if not self.runner.wait(timeout):
            logger.warning('Background tasks still running at shutdown')
        self.store.close()
