"""
Hybrid search: fuses vector, BM25 and graph signals into one ranked list.

Each signal normalizes its own scores to 0-1. Per-query adaptive weights are
chosen from a cheap classification of the query text, the weighted scores are
summed per memory id, and the fused list is re-normalized so the best hit
scores 1.0.
"""

import re
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, List, Optional, Tuple

from ..models.core import SearchSignalResult
from ..utils.background import BackgroundRunner, get_background_runner
from ..utils.logging_config import get_logger

logger = get_logger(__name__)

QUERY_SHORT = 'short'
QUERY_ENTITY = 'entity'
QUERY_LONG = 'long'
QUERY_DEFAULT = 'default'

DEFAULT_CANDIDATE_MULTIPLIER = 6
DEFAULT_FIRING_THRESHOLD = 0.3
VECTOR_MIN_SCORE = 0.1

# [vector, bm25, graph]
ADAPTIVE_WEIGHTS: Dict[str, Tuple[float, float, float]] = {
    QUERY_SHORT: (0.8, 1.2, 1.0),
    QUERY_ENTITY: (0.8, 1.0, 1.3),
    QUERY_LONG: (1.2, 0.7, 0.8),
    QUERY_DEFAULT: (1.0, 1.0, 1.0),
}

# Capitalized words that do not indicate a named entity
COMMON_CAPITALIZED_WORDS = frozenset(
    ('The', 'Is', 'Are', 'What', 'How', 'Why', 'When', 'Where', 'Who', 'Which', 'Do', 'Does', 'Did', 'Can', 'Could',
     'Should', 'Would', 'Will', 'I', 'My', 'A', 'An', 'And', 'Or', 'But', 'In', 'On', 'At', 'To', 'For', 'Of', 'With',
     'It', 'This', 'That'))

_ENTITY_QUESTION = re.compile(r'\b(who is|where is|what does)\b', re.IGNORECASE)
_CAPITALIZED = re.compile(r'^[A-Z][A-Za-z0-9]*')


def classify_query(query: str) -> str:
    """
    Classify a query to pick signal weights.

    Args:
        query: Raw query text

    Returns:
        One of 'short', 'entity', 'long' or 'default'
    """
    words = (query or '').split()

    if len(words) <= 2:
        return QUERY_SHORT
    if len(words) >= 5:
        return QUERY_LONG

    for word in words:
        match = _CAPITALIZED.match(word)
        if match and match.group(0) not in COMMON_CAPITALIZED_WORDS:
            return QUERY_ENTITY
    if _ENTITY_QUESTION.search(query):
        return QUERY_ENTITY

    return QUERY_DEFAULT


def get_adaptive_weights(query_type: str, graph_enabled: bool) -> List[float]:
    """Return [vector, bm25, graph] weights; the graph weight is 0 when the graph signal is off."""
    vector_w, bm25_w, graph_w = ADAPTIVE_WEIGHTS.get(query_type, ADAPTIVE_WEIGHTS[QUERY_DEFAULT])
    return [vector_w, bm25_w, graph_w if graph_enabled else 0.0]


def _record_retrievals(store, memory_ids: List[str]) -> None:
    try:
        store.record_retrievals(memory_ids)
    except Exception as e:
        logger.debug(f'Recording retrievals failed: {e}')


def fuse_signals(signals: List[Tuple[List[SearchSignalResult], float]], limit: int) -> List[SearchSignalResult]:
    """
    Combine per-signal results into one ranking.

    Weighted scores are summed per memory id, so a memory returned by several
    signals appears once with a boosted score. Final scores are divided by the
    top score.

    Args:
        signals: (results, weight) pairs
        limit: Maximum number of results

    Returns:
        Fused results, best first
    """
    fused: Dict[str, SearchSignalResult] = {}
    for results, weight in signals:
        if weight <= 0:
            continue
        for result in results:
            contribution = result.score * weight
            existing = fused.get(result.id)
            if existing is None:
                fused[result.id] = SearchSignalResult(id=result.id,
                                                      text=result.text,
                                                      category=result.category,
                                                      importance=result.importance,
                                                      created_at=result.created_at,
                                                      score=contribution)
            else:
                existing.score += contribution

    ranked = sorted(fused.values(), key=lambda r: r.score, reverse=True)
    if not ranked:
        return []

    top_score = ranked[0].score
    if top_score > 0:
        for result in ranked:
            result.score = result.score / top_score
    return ranked[:limit]


def hybrid_search(store,
                  embeddings,
                  query: str,
                  limit: int = 5,
                  agent_id: str = 'default',
                  graph_enabled: bool = False,
                  candidate_multiplier: int = DEFAULT_CANDIDATE_MULTIPLIER,
                  firing_threshold: float = DEFAULT_FIRING_THRESHOLD,
                  vector_min_score: float = VECTOR_MIN_SCORE,
                  runner: Optional[BackgroundRunner] = None) -> List[SearchSignalResult]:
    """
    Run the hybrid search pipeline for one query.

    Args:
        store: Graph store client (Neo4jClient)
        embeddings: Embedding provider
        query: Query text
        limit: Maximum number of results
        agent_id: Agent whose memories are searched
        graph_enabled: Whether to include the graph signal
        candidate_multiplier: Each signal returns up to limit * multiplier candidates
        firing_threshold: Minimum hop confidence for the graph signal
        vector_min_score: Minimum cosine similarity for vector candidates
        runner: Background runner used for retrieval telemetry

    Returns:
        Ranked results with scores in 0-1; empty when no signal has candidates
    """
    candidate_limit = int(limit * candidate_multiplier)
    query_type = classify_query(query)
    vector_w, bm25_w, graph_w = get_adaptive_weights(query_type, graph_enabled)

    embedding = None
    try:
        embedding = embeddings.embed(query, input_type='search_query')
    except Exception as e:
        logger.warning(f'Query embedding failed, skipping vector signal: {e}')

    with ThreadPoolExecutor(max_workers=3, thread_name_prefix='neomem-search') as executor:
        vector_future = None
        if embedding is not None:
            vector_future = executor.submit(store.vector_search, embedding, candidate_limit, vector_min_score, agent_id)
        bm25_future = executor.submit(store.bm25_search, query, candidate_limit, agent_id)
        graph_future = None
        if graph_enabled:
            graph_future = executor.submit(store.graph_search, query, candidate_limit, firing_threshold, agent_id)

        signals = []
        for future, weight, name in ((vector_future, vector_w, 'vector'), (bm25_future, bm25_w, 'bm25'),
                                     (graph_future, graph_w, 'graph')):
            if future is None:
                continue
            try:
                signals.append((future.result() or [], weight))
            except Exception as e:
                logger.warning(f'{name} signal failed: {e}')

    results = fuse_signals(signals, limit)
    logger.debug(f'Hybrid search ({query_type}) for agent {agent_id} returned {len(results)} results')

    if results:
        (runner or get_background_runner()).submit(_record_retrievals,
                                                   store, [r.id for r in results],
                                                   description='retrieval telemetry')
    return results
