"""
Sleep cycle: the periodic seven-phase consolidation job over the memory graph.

Phases run strictly in order:

1. Deduplication     - merge near-identical memories, then duplicate entities
2. Pareto scoring    - effective score per memory and the top-percentile threshold
3. Core promotion    - old-enough regular memories at or above the threshold become core
4. Core demotion     - core memories below the threshold revert to their prior category
5. Extraction        - batched, throttled extraction over pending memories
6. Decay & pruning   - delete faded regular memories and any memory holding credentials
7. Orphan cleanup    - delete entities and tags nothing points at any more

Stopping early (abort requested or a phase raising) keeps the results of the
phases that already ran.
"""

import logging
import math
import re
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..models.schema import CORE_CATEGORY, EXTRACTION_COMPLETE
from ..utils.config import ExtractionConfig, SleepCycleConfig
from ..utils.logging_config import get_logger
from ..utils.timestamp_utils import age_in_days, to_datetime
from .entity_extraction import run_background_extraction

logger = get_logger(__name__)

PHASE_DEDUPLICATION = 'deduplication'
PHASE_PARETO = 'pareto'
PHASE_PROMOTION = 'promotion'
PHASE_DEMOTION = 'demotion'
PHASE_EXTRACTION = 'extraction'
PHASE_DECAY = 'decay'
PHASE_CLEANUP = 'cleanup'

PHASES = (PHASE_DEDUPLICATION, PHASE_PARETO, PHASE_PROMOTION, PHASE_DEMOTION, PHASE_EXTRACTION, PHASE_DECAY,
          PHASE_CLEANUP)

RETRIEVAL_WEIGHT = 0.1
SIMILAR_NEIGHBOURS = 10

# Ordered (pattern, label) table; the first match names the credential kind
CREDENTIAL_PATTERNS: List[Tuple[re.Pattern, str]] = [
    (re.compile(r'-----BEGIN [A-Z ]*PRIVATE KEY-----'), 'Private key'),
    (re.compile(r'\b(sk-[A-Za-z0-9_-]{20,}|api[_-]?key[_-][A-Za-z0-9_-]{16,})', re.IGNORECASE), 'API key'),
    (re.compile(r'\b(AKIA|ASIA)[0-9A-Z]{16}\b'), 'AWS key'),
    (re.compile(r'\b(gh[pousr]_[A-Za-z0-9]{16,}|glpat-[A-Za-z0-9_-]{16,})'), 'GitHub/GitLab token'),
    (re.compile(r'\beyJ[A-Za-z0-9_-]{10,}\.[A-Za-z0-9_-]{10,}\.[A-Za-z0-9_-]{10,}'), 'JWT'),
    (re.compile(r'\bBearer\s+[A-Za-z0-9._~+/=-]{20,}'), 'Bearer token'),
    (re.compile(r'[a-z][a-z0-9+.-]*://[^\s:/@]+:[^\s@/]+@', re.IGNORECASE), 'URL credentials'),
    (re.compile(r'\bpass(word|wd)\s*[:=]\s*\S+', re.IGNORECASE), 'Password assignment'),
    (re.compile(r'\bcreds?\s+[^\s/]+/\S+', re.IGNORECASE), 'Credentials (user/pass)'),
    (re.compile(r'\b(token|secret|client[_-]?secret|access[_-]?token)\s*[:=]\s*[\'"]?[A-Za-z0-9_\-./+=]{20,}',
                re.IGNORECASE), 'Token/secret'),
]


class SleepCycleError(Exception):
    """Custom exception for sleep cycle errors."""
    pass


def detect_credential(text: str) -> Optional[str]:
    """
    Check memory text for credential-like content.

    Args:
        text: Memory text

    Returns:
        Label of the first matching credential pattern, or None for clean text
    """
    for pattern, label in CREDENTIAL_PATTERNS:
        if pattern.search(text or ''):
            return label
    return None


@dataclass
class DedupResult:
    clusters_found: int = 0
    memories_merged: int = 0
    entities_merged: int = 0


@dataclass
class ParetoResult:
    total_memories: int = 0
    core_memories: int = 0
    regular_memories: int = 0
    threshold: float = 0.0


@dataclass
class PromotionResult:
    candidates_found: int = 0
    promoted: int = 0


@dataclass
class DemotionResult:
    candidates_found: int = 0
    demoted: int = 0


@dataclass
class ExtractionPhaseResult:
    total: int = 0
    succeeded: int = 0
    failed: int = 0


@dataclass
class DecayResult:
    memories_pruned: int = 0
    credentials_removed: int = 0


@dataclass
class CleanupResult:
    entities_removed: int = 0
    tags_removed: int = 0


@dataclass
class SleepCycleResult:
    """Aggregated outcome of one run; a phase that never ran stays None."""
    dedup: Optional[DedupResult] = None
    pareto: Optional[ParetoResult] = None
    promotion: Optional[PromotionResult] = None
    demotion: Optional[DemotionResult] = None
    extraction: Optional[ExtractionPhaseResult] = None
    decay: Optional[DecayResult] = None
    cleanup: Optional[CleanupResult] = None
    aborted: bool = False
    duration_ms: int = 0


@dataclass
class SleepCycleOptions:
    """Tunables and hooks for one run."""
    agent_id: Optional[str] = None
    dedup_threshold: float = 0.95
    pareto_percentile: float = 0.2
    promotion_min_age_days: float = 7.0
    decay_retention_threshold: float = 0.1
    decay_base_half_life_days: float = 30.0
    extraction_batch_size: int = 50
    extraction_delay_ms: int = 1000
    retry_failed_extractions: bool = False
    on_phase_start: Optional[Callable[[str], None]] = None
    on_progress: Optional[Callable[[str, str], None]] = None
    abort_event: threading.Event = field(default_factory=threading.Event)
    now: Optional[datetime] = None

    @classmethod
    def from_config(cls, sleep_config: SleepCycleConfig, **overrides) -> 'SleepCycleOptions':
        values = dict(dedup_threshold=sleep_config.dedup_threshold,
                      pareto_percentile=sleep_config.pareto_percentile,
                      promotion_min_age_days=sleep_config.promotion_min_age_days,
                      decay_retention_threshold=sleep_config.decay_retention_threshold,
                      decay_base_half_life_days=sleep_config.decay_base_half_life_days,
                      extraction_batch_size=sleep_config.extraction_batch_size,
                      extraction_delay_ms=sleep_config.extraction_delay_ms,
                      retry_failed_extractions=sleep_config.retry_failed_extractions)
        values.update(overrides)
        return cls(**values)


# ---------------------------------------------------------------------------
# Scoring
# ---------------------------------------------------------------------------


def memory_age_days(memory: Dict[str, Any], now: datetime) -> float:
    """Days since the memory was created or last retrieved, whichever is later."""
    ages = [age_in_days(memory.get(key), now) for key in ('createdAt', 'lastRetrievedAt') if to_datetime(memory.get(key))]
    return min(ages) if ages else 0.0


def decayed_importance(memory: Dict[str, Any], now: datetime, base_half_life_days: float) -> float:
    """Importance decayed with a half-life that grows with importance."""
    importance = float(memory.get('importance') or 0.0)
    half_life = base_half_life_days * (1.0 + importance)
    return importance * math.pow(2.0, -memory_age_days(memory, now) / half_life)


def effective_score(memory: Dict[str, Any], now: datetime, base_half_life_days: float) -> float:
    """Decayed importance plus a logarithmic bonus for how often the memory was retrieved."""
    retrievals = int(memory.get('retrievalCount') or 0)
    return decayed_importance(memory, now, base_half_life_days) + RETRIEVAL_WEIGHT * math.log1p(max(0, retrievals))


def pareto_threshold(scores: List[float], percentile: float) -> float:
    """Score at rank ceil(n * percentile) of the descending order; 0.0 for no scores."""
    if not scores:
        return 0.0
    ranked = sorted(scores, reverse=True)
    rank = min(len(ranked), max(1, math.ceil(len(ranked) * percentile)))
    return ranked[rank - 1]


def choose_canonical(memories: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Highest importance wins, then most retrievals, then the oldest."""

    def _created(memory):
        dt = to_datetime(memory.get('createdAt'))
        return dt.timestamp() if dt else float('inf')

    return sorted(memories,
                  key=lambda m: (-float(m.get('importance') or 0.0), -int(m.get('retrievalCount') or 0), _created(m)))[0]


class _UnionFind:

    def __init__(self):
        self.parent: Dict[str, str] = {}

    def find(self, x: str) -> str:
        self.parent.setdefault(x, x)
        while self.parent[x] != x:
            self.parent[x] = self.parent[self.parent[x]]
            x = self.parent[x]
        return x

    def union(self, a: str, b: str) -> None:
        root_a, root_b = self.find(a), self.find(b)
        if root_a != root_b:
            self.parent[root_b] = root_a


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

_AGENT_LOCKS: Dict[str, threading.Lock] = {}
_AGENT_LOCKS_GUARD = threading.Lock()


def _agent_lock(agent_id: Optional[str]) -> threading.Lock:
    key = agent_id or '*'
    with _AGENT_LOCKS_GUARD:
        return _AGENT_LOCKS.setdefault(key, threading.Lock())


class SleepCycle:
    """Runs the consolidation phases for one agent (or all agents) against a graph store."""

    def __init__(self,
                 store,
                 embeddings,
                 llm,
                 extraction_config: ExtractionConfig,
                 options: SleepCycleOptions,
                 log: Optional[logging.Logger] = None):
        self.store = store
        self.embeddings = embeddings
        self.llm = llm
        self.extraction_config = extraction_config
        self.options = options
        self.log = log or logger
        self.now = options.now or datetime.now(timezone.utc)
        self.threshold = 0.0
        self._scored: List[Tuple[Dict[str, Any], float]] = []

    def _progress(self, phase: str, message: str) -> None:
        self.log.info(f'Sleep cycle [{phase}] {message}')
        if self.options.on_progress:
            self.options.on_progress(phase, message)

    def _load_memories(self) -> List[Dict[str, Any]]:
        return self.store.list_memories_for_consolidation(self.options.agent_id)

    def _score(self, memory: Dict[str, Any]) -> float:
        return effective_score(memory, self.now, self.options.decay_base_half_life_days)

    # Phase 1
    def deduplicate(self) -> DedupResult:
        result = DedupResult()
        memories = self._load_memories()
        by_id = {m['id']: m for m in memories}
        union_find = _UnionFind()

        for memory in memories:
            embedding = memory.get('embedding')
            if not embedding:
                continue
            similar = self.store.find_similar(embedding,
                                              threshold=self.options.dedup_threshold,
                                              limit=SIMILAR_NEIGHBOURS,
                                              agent_id=memory.get('agentId') or self.options.agent_id)
            for match in similar:
                other_id = match.get('id')
                if other_id and other_id != memory['id'] and other_id in by_id:
                    union_find.union(memory['id'], other_id)

        clusters: Dict[str, List[Dict[str, Any]]] = {}
        for memory_id in union_find.parent:
            clusters.setdefault(union_find.find(memory_id), []).append(by_id[memory_id])

        for members in clusters.values():
            if len(members) < 2:
                continue
            result.clusters_found += 1
            keep = choose_canonical(members)
            remove_ids = [m['id'] for m in members if m['id'] != keep['id']]
            result.memories_merged += self.store.merge_memory_cluster(keep['id'], remove_ids)

        self._progress(PHASE_DEDUPLICATION, f'merged {result.memories_merged} memories in {result.clusters_found} clusters')

        removed = set()
        for pair in self.store.find_duplicate_entity_pairs():
            if pair.keep_id in removed or pair.remove_id in removed:
                continue
            if self.store.merge_entity_pair(pair.keep_id, pair.remove_id):
                removed.add(pair.remove_id)
                result.entities_merged += 1
                self.log.debug(f"Merged entity '{pair.remove_name}' into '{pair.keep_name}'")

        reconciled = self.store.reconcile_entity_mention_counts()
        self._progress(PHASE_DEDUPLICATION, f'merged {result.entities_merged} entities, reconciled {reconciled} counts')
        return result

    def _will_be_pruned(self, memory: Dict[str, Any]) -> bool:
        """Whether phase 6 deletes this memory on the current run."""
        if detect_credential(memory.get('text') or ''):
            return True
        if memory.get('category') == CORE_CATEGORY:
            return False
        retention = decayed_importance(memory, self.now, self.options.decay_base_half_life_days)
        return retention < self.options.decay_retention_threshold

    # Phase 2
    def score(self) -> ParetoResult:
        # The scored population excludes memories phase 6 deletes
        memories = [m for m in self._load_memories() if not self._will_be_pruned(m)]
        self._scored = [(m, self._score(m)) for m in memories]
        self.threshold = pareto_threshold([s for _, s in self._scored], self.options.pareto_percentile)

        core = sum(1 for m, _ in self._scored if m.get('category') == CORE_CATEGORY)
        result = ParetoResult(total_memories=len(memories),
                              core_memories=core,
                              regular_memories=len(memories) - core,
                              threshold=self.threshold)
        self._progress(PHASE_PARETO, f'{result.total_memories} memories, threshold {result.threshold:.4f}')
        return result

    # Phase 3
    def promote(self) -> PromotionResult:
        candidates = [
            m['id'] for m, s in self._scored
            if m.get('category') != CORE_CATEGORY and s > 0 and s >= self.threshold
            and age_in_days(m.get('createdAt'), self.now) >= self.options.promotion_min_age_days
        ]
        promoted = self.store.promote_to_core(candidates) if candidates else 0
        self._progress(PHASE_PROMOTION, f'promoted {promoted} of {len(candidates)} candidates')
        return PromotionResult(candidates_found=len(candidates), promoted=promoted)

    # Phase 4
    def demote(self) -> DemotionResult:
        candidates = [m['id'] for m, s in self._scored if m.get('category') == CORE_CATEGORY and s < self.threshold]
        demoted = self.store.demote_from_core(candidates) if candidates else 0
        self._progress(PHASE_DEMOTION, f'demoted {demoted} of {len(candidates)} candidates')
        return DemotionResult(candidates_found=len(candidates), demoted=demoted)

    # Phase 5
    def extract(self) -> ExtractionPhaseResult:
        result = ExtractionPhaseResult()
        if not self.extraction_config.enabled:
            self._progress(PHASE_EXTRACTION, 'extraction disabled, skipping')
            return result

        if self.options.retry_failed_extractions:
            reset = self.store.reset_failed_extractions(self.options.agent_id)
            self.log.info(f'Reset {reset} failed extractions to pending')

        pending = self.store.list_pending_extractions(self.options.agent_id)
        result.total = len(pending)
        batch_size = max(1, int(self.options.extraction_batch_size))
        workers = max(1, int(self.extraction_config.max_workers))

        for start in range(0, len(pending), batch_size):
            if start > 0:
                # Throttle between batches; an abort request cuts the wait short
                if self.options.abort_event.wait(self.options.extraction_delay_ms / 1000.0):
                    self._progress(PHASE_EXTRACTION, 'abort requested, stopping extraction')
                    break

            batch = pending[start:start + batch_size]
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix='neomem-sleep') as executor:
                statuses = list(
                    executor.map(
                        lambda m: run_background_extraction(m['id'], m['text'], self.store, self.embeddings, self.llm,
                                                            self.extraction_config, self.log), batch))

            ok = sum(1 for s in statuses if s == EXTRACTION_COMPLETE)
            result.succeeded += ok
            result.failed += len(statuses) - ok
            self._progress(PHASE_EXTRACTION, f'{start + len(batch)}/{result.total} processed')

        return result

    # Phase 6
    def decay(self) -> DecayResult:
        result = DecayResult()
        pruned, credentials = [], []
        for memory in self._load_memories():
            label = detect_credential(memory.get('text') or '')
            if label:
                credentials.append(memory['id'])
                self.log.warning(f"Removing memory {memory['id'][:8]} containing credentials ({label})")
                continue
            if self._will_be_pruned(memory):
                pruned.append(memory['id'])

        if credentials:
            result.credentials_removed = self.store.delete_memories(credentials)
        if pruned:
            result.memories_pruned = self.store.delete_memories(pruned)
        self._progress(PHASE_DECAY,
                       f'pruned {result.memories_pruned} memories, removed {result.credentials_removed} with credentials')
        return result

    # Phase 7
    def cleanup(self) -> CleanupResult:
        result = CleanupResult(entities_removed=self.store.delete_orphan_entities(),
                               tags_removed=self.store.delete_orphan_tags())
        self._progress(PHASE_CLEANUP, f'removed {result.entities_removed} entities, {result.tags_removed} tags')
        return result

    def run(self) -> SleepCycleResult:
        """
        Run all phases in order.

        Returns:
            SleepCycleResult with every completed phase filled in

        Raises:
            SleepCycleError: If a cycle is already running for the same agent
        """
        lock = _agent_lock(self.options.agent_id)
        if not lock.acquire(blocking=False):
            raise SleepCycleError(f'Sleep cycle already running for agent {self.options.agent_id or "*"}')

        started = time.monotonic()
        result = SleepCycleResult()
        steps = ((PHASE_DEDUPLICATION, 'dedup', self.deduplicate), (PHASE_PARETO, 'pareto', self.score),
                 (PHASE_PROMOTION, 'promotion', self.promote), (PHASE_DEMOTION, 'demotion', self.demote),
                 (PHASE_EXTRACTION, 'extraction', self.extract), (PHASE_DECAY, 'decay', self.decay),
                 (PHASE_CLEANUP, 'cleanup', self.cleanup))
        try:
            for phase, attr, step in steps:
                if self.options.abort_event.is_set():
                    self.log.info(f'Sleep cycle aborted before {phase}')
                    result.aborted = True
                    break
                if self.options.on_phase_start:
                    self.options.on_phase_start(phase)
                try:
                    setattr(result, attr, step())
                except Exception as e:
                    self.log.error(f'Sleep cycle phase {phase} failed, stopping: {e}')
                    result.aborted = True
                    break
        finally:
            lock.release()

        result.duration_ms = int((time.monotonic() - started) * 1000)
        self.log.info(f'Sleep cycle finished in {result.duration_ms}ms (aborted={result.aborted})')
        return result


def run_sleep_cycle(store,
                    embeddings,
                    llm,
                    extraction_config: ExtractionConfig,
                    options: Optional[SleepCycleOptions] = None,
                    log: Optional[logging.Logger] = None) -> SleepCycleResult:
    """
    Run one consolidation cycle.

    Args:
        store: Graph store client (Neo4jClient)
        embeddings: Embedding provider
        llm: LLM provider used by the extraction phase
        extraction_config: Extraction configuration
        options: Cycle tunables and hooks (defaults if None)
        log: Logger to report through (module logger if None)

    Returns:
        SleepCycleResult; an aborted run still carries the completed phases

    Raises:
        SleepCycleError: If a cycle is already running for the same agent
    """
    return SleepCycle(store, embeddings, llm, extraction_config, options or SleepCycleOptions(), log).run()
