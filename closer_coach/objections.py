import time
import random
import logging
import threading
from typing import List, Dict, Any, Optional, Callable, Tuple

from .schemas import (
    Objection, TranscriptSegment, CallObjectionData, ObjectionStats,
    CategoryStats, RepObjectionStats, TopObjection, BestResponse
)
from .prompts import OBJECTION_SYSTEM_MESSAGE, build_objection_prompt
from .llm_scorer import LLMScorer, ResponseFormatError
from .scoring import round_half_up

logger = logging.getLogger(__name__)


OBJECTION_CACHE_TTL = 24 * 60 * 60
PRUNE_PROBABILITY = 0.01
MIN_SEGMENTS = 5

TOP_OBJECTIONS_LIMIT = 10
BEST_RESPONSES_LIMIT = 5
BEST_RESPONSE_MIN_SCORE = 80
OBJECTION_KEY_LENGTH = 100


class ObjectionCache:
    """Per-call objection lists kept for a fixed TTL.

    Expired entries are dropped when read. ``maybe_prune`` sweeps the whole map
    with a small probability so the cache cannot grow without bound.
    """

    def __init__(self, ttl_seconds: float = OBJECTION_CACHE_TTL,
                 prune_probability: float = PRUNE_PROBABILITY,
                 clock: Callable[[], float] = time.time,
                 rng: Callable[[], float] = random.random):
        self.ttl_seconds = ttl_seconds
        self.prune_probability = prune_probability
        self._clock = clock
        self._rng = rng
        self._entries: Dict[str, Tuple[List[Objection], float]] = {}
        self._lock = threading.Lock()

    def __len__(self):
        with self._lock:
            return len(self._entries)

    def _expired(self, extracted_at: float, now: float) -> bool:
        return now - extracted_at >= self.ttl_seconds

    def get(self, call_id: str) -> Optional[List[Objection]]:
        with self._lock:
            entry = self._entries.get(call_id)
            if entry is None:
                return None
            objections, extracted_at = entry
            if self._expired(extracted_at, self._clock()):
                del self._entries[call_id]
                return None
            return list(objections)

    def set(self, call_id: str, objections: List[Objection]):
        with self._lock:
            self._entries[call_id] = (list(objections), self._clock())

    def invalidate(self, call_id: str):
        with self._lock:
            self._entries.pop(call_id, None)

    def prune(self) -> int:
        with self._lock:
            now = self._clock()
            expired = [k for k, (_, at) in self._entries.items() if self._expired(at, now)]
            for key in expired:
                del self._entries[key]
        if expired:
            logger.info(f"Pruned {len(expired)} expired objection cache entries")
        return len(expired)

    def maybe_prune(self) -> bool:
        if self._rng() < self.prune_probability:
            self.prune()
            return True
        return False


def parse_objections(data: Any) -> List[Objection]:
    """Accept either a bare array or {"objections": [...]}"""
    if isinstance(data, list):
        items = data
    elif isinstance(data, dict):
        items = data.get("objections", [])
    else:
        raise ResponseFormatError(f"Unexpected objection payload type: {type(data).__name__}")

    if not isinstance(items, list):
        raise ResponseFormatError("'objections' must be a list")
    return [Objection.model_validate(item) for item in items]


class ObjectionClassifier:
    def __init__(self, scorer: LLMScorer, cache: Optional[ObjectionCache] = None,
                 min_segments: int = MIN_SEGMENTS):
        self.scorer = scorer
        self.cache = cache if cache is not None else ObjectionCache()
        self.min_segments = min_segments

    def classify(self, call_id: str, transcript: List[TranscriptSegment]) -> List[Objection]:
        """Extract and grade every prospect objection; never raises, [] on failure"""
        self.cache.maybe_prune()

        cached = self.cache.get(call_id)
        if cached is not None:
            logger.debug(f"[{call_id}] Objections served from cache")
            return cached

        if len(transcript) < self.min_segments:
            logger.info(f"[{call_id}] Transcript too short for objection analysis ({len(transcript)} segments)")
            return []

        objections = self.scorer.complete_json(
            OBJECTION_SYSTEM_MESSAGE,
            build_objection_prompt(transcript),
            parse_objections,
            label=f"{call_id}:objections",
        )
        if objections is None:
            return []

        self.cache.set(call_id, objections)
        logger.info(f"[{call_id}] Found {len(objections)} objections")
        return objections


def _mean(values: List[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def _percent(part: int, whole: int) -> int:
    return int(round_half_up(part / whole * 100, 0)) if whole else 0


def _rounded(value: float) -> int:
    return int(round_half_up(value, 0))


def calculate_objection_stats(calls: List[CallObjectionData]) -> ObjectionStats:
    """Pure rollup of objections across calls, by category, by rep and by wording"""
    rows = [(call, obj) for call in calls for obj in call.objections]
    if not rows:
        return ObjectionStats()

    objections = [obj for _, obj in rows]
    total = len(objections)

    by_category_map: Dict[str, List[Objection]] = {}
    for obj in objections:
        by_category_map.setdefault(obj.category, []).append(obj)

    by_category = [
        CategoryStats(
            category=category,
            count=len(objs),
            avg_score=_rounded(_mean([o.handling_score for o in objs])),
            success_rate=_percent(sum(1 for o in objs if o.outcome_after == "handled_well"), len(objs)),
            aaa_rate=_percent(sum(1 for o in objs if o.used_aaa), len(objs)),
        )
        for category, objs in by_category_map.items()
    ]
    by_category.sort(key=lambda c: c.count, reverse=True)

    by_rep_map: Dict[str, List[Tuple[CallObjectionData, Objection]]] = {}
    for call, obj in rows:
        by_rep_map.setdefault(call.rep_id, []).append((call, obj))

    by_rep = []
    for rep_id, rep_rows in by_rep_map.items():
        objs = [o for _, o in rep_rows]
        category_scores: Dict[str, List[float]] = {}
        for o in objs:
            category_scores.setdefault(o.category, []).append(o.handling_score)

        strongest, weakest = "", ""
        highest, lowest = -1.0, 101.0
        for category, scores in category_scores.items():
            avg = _mean(scores)
            if avg > highest:
                highest, strongest = avg, category
            if avg < lowest:
                lowest, weakest = avg, category

        by_rep.append(RepObjectionStats(
            rep_id=rep_id,
            rep_name=rep_rows[0][0].rep_name or "Unknown",
            total_objections=len(objs),
            avg_handling_score=_rounded(_mean([o.handling_score for o in objs])),
            success_rate=_percent(sum(1 for o in objs if o.outcome_after == "handled_well"), len(objs)),
            aaa_rate=_percent(sum(1 for o in objs if o.used_aaa), len(objs)),
            strongest_category=strongest,
            weakest_category=weakest,
        ))
    by_rep.sort(key=lambda r: r.avg_handling_score, reverse=True)

    grouped: Dict[str, Dict[str, Any]] = {}
    for obj in objections:
        key = obj.objection.lower()[:OBJECTION_KEY_LENGTH]
        entry = grouped.setdefault(key, {"category": obj.category, "scores": []})
        entry["scores"].append(obj.handling_score)

    top_objections = [
        TopObjection(
            objection=key,
            category=entry["category"],
            frequency=len(entry["scores"]),
            avg_handling_score=_rounded(_mean(entry["scores"])),
        )
        for key, entry in grouped.items()
    ]
    top_objections.sort(key=lambda t: t.frequency, reverse=True)

    best = [
        (call, obj) for call, obj in rows
        if obj.handling_score >= BEST_RESPONSE_MIN_SCORE and obj.rep_response
    ]
    best.sort(key=lambda row: row[1].handling_score, reverse=True)
    best_responses = [
        BestResponse(
            objection=obj.objection,
            category=obj.category,
            response=obj.rep_response,
            score=obj.handling_score,
            rep_name=call.rep_name,
        )
        for call, obj in best[:BEST_RESPONSES_LIMIT]
    ]

    return ObjectionStats(
        total_objections=total,
        avg_handling_score=_rounded(_mean([o.handling_score for o in objections])),
        aaa_usage_rate=_percent(sum(1 for o in objections if o.used_aaa), total),
        by_category=by_category,
        by_rep=by_rep,
        top_objections=top_objections[:TOP_OBJECTIONS_LIMIT],
        best_responses=best_responses,
    )
