"""Match catalog minifigure names against scraped Brickset listing names.

Catalog names come from Rebrickable, listing names from Brickset; the two
spell variants differently ("Luke Skywalker, Tatooine" vs
"Luke Skywalker (Tatooine, Light Nougat Hands)") and share no key. A name is
resolved with a four-step cascade, stopping at the first step that accepts:

1. exact match on the normalized name
2. same base name (text before the first comma/parenthesis), best word
   overlap, accepted at >= 0.2
3. weighted base/full word overlap over the whole pool, accepted at >= 0.4
4. Levenshtein distance between base names, only for base names of at most
   15 characters, accepted within max(2, 0.3 * length)

Ties keep the first record in pool order. The thresholds are calibrated
against the live data; changing them changes which ids get priced.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from rapidfuzz.distance import Levenshtein

from refresh_common import collapse_ws, parse_float


STRATEGY_EXACT = "exact"
STRATEGY_BASE_NAME = "base-name"
STRATEGY_WEIGHTED = "weighted-similarity"
STRATEGY_EDIT_DISTANCE = "edit-distance"

BASE_NAME_MIN_SIMILARITY = 0.2
WEIGHTED_MIN_SIMILARITY = 0.4
BASE_NAME_WEIGHT = 0.7
FULL_NAME_WEIGHT = 0.3
EDIT_DISTANCE_MAX_BASE_LENGTH = 15
EDIT_DISTANCE_MIN_ALLOWANCE = 2
EDIT_DISTANCE_RATIO = 0.3

_NON_ALNUM_RE = re.compile(r"[^a-z0-9\s]")
_BASE_SPLIT_RE = re.compile(r"[,(]")
_TRAILING_DASH_RE = re.compile(r"\s*-\s*$")


@dataclass(frozen=True)
class ExternalPriceRecord:
    bricklink_id: str
    name: str
    value_new: Optional[float]
    value_used: Optional[float]

    def to_json(self) -> Dict[str, Any]:
        return {
            "bricklinkId": self.bricklink_id,
            "name": self.name,
            "valueNew": self.value_new,
            "valueUsed": self.value_used,
        }

    @classmethod
    def from_json(cls, row: Dict[str, Any]) -> Optional["ExternalPriceRecord"]:
        bricklink_id = collapse_ws(row.get("bricklinkId")).lower()
        name = collapse_ws(row.get("name"))
        if not bricklink_id and not name:
            return None
        return cls(
            bricklink_id=bricklink_id,
            name=name,
            value_new=parse_float(row.get("valueNew")),
            value_used=parse_float(row.get("valueUsed")),
        )


@dataclass(frozen=True)
class MatchResult:
    record: Optional[ExternalPriceRecord]
    strategy: Optional[str]
    score: Optional[float]

    @property
    def matched(self) -> bool:
        return self.record is not None


UNMATCHED = MatchResult(record=None, strategy=None, score=None)


def normalize(name: str) -> str:
    text = str(name or "").lower()
    text = _NON_ALNUM_RE.sub("", text)
    return re.sub(r"\s+", " ", text).strip()


def base_name(name: str) -> str:
    base = _BASE_SPLIT_RE.split(str(name or ""), maxsplit=1)[0].strip()
    base = _TRAILING_DASH_RE.sub("", base)
    return normalize(base)


def word_tokens(text: str) -> Set[str]:
    return {word for word in normalize(text).split(" ") if len(word) > 1}


def jaccard(words_a: Set[str], words_b: Set[str]) -> float:
    if not words_a or not words_b:
        return 0.0
    return len(words_a & words_b) / len(words_a | words_b)


def word_similarity(a: str, b: str) -> float:
    return jaccard(word_tokens(a), word_tokens(b))


def weighted_similarity(catalog_name: str, candidate_name: str) -> float:
    return _weighted(
        word_tokens(base_name(catalog_name)),
        word_tokens(catalog_name),
        word_tokens(base_name(candidate_name)),
        word_tokens(candidate_name),
    )


def _weighted(cat_base: Set[str], cat_full: Set[str], cand_base: Set[str], cand_full: Set[str]) -> float:
    if cat_base and not (cat_base & cand_base):
        return 0.0
    return BASE_NAME_WEIGHT * jaccard(cat_base, cand_base) + FULL_NAME_WEIGHT * jaccard(cat_full, cand_full)


def edit_distance(a: str, b: str) -> int:
    return Levenshtein.distance(a, b)


def edit_distance_allowance(base_length: int) -> float:
    return max(EDIT_DISTANCE_MIN_ALLOWANCE, EDIT_DISTANCE_RATIO * base_length)


@dataclass(frozen=True)
class IndexedRecord:
    record: ExternalPriceRecord
    normalized: str
    base: str
    base_words: frozenset
    words: frozenset


class PoolIndex:
    """Lookup tables over one scraped pool, built once per matching run."""

    def __init__(self, pool: Iterable[ExternalPriceRecord]) -> None:
        self.entries: List[IndexedRecord] = []
        self.by_normalized: Dict[str, IndexedRecord] = {}
        self.by_base_name: Dict[str, List[IndexedRecord]] = {}
        for record in pool:
            base = base_name(record.name)
            entry = IndexedRecord(
                record=record,
                normalized=normalize(record.name),
                base=base,
                base_words=frozenset(word_tokens(base)),
                words=frozenset(word_tokens(record.name)),
            )
            self.entries.append(entry)
            if entry.normalized:
                self.by_normalized.setdefault(entry.normalized, entry)
            self.by_base_name.setdefault(base, []).append(entry)

    def __len__(self) -> int:
        return len(self.entries)


class NameMatcher:
    def __init__(self, pool: Iterable[ExternalPriceRecord] = (), *, index: Optional[PoolIndex] = None) -> None:
        self.index = index if index is not None else PoolIndex(pool)

    def resolve(self, catalog_name: str) -> MatchResult:
        normalized = normalize(catalog_name)
        if not normalized:
            return UNMATCHED

        base = base_name(catalog_name)
        base_words = word_tokens(base)
        words = word_tokens(catalog_name)

        for attempt in (
            lambda: self._exact(normalized),
            lambda: self._same_base_name(base, base_words, words),
            lambda: self._weighted_scan(base_words, words),
            lambda: self._edit_distance(base),
        ):
            result = attempt()
            if result is not None:
                return result
        return UNMATCHED

    def _exact(self, normalized: str) -> Optional[MatchResult]:
        entry = self.index.by_normalized.get(normalized)
        if entry is None:
            return None
        return MatchResult(record=entry.record, strategy=STRATEGY_EXACT, score=1.0)

    def _same_base_name(self, base: str, base_words: Set[str], words: Set[str]) -> Optional[MatchResult]:
        candidates = self.index.by_base_name.get(base)
        if not candidates:
            return None
        best: Optional[IndexedRecord] = None
        best_score = 0.0
        for entry in candidates:
            if not (base_words & entry.base_words):
                continue
            score = jaccard(words, entry.words)
            if score > best_score:
                best_score = score
                best = entry
        if best is None or best_score < BASE_NAME_MIN_SIMILARITY:
            return None
        return MatchResult(record=best.record, strategy=STRATEGY_BASE_NAME, score=best_score)

    def _weighted_scan(self, base_words: Set[str], words: Set[str]) -> Optional[MatchResult]:
        best: Optional[IndexedRecord] = None
        best_score = 0.0
        for entry in self.index.entries:
            score = _weighted(base_words, words, entry.base_words, entry.words)
            if score > best_score:
                best_score = score
                best = entry
        if best is None or best_score < WEIGHTED_MIN_SIMILARITY:
            return None
        return MatchResult(record=best.record, strategy=STRATEGY_WEIGHTED, score=best_score)

    def _edit_distance(self, base: str) -> Optional[MatchResult]:
        if len(base) > EDIT_DISTANCE_MAX_BASE_LENGTH:
            return None
        best: Optional[IndexedRecord] = None
        best_distance: Optional[int] = None
        for entry in self.index.entries:
            distance = edit_distance(base, entry.base)
            if best_distance is None or distance < best_distance:
                best_distance = distance
                best = entry
        if best is None or best_distance is None:
            return None
        if best_distance > edit_distance_allowance(len(base)):
            return None
        return MatchResult(record=best.record, strategy=STRATEGY_EDIT_DISTANCE, score=float(best_distance))


def resolve(
    catalog_name: str,
    pool: Sequence[ExternalPriceRecord],
    index: Optional[PoolIndex] = None,
) -> MatchResult:
    return NameMatcher(pool, index=index).resolve(catalog_name)


@dataclass
class MatchStats:
    total: int = 0
    exact: int = 0
    base_name: int = 0
    weighted: int = 0
    edit_distance: int = 0
    unmatched: int = 0

    @property
    def matched(self) -> int:
        return self.exact + self.base_name + self.weighted + self.edit_distance

    def count(self, result: MatchResult) -> None:
        self.total += 1
        if result.strategy == STRATEGY_EXACT:
            self.exact += 1
        elif result.strategy == STRATEGY_BASE_NAME:
            self.base_name += 1
        elif result.strategy == STRATEGY_WEIGHTED:
            self.weighted += 1
        elif result.strategy == STRATEGY_EDIT_DISTANCE:
            self.edit_distance += 1
        else:
            self.unmatched += 1


def match_catalog(
    catalog: Sequence[Dict[str, Any]],
    matcher: NameMatcher,
) -> Tuple[Dict[str, MatchResult], MatchStats]:
    results: Dict[str, MatchResult] = {}
    stats = MatchStats()
    for row in catalog:
        fig_id = collapse_ws(row.get("id"))
        if not fig_id:
            continue
        result = matcher.resolve(str(row.get("name") or ""))
        stats.count(result)
        results[fig_id] = result
    return results, stats
