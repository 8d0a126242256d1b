"""Persisted key -> result map for the slow, rate-limited refresh stages.

Every network-bound stage keeps one of these under the cache directory so an
interrupted run resumes where the last flush left off. A key that is present
(even mapped to ``None``) is never fetched again; the orchestrator clears the
cache directory for a full refresh.

Per-item states within a run:

    pending -> in-flight -> cached-success | cached-failure

Keys already in the file at load time start out as cached-success.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Tuple, Type

from refresh_common import load_json_object, log, maybe_sleep, write_json


PENDING = "pending"
IN_FLIGHT = "in-flight"
CACHED_SUCCESS = "cached-success"
CACHED_FAILURE = "cached-failure"


@dataclass
class BatchStats:
    considered: int = 0
    fetched: int = 0
    failures: int = 0
    flushes: int = 0
    errors: List[Tuple[str, str]] = field(default_factory=list)


class ResumableCache:
    def __init__(self, path: Path, *, flush_every: int, verbose: bool = False) -> None:
        if flush_every <= 0:
            raise ValueError("flush_every must be positive")
        self.path = path
        self.flush_every = flush_every
        self.verbose = verbose
        self.data: Dict[str, Any] = {}
        self._states: Dict[str, str] = {}
        self._unflushed = 0
        self.flush_count = 0

    @classmethod
    def open(cls, path: Path, *, flush_every: int, verbose: bool = False) -> "ResumableCache":
        cache = cls(path, flush_every=flush_every, verbose=verbose)
        cache.load()
        return cache

    def load(self) -> int:
        self.data = dict(load_json_object(self.path))
        self._states = {key: CACHED_SUCCESS for key in self.data}
        self._unflushed = 0
        return len(self.data)

    def __contains__(self, key: object) -> bool:
        return key in self.data

    def __len__(self) -> int:
        return len(self.data)

    def __iter__(self) -> Iterator[str]:
        return iter(self.data)

    def get(self, key: str, default: Any = None) -> Any:
        return self.data.get(key, default)

    def state(self, key: str) -> str:
        return self._states.get(key, PENDING)

    def pending(self, keys: Iterable[str]) -> List[str]:
        out: List[str] = []
        seen: set[str] = set()
        for key in keys:
            if key in seen or key in self.data:
                continue
            seen.add(key)
            out.append(key)
        return out

    def begin(self, key: str) -> None:
        if key in self.data:
            raise KeyError(f"{key} is already cached")
        self._states[key] = IN_FLIGHT

    def record_success(self, key: str, value: Any) -> None:
        self._store(key, value, CACHED_SUCCESS)

    def record_failure(self, key: str) -> None:
        self._store(key, None, CACHED_FAILURE)

    def _store(self, key: str, value: Any, state: str) -> None:
        self.data[key] = value
        self._states[key] = state
        self._unflushed += 1
        if self._unflushed >= self.flush_every:
            self.flush()

    def flush(self) -> None:
        write_json(self.path, self.data)
        self._unflushed = 0
        self.flush_count += 1

    def process(
        self,
        keys: Iterable[str],
        worker: Callable[[str], Any],
        *,
        delay: float = 0.0,
        errors: Tuple[Type[BaseException], ...] = (RuntimeError,),
        label: str = "Cache",
        on_result: Optional[Callable[[str, Any], None]] = None,
    ) -> BatchStats:
        """Run ``worker`` for every key not already cached.

        Exceptions listed in ``errors`` become negative entries; anything else
        propagates after the cache is flushed. ``delay`` is slept between
        items, not after the last one.
        """
        todo = self.pending(keys)
        stats = BatchStats()
        flushes_before = self.flush_count
        try:
            for position, key in enumerate(todo):
                stats.considered += 1
                self.begin(key)
                try:
                    value = worker(key)
                except errors as exc:
                    self.record_failure(key)
                    stats.failures += 1
                    stats.errors.append((key, str(exc)))
                    log(f"[{label}] {position + 1}/{len(todo)} {key} -> error: {exc}", enabled=self.verbose)
                else:
                    self.record_success(key, value)
                    stats.fetched += 1
                    log(f"[{label}] {position + 1}/{len(todo)} {key} -> {value}", enabled=self.verbose)
                    if on_result is not None:
                        on_result(key, value)
                if position < len(todo) - 1:
                    maybe_sleep(delay)
        finally:
            self.flush()
            stats.flushes = self.flush_count - flushes_before
        return stats
