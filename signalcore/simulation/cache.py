"""RiskSimulationService — TTL cache in front of the Monte Carlo simulator.

Simulations run in a ``concurrent.futures`` worker pool, never on the
event loop.  Results are cached per ``(symbol, timeframe, direction)``,
since a LONG and a SHORT simulation of the same market are different
answers.  At most one simulation per key is in flight, and concurrent
callers for that key await the same task.  The signal hot path uses
:meth:`peek`, which never starts or waits for work.
"""

import asyncio
import logging
import time
from concurrent.futures import Executor, ThreadPoolExecutor
from dataclasses import dataclass
from functools import partial
from typing import Any, Callable, Optional, Sequence

from signalcore.errors import InvalidInputError, SignalCoreError
from signalcore.simulation.monte_carlo import RiskSimulationResult, simulate

logger = logging.getLogger("signalcore.simulation")

CacheKey = tuple[str, str, str]

DEFAULT_DIRECTION = "LONG"


@dataclass(frozen=True)
class _CacheEntry:
    result: RiskSimulationResult
    computed_at: float


class RiskSimulationService:
    """Async, deduplicating, time-bounded cache of simulation results.

    Args:
        ttl_seconds: How long a result counts as fresh.
        max_workers: Pool size when no *executor* is supplied.
        simulator:   Callable with the signature of :func:`simulate`.
        clock:       Monotonic seconds source (injectable for tests).
        executor:    Optional externally owned executor.
    """

    def __init__(
        self,
        ttl_seconds: float = 300.0,
        max_workers: int = 2,
        simulator: Callable[..., RiskSimulationResult] = simulate,
        clock: Callable[[], float] = time.monotonic,
        executor: Optional[Executor] = None,
    ) -> None:
        if ttl_seconds < 0:
            raise InvalidInputError(f"ttl_seconds must be >= 0, got {ttl_seconds}")
        self._ttl = ttl_seconds
        self._simulator = simulator
        self._clock = clock
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="signalcore-mc"
        )
        self._cache: dict[CacheKey, _CacheEntry] = {}
        self._inflight: dict[CacheKey, asyncio.Task] = {}

    # ── Public API ───────────────────────────────────────────────────────

    def peek(
        self,
        symbol: str,
        timeframe: str,
        allow_stale: bool = True,
        direction: str = DEFAULT_DIRECTION,
    ) -> Optional[RiskSimulationResult]:
        """Return the cached result without computing anything.

        With ``allow_stale=False`` an expired entry is reported as ``None``.
        """
        entry = self._cache.get((symbol, timeframe, direction))
        if entry is None:
            return None
        if not allow_stale and not self._is_fresh(entry):
            return None
        return entry.result

    def is_fresh(self, symbol: str, timeframe: str, direction: str = DEFAULT_DIRECTION) -> bool:
        entry = self._cache.get((symbol, timeframe, direction))
        return entry is not None and self._is_fresh(entry)

    def in_flight(self, symbol: str, timeframe: str, direction: str = DEFAULT_DIRECTION) -> bool:
        return (symbol, timeframe, direction) in self._inflight

    async def get(
        self,
        symbol: str,
        timeframe: str,
        historical_returns: Sequence[float],
        force: bool = False,
        **kwargs: Any,
    ) -> RiskSimulationResult:
        """Fresh cached result, or the result of the (shared) computation.

        The ``direction`` keyword (default ``"LONG"``) is part of the cache
        key; every other keyword is passed through to the simulator.

        Raises whatever the simulator raises, e.g.
        ``StatisticalInsufficiencyError``.
        """
        key = self._key(symbol, timeframe, kwargs)
        entry = self._cache.get(key)
        if not force and entry is not None and self._is_fresh(entry):
            return entry.result
        task = self._inflight.get(key) or self._start(key, historical_returns, kwargs)
        # shield: a cancelled waiter must not cancel the shared computation
        return await asyncio.shield(task)

    async def get_or_unavailable(
        self,
        symbol: str,
        timeframe: str,
        historical_returns: Sequence[float],
        **kwargs: Any,
    ) -> Optional[RiskSimulationResult]:
        """Like :meth:`get`, but a failed simulation yields ``None``."""
        try:
            return await self.get(symbol, timeframe, historical_returns, **kwargs)
        except SignalCoreError as exc:
            logger.warning("Risk simulation unavailable for %s %s: %s", symbol, timeframe, exc)
            return None

    def schedule_refresh(
        self,
        symbol: str,
        timeframe: str,
        historical_returns: Sequence[float],
        **kwargs: Any,
    ) -> Optional[asyncio.Task]:
        """Start a background refresh unless the entry is fresh or already in flight.

        Must be called from a running event loop.  Returns the task doing
        the work, or ``None`` when nothing needed refreshing.
        """
        key = self._key(symbol, timeframe, kwargs)
        if key in self._inflight:
            return self._inflight[key]
        entry = self._cache.get(key)
        if entry is not None and self._is_fresh(entry):
            return None
        task = self._start(key, historical_returns, kwargs)
        task.add_done_callback(self._log_background_failure)
        return task

    def invalidate(self, symbol: str, timeframe: str, direction: Optional[str] = None) -> None:
        """Drop the cached entry for *direction*, or for every direction when ``None``."""
        if direction is not None:
            self._cache.pop((symbol, timeframe, direction), None)
            return
        for key in [k for k in self._cache if k[:2] == (symbol, timeframe)]:
            del self._cache[key]

    def close(self) -> None:
        """Shut down the worker pool if this service created it."""
        if self._owns_executor:
            self._executor.shutdown(wait=True)

    # ── Internals ────────────────────────────────────────────────────────

    @staticmethod
    def _key(symbol: str, timeframe: str, kwargs: dict[str, Any]) -> CacheKey:
        return (symbol, timeframe, kwargs.get("direction", DEFAULT_DIRECTION))

    def _is_fresh(self, entry: _CacheEntry) -> bool:
        return self._clock() - entry.computed_at < self._ttl

    def _start(
        self,
        key: CacheKey,
        historical_returns: Sequence[float],
        kwargs: dict[str, Any],
    ) -> asyncio.Task:
        symbol, timeframe, direction = key
        # Copy so later mutation by the caller cannot leak into the worker.
        returns = list(historical_returns)
        options = dict(kwargs, direction=direction)
        job = partial(self._simulator, symbol, timeframe, returns, **options)

        async def _run() -> RiskSimulationResult:
            loop = asyncio.get_running_loop()
            try:
                result = await loop.run_in_executor(self._executor, job)
                self._cache[key] = _CacheEntry(result=result, computed_at=self._clock())
                logger.debug("Cached %s simulation for %s %s", direction, symbol, timeframe)
                return result
            finally:
                self._inflight.pop(key, None)

        task = asyncio.create_task(_run())
        self._inflight[key] = task
        logger.debug("Started %s simulation for %s %s", direction, symbol, timeframe)
        return task

    @staticmethod
    def _log_background_failure(task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("Background risk simulation failed: %s", exc)
