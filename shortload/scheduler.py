"""
Open-loop, staged arrival-rate scheduling.

A stream's rate curve is a sequence of linear ramps. Issuance ticks fall at
the instants where the integral of the rate crosses 1, 2, 3, ... so a full
curve yields ``floor(integral)`` ticks. When the next tick comes due the
stream either hands it to a free worker slot or drops it; it never waits for
earlier requests to finish.
"""

from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterator, List, Optional, Sequence, Set

from shortload.aggregator import MetricsAggregator
from shortload.models import MetricKind, StreamStats, WorkloadStage

logger = logging.getLogger(__name__)

DROPPED_ITERATIONS = "dropped_iterations"
INCOMPLETE_REQUESTS = "incomplete_requests"
ITERATION_ERRORS = "iteration_errors"

_EPSILON = 1e-9


@dataclass(frozen=True)
class _Segment:
    start: float  # seconds since curve origin
    duration: float
    start_rate: float
    end_rate: float
    ticks_before: float  # integral of the rate up to ``start``

    @property
    def slope(self) -> float:
        return (self.end_rate - self.start_rate) / self.duration

    @property
    def area(self) -> float:
        return (self.start_rate + self.end_rate) / 2.0 * self.duration

    def integral(self, tau: float) -> float:
        return self.start_rate * tau + self.slope * tau * tau / 2.0

    def time_of(self, ticks: float) -> float:
        """Offset into the segment where its own integral reaches ``ticks``."""
        a = self.start_rate
        disc = max(0.0, a * a + 2.0 * self.slope * ticks)
        tau = 2.0 * ticks / (a + math.sqrt(disc))
        return min(max(tau, 0.0), self.duration)


class RateCurve:
    """Piecewise-linear issuance rate built from ordered workload stages."""

    def __init__(self, stages: Sequence[WorkloadStage]) -> None:
        self.stages = tuple(stages)
        self._segments: List[_Segment] = []
        t = 0.0
        ticks = 0.0
        for stage in self.stages:
            d = stage.duration_seconds
            if d <= 0:
                continue
            seg = _Segment(t, d, float(stage.start_rate), float(stage.end_rate), ticks)
            self._segments.append(seg)
            t += d
            ticks += seg.area
        self.total_seconds = t
        self.total_ticks = ticks

    def _segment_at(self, t: float) -> Optional[_Segment]:
        for seg in self._segments:
            if seg.start <= t < seg.start + seg.duration:
                return seg
        return None

    def rate_at(self, t: float) -> float:
        """Instantaneous rate (per second) at elapsed time ``t``."""
        seg = self._segment_at(t)
        if seg is None:
            return 0.0
        return seg.start_rate + seg.slope * (t - seg.start)

    def expected_ticks(self, t: float) -> float:
        """Integral of the rate from 0 to ``t``."""
        if t >= self.total_seconds:
            return self.total_ticks
        seg = self._segment_at(t)
        if seg is None:
            return 0.0
        return seg.ticks_before + seg.integral(t - seg.start)

    def tick_offsets(self) -> Iterator[float]:
        """Tick times in seconds from the curve origin, non-decreasing."""
        k = 1
        for seg in self._segments:
            if seg.area <= 0:
                continue
            end = seg.ticks_before + seg.area
            while k <= end + _EPSILON:
                yield seg.start + seg.time_of(min(k - seg.ticks_before, seg.area))
                k += 1


async def _stopped_within(stop_event: asyncio.Event, delay: float) -> bool:
    try:
        await asyncio.wait_for(stop_event.wait(), timeout=delay)
    except asyncio.TimeoutError:
        return False
    return True


class ArrivalRateStream:
    """
    Drive one workload stream along its rate curve.

    Each tick takes a slot from a bounded pool of ``max_concurrency`` workers.
    With no free slot the tick is dropped and counted in ``dropped_iterations``.
    Once the curve is exhausted (or the run is stopped) in-flight issuances get
    ``grace_seconds`` to finish; the rest are cancelled and counted in
    ``incomplete_requests``.
    """

    def __init__(
        self,
        name: str,
        curve: RateCurve,
        max_concurrency: int,
        issue: Callable[[], Awaitable[None]],
        aggregator: Optional[MetricsAggregator] = None,
        grace_seconds: float = 30.0,
        start_after_seconds: float = 0.0,
    ) -> None:
        if max_concurrency < 1:
            raise ValueError(f"max_concurrency must be at least 1: {max_concurrency}")
        self.name = name
        self.curve = curve
        self.max_concurrency = max_concurrency
        self.grace_seconds = grace_seconds
        self.start_after_seconds = start_after_seconds
        self.aggregator = aggregator or MetricsAggregator()
        self.stats = StreamStats(name=name)
        self._issue = issue
        self._in_flight: Set[asyncio.Task] = set()

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    async def run(self, stop_event: Optional[asyncio.Event] = None) -> StreamStats:
        loop = asyncio.get_running_loop()
        stop_event = stop_event or asyncio.Event()
        self.aggregator.record(DROPPED_ITERATIONS, MetricKind.COUNTER, 0)
        origin = loop.time() + self.start_after_seconds

        for offset in self.curve.tick_offsets():
            delay = origin + offset - loop.time()
            if delay > 0:
                if await _stopped_within(stop_event, delay):
                    break
            elif stop_event.is_set():
                break
            self._tick()

        logger.debug(
            "stream %s stopped issuing: attempted=%d dropped=%d in_flight=%d",
            self.name, self.stats.attempted, self.stats.dropped, self.in_flight,
        )
        await self._drain()
        return self.stats

    def _tick(self) -> None:
        self.stats.attempted += 1
        if len(self._in_flight) >= self.max_concurrency:
            self.stats.dropped += 1
            self.aggregator.record(DROPPED_ITERATIONS, MetricKind.COUNTER, 1)
            return
        self.stats.issued += 1
        task = asyncio.ensure_future(self._work())
        self._in_flight.add(task)
        task.add_done_callback(self._in_flight.discard)

    async def _work(self) -> None:
        try:
            await self._issue()
        except Exception:
            logger.exception("stream %s: issuance raised", self.name)
            self.aggregator.record(ITERATION_ERRORS, MetricKind.COUNTER, 1)
        self.stats.completed += 1

    async def _drain(self) -> None:
        pending = set(self._in_flight)
        if pending:
            _, pending = await asyncio.wait(pending, timeout=self.grace_seconds)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.warning(
                "stream %s: cancelled %d request(s) still in flight after %.1fs grace",
                self.name, len(pending), self.grace_seconds,
            )
        self.stats.incomplete += len(pending)
        self.aggregator.record(INCOMPLETE_REQUESTS, MetricKind.COUNTER, len(pending))
