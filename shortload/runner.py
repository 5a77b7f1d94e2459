"""
Run a scenario end to end: setup, concurrent workload streams, verdict.

Flow:
    setup groups are created through the transport
    -> one ArrivalRateStream per scenario stream, all sharing the loop clock
    -> each tick: sample a target (redirects) or build a destination (creations)
    -> transport -> classify -> record into the MetricsAggregator
    -> after every stream drained: evaluate thresholds into a VerdictReport
"""

import asyncio
import logging
import random
import signal
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import httpx

from shortload.aggregator import MetricsAggregator
from shortload.classifier import DEFAULT_CACHE_HIT_THRESHOLD_MS, classify
from shortload.config import Settings, require_api_key
from shortload.evaluator import evaluate
from shortload.models import (
    ClassifiedOutcome,
    MetricKind,
    RequestKind,
    ScenarioSpec,
    SetupGroup,
    StreamSpec,
    StreamStats,
    TrafficTier,
    VerdictReport,
)
from shortload.sampler import CreatedPool, TargetPopulation, sample_target
from shortload.scheduler import ArrivalRateStream, RateCurve
from shortload.transport import HttpxTransport, Transport

logger = logging.getLogger(__name__)

SETUP_TARGETS_CREATED = "setup_targets_created"
SKIPPED_ITERATIONS = "skipped_iterations"


@dataclass
class RunContext:
    """Everything the workloads share during one run."""

    scenario: ScenarioSpec
    transport: Transport
    aggregator: MetricsAggregator
    rng: random.Random
    pool: CreatedPool = field(default_factory=CreatedPool)
    groups: Dict[str, Tuple[str, ...]] = field(default_factory=dict)
    cache_hit_threshold_ms: float = DEFAULT_CACHE_HIT_THRESHOLD_MS

    def all_seeded(self) -> Tuple[str, ...]:
        out: Tuple[str, ...] = ()
        for group in self.scenario.setup_groups:
            out += self.groups.get(group.name, ())
        return out


@dataclass
class RunResult:
    scenario: ScenarioSpec
    report: VerdictReport
    aggregator: MetricsAggregator
    stream_stats: List[StreamStats]
    elapsed_seconds: float
    setup_created: int
    stopped: bool = False


def record_outcome(aggregator: MetricsAggregator, stream: StreamSpec,
                   classified: ClassifiedOutcome) -> None:
    """Fold one classified outcome into the run's metric series."""
    outcome = classified.outcome
    ok = classified.succeeded
    latency = outcome.latency_ms

    aggregator.record("http_reqs", MetricKind.COUNTER, 1)
    aggregator.record("http_req_duration", MetricKind.TREND, latency)
    aggregator.record(f"http_req_duration{{type:{stream.type_tag}}}", MetricKind.TREND, latency)
    aggregator.record("http_req_failed", MetricKind.RATE, not ok)
    aggregator.record("success_rate", MetricKind.RATE, ok)

    within_budget = stream.latency_budget_ms is None or latency < stream.latency_budget_ms
    aggregator.record("checks", MetricKind.RATE, ok and within_budget)

    if stream.counter:
        aggregator.record(stream.counter, MetricKind.COUNTER, 1)

    if outcome.kind == RequestKind.CREATE:
        if ok:
            aggregator.record("url_creation_duration", MetricKind.TREND, latency)
        else:
            aggregator.record("url_creation_errors", MetricKind.COUNTER, 1)
        return

    aggregator.record("redirect_success_rate", MetricKind.RATE, ok and within_budget)
    if ok:
        aggregator.record("redirect_duration", MetricKind.TREND, latency)
    else:
        aggregator.record("redirect_errors", MetricKind.COUNTER, 1)

    if classified.cache_hit is not None:
        aggregator.record("cache_hit_rate", MetricKind.RATE, classified.cache_hit)
        aggregator.record("cache_miss_rate", MetricKind.RATE, not classified.cache_hit)
        name = "cached_response_time" if classified.cache_hit else "uncached_response_time"
        aggregator.record(name, MetricKind.TREND, latency)


def build_population(stream: StreamSpec, ctx: RunContext) -> TargetPopulation:
    tiers = []
    for spec in stream.tiers:
        if spec.group is None:
            members = ctx.all_seeded()
        else:
            members = ctx.groups.get(spec.group, ())
        tiers.append(TrafficTier(
            name=spec.name,
            weight=spec.weight,
            members=members,
            head_fraction=spec.head_fraction,
            head_count=spec.head_count,
            include_pool=spec.include_pool,
        ))
    return TargetPopulation(tiers, ctx.pool)


class Workload:
    """The body of one issuance tick for a stream."""

    def __init__(self, stream: StreamSpec, ctx: RunContext) -> None:
        self.stream = stream
        self.ctx = ctx
        self.population = build_population(stream, ctx) if stream.tiers else None
        self._warned_empty = False

    def destination(self) -> str:
        rid = self.ctx.rng.randrange(1_000_000)
        stamp = int(time.time() * 1000)
        return f"{self.ctx.scenario.destination_prefix}/{self.stream.name}/{stamp}/{rid}"

    async def __call__(self) -> None:
        ctx = self.ctx
        if self.stream.kind == RequestKind.CREATE:
            outcome = await ctx.transport.create(
                self.destination(),
                tags=self.stream.tags,
                title=f"{ctx.scenario.name} {self.stream.name}",
            )
        else:
            if self.population.is_empty():
                if not self._warned_empty:
                    logger.warning("%s: no short codes available for redirects", self.stream.name)
                    self._warned_empty = True
                ctx.aggregator.record(SKIPPED_ITERATIONS, MetricKind.COUNTER, 1)
                return
            target = sample_target(self.population, ctx.rng)
            outcome = await ctx.transport.resolve(target)

        classified = classify(outcome, ctx.cache_hit_threshold_ms)
        if classified.succeeded and outcome.assigned_id:
            ctx.pool.append(outcome.assigned_id)
        elif not classified.succeeded:
            logger.debug(
                "%s failed for %s: status=%s error=%s",
                self.stream.name, outcome.target_id, outcome.status_code, outcome.error,
            )
        record_outcome(ctx.aggregator, self.stream, classified)


def _group_slugs(group: SetupGroup, stamp: int) -> List[Optional[str]]:
    if group.slugs:
        return list(group.slugs)
    if group.slug_prefix:
        return [f"{group.slug_prefix}-{stamp}-{i}" for i in range(group.count)]
    return [None] * group.count


class Runner:
    """
    Drives one scenario run.

    Call ``stop()`` (e.g. from a signal handler) to halt tick generation on
    every stream; in-flight requests then get the drain grace period and
    anything still outstanding is counted as incomplete.
    """

    def __init__(
        self,
        scenario: ScenarioSpec,
        transport: Transport,
        aggregator: Optional[MetricsAggregator] = None,
        rng: Optional[random.Random] = None,
        cache_hit_threshold_ms: float = DEFAULT_CACHE_HIT_THRESHOLD_MS,
        grace_seconds: float = 30.0,
        progress_interval: Optional[float] = None,
    ) -> None:
        self.scenario = scenario
        self.ctx = RunContext(
            scenario=scenario,
            transport=transport,
            aggregator=aggregator or MetricsAggregator(),
            rng=rng or random.Random(),
            cache_hit_threshold_ms=cache_hit_threshold_ms,
        )
        self.grace_seconds = grace_seconds
        self.progress_interval = progress_interval
        self._stop_requested = False
        self._stop_event: Optional[asyncio.Event] = None

    @property
    def aggregator(self) -> MetricsAggregator:
        return self.ctx.aggregator

    def stop(self) -> None:
        self._stop_requested = True
        if self._stop_event is not None:
            self._stop_event.set()

    async def setup(self) -> int:
        """Create every setup group; returns how many targets are usable."""
        ctx = self.ctx
        stamp = int(time.time() * 1000)
        pace = ctx.scenario.setup_pace_ms / 1000.0
        total = 0
        for group in ctx.scenario.setup_groups:
            logger.info("setting up group %s...", group.name)
            created = []
            for i, slug in enumerate(_group_slugs(group, stamp)):
                if self._stop_requested:
                    break
                outcome = await ctx.transport.create(
                    f"{ctx.scenario.destination_prefix}/{group.name}/{stamp}-{i}",
                    slug=slug,
                    tags=("load-test", ctx.scenario.name),
                )
                if classify(outcome).succeeded:
                    created.append(outcome.assigned_id)
                elif slug and outcome.status_code == 400 and "already exists" in outcome.detail:
                    created.append(slug)
                else:
                    logger.warning(
                        "failed to create %s: %s %s",
                        slug or "setup URL", outcome.status_code, outcome.error or "",
                    )
                if pace:
                    await asyncio.sleep(pace)
            ctx.groups[group.name] = tuple(created)
            total += len(created)
            logger.info("group %s: %d target(s) ready", group.name, len(created))
        ctx.aggregator.record(SETUP_TARGETS_CREATED, MetricKind.COUNTER, total)
        return total

    async def _report_progress(self) -> None:
        while True:
            await asyncio.sleep(self.progress_interval)
            snap = self.aggregator.snapshot()
            reqs = snap.get("http_reqs", {}).get("values", {}).get("count", 0)
            failed = snap.get("http_req_failed", {}).get("values", {}).get("rate")
            dropped = snap.get("dropped_iterations", {}).get("values", {}).get("count", 0)
            logger.info(
                "progress: %d request(s), failure rate %s, %d dropped",
                reqs, "n/a" if failed is None else f"{failed:.2%}", dropped,
            )

    async def run(self) -> RunResult:
        loop = asyncio.get_running_loop()
        self._stop_event = asyncio.Event()
        if self._stop_requested:
            self._stop_event.set()

        created = await self.setup()

        streams = [
            ArrivalRateStream(
                name=spec.name,
                curve=RateCurve(spec.stages),
                max_concurrency=spec.max_concurrency,
                issue=Workload(spec, self.ctx),
                aggregator=self.aggregator,
                grace_seconds=self.grace_seconds,
                start_after_seconds=spec.start_after_ms / 1000.0,
            )
            for spec in self.scenario.streams
        ]

        logger.info(
            "starting %s: %d stream(s) over %.1fs",
            self.scenario.name, len(streams), self.scenario.duration_ms / 1000.0,
        )
        progress = None
        if self.progress_interval:
            progress = asyncio.ensure_future(self._report_progress())

        started = loop.time()
        try:
            stats = await asyncio.gather(*(s.run(self._stop_event) for s in streams))
        finally:
            if progress is not None:
                progress.cancel()
                await asyncio.gather(progress, return_exceptions=True)
        elapsed = loop.time() - started

        self.aggregator.set_duration(elapsed)
        report = evaluate(self.aggregator, self.scenario.thresholds, self.scenario.cache_rule)
        logger.info("%s finished in %.1fs: %s", self.scenario.name, elapsed, report.overall)

        return RunResult(
            scenario=self.scenario,
            report=report,
            aggregator=self.aggregator,
            stream_stats=list(stats),
            elapsed_seconds=elapsed,
            setup_created=created,
            stopped=self._stop_requested,
        )


async def run_scenario(
    scenario: ScenarioSpec,
    settings: Settings,
    seed: Optional[int] = None,
    client: Optional[httpx.AsyncClient] = None,
    install_signal_handlers: bool = False,
) -> RunResult:
    """Validate configuration, then run ``scenario`` against ``settings.BASE_URL``.

    Raises:
        ConfigurationError: Before any request is sent, if the API key is missing.
    """
    api_key = require_api_key(settings)
    max_connections = sum(s.max_concurrency for s in scenario.streams) or 1

    async with HttpxTransport(
        settings.BASE_URL,
        api_key,
        timeout_seconds=settings.REQUEST_TIMEOUT_SECONDS,
        max_connections=max_connections,
        client=client,
    ) as transport:
        runner = Runner(
            scenario,
            transport,
            rng=random.Random(seed),
            cache_hit_threshold_ms=settings.CACHE_HIT_THRESHOLD_MS,
            grace_seconds=settings.DRAIN_GRACE_SECONDS,
            progress_interval=settings.PROGRESS_INTERVAL_SECONDS,
        )
        if install_signal_handlers:
            _install_signal_handlers(runner)
        return await runner.run()


def _install_signal_handlers(runner: Runner) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, runner.stop)
        except NotImplementedError:
            # add_signal_handler is unavailable on Windows event loops
            logger.debug("signal handlers not supported on this platform")
            return


def execute(scenario: ScenarioSpec, settings: Settings, seed: Optional[int] = None,
            install_signal_handlers: bool = False) -> RunResult:
    """Synchronous wrapper around ``run_scenario``."""
    return asyncio.run(run_scenario(
        scenario, settings, seed=seed, install_signal_handlers=install_signal_handlers,
    ))
