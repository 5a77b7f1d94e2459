"""Tests for the scenario runner: setup, workloads, metric recording."""

import asyncio
import random

import httpx
import pytest

from mock_service import app as mock
from shortload.aggregator import MetricsAggregator
from shortload.classifier import classify
from shortload.config import ConfigurationError, Settings
from shortload.loader import build_scenario
from shortload.models import (
    RequestKind,
    RequestOutcome,
    StreamSpec,
    WorkloadStage,
)
from shortload.runner import (
    SETUP_TARGETS_CREATED,
    SKIPPED_ITERATIONS,
    Runner,
    record_outcome,
    run_scenario,
)


class FakeTransport:
    """In-memory service: creations always succeed, seeded codes are cached."""

    def __init__(self, fail_creates=False, existing=(), hot=()):
        self.fail_creates = fail_creates
        self.existing = set(existing)
        self.hot = set(hot)
        self.created = []
        self.resolved = []
        self._n = 0

    async def create(self, destination, slug=None, tags=(), title=None):
        await asyncio.sleep(0)
        if self.fail_creates:
            return _outcome(RequestKind.CREATE, slug, 500, 5.0, detail="boom")
        if slug in self.existing:
            return _outcome(RequestKind.CREATE, slug, 400, 5.0,
                            detail=f'{{"detail":"slug {slug} already exists"}}')
        self._n += 1
        code = slug or f"gen{self._n}"
        self.created.append(code)
        return _outcome(RequestKind.CREATE, slug, 201, 12.0, assigned_id=code)

    async def resolve(self, short_code):
        await asyncio.sleep(0)
        self.resolved.append(short_code)
        latency = 8.0 if short_code in self.hot else 90.0
        return _outcome(RequestKind.REDIRECT, short_code, 302, latency, location=True)


def _outcome(kind, target, status, latency, assigned_id=None, location=False, detail=""):
    return RequestOutcome(
        kind=kind,
        target_id=target,
        issued_at=0.0,
        completed_at=latency / 1000,
        status_code=status,
        has_location_header=location,
        latency_ms=latency,
        assigned_id=assigned_id,
        detail=detail,
    )


def _stream(kind=RequestKind.REDIRECT, **kwargs):
    return StreamSpec(
        name=kwargs.pop("name", "s"),
        kind=kind,
        stages=(WorkloadStage(1000, 1, 1),),
        max_concurrency=5,
        **kwargs,
    )


def _scenario(**overrides):
    raw = {
        "name": "tiny",
        "setup": {"groups": [
            {"name": "hot", "slugs": ["h1", "h2"]},
            {"name": "seed", "count": 4, "slug_prefix": "t"},
        ]},
        "streams": [
            {"name": "creations", "kind": "create", "rate": 20, "duration": "300ms",
             "max_concurrency": 5},
            {"name": "redirects", "kind": "redirect", "rate": 40, "duration": "300ms",
             "max_concurrency": 10, "counter": "total_redirects",
             "tiers": [
                 {"name": "hot", "weight": 0.8, "group": "hot"},
                 {"name": "rest", "weight": 0.2, "include_pool": True},
             ]},
        ],
        "thresholds": {"http_req_failed": ["rate<0.01"]},
    }
    raw.update(overrides)
    return build_scenario(raw)


class TestRecordOutcome:
    def test_successful_creation(self):
        agg = MetricsAggregator()
        stream = _stream(RequestKind.CREATE)
        out = _outcome(RequestKind.CREATE, None, 201, 40.0, assigned_id="abc")
        record_outcome(agg, stream, classify(out))
        assert agg.value("http_reqs", "count") == 1
        assert agg.value("url_creation_duration", "avg") == 40.0
        assert agg.value("http_req_duration{type:creation}", "max") == 40.0
        assert agg.value("http_req_failed", "rate") == 0.0
        assert not agg.has("cache_hit_rate")

    def test_failed_creation(self):
        agg = MetricsAggregator()
        out = _outcome(RequestKind.CREATE, None, 500, 40.0)
        record_outcome(agg, _stream(RequestKind.CREATE), classify(out))
        assert agg.value("url_creation_errors", "count") == 1
        assert agg.value("success_rate", "rate") == 0.0
        assert not agg.has("url_creation_duration")

    def test_cache_hit_and_miss(self):
        agg = MetricsAggregator()
        stream = _stream()
        record_outcome(agg, stream, classify(_outcome("redirect", "a", 302, 10.0, location=True)))
        record_outcome(agg, stream, classify(_outcome("redirect", "a", 302, 95.0, location=True)))
        assert agg.value("cache_hit_rate", "rate") == 0.5
        assert agg.value("cache_miss_rate", "rate") == 0.5
        assert agg.value("cached_response_time", "avg") == 10.0
        assert agg.value("uncached_response_time", "avg") == 95.0
        assert agg.value("http_req_duration{type:redirect}", "count") == 2

    def test_failed_redirect_has_no_cache_verdict(self):
        agg = MetricsAggregator()
        record_outcome(agg, _stream(), classify(_outcome("redirect", "a", 404, 3.0)))
        assert agg.value("redirect_errors", "count") == 1
        assert not agg.has("cache_hit_rate")

    def test_latency_budget_feeds_checks(self):
        agg = MetricsAggregator()
        stream = _stream(latency_budget_ms=50)
        record_outcome(agg, stream, classify(_outcome("redirect", "a", 302, 20.0, location=True)))
        record_outcome(agg, stream, classify(_outcome("redirect", "a", 302, 80.0, location=True)))
        assert agg.value("checks", "rate") == 0.5

    def test_custom_tag_and_counter(self):
        agg = MetricsAggregator()
        stream = _stream(tag="viral", counter="viral_spike_requests")
        record_outcome(agg, stream, classify(_outcome("redirect", "a", 302, 20.0, location=True)))
        assert agg.has("http_req_duration{type:viral}")
        assert agg.value("viral_spike_requests", "count") == 1


class TestRunnerSetup:
    @pytest.mark.asyncio
    async def test_setup_creates_every_group(self):
        transport = FakeTransport()
        runner = Runner(_scenario(), transport)
        created = await runner.setup()
        assert created == 6
        assert runner.ctx.groups["hot"] == ("h1", "h2")
        assert len(runner.ctx.groups["seed"]) == 4
        assert all(code.startswith("t-") for code in runner.ctx.groups["seed"])
        assert runner.aggregator.value(SETUP_TARGETS_CREATED, "count") == 6

    @pytest.mark.asyncio
    async def test_existing_slug_is_usable(self):
        transport = FakeTransport(existing={"h1"})
        runner = Runner(_scenario(), transport)
        await runner.setup()
        assert runner.ctx.groups["hot"] == ("h1", "h2")

    @pytest.mark.asyncio
    async def test_failed_setup_is_not_counted(self):
        runner = Runner(_scenario(), FakeTransport(fail_creates=True))
        assert await runner.setup() == 0
        assert runner.ctx.groups["seed"] == ()


class TestRunnerRun:
    @pytest.mark.asyncio
    async def test_small_run(self):
        transport = FakeTransport(hot={"h1", "h2"})
        runner = Runner(_scenario(), transport, rng=random.Random(3), grace_seconds=1.0)
        result = await runner.run()

        stats = {s.name: s for s in result.stream_stats}
        assert stats["creations"].attempted == 6
        assert stats["redirects"].attempted == 12
        for s in result.stream_stats:
            assert s.attempted == s.issued + s.dropped
            assert s.incomplete == 0

        # 6 setup creations + one per completed creation tick
        assert len(transport.created) == 6 + stats["creations"].completed
        assert len(runner.ctx.pool) == stats["creations"].completed
        assert len(transport.resolved) == stats["redirects"].completed
        assert result.aggregator.value("total_redirects", "count") == stats["redirects"].completed
        assert result.aggregator.value("http_reqs", "count") == (
            stats["creations"].completed + stats["redirects"].completed
        )
        assert result.report.overall == "pass"
        assert result.setup_created == 6
        assert result.elapsed_seconds > 0.2
        assert result.stopped is False

    @pytest.mark.asyncio
    async def test_stop_before_run(self):
        transport = FakeTransport()
        runner = Runner(_scenario(), transport, grace_seconds=1.0)
        runner.stop()
        result = await runner.run()
        assert result.stopped is True
        assert result.setup_created == 0
        assert all(s.attempted == 0 for s in result.stream_stats)
        assert transport.resolved == []

    @pytest.mark.asyncio
    async def test_empty_population_skips(self):
        scenario = _scenario(streams=[
            {"name": "redirects", "kind": "redirect", "rate": 20, "duration": "200ms",
             "tiers": [{"name": "seed", "weight": 1.0, "group": "seed"}]},
        ])
        transport = FakeTransport(fail_creates=True)
        result = await Runner(scenario, transport, grace_seconds=1.0).run()
        assert transport.resolved == []
        assert result.aggregator.value(SKIPPED_ITERATIONS, "count") == 4
        assert not result.aggregator.has("http_reqs")
        # never-recorded http_req_failed fails its threshold
        assert result.report.overall == "fail"


class TestRunScenario:
    @pytest.mark.asyncio
    async def test_missing_api_key(self):
        settings = Settings(_env_file=None, SHLINK_API_KEY=None)
        with pytest.raises(ConfigurationError, match="SHLINK_API_KEY"):
            await run_scenario(_scenario(), settings)

    @pytest.mark.asyncio
    async def test_placeholder_api_key(self):
        settings = Settings(_env_file=None, SHLINK_API_KEY="your-api-key-here")
        with pytest.raises(ConfigurationError):
            await run_scenario(_scenario(), settings)

    @pytest.mark.asyncio
    async def test_against_mock_service(self):
        mock.reset(miss_delay_seconds=0.06)
        settings = Settings(
            _env_file=None,
            BASE_URL="http://mock",
            SHLINK_API_KEY=mock.API_KEY,
            PROGRESS_INTERVAL_SECONDS=0,
            DRAIN_GRACE_SECONDS=5,
        )
        scenario = build_scenario({
            "name": "mock-smoke",
            "setup": {"groups": [{"name": "popular", "slugs": ["pop1", "pop2"]}]},
            "streams": [
                {"name": "creations", "kind": "create", "rate": 5, "duration": "1s",
                 "max_concurrency": 5},
                {"name": "redirects", "kind": "redirect", "rate": 40, "duration": "1s",
                 "max_concurrency": 20,
                 "tiers": [{"name": "popular", "weight": 1.0, "group": "popular"}]},
            ],
            "thresholds": {"http_req_failed": ["rate<0.01"]},
            "cache_check": True,
        })
        async with httpx.AsyncClient(
            transport=httpx.ASGITransport(app=mock.app), base_url="http://mock"
        ) as client:
            result = await run_scenario(scenario, settings, seed=1, client=client)

        agg = result.aggregator
        assert result.setup_created == 2
        assert agg.value("http_req_failed", "rate") == 0.0
        assert agg.value("url_creation_duration", "count") == 5
        assert agg.value("cache_hit_rate", "rate") > 0.6
        assert agg.value("uncached_response_time", "min") >= 50.0
        assert result.report.overall == "pass"
        assert result.report.quality[0].name == "cache-effectiveness"


class HangingTransport(FakeTransport):
    """Setup succeeds; every redirect hangs until cancelled."""

    async def resolve(self, short_code):
        self.resolved.append(short_code)
        await asyncio.Event().wait()


class TestRunnerStop:
    @pytest.mark.asyncio
    async def test_stop_mid_run_counts_incomplete(self):
        scenario = _scenario(streams=[
            {"name": "redirects", "kind": "redirect", "rate": 50, "duration": "5s",
             "max_concurrency": 4,
             "tiers": [{"name": "hot", "weight": 1.0, "group": "hot"}]},
        ])
        transport = HangingTransport()
        runner = Runner(scenario, transport, grace_seconds=0.1)
        asyncio.get_running_loop().call_later(0.3, runner.stop)

        result = await asyncio.wait_for(runner.run(), timeout=3)

        stats = result.stream_stats[0]
        assert result.stopped is True
        assert stats.attempted < 250
        assert stats.attempted == stats.issued + stats.dropped
        assert stats.issued == 4
        assert stats.dropped > 0
        assert stats.incomplete == 4
        assert result.aggregator.value("incomplete_requests", "count") == 4
        assert result.aggregator.value("dropped_iterations", "count") == stats.dropped
        assert not result.aggregator.has("http_reqs")
        assert result.elapsed_seconds < 1.5


class TestRedirectSuccessRate:
    def test_success_needs_status_and_budget(self):
        agg = MetricsAggregator()
        stream = _stream(latency_budget_ms=200)
        for latency, status in ((20.0, 302), (250.0, 302), (20.0, 404), (30.0, 301)):
            out = _outcome("redirect", "a", status, latency, location=status != 404)
            record_outcome(agg, stream, classify(out))
        assert agg.value("redirect_success_rate", "rate") == 0.5

    def test_not_recorded_for_creations(self):
        agg = MetricsAggregator()
        out = _outcome(RequestKind.CREATE, None, 201, 10.0, assigned_id="x")
        record_outcome(agg, _stream(RequestKind.CREATE), classify(out))
        assert not agg.has("redirect_success_rate")


class TestProgressReporting:
    @pytest.mark.asyncio
    async def test_progress_task_is_finished_after_run(self, caplog):
        caplog.set_level("INFO", logger="shortload.runner")
        runner = Runner(_scenario(), FakeTransport(), grace_seconds=1.0, progress_interval=0.1)
        await runner.run()
        assert "progress:" in caplog.text
        leftover = [t for t in asyncio.all_tasks() if t is not asyncio.current_task()]
        assert leftover == []
