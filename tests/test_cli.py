"""Tests for the CLI entry point."""

import json
import os
import tempfile

import pytest
from click.testing import CliRunner

from shortload import cli
from shortload.aggregator import MetricsAggregator
from shortload.cli import main
from shortload.config import get_settings
from shortload.evaluator import evaluate
from shortload.models import MetricKind, StreamStats
from shortload.runner import RunResult


FIXTURES_DIR = os.path.join(os.path.dirname(__file__), "..", "fixtures")
SMOKE = os.path.join(FIXTURES_DIR, "smoke-scenario.yaml")


@pytest.fixture
def fake_execute(monkeypatch):
    """Replace the network run with a canned result; failure rate is configurable."""
    calls = {}

    def install(failed_fraction=0.0):
        def execute(spec, settings, seed=None, install_signal_handlers=False):
            calls["settings"] = settings
            calls["seed"] = seed
            agg = MetricsAggregator()
            fails = int(100 * failed_fraction)
            for i in range(100):
                agg.record("http_reqs", MetricKind.COUNTER, 1)
                agg.record("http_req_failed", MetricKind.RATE, i < fails)
                agg.record("http_req_duration{type:redirect}", MetricKind.TREND, 20.0)
                agg.record("cache_hit_rate", MetricKind.RATE, True)
                agg.record("cached_response_time", MetricKind.TREND, 20.0)
            agg.set_duration(1.0)
            return RunResult(
                scenario=spec,
                report=evaluate(agg, spec.thresholds, spec.cache_rule),
                aggregator=agg,
                stream_stats=[StreamStats(s.name) for s in spec.streams],
                elapsed_seconds=1.0,
                setup_created=5,
            )

        monkeypatch.setattr(cli, "execute", execute)
        return calls

    return install


class TestScenariosCommand:
    def test_lists_builtins(self):
        result = CliRunner().invoke(main, ["scenarios"])
        assert result.exit_code == 0
        lines = result.output.strip().splitlines()
        assert len(lines) == 4
        assert lines[0].startswith("baseline: ")


class TestRunCommand:
    def test_missing_api_key_exits_1(self, monkeypatch):
        monkeypatch.delenv("SHLINK_API_KEY", raising=False)
        get_settings.cache_clear()
        try:
            result = CliRunner().invoke(main, ["run", "--scenario", SMOKE])
        finally:
            get_settings.cache_clear()
        assert result.exit_code == 1
        assert "SHLINK_API_KEY" in result.output

    def test_unknown_scenario_exits_1(self):
        result = CliRunner().invoke(main, ["run", "--scenario", "no-such-scenario"])
        assert result.exit_code == 1
        assert "not found" in result.output

    def test_run_to_stdout(self, fake_execute):
        calls = fake_execute()
        result = CliRunner().invoke(
            main, ["run", "--scenario", SMOKE, "--seed", "7", "--base-url", "http://other:9000"]
        )
        assert result.exit_code == 0
        assert calls["seed"] == 7
        assert calls["settings"].BASE_URL == "http://other:9000"
        assert "Status: PASS" in result.output
        assert '"scenario": "smoke"' in result.output

    def test_run_to_file_with_log(self, fake_execute):
        fake_execute()
        with tempfile.TemporaryDirectory() as tmpdir:
            out_path = os.path.join(tmpdir, "summary.json")
            log_path = os.path.join(tmpdir, "runs.jsonl")
            result = CliRunner().invoke(main, [
                "run", "--scenario", SMOKE, "--out", out_path, "--log", log_path,
            ])
            assert result.exit_code == 0
            with open(out_path, "r") as f:
                parsed = json.loads(f.read())
            assert parsed["scenario"] == "smoke"
            assert parsed["metrics"]["http_reqs"]["values"]["count"] == 100
            with open(log_path, "r") as f:
                entry = json.loads(f.readline())
            assert entry["scenario"] == "smoke"
            assert entry["requests"] == 100
            assert entry["verdict"] == "pass"
            assert entry["failed_thresholds"] == []
            assert entry["cache_verdict"] == "pass"

    def test_fail_verdict_exits_0_without_strict(self, fake_execute):
        fake_execute(failed_fraction=0.2)
        result = CliRunner().invoke(main, ["run", "--scenario", SMOKE])
        assert result.exit_code == 0
        assert "Status: FAIL" in result.output
        assert "THRESHOLD VIOLATION" in result.output

    def test_fail_verdict_exits_2_with_strict(self, fake_execute):
        fake_execute(failed_fraction=0.2)
        result = CliRunner().invoke(main, ["run", "--scenario", SMOKE, "--strict"])
        assert result.exit_code == 2


class TestCheckCommand:
    def test_passing_summary(self):
        summary = os.path.join(FIXTURES_DIR, "summary-passing.json")
        result = CliRunner().invoke(
            main, ["check", "--summary", summary, "--scenario", "cache-performance"]
        )
        assert result.exit_code == 0
        assert "Status: PASS" in result.output
        assert "cache-effectiveness: PASS" in result.output

    def test_failing_summary(self):
        summary = os.path.join(FIXTURES_DIR, "summary-failing.json")
        result = CliRunner().invoke(
            main, ["check", "--summary", summary, "--scenario", "cache-performance"]
        )
        assert result.exit_code == 0
        assert "Status: FAIL" in result.output
        assert "THRESHOLD VIOLATION" in result.output
        assert "cache-effectiveness: FAIL" in result.output

    def test_not_a_summary(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = os.path.join(tmpdir, "bad.json")
            with open(path, "w") as f:
                json.dump({"hello": "world"}, f)
            result = CliRunner().invoke(
                main, ["check", "--summary", path, "--scenario", "baseline"]
            )
        assert result.exit_code == 1
        assert "metrics" in result.output

    def test_summary_with_non_numeric_value_exits_1(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = os.path.join(tmpdir, "bad.json")
            with open(path, "w") as f:
                json.dump({"metrics": {"http_req_failed": {"values": {"rate": "0.5"}}}}, f)
            result = CliRunner().invoke(
                main, ["check", "--summary", path, "--scenario", "baseline"]
            )
        assert result.exit_code == 1
        assert result.exception is None or isinstance(result.exception, SystemExit)
        assert "not a number" in result.output


class TestHistoryCommand:
    def test_empty_log(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            result = CliRunner().invoke(
                main, ["history", "--log", os.path.join(tmpdir, "runs.jsonl")]
            )
        assert result.exit_code == 0
        assert "No runs logged." in result.output

    def test_lists_runs_with_failures(self, fake_execute):
        runner = CliRunner()
        with tempfile.TemporaryDirectory() as tmpdir:
            log_path = os.path.join(tmpdir, "runs.jsonl")
            fake_execute()
            runner.invoke(main, ["run", "--scenario", SMOKE, "--log", log_path])
            fake_execute(failed_fraction=0.2)
            runner.invoke(main, ["run", "--scenario", SMOKE, "--log", log_path])

            result = runner.invoke(main, ["history", "--log", log_path, "--scenario", "smoke"])
            other = runner.invoke(main, ["history", "--log", log_path, "--scenario", "baseline"])

        assert result.exit_code == 0
        lines = result.output.strip().splitlines()
        assert "PASS" in lines[0]
        assert "FAIL" in lines[1]
        assert "failed: http_req_failed rate<0.05" in result.output
        assert "No runs logged." in other.output
