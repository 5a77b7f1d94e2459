"""Structured run summaries: build, serialize, and load them back for re-evaluation."""

import json
import os
from typing import Any, Dict, List, Optional

from shortload.models import QualityVerdict, ThresholdResult, VerdictReport
from shortload.runner import RunResult


class SummaryParseError(Exception):
    """Raised when a saved summary cannot be read back."""


def build_summary(result: RunResult) -> Dict[str, Any]:
    """Plain-dict summary of a run: per-series values, streams, and verdict."""
    return {
        "scenario": result.scenario.name,
        "source": result.scenario.source,
        "elapsed_seconds": round(result.elapsed_seconds, 3),
        "setup_created": result.setup_created,
        "stopped": result.stopped,
        "streams": {s.name: s.as_dict() for s in result.stream_stats},
        "metrics": result.aggregator.snapshot(),
        "verdict": verdict_to_dict(result.report),
    }


def verdict_to_dict(report: VerdictReport) -> Dict[str, Any]:
    return {
        "overall": report.overall,
        "thresholds": [_threshold_to_dict(r) for r in report.per_threshold],
        "quality": [_quality_to_dict(q) for q in report.quality],
    }


def _threshold_to_dict(result: ThresholdResult) -> Dict[str, Any]:
    return {
        "metric": result.spec.metric,
        "expression": result.spec.expression,
        "severity": result.spec.severity,
        "observed": result.observed,
        "passed": result.passed,
        "detail": result.detail,
    }


def _quality_to_dict(verdict: QualityVerdict) -> Dict[str, Any]:
    return {
        "name": verdict.name,
        "status": verdict.status,
        "message": verdict.message,
        "values": verdict.values,
    }


def summary_to_json(summary: Dict[str, Any]) -> str:
    return json.dumps(summary, indent=2, sort_keys=False)


def write_summary(summary: Dict[str, Any], out_path: str) -> None:
    parent = os.path.dirname(out_path)
    if parent and not os.path.isdir(parent):
        os.makedirs(parent, exist_ok=True)
    with open(out_path, "w", encoding="utf-8") as f:
        f.write(summary_to_json(summary) + "\n")


class MetricsSnapshot:
    """Read-only metric values loaded from a saved summary.

    Offers the same ``value`` / ``has`` lookups as the live aggregator, limited
    to the aggregations that were written out (p(50/90/95/99), avg, ...).
    """

    def __init__(self, metrics: Dict[str, Dict[str, Any]]) -> None:
        self._metrics = metrics

    def has(self, name: str) -> bool:
        return name in self._metrics

    def names(self) -> List[str]:
        return sorted(self._metrics)

    def value(self, name: str, aggregation: str) -> Optional[float]:
        entry = self._metrics.get(name)
        if not isinstance(entry, dict):
            return None
        values = entry.get("values")
        if not isinstance(values, dict):
            return None
        return values.get(aggregation)


def load_summary(path: str) -> MetricsSnapshot:
    """Load the ``metrics`` section of a summary written by ``write_summary``.

    Raises:
        SummaryParseError: If the file is missing, not a summary, or holds a
            metric whose values are not numbers.
    """
    if not os.path.isfile(path):
        raise SummaryParseError(f"summary file not found: {path}")
    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = json.load(f)
    except json.JSONDecodeError as exc:
        raise SummaryParseError(f"failed to parse JSON: {exc}") from exc

    if not isinstance(raw, dict):
        raise SummaryParseError("summary JSON must be an object at top level")
    metrics = raw.get("metrics")
    if not isinstance(metrics, dict):
        raise SummaryParseError("summary has no 'metrics' object")

    errors = []
    for name, entry in metrics.items():
        values = entry.get("values") if isinstance(entry, dict) else None
        if not isinstance(values, dict):
            errors.append(f"metric {name!r} has no 'values' object")
            continue
        for agg, val in values.items():
            if val is not None and (isinstance(val, bool) or not isinstance(val, (int, float))):
                errors.append(f"metric {name!r} {agg} is not a number: {val!r}")
    if errors:
        raise SummaryParseError("invalid summary metrics:\n  - " + "\n  - ".join(errors))
    return MetricsSnapshot(metrics)
