"""Evaluate aggregated metrics against thresholds and produce a verdict."""

import operator
import re
from typing import Dict, Iterable, List, Optional, Protocol, Sequence

from shortload.models import (
    CacheRule,
    QualityVerdict,
    Severity,
    ThresholdResult,
    ThresholdSpec,
    VerdictReport,
)


class ThresholdSyntaxError(ValueError):
    """Raised when a threshold expression cannot be parsed."""


class MetricSource(Protocol):
    def value(self, name: str, aggregation: str) -> Optional[float]: ...

    def has(self, name: str) -> bool: ...


_OPERATORS = {
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
    "==": operator.eq,
    "!=": operator.ne,
}

_EXPRESSION_RE = re.compile(
    r"^\s*(?P<agg>p\(\d+(?:\.\d+)?\)|avg|min|max|med|count|rate|passes|fails)\s*"
    r"(?P<op><=|>=|==|!=|<|>)\s*"
    r"(?P<value>-?\d+(?:\.\d+)?)\s*$"
)

CACHE_HIT_RATE = "cache_hit_rate"
CACHED_RESPONSE_TIME = "cached_response_time"
UNCACHED_RESPONSE_TIME = "uncached_response_time"


def parse_threshold(metric: str, expression: str, severity: str = Severity.FAIL) -> ThresholdSpec:
    """Parse a k6-style expression such as ``p(95)<500`` or ``rate>0.80``.

    Raises:
        ThresholdSyntaxError: If the expression or severity is not recognised.
    """
    if severity not in Severity.ALL:
        raise ThresholdSyntaxError(
            f"unknown severity for {metric}: {severity!r} (expected fail or warn)"
        )
    match = _EXPRESSION_RE.match(expression)
    if not match:
        raise ThresholdSyntaxError(f"cannot parse threshold for {metric}: {expression!r}")
    return ThresholdSpec(
        metric=metric,
        aggregation=match.group("agg"),
        operator=match.group("op"),
        threshold=float(match.group("value")),
        severity=severity,
        expression=expression.strip(),
    )


def _numeric(value) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return value


def evaluate_threshold(source: MetricSource, spec: ThresholdSpec) -> ThresholdResult:
    label = f"{spec.metric} {spec.aggregation}{spec.operator}{spec.threshold:g}"
    if not source.has(spec.metric):
        return ThresholdResult(spec, None, False, f"{label}: metric was never recorded")

    raw = source.value(spec.metric, spec.aggregation)
    if raw is None:
        return ThresholdResult(
            spec, None, False, f"{label}: no value for {spec.aggregation}"
        )
    observed = _numeric(raw)
    if observed is None:
        return ThresholdResult(
            spec, None, False, f"{label}: {spec.aggregation} is not a number ({raw!r})"
        )

    passed = _OPERATORS[spec.operator](observed, spec.threshold)
    return ThresholdResult(spec, observed, passed, f"{label}: observed {observed:.2f}")


def overall_status(results: Iterable[ThresholdResult]) -> str:
    status = "pass"
    for result in results:
        if result.passed:
            continue
        if result.spec.severity == Severity.FAIL:
            return "fail"
        status = "warn"
    return status


def cache_effectiveness(source: MetricSource, rule: CacheRule = CacheRule()) -> QualityVerdict:
    """Judge the redirect cache from the latency-inferred hit rate.

    Hits are a latency heuristic (see ``shortload.classifier``), so this
    verdict says the cache *looks* effective, not that it provably is.
    """
    hit_rate = _numeric(source.value(CACHE_HIT_RATE, "rate"))
    avg_cached = _numeric(source.value(CACHED_RESPONSE_TIME, "avg"))
    avg_uncached = _numeric(source.value(UNCACHED_RESPONSE_TIME, "avg"))
    improvement = None
    if avg_cached is not None and avg_uncached:
        improvement = (avg_uncached - avg_cached) / avg_uncached * 100

    values = {
        "hit_rate": hit_rate,
        "avg_cached_ms": avg_cached,
        "avg_uncached_ms": avg_uncached,
        "improvement_pct": improvement,
    }

    if hit_rate is None:
        return QualityVerdict(
            "cache-effectiveness", "fail", "no successful redirects to judge the cache by", values
        )
    if hit_rate > rule.pass_hit_rate and avg_cached is not None and avg_cached < rule.max_hit_latency_ms:
        status, message = "pass", "caching is working effectively"
    elif hit_rate > rule.warn_hit_rate:
        status, message = "warn", "cache hit rate could be better"
    else:
        status, message = "fail", "caching may not be working properly"
    return QualityVerdict("cache-effectiveness", status, message, values)


def evaluate(
    source: MetricSource,
    thresholds: Sequence[ThresholdSpec],
    cache_rule: Optional[CacheRule] = None,
) -> VerdictReport:
    """Evaluate every threshold independently and combine the results.

    Never raises: a missing series or undefined value is a failed threshold.

    Args:
        source: Aggregated metrics (live aggregator or a loaded snapshot).
        thresholds: Thresholds to check.
        cache_rule: When given, adds the cache-effectiveness quality verdict.

    Returns:
        A VerdictReport whose overall status is fail, warn, or pass.
    """
    results = [evaluate_threshold(source, spec) for spec in thresholds]
    quality = []
    if cache_rule is not None:
        quality.append(cache_effectiveness(source, cache_rule))
    return VerdictReport(
        per_threshold=results,
        overall=overall_status(results),
        quality=quality,
    )


def build_narrative(report: VerdictReport, values: Optional[Dict[str, float]] = None) -> str:
    lines = []
    failed = failed_thresholds(report)
    if report.overall == "pass":
        lines.append(f"All {len(report.per_threshold)} threshold(s) passed.")
    elif report.overall == "fail":
        lines.append(f"THRESHOLD VIOLATION: {len(failed)} threshold(s) failed.")
    else:
        lines.append("Required thresholds passed, but warnings were raised.")
    for r in failed:
        lines.append(f"  - [{r.spec.severity}] {r.detail}")

    if values:
        for label, value in values.items():
            if value is not None:
                lines.append(f"{label}: {value:.2f}")

    for q in report.quality:
        lines.append(f"{q.name}: {q.status.upper()} ({q.message})")
        hit_rate = q.values.get("hit_rate")
        if hit_rate is not None:
            lines.append(f"  inferred cache hit rate: {hit_rate * 100:.2f}%")
        improvement = q.values.get("improvement_pct")
        if improvement is not None:
            lines.append(f"  cached responses {improvement:.1f}% faster than uncached")

    return "\n".join(lines)


def failed_thresholds(report: VerdictReport) -> List[ThresholdResult]:
    return [r for r in report.per_threshold if not r.passed]
