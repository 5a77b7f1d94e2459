"""Data models for workload shapes, request outcomes, thresholds, and verdicts."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple


class RequestKind:
    CREATE = "create"
    REDIRECT = "redirect"

    ALL = (CREATE, REDIRECT)


class MetricKind:
    COUNTER = "counter"
    RATE = "rate"
    TREND = "trend"

    ALL = (COUNTER, RATE, TREND)


class Severity:
    FAIL = "fail"
    WARN = "warn"

    ALL = (FAIL, WARN)


@dataclass(frozen=True)
class WorkloadStage:
    """One linear ramp segment of a stream's rate curve (rates per second)."""

    duration_ms: int
    start_rate: float
    end_rate: float

    def __post_init__(self):
        if self.duration_ms < 0:
            raise ValueError(f"stage duration must be non-negative: {self.duration_ms}")
        if self.start_rate < 0 or self.end_rate < 0:
            raise ValueError(
                f"stage rates must be non-negative: {self.start_rate} -> {self.end_rate}"
            )

    @property
    def duration_seconds(self) -> float:
        return self.duration_ms / 1000.0


@dataclass(frozen=True)
class TrafficTier:
    name: str
    weight: float
    members: Tuple[str, ...] = ()
    head_fraction: Optional[float] = None  # e.g. 0.2 -> first 20% of members
    head_count: Optional[int] = None
    include_pool: bool = False  # also draw from identifiers created mid-run


@dataclass(frozen=True)
class RequestOutcome:
    kind: str
    target_id: Optional[str]
    issued_at: float
    completed_at: float
    status_code: int  # 0 when the transport failed before a response
    has_location_header: bool
    latency_ms: float
    assigned_id: Optional[str] = None  # creation only
    error: Optional[str] = None
    detail: str = ""


@dataclass(frozen=True)
class ClassifiedOutcome:
    outcome: RequestOutcome
    succeeded: bool
    cache_hit: Optional[bool]  # None when unknown


@dataclass(frozen=True)
class ThresholdSpec:
    metric: str
    aggregation: str  # "p(95)", "avg", "rate", "count", ...
    operator: str  # "<", "<=", ">", ">=", "==", "!="
    threshold: float
    severity: str = Severity.FAIL
    expression: str = ""


@dataclass
class ThresholdResult:
    spec: ThresholdSpec
    observed: Optional[float]
    passed: bool
    detail: str = ""


@dataclass(frozen=True)
class CacheRule:
    """Secondary heuristic for judging whether the redirect cache is effective."""

    pass_hit_rate: float = 0.80
    warn_hit_rate: float = 0.60
    max_hit_latency_ms: float = 50.0


@dataclass
class QualityVerdict:
    name: str
    status: str  # "pass", "warn", "fail"
    message: str
    values: Dict[str, Optional[float]] = field(default_factory=dict)


@dataclass
class VerdictReport:
    per_threshold: List[ThresholdResult] = field(default_factory=list)
    overall: str = "pass"
    quality: List[QualityVerdict] = field(default_factory=list)


@dataclass(frozen=True)
class SetupGroup:
    """Targets created before the workload starts."""

    name: str
    count: int = 0
    slugs: Tuple[str, ...] = ()
    slug_prefix: Optional[str] = None


@dataclass(frozen=True)
class TierSpec:
    name: str
    weight: float
    group: Optional[str] = None  # None -> every setup group
    head_fraction: Optional[float] = None
    head_count: Optional[int] = None
    include_pool: bool = False


@dataclass(frozen=True)
class StreamSpec:
    name: str
    kind: str
    stages: Tuple[WorkloadStage, ...]
    max_concurrency: int
    tiers: Tuple[TierSpec, ...] = ()
    tag: Optional[str] = None  # defaults to kind
    start_after_ms: int = 0
    latency_budget_ms: Optional[float] = None
    counter: Optional[str] = None
    tags: Tuple[str, ...] = ()  # attached to created short URLs

    @property
    def type_tag(self) -> str:
        return self.tag or ("creation" if self.kind == RequestKind.CREATE else self.kind)

    @property
    def duration_ms(self) -> int:
        return self.start_after_ms + sum(s.duration_ms for s in self.stages)


@dataclass(frozen=True)
class ScenarioSpec:
    name: str
    description: str = ""
    setup_groups: Tuple[SetupGroup, ...] = ()
    streams: Tuple[StreamSpec, ...] = ()
    thresholds: Tuple[ThresholdSpec, ...] = ()
    cache_rule: Optional[CacheRule] = None
    setup_pace_ms: int = 0
    destination_prefix: str = "https://example.com"
    source: str = ""

    @property
    def duration_ms(self) -> int:
        return max((s.duration_ms for s in self.streams), default=0)


@dataclass
class StreamStats:
    name: str
    attempted: int = 0
    issued: int = 0
    dropped: int = 0
    completed: int = 0
    incomplete: int = 0

    def as_dict(self) -> Dict[str, Any]:
        return {
            "attempted": self.attempted,
            "issued": self.issued,
            "dropped": self.dropped,
            "completed": self.completed,
            "incomplete": self.incomplete,
        }


@dataclass
class RunRecord:
    """One line of the run log: what ran, how it ended, and what went wrong."""

    ts: str
    scenario: str
    source: str = ""
    verdict: str = "pass"
    stopped: bool = False
    elapsed_seconds: float = 0.0
    requests: int = 0
    dropped: int = 0
    incomplete: int = 0
    skipped: int = 0
    failed_thresholds: List[str] = field(default_factory=list)
    cache_verdict: Optional[str] = None  # quality status when the scenario checks the cache
