"""Load and validate scenario files (YAML or JSON)."""

import json
import os
import re
from typing import List, Optional, Tuple

import yaml

from shortload.evaluator import ThresholdSyntaxError, parse_threshold
from shortload.models import (
    CacheRule,
    RequestKind,
    ScenarioSpec,
    SetupGroup,
    Severity,
    StreamSpec,
    ThresholdSpec,
    TierSpec,
    WorkloadStage,
)

SCENARIOS_DIR = os.path.join(os.path.dirname(__file__), "scenarios")

_DURATION_RE = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")
_DURATION_UNITS_MS = {"ms": 1, "s": 1000, "m": 60_000, "h": 3_600_000}


class ScenarioValidationError(Exception):
    """Raised when a scenario file fails validation."""


def builtin_scenarios() -> List[str]:
    """Names of the scenarios shipped with the package."""
    if not os.path.isdir(SCENARIOS_DIR):
        return []
    return sorted(
        os.path.splitext(name)[0]
        for name in os.listdir(SCENARIOS_DIR)
        if name.endswith((".yaml", ".yml"))
    )


def resolve_scenario_path(name_or_path: str) -> str:
    """Accept either a path to a scenario file or the name of a built-in one."""
    if os.path.isfile(name_or_path):
        return name_or_path
    candidate = os.path.join(SCENARIOS_DIR, f"{name_or_path}.yaml")
    if os.path.isfile(candidate):
        return candidate
    raise ScenarioValidationError(
        f"scenario not found: {name_or_path} "
        f"(built-in scenarios: {', '.join(builtin_scenarios()) or 'none'})"
    )


def parse_duration_ms(value) -> int:
    """Parse ``"4m30s"``, ``"500ms"`` or a plain number of seconds into milliseconds."""
    if isinstance(value, bool):
        raise ValueError(f"invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        if value < 0:
            raise ValueError(f"invalid duration: {value!r}")
        return int(round(value * 1000))
    text = str(value).strip()
    parts = _DURATION_RE.findall(text)
    if not parts or "".join(n + u for n, u in parts) != text:
        raise ValueError(f"invalid duration: {value!r}")
    return int(round(sum(float(n) * _DURATION_UNITS_MS[u] for n, u in parts)))


def load_scenario(name_or_path: str, duration_scale: float = 1.0) -> ScenarioSpec:
    """Load a scenario from a YAML or JSON file, or by built-in name.

    Args:
        name_or_path: Path to a scenario file, or a built-in scenario name.
        duration_scale: Multiplier applied to every stage duration and start
            delay (e.g. 0.1 for a quick smoke run).

    Returns:
        A validated ScenarioSpec.

    Raises:
        ScenarioValidationError: If the file is missing, unreadable, or invalid.
    """
    path = resolve_scenario_path(name_or_path)
    ext = os.path.splitext(path)[1].lower()
    try:
        with open(path, "r") as f:
            if ext in (".yaml", ".yml"):
                raw = yaml.safe_load(f)
            elif ext == ".json":
                raw = json.load(f)
            else:
                raise ScenarioValidationError(
                    f"unsupported file extension: {ext} (expected .yaml, .yml, or .json)"
                )
    except (yaml.YAMLError, json.JSONDecodeError) as exc:
        raise ScenarioValidationError(f"failed to parse {path}: {exc}") from exc

    if not isinstance(raw, dict):
        raise ScenarioValidationError("scenario must be a mapping/object at the top level")

    if duration_scale <= 0:
        raise ScenarioValidationError(f"duration scale must be positive: {duration_scale}")

    return build_scenario(raw, source=path, duration_scale=duration_scale)


def build_scenario(raw: dict, source: str = "", duration_scale: float = 1.0) -> ScenarioSpec:
    """Construct and validate a ScenarioSpec from a raw dict."""
    errors: List[str] = []

    name = raw.get("name")
    if not name or not isinstance(name, str):
        errors.append("'name' is required and must be a non-empty string")

    groups, pace_ms = _parse_setup(raw.get("setup", {}), errors)
    group_names = {g.name for g in groups}

    streams_raw = raw.get("streams")
    streams: List[StreamSpec] = []
    if not isinstance(streams_raw, list) or not streams_raw:
        errors.append("'streams' is required and must be a non-empty list")
    else:
        for i, s in enumerate(streams_raw):
            stream = _parse_stream(s, f"streams[{i}]", group_names, duration_scale, errors)
            if stream is not None:
                streams.append(stream)
        names = [s.name for s in streams]
        if len(set(names)) != len(names):
            errors.append("stream names must be unique")

    thresholds = _parse_thresholds(raw.get("thresholds") or {}, errors)
    cache_rule = _parse_cache_rule(raw.get("cache_check"), errors)

    destination_prefix = raw.get("destination_prefix", "https://example.com")
    if not isinstance(destination_prefix, str):
        errors.append("'destination_prefix' must be a string")

    if errors:
        raise ScenarioValidationError(
            "scenario validation failed:\n  - " + "\n  - ".join(errors)
        )

    return ScenarioSpec(
        name=name,
        description=str(raw.get("description", "")),
        setup_groups=tuple(groups),
        streams=tuple(streams),
        thresholds=tuple(thresholds),
        cache_rule=cache_rule,
        setup_pace_ms=pace_ms,
        destination_prefix=destination_prefix.rstrip("/"),
        source=source,
    )


def _parse_setup(raw, errors: List[str]) -> Tuple[List[SetupGroup], int]:
    if raw is None:
        return [], 0
    if not isinstance(raw, dict):
        errors.append("'setup' must be a mapping")
        return [], 0

    pace_ms = 0
    try:
        pace_ms = parse_duration_ms(raw.get("pace", 0))
    except ValueError as exc:
        errors.append(f"setup.pace: {exc}")

    groups_raw = raw.get("groups", [])
    if not isinstance(groups_raw, list):
        errors.append("'setup.groups' must be a list")
        return [], pace_ms

    groups = []
    for i, g in enumerate(groups_raw):
        where = f"setup.groups[{i}]"
        if not isinstance(g, dict):
            errors.append(f"{where} must be a mapping")
            continue
        name = g.get("name")
        if not name:
            errors.append(f"{where}.name is required")
            continue
        slugs = g.get("slugs", [])
        count = g.get("count", 0)
        if not isinstance(slugs, list) or not all(isinstance(s, str) for s in slugs):
            errors.append(f"{where}.slugs must be a list of strings")
            slugs = []
        if not isinstance(count, int) or isinstance(count, bool) or count < 0:
            errors.append(f"{where}.count must be a non-negative integer")
            count = 0
        if not slugs and not count:
            errors.append(f"{where} needs 'slugs' or a positive 'count'")
        groups.append(SetupGroup(
            name=name,
            count=count,
            slugs=tuple(slugs),
            slug_prefix=g.get("slug_prefix"),
        ))
    return groups, pace_ms


def _parse_stages(raw: dict, where: str, scale: float, errors: List[str]) -> List[WorkloadStage]:
    if "rate" in raw:
        # constant arrival rate: rate + duration
        rate = raw.get("rate")
        if not _is_number(rate) or rate < 0:
            errors.append(f"{where}.rate must be a non-negative number")
            return []
        try:
            duration_ms = parse_duration_ms(raw.get("duration"))
        except ValueError as exc:
            errors.append(f"{where}.duration: {exc}")
            return []
        return [WorkloadStage(int(duration_ms * scale), rate, rate)]

    stages_raw = raw.get("stages")
    if not isinstance(stages_raw, list) or not stages_raw:
        errors.append(f"{where} needs either 'rate' + 'duration' or a non-empty 'stages' list")
        return []

    current = raw.get("start_rate", 0)
    if not _is_number(current) or current < 0:
        errors.append(f"{where}.start_rate must be a non-negative number")
        current = 0

    stages = []
    for j, st in enumerate(stages_raw):
        at = f"{where}.stages[{j}]"
        if not isinstance(st, dict):
            errors.append(f"{at} must be a mapping")
            continue
        target = st.get("target")
        start = st.get("start", current)
        if not _is_number(target) or target < 0:
            errors.append(f"{at}.target must be a non-negative number")
            continue
        if not _is_number(start) or start < 0:
            errors.append(f"{at}.start must be a non-negative number")
            continue
        try:
            duration_ms = parse_duration_ms(st.get("duration"))
        except ValueError as exc:
            errors.append(f"{at}.duration: {exc}")
            continue
        stages.append(WorkloadStage(int(duration_ms * scale), start, target))
        current = target
    return stages


def _parse_stream(raw, where: str, group_names, scale: float,
                  errors: List[str]) -> Optional[StreamSpec]:
    if not isinstance(raw, dict):
        errors.append(f"{where} must be a mapping")
        return None

    name = raw.get("name")
    if not name or not isinstance(name, str):
        errors.append(f"{where}.name is required")
        name = where

    kind = raw.get("kind")
    if kind not in RequestKind.ALL:
        errors.append(f"{where}.kind must be one of {', '.join(RequestKind.ALL)}")

    max_concurrency = raw.get("max_concurrency", 10)
    if not isinstance(max_concurrency, int) or isinstance(max_concurrency, bool) or max_concurrency < 1:
        errors.append(f"{where}.max_concurrency must be a positive integer")
        max_concurrency = 1

    stages = _parse_stages(raw, where, scale, errors)

    start_after_ms = 0
    try:
        start_after_ms = int(parse_duration_ms(raw.get("start_after", 0)) * scale)
    except ValueError as exc:
        errors.append(f"{where}.start_after: {exc}")

    tiers = []
    for k, t in enumerate(raw.get("tiers", []) or []):
        tier = _parse_tier(t, f"{where}.tiers[{k}]", group_names, errors)
        if tier is not None:
            tiers.append(tier)
    if kind == RequestKind.REDIRECT and not tiers:
        errors.append(f"{where} is a redirect stream and needs at least one tier")

    budget = raw.get("latency_budget_ms")
    if budget is not None and (not _is_number(budget) or budget <= 0):
        errors.append(f"{where}.latency_budget_ms must be a positive number")
        budget = None

    tags = raw.get("tags", [])
    if not isinstance(tags, list):
        errors.append(f"{where}.tags must be a list")
        tags = []

    return StreamSpec(
        name=name,
        kind=kind,
        stages=tuple(stages),
        max_concurrency=max_concurrency,
        tiers=tuple(tiers),
        tag=raw.get("tag"),
        start_after_ms=start_after_ms,
        latency_budget_ms=budget,
        counter=raw.get("counter"),
        tags=tuple(str(t) for t in tags),
    )


def _parse_tier(raw, where: str, group_names, errors: List[str]) -> Optional[TierSpec]:
    if not isinstance(raw, dict):
        errors.append(f"{where} must be a mapping")
        return None
    name = raw.get("name", where)
    weight = raw.get("weight")
    if not _is_number(weight) or not 0 < weight <= 1:
        errors.append(f"{where}.weight must be a number in (0, 1]")
        return None
    group = raw.get("group")
    if group is not None and group not in group_names:
        errors.append(f"{where}.group refers to unknown setup group {group!r}")
    head_fraction = raw.get("head_fraction")
    if head_fraction is not None and (not _is_number(head_fraction) or not 0 < head_fraction <= 1):
        errors.append(f"{where}.head_fraction must be a number in (0, 1]")
        head_fraction = None
    head_count = raw.get("head_count")
    if head_count is not None and (not isinstance(head_count, int) or head_count < 1):
        errors.append(f"{where}.head_count must be a positive integer")
        head_count = None
    return TierSpec(
        name=str(name),
        weight=float(weight),
        group=group,
        head_fraction=head_fraction,
        head_count=head_count,
        include_pool=bool(raw.get("include_pool", False)),
    )


def _parse_thresholds(raw, errors: List[str]) -> List[ThresholdSpec]:
    if not isinstance(raw, dict):
        errors.append("'thresholds' must be a mapping of metric name to expressions")
        return []
    specs = []
    for metric, exprs in raw.items():
        if isinstance(exprs, (str, dict)):
            exprs = [exprs]
        if not isinstance(exprs, list):
            errors.append(f"thresholds.{metric} must be a list of expressions")
            continue
        for e in exprs:
            if isinstance(e, dict):
                expression = e.get("expr", "")
                severity = e.get("severity", Severity.FAIL)
            else:
                expression, severity = str(e), Severity.FAIL
            try:
                specs.append(parse_threshold(metric, expression, severity))
            except ThresholdSyntaxError as exc:
                errors.append(str(exc))
    return specs


def _parse_cache_rule(raw, errors: List[str]) -> Optional[CacheRule]:
    if raw is None or raw is False:
        return None
    if raw is True:
        return CacheRule()
    if not isinstance(raw, dict):
        errors.append("'cache_check' must be true/false or a mapping")
        return None
    defaults = CacheRule()
    values = {}
    for key in ("pass_hit_rate", "warn_hit_rate", "max_hit_latency_ms"):
        val = raw.get(key, getattr(defaults, key))
        if not _is_number(val):
            errors.append(f"cache_check.{key} must be a number")
            val = getattr(defaults, key)
        values[key] = float(val)
    return CacheRule(**values)


def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)
