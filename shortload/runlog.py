"""Append-only JSONL log of finished runs.

Each line is a ``RunRecord``: enough to compare runs over time without
keeping every summary around (verdict, request volume, the capacity and
cancellation counters, and which thresholds failed).
"""

import dataclasses
import json
import logging
import os
from datetime import datetime, timezone
from typing import Iterator, List, Optional

from shortload.evaluator import failed_thresholds
from shortload.models import RunRecord
from shortload.runner import SKIPPED_ITERATIONS, RunResult
from shortload.scheduler import DROPPED_ITERATIONS, INCOMPLETE_REQUESTS

logger = logging.getLogger(__name__)

_FIELDS = {f.name for f in dataclasses.fields(RunRecord)}


def _count(result: RunResult, name: str) -> int:
    return int(result.aggregator.value(name, "count") or 0)


def record_from_result(result: RunResult, ts: Optional[str] = None) -> RunRecord:
    report = result.report
    cache = [q.status for q in report.quality if q.name == "cache-effectiveness"]
    return RunRecord(
        ts=ts or datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
        scenario=result.scenario.name,
        source=result.scenario.source,
        verdict=report.overall,
        stopped=result.stopped,
        elapsed_seconds=round(result.elapsed_seconds, 3),
        requests=_count(result, "http_reqs"),
        dropped=_count(result, DROPPED_ITERATIONS),
        incomplete=_count(result, INCOMPLETE_REQUESTS),
        skipped=_count(result, SKIPPED_ITERATIONS),
        failed_thresholds=[
            f"{r.spec.metric} {r.spec.expression}" for r in failed_thresholds(report)
        ],
        cache_verdict=cache[0] if cache else None,
    )


def append_record(record: RunRecord, log_path: str) -> None:
    """Add ``record`` as one JSON line, creating the file and its directory if needed."""
    parent = os.path.dirname(log_path)
    if parent:
        os.makedirs(parent, exist_ok=True)
    with open(log_path, "a", encoding="utf-8") as f:
        f.write(json.dumps(dataclasses.asdict(record), sort_keys=True) + "\n")


def _iter_lines(log_path: str) -> Iterator[dict]:
    with open(log_path, "r", encoding="utf-8") as f:
        for lineno, line in enumerate(f, 1):
            line = line.strip()
            if not line:
                continue
            try:
                raw = json.loads(line)
            except json.JSONDecodeError:
                logger.warning("%s:%d: skipping malformed run record", log_path, lineno)
                continue
            if isinstance(raw, dict) and "ts" in raw and "scenario" in raw:
                yield raw
            else:
                logger.warning("%s:%d: skipping line without ts/scenario", log_path, lineno)


def read_records(log_path: str, scenario: Optional[str] = None) -> List[RunRecord]:
    """Records in file order, optionally only those of one scenario.

    A missing log reads as empty. Unknown keys are ignored so older logs
    stay readable.
    """
    if not os.path.isfile(log_path):
        return []
    records = []
    for raw in _iter_lines(log_path):
        if scenario is not None and raw["scenario"] != scenario:
            continue
        records.append(RunRecord(**{k: v for k, v in raw.items() if k in _FIELDS}))
    return records
