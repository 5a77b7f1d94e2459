"""Turn raw request outcomes into success / cache-hit verdicts.

Cache hits are inferred from latency alone: a redirect answered faster than
``cache_hit_threshold_ms`` is assumed to have been served from the cache.
The target service exposes no field that says so, so this is a heuristic
proxy and must be reported as one, never as ground truth.
"""

from shortload.models import ClassifiedOutcome, RequestKind, RequestOutcome

DEFAULT_CACHE_HIT_THRESHOLD_MS = 50.0

CREATE_OK_STATUSES = frozenset({200, 201})
REDIRECT_OK_STATUSES = frozenset({301, 302})


def succeeded(outcome: RequestOutcome) -> bool:
    if outcome.kind == RequestKind.CREATE:
        return outcome.status_code in CREATE_OK_STATUSES and bool(outcome.assigned_id)
    if outcome.kind == RequestKind.REDIRECT:
        return outcome.status_code in REDIRECT_OK_STATUSES and outcome.has_location_header
    raise ValueError(f"unknown request kind: {outcome.kind!r}")


def classify(
    outcome: RequestOutcome,
    cache_hit_threshold_ms: float = DEFAULT_CACHE_HIT_THRESHOLD_MS,
) -> ClassifiedOutcome:
    """Classify one outcome.

    Failed requests keep their status code and latency on ``outcome`` and get
    ``cache_hit=None``. Creations never carry a cache verdict.
    """
    ok = succeeded(outcome)
    cache_hit = None
    if ok and outcome.kind == RequestKind.REDIRECT:
        cache_hit = outcome.latency_ms < cache_hit_threshold_ms
    return ClassifiedOutcome(outcome=outcome, succeeded=ok, cache_hit=cache_hit)
