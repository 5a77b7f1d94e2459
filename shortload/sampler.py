"""Weighted selection of redirect targets across popularity tiers."""

import random
import threading
from typing import List, Optional, Sequence, Tuple

from shortload.models import TrafficTier


class EmptyPopulation(Exception):
    """Raised when no tier has any member to draw from."""


class CreatedPool:
    """Append-only pool of identifiers created while the run is in progress.

    Writers append under a lock and then publish the new length; readers only
    ever look at the published prefix, so they never need the lock.
    """

    def __init__(self, initial: Sequence[str] = ()) -> None:
        self._items: List[str] = list(initial)
        self._published = len(self._items)
        self._lock = threading.Lock()

    def append(self, target_id: str) -> None:
        with self._lock:
            self._items.append(target_id)
            self._published = len(self._items)

    def snapshot(self) -> Tuple[str, ...]:
        n = self._published
        return tuple(self._items[:n])

    def __len__(self) -> int:
        return self._published


class TargetPopulation:
    """Tiers fixed at setup, plus a reference to the shared created pool."""

    def __init__(self, tiers: Sequence[TrafficTier], pool: Optional[CreatedPool] = None) -> None:
        self.tiers: Tuple[TrafficTier, ...] = tuple(tiers)
        self.pool = pool if pool is not None else CreatedPool()

    def members_of(self, tier: TrafficTier) -> Tuple[str, ...]:
        members = tier.members
        if tier.include_pool:
            members = members + self.pool.snapshot()
        return _restrict_head(members, tier)

    def is_empty(self) -> bool:
        has_pool = len(self.pool) > 0
        return not any(t.members or (t.include_pool and has_pool) for t in self.tiers)


def _restrict_head(members: Tuple[str, ...], tier: TrafficTier) -> Tuple[str, ...]:
    if not members:
        return members
    if tier.head_count is not None:
        return members[: max(1, min(tier.head_count, len(members)))]
    if tier.head_fraction is not None:
        return members[: max(1, int(len(members) * tier.head_fraction))]
    return members


def choose_tier_index(tiers: Sequence[TrafficTier], draw: float) -> int:
    """Index of the first tier whose cumulative weight exceeds ``draw``.

    Falls back to the last declared tier when the weights leave a gap.
    """
    cumulative = 0.0
    for i, tier in enumerate(tiers):
        cumulative += tier.weight
        if draw < cumulative:
            return i
    return len(tiers) - 1


def sample_target(population: TargetPopulation, rng: random.Random) -> str:
    """Pick one target id from the population.

    Args:
        population: Tiers in effect for this stream.
        rng: Injected random source; the only state this function touches.

    Returns:
        A target identifier.

    Raises:
        EmptyPopulation: If no tier has any members.
    """
    tiers = population.tiers
    if not tiers:
        raise EmptyPopulation("population has no tiers")

    start = choose_tier_index(tiers, rng.random())
    for step in range(len(tiers)):
        members = population.members_of(tiers[(start + step) % len(tiers)])
        if members:
            return members[rng.randrange(len(members))]
    raise EmptyPopulation("every tier in the population is empty")
