from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class Tier(str, Enum):
    NOW = "now"
    SOON = "soon"
    LATER = "later"

    @property
    def urgency(self) -> int:
        return _URGENCY[self]

    def is_more_urgent_than(self, other: "Tier") -> bool:
        return self.urgency > other.urgency


_URGENCY = {Tier.NOW: 3, Tier.SOON: 2, Tier.LATER: 1}


@dataclass(frozen=True)
class TierThresholds:
    """Inclusive upper depth bounds: depth <= now_max_depth is NOW, <= soon_max_depth is SOON."""

    now_max_depth: int = 0
    soon_max_depth: int = 2

    def __post_init__(self) -> None:
        if self.now_max_depth < 0:
            raise ValueError("now_max_depth must be >= 0")
        if self.soon_max_depth < self.now_max_depth:
            raise ValueError("soon_max_depth must be >= now_max_depth")

    def tier_for(self, depth: int) -> Tier:
        if depth <= self.now_max_depth:
            return Tier.NOW
        if depth <= self.soon_max_depth:
            return Tier.SOON
        return Tier.LATER


@dataclass(frozen=True)
class PriorityResult:
    entity_id: str
    tier: Tier
    depth: int
    driving_entities: frozenset[str] = field(default_factory=frozenset)
    cycle_detected: bool = False


@dataclass(frozen=True)
class ResourcePriority(PriorityResult):
    """``quantity`` is what is still missing: ``needed`` minus ``owned``."""

    quantity: int = 0
    needed: int = 0
    owned: int = 0

    @property
    def resource_id(self) -> str:
        return self.entity_id
