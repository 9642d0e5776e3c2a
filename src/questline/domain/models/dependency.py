from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping

from questline.domain.models.progress import EntityKind, infer_entity_kind


@dataclass(frozen=True)
class DependencyNode:
    id: str
    kind: EntityKind
    prerequisite_ids: frozenset[str] = field(default_factory=frozenset)
    name: str = ""

    def __post_init__(self) -> None:
        if not str(self.id or "").strip():
            raise ValueError("DependencyNode requires an id")
        object.__setattr__(self, "kind", EntityKind(self.kind))
        object.__setattr__(self, "prerequisite_ids", frozenset(str(pid) for pid in self.prerequisite_ids))

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> "DependencyNode":
        node_id = str(payload.get("id") or "").strip()
        raw_kind = payload.get("kind")
        prerequisites: Iterable[Any] = payload.get("prerequisite_ids") or payload.get("prerequisiteIds") or ()
        return cls(
            id=node_id,
            kind=EntityKind(raw_kind) if raw_kind else infer_entity_kind(node_id),
            prerequisite_ids=frozenset(str(pid) for pid in prerequisites if str(pid).strip()),
            name=str(payload.get("name") or ""),
        )


@dataclass(frozen=True)
class ResourceRequirement:
    resource_id: str
    entity_id: str
    quantity: int = 1
    found_in_raid: bool = False

    def __post_init__(self) -> None:
        if not self.resource_id or not self.entity_id:
            raise ValueError("ResourceRequirement requires resource_id and entity_id")
        if int(self.quantity) <= 0:
            raise ValueError("ResourceRequirement quantity must be positive")


@dataclass(frozen=True)
class ContentDefinitions:
    nodes: tuple[DependencyNode, ...] = ()
    requirements: tuple[ResourceRequirement, ...] = ()
