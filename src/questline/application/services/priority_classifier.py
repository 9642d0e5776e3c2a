from __future__ import annotations

import logging
from collections import defaultdict
from typing import Dict, Iterable, List, Mapping

from questline.application.services.dependency_graph import DependencyGraph
from questline.application.services.event_bus import EventBus
from questline.application.services.progress_store import ProgressStore
from questline.domain.errors import DependencyCycleError
from questline.domain.events import PriorityInvalidated, ProgressChanged
from questline.domain.models.dependency import ResourceRequirement
from questline.domain.models.priority import PriorityResult, ResourcePriority, Tier, TierThresholds
from questline.domain.models.progress import EntityKind


logger = logging.getLogger(__name__)

CYCLE_DEPTH = -1


class PriorityClassifier:
    def __init__(
        self,
        graph: DependencyGraph,
        store: ProgressStore,
        event_bus: EventBus | None = None,
        *,
        thresholds: TierThresholds | None = None,
        kind_thresholds: Mapping[EntityKind, TierThresholds] | None = None,
    ) -> None:
        self._graph = graph
        self._store = store
        self._event_bus = event_bus
        self._thresholds = thresholds or TierThresholds()
        self._kind_thresholds = dict(kind_thresholds or {})
        self._cache: Dict[str, PriorityResult] = {}
        self._cache_version: int | None = None
        if event_bus is not None:
            event_bus.subscribe(ProgressChanged, self._on_progress_changed, priority=10)

    @property
    def graph(self) -> DependencyGraph:
        return self._graph

    def set_graph(self, graph: DependencyGraph) -> None:
        self._graph = graph
        self.invalidate_all()

    def invalidate_all(self) -> None:
        self._invalidate(frozenset(self._graph.node_ids()))

    def tier_for_depth(self, depth: int, kind: EntityKind | None = None) -> Tier:
        thresholds = self._kind_thresholds.get(kind, self._thresholds) if kind is not None else self._thresholds
        return thresholds.tier_for(depth)

    def get_priority(self, entity_id: str) -> PriorityResult:
        self._sync_cache()
        cached = self._cache.get(entity_id)
        if cached is not None:
            return cached

        node = self._graph.get(entity_id)
        snapshot = self._store.snapshot()
        try:
            depth = self._graph.depth(entity_id, snapshot)
        except DependencyCycleError as exc:
            logger.warning(
                "Dependency cycle; classifying entity as later",
                extra={"entity_id": entity_id, "cycle_path": list(exc.cycle_path)},
            )
            result = PriorityResult(
                entity_id=entity_id,
                tier=Tier.LATER,
                depth=CYCLE_DEPTH,
                driving_entities=frozenset({entity_id}),
                cycle_detected=True,
            )
        else:
            result = PriorityResult(
                entity_id=entity_id,
                tier=self.tier_for_depth(depth, node.kind if node is not None else None),
                depth=depth,
                driving_entities=frozenset({entity_id}),
            )
        self._cache[entity_id] = result
        return result

    def get_all_priorities(self) -> List[PriorityResult]:
        results = [self.get_priority(entity_id) for entity_id in self._graph.node_ids()]
        return sorted(results, key=lambda r: (-r.tier.urgency, r.depth, r.entity_id))

    def classify_resources(
        self,
        requirements: Iterable[ResourceRequirement],
        owned: Mapping[str, int] | None = None,
    ) -> List[ResourcePriority]:
        snapshot = self._store.snapshot()
        if owned is None:
            owned = self._store.owned_quantities()
        by_resource: Dict[str, List[ResourceRequirement]] = defaultdict(list)
        for requirement in requirements:
            if snapshot.is_completed(requirement.entity_id):
                continue
            if requirement.entity_id not in self._graph:
                logger.debug(
                    "Requirement references unknown entity",
                    extra={"resource_id": requirement.resource_id, "entity_id": requirement.entity_id},
                )
                continue
            by_resource[requirement.resource_id].append(requirement)

        results: List[ResourcePriority] = []
        for resource_id, consumers in by_resource.items():
            needed = sum(int(req.quantity) for req in consumers)
            held = max(0, int(owned.get(resource_id, 0)))
            if held >= needed:
                continue
            best_tier = Tier.LATER
            driving: set[str] = set()
            depths: List[int] = []
            cycle = False
            for requirement in consumers:
                consumer = self.get_priority(requirement.entity_id)
                if not driving or consumer.tier.is_more_urgent_than(best_tier):
                    best_tier = consumer.tier
                    driving = {consumer.entity_id}
                    depths = [consumer.depth]
                    cycle = consumer.cycle_detected
                elif consumer.tier == best_tier:
                    driving.add(consumer.entity_id)
                    depths.append(consumer.depth)
                    cycle = cycle and consumer.cycle_detected
            known_depths = [d for d in depths if d != CYCLE_DEPTH]
            results.append(
                ResourcePriority(
                    entity_id=resource_id,
                    tier=best_tier,
                    depth=min(known_depths) if known_depths else CYCLE_DEPTH,
                    driving_entities=frozenset(driving),
                    cycle_detected=cycle,
                    quantity=needed - held,
                    needed=needed,
                    owned=held,
                )
            )
        return sorted(results, key=lambda r: (-r.tier.urgency, r.depth, r.entity_id))

    def _sync_cache(self) -> None:
        version = self._store.version
        if self._cache_version != version:
            self._cache = {}
            self._cache_version = version

    def _on_progress_changed(self, event: ProgressChanged) -> None:
        affected = {event.entity_id} | set(self._graph.transitive_dependents(event.entity_id))
        self._invalidate(frozenset(affected))

    def _invalidate(self, entity_ids: frozenset[str]) -> None:
        self._cache = {}
        self._cache_version = None
        if self._event_bus is not None:
            self._event_bus.publish(PriorityInvalidated(store_version=self._store.version, entity_ids=entity_ids))
