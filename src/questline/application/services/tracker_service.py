from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Dict, List, Type

from questline.application.dtos import MigrationSummary, PriorityRowView, PullSummary, SyncStatusView
from questline.application.services.dependency_graph import DependencyGraph
from questline.application.services.event_bus import EventBus
from questline.application.services.priority_classifier import PriorityClassifier
from questline.application.services.progress_store import ProgressStore
from questline.application.services.sync_coordinator import SyncCoordinator
from questline.domain.events import PriorityInvalidated, ProgressChanged, SyncStatusChanged
from questline.domain.models.dependency import ResourceRequirement
from questline.domain.models.priority import PriorityResult, ResourcePriority
from questline.domain.models.progress import ProgressRecord
from questline.domain.repositories import ContentDefinitionProvider, RemoteProgressStore
from questline.infrastructure.log_event_parser import latest_changes, parse_log_content


logger = logging.getLogger(__name__)

_SUBSCRIBABLE = (ProgressChanged, PriorityInvalidated, SyncStatusChanged)


class TrackerService:
    """Entry point for presentation code: progress changes, priorities and sync control."""

    def __init__(
        self,
        store: ProgressStore,
        coordinator: SyncCoordinator,
        classifier: PriorityClassifier,
        event_bus: EventBus,
        *,
        content_provider: ContentDefinitionProvider | None = None,
        remote: RemoteProgressStore | None = None,
        requirements: List[ResourceRequirement] | None = None,
    ) -> None:
        self.store = store
        self.coordinator = coordinator
        self.classifier = classifier
        self.event_bus = event_bus
        self.content_provider = content_provider
        self.remote = remote
        self.requirements: List[ResourceRequirement] = list(requirements or [])

    @property
    def graph(self) -> DependencyGraph:
        return self.classifier.graph

    def refresh_content(self) -> int:
        """Reload definitions from the content provider; returns the number of entities."""
        if self.content_provider is None:
            return len(self.graph)
        definitions = self.content_provider.load_definitions()
        graph = DependencyGraph(definitions.nodes)
        self.requirements = list(definitions.requirements)
        self.classifier.set_graph(graph)
        logger.info(
            "Content definitions loaded",
            extra={"entities": len(graph), "requirements": len(self.requirements)},
        )
        return len(graph)

    def report_change(self, entity_id: str, completed: bool, at: datetime | None = None) -> ProgressRecord:
        node = self.graph.get(entity_id)
        if node is None:
            logger.debug("Progress reported for entity outside loaded content", extra={"entity_id": entity_id})
        return self.coordinator.report_change(entity_id, completed, at=at, kind=node.kind if node else None)

    def toggle(self, entity_id: str) -> ProgressRecord:
        current = self.store.get(entity_id)
        return self.report_change(entity_id, not (current is not None and current.completed))

    def import_log(self, content: str) -> List[ProgressRecord]:
        applied: List[ProgressRecord] = []
        for change in latest_changes(parse_log_content(content)):
            before = self.store.version
            record = self.report_change(change.entity_id, change.completed, at=change.at)
            if self.store.version != before:
                applied.append(record)
        return applied

    def is_completed(self, entity_id: str) -> bool:
        record = self.store.get(entity_id)
        return record is not None and record.completed

    def get_priority(self, entity_id: str) -> PriorityResult:
        return self.classifier.get_priority(entity_id)

    def get_all_priorities(self) -> List[PriorityResult]:
        return self.classifier.get_all_priorities()

    def get_resource_priorities(self) -> List[ResourcePriority]:
        return self.classifier.classify_resources(self.requirements)

    def set_owned_quantity(self, resource_id: str, quantity: int) -> int:
        """Record how many of ``resource_id`` are already collected and persist it."""
        held = self.store.set_owned_quantity(resource_id, quantity)
        self.store.persist()
        logger.info("Collected quantity updated", extra={"resource_id": resource_id, "owned": held})
        return held

    def owned_quantities(self) -> Dict[str, int]:
        return self.store.owned_quantities()

    def priority_rows(self, *, include_completed: bool = False) -> List[PriorityRowView]:
        rows: List[PriorityRowView] = []
        for result in self.get_all_priorities():
            node = self.graph.get(result.entity_id)
            if node is None:
                continue
            completed = self.is_completed(result.entity_id)
            if completed and not include_completed:
                continue
            rows.append(
                PriorityRowView(
                    entity_id=result.entity_id,
                    name=node.name or result.entity_id,
                    kind=node.kind.value,
                    tier=result.tier.value,
                    depth=result.depth,
                    completed=completed,
                    drivers=sorted(result.driving_entities),
                    cycle_detected=result.cycle_detected,
                )
            )
        return rows

    async def connect(self) -> PullSummary:
        return await self.coordinator.connect()

    async def pull(self) -> PullSummary:
        return await self.coordinator.pull()

    async def migrate(self) -> MigrationSummary:
        return await self.coordinator.migrate_all()

    async def flush(self) -> None:
        await self.coordinator.flush()

    def sync_status(self) -> SyncStatusView:
        return self.coordinator.sync_status()

    def reset(self) -> None:
        self.coordinator.discard_queued()
        self.store.reset()
        self.store.persist()
        self.classifier.invalidate_all()

    async def close(self) -> None:
        await self.coordinator.close()
        if self.remote is not None:
            await self.remote.close()

    def subscribe(self, event_type: Type[object], handler: Callable[[object], None]) -> Callable[[], None]:
        if event_type not in _SUBSCRIBABLE:
            raise ValueError(f"Unsupported event type {getattr(event_type, '__name__', event_type)!r}")
        return self.event_bus.subscribe(event_type, handler)
