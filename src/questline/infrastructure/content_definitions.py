"""Content definitions (quests, station levels and their item needs) from JSON files.

Two shapes are understood: a flat ``{"entities": [...], "requirements": [...]}``
document, and the tarkov.dev API shapes ``tasks`` / ``hideoutStations``, optionally
wrapped in a GraphQL ``{"data": {...}}`` envelope.
"""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import Any, Iterable, Iterator, List, Mapping, Tuple

from questline.domain.models.dependency import ContentDefinitions, DependencyNode, ResourceRequirement
from questline.domain.models.progress import EntityKind
from questline.domain.repositories import ContentDefinitionProvider


logger = logging.getLogger(__name__)

ITEM_OBJECTIVE_TYPES = frozenset({"giveItem", "giveQuestItem", "findItem", "findQuestItem", "collect"})
_FIR_PATTERN = re.compile(r"\b(fir|found in raid|find in raid)\b", re.IGNORECASE)


def station_level_id(station_id: str, level: int) -> str:
    return f"{station_id}-{int(level)}"


def _positive_int(value: Any, default: int = 1) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        return default
    return number if number > 0 else default


def _mapping_entries(value: Any, section: str) -> Iterator[Mapping[str, Any]]:
    if value is None:
        return
    if not isinstance(value, (list, tuple)):
        logger.warning("Content section is not a list; ignoring it", extra={"section": section})
        return
    for entry in value:
        if isinstance(entry, Mapping):
            yield entry
        else:
            logger.warning("Skipping non-object content entry", extra={"section": section, "entry": repr(entry)[:80]})


def _objective_item_ids(objective: Mapping[str, Any]) -> List[str]:
    item = objective.get("item")
    if isinstance(item, Mapping) and item.get("id"):
        return [str(item["id"])]
    items = objective.get("items")
    if isinstance(items, list):
        ids = [str(entry["id"]) for entry in items if isinstance(entry, Mapping) and entry.get("id")]
        if ids:
            return ids[:1]
    target = objective.get("target")
    if isinstance(target, list):
        return [str(target[0])] if target else []
    if target:
        return [str(target)]
    return []


def objective_requires_found_in_raid(objective: Mapping[str, Any]) -> bool:
    if objective.get("foundInRaid") is True:
        return True
    if objective.get("type") == "findQuestItem":
        return True
    return bool(_FIR_PATTERN.search(str(objective.get("description") or "")))


def parse_tasks(tasks: Iterable[Mapping[str, Any]]) -> Tuple[List[DependencyNode], List[ResourceRequirement]]:
    nodes: List[DependencyNode] = []
    requirements: List[ResourceRequirement] = []
    for task in _mapping_entries(tasks, "tasks"):
        task_id = str(task.get("id") or "").strip()
        if not task_id:
            logger.warning("Skipping task without id", extra={"task_name": task.get("name")})
            continue
        prerequisites = set()
        for requirement in _mapping_entries(task.get("taskRequirements"), "taskRequirements"):
            prereq = requirement.get("task")
            if isinstance(prereq, Mapping) and prereq.get("id"):
                prerequisites.add(str(prereq["id"]))
        nodes.append(
            DependencyNode(
                id=task_id,
                kind=EntityKind.QUEST,
                prerequisite_ids=frozenset(prerequisites),
                name=str(task.get("name") or ""),
            )
        )

        for objective in _mapping_entries(task.get("objectives"), "objectives"):
            if objective.get("type") not in ITEM_OBJECTIVE_TYPES:
                continue
            for item_id in _objective_item_ids(objective):
                requirements.append(
                    ResourceRequirement(
                        resource_id=item_id,
                        entity_id=task_id,
                        quantity=_positive_int(objective.get("count", objective.get("number"))),
                        found_in_raid=objective_requires_found_in_raid(objective),
                    )
                )
    return nodes, requirements


def parse_hideout_stations(
    stations: Iterable[Mapping[str, Any]],
) -> Tuple[List[DependencyNode], List[ResourceRequirement]]:
    nodes: List[DependencyNode] = []
    requirements: List[ResourceRequirement] = []
    for station in _mapping_entries(stations, "hideoutStations"):
        station_id = str(station.get("id") or "").strip()
        if not station_id:
            continue
        station_name = str(station.get("name") or station_id)
        for level_data in _mapping_entries(station.get("levels"), "levels"):
            level = _positive_int(level_data.get("level"), default=0)
            if level <= 0:
                continue
            node_id = station_level_id(station_id, level)
            prerequisites = set()
            if level > 1:
                prerequisites.add(station_level_id(station_id, level - 1))
            for required in _mapping_entries(level_data.get("stationLevelRequirements"), "stationLevelRequirements"):
                other = required.get("station")
                other_level = _positive_int(required.get("level"), default=0)
                if isinstance(other, Mapping) and other.get("id") and other_level > 0:
                    prerequisites.add(station_level_id(str(other["id"]), other_level))
            nodes.append(
                DependencyNode(
                    id=node_id,
                    kind=EntityKind.UPGRADE_LEVEL,
                    prerequisite_ids=frozenset(prerequisites),
                    name=f"{station_name} {level}",
                )
            )
            for item_requirement in _mapping_entries(level_data.get("itemRequirements"), "itemRequirements"):
                item = item_requirement.get("item")
                if not isinstance(item, Mapping) or not item.get("id"):
                    continue
                requirements.append(
                    ResourceRequirement(
                        resource_id=str(item["id"]),
                        entity_id=node_id,
                        quantity=_positive_int(item_requirement.get("count", item_requirement.get("quantity"))),
                    )
                )
    return nodes, requirements


def parse_content_payload(payload: Mapping[str, Any]) -> ContentDefinitions:
    data = payload.get("data") if isinstance(payload.get("data"), Mapping) else payload
    nodes: List[DependencyNode] = []
    requirements: List[ResourceRequirement] = []

    for entry in _mapping_entries(data.get("entities"), "entities"):
        try:
            nodes.append(DependencyNode.from_mapping(entry))
        except (TypeError, ValueError) as exc:
            logger.warning("Skipping invalid content entity", extra={"reason": str(exc)})
    for entry in _mapping_entries(data.get("requirements"), "requirements"):
        try:
            requirements.append(
                ResourceRequirement(
                    resource_id=str(entry.get("resource_id") or ""),
                    entity_id=str(entry.get("entity_id") or ""),
                    quantity=_positive_int(entry.get("quantity")),
                    found_in_raid=bool(entry.get("found_in_raid", False)),
                )
            )
        except (TypeError, ValueError) as exc:
            logger.warning("Skipping invalid resource requirement", extra={"reason": str(exc)})

    task_nodes, task_requirements = parse_tasks(data.get("tasks"))
    station_nodes, station_requirements = parse_hideout_stations(data.get("hideoutStations"))
    nodes.extend(task_nodes)
    nodes.extend(station_nodes)
    requirements.extend(task_requirements)
    requirements.extend(station_requirements)
    return ContentDefinitions(nodes=tuple(nodes), requirements=tuple(requirements))


class JsonContentDefinitionProvider(ContentDefinitionProvider):
    def __init__(self, *paths: str | Path) -> None:
        self.paths = [Path(path) for path in paths]

    def load_definitions(self) -> ContentDefinitions:
        nodes: List[DependencyNode] = []
        requirements: List[ResourceRequirement] = []
        for path in self.paths:
            try:
                payload = json.loads(path.read_text(encoding="utf-8"))
            except FileNotFoundError:
                logger.warning("Content file not found", extra={"path": str(path)})
                continue
            except (OSError, json.JSONDecodeError) as exc:
                logger.warning("Content file unreadable", extra={"path": str(path), "reason": str(exc)})
                continue
            if not isinstance(payload, Mapping):
                logger.warning("Content file has an unexpected shape", extra={"path": str(path)})
                continue
            definitions = parse_content_payload(payload)
            nodes.extend(definitions.nodes)
            requirements.extend(definitions.requirements)
        return ContentDefinitions(nodes=tuple(nodes), requirements=tuple(requirements))


class StaticContentDefinitionProvider(ContentDefinitionProvider):
    def __init__(self, definitions: ContentDefinitions | None = None) -> None:
        self.definitions = definitions or ContentDefinitions()

    def load_definitions(self) -> ContentDefinitions:
        return self.definitions
