from __future__ import annotations

import logging
from collections import defaultdict
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Tuple, Union

from questline.domain.errors import DependencyCycleError, UnknownEntityError
from questline.domain.models.dependency import DependencyNode
from questline.domain.models.progress import ProgressSnapshot


logger = logging.getLogger(__name__)


class _CycleMarker:
    __slots__ = ("path",)

    def __init__(self, path: Tuple[str, ...]) -> None:
        self.path = path


class _Frame:
    __slots__ = ("entity_id", "children", "deepest", "failure")

    def __init__(self, entity_id: str, children: Iterator[str]) -> None:
        self.entity_id = entity_id
        self.children = children
        self.deepest = -1
        self.failure: _CycleMarker | None = None


class DependencyGraph:
    """Content entities and their prerequisites, immutable for a content refresh.

    ``depth`` answers "how many unmet steps stand before this entity" for a given
    progress snapshot. Results are memoized per (entity_id, snapshot.version) and the
    whole table is dropped as soon as a snapshot with another version is seen.
    """

    def __init__(self, nodes: Iterable[DependencyNode] = ()) -> None:
        declared: Dict[str, DependencyNode] = {}
        for node in nodes:
            if node.id in declared:
                logger.warning("Duplicate content definition; keeping the later one", extra={"entity_id": node.id})
            declared[node.id] = node

        self._nodes: Dict[str, DependencyNode] = {}
        self._dependents: Dict[str, set[str]] = defaultdict(set)
        for node_id, node in declared.items():
            unknown = sorted(pid for pid in node.prerequisite_ids if pid not in declared)
            if unknown:
                logger.warning(
                    "Unknown prerequisites treated as satisfied",
                    extra={"entity_id": node_id, "unknown_prerequisites": unknown},
                )
            known = frozenset(pid for pid in node.prerequisite_ids if pid in declared and pid != node_id)
            if node_id in node.prerequisite_ids:
                logger.warning("Entity lists itself as a prerequisite; ignoring", extra={"entity_id": node_id})
            self._nodes[node_id] = DependencyNode(id=node.id, kind=node.kind, prerequisite_ids=known, name=node.name)
            for pid in known:
                self._dependents[pid].add(node_id)

        self._memo: Dict[Tuple[str, int], Union[int, _CycleMarker]] = {}
        self._memo_version: int | None = None

    @classmethod
    def from_definitions(cls, definitions: Iterable[Union[DependencyNode, Mapping[str, Any]]]) -> "DependencyGraph":
        nodes: List[DependencyNode] = []
        for definition in definitions:
            if isinstance(definition, DependencyNode):
                nodes.append(definition)
                continue
            try:
                nodes.append(DependencyNode.from_mapping(definition))
            except ValueError as exc:
                logger.warning("Skipping invalid content definition", extra={"reason": str(exc)})
        return cls(nodes)

    def __contains__(self, entity_id: object) -> bool:
        return entity_id in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    def __iter__(self) -> Iterator[DependencyNode]:
        return iter(self._nodes.values())

    def get(self, entity_id: str) -> DependencyNode | None:
        return self._nodes.get(entity_id)

    def node_ids(self) -> List[str]:
        return list(self._nodes.keys())

    def dependents(self, entity_id: str) -> frozenset[str]:
        return frozenset(self._dependents.get(entity_id, ()))

    def transitive_dependents(self, entity_id: str) -> frozenset[str]:
        seen: set[str] = set()
        frontier = [entity_id]
        while frontier:
            current = frontier.pop()
            for dependent in self._dependents.get(current, ()):
                if dependent not in seen:
                    seen.add(dependent)
                    frontier.append(dependent)
        seen.discard(entity_id)
        return frozenset(seen)

    def unmet_prerequisites(self, entity_id: str, snapshot: ProgressSnapshot) -> frozenset[str]:
        node = self._require(entity_id)
        return frozenset(pid for pid in node.prerequisite_ids if not snapshot.is_completed(pid))

    def depth(self, entity_id: str, snapshot: ProgressSnapshot) -> int:
        self._require(entity_id)
        if self._memo_version != snapshot.version:
            self._memo = {}
            self._memo_version = snapshot.version
        result = self._resolve(entity_id, snapshot)
        if isinstance(result, _CycleMarker):
            raise DependencyCycleError(entity_id, result.path)
        return result

    def _visit(
        self,
        entity_id: str,
        snapshot: ProgressSnapshot,
        frames: List[_Frame],
        on_stack: set[str],
    ) -> Union[int, _CycleMarker, None]:
        """Resolve ``entity_id`` directly when possible, else push a frame and return None."""
        key = (entity_id, snapshot.version)
        cached = self._memo.get(key)
        if cached is not None:
            return cached

        if snapshot.is_completed(entity_id):
            self._memo[key] = 0
            return 0

        if entity_id in on_stack:
            path = [frame.entity_id for frame in frames]
            start = path.index(entity_id)
            return _CycleMarker(tuple(path[start:]) + (entity_id,))

        children = iter(sorted(self.unmet_prerequisites(entity_id, snapshot)))
        frames.append(_Frame(entity_id, children))
        on_stack.add(entity_id)
        return None

    def _resolve(self, entity_id: str, snapshot: ProgressSnapshot) -> Union[int, _CycleMarker]:
        frames: List[_Frame] = []
        on_stack: set[str] = set()
        result = self._visit(entity_id, snapshot, frames, on_stack)
        while frames:
            frame = frames[-1]
            if result is not None:
                if isinstance(result, _CycleMarker):
                    frame.failure = frame.failure or result
                else:
                    frame.deepest = max(frame.deepest, result)
                result = None

            child = next(frame.children, None)
            if child is not None:
                result = self._visit(child, snapshot, frames, on_stack)
                continue

            frames.pop()
            on_stack.discard(frame.entity_id)
            result = frame.failure if frame.failure is not None else frame.deepest + 1
            self._memo[(frame.entity_id, snapshot.version)] = result
        return result

    def _require(self, entity_id: str) -> DependencyNode:
        node = self._nodes.get(entity_id)
        if node is None:
            raise UnknownEntityError(entity_id)
        return node
