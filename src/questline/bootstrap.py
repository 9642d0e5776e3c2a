import logging
import os
from pathlib import Path
from typing import Dict

from questline.application.services.dependency_graph import DependencyGraph
from questline.application.services.event_bus import EventBus
from questline.application.services.priority_classifier import PriorityClassifier
from questline.application.services.progress_store import ANONYMOUS_OWNER, ProgressStore
from questline.application.services.sync_coordinator import MAX_BATCH_SIZE, SyncCoordinator
from questline.application.services.tracker_service import TrackerService
from questline.domain.models.priority import TierThresholds
from questline.domain.models.progress import EntityKind
from questline.domain.repositories import ContentDefinitionProvider, RemoteProgressStore
from questline.infrastructure.content_definitions import JsonContentDefinitionProvider, StaticContentDefinitionProvider
from questline.infrastructure.db.sql_remote_store import DEFAULT_TABLE, SqlRemoteProgressStore
from questline.infrastructure.inmemory.inmemory_remote_store import InMemoryRemoteProgressStore
from questline.infrastructure.local_progress_file import LocalProgressFile
from questline.infrastructure.resilient_http import CircuitBreaker
from questline.infrastructure.rest_remote_store import PostgrestRemoteProgressStore


logger = logging.getLogger(__name__)


def _build_thresholds() -> tuple[TierThresholds, Dict[EntityKind, TierThresholds]]:
    now_max = int(os.getenv("QUESTLINE_TIER_NOW_MAX_DEPTH", "0"))
    soon_max = int(os.getenv("QUESTLINE_TIER_SOON_MAX_DEPTH", "2"))
    default = TierThresholds(now_max_depth=now_max, soon_max_depth=soon_max)

    per_kind: Dict[EntityKind, TierThresholds] = {}
    for kind in EntityKind:
        override = os.getenv(f"QUESTLINE_TIER_{kind.name}_SOON_MAX_DEPTH")
        if override is None or not override.strip():
            continue
        per_kind[kind] = TierThresholds(now_max_depth=now_max, soon_max_depth=int(override))
    return default, per_kind


def _build_remote(owner_id: str) -> RemoteProgressStore | None:
    mode = os.getenv("QUESTLINE_REMOTE", "none").strip().lower()
    if mode in {"", "none", "off"}:
        return None
    if mode == "memory":
        return InMemoryRemoteProgressStore()
    if mode == "sql":
        database_url = os.getenv("QUESTLINE_DATABASE_URL", "").strip()
        if not database_url:
            raise ValueError("QUESTLINE_REMOTE=sql requires QUESTLINE_DATABASE_URL")
        store = SqlRemoteProgressStore.from_url(
            database_url,
            table=os.getenv("QUESTLINE_SQL_TABLE", DEFAULT_TABLE),
            owner_id=owner_id,
        )
        store.ensure_schema()
        return store
    if mode == "rest":
        base_url = os.getenv("QUESTLINE_REST_URL", "").strip()
        if not base_url:
            raise ValueError("QUESTLINE_REMOTE=rest requires QUESTLINE_REST_URL")
        return PostgrestRemoteProgressStore(
            base_url,
            api_key=os.getenv("QUESTLINE_REST_API_KEY") or None,
            access_token=os.getenv("QUESTLINE_REST_TOKEN") or None,
            table=os.getenv("QUESTLINE_REST_TABLE", "quest_progress"),
            owner_id=owner_id,
            timeout_seconds=float(os.getenv("QUESTLINE_SYNC_TIMEOUT_S", "10")),
            retries=int(os.getenv("QUESTLINE_REST_RETRIES", "1")),
            backoff_seconds=float(os.getenv("QUESTLINE_REST_BACKOFF_S", "0.2")),
            breaker=CircuitBreaker(),
        )
    raise ValueError(f"Unknown QUESTLINE_REMOTE mode {mode!r}")


def _build_content_provider() -> ContentDefinitionProvider:
    raw = os.getenv("QUESTLINE_CONTENT_FILE", "").strip()
    if not raw:
        return StaticContentDefinitionProvider()
    paths = [part.strip() for part in raw.split(os.pathsep) if part.strip()]
    return JsonContentDefinitionProvider(*paths)


def create_tracker_service(
    *,
    remote: RemoteProgressStore | None = None,
    content_provider: ContentDefinitionProvider | None = None,
) -> TrackerService:
    owner_id = os.getenv("QUESTLINE_OWNER_ID", ANONYMOUS_OWNER).strip() or ANONYMOUS_OWNER
    data_file = Path(os.getenv("QUESTLINE_DATA_FILE", ".questline/progress.json"))

    if remote is None:
        remote = _build_remote(owner_id)
    if content_provider is None:
        content_provider = _build_content_provider()

    event_bus = EventBus()
    store = ProgressStore(owner_id=owner_id, local_file=LocalProgressFile(data_file))
    store.load()

    thresholds, kind_thresholds = _build_thresholds()
    classifier = PriorityClassifier(
        DependencyGraph(),
        store,
        event_bus,
        thresholds=thresholds,
        kind_thresholds=kind_thresholds,
    )
    coordinator = SyncCoordinator(
        store,
        remote,
        event_bus,
        owner_id=owner_id,
        timeout_seconds=float(os.getenv("QUESTLINE_SYNC_TIMEOUT_S", "10")),
        max_attempts=int(os.getenv("QUESTLINE_SYNC_MAX_ATTEMPTS", "5")),
        backoff_seconds=float(os.getenv("QUESTLINE_SYNC_BACKOFF_S", "0.5")),
        max_backoff_seconds=float(os.getenv("QUESTLINE_SYNC_MAX_BACKOFF_S", "30")),
        batch_size=int(os.getenv("QUESTLINE_SYNC_BATCH_SIZE", str(MAX_BATCH_SIZE))),
    )
    service = TrackerService(
        store,
        coordinator,
        classifier,
        event_bus,
        content_provider=content_provider,
        remote=remote,
    )
    service.refresh_content()
    logger.debug(
        "Tracker service created",
        extra={"owner_id": owner_id, "online": remote is not None, "records": len(store)},
    )
    return service
