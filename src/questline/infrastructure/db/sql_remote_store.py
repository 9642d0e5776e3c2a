from __future__ import annotations

import asyncio
import logging
import re
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence, TypeVar

from sqlalchemy import create_engine, text
from sqlalchemy.exc import DataError, IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from questline.domain.errors import RemoteStoreError, RemoteValidationError
from questline.domain.models.progress import ProgressRecord, SyncState, format_timestamp
from questline.domain.repositories import RemoteProgressStore


logger = logging.getLogger(__name__)

DEFAULT_TABLE = "quest_progress"
_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

T = TypeVar("T")


def _dialect(session: Session) -> str:
    return session.bind.dialect.name if session.bind is not None else "sqlite"


class SqlRemoteProgressStore(RemoteProgressStore):
    """Progress table behind SQLAlchemy, written with a conditional last-write-wins upsert.

    Timestamps are stored in their fixed-width ISO form so string order is time order
    on every backend. Blocking calls run in a worker thread.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        *,
        table: str = DEFAULT_TABLE,
        owner_id: str | None = None,
    ) -> None:
        if not _IDENTIFIER.match(table):
            raise ValueError(f"Invalid table name {table!r}")
        self._session_factory = session_factory
        self._table = table
        self._owner_id = owner_id
        self._engine = None

    @classmethod
    def from_url(cls, database_url: str, **kwargs: Any) -> "SqlRemoteProgressStore":
        engine_kwargs: Dict[str, Any] = {"echo": False, "future": True}
        if database_url.startswith("sqlite") and (":memory:" in database_url or database_url.rstrip("/") == "sqlite:"):
            engine_kwargs.update(poolclass=StaticPool, connect_args={"check_same_thread": False})
        elif database_url.startswith("sqlite"):
            engine_kwargs.update(connect_args={"check_same_thread": False})
        engine = create_engine(database_url, **engine_kwargs)
        store = cls(sessionmaker(bind=engine, expire_on_commit=False), **kwargs)
        store._engine = engine
        return store

    def ensure_schema(self) -> None:
        with self._session_factory() as session:
            with session.begin():
                session.execute(
                    text(
                        f"""
                        CREATE TABLE IF NOT EXISTS {self._table} (
                            owner_id VARCHAR(128) NOT NULL,
                            entity_id VARCHAR(128) NOT NULL,
                            kind VARCHAR(32) NOT NULL,
                            completed BOOLEAN NOT NULL,
                            completed_at VARCHAR(40) NULL,
                            updated_at VARCHAR(40) NOT NULL,
                            PRIMARY KEY (owner_id, entity_id)
                        )
                        """
                    )
                )

    async def upsert(self, record: ProgressRecord) -> None:
        await self._run(lambda session: self._upsert_rows(session, [record]))

    async def batch_upsert(self, records: Sequence[ProgressRecord]) -> int:
        rows = list(records)
        if not rows:
            return 0
        await self._run(lambda session: self._upsert_rows(session, rows))
        return len(rows)

    async def fetch_since(self, since: Optional[datetime]) -> List[ProgressRecord]:
        return await self._run(lambda session: self._select_since(session, since), write=False)

    async def close(self) -> None:
        if self._engine is not None:
            self._engine.dispose()

    async def _run(self, operation: Callable[[Session], T], *, write: bool = True) -> T:
        return await asyncio.to_thread(self._run_sync, operation, write)

    def _run_sync(self, operation: Callable[[Session], T], write: bool) -> T:
        try:
            with self._session_factory() as session:
                if write:
                    with session.begin():
                        return operation(session)
                return operation(session)
        except (IntegrityError, DataError) as exc:
            raise RemoteValidationError(f"Database rejected progress write: {exc.orig}") from exc
        except SQLAlchemyError as exc:
            logger.warning("Database call failed", extra={"table": self._table, "reason": str(exc)})
            raise RemoteStoreError(f"Database call failed: {exc}") from exc

    def _upsert_statement(self, dialect: str):
        columns = "owner_id, entity_id, kind, completed, completed_at, updated_at"
        values = ":owner_id, :entity_id, :kind, :completed, :completed_at, :updated_at"
        if dialect == "mysql":
            newer = "VALUES(updated_at) > updated_at"
            return text(
                f"""
                INSERT INTO {self._table} ({columns})
                VALUES ({values})
                ON DUPLICATE KEY UPDATE
                    kind = IF({newer}, VALUES(kind), kind),
                    completed = IF({newer}, VALUES(completed), completed),
                    completed_at = IF({newer}, VALUES(completed_at), completed_at),
                    updated_at = IF({newer}, VALUES(updated_at), updated_at)
                """
            )
        return text(
            f"""
            INSERT INTO {self._table} ({columns})
            VALUES ({values})
            ON CONFLICT(owner_id, entity_id) DO UPDATE SET
                kind = excluded.kind,
                completed = excluded.completed,
                completed_at = excluded.completed_at,
                updated_at = excluded.updated_at
            WHERE excluded.updated_at > {self._table}.updated_at
            """
        )

    def _upsert_rows(self, session: Session, records: Sequence[ProgressRecord]) -> None:
        params = [
            {
                "owner_id": record.owner_id,
                "entity_id": record.entity_id,
                "kind": record.kind.value,
                "completed": bool(record.completed),
                "completed_at": format_timestamp(record.completed_at),
                "updated_at": format_timestamp(record.updated_at),
            }
            for record in records
        ]
        session.execute(self._upsert_statement(_dialect(session)), params)

    def _select_since(self, session: Session, since: Optional[datetime]) -> List[ProgressRecord]:
        clauses = []
        params: Dict[str, Any] = {}
        if self._owner_id is not None:
            clauses.append("owner_id = :owner_id")
            params["owner_id"] = self._owner_id
        if since is not None:
            clauses.append("updated_at > :since")
            params["since"] = format_timestamp(since)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = session.execute(
            text(
                f"""
                SELECT owner_id, entity_id, kind, completed, completed_at, updated_at
                FROM {self._table}
                {where}
                ORDER BY updated_at, entity_id
                """
            ),
            params,
        ).mappings().all()

        records: List[ProgressRecord] = []
        for row in rows:
            try:
                records.append(ProgressRecord.from_payload(dict(row), sync_state=SyncState.SYNCED))
            except ValueError as exc:
                logger.warning(
                    "Skipping invalid remote progress row",
                    extra={"entity_id": row.get("entity_id"), "reason": str(exc)},
                )
        return records
