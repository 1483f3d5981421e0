"""Memgraph storage adapter built on GQLAlchemy."""

from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timezone
import json
import logging
import os
import time
from typing import Any, Iterable, Iterator, Mapping, Sequence

from gqlalchemy import Memgraph
from gqlalchemy.connection import Connection

from living_story.errors import ChangeNotFound, VersionConflict
from living_story.models import (
    ChangePreview,
    ChangeRecord,
    ChangeStatus,
    PhaseRecord,
    StoryChange,
)
from living_story.phases import Phase
from living_story.storage.schema import PhaseState, StoryChangeNode, index_statements

logger = logging.getLogger(__name__)

_COUNTER_ID = "story-change-sequence"


def _get_positive_int_env(name: str, default: int) -> int:  # pragma: no cover
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer") from exc
    if value <= 0:
        raise ValueError(f"{name} must be > 0")
    return value


def _get_positive_float_env(name: str, default: float) -> float:  # pragma: no cover
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number") from exc
    if value <= 0:
        raise ValueError(f"{name} must be > 0")
    return value


def _phase_node_id(project_id: str, phase: Phase) -> str:
    return f"{project_id}:phase:{int(phase)}"


def phase_record_from_props(props: Mapping[str, Any]) -> PhaseRecord:
    node = PhaseState(**props)
    return PhaseRecord(
        project_id=node.project_id,
        phase=Phase(node.phase),
        value=json.loads(node.value),
        version=node.version,
        updated_at=datetime.fromisoformat(node.updated_at),
    )


def change_record_from_props(props: Mapping[str, Any]) -> ChangeRecord:
    node = StoryChangeNode(**props)
    change = StoryChange.model_validate_json(node.payload)
    preview = ChangePreview.model_validate_json(node.preview) if node.preview else None
    return ChangeRecord(change=change, preview=preview)


def change_props(record: ChangeRecord) -> dict[str, Any]:
    change = record.change
    props: dict[str, Any] = {
        "id": change.id,
        "project_id": change.project_id,
        "phase": int(change.phase),
        "field": change.field,
        "source_phase": int(change.source_phase),
        "source_version": change.source_version,
        "status": change.status.value,
        "timestamp": change.timestamp.isoformat(),
        "sequence": change.sequence,
        "payload": change.model_dump_json(),
    }
    if record.preview is not None:
        props["preview"] = record.preview.model_dump_json()
    return props


class _MemgraphConnectionPool:  # pragma: no cover
    def __init__(
        self,
        db: Memgraph,
        *,
        min_size: int,
        max_size: int,
        acquire_timeout: float,
        idle_timeout: float,
    ) -> None:
        if min_size <= 0:
            raise ValueError("memgraph pool min_size must be > 0")
        if max_size < min_size:
            raise ValueError("memgraph pool max_size must be >= min_size")
        self._db = db
        self._min_size = min_size
        self._max_size = max_size
        self._acquire_timeout = acquire_timeout
        self._idle_timeout = idle_timeout
        self._pool: list[tuple[Connection, float]] = []
        self._in_use = 0
        self._initialized = False

    def _initialize(self) -> None:
        if self._initialized:
            return
        for _ in range(self._min_size):
            self._pool.append((self._db.new_connection(), time.monotonic()))
        self._initialized = True

    @staticmethod
    def _close_connection(conn: Connection) -> None:
        conn._connection.close()

    def _pop_available(self) -> Connection | None:
        now = time.monotonic()
        while self._pool:
            conn, last_used = self._pool.pop()
            if now - last_used > self._idle_timeout:
                self._close_connection(conn)
                continue
            return conn
        return None

    def acquire(self) -> Connection:
        self._initialize()
        deadline = time.monotonic() + self._acquire_timeout
        while True:
            conn = self._pop_available()
            if conn is not None:
                self._in_use += 1
                return conn
            if self._in_use < self._max_size:
                self._in_use += 1
                return self._db.new_connection()
            if time.monotonic() >= deadline:
                raise RuntimeError("memgraph connection pool exhausted")
            time.sleep(0.05)

    def release(self, conn: Connection) -> None:
        if self._in_use <= 0:
            raise RuntimeError("memgraph connection pool release underflow")
        self._in_use -= 1
        self._pool.append((conn, time.monotonic()))

    def close(self) -> None:
        for conn, _ in self._pool:
            self._close_connection(conn)
        self._pool.clear()


class MemgraphStoryStorage:  # pragma: no cover
    """Phase rows as ``PhaseState`` nodes, changes as ``StoryChange`` nodes.

    Writes that touch a phase and its change records share one transaction.
    """

    def __init__(self, *, host: str, port: int) -> None:
        self.db = Memgraph(host=host, port=port)
        self._pool = _MemgraphConnectionPool(
            self.db,
            min_size=_get_positive_int_env("MEMGRAPH_POOL_MIN", 2),
            max_size=_get_positive_int_env("MEMGRAPH_POOL_MAX", 20),
            acquire_timeout=_get_positive_float_env("MEMGRAPH_POOL_ACQUIRE_TIMEOUT", 30.0),
            idle_timeout=_get_positive_float_env("MEMGRAPH_POOL_IDLE_TIMEOUT", 300.0),
        )

    def ensure_indexes(self) -> None:
        for statement in index_statements():
            try:
                self.db.execute(statement)
            except Exception as exc:
                # Memgraph rejects re-creating an index that already exists.
                logger.debug("index statement skipped: %s (%s)", statement, exc)

    def close(self) -> None:
        self._pool.close()
        cached = self.db._cached_connection
        if cached is None:
            return
        cached._connection.close()

    @contextmanager
    def session(self) -> Iterator[Connection]:
        conn = self._pool.acquire()
        try:
            yield conn
        finally:
            self._pool.release(conn)

    @contextmanager
    def transaction(self) -> Iterator[Connection]:
        with self.session() as conn:
            conn.execute("BEGIN")
            try:
                yield conn
            except Exception:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")

    @staticmethod
    def _utc_now() -> datetime:
        return datetime.now(timezone.utc)

    @staticmethod
    def _fetch_one(conn: Connection, query: str, params: dict[str, Any]) -> dict[str, Any] | None:
        return next(iter(conn.execute_and_fetch(query, params)), None)

    def get_phase(self, *, project_id: str, phase: Phase) -> PhaseRecord | None:
        result = next(
            self.db.execute_and_fetch(
                "MATCH (p:PhaseState {id: $id}) RETURN p LIMIT 1;",
                {"id": _phase_node_id(project_id, phase)},
            ),
            None,
        )
        if result is None:
            return None
        return phase_record_from_props(result["p"]._properties)

    def list_phases(self, *, project_id: str) -> list[PhaseRecord]:
        rows = self.db.execute_and_fetch(
            "MATCH (p:PhaseState {project_id: $project_id}) RETURN p ORDER BY p.phase ASC;",
            {"project_id": project_id},
        )
        return [phase_record_from_props(row["p"]._properties) for row in rows]

    def _next_sequence(self, conn: Connection) -> int:
        row = self._fetch_one(
            conn,
            "MERGE (c:ChangeCounter {id: $id}) "
            "ON CREATE SET c.value = 0 "
            "SET c.value = c.value + 1 "
            "RETURN c.value AS value;",
            {"id": _COUNTER_ID},
        )
        return int(row["value"])

    def _upsert_change(self, conn: Connection, record: ChangeRecord) -> ChangeRecord:
        existing = self._fetch_one(
            conn,
            "MATCH (c:StoryChange {id: $id}) RETURN c.sequence AS sequence, c.preview AS preview;",
            {"id": record.change.id},
        )
        change = record.change
        preview = record.preview
        if existing is None:
            if change.sequence == 0:
                change = change.model_copy(update={"sequence": self._next_sequence(conn)})
        elif preview is None and existing.get("preview"):
            preview = ChangePreview.model_validate_json(existing["preview"])
        stored = ChangeRecord(change=change, preview=preview)
        conn.execute(
            "MERGE (c:StoryChange {id: $id}) SET c += $props;",
            {"id": change.id, "props": change_props(stored)},
        )
        return stored

    def write_phase(
        self,
        *,
        project_id: str,
        phase: Phase,
        value: Mapping[str, Any],
        expected_version: int | None,
        changes: Sequence[ChangeRecord] = (),
    ) -> PhaseRecord:
        node_id = _phase_node_id(project_id, phase)
        with self.transaction() as conn:
            current = self._fetch_one(
                conn,
                "MATCH (p:PhaseState {id: $id}) RETURN p.version AS version;",
                {"id": node_id},
            )
            actual = current["version"] if current is not None else None
            if actual != expected_version:
                raise VersionConflict(project_id, phase, expected_version, actual)
            record = PhaseRecord(
                project_id=project_id,
                phase=phase,
                value=dict(value),
                version=(actual or 0) + 1,
                updated_at=self._utc_now(),
            )
            conn.execute(
                "MERGE (p:PhaseState {id: $id}) "
                "SET p.project_id = $project_id, p.phase = $phase, p.value = $value, "
                "p.version = $version, p.updated_at = $updated_at;",
                {
                    "id": node_id,
                    "project_id": project_id,
                    "phase": int(phase),
                    "value": json.dumps(record.value, ensure_ascii=False),
                    "version": record.version,
                    "updated_at": record.updated_at.isoformat(),
                },
            )
            for change_record in changes:
                self._upsert_change(conn, change_record)
        return record

    def insert_changes(self, records: Sequence[ChangeRecord]) -> list[ChangeRecord]:
        stored: list[ChangeRecord] = []
        with self.transaction() as conn:
            for record in records:
                existing = self._fetch_one(
                    conn,
                    "MATCH (c:StoryChange {id: $id}) RETURN c.id AS id;",
                    {"id": record.change.id},
                )
                if existing is not None:
                    raise ValueError(f"change already exists: {record.change.id}")
                stored.append(self._upsert_change(conn, record))
        return stored

    def update_change(self, change: StoryChange) -> StoryChange:
        with self.transaction() as conn:
            existing = self._fetch_one(
                conn,
                "MATCH (c:StoryChange {id: $id}) RETURN c.id AS id;",
                {"id": change.id},
            )
            if existing is None:
                raise ChangeNotFound(change.id)
            conn.execute(
                "MATCH (c:StoryChange {id: $id}) "
                "SET c.status = $status, c.payload = $payload;",
                {
                    "id": change.id,
                    "status": change.status.value,
                    "payload": change.model_dump_json(),
                },
            )
        return change

    def get_change(self, *, change_id: str) -> ChangeRecord | None:
        result = next(
            self.db.execute_and_fetch(
                "MATCH (c:StoryChange {id: $id}) RETURN c LIMIT 1;",
                {"id": change_id},
            ),
            None,
        )
        if result is None:
            return None
        return change_record_from_props(result["c"]._properties)

    def find_change(
        self,
        *,
        project_id: str,
        phase: Phase,
        field: str,
        source_phase: Phase,
        source_version: int,
    ) -> ChangeRecord | None:
        result = next(
            self.db.execute_and_fetch(
                "MATCH (c:StoryChange {project_id: $project_id, phase: $phase, field: $field, "
                "source_version: $source_version}) "
                "WHERE c.source_phase = $source_phase "
                "RETURN c LIMIT 1;",
                {
                    "project_id": project_id,
                    "phase": int(phase),
                    "field": field,
                    "source_phase": int(source_phase),
                    "source_version": source_version,
                },
            ),
            None,
        )
        if result is None:
            return None
        return change_record_from_props(result["c"]._properties)

    def list_changes(
        self,
        *,
        project_id: str,
        statuses: Iterable[ChangeStatus] | None = None,
    ) -> list[ChangeRecord]:
        params: dict[str, Any] = {"project_id": project_id}
        where = ""
        if statuses is not None:
            params["statuses"] = [status.value for status in statuses]
            where = "WHERE c.status IN $statuses "
        rows = self.db.execute_and_fetch(
            "MATCH (c:StoryChange {project_id: $project_id}) "
            f"{where}"
            "RETURN c ORDER BY c.timestamp ASC, c.sequence ASC;",
            params,
        )
        return [change_record_from_props(row["c"]._properties) for row in rows]
