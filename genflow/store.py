"""Artifact persistence with optimistic versioning.

Two backends share one contract:

    store = InMemoryArtifactStore()            # tests, single process
    store = SqliteArtifactStore("genflow.db")  # local persistence

Every write reads the current version and only lands if that version is
still current, otherwise VersionConflict is raised. ``upsert`` is the
regeneration path (version + 1, review state reset); ``update_review`` is the
approval path (version unchanged).
"""

import asyncio
import json
import logging
import sqlite3
import uuid
from datetime import datetime, timezone
from pathlib import Path

from genflow.errors import ArtifactLocked, PersistenceFailure, VersionConflict
from genflow.notify import Notifier
from genflow.state import Artifact, FeedbackEntry, ReviewStatus
from genflow.utils.validator import KEY_SEPARATOR, split_owner_key

logger = logging.getLogger("genflow.store")


def utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_artifact(owner_key: str, content: str) -> Artifact:
    now = utcnow()
    return {
        "id": uuid.uuid4().hex,
        "owner_key": owner_key,
        "content": content,
        "version": 1,
        "status": "pending_review",
        "approved": False,
        "feedback": None,
        "feedback_history": [],
        "created_at": now,
        "updated_at": now,
        "approved_at": None,
    }


def next_version(current: Artifact, content: str) -> Artifact:
    """Regenerated content always re-enters review; approval never carries forward."""
    return {
        **current,
        "content": content,
        "version": current["version"] + 1,
        "status": "pending_review",
        "approved": False,
        "feedback": None,
        "feedback_history": list(current["feedback_history"]),
        "updated_at": utcnow(),
        "approved_at": None,
    }


def with_review(
    current: Artifact,
    status: ReviewStatus,
    approved: bool,
    feedback: str | None,
    entry: FeedbackEntry | None = None,
) -> Artifact:
    history = list(current["feedback_history"])
    if entry is not None:
        history.append(entry)
    now = utcnow()
    approved_at = current["approved_at"]
    if approved and not current["approved"]:
        approved_at = now
    elif not approved:
        approved_at = None
    return {
        **current,
        "status": status,
        "approved": approved,
        "feedback": feedback,
        "feedback_history": history,
        "updated_at": now,
        "approved_at": approved_at,
    }


class ArtifactStore:
    """Base class: subclasses implement ``get``, ``list`` and ``_write``."""

    def __init__(self, notifier: Notifier | None = None) -> None:
        self.notifier = notifier

    async def get(self, owner_key: str) -> Artifact | None:
        raise NotImplementedError

    async def list(self, scope: str | None = None) -> list[Artifact]:
        raise NotImplementedError

    async def _write(
        self, record: Artifact, expected_version: int | None, allow_locked: bool = True
    ) -> None:
        """Persist ``record`` if the stored version is still ``expected_version``.

        ``expected_version`` None means "no record may exist yet". With
        ``allow_locked`` False the write is refused (ArtifactLocked) when the
        stored record is approved at the moment of writing.
        """
        raise NotImplementedError

    async def upsert(self, owner_key: str, content: str, *, allow_locked: bool = True) -> Artifact:
        """Write new content as the next version.

        ``allow_locked=False`` refuses to replace an approved artifact.
        """
        split_owner_key(owner_key)
        current = await self.get(owner_key)
        if current is None:
            record = new_artifact(owner_key, content)
            await self._write(record, None)
        else:
            if current["approved"] and not allow_locked:
                raise ArtifactLocked(owner_key)
            record = next_version(current, content)
            await self._write(record, current["version"], allow_locked)
        logger.info("Saved %s v%d", owner_key, record["version"])
        self._publish(record)
        return record

    async def update_review(
        self,
        owner_key: str,
        expected_version: int,
        *,
        status: ReviewStatus,
        approved: bool,
        feedback: str | None,
        entry: FeedbackEntry | None = None,
    ) -> Artifact:
        current = await self.get(owner_key)
        if current is None or current["version"] != expected_version:
            raise VersionConflict(
                owner_key, expected_version, current["version"] if current else None
            )
        record = with_review(current, status, approved, feedback, entry)
        await self._write(record, expected_version)
        self._publish(record)
        return record

    def _publish(self, record: Artifact) -> None:
        if self.notifier is not None:
            self.notifier.publish("artifact.updated", {
                "owner_key": record["owner_key"],
                "version": record["version"],
                "status": record["status"],
                "approved": record["approved"],
            })


class InMemoryArtifactStore(ArtifactStore):
    def __init__(self, notifier: Notifier | None = None) -> None:
        super().__init__(notifier)
        self._records: dict[str, Artifact] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock(self, owner_key: str) -> asyncio.Lock:
        if owner_key not in self._locks:
            self._locks[owner_key] = asyncio.Lock()
        return self._locks[owner_key]

    async def get(self, owner_key: str) -> Artifact | None:
        record = self._records.get(owner_key)
        return _copy(record) if record else None

    async def list(self, scope: str | None = None) -> list[Artifact]:
        prefix = f"{scope}{KEY_SEPARATOR}" if scope else ""
        return [
            _copy(r) for key, r in sorted(self._records.items()) if key.startswith(prefix)
        ]

    async def _write(
        self, record: Artifact, expected_version: int | None, allow_locked: bool = True
    ) -> None:
        owner_key = record["owner_key"]
        async with self._lock(owner_key):
            current = self._records.get(owner_key)
            actual = current["version"] if current else None
            if actual != expected_version:
                raise VersionConflict(owner_key, expected_version, actual)
            if current and current["approved"] and not allow_locked:
                raise ArtifactLocked(owner_key)
            self._records[owner_key] = _copy(record)


def _copy(record: Artifact) -> Artifact:
    return {**record, "feedback_history": [dict(e) for e in record["feedback_history"]]}


# ---------------------------------------------------------------------------
# SQLite backend
# ---------------------------------------------------------------------------

_SCHEMA = """
CREATE TABLE IF NOT EXISTS artifacts (
    id TEXT NOT NULL,
    owner_key TEXT PRIMARY KEY,
    content TEXT NOT NULL,
    version INTEGER NOT NULL,
    status TEXT NOT NULL,
    approved INTEGER NOT NULL DEFAULT 0,
    feedback TEXT,
    feedback_history TEXT NOT NULL DEFAULT '[]',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    approved_at TEXT
)
"""

_COLUMNS = (
    "id", "owner_key", "content", "version", "status", "approved", "feedback",
    "feedback_history", "created_at", "updated_at", "approved_at",
)


def _dict_factory(cursor, row):
    return {col[0]: row[idx] for idx, col in enumerate(cursor.description)}


class SqliteArtifactStore(ArtifactStore):
    """SQLite-backed store. Blocking calls run in a worker thread."""

    def __init__(self, path, notifier: Notifier | None = None) -> None:
        super().__init__(notifier)
        self.path = str(path)
        if self.path != ":memory:":
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        # A single connection keeps ":memory:" databases alive across calls
        self._conn = sqlite3.connect(self.path, timeout=10, check_same_thread=False)
        self._conn.row_factory = _dict_factory
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA busy_timeout=5000")
        self._conn.execute(_SCHEMA)
        self._conn.commit()
        self._io_lock = asyncio.Lock()

    def close(self) -> None:
        self._conn.close()

    async def _run(self, fn, *args):
        async with self._io_lock:
            try:
                return await asyncio.to_thread(fn, *args)
            except sqlite3.Error as exc:
                raise PersistenceFailure(f"SQLite error: {exc}") from exc

    @staticmethod
    def _to_record(row: dict | None) -> Artifact | None:
        if row is None:
            return None
        return {
            **row,
            "approved": bool(row["approved"]),
            "feedback_history": json.loads(row["feedback_history"] or "[]"),
        }

    @staticmethod
    def _to_row(record: Artifact) -> tuple:
        values = {
            **record,
            "approved": int(record["approved"]),
            "feedback_history": json.dumps(record["feedback_history"]),
        }
        return tuple(values[c] for c in _COLUMNS)

    def _select_one(self, owner_key: str):
        cur = self._conn.execute("SELECT * FROM artifacts WHERE owner_key = ?", (owner_key,))
        return cur.fetchone()

    def _select_scope(self, scope: str | None):
        if scope:
            cur = self._conn.execute(
                "SELECT * FROM artifacts WHERE owner_key LIKE ? ORDER BY owner_key",
                (f"{scope}{KEY_SEPARATOR}%",),
            )
        else:
            cur = self._conn.execute("SELECT * FROM artifacts ORDER BY owner_key")
        return cur.fetchall()

    def _insert(self, row: tuple) -> int:
        placeholders = ", ".join("?" for _ in _COLUMNS)
        cur = self._conn.execute(
            f"INSERT OR IGNORE INTO artifacts ({', '.join(_COLUMNS)}) VALUES ({placeholders})",
            row,
        )
        self._conn.commit()
        return cur.rowcount

    def _update(self, row: tuple, owner_key: str, expected_version: int, allow_locked: bool) -> int:
        assignments = ", ".join(f"{c} = ?" for c in _COLUMNS)
        guard = "" if allow_locked else " AND approved = 0"
        cur = self._conn.execute(
            f"UPDATE artifacts SET {assignments} WHERE owner_key = ? AND version = ?{guard}",
            row + (owner_key, expected_version),
        )
        self._conn.commit()
        return cur.rowcount

    async def get(self, owner_key: str) -> Artifact | None:
        return self._to_record(await self._run(self._select_one, owner_key))

    async def list(self, scope: str | None = None) -> list[Artifact]:
        rows = await self._run(self._select_scope, scope)
        return [self._to_record(r) for r in rows]

    async def _write(
        self, record: Artifact, expected_version: int | None, allow_locked: bool = True
    ) -> None:
        owner_key = record["owner_key"]
        row = self._to_row(record)
        if expected_version is None:
            written = await self._run(self._insert, row)
        else:
            written = await self._run(
                self._update, row, owner_key, expected_version, allow_locked
            )
        if written != 1:
            current = await self.get(owner_key)
            actual = current["version"] if current else None
            if actual == expected_version and current["approved"] and not allow_locked:
                raise ArtifactLocked(owner_key)
            raise VersionConflict(owner_key, expected_version, actual)
