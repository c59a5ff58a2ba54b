from __future__ import annotations

import json
import os
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Callable, Iterator

from .errors import AlreadyExists, Conflict, NotFound, Unavailable
from .resources import WATCH_ADDED, WATCH_DELETED, WATCH_MODIFIED, OwnerReference, Resource, WatchEvent, matches

Handler = Callable[[WatchEvent], None]


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _resolve_db_path(db_path: str) -> str:
    """Return a file path usable by sqlite.

    If the configured path is a directory (a bind mount that did not exist
    yet ends up as one), the DB file is placed inside it.
    """
    p = os.path.abspath(db_path)
    if os.path.isdir(p):
        p = os.path.join(p, "scr.db")
    parent = os.path.dirname(p)
    if parent and not os.path.exists(parent):
        os.makedirs(parent, exist_ok=True)
    return p


SCHEMA = """
CREATE TABLE IF NOT EXISTS resources (
  uid TEXT PRIMARY KEY,
  kind TEXT NOT NULL,
  namespace TEXT NOT NULL,
  name TEXT NOT NULL,
  labels TEXT NOT NULL,
  annotations TEXT NOT NULL,
  spec TEXT NOT NULL,
  status TEXT NOT NULL,
  owner_kind TEXT,
  owner_name TEXT,
  owner_uid TEXT,
  resource_version INTEGER NOT NULL,
  generation INTEGER NOT NULL,
  created_at TEXT NOT NULL,
  UNIQUE(kind, namespace, name)
);

CREATE TABLE IF NOT EXISTS events (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  ts TEXT NOT NULL,
  level TEXT NOT NULL,
  namespace TEXT,
  cluster TEXT,
  message TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_resources_owner_uid ON resources(owner_uid);
CREATE INDEX IF NOT EXISTS idx_resources_kind_ns ON resources(kind, namespace);
CREATE INDEX IF NOT EXISTS idx_events_ts ON events(ts);
"""


class SqliteStore:
    """Local orchestration platform backed by a single sqlite file.

    Provides what the controller expects from a real platform: label
    selectors, optimistic concurrency through ``resource_version``, watch
    notifications and owner-reference cascading delete.
    """

    def __init__(self, db_path: str, cascade: bool = True):
        self.db_path = _resolve_db_path(db_path)
        self.cascade = cascade
        self._handlers: dict[str, list[Handler]] = {}
        self._handlers_lock = Lock()
        # sqlite serialises writers anyway; the lock keeps read-check-write sequences atomic.
        self._write_lock = Lock()
        self.init_db()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = sqlite3.connect(self.db_path, timeout=5.0, check_same_thread=False)
        except sqlite3.Error as e:
            raise Unavailable(f"cannot open store: {e}") from e
        conn.row_factory = sqlite3.Row
        try:
            with conn:
                yield conn
        except sqlite3.OperationalError as e:
            raise Unavailable(f"store unavailable: {e}") from e
        finally:
            conn.close()

    def init_db(self) -> None:
        """Create tables if they do not exist."""
        with self._connect() as conn:
            conn.executescript(SCHEMA)

    # --- watches ---

    def watch(self, kind: str, handler: Handler) -> Callable[[], None]:
        with self._handlers_lock:
            self._handlers.setdefault(kind, []).append(handler)

        def unsubscribe() -> None:
            with self._handlers_lock:
                hs = self._handlers.get(kind, [])
                if handler in hs:
                    hs.remove(handler)

        return unsubscribe

    def _notify(self, events: list[WatchEvent]) -> None:
        for ev in events:
            with self._handlers_lock:
                handlers = list(self._handlers.get(ev.resource.kind, []))
            for h in handlers:
                h(ev)

    # --- reads ---

    @staticmethod
    def _row_to_resource(row: sqlite3.Row) -> Resource:
        owner = None
        if row["owner_uid"]:
            owner = OwnerReference(kind=row["owner_kind"], name=row["owner_name"], uid=row["owner_uid"])
        return Resource(
            kind=row["kind"],
            name=row["name"],
            namespace=row["namespace"],
            labels=json.loads(row["labels"]),
            annotations=json.loads(row["annotations"]),
            spec=json.loads(row["spec"]),
            status=json.loads(row["status"]),
            owner=owner,
            uid=row["uid"],
            resource_version=str(row["resource_version"]),
            generation=row["generation"],
        )

    def _fetch(self, conn: sqlite3.Connection, kind: str, namespace: str, name: str) -> Resource | None:
        row = conn.execute(
            "SELECT * FROM resources WHERE kind=? AND namespace=? AND name=?", (kind, namespace, name)
        ).fetchone()
        return self._row_to_resource(row) if row else None

    def get(self, kind: str, namespace: str, name: str) -> Resource:
        with self._connect() as conn:
            res = self._fetch(conn, kind, namespace, name)
        if res is None:
            raise NotFound(f"{kind} {namespace}/{name} not found")
        return res

    def list(self, kind: str, namespace: str | None = None, selector: dict[str, str] | None = None) -> list[Resource]:
        with self._connect() as conn:
            if namespace is None:
                rows = conn.execute("SELECT * FROM resources WHERE kind=? ORDER BY namespace, name", (kind,)).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM resources WHERE kind=? AND namespace=? ORDER BY name", (kind, namespace)
                ).fetchall()
        out = [self._row_to_resource(r) for r in rows]
        return [r for r in out if matches(r.labels, selector)]

    # --- writes ---

    def create(self, res: Resource) -> Resource:
        new = res.copy()
        new.uid = uuid.uuid4().hex
        new.generation = 1
        with self._write_lock:
            try:
                with self._connect() as conn:
                    conn.execute(
                        """
                        INSERT INTO resources (uid, kind, namespace, name, labels, annotations, spec, status,
                                               owner_kind, owner_name, owner_uid, resource_version, generation, created_at)
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 1, 1, ?)
                        """,
                        (
                            new.uid,
                            new.kind,
                            new.namespace,
                            new.name,
                            json.dumps(new.labels, sort_keys=True),
                            json.dumps(new.annotations, sort_keys=True),
                            json.dumps(new.spec, sort_keys=True),
                            json.dumps(new.status, sort_keys=True),
                            new.owner.kind if new.owner else None,
                            new.owner.name if new.owner else None,
                            new.owner.uid if new.owner else None,
                            utc_now(),
                        ),
                    )
            except sqlite3.IntegrityError as e:
                raise AlreadyExists(f"{res.kind} {res.namespace}/{res.name} already exists") from e
        new.resource_version = "1"
        self._notify([WatchEvent(WATCH_ADDED, new.copy())])
        return new

    def _write(self, res: Resource, status_only: bool) -> Resource:
        with self._write_lock:
            with self._connect() as conn:
                cur = self._fetch(conn, res.kind, res.namespace, res.name)
                if cur is None:
                    raise NotFound(f"{res.kind} {res.namespace}/{res.name} not found")
                if res.resource_version and res.resource_version != cur.resource_version:
                    raise Conflict(
                        f"{res.kind} {res.namespace}/{res.name}: resource version {res.resource_version} "
                        f"is stale (current {cur.resource_version})"
                    )
                new = cur.copy()
                if status_only:
                    new.status = res.status
                else:
                    if res.spec != cur.spec:
                        new.generation = cur.generation + 1
                    new.labels = res.labels
                    new.annotations = res.annotations
                    new.spec = res.spec
                new.resource_version = str(int(cur.resource_version) + 1)
                conn.execute(
                    """
                    UPDATE resources
                    SET labels=?, annotations=?, spec=?, status=?, resource_version=?, generation=?
                    WHERE uid=?
                    """,
                    (
                        json.dumps(new.labels, sort_keys=True),
                        json.dumps(new.annotations, sort_keys=True),
                        json.dumps(new.spec, sort_keys=True),
                        json.dumps(new.status, sort_keys=True),
                        int(new.resource_version),
                        new.generation,
                        cur.uid,
                    ),
                )
        self._notify([WatchEvent(WATCH_MODIFIED, new.copy())])
        return new

    def update(self, res: Resource) -> Resource:
        return self._write(res, status_only=False)

    def update_status(self, res: Resource) -> Resource:
        return self._write(res, status_only=True)

    def delete(self, kind: str, namespace: str, name: str) -> None:
        deleted: list[Resource] = []
        with self._write_lock:
            with self._connect() as conn:
                root = self._fetch(conn, kind, namespace, name)
                if root is None:
                    raise NotFound(f"{kind} {namespace}/{name} not found")
                pending = [root]
                while pending:
                    res = pending.pop()
                    conn.execute("DELETE FROM resources WHERE uid=?", (res.uid,))
                    deleted.append(res)
                    if self.cascade:
                        rows = conn.execute("SELECT * FROM resources WHERE owner_uid=?", (res.uid,)).fetchall()
                        pending.extend(self._row_to_resource(r) for r in rows)
        self._notify([WatchEvent(WATCH_DELETED, r) for r in deleted])

    # --- events ---

    def log_event(self, level: str, message: str, cluster: str | None = None, namespace: str | None = None) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO events (ts, level, namespace, cluster, message) VALUES (?, ?, ?, ?, ?)",
                (utc_now(), level.upper(), namespace, cluster, message),
            )

    def latest_events(self, limit: int = 100) -> list[dict[str, Any]]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM events ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
            return [dict(r) for r in rows]
