"""SQLite-backed key-value tree for puck-economy.

Data is addressed by ``/``-separated paths (``channels/123/players/abc``).
Only leaves are stored, one row per leaf, with the value JSON-encoded; reading
an interior path reassembles the nested mapping from its descendants.

Each public method is async and wraps a synchronous inner function via
asyncio.run_in_executor(None, _sync), bounded by a timeout. A new connection
is created per call (WAL mode, busy timeout, Row factory). Every write runs
inside ``BEGIN IMMEDIATE`` so multi-path updates and conditional
transactions are atomic with respect to each other.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
from dataclasses import dataclass
from typing import Any, Callable, Iterator

from .errors import LedgerError, ValidationError
from .utils import generate_push_id

_FORBIDDEN_KEY_CHARS = set(".#$[]\x00")


@dataclass(frozen=True)
class TransactionResult:
    committed: bool
    snapshot: Any


def split_path(path: str, allow_root: bool = False) -> str:
    """Normalise a path and validate each segment; returns the joined key."""
    parts = [p for p in path.strip("/").split("/") if p]
    if not parts and not allow_root:
        raise ValidationError("Empty store path")
    for part in parts:
        if _FORBIDDEN_KEY_CHARS & set(part):
            raise ValidationError(f"Invalid key segment: {part!r}")
    return "/".join(parts)


def key_segment(value: Any, what: str = "id") -> str:
    """Return value if it is usable as exactly one path segment.

    Every caller-supplied id (channel, player, item, transaction, launch)
    goes through here before it is spliced into a store path.
    """
    if not isinstance(value, str) or not value or value != value.strip():
        raise ValidationError(f"Invalid {what}: {value!r}")
    if "/" in value or _FORBIDDEN_KEY_CHARS & set(value):
        raise ValidationError(f"Invalid {what}: {value!r}")
    return value


def channel_path(channel_id: str, *parts: str) -> str:
    return "/".join(["channels", key_segment(channel_id, "channelId"), *parts])


def _subtree_bounds(key: str) -> tuple[str, str]:
    # '0' sorts immediately after '/', so this range covers exactly key/...
    return key + "/", key + "0"


def _flatten(prefix: str, value: Any) -> Iterator[tuple[str, str]]:
    if value is None:
        return
    if isinstance(value, dict):
        for child, child_value in value.items():
            yield from _flatten(f"{prefix}/{key_segment(child, 'key')}", child_value)
        return
    yield prefix, json.dumps(value)


class TreeDatabase:
    """Ordered key-value tree persisted in SQLite."""

    def __init__(
        self, db_path: str, logger: logging.Logger, timeout: float = 10.0,
    ) -> None:
        self._db_path = db_path
        self._logger = logger
        self._timeout = timeout

    def _get_connection(self) -> sqlite3.Connection:
        """Create a new SQLite connection with standard settings."""
        conn = sqlite3.connect(self._db_path, timeout=30)
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA busy_timeout=30000")
        conn.row_factory = sqlite3.Row
        return conn

    async def _run(self, fn: Callable[[], Any], what: str) -> Any:
        loop = asyncio.get_running_loop()
        try:
            return await asyncio.wait_for(
                loop.run_in_executor(None, fn), timeout=self._timeout,
            )
        except asyncio.TimeoutError as exc:
            self._logger.error("Store %s timed out after %.1fs", what, self._timeout)
            raise LedgerError(f"Store {what} timed out") from exc
        except sqlite3.Error as exc:
            self._logger.error("Store %s failed: %s", what, exc)
            raise LedgerError(f"Store {what} failed: {exc}") from exc

    # ══════════════════════════════════════════════════════════
    #  Initialization
    # ══════════════════════════════════════════════════════════

    async def initialize(self) -> None:
        """Create the node table. Idempotent."""
        await self._run(self._create_tables, "initialize")

    def _create_tables(self) -> None:
        conn = self._get_connection()
        try:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS nodes (
                    path TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                )
            """)
            conn.commit()
        finally:
            conn.close()

    # ══════════════════════════════════════════════════════════
    #  Node helpers (run inside an open connection)
    # ══════════════════════════════════════════════════════════

    @staticmethod
    def _read_node(conn: sqlite3.Connection, key: str) -> Any:
        if key:
            row = conn.execute(
                "SELECT value FROM nodes WHERE path = ?", (key,),
            ).fetchone()
            if row:
                return json.loads(row["value"])
            lo, hi = _subtree_bounds(key)
            rows = conn.execute(
                "SELECT path, value FROM nodes WHERE path >= ? AND path < ? ORDER BY path",
                (lo, hi),
            ).fetchall()
            offset = len(lo)
        else:
            rows = conn.execute("SELECT path, value FROM nodes ORDER BY path").fetchall()
            offset = 0

        if not rows:
            return None
        tree: dict[str, Any] = {}
        for row in rows:
            *parents, leaf = row["path"][offset:].split("/")
            node = tree
            for part in parents:
                node = node.setdefault(part, {})
            node[leaf] = json.loads(row["value"])
        return tree

    @staticmethod
    def _set_node(conn: sqlite3.Connection, key: str, value: Any) -> None:
        parts = key.split("/")
        # A leaf at an ancestor path would shadow the new subtree.
        ancestors = [("/".join(parts[:i]),) for i in range(1, len(parts))]
        if ancestors:
            conn.executemany("DELETE FROM nodes WHERE path = ?", ancestors)
        lo, hi = _subtree_bounds(key)
        conn.execute("DELETE FROM nodes WHERE path = ?", (key,))
        conn.execute("DELETE FROM nodes WHERE path >= ? AND path < ?", (lo, hi))
        conn.executemany(
            "INSERT INTO nodes (path, value) VALUES (?, ?)", list(_flatten(key, value)),
        )

    # ══════════════════════════════════════════════════════════
    #  Public API
    # ══════════════════════════════════════════════════════════

    async def read(self, path: str) -> Any:
        """Return the value at path (scalar or nested dict), or None."""
        key = split_path(path, allow_root=True)

        def _sync() -> Any:
            conn = self._get_connection()
            try:
                return self._read_node(conn, key)
            finally:
                conn.close()

        return await self._run(_sync, f"read of {key or '/'}")

    async def write(self, path: str, value: Any) -> None:
        """Replace the subtree at path. ``None`` deletes it."""
        await self.update({path: value})

    async def delete(self, path: str) -> None:
        await self.update({path: None})

    async def update(
        self, values: dict[str, Any], require_absent: str | None = None,
    ) -> bool:
        """Write several paths as one atomic unit.

        When ``require_absent`` is given, nothing is written if that path
        already holds data; returns False in that case, True otherwise.
        """
        keyed = [(split_path(path), value) for path, value in values.items()]
        guard = split_path(require_absent) if require_absent else None

        def _sync() -> bool:
            conn = self._get_connection()
            try:
                conn.execute("BEGIN IMMEDIATE")
                if guard is not None and self._read_node(conn, guard) is not None:
                    conn.rollback()
                    return False
                for key, value in keyed:
                    self._set_node(conn, key, value)
                conn.commit()
                return True
            except Exception:
                conn.rollback()
                raise
            finally:
                conn.close()

        return await self._run(_sync, f"update of {len(keyed)} path(s)")

    async def push(self, path: str, value: Any) -> str:
        """Append value under path with a generated time-ordered key."""
        key = generate_push_id()
        await self.write(f"{path}/{key}", value)
        return key

    async def transaction(
        self, path: str, fn: Callable[[Any], Any],
    ) -> TransactionResult:
        """Conditionally replace the value at path.

        ``fn`` receives the current value and returns the new one, or None to
        abort without writing. It runs while the write lock is held, so it
        must be quick and free of I/O.
        """
        key = split_path(path)

        def _sync() -> TransactionResult:
            conn = self._get_connection()
            try:
                conn.execute("BEGIN IMMEDIATE")
                current = self._read_node(conn, key)
                new_value = fn(current)
                if new_value is None:
                    conn.rollback()
                    return TransactionResult(committed=False, snapshot=current)
                self._set_node(conn, key, new_value)
                conn.commit()
                return TransactionResult(committed=True, snapshot=new_value)
            except Exception:
                conn.rollback()
                raise
            finally:
                conn.close()

        return await self._run(_sync, f"transaction on {key}")
