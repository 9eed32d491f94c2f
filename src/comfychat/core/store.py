"""SQLite store for conversation history, favorites and settings.

The store is the single source of truth that observers (API handlers, a
UI, tests) read from.  It holds three independent tables:

- ``messages`` — append-only conversation entries, cleared only in bulk
- ``favorites`` — copied image artifacts, appended and deleted by id
- ``settings`` — a single row with the fixed id ``1``

Every write runs in its own transaction, so an entry is either fully
visible together with its image blob or not present at all.  After each
commit, subscribers of the written table are notified synchronously, which
gives read-after-write visibility to live queries without polling.
"""

import logging
import sqlite3
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import asdict, replace
from pathlib import Path
from typing import Any, TypeVar

from .exceptions import ConfigurationMissing
from .models import ConversationEntry, EntryStatus, FavoriteItem, Role, SeedStrategy, Settings

logger = logging.getLogger(__name__)

SETTINGS_ID = 1
UNKNOWN_PROMPT = "unknown"

TABLES = ("messages", "favorites", "settings")

T = TypeVar("T")


class ChatStore:
    """Manage the local ComfyChat database using SQLite.

    Args:
        db_path: Path to the SQLite database file.
        clock: Wall clock in seconds, injectable for tests.
    """

    def __init__(self, db_path: Path, clock: Callable[[], float] = time.time):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._clock = clock
        self._clock_lock = threading.Lock()
        self._subscribers: dict[str, list[Callable[[str], None]]] = {t: [] for t in TABLES}
        self._initialize_db()
        self._last_timestamp = self._max_timestamp()
        logger.info(f"Initialized chat store at {self.db_path}")

    # -- Connection handling ------------------------------------------------

    def _open(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, isolation_level=None)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Run the enclosed statements in one write transaction."""
        conn = self._open()
        try:
            # IMMEDIATE takes the write lock up front so read-merge-write
            # sequences cannot interleave with another writer.
            conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.execute("COMMIT")
        except BaseException:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        finally:
            conn.close()

    @contextmanager
    def _reader(self) -> Iterator[sqlite3.Connection]:
        conn = self._open()
        try:
            yield conn
        finally:
            conn.close()

    def _initialize_db(self) -> None:
        """Create database schema if it doesn't exist."""
        with self._transaction() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS messages (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    role TEXT NOT NULL,
                    content TEXT NOT NULL DEFAULT '',
                    image_url TEXT,
                    image_blob BLOB,
                    timestamp INTEGER NOT NULL,
                    status TEXT NOT NULL
                )
                """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_messages_timestamp
                ON messages(timestamp)
                """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS favorites (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    prompt TEXT NOT NULL,
                    image_blob BLOB NOT NULL,
                    timestamp INTEGER NOT NULL
                )
                """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_favorites_timestamp
                ON favorites(timestamp DESC)
                """)
            # The CHECK constraint makes a second settings row impossible.
            conn.execute(f"""
                CREATE TABLE IF NOT EXISTS settings (
                    id INTEGER PRIMARY KEY CHECK (id = {SETTINGS_ID}),
                    api_host TEXT NOT NULL,
                    auth_token TEXT NOT NULL DEFAULT '',
                    workflow_json TEXT NOT NULL,
                    seed_mode TEXT NOT NULL DEFAULT 'random',
                    last_seed INTEGER NOT NULL DEFAULT 0
                )
                """)

    def _max_timestamp(self) -> int:
        with self._reader() as conn:
            row = conn.execute("""
                SELECT MAX(ts) FROM (
                    SELECT MAX(timestamp) AS ts FROM messages
                    UNION ALL
                    SELECT MAX(timestamp) AS ts FROM favorites
                )
                """).fetchone()
        return row[0] or 0

    def _next_timestamp(self) -> int:
        """Return a millisecond timestamp strictly greater than any issued before.

        Wall-clock jumps backwards (or two writes within one millisecond)
        still produce increasing values, so timestamp order always equals
        insertion order.
        """
        with self._clock_lock:
            now = int(self._clock() * 1000)
            self._last_timestamp = max(now, self._last_timestamp + 1)
            return self._last_timestamp

    # -- Subscriptions --------------------------------------------------------

    def subscribe(self, table: str, callback: Callable[[str], None]) -> Callable[[], None]:
        """Register ``callback`` to run after every committed write to ``table``.

        Args:
            table: One of ``"messages"``, ``"favorites"``, ``"settings"``.
            callback: Called with the table name.

        Returns:
            A function that removes the subscription.
        """
        if table not in self._subscribers:
            raise ValueError(f"Unknown table: {table}")
        self._subscribers[table].append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers[table]:
                self._subscribers[table].remove(callback)

        return unsubscribe

    def live_query(
        self,
        tables: tuple[str, ...],
        query: Callable[["ChatStore"], T],
        callback: Callable[[T], None],
    ) -> Callable[[], None]:
        """Observe a query result: deliver it now and again after each write.

        Example:
            >>> stop = store.live_query(("messages",), ChatStore.list_messages, render)
        """
        callback(query(self))
        unsubscribers = [self.subscribe(table, lambda _t: callback(query(self))) for table in tables]

        def unsubscribe() -> None:
            for stop in unsubscribers:
                stop()

        return unsubscribe

    def _publish(self, table: str) -> None:
        for callback in list(self._subscribers[table]):
            try:
                callback(table)
            except Exception:
                logger.exception(f"Subscriber for {table} failed")

    # -- Messages -------------------------------------------------------------

    @staticmethod
    def _row_to_entry(row: sqlite3.Row) -> ConversationEntry:
        return ConversationEntry(
            id=row["id"],
            role=Role(row["role"]),
            content=row["content"],
            status=EntryStatus(row["status"]),
            image_url=row["image_url"],
            image_blob=row["image_blob"],
            timestamp=row["timestamp"],
        )

    def add_message(self, entry: ConversationEntry) -> ConversationEntry:
        """Append a conversation entry.

        Args:
            entry: Entry to store.  Its ``id`` and ``timestamp`` are ignored.

        Returns:
            The stored entry with ``id`` and ``timestamp`` assigned.
        """
        timestamp = self._next_timestamp()
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO messages (role, content, image_url, image_blob, timestamp, status)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    Role(entry.role).value,
                    entry.content,
                    entry.image_url,
                    entry.image_blob,
                    timestamp,
                    EntryStatus(entry.status).value,
                ),
            )
            stored = replace(entry, id=cursor.lastrowid, timestamp=timestamp)

        logger.debug(f"Stored {stored.role.value} message {stored.id} ({stored.status.value})")
        self._publish("messages")
        return stored

    def get_message(self, entry_id: int) -> ConversationEntry | None:
        with self._reader() as conn:
            row = conn.execute("SELECT * FROM messages WHERE id = ?", (entry_id,)).fetchone()
        return self._row_to_entry(row) if row else None

    def list_messages(
        self,
        since: int | None = None,
        until: int | None = None,
    ) -> list[ConversationEntry]:
        """Return entries in timestamp order, optionally within ``[since, until]``."""
        clauses: list[str] = []
        params: list[Any] = []
        if since is not None:
            clauses.append("timestamp >= ?")
            params.append(since)
        if until is not None:
            clauses.append("timestamp <= ?")
            params.append(until)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        with self._reader() as conn:
            rows = conn.execute(
                f"SELECT * FROM messages {where} ORDER BY timestamp, id",
                params,
            ).fetchall()
        return [self._row_to_entry(row) for row in rows]

    def clear_messages(self) -> int:
        """Delete every conversation entry.

        Returns:
            Number of entries removed.
        """
        with self._transaction() as conn:
            removed = conn.execute("DELETE FROM messages").rowcount
        logger.info(f"Cleared {removed} messages")
        self._publish("messages")
        return removed

    def find_originating_prompt(self, entry_id: int) -> str | None:
        """Return the text of the nearest user entry preceding ``entry_id``."""
        with self._reader() as conn:
            row = conn.execute(
                """
                SELECT content FROM messages
                WHERE role = ?
                  AND timestamp < (SELECT timestamp FROM messages WHERE id = ?)
                ORDER BY timestamp DESC
                LIMIT 1
                """,
                (Role.USER.value, entry_id),
            ).fetchone()
        return row["content"] if row else None

    # -- Favorites ------------------------------------------------------------

    @staticmethod
    def _row_to_favorite(row: sqlite3.Row) -> FavoriteItem:
        return FavoriteItem(
            id=row["id"],
            prompt=row["prompt"],
            image_blob=row["image_blob"],
            timestamp=row["timestamp"],
        )

    def add_favorite(self, prompt: str, image_blob: bytes) -> FavoriteItem:
        timestamp = self._next_timestamp()
        with self._transaction() as conn:
            cursor = conn.execute(
                "INSERT INTO favorites (prompt, image_blob, timestamp) VALUES (?, ?, ?)",
                (prompt, image_blob, timestamp),
            )
            favorite = FavoriteItem(
                id=cursor.lastrowid, prompt=prompt, image_blob=image_blob, timestamp=timestamp
            )

        logger.info(f"Added to favorites: {favorite.id}")
        self._publish("favorites")
        return favorite

    def favorite_message(self, entry_id: int) -> FavoriteItem | None:
        """Copy a message's image into the favorites gallery.

        The prompt is taken from the nearest preceding user entry, or
        ``"unknown"`` when there is none.

        Returns:
            The new favorite, or ``None`` if the entry doesn't exist or
            carries no image blob.
        """
        entry = self.get_message(entry_id)
        if entry is None or not entry.has_image:
            logger.debug(f"Message {entry_id} has no image to favorite")
            return None
        prompt = self.find_originating_prompt(entry_id)
        return self.add_favorite(prompt if prompt is not None else UNKNOWN_PROMPT, entry.image_blob)

    def get_favorite(self, favorite_id: int) -> FavoriteItem | None:
        with self._reader() as conn:
            row = conn.execute("SELECT * FROM favorites WHERE id = ?", (favorite_id,)).fetchone()
        return self._row_to_favorite(row) if row else None

    def list_favorites(self) -> list[FavoriteItem]:
        """Return all favorites, newest first."""
        with self._reader() as conn:
            rows = conn.execute(
                "SELECT * FROM favorites ORDER BY timestamp DESC, id DESC"
            ).fetchall()
        return [self._row_to_favorite(row) for row in rows]

    def delete_favorite(self, favorite_id: int) -> bool:
        """Remove a favorite.

        Returns:
            True if removed, False if no favorite had that id
        """
        with self._transaction() as conn:
            was_deleted = conn.execute(
                "DELETE FROM favorites WHERE id = ?", (favorite_id,)
            ).rowcount > 0

        if was_deleted:
            logger.info(f"Removed from favorites: {favorite_id}")
            self._publish("favorites")
        else:
            logger.debug(f"Not in favorites: {favorite_id}")
        return was_deleted

    # -- Settings -------------------------------------------------------------

    @staticmethod
    def _row_to_settings(row: sqlite3.Row) -> Settings:
        return Settings(
            api_host=row["api_host"],
            auth_token=row["auth_token"],
            workflow_json=row["workflow_json"],
            seed_mode=SeedStrategy(row["seed_mode"]),
            last_seed=row["last_seed"],
        )

    @staticmethod
    def _write_settings(conn: sqlite3.Connection, settings: Settings) -> None:
        conn.execute(
            """
            INSERT OR REPLACE INTO settings
                (id, api_host, auth_token, workflow_json, seed_mode, last_seed)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                SETTINGS_ID,
                settings.api_host,
                settings.auth_token or "",
                settings.workflow_json,
                SeedStrategy(settings.seed_mode).value,
                settings.last_seed,
            ),
        )

    def read_settings(self) -> Settings | None:
        """Return the settings row, or ``None`` before first configuration."""
        with self._reader() as conn:
            row = conn.execute("SELECT * FROM settings WHERE id = ?", (SETTINGS_ID,)).fetchone()
        return self._row_to_settings(row) if row else None

    def upsert_settings(self, settings: Settings) -> Settings:
        """Replace the whole settings row."""
        with self._transaction() as conn:
            self._write_settings(conn, settings)
        logger.info(f"Saved settings for {settings.api_host}")
        self._publish("settings")
        return settings

    def update_settings(self, **fields: Any) -> Settings:
        """Merge ``fields`` onto the latest stored settings.

        Reading and writing happen in one transaction, so fields edited
        concurrently elsewhere are never overwritten with stale values.

        Raises:
            ConfigurationMissing: If no settings row exists.
            ValueError: If a field name is not a settings field.
        """
        unknown = set(fields) - set(asdict(Settings(api_host="", workflow_json="")))
        if unknown:
            raise ValueError(f"Unknown settings fields: {', '.join(sorted(unknown))}")

        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM settings WHERE id = ?", (SETTINGS_ID,)).fetchone()
            if row is None:
                raise ConfigurationMissing()
            merged = replace(self._row_to_settings(row), **fields)
            self._write_settings(conn, merged)

        self._publish("settings")
        return merged

    def update_settings_with(self, mutate: Callable[[Settings], Settings]) -> Settings:
        """Apply ``mutate`` to the latest settings inside one write transaction.

        Used for changes that depend on the current value, such as seed
        progression.

        Raises:
            ConfigurationMissing: If no settings row exists.
        """
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM settings WHERE id = ?", (SETTINGS_ID,)).fetchone()
            if row is None:
                raise ConfigurationMissing()
            merged = mutate(self._row_to_settings(row))
            self._write_settings(conn, merged)

        self._publish("settings")
        return merged
