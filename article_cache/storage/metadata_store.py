"""
Manages the SQLite database that records cache groups, cache items and the
many-to-many relation between them.
"""

import asyncio
import logging
import sqlite3
import weakref
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any

from article_cache.exceptions import MetadataCommitFailure
from article_cache.models.records import CacheGroup, CacheItem

log = logging.getLogger(__name__)

_ITEM_COLUMNS = "key, is_downloaded, is_pending_delete, from_migration"


class MetadataStore:
    """
    A SQLite store for cache groups and items.

    Every call runs on a single worker thread that owns the connection, so
    reads and writes are serialized without further locking. Mutations stay
    pending until save() commits them.

    Claiming an item for a group and deleting a released item span several
    awaits, so both hold the item's lock from item_lock().
    """

    def __init__(self, db_path: Path):
        self.db_path = db_path
        self._executor = ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="metadata-store"
        )
        self._item_locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )
        self._conn = self._get_connection()
        self._initialize_db()

    def _get_connection(self) -> sqlite3.Connection:
        """Opens the database connection with the PRAGMA settings the store relies on."""
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(self.db_path, timeout=30, check_same_thread=False)
            conn.execute("PRAGMA journal_mode=WAL;")
            conn.execute("PRAGMA synchronous=NORMAL;")
            conn.execute("PRAGMA foreign_keys=ON;")
            return conn
        except (OSError, sqlite3.Error) as e:
            log.error(f"Failed to open cache database at '{self.db_path}': {e}")
            raise

    def _initialize_db(self) -> None:
        """Creates the tables and indexes if they don't exist."""
        with self._conn:
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS cache_groups (
                    key TEXT PRIMARY KEY NOT NULL,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                );
                """
            )
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS cache_items (
                    key TEXT PRIMARY KEY NOT NULL,
                    is_downloaded INTEGER NOT NULL DEFAULT 0,
                    is_pending_delete INTEGER NOT NULL DEFAULT 0,
                    from_migration INTEGER NOT NULL DEFAULT 0,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                );
                """
            )
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS cache_group_items (
                    group_key TEXT NOT NULL
                        REFERENCES cache_groups(key) ON DELETE CASCADE,
                    item_key TEXT NOT NULL
                        REFERENCES cache_items(key) ON DELETE CASCADE,
                    PRIMARY KEY (group_key, item_key)
                );
                """
            )
            self._conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_group_items_item ON"
                " cache_group_items(item_key);"
            )

    async def _run_in_executor(self, func, *args):
        """Runs a synchronous database function on the store's serial executor."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, func, *args)

    def item_lock(self, key: str) -> asyncio.Lock:
        """Returns the lock serializing claims and deletes of one item."""
        lock = self._item_locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._item_locks[key] = lock
        return lock

    # Row helpers (executor thread only)

    def _group_keys_for_item(self, item_key: str) -> frozenset[str]:
        rows = self._conn.execute(
            "SELECT group_key FROM cache_group_items WHERE item_key = ?", (item_key,)
        ).fetchall()
        return frozenset(row[0] for row in rows)

    def _item_from_row(self, row: tuple) -> CacheItem:
        key, is_downloaded, is_pending_delete, from_migration = row
        return CacheItem(
            key=key,
            is_downloaded=bool(is_downloaded),
            is_pending_delete=bool(is_pending_delete),
            from_migration=bool(from_migration),
            group_keys=self._group_keys_for_item(key),
        )

    def _item_sync(self, key: str) -> CacheItem | None:
        row = self._conn.execute(
            f"SELECT {_ITEM_COLUMNS} FROM cache_items WHERE key = ?",  # noqa: S608
            (key,),
        ).fetchone()
        return self._item_from_row(row) if row else None

    def _group_sync(self, key: str) -> CacheGroup | None:
        if not self._conn.execute(
            "SELECT 1 FROM cache_groups WHERE key = ?", (key,)
        ).fetchone():
            return None
        rows = self._conn.execute(
            "SELECT item_key FROM cache_group_items WHERE group_key = ?", (key,)
        ).fetchall()
        return CacheGroup(key=key, item_keys=frozenset(row[0] for row in rows))

    def _fetch_or_create_group_sync(self, key: str) -> CacheGroup:
        self._conn.execute("INSERT OR IGNORE INTO cache_groups (key) VALUES (?)", (key,))
        return self._group_sync(key)

    def _fetch_or_create_item_sync(self, key: str) -> CacheItem:
        self._conn.execute("INSERT OR IGNORE INTO cache_items (key) VALUES (?)", (key,))
        return self._item_sync(key)

    def _add_item_to_group_sync(self, group_key: str, item_key: str) -> None:
        self._conn.execute(
            "INSERT OR IGNORE INTO cache_group_items (group_key, item_key)"
            " VALUES (?, ?)",
            (group_key, item_key),
        )

    def _set_flags_sync(self, key: str, **flags: bool) -> CacheItem | None:
        assignments = ", ".join(f"{name} = ?" for name in flags)
        self._conn.execute(
            f"UPDATE cache_items SET {assignments} WHERE key = ?",  # noqa: S608
            (*(int(value) for value in flags.values()), key),
        )
        return self._item_sync(key)

    # Lookups

    async def item(self, key: str) -> CacheItem | None:
        """Returns the item stored under a key, or None."""
        return await self._run_in_executor(self._item_sync, key)

    async def group(self, key: str) -> CacheGroup | None:
        """Returns the group stored under a key, or None."""
        return await self._run_in_executor(self._group_sync, key)

    def _items_in_group_sync(self, group_key: str) -> list[CacheItem]:
        rows = self._conn.execute(
            "SELECT i.key, i.is_downloaded, i.is_pending_delete, i.from_migration"
            " FROM cache_items i JOIN cache_group_items gi ON gi.item_key = i.key"
            " WHERE gi.group_key = ? ORDER BY i.key",
            (group_key,),
        ).fetchall()
        return [self._item_from_row(row) for row in rows]

    async def items_in_group(self, group_key: str) -> list[CacheItem]:
        """Returns every item referenced by a group."""
        return await self._run_in_executor(self._items_in_group_sync, group_key)

    async def reference_count(self, item_key: str) -> int:
        """Returns how many groups reference an item."""
        groups = await self._run_in_executor(self._group_keys_for_item, item_key)
        return len(groups)

    def _all_items_sync(self) -> list[CacheItem]:
        rows = self._conn.execute(
            f"SELECT {_ITEM_COLUMNS} FROM cache_items ORDER BY key"  # noqa: S608
        ).fetchall()
        return [self._item_from_row(row) for row in rows]

    async def all_items(self) -> list[CacheItem]:
        return await self._run_in_executor(self._all_items_sync)

    def _all_groups_sync(self) -> list[CacheGroup]:
        keys = [
            row[0]
            for row in self._conn.execute("SELECT key FROM cache_groups ORDER BY key")
        ]
        return [self._group_sync(key) for key in keys]

    async def all_groups(self) -> list[CacheGroup]:
        return await self._run_in_executor(self._all_groups_sync)

    def _orphaned_items_sync(self) -> list[CacheItem]:
        rows = self._conn.execute(
            f"SELECT {_ITEM_COLUMNS} FROM cache_items WHERE key NOT IN"  # noqa: S608
            " (SELECT item_key FROM cache_group_items) ORDER BY key"
        ).fetchall()
        return [self._item_from_row(row) for row in rows]

    async def orphaned_items(self) -> list[CacheItem]:
        """Returns items no group references any more."""
        return await self._run_in_executor(self._orphaned_items_sync)

    # Mutations

    async def fetch_or_create_group(self, key: str) -> CacheGroup:
        """Returns the group for a key, inserting it if needed."""
        return await self._run_in_executor(self._fetch_or_create_group_sync, key)

    async def fetch_or_create_item(self, key: str) -> CacheItem:
        """Returns the item for a key, inserting it if needed."""
        return await self._run_in_executor(self._fetch_or_create_item_sync, key)

    async def add_item_to_group(self, group_key: str, item_key: str) -> None:
        await self._run_in_executor(self._add_item_to_group_sync, group_key, item_key)

    def _remove_item_from_group_sync(self, group_key: str, item_key: str) -> None:
        self._conn.execute(
            "DELETE FROM cache_group_items WHERE group_key = ? AND item_key = ?",
            (group_key, item_key),
        )

    async def remove_item_from_group(self, group_key: str, item_key: str) -> None:
        """Drops a group's reference to an item without touching the item."""
        await self._run_in_executor(
            self._remove_item_from_group_sync, group_key, item_key
        )

    def _cache_item_in_group_sync(
        self, group_key: str, item_key: str, from_migration: bool
    ) -> CacheItem:
        self._fetch_or_create_group_sync(group_key)
        item = self._fetch_or_create_item_sync(item_key)
        self._add_item_to_group_sync(group_key, item_key)
        flags = {}
        if from_migration and not item.from_migration and not item.is_downloaded:
            flags["from_migration"] = True
        if item.is_pending_delete:
            # Claimed again before its delete ran; the delete backs off
            flags["is_pending_delete"] = False
        if flags:
            return self._set_flags_sync(item_key, **flags)
        return self._item_sync(item_key)

    async def cache_item_in_group(
        self, group_key: str, item_key: str, from_migration: bool = False
    ) -> CacheItem:
        """
        Ensures a group and an item exist and that the group references the item.

        Waits for a delete of the item that is already running, so the claim
        lands on a fresh record instead of one about to disappear. An existing
        item's from_migration flag is never cleared here; only the migration
        adapter does that once the content has been ingested.
        """
        async with self.item_lock(item_key):
            return await self._run_in_executor(
                self._cache_item_in_group_sync, group_key, item_key, from_migration
            )

    def _release_group_sync(self, group_key: str) -> list[CacheItem] | None:
        if self._group_sync(group_key) is None:
            return None
        released = []
        for item in self._items_in_group_sync(group_key):
            self._remove_item_from_group_sync(group_key, item.key)
            if item.reference_count == 1:
                released.append(self._set_flags_sync(item.key, is_pending_delete=True))
        self._delete_group_sync(group_key)
        return released

    async def release_group(self, group_key: str) -> list[CacheItem] | None:
        """
        Removes a group and drops its references in one step.

        Items the group was the last reference to are marked pending delete and
        returned; shared items only lose this group's reference.

        Returns:
            The released items, or None if the group does not exist.
        """
        return await self._run_in_executor(self._release_group_sync, group_key)

    async def mark_pending_delete(self, key: str) -> CacheItem | None:
        return await self._run_in_executor(
            lambda: self._set_flags_sync(key, is_pending_delete=True)
        )

    async def mark_downloaded(self, key: str) -> CacheItem | None:
        return await self._run_in_executor(
            lambda: self._set_flags_sync(key, is_downloaded=True)
        )

    async def mark_not_downloaded(self, key: str) -> CacheItem | None:
        return await self._run_in_executor(
            lambda: self._set_flags_sync(key, is_downloaded=False)
        )

    async def mark_migrated(self, key: str) -> CacheItem | None:
        """Records that migrated content for an item is now durably stored."""
        return await self._run_in_executor(
            lambda: self._set_flags_sync(key, from_migration=False, is_downloaded=True)
        )

    def _finalize_download_sync(self, key: str) -> bool:
        item = self._item_sync(key)
        if item is None or item.is_pending_delete or item.is_orphaned:
            return False
        self._set_flags_sync(key, is_downloaded=True)
        return True

    async def finalize_download(self, key: str) -> bool:
        """
        Marks an item downloaded only if it is still wanted.

        Returns:
            False if the item was deleted, is pending delete or lost all of its
            groups while the download was in flight.
        """
        return await self._run_in_executor(self._finalize_download_sync, key)

    def _finalize_migration_sync(self, key: str) -> CacheItem | None:
        item = self._item_sync(key)
        if item is None or item.is_pending_delete or item.is_orphaned:
            return None
        return self._set_flags_sync(key, from_migration=False, is_downloaded=True)

    async def finalize_migration(self, key: str) -> CacheItem | None:
        """
        Records that migrated content for an item is durably stored, unless the
        item was released while the content was being written.

        Returns:
            The updated item, or None if it is no longer wanted.
        """
        return await self._run_in_executor(self._finalize_migration_sync, key)

    @staticmethod
    def _is_releasable(item: CacheItem) -> bool:
        return item.is_pending_delete or item.is_orphaned

    def _delete_item_sync(self, key: str) -> None:
        self._conn.execute("DELETE FROM cache_items WHERE key = ?", (key,))

    async def delete_item(self, key: str) -> None:
        """Removes an item record and its group memberships."""
        await self._run_in_executor(self._delete_item_sync, key)

    def _delete_released_item_sync(self, key: str) -> CacheItem | None:
        item = self._item_sync(key)
        if item is None or not self._is_releasable(item):
            return None
        self._delete_item_sync(key)
        return item

    async def delete_released_item(self, key: str) -> CacheItem | None:
        """
        Removes an item record if it is still pending delete or unreferenced.

        Returns:
            The removed item, or None if it was already gone or claimed again.
        """
        return await self._run_in_executor(self._delete_released_item_sync, key)

    async def is_releasable(self, key: str) -> bool | None:
        """
        True if the item may be deleted, False if a group claimed it again,
        None if there is no such item.
        """
        item = await self.item(key)
        return None if item is None else self._is_releasable(item)

    def _delete_group_sync(self, key: str) -> None:
        self._conn.execute("DELETE FROM cache_groups WHERE key = ?", (key,))

    async def delete_group(self, key: str) -> None:
        """Removes a group record and its memberships; items are left in place."""
        await self._run_in_executor(self._delete_group_sync, key)

    def _delete_empty_groups_sync(self, keys: list[str] | None) -> list[str]:
        query = (
            "SELECT key FROM cache_groups WHERE key NOT IN"
            " (SELECT group_key FROM cache_group_items)"
        )
        empty = [row[0] for row in self._conn.execute(query)]
        if keys is not None:
            wanted = set(keys)
            empty = [key for key in empty if key in wanted]
        self._conn.executemany(
            "DELETE FROM cache_groups WHERE key = ?", [(key,) for key in empty]
        )
        return empty

    async def delete_empty_groups(self, keys: list[str] | None = None) -> list[str]:
        """
        Removes groups that no longer reference any item.

        Args:
            keys: Restrict the check to these group keys; all groups if None.

        Returns:
            The keys of the removed groups.
        """
        return await self._run_in_executor(self._delete_empty_groups_sync, keys)

    def _save_sync(self) -> None:
        try:
            self._conn.commit()
        except sqlite3.Error as e:
            raise MetadataCommitFailure(f"Failed to commit cache metadata: {e}") from e

    async def save(self) -> None:
        """
        Commits pending mutations.

        Raises:
            MetadataCommitFailure: If the commit failed. Pending changes are not
            rolled back, so callers should treat state as possibly inconsistent.
        """
        await self._run_in_executor(self._save_sync)

    # Maintenance

    def _get_stats_sync(self) -> dict[str, Any] | None:
        try:
            cur = self._conn.cursor()
            cur.execute("SELECT COUNT(*) FROM cache_groups")
            total_groups = cur.fetchone()[0]
            cur.execute(
                "SELECT COUNT(*), COALESCE(SUM(is_downloaded), 0),"
                " COALESCE(SUM(is_pending_delete), 0), COALESCE(SUM(from_migration), 0)"
                " FROM cache_items"
            )
            total_items, downloaded, pending_delete, from_migration = cur.fetchone()
            cur.execute(
                """
                SELECT item_key, COUNT(*) AS refs
                FROM cache_group_items
                GROUP BY item_key
                HAVING refs > 1
                ORDER BY refs DESC, item_key
                LIMIT 10
                """
            )
            shared_items = cur.fetchall()
            return {
                "total_groups": total_groups,
                "total_items": total_items,
                "downloaded_items": downloaded,
                "pending_delete_items": pending_delete,
                "migration_items": from_migration,
                "shared_items": shared_items,
            }
        except sqlite3.Error as e:
            log.error(f"Failed to get cache stats: {e}")
            return None

    async def get_stats(self) -> dict[str, Any] | None:
        """Retrieves counts of groups and items from the database."""
        return await self._run_in_executor(self._get_stats_sync)

    def _vacuum_sync(self) -> bool:
        try:
            self._conn.commit()
            self._conn.execute("VACUUM;")
            self._conn.execute("ANALYZE;")
            self._conn.commit()
            log.info("Cache database optimized successfully.")
            return True
        except sqlite3.Error as e:
            log.error(f"Database vacuum failed: {e}")
            return False

    async def vacuum(self) -> bool:
        """Optimizes the database file by rebuilding it."""
        return await self._run_in_executor(self._vacuum_sync)

    def _clear_sync(self) -> None:
        self._conn.execute("DELETE FROM cache_group_items")
        self._conn.execute("DELETE FROM cache_items")
        self._conn.execute("DELETE FROM cache_groups")

    async def clear(self) -> None:
        """Deletes every group and item record. Call save() to commit."""
        await self._run_in_executor(self._clear_sync)

    def close(self) -> None:
        """Commits outstanding work and releases the connection and worker thread."""
        self._executor.shutdown(wait=True)
        try:
            self._conn.commit()
        except sqlite3.Error as e:
            log.error(f"Failed to commit cache metadata on close: {e}")
        finally:
            self._conn.close()
