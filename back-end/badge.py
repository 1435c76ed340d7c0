"""
App icon badge count.

The count lives in two stores: the page store (localStorage, key
``pwa_badge_count``) and the worker store (IndexedDB), because the background
agent cannot reach the page's storage while the app is closed. Both sit behind
BadgeStore. Conflicts are resolved on read by taking the larger value, since
the worker only ever adds to the count while the page is away.
"""
import json
import os
import sqlite3
import threading
from contextlib import closing
from typing import Callable, Optional, Protocol

BADGE_STORAGE_KEY = "pwa_badge_count"
BADGE_STORAGE_DIR = os.environ.get("BADGE_STORAGE_DIR", os.path.join(os.path.expanduser("~"), ".todo-app"))
WORKER_DB_NAME = "badge-db.sqlite3"
WORKER_STORE_NAME = "badge"
WORKER_COUNT_KEY = "count"


class BadgeStore:
    name = "store"

    def get(self) -> int:
        raise NotImplementedError

    def set(self, count: int) -> None:
        raise NotImplementedError

    def increment(self) -> int:
        count = self.get() + 1
        self.set(count)
        return count


class MemoryBadgeStore(BadgeStore):
    name = "memory"

    def __init__(self, count: int = 0):
        self._count = count
        self._lock = threading.Lock()

    def get(self) -> int:
        return self._count

    def set(self, count: int) -> None:
        self._count = max(0, int(count))

    def increment(self) -> int:
        with self._lock:
            self._count += 1
            return self._count


class LocalStorageBadgeStore(BadgeStore):
    """localStorage semantics: string values in a JSON file, key removed at 0."""

    name = "localStorage"

    def __init__(self, path: Optional[str] = None):
        self.path = path or os.path.join(BADGE_STORAGE_DIR, "localStorage.json")

    def _read(self) -> dict:
        if not os.path.exists(self.path):
            return {}
        with open(self.path, "r", encoding="utf-8") as f:
            return json.load(f)

    def get(self) -> int:
        try:
            raw = self._read().get(BADGE_STORAGE_KEY)
            return max(0, int(raw)) if raw else 0
        except (OSError, ValueError, TypeError) as e:
            print(f"[badge] error reading badge count from localStorage: {e}")
            return 0

    def set(self, count: int) -> None:
        try:
            data = self._read()
        except (OSError, ValueError) as e:
            print(f"[badge] localStorage unreadable, resetting: {e}")
            data = {}
        if count > 0:
            data[BADGE_STORAGE_KEY] = str(count)
        else:
            data.pop(BADGE_STORAGE_KEY, None)
        try:
            os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)
            tmp = self.path + ".tmp"
            with open(tmp, "w", encoding="utf-8") as f:
                json.dump(data, f)
            os.replace(tmp, self.path)
        except OSError as e:
            print(f"[badge] error writing badge count to localStorage: {e}")


class IndexedDBBadgeStore(BadgeStore):
    """Worker-side store: one object store holding the integer under 'count'."""

    name = "indexedDB"

    def __init__(self, path: Optional[str] = None):
        self.path = path or os.path.join(BADGE_STORAGE_DIR, WORKER_DB_NAME)
        os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)
        with closing(self._connect()) as conn, conn:
            conn.execute(f"CREATE TABLE IF NOT EXISTS {WORKER_STORE_NAME} (key TEXT PRIMARY KEY, value INTEGER NOT NULL)")

    def _connect(self):
        return sqlite3.connect(self.path, timeout=5)

    def get(self) -> int:
        try:
            with closing(self._connect()) as conn:
                row = conn.execute(f"SELECT value FROM {WORKER_STORE_NAME} WHERE key = ?", (WORKER_COUNT_KEY,)).fetchone()
        except sqlite3.Error as e:
            print(f"[badge] error reading worker badge store: {e}")
            return 0
        return max(0, row[0]) if row else 0

    def set(self, count: int) -> None:
        try:
            with closing(self._connect()) as conn, conn:
                conn.execute(
                    f"INSERT INTO {WORKER_STORE_NAME} (key, value) VALUES (?, ?) "
                    "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                    (WORKER_COUNT_KEY, max(0, int(count))),
                )
        except sqlite3.Error as e:
            print(f"[badge] error writing worker badge store: {e}")

    def increment(self) -> int:
        # single statement so concurrent push handlers cannot lose an update
        with closing(self._connect()) as conn, conn:
            conn.execute(
                f"INSERT INTO {WORKER_STORE_NAME} (key, value) VALUES (?, 1) "
                "ON CONFLICT(key) DO UPDATE SET value = value + 1",
                (WORKER_COUNT_KEY,),
            )
            row = conn.execute(f"SELECT value FROM {WORKER_STORE_NAME} WHERE key = ?", (WORKER_COUNT_KEY,)).fetchone()
        return row[0]


class BadgeApi(Protocol):
    def supported(self) -> bool: ...
    def set_app_badge(self, count: int) -> None: ...
    def clear_app_badge(self) -> None: ...


class BadgeCounter:
    def __init__(
        self,
        page_store: BadgeStore,
        worker_store: Optional[BadgeStore] = None,
        badge_api: Optional[BadgeApi] = None,
        is_visible: Callable[[], bool] = lambda: True,
    ):
        self.page_store = page_store
        self.worker_store = worker_store
        self.badge_api = badge_api
        self.is_visible = is_visible
        self._lock = threading.RLock()
        self._warned_unsupported = False

    def supported(self) -> bool:
        try:
            return bool(self.badge_api and self.badge_api.supported())
        except Exception:
            return False

    def get(self) -> int:
        return self.page_store.get()

    def _surface(self, count: int):
        if not self.supported():
            if not self._warned_unsupported:
                self._warned_unsupported = True
                print(f"[badge] Badge API not supported, tracking count {count} without displaying it")
            return
        try:
            if count > 0:
                self.badge_api.set_app_badge(count)
            else:
                self.badge_api.clear_app_badge()
        except Exception as e:
            print(f"[badge] error setting badge via Badge API: {e}")

    def set(self, count: int) -> int:
        count = max(0, int(count))
        with self._lock:
            self._surface(count)
            self.page_store.set(count)
            if self.worker_store is not None:
                self.worker_store.set(count)
        return count

    def increment(self) -> int:
        with self._lock:
            # the worker may have counted events the page never saw
            current = self.reconcile()
            new = self.set(current + 1)
        print(f"[badge] incrementing badge: {current} -> {new}")
        return new

    def clear(self) -> int:
        return self.set(0)

    def sync_from_worker(self, worker_count: int) -> int:
        """Apply a count reported by the background agent without losing page increments."""
        with self._lock:
            return self.set(max(self.get(), int(worker_count or 0)))

    def discount_worker_repeat(self, worker_count: int) -> int:
        """Undo the worker's +1 for an event the page already counted."""
        with self._lock:
            return self.set(max(self.get(), int(worker_count or 0) - 1))

    def reconcile(self) -> int:
        page = self.page_store.get()
        worker = self.worker_store.get() if self.worker_store is not None else 0
        return max(page, worker)

    def initialize(self) -> int:
        """On app launch: take the larger stored count and surface it."""
        with self._lock:
            count = self.reconcile()
            try:
                visible = self.is_visible()
            except Exception:
                visible = False
            if visible and count == 0:
                self.clear()
                print("[badge] app launched, badge cleared (count was 0)")
            else:
                self.set(count)
                print(f"[badge] app launched, badge restored to {count}")
        return count
