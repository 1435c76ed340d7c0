"""
Live per-project unread counts for dashboard cards.

One Firestore listener per project on `notifications` where projectId matches;
each snapshot is filtered client-side by seenBy, so a markSeen from any tab or
device drops the count as soon as Firestore pushes the change.
"""
import threading
from typing import Callable, Dict, Iterable, Optional

from google.cloud import firestore as gcf

from firebase_app import db
from notifications import NOTIFICATIONS_COLLECTION, unseen_by

MAX_DISPLAY_COUNT = 99


def display_count(count: int) -> str:
    """Card badge text; empty when there is nothing unread."""
    if count <= 0:
        return ""
    if count > MAX_DISPLAY_COUNT:
        return f"{MAX_DISPLAY_COUNT}+"
    return str(count)


def watch_unseen(project_id: str, viewer_uid: str, callback: Callable[[str, int], None]):
    """Single-project listener. Returns the watch; call .unsubscribe() to stop."""
    query = db.collection(NOTIFICATIONS_COLLECTION).where(
        filter=gcf.FieldFilter("projectId", "==", project_id)
    )

    def on_snapshot(docs, changes, read_time):
        callback(project_id, len(unseen_by(docs, viewer_uid)))

    return query.on_snapshot(on_snapshot)


class UnreadAggregator:
    def __init__(self, viewer_uid: str, on_change: Optional[Callable[[Dict[str, int]], None]] = None):
        self.viewer_uid = viewer_uid
        self.on_change = on_change
        self._counts: Dict[str, int] = {}
        self._watches = {}
        self._lock = threading.Lock()

    def _update(self, project_id: str, count: int):
        # snapshot callbacks arrive on the SDK's watch thread
        with self._lock:
            if project_id not in self._watches:
                return
            self._counts[project_id] = count
            counts = dict(self._counts)
        print(f"[unread] project={project_id} viewer={self.viewer_uid}: {count} unseen")
        if self.on_change:
            try:
                self.on_change(counts)
            except Exception as e:
                print(f"[unread] on_change error: {e}")

    def watch(self, project_ids: Iterable[str]):
        """Match the listener set to project_ids, opening and closing as needed."""
        wanted = [p for p in dict.fromkeys(project_ids) if p]
        with self._lock:
            stale = [p for p in self._watches if p not in wanted]
            for p in stale:
                self._watches.pop(p).unsubscribe()
                self._counts.pop(p, None)
            missing = [p for p in wanted if p not in self._watches]
            for p in missing:
                # placeholder so the first snapshot is accepted
                self._watches[p] = _Pending()

        for p in missing:
            try:
                watch = watch_unseen(p, self.viewer_uid, self._update)
            except Exception as e:
                print(f"[unread] notification snapshot error for project {p}: {e}")
                with self._lock:
                    self._watches.pop(p, None)
                continue
            with self._lock:
                if p in self._watches:
                    self._watches[p] = watch
                else:
                    watch.unsubscribe()

    def counts(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._counts)

    def count(self, project_id: str) -> int:
        with self._lock:
            return self._counts.get(project_id, 0)

    def total(self) -> int:
        with self._lock:
            return sum(self._counts.values())

    def close(self):
        with self._lock:
            watches = list(self._watches.values())
            self._watches.clear()
            self._counts.clear()
        for w in watches:
            w.unsubscribe()


class _Pending:
    def unsubscribe(self):
        pass
