"""
In-app side of task notifications while the app is open.

Three inputs feed the same alert path: realtime task listeners on the user's
projects, FCM messages delivered in the foreground, and INC_BADGE/CLEAR_BADGE
messages relayed by the background agent. Alerts are keyed by
(projectId, taskId) so an event arriving through more than one input shows a
single popup and bumps the badge once.
"""
import sys
import threading
import time
from collections import deque
from typing import Any, Callable, Dict, Iterable, List, Optional

from badge import BadgeCounter
from firebase_app import db
from notifications import is_seen, mark_seen
from push import project_link

POPUP_AUTO_CLOSE_SECONDS = 5
RECENT_ALERTS = 500
DEFAULT_TITLE = "New Task Created"
DEFAULT_BODY = "A new task has been created"


def event_key(data: Dict[str, Any]) -> Optional[tuple]:
    project_id, task_id = data.get("projectId"), data.get("taskId")
    if project_id and task_id:
        return (project_id, task_id)
    return None


class Popup:
    def __init__(self, popup_id, title, body, data, shown_at):
        self.id = popup_id
        self.title = title
        self.body = body
        self.data = data
        self.shown_at = shown_at

    @property
    def project_name(self):
        return self.data.get("projectName") or ""

    @property
    def author(self):
        return self.data.get("createdByName") or ""


class PopupCenter:
    def __init__(
        self,
        auto_close_seconds: float = POPUP_AUTO_CLOSE_SECONDS,
        clock: Callable[[], float] = time.time,
        navigate: Optional[Callable[[str], None]] = None,
        on_click: Optional[Callable[[Popup], None]] = None,
    ):
        self.auto_close_seconds = auto_close_seconds
        self.clock = clock
        self.navigate = navigate
        self.on_click = on_click
        self._popups: List[Popup] = []
        self._seq = 0
        self._lock = threading.Lock()

    @property
    def active(self) -> List[Popup]:
        self.expire()
        with self._lock:
            return list(self._popups)

    def show(self, payload: Dict[str, Any]) -> Optional[Popup]:
        """Add a popup unless one for the same (projectId, taskId) is already up."""
        note = payload.get("notification") or {}
        data = payload.get("data") or {}
        key = event_key(data)
        self.expire()
        with self._lock:
            if key and any(event_key(p.data) == key for p in self._popups):
                print(f"[popup] duplicate notification prevented: {key[1]}")
                return None
            self._seq += 1
            popup_id = f"{key[0]}-{key[1]}" if key else f"popup-{self._seq}"
            popup = Popup(
                popup_id,
                note.get("title") or data.get("title") or DEFAULT_TITLE,
                note.get("body") or data.get("body") or DEFAULT_BODY,
                data,
                self.clock(),
            )
            self._popups.append(popup)
        return popup

    def remove(self, popup_id: str):
        with self._lock:
            self._popups = [p for p in self._popups if p.id != popup_id]

    def expire(self):
        cutoff = self.clock() - self.auto_close_seconds
        with self._lock:
            self._popups = [p for p in self._popups if p.shown_at > cutoff]

    def clear(self):
        with self._lock:
            self._popups = []

    def click(self, popup_id: str) -> Optional[str]:
        with self._lock:
            popup = next((p for p in self._popups if p.id == popup_id), None)
        if popup is None:
            return None
        link = popup.data.get("link")
        if link and self.navigate:
            self.navigate(link)
        if self.on_click:
            try:
                self.on_click(popup)
            except Exception as e:
                print(f"[popup] on_click error: {e}")
        self.remove(popup_id)
        return link


def synthesized_beep():
    sys.stdout.write("\a")
    sys.stdout.flush()


class ForegroundListener:
    def __init__(
        self,
        user_uid: str,
        user_email: Optional[str],
        badge: BadgeCounter,
        popups: Optional[PopupCenter] = None,
        audio=None,
        beep: Callable[[], None] = synthesized_beep,
    ):
        self.user_uid = user_uid
        self.user_email = user_email
        self.badge = badge
        self.popups = popups or PopupCenter(on_click=lambda popup: badge.clear())
        self.audio = audio
        self.beep = beep
        self.current_project_id: Optional[str] = None
        self._project_names: Dict[str, str] = {}
        self._known: Dict[str, set] = {}
        self._watches = {}
        self._alerted = deque(maxlen=RECENT_ALERTS)
        self._lock = threading.Lock()

    # -------- Task listeners --------

    def watch_projects(self, projects: Iterable):
        """projects: ids, or dicts with id/name. Closes listeners for dropped projects."""
        wanted = {}
        for p in projects:
            if isinstance(p, dict):
                wanted[p.get("id")] = p.get("name") or "Project"
            else:
                wanted[p] = "Project"
        wanted.pop(None, None)

        with self._lock:
            for pid in [p for p in self._watches if p not in wanted]:
                self._watches.pop(pid).unsubscribe()
                self._known.pop(pid, None)
            self._project_names.update(wanted)
            missing = [p for p in wanted if p not in self._watches]

        for pid in missing:
            tasks = db.collection("projects").document(pid).collection("tasks")
            try:
                watch = tasks.on_snapshot(lambda docs, changes, read_time, pid=pid: self._on_tasks(pid, docs))
            except Exception as e:
                print(f"[foreground] tasks snapshot error for project {pid}: {e}")
                continue
            with self._lock:
                self._watches[pid] = watch

    def _on_tasks(self, project_id: str, docs):
        with self._lock:
            first = project_id not in self._known
            known = self._known.setdefault(project_id, set())
            fresh = [d for d in docs if d.id not in known]
            known.update(d.id for d in fresh)
        if first:
            # initial snapshot only primes the known ids
            return
        for d in fresh:
            task = d.to_dict() or {}
            if not self._should_alert(project_id, d.id, task):
                continue
            name = self._project_names.get(project_id, "Project")
            author = task.get("createdByName") or task.get("createdBy") or "Someone"
            self._alert({
                "notification": {"title": DEFAULT_TITLE, "body": f"{author} created: {task.get('text', '')}"},
                "data": {
                    "projectId": project_id,
                    "projectName": name,
                    "taskId": d.id,
                    "taskName": task.get("text", ""),
                    "createdBy": task.get("createdBy", ""),
                    "createdByName": author,
                    "link": project_link(project_id, name),
                    "type": "task_created",
                },
            })

    def _should_alert(self, project_id: str, task_id: str, task: Dict[str, Any]) -> bool:
        if self.user_email and task.get("createdBy") == self.user_email:
            return False
        if task.get("createdByUID") and task.get("createdByUID") == self.user_uid:
            return False
        if project_id == self.current_project_id:
            return False
        try:
            if is_seen(project_id, task_id, self.user_uid):
                print(f"[foreground] task {task_id} already seen, suppressed")
                return False
        except Exception as e:
            print(f"[foreground] seenBy check failed for {task_id}: {e}")
        return True

    # -------- Alerting --------

    def _claim(self, data: Dict[str, Any]) -> bool:
        key = event_key(data)
        with self._lock:
            if key and key in self._alerted:
                return False
            if key:
                self._alerted.append(key)
        return True

    def play_sound(self):
        try:
            if self.audio is None:
                raise RuntimeError("no audio player")
            self.audio.play()
        except Exception as e:
            try:
                self.beep()
            except Exception as beep_err:
                print(f"[foreground] could not play sound: {e}; {beep_err}")

    def _alert(self, payload: Dict[str, Any], increment: bool = True) -> bool:
        data = payload.get("data") or {}
        if not self._claim(data):
            print(f"[foreground] already alerted for {event_key(data)}")
            return False
        self.play_sound()
        try:
            self.popups.show(payload)
        except Exception as e:
            print(f"[foreground] popup error: {e}")
        if increment:
            try:
                self.badge.increment()
            except Exception as e:
                print(f"[foreground] badge increment error: {e}")
        return True

    def on_fcm_message(self, payload: Dict[str, Any]) -> bool:
        print(f"[foreground] FCM message received: {payload.get('notification')}")
        data = payload.get("data") or {}
        if data.get("projectId") and data.get("projectId") == self.current_project_id:
            return False
        return self._alert({"notification": payload.get("notification") or {}, "data": data})

    def on_worker_message(self, message: Dict[str, Any]):
        kind = (message or {}).get("type")
        if kind == "INC_BADGE":
            data = dict(message.get("payload") or {})
            count = data.pop("badgeCount", None)
            note = {"title": data.get("title"), "body": data.get("body")}
            # the worker already counted this event
            fresh = self._alert({"notification": note, "data": data}, increment=False)
            if count is not None:
                try:
                    if fresh:
                        self.badge.sync_from_worker(count)
                    else:
                        # counted here first, through FCM or the task listener
                        self.badge.discount_worker_repeat(count)
                except Exception as e:
                    print(f"[foreground] badge sync error: {e}")
        elif kind == "CLEAR_BADGE":
            self.badge.clear()
            self.popups.clear()

    # -------- Chat view --------

    def open_project(self, project_id: str) -> int:
        """User opened a project's chat view: mark it read and clear the badge."""
        self.current_project_id = project_id
        updated = mark_seen(project_id, self.user_uid)
        try:
            self.badge.clear()
        except Exception as e:
            print(f"[foreground] badge clear error: {e}")
        return updated

    def close_project(self):
        self.current_project_id = None

    def close(self):
        with self._lock:
            watches = list(self._watches.values())
            self._watches.clear()
            self._known.clear()
        for w in watches:
            w.unsubscribe()
