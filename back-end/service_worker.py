"""
Background delivery agent.

Handles the events a service worker receives while the app is closed or
unfocused: push (show one OS notification per task, bump the worker badge,
tell open pages), notification click (clear badge, focus or open the app),
fetch (offline cache for the app shell) and page messages.

Platform access goes through small ports (notification center, window
clients, cache storage, network fetcher). The Memory* implementations below
back the diagnostics CLI and the tests; a desktop agent supplies its own.
"""
import json
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import quote, urljoin, urlparse

import requests

from badge import BadgeStore

CACHE_NAME = "todo-app-pwa-v1"
RUNTIME_CACHE = "todo-app-runtime-v1"
PRECACHE_URLS = [
    "/",
    "/dashboard",
    "/manifest.json",
    "/icons/icon.png",
    "/static/js/bundle.js",
    "/static/css/main.css",
    "/favicon.ico",
]
STATIC_MARKERS = ("/static/", "/icons/", "/manifest.json", "/favicon.ico")
INSTALL_ATTEMPTS = 3

DEFAULT_TITLE = "New Task Created"
DEFAULT_BODY = "A new task was added"
DEFAULT_ICON = "/icons/icon.png"
VIBRATE_PATTERN = [200, 100, 200, 100, 200]
RECENT_TAGS = 200

INC_BADGE = "INC_BADGE"
CLEAR_BADGE = "CLEAR_BADGE"
SKIP_WAITING = "SKIP_WAITING"
CACHE_URLS = "CACHE_URLS"

OFFLINE_PAGE = """<!DOCTYPE html>
<html>
  <head>
    <title>Offline - Todo App</title>
    <meta charset="utf-8">
    <meta name="viewport" content="width=device-width, initial-scale=1">
  </head>
  <body>
    <div class="offline-container">
      <h1>You're Offline</h1>
      <p>Please check your internet connection and try again.</p>
      <p>The app will work once you're back online.</p>
    </div>
  </body>
</html>
"""


class LifecycleState(Enum):
    UNINSTALLED = "uninstalled"
    INSTALLING = "installing"
    INSTALLED = "installed"
    ACTIVE = "active"


@dataclass
class Request:
    url: str
    method: str = "GET"
    mode: str = "cors"


@dataclass
class Response:
    status: int
    body: Any = b""
    headers: Dict[str, str] = field(default_factory=dict)
    type: str = "basic"

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


# -------- Ports and in-memory adapters --------

class ShownNotification:
    def __init__(self, title: str, options: Dict[str, Any], center=None):
        self.title = title
        self.options = options
        self.tag = options.get("tag")
        self.data = options.get("data") or {}
        self.closed = False
        self._center = center

    def close(self):
        self.closed = True
        if self._center is not None:
            self._center._discard(self)


class MemoryNotificationCenter:
    def __init__(self):
        self.visible: List[ShownNotification] = []
        self.history: List[ShownNotification] = []

    def show(self, title: str, options: Dict[str, Any]) -> ShownNotification:
        n = ShownNotification(title, options, self)
        self.visible.append(n)
        self.history.append(n)
        return n

    def get_notifications(self, tag: Optional[str] = None) -> List[ShownNotification]:
        return [n for n in self.visible if tag is None or n.tag == tag]

    def _discard(self, n):
        if n in self.visible:
            self.visible.remove(n)


class MemoryClient:
    def __init__(self, url: str, on_message: Optional[Callable[[dict], None]] = None):
        self.url = url
        self.focused = False
        self.messages: List[dict] = []
        self._on_message = on_message

    def focus(self):
        self.focused = True
        return self

    def navigate(self, url: str):
        self.url = url
        return self

    def post_message(self, message: dict):
        self.messages.append(message)
        if self._on_message:
            self._on_message(message)


class MemoryClients:
    def __init__(self):
        self.windows: List[MemoryClient] = []
        self.claimed = False

    def match_all(self, include_uncontrolled: bool = True) -> List[MemoryClient]:
        return list(self.windows)

    def open_window(self, url: str) -> MemoryClient:
        client = MemoryClient(url)
        self.windows.append(client)
        return client

    def claim(self):
        self.claimed = True


class MemoryCache:
    def __init__(self):
        self.entries: Dict[str, Response] = {}

    def match(self, url: str) -> Optional[Response]:
        return self.entries.get(url)

    def put(self, url: str, response: Response):
        self.entries[url] = response

    def add_all(self, urls: List[str], fetcher: Callable[[Request], Response]):
        fetched = {}
        for url in urls:
            resp = fetcher(Request(url))
            if not resp.ok:
                raise RuntimeError(f"Request for {url} returned {resp.status}")
            fetched[url] = resp
        # all or nothing
        self.entries.update(fetched)


class MemoryCacheStorage:
    def __init__(self):
        self.caches: Dict[str, MemoryCache] = {}

    def open(self, name: str) -> MemoryCache:
        return self.caches.setdefault(name, MemoryCache())

    def keys(self) -> List[str]:
        return list(self.caches)

    def delete(self, name: str) -> bool:
        return self.caches.pop(name, None) is not None

    def match(self, url: str) -> Optional[Response]:
        for cache in self.caches.values():
            hit = cache.match(url)
            if hit is not None:
                return hit
        return None


class RequestsFetcher:
    """Network port backed by a requests session."""

    def __init__(self, session: Optional[requests.Session] = None, timeout: float = 10):
        self.session = session or requests.Session()
        self.timeout = timeout

    def __call__(self, request: Request) -> Response:
        resp = self.session.request(request.method, request.url, timeout=self.timeout)
        return Response(status=resp.status_code, body=resp.content, headers=dict(resp.headers))


# -------- Payload helpers --------

def parse_push_payload(raw) -> Dict[str, Any]:
    """Normalise a push body to {"notification": {...}, "data": {...}}."""
    if raw is None:
        return {}
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8", errors="replace")
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError:
            return {"notification": {"body": raw}, "data": {}}
    if not isinstance(raw, dict):
        return {}
    payload = dict(raw)
    if "notification" not in payload and ("title" in payload or "body" in payload):
        payload["notification"] = {k: payload.get(k) for k in ("title", "body", "icon") if payload.get(k)}
    payload.setdefault("notification", {})
    payload.setdefault("data", {})
    return payload


def notification_tag(data: Dict[str, Any], now_ms: int) -> str:
    project_id = data.get("projectId") or ""
    task_id = data.get("taskId") or ""
    if project_id and task_id:
        return f"task-{project_id}-{task_id}"
    return f"task-{project_id}-{now_ms}"


def click_target_url(data: Dict[str, Any], origin: str) -> str:
    link = data.get("link") or data.get("url")
    if link:
        return urljoin(origin + "/", link) if link.startswith("/") else link
    if data.get("projectId"):
        name = data.get("projectName") or "Project"
        return f"{origin}/view/{data['projectId']}/{quote(name, safe='')}"
    return f"{origin}/dashboard"


class BackgroundDeliveryAgent:
    def __init__(
        self,
        origin: str,
        notifications,
        clients,
        caches,
        badge_store: BadgeStore,
        fetcher: Optional[Callable[[Request], Response]] = None,
        precache_urls: Optional[List[str]] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.origin = origin.rstrip("/")
        self.notifications = notifications
        self.clients = clients
        self.caches = caches
        self.badge_store = badge_store
        self.fetcher = fetcher or RequestsFetcher()
        self.precache_urls = list(PRECACHE_URLS if precache_urls is None else precache_urls)
        self.clock = clock
        self.state = LifecycleState.UNINSTALLED
        self.degraded = False
        self._recent_tags = deque(maxlen=RECENT_TAGS)

    # -------- Lifecycle --------

    def install(self, skip_waiting: bool = True) -> LifecycleState:
        print("[SW] installing service worker...")
        self.state = LifecycleState.INSTALLING
        urls = [self._absolute(u) for u in self.precache_urls]
        for attempt in range(1, INSTALL_ATTEMPTS + 1):
            try:
                self.caches.open(CACHE_NAME).add_all(urls, self.fetcher)
                self.degraded = False
                print("[SW] app shell cached")
                break
            except Exception as e:
                self.degraded = True
                print(f"[SW] precache attempt {attempt}/{INSTALL_ATTEMPTS} failed: {e}")
        if self.degraded:
            print("[SW] continuing without a complete app shell cache")
        self.state = LifecycleState.INSTALLED
        if skip_waiting:
            self.skip_waiting()
        return self.state

    def skip_waiting(self):
        if self.state == LifecycleState.INSTALLED:
            self.activate()

    def activate(self) -> LifecycleState:
        print("[SW] activating service worker...")
        try:
            for name in self.caches.keys():
                if name not in (CACHE_NAME, RUNTIME_CACHE):
                    print(f"[SW] deleting old cache: {name}")
                    self.caches.delete(name)
            self.clients.claim()
        except Exception as e:
            print(f"[SW] activation cleanup failed: {e}")
        self.state = LifecycleState.ACTIVE
        return self.state

    # -------- Push --------

    def on_push(self, raw_payload) -> Optional[ShownNotification]:
        payload = parse_push_payload(raw_payload)
        if not payload:
            return None
        note = payload.get("notification") or {}
        data = payload.get("data") or {}
        fcm_options = payload.get("fcmOptions") or {}

        title = note.get("title") or data.get("title") or DEFAULT_TITLE
        body = note.get("body") or data.get("body") or DEFAULT_BODY
        event_data = {
            **data,
            "projectId": data.get("projectId") or "",
            "projectName": data.get("projectName") or "",
            "taskId": data.get("taskId") or "",
            "taskName": data.get("taskName") or "",
            "createdBy": data.get("createdBy") or data.get("addedBy") or "",
            "createdByName": data.get("createdByName") or data.get("addedByName") or "",
            "link": fcm_options.get("link") or data.get("link") or "",
        }
        tag = notification_tag(event_data, int(self.clock() * 1000))
        duplicate = tag in self._recent_tags

        shown = None
        try:
            for existing in self.notifications.get_notifications(tag=tag):
                existing.close()
            shown = self.notifications.show(title, {
                "body": body,
                "icon": note.get("icon") or DEFAULT_ICON,
                "badge": DEFAULT_ICON,
                "data": event_data,
                "tag": tag,
                "require_interaction": True,
                "silent": False,
                "renotify": True,
                "vibrate": list(VIBRATE_PATTERN),
                "timestamp": int(self.clock() * 1000),
                "actions": [
                    {"action": "view", "title": "View Task"},
                    {"action": "dismiss", "title": "Dismiss"},
                ],
            })
            print(f"[SW] background notification shown: {tag}")
        except Exception as e:
            print(f"[SW] error showing notification {tag}: {e}")

        if duplicate:
            print(f"[SW] repeat delivery of {tag}, badge unchanged")
            return shown
        self._recent_tags.append(tag)

        count = None
        try:
            count = self.badge_store.increment()
        except Exception as e:
            print(f"[SW] badge increment failed: {e}")

        self._broadcast({"type": INC_BADGE, "payload": {**event_data, "title": title, "body": body, "badgeCount": count}})
        return shown

    # -------- Click --------

    def on_notification_click(self, notification: ShownNotification, action: str = "") -> Optional[str]:
        print(f"[SW] notification clicked: {notification.tag} action={action or 'default'}")
        notification.close()
        if action == "dismiss":
            return None

        self._broadcast({"type": CLEAR_BADGE})
        try:
            self.badge_store.set(0)
        except Exception as e:
            print(f"[SW] badge clear failed: {e}")

        url = click_target_url(notification.data or {}, self.origin)
        print(f"[SW] opening URL: {url}")
        try:
            for client in self.clients.match_all(include_uncontrolled=True):
                if client.url.startswith(self.origin):
                    client.focus()
                    if url not in client.url:
                        client.navigate(url)
                    return url
            self.clients.open_window(url)
        except Exception as e:
            print(f"[SW] could not focus or open window: {e}")
        return url

    # -------- Fetch --------

    def _absolute(self, url: str) -> str:
        return urljoin(self.origin + "/", url) if url.startswith("/") else url

    def _is_passthrough(self, request: Request) -> bool:
        if request.method.upper() != "GET":
            return True
        parsed = urlparse(request.url)
        if f"{parsed.scheme}://{parsed.netloc}" == self.origin:
            return False
        # cross-origin, including firebase / gstatic / googleapis messaging traffic
        return True

    def on_fetch(self, request: Request) -> Optional[Response]:
        """Returns the response to serve, or None to let the request through untouched."""
        if self._is_passthrough(request):
            return None

        cached = self.caches.match(request.url)
        if cached is not None and any(m in request.url for m in STATIC_MARKERS):
            return cached

        try:
            response = self.fetcher(request)
        except Exception as e:
            print(f"[SW] network failed for {request.url}: {e}")
            return self._offline_response(request, cached)

        if response is not None and response.status == 200 and response.type == "basic":
            try:
                self.caches.open(RUNTIME_CACHE).put(request.url, response)
            except Exception as e:
                print(f"[SW] runtime cache write failed for {request.url}: {e}")
        return response

    def _offline_response(self, request: Request, cached: Optional[Response]) -> Response:
        if cached is not None:
            return cached
        if request.mode == "navigate":
            index = self.caches.match(self._absolute("/"))
            if index is not None:
                return index
            return Response(status=200, body=OFFLINE_PAGE, headers={"Content-Type": "text/html"})
        return Response(status=503, body="Offline - Resource not available", headers={"Content-Type": "text/plain"})

    # -------- Page messages --------

    def on_message(self, message: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        kind = (message or {}).get("type")
        if kind == SKIP_WAITING:
            self.skip_waiting()
            return None
        if kind == CACHE_URLS:
            urls = [self._absolute(u) for u in message.get("urls") or []]
            try:
                self.caches.open(RUNTIME_CACHE).add_all(urls, self.fetcher)
            except Exception as e:
                print(f"[SW] CACHE_URLS failed: {e}")
                return {"success": False, "error": str(e)}
            return {"success": True}
        print(f"[SW] ignoring message: {kind}")
        return None

    def _broadcast(self, message: Dict[str, Any]):
        try:
            targets = self.clients.match_all(include_uncontrolled=True)
        except Exception as e:
            print(f"[SW] could not list clients: {e}")
            return
        if not targets:
            print(f"[SW] no open clients for {message['type']}, state kept in worker store")
        for client in targets:
            try:
                client.post_message(message)
            except Exception as e:
                print(f"[SW] postMessage failed for {client.url}: {e}")
