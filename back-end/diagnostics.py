"""
Diagnostics for the notification pipeline.

Plain functions for checking token registration, project assignment, unread
counts and badge state, plus a CLI wrapper:

python diagnostics.py token-status <uid>
python diagnostics.py register-token <uid> <token>
python diagnostics.py check-assignment <uid>
python diagnostics.py unread <uid>
python diagnostics.py mark-seen <projectId> <uid>
python diagnostics.py badge [--set N | --clear]
python diagnostics.py send-test <token> [<token> ...] --title T --body B
python diagnostics.py simulate-push --project P --task T [--name N]
"""
import argparse
import json
import os
from typing import Any, Dict, List, Optional

import requests
from google.cloud import firestore as gcf

from badge import BadgeCounter, IndexedDBBadgeStore, LocalStorageBadgeStore
from fcm_token import save_fcm_token_to_firestore
from firebase_app import db
from notifications import count_unseen, mark_seen
from service_worker import (
    BackgroundDeliveryAgent,
    MemoryCacheStorage,
    MemoryClients,
    MemoryNotificationCenter,
)

NOTIFY_API_URL = os.environ.get("NOTIFY_API_URL", "http://localhost:3001").rstrip("/")
APP_ORIGIN = os.environ.get("APP_ORIGIN", "http://localhost:3000")


def token_status(user_uid: str) -> Dict[str, Any]:
    doc = db.collection("users").document(user_uid).get()
    if not doc.exists:
        return {"uid": user_uid, "exists": False, "hasToken": False}
    data = doc.to_dict() or {}
    token = data.get("fcmToken")
    return {
        "uid": user_uid,
        "exists": True,
        "hasToken": bool(token),
        "tokenPreview": f"{token[:20]}..." if token else None,
        "updatedAt": data.get("fcmTokenUpdatedAt"),
    }


def check_project_assignment(user_uid: str) -> List[Dict[str, Any]]:
    """Projects whose users array contains user_uid."""
    q = db.collection("projects").where(filter=gcf.FieldFilter("users", "array_contains", user_uid))
    out = []
    for d in q.stream():
        data = d.to_dict() or {}
        out.append({"id": d.id, "name": data.get("name", ""), "assignedUsers": len(data.get("users") or [])})
    return out


def unread_summary(user_uid: str) -> Dict[str, int]:
    return {p["id"]: count_unseen(p["id"], user_uid) for p in check_project_assignment(user_uid)}


def badge_status(counter: BadgeCounter) -> Dict[str, Any]:
    return {
        "page": counter.page_store.get(),
        "worker": counter.worker_store.get() if counter.worker_store is not None else None,
        "reconciled": counter.reconcile(),
        "badgeApiSupported": counter.supported(),
    }


def send_test_notification(tokens: List[str], title: str, body: str, data: Optional[Dict[str, Any]] = None,
                           api_url: str = NOTIFY_API_URL) -> Dict[str, Any]:
    resp = requests.post(
        f"{api_url}/api/notify-batch",
        json={"tokens": tokens, "title": title, "body": body, "data": data or {}},
        timeout=15,
    )
    try:
        result = resp.json()
    except ValueError:
        result = {"success": False, "error": resp.text}
    result["status"] = resp.status_code
    return result


def simulate_push(payload: Dict[str, Any], worker_store=None, origin: str = APP_ORIGIN) -> Dict[str, Any]:
    """Run a payload through the background agent with in-memory platform ports."""
    center = MemoryNotificationCenter()
    clients = MemoryClients()
    agent = BackgroundDeliveryAgent(
        origin, center, clients, MemoryCacheStorage(),
        worker_store or IndexedDBBadgeStore(),
        fetcher=lambda request: None,
        precache_urls=[],
    )
    agent.install()
    shown = agent.on_push(payload)
    return {
        "state": agent.state.value,
        "title": shown.title if shown else None,
        "tag": shown.tag if shown else None,
        "body": shown.options.get("body") if shown else None,
        "visible": len(center.visible),
        "workerBadge": agent.badge_store.get(),
    }


def _print(result):
    print(json.dumps(result, indent=2, default=str))


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Notification pipeline diagnostics")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("token-status", help="Show FCM token registration for a user")
    p.add_argument("uid")

    p = sub.add_parser("register-token", help="Manually register an FCM token")
    p.add_argument("uid")
    p.add_argument("token")

    p = sub.add_parser("check-assignment", help="List projects a user is assigned to")
    p.add_argument("uid")

    p = sub.add_parser("unread", help="Unread notification counts per project")
    p.add_argument("uid")

    p = sub.add_parser("mark-seen", help="Mark a project's notifications seen")
    p.add_argument("project")
    p.add_argument("uid")

    p = sub.add_parser("badge", help="Show or change the local badge count")
    p.add_argument("--set", type=int, dest="value")
    p.add_argument("--clear", action="store_true")

    p = sub.add_parser("send-test", help="Send a test push through the batch endpoint")
    p.add_argument("tokens", nargs="+")
    p.add_argument("--title", default="Test Notification")
    p.add_argument("--body", default="This is a test push")
    p.add_argument("--api-url", default=NOTIFY_API_URL)

    p = sub.add_parser("simulate-push", help="Run a task push through the background agent")
    p.add_argument("--project", required=True)
    p.add_argument("--task", required=True)
    p.add_argument("--name", default="Test task")

    args = parser.parse_args(argv)

    if args.command == "token-status":
        result = token_status(args.uid)
        _print(result)
        return 0 if result["hasToken"] else 1
    if args.command == "register-token":
        ok = save_fcm_token_to_firestore(args.uid, args.token)
        _print({"uid": args.uid, "saved": ok})
        return 0 if ok else 1
    if args.command == "check-assignment":
        projects = check_project_assignment(args.uid)
        if not projects:
            print(f"No projects found for {args.uid}; check the users array on each project")
        _print(projects)
        return 0
    if args.command == "unread":
        _print(unread_summary(args.uid))
        return 0
    if args.command == "mark-seen":
        _print({"updated": mark_seen(args.project, args.uid)})
        return 0
    if args.command == "badge":
        counter = BadgeCounter(LocalStorageBadgeStore(), IndexedDBBadgeStore())
        if args.clear:
            counter.clear()
        elif args.value is not None:
            counter.set(args.value)
        _print(badge_status(counter))
        return 0
    if args.command == "send-test":
        try:
            result = send_test_notification(args.tokens, args.title, args.body, api_url=args.api_url)
        except requests.RequestException as e:
            print(f"Could not reach {args.api_url}: {e}")
            return 1
        _print(result)
        return 0 if result.get("success") else 1
    if args.command == "simulate-push":
        payload = {
            "notification": {"title": "New Task Created", "body": f"Diagnostics created: {args.name}"},
            "data": {"projectId": args.project, "taskId": args.task, "taskName": args.name, "type": "task_created"},
        }
        _print(simulate_push(payload))
        return 0
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
