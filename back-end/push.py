# back-end/push.py
import json
import os
from typing import Any, Dict, Iterable, List, Optional, Tuple
from urllib.parse import quote

from flask import Blueprint, request, jsonify
from firebase_admin import messaging

from firebase_app import db

APP_ORIGIN = os.environ.get("APP_ORIGIN", "").rstrip("/")
# FCM accepts at most 500 messages per send_each call
MAX_BATCH_SIZE = 500
DEFAULT_TITLE = "New Task Created"
DEFAULT_ICON = "/icons/icon.png"
TASK_CREATED_TYPE = "task_created"

push_bp = Blueprint("push", __name__)


def chunked(items: List[Any], size: int = MAX_BATCH_SIZE):
    for i in range(0, len(items), size):
        yield items[i:i + size]

def project_link(project_id: str, project_name: Optional[str]) -> str:
    return f"/view/{project_id}/{quote(project_name or 'Project', safe='')}"

def absolute_link(link: str, origin: Optional[str] = None) -> str:
    origin = (origin or APP_ORIGIN or "").rstrip("/")
    if link and link.startswith("/") and origin:
        return origin + link
    return link

def stringify_data(data: Optional[Dict[str, Any]]) -> Dict[str, str]:
    """FCM data payloads are flat string maps."""
    out = {}
    for k, v in (data or {}).items():
        if v is None:
            continue
        if isinstance(v, (dict, list)):
            out[str(k)] = json.dumps(v)
        else:
            out[str(k)] = str(v)
    return out

def task_body(creator_name: Optional[str], task_name: str) -> str:
    return f"{creator_name or 'Someone'} created: {task_name}"

def build_message(token: str, title: str, body: str, data: Dict[str, str]) -> messaging.Message:
    link = data.get("link", "")
    fcm_options = messaging.WebpushFCMOptions(link=link) if link.startswith("https://") else None
    return messaging.Message(
        token=token,
        notification=messaging.Notification(title=title, body=body),
        data=data,
        webpush=messaging.WebpushConfig(
            notification=messaging.WebpushNotification(
                title=title,
                body=body,
                icon=DEFAULT_ICON,
                require_interaction=True,
            ),
            fcm_options=fcm_options,
        ),
    )

def send_messages(messages: List[messaging.Message]) -> Tuple[int, int]:
    """
    Send in chunks of MAX_BATCH_SIZE. Per-message failures are logged and
    counted; a chunk whose call raises counts entirely as failed. Nothing is
    retried.
    """
    success, failure = 0, 0
    for batch in chunked(messages):
        try:
            response = messaging.send_each(batch)
        except Exception as e:
            print(f"[push.send_messages] error sending batch of {len(batch)}: {e}")
            failure += len(batch)
            continue
        success += response.success_count
        failure += response.failure_count
        if response.failure_count > 0:
            for msg, resp in zip(batch, response.responses):
                if not resp.success:
                    print(f"[push.send_messages] failed to send to {msg.token[:20]}...: {resp.exception}")
    print(f"[push.send_messages] sent: {success} success, {failure} failures")
    return success, failure

def send_batch(tokens: Iterable[str], title: str, body: str, data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    unique = [t for t in dict.fromkeys(t.strip() for t in tokens if isinstance(t, str)) if t]
    if not unique:
        return {"success": True, "notified": 0, "failed": 0, "total": 0}

    payload = dict(data or {})
    if payload.get("link"):
        payload["link"] = absolute_link(payload["link"], payload.get("origin"))
    payload.setdefault("title", title)
    payload.setdefault("body", body)
    str_data = stringify_data(payload)

    messages = [build_message(t, title, body, str_data) for t in unique]
    notified, failed = send_messages(messages)
    return {"success": True, "notified": notified, "failed": failed, "total": len(unique)}

def resolve_recipients(assigned_uids: Iterable[str], creator_uid: Optional[str]) -> List[Dict[str, str]]:
    """Assigned to the project, not the creator, with a registered token."""
    assigned = set(assigned_uids or [])
    targets = []
    for user_doc in db.collection("users").stream():
        data = user_doc.to_dict() or {}
        uid = user_doc.id
        if uid in assigned and uid != creator_uid and data.get("fcmToken"):
            targets.append({"uid": uid, "fcmToken": data["fcmToken"]})
        elif uid in assigned and uid != creator_uid:
            print(f"[push.resolve_recipients] user {data.get('email') or uid} has no FCM token")
    return targets

def dispatch_task_created(
    project_id: str,
    assigned_uids: Iterable[str],
    task_id: str,
    task_name: str,
    creator_uid: str,
    creator_email: Optional[str] = None,
    creator_name: Optional[str] = None,
    project_name: Optional[str] = None,
    origin: Optional[str] = None,
) -> Dict[str, Any]:
    targets = resolve_recipients(assigned_uids, creator_uid)
    if not targets:
        print("[push.dispatch_task_created] no users to notify (no FCM tokens or only the creator is assigned)")
        return {"success": True, "notified": 0, "failed": 0, "total": 0}

    data = {
        "projectId": project_id,
        "projectName": project_name or "Project",
        "taskId": task_id,
        "taskName": task_name,
        "createdBy": creator_email,
        "createdByUID": creator_uid,
        "createdByName": creator_name or creator_email,
        "link": project_link(project_id, project_name),
        "origin": origin,
        "type": TASK_CREATED_TYPE,
    }
    print(f"[push.dispatch_task_created] sending to {len(targets)} users for task={task_id}")
    return send_batch([t["fcmToken"] for t in targets], DEFAULT_TITLE, task_body(creator_name or creator_email, task_name), data)


@push_bp.route("/notify-batch", methods=["POST"])
def notify_batch():
    data = request.get_json(silent=True) or {}
    tokens = data.get("tokens")
    title = (data.get("title") or "").strip()
    body = data.get("body") or ""
    if not isinstance(tokens, list) or not tokens:
        return jsonify({"success": False, "error": "tokens must be a non-empty array"}), 400
    if not title:
        return jsonify({"success": False, "error": "title is required"}), 400
    extra = data.get("data") or {}
    if not isinstance(extra, dict):
        return jsonify({"success": False, "error": "data must be an object"}), 400

    try:
        result = send_batch(tokens, title, body, extra)
    except Exception as e:
        print(f"[push.notify_batch] error: {e}")
        return jsonify({"success": False, "error": str(e)}), 500
    return jsonify({"success": True, "notified": result["notified"], "failed": result["failed"]}), 200
