# back-end/notifications.py
from typing import Optional, Dict, Any, Iterable

from flask import Blueprint, request, jsonify
from google.cloud import firestore as gcf

from firebase_app import db

NOTIFICATIONS_COLLECTION = "notifications"

notifications_bp = Blueprint("notifications", __name__)


def _project_query(project_id: str):
  return db.collection(NOTIFICATIONS_COLLECTION).where(
    filter=gcf.FieldFilter("projectId", "==", project_id)
  )

def unseen_by(docs: Iterable, viewer_uid: str) -> list:
  """Documents whose seenBy array does not contain viewer_uid."""
  out = []
  for d in docs:
    data = d.to_dict() or {}
    if viewer_uid not in (data.get("seenBy") or []):
      out.append(d)
  return out

def record_task_created(
  project_id: str,
  task_id: str,
  task_name: str,
  creator_uid: str,
  project_name: Optional[str] = None,
  creator_email: Optional[str] = None,
  creator_name: Optional[str] = None,
) -> Optional[Dict[str, Any]]:
  """
  Write the single notification record for a newly created task.

  The creator goes into seenBy straight away so their own task never counts
  as unread for them. Every other project member sees it until they open the
  project's chat view. Returns the stored payload (with its id) or None when
  the write failed; failures never reach the task creation flow.
  """
  notif = {
    "projectId": project_id,
    "projectName": project_name or "Project",
    "taskId": task_id,
    "taskName": task_name,
    "createdBy": creator_email,
    "createdByUID": creator_uid,
    "createdByName": creator_name or creator_email,
    "seenBy": [creator_uid],
    "time": gcf.SERVER_TIMESTAMP,
  }
  notif = {k: v for k, v in notif.items() if v is not None}
  try:
    ref = db.collection(NOTIFICATIONS_COLLECTION).add(notif)
  except Exception as e:
    print(f"[notifications.record_task_created] failed for task={task_id}: {e}")
    return None
  doc_ref = ref[1] if isinstance(ref, tuple) else ref
  print(f"[notifications.record_task_created] created -> {doc_ref.id}")
  stored = {k: v for k, v in notif.items() if k != "time"}
  stored["id"] = doc_ref.id
  return stored

def mark_seen(project_id: str, viewer_uid: str) -> int:
  """
  Append viewer_uid to seenBy on every record of the project that lacks it.

  Uses ArrayUnion, so concurrent calls from several tabs commute. Returns the
  number of records touched; a second call returns 0. Errors are logged and
  swallowed so opening the chat view is never blocked.
  """
  if not project_id or not viewer_uid:
    print("[notifications.mark_seen] missing project or viewer, skipping")
    return 0
  try:
    docs = list(_project_query(project_id).stream())
  except Exception as e:
    print(f"[notifications.mark_seen] query failed for project={project_id}: {e}")
    return 0

  pending = unseen_by(docs, viewer_uid)
  updated = 0
  for d in pending:
    try:
      db.collection(NOTIFICATIONS_COLLECTION).document(d.id).update({
        "seenBy": gcf.ArrayUnion([viewer_uid]),
      })
      updated += 1
    except Exception as e:
      print(f"[notifications.mark_seen] update failed for {d.id}: {e}")
  print(f"[notifications.mark_seen] project={project_id} viewer={viewer_uid} updated {updated}/{len(docs)}")
  return updated

def count_unseen(project_id: str, viewer_uid: str) -> int:
  docs = _project_query(project_id).stream()
  return len(unseen_by(docs, viewer_uid))

def is_seen(project_id: str, task_id: str, viewer_uid: str) -> bool:
  """True when a record for (project_id, task_id) already lists viewer_uid."""
  q = _project_query(project_id).where(filter=gcf.FieldFilter("taskId", "==", task_id))
  for d in q.stream():
    if viewer_uid in ((d.to_dict() or {}).get("seenBy") or []):
      return True
  return False


# -------- Routes --------

@notifications_bp.route("/projects/<project_id>/notifications/seen", methods=["POST"])
def mark_seen_route(project_id):
  data = request.get_json(silent=True) or {}
  viewer = data.get("viewerUID") or data.get("userId")
  if not viewer:
    return jsonify({"error": "viewerUID is required"}), 400
  return jsonify({"projectId": project_id, "updated": mark_seen(project_id, viewer)}), 200

@notifications_bp.route("/projects/<project_id>/notifications/unseen", methods=["GET"])
def count_unseen_route(project_id):
  viewer = request.args.get("viewerUID") or request.args.get("userId")
  if not viewer:
    return jsonify({"error": "viewerUID is required"}), 400
  return jsonify({"projectId": project_id, "unseen": count_unseen(project_id, viewer)}), 200
