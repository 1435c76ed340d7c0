# back-end/tasks.py
from flask import Blueprint, request, jsonify
from google.cloud import firestore

from firebase_app import db
from notifications import record_task_created
from push import dispatch_task_created

tasks_bp = Blueprint("tasks", __name__)

INITIAL_STATUS = "Pending"


def ensure_list(x):
    if isinstance(x, list): return x
    if x is None: return []
    if isinstance(x, (set, tuple)): return list(x)
    return [x]

def _tasks_ref(project_id):
    return db.collection("projects").document(project_id).collection("tasks")


@tasks_bp.route("/<project_id>/tasks", methods=["GET"])
def list_tasks(project_id):
    project_doc = db.collection("projects").document(project_id).get()
    if not project_doc.exists:
        return jsonify({"error": "Project not found"}), 404
    viewer = request.args.get("viewerUID")
    if viewer and viewer not in ensure_list(project_doc.to_dict().get("users")):
        return jsonify({"error": "Forbidden"}), 403
    items = [{**d.to_dict(), "id": d.id} for d in _tasks_ref(project_id).order_by("createdAt").stream()]
    return jsonify(items), 200

@tasks_bp.route("/<project_id>/tasks", methods=["POST"])
def create_task(project_id):
    data = request.get_json(silent=True) or {}
    text = (data.get("text") or data.get("taskName") or "").strip()
    creator_uid = data.get("createdByUID")
    if not text: return jsonify({"error": "text is required"}), 400
    if not creator_uid: return jsonify({"error": "createdByUID is required"}), 400

    project_doc = db.collection("projects").document(project_id).get()
    if not project_doc.exists: return jsonify({"error": "Project not found"}), 404
    project = project_doc.to_dict() or {}
    project_name = data.get("projectName") or project.get("name") or "Project"

    creator_email = data.get("createdBy") or "Guest"
    creator_name = (data.get("createdByName") or "").strip() or creator_email

    doc_data = {
        "text": text,
        "status": INITIAL_STATUS,
        "createdBy": creator_email,
        "createdByUID": creator_uid,
        "createdByName": creator_name,
        "updatedBy": creator_name,
        "createdAt": firestore.SERVER_TIMESTAMP,
        "updatedAt": firestore.SERVER_TIMESTAMP,
        "projectId": project_id,
    }
    task_ref = _tasks_ref(project_id).add(doc_data)
    task_id = task_ref[1].id

    # one shared notification per task, tracked through seenBy
    notification = record_task_created(
        project_id, task_id, text, creator_uid,
        project_name=project_name, creator_email=creator_email, creator_name=creator_name,
    )

    # Push fan-out is best-effort; task creation already succeeded
    push = {"success": False, "notified": 0, "failed": 0, "total": 0}
    try:
        push = dispatch_task_created(
            project_id,
            ensure_list(project.get("users")),
            task_id,
            text,
            creator_uid,
            creator_email=creator_email,
            creator_name=creator_name,
            project_name=project_name,
            origin=data.get("origin") or request.headers.get("Origin"),
        )
    except Exception as e:
        print(f"[tasks.create_task] push notification error for task={task_id}: {e}")

    print(f"[tasks.create_task] project={project_id} task={task_id} created")
    return jsonify({
        "id": task_id,
        "message": "Task created",
        "notificationId": notification["id"] if notification else None,
        "push": push,
    }), 201
