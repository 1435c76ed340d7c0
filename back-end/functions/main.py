import os
from urllib.parse import quote

from firebase_functions import https_fn
from firebase_admin import firestore, initialize_app, messaging
import google.cloud.firestore

initialize_app()

# --- Configuration Constants ---
PROJECTS_COLLECTION = 'projects'
USERS_COLLECTION = 'users'
# FCM send_each accepts at most 500 messages per call
BATCH_SIZE = 500
NOTIFICATION_TITLE = 'New Task Created'
NOTIFICATION_TYPE = 'task_created'
APP_ORIGIN = os.environ.get('APP_ORIGIN', '').rstrip('/')


def _project_link(project_id: str, project_name: str) -> str:
    return f"/view/{project_id}/{quote(project_name or 'Project', safe='')}"


def _target_users(db, assigned_users: list, creator_uid: str) -> list[dict]:
    """Assigned to the project, has an FCM token, and is not the creator."""
    targets = []
    for user_doc in db.collection(USERS_COLLECTION).stream():
        user_data = user_doc.to_dict() or {}
        uid = user_doc.id
        if uid in assigned_users and user_data.get('fcmToken') and uid != creator_uid:
            targets.append({'uid': uid, 'fcmToken': user_data['fcmToken']})
    return targets


def _build_message(token: str, title: str, body: str, data: dict) -> messaging.Message:
    link = data.get('link', '')
    absolute = APP_ORIGIN + link if APP_ORIGIN and link.startswith('/') else link
    return messaging.Message(
        token=token,
        notification=messaging.Notification(title=title, body=body),
        data={k: str(v) for k, v in data.items() if v is not None},
        webpush=messaging.WebpushConfig(
            fcm_options=messaging.WebpushFCMOptions(link=absolute) if absolute.startswith('https://') else None,
        ),
    )


def _send_in_batches(messages: list) -> tuple[int, int]:
    success_count = 0
    failure_count = 0
    for i in range(0, len(messages), BATCH_SIZE):
        batch = messages[i:i + BATCH_SIZE]
        try:
            response = messaging.send_each(batch)
        except Exception as e:
            print(f"Error sending notification batch: {e}")
            failure_count += len(batch)
            continue
        success_count += response.success_count
        failure_count += response.failure_count
        # Log failures for debugging
        if response.failure_count > 0:
            for msg, resp in zip(batch, response.responses):
                if not resp.success:
                    print(f"Failed to send to {msg.token}: {resp.exception}")
    return success_count, failure_count


@https_fn.on_call()
def send_task_notification(req: https_fn.CallableRequest) -> dict:
    """
    Sends FCM push notifications to all assigned users (except the creator)
    when a task is created.

    Expects: {projectId, projectName, taskId, taskName, createdBy,
              createdByUID, createdByName}
    Returns: {success, notified, failed, total}
    """
    # 1. Authentication
    if req.auth is None:
        raise https_fn.HttpsError(
            code=https_fn.FunctionsErrorCode.UNAUTHENTICATED,
            message='User must be authenticated to send notifications'
        )

    data = req.data or {}
    project_id = data.get('projectId')
    project_name = data.get('projectName')
    task_id = data.get('taskId')
    task_name = data.get('taskName')
    created_by = data.get('createdBy')
    created_by_uid = data.get('createdByUID')
    created_by_name = data.get('createdByName')

    # 2. Input Validation
    if not project_id or not task_id or not task_name:
        raise https_fn.HttpsError(
            code=https_fn.FunctionsErrorCode.INVALID_ARGUMENT,
            message='Missing required fields: projectId, taskId, or taskName'
        )

    try:
        db: google.cloud.firestore.Client = firestore.client()

        # 3. Project lookup
        project_doc = db.collection(PROJECTS_COLLECTION).document(project_id).get()
        if not project_doc.exists:
            raise https_fn.HttpsError(
                code=https_fn.FunctionsErrorCode.NOT_FOUND,
                message='Project not found'
            )
        assigned_users = (project_doc.to_dict() or {}).get('users') or []

        # 4. Recipients
        targets = _target_users(db, assigned_users, created_by_uid)
        if not targets:
            print("No users to notify (no FCM tokens or all are creators)")
            return {'success': True, 'notified': 0, 'failed': 0, 'total': 0}

        # 5. Messages
        body = f"{created_by_name or created_by} created: {task_name}"
        payload = {
            'projectId': project_id,
            'projectName': project_name or 'Project',
            'taskId': task_id,
            'taskName': task_name,
            'createdBy': created_by,
            'createdByUID': created_by_uid,
            'createdByName': created_by_name or created_by,
            'link': _project_link(project_id, project_name),
            'type': NOTIFICATION_TYPE,
        }
        messages = [_build_message(t['fcmToken'], NOTIFICATION_TITLE, body, payload) for t in targets]

        # 6. Delivery
        success_count, failure_count = _send_in_batches(messages)
        print(f"Notifications sent: {success_count} success, {failure_count} failures")

        return {
            'success': True,
            'notified': success_count,
            'failed': failure_count,
            'total': len(targets),
        }

    except https_fn.HttpsError:
        raise
    except Exception as e:
        print(f"Error in send_task_notification: {e}")
        raise https_fn.HttpsError(
            code=https_fn.FunctionsErrorCode.INTERNAL,
            message='An error occurred while sending notifications',
            details=str(e)
        )
