from flask import Blueprint, request, jsonify
from datetime import datetime

from firebase_app import db
from fcm_token import save_fcm_token_to_firestore, clear_fcm_token

users_bp = Blueprint("users", __name__)

def _to_iso(value):
    if isinstance(value, datetime):
        return value.isoformat()
    return value

def normalize_user(doc):
    data = doc.copy()  # assume doc is a dict
    for k in ("createdAt", "updatedAt", "fcmTokenUpdatedAt"):
        if k in data and data[k] is not None:
            data[k] = _to_iso(data[k])
    # never hand tokens back to clients, only whether one is registered
    data["hasFcmToken"] = bool(data.pop("fcmToken", None))
    for field in ("email", "displayName"):
        data.setdefault(field, "")
    return data

# Read one user
@users_bp.route("/<user_id>", methods=["GET"])
def get_user(user_id):
    doc = db.collection("users").document(user_id).get()
    if not doc.exists:
        return jsonify({"error": "Not found"}), 404
    return jsonify(normalize_user({**doc.to_dict(), "id": doc.id})), 200

# Register / rotate push token
@users_bp.route("/<user_id>/fcm-token", methods=["PUT"])
def put_fcm_token(user_id):
    data = request.get_json(silent=True) or {}
    token = (data.get("token") or data.get("fcmToken") or "").strip()
    if not token:
        return jsonify({"error": "token is required"}), 400
    if not save_fcm_token_to_firestore(user_id, token):
        return jsonify({"error": "Could not save token"}), 500
    return jsonify({"message": "Token saved"}), 200

# Drop push token (logout)
@users_bp.route("/<user_id>/fcm-token", methods=["DELETE"])
def delete_fcm_token(user_id):
    if not clear_fcm_token(user_id):
        return jsonify({"error": "Not found"}), 404
    return jsonify({"message": "Token removed"}), 200
