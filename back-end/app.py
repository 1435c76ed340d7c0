from flask import Flask, jsonify
from flask_cors import CORS
from werkzeug.exceptions import HTTPException
import os

from tasks import tasks_bp
from notifications import notifications_bp
from push import push_bp
from users import users_bp

PORT = int(os.environ.get("PORT", "3001"))
DEBUG = os.environ.get("FLASK_DEBUG", "false").lower() == "true"

app = Flask(__name__)
CORS(app, resources={r"/api/*": {"origins": "*"}})
app.register_blueprint(users_bp, url_prefix="/api/users")
app.register_blueprint(tasks_bp, url_prefix="/api/projects")
app.register_blueprint(notifications_bp, url_prefix="/api")
app.register_blueprint(push_bp, url_prefix="/api")


@app.route("/api/health", methods=["GET"])
def health():
    return {"status": "ok"}, 200


@app.errorhandler(Exception)
def handle_error(e):
    if isinstance(e, HTTPException):
        return jsonify({"error": e.description}), e.code
    print(f"[app] unhandled error: {e}")
    return jsonify({"error": "Internal server error"}), 500


# Running app
if __name__ == "__main__":
    app.run(port=PORT, debug=DEBUG, use_reloader=False)  # use_reloader=False prevents double initialization
