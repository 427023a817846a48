"""
Flask REST API for the MailBrief management interface.
"""

import threading
from typing import Optional

from flask import Flask, jsonify, request
from loguru import logger
from pydantic import ValidationError

from mailbrief.database import LocalStore
from mailbrief.exceptions import FetchError, MailAuthError, NotFoundError
from mailbrief.models import PersonaProfile, RunOptions, UserAccount


def _json_body() -> dict:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def create_app(pipeline=None, local_store: Optional[LocalStore] = None, job=None) -> Flask:
    """
    Create Flask application instance.

    Args:
        pipeline: EmailDigestPipeline serving the run endpoints.
        local_store: LocalStore instance for database access.
        job: DailyDigestJob, when the scheduler is enabled.

    Returns:
        Configured Flask application.
    """
    app = Flask(__name__)
    app.config["pipeline"] = pipeline
    app.config["local_store"] = local_store or (pipeline.local_store if pipeline else None)
    app.config["job"] = job

    def _store() -> LocalStore:
        store = app.config.get("local_store")
        if store is None:
            raise RuntimeError("LocalStore not available")
        return store

    def _require_user(user_id: str) -> UserAccount:
        user = _store().get_user(user_id)
        if user is None:
            raise NotFoundError(f"User not found: {user_id}")
        return user

    @app.errorhandler(NotFoundError)
    def handle_not_found(e: NotFoundError):
        return jsonify({"success": False, "error": str(e)}), 404

    @app.errorhandler(FetchError)
    def handle_fetch_error(e: FetchError):
        kind = "mail_auth" if isinstance(e, MailAuthError) else "mail_fetch"
        logger.error(f"Mail provider error: {e}")
        return jsonify({"success": False, "error": str(e), "kind": kind}), 502

    @app.errorhandler(ValidationError)
    def handle_validation_error(e: ValidationError):
        return jsonify({"success": False, "error": "Invalid request", "details": e.errors(include_url=False)}), 400

    @app.route("/api/health", methods=["GET"])
    def health():
        """Health check endpoint."""
        return jsonify({"status": "ok", "service": "MailBrief"})

    # --- users -----------------------------------------------------------

    @app.route("/api/users/<user_id>", methods=["GET"])
    def get_user(user_id: str):
        return jsonify(_require_user(user_id).model_dump(mode="json"))

    @app.route("/api/users/<user_id>", methods=["PUT"])
    def put_user(user_id: str):
        data = _json_body()
        account = UserAccount(user_id=user_id, email=data.get("email", ""), plan=data.get("plan", "free"))
        return jsonify(_store().upsert_user(account).model_dump(mode="json"))

    # --- runs ------------------------------------------------------------

    def _run(user_id: str, on_demand: bool):
        pipeline = app.config.get("pipeline")
        if not pipeline:
            return jsonify({"success": False, "error": "Pipeline not available"}), 503

        options = RunOptions.model_validate(_json_body())
        if on_demand:
            result = pipeline.process_on_demand(user_id, options)
        else:
            result = pipeline.process_daily_emails(user_id, options)

        status_code = 409 if result.status == "already_processing" else 200
        return jsonify(result.model_dump(mode="json")), status_code

    @app.route("/api/users/<user_id>/process", methods=["POST"])
    def process_daily(user_id: str):
        """Run the daily digest for one user (synchronous)."""
        return _run(user_id, on_demand=False)

    @app.route("/api/users/<user_id>/process/on-demand", methods=["POST"])
    def process_on_demand(user_id: str):
        """Run a digest of the last few hours for one user (synchronous)."""
        return _run(user_id, on_demand=True)

    @app.route("/api/users/<user_id>/status", methods=["GET"])
    def get_status(user_id: str):
        pipeline = app.config.get("pipeline")
        if not pipeline:
            return jsonify({"error": "Pipeline not available"}), 503
        return jsonify(pipeline.get_processing_status(user_id).model_dump(mode="json"))

    # --- profile ---------------------------------------------------------

    @app.route("/api/users/<user_id>/profile", methods=["GET"])
    def get_profile(user_id: str):
        profile = _store().get_profile(user_id)
        if profile is None:
            raise NotFoundError(f"No profile for user {user_id}")
        return jsonify(profile.model_dump(mode="json"))

    @app.route("/api/users/<user_id>/profile", methods=["PUT"])
    def put_profile(user_id: str):
        _require_user(user_id)
        profile = PersonaProfile.model_validate(_json_body())
        _store().save_profile(user_id, profile)
        logger.info(f"Profile updated for user {user_id}")
        return jsonify(profile.model_dump(mode="json"))

    @app.route("/api/users/<user_id>/profile", methods=["DELETE"])
    def delete_profile(user_id: str):
        if not _store().delete_profile(user_id):
            raise NotFoundError(f"No profile for user {user_id}")
        logger.info(f"Profile deleted for user {user_id}")
        return jsonify({"success": True})

    # --- digests ---------------------------------------------------------

    @app.route("/api/users/<user_id>/digests/latest", methods=["GET"])
    def latest_digest(user_id: str):
        digest_type = request.args.get("type")
        if digest_type not in (None, "daily", "on-demand"):
            return jsonify({"success": False, "error": f"Unknown digest type: {digest_type}"}), 400

        digest = _store().latest_digest(user_id, digest_type=digest_type)
        if digest is None:
            raise NotFoundError(f"No digest for user {user_id}")
        return jsonify(digest.model_dump(mode="json"))

    @app.route("/api/users/<user_id>/action-items", methods=["GET"])
    def pending_action_items(user_id: str):
        try:
            limit = int(request.args.get("limit", 50))
        except ValueError:
            return jsonify({"success": False, "error": "limit must be an integer"}), 400
        return jsonify({"action_items": _store().pending_action_items(user_id, limit=limit)})

    @app.route("/api/users/<user_id>/digests/<int:digest_id>/action-items/<int:index>/complete", methods=["POST"])
    def complete_action_item(user_id: str, digest_id: int, index: int):
        store = _store()
        digest = store.get_digest(digest_id)
        if digest is None or digest.user_id != user_id:
            raise NotFoundError(f"Digest not found: {digest_id}")
        try:
            item = store.complete_action_item(digest_id, index)
        except ValueError as e:
            return jsonify({"success": False, "error": str(e)}), 409
        return jsonify(item.model_dump(mode="json"))

    # --- usage & errors --------------------------------------------------

    @app.route("/api/users/<user_id>/usage", methods=["GET"])
    def get_usage(user_id: str):
        user = _require_user(user_id)
        return jsonify({
            "plan": user.plan,
            "usage": user.usage.model_dump(mode="json"),
            "stats": _store().get_stats(user_id),
        })

    @app.route("/api/users/<user_id>/errors", methods=["GET"])
    def get_errors(user_id: str):
        limit = request.args.get("limit", 20, type=int)
        return jsonify({"errors": _store().list_errors(user_id, limit=limit)})

    # --- scheduler -------------------------------------------------------

    @app.route("/api/scheduler/status", methods=["GET"])
    def scheduler_status():
        job = app.config.get("job")
        if job is None:
            return jsonify({"enabled": False, "running": False, "next_run_time": None})
        next_run = job.next_run_time()
        return jsonify({
            "enabled": True,
            "running": job.running,
            "next_run_time": next_run.isoformat() if next_run else None,
        })

    @app.route("/api/scheduler/run", methods=["POST"])
    def scheduler_run():
        """Trigger one daily digest cycle in the background."""
        job = app.config.get("job")
        if job is None:
            return jsonify({"success": False, "error": "Scheduler not available"}), 503

        def run_in_background():
            try:
                job.run_cycle()
            except Exception as e:
                logger.exception(f"Background digest cycle failed: {e}")

        threading.Thread(target=run_in_background, daemon=True).start()
        return jsonify({"success": True, "message": "Digest cycle started"}), 202

    return app
