"""Read-only JSON API over the configured storage backend."""

import logging

from flask import Flask, jsonify, request

from eventscope.config import Config, load_config
from eventscope.errors import BackendUnavailableError, EntryNotFoundError
from eventscope.factory import build_components
from eventscope.pagination import paginate
from eventscope.storage.base import FILTER_KEYS

logger = logging.getLogger(__name__)

BATCH_PREVIEW_LIMIT = 100


def create_app(config: Config | None = None, components=None):
    """Flask application factory."""
    app = Flask(__name__)

    if config is None:
        config = load_config()
    if components is None:
        components = build_components(config)
    storage = components.storage
    per_page = config.per_page

    app.config["components"] = components
    app.config["eventscope"] = config

    @app.errorhandler(EntryNotFoundError)
    def not_found(exc):
        return jsonify({"error": "not_found", "message": str(exc)}), 404

    @app.errorhandler(BackendUnavailableError)
    def unavailable(exc):
        logger.error("Storage unavailable: %s", exc)
        return jsonify({"error": "storage_unavailable", "message": str(exc)}), 503

    # --- Routes ---

    @app.route("/health")
    def health():
        ready = storage.is_ready()
        body = {"status": "healthy" if ready else "unavailable", "storage": config.storage}
        return jsonify(body), 200 if ready else 503

    @app.route("/api/entries", methods=["GET"])
    def list_entries():
        filters = {key: request.args.get(key) for key in FILTER_KEYS if request.args.get(key)}
        page = paginate(storage.count(filters), request.args.get("page"), per_page)
        entries = storage.list(filters, page=page.current_page, per_page=per_page)
        return jsonify({
            "data": [entry.to_dict() for entry in entries],
            "meta": page.to_dict(),
        })

    @app.route("/api/entries/<entry_id>", methods=["GET"])
    def show_entry(entry_id):
        entry = storage.find_or_raise(entry_id)
        data = entry.to_dict()
        data["family_count"] = storage.family_count(entry.family_hash) if entry.family_hash else 0
        batch = [e for e in storage.entries_for_batch(entry.batch_id) if e.id != entry.id]
        return jsonify({
            "data": data,
            "batch": [e.to_dict() for e in batch[:BATCH_PREVIEW_LIMIT]],
        })

    @app.route("/api/batches/<batch_id>", methods=["GET"])
    def batch_entries(batch_id):
        entries = storage.entries_for_batch(batch_id)
        return jsonify({"data": [entry.to_dict() for entry in entries]})

    @app.route("/api/families/<family_hash>", methods=["GET"])
    def family_entries(family_hash):
        page = paginate(storage.family_count(family_hash), request.args.get("page"), per_page)
        entries = storage.entries_for_family(family_hash, page=page.current_page, per_page=per_page)
        return jsonify({
            "data": [entry.to_dict() for entry in entries],
            "meta": page.to_dict(),
        })

    @app.route("/api/entries", methods=["DELETE"])
    def delete_entries():
        deleted = storage.delete_all()
        logger.info("Deleted all %d entries", deleted)
        return jsonify({"success": True, "deleted": deleted})

    return app
