"""Core health check routes."""
from __future__ import annotations

from flask import Blueprint, current_app, jsonify

core_bp = Blueprint("core", __name__)


@core_bp.route("/health", methods=["GET"])
def health_check():
    """Simple health check."""
    return jsonify(
        {
            "status": "ok",
            "service": "handlegraph",
            "started_at": current_app.config.get("STARTUP_TIME"),
        }
    )
