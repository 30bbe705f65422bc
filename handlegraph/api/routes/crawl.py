"""Routes for enqueueing handles, running the worker and fetching graphs."""
from __future__ import annotations

import logging
from typing import Optional

from flask import Blueprint, Response, current_app, jsonify, request

from handlegraph.crawl import jobs
from handlegraph.crawl.cancel import CancelToken
from handlegraph.data.blob_store import graph_blob_path
from handlegraph.errors import (
    AuthorizationError,
    JobExistsError,
    NotFoundError,
    PersistenceError,
    RateLimitedError,
    RetryableError,
    UpstreamError,
)

logger = logging.getLogger(__name__)

crawl_bp = Blueprint("crawl", __name__)


def default_owner_resolver(req) -> Optional[str]:
    """Read the authenticated owner id from a header set by the fronting proxy."""
    value = (req.headers.get("X-Owner-Id") or "").strip()
    return value or None


def require_owner(req) -> str:
    owner_id = current_app.config["OWNER_RESOLVER"](req)
    if not owner_id:
        raise PermissionError("not signed in")
    return owner_id


def _form_value(name: str) -> str:
    payload = request.get_json(silent=True) or {}
    return (request.form.get(name) or payload.get(name) or "").strip()


# ----------------------------------------------------------------------
# Worker
# ----------------------------------------------------------------------
@crawl_bp.route("/worker/", methods=["GET", "POST"], defaults={"owner_id": None, "root_id": None})
@crawl_bp.route("/worker/<owner_id>", methods=["GET", "POST"], defaults={"root_id": None})
@crawl_bp.route("/worker/<owner_id>/<root_id>", methods=["GET", "POST"])
def run_worker(owner_id: Optional[str], root_id: Optional[str]):
    settings = current_app.config["WORKER_SETTINGS"]
    driver = current_app.config["DRIVER"]

    requester: Optional[str] = None
    if request.headers.get(settings.trigger_header) != "true":
        try:
            requester = require_owner(request)
        except PermissionError as exc:
            return jsonify({"error": str(exc)}), 403

    try:
        report = driver.run(
            owner_id,
            root_id,
            requester=requester,
            cancel=CancelToken(settings.tick_timeout_seconds),
        )
    except AuthorizationError as exc:
        return jsonify({"error": str(exc)}), 403
    except NotFoundError as exc:
        return jsonify({"error": str(exc)}), 404
    except Exception as exc:
        logger.exception("worker run failed owner=%s root=%s", owner_id, root_id)
        return Response(f"worker error: ({owner_id or ''}) {exc}", status=500, mimetype="text/plain")

    status = 500 if report.has_errors else 200
    return Response(report.render(), status=status, mimetype="text/plain")


# ----------------------------------------------------------------------
# Owner-facing job operations
# ----------------------------------------------------------------------
@crawl_bp.route("/addHandle", methods=["POST"])
def add_handle():
    try:
        owner_id = require_owner(request)
    except PermissionError as exc:
        return jsonify({"error": str(exc)}), 401

    handle = _form_value("handle")
    if not handle:
        return jsonify({"error": "handle is required"}), 400

    store = current_app.config["JOB_STORE"]
    try:
        client = current_app.config["CLIENT_FACTORY"](owner_id)
        job = jobs.enqueue_handle(store, client, owner_id, handle)
    except NotFoundError as exc:
        return jsonify({"error": str(exc)}), 404
    except JobExistsError as exc:
        return jsonify({"error": str(exc)}), 409
    except RateLimitedError as exc:
        headers = {"Retry-After": str(exc.retry_after)} if exc.retry_after else {}
        return jsonify({"error": str(exc)}), 503, headers
    except RetryableError as exc:
        return jsonify({"error": str(exc)}), 503
    except UpstreamError as exc:
        return jsonify({"error": str(exc)}), 502
    except PersistenceError as exc:
        logger.exception("add handle failed owner=%s handle=%s", owner_id, handle)
        return jsonify({"error": "add handle failed", "details": str(exc)}), 500

    return jsonify(jobs.job_status(store, owner_id, job.root_id).to_dict()), 201


@crawl_bp.route("/deleteHandle", methods=["POST"])
def delete_handle():
    try:
        owner_id = require_owner(request)
    except PermissionError as exc:
        return jsonify({"error": str(exc)}), 401

    root_id = _form_value("id")
    if not root_id:
        return jsonify({"error": "id is required"}), 400

    try:
        deleted = jobs.delete_handle(
            current_app.config["JOB_STORE"], current_app.config["BLOB_STORE"], owner_id, root_id
        )
    except NotFoundError as exc:
        return jsonify({"error": str(exc)}), 404
    except PersistenceError as exc:
        logger.exception("delete handle failed owner=%s root=%s", owner_id, root_id)
        return jsonify({"error": "delete handle failed", "details": str(exc)}), 500

    return jsonify({"status": "ok", "deleted_children": deleted})


@crawl_bp.route("/updateOwner", methods=["POST"])
def update_owner():
    try:
        owner_id = require_owner(request)
    except PermissionError as exc:
        return jsonify({"error": str(exc)}), 401

    name = _form_value("name")
    token = _form_value("token")
    if not name or not token:
        return jsonify({"error": "name and token are required"}), 400

    try:
        jobs.save_owner_token(current_app.config["JOB_STORE"], owner_id, name, token)
    except PersistenceError as exc:
        logger.exception("update owner failed owner=%s", owner_id)
        return jsonify({"error": "update owner failed", "details": str(exc)}), 500
    return jsonify({"status": "ok"})


@crawl_bp.route("/status", methods=["GET"])
def list_status():
    try:
        owner_id = require_owner(request)
    except PermissionError as exc:
        return jsonify({"error": str(exc)}), 401
    statuses = jobs.list_statuses(current_app.config["JOB_STORE"], owner_id)
    return jsonify({"jobs": [status.to_dict() for status in statuses]})


@crawl_bp.route("/status/<root_id>", methods=["GET"])
def job_status(root_id: str):
    try:
        owner_id = require_owner(request)
    except PermissionError as exc:
        return jsonify({"error": str(exc)}), 401
    try:
        status = jobs.job_status(current_app.config["JOB_STORE"], owner_id, root_id)
    except NotFoundError as exc:
        return jsonify({"error": str(exc)}), 404
    return jsonify(status.to_dict())


@crawl_bp.route("/download/<root_id>", methods=["GET"])
def download_graph(root_id: str):
    try:
        owner_id = require_owner(request)
    except PermissionError as exc:
        return jsonify({"error": str(exc)}), 401

    try:
        job = current_app.config["JOB_STORE"].get_job(owner_id, root_id)
        if not job.done:
            return jsonify({"error": "graph not built yet", "status": job.status}), 404
        blob = current_app.config["BLOB_STORE"].read(graph_blob_path(owner_id, root_id))
    except NotFoundError as exc:
        return jsonify({"error": str(exc)}), 404

    response = Response(blob.data, mimetype="application/octet-stream")
    if blob.content_disposition:
        response.headers["Content-Disposition"] = blob.content_disposition
    return response
