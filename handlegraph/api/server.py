"""Flask application factory."""
from __future__ import annotations

import logging
import logging.handlers
import os
import time
from pathlib import Path
from typing import Optional

from flask import Flask
from flask_cors import CORS

from handlegraph.api.routes.core import core_bp
from handlegraph.api.routes.crawl import crawl_bp, default_owner_resolver
from handlegraph.config import get_storage_settings, get_worker_settings
from handlegraph.crawl.jobs import build_driver, make_client_factory
from handlegraph.data.blob_store import LocalBlobStore
from handlegraph.data.job_store import JobStore, create_store_engine

logger = logging.getLogger(__name__)


def create_app(config_overrides: Optional[dict] = None) -> Flask:
    """Initialize and configure the Flask application.

    Tests inject JOB_STORE, BLOB_STORE, CLIENT_FACTORY, DRIVER or
    OWNER_RESOLVER through ``config_overrides``; anything missing is built
    from the environment.
    """
    app = Flask(__name__)
    CORS(app)

    # 1. Configuration
    app.config["STARTUP_TIME"] = time.time()
    if config_overrides:
        app.config.update(config_overrides)

    _configure_logging(Path(app.config.get("LOG_DIR", "logs")))

    # 2. Services
    _init_services(app)

    # 3. Blueprints
    app.register_blueprint(core_bp)
    app.register_blueprint(crawl_bp)

    logger.info("handlegraph API initialized")
    return app


def _init_services(app: Flask) -> None:
    if "WORKER_SETTINGS" not in app.config:
        app.config["WORKER_SETTINGS"] = get_worker_settings()
    worker = app.config["WORKER_SETTINGS"]

    needs_storage = any(
        key not in app.config for key in ("JOB_STORE", "BLOB_STORE", "CLIENT_FACTORY")
    )
    storage = get_storage_settings() if needs_storage else None

    if "JOB_STORE" not in app.config:
        app.config["JOB_STORE"] = JobStore(create_store_engine(storage.db_path))
    if "BLOB_STORE" not in app.config:
        app.config["BLOB_STORE"] = LocalBlobStore(storage.blob_dir)
    if "CLIENT_FACTORY" not in app.config:
        app.config["CLIENT_FACTORY"] = make_client_factory(app.config["JOB_STORE"], storage, worker)
    if "DRIVER" not in app.config:
        app.config["DRIVER"] = build_driver(
            app.config["JOB_STORE"],
            app.config["BLOB_STORE"],
            app.config["CLIENT_FACTORY"],
            worker,
        )
    app.config.setdefault("OWNER_RESOLVER", default_owner_resolver)


def _configure_logging(log_dir: Path = Path("logs")) -> None:
    """Attach a rotating file handler for API diagnostics."""
    log_dir.mkdir(parents=True, exist_ok=True)
    log_path = log_dir / "api.log"

    log_level_name = os.getenv("API_LOG_LEVEL", "INFO").upper()
    log_level = getattr(logging, log_level_name, logging.INFO)

    root = logging.getLogger()

    # Avoid adding duplicate handlers if re-initializing
    already_configured = any(
        isinstance(h, logging.handlers.RotatingFileHandler)
        and getattr(h, "baseFilename", "") == str(log_path.resolve())
        for h in root.handlers
    )
    if already_configured:
        return

    root.setLevel(log_level)

    file_handler = logging.handlers.RotatingFileHandler(
        log_path, maxBytes=5 * 1024 * 1024, backupCount=5
    )
    file_handler.setLevel(log_level)
    file_handler.setFormatter(
        logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s:%(lineno)d: %(message)s"
        )
    )
    root.addHandler(file_handler)


if __name__ == "__main__":
    # Dev server entry point
    app = create_app()
    port = int(os.getenv("PORT", 8000))
    app.run(host="0.0.0.0", port=port, debug=True)
