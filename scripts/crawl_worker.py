"""Run one worker invocation: advance the addressed job(s) by one tick each."""
from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

# Add project root to path
PROJECT_ROOT = Path(__file__).resolve().parents[1]
sys.path.append(str(PROJECT_ROOT))

from handlegraph.config import get_storage_settings, get_worker_settings
from handlegraph.crawl.cancel import CancelToken
from handlegraph.crawl.jobs import build_driver, make_client_factory
from handlegraph.data.blob_store import LocalBlobStore
from handlegraph.data.job_store import JobStore, create_store_engine
from handlegraph.errors import CrawlError
from handlegraph.logging_utils import setup_worker_logging

LOGGER = logging.getLogger("crawl_worker")


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Advance crawl jobs by one step")
    parser.add_argument("--owner", help="Only advance this owner's oldest unfinished job")
    parser.add_argument("--root", help="Advance exactly this root (requires --owner)")
    parser.add_argument(
        "--requester",
        help="Admin id forcing the tick; bypasses the per-job throttle",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Cancel in-flight ticks after this many seconds (default: HANDLEGRAPH_TICK_TIMEOUT_SECONDS)",
    )
    parser.add_argument("--quiet", action="store_true", help="Log to file only")
    parser.add_argument("--verbose", action="store_true", help="Show debug output on console")
    args = parser.parse_args(argv)
    if args.root and not args.owner:
        parser.error("--root requires --owner")
    return args


def main(argv=None) -> int:
    args = parse_args(argv)
    setup_worker_logging(
        console_level=logging.DEBUG if args.verbose else logging.INFO,
        quiet=args.quiet,
    )

    storage = get_storage_settings()
    worker = get_worker_settings()
    store = JobStore(create_store_engine(storage.db_path))
    blobs = LocalBlobStore(storage.blob_dir)
    driver = build_driver(store, blobs, make_client_factory(store, storage, worker), worker)
    timeout = args.timeout if args.timeout is not None else worker.tick_timeout_seconds

    try:
        report = driver.run(
            args.owner,
            args.root,
            requester=args.requester,
            cancel=CancelToken(timeout),
        )
    except CrawlError as exc:
        LOGGER.error("Worker run failed: %s", exc)
        return 1

    for line in report.render().splitlines():
        LOGGER.info(line)
    return 1 if report.has_errors else 0


if __name__ == "__main__":
    sys.exit(main())
