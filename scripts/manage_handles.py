"""Enqueue, inspect and delete crawl roots from the command line."""
from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

# Add project root to path
PROJECT_ROOT = Path(__file__).resolve().parents[1]
sys.path.append(str(PROJECT_ROOT))

from handlegraph.config import get_storage_settings, get_worker_settings
from handlegraph.crawl import jobs
from handlegraph.data.blob_store import LocalBlobStore
from handlegraph.data.job_store import JobStore, create_store_engine
from handlegraph.errors import CrawlError
from handlegraph.logging_utils import setup_worker_logging

LOGGER = logging.getLogger("manage_handles")


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Manage crawl roots for an owner")
    parser.add_argument("--owner", required=True, help="Owner id the jobs belong to")
    sub = parser.add_subparsers(dest="command", required=True)

    add = sub.add_parser("add", help="Look up a handle and enqueue it")
    add.add_argument("handle")

    delete = sub.add_parser("delete", help="Delete a root and its child tasks")
    delete.add_argument("root_id")

    status = sub.add_parser("status", help="Show progress for one root or all roots")
    status.add_argument("root_id", nargs="?")

    token = sub.add_parser("set-token", help="Store the owner's upstream bearer token")
    token.add_argument("--name", required=True, help="Owner screen name")
    token.add_argument("--token", required=True, help="Bearer token")
    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)
    setup_worker_logging()

    storage = get_storage_settings()
    store = JobStore(create_store_engine(storage.db_path))
    blobs = LocalBlobStore(storage.blob_dir)

    try:
        if args.command == "add":
            factory = jobs.make_client_factory(store, storage, get_worker_settings())
            job = jobs.enqueue_handle(store, factory(args.owner), args.owner, args.handle)
            LOGGER.info("Enqueued %s as %s", job.node.display_name, job.root_id)
        elif args.command == "delete":
            deleted = jobs.delete_handle(store, blobs, args.owner, args.root_id)
            LOGGER.info("Deleted %s with %s child tasks", args.root_id, deleted)
        elif args.command == "status":
            if args.root_id:
                payload = jobs.job_status(store, args.owner, args.root_id).to_dict()
            else:
                payload = [status.to_dict() for status in jobs.list_statuses(store, args.owner)]
            print(json.dumps(payload, indent=2))
        elif args.command == "set-token":
            jobs.save_owner_token(store, args.owner, args.name, args.token)
            LOGGER.info("Stored token for %s", args.owner)
    except CrawlError as exc:
        LOGGER.error("%s failed: %s", args.command, exc)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
