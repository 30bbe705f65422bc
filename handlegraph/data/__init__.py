"""Storage for crawl jobs and exported graphs."""

from .blob_store import LocalBlobStore, StoredBlob, graph_blob_path
from .job_store import JobStore, JobTransaction, create_store_engine, get_job_store

__all__ = [
    "JobStore",
    "JobTransaction",
    "LocalBlobStore",
    "StoredBlob",
    "create_store_engine",
    "get_job_store",
    "graph_blob_path",
]
