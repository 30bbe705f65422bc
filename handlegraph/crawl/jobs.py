"""Owner-facing job operations shared by the HTTP API and the CLI."""
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional

from ..config import StorageSettings, WorkerSettings
from ..data.blob_store import LocalBlobStore, graph_blob_path
from ..data.job_store import JobStore, utcnow
from ..models import Job, Owner
from ..upstream.client import SocialGraphClient, UpstreamClientConfig
from .driver import AuthorizationPolicy, ClientFactory, Driver, TickThrottle
from .pagination import lookup_profile_by_handle


LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class JobStatus:
    """Progress snapshot for one job."""

    root_id: str
    display_name: str
    status: str
    phase: str
    remaining: int
    done: bool
    children_total: int
    children_hydrated: int
    download_path: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def enqueue_handle(store: JobStore, client: SocialGraphClient, owner_id: str, handle: str) -> Job:
    """Look up ``handle`` and create a job rooted at it.

    Raises NotFoundError for unknown or suspended handles and JobExistsError
    when the owner already tracks that account.
    """
    profile = lookup_profile_by_handle(client, handle)
    job = store.create_job(Job.for_profile(owner_id, profile))
    LOGGER.info("Added root %s (%s) for %s", job.node.display_name, job.root_id, owner_id)
    return job


def delete_handle(store: JobStore, blobs: LocalBlobStore, owner_id: str, root_id: str) -> int:
    deleted = store.delete_job(owner_id, root_id)
    blobs.delete(graph_blob_path(owner_id, root_id))
    return deleted


def job_status(store: JobStore, owner_id: str, root_id: str) -> JobStatus:
    return _status_for(store, store.get_job(owner_id, root_id))


def list_statuses(store: JobStore, owner_id: str) -> List[JobStatus]:
    return [_status_for(store, job) for job in store.list_jobs(owner_id)]


def _status_for(store: JobStore, job: Job) -> JobStatus:
    return JobStatus(
        root_id=job.root_id,
        display_name=job.node.display_name,
        status=job.status,
        phase=job.phase.name.lower(),
        remaining=job.remaining,
        done=job.done,
        children_total=store.count_children(job.owner_id, job.root_id),
        children_hydrated=store.count_children(job.owner_id, job.root_id, hydrated=True),
        download_path=graph_blob_path(job.owner_id, job.root_id) if job.done else None,
    )


def save_owner_token(store: JobStore, owner_id: str, screen_name: str, bearer_token: str) -> Owner:
    owner = Owner(
        owner_id=owner_id,
        screen_name=screen_name,
        bearer_token=bearer_token,
        updated_at=utcnow(),
    )
    store.save_owner(owner)
    LOGGER.info("Stored credential for owner %s", owner_id)
    return owner


def make_client_factory(
    store: JobStore, storage: StorageSettings, worker: WorkerSettings
) -> ClientFactory:
    """Build clients with each owner's credential and rate-limit state file."""

    def _factory(owner_id: str) -> SocialGraphClient:
        owner = store.get_owner(owner_id)
        return SocialGraphClient(
            UpstreamClientConfig(
                bearer_token=owner.bearer_token,
                base_url=worker.api_base_url,
                rate_state_path=storage.rate_state_dir / f"{owner_id}.json",
            )
        )

    return _factory


def build_driver(
    store: JobStore,
    blobs: LocalBlobStore,
    client_factory: ClientFactory,
    worker: WorkerSettings,
) -> Driver:
    return Driver(
        store,
        blobs,
        client_factory,
        policy=AuthorizationPolicy(admin_ids=worker.admin_ids),
        throttle=TickThrottle(min_interval_seconds=worker.min_tick_seconds),
        lease_seconds=worker.lease_seconds,
        max_workers=worker.max_workers,
    )
