"""One bounded unit of crawl progress per call."""
from __future__ import annotations

import logging
from typing import Callable, Dict, Optional

from ..data.blob_store import LocalBlobStore, content_disposition_for, graph_blob_path
from ..data.job_store import JobStore, JobTransaction
from ..errors import AlreadyCompleteError
from ..graph.exporter import export_graph
from ..models import (
    ChildTask,
    Job,
    JobPhase,
    Relationship,
    count_distinct_neighbors,
)
from ..upstream.client import SocialGraphClient
from .cancel import CancelToken
from .pagination import (
    expand_inline,
    fetch_followers_page,
    fetch_friends_page,
    hydrate_node,
    lookup_profile,
)


LOGGER = logging.getLogger(__name__)

GRAPH_BUILT = "Graph built"
PREPARING_GRAPH = "Preparing graph"


class TickEngine:
    """Advance a job by exactly one phase step.

    Every branch persists its state change before returning, so a crash
    between ticks loses at most the in-flight step.
    """

    def __init__(
        self,
        store: JobStore,
        client: SocialGraphClient,
        blobs: LocalBlobStore,
        *,
        cancel: Optional[CancelToken] = None,
    ) -> None:
        self._store = store
        self._client = client
        self._blobs = blobs
        self._cancel = cancel or CancelToken()
        self._handlers: Dict[JobPhase, Callable[[Job], str]] = {
            JobPhase.DONE: self._reject_done,
            JobPhase.PREPARING_OUTPUT: self._build_output,
            JobPhase.NOT_STARTED: self._page_followers,
            JobPhase.PAGING_FOLLOWERS: self._page_followers,
            JobPhase.PAGING_FRIENDS: self._page_friends,
            JobPhase.COUNTING: self._count_remaining,
            JobPhase.HYDRATING: self._hydrate_next_child,
        }

    def tick(self, job: Job) -> str:
        phase = job.phase
        LOGGER.debug("Ticking %s/%s in phase %s", job.owner_id, job.root_id, phase.name)
        return self._handlers[phase](job)

    # ------------------------------------------------------------------
    # Phase handlers
    # ------------------------------------------------------------------
    def _reject_done(self, job: Job) -> str:
        raise AlreadyCompleteError(f"job {job.owner_id}/{job.root_id} is already complete")

    def _build_output(self, job: Job) -> str:
        children = self._store.fetch_hydrated_children(job.owner_id, job.root_id)
        payload = export_graph(job.node, children)

        self._cancel.check("blob write")
        self._blobs.write(
            graph_blob_path(job.owner_id, job.root_id),
            payload,
            content_disposition=content_disposition_for(job.node.display_name),
        )

        job.status = ""
        job.preparing_output = False
        job.done = True
        self._cancel.check("job write")
        self._store.save_job(job)
        LOGGER.info(
            "Graph built for %s/%s with %s children", job.owner_id, job.root_id, len(children)
        )
        return GRAPH_BUILT

    def _page_followers(self, job: Job) -> str:
        self._cancel.check("follower page")
        ids, next_cursor = fetch_followers_page(self._client, job.node, job.followers_cursor)
        self._enqueue_children(job, Relationship.FOLLOWER, ids)
        job.followers_cursor = next_cursor
        return self._persist_status(job, f"Fetched {len(ids)} follower IDs")

    def _page_friends(self, job: Job) -> str:
        self._cancel.check("friend page")
        ids, next_cursor = fetch_friends_page(self._client, job.node, job.friends_cursor)
        self._enqueue_children(job, Relationship.FRIEND, ids)
        job.friends_cursor = next_cursor
        return self._persist_status(job, f"Fetched {len(ids)} friend IDs")

    def _count_remaining(self, job: Job) -> str:
        job.remaining = count_distinct_neighbors(job.node)
        message = f"Enqueued {job.remaining} handles"
        LOGGER.info("%s for %s/%s", message, job.owner_id, job.root_id)
        return self._persist_status(job, message)

    def _hydrate_next_child(self, job: Job) -> str:
        owner_id, root_id = job.owner_id, job.root_id

        def _step(tx: JobTransaction) -> str:
            fresh = tx.get_job(owner_id, root_id)
            if fresh.phase is not JobPhase.HYDRATING:
                return fresh.status

            child = tx.next_unhydrated_child(owner_id, root_id)
            if child is None:
                fresh.preparing_output = True
                fresh.remaining = 0
                fresh.status = PREPARING_GRAPH
                self._cancel.check("job write")
                tx.save_job(fresh)
                LOGGER.info("Preparing graph for %s/%s", owner_id, root_id)
                return fresh.status

            self._hydrate_child(child)
            self._cancel.check("child write")
            tx.save_child(child)

            fresh.remaining = max(fresh.remaining - 1, 0)
            fresh.status = f"Fetched {child.node.display_name}"
            tx.save_job(fresh)
            return fresh.status

        status = self._store.run_transaction("hydrate_child", _step)
        job.status = status
        return status

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _hydrate_child(self, child: ChildTask) -> None:
        self._cancel.check("profile lookup")
        profile = lookup_profile(self._client, child.child_id)
        expand_inline(self._client, child.node, profile, check=self._cancel.check)
        hydrate_node(child.node, profile)

    def _enqueue_children(self, job: Job, relationship: Relationship, ids) -> None:
        if not ids:
            return
        self._cancel.check("child write")
        created = self._store.create_child_tasks(job.owner_id, job.root_id, relationship, ids)
        LOGGER.debug(
            "Created %s of %s %s tasks for %s/%s",
            created,
            len(ids),
            relationship.value.lower(),
            job.owner_id,
            job.root_id,
        )

    def _persist_status(self, job: Job, message: str) -> str:
        job.status = message
        self._cancel.check("job write")
        self._store.save_job(job)
        return message
