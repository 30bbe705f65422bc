"""Select jobs and advance each by one tick."""
from __future__ import annotations

import logging
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, FrozenSet, List, Optional

from ..data.blob_store import LocalBlobStore
from ..data.job_store import JobStore, utcnow
from ..errors import AuthorizationError, CrawlError, NotFoundError
from ..models import Job
from ..upstream.client import SocialGraphClient
from .cancel import CancelToken
from .engine import TickEngine


LOGGER = logging.getLogger(__name__)

NOTHING_TO_DO = "Nothing to do"

ClientFactory = Callable[[str], SocialGraphClient]


@dataclass(frozen=True)
class AuthorizationPolicy:
    """Who may force a tick by hand."""

    admin_ids: FrozenSet[str] = frozenset()

    def is_admin(self, requester: Optional[str]) -> bool:
        return requester is not None and requester in self.admin_ids

    def authorize_manual_tick(self, requester: Optional[str]) -> None:
        # No requester means the periodic trigger.
        if requester is not None and not self.is_admin(requester):
            raise AuthorizationError(f"{requester} may not run the worker")


@dataclass(frozen=True)
class TickThrottle:
    min_interval_seconds: float

    @classmethod
    def from_quota(cls, calls: int, window_seconds: int) -> "TickThrottle":
        """Spread ``calls`` evenly over ``window_seconds``."""
        return cls(min_interval_seconds=window_seconds / calls)

    def allows(self, job: Job, now: datetime) -> bool:
        if job.last_tick_at is None:
            return True
        return (now - job.last_tick_at).total_seconds() >= self.min_interval_seconds


class OutcomeKind(str, Enum):
    UPDATED = "updated"
    FAILED = "failed"
    THROTTLED = "throttled"
    BUSY = "busy"
    IDLE = "idle"


@dataclass
class TickOutcome:
    owner_id: str
    root_id: str
    kind: OutcomeKind
    status: str = ""
    error: Optional[str] = None

    def render(self) -> str:
        if self.kind is OutcomeKind.UPDATED:
            return f"Updated {self.owner_id}: {self.status}"
        if self.kind is OutcomeKind.FAILED:
            return self.error or f"worker error: ({self.owner_id}) unknown"
        if self.kind is OutcomeKind.THROTTLED:
            return f"Skipping {self.owner_id}/{self.root_id}: ticked too recently"
        if self.kind is OutcomeKind.BUSY:
            return f"Skipping {self.owner_id}/{self.root_id}: another tick is running"
        return NOTHING_TO_DO


@dataclass
class DriverReport:
    outcomes: List[TickOutcome] = field(default_factory=list)

    @property
    def has_errors(self) -> bool:
        return any(outcome.kind is OutcomeKind.FAILED for outcome in self.outcomes)

    def render(self) -> str:
        if not self.outcomes:
            return NOTHING_TO_DO
        return "\n".join(outcome.render() for outcome in self.outcomes)


class Driver:
    """Entry point for the periodic trigger, the worker endpoint and the CLI."""

    def __init__(
        self,
        store: JobStore,
        blobs: LocalBlobStore,
        client_factory: ClientFactory,
        *,
        policy: Optional[AuthorizationPolicy] = None,
        throttle: Optional[TickThrottle] = None,
        lease_seconds: float = 120,
        max_workers: int = 4,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._blobs = blobs
        self._client_factory = client_factory
        self._policy = policy or AuthorizationPolicy()
        self._throttle = throttle or TickThrottle.from_quota(15, 15 * 60)
        self._lease_seconds = lease_seconds
        self._max_workers = max_workers
        self._clock = clock

    def run(
        self,
        owner_id: Optional[str] = None,
        root_id: Optional[str] = None,
        *,
        requester: Optional[str] = None,
        cancel: Optional[CancelToken] = None,
    ) -> DriverReport:
        """Advance the addressed job(s) by one step each.

        ``requester`` is None for trigger-originated runs. Named requesters
        must be admins and skip the per-job throttle.
        """
        self._policy.authorize_manual_tick(requester)
        jobs = self._select(owner_id, root_id)
        if not jobs or (len(jobs) == 1 and jobs[0].done):
            LOGGER.info("Nothing to do for %s", owner_id or "any owner")
            return DriverReport([TickOutcome(owner_id or "", root_id or "", OutcomeKind.IDLE)])

        cancel = cancel or CancelToken()
        bypass_throttle = requester is not None
        if len(jobs) == 1:
            outcomes = [self._advance(jobs[0], bypass_throttle, cancel)]
        else:
            workers = min(self._max_workers, len(jobs))
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="tick") as pool:
                outcomes = list(
                    pool.map(lambda job: self._advance(job, bypass_throttle, cancel), jobs)
                )
        return DriverReport(outcomes)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _select(self, owner_id: Optional[str], root_id: Optional[str]) -> List[Job]:
        if root_id is not None:
            if owner_id is None:
                raise ValueError("root_id requires owner_id")
            return [self._store.get_job(owner_id, root_id)]
        if owner_id is not None:
            job = self._store.oldest_unfinished_job(owner_id)
            return [job] if job is not None else []
        return self._store.unfinished_job_per_owner()

    def _advance(self, job: Job, bypass_throttle: bool, cancel: CancelToken) -> TickOutcome:
        now = self._clock()
        if not bypass_throttle and not self._throttle.allows(job, now):
            return self._throttled(job)

        token = uuid.uuid4().hex
        try:
            leased = self._store.acquire_lease(
                job.owner_id, job.root_id, token, self._lease_seconds, now
            )
        except CrawlError as exc:
            message = f"worker error: ({job.owner_id}) {exc}"
            LOGGER.error(message)
            return TickOutcome(job.owner_id, job.root_id, OutcomeKind.FAILED, error=message)
        if not leased:
            return self._unleased(job)

        try:
            return self._tick_leased(job, bypass_throttle, cancel, now)
        finally:
            try:
                self._store.release_lease(job.owner_id, job.root_id, token)
            except CrawlError as exc:
                LOGGER.warning("Could not release lease on %s/%s: %s", job.owner_id, job.root_id, exc)

    def _tick_leased(
        self, job: Job, bypass_throttle: bool, cancel: CancelToken, now: datetime
    ) -> TickOutcome:
        try:
            # Reload under the lease; the selection snapshot may be stale.
            fresh = self._store.get_job(job.owner_id, job.root_id)
        except CrawlError as exc:
            return self._record_failure(job, f"worker error: ({job.owner_id}) {exc}")
        if fresh.done:
            LOGGER.info("Nothing to do for %s/%s", job.owner_id, job.root_id)
            return TickOutcome(job.owner_id, job.root_id, OutcomeKind.IDLE)
        # Another invocation may have ticked between our selection and our lease.
        if not bypass_throttle and not self._throttle.allows(fresh, now):
            return self._throttled(fresh)

        try:
            client = self._client_factory(job.owner_id)
        except Exception as exc:
            return self._record_failure(job, f"twitter error: ({job.owner_id}) {exc}")

        try:
            status = TickEngine(self._store, client, self._blobs, cancel=cancel).tick(fresh)
        except Exception as exc:
            LOGGER.debug("Tick failed for %s/%s", job.owner_id, job.root_id, exc_info=True)
            outcome = self._record_failure(job, f"worker error: ({job.owner_id}) {exc}")
        else:
            LOGGER.info("Updated %s: %s", job.owner_id, status)
            outcome = TickOutcome(job.owner_id, job.root_id, OutcomeKind.UPDATED, status=status)

        try:
            self._store.mark_ticked(job.owner_id, job.root_id, now)
        except CrawlError as exc:
            LOGGER.warning("Could not stamp tick time on %s/%s: %s", job.owner_id, job.root_id, exc)
        return outcome

    def _throttled(self, job: Job) -> TickOutcome:
        LOGGER.info("Skipping %s/%s: last tick at %s", job.owner_id, job.root_id, job.last_tick_at)
        return TickOutcome(job.owner_id, job.root_id, OutcomeKind.THROTTLED)

    def _unleased(self, job: Job) -> TickOutcome:
        """Tell a job finished or removed since selection apart from a held lease."""
        try:
            current = self._store.get_job(job.owner_id, job.root_id)
        except NotFoundError:
            current = None
        except CrawlError as exc:
            LOGGER.warning("Could not reload %s/%s: %s", job.owner_id, job.root_id, exc)
            return TickOutcome(job.owner_id, job.root_id, OutcomeKind.BUSY)
        if current is None or current.done:
            LOGGER.info("Nothing to do for %s/%s", job.owner_id, job.root_id)
            return TickOutcome(job.owner_id, job.root_id, OutcomeKind.IDLE)
        LOGGER.info("Skipping %s/%s: lease held elsewhere", job.owner_id, job.root_id)
        return TickOutcome(job.owner_id, job.root_id, OutcomeKind.BUSY)

    def _record_failure(self, job: Job, message: str) -> TickOutcome:
        try:
            self._store.update_status(job.owner_id, job.root_id, message)
        except CrawlError as exc:
            message = f"{message} and couldn't save: {exc}"
        LOGGER.error(message)
        return TickOutcome(job.owner_id, job.root_id, OutcomeKind.FAILED, error=message)
