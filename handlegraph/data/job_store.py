"""Persistence for crawl owners, jobs and their child tasks."""
from __future__ import annotations

import logging
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Iterator, List, Optional, Sequence, TypeVar

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Integer,
    MetaData,
    PrimaryKeyConstraint,
    String,
    Table,
    and_,
    create_engine,
    func,
    or_,
    select,
)
from sqlalchemy.dialects.sqlite import insert
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError

from ..errors import (
    JobExistsError,
    NotFoundError,
    PersistenceError,
    TransactionConflictError,
)
from ..models import ChildTask, GraphNode, Job, Owner, Relationship


LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

# Upper bound on writes committed together.
BATCH_LIMIT = 500


def utcnow() -> datetime:
    """Naive UTC timestamp, matching the DateTime(timezone=False) columns."""

    return datetime.now(timezone.utc).replace(tzinfo=None)


def chunked(items: Sequence[T], size: int) -> Iterator[Sequence[T]]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


class JobStore:
    """Typed wrapper around the crawl database."""

    OWNER_TABLE = "crawl_owner"
    JOB_TABLE = "crawl_job"
    CHILD_TABLE = "child_task"
    _RETRYABLE_SQLITE_ERRORS = ("disk i/o error", "database is locked")

    def __init__(self, engine: Engine) -> None:
        self._engine = engine
        self._metadata = MetaData()
        self._owner_table = Table(
            self.OWNER_TABLE,
            self._metadata,
            Column("owner_id", String, primary_key=True),
            Column("screen_name", String, nullable=True),
            Column("bearer_token", String, nullable=False),
            Column("updated_at", DateTime(timezone=False), nullable=False),
        )
        self._job_table = Table(
            self.JOB_TABLE,
            self._metadata,
            Column("owner_id", String, nullable=False),
            Column("root_id", String, nullable=False),
            Column("display_name", String, nullable=True),
            Column("node", JSON, nullable=False),
            Column("followers_cursor", String, nullable=False),
            Column("friends_cursor", String, nullable=False),
            Column("remaining", Integer, nullable=False),
            Column("status", String, nullable=False, default=""),
            Column("preparing_output", Boolean, nullable=False, default=False),
            Column("done", Boolean, nullable=False, default=False),
            Column("created_at", DateTime(timezone=False), nullable=False),
            Column("last_tick_at", DateTime(timezone=False), nullable=True),
            Column("lease_token", String, nullable=True),
            Column("lease_expires_at", DateTime(timezone=False), nullable=True),
            Column("revision", Integer, nullable=False, default=0),
            PrimaryKeyConstraint("owner_id", "root_id", name="pk_crawl_job"),
        )
        self._child_table = Table(
            self.CHILD_TABLE,
            self._metadata,
            Column("owner_id", String, nullable=False),
            Column("root_id", String, nullable=False),
            Column("child_id", String, nullable=False),
            Column("parent_id", String, nullable=False),
            Column("node", JSON, nullable=False),
            Column("hydrated", Boolean, nullable=False, default=False),
            PrimaryKeyConstraint("owner_id", "root_id", "child_id", name="pk_child_task"),
        )
        self._metadata.create_all(self._engine, checkfirst=True)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _execute_with_retry(
        self,
        op_name: str,
        fn: Callable[[Engine], T],
        *,
        max_attempts: int = 3,
        base_delay_seconds: float = 0.2,
    ) -> T:
        last_exc: Optional[OperationalError] = None
        for attempt in range(1, max_attempts + 1):
            try:
                return fn(self._engine)
            except OperationalError as exc:
                if getattr(exc, "orig", None) is not None:
                    message = str(exc.orig).lower()
                else:
                    message = str(exc).lower()

                if not any(token in message for token in self._RETRYABLE_SQLITE_ERRORS):
                    raise PersistenceError(f"{op_name} failed: {message}") from exc

                last_exc = exc
                LOGGER.error(
                    "Retryable SQLite error during %s (attempt %s/%s): %s",
                    op_name,
                    attempt,
                    max_attempts,
                    message or exc,
                )

                if attempt == max_attempts:
                    break

                sleep_for = base_delay_seconds * (2 ** (attempt - 1))
                time.sleep(sleep_for)
            except SQLAlchemyError as exc:
                raise PersistenceError(f"{op_name} failed: {exc}") from exc

        assert last_exc is not None
        LOGGER.error(
            "Exhausted retries for %s after %s attempts; giving up.",
            op_name,
            max_attempts,
        )
        raise PersistenceError(f"{op_name} failed after {max_attempts} attempts") from last_exc

    def _job_key(self, owner_id: str, root_id: str):
        return (self._job_table.c.owner_id == owner_id) & (self._job_table.c.root_id == root_id)

    def _job_values(self, job: Job) -> dict:
        return {
            "display_name": job.node.display_name,
            "node": job.node.to_dict(),
            "followers_cursor": job.followers_cursor,
            "friends_cursor": job.friends_cursor,
            "remaining": job.remaining,
            "status": job.status,
            "preparing_output": job.preparing_output,
            "done": job.done,
        }

    @staticmethod
    def _job_from_row(row) -> Job:
        record = row._mapping
        return Job(
            owner_id=record["owner_id"],
            node=GraphNode.from_dict(record["node"]),
            followers_cursor=record["followers_cursor"],
            friends_cursor=record["friends_cursor"],
            remaining=record["remaining"],
            status=record["status"] or "",
            preparing_output=bool(record["preparing_output"]),
            done=bool(record["done"]),
            created_at=record["created_at"],
            last_tick_at=record["last_tick_at"],
            revision=record["revision"],
        )

    @staticmethod
    def _child_from_row(row) -> ChildTask:
        record = row._mapping
        return ChildTask(
            owner_id=record["owner_id"],
            parent_id=record["parent_id"],
            node=GraphNode.from_dict(record["node"]),
        )

    def _select_job(self, conn: Connection, owner_id: str, root_id: str) -> Job:
        row = conn.execute(
            select(self._job_table).where(self._job_key(owner_id, root_id))
        ).first()
        if row is None:
            raise NotFoundError(f"no job for root {root_id} owned by {owner_id}")
        return self._job_from_row(row)

    def _write_job(self, conn: Connection, job: Job) -> None:
        """Replace the job record if nobody else wrote it since it was read."""
        result = conn.execute(
            self._job_table.update()
            .where(self._job_key(job.owner_id, job.root_id))
            .where(self._job_table.c.revision == job.revision)
            .values(**self._job_values(job), revision=job.revision + 1)
        )
        if result.rowcount != 1:
            exists = conn.execute(
                select(self._job_table.c.revision).where(
                    self._job_key(job.owner_id, job.root_id)
                )
            ).first()
            if exists is None:
                raise NotFoundError(f"no job for root {job.root_id} owned by {job.owner_id}")
            raise TransactionConflictError(
                f"job {job.owner_id}/{job.root_id} changed since revision {job.revision}"
            )
        job.revision += 1

    # ------------------------------------------------------------------
    # Owner operations
    # ------------------------------------------------------------------
    def save_owner(self, owner: Owner) -> None:
        row = {
            "owner_id": owner.owner_id,
            "screen_name": owner.screen_name,
            "bearer_token": owner.bearer_token,
            "updated_at": owner.updated_at or utcnow(),
        }

        def _op(engine: Engine) -> None:
            with engine.begin() as conn:
                stmt = insert(self._owner_table).values(row)
                conn.execute(
                    stmt.on_conflict_do_update(
                        index_elements=[self._owner_table.c.owner_id],
                        set_={col: stmt.excluded[col] for col in row if col != "owner_id"},
                    )
                )

        self._execute_with_retry("save_owner", _op)

    def get_owner(self, owner_id: str) -> Owner:
        def _op(engine: Engine):
            with engine.connect() as conn:
                return conn.execute(
                    select(self._owner_table).where(self._owner_table.c.owner_id == owner_id)
                ).first()

        row = self._execute_with_retry("get_owner", _op)
        if row is None:
            raise NotFoundError(f"unknown owner {owner_id}")
        return Owner(
            owner_id=row.owner_id,
            screen_name=row.screen_name or "",
            bearer_token=row.bearer_token,
            updated_at=row.updated_at,
        )

    # ------------------------------------------------------------------
    # Job operations
    # ------------------------------------------------------------------
    def create_job(self, job: Job) -> Job:
        """Insert a new job; fails with JobExistsError if the root is already tracked."""
        if job.created_at is None:
            job.created_at = utcnow()
        job.revision = 0
        row = {
            "owner_id": job.owner_id,
            "root_id": job.root_id,
            **self._job_values(job),
            "created_at": job.created_at,
            "last_tick_at": job.last_tick_at,
            "revision": 0,
        }

        def _op(engine: Engine) -> None:
            try:
                with engine.begin() as conn:
                    conn.execute(self._job_table.insert().values(row))
            except IntegrityError as exc:
                raise JobExistsError(
                    f"root {job.root_id} is already being fetched for {job.owner_id}"
                ) from exc

        self._execute_with_retry("create_job", _op)
        return job

    def get_job(self, owner_id: str, root_id: str) -> Job:
        def _op(engine: Engine) -> Job:
            with engine.connect() as conn:
                return self._select_job(conn, owner_id, root_id)

        return self._execute_with_retry("get_job", _op)

    def list_jobs(self, owner_id: str) -> List[Job]:
        """All jobs of an owner, ordered by root display name."""
        def _op(engine: Engine) -> List[Job]:
            with engine.connect() as conn:
                rows = conn.execute(
                    select(self._job_table)
                    .where(self._job_table.c.owner_id == owner_id)
                    .order_by(self._job_table.c.display_name, self._job_table.c.root_id)
                )
                return [self._job_from_row(row) for row in rows]

        return self._execute_with_retry("list_jobs", _op)

    def oldest_unfinished_job(self, owner_id: str) -> Optional[Job]:
        def _op(engine: Engine) -> Optional[Job]:
            with engine.connect() as conn:
                row = conn.execute(
                    select(self._job_table)
                    .where(self._job_table.c.owner_id == owner_id)
                    .where(self._job_table.c.done == False)  # noqa: E712
                    .order_by(self._job_table.c.created_at, self._job_table.c.root_id)
                    .limit(1)
                ).first()
                return self._job_from_row(row) if row is not None else None

        return self._execute_with_retry("oldest_unfinished_job", _op)

    def unfinished_job_per_owner(self) -> List[Job]:
        """At most one not-done job per owner: each owner's oldest."""
        table = self._job_table
        firsts = (
            select(table.c.owner_id, func.min(table.c.created_at).label("first_created"))
            .where(table.c.done == False)  # noqa: E712
            .group_by(table.c.owner_id)
            .subquery()
        )

        def _op(engine: Engine) -> List[Job]:
            with engine.connect() as conn:
                rows = conn.execute(
                    select(table)
                    .join(
                        firsts,
                        and_(
                            table.c.owner_id == firsts.c.owner_id,
                            table.c.created_at == firsts.c.first_created,
                        ),
                    )
                    .where(table.c.done == False)  # noqa: E712
                    .order_by(table.c.owner_id, table.c.root_id)
                ).fetchall()
            # Jobs created in the same instant tie; the lowest root_id wins.
            picked: List[Job] = []
            for row in rows:
                if picked and picked[-1].owner_id == row.owner_id:
                    continue
                picked.append(self._job_from_row(row))
            return picked

        return self._execute_with_retry("unfinished_job_per_owner", _op)

    def save_job(self, job: Job) -> None:
        """Whole-record replacement guarded by the job's revision."""
        def _op(engine: Engine) -> None:
            with engine.begin() as conn:
                self._write_job(conn, job)

        self._execute_with_retry("save_job", _op)

    def update_status(self, owner_id: str, root_id: str, status: str) -> None:
        """Overwrite only the status column; used to surface errors to the owner."""
        def _op(engine: Engine) -> int:
            with engine.begin() as conn:
                return conn.execute(
                    self._job_table.update()
                    .where(self._job_key(owner_id, root_id))
                    .values(status=status)
                ).rowcount

        if self._execute_with_retry("update_status", _op) != 1:
            raise NotFoundError(f"no job for root {root_id} owned by {owner_id}")

    def mark_ticked(self, owner_id: str, root_id: str, when: Optional[datetime] = None) -> None:
        stamp = when or utcnow()

        def _op(engine: Engine) -> None:
            with engine.begin() as conn:
                conn.execute(
                    self._job_table.update()
                    .where(self._job_key(owner_id, root_id))
                    .values(last_tick_at=stamp)
                )

        self._execute_with_retry("mark_ticked", _op)

    def acquire_lease(
        self,
        owner_id: str,
        root_id: str,
        token: str,
        ttl_seconds: float,
        now: Optional[datetime] = None,
    ) -> bool:
        """Claim the job for one invocation unless an unexpired lease exists.

        Finished jobs are never leased, so their rows stay untouched.
        """
        now = now or utcnow()
        table = self._job_table

        def _op(engine: Engine) -> int:
            with engine.begin() as conn:
                return conn.execute(
                    table.update()
                    .where(self._job_key(owner_id, root_id))
                    .where(table.c.done == False)  # noqa: E712
                    .where(
                        or_(
                            table.c.lease_token.is_(None),
                            table.c.lease_expires_at < now,
                            table.c.lease_token == token,
                        )
                    )
                    .values(
                        lease_token=token,
                        lease_expires_at=now + timedelta(seconds=ttl_seconds),
                    )
                ).rowcount

        return self._execute_with_retry("acquire_lease", _op) == 1

    def release_lease(self, owner_id: str, root_id: str, token: str) -> bool:
        table = self._job_table

        def _op(engine: Engine) -> int:
            with engine.begin() as conn:
                return conn.execute(
                    table.update()
                    .where(self._job_key(owner_id, root_id))
                    .where(table.c.lease_token == token)
                    .values(lease_token=None, lease_expires_at=None)
                ).rowcount

        return self._execute_with_retry("release_lease", _op) == 1

    def delete_job(self, owner_id: str, root_id: str) -> int:
        """Delete a job's child tasks in batches, then the job itself.

        Returns the number of child tasks removed.
        """
        self.get_job(owner_id, root_id)
        child_ids = self._child_ids(owner_id, root_id)
        deleted = 0
        for batch in chunked(child_ids, BATCH_LIMIT):
            deleted += self._delete_child_batch(owner_id, root_id, batch)

        def _op(engine: Engine) -> None:
            with engine.begin() as conn:
                conn.execute(self._job_table.delete().where(self._job_key(owner_id, root_id)))

        self._execute_with_retry("delete_job", _op)
        LOGGER.info("Deleted job %s/%s with %s child tasks", owner_id, root_id, deleted)
        return deleted

    # ------------------------------------------------------------------
    # Child task operations
    # ------------------------------------------------------------------
    def create_child_tasks(
        self,
        owner_id: str,
        root_id: str,
        relationship: Relationship,
        account_ids: Sequence[str],
    ) -> int:
        """Insert unhydrated child tasks, committing at most BATCH_LIMIT per batch.

        IDs that already have a task keep their existing record.
        """
        written = 0
        for batch in chunked(list(account_ids), BATCH_LIMIT):
            rows = [
                {
                    "owner_id": owner_id,
                    "root_id": root_id,
                    "child_id": account_id,
                    "parent_id": root_id,
                    "node": GraphNode(id=account_id, relationship=relationship).to_dict(),
                    "hydrated": False,
                }
                for account_id in batch
            ]

            def _op(engine: Engine) -> int:
                with engine.begin() as conn:
                    result = conn.execute(
                        insert(self._child_table).on_conflict_do_nothing(
                            index_elements=[
                                self._child_table.c.owner_id,
                                self._child_table.c.root_id,
                                self._child_table.c.child_id,
                            ]
                        ),
                        rows,
                    )
                    return result.rowcount if result.rowcount >= 0 else len(rows)

            written += self._execute_with_retry("create_child_tasks", _op)
        return written

    def fetch_hydrated_children(self, owner_id: str, root_id: str) -> List[ChildTask]:
        def _op(engine: Engine) -> List[ChildTask]:
            with engine.connect() as conn:
                rows = conn.execute(
                    select(self._child_table)
                    .where(self._child_table.c.owner_id == owner_id)
                    .where(self._child_table.c.parent_id == root_id)
                    .where(self._child_table.c.hydrated == True)  # noqa: E712
                    .order_by(self._child_table.c.child_id)
                )
                return [self._child_from_row(row) for row in rows]

        return self._execute_with_retry("fetch_hydrated_children", _op)

    def get_child(self, owner_id: str, root_id: str, child_id: str) -> ChildTask:
        def _op(engine: Engine):
            with engine.connect() as conn:
                return conn.execute(
                    select(self._child_table)
                    .where(self._child_table.c.owner_id == owner_id)
                    .where(self._child_table.c.root_id == root_id)
                    .where(self._child_table.c.child_id == child_id)
                ).first()

        row = self._execute_with_retry("get_child", _op)
        if row is None:
            raise NotFoundError(f"no child {child_id} under {owner_id}/{root_id}")
        return self._child_from_row(row)

    def count_children(
        self, owner_id: str, root_id: str, *, hydrated: Optional[bool] = None
    ) -> int:
        def _op(engine: Engine) -> int:
            with engine.connect() as conn:
                stmt = (
                    select(func.count())
                    .select_from(self._child_table)
                    .where(self._child_table.c.owner_id == owner_id)
                    .where(self._child_table.c.parent_id == root_id)
                )
                if hydrated is not None:
                    stmt = stmt.where(self._child_table.c.hydrated == hydrated)
                return conn.execute(stmt).scalar() or 0

        return self._execute_with_retry("count_children", _op)

    def _child_ids(self, owner_id: str, root_id: str) -> List[str]:
        def _op(engine: Engine) -> List[str]:
            with engine.connect() as conn:
                rows = conn.execute(
                    select(self._child_table.c.child_id)
                    .where(self._child_table.c.owner_id == owner_id)
                    .where(self._child_table.c.parent_id == root_id)
                )
                return [row.child_id for row in rows]

        return self._execute_with_retry("child_ids", _op)

    def _delete_child_batch(self, owner_id: str, root_id: str, child_ids: Sequence[str]) -> int:
        def _op(engine: Engine) -> int:
            with engine.begin() as conn:
                return conn.execute(
                    self._child_table.delete()
                    .where(self._child_table.c.owner_id == owner_id)
                    .where(self._child_table.c.parent_id == root_id)
                    .where(self._child_table.c.child_id.in_(list(child_ids)))
                ).rowcount

        return self._execute_with_retry("delete_child_batch", _op)

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------
    def run_transaction(
        self,
        op_name: str,
        fn: Callable[["JobTransaction"], T],
        *,
        max_attempts: int = 5,
    ) -> T:
        """Run ``fn`` atomically, re-running it from scratch on write conflicts."""

        def _op(engine: Engine) -> T:
            with engine.begin() as conn:
                return fn(JobTransaction(self, conn))

        last_exc: Optional[TransactionConflictError] = None
        for attempt in range(1, max_attempts + 1):
            try:
                return self._execute_with_retry(op_name, _op)
            except TransactionConflictError as exc:
                last_exc = exc
                LOGGER.warning(
                    "Write conflict during %s (attempt %s/%s): %s",
                    op_name,
                    attempt,
                    max_attempts,
                    exc,
                )
        assert last_exc is not None
        raise last_exc


class JobTransaction:
    """Reads and conditional writes bound to one store transaction."""

    def __init__(self, store: JobStore, conn: Connection) -> None:
        self._store = store
        self._conn = conn

    def get_job(self, owner_id: str, root_id: str) -> Job:
        return self._store._select_job(self._conn, owner_id, root_id)

    def next_unhydrated_child(self, owner_id: str, root_id: str) -> Optional[ChildTask]:
        table = self._store._child_table
        row = self._conn.execute(
            select(table)
            .where(table.c.owner_id == owner_id)
            .where(table.c.parent_id == root_id)
            .where(table.c.hydrated == False)  # noqa: E712
            .order_by(table.c.child_id)
            .limit(1)
        ).first()
        return self._store._child_from_row(row) if row is not None else None

    def save_child(self, child: ChildTask) -> None:
        """Persist a newly hydrated child; conflicts if it was hydrated meanwhile."""
        table = self._store._child_table
        result = self._conn.execute(
            table.update()
            .where(table.c.owner_id == child.owner_id)
            .where(table.c.root_id == child.parent_id)
            .where(table.c.child_id == child.child_id)
            .where(table.c.hydrated == False)  # noqa: E712
            .values(node=child.node.to_dict(), hydrated=child.node.hydrated)
        )
        if result.rowcount != 1:
            raise TransactionConflictError(
                f"child {child.child_id} of {child.owner_id}/{child.parent_id} already hydrated"
            )

    def save_job(self, job: Job) -> None:
        self._store._write_job(self._conn, job)


def create_store_engine(db_path: Path | str) -> Engine:
    """SQLite engine for a file-backed crawl database."""

    path = Path(db_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    return create_engine(f"sqlite:///{path}", future=True)


def get_job_store(engine: Engine) -> JobStore:
    """Helper for one-line store construction."""

    return JobStore(engine)
