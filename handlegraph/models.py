"""Value types for crawl jobs, their child tasks and the graph nodes they carry."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

DESCRIPTION_LIMIT = 500

# Cursor sentinels. Anything else is an upstream continuation token.
CURSOR_START = "-1"
CURSOR_DONE = "0"


def normalize_cursor(value: Any) -> str:
    """Return the string form used to persist and replay a cursor."""

    if value is None:
        return CURSOR_DONE
    return str(value)


def truncate_description(value: Optional[str]) -> str:
    if not value:
        return ""
    return value[:DESCRIPTION_LIMIT]


class Relationship(str, Enum):
    ROOT = "Root"
    FRIEND = "Friend"
    FOLLOWER = "Follower"


class JobPhase(Enum):
    """Crawl phases in the order a job moves through them."""

    NOT_STARTED = 0
    PAGING_FOLLOWERS = 1
    PAGING_FRIENDS = 2
    COUNTING = 3
    HYDRATING = 4
    PREPARING_OUTPUT = 5
    DONE = 6

    @property
    def rank(self) -> int:
        return self.value


@dataclass(frozen=True)
class Profile:
    """Account snapshot returned by the upstream lookup endpoints."""

    account_id: str
    screen_name: str
    profile_url: str = ""
    description: str = ""
    avatar_url: str = ""
    friend_count: int = 0
    follower_count: int = 0

    @classmethod
    def placeholder(cls, account_id: str, label: str) -> "Profile":
        """Synthetic profile for suspended or deleted accounts."""
        return cls(account_id=account_id, screen_name=label)


@dataclass
class GraphNode:
    id: str
    relationship: Relationship
    display_name: str = ""
    profile_url: str = ""
    description: str = ""
    avatar_url: str = ""
    friend_count: int = 0
    follower_count: int = 0
    friend_ids: List[str] = field(default_factory=list)
    follower_ids: List[str] = field(default_factory=list)
    hydrated: bool = False

    def __post_init__(self) -> None:
        self.relationship = Relationship(self.relationship)
        self.description = truncate_description(self.description)

    @classmethod
    def from_profile(cls, profile: Profile, relationship: Relationship) -> "GraphNode":
        node = cls(id=profile.account_id, relationship=relationship)
        node.apply_profile(profile)
        return node

    def apply_profile(self, profile: Profile) -> None:
        """Copy profile fields onto the node and mark it hydrated."""
        self.display_name = profile.screen_name
        self.profile_url = profile.profile_url or ""
        self.description = truncate_description(profile.description)
        self.avatar_url = profile.avatar_url or ""
        self.friend_count = profile.friend_count
        self.follower_count = profile.follower_count
        self.hydrated = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "relationship": self.relationship.value,
            "display_name": self.display_name,
            "profile_url": self.profile_url,
            "description": self.description,
            "avatar_url": self.avatar_url,
            "friend_count": self.friend_count,
            "follower_count": self.follower_count,
            "friend_ids": list(self.friend_ids),
            "follower_ids": list(self.follower_ids),
            "hydrated": self.hydrated,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GraphNode":
        return cls(
            id=str(data["id"]),
            relationship=Relationship(data["relationship"]),
            display_name=data.get("display_name") or "",
            profile_url=data.get("profile_url") or "",
            description=data.get("description") or "",
            avatar_url=data.get("avatar_url") or "",
            friend_count=int(data.get("friend_count") or 0),
            follower_count=int(data.get("follower_count") or 0),
            friend_ids=[str(i) for i in data.get("friend_ids") or []],
            follower_ids=[str(i) for i in data.get("follower_ids") or []],
            hydrated=bool(data.get("hydrated", False)),
        )


@dataclass
class Job:
    """One root-account crawl owned by one user."""

    owner_id: str
    node: GraphNode
    followers_cursor: str = CURSOR_START
    friends_cursor: str = CURSOR_START
    remaining: int = -1
    status: str = ""
    preparing_output: bool = False
    done: bool = False
    created_at: Optional[datetime] = None
    last_tick_at: Optional[datetime] = None
    revision: int = 0

    @property
    def root_id(self) -> str:
        return self.node.id

    @property
    def phase(self) -> JobPhase:
        return derive_phase(self)

    @classmethod
    def for_profile(cls, owner_id: str, profile: Profile) -> "Job":
        """Build a freshly enqueued job rooted at ``profile``.

        A side whose reported count is zero starts exhausted so no empty
        page is ever fetched for it.
        """
        node = GraphNode.from_profile(profile, Relationship.ROOT)
        return cls(
            owner_id=owner_id,
            node=node,
            followers_cursor=CURSOR_START if profile.follower_count else CURSOR_DONE,
            friends_cursor=CURSOR_START if profile.friend_count else CURSOR_DONE,
            remaining=-1,
            status="Preparing to fetch",
        )


@dataclass
class ChildTask:
    """A friend or follower of a job root awaiting hydration."""

    owner_id: str
    parent_id: str
    node: GraphNode

    @property
    def child_id(self) -> str:
        return self.node.id

    @property
    def hydrated(self) -> bool:
        return self.node.hydrated


@dataclass(frozen=True)
class Owner:
    """A user on whose behalf jobs run, with the credential used upstream."""

    owner_id: str
    screen_name: str
    bearer_token: str
    updated_at: Optional[datetime] = None


def derive_phase(job: Job) -> JobPhase:
    """Resolve the single active phase from a job's stored fields."""

    if job.done:
        return JobPhase.DONE
    if job.preparing_output:
        return JobPhase.PREPARING_OUTPUT
    if job.followers_cursor == CURSOR_START and job.friends_cursor == CURSOR_START:
        return JobPhase.NOT_STARTED
    if job.followers_cursor != CURSOR_DONE:
        return JobPhase.PAGING_FOLLOWERS
    if job.friends_cursor != CURSOR_DONE:
        return JobPhase.PAGING_FRIENDS
    if job.remaining == -1:
        return JobPhase.COUNTING
    return JobPhase.HYDRATING


def count_distinct_neighbors(node: GraphNode) -> int:
    """Number of distinct accounts across a node's friend and follower lists."""

    return len(set(node.friend_ids) | set(node.follower_ids))
