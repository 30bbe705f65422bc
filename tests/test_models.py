"""Unit tests for job phase derivation and graph node invariants."""
from __future__ import annotations

import pytest
from hypothesis import given, strategies as st

from handlegraph.models import (
    CURSOR_DONE,
    CURSOR_START,
    DESCRIPTION_LIMIT,
    GraphNode,
    Job,
    JobPhase,
    Profile,
    Relationship,
    count_distinct_neighbors,
    derive_phase,
    normalize_cursor,
)


def _job(**overrides) -> Job:
    fields = dict(
        owner_id="owner",
        node=GraphNode(id="1", relationship=Relationship.ROOT),
        followers_cursor=CURSOR_DONE,
        friends_cursor=CURSOR_DONE,
        remaining=3,
    )
    fields.update(overrides)
    return Job(**fields)


# ==============================================================================
# Phase derivation
# ==============================================================================

@pytest.mark.unit
@pytest.mark.parametrize(
    "overrides, expected",
    [
        ({"done": True, "preparing_output": True}, JobPhase.DONE),
        ({"preparing_output": True}, JobPhase.PREPARING_OUTPUT),
        ({"followers_cursor": CURSOR_START, "friends_cursor": CURSOR_START}, JobPhase.NOT_STARTED),
        ({"followers_cursor": "tok1", "friends_cursor": CURSOR_START}, JobPhase.PAGING_FOLLOWERS),
        ({"followers_cursor": CURSOR_DONE, "friends_cursor": CURSOR_START}, JobPhase.PAGING_FRIENDS),
        ({"friends_cursor": "tok9"}, JobPhase.PAGING_FRIENDS),
        ({"remaining": -1}, JobPhase.COUNTING),
        ({"remaining": 0}, JobPhase.HYDRATING),
    ],
)
def test_derive_phase(overrides, expected):
    assert derive_phase(_job(**overrides)) is expected


@pytest.mark.unit
def test_zero_follower_root_starts_on_friends():
    """A side with no accounts starts exhausted, skipping straight past it."""
    profile = Profile(account_id="9", screen_name="solo", friend_count=4, follower_count=0)
    job = Job.for_profile("owner", profile)

    assert job.followers_cursor == CURSOR_DONE
    assert job.friends_cursor == CURSOR_START
    assert job.phase is JobPhase.PAGING_FRIENDS
    assert job.node.relationship is Relationship.ROOT
    assert job.node.hydrated is True


@pytest.mark.unit
def test_for_profile_with_both_sides_is_not_started():
    profile = Profile(account_id="9", screen_name="busy", friend_count=1, follower_count=1)
    assert Job.for_profile("owner", profile).phase is JobPhase.NOT_STARTED


@pytest.mark.unit
def test_normalize_cursor_maps_missing_to_done():
    assert normalize_cursor(None) == CURSOR_DONE
    assert normalize_cursor(0) == CURSOR_DONE
    assert normalize_cursor(1234567890123) == "1234567890123"


# ==============================================================================
# GraphNode
# ==============================================================================

@pytest.mark.unit
def test_node_dict_round_trip_preserves_lists():
    node = GraphNode(
        id="5",
        relationship="Follower",
        display_name="five",
        friend_ids=["1", "2"],
        follower_ids=["3"],
        hydrated=True,
    )
    restored = GraphNode.from_dict(node.to_dict())

    assert restored == node
    assert restored.relationship is Relationship.FOLLOWER


@pytest.mark.unit
def test_placeholder_profile_has_zero_counts():
    node = GraphNode(id="7", relationship=Relationship.FRIEND)
    node.apply_profile(Profile.placeholder("7", "SUSPENDED"))

    assert node.display_name == "SUSPENDED"
    assert node.friend_count == 0
    assert node.follower_count == 0
    assert node.hydrated is True


# ==============================================================================
# Properties
# ==============================================================================

@given(st.text(min_size=0, max_size=1200))
def test_description_never_exceeds_limit(text):
    profile = Profile(account_id="1", screen_name="x", description=text)
    node = GraphNode.from_profile(profile, Relationship.ROOT)

    assert len(node.description) == min(len(text), DESCRIPTION_LIMIT)
    assert text.startswith(node.description)


@pytest.mark.unit
def test_long_description_truncated_to_exactly_limit():
    profile = Profile(account_id="1", screen_name="x", description="d" * 501)
    assert len(GraphNode.from_profile(profile, Relationship.FRIEND).description) == 500


ids = st.lists(st.integers(min_value=1, max_value=60).map(str), max_size=40)


@given(ids, ids)
def test_counting_is_size_of_union(friends, followers):
    node = GraphNode(id="0", relationship=Relationship.ROOT, friend_ids=friends, follower_ids=followers)
    assert count_distinct_neighbors(node) == len(set(friends) | set(followers))


@given(st.permutations(["a", "b", "c"]), st.permutations(["b", "c", "d"]))
def test_counting_dedups_regardless_of_order(friends, followers):
    node = GraphNode(id="0", relationship=Relationship.ROOT, friend_ids=friends, follower_ids=followers)
    assert count_distinct_neighbors(node) == 4
