"""Unit tests for the single-call pagination and lookup helpers."""
from __future__ import annotations

import pytest

from handlegraph.crawl.pagination import (
    expand_inline,
    fetch_followers_page,
    fetch_friends_page,
    hydrate_node,
    lookup_profile,
    lookup_profile_by_handle,
)
from handlegraph.errors import NotFoundError
from handlegraph.models import GraphNode, Profile, Relationship
from handlegraph.upstream.client import IdPage

pytestmark = pytest.mark.unit


def test_fetch_followers_page_appends_and_returns_cursor(fake_client):
    fake_client.set_follower_pages(
        "100",
        {"-1": IdPage(["1", "2"], "tok1"), "tok1": IdPage(["3"], "0")},
    )
    node = GraphNode(id="100", relationship=Relationship.ROOT)

    ids, cursor = fetch_followers_page(fake_client, node, "-1")
    assert (ids, cursor) == (["1", "2"], "tok1")

    ids, cursor = fetch_followers_page(fake_client, node, cursor)
    assert (ids, cursor) == (["3"], "0")
    assert node.follower_ids == ["1", "2", "3"]
    assert fake_client.count("follower_ids") == 2


def test_fetch_friends_page_is_one_call(fake_client):
    fake_client.add_account("100", "root", friends=["5", "6"])
    node = GraphNode(id="100", relationship=Relationship.ROOT)

    assert fetch_friends_page(fake_client, node, "-1") == (["5", "6"], "0")
    assert node.friend_ids == ["5", "6"]
    assert fake_client.calls == [("friend_ids", "100@-1")]


def test_lookup_profile_substitutes_placeholder(fake_client):
    fake_client.add_account("7", "gone")
    fake_client.suspend("7", code=63)

    profile = lookup_profile(fake_client, "7")

    assert profile.screen_name == "SUSPENDED"
    assert profile.friend_count == profile.follower_count == 0


def test_lookup_by_handle_rejects_missing_root(fake_client):
    with pytest.raises(NotFoundError):
        lookup_profile_by_handle(fake_client, "nobody")


def test_expand_inline_fetches_only_small_nonzero_sides(fake_client):
    fake_client.add_account("8", "small", friends=["1"], follower_count=6000)
    node = GraphNode(id="8", relationship=Relationship.FRIEND)

    expand_inline(fake_client, node, fake_client.profiles["8"])

    assert node.friend_ids == ["1"]
    assert node.follower_ids == []
    assert fake_client.count("follower_ids") == 0


def test_expand_inline_skips_empty_account(fake_client):
    fake_client.add_account("8", "empty")
    node = GraphNode(id="8", relationship=Relationship.FRIEND)

    expand_inline(fake_client, node, fake_client.profiles["8"])

    assert fake_client.calls == []


def test_hydrate_node_marks_hydrated():
    node = GraphNode(id="1", relationship=Relationship.FOLLOWER)
    hydrate_node(node, Profile(account_id="1", screen_name="one", description="x" * 900))

    assert node.hydrated is True
    assert node.display_name == "one"
    assert len(node.description) == 500
