"""Single-page upstream helpers used by the tick engine.

Each helper issues exactly one upstream call. Looping over cursors is the
job of successive ticks, never of these functions.
"""
from __future__ import annotations

import logging
from typing import List, Tuple

from ..errors import NotFoundError, PermanentAccountError
from ..models import CURSOR_START, GraphNode, Profile, normalize_cursor
from ..upstream.client import SocialGraphClient


LOGGER = logging.getLogger(__name__)

PAGE_SIZE = SocialGraphClient.PAGE_SIZE
# Children with a fan-out up to this size get their ID lists attached.
INLINE_EXPANSION_CEILING = 5000


def fetch_friends_page(client: SocialGraphClient, node: GraphNode, cursor: str) -> Tuple[List[str], str]:
    page = client.friend_ids(node.id, normalize_cursor(cursor), PAGE_SIZE)
    node.friend_ids.extend(page.ids)
    return page.ids, page.next_cursor


def fetch_followers_page(client: SocialGraphClient, node: GraphNode, cursor: str) -> Tuple[List[str], str]:
    page = client.follower_ids(node.id, normalize_cursor(cursor), PAGE_SIZE)
    node.follower_ids.extend(page.ids)
    return page.ids, page.next_cursor


def lookup_profile(client: SocialGraphClient, account_id: str) -> Profile:
    """Profile for ``account_id``; suspended or deleted accounts get a placeholder."""
    try:
        return client.lookup_by_id(account_id)
    except PermanentAccountError as exc:
        LOGGER.info("Account %s unavailable (%s); using placeholder", account_id, exc.label)
        return Profile.placeholder(account_id, exc.label)


def lookup_profile_by_handle(client: SocialGraphClient, handle: str) -> Profile:
    """Resolve a handle for enqueueing.

    A root must be a real account, so permanent errors surface as
    NotFoundError instead of a placeholder.
    """
    try:
        return client.lookup_by_handle(handle)
    except PermanentAccountError as exc:
        raise NotFoundError(f"handle {handle} is {exc.label.lower()}") from exc


def hydrate_node(node: GraphNode, profile: Profile) -> GraphNode:
    node.apply_profile(profile)
    return node


def expand_inline(client: SocialGraphClient, node: GraphNode, profile: Profile, check=None) -> None:
    """Attach one page of friend and follower IDs for small accounts.

    ``check`` is called before each upstream call.
    """
    if 0 < profile.friend_count <= INLINE_EXPANSION_CEILING:
        if check is not None:
            check()
        fetch_friends_page(client, node, CURSOR_START)
    if 0 < profile.follower_count <= INLINE_EXPANSION_CEILING:
        if check is not None:
            check()
        fetch_followers_page(client, node, CURSOR_START)
