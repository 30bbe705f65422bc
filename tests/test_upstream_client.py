"""Unit tests for SocialGraphClient with a mocked requests session."""
from __future__ import annotations

import json
import time
from typing import Any, Dict, Optional
from unittest.mock import Mock

import pytest
import requests

from handlegraph.errors import (
    PermanentAccountError,
    RateLimitedError,
    TransientUpstreamError,
    UpstreamError,
)
from handlegraph.upstream.client import SocialGraphClient, UpstreamClientConfig

pytestmark = pytest.mark.unit


def _response(status: int, payload: Optional[Dict[str, Any]] = None, headers=None) -> Mock:
    response = Mock()
    response.status_code = status
    response.json.return_value = payload if payload is not None else {}
    response.headers = headers or {}
    response.text = json.dumps(payload or {})
    return response


def _client(session: Mock, tmp_path=None) -> SocialGraphClient:
    session.headers = {}
    config = UpstreamClientConfig(
        bearer_token="token",
        base_url="https://api.example.com/1.1/",
        rate_state_path=(tmp_path / "rate.json") if tmp_path is not None else None,
        transport_attempts=3,
        transport_backoff_seconds=0,
    )
    return SocialGraphClient(config, session=session)


# ==============================================================================
# Successful calls
# ==============================================================================

def test_follower_ids_returns_page_and_cursor():
    session = Mock()
    session.get.return_value = _response(200, {"ids": ["1", "2"], "next_cursor_str": "tok1"})
    client = _client(session)

    page = client.follower_ids("100", "-1")

    assert page.ids == ["1", "2"]
    assert page.next_cursor == "tok1"
    args, kwargs = session.get.call_args
    assert args[0] == "https://api.example.com/1.1/followers/ids.json"
    assert kwargs["params"] == {
        "user_id": "100",
        "cursor": "-1",
        "count": 5000,
        "stringify_ids": "true",
    }
    assert kwargs["timeout"] == 30


def test_last_page_cursor_is_zero():
    session = Mock()
    session.get.return_value = _response(200, {"ids": [7], "next_cursor": 0})

    page = _client(session).friend_ids("100", "tok1")

    assert page.ids == ["7"]
    assert page.next_cursor == "0"


def test_session_carries_bearer_token():
    session = Mock()
    _client(session)
    assert session.headers["Authorization"] == "Bearer token"


def test_lookup_by_id_maps_profile_fields():
    session = Mock()
    session.get.return_value = _response(
        200,
        {
            "id": 42,
            "id_str": "42",
            "screen_name": "answer",
            "url": "https://example.com",
            "description": "bio",
            "profile_image_url_https": "https://img.example.com/42.png",
            "friends_count": 3,
            "followers_count": 9,
        },
    )

    profile = _client(session).lookup_by_id("42")

    assert profile.account_id == "42"
    assert profile.screen_name == "answer"
    assert profile.avatar_url == "https://img.example.com/42.png"
    assert (profile.friend_count, profile.follower_count) == (3, 9)


def test_lookup_by_handle_strips_at_sign():
    session = Mock()
    session.get.return_value = _response(200, {"id_str": "1", "screen_name": "who"})

    _client(session).lookup_by_handle("@who")

    assert session.get.call_args.kwargs["params"] == {"screen_name": "who"}


# ==============================================================================
# Error mapping
# ==============================================================================

@pytest.mark.parametrize("status, code, label", [(403, 63, "SUSPENDED"), (404, 50, "NOT FOUND")])
def test_permanent_account_errors(status, code, label):
    session = Mock()
    session.get.return_value = _response(status, {"errors": [{"code": code, "message": "gone"}]})

    with pytest.raises(PermanentAccountError) as info:
        _client(session).lookup_by_id("9")

    assert info.value.code == code
    assert info.value.label == label


def test_other_client_errors_are_not_permanent():
    session = Mock()
    session.get.return_value = _response(401, {"errors": [{"code": 89, "message": "bad token"}]})

    with pytest.raises(UpstreamError) as info:
        _client(session).lookup_by_id("9")

    assert not isinstance(info.value, PermanentAccountError)
    assert info.value.status_code == 401


def test_rate_limit_persists_reset_and_fails_fast(tmp_path):
    reset = int(time.time()) + 600
    session = Mock()
    session.get.return_value = _response(429, {}, headers={"x-rate-limit-reset": str(reset)})
    client = _client(session, tmp_path)

    with pytest.raises(RateLimitedError):
        client.follower_ids("100", "-1")
    assert json.loads((tmp_path / "rate.json").read_text())["reset_timestamp"] == reset

    with pytest.raises(RateLimitedError) as info:
        client.lookup_by_id("1")
    assert session.get.call_count == 1
    assert info.value.retry_after > 0


def test_persisted_reset_is_loaded_by_new_client(tmp_path):
    (tmp_path / "rate.json").write_text(json.dumps({"reset_timestamp": int(time.time()) + 300}))
    session = Mock()

    with pytest.raises(RateLimitedError):
        _client(session, tmp_path).lookup_by_id("1")
    session.get.assert_not_called()


def test_expired_reset_does_not_block(tmp_path):
    (tmp_path / "rate.json").write_text(json.dumps({"reset_timestamp": int(time.time()) - 5}))
    session = Mock()
    session.get.return_value = _response(200, {"id_str": "1", "screen_name": "one"})

    assert _client(session, tmp_path).lookup_by_id("1").screen_name == "one"


def test_local_window_refuses_sixteenth_page():
    session = Mock()
    session.get.return_value = _response(200, {"ids": [], "next_cursor": 0})
    client = _client(session)

    for _ in range(15):
        client.friend_ids("100", "-1")
    with pytest.raises(RateLimitedError):
        client.friend_ids("100", "-1")

    assert session.get.call_count == 15


def test_local_window_is_shared_through_state_file(tmp_path):
    session = Mock()
    session.get.return_value = _response(200, {"ids": [], "next_cursor": 0})

    for _ in range(15):
        _client(session, tmp_path).follower_ids("100", "-1")
    with pytest.raises(RateLimitedError) as info:
        _client(session, tmp_path).follower_ids("100", "-1")

    assert session.get.call_count == 15
    assert 0 < info.value.retry_after <= 15 * 60 + 1
    stored = json.loads((tmp_path / "rate.json").read_text())
    assert len(stored["windows"]["followers/ids.json"]) == 15
    # Other endpoints keep their own quota.
    assert _client(session, tmp_path).friend_ids("100", "-1").ids == []


def test_calls_older_than_window_are_forgotten(tmp_path):
    stale = time.time() - 15 * 60 - 5
    (tmp_path / "rate.json").write_text(
        json.dumps({"reset_timestamp": 0, "windows": {"friends/ids.json": [stale] * 15}})
    )
    session = Mock()
    session.get.return_value = _response(200, {"ids": ["1"], "next_cursor": 0})

    assert _client(session, tmp_path).friend_ids("100", "-1").ids == ["1"]


# ==============================================================================
# Transport retries
# ==============================================================================

def test_server_errors_are_retried_then_succeed():
    session = Mock()
    session.get.side_effect = [
        _response(503),
        _response(502),
        _response(200, {"ids": ["1"], "next_cursor": 0}),
    ]

    page = _client(session).follower_ids("100", "-1")

    assert page.ids == ["1"]
    assert session.get.call_count == 3


def test_persistent_timeouts_raise_transient_error():
    session = Mock()
    session.get.side_effect = requests.Timeout("slow")

    with pytest.raises(TransientUpstreamError):
        _client(session).lookup_by_id("1")

    assert session.get.call_count == 3


def test_persistent_server_error_keeps_status():
    session = Mock()
    session.get.return_value = _response(500)

    with pytest.raises(TransientUpstreamError) as info:
        _client(session).lookup_by_id("1")

    assert info.value.status_code == 500
