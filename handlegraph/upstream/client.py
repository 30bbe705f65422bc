"""Thin social-graph API client with local rate-limit awareness."""
from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import requests
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    stop_after_delay,
    wait_exponential,
)

from ..errors import (
    PermanentAccountError,
    RateLimitedError,
    TransientUpstreamError,
    UpstreamError,
)
from ..models import Profile, normalize_cursor


LOGGER = logging.getLogger(__name__)

# Upstream error codes for accounts that will never resolve.
PERMANENT_ERROR_LABELS = {
    50: "NOT FOUND",
    63: "SUSPENDED",
}

# Calls per 15 minute window for each endpoint and credential.
QUOTA_WINDOW_SECONDS = 15 * 60
ENDPOINT_QUOTAS = {
    "friends/ids.json": 15,
    "followers/ids.json": 15,
    "users/show.json": 900,
}


@dataclass
class SlidingWindow:
    """Calls allowed per rolling window for one endpoint.

    Call times are epoch seconds so they can be stored in the owner's rate
    state file and shared by every client built for that owner.
    """

    limit: int
    window_seconds: int
    calls: List[float] = field(default_factory=list)

    def prune(self, now: float) -> None:
        cutoff = now - self.window_seconds
        self.calls = sorted(ts for ts in self.calls if ts > cutoff)

    def seconds_until_free(self, now: float) -> int:
        self.prune(now)
        if len(self.calls) < self.limit:
            return 0
        oldest = self.calls[len(self.calls) - self.limit]
        return max(int(oldest + self.window_seconds - now) + 1, 1)

    def record(self, now: float) -> None:
        self.calls.append(now)


@dataclass
class UpstreamClientConfig:
    bearer_token: str
    base_url: str = "https://api.twitter.com/1.1"
    rate_state_path: Optional[Path] = None
    timeout_seconds: float = 30
    transport_attempts: int = 3
    transport_backoff_seconds: float = 1.0


@dataclass(frozen=True)
class IdPage:
    """One page of friend or follower IDs plus the cursor for the next page."""

    ids: List[str]
    next_cursor: str


class _ServerError(Exception):
    def __init__(self, response: requests.Response) -> None:
        super().__init__(f"upstream returned {response.status_code}")
        self.response = response


def _is_retryable_error(exc: BaseException) -> bool:
    return isinstance(exc, (requests.Timeout, requests.ConnectionError, _ServerError))


def _error_codes(response: requests.Response) -> List[int]:
    try:
        payload = response.json()
    except ValueError:
        return []
    if not isinstance(payload, dict):
        return []
    codes = []
    for error in payload.get("errors") or []:
        if isinstance(error, dict) and isinstance(error.get("code"), int):
            codes.append(error["code"])
    return codes


class SocialGraphClient:
    """Account lookups and paged friend/follower ID listings for one credential.

    The client never sleeps on a rate limit. When the quota is known to be
    exhausted it raises RateLimitedError so the caller can retry on a later
    tick.
    """

    PAGE_SIZE = 5000

    def __init__(
        self,
        config: UpstreamClientConfig,
        *,
        session: Optional[requests.Session] = None,
    ) -> None:
        self._config = config
        self._base_url = config.base_url.rstrip("/")
        self._rate_state_path = config.rate_state_path
        self._last_reset_ts = 0
        self._windows: Dict[str, SlidingWindow] = {
            path: SlidingWindow(limit, QUOTA_WINDOW_SECONDS) for path, limit in ENDPOINT_QUOTAS.items()
        }
        self._load_rate_limit_state()

        self._session = session or requests.Session()
        self._session.headers.update(
            {
                "Authorization": f"Bearer {config.bearer_token}",
                "User-Agent": "HandleGraphCrawler/1.0",
            }
        )

    # ------------------------------------------------------------------
    # Rate limit persistence
    # ------------------------------------------------------------------
    def _load_rate_limit_state(self) -> None:
        """Refresh quota state from the owner's file; a missing file keeps memory."""
        if self._rate_state_path is None or not self._rate_state_path.exists():
            return
        try:
            data = json.loads(self._rate_state_path.read_text())
        except json.JSONDecodeError:
            LOGGER.warning("Ignoring unreadable rate state %s", self._rate_state_path)
            return
        self._last_reset_ts = int(data.get("reset_timestamp", 0))
        stored = data.get("windows") or {}
        for path, window in self._windows.items():
            window.calls = [float(ts) for ts in stored.get(path) or []]

    def _save_rate_limit_state(self) -> None:
        if self._rate_state_path is None:
            return
        payload = {
            "reset_timestamp": self._last_reset_ts,
            "windows": {path: window.calls for path, window in self._windows.items()},
            "persisted_at": int(time.time()),
        }
        try:
            self._rate_state_path.parent.mkdir(parents=True, exist_ok=True)
            self._rate_state_path.write_text(json.dumps(payload, indent=2))
        except OSError as exc:
            LOGGER.warning("Could not persist rate state %s: %s", self._rate_state_path, exc)

    def _claim_quota(self, path: str) -> SlidingWindow:
        """Fail fast while a 429 reset or the local window blocks ``path``."""
        self._load_rate_limit_state()
        now = time.time()
        if self._last_reset_ts and now < self._last_reset_ts:
            wait_seconds = int(self._last_reset_ts - now) + 1
            raise RateLimitedError(
                f"rate limited for another {wait_seconds} seconds",
                retry_after=wait_seconds,
            )
        window = self._windows[path]
        wait = window.seconds_until_free(now)
        if wait > 0:
            raise RateLimitedError(
                f"local quota for {path} exhausted for {wait} seconds", retry_after=wait
            )
        window.record(now)
        self._save_rate_limit_state()
        return window

    # ------------------------------------------------------------------
    # Request plumbing
    # ------------------------------------------------------------------
    def _send(self, url: str, params: Dict[str, Any]) -> requests.Response:
        def _attempt() -> requests.Response:
            response = self._session.get(url, params=params, timeout=self._config.timeout_seconds)
            if response.status_code >= 500:
                raise _ServerError(response)
            return response

        retrying = Retrying(
            # No fresh attempt once a full request timeout has been spent retrying.
            stop=(
                stop_after_attempt(self._config.transport_attempts)
                | stop_after_delay(self._config.timeout_seconds)
            ),
            wait=wait_exponential(multiplier=self._config.transport_backoff_seconds, max=10),
            retry=retry_if_exception(_is_retryable_error),
            before_sleep=before_sleep_log(LOGGER, logging.WARNING),
            reraise=True,
        )
        try:
            return retrying(_attempt)
        except _ServerError as exc:
            raise TransientUpstreamError(
                f"{url} failed with {exc.response.status_code}",
                status_code=exc.response.status_code,
            ) from exc
        except (requests.Timeout, requests.ConnectionError) as exc:
            raise TransientUpstreamError(f"{url} unreachable: {exc}") from exc
        except requests.RequestException as exc:
            raise UpstreamError(f"{url} request failed: {exc}") from exc

    def _make_request(self, path: str, params: Dict[str, Any]) -> Dict[str, Any]:
        window = self._claim_quota(path)
        url = f"{self._base_url}/{path}"
        response = self._send(url, params)

        if response.status_code == 200:
            return response.json()

        if response.status_code == 429:
            reset_header = response.headers.get("x-rate-limit-reset")
            retry_after = response.headers.get("retry-after")
            if reset_header:
                reset_ts = int(reset_header)
            elif retry_after:
                reset_ts = int(time.time()) + int(retry_after)
            else:
                reset_ts = int(time.time()) + window.window_seconds
            self._last_reset_ts = reset_ts
            self._save_rate_limit_state()
            wait_seconds = max(reset_ts - int(time.time()), 0)
            LOGGER.warning("Upstream rate-limited %s; quota resets in %s seconds", path, wait_seconds)
            raise RateLimitedError(f"{path} rate limited", retry_after=wait_seconds)

        for code in _error_codes(response):
            if code in PERMANENT_ERROR_LABELS:
                raise PermanentAccountError(
                    f"{path} failed with code {code}",
                    code=code,
                    label=PERMANENT_ERROR_LABELS[code],
                )

        LOGGER.error("Upstream returned %s for %s: %s", response.status_code, path, response.text)
        raise UpstreamError(
            f"{path} returned {response.status_code}", status_code=response.status_code
        )

    @staticmethod
    def _profile_from_payload(payload: Dict[str, Any]) -> Profile:
        return Profile(
            account_id=str(payload.get("id_str") or payload["id"]),
            screen_name=payload.get("screen_name") or "",
            profile_url=payload.get("url") or "",
            description=payload.get("description") or "",
            avatar_url=payload.get("profile_image_url_https") or "",
            friend_count=int(payload.get("friends_count") or 0),
            follower_count=int(payload.get("followers_count") or 0),
        )

    def _id_page(self, path: str, account_id: str, cursor: str, count: int) -> IdPage:
        payload = self._make_request(
            path,
            {
                "user_id": account_id,
                "cursor": cursor,
                "count": min(count, self.PAGE_SIZE),
                "stringify_ids": "true",
            },
        )
        ids = [str(value) for value in payload.get("ids") or []]
        next_cursor = payload.get("next_cursor_str", payload.get("next_cursor"))
        return IdPage(ids=ids, next_cursor=normalize_cursor(next_cursor))

    # ------------------------------------------------------------------
    # Public lookups
    # ------------------------------------------------------------------
    def lookup_by_handle(self, handle: str) -> Profile:
        payload = self._make_request("users/show.json", {"screen_name": handle.lstrip("@")})
        return self._profile_from_payload(payload)

    def lookup_by_id(self, account_id: str) -> Profile:
        payload = self._make_request("users/show.json", {"user_id": account_id})
        return self._profile_from_payload(payload)

    def friend_ids(self, account_id: str, cursor: str, count: int = PAGE_SIZE) -> IdPage:
        return self._id_page("friends/ids.json", account_id, cursor, count)

    def follower_ids(self, account_id: str, cursor: str, count: int = PAGE_SIZE) -> IdPage:
        return self._id_page("followers/ids.json", account_id, cursor, count)
