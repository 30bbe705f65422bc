"""Social-graph API access."""

from .client import IdPage, SlidingWindow, SocialGraphClient, UpstreamClientConfig

__all__ = ["IdPage", "SlidingWindow", "SocialGraphClient", "UpstreamClientConfig"]
