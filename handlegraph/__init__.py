"""Resumable friend/follower graph crawler."""

__version__ = "0.1.0"
