"""Crawl state machine: tick engine, driver and job operations."""

from .cancel import CancelToken
from .driver import AuthorizationPolicy, Driver, DriverReport, OutcomeKind, TickOutcome, TickThrottle
from .engine import TickEngine

__all__ = [
    "AuthorizationPolicy",
    "CancelToken",
    "Driver",
    "DriverReport",
    "OutcomeKind",
    "TickEngine",
    "TickOutcome",
    "TickThrottle",
]
