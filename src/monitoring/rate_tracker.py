"""
GitHub API Rate Tracking Module.

Counts outbound GitHub API calls within a rolling one hour window and reports
usage for the dashboard. The tracker only observes calls; it never delays or
rejects them.
"""

import math
import threading
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable, Optional
from urllib.parse import urlparse

from pydantic import Field

from config import logger
from miners.models import DashboardModel

RATE_WINDOW = timedelta(hours=1)
DEFAULT_LIMIT = 5000


class RateUsage(DashboardModel):
    """Snapshot of the hourly GitHub API budget."""

    used: int
    limit: int = DEFAULT_LIMIT
    remaining: int
    percentage: int
    reset_in_minutes: int = Field(ge=0)
    reset_at: datetime


def usage_percentage(used: int, limit: int) -> int:
    # Half-up rounding, round() would round half to even
    return math.floor(used * 100 / limit + 0.5) if limit else 0


def minutes_until(reset_at: datetime, now: datetime) -> int:
    return int(max(timedelta(0), reset_at - now).total_seconds() // 60)


class QuotaUsage(DashboardModel):
    """Usage of one GitHub quota bucket."""

    used: int
    limit: int
    remaining: int


class RemoteRateUsage(RateUsage):
    """
    Quota as reported by GitHub's rate limit endpoint.

    The top-level fields describe the REST (core) bucket; ``graphql``
    describes the GraphQL bucket.
    """

    graphql: QuotaUsage

    @classmethod
    def from_buckets(
        cls,
        core_limit: int,
        core_remaining: int,
        core_reset: datetime,
        graphql_limit: int,
        graphql_remaining: int,
        now: datetime,
    ) -> "RemoteRateUsage":
        used = core_limit - core_remaining
        return cls(
            used=used,
            limit=core_limit,
            remaining=core_remaining,
            percentage=usage_percentage(used, core_limit),
            reset_in_minutes=minutes_until(core_reset, now),
            reset_at=core_reset,
            graphql=QuotaUsage(
                used=graphql_limit - graphql_remaining,
                limit=graphql_limit,
                remaining=graphql_remaining,
            ),
        )


class RateTracker:
    """
    Process-wide counter of GitHub API calls.

    Attributes:
        limit (int): Hourly call budget
        api_hosts (frozenset): Hosts whose calls are counted
    """

    def __init__(
        self,
        limit: int = DEFAULT_LIMIT,
        api_hosts: Iterable[str] = ("api.github.com",),
        clock: Optional[Callable[[], datetime]] = None,
        log_every: int = 50,
        warn_ratio: float = 0.9,
    ):
        """
        Initialize the tracker with a fresh one hour window.

        Args:
            limit (int): Hourly call budget
            api_hosts (Iterable[str]): Hosts whose calls are counted
            clock (Optional[Callable[[], datetime]]): Source of the current UTC time
            log_every (int): Log usage every N calls
            warn_ratio (float): Usage ratio above which every call logs a warning
        """
        self.limit = limit
        self.api_hosts = frozenset(host.lower() for host in api_hosts)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._log_every = log_every
        self._warn_threshold = int(limit * warn_ratio)
        self._lock = threading.Lock()
        self._used = 0
        self._reset_at = self._clock() + RATE_WINDOW

    def record_call(self, url: str) -> int:
        """
        Count a call made to the given URL.

        Args:
            url (str): Target URL of the outbound request

        Returns:
            int: Calls used in the current window, 0 if the host is not tracked
        """
        host = (urlparse(url).hostname or "").lower()
        if host not in self.api_hosts:
            return 0

        with self._lock:
            now = self._clock()
            if now > self._reset_at:
                self._used = 1
                self._reset_at = now + RATE_WINDOW
                logger.info(
                    {
                        "message": "Rate limit counter reset",
                        "reset_at": self._reset_at.isoformat(),
                    }
                )
            else:
                self._used += 1
            used = self._used

        if used % self._log_every == 0 or used > self._warn_threshold:
            remaining = max(0, self.limit - used)
            log = logger.warning if used > self._warn_threshold else logger.info
            log(
                {
                    "message": "GitHub API calls this hour",
                    "used": used,
                    "limit": self.limit,
                    "remaining": remaining,
                }
            )
        return used

    def get_usage(self) -> RateUsage:
        """
        Build a usage snapshot.

        Returns:
            RateUsage: Current counter, remaining budget and reset time
        """
        with self._lock:
            used = self._used
            reset_at = self._reset_at

        return RateUsage(
            used=used,
            limit=self.limit,
            remaining=max(0, self.limit - used),
            percentage=usage_percentage(used, self.limit),
            reset_in_minutes=minutes_until(reset_at, self._clock()),
            reset_at=reset_at,
        )
