"""
Abstract Base Class for Release Miners.

Defines the interface for per-repository release data retrieval.
The orchestrator falls back to a miner when the combined query fails.
"""

from abc import ABC, abstractmethod
from typing import Optional

from miners.delta import build_result
from miners.models import Delta, ReleaseMarker, RepositoryRef, RepositoryResult
from monitoring.rate_tracker import RateUsage


class ReleaseMiner(ABC):
    """
    Abstract base class for release miners.

    Defines the contract for resolving release markers and the changes that
    landed after them. Implementations should handle:
    - Authentication with the repository service
    - Mapping service failures to dashboard errors
    - Rate tracking of outbound calls
    """

    @abstractmethod
    async def resolve_release(
        self, ref: RepositoryRef, credential: str
    ) -> Optional[ReleaseMarker]:
        """
        Resolve the current release marker of a repository.

        Args:
            ref (RepositoryRef): Repository to inspect
            credential (str): Caller's GitHub token

        Returns:
            Optional[ReleaseMarker]: Marker, or None without releases and tags

        Raises:
            DashboardError: If the service rejects or fails the request
        """
        pass

    @abstractmethod
    async def fetch_delta(
        self, ref: RepositoryRef, marker: ReleaseMarker, credential: str
    ) -> Delta:
        """
        Retrieve commits and merged pull requests newer than the marker.

        Args:
            ref (RepositoryRef): Repository to inspect
            marker (ReleaseMarker): Change boundary
            credential (str): Caller's GitHub token

        Returns:
            Delta: Newest-first changes, truncated for display

        Raises:
            DashboardError: If the service rejects or fails the request
        """
        pass

    async def mine_repository(
        self, ref: RepositoryRef, credential: str
    ) -> RepositoryResult:
        """Resolve the release marker and its delta for one repository."""
        marker = await self.resolve_release(ref, credential)
        if marker is None:
            return build_result(ref, None, None)
        delta = await self.fetch_delta(ref, marker, credential)
        return build_result(ref, marker, delta)

    async def get_rate_limit(self, credential: str) -> Optional[RateUsage]:
        """Quota reported by the service, None when it exposes none."""
        return None

    async def close(self) -> None:
        """Release any clients held by the miner."""
