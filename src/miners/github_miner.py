"""
GitHub Release Mining Module.

Per-repository release resolution and delta retrieval through the GitHub REST
API. PyGithub is blocking, so every call runs on a worker thread and the
results are converted to the dashboard models.
"""

import asyncio
import threading
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

import requests
from github import Auth, Github, GithubException, UnknownObjectException
from github.Repository import Repository

from config import settings, logger
from errors import DashboardError, UpstreamError, from_github_exception
from miners.base import ReleaseMiner
from miners.delta import DISPLAY_LIMIT, SHORT_SHA_LENGTH, compute_delta, first_line, tag_url
from miners.models import (
    CommitRecord,
    Delta,
    PullRequestRecord,
    ReleaseMarker,
    RepositoryRef,
)
from monitoring.rate_tracker import RateTracker, RemoteRateUsage


class GitHubMiner(ReleaseMiner):
    """
    GitHubMiner resolves releases and deltas one repository at a time.
    It is the fallback tier when the combined GraphQL query fails.
    """

    def __init__(
        self,
        rate_tracker: RateTracker,
        api_url: Optional[str] = None,
        page_size: Optional[int] = None,
        display_limit: int = DISPLAY_LIMIT,
        timeout: Optional[float] = None,
        client_factory: Optional[Callable[[str], Github]] = None,
        pr_page_size: Optional[int] = None,
    ):
        """Initialize the miner.

        Args:
            rate_tracker (RateTracker): Tracker recording every outbound call.
            api_url (Optional[str]): GitHub REST API base URL.
            page_size (Optional[int]): Bounded commit history page size.
            display_limit (int): Records kept per list.
            timeout (Optional[float]): HTTP timeout in seconds.
            client_factory (Optional[Callable[[str], Github]]): Builds a client
                for a credential.
            pr_page_size (Optional[int]): Bounded merged pull request page size.
        """
        self.rate_tracker = rate_tracker
        self.api_url = (api_url or settings.github_api_url).rstrip("/")
        self.page_size = page_size or settings.commits_per_repo
        self.pr_page_size = pr_page_size or settings.prs_per_repo
        self.display_limit = display_limit
        self.timeout = timeout or settings.request_timeout
        self._client_factory = client_factory or self._default_client
        self._clients: Dict[str, Github] = {}
        self._clients_lock = threading.Lock()

    def _default_client(self, credential: str) -> Github:
        return Github(
            auth=Auth.Token(credential),
            base_url=self.api_url,
            per_page=max(self.page_size, self.pr_page_size),
            timeout=int(self.timeout),
        )

    def _client(self, credential: str) -> Github:
        """Reuse one client, and its HTTP session, per credential."""
        credential = credential.strip()
        with self._clients_lock:
            client = self._clients.get(credential)
            if client is None:
                client = self._client_factory(credential)
                self._clients[credential] = client
            return client

    async def close(self) -> None:
        with self._clients_lock:
            clients = list(self._clients.values())
            self._clients.clear()
        for client in clients:
            client.close()

    def _track(self, ref: RepositoryRef, path: str) -> None:
        self.rate_tracker.record_call(f"{self.api_url}/repos/{ref.key}/{path}")

    async def _run(self, ref: RepositoryRef, func: Callable[..., Any], *args: Any) -> Any:
        """
        Run a blocking PyGithub call on a worker thread.

        Raises:
            DashboardError: Mapped from PyGithub and transport exceptions
        """
        try:
            return await asyncio.to_thread(func, *args)
        except DashboardError:
            raise
        except GithubException as e:
            error = from_github_exception(e)
            logger.error(
                {
                    "message": "GitHub REST request failed",
                    "repository": ref.key,
                    "status_code": error.status_code,
                    "error": error.message,
                }
            )
            raise error from e
        except requests.RequestException as e:
            logger.error(
                {
                    "message": "Network error during GitHub REST request",
                    "repository": ref.key,
                    "error": str(e),
                }
            )
            raise UpstreamError(f"Network error: {e}") from e

    def _repository(self, ref: RepositoryRef, credential: str) -> Repository:
        # Lazy repository objects do not issue a request
        return self._client(credential).get_repo(ref.key, lazy=True)

    def _latest_release(
        self, ref: RepositoryRef, credential: str
    ) -> Optional[ReleaseMarker]:
        repo = self._repository(ref, credential)
        self._track(ref, "releases/latest")
        try:
            release = repo.get_latest_release()
        except UnknownObjectException:
            logger.debug(
                {"message": "No published release, using tags", "repository": ref.key}
            )
            return self._latest_tag(ref, repo)

        return ReleaseMarker(
            tag=release.tag_name,
            date=release.published_at or release.created_at,
            display_name=release.title or release.tag_name,
            url=release.html_url,
        )

    def _latest_tag(self, ref: RepositoryRef, repo: Repository) -> Optional[ReleaseMarker]:
        self._track(ref, "tags")
        tags = repo.get_tags().get_page(0)
        if not tags:
            return None

        tag_name = tags[0].name
        self._track(ref, f"git/refs/tags/{tag_name}")
        git_ref = repo.get_git_ref(f"tags/{tag_name}")
        sha = git_ref.object.sha

        # Annotated tags point to a tag object which points to the commit
        if git_ref.object.type == "tag":
            self._track(ref, f"git/tags/{sha}")
            sha = repo.get_git_tag(sha).object.sha

        self._track(ref, f"git/commits/{sha}")
        commit = repo.get_git_commit(sha)

        return ReleaseMarker(
            tag=tag_name,
            date=commit.committer.date,
            display_name=tag_name,
            url=tag_url(ref, tag_name),
        )

    def _commits_since(
        self, ref: RepositoryRef, credential: str, marker: ReleaseMarker
    ) -> List[CommitRecord]:
        repo = self._repository(ref, credential)
        self._track(ref, "commits")
        page = repo.get_commits(since=marker.date).get_page(0)[: self.page_size]
        return [
            CommitRecord(
                sha=commit.sha[:SHORT_SHA_LENGTH],
                message=first_line(commit.commit.message),
                author=commit.commit.author.name or "Unknown",
                date=commit.commit.committer.date,
                url=commit.html_url,
            )
            for commit in page
        ]

    def _merged_pulls_since(
        self, ref: RepositoryRef, credential: str
    ) -> List[PullRequestRecord]:
        repo = self._repository(ref, credential)
        self._track(ref, "pulls")
        pulls = repo.get_pulls(state="closed", sort="updated", direction="desc")
        page = pulls.get_page(0)[: self.pr_page_size]
        return [
            PullRequestRecord(
                number=pr.number,
                title=pr.title,
                merged_at=pr.merged_at,
                author=pr.user.login if pr.user else "Unknown",
                url=pr.html_url,
            )
            for pr in page
            if pr.merged_at is not None
        ]

    async def resolve_release(
        self, ref: RepositoryRef, credential: str
    ) -> Optional[ReleaseMarker]:
        """
        Resolve the latest release, falling back to the most recent tag.

        Args:
            ref (RepositoryRef): Repository to inspect
            credential (str): Caller's GitHub token

        Returns:
            Optional[ReleaseMarker]: Marker, or None without releases and tags

        Raises:
            AuthError: If the credential is rejected or lacks access
            NotFoundError: If the repository does not exist
            UpstreamError: For any other failure
        """
        marker = await self._run(ref, self._latest_release, ref, credential)
        if marker is None:
            logger.info({"message": "No releases or tags found", "repository": ref.key})
        return marker

    async def fetch_delta(
        self, ref: RepositoryRef, marker: ReleaseMarker, credential: str
    ) -> Delta:
        """
        Fetch commits and merged pull requests newer than the marker.

        Both lists come from a single bounded page, so a repository with more
        unreleased changes than the page size is undercounted.

        Args:
            ref (RepositoryRef): Repository to inspect
            marker (ReleaseMarker): Change boundary
            credential (str): Caller's GitHub token

        Returns:
            Delta: Newest-first changes, truncated for display
        """
        commits, prs = await asyncio.gather(
            self._run(ref, self._commits_since, ref, credential, marker),
            self._run(ref, self._merged_pulls_since, ref, credential),
        )
        delta = compute_delta(marker, commits, prs, self.display_limit)
        logger.info(
            {
                "message": "Fetched repository delta",
                "repository": ref.key,
                "release": marker.tag,
                "commits_count": delta.commits_count,
                "prs_count": delta.prs_count,
            }
        )
        return delta

    def _remote_usage(self, credential: str) -> RemoteRateUsage:
        # GET /rate_limit does not count against the quota, so it is not tracked
        resources = self._client(credential).get_rate_limit().resources
        core, graphql = resources.core, resources.graphql
        return RemoteRateUsage.from_buckets(
            core_limit=core.limit,
            core_remaining=core.remaining,
            core_reset=core.reset.replace(tzinfo=timezone.utc),
            graphql_limit=graphql.limit,
            graphql_remaining=graphql.remaining,
            now=datetime.now(timezone.utc),
        )

    async def get_rate_limit(self, credential: str) -> Optional[RemoteRateUsage]:
        """
        Read GitHub's own view of the credential's quota.

        Args:
            credential (str): Caller's GitHub token

        Returns:
            Optional[RemoteRateUsage]: Core and GraphQL usage, or None if the
                rate limit endpoint could not be read
        """
        try:
            usage = await asyncio.to_thread(self._remote_usage, credential)
        except (GithubException, requests.RequestException) as e:
            logger.warning(
                {"message": "Failed to get rate limit", "error": str(e)}
            )
            return None

        logger.info(
            {
                "message": "GitHub API rate limit status",
                "remaining_points": usage.remaining,
                "total_points": usage.limit,
                "reset_time": usage.reset_at.isoformat(),
                "minutes_to_reset": usage.reset_in_minutes,
            }
        )
        return usage
