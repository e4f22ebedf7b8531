"""
GitHub GraphQL Batch Query Module.

Builds one aliased GraphQL query per batch of repositories and executes it
with aiohttp. Each repository is requested under a positional alias
(``repo0``, ``repo1``, ...) so the response can be demultiplexed in input order.
"""

import asyncio
from typing import Any, Dict, List, Optional, Sequence

from aiohttp import ClientError, ClientSession, ClientTimeout
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from config import settings, logger
from errors import (
    DashboardError,
    RateLimitError,
    UpstreamError,
    classify_status,
    is_rate_limited,
)
from miners.models import RepositoryRef
from monitoring.rate_tracker import RateTracker

REPOSITORY_FRAGMENT = """
fragment ReleaseDelta on Repository {
  name
  owner { login }
  latestRelease { tagName publishedAt createdAt name url }
  refs(refPrefix: "refs/tags/", first: 1, orderBy: {field: TAG_COMMIT_DATE, direction: DESC}) {
    nodes {
      name
      target {
        ... on Tag {
          tagger { date }
          target { ... on Commit { committedDate } }
        }
        ... on Commit { committedDate }
      }
    }
  }
  defaultBranchRef {
    target {
      ... on Commit {
        history(first: %(commits)d) {
          nodes { oid message committedDate author { name } url }
        }
      }
    }
  }
  pullRequests(states: MERGED, first: %(prs)d, orderBy: {field: UPDATED_AT, direction: DESC}) {
    nodes { number title mergedAt author { login } url }
  }
}
"""


def alias_for(index: int) -> str:
    return f"repo{index}"


def build_batch_query(
    refs: Sequence[RepositoryRef], commits_per_repo: int, prs_per_repo: int
) -> Dict[str, Any]:
    """
    Build the combined query and its variables for one batch.

    Args:
        refs (Sequence[RepositoryRef]): Repositories in the batch
        commits_per_repo (int): History page size per repository
        prs_per_repo (int): Merged pull request page size per repository

    Returns:
        Dict[str, Any]: GraphQL payload with "query" and "variables"
    """
    declarations: List[str] = []
    selections: List[str] = []
    variables: Dict[str, str] = {}
    for index, ref in enumerate(refs):
        declarations.append(f"$owner{index}: String!, $name{index}: String!")
        selections.append(
            f"  {alias_for(index)}: repository(owner: $owner{index}, name: $name{index}) "
            "{ ...ReleaseDelta }"
        )
        variables[f"owner{index}"] = ref.owner
        variables[f"name{index}"] = ref.name

    query = (
        f"query BatchReleaseDelta({', '.join(declarations)}) {{\n"
        + "\n".join(selections)
        + "\n}\n"
        + REPOSITORY_FRAGMENT % {"commits": commits_per_repo, "prs": prs_per_repo}
    )
    return {"query": query, "variables": variables}


def _is_transient(error: BaseException) -> bool:
    return isinstance(error, UpstreamError) and error.transient


class GitHubGraphQLClient:
    """Async client for combined GitHub GraphQL queries."""

    def __init__(
        self,
        rate_tracker: RateTracker,
        endpoint: Optional[str] = None,
        timeout: Optional[float] = None,
        max_attempts: Optional[int] = None,
        retry_wait: float = 1.0,
        session: Optional[ClientSession] = None,
    ) -> None:
        self.rate_tracker = rate_tracker
        self.endpoint = endpoint or settings.github_graphql_url
        self.timeout = timeout or settings.request_timeout
        self.max_attempts = max_attempts or settings.graphql_max_attempts
        self.retry_wait = retry_wait
        self._session = session
        self._session_lock = asyncio.Lock()

    async def __aenter__(self) -> "GitHubGraphQLClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()

    async def _get_session(self) -> ClientSession:
        # The session must be created inside the running event loop
        async with self._session_lock:
            if self._session is None or self._session.closed:
                self._session = ClientSession(
                    timeout=ClientTimeout(total=self.timeout),
                    headers={"User-Agent": "release-radar"},
                )
            return self._session

    async def execute(
        self, payload: Dict[str, Any], credential: str
    ) -> Dict[str, Any]:
        """
        Execute a GraphQL payload, retrying transient failures.

        Args:
            payload (Dict[str, Any]): Query and variables
            credential (str): Caller's GitHub token

        Returns:
            Dict[str, Any]: The "data" member of the response

        Raises:
            AuthError: If the credential is rejected
            RateLimitError: If the GraphQL budget is exhausted
            UpstreamError: For transport failures or responses without data
        """
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.retry_wait, max=10),
            retry=retry_if_exception(_is_transient),
            reraise=True,
        ):
            with attempt:
                return await self._post(payload, credential)

    async def _post(self, payload: Dict[str, Any], credential: str) -> Dict[str, Any]:
        session = await self._get_session()
        headers = {
            "Authorization": f"Bearer {credential.strip()}",
            "Content-Type": "application/json",
        }

        self.rate_tracker.record_call(self.endpoint)
        try:
            async with session.post(self.endpoint, json=payload, headers=headers) as response:
                try:
                    body = await response.json(content_type=None)
                except ValueError:
                    body = {"message": await response.text()}
                body = body or {}
                if response.status >= 400:
                    message = body.get("message") or response.reason or "GraphQL request failed"
                    raise classify_status(response.status, message)
        except asyncio.TimeoutError as e:
            raise UpstreamError(
                f"Timed out after {self.timeout}s during POST {self.endpoint}"
            ) from e
        except ClientError as e:
            raise UpstreamError(f"Network error during POST {self.endpoint}: {e}") from e

        return self._extract_data(body)

    def _extract_data(self, body: Dict[str, Any]) -> Dict[str, Any]:
        data = body.get("data")
        errors = body.get("errors") or []

        if errors:
            messages = [error.get("message", "") for error in errors]
            types = [str(error.get("type", "")) for error in errors]
            if any(is_rate_limited(text) for text in messages + types):
                raise RateLimitError(messages[0] or "GraphQL rate limit exceeded", 403)
            if data is None:
                raise UpstreamError(messages[0] or "GraphQL query error", 500)
            # Unknown or inaccessible repositories come back as null aliases
            logger.warning(
                {
                    "message": "GraphQL query returned partial errors",
                    "errors": messages,
                }
            )

        if data is None:
            raise UpstreamError("No data returned from GraphQL query", 500)
        return data

    async def fetch_batch(
        self,
        refs: Sequence[RepositoryRef],
        credential: str,
        commits_per_repo: int,
        prs_per_repo: int,
    ) -> List[Optional[Dict[str, Any]]]:
        """
        Fetch release data for a batch of repositories in one round trip.

        Args:
            refs (Sequence[RepositoryRef]): Repositories in the batch
            credential (str): Caller's GitHub token
            commits_per_repo (int): History page size per repository
            prs_per_repo (int): Merged pull request page size per repository

        Returns:
            List[Optional[Dict[str, Any]]]: Repository nodes in input order,
                None where the repository was not found or not accessible

        Raises:
            DashboardError: If the combined query fails as a whole
        """
        payload = build_batch_query(refs, commits_per_repo, prs_per_repo)
        try:
            data = await self.execute(payload, credential)
        except DashboardError as e:
            logger.error(
                {
                    "message": "Combined query failed",
                    "repositories": [ref.key for ref in refs],
                    "status_code": e.status_code,
                    "error": e.message,
                }
            )
            raise
        return [data.get(alias_for(index)) for index in range(len(refs))]
