"""
Batch Orchestration Module.

Resolves release markers and deltas for many repositories at once. Repositories
are split into fixed-size batches, each fetched with one combined GraphQL
query. Failures degrade through an ordered chain:

- combined query for the batch
- per-repository REST calls
- last-known cached result
- per-repository error result

A 401 from GitHub is never degraded; it propagates so the caller can force
re-authentication.
"""

import asyncio
from typing import Dict, List, Optional, Sequence, Tuple

from config import settings, logger
from errors import (
    GENERIC_FAILURE_MESSAGE,
    RATE_LIMIT_MESSAGE,
    AuthError,
    DashboardError,
    ErrorType,
    RateLimitError,
    UpstreamError,
    is_rate_limited,
)
from miners.base import ReleaseMiner
from miners.delta import result_from_node
from miners.graphql_client import GitHubGraphQLClient
from miners.models import ErrorResult, RepositoryRef, RepositoryResult
from storage.result_cache import ResultCache

NOT_FOUND_IN_BATCH_MESSAGE = "Repository not found or access denied"


class BatchOrchestrator:
    """
    Coordinates release retrieval for a list of repositories.

    Attributes:
        cache (ResultCache): Store of last-known results.
        graphql_client (GitHubGraphQLClient): Combined query client.
        miner (ReleaseMiner): Per-repository fallback tier.
        batch_size (int): Repositories per combined query.
        batch_delay (float): Pause between successive batches, in seconds.
        commits_per_repo (int): History page size per repository.
        prs_per_repo (int): Merged pull request page size per repository.
        display_limit (int): Records kept per list.
    """

    def __init__(
        self,
        cache: ResultCache,
        graphql_client: GitHubGraphQLClient,
        miner: ReleaseMiner,
        batch_size: Optional[int] = None,
        batch_delay: Optional[float] = None,
        commits_per_repo: Optional[int] = None,
        prs_per_repo: Optional[int] = None,
        display_limit: Optional[int] = None,
    ):
        """Initialize the orchestrator.

        Args:
            cache (ResultCache): Store of last-known results.
            graphql_client (GitHubGraphQLClient): Combined query client.
            miner (ReleaseMiner): Per-repository fallback tier.
            batch_size (Optional[int]): Repositories per combined query.
            batch_delay (Optional[float]): Pause between batches, in seconds.
            commits_per_repo (Optional[int]): History page size.
            prs_per_repo (Optional[int]): Merged pull request page size.
            display_limit (Optional[int]): Records kept per list.
        """
        self.cache = cache
        self.graphql_client = graphql_client
        self.miner = miner
        self.batch_size = batch_size or settings.batch_size
        self.batch_delay = (
            settings.batch_delay_seconds if batch_delay is None else batch_delay
        )
        self.commits_per_repo = commits_per_repo or settings.commits_per_repo
        self.prs_per_repo = prs_per_repo or settings.prs_per_repo
        self.display_limit = display_limit or settings.display_limit
        self._in_flight: Dict[Tuple[str, Tuple[str, ...]], asyncio.Task] = {}

    async def fetch_all(
        self,
        repos: Sequence[RepositoryRef],
        credential: str,
        force_refresh: bool = False,
    ) -> List[RepositoryResult]:
        """
        Fetch results for all repositories, in input order.

        Args:
            repos (Sequence[RepositoryRef]): Repositories to fetch
            credential (str): Caller's GitHub token
            force_refresh (bool): Bypass the cache-complete short-circuit

        Returns:
            List[RepositoryResult]: One result per input repository

        Raises:
            AuthError: If GitHub rejects the credential (401)
        """
        repos = list(repos)
        if not repos:
            return []

        if not force_refresh:
            cached = self.cache.get_many(repos)
            if cached is not None:
                logger.info(
                    {"message": "Serving cached batch data", "repositories": len(repos)}
                )
                return cached

        key = (credential, tuple(ref.key for ref in repos))
        task = self._in_flight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._orchestrate(repos, credential))
            self._in_flight[key] = task
            task.add_done_callback(lambda _: self._in_flight.pop(key, None))
        else:
            logger.info(
                {"message": "Joining in-flight refresh", "repositories": len(repos)}
            )

        # Callers may be cancelled, the shared orchestration keeps running
        return await asyncio.shield(task)

    async def fetch_one(
        self, ref: RepositoryRef, credential: str, force_refresh: bool = False
    ) -> RepositoryResult:
        """
        Fetch a single repository through the per-repository tier.

        Args:
            ref (RepositoryRef): Repository to fetch
            credential (str): Caller's GitHub token
            force_refresh (bool): Ignore any cached result

        Returns:
            RepositoryResult: Fresh, cached or error result

        Raises:
            AuthError: If GitHub rejects the credential (401)
        """
        if not force_refresh:
            cached = self.cache.get(ref)
            if cached is not None:
                logger.info({"message": "Serving cached data", "repository": ref.key})
                return cached
        return await self._fetch_individually(ref, credential)

    async def _orchestrate(
        self, repos: List[RepositoryRef], credential: str
    ) -> List[RepositoryResult]:
        batch_count = (len(repos) + self.batch_size - 1) // self.batch_size
        results: List[RepositoryResult] = []
        try:
            for number, start in enumerate(range(0, len(repos), self.batch_size), 1):
                if start > 0 and self.batch_delay > 0:
                    await asyncio.sleep(self.batch_delay)
                batch = repos[start : start + self.batch_size]
                logger.info(
                    {
                        "message": "Processing batch",
                        "batch": number,
                        "batches": batch_count,
                        "repositories": len(batch),
                    }
                )
                results.extend(await self._fetch_batch(batch, credential))
        except AuthError as e:
            if e.requires_reauth:
                raise
            return self._fallback(repos, e)
        except Exception as e:
            return self._fallback(repos, e)

        logger.info(
            {
                "message": "Fetched batch data",
                "repositories": len(repos),
                "batches": batch_count,
            }
        )
        return results

    async def _fetch_batch(
        self, batch: List[RepositoryRef], credential: str
    ) -> List[RepositoryResult]:
        try:
            nodes = await self.graphql_client.fetch_batch(
                batch, credential, self.commits_per_repo, self.prs_per_repo
            )
        except RateLimitError as e:
            # Per-repository calls would hit the same exhausted quota
            return [self._degrade(ref, e) for ref in batch]
        except AuthError as e:
            if e.requires_reauth:
                raise
            return await self._fetch_batch_individually(batch, credential)
        except DashboardError:
            return await self._fetch_batch_individually(batch, credential)

        results: List[RepositoryResult] = []
        for ref, node in zip(batch, nodes):
            if node is None:
                results.append(
                    ErrorResult(
                        owner=ref.owner,
                        name=ref.name,
                        error=NOT_FOUND_IN_BATCH_MESSAGE,
                        status_code=404,
                        error_type=ErrorType.NOT_FOUND,
                    )
                )
                continue
            try:
                result = result_from_node(ref, node, self.display_limit)
            except (KeyError, AttributeError, TypeError, ValueError) as e:
                # ValueError covers pydantic ValidationError
                logger.error(
                    {
                        "message": "Malformed repository node",
                        "repository": ref.key,
                        "error": str(e),
                    }
                )
                results.append(
                    self._degrade(ref, UpstreamError(f"Malformed repository data: {e}"))
                )
                continue
            self.cache.set(ref, result)
            results.append(result)
        return results

    async def _fetch_batch_individually(
        self, batch: List[RepositoryRef], credential: str
    ) -> List[RepositoryResult]:
        logger.warning(
            {
                "message": "Falling back to per-repository requests",
                "repositories": [ref.key for ref in batch],
            }
        )
        # Let every sibling finish before surfacing a reauthentication error
        outcomes = await asyncio.gather(
            *(self._fetch_individually(ref, credential) for ref in batch),
            return_exceptions=True,
        )
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                raise outcome
        return list(outcomes)

    async def _fetch_individually(
        self, ref: RepositoryRef, credential: str
    ) -> RepositoryResult:
        try:
            result = await self.miner.mine_repository(ref, credential)
        except AuthError as e:
            if e.requires_reauth:
                raise
            return self._degrade(ref, e)
        except DashboardError as e:
            return self._degrade(ref, e)

        self.cache.set(ref, result)
        logger.info({"message": "Fetched and cached data", "repository": ref.key})
        return result

    def _degrade(self, ref: RepositoryRef, error: DashboardError) -> RepositoryResult:
        cached = self.cache.get(ref)
        if cached is not None:
            logger.warning(
                {
                    "message": "Serving cached data after failure",
                    "repository": ref.key,
                    "error": error.message,
                }
            )
            return cached

        logger.error(
            {
                "message": "Error fetching repository data",
                "repository": ref.key,
                "status_code": error.status_code,
                "error": error.message,
            }
        )
        return ErrorResult.from_error(ref, error)

    def _fallback(
        self, repos: List[RepositoryRef], error: Exception
    ) -> List[RepositoryResult]:
        """Serve cached results, or error results, after an orchestration failure."""
        status_code = getattr(error, "status_code", None)
        message = getattr(error, "message", None) or str(error)
        rate_limited = isinstance(error, RateLimitError) or is_rate_limited(
            message, status_code
        )
        logger.error(
            {
                "message": "Error in batch fetch",
                "error": message,
                "status_code": status_code,
                "rate_limited": rate_limited,
            },
            exc_info=not isinstance(error, DashboardError),
        )

        results: List[RepositoryResult] = []
        for ref in repos:
            cached = self.cache.get(ref)
            if cached is not None:
                results.append(cached)
                continue
            results.append(
                ErrorResult(
                    owner=ref.owner,
                    name=ref.name,
                    error=RATE_LIMIT_MESSAGE if rate_limited else GENERIC_FAILURE_MESSAGE,
                    message=message,
                    status_code=status_code,
                    error_type=ErrorType.RATE_LIMIT if rate_limited else ErrorType.UPSTREAM,
                )
            )
        return results
