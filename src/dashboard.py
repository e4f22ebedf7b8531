"""
Release Dashboard Service Module.

The surface the presentation layer talks to. Wires the rate tracker, result
cache, miners and orchestrator together and exposes result and usage queries
for authorized sessions.
"""

from typing import List, Optional, Sequence

from config import Settings, settings as default_settings, logger
from auth.access_gate import AccessGate, Session
from miners.base import ReleaseMiner
from miners.github_miner import GitHubMiner
from miners.graphql_client import GitHubGraphQLClient
from miners.models import RepositoryRef, RepositoryResult
from monitoring.rate_tracker import RateTracker, RateUsage, RemoteRateUsage
from orchestration.batch_orchestrator import BatchOrchestrator
from storage.result_cache import ResultCache


class ReleaseDashboard:
    """
    Entry point for release data requests.

    Every collaborator can be injected; missing ones are built from settings.
    """

    def __init__(
        self,
        config: Optional[Settings] = None,
        rate_tracker: Optional[RateTracker] = None,
        cache: Optional[ResultCache] = None,
        miner: Optional[ReleaseMiner] = None,
        graphql_client: Optional[GitHubGraphQLClient] = None,
        access_gate: Optional[AccessGate] = None,
        orchestrator: Optional[BatchOrchestrator] = None,
    ):
        self.config = config or default_settings
        self.rate_tracker = rate_tracker or RateTracker(
            limit=self.config.rate_limit, api_hosts=self.config.api_hosts
        )
        self.cache = cache or ResultCache(self.config.cache_file)
        self.miner = miner or GitHubMiner(
            self.rate_tracker,
            api_url=self.config.github_api_url,
            page_size=self.config.commits_per_repo,
            display_limit=self.config.display_limit,
            timeout=self.config.request_timeout,
            pr_page_size=self.config.prs_per_repo,
        )
        self.graphql_client = graphql_client or GitHubGraphQLClient(
            self.rate_tracker,
            endpoint=self.config.github_graphql_url,
            timeout=self.config.request_timeout,
            max_attempts=self.config.graphql_max_attempts,
        )
        self.access_gate = access_gate or AccessGate(
            self.rate_tracker,
            allowed_org=self.config.allowed_org,
            api_url=self.config.github_api_url,
        )
        self.orchestrator = orchestrator or BatchOrchestrator(
            self.cache,
            self.graphql_client,
            self.miner,
            batch_size=self.config.batch_size,
            batch_delay=self.config.batch_delay_seconds,
            commits_per_repo=self.config.commits_per_repo,
            prs_per_repo=self.config.prs_per_repo,
            display_limit=self.config.display_limit,
        )

    async def __aenter__(self) -> "ReleaseDashboard":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def close(self) -> None:
        await self.graphql_client.close()
        await self.miner.close()

    def configured_repositories(self) -> List[RepositoryRef]:
        return [RepositoryRef.parse(name) for name in self.config.repository_names]

    async def authorize(self, credential: str) -> Session:
        return await self.access_gate.authorize(credential)

    async def get_result(
        self,
        session: Session,
        repos: Optional[Sequence[RepositoryRef]] = None,
        force_refresh: bool = False,
    ) -> List[RepositoryResult]:
        """
        Get release results for repositories.

        Args:
            session (Session): Authorized session
            repos (Optional[Sequence[RepositoryRef]]): Repositories to fetch,
                the configured list when None
            force_refresh (bool): Bypass cached results

        Returns:
            List[RepositoryResult]: One result per repository, in order

        Raises:
            AuthError: If GitHub rejects the session credential
        """
        repos = self.configured_repositories() if repos is None else list(repos)
        logger.info(
            {
                "message": "Release data requested",
                "login": session.identity.login,
                "repositories": len(repos),
                "force_refresh": force_refresh,
            }
        )
        return await self.orchestrator.fetch_all(
            repos, session.credential.get_secret_value(), force_refresh
        )

    async def get_repository(
        self, session: Session, ref: RepositoryRef, force_refresh: bool = False
    ) -> RepositoryResult:
        return await self.orchestrator.fetch_one(
            ref, session.credential.get_secret_value(), force_refresh
        )

    def get_rate_usage(self) -> RateUsage:
        return self.rate_tracker.get_usage()

    async def get_remote_rate_limit(self, session: Session) -> Optional[RemoteRateUsage]:
        """
        Get GitHub's own quota figures for the session credential.

        Unlike get_rate_usage, which counts calls made by this process, this
        reflects every client sharing the credential.

        Args:
            session (Session): Authorized session

        Returns:
            Optional[RemoteRateUsage]: Core and GraphQL usage, or None when
                GitHub could not be asked
        """
        return await self.miner.get_rate_limit(session.credential.get_secret_value())
