"""
Batch Orchestrator Test Suite.

This module contains tests for the BatchOrchestrator class, covering:
- Cache short-circuit and forced refresh
- Batch partitioning and result ordering
- Fallback from the combined query to per-repository calls and cache
- Authentication and rate limit failures
"""

import asyncio
from datetime import datetime, timezone
from unittest.mock import AsyncMock, Mock, patch

import pytest

from errors import AuthError, ErrorType, RateLimitError, UpstreamError
from miners.models import (
    ErrorResult,
    NoReleaseResult,
    ReleasedResult,
    ReleaseMarker,
    RepositoryRef,
)
from orchestration.batch_orchestrator import BatchOrchestrator
from storage.result_cache import ResultCache


def released(ref: RepositoryRef, tag: str = "v1.0.0") -> ReleasedResult:
    return ReleasedResult(
        owner=ref.owner,
        name=ref.name,
        release=ReleaseMarker(
            tag=tag,
            date=datetime(2024, 1, 1, tzinfo=timezone.utc),
            display_name=tag,
            url=f"https://github.com/{ref.key}/releases/tag/{tag}",
        ),
        has_changes=False,
        commits_count=0,
        prs_count=0,
        commits=[],
        prs=[],
    )


@pytest.fixture
def cache():
    """Fresh in-memory result cache."""
    return ResultCache()


@pytest.fixture
def mock_graphql(node_factory):
    """Mock combined query client returning one node per repository."""
    client = Mock()

    async def fetch_batch(refs, credential, commits_per_repo, prs_per_repo):
        return [node_factory(tag_name=f"{ref.name}-v1") for ref in refs]

    client.fetch_batch = AsyncMock(side_effect=fetch_batch)
    return client


@pytest.fixture
def mock_miner():
    """Mock per-repository miner."""
    miner = Mock()
    miner.mine_repository = AsyncMock()
    return miner


@pytest.fixture
def orchestrator(cache, mock_graphql, mock_miner):
    """Orchestrator with a batch size of 10 and no inter-batch delay."""
    return BatchOrchestrator(
        cache,
        mock_graphql,
        mock_miner,
        batch_size=10,
        batch_delay=0,
        commits_per_repo=30,
        prs_per_repo=30,
        display_limit=10,
    )


@pytest.mark.asyncio
async def test_fetch_all_excludes_commits_before_release(
    orchestrator, mock_graphql, node_factory, repo_ref
):
    """Release dated 2024-01-01 keeps only the 2024-01-02 commit."""
    mock_graphql.fetch_batch.side_effect = None
    mock_graphql.fetch_batch.return_value = [
        node_factory(
            commits=[
                ("1111111aaaa", "2024-01-02T00:00:00Z"),
                ("2222222bbbb", "2023-12-31T00:00:00Z"),
            ]
        )
    ]

    results = await orchestrator.fetch_all([repo_ref], "token")

    assert len(results) == 1
    assert [commit.sha for commit in results[0].commits] == ["1111111"]
    assert results[0].has_changes is True


@pytest.mark.asyncio
async def test_no_release_result_is_cached(
    orchestrator, mock_graphql, node_factory, repo_ref, cache
):
    mock_graphql.fetch_batch.side_effect = None
    mock_graphql.fetch_batch.return_value = [node_factory(release_date=None)]

    results = await orchestrator.fetch_all([repo_ref], "token")

    assert isinstance(results[0], NoReleaseResult)
    assert results[0].error == "No releases or tags found"
    assert cache.get(repo_ref) == results[0]


@pytest.mark.asyncio
async def test_second_call_served_from_cache(orchestrator, mock_graphql, repo_refs):
    """Repeated non-forced calls return identical results without remote calls."""
    repos = repo_refs(3)

    first = await orchestrator.fetch_all(repos, "token")
    second = await orchestrator.fetch_all(repos, "token")

    assert first == second
    assert mock_graphql.fetch_batch.call_count == 1


@pytest.mark.asyncio
async def test_partial_cache_triggers_fetch(orchestrator, mock_graphql, repo_refs, cache):
    repos = repo_refs(2)
    cache.set(repos[0], released(repos[0]))

    await orchestrator.fetch_all(repos, "token")

    assert mock_graphql.fetch_batch.call_count == 1


@pytest.mark.asyncio
async def test_force_refresh_overrides_cache(
    orchestrator, mock_graphql, node_factory, repo_ref, cache
):
    cache.set(repo_ref, released(repo_ref, tag="v0.1.0"))
    mock_graphql.fetch_batch.side_effect = None
    mock_graphql.fetch_batch.return_value = [node_factory(tag_name="v2.0.0")]

    refreshed = await orchestrator.fetch_all([repo_ref], "token", force_refresh=True)
    cached = await orchestrator.fetch_all([repo_ref], "token")

    assert refreshed[0].release.tag == "v2.0.0"
    assert cached == refreshed
    assert mock_graphql.fetch_batch.call_count == 1


@pytest.mark.asyncio
async def test_batches_partitioned_and_ordered(orchestrator, mock_graphql, repo_refs):
    """25 repositories with a batch size of 10 issue 3 combined queries."""
    repos = repo_refs(25)

    results = await orchestrator.fetch_all(repos, "token")

    assert mock_graphql.fetch_batch.call_count == 3
    batch_sizes = [len(call.args[0]) for call in mock_graphql.fetch_batch.call_args_list]
    assert batch_sizes == [10, 10, 5]
    assert [(r.owner, r.name) for r in results] == [(r.owner, r.name) for r in repos]
    assert [r.release.tag for r in results] == [f"{r.name}-v1" for r in repos]


@pytest.mark.asyncio
async def test_pause_between_batches(cache, mock_graphql, mock_miner, repo_refs):
    orchestrator = BatchOrchestrator(
        cache, mock_graphql, mock_miner, batch_size=10, batch_delay=0.1
    )

    with patch(
        "orchestration.batch_orchestrator.asyncio.sleep", new_callable=AsyncMock
    ) as mock_sleep:
        await orchestrator.fetch_all(repo_refs(25), "token")

    assert mock_sleep.await_count == 2
    mock_sleep.assert_awaited_with(0.1)


@pytest.mark.asyncio
async def test_unauthorized_propagates_without_touching_cache(
    orchestrator, mock_graphql, mock_miner, repo_refs, cache
):
    repos = repo_refs(2)
    unrelated = RepositoryRef(owner="other", name="project")
    previous = released(unrelated)
    cache.set(unrelated, previous)
    mock_graphql.fetch_batch.side_effect = AuthError("Bad credentials", 401)

    with pytest.raises(AuthError) as exc_info:
        await orchestrator.fetch_all(repos, "token")

    assert exc_info.value.requires_reauth
    assert cache.get(unrelated) is previous
    assert len(cache) == 1
    mock_miner.mine_repository.assert_not_called()


@pytest.mark.asyncio
async def test_unauthorized_in_rest_tier_propagates(
    orchestrator, mock_graphql, mock_miner, repo_ref
):
    mock_graphql.fetch_batch.side_effect = UpstreamError("Bad gateway", 502)
    mock_miner.mine_repository.side_effect = AuthError("Bad credentials", 401)

    with pytest.raises(AuthError):
        await orchestrator.fetch_all([repo_ref], "token")


@pytest.mark.asyncio
async def test_batch_failure_serves_prior_cache_entry(
    orchestrator, mock_graphql, mock_miner, repo_refs, cache
):
    """A failed combined query and failed REST tier serve the cached entry."""
    cached_repo, uncached_repo = repo_refs(2)
    previous = released(cached_repo)
    cache.set(cached_repo, previous)
    mock_graphql.fetch_batch.side_effect = UpstreamError("Bad gateway", 502)
    mock_miner.mine_repository.side_effect = UpstreamError("Bad gateway", 502)

    results = await orchestrator.fetch_all(
        [cached_repo, uncached_repo], "token", force_refresh=True
    )

    assert results[0] == previous
    assert isinstance(results[1], ErrorResult)
    assert results[1].status_code == 502
    assert results[1].error_type == ErrorType.UPSTREAM
    assert uncached_repo not in cache


@pytest.mark.asyncio
async def test_batch_failure_falls_back_to_rest_tier(
    orchestrator, mock_graphql, mock_miner, repo_refs, cache
):
    repos = repo_refs(3)
    mock_graphql.fetch_batch.side_effect = UpstreamError("Server error", 500)

    async def mine(ref, credential):
        return released(ref, tag="rest-v1")

    mock_miner.mine_repository.side_effect = mine

    results = await orchestrator.fetch_all(repos, "token")

    assert mock_miner.mine_repository.await_count == 3
    assert [r.name for r in results] == [r.name for r in repos]
    assert all(cache.get(ref) == result for ref, result in zip(repos, results))


@pytest.mark.asyncio
async def test_rest_tier_errors_do_not_abort_siblings(
    orchestrator, mock_graphql, mock_miner, repo_refs
):
    repos = repo_refs(2)
    mock_graphql.fetch_batch.side_effect = UpstreamError("Server error", 500)

    async def mine(ref, credential):
        if ref.name == "repo0":
            raise AuthError("Resource not accessible", 403)
        return released(ref)

    mock_miner.mine_repository.side_effect = mine

    results = await orchestrator.fetch_all(repos, "token")

    assert isinstance(results[0], ErrorResult)
    assert results[0].error_type == ErrorType.FORBIDDEN
    assert results[0].status_code == 403
    assert isinstance(results[1], ReleasedResult)


@pytest.mark.asyncio
async def test_rate_limit_skips_rest_tier(
    orchestrator, mock_graphql, mock_miner, repo_refs, cache
):
    cached_repo, uncached_repo = repo_refs(2)
    previous = released(cached_repo)
    cache.set(cached_repo, previous)
    mock_graphql.fetch_batch.side_effect = RateLimitError("API rate limit exceeded", 403)

    results = await orchestrator.fetch_all([cached_repo, uncached_repo], "token")

    mock_miner.mine_repository.assert_not_called()
    assert results[0] == previous
    assert results[1].error == "GitHub API rate limit exceeded"
    assert results[1].error_type == ErrorType.RATE_LIMIT


@pytest.mark.asyncio
async def test_failed_batch_does_not_abort_remaining_batches(
    orchestrator, mock_graphql, mock_miner, node_factory, repo_refs
):
    repos = repo_refs(15)
    mock_graphql.fetch_batch.side_effect = [
        RateLimitError("API rate limit exceeded", 403),
        [node_factory() for _ in range(5)],
    ]

    results = await orchestrator.fetch_all(repos, "token")

    assert all(isinstance(r, ErrorResult) for r in results[:10])
    assert all(isinstance(r, ReleasedResult) for r in results[10:])


@pytest.mark.asyncio
async def test_missing_alias_reports_not_found(
    orchestrator, mock_graphql, node_factory, repo_refs, cache
):
    repos = repo_refs(2)
    mock_graphql.fetch_batch.side_effect = None
    mock_graphql.fetch_batch.return_value = [node_factory(), None]

    results = await orchestrator.fetch_all(repos, "token")

    assert isinstance(results[0], ReleasedResult)
    assert isinstance(results[1], ErrorResult)
    assert results[1].status_code == 404
    assert results[1].error == "Repository not found or access denied"
    assert repos[1] not in cache


@pytest.mark.asyncio
async def test_malformed_node_does_not_abort_siblings(
    orchestrator, mock_graphql, node_factory, repo_refs, cache
):
    """Only the repository with a malformed node degrades."""
    cached_repo, uncached_repo, good_repo = repo_refs(3)
    previous = released(cached_repo)
    cache.set(cached_repo, previous)
    broken = node_factory(commits=[("abc1234", "2024-02-01T00:00:00Z")])
    del broken["defaultBranchRef"]["target"]["history"]["nodes"][0]["committedDate"]
    mock_graphql.fetch_batch.side_effect = None
    mock_graphql.fetch_batch.return_value = [
        broken,
        broken,
        node_factory(commits=[("def5678", "2024-02-01T00:00:00Z")]),
    ]

    results = await orchestrator.fetch_all(
        [cached_repo, uncached_repo, good_repo], "token", force_refresh=True
    )

    assert results[0] == previous
    assert isinstance(results[1], ErrorResult)
    assert results[1].error == "Failed to fetch repository data"
    assert results[1].error_type == ErrorType.UPSTREAM
    assert isinstance(results[2], ReleasedResult)
    assert results[2].commits_count == 1
    assert cache.get(good_repo) == results[2]
    assert uncached_repo not in cache


@pytest.mark.asyncio
async def test_unauthorized_sibling_waits_for_batch_to_settle(
    orchestrator, mock_graphql, mock_miner, repo_refs, cache
):
    """Siblings finish before a reauthentication error is raised."""
    rejected, slow = repo_refs(2)
    mock_graphql.fetch_batch.side_effect = UpstreamError("Server error", 500)

    async def mine(ref, credential):
        if ref == rejected:
            raise AuthError("Bad credentials", 401)
        await asyncio.sleep(0.01)
        return released(ref)

    mock_miner.mine_repository.side_effect = mine

    with pytest.raises(AuthError):
        await orchestrator.fetch_all([rejected, slow], "token")

    # The sibling already settled, nothing keeps running in the background
    assert cache.get(slow) == released(slow)
    assert rejected not in cache


@pytest.mark.asyncio
async def test_concurrent_identical_refreshes_collapse(
    orchestrator, mock_graphql, node_factory, repo_refs
):
    repos = repo_refs(3)

    async def slow_fetch(refs, credential, commits_per_repo, prs_per_repo):
        await asyncio.sleep(0.01)
        return [node_factory() for _ in refs]

    mock_graphql.fetch_batch.side_effect = slow_fetch

    first, second = await asyncio.gather(
        orchestrator.fetch_all(repos, "token", force_refresh=True),
        orchestrator.fetch_all(repos, "token", force_refresh=True),
    )

    assert first == second
    assert mock_graphql.fetch_batch.call_count == 1


@pytest.mark.asyncio
async def test_empty_repository_list(orchestrator, mock_graphql):
    assert await orchestrator.fetch_all([], "token") == []
    mock_graphql.fetch_batch.assert_not_called()


@pytest.mark.asyncio
async def test_fetch_one_uses_cache_then_rest(
    orchestrator, mock_miner, repo_ref, cache
):
    mock_miner.mine_repository.return_value = released(repo_ref, tag="v3.0.0")

    fresh = await orchestrator.fetch_one(repo_ref, "token")
    again = await orchestrator.fetch_one(repo_ref, "token")

    assert fresh.release.tag == "v3.0.0"
    assert again == fresh
    assert mock_miner.mine_repository.await_count == 1


@pytest.mark.asyncio
async def test_fetch_one_rate_limited_serves_cache(
    orchestrator, mock_miner, repo_ref, cache
):
    previous = released(repo_ref)
    cache.set(repo_ref, previous)
    mock_miner.mine_repository.side_effect = RateLimitError("API rate limit exceeded", 403)

    result = await orchestrator.fetch_one(repo_ref, "token", force_refresh=True)

    assert result == previous


@pytest.mark.asyncio
async def test_unwritable_cache_file_keeps_live_results(
    tmp_path, mock_graphql, mock_miner, repo_refs
):
    blocker = tmp_path / "blocker"
    blocker.write_text("not a directory")
    cache = ResultCache(str(blocker / "results.json"))
    orchestrator = BatchOrchestrator(
        cache, mock_graphql, mock_miner, batch_size=1, batch_delay=0
    )
    repos = repo_refs(2)

    results = await orchestrator.fetch_all(repos, "token")

    assert all(isinstance(r, ReleasedResult) for r in results)
    assert mock_graphql.fetch_batch.call_count == 2
    assert cache.get(repos[1]) == results[1]
