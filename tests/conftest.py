"""Shared fixtures for building GitHub combined query nodes."""

from typing import Any, Dict, List, Optional, Sequence, Tuple

import pytest

from miners.models import RepositoryRef


def build_node(
    release_date: Optional[str] = "2024-01-01T00:00:00Z",
    commits: Sequence[Tuple[str, str]] = (),
    prs: Sequence[Tuple[int, Optional[str]]] = (),
    tag: Optional[Dict[str, Any]] = None,
    tag_name: str = "v1.0.0",
) -> Dict[str, Any]:
    """Build an aliased repository node as returned by the combined query."""
    latest_release = None
    if release_date is not None:
        latest_release = {
            "tagName": tag_name,
            "publishedAt": release_date,
            "createdAt": release_date,
            "name": f"Release {tag_name}",
            "url": f"https://github.com/test/repo/releases/tag/{tag_name}",
        }

    history: List[Dict[str, Any]] = [
        {
            "oid": oid,
            "message": f"Commit {oid}\n\nLonger description",
            "committedDate": date,
            "author": {"name": "Dev"},
            "url": f"https://github.com/test/repo/commit/{oid}",
        }
        for oid, date in commits
    ]
    pulls = [
        {
            "number": number,
            "title": f"PR {number}",
            "mergedAt": merged_at,
            "author": {"login": "dev"},
            "url": f"https://github.com/test/repo/pull/{number}",
        }
        for number, merged_at in prs
    ]

    return {
        "name": "repo",
        "owner": {"login": "test"},
        "latestRelease": latest_release,
        "refs": {"nodes": [tag] if tag else []},
        "defaultBranchRef": {"target": {"history": {"nodes": history}}},
        "pullRequests": {"nodes": pulls},
    }


@pytest.fixture
def node_factory():
    """Factory for combined query repository nodes."""
    return build_node


@pytest.fixture
def repo_ref():
    """A single repository reference."""
    return RepositoryRef(owner="test", name="repo")


@pytest.fixture
def repo_refs():
    """Factory for numbered repository references."""

    def _refs(count: int) -> List[RepositoryRef]:
        return [RepositoryRef(owner="test", name=f"repo{i}") for i in range(count)]

    return _refs
