"""
Release Delta Computation Module.

Pure functions that turn raw GitHub data into release markers, change records
and repository results. Both the combined query path and the per-repository
REST path go through these helpers so the boundary and truncation rules are
applied identically.
"""

from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, TypeVar, Union

from miners.models import (
    CommitRecord,
    Delta,
    NoReleaseResult,
    PullRequestRecord,
    ReleasedResult,
    ReleaseMarker,
    RepositoryRef,
)

DISPLAY_LIMIT = 10
SHORT_SHA_LENGTH = 7

T = TypeVar("T")


def parse_timestamp(value: Union[str, datetime]) -> datetime:
    """
    Parse a GitHub ISO-8601 timestamp.

    Args:
        value (Union[str, datetime]): Timestamp string ("...Z") or datetime

    Returns:
        datetime: Timezone aware datetime
    """
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def tag_url(ref: RepositoryRef, tag: str) -> str:
    return f"https://github.com/{ref.owner}/{ref.name}/releases/tag/{tag}"


def first_line(message: Optional[str]) -> str:
    if not message:
        return "No message"
    return message.split("\n")[0]


def select_since(
    records: Sequence[T],
    boundary: datetime,
    date_of: Callable[[T], datetime],
    limit: int = DISPLAY_LIMIT,
) -> Tuple[int, List[T]]:
    """
    Keep records strictly newer than the boundary.

    Args:
        records (Sequence[T]): Candidate records
        boundary (datetime): Release marker date
        date_of (Callable[[T], datetime]): Date accessor
        limit (int): Maximum number of records returned

    Returns:
        Tuple[int, List[T]]: Matching count and the newest ``limit`` records,
            newest first
    """
    newer = [record for record in records if date_of(record) > boundary]
    newer.sort(key=date_of, reverse=True)
    return len(newer), newer[:limit]


def compute_delta(
    marker: ReleaseMarker,
    commits: Sequence[CommitRecord],
    prs: Sequence[PullRequestRecord],
    limit: int = DISPLAY_LIMIT,
) -> Delta:
    commits_count, recent_commits = select_since(
        commits, marker.date, lambda commit: commit.date, limit
    )
    prs_count, recent_prs = select_since(prs, marker.date, lambda pr: pr.merged_at, limit)
    return Delta(
        commits=recent_commits,
        prs=recent_prs,
        commits_count=commits_count,
        prs_count=prs_count,
    )


def build_result(
    ref: RepositoryRef, marker: Optional[ReleaseMarker], delta: Optional[Delta]
) -> Union[ReleasedResult, NoReleaseResult]:
    """
    Shape the dashboard result for one repository.

    Args:
        ref (RepositoryRef): Repository the result belongs to
        marker (Optional[ReleaseMarker]): Resolved release marker, if any
        delta (Optional[Delta]): Changes since the marker

    Returns:
        Union[ReleasedResult, NoReleaseResult]: Result for the repository
    """
    if marker is None or delta is None:
        return NoReleaseResult(owner=ref.owner, name=ref.name)

    return ReleasedResult(
        owner=ref.owner,
        name=ref.name,
        release=marker,
        has_changes=delta.has_changes,
        commits_count=delta.commits_count,
        prs_count=delta.prs_count,
        commits=delta.commits,
        prs=delta.prs,
    )


# Combined query nodes


def marker_from_node(ref: RepositoryRef, node: Dict[str, Any]) -> Optional[ReleaseMarker]:
    """
    Resolve the release marker from a combined query repository node.

    Prefers the latest published release; falls back to the most recent tag,
    dated by its target commit (annotated tags are dereferenced, the tagger
    date is used only when no commit date is available).

    Args:
        ref (RepositoryRef): Repository the node belongs to
        node (Dict[str, Any]): Aliased repository node

    Returns:
        Optional[ReleaseMarker]: Marker, or None without releases and tags
    """
    release = node.get("latestRelease")
    if release:
        date = release.get("publishedAt") or release.get("createdAt")
        if date:
            return ReleaseMarker(
                tag=release["tagName"],
                date=parse_timestamp(date),
                display_name=release.get("name") or release["tagName"],
                url=release.get("url") or tag_url(ref, release["tagName"]),
            )

    tags = ((node.get("refs") or {}).get("nodes")) or []
    if not tags:
        return None

    tag = tags[0]
    target = tag.get("target") or {}
    date = (
        target.get("committedDate")
        or ((target.get("target") or {}).get("committedDate"))
        or ((target.get("tagger") or {}).get("date"))
    )
    if not date:
        return None

    return ReleaseMarker(
        tag=tag["name"],
        date=parse_timestamp(date),
        display_name=tag["name"],
        url=tag_url(ref, tag["name"]),
    )


def commits_from_node(ref: RepositoryRef, node: Dict[str, Any]) -> List[CommitRecord]:
    target = ((node.get("defaultBranchRef") or {}).get("target")) or {}
    history = ((target.get("history") or {}).get("nodes")) or []

    commits = []
    for commit in history:
        oid = commit.get("oid") or ""
        commits.append(
            CommitRecord(
                sha=oid[:SHORT_SHA_LENGTH] if oid else "unknown",
                message=first_line(commit.get("message")),
                author=((commit.get("author") or {}).get("name")) or "Unknown",
                date=parse_timestamp(commit["committedDate"]),
                url=commit.get("url")
                or f"https://github.com/{ref.owner}/{ref.name}/commit/{oid}",
            )
        )
    return commits


def pulls_from_node(node: Dict[str, Any]) -> List[PullRequestRecord]:
    pulls = ((node.get("pullRequests") or {}).get("nodes")) or []
    return [
        PullRequestRecord(
            number=pr["number"],
            title=pr.get("title") or "",
            merged_at=parse_timestamp(pr["mergedAt"]),
            author=((pr.get("author") or {}).get("login")) or "Unknown",
            url=pr.get("url") or "",
        )
        for pr in pulls
        if pr.get("mergedAt")
    ]


def result_from_node(
    ref: RepositoryRef, node: Dict[str, Any], limit: int = DISPLAY_LIMIT
) -> Union[ReleasedResult, NoReleaseResult]:
    """
    Build a repository result from already-fetched combined query data.

    Args:
        ref (RepositoryRef): Repository the node belongs to
        node (Dict[str, Any]): Aliased repository node
        limit (int): Records kept per list

    Returns:
        Union[ReleasedResult, NoReleaseResult]: Result for the repository
    """
    marker = marker_from_node(ref, node)
    if marker is None:
        return build_result(ref, None, None)

    delta = compute_delta(marker, commits_from_node(ref, node), pulls_from_node(node), limit)
    return build_result(ref, marker, delta)
