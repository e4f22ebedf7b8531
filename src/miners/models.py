"""
Release Dashboard Data Models.

Defines the repository, release marker, change record and result models shared
by the miners, the orchestrator and the cache. Uses Pydantic for validation and
camelCase serialization for the presentation layer.
"""

from datetime import datetime
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel

from errors import DashboardError, ErrorType

NO_RELEASE_MESSAGE = "No releases or tags found"


class DashboardModel(BaseModel):
    """Immutable base model serialized with camelCase aliases."""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, frozen=True
    )


class RepositoryRef(DashboardModel):
    """Identity of a tracked repository."""

    owner: str
    name: str

    @property
    def key(self) -> str:
        return f"{self.owner}/{self.name}"

    @classmethod
    def parse(cls, value: str) -> "RepositoryRef":
        """
        Build a reference from "owner/name" or a repository URL.

        Args:
            value (str): Repository name or URL

        Returns:
            RepositoryRef: Parsed reference

        Raises:
            ValueError: If owner or name cannot be determined
        """
        cleaned = value.strip().rstrip("/")
        if cleaned.endswith(".git"):
            cleaned = cleaned[: -len(".git")]
        parts = [part for part in cleaned.split("/") if part]
        if len(parts) < 2:
            raise ValueError(f"Invalid repository reference: {value!r}")
        owner, name = parts[-2:]
        return cls(owner=owner, name=name)

    def __str__(self) -> str:
        return self.key


class ReleaseMarker(DashboardModel):
    """Latest release, or most recent tag, used as the change boundary."""

    tag: str
    date: datetime
    display_name: str
    url: str


class CommitRecord(DashboardModel):
    """Commit landed after the release marker."""

    sha: str
    message: str
    author: str
    date: datetime
    url: str


class PullRequestRecord(DashboardModel):
    """Pull request merged after the release marker."""

    number: int
    title: str
    merged_at: datetime
    author: str
    url: str


class Delta(DashboardModel):
    """Changes since a release, counted before truncation."""

    commits: List[CommitRecord]
    prs: List[PullRequestRecord]
    commits_count: int
    prs_count: int

    @property
    def has_changes(self) -> bool:
        return self.commits_count > 0 or self.prs_count > 0


class ReleasedResult(DashboardModel):
    """Repository with a release marker and its delta."""

    kind: Literal["released"] = "released"
    owner: str
    name: str
    release: ReleaseMarker
    has_changes: bool
    commits_count: int
    prs_count: int
    commits: List[CommitRecord]
    prs: List[PullRequestRecord]


class NoReleaseResult(DashboardModel):
    """Repository without releases or tags."""

    kind: Literal["no_release"] = "no_release"
    owner: str
    name: str
    release: None = None
    has_changes: Literal[False] = False
    commits_count: int = 0
    prs_count: int = 0
    commits: List[CommitRecord] = Field(default_factory=list)
    prs: List[PullRequestRecord] = Field(default_factory=list)
    error: str = NO_RELEASE_MESSAGE


class ErrorResult(DashboardModel):
    """Repository whose data could not be retrieved."""

    kind: Literal["error"] = "error"
    owner: str
    name: str
    error: str
    message: Optional[str] = None
    status_code: Optional[int] = None
    error_type: ErrorType = ErrorType.UPSTREAM

    @classmethod
    def from_error(cls, ref: RepositoryRef, error: DashboardError) -> "ErrorResult":
        return cls(
            owner=ref.owner,
            name=ref.name,
            error=error.user_message,
            message=error.message,
            status_code=error.status_code,
            error_type=error.error_type,
        )


RepositoryResult = Annotated[
    Union[ReleasedResult, NoReleaseResult, ErrorResult], Field(discriminator="kind")
]

repository_result_adapter: TypeAdapter = TypeAdapter(RepositoryResult)


class Identity(DashboardModel):
    """Authenticated GitHub user."""

    login: str
    id: int
    name: Optional[str] = None
    avatar_url: Optional[str] = None
