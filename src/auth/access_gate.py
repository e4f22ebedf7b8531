"""
Organization Access Gate Module.

Verifies that a GitHub credential belongs to a member of the configured
organization before any release data is fetched on its behalf.
"""

import asyncio
from typing import Callable, Optional

import requests
from github import Auth, Github, GithubException
from github.AuthenticatedUser import AuthenticatedUser
from github.Organization import Organization
from pydantic import BaseModel, SecretStr

from config import settings, logger
from errors import AuthError, UpstreamError, from_github_exception
from miners.models import Identity
from monitoring.rate_tracker import RateTracker


class Session(BaseModel):
    """Validated credential and the identity it belongs to."""

    credential: SecretStr
    identity: Identity


class AccessGate:
    """
    Authorizes credentials against organization membership.

    Attributes:
        allowed_org (str): Organization whose members are admitted
        rate_tracker (RateTracker): Tracker recording every outbound call
    """

    def __init__(
        self,
        rate_tracker: RateTracker,
        allowed_org: Optional[str] = None,
        api_url: Optional[str] = None,
        client_factory: Optional[Callable[[str], Github]] = None,
    ):
        self.rate_tracker = rate_tracker
        self.allowed_org = allowed_org or settings.allowed_org
        self.api_url = (api_url or settings.github_api_url).rstrip("/")
        self._client_factory = client_factory or self._default_client

    def _default_client(self, credential: str) -> Github:
        return Github(auth=Auth.Token(credential), base_url=self.api_url)

    def _track(self, path: str) -> None:
        self.rate_tracker.record_call(f"{self.api_url}/{path}")

    def _is_member(self, github: Github, user: AuthenticatedUser) -> bool:
        """
        Check organization membership.

        Tries the direct membership endpoint first. Private memberships and
        restricted tokens fall back to the user's organization list, and
        finally to listing the organization's private repositories.
        """
        organization = None
        try:
            self._track(f"orgs/{self.allowed_org}")
            organization = github.get_organization(self.allowed_org)
            self._track(f"orgs/{self.allowed_org}/members/{user.login}")
            if organization.has_in_members(user):
                return True
        except GithubException as e:
            if e.status not in (403, 404):
                raise

        try:
            self._track("user/orgs")
            wanted = self.allowed_org.lower()
            if any(org.login.lower() == wanted for org in user.get_orgs()):
                return True
        except GithubException as e:
            if e.status == 401:
                raise

        return self._can_list_private_repos(github, organization)

    def _can_list_private_repos(
        self, github: Github, organization: Optional[Organization]
    ) -> bool:
        """Private repository access proves membership and the repo scope."""
        try:
            if organization is None:
                organization = github.get_organization(self.allowed_org)
            self._track(f"orgs/{self.allowed_org}/repos")
            organization.get_repos(type="private").get_page(0)
        except GithubException as e:
            if e.status == 401:
                raise
            logger.debug(
                {
                    "message": "Private repositories not accessible",
                    "organization": self.allowed_org,
                    "status_code": e.status,
                }
            )
            return False
        return True

    def _authorize(self, credential: str) -> Identity:
        github = self._client_factory(credential)
        try:
            return self._verify(github)
        finally:
            github.close()

    def _verify(self, github: Github) -> Identity:
        user = github.get_user()

        self._track("user")
        identity = Identity(
            login=user.login,
            id=user.id,
            name=user.name or user.login,
            avatar_url=user.avatar_url,
        )

        if not self._is_member(github, user):
            logger.warning(
                {
                    "message": "User is not a member of the allowed organization",
                    "login": identity.login,
                    "organization": self.allowed_org,
                }
            )
            raise AuthError(
                f"Access denied. You must be a member of the {self.allowed_org} organization.",
                403,
            )
        return identity

    async def authorize(self, credential: str) -> Session:
        """
        Validate a credential and its organization membership.

        Args:
            credential (str): GitHub token supplied by the user

        Returns:
            Session: Credential bound to the authenticated identity

        Raises:
            AuthError: If the token is invalid (401) or not a member (403)
            UpstreamError: For any other failure
        """
        credential = credential.strip()
        if not credential:
            raise AuthError("GitHub Personal Access Token is required", 401)

        try:
            identity = await asyncio.to_thread(self._authorize, credential)
        except GithubException as e:
            error = from_github_exception(e)
            if error.status_code == 401:
                error = AuthError(
                    "Invalid token. Please check your Personal Access Token is "
                    "valid and not expired.",
                    401,
                )
            logger.error(
                {
                    "message": "Token verification failed",
                    "status_code": error.status_code,
                    "error": error.message,
                }
            )
            raise error from e
        except requests.RequestException as e:
            raise UpstreamError(f"Network error during token verification: {e}") from e

        logger.info(
            {
                "message": "User authorized",
                "login": identity.login,
                "organization": self.allowed_org,
            }
        )
        return Session(credential=SecretStr(credential), identity=identity)
