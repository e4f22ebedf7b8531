"""
Main Application Entry Point.

Runs one dashboard refresh from the command line:
- Authorizes the configured GitHub token against the allowed organization
- Fetches release data for the configured repositories
- Prints results, local call counts and GitHub's quota as JSON

Exits with status 1 when the token is missing or rejected.
"""

import asyncio
import json
import sys

from config import settings, logger
from dashboard import ReleaseDashboard
from errors import AuthError
from miners.models import repository_result_adapter


async def main() -> int:
    """
    Execute one refresh of the configured repositories.

    Returns:
        int: Process exit code
    """
    if settings.github_token is None:
        logger.error("GITHUB_TOKEN not configured")
        return 1

    async with ReleaseDashboard(settings) as dashboard:
        try:
            session = await dashboard.authorize(settings.github_token.get_secret_value())
            results = await dashboard.get_result(session, force_refresh=True)
            remote_usage = await dashboard.get_remote_rate_limit(session)
        except AuthError as e:
            logger.error({"message": "Authentication failed", "error": e.message})
            return 1

        output = {
            "results": [
                repository_result_adapter.dump_python(result, mode="json", by_alias=True)
                for result in results
            ],
            "usage": dashboard.get_rate_usage().model_dump(mode="json", by_alias=True),
            "remoteUsage": (
                remote_usage.model_dump(mode="json", by_alias=True) if remote_usage else None
            ),
        }
        json.dump(output, sys.stdout, indent=2)
        sys.stdout.write("\n")

    logger.info("application finished")
    return 0


def run() -> None:
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    logger.info("Starting application ...")
    run()
