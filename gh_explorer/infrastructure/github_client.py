import aiohttp
import logging
from contextlib import contextmanager
from typing import Any, Iterator, List
from urllib.parse import quote

from gh_explorer.domain.contributions import aggregate
from gh_explorer.domain.exceptions import GitHubApiError
from gh_explorer.domain.models import Account, ContributionSummary, Event, Repository
from gh_explorer.infrastructure.acl import GitHubTranslator

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.github.com"
DEFAULT_SEARCH_LIMIT = 5
# GitHub's maximum per_page value
PAGE_SIZE = 100
REQUEST_TIMEOUT = aiohttp.ClientTimeout(total=30, connect=10)

SEARCH_FAILED = "Failed to search users. Please check your connection."
ACCOUNT_FAILED = "Failed to fetch user details. Please check your connection."
REPOSITORIES_FAILED = "Failed to fetch repositories. Please check your connection."
EVENTS_FAILED = "Failed to fetch user events. Please check your connection."
CONTRIBUTIONS_FAILED = "Failed to fetch contribution statistics. Please check your connection."
USERNAME_REQUIRED = "Username is required"


def _encode(value: str) -> str:
    # Same reserved set as JavaScript's encodeURIComponent
    return quote(value, safe="!~*'()")


@contextmanager
def _normalized_errors(fallback_message: str) -> Iterator[None]:
    """
    Turns any failure raised inside the block into a GitHubApiError.

    Errors that already are GitHubApiError propagate unchanged, everything else
    (DNS failures, refused connections, timeouts...) becomes a GitHubApiError
    without a status, chained to the original exception.
    """
    try:
        yield
    except Exception as e:
        if isinstance(e, GitHubApiError):
            raise
        logger.warning(f"Request failed: {e!r}")
        raise GitHubApiError(fallback_message) from e


class GitHubRestClient:
    """
    Client for the public (unauthenticated) GitHub REST API.
    Stateless apart from the shared aiohttp session; caching lives in the query cache.
    """

    def __init__(self, session: aiohttp.ClientSession, api_url: str = DEFAULT_API_URL):
        self.session = session
        self.api_url = api_url.rstrip("/")
        self.headers = {
            "Accept": "application/vnd.github.v3+json",
        }

    async def _handle_response(self, response: aiohttp.ClientResponse) -> Any:
        """Decodes a successful response or raises GitHubApiError with the service's message."""
        if 200 <= response.status < 300:
            return await response.json()

        message = f"HTTP {response.status}: {response.reason}"
        try:
            body = await response.json()
        except (aiohttp.ContentTypeError, ValueError):
            body = None
        if isinstance(body, dict) and body.get('message'):
            message = body['message']

        logger.warning(f"GitHub rejected request to {response.url} ({response.status}): {message}")
        raise GitHubApiError(message, status=response.status)

    async def _get(self, url: str) -> Any:
        async with self.session.get(url, headers=self.headers) as response:
            return await self._handle_response(response)

    async def search_accounts(self, query: str, limit: int = DEFAULT_SEARCH_LIMIT) -> List[Account]:
        """
        Searches users and organizations by free text.

        Returns an empty list without touching the network when the query is blank.
        """
        query = query.strip()
        if not query:
            return []

        url = f"{self.api_url}/search/users?q={_encode(query)}&per_page={limit}"
        with _normalized_errors(SEARCH_FAILED):
            data = await self._get(url)
            accounts = [GitHubTranslator.to_account(item) for item in data.get('items', [])]

        logger.debug(f"Search '{query}' returned {len(accounts)} account(s).")
        return accounts

    async def get_account(self, handle: str) -> Account:
        """Fetches a single account with its extended profile fields."""
        if not handle:
            raise GitHubApiError(USERNAME_REQUIRED)

        url = f"{self.api_url}/users/{_encode(handle)}"
        with _normalized_errors(ACCOUNT_FAILED):
            data = await self._get(url)
            return GitHubTranslator.to_account(data)

    async def get_repositories(self, handle: str) -> List[Repository]:
        """
        Fetches every repository of a user, most recently updated first.

        Pages are requested one after another until a page comes back with fewer
        than PAGE_SIZE items. A failure on any page discards what was collected.
        """
        if not handle:
            return []

        repositories: List[Repository] = []
        page = 1
        with _normalized_errors(REPOSITORIES_FAILED):
            while True:
                url = (
                    f"{self.api_url}/users/{_encode(handle)}/repos"
                    f"?sort=updated&direction=desc&per_page={PAGE_SIZE}&page={page}"
                )
                raw_repos = await self._get(url)
                if not raw_repos:
                    break

                repositories.extend(GitHubTranslator.to_repository(raw) for raw in raw_repos)

                if len(raw_repos) < PAGE_SIZE:
                    break
                page += 1

        logger.debug(f"Fetched {len(repositories)} repositories for '{handle}' in {page} page(s).")
        return repositories

    async def get_events(self, handle: str) -> List[Event]:
        """Fetches the first page (up to 100) of a user's public events, newest first."""
        if not handle:
            return []

        url = f"{self.api_url}/users/{_encode(handle)}/events/public?per_page={PAGE_SIZE}"
        with _normalized_errors(EVENTS_FAILED):
            raw_events = await self._get(url)
            return [GitHubTranslator.to_event(raw) for raw in raw_events]

    async def get_contribution_stats(self, handle: str) -> ContributionSummary:
        """Combines public events and repositories into a ContributionSummary."""
        if not handle:
            raise GitHubApiError(USERNAME_REQUIRED)

        with _normalized_errors(CONTRIBUTIONS_FAILED):
            events = await self.get_events(handle)
            repositories = await self.get_repositories(handle)
            return aggregate(events, repositories)
