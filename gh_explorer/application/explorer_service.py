import logging
from dataclasses import replace
from typing import List, Optional

from gh_explorer.application.query_cache import (
    QueryCache,
    QueryKey,
    QueryObserver,
    QueryOptions,
    account_retry,
    default_retry,
)
from gh_explorer.domain.exceptions import GitHubApiError
from gh_explorer.domain.models import Account
from gh_explorer.infrastructure.github_client import DEFAULT_SEARCH_LIMIT, GitHubRestClient

logger = logging.getLogger(__name__)

MINUTE = 60.0

SEARCH_OPTIONS = QueryOptions(stale_time=5 * MINUTE, retention_time=10 * MINUTE, retry=default_retry)
REPOSITORIES_OPTIONS = QueryOptions(stale_time=5 * MINUTE, retention_time=10 * MINUTE, retry=default_retry)
ACCOUNT_OPTIONS = QueryOptions(stale_time=10 * MINUTE, retention_time=30 * MINUTE, retry=account_retry)
CONTRIBUTIONS_OPTIONS = QueryOptions(stale_time=5 * MINUTE, retention_time=10 * MINUTE, retry=default_retry)


def search_key(query: str) -> QueryKey:
    return ("search", query)

def account_key(handle: str) -> QueryKey:
    return ("account", handle)

def repositories_key(handle: str) -> QueryKey:
    return ("repositories", handle)

def contributions_key(handle: str) -> QueryKey:
    return ("contributions", handle)


class ExplorerService:
    """
    Application layer between a view and the GitHub client.

    Registers the explorer's queries on the injected QueryCache and keeps track
    of what the user searched for and which account is selected.
    """

    def __init__(
            self,
            github_client: GitHubRestClient,
            query_cache: QueryCache,
            search_limit: int = DEFAULT_SEARCH_LIMIT
    ):
        self.github_client = github_client
        self.query_cache = query_cache
        self.search_limit = search_limit
        self.search_query = ""
        self.selected_account: Optional[Account] = None

    def search_accounts_query(self, query: str, enabled: bool = True) -> QueryObserver:
        return self.query_cache.subscribe(
            search_key(query),
            lambda: self.github_client.search_accounts(query, self.search_limit),
            replace(SEARCH_OPTIONS, enabled=enabled and len(query.strip()) > 0),
        )

    def account_query(self, handle: str, enabled: bool = True) -> QueryObserver:
        return self.query_cache.subscribe(
            account_key(handle),
            lambda: self.github_client.get_account(handle),
            replace(ACCOUNT_OPTIONS, enabled=enabled and len(handle) > 0),
        )

    def repositories_query(self, handle: str, enabled: bool = True) -> QueryObserver:
        return self.query_cache.subscribe(
            repositories_key(handle),
            lambda: self.github_client.get_repositories(handle),
            replace(REPOSITORIES_OPTIONS, enabled=enabled and len(handle) > 0),
        )

    def contributions_query(self, handle: str, enabled: bool = True) -> QueryObserver:
        return self.query_cache.subscribe(
            contributions_key(handle),
            lambda: self.github_client.get_contribution_stats(handle),
            replace(CONTRIBUTIONS_OPTIONS, enabled=enabled and len(handle) > 0),
        )

    async def search_accounts(self, query: str) -> List[Account]:
        """
        Runs a search right away (bypassing freshness) and seeds the search
        query's cache entry with the result.
        """
        try:
            accounts = await self.github_client.search_accounts(query, self.search_limit)
        except GitHubApiError as e:
            logger.error(f"Search users error: {e}")
            raise

        self.query_cache.set_query_data(search_key(query), accounts, retention_time=SEARCH_OPTIONS.retention_time)
        return accounts

    def set_search_query(self, query: str) -> None:
        """A new search always drops the current selection."""
        self.search_query = query
        self.selected_account = None

    def select_account(self, account: Account) -> None:
        self.selected_account = account

    def clear_selection(self) -> None:
        self.selected_account = None

    def reset(self) -> None:
        """Forgets the search, the selection and everything cached."""
        self.search_query = ""
        self.selected_account = None
        self.query_cache.clear()

    def display_account(self) -> Optional[Account]:
        """The full profile of the selected account when cached, else the search entry."""
        if self.selected_account is None:
            return None
        full_account = self.query_cache.get_query_data(account_key(self.selected_account.login))
        return full_account or self.selected_account
