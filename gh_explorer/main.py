import argparse
import asyncio
import os
import sys
import logging
from typing import List, Optional

import aiohttp
from dotenv import load_dotenv

from gh_explorer.application.explorer_service import ExplorerService
from gh_explorer.application.query_cache import QueryCache
from gh_explorer.domain.exceptions import GitHubApiError
from gh_explorer.domain.models import Account, ContributionSummary, EventType, Repository
from gh_explorer.infrastructure.github_client import DEFAULT_API_URL, DEFAULT_SEARCH_LIMIT, REQUEST_TIMEOUT, GitHubRestClient

logger = logging.getLogger(__name__)

EVENT_LABELS = {
    EventType.PUSH: "Pushed commits",
    EventType.PULL_REQUEST: "Pull request",
    EventType.ISSUES: "Issue activity",
    EventType.CREATE: "Created repository",
    EventType.FORK: "Forked repository",
    EventType.WATCH: "Starred repository",
}


def describe_event(event_type: str) -> str:
    return EVENT_LABELS.get(event_type, event_type.replace("Event", ""))


def _print_accounts(accounts: List[Account]) -> None:
    if not accounts:
        print("No users found.")
        return
    for account in accounts:
        kind = "org" if account.is_organization else "user"
        print(f"  {account.login:<30} {kind:<5} {account.html_url}")


def _print_account(account: Account) -> None:
    print(f"\n{account.name or account.login} (@{account.login})")
    if account.bio:
        print(f"  {account.bio}")
    if account.public_repos is not None:
        print(f"  {account.public_repos} public repos, {account.followers} followers, {account.following} following")


def _print_repositories(repositories: List[Repository]) -> None:
    print(f"\nRepositories ({len(repositories)}):")
    for repo in repositories:
        language = repo.language or "-"
        print(f"  {repo.full_name:<45} ★{repo.stargazers_count:<6} ⑂{repo.forks_count:<5} {language}")


def _print_summary(summary: ContributionSummary) -> None:
    print("\nContributions (last 365 days):")
    print(f"  commits: {summary.total_commits}  pull requests: {summary.total_pull_requests}  "
          f"issues: {summary.total_issues}  repositories: {summary.total_repositories}")
    for event in summary.recent_activity:
        repo_name = event.repo.name if event.repo else ""
        print(f"  {event.created_at:%Y-%m-%d}  {describe_event(event.type):<20} {repo_name}")


def _pick(accounts: List[Account], login: Optional[str]) -> Optional[Account]:
    if login is None:
        return accounts[0] if accounts else None
    for account in accounts:
        if account.login.lower() == login.lower():
            return account
    return None


async def run(query: str, select: Optional[str], limit: int, api_url: str) -> int:
    async with aiohttp.ClientSession(timeout=REQUEST_TIMEOUT) as session:
        service = ExplorerService(
            github_client=GitHubRestClient(session, api_url=api_url),
            query_cache=QueryCache(),
            search_limit=limit,
        )

        service.set_search_query(query)
        accounts = await service.search_accounts(query)
        _print_accounts(accounts)

        selected = _pick(accounts, select)
        if selected is None:
            if select is not None:
                logger.error(f"'{select}' is not among the search results.")
                return 1
            return 0
        service.select_account(selected)

        account = service.account_query(selected.login)
        repositories = service.repositories_query(selected.login)
        contributions = service.contributions_query(selected.login)

        # A failed profile lookup falls back to the search entry.
        result = await account.wait()
        if result.error is not None:
            logger.warning(f"Could not load the full profile of '{selected.login}': {result.error}")
        _print_account(service.display_account())

        result = await repositories.wait()
        if result.error is not None:
            raise result.error
        _print_repositories(result.data)

        result = await contributions.wait()
        if result.error is not None:
            raise result.error
        _print_summary(result.data)
        return 0


def main(argv: Optional[List[str]] = None) -> None:
    load_dotenv()

    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s [%(levelname)s] %(message)s",
        handlers=[
            logging.StreamHandler(sys.stdout)
        ]
    )

    parser = argparse.ArgumentParser(description="Search GitHub users and explore their repositories.")
    parser.add_argument("query", help="username to search for")
    parser.add_argument("--select", help="login to inspect (defaults to the first result)")
    parser.add_argument("--limit", type=int, default=DEFAULT_SEARCH_LIMIT, help="number of search results")
    args = parser.parse_args(argv)

    api_url = os.getenv("GITHUB_API_URL", DEFAULT_API_URL)

    try:
        exit_code = asyncio.run(run(args.query, args.select, args.limit, api_url))
    except KeyboardInterrupt:
        logger.info("Interrupted by user. Exiting gracefully.")
        exit_code = 0
    except GitHubApiError as e:
        logger.error(e.message)
        exit_code = 1
    except Exception as e:
        logger.exception(f"An unexpected error occurred: {e}")
        exit_code = 1
    sys.exit(exit_code)

if __name__ == "__main__":
    main()
