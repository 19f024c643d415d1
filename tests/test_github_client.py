import json
import unittest
from unittest.mock import AsyncMock, MagicMock

import aiohttp

from gh_explorer.domain.exceptions import GitHubApiError, InvalidPayloadError
from gh_explorer.infrastructure.github_client import (
    ACCOUNT_FAILED,
    CONTRIBUTIONS_FAILED,
    REPOSITORIES_FAILED,
    SEARCH_FAILED,
    GitHubRestClient,
)


def _response(status=200, body=None, reason="OK", json_error=None):
    resp = AsyncMock()
    resp.status = status
    resp.reason = reason
    resp.url = "https://api.github.com/test"
    if json_error is not None:
        resp.json = AsyncMock(side_effect=json_error)
    else:
        resp.json = AsyncMock(return_value=body)
    resp.__aenter__ = AsyncMock(return_value=resp)
    resp.__aexit__ = AsyncMock(return_value=False)
    return resp


def _session(*responses):
    session = MagicMock()
    session.get = MagicMock(side_effect=list(responses))
    return session


def _user(n):
    return {
        "id": n,
        "login": f"user{n}",
        "avatar_url": f"https://avatars.example/{n}",
        "html_url": f"https://github.com/user{n}",
        "type": "User",
    }


def _repos(count, start=0):
    return [
        {
            "id": start + i,
            "name": f"repo{start + i}",
            "full_name": f"octocat/repo{start + i}",
            "html_url": f"https://github.com/octocat/repo{start + i}",
            "updated_at": "2024-01-02T03:04:05Z",
        }
        for i in range(count)
    ]


def _requested_urls(session):
    return [call.args[0] for call in session.get.call_args_list]


class TestGitHubRestClient(unittest.TestCase):
    def test_headers_request_json_media_type(self) -> None:
        client = GitHubRestClient(session=MagicMock())

        self.assertIsInstance(client.headers, dict)
        self.assertEqual(client.headers["Accept"], "application/vnd.github.v3+json")
        self.assertNotIn("Authorization", client.headers)

    def test_api_url_trailing_slash_is_dropped(self) -> None:
        client = GitHubRestClient(session=MagicMock(), api_url="http://localhost:8080/")
        self.assertEqual(client.api_url, "http://localhost:8080")


class TestSearchAccounts(unittest.IsolatedAsyncioTestCase):
    async def test_search_issues_one_request_with_default_limit(self) -> None:
        session = _session(_response(body={
            "total_count": 2,
            "incomplete_results": False,
            "items": [_user(1), _user(2)],
        }))
        client = GitHubRestClient(session)

        accounts = await client.search_accounts("test")

        self.assertEqual([a.login for a in accounts], ["user1", "user2"])
        session.get.assert_called_once_with(
            "https://api.github.com/search/users?q=test&per_page=5",
            headers={"Accept": "application/vnd.github.v3+json"},
        )

    async def test_search_query_is_trimmed_and_encoded(self) -> None:
        session = _session(_response(body={"total_count": 0, "incomplete_results": False, "items": []}))
        client = GitHubRestClient(session)

        accounts = await client.search_accounts("  john doe&co ", limit=10)

        self.assertEqual(accounts, [])
        self.assertEqual(
            _requested_urls(session),
            ["https://api.github.com/search/users?q=john%20doe%26co&per_page=10"],
        )

    async def test_blank_query_makes_no_request(self) -> None:
        session = _session()
        client = GitHubRestClient(session)

        self.assertEqual(await client.search_accounts(""), [])
        self.assertEqual(await client.search_accounts("   "), [])
        session.get.assert_not_called()

    async def test_rate_limit_keeps_service_message_and_status(self) -> None:
        session = _session(_response(
            status=403,
            reason="Forbidden",
            body={"message": "API rate limit exceeded for 127.0.0.1."},
        ))
        client = GitHubRestClient(session)

        with self.assertRaises(GitHubApiError) as ctx:
            await client.search_accounts("test")

        self.assertEqual(ctx.exception.status, 403)
        self.assertEqual(ctx.exception.message, "API rate limit exceeded for 127.0.0.1.")
        self.assertTrue(ctx.exception.is_rate_limited)

    async def test_unparseable_error_body_falls_back_to_status_line(self) -> None:
        session = _session(_response(
            status=502,
            reason="Bad Gateway",
            json_error=json.JSONDecodeError("Expecting value", "<html>", 0),
        ))
        client = GitHubRestClient(session)

        with self.assertRaises(GitHubApiError) as ctx:
            await client.search_accounts("test")

        self.assertEqual(ctx.exception.message, "HTTP 502: Bad Gateway")
        self.assertEqual(ctx.exception.status, 502)

    async def test_connection_failure_is_normalized(self) -> None:
        session = MagicMock()
        session.get = MagicMock(side_effect=aiohttp.ClientConnectionError("connection refused"))
        client = GitHubRestClient(session)

        with self.assertRaises(GitHubApiError) as ctx:
            await client.search_accounts("test")

        self.assertEqual(ctx.exception.message, SEARCH_FAILED)
        self.assertIsNone(ctx.exception.status)
        self.assertIsInstance(ctx.exception.__cause__, aiohttp.ClientConnectionError)


class TestGetAccount(unittest.IsolatedAsyncioTestCase):
    async def test_empty_handle_fails_without_request(self) -> None:
        session = _session()
        client = GitHubRestClient(session)

        with self.assertRaises(GitHubApiError) as ctx:
            await client.get_account("")

        self.assertEqual(ctx.exception.message, "Username is required")
        self.assertIsNone(ctx.exception.status)
        session.get.assert_not_called()

    async def test_returns_extended_fields(self) -> None:
        session = _session(_response(body={
            **_user(1),
            "name": "The Octocat",
            "bio": None,
            "public_repos": 8,
            "followers": 100,
            "following": 9,
        }))
        client = GitHubRestClient(session)

        account = await client.get_account("user1")

        self.assertEqual(account.name, "The Octocat")
        self.assertEqual(account.public_repos, 8)
        self.assertEqual(_requested_urls(session), ["https://api.github.com/users/user1"])

    async def test_not_found(self) -> None:
        session = _session(_response(status=404, reason="Not Found", body={"message": "Not Found"}))
        client = GitHubRestClient(session)

        with self.assertRaises(GitHubApiError) as ctx:
            await client.get_account("ghost-that-does-not-exist")

        self.assertTrue(ctx.exception.is_not_found)
        self.assertEqual(ctx.exception.message, "Not Found")

    async def test_connection_failure_is_normalized(self) -> None:
        session = MagicMock()
        session.get = MagicMock(side_effect=aiohttp.ClientConnectionError("connection reset"))
        client = GitHubRestClient(session)

        with self.assertRaises(GitHubApiError) as ctx:
            await client.get_account("octocat")

        self.assertEqual(ctx.exception.message, ACCOUNT_FAILED)
        self.assertIsNone(ctx.exception.status)


class TestGetRepositories(unittest.IsolatedAsyncioTestCase):
    async def test_follows_pages_until_partial_page(self) -> None:
        session = _session(
            _response(body=_repos(100, 0)),
            _response(body=_repos(100, 100)),
            _response(body=_repos(37, 200)),
        )
        client = GitHubRestClient(session)

        repos = await client.get_repositories("octocat")

        self.assertEqual(session.get.call_count, 3)
        self.assertEqual(len(repos), 237)
        self.assertEqual([r.id for r in repos], list(range(237)))
        self.assertEqual(
            _requested_urls(session)[2],
            "https://api.github.com/users/octocat/repos?sort=updated&direction=desc&per_page=100&page=3",
        )

    async def test_stops_on_empty_page(self) -> None:
        session = _session(_response(body=_repos(100)), _response(body=[]))
        client = GitHubRestClient(session)

        repos = await client.get_repositories("octocat")

        self.assertEqual(session.get.call_count, 2)
        self.assertEqual(len(repos), 100)

    async def test_single_partial_page(self) -> None:
        session = _session(_response(body=_repos(42)))
        client = GitHubRestClient(session)

        repos = await client.get_repositories("octocat")

        self.assertEqual(session.get.call_count, 1)
        self.assertEqual(len(repos), 42)

    async def test_failure_on_later_page_discards_partial_results(self) -> None:
        session = _session(
            _response(body=_repos(100)),
            _response(status=403, reason="Forbidden", body={"message": "API rate limit exceeded"}),
        )
        client = GitHubRestClient(session)

        with self.assertRaises(GitHubApiError) as ctx:
            await client.get_repositories("octocat")

        self.assertEqual(ctx.exception.status, 403)
        self.assertEqual(ctx.exception.message, "API rate limit exceeded")

    async def test_connection_failure_on_later_page_is_normalized(self) -> None:
        session = MagicMock()
        session.get = MagicMock(side_effect=[
            _response(body=_repos(100)),
            aiohttp.ServerDisconnectedError(),
        ])
        client = GitHubRestClient(session)

        with self.assertRaises(GitHubApiError) as ctx:
            await client.get_repositories("octocat")

        self.assertEqual(ctx.exception.message, REPOSITORIES_FAILED)
        self.assertIsNone(ctx.exception.status)
        self.assertEqual(session.get.call_count, 2)

    async def test_empty_handle_makes_no_request(self) -> None:
        session = _session()
        client = GitHubRestClient(session)

        self.assertEqual(await client.get_repositories(""), [])
        session.get.assert_not_called()


class TestGetEvents(unittest.IsolatedAsyncioTestCase):
    async def test_reads_first_page_only(self) -> None:
        session = _session(_response(body=[
            {"id": "1", "type": "WatchEvent", "created_at": "2024-01-02T03:04:05Z", "payload": {}},
        ]))
        client = GitHubRestClient(session)

        events = await client.get_events("octocat")

        self.assertEqual(len(events), 1)
        self.assertEqual(
            _requested_urls(session),
            ["https://api.github.com/users/octocat/events/public?per_page=100"],
        )

    async def test_empty_handle_makes_no_request(self) -> None:
        session = _session()
        client = GitHubRestClient(session)

        self.assertEqual(await client.get_events(""), [])
        session.get.assert_not_called()


class TestGetContributionStats(unittest.IsolatedAsyncioTestCase):
    async def test_empty_handle_fails_without_request(self) -> None:
        session = _session()
        client = GitHubRestClient(session)

        with self.assertRaises(GitHubApiError) as ctx:
            await client.get_contribution_stats("")

        self.assertEqual(ctx.exception.message, "Username is required")
        session.get.assert_not_called()

    async def test_combines_events_and_repositories(self) -> None:
        session = _session(
            _response(body=[]),
            _response(body=_repos(3)),
        )
        client = GitHubRestClient(session)

        stats = await client.get_contribution_stats("octocat")

        self.assertEqual(stats.total_repositories, 3)
        self.assertEqual(stats.total_commits, 0)
        self.assertEqual(stats.recent_activity, [])
        self.assertIn("/events/public", _requested_urls(session)[0])
        self.assertIn("/repos?", _requested_urls(session)[1])

    async def test_nested_typed_error_is_not_rewrapped(self) -> None:
        session = _session(_response(status=403, reason="Forbidden", body={"message": "API rate limit exceeded"}))
        client = GitHubRestClient(session)

        with self.assertRaises(GitHubApiError) as ctx:
            await client.get_contribution_stats("octocat")

        self.assertEqual(ctx.exception.message, "API rate limit exceeded")
        self.assertEqual(ctx.exception.status, 403)
        # Repositories are never requested once events fail.
        self.assertEqual(session.get.call_count, 1)

    async def test_malformed_event_reaches_caller_unchanged(self) -> None:
        session = _session(_response(body=[{"id": "1", "type": "PushEvent", "payload": {}}]))
        client = GitHubRestClient(session)

        with self.assertRaises(InvalidPayloadError) as ctx:
            await client.get_contribution_stats("octocat")

        self.assertIn("created_at", ctx.exception.message)
        self.assertNotEqual(ctx.exception.message, CONTRIBUTIONS_FAILED)
        self.assertEqual(session.get.call_count, 1)

    async def test_timeout_is_normalized_by_nested_call(self) -> None:
        session = MagicMock()
        session.get = MagicMock(side_effect=TimeoutError())
        client = GitHubRestClient(session)

        with self.assertRaises(GitHubApiError) as ctx:
            await client.get_contribution_stats("octocat")

        # The events call normalizes first; the outer layer keeps its message.
        self.assertIn("user events", ctx.exception.message)
        self.assertNotEqual(ctx.exception.message, CONTRIBUTIONS_FAILED)
