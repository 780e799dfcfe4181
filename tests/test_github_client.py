"""Tests for the GitHub client using mocked HTTP responses."""

import json
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest
import requests

from community_mirror.config import DataSource
from community_mirror.domain.errors import PermanentUpstreamError, RetryableUpstreamError
from community_mirror.infrastructure.github_client import (
    GitHubClient,
    decode_page_token,
    encode_page_token,
)


def make_response(status_code=200, payload=None, headers=None):
    response = MagicMock()
    response.status_code = status_code
    response.headers = headers or {}
    response.json.return_value = payload
    response.content = b"" if payload is None else json.dumps(payload).encode()
    response.text = json.dumps(payload)
    return response


def repository_payload(issue_nodes=(), pr_nodes=(), issue_info=None, pr_info=None, owner_type="Organization"):
    return {
        "data": {
            "repository": {
                "id": "R_1",
                "name": "kitex",
                "owner": {"__typename": owner_type, "id": "O_1", "login": "cloudwego"},
                "issues": {
                    "pageInfo": issue_info or {"hasNextPage": False, "endCursor": None},
                    "nodes": list(issue_nodes),
                },
                "pullRequests": {
                    "pageInfo": pr_info or {"hasNextPage": False, "endCursor": None},
                    "nodes": list(pr_nodes),
                },
            },
            "rateLimit": {"remaining": 4000, "resetAt": "2024-06-01T13:00:00Z"},
        }
    }


ISSUE_NODE = {
    "id": "I_1",
    "number": 7,
    "title": "crash on start",
    "url": "https://github.com/cloudwego/kitex/issues/7",
    "state": "CLOSED",
    "createdAt": "2024-01-02T03:04:05Z",
    "closedAt": "2024-01-03T00:00:00Z",
    "assignees": {"nodes": [{"id": "U_1", "login": "alice"}]},
}

PR_NODE = {
    "id": "PR_1",
    "number": 8,
    "title": "fix crash",
    "url": "https://github.com/cloudwego/kitex/pull/8",
    "state": "MERGED",
    "createdAt": "2024-01-02T05:00:00Z",
    "mergedAt": "2024-01-02T06:00:00Z",
    "closedAt": "2024-01-02T06:00:00Z",
    "assignees": {"nodes": []},
}


@pytest.fixture
def client():
    return GitHubClient(token="ghp_test", data_source=DataSource(), page_size=10)


@pytest.fixture(autouse=True)
def no_sleep():
    with patch("community_mirror.infrastructure.github_client.time.sleep") as sleep:
        yield sleep


class TestPageToken:
    def test_both_cursors_carried(self):
        token = encode_page_token("i1", "p1")
        assert decode_page_token(token) == ("i1", "p1")

    def test_empty_position(self):
        assert encode_page_token(None, None) is None
        assert decode_page_token(None) == (None, None)

    def test_unreadable_token_restarts(self):
        assert decode_page_token("Y3Vyc29yOjEw") == (None, None)


class TestFetchPage:
    def test_page_parsed(self, client):
        payload = repository_payload(
            [ISSUE_NODE],
            [PR_NODE],
            issue_info={"hasNextPage": True, "endCursor": "ic"},
            pr_info={"hasNextPage": False, "endCursor": "pc"},
        )
        with patch("requests.request", return_value=make_response(payload=payload)) as request:
            page = client.fetch_page("cloudwego/kitex", None)

        variables = request.call_args[1]["json"]["variables"]
        assert variables["owner"] == "cloudwego"
        assert variables["limit"] == 10
        assert variables["issueCursor"] is None
        assert request.call_args[1]["headers"]["Authorization"] == "Bearer ghp_test"

        assert page.repository.node_id == "R_1"
        assert page.repository.owner_node_id == "O_1"
        assert page.organization.name == "cloudwego"
        issue = page.issues[0]
        assert issue.state == "CLOSED"
        assert issue.issue_created_at == datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
        assert page.issue_assignees[0].assignee_login == "alice"
        assert page.issue_assignees[0].issue_repo_name == "cloudwego/kitex"
        assert page.pull_requests[0].pr_merged_at is not None
        assert page.pull_request_assignees == []
        assert page.has_more
        assert decode_page_token(page.end_cursor) == ("ic", "pc")

    def test_resume_passes_both_cursors(self, client):
        token = encode_page_token("ic", "pc")
        with patch("requests.request", return_value=make_response(payload=repository_payload())) as request:
            page = client.fetch_page("cloudwego/kitex", token)

        variables = request.call_args[1]["json"]["variables"]
        assert (variables["issueCursor"], variables["prCursor"]) == ("ic", "pc")
        # nothing new: position unchanged
        assert decode_page_token(page.end_cursor) == ("ic", "pc")
        assert not page.has_more

    def test_user_owned_repository_has_no_organization(self, client):
        payload = repository_payload(owner_type="User")
        with patch("requests.request", return_value=make_response(payload=payload)):
            assert client.fetch_page("cloudwego/kitex", None).organization is None

    def test_missing_repository_is_permanent(self, client):
        payload = {"data": {"repository": None}}
        with patch("requests.request", return_value=make_response(payload=payload)):
            with pytest.raises(PermanentUpstreamError):
                client.fetch_page("cloudwego/gone", None)


class TestErrors:
    def test_not_found_is_permanent(self, client):
        with patch("requests.request", return_value=make_response(404, {"message": "Not Found"})):
            with pytest.raises(PermanentUpstreamError):
                client.fetch_page("cloudwego/kitex", None)

    def test_unauthorized_is_permanent(self, client):
        with patch("requests.request", return_value=make_response(401, {})):
            with pytest.raises(PermanentUpstreamError):
                client.fetch_page("cloudwego/kitex", None)

    def test_rate_limit_past_deadline_is_retryable(self, client, no_sleep):
        limited = make_response(403, {}, headers={"X-RateLimit-Remaining": "0", "X-RateLimit-Reset": "0"})
        with patch("requests.request", return_value=limited):
            with pytest.raises(RetryableUpstreamError):
                client.fetch_page("cloudwego/kitex", None, timeout=1)
        no_sleep.assert_not_called()

    def test_server_error_retried_then_succeeds(self, client, no_sleep):
        responses = [make_response(502, {}), make_response(payload=repository_payload())]
        with patch("requests.request", side_effect=responses) as request:
            page = client.fetch_page("cloudwego/kitex", None)
        assert page.repository.name == "kitex"
        assert request.call_count == 2
        no_sleep.assert_called_once_with(1)

    def test_connection_errors_exhaust_retries(self, client):
        with patch("requests.request", side_effect=requests.exceptions.ConnectionError("reset")) as request:
            with pytest.raises(RetryableUpstreamError):
                client.fetch_page("cloudwego/kitex", None)
        assert request.call_count == GitHubClient.MAX_RETRIES

    @pytest.mark.parametrize("errors,expected", [
        ([{"type": "RATE_LIMITED", "message": "API rate limit exceeded"}], RetryableUpstreamError),
        ([{"type": "NOT_FOUND", "message": "Could not resolve"}], PermanentUpstreamError),
        ([{"message": "Something went wrong"}], RetryableUpstreamError),
    ])
    def test_graphql_errors(self, client, errors, expected):
        with patch("requests.request", return_value=make_response(payload={"errors": errors})):
            with pytest.raises(expected):
                client.fetch_page("cloudwego/kitex", None)


class TestContributors:
    def test_contributors_with_profiles(self, client):
        listing = [
            {"node_id": "U_1", "login": "alice", "type": "User", "contributions": 12},
            {"node_id": "B_1", "login": "dependabot[bot]", "type": "Bot", "contributions": 40},
            {"node_id": "U_2", "login": "bob", "type": "User", "contributions": 3},
        ]
        profiles = {"data": {"nodes": [
            {"id": "U_1", "company": "@cloudwego", "location": "Beijing"},
            {"id": "U_2", "company": None, "location": None},
        ]}}
        responses = [make_response(payload=listing), make_response(payload=profiles)]
        with patch("requests.request", side_effect=responses) as request:
            contributors = client.fetch_contributors("cloudwego/kitex", "R_1")

        assert request.call_args_list[0][0] == ("GET", "https://api.github.com/repos/cloudwego/kitex/contributors")
        assert [c.login for c in contributors] == ["alice", "bob"]
        assert contributors[0].company == "@cloudwego"
        assert contributors[0].contributions == 12
        assert contributors[1].location == ""
        assert all(c.repo_node_id == "R_1" for c in contributors)

    def test_empty_repository(self, client):
        with patch("requests.request", return_value=make_response(204)) as request:
            assert client.fetch_contributors("cloudwego/empty", "R_2") == []
        assert request.call_count == 1


class TestOrganizationRepositories:
    def test_paginated_listing_skips_archived(self, client):
        first = {"data": {"organization": {"repositories": {
            "pageInfo": {"hasNextPage": True, "endCursor": "c1"},
            "nodes": [
                {"nameWithOwner": "cloudwego/kitex", "isArchived": False},
                {"nameWithOwner": "cloudwego/old", "isArchived": True},
            ],
        }}}}
        second = {"data": {"organization": {"repositories": {
            "pageInfo": {"hasNextPage": False, "endCursor": None},
            "nodes": [{"nameWithOwner": "cloudwego/hertz", "isArchived": False}],
        }}}}
        with patch("requests.request", side_effect=[make_response(payload=first), make_response(payload=second)]) as request:
            labels = client.list_organization_repositories("cloudwego")

        assert labels == ["cloudwego/kitex", "cloudwego/hertz"]
        assert request.call_args[1]["json"]["variables"]["cursor"] == "c1"

    def test_unknown_organization(self, client):
        with patch("requests.request", return_value=make_response(payload={"data": {"organization": None}})):
            with pytest.raises(PermanentUpstreamError):
                client.list_organization_repositories("nobody")
