"""GitHub GraphQL/REST client with rate limiting and retry logic."""

import json
import logging
import os
import time
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

import requests

from community_mirror.config import DataSource
from community_mirror.domain.errors import PermanentUpstreamError, RetryableUpstreamError
from community_mirror.domain.models import (
    Contributor,
    FetchedPage,
    Issue,
    IssueAssignee,
    Organization,
    PullRequest,
    PullRequestAssignee,
    Repository,
    split_name_with_owner,
)

logger = logging.getLogger(__name__)


REPOSITORY_PAGE_QUERY = """
query($owner: String!, $name: String!, $limit: Int!, $issueCursor: String, $prCursor: String) {
    repository(owner: $owner, name: $name) {
        id
        name
        owner {
            __typename
            id
            login
        }
        issues(first: $limit, after: $issueCursor, orderBy: {field: UPDATED_AT, direction: ASC}) {
            pageInfo {
                hasNextPage
                endCursor
            }
            nodes {
                id
                number
                title
                url
                state
                createdAt
                closedAt
                assignees(first: 20) {
                    nodes {
                        id
                        login
                    }
                }
            }
        }
        pullRequests(first: $limit, after: $prCursor, orderBy: {field: UPDATED_AT, direction: ASC}) {
            pageInfo {
                hasNextPage
                endCursor
            }
            nodes {
                id
                number
                title
                url
                state
                createdAt
                mergedAt
                closedAt
                assignees(first: 20) {
                    nodes {
                        id
                        login
                    }
                }
            }
        }
    }
    rateLimit {
        remaining
        resetAt
    }
}
"""

ORGANIZATION_REPOSITORIES_QUERY = """
query($login: String!, $cursor: String) {
    organization(login: $login) {
        repositories(first: 100, after: $cursor, isFork: false) {
            pageInfo {
                hasNextPage
                endCursor
            }
            nodes {
                nameWithOwner
                isArchived
            }
        }
    }
}
"""

USER_PROFILES_QUERY = """
query($ids: [ID!]!) {
    nodes(ids: $ids) {
        ... on User {
            id
            company
            location
        }
    }
}
"""


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def encode_page_token(issue_cursor: Optional[str], pr_cursor: Optional[str]) -> Optional[str]:
    """Pack both connection cursors into the single opaque checkpoint token."""
    if issue_cursor is None and pr_cursor is None:
        return None
    return json.dumps({"issues": issue_cursor, "pull_requests": pr_cursor}, sort_keys=True)


def decode_page_token(token: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
    if not token:
        return None, None
    try:
        data = json.loads(token)
    except ValueError:
        data = None
    if not isinstance(data, dict):
        logger.warning(f"Discarding unreadable page token {token!r}")
        return None, None
    return data.get("issues"), data.get("pull_requests")


class GitHubClient:
    """Fetcher for repository entity streams on GitHub."""

    MAX_RETRIES = 5
    RETRY_DELAY_SECONDS = 1
    RATE_LIMIT_BUFFER = 100  # Reserve some API calls for safety
    REQUEST_TIMEOUT = 30
    PAGE_SIZE = 50

    def __init__(
        self,
        token: Optional[str] = None,
        data_source: Optional[DataSource] = None,
        page_size: Optional[int] = None,
    ):
        """
        Initialize the GitHub client.

        Args:
            token: GitHub personal access token. If None, uses GITHUB_TOKEN env var.
            data_source: Endpoints to talk to. Defaults to api.github.com.
            page_size: Issues and pull requests fetched per page (max 100).
        """
        if token is None:
            token = os.getenv("GITHUB_TOKEN")
        if data_source is None:
            data_source = DataSource()

        self.token = token
        self.graphql_endpoint = data_source.graphql_endpoint
        self.rest_endpoint = data_source.rest_endpoint.rstrip("/")
        self.page_size = min(page_size or self.PAGE_SIZE, 100)
        self.headers = {
            "Content-Type": "application/json",
            "Accept": "application/vnd.github+json",
        }

        # Add authorization header if token is available
        if self.token:
            self.headers["Authorization"] = f"Bearer {self.token}"

    def _rate_limit_wait(self, response: requests.Response) -> int:
        reset_time = int(response.headers.get("X-RateLimit-Reset", 0))
        return max(reset_time - int(time.time()), 0) + 10

    def _request(self, method: str, url: str, timeout: Optional[float], **kwargs) -> requests.Response:
        """
        Send a request, retrying transient failures with exponential backoff.

        Raises:
            RetryableUpstreamError: Rate limited or transient failure after retries.
            PermanentUpstreamError: Not found or unauthorized.
        """
        deadline = None if timeout is None else time.monotonic() + timeout

        for attempt in range(self.MAX_RETRIES):
            request_timeout = self.REQUEST_TIMEOUT
            if deadline is not None:
                request_timeout = min(request_timeout, max(deadline - time.monotonic(), 0.1))
            try:
                response = requests.request(
                    method, url, headers=self.headers, timeout=request_timeout, **kwargs
                )
            except requests.exceptions.RequestException as e:
                delay = self.RETRY_DELAY_SECONDS * (2 ** attempt)
                if attempt < self.MAX_RETRIES - 1 and self._fits(deadline, delay):
                    logger.warning(
                        f"Request failed (attempt {attempt + 1}/{self.MAX_RETRIES}): {e}. "
                        f"Retrying in {delay}s..."
                    )
                    time.sleep(delay)
                    continue
                raise RetryableUpstreamError(f"Request to {url} failed: {e}") from e

            if response.status_code in (200, 204):
                return response
            if response.status_code == 401:
                raise PermanentUpstreamError("Authentication failed. Check your GitHub token.")
            if response.status_code == 404:
                raise PermanentUpstreamError(f"Not found: {url}")
            if response.status_code in (403, 429):
                remaining = int(response.headers.get("X-RateLimit-Remaining", 1))
                if remaining == 0 or response.status_code == 429:
                    wait_time = self._rate_limit_wait(response)
                    if attempt < self.MAX_RETRIES - 1 and self._fits(deadline, wait_time):
                        logger.warning(f"Rate limit exceeded. Waiting {wait_time} seconds...")
                        time.sleep(wait_time)
                        continue
                    raise RetryableUpstreamError("Rate limit exceeded")
                raise PermanentUpstreamError(f"Forbidden: {response.text}")
            if response.status_code >= 500:
                delay = self.RETRY_DELAY_SECONDS * (2 ** attempt)
                if attempt < self.MAX_RETRIES - 1 and self._fits(deadline, delay):
                    logger.warning(f"Server error {response.status_code}. Retrying in {delay}s...")
                    time.sleep(delay)
                    continue
                raise RetryableUpstreamError(f"Server error {response.status_code} from {url}")
            raise PermanentUpstreamError(f"Unexpected status {response.status_code}: {response.text}")

        raise RetryableUpstreamError("Max retries exceeded")

    @staticmethod
    def _fits(deadline: Optional[float], delay: float) -> bool:
        return deadline is None or time.monotonic() + delay < deadline

    def _execute_query(
        self,
        query: str,
        variables: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        """
        Execute a GraphQL query.

        Returns:
            GraphQL response data
        """
        payload: Dict[str, Any] = {"query": query}
        if variables:
            payload["variables"] = variables

        response = self._request("POST", self.graphql_endpoint, timeout, json=payload)
        data = response.json()

        if "errors" in data:
            errors = data["errors"]
            messages = [err.get("message", "") for err in errors]
            if any(err.get("type") == "RATE_LIMITED" for err in errors) or any(
                "rate limit" in msg.lower() for msg in messages
            ):
                raise RetryableUpstreamError(f"Rate limit exceeded: {messages}")
            if any(err.get("type") in ("NOT_FOUND", "FORBIDDEN") for err in errors):
                raise PermanentUpstreamError(f"GraphQL errors: {messages}")
            raise RetryableUpstreamError(f"GraphQL errors: {messages}")

        rate_limit = (data.get("data") or {}).get("rateLimit") or {}
        remaining = rate_limit.get("remaining")
        if remaining is not None and remaining <= self.RATE_LIMIT_BUFFER:
            logger.warning(f"Low API rate limit: {remaining} remaining until {rate_limit.get('resetAt')}")

        return data.get("data") or {}

    def fetch_page(
        self, repo_name_with_owner: str, cursor_token: Optional[str], timeout: Optional[float] = None
    ) -> FetchedPage:
        """
        Fetch the next page of a repository's issues and pull requests.

        Both connections are ordered by update time, so an item updated after
        it was first mirrored reappears past the stored cursor. The same token
        always yields the same page.

        Args:
            repo_name_with_owner: "owner/name" label
            cursor_token: Token from the last committed checkpoint, or None
            timeout: Seconds the whole call may take, including retries

        Returns:
            The fetched page with the token to resume from
        """
        owner, name = split_name_with_owner(repo_name_with_owner)
        issue_cursor, pr_cursor = decode_page_token(cursor_token)
        data = self._execute_query(
            REPOSITORY_PAGE_QUERY,
            {
                "owner": owner,
                "name": name,
                "limit": self.page_size,
                "issueCursor": issue_cursor,
                "prCursor": pr_cursor,
            },
            timeout=timeout,
        )
        node = data.get("repository")
        if node is None:
            raise PermanentUpstreamError(f"Repository {repo_name_with_owner} not found")
        return self._parse_page(node, issue_cursor, pr_cursor)

    def _parse_page(
        self, node: Dict[str, Any], issue_cursor: Optional[str], pr_cursor: Optional[str]
    ) -> FetchedPage:
        owner = node["owner"]
        repository = Repository(
            node_id=node["id"],
            owner=owner["login"],
            name=node["name"],
            owner_node_id=owner["id"],
        )
        label = repository.name_with_owner

        organization = None
        if owner.get("__typename") == "Organization":
            organization = Organization(node_id=owner["id"], name=owner["login"])

        page = FetchedPage(repository=repository, organization=organization)

        issues = node.get("issues") or {}
        for item in issues.get("nodes") or []:
            page.issues.append(
                Issue(
                    node_id=item["id"],
                    repo_node_id=repository.node_id,
                    number=item["number"],
                    title=item["title"],
                    url=item["url"],
                    state=item["state"],
                    issue_created_at=_parse_time(item.get("createdAt")),
                    issue_closed_at=_parse_time(item.get("closedAt")),
                )
            )
            for assignee in (item.get("assignees") or {}).get("nodes") or []:
                page.issue_assignees.append(
                    IssueAssignee(
                        issue_node_id=item["id"],
                        issue_number=item["number"],
                        issue_url=item["url"],
                        issue_repo_name=label,
                        assignee_node_id=assignee["id"],
                        assignee_login=assignee["login"],
                    )
                )

        pull_requests = node.get("pullRequests") or {}
        for item in pull_requests.get("nodes") or []:
            page.pull_requests.append(
                PullRequest(
                    node_id=item["id"],
                    repo_node_id=repository.node_id,
                    number=item["number"],
                    title=item["title"],
                    url=item["url"],
                    state=item["state"],
                    pr_created_at=_parse_time(item.get("createdAt")),
                    pr_merged_at=_parse_time(item.get("mergedAt")),
                    pr_closed_at=_parse_time(item.get("closedAt")),
                )
            )
            for assignee in (item.get("assignees") or {}).get("nodes") or []:
                page.pull_request_assignees.append(
                    PullRequestAssignee(
                        pull_request_node_id=item["id"],
                        pull_request_number=item["number"],
                        pull_request_url=item["url"],
                        pull_request_repo_name=label,
                        assignee_node_id=assignee["id"],
                        assignee_login=assignee["login"],
                    )
                )

        # an empty connection reports a null endCursor; keep the previous position
        issue_info = issues.get("pageInfo") or {}
        pr_info = pull_requests.get("pageInfo") or {}
        page.end_cursor = encode_page_token(
            issue_info.get("endCursor") or issue_cursor,
            pr_info.get("endCursor") or pr_cursor,
        )
        page.has_more = bool(issue_info.get("hasNextPage") or pr_info.get("hasNextPage"))
        return page

    def fetch_contributors(
        self, repo_name_with_owner: str, repo_node_id: str, timeout: Optional[float] = None
    ) -> List[Contributor]:
        """
        Fetch every contributor of a repository with company and location.

        Contribution counts come from the REST contributors listing, profile
        fields from a batched GraphQL nodes lookup.
        """
        owner, name = split_name_with_owner(repo_name_with_owner)
        url = f"{self.rest_endpoint}/repos/{owner}/{name}/contributors"
        entries: List[Dict[str, Any]] = []
        page = 1
        while True:
            response = self._request("GET", url, timeout, params={"per_page": 100, "page": page})
            batch = response.json() if response.content else []
            if not batch:
                break
            entries.extend(e for e in batch if e.get("type") == "User" and e.get("node_id"))
            if len(batch) < 100:
                break
            page += 1

        profiles: Dict[str, Dict[str, Any]] = {}
        node_ids = [e["node_id"] for e in entries]
        for start in range(0, len(node_ids), 100):
            data = self._execute_query(
                USER_PROFILES_QUERY, {"ids": node_ids[start:start + 100]}, timeout=timeout
            )
            for node in data.get("nodes") or []:
                if node and node.get("id"):
                    profiles[node["id"]] = node

        contributors = []
        for entry in entries:
            profile = profiles.get(entry["node_id"], {})
            contributors.append(
                Contributor(
                    node_id=entry["node_id"],
                    repo_node_id=repo_node_id,
                    login=entry["login"],
                    contributions=int(entry.get("contributions", 0)),
                    company=profile.get("company") or "",
                    location=profile.get("location") or "",
                )
            )
        logger.info(f"Fetched {len(contributors)} contributors of {repo_name_with_owner}")
        return contributors

    def list_organization_repositories(self, login: str, timeout: Optional[float] = None) -> List[str]:
        """List "owner/name" labels of an organization's non-fork, non-archived repositories."""
        labels: List[str] = []
        cursor = None
        while True:
            data = self._execute_query(
                ORGANIZATION_REPOSITORIES_QUERY, {"login": login, "cursor": cursor}, timeout=timeout
            )
            org = data.get("organization")
            if org is None:
                raise PermanentUpstreamError(f"Organization {login} not found")
            repos = org["repositories"]
            labels.extend(
                node["nameWithOwner"] for node in repos["nodes"] if not node.get("isArchived")
            )
            page_info = repos["pageInfo"]
            if not page_info.get("hasNextPage"):
                break
            cursor = page_info["endCursor"]
        return labels
