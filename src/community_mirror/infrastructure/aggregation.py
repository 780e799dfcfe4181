"""Read-side rollups over the reconciled store."""

import logging
from typing import List

from community_mirror.infrastructure.database import Database

logger = logging.getLogger(__name__)


class AggregationQueries:
    """Point-in-time counting queries for organizations and groups."""

    def __init__(self, database: Database):
        self.database = database

    def _count(self, query: str, params) -> int:
        with self.database.transaction() as cur:
            cur.execute(query, params)
            row = cur.fetchone()
        return int(row["count"]) if row else 0

    def contributor_count_by_org(self, org_node_id: str) -> int:
        """Distinct contributors across all repositories owned by an organization."""
        return self._count(
            """
            SELECT COUNT(DISTINCT contributors.node_id) AS count
            FROM contributors
            INNER JOIN repositories ON contributors.repo_node_id = repositories.node_id
            WHERE repositories.owner_node_id = %s
            """,
            (org_node_id,),
        )

    def issue_count_by_org(self, org_node_id: str) -> int:
        return self._count(
            """
            SELECT COUNT(*) AS count
            FROM issues
            INNER JOIN repositories ON issues.repo_node_id = repositories.node_id
            WHERE repositories.owner_node_id = %s
            """,
            (org_node_id,),
        )

    def pull_request_count_by_org(self, org_node_id: str) -> int:
        return self._count(
            """
            SELECT COUNT(*) AS count
            FROM pull_requests
            INNER JOIN repositories ON pull_requests.repo_node_id = repositories.node_id
            WHERE repositories.owner_node_id = %s
            """,
            (org_node_id,),
        )

    def group_repository_node_ids(self, group_name: str) -> List[str]:
        """
        Repositories reachable from a group, each listed once.

        A repository is reachable when the group lists it directly or lists
        the organization that owns it. Both paths are collected and then
        de-duplicated, so a repository reachable both ways counts once.
        """
        with self.database.transaction() as cur:
            cur.execute(
                """
                SELECT groups_repositories.repo_node_id AS node_id
                FROM groups_repositories
                INNER JOIN repositories ON groups_repositories.repo_node_id = repositories.node_id
                WHERE groups_repositories.group_name = %s
                """,
                (group_name,),
            )
            direct = [row["node_id"] for row in cur.fetchall()]
            cur.execute(
                """
                SELECT repositories.node_id AS node_id
                FROM repositories
                INNER JOIN groups_organizations
                    ON repositories.owner_node_id = groups_organizations.org_node_id
                WHERE groups_organizations.group_name = %s
                """,
                (group_name,),
            )
            via_orgs = [row["node_id"] for row in cur.fetchall()]
        return sorted(set(direct) | set(via_orgs))

    def contributor_count_by_group(self, group_name: str) -> int:
        """Distinct contributors across the union of a group's repositories."""
        repo_node_ids = self.group_repository_node_ids(group_name)
        if not repo_node_ids:
            return 0
        return self._count(
            "SELECT COUNT(DISTINCT node_id) AS count FROM contributors WHERE repo_node_id = ANY(%s)",
            (repo_node_ids,),
        )

    def issue_count_by_group(self, group_name: str) -> int:
        repo_node_ids = self.group_repository_node_ids(group_name)
        if not repo_node_ids:
            return 0
        return self._count(
            "SELECT COUNT(*) AS count FROM issues WHERE repo_node_id = ANY(%s)",
            (repo_node_ids,),
        )

    def pull_request_count_by_group(self, group_name: str) -> int:
        repo_node_ids = self.group_repository_node_ids(group_name)
        if not repo_node_ids:
            return 0
        return self._count(
            "SELECT COUNT(*) AS count FROM pull_requests WHERE repo_node_id = ANY(%s)",
            (repo_node_ids,),
        )
