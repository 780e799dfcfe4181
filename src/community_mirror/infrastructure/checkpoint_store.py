"""Per-repository sync checkpoints."""

import logging

from community_mirror.domain.models import Cursor
from community_mirror.infrastructure.database import Database

logger = logging.getLogger(__name__)


class CheckpointStore:
    """Stores one cursor per tracked repository."""

    def __init__(self, database: Database):
        self.database = database

    def get(self, repo_name_with_owner: str) -> Cursor:
        """
        Get the stored cursor of a repository.

        A repository that has never been synced yields the zero-value cursor
        (no token, no timestamp) rather than an error.
        """
        with self.database.transaction() as cur:
            cur.execute(
                "SELECT repo_node_id, repo_name_with_owner, last_update, end_cursor "
                "FROM cursors WHERE repo_name_with_owner = %s LIMIT 1",
                (repo_name_with_owner,),
            )
            row = cur.fetchone()
        if row is None:
            logger.debug(f"No checkpoint for {repo_name_with_owner}, starting from the beginning")
            return Cursor()
        return Cursor(**dict(row))

    def commit(self, cursor: Cursor):
        """
        Insert or overwrite the cursor keyed by repository node id.

        Callers must only commit after every entity of the page the cursor
        points past has been persisted.
        """
        if not cursor.repo_node_id:
            raise ValueError("Cannot commit a cursor without a repository node id")
        with self.database.transaction() as cur:
            cur.execute(
                """
                INSERT INTO cursors (repo_node_id, repo_name_with_owner, last_update, end_cursor)
                VALUES (%s, %s, %s, %s)
                ON CONFLICT (repo_node_id)
                DO UPDATE SET
                    repo_name_with_owner = EXCLUDED.repo_name_with_owner,
                    last_update = EXCLUDED.last_update,
                    end_cursor = EXCLUDED.end_cursor
                """,
                (
                    cursor.repo_node_id,
                    cursor.repo_name_with_owner,
                    cursor.last_update,
                    cursor.end_cursor,
                ),
            )
        logger.debug(f"Committed checkpoint for {cursor.repo_name_with_owner}")

    def delete(self, repo_node_id: str):
        """Drop the checkpoint so a future re-add starts a full sync."""
        with self.database.transaction() as cur:
            cur.execute("DELETE FROM cursors WHERE repo_node_id = %s", (repo_node_id,))
        logger.info(f"Deleted checkpoint for repository {repo_node_id}")
