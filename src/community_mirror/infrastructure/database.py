"""Database connection pool, schema and transaction handling."""

import logging
from contextlib import contextmanager
from typing import Iterator, Optional

import psycopg2
import psycopg2.errors
from psycopg2.extras import RealDictCursor
from psycopg2.pool import ThreadedConnectionPool

from community_mirror.config import DatabaseSettings
from community_mirror.domain.errors import (
    ConfigurationError,
    DuplicateIdentity,
    StorageError,
    StoreConnectionError,
)

logger = logging.getLogger(__name__)


SCHEMA = """
    CREATE TABLE IF NOT EXISTS organizations (
        node_id VARCHAR(255) PRIMARY KEY,
        name VARCHAR(255) NOT NULL,
        issue_count INTEGER NOT NULL DEFAULT 0,
        pull_request_count INTEGER NOT NULL DEFAULT 0,
        star_count INTEGER NOT NULL DEFAULT 0,
        fork_count INTEGER NOT NULL DEFAULT 0,
        contributor_count INTEGER NOT NULL DEFAULT 0
    );

    CREATE TABLE IF NOT EXISTS repositories (
        node_id VARCHAR(255) PRIMARY KEY,
        owner VARCHAR(255) NOT NULL,
        name VARCHAR(255) NOT NULL,
        owner_node_id VARCHAR(255) NOT NULL,
        CONSTRAINT unique_owner_name UNIQUE (owner, name)
    );

    CREATE TABLE IF NOT EXISTS issues (
        node_id VARCHAR(255) PRIMARY KEY,
        repo_node_id VARCHAR(255) NOT NULL,
        number INTEGER NOT NULL,
        title TEXT NOT NULL,
        url TEXT NOT NULL,
        state VARCHAR(32) NOT NULL,
        issue_created_at TIMESTAMPTZ,
        issue_closed_at TIMESTAMPTZ
    );

    CREATE TABLE IF NOT EXISTS pull_requests (
        node_id VARCHAR(255) PRIMARY KEY,
        repo_node_id VARCHAR(255) NOT NULL,
        number INTEGER NOT NULL,
        title TEXT NOT NULL,
        url TEXT NOT NULL,
        state VARCHAR(32) NOT NULL,
        pr_created_at TIMESTAMPTZ,
        pr_merged_at TIMESTAMPTZ,
        pr_closed_at TIMESTAMPTZ
    );

    CREATE TABLE IF NOT EXISTS issue_assignees (
        id SERIAL PRIMARY KEY,
        issue_node_id VARCHAR(255) NOT NULL,
        issue_number INTEGER NOT NULL,
        issue_url TEXT NOT NULL,
        issue_repo_name VARCHAR(512) NOT NULL,
        assignee_node_id VARCHAR(255) NOT NULL,
        assignee_login VARCHAR(255) NOT NULL
    );

    CREATE TABLE IF NOT EXISTS pull_request_assignees (
        id SERIAL PRIMARY KEY,
        pull_request_node_id VARCHAR(255) NOT NULL,
        pull_request_number INTEGER NOT NULL,
        pull_request_url TEXT NOT NULL,
        pull_request_repo_name VARCHAR(512) NOT NULL,
        assignee_node_id VARCHAR(255) NOT NULL,
        assignee_login VARCHAR(255) NOT NULL
    );

    CREATE TABLE IF NOT EXISTS contributors (
        node_id VARCHAR(255) NOT NULL,
        repo_node_id VARCHAR(255) NOT NULL,
        login VARCHAR(255) NOT NULL,
        contributions INTEGER NOT NULL DEFAULT 0,
        company TEXT NOT NULL DEFAULT '',
        location TEXT NOT NULL DEFAULT '',
        PRIMARY KEY (node_id, repo_node_id)
    );

    CREATE TABLE IF NOT EXISTS cursors (
        repo_node_id VARCHAR(255) PRIMARY KEY,
        repo_name_with_owner VARCHAR(512) NOT NULL,
        last_update TIMESTAMPTZ,
        end_cursor TEXT
    );

    CREATE TABLE IF NOT EXISTS groups (
        name VARCHAR(255) PRIMARY KEY,
        issue_count INTEGER NOT NULL DEFAULT 0,
        pull_request_count INTEGER NOT NULL DEFAULT 0,
        star_count INTEGER NOT NULL DEFAULT 0,
        fork_count INTEGER NOT NULL DEFAULT 0,
        contributor_count INTEGER NOT NULL DEFAULT 0
    );

    CREATE TABLE IF NOT EXISTS groups_organizations (
        id SERIAL PRIMARY KEY,
        group_name VARCHAR(255) NOT NULL,
        org_node_id VARCHAR(255) NOT NULL
    );

    CREATE TABLE IF NOT EXISTS groups_repositories (
        id SERIAL PRIMARY KEY,
        group_name VARCHAR(255) NOT NULL,
        repo_node_id VARCHAR(255) NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_repositories_owner_node_id ON repositories(owner_node_id);
    CREATE INDEX IF NOT EXISTS idx_issues_repo_node_id ON issues(repo_node_id);
    CREATE INDEX IF NOT EXISTS idx_pull_requests_repo_node_id ON pull_requests(repo_node_id);
    CREATE INDEX IF NOT EXISTS idx_issue_assignees_issue ON issue_assignees(issue_node_id);
    CREATE INDEX IF NOT EXISTS idx_pr_assignees_pr ON pull_request_assignees(pull_request_node_id);
    CREATE INDEX IF NOT EXISTS idx_contributors_repo_node_id ON contributors(repo_node_id);
    CREATE INDEX IF NOT EXISTS idx_cursors_name_with_owner ON cursors(repo_name_with_owner);
"""


def translate_error(error: psycopg2.Error) -> Exception:
    """Map a psycopg2 exception onto the mirror's error taxonomy."""
    if isinstance(error, psycopg2.errors.UniqueViolation):
        return DuplicateIdentity(str(error).strip())
    if isinstance(error, (psycopg2.OperationalError, psycopg2.InterfaceError)):
        return StoreConnectionError(str(error).strip())
    return StorageError(str(error).strip())


class Database:
    """Thread-safe PostgreSQL connection pool shared by all stores."""

    def __init__(self, settings: Optional[DatabaseSettings] = None):
        """
        Initialize the database handle.

        Args:
            settings: Connection settings. If None, uses POSTGRES_* env vars.
        """
        if settings is None:
            settings = DatabaseSettings.from_env()

        self.settings = settings
        self.connection_string = settings.connection_string()
        self.pool: Optional[ThreadedConnectionPool] = None

    def connect(self):
        """Initialize connection pool."""
        try:
            self.pool = ThreadedConnectionPool(
                self.settings.min_connections,
                self.settings.max_connections,
                self.connection_string,
            )
            logger.info("Database connection pool created")
        except psycopg2.Error as e:
            logger.error(f"Error creating connection pool: {e}")
            raise ConfigurationError(f"Database unreachable: {e}") from e

    def close(self):
        """Close connection pool."""
        if self.pool:
            self.pool.closeall()
            self.pool = None
            logger.info("Database connection pool closed")

    def _get_connection(self):
        """Get a connection from the pool."""
        if not self.pool:
            self.connect()
        try:
            return self.pool.getconn()
        except psycopg2.Error as e:
            raise translate_error(e) from e

    def _return_connection(self, conn, broken: bool = False):
        """Return a connection to the pool."""
        if self.pool:
            self.pool.putconn(conn, close=broken)

    @contextmanager
    def transaction(self) -> Iterator:
        """
        Yield a dict cursor inside a single transaction.

        Commits when the block exits normally and rolls back otherwise.
        psycopg2 errors are re-raised as StorageError subclasses.
        """
        conn = self._get_connection()
        broken = False
        try:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                yield cur
            conn.commit()
        except psycopg2.Error as e:
            broken = bool(conn.closed)
            if not broken:
                conn.rollback()
            raise translate_error(e) from e
        except Exception:
            conn.rollback()
            raise
        finally:
            self._return_connection(conn, broken=broken)

    def ping(self):
        """Raise ConfigurationError unless the database answers a trivial query."""
        try:
            with self.transaction() as cur:
                cur.execute("SELECT 1")
        except StorageError as e:
            logger.error(f"Database ping failed: {e}")
            raise ConfigurationError(f"Database unreachable: {e}") from e

    def initialize_schema(self):
        """Create database tables if they don't exist."""
        try:
            with self.transaction() as cur:
                cur.execute(SCHEMA)
            logger.info("Database schema initialized")
        except StorageError as e:
            logger.error(f"Error initializing schema: {e}")
            raise
