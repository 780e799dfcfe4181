"""Typed persistence operations for mirrored entities."""

import logging
from typing import Any, Callable, Dict, Iterable, List, Sequence, Type, TypeVar

from psycopg2 import sql
from psycopg2.extras import execute_values

from community_mirror.domain.errors import NotFound
from community_mirror.domain.models import (
    Contributor,
    Repository,
    column_names,
    identity_key,
    merge_mutable_fields,
    merge_name_with_owner,
)
from community_mirror.infrastructure.database import Database

logger = logging.getLogger(__name__)

E = TypeVar("E")


def _where(key: Dict[str, Any]) -> sql.Composed:
    if not key:
        raise ValueError("Refusing to build an unfiltered statement")
    return sql.SQL(" AND ").join(
        sql.SQL("{} = {}").format(sql.Identifier(column), sql.Placeholder())
        for column in key
    )


def _from_row(cls: Type[E], row: Dict[str, Any]) -> E:
    return cls(**dict(row))


class EntityStore:
    """
    Create, selectively update, delete and query mirrored entities.

    Entity classes describe their own table, identity and mutable fields
    (see community_mirror.domain.models), so one set of methods covers
    every entity kind.
    """

    BATCH_PAGE_SIZE = 1000

    def __init__(self, database: Database):
        self.database = database

    def ping(self):
        self.database.ping()

    def create(self, entity: Any):
        """
        Insert a new row.

        Raises:
            DuplicateIdentity: If the identity key already exists.
            StoreConnectionError: If the database cannot be reached.
        """
        self.create_many([entity])

    def create_many(self, entities: Sequence[Any]):
        """Insert a batch of entities of one kind. Empty batches are a no-op."""
        if not entities:
            return
        cls = type(entities[0])
        columns = column_names(cls)
        values = [tuple(getattr(e, c) for c in columns) for e in entities]
        query = sql.SQL("INSERT INTO {} ({}) VALUES %s").format(
            sql.Identifier(cls.TABLE),
            sql.SQL(", ").join(map(sql.Identifier, columns)),
        )
        with self.database.transaction() as cur:
            execute_values(cur, query, values, page_size=self.BATCH_PAGE_SIZE)
        logger.debug(f"Inserted {len(entities)} rows into {cls.TABLE}")

    def exists(self, cls: Type[Any], **key: Any) -> bool:
        """Existence probe; absence is False, other failures raise StorageError."""
        query = sql.SQL("SELECT 1 FROM {} WHERE {} LIMIT 1").format(
            sql.Identifier(cls.TABLE), _where(key)
        )
        with self.database.transaction() as cur:
            cur.execute(query, list(key.values()))
            return cur.fetchone() is not None

    def get(self, cls: Type[E], **key: Any) -> E:
        query = sql.SQL("SELECT * FROM {} WHERE {} LIMIT 1").format(
            sql.Identifier(cls.TABLE), _where(key)
        )
        with self.database.transaction() as cur:
            cur.execute(query, list(key.values()))
            row = cur.fetchone()
        if row is None:
            raise NotFound(f"{cls.__name__} {key} not found")
        return _from_row(cls, row)

    def update_mutable_fields(self, incoming: E) -> E:
        """
        Copy only the declared mutable fields of ``incoming`` onto the stored row.

        The load, merge and save run in one transaction with the row locked,
        so concurrent updates of the same entity cannot interleave.

        Returns:
            The merged entity as persisted.

        Raises:
            NotFound: If no row matches the identity key. Update never upserts.
        """
        cls = type(incoming)
        key = identity_key(incoming)
        if not cls.MUTABLE_FIELDS:
            raise TypeError(f"{cls.__name__} has no mutable fields")

        select = sql.SQL("SELECT * FROM {} WHERE {} FOR UPDATE").format(
            sql.Identifier(cls.TABLE), _where(key)
        )
        update = sql.SQL("UPDATE {} SET {} WHERE {}").format(
            sql.Identifier(cls.TABLE),
            sql.SQL(", ").join(
                sql.SQL("{} = {}").format(sql.Identifier(f), sql.Placeholder())
                for f in cls.MUTABLE_FIELDS
            ),
            _where(key),
        )
        with self.database.transaction() as cur:
            cur.execute(select, list(key.values()))
            row = cur.fetchone()
            if row is None:
                raise NotFound(f"{cls.__name__} {key} not found")
            merged = merge_mutable_fields(_from_row(cls, row), incoming)
            params = [getattr(merged, f) for f in cls.MUTABLE_FIELDS] + list(key.values())
            cur.execute(update, params)
        return merged

    def delete(self, cls: Type[Any], **key: Any) -> int:
        """Delete by identity or foreign-key scope. Deleting nothing is not an error."""
        query = sql.SQL("DELETE FROM {} WHERE {}").format(
            sql.Identifier(cls.TABLE), _where(key)
        )
        with self.database.transaction() as cur:
            cur.execute(query, list(key.values()))
            deleted = cur.rowcount
        logger.debug(f"Deleted {deleted} rows from {cls.TABLE} where {key}")
        return deleted

    def delete_by_ids(self, cls: Type[Any], ids: Iterable[int]) -> int:
        ids = list(ids)
        if not ids:
            return 0
        query = sql.SQL("DELETE FROM {} WHERE id = ANY(%s)").format(sql.Identifier(cls.TABLE))
        with self.database.transaction() as cur:
            cur.execute(query, (ids,))
            return cur.rowcount

    def list_relations(self, cls: Type[E], parent_node_id: str) -> List[E]:
        """Load every relation row hanging off one parent."""
        query = sql.SQL("SELECT * FROM {} WHERE {} = %s ORDER BY id").format(
            sql.Identifier(cls.TABLE), sql.Identifier(cls.PARENT_COLUMN)
        )
        with self.database.transaction() as cur:
            cur.execute(query, (parent_node_id,))
            return [_from_row(cls, row) for row in cur.fetchall()]

    def delete_relations_by_repo(self, cls: Type[Any], name_with_owner: str) -> int:
        return self.delete(cls, **{cls.REPO_COLUMN: name_with_owner})

    def create_or_update_contributors(self, contributors: Sequence[Contributor]):
        """
        Upsert contributors on (node_id, repo_node_id).

        Existing rows get every non-identity field overwritten since the
        whole record comes from a single source each time.
        """
        if not contributors:
            return
        columns = column_names(Contributor)
        values = [tuple(getattr(c, col) for col in columns) for c in contributors]
        query = sql.SQL(
            "INSERT INTO {table} ({columns}) VALUES %s "
            "ON CONFLICT ({identity}) DO UPDATE SET {assignments}"
        ).format(
            table=sql.Identifier(Contributor.TABLE),
            columns=sql.SQL(", ").join(map(sql.Identifier, columns)),
            identity=sql.SQL(", ").join(map(sql.Identifier, Contributor.IDENTITY)),
            assignments=sql.SQL(", ").join(
                sql.SQL("{0} = EXCLUDED.{0}").format(sql.Identifier(f))
                for f in Contributor.MUTABLE_FIELDS
            ),
        )
        with self.database.transaction() as cur:
            execute_values(cur, query, values, page_size=self.BATCH_PAGE_SIZE)
        logger.info(f"Upserted {len(contributors)} contributors")

    def update_contributor_company_and_location(self, update: Callable[[str], str]) -> int:
        """Rewrite company and location of every stored contributor through ``update``."""
        changed = 0
        with self.database.transaction() as cur:
            cur.execute(
                "SELECT node_id, repo_node_id, company, location FROM contributors FOR UPDATE"
            )
            rows = cur.fetchall()
            for row in rows:
                company = update(row["company"])
                location = update(row["location"])
                if company == row["company"] and location == row["location"]:
                    continue
                cur.execute(
                    "UPDATE contributors SET company = %s, location = %s "
                    "WHERE node_id = %s AND repo_node_id = %s",
                    (company, location, row["node_id"], row["repo_node_id"]),
                )
                changed += 1
        logger.info(f"Normalized company/location of {changed} contributors")
        return changed

    def query_repository_node_id(self, owner: str, name: str) -> str:
        return self.get(Repository, owner=owner, name=name).node_id

    def query_repos_by_org(self, org_node_id: str) -> List[Repository]:
        with self.database.transaction() as cur:
            cur.execute(
                "SELECT * FROM repositories WHERE owner_node_id = %s ORDER BY owner, name",
                (org_node_id,),
            )
            return [_from_row(Repository, row) for row in cur.fetchall()]

    def query_repo_labels_by_org(self, org_node_id: str) -> List[str]:
        return [
            merge_name_with_owner(repo.owner, repo.name)
            for repo in self.query_repos_by_org(org_node_id)
        ]
