"""Configuration snapshot for the mirror.

A ``Config`` is built once (from YAML plus environment fallbacks) and
passed explicitly to the stores and the sync service. Overrides return a
new snapshot; nothing here is mutated in place after construction.
"""

import logging
import os
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Tuple

import yaml

from community_mirror.domain.errors import ConfigurationError
from community_mirror.domain.models import split_name_with_owner

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "./default.yaml"
DEFAULT_CRON = "@every 1h"


@dataclass(frozen=True)
class DataSource:
    token: Optional[str] = None
    graphql_endpoint: str = "https://api.github.com/graphql"
    rest_endpoint: str = "https://api.github.com"


@dataclass(frozen=True)
class GroupSpec:
    """Static group definition: organization logins and owner/name labels."""

    name: str
    organizations: Tuple[str, ...] = ()
    repositories: Tuple[str, ...] = ()


@dataclass(frozen=True)
class Backend:
    cron: str = DEFAULT_CRON
    token: Optional[str] = None
    retry: int = 3
    workers: int = 4
    page_size: int = 50


@dataclass(frozen=True)
class DatabaseSettings:
    host: str = "localhost"
    port: str = "5432"
    dbname: str = "community_mirror"
    user: str = "postgres"
    password: str = "postgres"
    min_connections: int = 1
    max_connections: int = 5

    @classmethod
    def from_env(cls, **overrides: Any) -> "DatabaseSettings":
        """Build settings from POSTGRES_* environment variables."""
        values = {
            "host": os.getenv("POSTGRES_HOST", cls.host),
            "port": os.getenv("POSTGRES_PORT", cls.port),
            "dbname": os.getenv("POSTGRES_DB", cls.dbname),
            "user": os.getenv("POSTGRES_USER", cls.user),
            "password": os.getenv("POSTGRES_PASSWORD", cls.password),
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)

    def connection_string(self) -> str:
        return (
            f"host={self.host} port={self.port} dbname={self.dbname} "
            f"user={self.user} password={self.password}"
        )


@dataclass(frozen=True)
class Config:
    data_source: DataSource = field(default_factory=DataSource)
    groups: Tuple[GroupSpec, ...] = ()
    backend: Backend = field(default_factory=Backend)
    database: DatabaseSettings = field(default_factory=DatabaseSettings)

    @property
    def token(self) -> Optional[str]:
        """Backend token wins over the data source token."""
        return self.backend.token or self.data_source.token

    @classmethod
    def load(cls, path: Optional[str] = None) -> "Config":
        """
        Read a YAML configuration file.

        Args:
            path: Path to the YAML file. Defaults to ./default.yaml.

        Raises:
            ConfigurationError: If the file is missing or malformed.
        """
        if not path:
            path = DEFAULT_CONFIG_PATH
        try:
            with open(path, "r", encoding="utf-8") as f:
                raw = yaml.safe_load(f) or {}
        except OSError as e:
            raise ConfigurationError(f"Cannot read config {path}: {e}") from e
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Malformed config {path}: {e}") from e

        config = cls.from_dict(raw)
        logger.info(f"Loaded config from {path} with {len(config.groups)} groups")
        return config

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "Config":
        if not isinstance(raw, dict):
            raise ConfigurationError("Config root must be a mapping")

        ds_raw = _section(raw, "data_source")
        data_source = DataSource(
            token=ds_raw.get("token") or os.getenv("GITHUB_TOKEN"),
            graphql_endpoint=ds_raw.get("graphql_endpoint", DataSource.graphql_endpoint),
            rest_endpoint=ds_raw.get("rest_endpoint", DataSource.rest_endpoint),
        )

        groups = tuple(_parse_group(g) for g in raw.get("groups") or [])
        names = [g.name for g in groups]
        if len(names) != len(set(names)):
            raise ConfigurationError(f"Duplicate group names in {names}")

        be_raw = _section(raw, "backend")
        try:
            backend = Backend(
                cron=str(be_raw.get("cron") or DEFAULT_CRON),
                token=be_raw.get("token"),
                retry=int(be_raw.get("retry", Backend.retry)),
                workers=int(be_raw.get("workers", Backend.workers)),
                page_size=int(be_raw.get("page_size", Backend.page_size)),
            )
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid backend settings: {e}") from e

        db_raw = _section(raw, "database")
        try:
            database = DatabaseSettings.from_env(
                host=db_raw.get("host"),
                port=None if db_raw.get("port") is None else str(db_raw["port"]),
                dbname=db_raw.get("dbname"),
                user=db_raw.get("user"),
                password=db_raw.get("password"),
                min_connections=_optional_int(db_raw.get("min_connections")),
                max_connections=_optional_int(db_raw.get("max_connections")),
            )
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid database settings: {e}") from e

        return cls(data_source=data_source, groups=groups, backend=backend, database=database)

    def with_overrides(
        self,
        token: Optional[str] = None,
        cron: Optional[str] = None,
        retry: Optional[int] = None,
    ) -> "Config":
        """Return a copy with command-line overrides applied."""
        changes: Dict[str, Any] = {}
        if token:
            changes["token"] = token
        if cron:
            changes["cron"] = cron
        if retry is not None and retry >= 0:
            changes["retry"] = retry
        if not changes:
            return self
        return replace(self, backend=replace(self.backend, **changes))

    def add_groups(self, *groups: GroupSpec) -> "Config":
        return replace(self, groups=self.groups + tuple(groups))

    def tracked_organizations(self) -> List[str]:
        seen: Dict[str, None] = {}
        for group in self.groups:
            for org in group.organizations:
                seen.setdefault(org, None)
        return list(seen)

    def tracked_repositories(self) -> List[str]:
        seen: Dict[str, None] = {}
        for group in self.groups:
            for repo in group.repositories:
                seen.setdefault(repo, None)
        return list(seen)


def _section(raw: Dict[str, Any], key: str) -> Dict[str, Any]:
    value = raw.get(key) or {}
    if not isinstance(value, dict):
        raise ConfigurationError(f"Config section '{key}' must be a mapping")
    return value


def _optional_int(value: Any) -> Optional[int]:
    return None if value is None else int(value)


def _parse_group(raw: Any) -> GroupSpec:
    if not isinstance(raw, dict) or not raw.get("name"):
        raise ConfigurationError(f"Group entries need a name: {raw!r}")
    repositories = tuple(raw.get("repositories") or [])
    for label in repositories:
        try:
            split_name_with_owner(str(label))
        except ValueError as e:
            raise ConfigurationError(f"Group {raw['name']}: {e}") from e
    return GroupSpec(
        name=str(raw["name"]),
        organizations=tuple(str(o) for o in raw.get("organizations") or []),
        repositories=tuple(str(r) for r in repositories),
    )
