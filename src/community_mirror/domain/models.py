"""Domain entities mirrored from GitHub.

Every entity class declares three class-level constants that the stores
consult instead of hand-written per-field code:

- ``TABLE``: the table the entity lives in
- ``IDENTITY``: columns used to locate a row; never overwritten
- ``MUTABLE_FIELDS``: columns refreshed from the latest fetched record

Relation records (assignees, group membership) also declare
``PARENT_COLUMN`` and carry a surrogate ``id`` that is excluded from
equality, so two records with the same business content compare equal
whether or not they were loaded from the store.
"""

from dataclasses import dataclass, field, fields, replace
from datetime import datetime
from typing import Any, ClassVar, Dict, List, Optional, Tuple, TypeVar

E = TypeVar("E")

COUNTER_FIELDS = (
    "issue_count",
    "pull_request_count",
    "star_count",
    "fork_count",
    "contributor_count",
)


@dataclass(frozen=True)
class Organization:
    """GitHub organization with its analytics counters."""

    node_id: str
    name: str
    issue_count: int = 0
    pull_request_count: int = 0
    star_count: int = 0
    fork_count: int = 0
    contributor_count: int = 0

    TABLE: ClassVar[str] = "organizations"
    IDENTITY: ClassVar[Tuple[str, ...]] = ("node_id",)
    MUTABLE_FIELDS: ClassVar[Tuple[str, ...]] = COUNTER_FIELDS


@dataclass(frozen=True)
class Repository:
    """Repository owned by an organization or a user."""

    node_id: str
    owner: str
    name: str
    owner_node_id: str

    TABLE: ClassVar[str] = "repositories"
    IDENTITY: ClassVar[Tuple[str, ...]] = ("node_id",)
    MUTABLE_FIELDS: ClassVar[Tuple[str, ...]] = ()

    @property
    def name_with_owner(self) -> str:
        return merge_name_with_owner(self.owner, self.name)


@dataclass(frozen=True)
class Issue:
    node_id: str
    repo_node_id: str
    number: int
    title: str
    url: str
    state: str
    issue_created_at: Optional[datetime] = None
    issue_closed_at: Optional[datetime] = None

    TABLE: ClassVar[str] = "issues"
    IDENTITY: ClassVar[Tuple[str, ...]] = ("node_id",)
    MUTABLE_FIELDS: ClassVar[Tuple[str, ...]] = ("state", "issue_closed_at")


@dataclass(frozen=True)
class PullRequest:
    node_id: str
    repo_node_id: str
    number: int
    title: str
    url: str
    state: str
    pr_created_at: Optional[datetime] = None
    pr_merged_at: Optional[datetime] = None
    pr_closed_at: Optional[datetime] = None

    TABLE: ClassVar[str] = "pull_requests"
    IDENTITY: ClassVar[Tuple[str, ...]] = ("node_id",)
    MUTABLE_FIELDS: ClassVar[Tuple[str, ...]] = ("state", "pr_merged_at", "pr_closed_at")


@dataclass(frozen=True)
class IssueAssignee:
    issue_node_id: str
    issue_number: int
    issue_url: str
    issue_repo_name: str
    assignee_node_id: str
    assignee_login: str
    id: Optional[int] = field(default=None, compare=False)

    TABLE: ClassVar[str] = "issue_assignees"
    IDENTITY: ClassVar[Tuple[str, ...]] = ("id",)
    MUTABLE_FIELDS: ClassVar[Tuple[str, ...]] = ()
    PARENT_COLUMN: ClassVar[str] = "issue_node_id"
    REPO_COLUMN: ClassVar[str] = "issue_repo_name"


@dataclass(frozen=True)
class PullRequestAssignee:
    pull_request_node_id: str
    pull_request_number: int
    pull_request_url: str
    pull_request_repo_name: str
    assignee_node_id: str
    assignee_login: str
    id: Optional[int] = field(default=None, compare=False)

    TABLE: ClassVar[str] = "pull_request_assignees"
    IDENTITY: ClassVar[Tuple[str, ...]] = ("id",)
    MUTABLE_FIELDS: ClassVar[Tuple[str, ...]] = ()
    PARENT_COLUMN: ClassVar[str] = "pull_request_node_id"
    REPO_COLUMN: ClassVar[str] = "pull_request_repo_name"


@dataclass(frozen=True)
class Contributor:
    """Contributor of one repository.

    The same GitHub user appears once per repository they contributed to,
    which is why the identity is the (node_id, repo_node_id) pair.
    """

    node_id: str
    repo_node_id: str
    login: str
    contributions: int = 0
    company: str = ""
    location: str = ""

    TABLE: ClassVar[str] = "contributors"
    IDENTITY: ClassVar[Tuple[str, ...]] = ("node_id", "repo_node_id")
    MUTABLE_FIELDS: ClassVar[Tuple[str, ...]] = ("login", "contributions", "company", "location")


@dataclass(frozen=True)
class Cursor:
    """Sync progress of one repository.

    The zero value (no timestamp, no token) stands for a repository that
    has never been synced. Committed cursors always carry ``last_update``,
    so a synced repository whose pagination token is empty is still
    distinguishable from one that was never fetched.
    """

    repo_node_id: str = ""
    repo_name_with_owner: str = ""
    last_update: Optional[datetime] = None
    end_cursor: Optional[str] = None

    TABLE: ClassVar[str] = "cursors"
    IDENTITY: ClassVar[Tuple[str, ...]] = ("repo_node_id",)
    MUTABLE_FIELDS: ClassVar[Tuple[str, ...]] = ("repo_name_with_owner", "last_update", "end_cursor")

    @property
    def never_synced(self) -> bool:
        return self.last_update is None


@dataclass(frozen=True)
class Group:
    """User-declared grouping of organizations and repositories."""

    name: str
    issue_count: int = 0
    pull_request_count: int = 0
    star_count: int = 0
    fork_count: int = 0
    contributor_count: int = 0

    TABLE: ClassVar[str] = "groups"
    IDENTITY: ClassVar[Tuple[str, ...]] = ("name",)
    MUTABLE_FIELDS: ClassVar[Tuple[str, ...]] = COUNTER_FIELDS


@dataclass(frozen=True)
class GroupOrganization:
    group_name: str
    org_node_id: str
    id: Optional[int] = field(default=None, compare=False)

    TABLE: ClassVar[str] = "groups_organizations"
    IDENTITY: ClassVar[Tuple[str, ...]] = ("id",)
    MUTABLE_FIELDS: ClassVar[Tuple[str, ...]] = ()
    PARENT_COLUMN: ClassVar[str] = "group_name"


@dataclass(frozen=True)
class GroupRepository:
    group_name: str
    repo_node_id: str
    id: Optional[int] = field(default=None, compare=False)

    TABLE: ClassVar[str] = "groups_repositories"
    IDENTITY: ClassVar[Tuple[str, ...]] = ("id",)
    MUTABLE_FIELDS: ClassVar[Tuple[str, ...]] = ()
    PARENT_COLUMN: ClassVar[str] = "group_name"


@dataclass
class FetchedPage:
    """One page of a repository's entity stream as returned by a fetcher."""

    repository: Repository
    organization: Optional[Organization] = None
    issues: List[Issue] = field(default_factory=list)
    pull_requests: List[PullRequest] = field(default_factory=list)
    issue_assignees: List[IssueAssignee] = field(default_factory=list)
    pull_request_assignees: List[PullRequestAssignee] = field(default_factory=list)
    end_cursor: Optional[str] = None
    has_more: bool = False


def merge_name_with_owner(owner: str, name: str) -> str:
    return f"{owner}/{name}"


def split_name_with_owner(label: str) -> Tuple[str, str]:
    owner, sep, name = label.partition("/")
    if not sep or not owner or not name or "/" in name:
        raise ValueError(f"Expected 'owner/name', got {label!r}")
    return owner, name


def is_relation(cls: type) -> bool:
    return hasattr(cls, "PARENT_COLUMN")


def column_names(cls: type) -> List[str]:
    """Columns written on insert; surrogate ids are generated by the store."""
    return [f.name for f in fields(cls) if not (f.name == "id" and is_relation(cls))]


def identity_key(entity: Any) -> Dict[str, Any]:
    return {name: getattr(entity, name) for name in type(entity).IDENTITY}


def merge_mutable_fields(current: E, incoming: E) -> E:
    """Copy the declared mutable fields of ``incoming`` onto ``current``.

    Identity fields and every other field of ``current`` are preserved, so
    a partial incoming record cannot erase previously known data.
    """
    if type(current) is not type(incoming):
        raise TypeError(f"Cannot merge {type(incoming).__name__} into {type(current).__name__}")
    if identity_key(current) != identity_key(incoming):
        raise ValueError(
            f"Identity mismatch: {identity_key(current)} != {identity_key(incoming)}"
        )
    changes = {name: getattr(incoming, name) for name in type(current).MUTABLE_FIELDS}
    return replace(current, **changes)


def normalize_relation(record: E) -> E:
    """Strip the surrogate id so records compare by business content only."""
    return replace(record, id=None)
