"""Application service driving recurring sync cycles."""

import logging
import threading
import time
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

from community_mirror.application.reconciler import RelationReconciler
from community_mirror.application.schedule import Schedule
from community_mirror.config import Config
from community_mirror.domain.errors import (
    CycleCancelled,
    MirrorError,
    NotFound,
    PermanentUpstreamError,
)
from community_mirror.domain.models import (
    Contributor,
    Cursor,
    FetchedPage,
    Group,
    GroupOrganization,
    GroupRepository,
    Issue,
    IssueAssignee,
    Organization,
    PullRequest,
    PullRequestAssignee,
    Repository,
    split_name_with_owner,
)

logger = logging.getLogger(__name__)


class SyncState(Enum):
    IDLE = "idle"
    RUNNING = "running"
    STOPPED = "stopped"


@dataclass
class RepositoryResult:
    label: str
    attempts: int = 0
    pages: int = 0
    succeeded: bool = False
    skipped: bool = False
    error: Optional[str] = None


@dataclass
class CycleReport:
    started_at: datetime
    finished_at: Optional[datetime] = None
    results: Dict[str, RepositoryResult] = field(default_factory=dict)
    forgotten: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def succeeded(self) -> List[str]:
        return [label for label, r in self.results.items() if r.succeeded]

    @property
    def failed(self) -> List[str]:
        return [label for label, r in self.results.items() if not r.succeeded]


class CycleContext:
    """Cancellation scope of one cycle: a stop event plus an optional deadline."""

    def __init__(self, stop_event: threading.Event, timeout: Optional[float] = None):
        self.stop_event = stop_event
        self.deadline = None if timeout is None else time.monotonic() + timeout

    def remaining(self) -> Optional[float]:
        if self.deadline is None:
            return None
        return max(self.deadline - time.monotonic(), 0.0)

    def cancelled(self) -> bool:
        return self.stop_event.is_set() or self.remaining() == 0.0

    def check(self):
        if self.cancelled():
            raise CycleCancelled("Cycle stopped or past its deadline")


class SyncService:
    """
    Mirrors tracked repositories into the store on a schedule.

    Each cycle syncs repositories concurrently. Pages of one repository are
    processed in order, and a page's checkpoint is committed only after all
    of its entities and assignee sets have been persisted.
    """

    def __init__(
        self,
        config: Config,
        entity_store,
        checkpoint_store,
        aggregation,
        fetcher,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Initialize the sync service.

        Args:
            config: Configuration snapshot
            entity_store: EntityStore (or compatible)
            checkpoint_store: CheckpointStore (or compatible)
            aggregation: AggregationQueries (or compatible)
            fetcher: GitHubClient (or compatible)
            clock: Returns the current UTC time; used for checkpoint timestamps
        """
        self.config = config
        self.entity_store = entity_store
        self.checkpoint_store = checkpoint_store
        self.aggregation = aggregation
        self.fetcher = fetcher
        self.reconciler = RelationReconciler(entity_store)
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.schedule: Optional[Schedule] = None
        self.state = SyncState.IDLE
        self.last_report: Optional[CycleReport] = None
        self._stop_event = threading.Event()
        self._loop_lock = threading.Lock()
        self._state_lock = threading.Lock()

    # Lifecycle

    def _prepare(self):
        """Validate configuration. Raises ConfigurationError."""
        schedule = Schedule.parse(self.config.backend.cron)
        schedule.next_after(self.clock())
        self.entity_store.ping()
        self.schedule = schedule

    def start(self, stop_event: Optional[threading.Event] = None, run_immediately: bool = True):
        """
        Start the recurring cycle and block until ``stop_event`` is set.

        Raises:
            ConfigurationError: Malformed schedule spec or unreachable store.
        """
        with self._state_lock:
            if self.state is not SyncState.IDLE:
                raise RuntimeError(f"Cannot start from state {self.state.value}")
            self._prepare()
            self.state = SyncState.RUNNING
            self._stop_event = stop_event or threading.Event()
        logger.info(f"Sync service started with schedule {self.schedule.spec}")
        self._run_loop(self._stop_event, run_immediately)

    def restart(
        self,
        config: Optional[Config] = None,
        stop_event: Optional[threading.Event] = None,
        run_immediately: bool = True,
    ):
        """
        Reload configuration and resume cycling, blocking until stopped.

        Checkpoints are left untouched, so every repository resumes where
        the previous run left it.

        Raises:
            ConfigurationError: Malformed schedule spec or unreachable store.
        """
        previous = self.config
        if config is not None:
            self.config = config
        try:
            Schedule.parse(self.config.backend.cron).next_after(self.clock())
        except MirrorError:
            self.config = previous
            raise

        # stop a loop running in another thread and wait for it to exit
        self._stop_event.set()
        with self._loop_lock:
            pass

        with self._state_lock:
            self._prepare()
            self.state = SyncState.RUNNING
            self._stop_event = stop_event or threading.Event()
        logger.info(f"Sync service restarted with schedule {self.schedule.spec}")
        self._run_loop(self._stop_event, run_immediately)

    def stop(self):
        self._stop_event.set()
        with self._state_lock:
            self.state = SyncState.STOPPED
        logger.info("Sync service stopped")

    def _run_loop(self, stop_event: threading.Event, run_immediately: bool):
        with self._loop_lock:
            try:
                self._cycle_until_stopped(stop_event, run_immediately)
            finally:
                with self._state_lock:
                    self.state = SyncState.STOPPED

    def _cycle_until_stopped(self, stop_event: threading.Event, run_immediately: bool):
        schedule = self.schedule
        next_run = self.clock() if run_immediately else schedule.next_after(self.clock())
        while not stop_event.is_set():
            wait = (next_run - self.clock()).total_seconds()
            if wait > 0 and stop_event.wait(wait):
                break
            following = schedule.next_after(max(next_run, self.clock()))
            timeout = (following - self.clock()).total_seconds()
            try:
                self.run_cycle(stop_event, timeout=timeout)
            except Exception as e:
                logger.error(f"Sync cycle failed: {e}", exc_info=True)
            next_run = following

    # Cycle

    def run_cycle(
        self, stop_event: Optional[threading.Event] = None, timeout: Optional[float] = None
    ) -> CycleReport:
        """
        Run one sync cycle over every tracked repository.

        Per-repository failures are recorded in the report and never raised.
        """
        ctx = CycleContext(stop_event or threading.Event(), timeout)
        report = CycleReport(started_at=self.clock())
        logger.info("Starting sync cycle")

        org_listings, fallback = self._list_organizations(ctx, report)
        labels = list(dict.fromkeys(
            self.config.tracked_repositories()
            + [label for listing in org_listings.values() for label in listing]
            + fallback
        ))

        workers = max(1, self.config.backend.workers)
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="sync") as pool:
            for result in pool.map(lambda label: self._sync_with_retry(label, ctx), labels):
                report.results[result.label] = result

        self._forget_untracked(org_listings, report)
        self._materialize_groups(report)
        self._refresh_counters(report)

        report.finished_at = self.clock()
        self.last_report = report
        logger.info(
            f"Sync cycle completed: {len(report.succeeded)} repositories synced, "
            f"{len(report.failed)} failed, {len(report.forgotten)} forgotten"
        )
        return report

    def _list_organizations(
        self, ctx: CycleContext, report: CycleReport
    ) -> Tuple[Dict[str, List[str]], List[str]]:
        """
        Repository labels per tracked organization.

        Returns:
            Tuple of (upstream listings per login, stored labels of
            organizations whose listing failed). Only upstream listings
            are trusted for forgetting repositories.
        """
        listings: Dict[str, List[str]] = {}
        fallback: List[str] = []
        for login in self.config.tracked_organizations():
            try:
                listings[login] = self.fetcher.list_organization_repositories(
                    login, timeout=ctx.remaining()
                )
            except MirrorError as e:
                logger.error(f"Listing repositories of {login} failed: {e}")
                report.errors.append(f"{login}: {e}")
                try:
                    org = self.entity_store.get(Organization, name=login)
                    fallback.extend(self.entity_store.query_repo_labels_by_org(org.node_id))
                except NotFound:
                    continue
                except MirrorError as store_error:
                    logger.error(f"Loading stored repositories of {login} failed: {store_error}")
        return listings, fallback

    def _sync_with_retry(self, label: str, ctx: CycleContext) -> RepositoryResult:
        result = RepositoryResult(label=label)
        attempts = max(1, self.config.backend.retry)
        while result.attempts < attempts:
            if ctx.cancelled():
                result.error = "cancelled"
                break
            result.attempts += 1
            try:
                result.pages += self.sync_repository(label, ctx)
                result.succeeded = True
                result.error = None
                return result
            except CycleCancelled:
                result.error = "cancelled"
                logger.warning(f"Sync of {label} cancelled")
                break
            except PermanentUpstreamError as e:
                result.error = str(e)
                logger.error(f"Sync of {label} failed permanently: {e}")
                break
            except Exception as e:
                result.error = str(e)
                logger.warning(
                    f"Sync of {label} failed (attempt {result.attempts}/{attempts}): {e}",
                    exc_info=not isinstance(e, MirrorError),
                )

        result.skipped = True
        logger.error(f"Skipping {label} until the next cycle: {result.error}")
        return result

    def sync_repository(self, label: str, ctx: Optional[CycleContext] = None) -> int:
        """
        Pull every new page of one repository, resuming from its checkpoint.

        Returns:
            Number of pages persisted
        """
        ctx = ctx or CycleContext(threading.Event())
        cursor = self.checkpoint_store.get(label)
        token = cursor.end_cursor
        pages = 0
        repository: Optional[Repository] = None

        while True:
            ctx.check()
            page = self.fetcher.fetch_page(label, token, timeout=ctx.remaining())
            if repository is None:
                repository = self._ensure_repository(page)

            self._persist_page(page)
            self.checkpoint_store.commit(
                Cursor(
                    repo_node_id=page.repository.node_id,
                    repo_name_with_owner=label,
                    last_update=self.clock(),
                    end_cursor=page.end_cursor,
                )
            )
            token = page.end_cursor
            pages += 1
            logger.info(
                f"Synced page {pages} of {label}: {len(page.issues)} issues, "
                f"{len(page.pull_requests)} pull requests"
            )
            if not page.has_more:
                break

        ctx.check()
        contributors = self.fetcher.fetch_contributors(
            label, repository.node_id, timeout=ctx.remaining()
        )
        self.entity_store.create_or_update_contributors(contributors)
        return pages

    def _ensure_repository(self, page: FetchedPage) -> Repository:
        org = page.organization
        if org is not None and not self.entity_store.exists(Organization, node_id=org.node_id):
            self.entity_store.create(org)
            logger.info(f"Tracking new organization {org.name}")
        repo = page.repository
        if not self.entity_store.exists(Repository, node_id=repo.node_id):
            self.entity_store.create(repo)
            logger.info(f"Tracking new repository {repo.name_with_owner}")
        return repo

    def _persist_page(self, page: FetchedPage):
        self._persist_entities(Issue, page.issues)
        self._persist_entities(PullRequest, page.pull_requests)

        issue_assignees: Dict[str, List[IssueAssignee]] = defaultdict(list)
        for assignee in page.issue_assignees:
            issue_assignees[assignee.issue_node_id].append(assignee)
        for issue in page.issues:
            self.reconciler.reconcile(IssueAssignee, issue.node_id, issue_assignees[issue.node_id])

        pr_assignees: Dict[str, List[PullRequestAssignee]] = defaultdict(list)
        for assignee in page.pull_request_assignees:
            pr_assignees[assignee.pull_request_node_id].append(assignee)
        for pr in page.pull_requests:
            self.reconciler.reconcile(PullRequestAssignee, pr.node_id, pr_assignees[pr.node_id])

    def _persist_entities(self, cls, entities):
        new = []
        for entity in entities:
            if self.entity_store.exists(cls, node_id=entity.node_id):
                self.entity_store.update_mutable_fields(entity)
            else:
                new.append(entity)
        self.entity_store.create_many(new)

    # Housekeeping

    def forget_repository(self, repository: Repository):
        """Remove a repository dropped from tracking with its contributors and checkpoint."""
        label = repository.name_with_owner
        self.entity_store.delete_relations_by_repo(IssueAssignee, label)
        self.entity_store.delete_relations_by_repo(PullRequestAssignee, label)
        self.entity_store.delete(Issue, repo_node_id=repository.node_id)
        self.entity_store.delete(PullRequest, repo_node_id=repository.node_id)
        self.entity_store.delete(Contributor, repo_node_id=repository.node_id)
        self.entity_store.delete(Repository, node_id=repository.node_id)
        self.checkpoint_store.delete(repository.node_id)
        logger.info(f"Forgot repository {label}")

    def _forget_untracked(self, org_listings: Dict[str, List[str]], report: CycleReport):
        direct = set(self.config.tracked_repositories())
        for login, listing in org_listings.items():
            try:
                org = self.entity_store.get(Organization, name=login)
                stored = self.entity_store.query_repos_by_org(org.node_id)
            except NotFound:
                continue
            except MirrorError as e:
                report.errors.append(f"{login}: {e}")
                continue
            listed = set(listing)
            for repo in stored:
                if repo.name_with_owner in listed or repo.name_with_owner in direct:
                    continue
                try:
                    self.forget_repository(repo)
                    report.forgotten.append(repo.name_with_owner)
                except MirrorError as e:
                    logger.error(f"Forgetting {repo.name_with_owner} failed: {e}")
                    report.errors.append(f"{repo.name_with_owner}: {e}")

    def _materialize_groups(self, report: CycleReport):
        """Write configured group membership into the store for the aggregation joins."""
        for spec in self.config.groups:
            try:
                if not self.entity_store.exists(Group, name=spec.name):
                    self.entity_store.create(Group(name=spec.name))

                orgs = []
                for login in spec.organizations:
                    try:
                        orgs.append(GroupOrganization(
                            group_name=spec.name,
                            org_node_id=self.entity_store.get(Organization, name=login).node_id,
                        ))
                    except NotFound:
                        logger.debug(f"Organization {login} of group {spec.name} not mirrored yet")
                repos = []
                for label in spec.repositories:
                    owner, name = split_name_with_owner(label)
                    try:
                        repos.append(GroupRepository(
                            group_name=spec.name,
                            repo_node_id=self.entity_store.query_repository_node_id(owner, name),
                        ))
                    except NotFound:
                        logger.debug(f"Repository {label} of group {spec.name} not mirrored yet")

                self.reconciler.reconcile(GroupOrganization, spec.name, orgs)
                self.reconciler.reconcile(GroupRepository, spec.name, repos)
            except (MirrorError, ValueError) as e:
                logger.error(f"Materializing group {spec.name} failed: {e}")
                report.errors.append(f"group {spec.name}: {e}")

    def _refresh_counters(self, report: CycleReport):
        for login in self.config.tracked_organizations():
            try:
                org = self.entity_store.get(Organization, name=login)
                self.entity_store.update_mutable_fields(replace(
                    org,
                    issue_count=self.aggregation.issue_count_by_org(org.node_id),
                    pull_request_count=self.aggregation.pull_request_count_by_org(org.node_id),
                    contributor_count=self.aggregation.contributor_count_by_org(org.node_id),
                ))
            except NotFound:
                continue
            except MirrorError as e:
                logger.error(f"Refreshing counters of {login} failed: {e}")
                report.errors.append(f"{login}: {e}")

        for spec in self.config.groups:
            try:
                group = self.entity_store.get(Group, name=spec.name)
                self.entity_store.update_mutable_fields(replace(
                    group,
                    issue_count=self.aggregation.issue_count_by_group(spec.name),
                    pull_request_count=self.aggregation.pull_request_count_by_group(spec.name),
                    contributor_count=self.aggregation.contributor_count_by_group(spec.name),
                ))
            except NotFound:
                continue
            except MirrorError as e:
                logger.error(f"Refreshing counters of group {spec.name} failed: {e}")
                report.errors.append(f"group {spec.name}: {e}")
