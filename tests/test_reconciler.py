"""Tests for relation set reconciliation."""

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from community_mirror.application.reconciler import RelationReconciler, diff_relations
from community_mirror.domain.errors import StorageError
from community_mirror.domain.models import IssueAssignee, normalize_relation

from fakes import InMemoryEntityStore


def assignee(login: str, issue: str = "I_1", id=None) -> IssueAssignee:
    return IssueAssignee(
        issue_node_id=issue,
        issue_number=1,
        issue_url="https://github.com/o/r/issues/1",
        issue_repo_name="o/r",
        assignee_node_id=f"U_{login}",
        assignee_login=login,
        id=id,
    )


logins = st.sets(st.sampled_from(["alice", "bob", "carol", "dave", "erin", "frank"]))


class TestDiffRelations:
    def test_first_population_adds_all(self):
        to_add, to_remove = diff_relations([], [assignee("alice"), assignee("bob")])
        assert to_add == [assignee("alice"), assignee("bob")]
        assert to_remove == []

    def test_empty_desired_revokes_all(self):
        current = [assignee("alice", id=1), assignee("bob", id=2)]
        to_add, to_remove = diff_relations(current, [])
        assert to_add == []
        assert [r.id for r in to_remove] == [1, 2]

    def test_equal_sets_produce_nothing(self):
        current = [assignee("alice", id=1)]
        assert diff_relations(current, [assignee("alice")]) == ([], [])

    def test_removals_keep_stored_ids(self):
        to_add, to_remove = diff_relations(
            [assignee("alice", id=11), assignee("bob", id=12)],
            [assignee("bob"), assignee("carol")],
        )
        assert to_add == [assignee("carol")]
        assert all(r.id is None for r in to_add)
        assert [r.id for r in to_remove] == [11]

    def test_display_field_change_is_remove_plus_add(self):
        renamed = IssueAssignee("I_1", 1, "https://github.com/o/r/issues/1", "o/r", "U_alice", "alice2")
        to_add, to_remove = diff_relations([assignee("alice", id=5)], [renamed])
        assert to_add == [renamed]
        assert [r.id for r in to_remove] == [5]

    @given(current=logins, desired=logins)
    @settings(max_examples=200)
    def test_minimal_and_exact(self, current, desired):
        """toAdd never overlaps current, toRemove never overlaps desired, result equals desired."""
        current_records = [assignee(login, id=i) for i, login in enumerate(sorted(current), 1)]
        desired_records = [assignee(login) for login in desired]

        to_add, to_remove = diff_relations(current_records, desired_records)

        current_set = {normalize_relation(r) for r in current_records}
        desired_set = {normalize_relation(r) for r in desired_records}
        added = {normalize_relation(r) for r in to_add}
        removed = {normalize_relation(r) for r in to_remove}

        assert not added & current_set
        assert not removed & desired_set
        assert (current_set | added) - removed == desired_set


class TestRelationReconciler:
    @pytest.fixture
    def store(self):
        return InMemoryEntityStore()

    def _members(self, store, parent="I_1"):
        return {r.assignee_login for r in store.list_relations(IssueAssignee, parent)}

    def test_reconcile_applies_diff(self, store):
        reconciler = RelationReconciler(store)
        reconciler.reconcile(IssueAssignee, "I_1", [assignee("alice"), assignee("bob")])
        kept_id = next(r.id for r in store.list_relations(IssueAssignee, "I_1") if r.assignee_login == "bob")

        result = reconciler.reconcile(IssueAssignee, "I_1", [assignee("bob"), assignee("carol")])

        assert self._members(store) == {"bob", "carol"}
        assert len(result.added) == 1 and len(result.removed) == 1
        bob = next(r for r in store.list_relations(IssueAssignee, "I_1") if r.assignee_login == "bob")
        assert bob.id == kept_id

    @given(desired=logins)
    @settings(max_examples=50)
    def test_second_run_writes_nothing(self, desired):
        store = InMemoryEntityStore()
        reconciler = RelationReconciler(store)
        reconciler.reconcile(IssueAssignee, "I_1", [assignee(l) for l in desired])
        writes = store.writes

        result = reconciler.reconcile(IssueAssignee, "I_1", [assignee(l) for l in desired])

        assert result.writes == 0
        assert store.writes == writes

    def test_other_parents_untouched(self, store):
        reconciler = RelationReconciler(store)
        reconciler.reconcile(IssueAssignee, "I_2", [assignee("zoe", issue="I_2")])
        reconciler.reconcile(IssueAssignee, "I_1", [])
        assert self._members(store, "I_2") == {"zoe"}

    def test_foreign_parent_rejected(self, store):
        with pytest.raises(ValueError):
            RelationReconciler(store).reconcile(IssueAssignee, "I_1", [assignee("a", issue="I_9")])

    def test_remove_failure_leaves_superset(self, store):
        reconciler = RelationReconciler(store)
        reconciler.reconcile(IssueAssignee, "I_1", [assignee("alice")])

        def boom(*_):
            raise StorageError("connection reset")

        store.fail["delete_by_ids"] = boom
        with pytest.raises(StorageError):
            reconciler.reconcile(IssueAssignee, "I_1", [assignee("bob")])

        assert self._members(store) == {"alice", "bob"}

        del store.fail["delete_by_ids"]
        reconciler.reconcile(IssueAssignee, "I_1", [assignee("bob")])
        assert self._members(store) == {"bob"}
