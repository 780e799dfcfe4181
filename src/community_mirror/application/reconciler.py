"""Reconcile stored relation sets against freshly fetched ones."""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Tuple, Type

from community_mirror.domain.models import normalize_relation

logger = logging.getLogger(__name__)


@dataclass
class ReconcileResult:
    added: List[Any] = field(default_factory=list)
    removed: List[Any] = field(default_factory=list)

    @property
    def writes(self) -> int:
        return len(self.added) + len(self.removed)


def diff_relations(current: Iterable[Any], desired: Iterable[Any]) -> Tuple[List[Any], List[Any]]:
    """
    Compute the minimal add/remove operations turning ``current`` into ``desired``.

    Records are compared by business content with their surrogate ids
    stripped. Returned additions are normalized (no id); removals keep the
    stored record so the caller can delete by id. Records present on both
    sides appear in neither list.
    """
    current_by_key: Dict[Any, Any] = {}
    for record in current:
        current_by_key.setdefault(normalize_relation(record), record)

    desired_keys: Dict[Any, None] = {}
    for record in desired:
        desired_keys.setdefault(normalize_relation(record), None)

    to_add = [key for key in desired_keys if key not in current_by_key]
    to_remove = [record for key, record in current_by_key.items() if key not in desired_keys]
    return to_add, to_remove


class RelationReconciler:
    """Makes the stored members of one parent equal a desired set with minimal writes."""

    def __init__(self, store):
        """
        Args:
            store: Anything exposing list_relations, create_many and delete_by_ids,
                usually an EntityStore.
        """
        self.store = store

    def reconcile(self, cls: Type[Any], parent_node_id: str, desired: Iterable[Any]) -> ReconcileResult:
        """
        Reconcile the ``cls`` relation rows of ``parent_node_id`` to ``desired``.

        Additions are written before removals. If the removal fails the
        error propagates and the additions stay, leaving a superset that the
        next cycle trims.
        """
        desired = list(desired)
        for record in desired:
            if getattr(record, cls.PARENT_COLUMN) != parent_node_id:
                raise ValueError(
                    f"{cls.__name__} for {getattr(record, cls.PARENT_COLUMN)} "
                    f"passed while reconciling {parent_node_id}"
                )

        current = self.store.list_relations(cls, parent_node_id)
        to_add, to_remove = diff_relations(current, desired)

        if to_add:
            self.store.create_many(to_add)
        if to_remove:
            self.store.delete_by_ids(cls, [record.id for record in to_remove])

        if to_add or to_remove:
            logger.debug(
                f"Reconciled {cls.TABLE} of {parent_node_id}: "
                f"+{len(to_add)} -{len(to_remove)}"
            )
        return ReconcileResult(added=to_add, removed=to_remove)
