"""Tests for contributor profile normalization."""

import pytest

from community_mirror.application.enrichment import normalize_affiliation
from community_mirror.infrastructure.entity_store import EntityStore


@pytest.mark.parametrize("raw,expected", [
    ("@cloudwego", "cloudwego"),
    ("  ByteDance  Inc. ", "ByteDance Inc"),
    ("Beijing,", "Beijing"),
    ("@ bytedance;", "bytedance"),
    ("", ""),
    (None, ""),
    ("Shanghai\tChina", "Shanghai China"),
])
def test_normalize_affiliation(raw, expected):
    assert normalize_affiliation(raw) == expected


def test_normalized_value_is_stable():
    once = normalize_affiliation(" @Acme Corp., ")
    assert normalize_affiliation(once) == once


class TestStoreNormalization:
    def test_only_changed_rows_updated(self, mock_database):
        cur = mock_database.cursor
        cur.fetchall.return_value = [
            {"node_id": "U_1", "repo_node_id": "R_1", "company": "@cloudwego", "location": "Beijing"},
            {"node_id": "U_2", "repo_node_id": "R_1", "company": "Acme", "location": "Paris"},
        ]

        changed = EntityStore(mock_database).update_contributor_company_and_location(normalize_affiliation)

        assert changed == 1
        query, params = cur.execute.call_args[0]
        assert query.startswith("UPDATE contributors")
        assert params == ("cloudwego", "Beijing", "U_1", "R_1")
        assert cur.execute.call_count == 2
