"""Tests for contributor rollups."""

from community_mirror.infrastructure.aggregation import AggregationQueries


class TestGroupUnion:
    def test_repository_reachable_twice_counted_once(self, mock_database):
        """Group lists R directly and via its owning organization."""
        cur = mock_database.cursor
        cur.fetchall.side_effect = [[{"node_id": "R"}], [{"node_id": "R"}]]
        cur.fetchone.return_value = {"count": 5}

        count = AggregationQueries(mock_database).contributor_count_by_group("G")

        assert count == 5
        assert cur.execute.call_args[0][1] == (["R"],)

    def test_union_of_both_paths(self, mock_database):
        cur = mock_database.cursor
        cur.fetchall.side_effect = [
            [{"node_id": "R_b"}, {"node_id": "R_a"}],
            [{"node_id": "R_a"}, {"node_id": "R_c"}],
        ]

        repos = AggregationQueries(mock_database).group_repository_node_ids("G")

        assert repos == ["R_a", "R_b", "R_c"]

    def test_empty_group_counts_zero_without_query(self, mock_database):
        cur = mock_database.cursor
        cur.fetchall.side_effect = [[], []]

        assert AggregationQueries(mock_database).contributor_count_by_group("G") == 0
        assert cur.execute.call_count == 2


class TestOrganizationCounts:
    def test_contributor_count_by_org(self, mock_database):
        mock_database.cursor.fetchone.return_value = {"count": 12}

        assert AggregationQueries(mock_database).contributor_count_by_org("O_1") == 12
        query, params = mock_database.cursor.execute.call_args[0]
        assert "COUNT(DISTINCT contributors.node_id)" in query
        assert params == ("O_1",)

    def test_issue_count_by_org(self, mock_database):
        mock_database.cursor.fetchone.return_value = {"count": 3}
        assert AggregationQueries(mock_database).issue_count_by_org("O_1") == 3
