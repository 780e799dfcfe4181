"""Tests for the counter report script."""

from unittest.mock import MagicMock, patch

import report_groups
from community_mirror.config import Config
from community_mirror.domain.errors import StorageError


class TestMain:
    def test_database_closed_when_collection_fails(self):
        database = MagicMock()
        with patch.object(report_groups.Config, "load", return_value=Config()), \
                patch.object(report_groups, "Database", return_value=database), \
                patch.object(report_groups, "collect_rows", side_effect=StorageError("relation does not exist")):
            assert report_groups.main() == 1

        database.connect.assert_called_once()
        database.close.assert_called_once()

    def test_counters_written(self, tmp_path, monkeypatch):
        monkeypatch.setenv("OUTPUT_DIR", str(tmp_path))
        rows = [{"kind": "group", "name": "g", "issue_count": 1, "pull_request_count": 2, "contributor_count": 3}]
        database = MagicMock()
        with patch.object(report_groups.Config, "load", return_value=Config()), \
                patch.object(report_groups, "Database", return_value=database), \
                patch.object(report_groups, "collect_rows", return_value=rows):
            assert report_groups.main() == 0

        database.close.assert_called_once()
        assert sorted(p.suffix for p in tmp_path.iterdir()) == [".csv", ".json"]
