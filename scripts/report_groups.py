#!/usr/bin/env python3
"""Script to dump organization and group counters to CSV and JSON."""

import logging
import sys
import os
import csv
import json
from datetime import datetime

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from community_mirror.config import Config
from community_mirror.domain.errors import MirrorError
from community_mirror.infrastructure.aggregation import AggregationQueries
from community_mirror.infrastructure.database import Database

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

logger = logging.getLogger(__name__)

FIELDS = ["kind", "name", "issue_count", "pull_request_count", "contributor_count"]


def collect_rows(database: Database, aggregation: AggregationQueries):
    """Current counters of every organization and group, recomputed from the store."""
    rows = []
    with database.transaction() as cur:
        cur.execute("SELECT node_id, name FROM organizations ORDER BY name")
        organizations = cur.fetchall()
        cur.execute("SELECT name FROM groups ORDER BY name")
        groups = cur.fetchall()

    for org in organizations:
        rows.append({
            "kind": "organization",
            "name": org["name"],
            "issue_count": aggregation.issue_count_by_org(org["node_id"]),
            "pull_request_count": aggregation.pull_request_count_by_org(org["node_id"]),
            "contributor_count": aggregation.contributor_count_by_org(org["node_id"]),
        })
    for group in groups:
        rows.append({
            "kind": "group",
            "name": group["name"],
            "issue_count": aggregation.issue_count_by_group(group["name"]),
            "pull_request_count": aggregation.pull_request_count_by_group(group["name"]),
            "contributor_count": aggregation.contributor_count_by_group(group["name"]),
        })
    return rows


def dump_to_csv(rows, output_file: str):
    """Dump counters to CSV."""
    with open(output_file, 'w', newline='', encoding='utf-8') as f:
        writer = csv.DictWriter(f, fieldnames=FIELDS)
        writer.writeheader()
        writer.writerows(rows)
    logger.info(f"Dumped {len(rows)} rows to {output_file}")


def dump_to_json(rows, output_file: str):
    """Dump counters to JSON."""
    with open(output_file, 'w', encoding='utf-8') as f:
        json.dump(rows, f, indent=2, ensure_ascii=False)
    logger.info(f"Dumped {len(rows)} rows to {output_file}")


def main():
    """Dump organization and group counters to CSV and JSON."""
    try:
        config = Config.load(sys.argv[1] if len(sys.argv) > 1 else None)
        database = Database(config.database)
        database.connect()
        try:
            rows = collect_rows(database, AggregationQueries(database))
        finally:
            database.close()

        if not rows:
            logger.warning("No data to dump")
            return 0

        output_dir = os.getenv("OUTPUT_DIR", "artifacts")
        os.makedirs(output_dir, exist_ok=True)

        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        csv_file = os.path.join(output_dir, f"counters_{timestamp}.csv")
        json_file = os.path.join(output_dir, f"counters_{timestamp}.json")

        dump_to_csv(rows, csv_file)
        dump_to_json(rows, json_file)

        logger.info(f"Counter dump completed. Files: {csv_file}, {json_file}")
        return 0
    except MirrorError as e:
        logger.error(f"Counter dump failed: {e}", exc_info=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())
