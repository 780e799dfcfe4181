#!/usr/bin/env python3
"""Script to start or restart the community mirror sync service."""

import argparse
import logging
import signal
import sys
import os
import threading
import time

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from community_mirror.application.enrichment import normalize_affiliation
from community_mirror.application.sync_service import SyncService
from community_mirror.config import Config
from community_mirror.domain.errors import MirrorError
from community_mirror.infrastructure.aggregation import AggregationQueries
from community_mirror.infrastructure.checkpoint_store import CheckpointStore
from community_mirror.infrastructure.database import Database
from community_mirror.infrastructure.entity_store import EntityStore
from community_mirror.infrastructure.github_client import GitHubClient

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

logger = logging.getLogger(__name__)


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        prog="community-mirror",
        description="Mirror GitHub organizations and repositories into PostgreSQL",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    for name, help_text in (
        ("start", "start the sync service, e.g. sync.py start -t TOKEN config.yaml"),
        ("restart", "restart the sync service keeping checkpoints, e.g. sync.py restart -c '@every 30m'"),
    ):
        command = commands.add_parser(name, help=help_text)
        command.add_argument("config", nargs="?", default=None, help="path to the YAML config")
        command.add_argument("-t", "--token", default="", help="your github token")
        command.add_argument("-c", "--cron", default="", help="your cron spec")
        command.add_argument("-r", "--retry", type=int, default=-1, help="retry times")
        command.add_argument(
            "--wait", type=float, default=3.0, help="seconds to wait for other services first"
        )

    normalize = commands.add_parser(
        "normalize-contributors", help="clean up stored contributor company/location values"
    )
    normalize.add_argument("config", nargs="?", default=None, help="path to the YAML config")
    return parser.parse_args(argv)


def build_service(config: Config) -> SyncService:
    database = Database(config.database)
    database.connect()
    database.initialize_schema()
    return SyncService(
        config=config,
        entity_store=EntityStore(database),
        checkpoint_store=CheckpointStore(database),
        aggregation=AggregationQueries(database),
        fetcher=GitHubClient(
            token=config.token,
            data_source=config.data_source,
            page_size=config.backend.page_size,
        ),
    )


def main(argv=None):
    """Run the requested command."""
    args = parse_args(argv)
    try:
        config = Config.load(args.config)

        if args.command == "normalize-contributors":
            database = Database(config.database)
            database.connect()
            try:
                changed = EntityStore(database).update_contributor_company_and_location(
                    normalize_affiliation
                )
            finally:
                database.close()
            logger.info(f"Normalized {changed} contributors")
            return 0

        config = config.with_overrides(token=args.token, cron=args.cron, retry=args.retry)
        if not config.token:
            logger.warning("GitHub token not found. Using unauthenticated requests (limited rate).")

        if args.wait > 0:
            time.sleep(args.wait)

        service = build_service(config)
        stop_event = threading.Event()
        signal.signal(signal.SIGINT, lambda *_: stop_event.set())
        signal.signal(signal.SIGTERM, lambda *_: stop_event.set())

        try:
            if args.command == "restart":
                service.restart(config, stop_event=stop_event)
            else:
                service.start(stop_event=stop_event)
        finally:
            service.entity_store.database.close()
        return 0

    except MirrorError as e:
        logger.error(f"Sync service failed: {e}", exc_info=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())
