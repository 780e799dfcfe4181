#!/usr/bin/env python3
"""Script to initialize PostgreSQL database schema."""

import logging
import sys
import os

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from community_mirror.config import DatabaseSettings
from community_mirror.domain.errors import MirrorError
from community_mirror.infrastructure.database import Database

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

logger = logging.getLogger(__name__)


def main():
    """Initialize database schema."""
    try:
        database = Database(DatabaseSettings.from_env())
        database.connect()
        database.initialize_schema()
        database.close()
        logger.info("Database schema setup completed successfully")
        return 0
    except MirrorError as e:
        logger.error(f"Failed to setup database schema: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
