"""
Migration orchestrator

Runs every pending migration at startup, one at a time.
"""

import logging
from typing import List

from search.es_migrator import ESMigrator, MigrationStats

logger = logging.getLogger(__name__)


class MigrationOrchestrator:
    """
    Sequential migration runner

    Stops at the first failure and propagates the error, aborting startup.
    """

    def __init__(self, migrator: ESMigrator):
        self.migrator = migrator
        self.completed: List[MigrationStats] = []

    async def run_migrations(self) -> int:
        """
        Discover and run pending migrations

        Returns:
            number of migrations executed
        """
        migrations = await self.migrator.get_migrations()

        if not migrations:
            logger.info("No migrations to run")
            return 0

        logger.info(f"Discovered {len(migrations)} migrations to run")

        for migration in migrations:
            try:
                stats = await self.migrator.migrate(migration)
            except Exception as e:
                logger.error(f"Migration of {migration.index} failed: {e}")
                raise
            self.completed.append(stats)

        logger.info(f"Completed {len(migrations)} migrations")
        return len(migrations)
