#!/usr/bin/env python3
"""
Grafeas index migration script

Runs (or lists) pending index migrations against the configured cluster:

    python -m search.run_migration status
    python -m search.run_migration migrate
"""

import argparse
import asyncio
import logging
import os
import sys
from datetime import datetime
from typing import List, Optional

from search.errors import StorageError
from search.es_client import ESClient
from search.es_indices import ESIndexManager
from search.es_migrator import ESMigrator
from search.es_orchestrator import MigrationOrchestrator
from storage.config import ElasticsearchConfig, load_config_from_env
from storage.provider import new_elasticsearch_client

logger = logging.getLogger(__name__)


def setup_logging():
    level = logging.DEBUG if os.getenv("DEBUG", "").lower() == "true" else logging.INFO
    logging.basicConfig(level=level, format='%(asctime)s - %(levelname)s - %(message)s')


async def run(action: str, config: ElasticsearchConfig, client: ESClient) -> int:
    """
    Execute a CLI action

    Returns:
        process exit status
    """
    index_manager = ESIndexManager(client)
    index_manager.load_mappings(config.mappings_dir)
    migrator = ESMigrator(client, index_manager)

    if action == "status":
        migrations = await migrator.get_migrations()
        if not migrations:
            logger.info("No pending migrations")
            return 0

        logger.info(f"{len(migrations)} pending migrations:")
        for migration in migrations:
            target = index_manager.increment_index_version(migration.index)
            logger.info(f"  {migration.index:50} → {target} (alias {migration.alias})")
        return 0

    logger.info("=" * 60)
    logger.info("Grafeas Elasticsearch Migration")
    logger.info("=" * 60)

    start_time = datetime.now()
    orchestrator = MigrationOrchestrator(migrator)
    count = await orchestrator.run_migrations()
    elapsed = (datetime.now() - start_time).total_seconds()

    for stats in orchestrator.completed:
        logger.info(f"  {stats}")
    logger.info("-" * 60)
    logger.info(f"  Total: {count} migrations in {elapsed:.1f}s")
    logger.info("=" * 60)
    return 0


async def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point"""
    parser = argparse.ArgumentParser(description="Grafeas Elasticsearch index migrations")
    parser.add_argument("action", choices=["migrate", "status"])
    args = parser.parse_args(argv)

    try:
        config = load_config_from_env()
    except StorageError as e:
        logger.error(f"Invalid configuration: {e}")
        return 1

    client = ESClient(new_elasticsearch_client(config))
    try:
        info = await client.info()
        logger.info(f"Connected to ES {config.url} (version {(info.get('version') or {}).get('number', 'unknown')})")
        return await run(args.action, config, client)
    except StorageError as e:
        logger.error(f"Migration failed: {e}")
        return 1
    finally:
        await client.close()


def cli():
    setup_logging()
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    cli()
