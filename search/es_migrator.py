"""
Elasticsearch schema migrator

Moves a physical index from an older mapping version to the current one while
its alias keeps serving reads:

    1. read the index settings and skip step 2 if writes are already blocked
    2. place a write block
    3. create the target index (no alias yet)
    4. start an asynchronous reindex old -> new
    5. poll the reindex task until it completes
    6. delete the task document from .tasks (best effort)
    7. swap the alias old -> new in one _aliases call
    8. delete the old index

Every step tolerates a previous interrupted run, so a failed migration can be
retried from the start.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from search.errors import EngineError, InternalError
from search.es_client import ESClient
from search.es_indices import (
    INDEX_PREFIX,
    META_TYPE,
    DocumentKind,
    ESIndexManager,
    IndexInfo,
    parse_index_name,
)

logger = logging.getLogger(__name__)

POLL_ATTEMPTS = 10
POLL_INTERVAL_SECONDS = 10.0


@dataclass
class Migration:
    """A physical index whose version lags its kind's current mapping"""
    document_kind: str
    index: str
    alias: str


@dataclass
class MigrationStats:
    """Outcome of one migration"""
    index: str
    target_index: str
    documents: int
    elapsed_seconds: float

    def __str__(self) -> str:
        return (
            f"{self.index} → {self.target_index}: "
            f"{self.documents:,} docs "
            f"in {self.elapsed_seconds:.1f}s"
        )


def _is_write_blocked(settings: Dict[str, Any]) -> bool:
    blocks = (settings.get("index") or {}).get("blocks") or {}
    return str(blocks.get("write", "false")).lower() == "true"


class ESMigrator:
    """
    Online reindex-and-swap migrator

    Usage:
        migrator = ESMigrator(client, index_manager)
        for migration in await migrator.get_migrations():
            await migrator.migrate(migration)
    """

    def __init__(
        self,
        client: ESClient,
        index_manager: ESIndexManager,
        poll_attempts: int = POLL_ATTEMPTS,
        poll_interval: float = POLL_INTERVAL_SECONDS,
    ):
        """
        Args:
            client: engine client
            index_manager: index naming and mappings
            poll_attempts: number of reindex task polls before giving up
            poll_interval: seconds to sleep between polls
        """
        self.client = client
        self.index_manager = index_manager
        self.poll_attempts = poll_attempts
        self.poll_interval = poll_interval

    async def get_migrations(self) -> List[Migration]:
        """
        List every core-owned index whose version differs from the current mapping

        Returns:
            migrations sorted by index name
        """
        indices = await self.client.get_indices(f"{INDEX_PREFIX}-*")

        migrations = []
        for index_name in sorted(indices):
            index = indices[index_name] or {}
            meta = (index.get("mappings") or {}).get("_meta") or {}
            if meta.get("type") != META_TYPE:
                continue

            parts = parse_index_name(index_name)
            if parts.document_kind not in [kind.value for kind in DocumentKind]:
                logger.warning(f"Skipping index with unknown document kind: {index_name}")
                continue

            latest_version = self.index_manager.get_latest_version_for_document_kind(parts.document_kind)
            if parts.version == latest_version:
                continue

            aliases = list((index.get("aliases") or {}).keys())
            alias = aliases[0] if aliases else self.index_manager.get_alias_for_index(index_name)

            migrations.append(Migration(
                document_kind=parts.document_kind,
                index=index_name,
                alias=alias,
            ))

        return migrations

    async def migrate(self, migration: Migration) -> MigrationStats:
        """
        Run the eight migration steps for one index

        Args:
            migration: index to migrate

        Returns:
            MigrationStats

        Raises:
            InternalError: a step failed; the index is left write-blocked and the
                migration can be retried
        """
        start_time = time.time()
        new_index = self.index_manager.increment_index_version(migration.index)

        logger.info(f"Starting migration: {migration.index} → {new_index}")

        await self._block_writes(migration.index)

        logger.info(f"Creating target index {new_index}")
        await self.index_manager.create_index(IndexInfo(
            index=new_index,
            alias="",
            document_kind=DocumentKind(migration.document_kind),
        ), check_exists=True)

        logger.info(f"Starting reindex {migration.index} → {new_index}")
        task_id = await self.client.reindex(migration.index, new_index)
        logger.info(f"Reindex started: task {task_id}")

        task = await self._wait_for_task(task_id)

        try:
            await self.client.delete_task_document(task_id)
        except EngineError as e:
            logger.warning(f"Failed to delete task document {task_id}: {e}")

        await self._swap_alias(migration.alias, migration.index, new_index)

        await self.client.delete_index(migration.index, ignore_missing=True)

        status = (task.get("response") or task.get("task", {}).get("status") or {})
        stats = MigrationStats(
            index=migration.index,
            target_index=new_index,
            documents=int(status.get("created", 0) or 0),
            elapsed_seconds=time.time() - start_time,
        )
        logger.info(f"Migration complete: {stats}")
        return stats

    async def _block_writes(self, index: str) -> None:
        settings = await self.client.get_index_settings(index)
        if _is_write_blocked(settings):
            logger.info(f"Index is already write-blocked: {index}")
            return

        logger.info(f"Placing write block on {index}")
        response = await self.client.add_write_block(index)

        blocked = all(
            entry.get("blocked", False)
            for entry in response.get("indices") or []
            if entry.get("name") == index
        )
        if not (response.get("acknowledged") and response.get("shards_acknowledged") and blocked):
            logger.error(f"Write block unsuccessful: {response}")
            raise InternalError(
                f"unable to block writes for index: {index}",
                details={"index": index, "response": response},
            )

    async def _wait_for_task(self, task_id: str) -> Dict[str, Any]:
        """Poll the task API; transient errors are tolerated until attempts run out"""
        for attempt in range(1, self.poll_attempts + 1):
            logger.info(f"Polling task {task_id} ({attempt}/{self.poll_attempts})")

            task: Optional[Dict[str, Any]] = None
            try:
                task = await self.client.get_task(task_id)
            except EngineError as e:
                logger.warning(f"Error polling task {task_id}: {e}")

            if task is not None and task.get("completed"):
                error = task.get("error") or (task.get("response") or {}).get("failures")
                if error:
                    logger.error(f"Reindex task {task_id} failed: {error}")
                    raise InternalError(
                        f"reindex task {task_id} failed",
                        details={"task": task_id, "error": error},
                    )
                logger.info(f"Reindex completed: task {task_id}")
                return task

            if attempt < self.poll_attempts:
                logger.info(f"Task {task_id} incomplete, waiting {self.poll_interval}s before polling again")
                await asyncio.sleep(self.poll_interval)

        raise InternalError(
            f"reindex task {task_id} did not complete after {self.poll_attempts} polls",
            details={"task": task_id},
        )

    async def _swap_alias(self, alias: str, old_index: str, new_index: str) -> None:
        logger.info(f"Moving alias {alias}: {old_index} → {new_index}")
        try:
            await self.client.swap_alias(alias, old_index, new_index)
        except EngineError as e:
            # an interrupted run may already have swapped the alias
            if e.status_code != 404 or not await self._alias_points_to(alias, new_index):
                raise
            logger.info(f"Alias {alias} already points to {new_index}")

    async def _alias_points_to(self, alias: str, index: str) -> bool:
        try:
            indices = await self.client.get_indices(alias)
        except EngineError:
            return False
        return list(indices) == [index]
