"""
Storage provider factory

Builds the Elasticsearch storage backend for the hosting service:

    projects, grafeas = await create_storage("elasticsearch", {
        "url": "http://localhost:9200",
        "refresh": "true",
    })
"""

import logging
from typing import Any, Callable, Dict, Optional, Tuple, Union

from elasticsearch import AsyncElasticsearch

from filtering import Filterer
from search.errors import InvalidArgumentError
from search.es_client import ESClient
from search.es_indices import ESIndexManager
from search.es_migrator import ESMigrator
from search.es_orchestrator import MigrationOrchestrator
from storage.base import GrafeasStorage, ProjectStorage
from storage.config import ElasticsearchConfig, validate_config
from storage.elasticsearch import ElasticsearchStorage

logger = logging.getLogger(__name__)

STORAGE_TYPE = "elasticsearch"

ElasticsearchFactory = Callable[[ElasticsearchConfig], AsyncElasticsearch]


def new_elasticsearch_client(config: ElasticsearchConfig) -> AsyncElasticsearch:
    """AsyncElasticsearch for the configured URL, with HTTP Basic auth when credentials are set"""
    kwargs: Dict[str, Any] = {}
    if config.has_credentials:
        kwargs["basic_auth"] = (config.username or "", config.password or "")
    return AsyncElasticsearch(config.url, **kwargs)


async def create_storage(
    storage_type: str,
    config: Union[ElasticsearchConfig, Dict[str, Any]],
    es_factory: Optional[ElasticsearchFactory] = None,
) -> Tuple[ProjectStorage, GrafeasStorage]:
    """
    Validate the configuration, wire the backend and initialize it

    Args:
        storage_type: must be "elasticsearch"
        config: ElasticsearchConfig or a mapping of its fields
        es_factory: builds the AsyncElasticsearch (tests inject a mock)

    Returns:
        (projects implementation, grafeas implementation)

    Raises:
        InvalidArgumentError: unknown storage type or invalid config
        StorageError: initialization or a startup migration failed
    """
    if storage_type != STORAGE_TYPE:
        raise InvalidArgumentError(
            f"unknown storage type {storage_type}, must be '{STORAGE_TYPE}'",
            details={"storage_type": storage_type},
        )

    config = validate_config(config)

    logger.info("registering elasticsearch storage provider")

    client = ESClient((es_factory or new_elasticsearch_client)(config))

    try:
        info = await client.info()
        logger.info(f"Elasticsearch version: {(info.get('version') or {}).get('number', 'unknown')}")

        index_manager = ESIndexManager(client)
        orchestrator = MigrationOrchestrator(ESMigrator(client, index_manager))
        storage = ElasticsearchStorage(client, Filterer(), config, index_manager, orchestrator)

        await storage.initialize()
    except BaseException:
        await client.close()
        raise

    return storage, storage
