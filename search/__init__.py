"""
Elasticsearch engine layer for Grafeas storage

Components:
- es_client: typed engine client (documents, search with PIT paging, index admin)
- es_pagination: page token helpers
- es_indices: versioned mappings and index/alias naming
- es_migrator: online reindex-and-swap migration of one index
- es_orchestrator: runs pending migrations at startup
- errors: storage error taxonomy
"""

from .errors import (
    AlreadyExistsError,
    EngineError,
    InternalError,
    InvalidArgumentError,
    NotFoundError,
    StorageError,
)
from .es_client import ESClient
from .es_indices import DocumentKind, ESIndexManager, IndexInfo, parse_index_name
from .es_migrator import ESMigrator, Migration
from .es_orchestrator import MigrationOrchestrator
from .es_pagination import Pagination

__all__ = [
    "AlreadyExistsError",
    "DocumentKind",
    "ESClient",
    "ESIndexManager",
    "ESMigrator",
    "EngineError",
    "IndexInfo",
    "InternalError",
    "InvalidArgumentError",
    "Migration",
    "MigrationOrchestrator",
    "NotFoundError",
    "Pagination",
    "StorageError",
    "parse_index_name",
]
