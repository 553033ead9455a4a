"""
Shared pytest fixtures
"""

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import json
from unittest.mock import AsyncMock, MagicMock

import pytest
from elastic_transport import ApiResponseMeta, HttpHeaders, NodeConfig
from elasticsearch import ApiError

from search.es_client import ESClient
from search.es_indices import ESIndexManager
from storage.config import ElasticsearchConfig

ES_METHODS = (
    "index", "bulk", "search", "msearch", "get", "mget", "delete",
    "delete_by_query", "open_point_in_time", "close_point_in_time",
    "reindex", "info", "close",
)
INDICES_METHODS = (
    "exists", "create", "delete", "add_block", "get_settings",
    "update_aliases", "get",
)


def make_api_error(status: int, error_type: str = "exception", body=None) -> ApiError:
    """Build the ApiError the elasticsearch client raises for a non-2xx response"""
    meta = ApiResponseMeta(
        status=status,
        http_version="1.1",
        headers=HttpHeaders(),
        duration=0.0,
        node=NodeConfig("http", "localhost", 9200),
    )
    if body is None:
        body = {"error": {"type": error_type, "reason": "test"}, "status": status}
    return ApiError(message=error_type, meta=meta, body=body)


def search_response(sources=None, total=None, ids=None):
    """_search response body with the given _source documents"""
    sources = sources or []
    ids = ids or [f"doc-{i}" for i in range(len(sources))]
    return {
        "hits": {
            "total": {"value": len(sources) if total is None else total, "relation": "eq"},
            "hits": [
                {"_index": "grafeas-test", "_id": doc_id, "_source": source}
                for doc_id, source in zip(ids, sources)
            ],
        }
    }


@pytest.fixture
def api_error():
    return make_api_error


@pytest.fixture
def es():
    """AsyncElasticsearch mock with an AsyncMock per endpoint"""
    es = MagicMock()
    for name in ES_METHODS:
        setattr(es, name, AsyncMock())
    es.indices = MagicMock()
    for name in INDICES_METHODS:
        setattr(es.indices, name, AsyncMock())
    es.tasks = MagicMock()
    es.tasks.get = AsyncMock()
    return es


@pytest.fixture
def client(es):
    return ESClient(es)


@pytest.fixture
def mappings_dir(tmp_path):
    """Mapping directory: projects v1, occurrences v2, notes v2"""
    for kind, version in (("projects", "v1"), ("occurrences", "v2"), ("notes", "v2")):
        mapping = {
            "version": version,
            "mappings": {
                "_meta": {"type": "grafeas"},
                "properties": {"name": {"type": "keyword"}},
            },
        }
        (tmp_path / f"{kind}.json").write_text(json.dumps(mapping), encoding="utf-8")
    return tmp_path


@pytest.fixture
def index_manager(client, mappings_dir):
    manager = ESIndexManager(client)
    manager.load_mappings(mappings_dir)
    return manager


@pytest.fixture
def es_config(mappings_dir):
    return ElasticsearchConfig(
        url="http://localhost:9200",
        refresh="true",
        mappings_dir=str(mappings_dir),
    )
