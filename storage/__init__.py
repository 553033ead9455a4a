"""
Grafeas storage backed by Elasticsearch
"""

from storage.base import GrafeasStorage, ProjectStorage
from storage.config import ElasticsearchConfig, RefreshOption, load_config_from_env
from storage.elasticsearch import ElasticsearchStorage
from storage.provider import create_storage

__all__ = [
    "ElasticsearchConfig",
    "ElasticsearchStorage",
    "GrafeasStorage",
    "ProjectStorage",
    "RefreshOption",
    "create_storage",
    "load_config_from_env",
]
