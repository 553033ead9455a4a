"""
Elasticsearch storage configuration
"""

import os
from enum import Enum
from typing import Optional

from dotenv import find_dotenv, load_dotenv
from pydantic import BaseModel, Field, ValidationError, field_validator

from search.errors import InvalidArgumentError
from search.es_indices import MAPPINGS_DIR
from search.es_pagination import DEFAULT_PIT_KEEP_ALIVE

_TRUE_VALUES = ("1", "true", "yes", "on")


class RefreshOption(str, Enum):
    """Refresh behaviour of write requests"""
    TRUE = "true"
    WAIT_FOR = "wait_for"
    FALSE = "false"


class ElasticsearchConfig(BaseModel):
    """Connection and behaviour settings of the Elasticsearch backend"""
    url: str = Field(..., min_length=1, description="Elasticsearch URL")
    username: Optional[str] = Field(default=None, description="HTTP Basic username")
    password: Optional[str] = Field(default=None, description="HTTP Basic password")
    refresh: RefreshOption = Field(..., description="Refresh option for write requests")
    mappings_dir: str = Field(default=str(MAPPINGS_DIR), description="Directory of versioned mapping files")
    pit_keep_alive: str = Field(default=DEFAULT_PIT_KEEP_ALIVE, min_length=1, description="Point in time keepalive")
    migrate: bool = Field(default=True, description="Run pending migrations on startup")

    @field_validator("url")
    @classmethod
    def url_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("url must not be blank")
        return value

    @property
    def has_credentials(self) -> bool:
        return bool(self.username or self.password)

    def delete_refresh(self) -> bool:
        """_delete_by_query only takes true/false; wait_for is sent as true"""
        return self.refresh != RefreshOption.FALSE


def validate_config(data) -> ElasticsearchConfig:
    """
    Build and validate an ElasticsearchConfig

    Args:
        data: ElasticsearchConfig or mapping of its fields

    Raises:
        InvalidArgumentError: missing url, invalid refresh value, ...
    """
    if isinstance(data, ElasticsearchConfig):
        data = data.model_dump()

    try:
        return ElasticsearchConfig(**(data or {}))
    except ValidationError as e:
        raise InvalidArgumentError(
            f"invalid elasticsearch config: {e.errors(include_url=False)}",
            details={"errors": [error["msg"] for error in e.errors()]},
        ) from e


def load_config_from_env() -> ElasticsearchConfig:
    """Read the configuration from the environment (and .env)"""
    load_dotenv(find_dotenv(usecwd=True))

    data = {
        "url": os.getenv("GRAFEAS_ES_URL", ""),
        "username": os.getenv("GRAFEAS_ES_USERNAME") or None,
        "password": os.getenv("GRAFEAS_ES_PASSWORD") or None,
        "refresh": os.getenv("GRAFEAS_ES_REFRESH", RefreshOption.TRUE.value),
        "migrate": os.getenv("GRAFEAS_MIGRATE", "true").lower() in _TRUE_VALUES,
    }
    if os.getenv("GRAFEAS_MAPPINGS_DIR"):
        data["mappings_dir"] = os.getenv("GRAFEAS_MAPPINGS_DIR")
    if os.getenv("GRAFEAS_PIT_KEEP_ALIVE"):
        data["pit_keep_alive"] = os.getenv("GRAFEAS_PIT_KEEP_ALIVE")

    return validate_config(data)
