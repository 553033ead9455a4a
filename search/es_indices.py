"""
Elasticsearch index management

Owns the versioned mappings and the naming of physical indexes and their
stable aliases:

    grafeas-<version>-projects                 alias grafeas-projects
    grafeas-<version>-<projectId>-occurrences  alias grafeas-<projectId>-occurrences
    grafeas-<version>-<projectId>-notes        alias grafeas-<projectId>-notes
"""

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional, Union

from search.errors import EngineError, InvalidArgumentError
from search.es_client import ESClient

logger = logging.getLogger(__name__)

CONFIG_DIR = Path(__file__).parent.parent / "config" / "elasticsearch"
MAPPINGS_DIR = CONFIG_DIR / "mappings"

INDEX_PREFIX = "grafeas"
ALIAS_PREFIX = "grafeas"
META_TYPE = "grafeas"
DEFAULT_MAPPING_VERSION = "v1beta1"

RESOURCE_ALREADY_EXISTS = "resource_already_exists_exception"


class DocumentKind(str, Enum):
    PROJECTS = "projects"
    OCCURRENCES = "occurrences"
    NOTES = "notes"


@dataclass
class VersionedMapping:
    """Contents of one mapping file"""
    version: str
    mappings: Dict[str, Any] = field(default_factory=dict)


@dataclass
class IndexInfo:
    """Physical index to create, its alias and the kind selecting its mapping"""
    index: str
    alias: str
    document_kind: DocumentKind


@dataclass
class IndexNameParts:
    document_kind: str
    version: str = ""
    project_id: str = ""


def default_mapping() -> VersionedMapping:
    """Mapping used for a kind without a mapping file: every string is a keyword"""
    return VersionedMapping(
        version=DEFAULT_MAPPING_VERSION,
        mappings={
            "_meta": {"type": META_TYPE},
            "dynamic_templates": [
                {
                    "strings_as_keywords": {
                        "match_mapping_type": "string",
                        "mapping": {"type": "keyword", "norms": False},
                    }
                }
            ],
        },
    )


def parse_index_name(index_name: str) -> IndexNameParts:
    """
    Split a physical index name into kind, version and project id

    The last "-" segment is the kind, the second segment is the version and the
    segments in between are the project id.

    Args:
        index_name: e.g. "grafeas-v1beta1-my-project-occurrences"

    Returns:
        IndexNameParts; version and project_id are empty for unknown kinds
    """
    parts = index_name.split("-")
    document_kind = parts[-1]
    name_parts = IndexNameParts(document_kind=document_kind)

    if len(parts) < 3:
        return name_parts

    if document_kind == DocumentKind.PROJECTS.value:
        name_parts.version = parts[1]
    elif document_kind in (DocumentKind.OCCURRENCES.value, DocumentKind.NOTES.value):
        name_parts.version = parts[1]
        name_parts.project_id = "-".join(parts[2:-1])

    return name_parts


class ESIndexManager:
    """
    Versioned index naming and creation

    Mappings are loaded once at startup; afterwards the manager is read-only
    and safe to share.

    Usage:
        manager = ESIndexManager(client)
        manager.load_mappings(MAPPINGS_DIR)
        await manager.create_index(IndexInfo(
            index=manager.projects_index(),
            alias=manager.projects_alias(),
            document_kind=DocumentKind.PROJECTS,
        ), check_exists=True)
    """

    def __init__(self, client: ESClient):
        self.client = client
        self.mappings: Dict[DocumentKind, VersionedMapping] = {}

    def load_mappings(self, mappings_dir: Union[str, Path] = MAPPINGS_DIR) -> None:
        """
        Load "<kind>.json" mapping files from a directory

        Args:
            mappings_dir: directory holding projects.json, occurrences.json, notes.json

        Raises:
            InvalidArgumentError: unreadable file, invalid JSON, missing or malformed version
        """
        mappings_dir = Path(mappings_dir)
        if not mappings_dir.is_dir():
            raise InvalidArgumentError(
                f"Mappings directory not found: {mappings_dir}",
                details={"mappings_dir": str(mappings_dir)},
            )

        for mapping_path in sorted(mappings_dir.iterdir()):
            if mapping_path.is_dir():
                continue

            try:
                document_kind = DocumentKind(mapping_path.stem)
            except ValueError:
                logger.warning(f"Unrecognized document kind mapping: {mapping_path.name}")
                continue

            self.mappings[document_kind] = self._load_mapping(mapping_path)
            logger.info(
                f"Loaded {document_kind.value} mapping version "
                f"{self.mappings[document_kind].version}"
            )

        for document_kind in DocumentKind:
            if document_kind not in self.mappings:
                logger.warning(f"No mapping file for {document_kind.value}, using the default mapping")
                self.mappings[document_kind] = default_mapping()

    @staticmethod
    def _load_mapping(mapping_path: Path) -> VersionedMapping:
        try:
            with open(mapping_path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            raise InvalidArgumentError(
                f"Failed to load mapping file {mapping_path}: {e}",
                details={"path": str(mapping_path)},
            ) from e

        version = data.get("version") if isinstance(data, dict) else None
        if not isinstance(version, str) or not version:
            raise InvalidArgumentError(
                f"Mapping file {mapping_path} has no version",
                details={"path": str(mapping_path)},
            )
        if "-" in version:
            raise InvalidArgumentError(
                f"Mapping version must not contain '-': {version}",
                details={"path": str(mapping_path)},
            )

        mappings = dict(data.get("mappings") or {})
        meta = dict(mappings.get("_meta") or {})
        meta.setdefault("type", META_TYPE)
        mappings["_meta"] = meta

        return VersionedMapping(version=version, mappings=mappings)

    def get_mapping(self, document_kind: Union[DocumentKind, str]) -> VersionedMapping:
        try:
            document_kind = DocumentKind(document_kind)
        except ValueError:
            raise InvalidArgumentError(f"no mapping found for document kind {document_kind}")

        return self.mappings.get(document_kind) or default_mapping()

    async def create_index(self, info: IndexInfo, check_exists: bool = False) -> None:
        """
        Create a physical index with its kind's mapping and optional alias

        Creation is idempotent: an existing index (when check_exists is set) or
        a resource_already_exists_exception counts as success.

        Args:
            info: index, alias ("" for none) and document kind
            check_exists: HEAD the index first and skip creation when present
        """
        if check_exists and await self.client.index_exists(info.index):
            logger.debug(f"Index already exists: {info.index}")
            return

        body: Dict[str, Any] = {"mappings": self.get_mapping(info.document_kind).mappings}
        if info.alias:
            body["aliases"] = {info.alias: {}}

        try:
            await self.client.create_index(info.index, body)
        except EngineError as e:
            if e.status_code == 400 and e.error_type == RESOURCE_ALREADY_EXISTS:
                logger.info(f"Index already exists: {info.index}")
                return
            raise

        logger.info(f"Index created: {info.index}")

    async def delete_project_indices(self, project_id: str) -> None:
        """Delete the occurrences and notes indexes of a project, whatever their version"""
        for alias in (self.occurrences_alias(project_id), self.notes_alias(project_id)):
            try:
                indices = await self.client.get_indices(alias)
            except EngineError as e:
                if e.status_code != 404:
                    raise
                indices = {}

            if not indices:
                logger.warning(f"No index behind alias {alias}")
                continue
            for index in indices:
                await self.client.delete_index(index, ignore_missing=True)

    def projects_index(self) -> str:
        version = self.get_mapping(DocumentKind.PROJECTS).version
        return f"{INDEX_PREFIX}-{version}-projects"

    def projects_alias(self) -> str:
        return f"{ALIAS_PREFIX}-projects"

    def occurrences_index(self, project_id: str) -> str:
        version = self.get_mapping(DocumentKind.OCCURRENCES).version
        return f"{INDEX_PREFIX}-{version}-{project_id}-occurrences"

    def occurrences_alias(self, project_id: str) -> str:
        return f"{ALIAS_PREFIX}-{project_id}-occurrences"

    def notes_index(self, project_id: str) -> str:
        version = self.get_mapping(DocumentKind.NOTES).version
        return f"{INDEX_PREFIX}-{version}-{project_id}-notes"

    def notes_alias(self, project_id: str) -> str:
        return f"{ALIAS_PREFIX}-{project_id}-notes"

    def increment_index_version(self, index_name: str) -> str:
        """Name the index would have under the current mapping version of its kind"""
        parts = parse_index_name(index_name)

        if parts.document_kind == DocumentKind.NOTES.value:
            return self.notes_index(parts.project_id)
        if parts.document_kind == DocumentKind.OCCURRENCES.value:
            return self.occurrences_index(parts.project_id)
        if parts.document_kind == DocumentKind.PROJECTS.value:
            return self.projects_index()

        # unversioned index
        return index_name

    def get_latest_version_for_document_kind(self, document_kind: Union[DocumentKind, str]) -> str:
        try:
            return self.get_mapping(document_kind).version
        except InvalidArgumentError:
            return ""

    def get_alias_for_index(self, index_name: str) -> str:
        parts = parse_index_name(index_name)

        if parts.document_kind == DocumentKind.NOTES.value:
            return self.notes_alias(parts.project_id)
        if parts.document_kind == DocumentKind.OCCURRENCES.value:
            return self.occurrences_alias(parts.project_id)
        if parts.document_kind == DocumentKind.PROJECTS.value:
            return self.projects_alias()

        return ""

    def index_info_for(self, index_name: str) -> Optional[IndexInfo]:
        """IndexInfo for a physical index name, None when the kind is unknown"""
        parts = parse_index_name(index_name)
        try:
            document_kind = DocumentKind(parts.document_kind)
        except ValueError:
            return None
        return IndexInfo(
            index=index_name,
            alias=self.get_alias_for_index(index_name),
            document_kind=document_kind,
        )
