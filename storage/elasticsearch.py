"""
Elasticsearch storage backend

Implements the projects and grafeas storage interfaces on top of the engine
client, the filter translator and the index manager. Every logical collection
is addressed through its alias; physical index names stay inside the index
manager and the migrator.
"""

import copy
import logging
import re
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from filtering import Filterer, FilterError
from search.errors import (
    AlreadyExistsError,
    InternalError,
    InvalidArgumentError,
    NotFoundError,
    StorageError,
)
from search.es_client import BulkCreateItem, BulkCreateResponse, ESClient, SearchHit
from search.es_indices import ALIAS_PREFIX, DocumentKind, ESIndexManager, IndexInfo
from search.es_orchestrator import MigrationOrchestrator
from search.es_pagination import MAX_PAGE_SIZE, Pagination
from storage.base import Entity, GrafeasStorage, ProjectStorage
from storage.config import ElasticsearchConfig
from storage.fieldmask import apply_field_mask, parse_field_mask

logger = logging.getLogger(__name__)

SORT_FIELD = "createTime"
UPDATE_TIME_FIELD = "updateTime"

_NOTE_NAME_RE = re.compile(r"^projects/([^/]+)/notes/([^/]+)$")


def project_name(project_id: str) -> str:
    return f"projects/{project_id}"


def occurrence_name(project_id: str, occurrence_id: str) -> str:
    return f"projects/{project_id}/occurrences/{occurrence_id}"


def note_name(project_id: str, note_id: str) -> str:
    return f"projects/{project_id}/notes/{note_id}"


def parse_note_name(name: str) -> Tuple[str, str]:
    """projects/{p}/notes/{n} -> (p, n)"""
    match = _NOTE_NAME_RE.match(name or "")
    if not match:
        raise InvalidArgumentError(f"invalid note name: {name}", details={"name": name})
    return match.group(1), match.group(2)


def timestamp_now() -> str:
    """Current time as an RFC 3339 UTC timestamp"""
    return datetime.now(timezone.utc).isoformat(timespec="microseconds").replace("+00:00", "Z")


def name_query(name: str) -> Dict[str, Any]:
    return {"query": {"term": {"name": name}}}


def _bulk_item_error(kind: str, name: str, status: int, error: Optional[Dict[str, Any]]) -> StorageError:
    error = error or {}
    message = f"error creating {kind} in elasticsearch: [{status}] {error.get('type')}: {error.get('reason')}"
    logger.error(f"{message} ({name})")
    return InternalError(message, details={"name": name, "status": status})


class ElasticsearchStorage(ProjectStorage, GrafeasStorage):
    """
    Grafeas storage on Elasticsearch

    Usage:
        storage = ElasticsearchStorage(client, Filterer(), config, index_manager, orchestrator)
        await storage.initialize()
        project = await storage.create_project("rode", {})
    """

    def __init__(
        self,
        client: ESClient,
        filterer: Filterer,
        config: ElasticsearchConfig,
        index_manager: ESIndexManager,
        orchestrator: MigrationOrchestrator,
    ):
        self.client = client
        self.filterer = filterer
        self.config = config
        self.index_manager = index_manager
        self.orchestrator = orchestrator

    @property
    def refresh(self) -> str:
        return self.config.refresh.value

    async def initialize(self) -> None:
        """
        Load mappings, make sure the projects index exists and run pending migrations
        """
        self.index_manager.load_mappings(self.config.mappings_dir)

        projects_alias = self.index_manager.projects_alias()
        # an outdated projects index keeps the alias until it is migrated
        if not await self.client.index_exists(projects_alias):
            logger.info(f"Projects index not found, creating {self.index_manager.projects_index()}")
            await self.index_manager.create_index(IndexInfo(
                index=self.index_manager.projects_index(),
                alias=projects_alias,
                document_kind=DocumentKind.PROJECTS,
            ), check_exists=True)

        if not self.config.migrate:
            logger.info("Migrations disabled, skipping")
            return

        await self.orchestrator.run_migrations()

    async def close(self):
        await self.client.close()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _parse_filter(self, filter: str) -> Dict[str, Any]:
        try:
            return self.filterer.parse_expression(filter)
        except FilterError as e:
            logger.error(f"error while parsing filter expression {filter!r}: {e}")
            raise InvalidArgumentError(
                f"error while parsing filter expression: {e}",
                details={"filter": filter},
            ) from e

    async def _find_by_name(self, index: str, name: str) -> Optional[SearchHit]:
        response = await self.client.search(index, name_query(name))
        if not response.hits:
            logger.debug(f"document not found: {name}")
            return None
        return response.hits[0]

    async def _get_by_name(self, index: str, name: str, kind: str) -> SearchHit:
        hit = await self._find_by_name(index, name)
        if hit is None:
            raise NotFoundError(f"{kind} with name {name} not found", details={"name": name})
        return hit

    async def _delete_by_name(self, index: str, name: str, kind: str) -> None:
        await self._get_by_name(index, name, kind)
        await self.client.delete(index, name_query(name), refresh=self.config.delete_refresh())
        logger.debug(f"{kind} deleted: {name}")

    async def _list(
        self,
        index: str,
        filter: str,
        page_token: str,
        page_size: int,
        sort: bool,
        query: Optional[Dict[str, Any]] = None,
    ) -> Tuple[List[Entity], str]:
        """
        Search a collection with an optional filter and pagination

        Args:
            index: alias or pattern to search
            filter: filter expression ("" matches everything)
            page_token: token from a previous page
            page_size: page size; 0 without a token returns a single capped page
            sort: sort by createTime descending
            query: extra query combined with the filter

        Returns:
            (documents, next_page_token)
        """
        if page_size is None:
            page_size = 0
        if page_size < 0:
            raise InvalidArgumentError(f"invalid page size: {page_size}")

        body: Dict[str, Any] = {}
        clauses = []
        if query:
            clauses.append(query)
        if filter:
            clauses.append(self._parse_filter(filter))

        if len(clauses) == 1:
            body["query"] = clauses[0]
        elif clauses:
            body["query"] = {"bool": {"must": clauses}}

        if sort:
            body["sort"] = [{SORT_FIELD: {"order": "desc", "unmapped_type": "date"}}]

        pagination = None
        if page_size or page_token:
            pagination = Pagination(
                size=min(page_size or MAX_PAGE_SIZE, MAX_PAGE_SIZE),
                token=page_token or "",
                keep_alive=self.config.pit_keep_alive,
            )

        response = await self.client.search(index, body, pagination)
        for hit in response.hits:
            logger.debug(f"hit {hit.id}: {hit.source}")

        return [hit.source for hit in response.hits], response.next_page_token

    def _merge_update(
        self,
        current: Entity,
        patch: Entity,
        update_mask: Optional[List[str]],
    ) -> Entity:
        paths = list(update_mask or patch.keys())
        merged = apply_field_mask(current, patch, paths)

        if UPDATE_TIME_FIELD not in parse_field_mask(paths) or not patch.get(UPDATE_TIME_FIELD):
            merged[UPDATE_TIME_FIELD] = timestamp_now()

        # the name is the identity of the document
        merged["name"] = current.get("name")
        return merged

    def _bulk_results(
        self,
        kind: str,
        documents: List[Entity],
        response: BulkCreateResponse,
    ) -> Tuple[List[Entity], List[StorageError]]:
        created: List[Entity] = []
        errors: List[StorageError] = []

        for document, item in zip(documents, response.items):
            if item.ok:
                created.append(document)
                continue
            errors.append(_bulk_item_error(kind, document.get("name", ""), item.status, item.error))

        if errors:
            logger.info(f"errors while creating {kind}s: {len(errors)} of {len(documents)} failed")
        return created, errors

    # ------------------------------------------------------------------
    # Projects
    # ------------------------------------------------------------------

    async def create_project(self, project_id: str, project: Entity) -> Entity:
        """
        Create the project document and the project's occurrences and notes indexes

        Raises:
            AlreadyExistsError: a project with this id exists
        """
        name = project_name(project_id)
        alias = self.index_manager.projects_alias()

        if await self._find_by_name(alias, name) is not None:
            logger.debug(f"project already exists: {name}")
            raise AlreadyExistsError(f"project with name {name} already exists", details={"name": name})

        project = copy.deepcopy(project or {})
        project["name"] = name

        await self.client.create(alias, project, refresh=self.refresh)

        indices_to_create = [
            IndexInfo(
                index=self.index_manager.occurrences_index(project_id),
                alias=self.index_manager.occurrences_alias(project_id),
                document_kind=DocumentKind.OCCURRENCES,
            ),
            IndexInfo(
                index=self.index_manager.notes_index(project_id),
                alias=self.index_manager.notes_alias(project_id),
                document_kind=DocumentKind.NOTES,
            ),
        ]
        for info in indices_to_create:
            await self.index_manager.create_index(info, check_exists=False)

        logger.debug(f"created project {name}")
        return project

    async def get_project(self, project_id: str) -> Entity:
        name = project_name(project_id)
        hit = await self._get_by_name(self.index_manager.projects_alias(), name, "project")
        return hit.source

    async def list_projects(
        self,
        filter: str = "",
        page_size: int = 0,
        page_token: str = "",
    ) -> Tuple[List[Entity], str]:
        return await self._list(
            self.index_manager.projects_alias(),
            filter,
            page_token,
            page_size,
            sort=False,
        )

    async def delete_project(self, project_id: str) -> None:
        """Delete the project document, then its occurrences and notes indexes"""
        name = project_name(project_id)
        await self._delete_by_name(self.index_manager.projects_alias(), name, "project")
        await self.index_manager.delete_project_indices(project_id)
        logger.debug(f"project indices for notes / occurrences deleted: {name}")

    # ------------------------------------------------------------------
    # Occurrences
    # ------------------------------------------------------------------

    async def get_occurrence(self, project_id: str, occurrence_id: str) -> Entity:
        name = occurrence_name(project_id, occurrence_id)
        hit = await self._get_by_name(self.index_manager.occurrences_alias(project_id), name, "occurrence")
        return hit.source

    async def list_occurrences(
        self,
        project_id: str,
        filter: str = "",
        page_token: str = "",
        page_size: int = 0,
    ) -> Tuple[List[Entity], str]:
        return await self._list(
            self.index_manager.occurrences_alias(project_id),
            filter,
            page_token,
            page_size,
            sort=True,
        )

    def _new_occurrence(self, project_id: str, occurrence: Entity) -> Entity:
        occurrence = copy.deepcopy(occurrence or {})
        if not occurrence.get("createTime"):
            occurrence["createTime"] = timestamp_now()
        occurrence["name"] = occurrence_name(project_id, str(uuid.uuid4()))
        return occurrence

    async def create_occurrence(self, project_id: str, user_id: str, occurrence: Entity) -> Entity:
        occurrence = self._new_occurrence(project_id, occurrence)
        await self.client.create(
            self.index_manager.occurrences_alias(project_id),
            occurrence,
            refresh=self.refresh,
        )
        return occurrence

    async def batch_create_occurrences(
        self,
        project_id: str,
        user_id: str,
        occurrences: List[Entity],
    ) -> Tuple[List[Entity], List[StorageError]]:
        """
        Create occurrences with one _bulk call

        Returns:
            (created occurrences, one error per failed occurrence); a failure of
            the whole request yields ([], [error])
        """
        if not occurrences:
            return [], []

        alias = self.index_manager.occurrences_alias(project_id)
        documents = [self._new_occurrence(project_id, occurrence) for occurrence in occurrences]

        try:
            response = await self.client.bulk_create(
                [BulkCreateItem(index=alias, document=document) for document in documents],
                refresh=self.refresh,
            )
        except StorageError as e:
            return [], [e]

        return self._bulk_results("occurrence", documents, response)

    async def update_occurrence(
        self,
        project_id: str,
        occurrence_id: str,
        occurrence: Entity,
        update_mask: Optional[List[str]] = None,
    ) -> Entity:
        """
        Merge the masked fields of occurrence into the stored document

        Raises:
            NotFoundError: no such occurrence
            InvalidArgumentError: malformed mask path
        """
        name = occurrence_name(project_id, occurrence_id)
        alias = self.index_manager.occurrences_alias(project_id)

        hit = await self._get_by_name(alias, name, "occurrence")
        merged = self._merge_update(hit.source, occurrence or {}, update_mask)

        await self.client.update(alias, hit.id, merged, refresh=self.refresh)
        return merged

    async def delete_occurrence(self, project_id: str, occurrence_id: str) -> None:
        name = occurrence_name(project_id, occurrence_id)
        await self._delete_by_name(self.index_manager.occurrences_alias(project_id), name, "occurrence")

    # ------------------------------------------------------------------
    # Notes
    # ------------------------------------------------------------------

    async def get_note(self, project_id: str, note_id: str) -> Entity:
        name = note_name(project_id, note_id)
        hit = await self._get_by_name(self.index_manager.notes_alias(project_id), name, "note")
        return hit.source

    async def list_notes(
        self,
        project_id: str,
        filter: str = "",
        page_token: str = "",
        page_size: int = 0,
    ) -> Tuple[List[Entity], str]:
        return await self._list(
            self.index_manager.notes_alias(project_id),
            filter,
            page_token,
            page_size,
            sort=True,
        )

    def _new_note(self, project_id: str, note_id: str, note: Entity) -> Entity:
        note = copy.deepcopy(note or {})
        if not note.get("createTime"):
            note["createTime"] = timestamp_now()
        note["name"] = note_name(project_id, note_id)
        return note

    async def create_note(self, project_id: str, note_id: str, user_id: str, note: Entity) -> Entity:
        """
        Create a note under a caller-chosen id

        Raises:
            AlreadyExistsError: the note id is taken
        """
        name = note_name(project_id, note_id)
        alias = self.index_manager.notes_alias(project_id)

        if await self._find_by_name(alias, name) is not None:
            logger.debug(f"note already exists: {name}")
            raise AlreadyExistsError(f"note with name {name} already exists", details={"name": name})

        note = self._new_note(project_id, note_id, note)
        await self.client.create(alias, note, refresh=self.refresh)
        return note

    async def batch_create_notes(
        self,
        project_id: str,
        user_id: str,
        notes: Dict[str, Entity],
    ) -> Tuple[List[Entity], List[StorageError]]:
        """
        Create notes, skipping ids that are already taken

        Collisions are detected with one _msearch call, the remaining notes are
        created with one _bulk call. Results keep the input order.

        Args:
            project_id: owning project
            user_id: caller id
            notes: note id -> note

        Returns:
            (created notes, one error per requested note that was not created)
        """
        if not notes:
            return [], []

        alias = self.index_manager.notes_alias(project_id)
        documents = [self._new_note(project_id, note_id, note) for note_id, note in notes.items()]

        try:
            responses = await self.client.multi_search(
                alias,
                [name_query(document["name"]) for document in documents],
            )
        except StorageError as e:
            return [], [e]

        errors: List[StorageError] = []
        to_create: List[Entity] = []
        for document, response in zip(documents, responses):
            if response.total or response.hits:
                errors.append(AlreadyExistsError(
                    f"note with the name {document['name']} already exists",
                    details={"name": document["name"]},
                ))
            else:
                to_create.append(document)

        if not to_create:
            logger.error("all notes already exist")
            return [], errors

        try:
            bulk_response = await self.client.bulk_create(
                [BulkCreateItem(index=alias, document=document) for document in to_create],
                refresh=self.refresh,
            )
        except StorageError as e:
            return [], errors + [e]

        created, bulk_errors = self._bulk_results("note", to_create, bulk_response)
        return created, errors + bulk_errors

    async def update_note(
        self,
        project_id: str,
        note_id: str,
        note: Entity,
        update_mask: Optional[List[str]] = None,
    ) -> Entity:
        name = note_name(project_id, note_id)
        alias = self.index_manager.notes_alias(project_id)

        hit = await self._get_by_name(alias, name, "note")
        merged = self._merge_update(hit.source, note or {}, update_mask)

        await self.client.update(alias, hit.id, merged, refresh=self.refresh)
        return merged

    async def delete_note(self, project_id: str, note_id: str) -> None:
        name = note_name(project_id, note_id)
        await self._delete_by_name(self.index_manager.notes_alias(project_id), name, "note")

    async def get_occurrence_note(self, project_id: str, occurrence_id: str) -> Entity:
        """Note referenced by an occurrence's noteName"""
        occurrence = await self.get_occurrence(project_id, occurrence_id)
        note_project_id, note_id = parse_note_name(occurrence.get("noteName", ""))
        return await self.get_note(note_project_id, note_id)

    async def list_note_occurrences(
        self,
        project_id: str,
        note_id: str,
        filter: str = "",
        page_token: str = "",
        page_size: int = 0,
    ) -> Tuple[List[Entity], str]:
        """Occurrences of a note across every project, newest first"""
        await self.get_note(project_id, note_id)

        return await self._list(
            f"{ALIAS_PREFIX}-*-occurrences",
            filter,
            page_token,
            page_size,
            sort=True,
            query={"term": {"noteName": note_name(project_id, note_id)}},
        )

    async def get_vulnerability_occurrences_summary(self, project_id: str, filter: str = "") -> Entity:
        return {"counts": []}
