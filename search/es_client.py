"""
Elasticsearch engine client

Typed wrapper around the Elasticsearch REST surface used by the Grafeas storage
backend: document create/update/delete, bulk, search with point-in-time paging,
multi-search, multi-get and index administration.

Every method is a coroutine on AsyncElasticsearch, so cancelling the calling
task aborts the in-flight request. Engine failures are raised as EngineError.
"""

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Tuple

from elasticsearch import ApiError, AsyncElasticsearch, TransportError

from search.errors import EngineError, InvalidArgumentError
from search.es_pagination import (
    MAX_PAGE_SIZE,
    Pagination,
    create_page_token,
    parse_page_token,
)

logger = logging.getLogger(__name__)

DEFAULT_REFRESH = "true"
REFRESH_VALUES = ("true", "wait_for", "false")
TASKS_INDEX = ".tasks"


@dataclass
class Join:
    """Parent-child join declaration merged into a document"""
    field: str
    name: str
    parent: Optional[str] = None


@dataclass
class SearchHit:
    """Single search/get hit"""
    id: str
    source: Dict[str, Any]
    index: str = ""
    sort: Optional[List[Any]] = None


@dataclass
class SearchResponse:
    """Search result page"""
    hits: List[SearchHit] = field(default_factory=list)
    total: int = 0
    next_page_token: str = ""


@dataclass
class BulkCreateItem:
    """Single document in a bulk create request"""
    index: str
    document: Dict[str, Any]
    document_id: Optional[str] = None
    routing: Optional[str] = None
    join: Optional[Join] = None


@dataclass
class BulkItemResult:
    """Per-item outcome reported by the bulk API"""
    document_id: Optional[str]
    status: int
    error: Optional[Dict[str, Any]] = None

    @property
    def ok(self) -> bool:
        return self.error is None and 200 <= self.status < 300


@dataclass
class BulkCreateResponse:
    """Full per-item bulk result, in request order"""
    items: List[BulkItemResult] = field(default_factory=list)
    errors: bool = False


@dataclass
class MultiGetItem:
    """Single multi-get entry"""
    id: str
    found: bool
    source: Optional[Dict[str, Any]] = None


def _body(response: Any) -> Any:
    """Unwrap an ObjectApiResponse into its decoded body"""
    return getattr(response, "body", response)


def _status_of(error: ApiError) -> Optional[int]:
    meta = getattr(error, "meta", None)
    return getattr(meta, "status", None)


def _error_type_of(error: ApiError) -> Optional[str]:
    body = getattr(error, "body", None)
    if isinstance(body, dict):
        reason = body.get("error")
        if isinstance(reason, dict):
            return reason.get("type")
        if isinstance(reason, str):
            return reason
    return None


def _engine_error(error: Exception, operation: str, index: str = "") -> EngineError:
    """Log an Elasticsearch client exception and wrap it in EngineError"""
    if isinstance(error, ApiError):
        status = _status_of(error)
        error_type = _error_type_of(error)
        logger.error(
            f"{operation}: unexpected response from elasticsearch "
            f"(index={index}, status={status}, type={error_type}): {error}"
        )
        return EngineError(
            f"unexpected response from elasticsearch during {operation}",
            status_code=status,
            error_type=error_type,
            details={"index": index} if index else None,
        )

    logger.error(f"{operation}: error sending request to elasticsearch (index={index}): {error}")
    return EngineError(
        f"error sending request to elasticsearch during {operation}",
        details={"index": index} if index else None,
    )


@contextmanager
def _engine_errors(operation: str, index: str = "") -> Iterator[None]:
    try:
        yield
    except (ApiError, TransportError) as e:
        raise _engine_error(e, operation, index) from e


def _decode_error(operation: str, response: Any) -> EngineError:
    logger.error(f"{operation}: error decoding elasticsearch response: {response}")
    return EngineError(f"error decoding elasticsearch response during {operation}")


def refresh_value(refresh: Any = None) -> str:
    """
    Normalize a refresh option to the string the engine expects

    Args:
        refresh: None, "true", "wait_for", "false" or a RefreshOption member

    Returns:
        refresh query parameter (default "true")
    """
    if refresh is None:
        return DEFAULT_REFRESH
    value = getattr(refresh, "value", refresh)
    if isinstance(value, bool):
        value = "true" if value else "false"
    if value not in REFRESH_VALUES:
        raise InvalidArgumentError(f"invalid refresh value: {refresh}")
    return value


def delete_refresh_value(refresh: Any = None) -> bool:
    # _delete_by_query only accepts true/false
    return refresh_value(refresh) != "false"


def merge_patch(target: Dict[str, Any], patch: Dict[str, Any]) -> Dict[str, Any]:
    """Apply a JSON merge patch (RFC 7396) without mutating target"""
    result = dict(target)
    for key, value in patch.items():
        if value is None:
            result.pop(key, None)
        elif isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = merge_patch(result[key], value)
        else:
            result[key] = value
    return result


def apply_join(
    document: Dict[str, Any],
    join: Optional[Join],
    routing: Optional[str] = None,
) -> Tuple[Dict[str, Any], Optional[str]]:
    """
    Merge a join declaration into the document body

    Args:
        document: document body
        join: parent-child join, if any
        routing: explicit routing key

    Returns:
        (document, routing) to send

    Raises:
        InvalidArgumentError: both join and routing were given
    """
    if join is None:
        return document, routing
    if routing:
        raise InvalidArgumentError("cannot specify both join and routing")

    relation = {"name": join.name}
    if join.parent:
        relation["parent"] = join.parent

    return merge_patch(document, {join.field: relation}), join.parent or None


def _parse_search_response(operation: str, response: Any) -> Tuple[List[SearchHit], int]:
    if not isinstance(response, dict) or not isinstance(response.get("hits"), dict):
        raise _decode_error(operation, response)

    hits = response["hits"]
    total = hits.get("total", 0)
    if isinstance(total, dict):
        total = total.get("value", 0)

    results = []
    for hit in hits.get("hits") or []:
        results.append(SearchHit(
            id=hit.get("_id", ""),
            source=hit.get("_source") or {},
            index=hit.get("_index", ""),
            sort=hit.get("sort"),
        ))

    return results, int(total or 0)


class ESClient:
    """
    Elasticsearch engine client

    Holds no per-operation state, so one instance can be shared by every
    coroutine in the process.

    Usage:
        client = ESClient(AsyncElasticsearch("http://localhost:9200"))
        page = await client.search("grafeas-projects", {"query": {...}}, Pagination(size=50))
    """

    def __init__(self, client: AsyncElasticsearch):
        self.client = client

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    async def create(
        self,
        index: str,
        document: Dict[str, Any],
        document_id: Optional[str] = None,
        routing: Optional[str] = None,
        refresh: Any = None,
        join: Optional[Join] = None,
    ) -> str:
        """
        Index a single document

        Args:
            index: index or alias
            document: JSON document
            document_id: caller-supplied id (engine assigns one when omitted)
            routing: shard routing key
            refresh: "true" (default), "wait_for" or "false"
            join: parent-child join to merge into the body

        Returns:
            document id
        """
        body, routing = apply_join(document, join, routing)

        params = {"index": index, "document": body, "refresh": refresh_value(refresh)}
        if document_id:
            params["id"] = document_id
        if routing:
            params["routing"] = routing

        with _engine_errors("Create", index):
            response = _body(await self.client.index(**params))

        logger.debug(f"elasticsearch response: {response}")

        if not isinstance(response, dict) or "_id" not in response:
            raise _decode_error("Create", response)
        return response["_id"]

    async def bulk_create(
        self,
        items: List[BulkCreateItem],
        refresh: Any = None,
    ) -> BulkCreateResponse:
        """
        Index many documents in one _bulk call

        Items with a document_id use the "create" action so an existing id is
        reported as a per-item conflict instead of being overwritten.

        Args:
            items: documents to create
            refresh: refresh option for the whole request

        Returns:
            per-item results in request order
        """
        if not items:
            return BulkCreateResponse()

        operations: List[Dict[str, Any]] = []
        for item in items:
            body, routing = apply_join(item.document, item.join, item.routing)

            metadata: Dict[str, Any] = {"_index": item.index}
            action = "index"
            if item.document_id:
                metadata["_id"] = item.document_id
                action = "create"
            if routing:
                metadata["routing"] = routing

            operations.append({action: metadata})
            operations.append(body)

        logger.debug(f"attempting ES bulk index: {len(items)} items")

        with _engine_errors("BulkCreate"):
            response = _body(await self.client.bulk(
                operations=operations,
                refresh=refresh_value(refresh),
            ))

        response_items = response.get("items") if isinstance(response, dict) else None
        if not isinstance(response_items, list) or len(response_items) != len(items):
            raise _decode_error("BulkCreate", response)

        results = []
        for response_item in response_items:
            # each item is keyed by its action: {"index": {...}} or {"create": {...}}
            result = next(iter(response_item.values()), {}) if response_item else {}
            results.append(BulkItemResult(
                document_id=result.get("_id"),
                status=int(result.get("status", 0)),
                error=result.get("error"),
            ))

        return BulkCreateResponse(items=results, errors=bool(response.get("errors")))

    async def get(self, index: str, document_id: str) -> Optional[SearchHit]:
        """Fetch a document by id, None when it does not exist"""
        try:
            response = _body(await self.client.get(index=index, id=document_id))
        except ApiError as e:
            if _status_of(e) == 404:
                return None
            raise _engine_error(e, "Get", index) from e
        except TransportError as e:
            raise _engine_error(e, "Get", index) from e

        if not isinstance(response, dict):
            raise _decode_error("Get", response)
        if not response.get("found", False):
            return None

        return SearchHit(
            id=response.get("_id", document_id),
            source=response.get("_source") or {},
            index=response.get("_index", ""),
        )

    async def multi_get(self, index: str, document_ids: List[str]) -> List[MultiGetItem]:
        """Fetch documents by id; one entry per requested id, in order"""
        if not document_ids:
            return []

        with _engine_errors("MultiGet", index):
            response = _body(await self.client.mget(index=index, ids=document_ids))

        docs = response.get("docs") if isinstance(response, dict) else None
        if not isinstance(docs, list) or len(docs) != len(document_ids):
            raise _decode_error("MultiGet", response)

        return [
            MultiGetItem(
                id=doc.get("_id", document_id),
                found=bool(doc.get("found", False)),
                source=doc.get("_source"),
            )
            for document_id, doc in zip(document_ids, docs)
        ]

    async def update(
        self,
        index: str,
        document_id: str,
        document: Dict[str, Any],
        refresh: Any = None,
    ) -> None:
        """Overwrite the document stored under document_id"""
        with _engine_errors("Update", index):
            response = _body(await self.client.index(
                index=index,
                id=document_id,
                document=document,
                refresh=refresh_value(refresh),
            ))

        logger.debug(f"elasticsearch response: {response}")

    async def delete(
        self,
        index: str,
        query: Dict[str, Any],
        refresh: Any = None,
    ) -> int:
        """
        Delete every document matching a search body

        Args:
            index: index or alias
            query: search body, e.g. {"query": {"term": {"name": ...}}}
            refresh: "wait_for" is sent as true

        Returns:
            number of deleted documents

        Raises:
            EngineError: nothing was deleted
        """
        logger.debug(f"delete by query on {index}: {query}")

        with _engine_errors("Delete", index):
            response = _body(await self.client.delete_by_query(
                index=index,
                body=query,
                refresh=delete_refresh_value(refresh),
            ))

        if not isinstance(response, dict) or "deleted" not in response:
            raise _decode_error("Delete", response)

        deleted = int(response["deleted"])
        if deleted == 0:
            logger.error(f"elasticsearch returned zero deleted documents: {response}")
            raise EngineError(
                "elasticsearch returned zero deleted documents",
                details={"index": index},
            )

        return deleted

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    async def open_point_in_time(self, index: str, keep_alive: str) -> str:
        with _engine_errors("OpenPointInTime", index):
            response = _body(await self.client.open_point_in_time(index=index, keep_alive=keep_alive))

        if not isinstance(response, dict) or not response.get("id"):
            raise _decode_error("OpenPointInTime", response)
        return response["id"]

    async def close_point_in_time(self, pit_id: str) -> None:
        """Release a PIT; failures are only logged since the keepalive expires it"""
        try:
            await self.client.close_point_in_time(id=pit_id)
        except (ApiError, TransportError) as e:
            logger.warning(f"failed to close point in time: {e}")

    async def search(
        self,
        index: str,
        query: Optional[Dict[str, Any]] = None,
        pagination: Optional[Pagination] = None,
    ) -> SearchResponse:
        """
        Run a search, optionally paginated through a point in time

        Without pagination a single page of at most MAX_PAGE_SIZE hits is
        returned and next_page_token is empty. With pagination, the first call
        (empty token) opens a PIT; later calls resume from the token's offset.

        Args:
            index: index, alias or pattern
            query: search body (query, sort, ...)
            pagination: page size, token and PIT keepalive

        Returns:
            SearchResponse with hits, total and the next page token
        """
        body = dict(query or {})
        params: Dict[str, Any] = {}
        pit_id = ""
        search_from = 0

        if pagination is not None:
            if pagination.token:
                pit_id, search_from = parse_page_token(pagination.token)
            else:
                pit_id = await self.open_point_in_time(index, pagination.keep_alive)

            # the PIT pins the index, so the request must not name one
            body["pit"] = {"id": pit_id, "keep_alive": pagination.keep_alive}
            body["size"] = pagination.size
            body["from"] = search_from
        else:
            params["index"] = index
            body["size"] = MAX_PAGE_SIZE

        logger.debug(f"performing search on {index}: {body}")

        with _engine_errors("Search", index):
            response = _body(await self.client.search(body=body, **params))

        hits, total = _parse_search_response("Search", response)
        result = SearchResponse(hits=hits, total=total)

        if pagination is not None:
            next_from = search_from + pagination.size
            if next_from < total:
                result.next_page_token = create_page_token(pit_id, next_from)
            else:
                await self.close_point_in_time(pit_id)

        return result

    async def multi_search(
        self,
        index: str,
        searches: List[Dict[str, Any]],
    ) -> List[SearchResponse]:
        """
        Evaluate several search bodies against one index in a single _msearch call

        Returns:
            one SearchResponse per search, in request order
        """
        if not searches:
            return []

        body: List[Dict[str, Any]] = []
        for search in searches:
            body.append({"index": index})
            body.append(search)

        logger.debug(f"attempting ES multisearch: {len(searches)} searches on {index}")

        with _engine_errors("MultiSearch", index):
            response = _body(await self.client.msearch(body=body))

        responses = response.get("responses") if isinstance(response, dict) else None
        if not isinstance(responses, list) or len(responses) != len(searches):
            raise _decode_error("MultiSearch", response)

        results = []
        for item in responses:
            if isinstance(item, dict) and item.get("error"):
                logger.error(f"multisearch item failed: {item['error']}")
                raise EngineError(
                    "unexpected response from elasticsearch during MultiSearch",
                    status_code=item.get("status"),
                    error_type=(item["error"] or {}).get("type") if isinstance(item["error"], dict) else None,
                )
            hits, total = _parse_search_response("MultiSearch", item)
            results.append(SearchResponse(hits=hits, total=total))

        return results

    # ------------------------------------------------------------------
    # Index administration
    # ------------------------------------------------------------------

    async def index_exists(self, index: str) -> bool:
        """HEAD the index: True on 200, False on 404, EngineError otherwise"""
        with _engine_errors("IndexExists", index):
            return bool(await self.client.indices.exists(index=index))

    async def create_index(self, index: str, body: Dict[str, Any]) -> None:
        with _engine_errors("CreateIndex", index):
            await self.client.indices.create(index=index, body=body)

    async def delete_index(self, index: str, ignore_missing: bool = False) -> bool:
        """
        Delete an index

        Returns:
            False when the index was already absent and ignore_missing is set
        """
        try:
            await self.client.indices.delete(index=index)
        except ApiError as e:
            if ignore_missing and _status_of(e) == 404:
                logger.info(f"Index does not exist: {index}")
                return False
            raise _engine_error(e, "DeleteIndex", index) from e
        except TransportError as e:
            raise _engine_error(e, "DeleteIndex", index) from e

        logger.info(f"Index deleted: {index}")
        return True

    async def get_indices(self, pattern: str) -> Dict[str, Any]:
        """Index name -> {aliases, mappings, settings} for every index matching pattern"""
        with _engine_errors("GetIndices", pattern):
            response = _body(await self.client.indices.get(index=pattern))

        if not isinstance(response, dict):
            raise _decode_error("GetIndices", response)
        return response

    async def get_index_settings(self, index: str) -> Dict[str, Any]:
        with _engine_errors("GetSettings", index):
            response = _body(await self.client.indices.get_settings(index=index))

        if not isinstance(response, dict):
            raise _decode_error("GetSettings", response)
        return (response.get(index) or {}).get("settings") or {}

    async def add_write_block(self, index: str) -> Dict[str, Any]:
        with _engine_errors("AddBlock", index):
            response = _body(await self.client.indices.add_block(index=index, block="write"))

        if not isinstance(response, dict):
            raise _decode_error("AddBlock", response)
        return response

    async def reindex(self, source: str, dest: str) -> str:
        """
        Start an asynchronous reindex that never overwrites copied documents

        Returns:
            task id to poll
        """
        body = {
            "conflicts": "proceed",
            "source": {"index": source},
            "dest": {"index": dest, "op_type": "create"},
        }
        with _engine_errors("Reindex", source):
            response = _body(await self.client.reindex(body=body, wait_for_completion=False))

        if not isinstance(response, dict) or not response.get("task"):
            raise _decode_error("Reindex", response)
        return response["task"]

    async def get_task(self, task_id: str) -> Dict[str, Any]:
        with _engine_errors("GetTask"):
            response = _body(await self.client.tasks.get(task_id=task_id))

        if not isinstance(response, dict):
            raise _decode_error("GetTask", response)
        return response

    async def delete_task_document(self, task_id: str) -> None:
        with _engine_errors("DeleteTaskDocument", TASKS_INDEX):
            await self.client.delete(index=TASKS_INDEX, id=task_id)

    async def swap_alias(self, alias: str, old_index: str, new_index: str) -> None:
        """Move alias from old_index to new_index in one atomic _aliases call"""
        body = {
            "actions": [
                {"remove": {"index": old_index, "alias": alias}},
                {"add": {"index": new_index, "alias": alias}},
            ]
        }
        with _engine_errors("UpdateAliases", alias):
            await self.client.indices.update_aliases(body=body)

    async def info(self) -> Dict[str, Any]:
        with _engine_errors("Info"):
            return _body(await self.client.info())

    async def close(self):
        """Close the underlying transport"""
        await self.client.close()
