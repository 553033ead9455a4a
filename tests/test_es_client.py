"""
Engine client tests (AsyncElasticsearch mocked)
"""

from unittest.mock import ANY

import pytest
from elasticsearch import ConnectionError as ESConnectionError

from search.errors import EngineError, InvalidArgumentError
from search.es_client import (
    BulkCreateItem,
    Join,
    apply_join,
    merge_patch,
    refresh_value,
)
from search.es_pagination import MAX_PAGE_SIZE, Pagination, parse_page_token
from storage.config import RefreshOption
from conftest import search_response


class TestRefresh:

    @pytest.mark.parametrize("value,expected", [
        (None, "true"),
        ("true", "true"),
        ("wait_for", "wait_for"),
        ("false", "false"),
        (RefreshOption.WAIT_FOR, "wait_for"),
        (RefreshOption.FALSE, "false"),
    ])
    def test_refresh_value(self, value, expected):
        assert refresh_value(value) == expected

    def test_invalid_refresh(self):
        with pytest.raises(InvalidArgumentError):
            refresh_value("sometimes")


class TestJoin:

    def test_merge_patch(self):
        target = {"a": {"b": 1, "c": 2}, "d": 3}

        result = merge_patch(target, {"a": {"b": 10, "c": None}, "e": 4})

        assert result == {"a": {"b": 10}, "d": 3, "e": 4}
        # target is untouched
        assert target == {"a": {"b": 1, "c": 2}, "d": 3}

    def test_apply_join_with_parent(self):
        document, routing = apply_join(
            {"name": "child"},
            Join(field="relation", name="occurrence", parent="parent-id"),
        )

        assert document == {
            "name": "child",
            "relation": {"name": "occurrence", "parent": "parent-id"},
        }
        assert routing == "parent-id"

    def test_apply_join_without_parent(self):
        document, routing = apply_join({}, Join(field="relation", name="note"))

        assert document == {"relation": {"name": "note"}}
        assert routing is None

    def test_join_and_routing_rejected(self):
        with pytest.raises(InvalidArgumentError):
            apply_join({}, Join(field="relation", name="note"), routing="shard-1")


class TestCreate:

    @pytest.mark.asyncio
    async def test_create_returns_id(self, client, es):
        # Given
        es.index.return_value = {"_id": "generated", "result": "created"}

        # When
        document_id = await client.create("grafeas-projects", {"name": "projects/rode"})

        # Then
        assert document_id == "generated"
        es.index.assert_awaited_once_with(
            index="grafeas-projects",
            document={"name": "projects/rode"},
            refresh="true",
        )

    @pytest.mark.asyncio
    async def test_create_with_id_routing_and_refresh(self, client, es):
        es.index.return_value = {"_id": "a/b"}

        await client.create("idx", {}, document_id="a/b", routing="r", refresh="wait_for")

        es.index.assert_awaited_once_with(
            index="idx", document={}, refresh="wait_for", id="a/b", routing="r",
        )

    @pytest.mark.asyncio
    async def test_create_with_join_routes_to_parent(self, client, es):
        es.index.return_value = {"_id": "x"}

        await client.create("idx", {"a": 1}, join=Join("rel", "child", parent="p1"))

        es.index.assert_awaited_once_with(
            index="idx",
            document={"a": 1, "rel": {"name": "child", "parent": "p1"}},
            refresh="true",
            routing="p1",
        )

    @pytest.mark.asyncio
    async def test_create_join_with_routing_fails_before_request(self, client, es):
        with pytest.raises(InvalidArgumentError):
            await client.create("idx", {}, routing="r", join=Join("rel", "child"))

        es.index.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_create_engine_error(self, client, es, api_error):
        es.index.side_effect = api_error(500, "internal_server_error")

        with pytest.raises(EngineError) as exc_info:
            await client.create("idx", {})

        assert exc_info.value.status_code == 500
        assert exc_info.value.error_type == "internal_server_error"
        assert exc_info.value.code == "internal"

    @pytest.mark.asyncio
    async def test_create_transport_error(self, client, es):
        es.index.side_effect = ESConnectionError("connection refused")

        with pytest.raises(EngineError) as exc_info:
            await client.create("idx", {})

        assert exc_info.value.status_code is None

    @pytest.mark.asyncio
    async def test_create_decode_error(self, client, es):
        es.index.return_value = {"result": "created"}

        with pytest.raises(EngineError):
            await client.create("idx", {})


class TestBulkCreate:

    @pytest.mark.asyncio
    async def test_per_item_results(self, client, es):
        # Given: the second item fails
        es.bulk.return_value = {
            "errors": True,
            "items": [
                {"index": {"_id": "1", "status": 201}},
                {"index": {"_id": "2", "status": 400, "error": {"type": "mapper_parsing_exception", "reason": "bad"}}},
                {"create": {"_id": "c", "status": 409, "error": {"type": "version_conflict_engine_exception", "reason": "exists"}}},
            ],
        }
        items = [
            BulkCreateItem(index="idx", document={"n": 1}),
            BulkCreateItem(index="idx", document={"n": 2}),
            BulkCreateItem(index="idx", document={"n": 3}, document_id="c"),
        ]

        # When
        response = await client.bulk_create(items, refresh="false")

        # Then
        assert response.errors is True
        assert [item.ok for item in response.items] == [True, False, False]
        assert response.items[1].error["type"] == "mapper_parsing_exception"
        assert response.items[2].status == 409

        es.bulk.assert_awaited_once_with(
            operations=[
                {"index": {"_index": "idx"}}, {"n": 1},
                {"index": {"_index": "idx"}}, {"n": 2},
                {"create": {"_index": "idx", "_id": "c"}}, {"n": 3},
            ],
            refresh="false",
        )

    @pytest.mark.asyncio
    async def test_bulk_join_routing(self, client, es):
        es.bulk.return_value = {"errors": False, "items": [{"index": {"_id": "1", "status": 201}}]}

        await client.bulk_create([
            BulkCreateItem(index="idx", document={}, join=Join("rel", "child", parent="p")),
        ])

        operations = es.bulk.await_args.kwargs["operations"]
        assert operations[0] == {"index": {"_index": "idx", "routing": "p"}}
        assert operations[1] == {"rel": {"name": "child", "parent": "p"}}

    @pytest.mark.asyncio
    async def test_empty_bulk_makes_no_request(self, client, es):
        response = await client.bulk_create([])

        assert response.items == []
        es.bulk.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_item_count_mismatch(self, client, es):
        es.bulk.return_value = {"errors": False, "items": []}

        with pytest.raises(EngineError):
            await client.bulk_create([BulkCreateItem(index="idx", document={})])


class TestSearch:

    @pytest.mark.asyncio
    async def test_unpaginated_search_is_capped(self, client, es):
        # Given
        es.search.return_value = search_response([{"name": "a"}, {"name": "b"}])

        # When
        response = await client.search("grafeas-projects", {"query": {"term": {"name": "a"}}})

        # Then
        assert [hit.source for hit in response.hits] == [{"name": "a"}, {"name": "b"}]
        assert response.total == 2
        assert response.next_page_token == ""
        es.open_point_in_time.assert_not_awaited()
        es.search.assert_awaited_once_with(
            body={"query": {"term": {"name": "a"}}, "size": MAX_PAGE_SIZE},
            index="grafeas-projects",
        )

    @pytest.mark.asyncio
    async def test_pagination_sequence(self, client, es):
        # Given: an alias with 130 documents
        es.open_point_in_time.return_value = {"id": "pit-123"}
        es.search.return_value = search_response([{}] * 50, total=130)

        # When: first page
        first = await client.search("grafeas-rode-occurrences", {}, Pagination(size=50))

        # Then
        es.open_point_in_time.assert_awaited_once_with(index="grafeas-rode-occurrences", keep_alive="5m")
        body = es.search.await_args.kwargs["body"]
        assert body == {"pit": {"id": "pit-123", "keep_alive": "5m"}, "size": 50, "from": 0}
        assert "index" not in es.search.await_args.kwargs
        assert parse_page_token(first.next_page_token) == ("pit-123", 50)

        # When: second page
        second = await client.search("grafeas-rode-occurrences", {}, Pagination(size=50, token=first.next_page_token))

        # Then
        assert es.search.await_args.kwargs["body"]["from"] == 50
        assert parse_page_token(second.next_page_token) == ("pit-123", 100)

        # When: last page
        es.search.return_value = search_response([{}] * 30, total=130)
        third = await client.search("grafeas-rode-occurrences", {}, Pagination(size=50, token=second.next_page_token))

        # Then
        assert es.search.await_args.kwargs["body"]["from"] == 100
        assert third.next_page_token == ""
        assert es.open_point_in_time.await_count == 1
        es.close_point_in_time.assert_awaited_once_with(id="pit-123")

    @pytest.mark.asyncio
    async def test_custom_keep_alive(self, client, es):
        es.open_point_in_time.return_value = {"id": "pit"}
        es.search.return_value = search_response([], total=0)

        await client.search("idx", None, Pagination(size=10, keep_alive="1m"))

        es.open_point_in_time.assert_awaited_once_with(index="idx", keep_alive="1m")
        assert es.search.await_args.kwargs["body"]["pit"] == {"id": "pit", "keep_alive": "1m"}

    @pytest.mark.asyncio
    async def test_invalid_token_rejected_before_request(self, client, es):
        with pytest.raises(InvalidArgumentError):
            await client.search("idx", {}, Pagination(size=10, token="bad-token"))

        es.search.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_close_pit_failure_is_ignored(self, client, es, api_error):
        es.open_point_in_time.return_value = {"id": "pit"}
        es.search.return_value = search_response([{}], total=1)
        es.close_point_in_time.side_effect = api_error(404, "search_context_missing_exception")

        response = await client.search("idx", {}, Pagination(size=10))

        assert response.next_page_token == ""

    @pytest.mark.asyncio
    async def test_malformed_response(self, client, es):
        es.search.return_value = {"took": 1}

        with pytest.raises(EngineError):
            await client.search("idx")


class TestMultiSearch:

    @pytest.mark.asyncio
    async def test_multi_search(self, client, es):
        es.msearch.return_value = {
            "responses": [
                search_response([{"name": "n1"}]),
                search_response([]),
            ]
        }
        searches = [{"query": {"term": {"name": "n1"}}}, {"query": {"term": {"name": "n2"}}}]

        responses = await client.multi_search("grafeas-rode-notes", searches)

        assert [response.total for response in responses] == [1, 0]
        es.msearch.assert_awaited_once_with(body=[
            {"index": "grafeas-rode-notes"}, searches[0],
            {"index": "grafeas-rode-notes"}, searches[1],
        ])

    @pytest.mark.asyncio
    async def test_failed_sub_search(self, client, es):
        es.msearch.return_value = {
            "responses": [{"error": {"type": "index_not_found_exception"}, "status": 404}]
        }

        with pytest.raises(EngineError) as exc_info:
            await client.multi_search("idx", [{}])

        assert exc_info.value.error_type == "index_not_found_exception"


class TestGet:

    @pytest.mark.asyncio
    async def test_get_found(self, client, es):
        es.get.return_value = {"_index": "idx", "_id": "1", "found": True, "_source": {"a": 1}}

        hit = await client.get("idx", "1")

        assert hit.id == "1"
        assert hit.source == {"a": 1}

    @pytest.mark.asyncio
    async def test_get_missing(self, client, es, api_error):
        es.get.side_effect = api_error(404, "not_found", body={"_id": "1", "found": False})

        assert await client.get("idx", "1") is None

    @pytest.mark.asyncio
    async def test_get_error(self, client, es, api_error):
        es.get.side_effect = api_error(503, "unavailable")

        with pytest.raises(EngineError):
            await client.get("idx", "1")

    @pytest.mark.asyncio
    async def test_multi_get(self, client, es):
        es.mget.return_value = {
            "docs": [
                {"_id": "1", "found": True, "_source": {"a": 1}},
                {"_id": "2", "found": False},
            ]
        }

        items = await client.multi_get("idx", ["1", "2"])

        assert [(item.id, item.found) for item in items] == [("1", True), ("2", False)]
        assert items[0].source == {"a": 1}
        es.mget.assert_awaited_once_with(index="idx", ids=["1", "2"])


class TestUpdateAndDelete:

    @pytest.mark.asyncio
    async def test_update(self, client, es):
        es.index.return_value = {"_id": "doc", "result": "updated"}

        await client.update("idx", "doc", {"a": 2}, refresh=RefreshOption.WAIT_FOR)

        es.index.assert_awaited_once_with(index="idx", id="doc", document={"a": 2}, refresh="wait_for")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("refresh,expected", [
        ("true", True),
        ("wait_for", True),
        ("false", False),
    ])
    async def test_delete_refresh_coercion(self, client, es, refresh, expected):
        es.delete_by_query.return_value = {"deleted": 1}

        deleted = await client.delete("idx", {"query": {"term": {"name": "x"}}}, refresh=refresh)

        assert deleted == 1
        es.delete_by_query.assert_awaited_once_with(
            index="idx",
            body={"query": {"term": {"name": "x"}}},
            refresh=expected,
        )

    @pytest.mark.asyncio
    async def test_delete_nothing_deleted(self, client, es):
        es.delete_by_query.return_value = {"deleted": 0}

        with pytest.raises(EngineError):
            await client.delete("idx", {"query": {"term": {"name": "x"}}})


class TestIndexAdmin:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("exists", [True, False])
    async def test_index_exists(self, client, es, exists):
        es.indices.exists.return_value = exists

        assert await client.index_exists("idx") is exists

    @pytest.mark.asyncio
    async def test_index_exists_unexpected_status(self, client, es, api_error):
        es.indices.exists.side_effect = api_error(500)

        with pytest.raises(EngineError):
            await client.index_exists("idx")

    @pytest.mark.asyncio
    async def test_delete_index_ignore_missing(self, client, es, api_error):
        es.indices.delete.side_effect = api_error(404, "index_not_found_exception")

        assert await client.delete_index("idx", ignore_missing=True) is False

        with pytest.raises(EngineError):
            await client.delete_index("idx")

    @pytest.mark.asyncio
    async def test_get_index_settings(self, client, es):
        es.indices.get_settings.return_value = {
            "idx": {"settings": {"index": {"blocks": {"write": "true"}}}}
        }

        settings = await client.get_index_settings("idx")

        assert settings == {"index": {"blocks": {"write": "true"}}}

    @pytest.mark.asyncio
    async def test_add_write_block(self, client, es):
        es.indices.add_block.return_value = {"acknowledged": True, "shards_acknowledged": True}

        response = await client.add_write_block("idx")

        assert response["acknowledged"]
        es.indices.add_block.assert_awaited_once_with(index="idx", block="write")

    @pytest.mark.asyncio
    async def test_reindex(self, client, es):
        es.reindex.return_value = {"task": "node:1"}

        task_id = await client.reindex("old", "new")

        assert task_id == "node:1"
        es.reindex.assert_awaited_once_with(
            body={
                "conflicts": "proceed",
                "source": {"index": "old"},
                "dest": {"index": "new", "op_type": "create"},
            },
            wait_for_completion=False,
        )

    @pytest.mark.asyncio
    async def test_reindex_without_task(self, client, es):
        es.reindex.return_value = {}

        with pytest.raises(EngineError):
            await client.reindex("old", "new")

    @pytest.mark.asyncio
    async def test_task_and_task_document(self, client, es):
        es.tasks.get.return_value = {"completed": True}

        assert await client.get_task("node:1") == {"completed": True}
        await client.delete_task_document("node:1")

        es.tasks.get.assert_awaited_once_with(task_id="node:1")
        es.delete.assert_awaited_once_with(index=".tasks", id="node:1")

    @pytest.mark.asyncio
    async def test_swap_alias(self, client, es):
        await client.swap_alias("grafeas-projects", "grafeas-v1-projects", "grafeas-v2-projects")

        es.indices.update_aliases.assert_awaited_once_with(body={
            "actions": [
                {"remove": {"index": "grafeas-v1-projects", "alias": "grafeas-projects"}},
                {"add": {"index": "grafeas-v2-projects", "alias": "grafeas-projects"}},
            ]
        })

    @pytest.mark.asyncio
    async def test_create_index(self, client, es):
        await client.create_index("idx", {"mappings": {}})

        es.indices.create.assert_awaited_once_with(index="idx", body={"mappings": {}})

    @pytest.mark.asyncio
    async def test_get_indices(self, client, es):
        es.indices.get.return_value = {"grafeas-v1-projects": {"aliases": {}}}

        assert await client.get_indices("grafeas-*") == {"grafeas-v1-projects": {"aliases": {}}}
        es.indices.get.assert_awaited_once_with(index=ANY)
