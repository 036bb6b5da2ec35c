"""Tests for the SmartSuite integration."""

import json

import httpx
import pytest

from recordcache.cache.errors import ExternalFetchFailed
from recordcache.cache.schema import ColumnType
from recordcache.integrations.smartsuite import SmartSuiteClient


@pytest.fixture
def client():
    return SmartSuiteClient(api_key="key-123", account_id="acct-9", base_url="https://ss.test/api/v1", page_size=2)


class TestFetchAllRecords:
    @pytest.mark.asyncio
    async def test_pages_until_short_page(self, client, httpx_mock):
        httpx_mock.add_response(json={"items": [{"id": "a"}, {"id": "b"}], "total": 3})
        httpx_mock.add_response(json={"items": [{"id": "c"}], "total": 3})

        records = await client.fetch_all_records("tbl1")
        assert [r["id"] for r in records] == ["a", "b", "c"]

        requests = httpx_mock.get_requests()
        assert len(requests) == 2
        assert requests[0].method == "POST"
        assert requests[0].url.path == "/api/v1/applications/tbl1/records/list/"
        assert requests[0].url.params["offset"] == "0"
        assert requests[1].url.params["offset"] == "2"
        assert requests[0].headers["Authorization"] == "Token key-123"
        assert requests[0].headers["Account-Id"] == "acct-9"
        assert json.loads(requests[0].content) == {}

    @pytest.mark.asyncio
    async def test_empty_table(self, client, httpx_mock):
        httpx_mock.add_response(json={"items": []})
        assert await client.fetch_all_records("tbl1") == []

    @pytest.mark.asyncio
    async def test_api_error(self, client, httpx_mock):
        httpx_mock.add_response(status_code=500)
        with pytest.raises(ExternalFetchFailed) as exc:
            await client.fetch_all_records("tbl1")
        assert exc.value.reason == "HTTP 500"

    @pytest.mark.asyncio
    async def test_timeout(self, client, httpx_mock):
        httpx_mock.add_exception(httpx.TimeoutException("timeout"))
        with pytest.raises(ExternalFetchFailed) as exc:
            await client.fetch_all_records("tbl1")
        assert exc.value.reason == "timeout"

    @pytest.mark.asyncio
    async def test_connection_error(self, client, httpx_mock):
        httpx_mock.add_exception(httpx.ConnectError("refused"))
        with pytest.raises(ExternalFetchFailed):
            await client.fetch_all_records("tbl1")


class TestSchemaHint:
    def test_parse_structure(self, client):
        hint = client._parse_structure([
            {"slug": "title", "label": "Title", "field_type": "recordtitlefield"},
            {"slug": "s1a2b3", "label": "Amount", "field_type": "currencyfield"},
            {"slug": "due", "label": "Due", "field_type": "duedatefield"},
            {"slug": "x9", "label": "Mystery", "field_type": "brandnewfield"},
            {"label": "No slug"},
        ])
        types = {f.name: f.type for f in hint.fields}
        assert types == {
            "title": ColumnType.TEXT,
            "s1a2b3": ColumnType.REAL,
            "due": ColumnType.JSON,
            "x9": None,
        }
        assert hint.fields[1].label == "Amount"

    @pytest.mark.asyncio
    async def test_fetch_schema_hint(self, client, httpx_mock):
        httpx_mock.add_response(json={"structure": [
            {"slug": "done", "label": "Done", "field_type": "yesnofield"},
        ]})
        hint = await client.fetch_schema_hint("tbl1")
        assert hint.names() == ["done"]
        assert hint.fields[0].type is ColumnType.BOOLEAN

    @pytest.mark.asyncio
    async def test_hint_failure_returns_none(self, client, httpx_mock):
        httpx_mock.add_response(status_code=403)
        assert await client.fetch_schema_hint("tbl1") is None

    @pytest.mark.asyncio
    async def test_hint_timeout_returns_none(self, client, httpx_mock):
        httpx_mock.add_exception(httpx.TimeoutException("timeout"))
        assert await client.fetch_schema_hint("tbl1") is None
