"""SmartSuite REST API integration.

Docs: https://developers.smartsuite.com/docs/intro
Records: POST /applications/{table_id}/records/list/  (paged by limit / offset)
Structure: GET /applications/{table_id}/
"""

import logging
import time
from typing import Any

import httpx

from recordcache.cache.errors import ExternalFetchFailed
from recordcache.cache.schema import ColumnType, FieldHint, SchemaHint

logger = logging.getLogger(__name__)

BASE_URL = "https://app.smartsuite.com/api/v1"
PAGE_SIZE = 1000

# SmartSuite field_type -> cache column type, used only for fields that no
# fetched record carries a value for.
FIELD_TYPE_MAP: dict[str, ColumnType] = {
    "textfield": ColumnType.TEXT,
    "textareafield": ColumnType.TEXT,
    "title": ColumnType.TEXT,
    "recordtitlefield": ColumnType.TEXT,
    "singleselectfield": ColumnType.TEXT,
    "timefield": ColumnType.TEXT,
    "autonumberfield": ColumnType.INTEGER,
    "numberfield": ColumnType.REAL,
    "currencyfield": ColumnType.REAL,
    "percentfield": ColumnType.REAL,
    "ratingfield": ColumnType.REAL,
    "numbersliderfield": ColumnType.REAL,
    "percentcompletefield": ColumnType.REAL,
    "durationfield": ColumnType.REAL,
    "yesnofield": ColumnType.BOOLEAN,
    "datefield": ColumnType.JSON,
    "duedatefield": ColumnType.JSON,
    "daterangefield": ColumnType.JSON,
    "statusfield": ColumnType.JSON,
    "multipleselectfield": ColumnType.JSON,
    "tagfield": ColumnType.JSON,
    "assignedtofield": ColumnType.JSON,
    "linkedrecordfield": ColumnType.JSON,
    "emailfield": ColumnType.JSON,
    "phonefield": ColumnType.JSON,
    "linkfield": ColumnType.JSON,
    "addressfield": ColumnType.JSON,
    "fullnamefield": ColumnType.JSON,
    "filesfield": ColumnType.JSON,
    "imagesfield": ColumnType.JSON,
    "signaturefield": ColumnType.JSON,
    "checklistfield": ColumnType.JSON,
    "smartdocfield": ColumnType.JSON,
    "firstcreatedfield": ColumnType.JSON,
    "lastupdatedfield": ColumnType.JSON,
}


class SmartSuiteClient:
    """Async client for the SmartSuite API, usable as a cache data source."""

    def __init__(
        self,
        api_key: str,
        account_id: str,
        base_url: str = BASE_URL,
        page_size: int = PAGE_SIZE,
        timeout: int = 30,
    ):
        self.api_key = api_key
        self.account_id = account_id
        self.base_url = base_url.rstrip("/")
        self.page_size = page_size
        self.timeout = timeout

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Token {self.api_key}",
            "Account-Id": self.account_id,
            "Content-Type": "application/json",
        }

    async def fetch_all_records(self, resource_id: str) -> list[dict[str, Any]]:
        """Fetch every record of a table, paging until a short or empty page."""
        url = f"{self.base_url}/applications/{resource_id}/records/list/"
        records: list[dict[str, Any]] = []
        offset = 0
        pages = 0

        start = time.monotonic()
        try:
            async with httpx.AsyncClient(timeout=self.timeout, headers=self._headers()) as client:
                while True:
                    response = await client.post(
                        url,
                        params={"limit": self.page_size, "offset": offset, "hydrated": "true"},
                        json={},
                    )
                    if response.status_code != 200:
                        logger.warning(
                            "SmartSuite | status=%d | table=%s | offset=%d",
                            response.status_code, resource_id, offset,
                        )
                        raise ExternalFetchFailed(resource_id, f"HTTP {response.status_code}")

                    page = response.json().get("items", [])
                    pages += 1
                    records.extend(page)
                    if len(page) < self.page_size:
                        break
                    offset += self.page_size
        except httpx.TimeoutException as e:
            elapsed_ms = int((time.monotonic() - start) * 1000)
            logger.warning("SmartSuite timeout | table=%s | %dms", resource_id, elapsed_ms)
            raise ExternalFetchFailed(resource_id, "timeout") from e
        except httpx.HTTPError as e:
            logger.error("SmartSuite error | table=%s | %s", resource_id, str(e)[:200])
            raise ExternalFetchFailed(resource_id, str(e)[:200]) from e

        elapsed_ms = int((time.monotonic() - start) * 1000)
        logger.info(
            "SmartSuite OK | table=%s | records=%d | pages=%d | %dms",
            resource_id, len(records), pages, elapsed_ms,
        )
        return records

    async def fetch_schema_hint(self, resource_id: str) -> SchemaHint | None:
        """Field list from the table structure. Returns None if it can't be fetched."""
        url = f"{self.base_url}/applications/{resource_id}/"
        try:
            async with httpx.AsyncClient(timeout=self.timeout, headers=self._headers()) as client:
                response = await client.get(url)
            if response.status_code != 200:
                logger.warning("SmartSuite structure | status=%d | table=%s", response.status_code, resource_id)
                return None
            structure = response.json().get("structure", [])
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("SmartSuite structure error | table=%s | %s", resource_id, str(e)[:200])
            return None

        return self._parse_structure(structure)

    def _parse_structure(self, structure: list[dict[str, Any]]) -> SchemaHint:
        fields = []
        for field in structure:
            slug = field.get("slug")
            if not slug:
                continue
            field_type = str(field.get("field_type", "")).lower()
            fields.append(FieldHint(
                name=slug,
                type=FIELD_TYPE_MAP.get(field_type),
                label=field.get("label"),
            ))
        return SchemaHint(fields=fields)
