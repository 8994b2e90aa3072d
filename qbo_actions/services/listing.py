from __future__ import annotations

import logging
from typing import Any, AsyncIterator, Mapping, Optional

from qbo_actions.schemas.actions import Resource
from qbo_actions.services.qbo_client import QuickBooksClient
from qbo_actions.services.request_builder import (
    LINE_RESOURCES,
    QuickBooksValidationError,
    company_path,
)


logger = logging.getLogger("qbo_actions.services.listing")

MAX_PAGE_SIZE = 1000


def build_select_statement(resource: Resource, filters: Mapping[str, Any] | None = None) -> str:
    statement = f"SELECT * FROM {resource.entity_name}"
    clause = (filters or {}).get("query")
    if clause:
        statement = f"{statement} {str(clause).strip()}"
    return statement


def flatten_record_lines(resource: Resource, record: Mapping[str, Any]) -> list[dict[str, Any]]:
    parent: dict[str, Any] = {"TxnId": record.get("Id"), "TxnType": resource.entity_name}
    if record.get("DocNumber") is not None:
        parent["DocNumber"] = record["DocNumber"]
    return [{**line, **parent} for line in record.get("Line") or []]


def _extract_rows(payload: Mapping[str, Any], resource: Resource) -> list[dict[str, Any]]:
    query_response = payload.get("QueryResponse") or {}
    rows = query_response.get(resource.entity_name) or []
    if isinstance(rows, dict):
        rows = [rows]
    return rows


async def iter_listing(
    client: QuickBooksClient,
    resource: Resource,
    *,
    filters: Mapping[str, Any] | None = None,
    return_all: bool = False,
    limit: Optional[int] = None,
    flatten_lines: bool = False,
    page_size: int = MAX_PAGE_SIZE,
) -> AsyncIterator[dict[str, Any]]:
    """Yield the entities of one resource, paging through the query endpoint.

    Pages are requested with STARTPOSITION/MAXRESULTS until a page comes back
    short or, unless ``return_all`` is set, ``limit`` entities were read. With
    ``flatten_lines`` every entity is replaced by its lines, each tagged with
    the parent transaction. Calling again restarts from the first page.
    """
    if not 1 <= page_size <= MAX_PAGE_SIZE:
        raise QuickBooksValidationError(f"page_size must be between 1 and {MAX_PAGE_SIZE}")
    if not return_all and (limit is None or limit < 1):
        raise QuickBooksValidationError("limit must be >= 1 unless all results are requested")
    if flatten_lines and resource not in LINE_RESOURCES:
        raise QuickBooksValidationError(f"{resource.entity_name} records have no lines to flatten")

    base_statement = build_select_statement(resource, filters)
    path = company_path(client.company_id, "query")
    start_position = 1
    produced = 0

    while True:
        requested = page_size if return_all else min(page_size, limit - produced)
        statement = f"{base_statement} STARTPOSITION {start_position} MAXRESULTS {requested}"
        payload = await client.request("GET", path, query={"query": statement})
        rows = _extract_rows(payload, resource)
        logger.info(
            "qbo_listing_page",
            extra={
                "entity": resource.entity_name,
                "start_position": start_position,
                "requested": requested,
                "items": len(rows),
            },
        )

        for row in rows[:requested]:
            produced += 1
            if flatten_lines:
                for line in flatten_record_lines(resource, row):
                    yield line
            else:
                yield row

        if len(rows) < requested:
            return
        if not return_all and produced >= limit:
            return
        start_position += requested


async def list_records(
    client: QuickBooksClient,
    resource: Resource,
    *,
    filters: Mapping[str, Any] | None = None,
    return_all: bool = False,
    limit: Optional[int] = None,
    flatten_lines: bool = False,
    page_size: int = MAX_PAGE_SIZE,
) -> list[dict[str, Any]]:
    return [
        record
        async for record in iter_listing(
            client,
            resource,
            filters=filters,
            return_all=return_all,
            limit=limit,
            flatten_lines=flatten_lines,
            page_size=page_size,
        )
    ]
