from __future__ import annotations

from time import perf_counter
from typing import Any, Mapping, Sequence

import httpx

from qbo_actions.core import logging as logging_utils
from qbo_actions.core.config import Settings, get_settings
from qbo_actions.schemas.actions import (
    ActionItem,
    ActionOutput,
    JsonOutput,
    Operation,
    Resource,
)
from qbo_actions.services.binary import fetch_binary
from qbo_actions.services.listing import list_records
from qbo_actions.services.qbo_client import (
    QuickBooksApiError,
    QuickBooksAuthError,
    QuickBooksClient,
    QuickBooksNotFoundError,
)
from qbo_actions.services.request_builder import (
    ActionSpec,
    QuickBooksValidationError,
    get_action,
    parse_parameters,
)
from qbo_actions.services.sync_tokens import fetch_sync_token


def unwrap_entity(resource: Resource, payload: Mapping[str, Any]) -> dict[str, Any]:
    record = payload.get(resource.entity_name)
    if isinstance(record, dict):
        return record
    return dict(payload)


def _classify_error(exc: Exception) -> str:
    if isinstance(exc, QuickBooksValidationError):
        return "validation"
    if isinstance(exc, QuickBooksNotFoundError):
        return "qbo_not_found"
    if isinstance(exc, QuickBooksAuthError):
        return "qbo_auth"
    if isinstance(exc, QuickBooksApiError):
        if isinstance(exc.__cause__, httpx.HTTPError):
            return "qbo_transport"
        if exc.status_code is None or exc.status_code < 400:
            return "qbo_payload"
        return "qbo_5xx" if exc.status_code >= 500 else "qbo_4xx"
    return "unknown"


def _output_size(output: ActionOutput) -> int:
    if isinstance(output, JsonOutput):
        return len(output.records)
    return 1


class QuickBooksActions:
    """Runs one action over a batch of host items against one company.

    Items are processed strictly in order. Each item produces exactly one
    output; a failure aborts the batch unless ``continue_on_fail`` is set, in
    which case the error is reported as that item's output. Remote side effects
    of earlier items are never rolled back.
    """

    def __init__(self, client: QuickBooksClient, settings: Settings | None = None) -> None:
        self.client = client
        self.settings = settings or get_settings()

    async def execute(
        self,
        resource: Resource | str,
        operation: Operation | str,
        items: Sequence[ActionItem | Mapping[str, Any]],
        *,
        continue_on_fail: bool = False,
    ) -> list[ActionOutput]:
        spec = get_action(resource, operation)
        logging_utils.set_request_context(
            realm_id=self.client.company_id,
            resource=spec.resource.value,
            operation=spec.operation.value,
        )
        outputs: list[ActionOutput] = []
        for index, raw_item in enumerate(items):
            item = raw_item if isinstance(raw_item, ActionItem) else ActionItem.model_validate(raw_item)
            logging_utils.log_action_started(
                realm_id=self.client.company_id,
                resource=spec.resource.value,
                operation=spec.operation.value,
                item_index=index,
                parameters=item.parameters,
            )
            start = perf_counter()
            try:
                output = await self.execute_item(spec, item)
            except (QuickBooksValidationError, QuickBooksApiError) as exc:
                logging_utils.log_action_finished(
                    realm_id=self.client.company_id,
                    resource=spec.resource.value,
                    operation=spec.operation.value,
                    item_index=index,
                    latency_ms=(perf_counter() - start) * 1000,
                    result="failure",
                    error_code=_classify_error(exc),
                    error_message=str(exc),
                    qbo_status_code=getattr(exc, "status_code", None),
                )
                if not continue_on_fail:
                    raise
                output = JsonOutput(records=[{"error": str(exc)}])
            else:
                logging_utils.log_action_finished(
                    realm_id=self.client.company_id,
                    resource=spec.resource.value,
                    operation=spec.operation.value,
                    item_index=index,
                    latency_ms=(perf_counter() - start) * 1000,
                    result="success",
                    output_kind=output.kind,
                    record_count=_output_size(output),
                )
            outputs.append(output)
        return outputs

    async def execute_item(self, spec: ActionSpec, item: ActionItem) -> ActionOutput:
        params = parse_parameters(item.parameters)

        if spec.is_listing:
            records = await list_records(
                self.client,
                spec.resource,
                filters=params.filters,
                return_all=params.return_all,
                limit=params.limit,
                flatten_lines=params.flatten_lines,
                page_size=self.settings.listing_page_size,
            )
            return JsonOutput(records=records)

        request = spec.builder(spec.resource, params, self.client.company_id)

        if spec.downloadable and params.download:
            return await fetch_binary(
                self.client,
                spec.resource,
                request.entity_id,
                item.json_data,
                binary_property=params.binary_property,
                file_name=params.file_name,
            )

        if request.requires_sync_token:
            sync_token = await fetch_sync_token(self.client, spec.resource, request.entity_id)
            request = request.with_sync_token(sync_token)

        payload = await self.client.request(
            request.method,
            request.path,
            query=request.query or None,
            body=None if request.method == "GET" else request.body,
        )
        return JsonOutput(records=[unwrap_entity(spec.resource, payload)])

