"""Translate action parameters into QuickBooks Online API requests.

Every legal ``(Resource, Operation)`` pair is registered in ``ACTIONS``. Pairs
served by a plain request carry a builder; ``getAll`` pairs are served by the
listing helper and carry none.

Builders are pure: they validate the parameters, translate host field names
into the API's nested shapes and never touch the network. Mutations that need
an optimistic-concurrency token return a request flagged with
``sync_token_target``; the caller fetches the token and applies it with
``QuickBooksRequest.with_sync_token``.
"""
from __future__ import annotations

from copy import deepcopy
from dataclasses import dataclass, field, replace
from decimal import Decimal
from typing import Any, Callable, Literal, Mapping, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from qbo_actions.schemas.actions import ActionParameters, Operation, Resource


class QuickBooksValidationError(ValueError):
    pass


SyncTokenTarget = Literal["body", "query"]
EntityId = Union[str, int]


@dataclass(frozen=True)
class QuickBooksRequest:
    method: str
    path: str
    query: dict[str, Any] = field(default_factory=dict)
    body: dict[str, Any] = field(default_factory=dict)
    entity_id: Optional[EntityId] = None
    sync_token_target: Optional[SyncTokenTarget] = None

    @property
    def requires_sync_token(self) -> bool:
        return self.sync_token_target is not None

    def with_sync_token(self, sync_token: str) -> "QuickBooksRequest":
        if self.sync_token_target == "body":
            return replace(self, body={**self.body, "SyncToken": sync_token})
        if self.sync_token_target == "query":
            return replace(self, query={**self.query, "SyncToken": sync_token})
        raise ValueError("request does not take a SyncToken")


# ---------------------------------------------------------------------------
# field transforms
# ---------------------------------------------------------------------------

FieldTransform = Callable[[dict[str, Any], str, Any], None]


def _unwrap_details(value: Any) -> Any:
    if isinstance(value, Mapping) and "details" in value:
        return value["details"]
    return value


def normalize_reference(value: Any, field_name: str) -> dict[str, Any]:
    """Normalize a flat id or a ``{details: {name, value}}`` pair into a reference."""
    details = _unwrap_details(value)
    if isinstance(details, Mapping):
        ref_value = details.get("value")
        if ref_value is None or ref_value == "":
            raise QuickBooksValidationError(f"{field_name} requires a value")
        name = details.get("name")
        if name:
            return {"name": name, "value": ref_value}
        return {"value": ref_value}
    if details is None or details == "":
        raise QuickBooksValidationError(f"{field_name} requires a value")
    return {"value": details}


def _copy_field(body: dict[str, Any], key: str, value: Any) -> None:
    body[key] = deepcopy(value)


def _reference_field(body: dict[str, Any], key: str, value: Any) -> None:
    body[key] = normalize_reference(value, key)


def _address_field(target: str) -> FieldTransform:
    def apply(body: dict[str, Any], key: str, value: Any) -> None:
        details = _unwrap_details(value)
        if not isinstance(details, Mapping):
            raise QuickBooksValidationError(f"{key} must be an object")
        body[target] = {name: deepcopy(part) for name, part in details.items() if part != ""}

    return apply


def _wrapped_field(wrapper_key: str, target: Optional[str] = None) -> FieldTransform:
    def apply(body: dict[str, Any], key: str, value: Any) -> None:
        body[target or key] = {wrapper_key: deepcopy(value)}

    return apply


@dataclass(frozen=True)
class FieldTransformTable:
    """Per-resource handling of caller-supplied optional fields.

    Keys missing from ``transforms`` are copied verbatim, except that
    ``references_by_suffix`` routes every ``*Ref`` key through the reference
    normalizer.
    """

    transforms: Mapping[str, FieldTransform] = field(default_factory=dict)
    references_by_suffix: bool = False

    def transform_for(self, key: str) -> FieldTransform:
        transform = self.transforms.get(key)
        if transform is not None:
            return transform
        if self.references_by_suffix and key.endswith("Ref"):
            return _reference_field
        return _copy_field

    def apply(self, body: dict[str, Any], fields: Mapping[str, Any]) -> dict[str, Any]:
        for key, value in fields.items():
            self.transform_for(key)(body, key, value)
        return body


VERBATIM = FieldTransformTable()

CONTACT_FIELDS = FieldTransformTable(
    transforms={
        "BillingAddress": _address_field("BillAddr"),
        "PrimaryEmailAddr": _wrapped_field("Address"),
        "PrimaryPhone": _wrapped_field("FreeFormNumber"),
    }
)

BILL_CREATE_FIELDS = FieldTransformTable(
    transforms={
        "APAccountRef": _reference_field,
        "SalesTermRef": _reference_field,
    }
)

BILL_UPDATE_FIELDS = FieldTransformTable(references_by_suffix=True)

SALES_DOCUMENT_FIELDS = FieldTransformTable(
    transforms={
        "BillingAddress": _address_field("BillAddr"),
        "ShippingAddress": _address_field("ShipAddr"),
        "BillEmail": _wrapped_field("Address"),
        "CustomerMemo": _wrapped_field("value"),
        "TotalTax": _wrapped_field("TotalTax", target="TxnTaxDetail"),
    },
    references_by_suffix=True,
)

PAYMENT_FIELDS = FieldTransformTable(references_by_suffix=True)

CREATE_FIELD_TABLES: dict[Resource, FieldTransformTable] = {
    Resource.BILL: BILL_CREATE_FIELDS,
    Resource.CUSTOMER: CONTACT_FIELDS,
    Resource.EMPLOYEE: VERBATIM,
    Resource.ESTIMATE: SALES_DOCUMENT_FIELDS,
    Resource.INVOICE: SALES_DOCUMENT_FIELDS,
    Resource.PAYMENT: PAYMENT_FIELDS,
    Resource.VENDOR: VERBATIM,
}

UPDATE_FIELD_TABLES: dict[Resource, FieldTransformTable] = {
    Resource.BILL: BILL_UPDATE_FIELDS,
    Resource.CUSTOMER: CONTACT_FIELDS,
    Resource.EMPLOYEE: VERBATIM,
    Resource.ESTIMATE: SALES_DOCUMENT_FIELDS,
    Resource.INVOICE: SALES_DOCUMENT_FIELDS,
    Resource.PAYMENT: PAYMENT_FIELDS,
    Resource.VENDOR: VERBATIM,
}


# ---------------------------------------------------------------------------
# lines
# ---------------------------------------------------------------------------

REQUIRED_LINE_FIELDS = ("DetailType", "Amount", "Description")

# DetailType -> (convenience id key, reference key inside the detail object)
LINE_DETAIL_REFERENCES: dict[Resource, dict[str, tuple[str, str]]] = {
    Resource.BILL: {
        "AccountBasedExpenseLineDetail": ("accountId", "AccountRef"),
        "ItemBasedExpenseLineDetail": ("itemId", "ItemRef"),
    },
    Resource.ESTIMATE: {
        "SalesItemLineDetail": ("itemId", "ItemRef"),
    },
    Resource.INVOICE: {
        "SalesItemLineDetail": ("itemId", "ItemRef"),
    },
}


def build_lines(resource: Resource, lines: list[dict[str, Any]]) -> list[dict[str, Any]]:
    if not lines:
        raise QuickBooksValidationError(
            f"Please enter at least one line for the {resource.value}."
        )
    for line in lines:
        if any(not line.get(name) for name in REQUIRED_LINE_FIELDS):
            raise QuickBooksValidationError(
                "Please enter at least a detail type, an amount and a description for every line."
            )

    detail_references = LINE_DETAIL_REFERENCES.get(resource, {})
    payload_lines: list[dict[str, Any]] = []
    for line in lines:
        payload = deepcopy(line)
        detail_type = payload["DetailType"]
        mapping = detail_references.get(detail_type)
        if mapping is not None:
            source_key, ref_key = mapping
            if source_key in payload:
                detail = dict(payload.get(detail_type) or {})
                detail[ref_key] = {"value": payload.pop(source_key)}
                payload[detail_type] = detail
        payload_lines.append(payload)
    return payload_lines


# ---------------------------------------------------------------------------
# builders
# ---------------------------------------------------------------------------

RequestBuilder = Callable[[Resource, ActionParameters, str], QuickBooksRequest]


def company_path(company_id: str, *parts: Any) -> str:
    suffix = "/".join(str(part) for part in parts)
    return f"/v3/company/{company_id}/{suffix}"


def _require_entity_id(resource: Resource, params: ActionParameters) -> EntityId:
    if params.entity_id is None or params.entity_id == "":
        raise QuickBooksValidationError(f"Please enter the {resource.value} ID.")
    return params.entity_id


def _require_reference(value: Any, field_name: str) -> dict[str, Any]:
    if value is None or value == "":
        raise QuickBooksValidationError(f"{field_name} is required.")
    return normalize_reference(value, field_name)


def _display_name_body(resource: Resource, params: ActionParameters) -> dict[str, Any]:
    if not params.display_name:
        raise QuickBooksValidationError(f"Please enter a display name for the {resource.value}.")
    return {"DisplayName": params.display_name}


def _bill_body(resource: Resource, params: ActionParameters) -> dict[str, Any]:
    return {
        "VendorRef": _require_reference(params.vendor_ref, "VendorRef"),
        "Line": build_lines(resource, params.lines),
    }


def _sales_document_body(resource: Resource, params: ActionParameters) -> dict[str, Any]:
    return {
        "CustomerRef": _require_reference(params.customer_ref, "CustomerRef"),
        "Line": build_lines(resource, params.lines),
    }


def _payment_body(resource: Resource, params: ActionParameters) -> dict[str, Any]:
    if params.total_amt is None:
        raise QuickBooksValidationError("TotalAmt is required.")
    return {
        "CustomerRef": _require_reference(params.customer_ref, "CustomerRef"),
        "TotalAmt": _amount(params.total_amt),
    }


def _amount(value: Decimal) -> float:
    return float(value)


CREATE_BODIES: dict[Resource, Callable[[Resource, ActionParameters], dict[str, Any]]] = {
    Resource.BILL: _bill_body,
    Resource.CUSTOMER: _display_name_body,
    Resource.EMPLOYEE: _display_name_body,
    Resource.ESTIMATE: _sales_document_body,
    Resource.INVOICE: _sales_document_body,
    Resource.PAYMENT: _payment_body,
    Resource.VENDOR: _display_name_body,
}

# References carried into a sparse update when the caller supplies them.
UPDATE_REFERENCES: dict[Resource, tuple[str, str]] = {
    Resource.BILL: ("vendor_ref", "VendorRef"),
    Resource.ESTIMATE: ("customer_ref", "CustomerRef"),
    Resource.INVOICE: ("customer_ref", "CustomerRef"),
    Resource.PAYMENT: ("customer_ref", "CustomerRef"),
}


def build_create(resource: Resource, params: ActionParameters, company_id: str) -> QuickBooksRequest:
    body = CREATE_BODIES[resource](resource, params)
    CREATE_FIELD_TABLES[resource].apply(body, params.additional_fields)
    return QuickBooksRequest(
        method="POST",
        path=company_path(company_id, resource.value),
        body=body,
    )


def build_get(resource: Resource, params: ActionParameters, company_id: str) -> QuickBooksRequest:
    entity_id = _require_entity_id(resource, params)
    return QuickBooksRequest(
        method="GET",
        path=company_path(company_id, resource.value, entity_id),
        entity_id=entity_id,
    )


def build_update(resource: Resource, params: ActionParameters, company_id: str) -> QuickBooksRequest:
    entity_id = _require_entity_id(resource, params)
    if not params.update_fields:
        raise QuickBooksValidationError(
            f"Please enter at least one field to update for the {resource.value}."
        )
    body: dict[str, Any] = {"Id": entity_id, "sparse": True}
    reference = UPDATE_REFERENCES.get(resource)
    if reference is not None:
        attribute, key = reference
        value = getattr(params, attribute)
        if value is not None and value != "":
            body[key] = normalize_reference(value, key)
    UPDATE_FIELD_TABLES[resource].apply(body, params.update_fields)
    return QuickBooksRequest(
        method="POST",
        path=company_path(company_id, resource.value),
        body=body,
        entity_id=entity_id,
        sync_token_target="body",
    )


def build_delete(resource: Resource, params: ActionParameters, company_id: str) -> QuickBooksRequest:
    entity_id = _require_entity_id(resource, params)
    return QuickBooksRequest(
        method="POST",
        path=company_path(company_id, resource.value),
        query={"operation": "delete"},
        body={"Id": entity_id},
        entity_id=entity_id,
        sync_token_target="body",
    )


def build_void(resource: Resource, params: ActionParameters, company_id: str) -> QuickBooksRequest:
    entity_id = _require_entity_id(resource, params)
    return QuickBooksRequest(
        method="POST",
        path=company_path(company_id, resource.value),
        query={"Id": entity_id, "operation": "void"},
        body={},
        entity_id=entity_id,
        sync_token_target="query",
    )


def build_send(resource: Resource, params: ActionParameters, company_id: str) -> QuickBooksRequest:
    entity_id = _require_entity_id(resource, params)
    if not params.email:
        raise QuickBooksValidationError(f"Please enter an email address to send the {resource.value} to.")
    return QuickBooksRequest(
        method="POST",
        path=company_path(company_id, resource.value, entity_id, "send"),
        query={"sendTo": str(params.email)},
        body={},
        entity_id=entity_id,
    )


# ---------------------------------------------------------------------------
# action table
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ActionSpec:
    resource: Resource
    operation: Operation
    builder: Optional[RequestBuilder] = None
    downloadable: bool = False

    @property
    def is_listing(self) -> bool:
        return self.builder is None


SUPPORTED_OPERATIONS: dict[Resource, tuple[Operation, ...]] = {
    Resource.BILL: (Operation.CREATE, Operation.GET, Operation.GET_ALL, Operation.UPDATE, Operation.DELETE),
    Resource.CUSTOMER: (Operation.CREATE, Operation.GET, Operation.GET_ALL, Operation.UPDATE),
    Resource.EMPLOYEE: (Operation.CREATE, Operation.GET, Operation.GET_ALL, Operation.UPDATE),
    Resource.ESTIMATE: (Operation.CREATE, Operation.GET, Operation.GET_ALL, Operation.UPDATE, Operation.DELETE),
    Resource.INVOICE: (
        Operation.CREATE,
        Operation.GET,
        Operation.GET_ALL,
        Operation.UPDATE,
        Operation.DELETE,
        Operation.SEND,
        Operation.VOID,
    ),
    Resource.ITEM: (Operation.GET, Operation.GET_ALL),
    Resource.PAYMENT: (
        Operation.CREATE,
        Operation.GET,
        Operation.GET_ALL,
        Operation.UPDATE,
        Operation.DELETE,
        Operation.SEND,
        Operation.VOID,
    ),
    Resource.VENDOR: (Operation.CREATE, Operation.GET, Operation.GET_ALL, Operation.UPDATE),
}

OPERATION_BUILDERS: dict[Operation, RequestBuilder] = {
    Operation.CREATE: build_create,
    Operation.GET: build_get,
    Operation.UPDATE: build_update,
    Operation.DELETE: build_delete,
    Operation.SEND: build_send,
    Operation.VOID: build_void,
}

DOWNLOADABLE_RESOURCES = frozenset({Resource.ESTIMATE, Resource.INVOICE, Resource.PAYMENT})
LINE_RESOURCES = frozenset({Resource.BILL, Resource.ESTIMATE, Resource.INVOICE, Resource.PAYMENT})

ACTIONS: dict[tuple[Resource, Operation], ActionSpec] = {
    (resource, operation): ActionSpec(
        resource=resource,
        operation=operation,
        builder=OPERATION_BUILDERS.get(operation),
        downloadable=operation is Operation.GET and resource in DOWNLOADABLE_RESOURCES,
    )
    for resource, operations in SUPPORTED_OPERATIONS.items()
    for operation in operations
}


def get_action(resource: Resource | str, operation: Operation | str) -> ActionSpec:
    try:
        resource = Resource(resource)
    except ValueError as exc:
        raise QuickBooksValidationError(f"Unknown resource '{resource}'") from exc
    try:
        operation = Operation(operation)
    except ValueError as exc:
        raise QuickBooksValidationError(f"Unknown operation '{operation}'") from exc
    spec = ACTIONS.get((resource, operation))
    if spec is None:
        raise QuickBooksValidationError(
            f"Operation '{operation.value}' is not supported for resource '{resource.value}'"
        )
    return spec


def parse_parameters(parameters: Mapping[str, Any] | ActionParameters) -> ActionParameters:
    if isinstance(parameters, ActionParameters):
        return parameters
    try:
        return ActionParameters.model_validate(dict(parameters))
    except PydanticValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(part) for part in error['loc']) or 'parameters'}: {error['msg']}"
            for error in exc.errors()
        )
        raise QuickBooksValidationError(f"Invalid parameters: {problems}") from exc


def build_request(
    resource: Resource | str,
    operation: Operation | str,
    parameters: Mapping[str, Any] | ActionParameters,
    *,
    company_id: str,
) -> QuickBooksRequest:
    spec = get_action(resource, operation)
    if spec.builder is None:
        raise QuickBooksValidationError(
            f"'{spec.operation.value}' on '{spec.resource.value}' is served by the listing helper"
        )
    return spec.builder(spec.resource, parse_parameters(parameters), company_id)
