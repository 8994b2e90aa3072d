from __future__ import annotations

import logging
from datetime import datetime, timezone
from time import perf_counter

from fastapi import APIRouter, Depends, Header, HTTPException, Query, status

from qbo_actions.core import logging as logging_utils
from qbo_actions.core.config import Settings, get_settings
from qbo_actions.schemas.actions import (
    ActionBatchRequest,
    ActionBatchResponse,
    ActionCatalogResponse,
    QuickBooksCredentials,
)
from qbo_actions.services.actions import QuickBooksActions
from qbo_actions.services.qbo_client import (
    QuickBooksApiError,
    QuickBooksAuthError,
    QuickBooksClient,
    QuickBooksNotFoundError,
)
from qbo_actions.services.request_builder import (
    SUPPORTED_OPERATIONS,
    QuickBooksValidationError,
    get_action,
)
from qbo_actions.utils.validators import parse_bearer_token, require_company_id, resolve_environment


router = APIRouter(prefix="/actions", tags=["actions"])
logger = logging.getLogger("qbo_actions.api.actions")


def get_credentials(
    company_id: str | None = Header(default=None, alias="X-QBO-Company-Id"),
    authorization: str | None = Header(default=None, alias="Authorization"),
    environment: str | None = Query(default=None),
    settings: Settings = Depends(get_settings),
) -> QuickBooksCredentials:
    credentials = QuickBooksCredentials(
        company_id=require_company_id(company_id),
        access_token=parse_bearer_token(authorization),
        environment=resolve_environment(environment, settings.environment),
    )
    logging_utils.set_request_context(realm_id=credentials.company_id)
    return credentials


@router.get(
    "",
    response_model=ActionCatalogResponse,
    summary="List Actions",
    description="Lists every supported resource and the operations it accepts.",
)
async def list_actions() -> ActionCatalogResponse:
    return ActionCatalogResponse(
        actions={
            resource.value: [operation.value for operation in operations]
            for resource, operations in SUPPORTED_OPERATIONS.items()
        }
    )


@router.post(
    "/{resource}/{operation}",
    response_model=ActionBatchResponse,
    summary="Execute Action",
    description=(
        "Runs one QuickBooks operation for every item of the batch, in order. "
        "Download-enabled gets return the PDF as a base64 attachment."
    ),
)
async def execute_action(
    resource: str,
    operation: str,
    payload: ActionBatchRequest,
    credentials: QuickBooksCredentials = Depends(get_credentials),
    settings: Settings = Depends(get_settings),
) -> ActionBatchResponse:
    try:
        spec = get_action(resource, operation)
    except QuickBooksValidationError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    start = perf_counter()
    try:
        async with QuickBooksClient(credentials, settings) as client:
            results = await QuickBooksActions(client, settings).execute(
                spec.resource,
                spec.operation,
                payload.items,
                continue_on_fail=payload.continue_on_fail,
            )
    except QuickBooksValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    except QuickBooksNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except QuickBooksAuthError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(exc)) from exc
    except QuickBooksApiError as exc:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"QuickBooks API error: {exc}",
        ) from exc
    latency_ms = (perf_counter() - start) * 1000

    logger.info(
        "qbo_action_batch_success",
        extra={
            "realm_id": credentials.company_id,
            "environment": credentials.environment,
            "resource": spec.resource.value,
            "operation": spec.operation.value,
            "items": len(payload.items),
            "latency_ms": round(latency_ms, 2),
        },
    )
    return ActionBatchResponse(
        resource=spec.resource,
        operation=spec.operation,
        realm_id=credentials.company_id,
        environment=credentials.environment,
        fetched_at=datetime.now(timezone.utc),
        latency_ms=round(latency_ms, 2),
        results=results,
    )
