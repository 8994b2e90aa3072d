from __future__ import annotations

import logging

from qbo_actions.schemas.actions import Resource
from qbo_actions.services.qbo_client import QuickBooksApiError, QuickBooksClient
from qbo_actions.services.request_builder import EntityId, company_path


logger = logging.getLogger("qbo_actions.services.sync_tokens")


async def fetch_sync_token(client: QuickBooksClient, resource: Resource, entity_id: EntityId) -> str:
    """Read the current SyncToken of an entity.

    Tokens are never cached: every mutation bumps the token, so the value is
    only valid for the request issued right after this call.
    """
    payload = await client.request("GET", company_path(client.company_id, resource.value, entity_id))
    record = payload.get(resource.entity_name) or {}
    sync_token = record.get("SyncToken")
    if sync_token is None:
        raise QuickBooksApiError(
            f"QuickBooks {resource.entity_name} {entity_id} payload is missing SyncToken"
        )
    logger.debug(
        "qbo_sync_token_fetched",
        extra={"entity": resource.entity_name, "entity_id": str(entity_id)},
    )
    return str(sync_token)
