from __future__ import annotations

import base64
import logging
from typing import Any, Mapping, Optional

from qbo_actions.schemas.actions import BinaryAttachment, BinaryOutput, Resource
from qbo_actions.services.qbo_client import QuickBooksClient
from qbo_actions.services.request_builder import (
    DOWNLOADABLE_RESOURCES,
    EntityId,
    QuickBooksValidationError,
    company_path,
)


logger = logging.getLogger("qbo_actions.services.binary")

PDF_MIME_TYPE = "application/pdf"


def default_file_name(resource: Resource, entity_id: EntityId) -> str:
    return f"{resource.value}-{entity_id}.pdf"


async def fetch_binary(
    client: QuickBooksClient,
    resource: Resource,
    entity_id: EntityId,
    item_json: Mapping[str, Any] | None = None,
    *,
    binary_property: str = "data",
    file_name: Optional[str] = None,
) -> BinaryOutput:
    """Download the PDF rendition of a transaction and attach it to the item."""
    if resource not in DOWNLOADABLE_RESOURCES:
        raise QuickBooksValidationError(f"{resource.entity_name} has no PDF rendition")
    content = await client.request_binary(
        company_path(client.company_id, resource.value, entity_id, "pdf"),
        accept=PDF_MIME_TYPE,
    )
    attachment = BinaryAttachment(
        data=base64.b64encode(content).decode("ascii"),
        mime_type=PDF_MIME_TYPE,
        file_name=file_name or default_file_name(resource, entity_id),
        file_extension="pdf",
    )
    logger.info(
        "qbo_pdf_downloaded",
        extra={
            "entity": resource.entity_name,
            "entity_id": str(entity_id),
            "bytes": len(content),
        },
    )
    return BinaryOutput(record=dict(item_json or {}), binary={binary_property: attachment})
