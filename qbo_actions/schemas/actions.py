from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, EmailStr, Field


Environment = Literal["sandbox", "prod"]


class Resource(str, Enum):
    BILL = "bill"
    CUSTOMER = "customer"
    EMPLOYEE = "employee"
    ESTIMATE = "estimate"
    INVOICE = "invoice"
    ITEM = "item"
    PAYMENT = "payment"
    VENDOR = "vendor"

    @property
    def entity_name(self) -> str:
        """Entity name used in response envelopes and query statements."""
        return self.value.capitalize()


class Operation(str, Enum):
    CREATE = "create"
    GET = "get"
    GET_ALL = "getAll"
    UPDATE = "update"
    DELETE = "delete"
    SEND = "send"
    VOID = "void"


class QuickBooksCredentials(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    company_id: str = Field(
        min_length=1,
        validation_alias=AliasChoices("company_id", "companyId", "realm_id", "realmId"),
    )
    access_token: str = Field(
        min_length=1,
        repr=False,
        validation_alias=AliasChoices("access_token", "accessToken"),
    )
    environment: Environment = "sandbox"


class ActionParameters(BaseModel):
    """Per-item parameters as supplied by the workflow host.

    The host's camelCase names and plain snake_case names are both accepted.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    entity_id: Optional[Union[str, int]] = Field(
        default=None,
        validation_alias=AliasChoices(
            "entity_id",
            "id",
            "billId",
            "customerId",
            "employeeId",
            "estimateId",
            "invoiceId",
            "itemId",
            "paymentId",
            "vendorId",
        ),
    )
    display_name: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("display_name", "displayName"),
    )
    vendor_ref: Any = Field(default=None, validation_alias=AliasChoices("vendor_ref", "VendorRef"))
    customer_ref: Any = Field(default=None, validation_alias=AliasChoices("customer_ref", "CustomerRef"))
    total_amt: Optional[Decimal] = Field(
        default=None,
        validation_alias=AliasChoices("total_amt", "TotalAmt"),
    )
    lines: list[dict[str, Any]] = Field(
        default_factory=list,
        validation_alias=AliasChoices("lines", "Line"),
    )
    additional_fields: dict[str, Any] = Field(
        default_factory=dict,
        validation_alias=AliasChoices("additional_fields", "additionalFields"),
    )
    update_fields: dict[str, Any] = Field(
        default_factory=dict,
        validation_alias=AliasChoices("update_fields", "updateFields"),
    )
    email: Optional[EmailStr] = Field(default=None, validation_alias=AliasChoices("email", "sendTo"))
    download: bool = False
    binary_property: str = Field(
        default="data",
        min_length=1,
        validation_alias=AliasChoices("binary_property", "binaryProperty"),
    )
    file_name: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("file_name", "fileName"),
    )
    return_all: bool = Field(default=False, validation_alias=AliasChoices("return_all", "returnAll"))
    limit: int = Field(default=50, ge=1)
    filters: dict[str, Any] = Field(default_factory=dict)
    flatten_lines: bool = Field(
        default=False,
        validation_alias=AliasChoices("flatten_lines", "flattenLines"),
    )


class ActionItem(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    json_data: dict[str, Any] = Field(default_factory=dict, alias="json")
    parameters: dict[str, Any] = Field(default_factory=dict)


class BinaryAttachment(BaseModel):
    data: str = Field(description="Base64 encoded file content.")
    mime_type: str = "application/pdf"
    file_name: str
    file_extension: str = "pdf"


class JsonOutput(BaseModel):
    kind: Literal["json"] = "json"
    records: list[dict[str, Any]] = Field(default_factory=list)


class BinaryOutput(BaseModel):
    kind: Literal["binary"] = "binary"
    record: dict[str, Any] = Field(default_factory=dict)
    binary: dict[str, BinaryAttachment]


ActionOutput = Annotated[Union[JsonOutput, BinaryOutput], Field(discriminator="kind")]


class ActionBatchRequest(BaseModel):
    items: list[ActionItem] = Field(min_length=1)
    continue_on_fail: bool = False


class ActionBatchResponse(BaseModel):
    resource: Resource
    operation: Operation
    realm_id: str
    environment: str
    fetched_at: datetime
    latency_ms: float
    results: list[ActionOutput]


class ActionCatalogResponse(BaseModel):
    actions: dict[str, list[str]]
