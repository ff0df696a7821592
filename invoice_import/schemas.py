from datetime import datetime
from enum import Enum
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class TransactionStatus(str, Enum):
    GENERATED = "GENERATED"
    RECEIVED = "RECEIVED"
    PROCESSED = "PROCESSED"
    CANCELLED = "CANCELLED"
    NON_VALID_INVOICE_NUMBER = "NON_VALID_INVOICE_NUMBER"
    # Reported for lookup misses, never persisted
    NOT_FOUND = "NOT_FOUND"


TERMINAL_STATUSES = frozenset(
    {
        TransactionStatus.PROCESSED,
        TransactionStatus.CANCELLED,
        TransactionStatus.NON_VALID_INVOICE_NUMBER,
    }
)


class TransactionRecord(BaseModel):
    token: str
    status: TransactionStatus
    connection_id: str
    request_id: Optional[str] = None
    created_at: datetime
    expires_in_seconds: int
    ttl: int


class InvoiceRecord(BaseModel):
    customer_name: str
    invoice_number: str
    total_value: float
    product_id: str
    quantity: int
    source_transaction_token: str
    created_at: Optional[datetime] = None


class InvoiceFile(BaseModel):
    """Layout of the JSON document a client uploads."""

    model_config = ConfigDict(populate_by_name=True)

    invoice_number: str = Field(..., alias="invoiceNumber")
    total_value: float = Field(..., alias="totalValue")
    product_id: str = Field(..., alias="productId")
    quantity: int = Field(..., alias="quantity")
    customer_name: str = Field(..., alias="customerName", min_length=1)


class ObjectCreatedEvent(BaseModel):
    bucket: str
    key: str


# Messages pushed to the client over its WebSocket connection


class StatusMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    transaction_id: str = Field(..., alias="transactionId")
    status: TransactionStatus


class UploadLinkMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    url: str
    expires: int
    transaction_id: str = Field(..., alias="transactionId")


class ErrorMessage(BaseModel):
    error: str


# Frames sent by the client

ActionLiteral = Literal["getImportUrl", "cancelImport", "getImportStatus"]


class ClientAction(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    action: ActionLiteral
    transaction_id: Optional[str] = Field(None, alias="transactionId", min_length=1, max_length=64)


class InvoiceResponse(BaseModel):
    customerName: str
    invoiceNumber: str
    totalValue: float
    productId: str
    quantity: int
    transactionId: str
    createdAt: Optional[datetime]
