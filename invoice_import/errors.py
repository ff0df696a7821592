from dataclasses import dataclass
from typing import Optional


class InvoiceImportError(Exception):
    """Base class for failures raised by the import pipeline."""


class TransactionNotFound(InvoiceImportError):
    def __init__(self, token: str) -> None:
        super().__init__(f"Invoice transaction not found: {token}")
        self.token = token


class TransactionAlreadyExists(InvoiceImportError):
    def __init__(self, token: str) -> None:
        super().__init__(f"Invoice transaction already exists: {token}")
        self.token = token


class InvoiceNotFound(InvoiceImportError):
    def __init__(self, customer_name: str, invoice_number: str) -> None:
        super().__init__(f"Invoice not found: {customer_name}/{invoice_number}")
        self.customer_name = customer_name
        self.invoice_number = invoice_number


class ObjectNotFound(InvoiceImportError):
    def __init__(self, bucket: str, key: str) -> None:
        super().__init__(f"Object not found: {bucket}/{key}")
        self.bucket = bucket
        self.key = key


@dataclass
class InvalidPayload(InvoiceImportError):
    token: str
    message: str

    def __str__(self) -> str:
        return f"{self.token}: {self.message}"


@dataclass
class IllegalTransition(InvoiceImportError):
    token: str
    current: Optional[str]
    requested: str

    def __str__(self) -> str:
        return f"{self.token}: cannot move from {self.current} to {self.requested}"


class DependencyFailure(InvoiceImportError):
    """A store, object storage or notifier call failed; the event may be redelivered."""
