import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from .database import session_scope
from .errors import InvoiceNotFound
from .models import Invoice
from .schemas import InvoiceRecord

logger = logging.getLogger("invoice_import.invoices")


class InvoiceStore(ABC):
    @abstractmethod
    def put(self, invoice: InvoiceRecord) -> None:
        """Write the invoice under (customer_name, invoice_number), replacing any previous copy."""

    @abstractmethod
    def get(self, customer_name: str, invoice_number: str) -> InvoiceRecord:
        ...

    @abstractmethod
    def find_by_transaction(self, token: str) -> Optional[InvoiceRecord]:
        """Return the invoice committed from the given transaction, if any."""


def _to_record(row: Invoice) -> InvoiceRecord:
    return InvoiceRecord(
        customer_name=row.customer_name,
        invoice_number=row.invoice_number,
        total_value=row.total_value,
        product_id=row.product_id,
        quantity=row.quantity,
        source_transaction_token=row.source_transaction_token,
        created_at=row.created_at,
    )


class SqlInvoiceStore(InvoiceStore):
    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory

    def _merge(self, invoice: InvoiceRecord) -> None:
        with session_scope(self._session_factory) as session:
            session.merge(
                Invoice(
                    customer_name=invoice.customer_name,
                    invoice_number=invoice.invoice_number,
                    total_value=invoice.total_value,
                    product_id=invoice.product_id,
                    quantity=invoice.quantity,
                    source_transaction_token=invoice.source_transaction_token,
                    created_at=invoice.created_at or datetime.utcnow(),
                )
            )

    def put(self, invoice: InvoiceRecord) -> None:
        try:
            self._merge(invoice)
        except IntegrityError:
            # Lost an insert race on the same key; the row exists now, so overwrite it
            logger.info(
                "Race detected writing invoice %s/%s; retrying as overwrite",
                invoice.customer_name,
                invoice.invoice_number,
            )
            self._merge(invoice)
        logger.info(
            "Stored invoice customer=%s invoice_number=%s token=%s",
            invoice.customer_name,
            invoice.invoice_number,
            invoice.source_transaction_token,
        )

    def get(self, customer_name: str, invoice_number: str) -> InvoiceRecord:
        with session_scope(self._session_factory) as session:
            row = session.get(Invoice, (customer_name, invoice_number))
            if row is None:
                raise InvoiceNotFound(customer_name, invoice_number)
            return _to_record(row)

    def find_by_transaction(self, token: str) -> Optional[InvoiceRecord]:
        with session_scope(self._session_factory) as session:
            row = (
                session.query(Invoice)
                .filter(Invoice.source_transaction_token == token)
                .first()
            )
            return _to_record(row) if row is not None else None


class InMemoryInvoiceStore(InvoiceStore):
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.invoices: Dict[Tuple[str, str], InvoiceRecord] = {}

    def put(self, invoice: InvoiceRecord) -> None:
        if invoice.created_at is None:
            invoice = invoice.model_copy(update={"created_at": datetime.utcnow()})
        with self._lock:
            self.invoices[(invoice.customer_name, invoice.invoice_number)] = invoice

    def get(self, customer_name: str, invoice_number: str) -> InvoiceRecord:
        with self._lock:
            invoice = self.invoices.get((customer_name, invoice_number))
        if invoice is None:
            raise InvoiceNotFound(customer_name, invoice_number)
        return invoice

    def find_by_transaction(self, token: str) -> Optional[InvoiceRecord]:
        with self._lock:
            for invoice in self.invoices.values():
                if invoice.source_transaction_token == token:
                    return invoice
        return None
