"""Validate and commit an uploaded invoice file once object storage reports it written.

The handler is safe to run more than once for the same object: status moves
are guarded on the previous status and the invoice write is keyed, so a
redelivered event either resumes an interrupted ingestion or, once the
transaction is PROCESSED, redoes any invoice write or object delete an
earlier attempt lost before repeating the final status push.
"""

import json
import logging
from concurrent.futures import ThreadPoolExecutor, wait
from datetime import datetime
from typing import Callable, List, Optional, Tuple

from pydantic import ValidationError

from .errors import DependencyFailure, InvalidPayload, ObjectNotFound, TransactionNotFound
from .schemas import (
    TERMINAL_STATUSES,
    InvoiceFile,
    InvoiceRecord,
    ObjectCreatedEvent,
    TransactionRecord,
    TransactionStatus,
)
from .services import Services

logger = logging.getLogger("invoice_import.ingestion")

MIN_INVOICE_NUMBER_LENGTH = 5


def parse_invoice_file(token: str, body: bytes) -> InvoiceFile:
    try:
        data = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise InvalidPayload(token, f"not a JSON document: {exc}") from exc
    try:
        invoice = InvoiceFile.model_validate(data)
    except ValidationError as exc:
        raise InvalidPayload(token, f"not an invoice record: {exc.error_count()} errors") from exc
    if len(invoice.invoice_number) < MIN_INVOICE_NUMBER_LENGTH:
        raise InvalidPayload(token, f"invoice number {invoice.invoice_number!r} is too short")
    return invoice


def _run_effects(effects: List[Tuple[str, Callable[[], object]]], timeout: float) -> List[str]:
    """Run independent side effects concurrently and return the names of those that failed.

    Nothing is rolled back: effects that succeeded stay applied.
    """
    failed: List[str] = []
    pool = ThreadPoolExecutor(max_workers=len(effects), thread_name_prefix="ingest-effect")
    try:
        futures = {pool.submit(fn): name for name, fn in effects}
        done, not_done = wait(futures, timeout=timeout)
        for future in done:
            if future.exception() is not None:
                logger.error("Effect %s failed: %s", futures[future], future.exception())
                failed.append(futures[future])
        for future in not_done:
            logger.error("Effect %s did not finish within %ss", futures[future], timeout)
            failed.append(futures[future])
    finally:
        # Stragglers keep running; they are not waited for or undone
        pool.shutdown(wait=False)
    return failed


def _mark_received(services: Services, record: TransactionRecord) -> Optional[TransactionStatus]:
    """Move GENERATED -> RECEIVED. Returns the status to stop at, or None to continue."""
    token = record.token
    if services.transactions.update_status(
        token, TransactionStatus.RECEIVED, expected=TransactionStatus.GENERATED
    ):
        services.notifier.send_status(token, record.connection_id, TransactionStatus.RECEIVED)
        return None
    # Lost the race, typically against a cancel
    current = services.transactions.get(token).status
    logger.warning("Non valid transaction status token=%s status=%s", token, current.value)
    if current == TransactionStatus.RECEIVED:
        return None
    services.notifier.send_status(token, record.connection_id, current)
    return current


def _reject(services: Services, record: TransactionRecord, reason: InvalidPayload) -> TransactionStatus:
    token = record.token
    logger.warning("Rejected invoice file token=%s: %s", token, reason.message)
    status = TransactionStatus.NON_VALID_INVOICE_NUMBER
    failed = _run_effects(
        [
            (
                "update_transaction",
                lambda: services.transactions.update_status(
                    token, status, expected=TransactionStatus.RECEIVED
                ),
            ),
            ("send_status", lambda: services.notifier.send_status(token, record.connection_id, status)),
        ],
        services.effect_timeout_seconds,
    )
    services.notifier.disconnect(record.connection_id)
    if failed:
        raise DependencyFailure(f"{token}: {', '.join(sorted(failed))} failed")
    return status


def _invoice_record(token: str, invoice_file: InvoiceFile) -> InvoiceRecord:
    return InvoiceRecord(
        customer_name=invoice_file.customer_name,
        invoice_number=invoice_file.invoice_number,
        total_value=invoice_file.total_value,
        product_id=invoice_file.product_id,
        quantity=invoice_file.quantity,
        source_transaction_token=token,
        created_at=datetime.utcnow(),
    )


def _commit(services: Services, record: TransactionRecord, invoice_file: InvoiceFile) -> TransactionStatus:
    token = record.token
    status = TransactionStatus.PROCESSED
    invoice = _invoice_record(token, invoice_file)

    def store_invoice() -> None:
        services.invoices.put(invoice)
        # the upload stays until the invoice is stored so a redelivery can rebuild it
        services.objects.delete(token)

    failed = _run_effects(
        [
            ("store_invoice", store_invoice),
            (
                "update_transaction",
                lambda: services.transactions.update_status(
                    token, status, expected=TransactionStatus.RECEIVED
                ),
            ),
            ("send_status", lambda: services.notifier.send_status(token, record.connection_id, status)),
        ],
        services.effect_timeout_seconds,
    )
    if failed:
        raise DependencyFailure(f"{token}: {', '.join(sorted(failed))} failed")
    logger.info(
        "Processed invoice customer=%s invoice_number=%s token=%s",
        invoice.customer_name,
        invoice.invoice_number,
        token,
    )
    return status


def _finish_commit(services: Services, record: TransactionRecord) -> TransactionStatus:
    """Complete an ingestion whose invoice was committed and object deleted by an earlier attempt."""
    token = record.token
    status = TransactionStatus.PROCESSED
    logger.info("Invoice for token=%s already committed; completing transaction", token)
    services.transactions.update_status(token, status, expected=TransactionStatus.RECEIVED)
    services.notifier.send_status(token, record.connection_id, status)
    return status


def _repair_processed(services: Services, record: TransactionRecord) -> None:
    """Redo commit effects that failed after an earlier attempt had already written PROCESSED.

    An invoice that already exists for the token is never replaced, so a
    second PUT to the same upload URL cannot change a committed invoice.
    """
    token = record.token
    try:
        body: Optional[bytes] = services.objects.get(token)
    except ObjectNotFound:
        body = None

    if services.invoices.find_by_transaction(token) is None:
        if body is None:
            logger.error("Transaction token=%s is PROCESSED but its invoice and object are gone", token)
            return
        try:
            invoice_file = parse_invoice_file(token, body)
        except InvalidPayload as exc:
            logger.warning("Leftover object for token=%s is not a valid invoice: %s", token, exc.message)
        else:
            services.invoices.put(_invoice_record(token, invoice_file))
            logger.info("Restored missing invoice for token=%s", token)

    if body is not None:
        services.objects.delete(token)


def ingest_object(services: Services, event: ObjectCreatedEvent) -> Optional[TransactionStatus]:
    """Handle one object-created event and return the status the transaction ended in.

    Returns None for events from a bucket this process does not own. Raises
    DependencyFailure when a collaborator failed and the event should be
    delivered again.
    """
    token = event.key
    if event.bucket != services.objects.bucket:
        logger.warning("Ignoring object %s/%s from unknown bucket", event.bucket, token)
        return None

    try:
        record = services.transactions.get(token)
    except TransactionNotFound:
        # No record means no connection to report to
        logger.warning("Invoice transaction not found for uploaded object: %s", token)
        return TransactionStatus.NOT_FOUND
    except Exception as exc:
        logger.exception("Reading transaction token=%s failed", token)
        raise DependencyFailure(f"{token}: read transaction failed") from exc

    try:
        if record.status == TransactionStatus.PROCESSED:
            _repair_processed(services, record)

        if record.status in TERMINAL_STATUSES:
            logger.warning("Non valid transaction status token=%s status=%s", token, record.status.value)
            services.notifier.send_status(token, record.connection_id, record.status)
            return record.status

        if record.status == TransactionStatus.GENERATED:
            stopped_at = _mark_received(services, record)
            if stopped_at is not None:
                return stopped_at

        try:
            body = services.objects.get(token)
        except ObjectNotFound as exc:
            committed = services.invoices.find_by_transaction(token)
            if committed is None:
                raise DependencyFailure(f"{token}: uploaded object is missing") from exc
            return _finish_commit(services, record)

        try:
            invoice_file = parse_invoice_file(token, body)
        except InvalidPayload as exc:
            return _reject(services, record, exc)

        return _commit(services, record, invoice_file)
    except DependencyFailure:
        raise
    except TransactionNotFound:
        logger.warning("Invoice transaction token=%s expired during ingestion", token)
        return TransactionStatus.NOT_FOUND
    except Exception as exc:
        logger.exception("Ingestion failed for token=%s", token)
        raise DependencyFailure(f"{token}: ingestion failed") from exc
