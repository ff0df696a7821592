import logging
from typing import Optional

from .errors import TransactionNotFound
from .schemas import TransactionStatus
from .services import Services

logger = logging.getLogger("invoice_import.cancellation")


def cancel_import(services: Services, token: str, connection_id: str) -> Optional[TransactionStatus]:
    """Abort a transaction that is still waiting for its upload.

    Only GENERATED transactions can be cancelled. Any other status is pushed
    back unchanged. The requesting connection is closed on every path. Returns
    the status reported to the client, or None when the store itself failed.
    """
    reported: Optional[TransactionStatus] = None
    try:
        record = services.transactions.get(token)
        if record.status == TransactionStatus.GENERATED:
            if services.transactions.update_status(
                token, TransactionStatus.CANCELLED, expected=TransactionStatus.GENERATED
            ):
                reported = TransactionStatus.CANCELLED
                logger.info("Cancelled transaction token=%s", token)
            else:
                # An upload was observed between the read and the write
                reported = services.transactions.get(token).status
                logger.warning("Can't cancel an ongoing process token=%s status=%s", token, reported.value)
        else:
            reported = record.status
            logger.warning("Can't cancel an ongoing process token=%s status=%s", token, reported.value)
        services.notifier.send_status(token, connection_id, reported)
    except TransactionNotFound:
        logger.info("Invoice transaction not found: %s", token)
        reported = TransactionStatus.NOT_FOUND
        services.notifier.send_status(token, connection_id, reported)
    except Exception:
        logger.exception("Cancel failed for token=%s connection_id=%s", token, connection_id)
    finally:
        services.notifier.disconnect(connection_id)
    return reported


def report_status(services: Services, token: str, connection_id: str) -> TransactionStatus:
    """Push the current status of a transaction; an unknown token also closes the connection."""
    try:
        status = services.transactions.get(token).status
    except TransactionNotFound:
        logger.info("Invoice transaction not found: %s", token)
        services.notifier.send_status(token, connection_id, TransactionStatus.NOT_FOUND)
        services.notifier.disconnect(connection_id)
        return TransactionStatus.NOT_FOUND
    services.notifier.send_status(token, connection_id, status)
    return status
