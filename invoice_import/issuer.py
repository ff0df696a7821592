import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

from .errors import TransactionAlreadyExists
from .schemas import TransactionRecord, TransactionStatus, UploadLinkMessage
from .services import Services

logger = logging.getLogger("invoice_import.issuer")

# Token collisions should never happen with uuid4, but a collision must not overwrite a live record
MAX_TOKEN_ATTEMPTS = 3


def _generate_token() -> str:
    return str(uuid.uuid4())


def issue_upload_link(
    services: Services, connection_id: str, request_id: Optional[str] = None
) -> TransactionRecord:
    """Create a GENERATED transaction and push its upload URL to the client.

    The link travels over the client's connection, not as a return value to
    the caller; the record is returned for logging and tests. Storage and
    signing failures propagate.
    """
    request_id = request_id or "req_" + uuid.uuid4().hex[:12]
    logger.info("Upload link requested connection_id=%s request_id=%s", connection_id, request_id)

    for attempt in range(1, MAX_TOKEN_ATTEMPTS + 1):
        token = _generate_token()
        expires = services.upload_url_expires_seconds
        url = services.objects.create_upload_url(token, expires)

        now = services.clock()
        record = TransactionRecord(
            token=token,
            status=TransactionStatus.GENERATED,
            connection_id=connection_id,
            request_id=request_id,
            created_at=datetime.fromtimestamp(now, tz=timezone.utc).replace(tzinfo=None),
            expires_in_seconds=expires,
            ttl=int(now + services.transaction_ttl_seconds),
        )
        try:
            services.transactions.create(record)
            break
        except TransactionAlreadyExists:
            logger.warning("Token collision on attempt %s for token=%s; regenerating", attempt, token)
    else:
        raise TransactionAlreadyExists(token)

    message = UploadLinkMessage(url=url, expires=expires, transaction_id=token)
    delivered = services.notifier.send(connection_id, message.model_dump_json(by_alias=True))
    if not delivered:
        logger.warning("Upload link for token=%s not delivered to connection_id=%s", token, connection_id)
    return record
