"""Durable record of in-flight upload transactions, keyed by upload token."""

import logging
import threading
import time
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Callable, Dict, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from .database import session_scope
from .errors import IllegalTransition, TransactionAlreadyExists, TransactionNotFound
from .models import InvoiceTransaction
from .schemas import TransactionRecord, TransactionStatus

logger = logging.getLogger("invoice_import.transactions")

Clock = Callable[[], float]

# Guarded transitions of the import state machine
TRANSITIONS: Dict[TransactionStatus, frozenset] = {
    TransactionStatus.GENERATED: frozenset({TransactionStatus.RECEIVED, TransactionStatus.CANCELLED}),
    TransactionStatus.RECEIVED: frozenset(
        {TransactionStatus.PROCESSED, TransactionStatus.NON_VALID_INVOICE_NUMBER}
    ),
}


def can_transition(current: TransactionStatus, requested: TransactionStatus) -> bool:
    return requested in TRANSITIONS.get(current, frozenset())


class TransactionStore(ABC):
    @abstractmethod
    def create(self, record: TransactionRecord) -> None:
        """Insert a new transaction; raises TransactionAlreadyExists on a token collision."""

    @abstractmethod
    def get(self, token: str) -> TransactionRecord:
        """Return the live transaction or raise TransactionNotFound (missing or past its ttl)."""

    @abstractmethod
    def update_status(
        self,
        token: str,
        new_status: TransactionStatus,
        expected: Optional[TransactionStatus] = None,
    ) -> bool:
        """Overwrite the status.

        Without ``expected`` this is an unconditional write and raises
        TransactionNotFound for an unknown token. With ``expected`` the write
        only happens while the stored status still equals it and the record is
        within its ttl; False means the record moved on, expired or vanished.
        """

    @staticmethod
    def _check_transition(
        token: str, new_status: TransactionStatus, expected: Optional[TransactionStatus]
    ) -> None:
        if new_status == TransactionStatus.NOT_FOUND:
            raise IllegalTransition(token, expected.value if expected else None, new_status.value)
        if expected is not None and not can_transition(expected, new_status):
            raise IllegalTransition(token, expected.value, new_status.value)


class SqlTransactionStore(TransactionStore):
    def __init__(self, session_factory: sessionmaker, clock: Clock = time.time) -> None:
        self._session_factory = session_factory
        self._clock = clock

    def create(self, record: TransactionRecord) -> None:
        try:
            with session_scope(self._session_factory) as session:
                session.add(
                    InvoiceTransaction(
                        token=record.token,
                        status=record.status.value,
                        connection_id=record.connection_id,
                        request_id=record.request_id,
                        expires_in_seconds=record.expires_in_seconds,
                        ttl=record.ttl,
                        created_at=record.created_at,
                    )
                )
                session.flush()
        except IntegrityError as exc:
            raise TransactionAlreadyExists(record.token) from exc
        logger.info("Created transaction token=%s connection_id=%s", record.token, record.connection_id)

    def get(self, token: str) -> TransactionRecord:
        with session_scope(self._session_factory) as session:
            row = session.get(InvoiceTransaction, token)
            if row is None or row.ttl < self._clock():
                raise TransactionNotFound(token)
            return TransactionRecord(
                token=row.token,
                status=TransactionStatus(row.status),
                connection_id=row.connection_id,
                request_id=row.request_id,
                created_at=row.created_at,
                expires_in_seconds=row.expires_in_seconds,
                ttl=row.ttl,
            )

    def update_status(
        self,
        token: str,
        new_status: TransactionStatus,
        expected: Optional[TransactionStatus] = None,
    ) -> bool:
        self._check_transition(token, new_status, expected)
        stmt = update(InvoiceTransaction).where(InvoiceTransaction.token == token)
        if expected is not None:
            # an expired record is invisible to guarded transitions, as it is to get
            stmt = stmt.where(
                InvoiceTransaction.status == expected.value,
                InvoiceTransaction.ttl >= self._clock(),
            )
        stmt = stmt.values(status=new_status.value, updated_at=datetime.utcnow())
        with session_scope(self._session_factory) as session:
            result = session.execute(stmt)
            changed = result.rowcount > 0
        if not changed and expected is None:
            raise TransactionNotFound(token)
        if changed:
            logger.info("Transaction token=%s status=%s", token, new_status.value)
        else:
            logger.info(
                "Transaction token=%s no longer %s; status=%s not written",
                token,
                expected.value,
                new_status.value,
            )
        return changed


class InMemoryTransactionStore(TransactionStore):
    def __init__(self, clock: Clock = time.time) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self.records: Dict[str, TransactionRecord] = {}

    def create(self, record: TransactionRecord) -> None:
        with self._lock:
            if record.token in self.records:
                raise TransactionAlreadyExists(record.token)
            self.records[record.token] = record.model_copy()

    def get(self, token: str) -> TransactionRecord:
        with self._lock:
            record = self.records.get(token)
            if record is None or record.ttl < self._clock():
                raise TransactionNotFound(token)
            return record.model_copy()

    def update_status(
        self,
        token: str,
        new_status: TransactionStatus,
        expected: Optional[TransactionStatus] = None,
    ) -> bool:
        self._check_transition(token, new_status, expected)
        with self._lock:
            record = self.records.get(token)
            if record is None:
                if expected is None:
                    raise TransactionNotFound(token)
                return False
            if expected is not None and (record.status != expected or record.ttl < self._clock()):
                return False
            self.records[token] = record.model_copy(update={"status": new_status})
            return True
