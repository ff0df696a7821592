import time
from dataclasses import dataclass, field
from typing import Callable

from .config import Settings
from .database import make_engine, make_session_factory
from .invoices import InvoiceStore, SqlInvoiceStore
from .notifier import ConnectionRegistry, Notifier, WebSocketNotifier
from .objects import LocalObjectStore, ObjectAccess
from .transactions import SqlTransactionStore, TransactionStore

# Validity of the pre-signed upload URL
UPLOAD_URL_EXPIRES_SECONDS = 60 * 5
# Lifetime of the transaction record; deliberately shorter than the URL
TRANSACTION_TTL_SECONDS = 60 * 2
# Share of the per-event handler budget the concurrent commit effects may use;
# the rest covers the reads and parsing that precede them
EFFECT_TIMEOUT_SHARE = 0.5


@dataclass
class Services:
    """Collaborators shared by the import handlers, constructed once per process."""

    transactions: TransactionStore
    invoices: InvoiceStore
    objects: ObjectAccess
    notifier: Notifier
    upload_url_expires_seconds: int = UPLOAD_URL_EXPIRES_SECONDS
    transaction_ttl_seconds: int = TRANSACTION_TTL_SECONDS
    effect_timeout_seconds: float = 5.0
    clock: Callable[[], float] = field(default=time.time)


def build_services(settings: Settings, registry: ConnectionRegistry) -> Services:
    session_factory = make_session_factory(make_engine(settings.database_url))
    return Services(
        transactions=SqlTransactionStore(session_factory),
        invoices=SqlInvoiceStore(session_factory),
        objects=LocalObjectStore(
            settings.object_store_dir,
            settings.bucket_name,
            settings.signing_secret,
            settings.public_base_url,
            lifetime_seconds=settings.object_lifetime_seconds,
        ),
        notifier=WebSocketNotifier(registry, timeout_seconds=settings.notify_timeout_seconds),
        effect_timeout_seconds=settings.handler_timeout_seconds * EFFECT_TIMEOUT_SHARE,
    )
