import json

import pytest

from invoice_import.invoices import InMemoryInvoiceStore
from invoice_import.notifier import InMemoryNotifier
from invoice_import.objects import InMemoryObjectStore
from invoice_import.services import Services
from invoice_import.transactions import InMemoryTransactionStore


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def services(clock):
    return Services(
        transactions=InMemoryTransactionStore(clock=clock),
        invoices=InMemoryInvoiceStore(),
        objects=InMemoryObjectStore(clock=clock),
        notifier=InMemoryNotifier(),
        effect_timeout_seconds=2.0,
        clock=clock,
    )


@pytest.fixture
def notifier(services):
    return services.notifier


def pushed(notifier, connection_id):
    return [json.loads(payload) for cid, payload in notifier.messages if cid == connection_id]


def pushed_statuses(notifier, connection_id):
    return [message["status"] for message in pushed(notifier, connection_id) if "status" in message]


def invoice_body(invoice_number="AB123", customer_name="alice", **overrides):
    payload = {
        "invoiceNumber": invoice_number,
        "totalValue": 10.5,
        "productId": "p1",
        "quantity": 2,
        "customerName": customer_name,
    }
    payload.update(overrides)
    return json.dumps(payload).encode("utf-8")
