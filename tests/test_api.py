import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from conftest import invoice_body
from invoice_import.config import Settings
from invoice_import.invoices import InMemoryInvoiceStore
from invoice_import.main import create_app
from invoice_import.notifier import ConnectionRegistry, WebSocketNotifier
from invoice_import.objects import InMemoryObjectStore
from invoice_import.services import Services
from invoice_import.transactions import InMemoryTransactionStore

SETTINGS = Settings(
    signing_secret="test-secret",
    public_base_url="http://testserver",
    handler_timeout_seconds=5.0,
    housekeeping_interval_seconds=3600,
)


@pytest.fixture
def app_services():
    registry = ConnectionRegistry()
    services = Services(
        transactions=InMemoryTransactionStore(),
        invoices=InMemoryInvoiceStore(),
        objects=InMemoryObjectStore(),
        notifier=WebSocketNotifier(registry, timeout_seconds=2.0),
    )
    return services, registry


@pytest.fixture
def client(app_services):
    services, registry = app_services
    app = create_app(settings=SETTINGS, services=services, registry=registry)
    with TestClient(app) as client:
        yield client


def _request_link(ws):
    ws.send_json({"action": "getImportUrl"})
    return ws.receive_json()


def test_importing_main_does_not_build_an_app():
    from invoice_import import main

    assert "app" not in vars(main)
    with pytest.raises(AttributeError):
        main.not_an_attribute


def test_root(client):
    response = client.get("/")

    assert response.status_code == 200
    assert response.json()["bucket"] == "invoices"


def test_get_import_url(client):
    with client.websocket_connect("/ws") as ws:
        link = _request_link(ws)

    assert link["expires"] == 300
    assert link["url"].startswith(f"http://testserver/uploads/invoices/{link['transactionId']}?")
    response = client.get(f"/transactions/{link['transactionId']}")
    assert response.json() == {"transactionId": link["transactionId"], "status": "GENERATED"}


def test_upload_is_processed_and_pushed(client):
    with client.websocket_connect("/ws") as ws:
        link = _request_link(ws)
        token = link["transactionId"]

        response = client.put(link["url"], content=invoice_body(invoice_number="AB123", customer_name="alice"))
        assert response.status_code == 200

        assert ws.receive_json() == {"transactionId": token, "status": "RECEIVED"}
        assert ws.receive_json() == {"transactionId": token, "status": "PROCESSED"}

    invoice = client.get("/invoices/alice/AB123")
    assert invoice.status_code == 200
    assert invoice.json()["transactionId"] == token
    assert invoice.json()["totalValue"] == 10.5
    assert client.get(f"/transactions/{token}").json()["status"] == "PROCESSED"


def test_short_invoice_number_disconnects_client(client, app_services):
    services, _ = app_services
    with client.websocket_connect("/ws") as ws:
        link = _request_link(ws)
        token = link["transactionId"]

        client.put(link["url"], content=invoice_body(invoice_number="AB12"))

        assert ws.receive_json()["status"] == "RECEIVED"
        assert ws.receive_json() == {"transactionId": token, "status": "NON_VALID_INVOICE_NUMBER"}
        with pytest.raises(WebSocketDisconnect):
            ws.receive_json()

    assert services.invoices.invoices == {}


def test_cancel_unknown_transaction(client):
    with client.websocket_connect("/ws") as ws:
        ws.send_json({"action": "cancelImport", "transactionId": "never-issued"})

        assert ws.receive_json() == {"transactionId": "never-issued", "status": "NOT_FOUND"}
        with pytest.raises(WebSocketDisconnect):
            ws.receive_json()


def test_cancel_then_upload_creates_no_invoice(client, app_services):
    services, _ = app_services
    with client.websocket_connect("/ws") as ws:
        link = _request_link(ws)
        token = link["transactionId"]
        ws.send_json({"action": "cancelImport", "transactionId": token})

        assert ws.receive_json() == {"transactionId": token, "status": "CANCELLED"}
        with pytest.raises(WebSocketDisconnect):
            ws.receive_json()

    assert client.put(link["url"], content=invoice_body()).status_code == 200
    assert client.get(f"/transactions/{token}").json()["status"] == "CANCELLED"
    assert client.get("/invoices/alice/AB123").status_code == 404


def test_status_lookup_of_unknown_transaction_disconnects(client):
    with client.websocket_connect("/ws") as ws:
        ws.send_json({"action": "getImportStatus", "transactionId": "never-issued"})

        assert ws.receive_json()["status"] == "NOT_FOUND"
        with pytest.raises(WebSocketDisconnect):
            ws.receive_json()


def test_invalid_frames_keep_connection_open(client):
    with client.websocket_connect("/ws") as ws:
        ws.send_text("not json")
        assert ws.receive_json() == {"error": "Invalid action"}

        ws.send_json({"action": "dance"})
        assert ws.receive_json() == {"error": "Invalid action"}

        ws.send_json({"action": "cancelImport"})
        assert ws.receive_json() == {"error": "transactionId is required"}

        link = _request_link(ws)
        assert "transactionId" in link


def test_upload_with_bad_signature_is_rejected(client):
    with client.websocket_connect("/ws") as ws:
        link = _request_link(ws)

    tampered = link["url"].replace("signature=", "signature=00")
    assert client.put(tampered, content=invoice_body()).status_code == 403

    wrong_bucket = link["url"].replace("/uploads/invoices/", "/uploads/other/")
    assert client.put(wrong_bucket, content=invoice_body()).status_code == 404


def test_unknown_records_return_404(client):
    assert client.get("/transactions/never-issued").status_code == 404
    assert client.get("/invoices/alice/AB123").status_code == 404
