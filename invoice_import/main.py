import asyncio
import logging
import uuid
from typing import Optional

from fastapi import FastAPI, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import ValidationError
from starlette.concurrency import run_in_threadpool
from starlette.websockets import WebSocketState

from .cancellation import cancel_import, report_status
from .config import Settings, get_settings
from .errors import InvoiceNotFound, TransactionNotFound
from .ingestion import ingest_object
from .issuer import issue_upload_link
from .notifier import ConnectionRegistry
from .schemas import ClientAction, ErrorMessage, InvoiceResponse, ObjectCreatedEvent, StatusMessage
from .services import Services, build_services
from .worker import IngestionWorker

logger = logging.getLogger("invoice_import.main")

MAX_UPLOAD_BYTES = 1024 * 1024


def _configure_logging(level: str) -> None:
    if not logging.getLogger().handlers:
        logging.basicConfig(
            level=level,
            format="%(asctime)s %(levelname)s %(name)s %(message)s",
        )
    else:
        logging.getLogger().setLevel(level)


def create_app(
    settings: Optional[Settings] = None,
    services: Optional[Services] = None,
    registry: Optional[ConnectionRegistry] = None,
) -> FastAPI:
    """Build the API. Pass ``services`` together with the ``registry`` its notifier uses."""
    settings = settings or get_settings()
    _configure_logging(settings.log_level)

    registry = registry or ConnectionRegistry()
    services = services or build_services(settings, registry)
    worker = IngestionWorker(
        lambda event: ingest_object(services, event),
        max_retries=settings.worker_max_retries,
        task_timeout_seconds=settings.handler_timeout_seconds,
        on_idle=services.objects.purge_expired,
        idle_interval_seconds=settings.housekeeping_interval_seconds,
    )

    app = FastAPI(
        title="Invoice Import API",
        version="1.0.0",
        description="Issues upload links, ingests uploaded invoice files and pushes their status over WebSocket.",
    )
    app.state.services = services
    app.state.registry = registry
    app.state.worker = worker

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.on_event("startup")
    def on_startup() -> None:
        logger.info("Application startup: starting ingestion worker")
        worker.start()

    @app.on_event("shutdown")
    def on_shutdown() -> None:
        logger.info("Application shutdown: stopping ingestion worker")
        worker.stop()

    async def dispatch(websocket: WebSocket, connection_id: str, raw: str) -> None:
        try:
            action = ClientAction.model_validate_json(raw)
        except ValidationError as exc:
            logger.info("Rejected frame from connection_id=%s: %s errors", connection_id, exc.error_count())
            await websocket.send_text(ErrorMessage(error="Invalid action").model_dump_json())
            return

        if action.action == "getImportUrl":
            try:
                await run_in_threadpool(issue_upload_link, services, connection_id)
            except Exception:
                logger.exception("Issuing upload link failed for connection_id=%s", connection_id)
                await websocket.send_text(ErrorMessage(error="Could not issue upload link").model_dump_json())
            return

        if not action.transaction_id:
            await websocket.send_text(ErrorMessage(error="transactionId is required").model_dump_json())
            return
        if action.action == "cancelImport":
            await run_in_threadpool(cancel_import, services, action.transaction_id, connection_id)
            return
        try:
            await run_in_threadpool(report_status, services, action.transaction_id, connection_id)
        except Exception:
            logger.exception(
                "Status lookup failed for token=%s connection_id=%s", action.transaction_id, connection_id
            )
            await websocket.send_text(ErrorMessage(error="Could not read transaction status").model_dump_json())

    @app.websocket("/ws")
    async def invoice_socket(websocket: WebSocket) -> None:
        await websocket.accept()
        connection_id = uuid.uuid4().hex
        registry.register(connection_id, websocket, asyncio.get_running_loop())
        logger.info("Connection opened connection_id=%s", connection_id)
        try:
            while websocket.application_state == WebSocketState.CONNECTED:
                raw = await websocket.receive_text()
                await dispatch(websocket, connection_id, raw)
        except WebSocketDisconnect:
            pass
        finally:
            registry.discard(connection_id)
            logger.info("Connection closed connection_id=%s", connection_id)

    @app.put("/uploads/{bucket}/{key}", tags=["Uploads"])
    async def upload_object(
        bucket: str,
        key: str,
        request: Request,
        expires: int = Query(...),
        signature: str = Query(...),
    ) -> dict:
        if bucket != services.objects.bucket:
            raise HTTPException(status_code=404, detail="Bucket not found")
        if not services.objects.verify_upload(key, expires, signature):
            logger.info("Rejected upload for key=%s: bad or expired signature", key)
            raise HTTPException(status_code=403, detail="Invalid or expired upload URL")
        body = await request.body()
        if len(body) > MAX_UPLOAD_BYTES:
            raise HTTPException(status_code=413, detail="Upload too large")
        await run_in_threadpool(services.objects.put, key, body)
        # object storage notifies ingestion only after the write is durable
        worker.enqueue(ObjectCreatedEvent(bucket=bucket, key=key))
        return {"bucket": bucket, "key": key}

    @app.get("/transactions/{token}", tags=["Transactions"])
    def get_transaction(token: str) -> dict:
        try:
            record = services.transactions.get(token)
        except TransactionNotFound:
            raise HTTPException(status_code=404, detail="Transaction not found")
        return StatusMessage(transaction_id=record.token, status=record.status).model_dump(
            by_alias=True, mode="json"
        )

    @app.get(
        "/invoices/{customer_name}/{invoice_number}",
        response_model=InvoiceResponse,
        tags=["Invoices"],
    )
    def get_invoice(customer_name: str, invoice_number: str) -> InvoiceResponse:
        try:
            invoice = services.invoices.get(customer_name, invoice_number)
        except InvoiceNotFound:
            raise HTTPException(status_code=404, detail="Invoice not found")
        return InvoiceResponse(
            customerName=invoice.customer_name,
            invoiceNumber=invoice.invoice_number,
            totalValue=invoice.total_value,
            productId=invoice.product_id,
            quantity=invoice.quantity,
            transactionId=invoice.source_transaction_token,
            createdAt=invoice.created_at,
        )

    @app.get("/", tags=["Meta"])
    def root() -> dict:
        return {
            "service": "Invoice Import API",
            "endpoints": [
                "/ws [WebSocket: getImportUrl, cancelImport, getImportStatus]",
                "/uploads/{bucket}/{key} [PUT]",
                "/transactions/{token} [GET]",
                "/invoices/{customer_name}/{invoice_number} [GET]",
            ],
            "bucket": services.objects.bucket,
            "processing": "asynchronous with ingestion worker queue",
        }

    return app


def __getattr__(name: str) -> FastAPI:
    # `uvicorn invoice_import.main:app` builds the app on first access, not at import
    if name != "app":
        raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
    app = create_app()
    globals()["app"] = app
    return app
