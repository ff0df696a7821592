from datetime import datetime
from sqlalchemy import Column, String, Float, Integer, DateTime, Index

from .database import Base


class InvoiceTransaction(Base):
    __tablename__ = "invoice_transactions"

    # The token doubles as the object key of the uploaded file
    token = Column(String(64), primary_key=True, index=True)

    # GENERATED | RECEIVED | PROCESSED | CANCELLED | NON_VALID_INVOICE_NUMBER
    status = Column(String(32), nullable=False, index=True)
    connection_id = Column(String(128), nullable=False)
    request_id = Column(String(64), nullable=True)

    expires_in_seconds = Column(Integer, nullable=False)
    # Absolute expiry (epoch seconds); past this the record is invisible to lookups
    ttl = Column(Integer, nullable=False, index=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    __table_args__ = (Index("ix_status_ttl", "status", "ttl"),)


class Invoice(Base):
    __tablename__ = "invoices"

    customer_name = Column(String(255), primary_key=True)
    invoice_number = Column(String(128), primary_key=True)

    total_value = Column(Float, nullable=False)
    product_id = Column(String(128), nullable=False)
    quantity = Column(Integer, nullable=False)

    # Lookup only; the transaction may already have expired
    source_transaction_token = Column(String(64), nullable=False, index=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
