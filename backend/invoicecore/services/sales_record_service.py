# Overview: Service-layer operations for the sales reporting projection; encapsulates business logic and database work.

"""
Sales records are a denormalized read model of invoices for analytics.

They are written in the same transaction as the invoice, but inside a
SAVEPOINT: the sale is already financially committed through the invoice,
stock and ledger, so a failure here is logged and skipped instead of
failing the transition. sync_best_effort is the ONLY place in the core that
swallows a database error.
"""

from __future__ import annotations

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from ..extensions import db
from ..models import Invoice, SalesRecord, SalesRecordItem
from ..time_utils import utcnow
from .journal_service import cost_of_goods


RECORD_ACTIVE = "active"
RECORD_CANCELLED = "cancelled"


def get_sales_record(invoice_id: int) -> SalesRecord | None:
    return db.session.query(SalesRecord).filter_by(invoice_id=invoice_id).first()


def sync_from_invoice(invoice: Invoice) -> SalesRecord:
    """
    Create or refresh the projection for one invoice (idempotent upsert).

    Item rows are rebuilt from the invoice items, copying their cost snapshot.
    """
    record = get_sales_record(invoice.id)
    if record is None:
        record = SalesRecord(org_id=invoice.org_id, invoice_id=invoice.id)
        db.session.add(record)

    record.branch_id = invoice.branch_id
    record.customer_id = invoice.customer_id
    record.invoice_number = invoice.invoice_number
    record.status = RECORD_CANCELLED if invoice.is_cancelled else RECORD_ACTIVE
    record.subtotal_cents = invoice.subtotal_cents
    record.total_tax_cents = invoice.total_tax_cents
    record.total_discount_cents = invoice.total_discount_cents
    record.grand_total_cents = invoice.grand_total_cents
    record.total_cost_cents = cost_of_goods(invoice.items)
    record.paid_amount_cents = invoice.paid_amount_cents
    record.due_amount_cents = invoice.balance_amount_cents
    record.payment_status = invoice.payment_status
    record.payment_method = invoice.payment_method
    record.sold_at = invoice.invoice_date

    record.items = [
        SalesRecordItem(
            product_id=item.product_id,
            name=item.name,
            quantity=item.quantity,
            unit_price_cents=item.unit_price_cents,
            cost_price_cents=item.cost_price_cents,
            discount_cents=item.discount_cents,
            tax_cents=item.tax_cents,
            line_total_cents=item.line_total_cents,
        )
        for item in invoice.items
    ]
    db.session.flush()
    return record


def cancel_record(invoice: Invoice) -> SalesRecord | None:
    record = get_sales_record(invoice.id)
    if record is None:
        return None
    record.status = RECORD_CANCELLED
    record.cancelled_at = utcnow()
    record.paid_amount_cents = invoice.paid_amount_cents
    record.due_amount_cents = invoice.balance_amount_cents
    db.session.flush()
    return record


def sync_best_effort(invoice: Invoice, *, cancel: bool = False) -> SalesRecord | None:
    """
    Run the projection write in a SAVEPOINT and never fail the caller on a DB error.

    Only SQLAlchemyError is caught; anything else is a bug and propagates.
    """
    try:
        with db.session.begin_nested():
            if cancel:
                return cancel_record(invoice)
            return sync_from_invoice(invoice)
    except SQLAlchemyError:
        current_app.logger.exception(
            "Sales record sync failed for invoice %s; continuing", invoice.invoice_number
        )
        return None
