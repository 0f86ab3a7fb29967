# Overview: Service-layer operations for handing invoices to an external renderer/mailer.

"""
Rendering and mail transport live outside the core. The core builds a fully
resolved document (no unresolved references), passes it to injected
callables, and only cares about success or failure.
"""

from __future__ import annotations

from typing import Protocol

from flask import current_app

from ..extensions import db
from ..models import Branch, Customer, Invoice, InvoiceAudit, Organization
from ..models.invoices import AUDIT_EMAIL_SENT
from ..time_utils import utcnow
from ..validation import ActorContext, InvalidTransitionError, NotFoundError, ValidationError
from . import event_service
from .concurrency import run_atomic


class InvoiceRenderer(Protocol):
    def __call__(self, document: dict) -> bytes: ...


class InvoiceMailer(Protocol):
    def __call__(self, recipient: str, subject: str, body: str, attachment: bytes, filename: str) -> bool: ...


class DeliveryError(Exception):
    """Raised by renderer/mailer adapters for a failed delivery."""


def build_invoice_document(invoice: Invoice) -> dict:
    """Invoice with items, customer, branch and organization resolved inline."""
    customer = db.session.get(Customer, invoice.customer_id)
    branch = db.session.get(Branch, invoice.branch_id)
    organization = db.session.get(Organization, invoice.org_id)

    document = invoice.to_dict(include_items=True)
    document["customer"] = customer.to_dict() if customer else None
    document["branch"] = branch.to_dict() if branch else None
    document["organization"] = organization.to_dict() if organization else None
    document["payments"] = [payment.to_dict() for payment in invoice.payments]
    return document


def deliver_invoice(
    ctx: ActorContext,
    invoice_id: int,
    *,
    renderer: InvoiceRenderer,
    mailer: InvoiceMailer,
    recipient: str | None = None,
) -> bool:
    """
    Render and send one invoice.

    Returns True on success and writes an EMAIL_SENT audit entry; returns
    False when the renderer or mailer reports failure. Drafts and cancelled
    invoices are not sent.
    """
    invoice = db.session.query(Invoice).filter_by(id=invoice_id, org_id=ctx.org_id).first()
    if not invoice:
        raise NotFoundError(f"Invoice {invoice_id} not found")
    if invoice.is_draft or invoice.is_cancelled:
        raise InvalidTransitionError(f"Invoice {invoice.invoice_number} is {invoice.status} and cannot be sent")

    document = build_invoice_document(invoice)
    recipient = recipient or (document["customer"] or {}).get("email")
    if not recipient:
        raise ValidationError("recipient is required (customer has no email)")

    try:
        attachment = renderer(document)
        sent = mailer(
            recipient,
            f"Invoice {invoice.invoice_number}",
            f"Please find attached invoice {invoice.invoice_number}.",
            attachment,
            f"{invoice.invoice_number}.pdf",
        )
    except DeliveryError:
        current_app.logger.exception("Delivery of invoice %s failed", invoice.invoice_number)
        return False

    if not sent:
        current_app.logger.warning("Mailer rejected invoice %s for %s", invoice.invoice_number, recipient)
        return False

    org_id, number = invoice.org_id, invoice.invoice_number

    def _record_sent():
        db.session.add(InvoiceAudit(
            org_id=org_id,
            invoice_id=invoice_id,
            action=AUDIT_EMAIL_SENT,
            actor_user_id=ctx.user_id,
            details=f"Invoice sent to {recipient}",
            created_at=utcnow(),
        ))
        event_service.record_event(
            org_id=org_id,
            event_type=event_service.INVOICE_EMAILED,
            aggregate_type="invoice",
            aggregate_id=invoice_id,
            payload={"invoice_id": invoice_id, "invoice_number": number, "recipient": recipient},
        )

    run_atomic(_record_sent, label="deliver_invoice")
    event_service.dispatch_after_commit()
    current_app.logger.info("Invoice %s sent to %s", number, recipient)
    return True
