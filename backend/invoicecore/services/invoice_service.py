"""
Invoice Lifecycle Service - create / update / cancel / pay / convert

WHY: An invoice touches four stores at once: the invoice document, branch
stock, customer balances and the double-entry ledger. Every transition
here runs as ONE atomic unit of work (run_atomic) so they move together
or not at all, and the whole unit is retried on transient conflicts.

States: draft -> issued -> paid, cancelled reachable from any non-terminal
state. issued -> paid happens automatically once paid >= grand total.

Collaborators are injected through InvoiceLifecycle's constructor; the
lifecycle never patches stock, balances or postings directly.
"""

from __future__ import annotations

import re
import secrets
from dataclasses import dataclass

from flask import current_app
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import Invoice, InvoiceItem, InvoiceAudit, Payment, Product
from ..models.invoices import (
    INVOICE_DRAFT, INVOICE_ISSUED, INVOICE_PAID, INVOICE_CANCELLED,
    PAYMENT_UNPAID, PAYMENT_PARTIAL, PAYMENT_PAID,
    AUDIT_CREATE, AUDIT_UPDATE_DRAFT, AUDIT_UPDATE_FINANCIAL, AUDIT_UPDATE_INFO,
    AUDIT_PAYMENT, AUDIT_CONVERT_DRAFT, AUDIT_CANCEL,
)
from ..time_utils import utcnow, to_utc_z
from ..validation import (
    ActorContext,
    CancelInvoiceCommand,
    ConflictError,
    CreateInvoiceCommand,
    InvalidTransitionError,
    InvoiceItemInput,
    NotFoundError,
    PaymentCommand,
    UpdateInvoiceCommand,
    ValidationError,
)
from . import customer_service, event_service, journal_service, sales_record_service, stock_service
from .concurrency import RetryableConflictError, lock_for_update, run_atomic


INVOICE_PREFIX = "INV-"
DRAFT_PREFIX = "DRAFT-"
INVOICE_NUMBER_RE = re.compile(r"^INV-(\d+)$")


# =============================================================================
# Totals (pure)
# =============================================================================

@dataclass(frozen=True)
class InvoiceTotals:
    subtotal_cents: int
    total_tax_cents: int
    total_discount_cents: int
    grand_total_cents: int
    paid_amount_cents: int
    balance_amount_cents: int
    payment_status: str


def line_tax_cents(net_cents: int, tax_rate_bps: int) -> int:
    """Tax on a line's net amount, rounded half-up to the cent."""
    return (net_cents * tax_rate_bps + 5_000) // 10_000


def derive_payment_status(grand_total_cents: int, paid_amount_cents: int) -> str:
    if grand_total_cents - paid_amount_cents <= 0:
        return PAYMENT_PAID
    if paid_amount_cents > 0:
        return PAYMENT_PARTIAL
    return PAYMENT_UNPAID


def compute_totals(
    items: list[InvoiceItem],
    *,
    shipping_cents: int = 0,
    discount_cents: int = 0,
    round_off_cents: int = 0,
    paid_amount_cents: int = 0,
) -> InvoiceTotals:
    """
    Recompute line and invoice totals. Writes tax_cents / line_total_cents onto each item.

    grand = subtotal + shipping + tax - (item discounts + invoice discount) + round_off
    """
    subtotal = 0
    total_tax = 0
    item_discounts = 0
    for item in items:
        gross = item.unit_price_cents * item.quantity
        discount = item.discount_cents or 0
        if discount > gross:
            raise ValidationError(f"Discount on {item.name} exceeds its line amount")
        net = gross - discount
        tax = line_tax_cents(net, item.tax_rate_bps or 0)
        item.tax_cents = tax
        item.line_total_cents = net + tax
        subtotal += gross
        total_tax += tax
        item_discounts += discount

    total_discount = item_discounts + discount_cents
    grand = subtotal + shipping_cents + total_tax - total_discount + round_off_cents
    if grand < 0:
        raise ValidationError("Discount exceeds invoice total")
    if paid_amount_cents > grand:
        raise ValidationError(
            f"Paid amount {paid_amount_cents} exceeds grand total {grand}"
        )

    return InvoiceTotals(
        subtotal_cents=subtotal,
        total_tax_cents=total_tax,
        total_discount_cents=total_discount,
        grand_total_cents=grand,
        paid_amount_cents=paid_amount_cents,
        balance_amount_cents=grand - paid_amount_cents,
        payment_status=derive_payment_status(grand, paid_amount_cents),
    )


def _apply_totals(invoice: Invoice, totals: InvoiceTotals) -> None:
    invoice.subtotal_cents = totals.subtotal_cents
    invoice.total_tax_cents = totals.total_tax_cents
    invoice.total_discount_cents = totals.total_discount_cents
    invoice.grand_total_cents = totals.grand_total_cents
    invoice.paid_amount_cents = totals.paid_amount_cents
    invoice.balance_amount_cents = totals.balance_amount_cents
    invoice.payment_status = totals.payment_status


def _recompute(invoice: Invoice) -> InvoiceTotals:
    totals = compute_totals(
        invoice.items,
        shipping_cents=invoice.shipping_cents or 0,
        discount_cents=invoice.discount_cents or 0,
        round_off_cents=invoice.round_off_cents or 0,
        paid_amount_cents=invoice.paid_amount_cents or 0,
    )
    _apply_totals(invoice, totals)
    return totals


def _totals_snapshot(invoice: Invoice) -> dict:
    return {
        "subtotal_cents": invoice.subtotal_cents,
        "total_tax_cents": invoice.total_tax_cents,
        "total_discount_cents": invoice.total_discount_cents,
        "shipping_cents": invoice.shipping_cents,
        "round_off_cents": invoice.round_off_cents,
        "grand_total_cents": invoice.grand_total_cents,
        "paid_amount_cents": invoice.paid_amount_cents,
        "balance_amount_cents": invoice.balance_amount_cents,
        "items": [
            {"product_id": item.product_id, "quantity": item.quantity, "unit_price_cents": item.unit_price_cents}
            for item in invoice.items
        ],
    }


def _status_after_payment(invoice: Invoice) -> str:
    return INVOICE_PAID if invoice.balance_amount_cents <= 0 else INVOICE_ISSUED


# =============================================================================
# Numbering
# =============================================================================

def next_invoice_number(org_id: int) -> str:
    """
    Next sequential number after the highest INV-<digits> in the organization.

    Zero-padded to 6 digits, starting at INV-000001. Ordering by length
    then text puts the numerically highest first for digit suffixes;
    non-matching numbers (manual or imported) are skipped.
    """
    query = (
        db.session.query(Invoice.invoice_number)
        .filter(Invoice.org_id == org_id, Invoice.invoice_number.like(f"{INVOICE_PREFIX}%"))
        .order_by(func.length(Invoice.invoice_number).desc(), Invoice.invoice_number.desc())
    )
    highest = 0
    for (number,) in query.all():
        match = INVOICE_NUMBER_RE.match(number)
        if match:
            highest = int(match.group(1))
            break
    return f"{INVOICE_PREFIX}{highest + 1:06d}"


def draft_placeholder_number() -> str:
    return f"{DRAFT_PREFIX}{secrets.token_hex(5).upper()}"


def _flush_numbered(invoice: Invoice, *, auto_numbered: bool) -> None:
    """
    Flush an invoice whose number may collide with a concurrent writer.

    An auto-assigned number that loses the unique constraint is retried
    with a fresh number; a caller-supplied duplicate is a conflict.
    """
    try:
        with db.session.begin_nested():
            db.session.flush()
    except IntegrityError:
        if auto_numbered:
            raise RetryableConflictError(f"Invoice number {invoice.invoice_number} taken concurrently")
        raise ConflictError(f"Invoice number {invoice.invoice_number} already exists")


# =============================================================================
# Lifecycle
# =============================================================================

class InvoiceLifecycle:
    """
    Orchestrates every invoice transition inside one atomic unit of work.

    Dependencies are injected so tests (and alternative deployments) can
    swap a component: stock, journal, customers, sales_records and events
    are module-like objects exposing the service functions, atomic is the
    unit-of-work executor.
    """

    def __init__(
        self,
        *,
        stock=stock_service,
        journal=journal_service,
        customers=customer_service,
        sales_records=sales_record_service,
        events=event_service,
        atomic=run_atomic,
        max_attempts: int | None = None,
    ):
        self.stock = stock
        self.journal = journal
        self.customers = customers
        self.sales_records = sales_records
        self.events = events
        self.atomic = atomic
        self.max_attempts = max_attempts

    # ------------------------------------------------------------------ helpers

    def _run(self, op, label: str):
        result = self.atomic(op, attempts=self.max_attempts, label=label)
        self.events.dispatch_after_commit()
        return result

    def _get_invoice(self, org_id: int, invoice_id: int, *, lock: bool = True) -> Invoice:
        query = db.session.query(Invoice).filter_by(id=invoice_id, org_id=org_id)
        if lock:
            query = lock_for_update(query)
        invoice = query.populate_existing().first()
        if not invoice:
            raise NotFoundError(f"Invoice {invoice_id} not found")
        return invoice

    def _audit(self, invoice: Invoice, action: str, actor_user_id: int | None, details: str, meta: dict | None = None) -> InvoiceAudit:
        entry = InvoiceAudit(
            org_id=invoice.org_id,
            invoice_id=invoice.id,
            action=action,
            actor_user_id=actor_user_id,
            details=details,
            meta=meta,
            created_at=utcnow(),
        )
        db.session.add(entry)
        return entry

    def _event(self, invoice: Invoice, event_type: str, ctx: ActorContext, **extra) -> None:
        payload = {
            "invoice_id": invoice.id,
            "invoice_number": invoice.invoice_number,
            "status": invoice.status,
            "customer_id": invoice.customer_id,
            "branch_id": invoice.branch_id,
            "grand_total_cents": invoice.grand_total_cents,
            "balance_amount_cents": invoice.balance_amount_cents,
            "actor_user_id": ctx.user_id,
        }
        payload.update(extra)
        self.events.record_event(
            org_id=invoice.org_id,
            event_type=event_type,
            aggregate_type="invoice",
            aggregate_id=invoice.id,
            payload=payload,
        )

    def _build_items(
        self,
        org_id: int,
        inputs: tuple[InvoiceItemInput, ...],
        existing_costs: dict[int, int] | None = None,
    ) -> list[InvoiceItem]:
        """
        Resolve products and snapshot cost into each item.

        existing_costs carries the snapshots of products already on the
        invoice, so an edit never rewrites the cost of what was sold.
        """
        existing_costs = existing_costs or {}
        items = []
        for position, line in enumerate(inputs):
            product = db.session.query(Product).filter_by(id=line.product_id, org_id=org_id).first()
            if not product:
                raise NotFoundError(f"Product {line.product_id} not found")
            if not product.is_active:
                raise ValidationError(f"Product {product.name} is inactive")

            unit_price = line.unit_price_cents if line.unit_price_cents is not None else product.price_cents
            tax_rate = line.tax_rate_bps if line.tax_rate_bps is not None else product.tax_rate_bps
            cost = existing_costs.get(product.id, product.cost_price_cents or 0)

            items.append(InvoiceItem(
                product_id=product.id,
                position=position,
                name=product.name,
                sku=product.sku,
                quantity=line.quantity,
                unit_price_cents=unit_price or 0,
                discount_cents=line.discount_cents,
                tax_rate_bps=tax_rate or 0,
                cost_price_cents=cost,
            ))
        return items

    def _take_stock(self, items, branch_id: int, org_id: int) -> None:
        # Fail fast with a descriptive error, then the guarded decrement
        self.stock.validate_stock_availability(items, branch_id, org_id).raise_for_errors()
        self.stock.reduce_stock(items, branch_id, org_id)

    def _record_payment(
        self,
        ctx: ActorContext,
        invoice: Invoice,
        *,
        amount_cents: int,
        method: str,
        reference_number: str | None = None,
        transaction_id: str | None = None,
        notes: str | None = None,
        paid_at=None,
    ) -> Payment:
        payment = Payment(
            org_id=invoice.org_id,
            branch_id=invoice.branch_id,
            invoice_id=invoice.id,
            customer_id=invoice.customer_id,
            amount_cents=amount_cents,
            payment_method=method,
            reference_number=reference_number,
            transaction_id=transaction_id,
            notes=notes,
            paid_at=paid_at or utcnow(),
            created_by_user_id=ctx.user_id,
        )
        db.session.add(payment)
        db.session.flush()
        self.journal.post_payment_journal(invoice, payment, ctx.user_id)
        invoice.payment_method = method
        return payment

    def _issue(self, ctx: ActorContext, invoice: Invoice) -> None:
        """Financial side of an invoice becoming active: balances, journal, projection."""
        self.customers.apply_invoice_contribution(invoice, 1)
        self.journal.post_invoice_journal(invoice, invoice.items, ctx.user_id)

    # ------------------------------------------------------------------ create

    def create_invoice(self, ctx: ActorContext, command: CreateInvoiceCommand) -> Invoice:
        """
        Create an invoice (issued by default, or a draft).

        Non-draft: stock is validated and reduced, customer totals
        accumulated, revenue journal posted, sales record written, and a
        paid-at-creation amount becomes a Payment with its own postings.
        Draft: numbered with a DRAFT- placeholder; no stock, balance or
        ledger effect until convert_draft.
        """
        def _op():
            self.customers.get_customer(ctx.org_id, command.customer_id)

            if command.invoice_number:
                exists = (
                    db.session.query(Invoice.id)
                    .filter_by(org_id=ctx.org_id, invoice_number=command.invoice_number)
                    .first()
                )
                if exists:
                    raise ConflictError(f"Invoice number {command.invoice_number} already exists")

            items = self._build_items(ctx.org_id, command.items)
            totals = compute_totals(
                items,
                shipping_cents=command.shipping_cents,
                discount_cents=command.discount_cents,
                round_off_cents=command.round_off_cents,
                paid_amount_cents=0 if command.is_draft else command.paid_amount_cents,
            )

            if command.is_draft:
                status = INVOICE_DRAFT
                number = command.invoice_number or draft_placeholder_number()
            else:
                self._take_stock(items, ctx.branch_id, ctx.org_id)
                status = INVOICE_PAID if totals.balance_amount_cents <= 0 else INVOICE_ISSUED
                number = command.invoice_number or next_invoice_number(ctx.org_id)

            invoice = Invoice(
                org_id=ctx.org_id,
                branch_id=ctx.branch_id,
                customer_id=command.customer_id,
                invoice_number=number,
                status=status,
                invoice_date=command.invoice_date or utcnow(),
                due_date=command.due_date,
                shipping_cents=command.shipping_cents,
                discount_cents=command.discount_cents,
                round_off_cents=command.round_off_cents,
                payment_method=command.payment_method,
                notes=command.notes,
                created_by_user_id=ctx.user_id,
                updated_by_user_id=ctx.user_id,
                items=items,
            )
            _apply_totals(invoice, totals)
            db.session.add(invoice)
            _flush_numbered(invoice, auto_numbered=not command.invoice_number)

            if not command.is_draft:
                self._issue(ctx, invoice)
                if command.paid_amount_cents > 0:
                    self._record_payment(
                        ctx,
                        invoice,
                        amount_cents=command.paid_amount_cents,
                        method=command.payment_method or "cash",
                        reference_number=command.payment_reference,
                    )
                self.sales_records.sync_best_effort(invoice)

            self._audit(
                invoice,
                AUDIT_CREATE,
                ctx.user_id,
                f"Invoice {invoice.invoice_number} created ({invoice.status})",
                {"grand_total_cents": invoice.grand_total_cents, "paid_amount_cents": invoice.paid_amount_cents},
            )
            self._event(invoice, event_service.INVOICE_CREATED, ctx)
            db.session.flush()
            return invoice

        invoice = self._run(_op, "create_invoice")
        current_app.logger.info("Invoice %s created (%s)", invoice.invoice_number, invoice.status)
        return invoice

    # ------------------------------------------------------------------ update

    def _patch_fields(self, ctx: ActorContext, invoice: Invoice, changes: dict) -> None:
        for key in ("notes", "due_date", "invoice_date", "payment_method", "shipping_cents", "discount_cents", "round_off_cents"):
            if key in changes:
                setattr(invoice, key, changes[key])
        if "customer_id" in changes and changes["customer_id"] != invoice.customer_id:
            self.customers.get_customer(ctx.org_id, changes["customer_id"])
            invoice.customer_id = changes["customer_id"]
        invoice.updated_by_user_id = ctx.user_id

    def _replace_items(self, invoice: Invoice, inputs: tuple[InvoiceItemInput, ...]) -> None:
        existing_costs = {item.product_id: item.cost_price_cents for item in invoice.items}
        invoice.items = self._build_items(invoice.org_id, inputs, existing_costs)

    def _update_draft(self, ctx: ActorContext, invoice: Invoice, changes: dict) -> None:
        before = _totals_snapshot(invoice)
        self._patch_fields(ctx, invoice, changes)
        if "items" in changes:
            self._replace_items(invoice, changes["items"])
        _recompute(invoice)
        db.session.flush()
        self._audit(
            invoice,
            AUDIT_UPDATE_DRAFT,
            ctx.user_id,
            f"Draft updated: {', '.join(sorted(changes))}",
            {"old": before, "new": _totals_snapshot(invoice)},
        )

    def _update_financial(self, ctx: ActorContext, invoice: Invoice, changes: dict) -> None:
        """
        Compensate the old financial effect, then apply the new one.

        restore old stock -> validate/reduce new stock -> drop old invoice
        postings -> remove old customer contribution -> recompute -> repost
        -> re-apply customer contribution -> refresh projection.
        """
        before = _totals_snapshot(invoice)
        old_items = [{"product_id": item.product_id, "quantity": item.quantity} for item in invoice.items]

        self.stock.restore_stock(old_items, invoice.branch_id, invoice.org_id)
        new_inputs = changes.get("items")
        if new_inputs is not None:
            self._take_stock(new_inputs, invoice.branch_id, invoice.org_id)
        else:
            self._take_stock(old_items, invoice.branch_id, invoice.org_id)

        self.journal.delete_invoice_journal(invoice)
        self.customers.apply_invoice_contribution(invoice, -1)

        self._patch_fields(ctx, invoice, changes)
        if new_inputs is not None:
            self._replace_items(invoice, new_inputs)
        # Paid is checked here rather than inside compute_totals
        preview = compute_totals(
            invoice.items,
            shipping_cents=invoice.shipping_cents or 0,
            discount_cents=invoice.discount_cents or 0,
            round_off_cents=invoice.round_off_cents or 0,
        )
        if preview.grand_total_cents < (invoice.paid_amount_cents or 0):
            raise ValidationError(
                f"New grand total {preview.grand_total_cents} is below the amount already paid "
                f"({invoice.paid_amount_cents})"
            )
        _recompute(invoice)
        invoice.status = _status_after_payment(invoice)
        db.session.flush()

        self.journal.post_invoice_journal(invoice, invoice.items, ctx.user_id)
        self.customers.apply_invoice_contribution(invoice, 1)
        self.sales_records.sync_best_effort(invoice)

        self._audit(
            invoice,
            AUDIT_UPDATE_FINANCIAL,
            ctx.user_id,
            f"Financial update: grand total {before['grand_total_cents']} -> {invoice.grand_total_cents}",
            {"old": before, "new": _totals_snapshot(invoice)},
        )

    def update_invoice(self, ctx: ActorContext, invoice_id: int, command: UpdateInvoiceCommand) -> Invoice:
        """
        Patch an invoice.

        - cancelled: rejected
        - draft staying draft: field patch, UPDATE_DRAFT audit, no stock/ledger
        - draft moving to issued: patch, then convert_draft semantics
        - issued/paid touching items/shipping/discount/round-off: full
          compensate-and-reapply (UPDATE_FINANCIAL)
        - otherwise: informational patch (UPDATE_INFO)
        """
        changes = dict(command.changes)
        new_status = changes.pop("status", None)

        def _op():
            invoice = self._get_invoice(ctx.org_id, invoice_id)
            if invoice.is_cancelled:
                raise InvalidTransitionError(f"Invoice {invoice.invoice_number} is cancelled and cannot be updated")

            if invoice.is_draft:
                if not changes and new_status != INVOICE_ISSUED:
                    raise ValidationError("No updatable fields provided")
                if changes:
                    self._update_draft(ctx, invoice, changes)
                if new_status == INVOICE_ISSUED:
                    self._convert(ctx, invoice)
                    return invoice, event_service.INVOICE_CONVERTED
                return invoice, event_service.INVOICE_UPDATED

            if new_status == INVOICE_DRAFT:
                raise InvalidTransitionError(f"Invoice {invoice.invoice_number} cannot return to draft")
            if "customer_id" in changes and changes["customer_id"] != invoice.customer_id:
                raise ValidationError("customer_id can only be changed on a draft invoice")
            if not changes:
                raise ValidationError("No updatable fields provided")

            if command.touches_financial():
                self._update_financial(ctx, invoice, changes)
            else:
                self._patch_fields(ctx, invoice, changes)
                db.session.flush()
                self._audit(
                    invoice,
                    AUDIT_UPDATE_INFO,
                    ctx.user_id,
                    f"Updated: {', '.join(sorted(changes))}",
                )
            return invoice, event_service.INVOICE_UPDATED

        def _op_with_event():
            invoice, event_type = _op()
            self._event(invoice, event_type, ctx, fields=sorted(command.changes))
            db.session.flush()
            return invoice

        invoice = self._run(_op_with_event, "update_invoice")
        current_app.logger.info("Invoice %s updated", invoice.invoice_number)
        return invoice

    # ------------------------------------------------------------------ cancel

    def cancel_invoice(self, ctx: ActorContext, invoice_id: int, command: CancelInvoiceCommand) -> Invoice:
        """
        Cancel an invoice (terminal).

        Non-drafts: optional restock, customer contribution of the full
        grand total reversed, credit-note journal mirroring the original
        postings. Payments already taken are not refunded here.
        """
        def _op():
            invoice = self._get_invoice(ctx.org_id, invoice_id)
            if invoice.is_cancelled:
                raise InvalidTransitionError(f"Invoice {invoice.invoice_number} is already cancelled")

            was_draft = invoice.is_draft
            if not was_draft:
                if command.restock:
                    self.stock.restore_stock(invoice.items, invoice.branch_id, invoice.org_id)
                self.customers.apply_balance_delta(
                    invoice.org_id,
                    invoice.customer_id,
                    purchases_delta=-invoice.grand_total_cents,
                    outstanding_delta=-invoice.grand_total_cents,
                )
                self.journal.reverse_invoice_journal(invoice, ctx.user_id)

            stamp = utcnow()
            note = f"Cancelled: {command.reason} ({to_utc_z(stamp)})"
            invoice.notes = f"{invoice.notes}\n{note}" if invoice.notes else note
            invoice.status = INVOICE_CANCELLED
            invoice.updated_by_user_id = ctx.user_id
            db.session.flush()

            if not was_draft:
                self.sales_records.sync_best_effort(invoice, cancel=True)

            restocked = command.restock and not was_draft
            self._audit(
                invoice,
                AUDIT_CANCEL,
                ctx.user_id,
                f"Cancelled. Restock: {'yes' if restocked else 'no'}. Reason: {command.reason}",
                {"grand_total_cents": invoice.grand_total_cents, "was_draft": was_draft},
            )
            self._event(invoice, event_service.INVOICE_CANCELLED, ctx, reason=command.reason, restocked=restocked)
            db.session.flush()
            return invoice

        invoice = self._run(_op, "cancel_invoice")
        current_app.logger.info("Invoice %s cancelled", invoice.invoice_number)
        return invoice

    # ------------------------------------------------------------------ payment

    def add_payment(self, ctx: ActorContext, invoice_id: int, command: PaymentCommand) -> Invoice:
        """Record a payment; the invoice becomes paid once the balance reaches zero."""
        def _op():
            invoice = self._get_invoice(ctx.org_id, invoice_id)
            if invoice.is_cancelled:
                raise InvalidTransitionError(f"Cannot add payment to cancelled invoice {invoice.invoice_number}")
            if invoice.is_draft:
                raise InvalidTransitionError(f"Convert draft {invoice.invoice_number} before recording payments")

            amount = command.amount_cents
            if amount <= 0:
                raise ValidationError("Payment amount must be positive")
            if invoice.paid_amount_cents + amount > invoice.grand_total_cents:
                raise ValidationError(
                    f"Payment of {amount} exceeds balance; maximum allowed is {invoice.balance_amount_cents}"
                )

            invoice.paid_amount_cents += amount
            invoice.balance_amount_cents = invoice.grand_total_cents - invoice.paid_amount_cents
            invoice.payment_status = derive_payment_status(invoice.grand_total_cents, invoice.paid_amount_cents)
            invoice.status = _status_after_payment(invoice)
            invoice.updated_by_user_id = ctx.user_id

            payment = self._record_payment(
                ctx,
                invoice,
                amount_cents=amount,
                method=command.payment_method,
                reference_number=command.reference_number,
                transaction_id=command.transaction_id,
                notes=command.notes,
                paid_at=command.paid_at,
            )
            self.customers.apply_balance_delta(invoice.org_id, invoice.customer_id, outstanding_delta=-amount)
            db.session.flush()
            self.sales_records.sync_best_effort(invoice)

            self._audit(
                invoice,
                AUDIT_PAYMENT,
                ctx.user_id,
                f"Payment of {amount} via {command.payment_method}",
                {"payment_id": payment.id, "amount_cents": amount, "balance_amount_cents": invoice.balance_amount_cents},
            )
            self._event(
                invoice,
                event_service.INVOICE_PAYMENT_RECEIVED,
                ctx,
                payment_id=payment.id,
                amount_cents=amount,
            )
            db.session.flush()
            return invoice

        invoice = self._run(_op, "add_payment")
        current_app.logger.info("Payment recorded on invoice %s", invoice.invoice_number)
        return invoice

    # ------------------------------------------------------------------ convert

    def _convert(self, ctx: ActorContext, invoice: Invoice) -> None:
        """
        Draft -> issued. Keeps the draft's stored prices and cost snapshots.
        """
        self._take_stock(invoice.items, invoice.branch_id, invoice.org_id)

        auto_numbered = invoice.invoice_number.startswith("DRAFT")
        old_number = invoice.invoice_number
        if auto_numbered:
            invoice.invoice_number = next_invoice_number(invoice.org_id)

        invoice.status = INVOICE_ISSUED
        invoice.invoice_date = utcnow()
        invoice.updated_by_user_id = ctx.user_id
        _recompute(invoice)
        invoice.status = _status_after_payment(invoice)
        _flush_numbered(invoice, auto_numbered=auto_numbered)

        self._issue(ctx, invoice)
        self.sales_records.sync_best_effort(invoice)
        self._audit(
            invoice,
            AUDIT_CONVERT_DRAFT,
            ctx.user_id,
            f"Draft {old_number} converted to {invoice.invoice_number}",
            {"old_number": old_number, "grand_total_cents": invoice.grand_total_cents},
        )

    def convert_draft(self, ctx: ActorContext, invoice_id: int) -> Invoice:
        """Promote a draft to an issued invoice with a final sequential number."""
        def _op():
            invoice = self._get_invoice(ctx.org_id, invoice_id)
            if not invoice.is_draft:
                raise InvalidTransitionError(
                    f"Only draft invoices can be converted (invoice {invoice.invoice_number} is {invoice.status})"
                )
            self._convert(ctx, invoice)
            self._event(invoice, event_service.INVOICE_CONVERTED, ctx)
            db.session.flush()
            return invoice

        invoice = self._run(_op, "convert_draft")
        current_app.logger.info("Draft converted to invoice %s", invoice.invoice_number)
        return invoice

    # ------------------------------------------------------------------ reads

    def get_invoice(self, org_id: int, invoice_id: int) -> Invoice:
        return self._get_invoice(org_id, invoice_id, lock=False)

    def get_invoice_history(self, org_id: int, invoice_id: int) -> list[dict]:
        """Audit entries for one invoice, oldest first."""
        self._get_invoice(org_id, invoice_id, lock=False)
        rows = (
            db.session.query(InvoiceAudit)
            .filter_by(org_id=org_id, invoice_id=invoice_id)
            .order_by(InvoiceAudit.created_at.asc(), InvoiceAudit.id.asc())
            .all()
        )
        return [row.to_dict() for row in rows]

    def list_invoice_payments(self, org_id: int, invoice_id: int) -> list[Payment]:
        self._get_invoice(org_id, invoice_id, lock=False)
        return (
            db.session.query(Payment)
            .filter_by(org_id=org_id, invoice_id=invoice_id)
            .order_by(Payment.id.asc())
            .all()
        )

    def check_stock(self, ctx: ActorContext, items: list[dict]) -> dict:
        """Pre-flight availability for a prospective invoice at the acting branch."""
        return self.stock.check_stock(items, ctx.branch_id, ctx.org_id)
