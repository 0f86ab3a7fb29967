# Overview: Service-layer operations for customer balance accumulators; encapsulates business logic and database work.

from __future__ import annotations

from sqlalchemy import func, update

from ..extensions import db
from ..models import Customer, Invoice
from ..models.invoices import INVOICE_CANCELLED, INVOICE_ISSUED, INVOICE_PAID
from ..time_utils import utcnow
from ..validation import NotFoundError


def get_customer(org_id: int, customer_id: int) -> Customer:
    customer = db.session.query(Customer).filter_by(id=customer_id, org_id=org_id).first()
    if not customer:
        raise NotFoundError(f"Customer {customer_id} not found")
    return customer


def apply_balance_delta(
    org_id: int,
    customer_id: int,
    *,
    purchases_delta: int = 0,
    outstanding_delta: int = 0,
    touch_last_purchase: bool = False,
) -> None:
    """
    Additive update of the running totals.

    A single UPDATE ... SET x = x + :delta, so concurrent transitions for
    the same customer compose instead of overwriting each other. Every
    caller applies the exact negation when undoing its contribution.
    """
    if not purchases_delta and not outstanding_delta and not touch_last_purchase:
        return

    table = Customer.__table__
    values = {
        "total_purchases_cents": table.c.total_purchases_cents + purchases_delta,
        "outstanding_balance_cents": table.c.outstanding_balance_cents + outstanding_delta,
    }
    if touch_last_purchase:
        values["last_purchase_at"] = utcnow()

    result = db.session.execute(
        update(table)
        .where(table.c.id == customer_id, table.c.org_id == org_id)
        .values(**values)
    )
    if result.rowcount == 0:
        raise NotFoundError(f"Customer {customer_id} not found")


def apply_invoice_contribution(invoice: Invoice, sign: int = 1) -> None:
    """
    Add (sign=1) or remove (sign=-1) an invoice's contribution:
    purchases += grand_total, outstanding += grand_total - paid_amount.
    """
    apply_balance_delta(
        invoice.org_id,
        invoice.customer_id,
        purchases_delta=sign * invoice.grand_total_cents,
        outstanding_delta=sign * (invoice.grand_total_cents - invoice.paid_amount_cents),
        touch_last_purchase=sign > 0,
    )


def get_balances(org_id: int, customer_id: int) -> dict:
    """Fresh read of the accumulators (bypasses any stale identity-map copy)."""
    row = (
        db.session.query(Customer.total_purchases_cents, Customer.outstanding_balance_cents)
        .filter_by(id=customer_id, org_id=org_id)
        .first()
    )
    if row is None:
        raise NotFoundError(f"Customer {customer_id} not found")
    return {"total_purchases_cents": int(row[0]), "outstanding_balance_cents": int(row[1])}


def expected_balances(org_id: int, customer_id: int) -> dict:
    """
    What the accumulators should hold given the invoice history.

    Drafts never contributed. Cancelled invoices were reversed for their
    full grand total, so payments already taken on them remain as a credit
    in the customer's favor (negative outstanding).
    """
    live = (
        db.session.query(
            func.coalesce(func.sum(Invoice.grand_total_cents), 0),
            func.coalesce(func.sum(Invoice.balance_amount_cents), 0),
        )
        .filter(
            Invoice.org_id == org_id,
            Invoice.customer_id == customer_id,
            Invoice.status.in_((INVOICE_ISSUED, INVOICE_PAID)),
        )
        .one()
    )
    cancelled_paid = (
        db.session.query(func.coalesce(func.sum(Invoice.paid_amount_cents), 0))
        .filter(
            Invoice.org_id == org_id,
            Invoice.customer_id == customer_id,
            Invoice.status == INVOICE_CANCELLED,
        )
        .scalar()
    )
    return {
        "total_purchases_cents": int(live[0]),
        "outstanding_balance_cents": int(live[1]) - int(cancelled_paid or 0),
    }


def reconcile_customer(org_id: int, customer_id: int, *, fix: bool = False) -> dict:
    """
    Compare the stored accumulators with the invoice history.

    With fix=True the stored values are overwritten with the expected ones.
    """
    actual = get_balances(org_id, customer_id)
    expected = expected_balances(org_id, customer_id)
    drift = {
        key: actual[key] - expected[key]
        for key in ("total_purchases_cents", "outstanding_balance_cents")
    }
    in_sync = not any(drift.values())

    if fix and not in_sync:
        table = Customer.__table__
        db.session.execute(
            update(table)
            .where(table.c.id == customer_id, table.c.org_id == org_id)
            .values(**expected)
        )

    return {
        "customer_id": customer_id,
        "actual": actual,
        "expected": expected,
        "drift": drift,
        "in_sync": in_sync,
        "fixed": fix and not in_sync,
    }
