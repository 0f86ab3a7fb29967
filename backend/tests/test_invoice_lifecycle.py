# Overview: Pytest coverage for the invoice lifecycle (create, update, pay, cancel, convert).

"""
Invoice Lifecycle Tests

Each transition is checked against all four stores it touches: the
invoice itself, branch stock, customer balances and the ledger.

Test Coverage:
- Create: totals, stock decrement, postings, balances, numbering
- Payment: partial / full, overpayment rejection, paid at creation
- Cancel: restock, credit-note reversal, terminal state
- Update: informational, financial (compensate + repost), draft edits
- Drafts: no side effects until conversion, final numbering
"""

import pytest

from invoicecore.extensions import db
from invoicecore.models import AccountEntry, Customer, Invoice, InvoiceAudit, Payment, Product
from invoicecore.models.events import EVENT_DISPATCHED
from invoicecore.models.ledger import REF_CREDIT_NOTE, REF_INVOICE, REF_PAYMENT
from invoicecore.services import customer_service, event_service, journal_service, sales_record_service
from invoicecore.services.invoice_service import next_invoice_number
from invoicecore.services.stock_service import InsufficientStockError, get_available_stock
from invoicecore.validation import (
    ActorContext,
    CancelInvoiceCommand,
    ConflictError,
    CreateInvoiceCommand,
    InvalidTransitionError,
    NotFoundError,
    PaymentCommand,
    UpdateInvoiceCommand,
    ValidationError,
)


def _stock(product, branch, org):
    return get_available_stock(product.id, branch.id, org.id)


def _balances(org, customer):
    return customer_service.get_balances(org.id, customer.id)


def _net_for(org, invoice_id, reference_types):
    """Net debit - credit per account over the given reference types of one invoice."""
    net = {}
    for entry in journal_service.get_entries_for_invoice(org.id, invoice_id):
        if entry.reference_type not in reference_types:
            continue
        code = entry.account.code
        net[code] = net.get(code, 0) + entry.debit_cents - entry.credit_cents
    return net


def _pay(lifecycle, ctx, invoice_id, amount, method="cash"):
    return lifecycle.add_payment(ctx, invoice_id, PaymentCommand(amount_cents=amount, payment_method=method))


def _cancel(lifecycle, ctx, invoice_id, restock=True, reason="Customer returned goods"):
    return lifecycle.cancel_invoice(ctx, invoice_id, CancelInvoiceCommand(reason=reason, restock=restock))


def _actions(org, invoice_id):
    rows = (
        db.session.query(InvoiceAudit.action)
        .filter_by(org_id=org.id, invoice_id=invoice_id)
        .order_by(InvoiceAudit.id.asc())
        .all()
    )
    return [row[0] for row in rows]


class TestCreateInvoice:
    """Issued invoices take stock, post revenue and raise the customer's balance."""

    def test_two_line_invoice_totals_stock_and_postings(
        self, db_session, org, branch, customer, product_a, product_b, make_invoice
    ):
        """3 x 100.00 + 1 x 50.00 at 18% tax comes to 413.00."""
        invoice = make_invoice()

        assert invoice.invoice_number == "INV-000001"
        assert invoice.status == "issued"
        assert invoice.payment_status == "unpaid"
        assert invoice.subtotal_cents == 35000
        assert invoice.total_tax_cents == 6300
        assert invoice.grand_total_cents == 41300
        assert invoice.balance_amount_cents == 41300

        assert _stock(product_a, branch, org) == 7
        assert _stock(product_b, branch, org) == 9

        assert _net_for(org, invoice.id, {REF_INVOICE}) == {
            "1200": 41300,
            "4000": -35000,
            "2100": -6300,
            "5000": 21000,
            "1500": -21000,
        }
        assert journal_service.verify_reference_balanced(org.id, invoice.id)[REF_INVOICE]["balanced"]

        assert _balances(org, customer) == {"total_purchases_cents": 41300, "outstanding_balance_cents": 41300}

    def test_items_snapshot_product_name_price_and_cost(self, db_session, product_a, make_invoice):
        invoice = make_invoice()
        line = invoice.items[0]
        assert line.product_id == product_a.id
        assert line.name == "Rice Bag 25kg"
        assert line.sku == "RICE-25"
        assert line.unit_price_cents == 10000
        assert line.cost_price_cents == 6000
        assert line.tax_cents == 5400
        assert line.line_total_cents == 35400

    def test_sales_record_written(self, db_session, make_invoice):
        invoice = make_invoice()
        record = sales_record_service.get_sales_record(invoice.id)

        assert record is not None
        assert record.status == "active"
        assert record.grand_total_cents == 41300
        assert record.total_cost_cents == 21000
        assert len(record.items) == 2

    def test_create_writes_audit_and_event(self, db_session, org, make_invoice):
        invoice = make_invoice()

        assert _actions(org, invoice.id) == ["CREATE"]
        events = event_service.list_events(org.id)
        assert [e.event_type for e in events] == ["invoice.created"]
        assert events[0].aggregate_id == invoice.id
        assert events[0].status == EVENT_DISPATCHED

    def test_insufficient_stock_rejects_and_leaves_nothing_behind(
        self, db_session, org, branch, customer, product_a, product_b, make_invoice
    ):
        with pytest.raises(InsufficientStockError) as excinfo:
            make_invoice(items=[
                {"product_id": product_a.id, "quantity": 3},
                {"product_id": product_b.id, "quantity": 11},
            ])

        err = excinfo.value
        assert err.product_id == product_b.id
        assert err.available == 10
        assert err.required == 11
        assert "Sunflower Oil 5L" in str(err)

        assert _stock(product_a, branch, org) == 10
        assert _stock(product_b, branch, org) == 10
        assert db_session.query(Invoice).count() == 0
        assert db_session.query(AccountEntry).count() == 0
        assert _balances(org, customer)["outstanding_balance_cents"] == 0

    def test_repeated_product_lines_are_checked_together(self, db_session, product_a, make_invoice):
        """Two lines of 6 against stock 10 is a request for 12."""
        with pytest.raises(InsufficientStockError) as excinfo:
            make_invoice(items=[
                {"product_id": product_a.id, "quantity": 6},
                {"product_id": product_a.id, "quantity": 6},
            ])
        assert excinfo.value.required == 12

    def test_unknown_customer_is_not_found(self, db_session, ctx, lifecycle, product_a):
        command = CreateInvoiceCommand.from_payload({
            "customer_id": 9999,
            "items": [{"product_id": product_a.id, "quantity": 1}],
        })
        with pytest.raises(NotFoundError):
            lifecycle.create_invoice(ctx, command)

    def test_inactive_product_rejected(self, db_session, product_a, make_invoice):
        product_a.is_active = False
        db_session.commit()

        with pytest.raises(ValidationError):
            make_invoice(items=[{"product_id": product_a.id, "quantity": 1}])

    def test_zero_tax_invoice_has_no_tax_line(self, db_session, org, product_a, make_invoice):
        invoice = make_invoice(items=[{"product_id": product_a.id, "quantity": 1, "tax_rate_bps": 0}])

        net = _net_for(org, invoice.id, {REF_INVOICE})
        assert "2100" not in net
        assert net["1200"] == 10000
        assert net["4000"] == -10000

    def test_shipping_discount_and_round_off(self, db_session, product_a, make_invoice):
        invoice = make_invoice(
            items=[{"product_id": product_a.id, "quantity": 1, "discount_cents": 1000}],
            shipping_cents=500,
            discount_cents=200,
            round_off_cents=-20,
        )
        # net 9000, tax 1620, total discount 1200
        assert invoice.total_tax_cents == 1620
        assert invoice.total_discount_cents == 1200
        assert invoice.grand_total_cents == 10000 + 500 + 1620 - 1200 - 20

    def test_discount_larger_than_invoice_rejected(self, db_session, product_a, make_invoice):
        with pytest.raises(ValidationError):
            make_invoice(items=[{"product_id": product_a.id, "quantity": 1}], discount_cents=999_999)


class TestInvoiceNumbering:

    def test_sequential_numbers(self, db_session, product_a, make_invoice):
        first = make_invoice(items=[{"product_id": product_a.id, "quantity": 1}])
        second = make_invoice(items=[{"product_id": product_a.id, "quantity": 1}])
        assert first.invoice_number == "INV-000001"
        assert second.invoice_number == "INV-000002"

    def test_continues_after_highest_and_skips_foreign_formats(self, db_session, product_a, make_invoice):
        line = [{"product_id": product_a.id, "quantity": 1}]
        make_invoice(items=line, invoice_number="INV-000009")
        make_invoice(items=line, invoice_number="MANUAL-77")
        make_invoice(items=line, invoice_number="INV-12A")

        assert make_invoice(items=line).invoice_number == "INV-000010"

    def test_duplicate_supplied_number_conflicts(self, db_session, org, branch, product_a, make_invoice):
        line = [{"product_id": product_a.id, "quantity": 1}]
        make_invoice(items=line, invoice_number="INV-000100")

        with pytest.raises(ConflictError):
            make_invoice(items=line, invoice_number="INV-000100")
        assert _stock(product_a, branch, org) == 9

    def test_numbers_are_scoped_per_organization(self, db_session, other_org, product_a, make_invoice):
        make_invoice(items=[{"product_id": product_a.id, "quantity": 1}])

        assert next_invoice_number(other_org.id) == "INV-000001"


class TestPayments:

    def test_full_payment_marks_paid(self, db_session, org, customer, ctx, lifecycle, make_invoice):
        invoice = make_invoice()

        paid = _pay(lifecycle, ctx, invoice.id, 41300)

        assert paid.payment_status == "paid"
        assert paid.status == "paid"
        assert paid.balance_amount_cents == 0
        assert _balances(org, customer) == {"total_purchases_cents": 41300, "outstanding_balance_cents": 0}

        net = _net_for(org, invoice.id, {REF_PAYMENT})
        assert net == {"1001": 41300, "1200": -41300}
        assert journal_service.account_balance(org.id, "1200") == 0

    def test_partial_payments_by_method(self, db_session, org, customer, ctx, lifecycle, make_invoice):
        invoice = make_invoice()

        _pay(lifecycle, ctx, invoice.id, 10000, method="upi")
        invoice = _pay(lifecycle, ctx, invoice.id, 5000, method="cheque")

        assert invoice.payment_status == "partial"
        assert invoice.status == "issued"
        assert invoice.paid_amount_cents == 15000
        assert invoice.balance_amount_cents == 26300
        assert invoice.payment_method == "cheque"
        assert journal_service.account_balance(org.id, "1003") == 10000
        assert journal_service.account_balance(org.id, "1002") == 5000
        assert _balances(org, customer)["outstanding_balance_cents"] == 26300

        payments = lifecycle.list_invoice_payments(org.id, invoice.id)
        assert [p.amount_cents for p in payments] == [10000, 5000]

    def test_overpayment_rejected_without_side_effects(self, db_session, org, customer, ctx, lifecycle, make_invoice):
        invoice = make_invoice()

        with pytest.raises(ValidationError, match="maximum allowed is 41300"):
            _pay(lifecycle, ctx, invoice.id, 41301)

        invoice = lifecycle.get_invoice(org.id, invoice.id)
        assert invoice.paid_amount_cents == 0
        assert db_session.query(Payment).count() == 0
        assert _balances(org, customer)["outstanding_balance_cents"] == 41300

    def test_payment_on_paid_invoice_rejected(self, db_session, ctx, lifecycle, make_invoice):
        invoice = make_invoice()
        _pay(lifecycle, ctx, invoice.id, 41300)

        with pytest.raises(ValidationError):
            _pay(lifecycle, ctx, invoice.id, 1)

    def test_paid_at_creation_records_payment(self, db_session, org, customer, make_invoice):
        invoice = make_invoice(paid_amount_cents=10000, payment_method="card")

        assert invoice.status == "issued"
        assert invoice.payment_status == "partial"
        assert invoice.balance_amount_cents == 31300
        assert len(invoice.payments) == 1
        assert journal_service.account_balance(org.id, "1004") == 10000
        assert _balances(org, customer) == {"total_purchases_cents": 41300, "outstanding_balance_cents": 31300}

    def test_fully_paid_at_creation_is_paid(self, db_session, make_invoice):
        invoice = make_invoice(paid_amount_cents=41300)
        assert invoice.status == "paid"
        assert invoice.payment_status == "paid"

    def test_paid_more_than_total_at_creation_rejected(self, db_session, org, branch, product_a, make_invoice):
        with pytest.raises(ValidationError):
            make_invoice(paid_amount_cents=41301)
        assert _stock(product_a, branch, org) == 10


class TestCancelInvoice:

    def test_cancel_paid_invoice_restores_stock_and_reverses_ledger(
        self, db_session, org, branch, customer, product_a, product_b, ctx, lifecycle, make_invoice
    ):
        invoice = make_invoice()
        _pay(lifecycle, ctx, invoice.id, 41300)

        cancelled = _cancel(lifecycle, ctx, invoice.id)

        assert cancelled.status == "cancelled"
        assert "Cancelled: Customer returned goods" in cancelled.notes
        assert _stock(product_a, branch, org) == 10
        assert _stock(product_b, branch, org) == 10

        # Originals are kept; the credit note mirrors them exactly
        assert journal_service.get_entries_for_invoice(org.id, invoice.id, reference_type=REF_INVOICE)
        credit_note = journal_service.get_entries_for_invoice(org.id, invoice.id, reference_type=REF_CREDIT_NOTE)
        assert all(entry.reference_number == "CN-INV-000001" for entry in credit_note)
        net = _net_for(org, invoice.id, {REF_INVOICE, REF_CREDIT_NOTE})
        assert set(net) == {"1200", "4000", "2100", "5000", "1500"}
        assert all(value == 0 for value in net.values())

        # Payment stays on the books as a credit to the customer
        assert _balances(org, customer) == {"total_purchases_cents": 0, "outstanding_balance_cents": -41300}
        assert customer_service.reconcile_customer(org.id, customer.id)["in_sync"]

        with pytest.raises(InvalidTransitionError):
            lifecycle.update_invoice(ctx, invoice.id, UpdateInvoiceCommand.from_payload({"notes": "late edit"}))

    def test_create_then_cancel_round_trip(
        self, db_session, org, branch, customer, product_a, product_b, ctx, lifecycle, make_invoice
    ):
        before = _balances(org, customer)
        invoice = make_invoice()

        _cancel(lifecycle, ctx, invoice.id)

        assert _stock(product_a, branch, org) == 10
        assert _stock(product_b, branch, org) == 10
        assert _balances(org, customer) == before
        assert journal_service.trial_balance(org.id)["balanced"]
        assert journal_service.account_balance(org.id, "4000") == 0

    def test_cancel_without_restock_keeps_stock_out(self, db_session, org, branch, product_a, ctx, lifecycle, make_invoice):
        invoice = make_invoice()

        _cancel(lifecycle, ctx, invoice.id, restock=False, reason="Damaged in transit")

        assert _stock(product_a, branch, org) == 7
        history = lifecycle.get_invoice_history(org.id, invoice.id)
        assert history[-1]["details"] == "Cancelled. Restock: no. Reason: Damaged in transit"

    def test_sales_record_marked_cancelled(self, db_session, ctx, lifecycle, make_invoice):
        invoice = make_invoice()
        _cancel(lifecycle, ctx, invoice.id)

        record = sales_record_service.get_sales_record(invoice.id)
        assert record.status == "cancelled"
        assert record.cancelled_at is not None

    def test_cancel_is_terminal(self, db_session, ctx, lifecycle, make_invoice):
        invoice = make_invoice()
        _cancel(lifecycle, ctx, invoice.id)

        with pytest.raises(InvalidTransitionError):
            _cancel(lifecycle, ctx, invoice.id)
        with pytest.raises(InvalidTransitionError):
            _pay(lifecycle, ctx, invoice.id, 100)

    def test_cancel_requires_reason(self):
        with pytest.raises(ValidationError):
            CancelInvoiceCommand.from_payload({"restock": True})


class TestUpdateInvoice:

    def test_quantity_change_restocks_and_reposts(
        self, db_session, org, branch, customer, product_a, product_b, ctx, lifecycle, make_invoice
    ):
        invoice = make_invoice()
        assert _stock(product_a, branch, org) == 7

        updated = lifecycle.update_invoice(ctx, invoice.id, UpdateInvoiceCommand.from_payload({
            "items": [
                {"product_id": product_a.id, "quantity": 5},
                {"product_id": product_b.id, "quantity": 1},
            ],
        }))

        assert _stock(product_a, branch, org) == 5
        assert _stock(product_b, branch, org) == 9
        assert updated.grand_total_cents == 64900
        assert _net_for(org, invoice.id, {REF_INVOICE}) == {
            "1200": 64900,
            "4000": -55000,
            "2100": -9900,
            "5000": 33000,
            "1500": -33000,
        }
        assert _balances(org, customer) == {"total_purchases_cents": 64900, "outstanding_balance_cents": 64900}
        assert sales_record_service.get_sales_record(invoice.id).grand_total_cents == 64900

        history = lifecycle.get_invoice_history(org.id, invoice.id)
        assert history[-1]["action"] == "UPDATE_FINANCIAL"
        assert history[-1]["meta"]["old"]["grand_total_cents"] == 41300
        assert history[-1]["meta"]["new"]["grand_total_cents"] == 64900

    def test_update_keeps_cost_snapshot(self, db_session, org, product_a, ctx, lifecycle, make_invoice):
        invoice = make_invoice(items=[{"product_id": product_a.id, "quantity": 2}])
        product_a.cost_price_cents = 9000
        db_session.commit()

        updated = lifecycle.update_invoice(ctx, invoice.id, UpdateInvoiceCommand.from_payload({
            "items": [{"product_id": product_a.id, "quantity": 3}],
        }))

        assert updated.items[0].cost_price_cents == 6000
        assert _net_for(org, invoice.id, {REF_INVOICE})["5000"] == 18000

    def test_update_beyond_stock_rolls_back(self, db_session, org, branch, product_a, ctx, lifecycle, make_invoice):
        invoice = make_invoice()

        with pytest.raises(InsufficientStockError):
            lifecycle.update_invoice(ctx, invoice.id, UpdateInvoiceCommand.from_payload({
                "items": [{"product_id": product_a.id, "quantity": 11}],
            }))

        assert _stock(product_a, branch, org) == 7
        assert lifecycle.get_invoice(org.id, invoice.id).grand_total_cents == 41300
        assert _net_for(org, invoice.id, {REF_INVOICE})["1200"] == 41300

    def test_total_below_paid_amount_rejected(self, db_session, org, branch, product_a, ctx, lifecycle, make_invoice):
        invoice = make_invoice()
        _pay(lifecycle, ctx, invoice.id, 41300)

        with pytest.raises(ValidationError, match=r"New grand total 11800 is below the amount already paid \(41300\)"):
            lifecycle.update_invoice(ctx, invoice.id, UpdateInvoiceCommand.from_payload({
                "items": [{"product_id": product_a.id, "quantity": 1}],
            }))
        assert _stock(product_a, branch, org) == 7
        unchanged = lifecycle.get_invoice(org.id, invoice.id)
        assert unchanged.grand_total_cents == 41300
        assert unchanged.status == "paid"
        assert _net_for(org, invoice.id, {REF_INVOICE})["4000"] == -35000

    def test_raising_total_on_paid_invoice_reopens_it(self, db_session, product_a, product_b, ctx, lifecycle, make_invoice):
        invoice = make_invoice()
        _pay(lifecycle, ctx, invoice.id, 41300)

        updated = lifecycle.update_invoice(ctx, invoice.id, UpdateInvoiceCommand.from_payload({"shipping_cents": 1000}))

        assert updated.status == "issued"
        assert updated.payment_status == "partial"
        assert updated.balance_amount_cents == 1000

    def test_informational_update_touches_nothing_financial(
        self, db_session, org, branch, customer, product_a, ctx, lifecycle, make_invoice
    ):
        invoice = make_invoice()
        entries_before = db_session.query(AccountEntry).count()

        updated = lifecycle.update_invoice(ctx, invoice.id, UpdateInvoiceCommand.from_payload({
            "notes": "Deliver after 5pm",
            "due_date": "2026-11-30T00:00:00Z",
        }))

        assert updated.notes == "Deliver after 5pm"
        assert _stock(product_a, branch, org) == 7
        assert db_session.query(AccountEntry).count() == entries_before
        assert _actions(org, invoice.id) == ["CREATE", "UPDATE_INFO"]

    def test_customer_change_on_issued_rejected(self, db_session, org, ctx, lifecycle, make_invoice):
        invoice = make_invoice()
        other =Customer(org_id=org.id, name="Meera")
        db_session.add(other)
        db_session.commit()

        with pytest.raises(ValidationError):
            lifecycle.update_invoice(ctx, invoice.id, UpdateInvoiceCommand.from_payload({"customer_id": other.id}))

    def test_issued_cannot_return_to_draft(self, db_session, ctx, lifecycle, make_invoice):
        invoice = make_invoice()
        with pytest.raises(InvalidTransitionError):
            lifecycle.update_invoice(ctx, invoice.id, UpdateInvoiceCommand.from_payload({"status": "draft"}))

    def test_unknown_fields_rejected(self):
        with pytest.raises(ValidationError, match="grand_total_cents"):
            UpdateInvoiceCommand.from_payload({"grand_total_cents": 1})


class TestDrafts:

    def test_draft_has_no_side_effects(
        self, db_session, org, branch, customer, product_a, make_invoice
    ):
        draft = make_invoice(status="draft")

        assert draft.status == "draft"
        assert draft.invoice_number.startswith("DRAFT-")
        assert draft.grand_total_cents == 41300
        assert _stock(product_a, branch, org) == 10
        assert _balances(org, customer) == {"total_purchases_cents": 0, "outstanding_balance_cents": 0}
        assert journal_service.get_entries_for_invoice(org.id, draft.id) == []
        assert sales_record_service.get_sales_record(draft.id) is None

    def test_convert_assigns_first_number(
        self, db_session, org, branch, customer, product_a, ctx, lifecycle, make_invoice
    ):
        draft = make_invoice(status="draft")

        issued = lifecycle.convert_draft(ctx, draft.id)

        assert issued.invoice_number == "INV-000001"
        assert issued.status == "issued"
        assert _stock(product_a, branch, org) == 7
        assert _balances(org, customer)["outstanding_balance_cents"] == 41300
        assert journal_service.verify_reference_balanced(org.id, draft.id)[REF_INVOICE]["balanced"]
        assert _actions(org, draft.id) == ["CREATE", "CONVERT_DRAFT"]

    def test_convert_preserves_quoted_prices(self, db_session, product_a, ctx, lifecycle, make_invoice):
        draft = make_invoice(status="draft", items=[{"product_id": product_a.id, "quantity": 1}])
        product = db_session.get(Product, product_a.id)
        product.price_cents = 12000
        product.cost_price_cents = 7000
        db_session.commit()

        issued = lifecycle.convert_draft(ctx, draft.id)

        assert issued.items[0].unit_price_cents == 10000
        assert issued.items[0].cost_price_cents == 6000
        assert issued.grand_total_cents == 11800

    def test_convert_checks_stock(self, db_session, org, branch, product_a, ctx, lifecycle, make_invoice):
        draft = make_invoice(status="draft", items=[{"product_id": product_a.id, "quantity": 8}])
        make_invoice(items=[{"product_id": product_a.id, "quantity": 5}])

        with pytest.raises(InsufficientStockError):
            lifecycle.convert_draft(ctx, draft.id)
        assert lifecycle.get_invoice(org.id, draft.id).status == "draft"
        assert _stock(product_a, branch, org) == 5

    def test_draft_edit_stays_side_effect_free(self, db_session, org, branch, product_a, ctx, lifecycle, make_invoice):
        draft = make_invoice(status="draft")

        updated = lifecycle.update_invoice(ctx, draft.id, UpdateInvoiceCommand.from_payload({
            "items": [{"product_id": product_a.id, "quantity": 2}],
        }))

        assert updated.status == "draft"
        assert updated.grand_total_cents == 23600
        assert _stock(product_a, branch, org) == 10
        assert _actions(org, draft.id) == ["CREATE", "UPDATE_DRAFT"]

    def test_update_to_issued_converts(self, db_session, org, branch, product_a, ctx, lifecycle, make_invoice):
        draft = make_invoice(status="draft")

        issued = lifecycle.update_invoice(ctx, draft.id, UpdateInvoiceCommand.from_payload({"status": "issued"}))

        assert issued.status == "issued"
        assert issued.invoice_number == "INV-000001"
        assert _stock(product_a, branch, org) == 7

    def test_draft_to_draft_without_changes_rejected(self, db_session, org, ctx, lifecycle, make_invoice):
        draft = make_invoice(status="draft")

        with pytest.raises(ValidationError, match="No updatable fields provided"):
            lifecycle.update_invoice(ctx, draft.id, UpdateInvoiceCommand.from_payload({"status": "draft"}))

        assert _actions(org, draft.id) == ["CREATE"]
        assert [e.event_type for e in event_service.list_events(org.id)] == [event_service.INVOICE_CREATED]

    def test_draft_rules(self, db_session, org, branch, product_a, ctx, lifecycle, make_invoice):
        draft = make_invoice(status="draft")

        with pytest.raises(InvalidTransitionError):
            _pay(lifecycle, ctx, draft.id, 100)

        cancelled = _cancel(lifecycle, ctx, draft.id, reason="Quote expired")
        assert cancelled.status == "cancelled"
        assert _stock(product_a, branch, org) == 10
        assert journal_service.get_entries_for_invoice(org.id, draft.id) == []

    def test_convert_non_draft_rejected(self, db_session, ctx, lifecycle, make_invoice):
        invoice = make_invoice()
        with pytest.raises(InvalidTransitionError):
            lifecycle.convert_draft(ctx, invoice.id)

    def test_paid_amount_not_allowed_on_draft(self, customer, product_a):
        with pytest.raises(ValidationError):
            CreateInvoiceCommand.from_payload({
                "customer_id": customer.id,
                "status": "draft",
                "paid_amount_cents": 100,
                "items": [{"product_id": product_a.id, "quantity": 1}],
            })


class TestReadsAndIsolation:

    def test_history_is_chronological(self, db_session, org, ctx, lifecycle, make_invoice):
        invoice = make_invoice()
        _pay(lifecycle, ctx, invoice.id, 1000)
        _cancel(lifecycle, ctx, invoice.id)

        history = lifecycle.get_invoice_history(org.id, invoice.id)
        assert [row["action"] for row in history] == ["CREATE", "PAYMENT", "CANCEL"]
        assert all(row["actor_user_id"] == 7 for row in history)

    def test_other_tenant_cannot_see_or_change_invoice(self, db_session, other_org, branch, lifecycle, make_invoice):
        invoice = make_invoice()
        foreign = ActorContext(org_id=other_org.id, branch_id=branch.id, user_id=99)

        with pytest.raises(NotFoundError):
            lifecycle.get_invoice(other_org.id, invoice.id)
        with pytest.raises(NotFoundError):
            _pay(lifecycle, foreign, invoice.id, 100)

    def test_check_stock_preflight(self, db_session, product_a, product_b, ctx, lifecycle):
        report = lifecycle.check_stock(ctx, [
            {"product_id": product_a.id, "quantity": 4},
            {"product_id": product_b.id, "quantity": 12},
        ])

        assert report["is_valid"] is False
        assert report["errors"][0]["product_id"] == product_b.id
        assert [line["is_available"] for line in report["items"]] == [True, False]

    def test_event_stream_per_transition(self, db_session, org, ctx, lifecycle, make_invoice):
        draft = make_invoice(status="draft")
        lifecycle.convert_draft(ctx, draft.id)
        _pay(lifecycle, ctx, draft.id, 41300)
        _cancel(lifecycle, ctx, draft.id)

        types = [event.event_type for event in event_service.list_events(org.id)]
        assert types == [
            "invoice.created",
            "invoice.converted",
            "invoice.payment_received",
            "invoice.cancelled",
        ]
