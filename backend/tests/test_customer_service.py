# Overview: Pytest coverage for customer balance accumulators, reconciliation and the sales projection.

import pytest
from sqlalchemy.exc import OperationalError

from invoicecore.models import Customer, SalesRecord
from invoicecore.services import customer_service, sales_record_service
from invoicecore.services.invoice_service import InvoiceLifecycle
from invoicecore.validation import CancelInvoiceCommand, CreateInvoiceCommand, NotFoundError, PaymentCommand


class TestBalances:

    def test_increments_compose(self, db_session, org, customer, atomic):
        atomic(lambda: customer_service.apply_balance_delta(org.id, customer.id, purchases_delta=500, outstanding_delta=500))
        atomic(lambda: customer_service.apply_balance_delta(org.id, customer.id, outstanding_delta=-200))

        assert customer_service.get_balances(org.id, customer.id) == {
            "total_purchases_cents": 500,
            "outstanding_balance_cents": 300,
        }

    def test_last_purchase_stamped_on_issue(self, db_session, org, customer, make_invoice):
        make_invoice()
        assert db_session.get(Customer, customer.id).last_purchase_at is not None

    def test_unknown_customer(self, db_session, org, atomic):
        with pytest.raises(NotFoundError):
            atomic(lambda: customer_service.apply_balance_delta(org.id, 4242, outstanding_delta=1))

    def test_customer_of_other_org_not_found(self, db_session, other_org, customer):
        with pytest.raises(NotFoundError):
            customer_service.get_customer(other_org.id, customer.id)


class TestReconciliation:

    def test_lifecycle_keeps_balances_in_sync(self, db_session, org, customer, ctx, lifecycle, make_invoice):
        first = make_invoice()
        make_invoice(status="draft")
        lifecycle.add_payment(ctx, first.id, PaymentCommand(amount_cents=20000))

        result = customer_service.reconcile_customer(org.id, customer.id)

        assert result["in_sync"]
        assert result["expected"] == {"total_purchases_cents": 41300, "outstanding_balance_cents": 21300}

    def test_drift_detected_and_fixed(self, db_session, org, customer, atomic, make_invoice):
        make_invoice()
        atomic(lambda: customer_service.apply_balance_delta(org.id, customer.id, outstanding_delta=999))

        report = customer_service.reconcile_customer(org.id, customer.id)
        assert report["in_sync"] is False
        assert report["drift"] == {"total_purchases_cents": 0, "outstanding_balance_cents": 999}

        fixed = atomic(lambda: customer_service.reconcile_customer(org.id, customer.id, fix=True))
        assert fixed["fixed"] is True
        assert customer_service.reconcile_customer(org.id, customer.id)["in_sync"]


class TestSalesProjection:

    def test_payment_refreshes_projection(self, db_session, ctx, lifecycle, make_invoice):
        invoice = make_invoice()
        lifecycle.add_payment(ctx, invoice.id, PaymentCommand(amount_cents=10000, payment_method="upi"))

        record = sales_record_service.get_sales_record(invoice.id)
        assert record.paid_amount_cents == 10000
        assert record.due_amount_cents == 31300
        assert record.payment_status == "partial"
        assert record.payment_method == "upi"

    def test_projection_failure_does_not_fail_the_sale(self, db_session, make_invoice, monkeypatch):
        def broken_sync(invoice):
            raise OperationalError("INSERT INTO sales_records", {}, Exception("disk I/O error"))

        monkeypatch.setattr(sales_record_service, "sync_from_invoice", broken_sync)

        invoice = make_invoice()

        assert invoice.status == "issued"
        assert db_session.query(SalesRecord).count() == 0

    def test_projection_bug_is_not_swallowed(self, db_session, make_invoice, monkeypatch):
        def buggy_sync(invoice):
            raise KeyError("grand_total")

        monkeypatch.setattr(sales_record_service, "sync_from_invoice", buggy_sync)

        with pytest.raises(KeyError):
            make_invoice()


class RecordingProjection:
    """Stand-in for sales_record_service that records what the lifecycle asks of it."""

    def __init__(self):
        self.calls = []

    def sync_best_effort(self, invoice, cancel=False):
        self.calls.append((invoice.invoice_number, cancel))


class TestInjectedCollaborators:

    def test_lifecycle_uses_injected_projection(self, db_session, ctx, customer, product_a):
        projection = RecordingProjection()
        lifecycle = InvoiceLifecycle(sales_records=projection)

        invoice = lifecycle.create_invoice(ctx, CreateInvoiceCommand.from_payload({
            "customer_id": customer.id,
            "items": [{"product_id": product_a.id, "quantity": 1}],
        }))
        lifecycle.cancel_invoice(ctx, invoice.id, CancelInvoiceCommand(reason="Test"))

        assert projection.calls == [("INV-000001", False), ("INV-000001", True)]
        assert db_session.query(SalesRecord).count() == 0
