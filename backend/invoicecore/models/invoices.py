from __future__ import annotations

from ..extensions import db
from invoicecore.time_utils import to_utc_z


# Lifecycle status
INVOICE_DRAFT = "draft"
INVOICE_ISSUED = "issued"
INVOICE_PAID = "paid"
INVOICE_CANCELLED = "cancelled"
INVOICE_STATUSES = (INVOICE_DRAFT, INVOICE_ISSUED, INVOICE_PAID, INVOICE_CANCELLED)

# Payment status (derived from balance)
PAYMENT_UNPAID = "unpaid"
PAYMENT_PARTIAL = "partial"
PAYMENT_PAID = "paid"

# Audit actions
AUDIT_CREATE = "CREATE"
AUDIT_UPDATE_DRAFT = "UPDATE_DRAFT"
AUDIT_UPDATE_FINANCIAL = "UPDATE_FINANCIAL"
AUDIT_UPDATE_INFO = "UPDATE_INFO"
AUDIT_PAYMENT = "PAYMENT"
AUDIT_CONVERT_DRAFT = "CONVERT_DRAFT"
AUDIT_CANCEL = "CANCEL"
AUDIT_EMAIL_SENT = "EMAIL_SENT"


class Invoice(db.Model):
    """
    Invoice document issued to a customer.

    INVARIANTS (maintained by invoice_service, never patched directly):
    - grand_total = subtotal + shipping + total_tax - total_discount + round_off
    - balance_amount = grand_total - paid_amount, never negative
    - payment_status derived from balance/paid
    - cancelled is terminal

    version_id gives optimistic locking: two transitions racing on the same
    invoice cannot both commit against the same version.
    """
    __tablename__ = "invoices"
    __table_args__ = (
        db.UniqueConstraint("org_id", "invoice_number", name="uq_invoices_org_number"),
        db.Index("ix_invoices_org_status_date", "org_id", "status", "invoice_date"),
        db.Index("ix_invoices_org_customer", "org_id", "customer_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.Integer, db.ForeignKey("organizations.id"), nullable=False, index=True)
    branch_id = db.Column(db.Integer, db.ForeignKey("branches.id"), nullable=False, index=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=False)

    # Human-readable number (e.g., "INV-000123"); drafts carry "DRAFT-..." placeholders
    invoice_number = db.Column(db.String(64), nullable=False)

    status = db.Column(db.String(16), nullable=False, default=INVOICE_ISSUED, index=True)
    invoice_date = db.Column(db.DateTime(timezone=True), nullable=False)
    due_date = db.Column(db.DateTime(timezone=True), nullable=True)

    # Totals (all amounts in cents)
    subtotal_cents = db.Column(db.Integer, nullable=False, default=0)
    total_tax_cents = db.Column(db.Integer, nullable=False, default=0)
    total_discount_cents = db.Column(db.Integer, nullable=False, default=0)  # item discounts + invoice discount
    discount_cents = db.Column(db.Integer, nullable=False, default=0)  # invoice-level discount only
    shipping_cents = db.Column(db.Integer, nullable=False, default=0)
    round_off_cents = db.Column(db.Integer, nullable=False, default=0)
    grand_total_cents = db.Column(db.Integer, nullable=False, default=0)

    # Payment tracking
    paid_amount_cents = db.Column(db.Integer, nullable=False, default=0)
    balance_amount_cents = db.Column(db.Integer, nullable=False, default=0)
    payment_status = db.Column(db.String(16), nullable=False, default=PAYMENT_UNPAID, index=True)
    payment_method = db.Column(db.String(16), nullable=True)

    notes = db.Column(db.Text, nullable=True)

    created_by_user_id = db.Column(db.Integer, nullable=True)
    updated_by_user_id = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )
    version_id = db.Column(db.Integer, nullable=False, default=1)

    customer = db.relationship("Customer", backref=db.backref("invoices", lazy=True))
    branch = db.relationship("Branch")
    items = db.relationship(
        "InvoiceItem",
        back_populates="invoice",
        order_by="InvoiceItem.position",
        cascade="all, delete-orphan",
    )
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def is_draft(self) -> bool:
        return self.status == INVOICE_DRAFT

    @property
    def is_cancelled(self) -> bool:
        return self.status == INVOICE_CANCELLED

    def to_dict(self, include_items: bool = False) -> dict:
        data = {
            "id": self.id,
            "org_id": self.org_id,
            "branch_id": self.branch_id,
            "customer_id": self.customer_id,
            "invoice_number": self.invoice_number,
            "status": self.status,
            "invoice_date": to_utc_z(self.invoice_date),
            "due_date": to_utc_z(self.due_date) if self.due_date else None,
            "subtotal_cents": self.subtotal_cents,
            "total_tax_cents": self.total_tax_cents,
            "total_discount_cents": self.total_discount_cents,
            "discount_cents": self.discount_cents,
            "shipping_cents": self.shipping_cents,
            "round_off_cents": self.round_off_cents,
            "grand_total_cents": self.grand_total_cents,
            "paid_amount_cents": self.paid_amount_cents,
            "balance_amount_cents": self.balance_amount_cents,
            "payment_status": self.payment_status,
            "payment_method": self.payment_method,
            "notes": self.notes,
            "created_by_user_id": self.created_by_user_id,
            "updated_by_user_id": self.updated_by_user_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
            "version_id": self.version_id,
        }
        if include_items:
            data["items"] = [item.to_dict() for item in self.items]
        return data


class InvoiceItem(db.Model):
    """
    Line item on an invoice.

    cost_price_cents is a SNAPSHOT of the product's cost at sale time.
    It is written once when the item is created and never refreshed;
    COGS postings and profit reports read only this column.
    """
    __tablename__ = "invoice_items"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    invoice_id = db.Column(db.Integer, db.ForeignKey("invoices.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    position = db.Column(db.Integer, nullable=False, default=0)

    # Denormalized for display and reporting
    name = db.Column(db.String(255), nullable=False)
    sku = db.Column(db.String(64), nullable=True)

    quantity = db.Column(db.Integer, nullable=False)
    unit_price_cents = db.Column(db.Integer, nullable=False)
    discount_cents = db.Column(db.Integer, nullable=False, default=0)
    tax_rate_bps = db.Column(db.Integer, nullable=False, default=0)
    tax_cents = db.Column(db.Integer, nullable=False, default=0)
    cost_price_cents = db.Column(db.Integer, nullable=False, default=0)
    line_total_cents = db.Column(db.Integer, nullable=False)

    invoice = db.relationship("Invoice", back_populates="items")
    product = db.relationship("Product")

    @property
    def cost_total_cents(self) -> int:
        return self.quantity * (self.cost_price_cents or 0)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "invoice_id": self.invoice_id,
            "product_id": self.product_id,
            "position": self.position,
            "name": self.name,
            "sku": self.sku,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "discount_cents": self.discount_cents,
            "tax_rate_bps": self.tax_rate_bps,
            "tax_cents": self.tax_cents,
            "cost_price_cents": self.cost_price_cents,
            "line_total_cents": self.line_total_cents,
        }


class InvoiceAudit(db.Model):
    """
    Append-only invoice history. One row per lifecycle transition.

    Never updated or deleted.
    """
    __tablename__ = "invoice_audits"
    __table_args__ = (
        db.Index("ix_invoice_audits_invoice_created", "invoice_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.Integer, db.ForeignKey("organizations.id"), nullable=False, index=True)
    invoice_id = db.Column(db.Integer, db.ForeignKey("invoices.id"), nullable=False)

    action = db.Column(db.String(32), nullable=False)
    actor_user_id = db.Column(db.Integer, nullable=True)
    details = db.Column(db.Text, nullable=True)
    meta = db.Column(db.JSON, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "org_id": self.org_id,
            "invoice_id": self.invoice_id,
            "action": self.action,
            "actor_user_id": self.actor_user_id,
            "details": self.details,
            "meta": self.meta,
            "created_at": to_utc_z(self.created_at),
        }


class Payment(db.Model):
    """
    Payment received against an invoice.

    A payment is always paired with a cash/bank-vs-AR ledger posting in the
    same transaction (see journal_service.post_payment_journal).
    """
    __tablename__ = "payments"
    __table_args__ = (
        db.Index("ix_payments_org_invoice", "org_id", "invoice_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.Integer, db.ForeignKey("organizations.id"), nullable=False)
    branch_id = db.Column(db.Integer, db.ForeignKey("branches.id"), nullable=False)
    invoice_id = db.Column(db.Integer, db.ForeignKey("invoices.id"), nullable=False)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=False)

    amount_cents = db.Column(db.Integer, nullable=False)
    payment_method = db.Column(db.String(16), nullable=False)
    reference_number = db.Column(db.String(64), nullable=True)
    transaction_id = db.Column(db.String(128), nullable=True)
    notes = db.Column(db.Text, nullable=True)
    status = db.Column(db.String(16), nullable=False, default="completed")

    paid_at = db.Column(db.DateTime(timezone=True), nullable=False)
    created_by_user_id = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    invoice = db.relationship("Invoice", backref=db.backref("payments", lazy=True, order_by="Payment.id"))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "org_id": self.org_id,
            "branch_id": self.branch_id,
            "invoice_id": self.invoice_id,
            "customer_id": self.customer_id,
            "amount_cents": self.amount_cents,
            "payment_method": self.payment_method,
            "reference_number": self.reference_number,
            "transaction_id": self.transaction_id,
            "notes": self.notes,
            "status": self.status,
            "paid_at": to_utc_z(self.paid_at),
            "created_by_user_id": self.created_by_user_id,
            "created_at": to_utc_z(self.created_at),
        }
