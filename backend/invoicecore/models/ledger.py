from __future__ import annotations

from ..extensions import db
from invoicecore.time_utils import to_utc_z


ACCOUNT_TYPES = ("asset", "liability", "equity", "income", "expense")

# Reference types for postings
REF_INVOICE = "invoice"
REF_CREDIT_NOTE = "credit_note"
REF_PAYMENT = "payment"
REFERENCE_TYPES = (REF_INVOICE, REF_CREDIT_NOTE, REF_PAYMENT)


class LedgerAccount(db.Model):
    """
    Chart-of-accounts node.

    (org_id, code) is unique; the constraint is what makes lazy
    get-or-create safe when two postings race on first use.
    """
    __tablename__ = "ledger_accounts"
    __table_args__ = (
        db.UniqueConstraint("org_id", "code", name="uq_ledger_accounts_org_code"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.Integer, db.ForeignKey("organizations.id"), nullable=False, index=True)
    code = db.Column(db.String(32), nullable=False)
    name = db.Column(db.String(255), nullable=False)
    account_type = db.Column(db.String(16), nullable=False)
    parent_id = db.Column(db.Integer, db.ForeignKey("ledger_accounts.id"), nullable=True, index=True)
    is_system = db.Column(db.Boolean, nullable=False, default=False)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    parent = db.relationship("LedgerAccount", remote_side=[id], backref=db.backref("children", lazy=True))

    def __repr__(self) -> str:
        return f"<LedgerAccount org={self.org_id} code={self.code!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "org_id": self.org_id,
            "code": self.code,
            "name": self.name,
            "account_type": self.account_type,
            "parent_id": self.parent_id,
            "is_system": self.is_system,
            "created_at": to_utc_z(self.created_at),
        }


class AccountEntry(db.Model):
    """
    Double-entry ledger posting.

    INVARIANT: exactly one of debit_cents / credit_cents is positive and the
    other is zero. Entries are append-only; reversals post offsetting rows.
    The one sanctioned delete is the invoice-type set of an invoice being
    financially edited (journal_service.delete_invoice_journal).
    """
    __tablename__ = "account_entries"
    __table_args__ = (
        db.CheckConstraint(
            "(debit_cents > 0 AND credit_cents = 0) OR (credit_cents > 0 AND debit_cents = 0)",
            name="ck_account_entries_one_sided",
        ),
        db.Index("ix_account_entries_org_reference", "org_id", "reference_type", "reference_id"),
        db.Index("ix_account_entries_org_account", "org_id", "account_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.Integer, db.ForeignKey("organizations.id"), nullable=False)
    branch_id = db.Column(db.Integer, db.ForeignKey("branches.id"), nullable=False)
    account_id = db.Column(db.Integer, db.ForeignKey("ledger_accounts.id"), nullable=False)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=True)
    supplier_id = db.Column(db.Integer, nullable=True)

    entry_date = db.Column(db.DateTime(timezone=True), nullable=False)
    debit_cents = db.Column(db.Integer, nullable=False, default=0)
    credit_cents = db.Column(db.Integer, nullable=False, default=0)

    reference_type = db.Column(db.String(16), nullable=False)
    reference_id = db.Column(db.Integer, nullable=False)  # invoice id
    payment_id = db.Column(db.Integer, db.ForeignKey("payments.id"), nullable=True)
    reference_number = db.Column(db.String(64), nullable=True)
    description = db.Column(db.String(255), nullable=True)

    created_by_user_id = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    account = db.relationship("LedgerAccount")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "org_id": self.org_id,
            "branch_id": self.branch_id,
            "account_id": self.account_id,
            "account_code": self.account.code if self.account else None,
            "customer_id": self.customer_id,
            "supplier_id": self.supplier_id,
            "entry_date": to_utc_z(self.entry_date),
            "debit_cents": self.debit_cents,
            "credit_cents": self.credit_cents,
            "reference_type": self.reference_type,
            "reference_id": self.reference_id,
            "payment_id": self.payment_id,
            "reference_number": self.reference_number,
            "description": self.description,
            "created_by_user_id": self.created_by_user_id,
            "created_at": to_utc_z(self.created_at),
        }
