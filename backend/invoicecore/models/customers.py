from __future__ import annotations

from ..extensions import db
from invoicecore.time_utils import to_utc_z


class Customer(db.Model):
    """
    Customer master data with running invoice totals.

    MULTI-TENANT: Customers are scoped to organizations via org_id.

    total_purchases_cents and outstanding_balance_cents are accumulators.
    They are only ever changed by additive SQL increments from
    customer_service, so there is no version column here: a concurrent
    increment must never turn into a stale-data conflict.
    """
    __tablename__ = "customers"
    __table_args__ = (
        db.UniqueConstraint("org_id", "email", name="uq_customers_org_email"),
        db.Index("ix_customers_org_id", "org_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.Integer, db.ForeignKey("organizations.id"), nullable=False)

    name = db.Column(db.String(255), nullable=False)
    email = db.Column(db.String(255), nullable=True)
    phone = db.Column(db.String(32), nullable=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)

    # Denormalized aggregates (maintained by invoice lifecycle transitions)
    total_purchases_cents = db.Column(db.Integer, nullable=False, default=0)
    outstanding_balance_cents = db.Column(db.Integer, nullable=False, default=0)
    last_purchase_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    organization = db.relationship("Organization", backref=db.backref("customers", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "org_id": self.org_id,
            "name": self.name,
            "email": self.email,
            "phone": self.phone,
            "is_active": self.is_active,
            "total_purchases_cents": self.total_purchases_cents,
            "outstanding_balance_cents": self.outstanding_balance_cents,
            "last_purchase_at": to_utc_z(self.last_purchase_at) if self.last_purchase_at else None,
            "created_at": to_utc_z(self.created_at),
        }
