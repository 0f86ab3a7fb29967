from __future__ import annotations

from ..extensions import db
from invoicecore.time_utils import to_utc_z


EVENT_PENDING = "PENDING"
EVENT_DISPATCHING = "DISPATCHING"
EVENT_DISPATCHED = "DISPATCHED"
EVENT_FAILED = "FAILED"


class DomainEvent(db.Model):
    """
    Transactional outbox row.

    Written in the same transaction as the lifecycle transition it
    describes, so an event exists if and only if the transition committed.
    The dispatcher drains PENDING rows after commit.
    """
    __tablename__ = "domain_events"
    __table_args__ = (
        db.Index("ix_domain_events_status_id", "status", "id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.Integer, db.ForeignKey("organizations.id"), nullable=False, index=True)

    event_type = db.Column(db.String(64), nullable=False)  # e.g. invoice.created
    aggregate_type = db.Column(db.String(32), nullable=False)
    aggregate_id = db.Column(db.Integer, nullable=False)
    payload = db.Column(db.JSON, nullable=True)

    status = db.Column(db.String(16), nullable=False, default=EVENT_PENDING)
    attempts = db.Column(db.Integer, nullable=False, default=0)
    last_error = db.Column(db.Text, nullable=True)
    claimed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    dispatched_at = db.Column(db.DateTime(timezone=True), nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "org_id": self.org_id,
            "event_type": self.event_type,
            "aggregate_type": self.aggregate_type,
            "aggregate_id": self.aggregate_id,
            "payload": self.payload,
            "status": self.status,
            "attempts": self.attempts,
            "last_error": self.last_error,
            "claimed_at": to_utc_z(self.claimed_at) if self.claimed_at else None,
            "created_at": to_utc_z(self.created_at),
            "dispatched_at": to_utc_z(self.dispatched_at) if self.dispatched_at else None,
        }
