# Overview: Service-layer operations for the domain event outbox; encapsulates business logic and database work.

"""
Domain events use a transactional outbox.

- record_event() writes a PENDING row inside the lifecycle transaction, so
  an event exists exactly when its transition committed.
- EventDispatcher drains PENDING rows AFTER commit and hands them to
  subscribers (notifications, websocket broadcast, webhooks).
- A subscriber failure is logged and recorded on the row. It never
  reaches the lifecycle caller and never rolls anything back.
- Delivery is at-least-once: a row that failed is retried until
  EVENTS_MAX_ATTEMPTS, then parked as FAILED. A claim older than
  EVENTS_CLAIM_TIMEOUT_SECONDS is released back to PENDING.
"""

from __future__ import annotations

from collections import defaultdict
from datetime import timedelta
from typing import Callable

from flask import current_app
from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError

from ..extensions import db
from ..models import DomainEvent
from ..models.events import EVENT_PENDING, EVENT_DISPATCHING, EVENT_DISPATCHED, EVENT_FAILED
from ..time_utils import utcnow


INVOICE_CREATED = "invoice.created"
INVOICE_UPDATED = "invoice.updated"
INVOICE_CANCELLED = "invoice.cancelled"
INVOICE_PAYMENT_RECEIVED = "invoice.payment_received"
INVOICE_CONVERTED = "invoice.converted"
INVOICE_EMAILED = "invoice.emailed"

ALL_EVENTS = "*"

EventHandler = Callable[[dict], None]


def record_event(
    *,
    org_id: int,
    event_type: str,
    aggregate_type: str,
    aggregate_id: int,
    payload: dict | None = None,
) -> DomainEvent:
    """Append an outbox row in the caller's transaction (no commit)."""
    event = DomainEvent(
        org_id=org_id,
        event_type=event_type,
        aggregate_type=aggregate_type,
        aggregate_id=aggregate_id,
        payload=payload or {},
        status=EVENT_PENDING,
    )
    db.session.add(event)
    db.session.flush()
    return event


class EventDispatcher:
    """Subscriber registry plus the outbox drain loop."""

    def __init__(self, max_attempts: int = 5, claim_timeout_seconds: int = 300):
        self.max_attempts = max_attempts
        self.claim_timeout_seconds = claim_timeout_seconds
        self._handlers: dict[str, list[EventHandler]] = defaultdict(list)

    def subscribe(self, event_type: str, handler: EventHandler) -> None:
        """Register handler for one event type, or ALL_EVENTS."""
        self._handlers[event_type].append(handler)

    def unsubscribe(self, event_type: str, handler: EventHandler) -> None:
        handlers = self._handlers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)

    def handlers_for(self, event_type: str) -> list[EventHandler]:
        return list(self._handlers.get(event_type, [])) + list(self._handlers.get(ALL_EVENTS, []))

    def _claim(self, event_id: int) -> bool:
        # Conditional status flip: two dispatchers never deliver the same row concurrently
        table = DomainEvent.__table__
        result = db.session.execute(
            update(table)
            .where(table.c.id == event_id, table.c.status == EVENT_PENDING)
            .values(status=EVENT_DISPATCHING, claimed_at=utcnow())
        )
        db.session.commit()
        return result.rowcount == 1

    def release_stale_claims(self) -> int:
        """
        Return DISPATCHING rows claimed longer ago than claim_timeout_seconds to PENDING.

        A dispatcher that died between claim and settle leaves its row
        DISPATCHING; this puts it back in the queue.
        """
        cutoff = utcnow() - timedelta(seconds=self.claim_timeout_seconds)
        table = DomainEvent.__table__
        result = db.session.execute(
            update(table)
            .where(
                table.c.status == EVENT_DISPATCHING,
                table.c.claimed_at.isnot(None),
                table.c.claimed_at < cutoff,
            )
            .values(status=EVENT_PENDING, claimed_at=None)
        )
        db.session.commit()
        if result.rowcount:
            current_app.logger.warning("Released %d stale event claim(s)", result.rowcount)
        return result.rowcount

    def _deliver(self, event: DomainEvent) -> None:
        message = event.to_dict()
        for handler in self.handlers_for(event.event_type):
            handler(message)

    def _record_failure(self, event_id: int, attempts: int, exc: Exception) -> bool:
        """Store the failure on a freshly read row; True when the row is parked as FAILED."""
        event = db.session.get(DomainEvent, event_id, populate_existing=True)
        event.attempts = attempts
        event.last_error = f"{type(exc).__name__}: {exc}"[:2000]
        event.claimed_at = None
        parked = attempts >= self.max_attempts
        event.status = EVENT_FAILED if parked else EVENT_PENDING
        db.session.commit()
        return parked

    def dispatch_pending(self, limit: int = 100) -> dict:
        """
        Deliver up to `limit` PENDING events in id order.

        Returns counts of dispatched / failed / retrying rows.
        """
        self.release_stale_claims()

        stats = {"dispatched": 0, "failed": 0, "retrying": 0}
        pending_ids = [
            row[0]
            for row in db.session.query(DomainEvent.id)
            .filter_by(status=EVENT_PENDING)
            .order_by(DomainEvent.id.asc())
            .limit(limit)
            .all()
        ]

        for event_id in pending_ids:
            if not self._claim(event_id):
                continue
            event = db.session.get(DomainEvent, event_id, populate_existing=True)
            event_type = event.event_type
            attempts = (event.attempts or 0) + 1
            try:
                self._deliver(event)
                event.attempts = attempts
                event.status = EVENT_DISPATCHED
                event.dispatched_at = utcnow()
                event.claimed_at = None
                event.last_error = None
                db.session.commit()
            except Exception as exc:  # subscriber code is outside the core's control
                # Whatever the subscriber left in the session is discarded with it
                db.session.rollback()
                current_app.logger.exception(
                    "Event %s (%s) delivery failed on attempt %d", event_id, event_type, attempts
                )
                if self._record_failure(event_id, attempts, exc):
                    stats["failed"] += 1
                else:
                    stats["retrying"] += 1
            else:
                stats["dispatched"] += 1

        return stats


def get_dispatcher(app=None) -> EventDispatcher:
    """The dispatcher bound to the Flask app (one per app, created on first use)."""
    app = app or current_app
    dispatcher = app.extensions.get("invoicecore.events")
    if dispatcher is None:
        dispatcher = EventDispatcher(
            max_attempts=app.config.get("EVENTS_MAX_ATTEMPTS", 5),
            claim_timeout_seconds=app.config.get("EVENTS_CLAIM_TIMEOUT_SECONDS", 300),
        )
        app.extensions["invoicecore.events"] = dispatcher
    return dispatcher


def dispatch_pending_events(limit: int = 100) -> dict:
    return get_dispatcher().dispatch_pending(limit=limit)


def dispatch_after_commit() -> dict | None:
    """
    Drain the outbox right after a transition committed, when EVENTS_DISPATCH_INLINE is on.

    A database problem while draining leaves rows PENDING for
    `flask events dispatch`; the committed transition is not affected.
    """
    if not current_app.config.get("EVENTS_DISPATCH_INLINE", True):
        return None
    try:
        return dispatch_pending_events()
    except SQLAlchemyError:
        db.session.rollback()
        current_app.logger.exception("Inline event dispatch failed; events left pending")
        return None


def list_events(org_id: int | None = None, status: str | None = None, limit: int = 100) -> list[DomainEvent]:
    query = db.session.query(DomainEvent)
    if org_id is not None:
        query = query.filter_by(org_id=org_id)
    if status:
        query = query.filter_by(status=status)
    return query.order_by(DomainEvent.id.asc()).limit(limit).all()


def requeue_failed(org_id: int | None = None) -> int:
    """Move FAILED rows back to PENDING with a fresh attempt budget."""
    table = DomainEvent.__table__
    stmt = update(table).where(table.c.status == EVENT_FAILED)
    if org_id is not None:
        stmt = stmt.where(table.c.org_id == org_id)
    result = db.session.execute(stmt.values(status=EVENT_PENDING, attempts=0))
    db.session.commit()
    return result.rowcount
