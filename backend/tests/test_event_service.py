# Overview: Pytest coverage for the domain event outbox and dispatcher.

from datetime import timedelta

from sqlalchemy.exc import IntegrityError

from invoicecore.extensions import db
from invoicecore.models import Customer, DomainEvent
from invoicecore.models.events import EVENT_DISPATCHED, EVENT_DISPATCHING, EVENT_FAILED, EVENT_PENDING
from invoicecore.services import event_service
from invoicecore.time_utils import utcnow


def _record(db_session, org, event_type="invoice.created", aggregate_id=1):
    event = event_service.record_event(
        org_id=org.id,
        event_type=event_type,
        aggregate_type="invoice",
        aggregate_id=aggregate_id,
        payload={"invoice_id": aggregate_id},
    )
    db_session.commit()
    return event.id


class TestDispatcher:

    def test_subscribers_receive_events_in_order(self, db_session, app, org):
        received = []
        dispatcher = event_service.get_dispatcher(app)
        dispatcher.subscribe("invoice.created", lambda message: received.append(("created", message["aggregate_id"])))
        dispatcher.subscribe(event_service.ALL_EVENTS, lambda message: received.append(("any", message["event_type"])))

        _record(db_session, org, aggregate_id=1)
        _record(db_session, org, event_type="invoice.cancelled", aggregate_id=1)

        stats = dispatcher.dispatch_pending()

        assert stats == {"dispatched": 2, "failed": 0, "retrying": 0}
        assert received == [
            ("created", 1),
            ("any", "invoice.created"),
            ("any", "invoice.cancelled"),
        ]
        statuses = {e.status for e in event_service.list_events(org.id)}
        assert statuses == {EVENT_DISPATCHED}

    def test_failing_subscriber_retries_then_parks(self, db_session, app, org):
        dispatcher = event_service.get_dispatcher(app)
        dispatcher.max_attempts = 2

        def broken(message):
            raise RuntimeError("webhook unreachable")

        dispatcher.subscribe("invoice.created", broken)
        event_id = _record(db_session, org)

        assert dispatcher.dispatch_pending() == {"dispatched": 0, "failed": 0, "retrying": 1}
        event = db_session.get(DomainEvent, event_id)
        assert event.status == EVENT_PENDING
        assert event.last_error == "RuntimeError: webhook unreachable"

        assert dispatcher.dispatch_pending() == {"dispatched": 0, "failed": 1, "retrying": 0}
        assert db_session.get(DomainEvent, event_id).status == EVENT_FAILED

        dispatcher.unsubscribe("invoice.created", broken)
        assert event_service.requeue_failed(org.id) == 1
        assert dispatcher.dispatch_pending()["dispatched"] == 1
        event = db_session.get(DomainEvent, event_id)
        assert event.status == EVENT_DISPATCHED
        assert event.last_error is None

    def test_claimed_rows_are_skipped(self, db_session, app, org):
        event_id = _record(db_session, org)
        db_session.get(DomainEvent, event_id).status = EVENT_DISPATCHING
        db_session.commit()

        stats = event_service.get_dispatcher(app).dispatch_pending()

        assert stats == {"dispatched": 0, "failed": 0, "retrying": 0}
        assert db_session.get(DomainEvent, event_id).status == EVENT_DISPATCHING

    def test_limit(self, db_session, app, org):
        for aggregate_id in range(3):
            _record(db_session, org, aggregate_id=aggregate_id + 1)

        assert event_service.get_dispatcher(app).dispatch_pending(limit=2)["dispatched"] == 2
        assert len(event_service.list_events(org.id, status=EVENT_PENDING)) == 1


class TestLifecycleEvents:

    def test_subscriber_failure_never_reaches_caller(self, db_session, app, org, make_invoice):
        def broken(message):
            raise RuntimeError("notification service down")

        event_service.get_dispatcher(app).subscribe(event_service.ALL_EVENTS, broken)

        invoice = make_invoice()

        assert invoice.status == "issued"
        events = event_service.list_events(org.id)
        assert len(events) == 1
        assert events[0].status == EVENT_PENDING
        assert events[0].attempts == 1

    def test_payload_describes_transition(self, db_session, app, org, customer, make_invoice):
        received = []
        event_service.get_dispatcher(app).subscribe("invoice.created", received.append)

        invoice = make_invoice()

        payload = received[0]["payload"]
        assert payload["invoice_id"] == invoice.id
        assert payload["invoice_number"] == "INV-000001"
        assert payload["customer_id"] == customer.id
        assert payload["grand_total_cents"] == 41300
        assert payload["actor_user_id"] == 7

    def test_inline_dispatch_can_be_disabled(self, db_session, app, org, make_invoice, monkeypatch):
        received = []
        event_service.get_dispatcher(app).subscribe(event_service.ALL_EVENTS, received.append)
        monkeypatch.setitem(app.config, "EVENTS_DISPATCH_INLINE", False)

        make_invoice()

        assert received == []
        assert [e.status for e in event_service.list_events(org.id)] == [EVENT_PENDING]
        event_service.get_dispatcher(app).dispatch_pending()
        assert len(received) == 1


class TestBrokenSubscriberSession:
    """Subscribers share the session; whatever they break must not strand the row."""

    def test_failed_flush_in_subscriber_is_recorded(self, db_session, app, org):
        dispatcher = event_service.get_dispatcher(app)

        def writes_invalid_row(message):
            db.session.add(Customer(org_id=message["org_id"], name=None))
            db.session.flush()

        dispatcher.subscribe("invoice.created", writes_invalid_row)
        event_id = _record(db_session, org)

        assert dispatcher.dispatch_pending() == {"dispatched": 0, "failed": 0, "retrying": 1}
        event = db_session.get(DomainEvent, event_id)
        assert event.status == EVENT_PENDING
        assert event.attempts == 1
        assert event.last_error.startswith("IntegrityError")
        assert event.claimed_at is None
        assert db_session.query(Customer).count() == 0

        dispatcher.unsubscribe("invoice.created", writes_invalid_row)
        assert dispatcher.dispatch_pending()["dispatched"] == 1
        assert db_session.get(DomainEvent, event_id).status == EVENT_DISPATCHED

    def test_subscriber_leaving_session_unusable_is_recorded(self, db_session, app, org):
        dispatcher = event_service.get_dispatcher(app)
        dispatcher.max_attempts = 1

        def hides_its_error(message):
            db.session.add(Customer(org_id=message["org_id"], name=None))
            try:
                db.session.flush()
            except IntegrityError:
                pass

        dispatcher.subscribe(event_service.ALL_EVENTS, hides_its_error)
        event_id = _record(db_session, org)

        assert dispatcher.dispatch_pending() == {"dispatched": 0, "failed": 1, "retrying": 0}
        event = db_session.get(DomainEvent, event_id)
        assert event.status == EVENT_FAILED
        assert event.attempts == 1

        dispatcher.unsubscribe(event_service.ALL_EVENTS, hides_its_error)
        assert event_service.requeue_failed(org.id) == 1
        assert dispatcher.dispatch_pending()["dispatched"] == 1

    def test_stale_claim_is_released_and_delivered(self, db_session, app, org):
        received = []
        dispatcher = event_service.get_dispatcher(app)
        dispatcher.subscribe("invoice.created", received.append)
        event_id = _record(db_session, org)
        event = db_session.get(DomainEvent, event_id)
        event.status = EVENT_DISPATCHING
        event.claimed_at = utcnow() - timedelta(seconds=dispatcher.claim_timeout_seconds + 60)
        db_session.commit()

        assert dispatcher.dispatch_pending()["dispatched"] == 1
        assert [message["id"] for message in received] == [event_id]
        assert db_session.get(DomainEvent, event_id).status == EVENT_DISPATCHED

    def test_recent_claim_is_left_alone(self, db_session, app, org):
        dispatcher = event_service.get_dispatcher(app)
        event_id = _record(db_session, org)
        event = db_session.get(DomainEvent, event_id)
        event.status = EVENT_DISPATCHING
        event.claimed_at = utcnow()
        db_session.commit()

        assert dispatcher.release_stale_claims() == 0
        assert db_session.get(DomainEvent, event_id).status == EVENT_DISPATCHING
