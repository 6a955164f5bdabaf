import json

import pytest

from src.domain.events import parse_webhook_body
from src.pipeline.counters import apply_to_broadcast, apply_to_send_record, counter_for


def _event(event_type, **data):
    return parse_webhook_body(json.dumps({"type": event_type, "data": data}).encode())[0]


def _db(fake_supabase, **job):
    row = {
        "id": "job-1",
        "user_id": "user_1",
        "resend_broadcast_id": "bc-1",
        "total_members": 100,
        "success_count": 0,
        "opened_count": 0,
        "clicked_count": 0,
        "error_count": 0,
        "complained_count": 0,
        "failed_count": 0,
        "last_event": None,
    }
    row.update(job)
    return fake_supabase(tables={"broadcast_jobs": [row]})


@pytest.mark.parametrize(
    "event_type,counter",
    [
        ("email.delivered", "success_count"),
        ("email.opened", "opened_count"),
        ("email.clicked", "clicked_count"),
        ("email.bounced", "error_count"),
        ("email.complained", "complained_count"),
        ("email.failed", "failed_count"),
        ("email.delivery_delayed", None),
        ("email.sent", None),
        ("email.unsubscribed", None),
        ("contact.created", None),
    ],
)
def test_counter_mapping(event_type, counter):
    assert counter_for(_event(event_type)) == counter


def test_delivered_increments_success_count(fake_supabase):
    db = _db(fake_supabase, success_count=5)

    assert apply_to_broadcast(db, "job-1", _event("email.delivered")) is True

    row = db.tables["broadcast_jobs"][0]
    assert row["success_count"] == 6
    assert row["last_event"] == "delivered"
    assert row["last_event_at"]


def test_delivered_at_ceiling_leaves_success_count_unchanged(fake_supabase):
    db = _db(fake_supabase, total_members=10, success_count=10)

    apply_to_broadcast(db, "job-1", _event("email.delivered"))

    row = db.tables["broadcast_jobs"][0]
    assert row["success_count"] == 10
    assert row["last_event"] == "delivered"


def test_opens_and_clicks_are_not_capped(fake_supabase):
    db = _db(fake_supabase, total_members=1, opened_count=1, clicked_count=1)

    apply_to_broadcast(db, "job-1", _event("email.opened"))
    apply_to_broadcast(db, "job-1", _event("email.opened"))
    apply_to_broadcast(db, "job-1", _event("email.clicked"))

    row = db.tables["broadcast_jobs"][0]
    assert row["opened_count"] == 3
    assert row["clicked_count"] == 2


def test_delivery_delayed_only_moves_last_event(fake_supabase):
    db = _db(fake_supabase, success_count=3)

    apply_to_broadcast(db, "job-1", _event("email.delivery_delayed"))

    row = db.tables["broadcast_jobs"][0]
    assert row["last_event"] == "delivery_delayed"
    assert row["success_count"] == 3
    assert row["opened_count"] == 0


def test_unknown_type_records_other_label(fake_supabase):
    db = _db(fake_supabase)

    apply_to_broadcast(db, "job-1", _event("email.scheduled"))

    assert db.tables["broadcast_jobs"][0]["last_event"] == "other:email.scheduled"


def test_store_failure_returns_false(fake_supabase):
    db = _db(fake_supabase)
    db.fail_on.add(("rpc", "apply_broadcast_event"))

    assert apply_to_broadcast(db, "job-1", _event("email.delivered")) is False
    assert db.tables["broadcast_jobs"][0]["success_count"] == 0


def test_send_record_status_follows_canonical_type(fake_supabase):
    db = fake_supabase(tables={"email_analytics_sends": [{"id": "send-1", "status": "queued"}]})
    record = db.tables["email_analytics_sends"][0]

    assert apply_to_send_record(db, record, _event("email.bounced")) is True
    assert db.tables["email_analytics_sends"][0]["status"] == "bounced"

    assert apply_to_send_record(db, record, _event("contact.created")) is False
    assert db.tables["email_analytics_sends"][0]["status"] == "bounced"
