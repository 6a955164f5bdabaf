import json

from src.domain.events import parse_webhook_body
from src.pipeline.secondary_events import build_secondary_row, record_secondary_event


def _event(event_type, **data):
    return parse_webhook_body(json.dumps({"type": event_type, "data": data}).encode())[0]


def test_click_inserts_one_row_with_link(fake_supabase):
    db = fake_supabase()
    event = _event(
        "email.clicked",
        email_id="em-1",
        broadcast_id="bc-1",
        to=["a@example.com"],
        click={"link": "https://example.com/a", "timestamp": "2025-03-04T14:10:00Z", "ipAddress": "203.0.113.1"},
    )

    assert record_secondary_event(db, event, broadcast_id="job-1") is True

    rows = db.tables["email_click_events"]
    assert len(rows) == 1
    assert rows[0]["broadcast_id"] == "job-1"
    assert rows[0]["clicked_link"] == "https://example.com/a"
    assert rows[0]["ip_address"] == "203.0.113.1"
    assert rows[0]["clicked_at"].startswith("2025-03-04T14:10:00")
    assert "email_open_events" not in db.tables


def test_click_without_link_uses_unknown(fake_supabase):
    db = fake_supabase()

    record_secondary_event(db, _event("email.clicked", email_id="em-2"), broadcast_id=None)

    row = db.tables["email_click_events"][0]
    assert row["clicked_link"] == "unknown"
    assert row["broadcast_id"] is None


def test_open_inserts_open_row(fake_supabase):
    db = fake_supabase()
    event = _event("email.opened", email_id="em-3", to=["c@example.com"], open={"userAgent": "Mail/1.0"})

    record_secondary_event(db, event, broadcast_id="job-1")

    row = db.tables["email_open_events"][0]
    assert row["recipient_email"] == "c@example.com"
    assert row["user_agent"] == "Mail/1.0"


def test_other_event_types_write_nothing(fake_supabase):
    db = fake_supabase()
    assert build_secondary_row(_event("email.delivered"), "job-1") is None
    assert record_secondary_event(db, _event("email.delivered"), broadcast_id="job-1") is False
    assert db.writes() == []


def test_insert_failure_is_swallowed(fake_supabase):
    db = fake_supabase(fail_on={("insert", "email_click_events")})

    assert record_secondary_event(db, _event("email.clicked", email_id="em-4"), broadcast_id="job-1") is False
