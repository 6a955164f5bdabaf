def _subscription(sub_id, whop_user_id="user_1", **overrides):
    row = {
        "id": sub_id,
        "whop_user_id": whop_user_id,
        "webhook_url": f"https://{sub_id}.example.com/hook",
        "webhook_name": "My Webhook",
        "events": ["email.opened"],
        "secret_key": "s3cret",
        "is_active": True,
        "retry_count": 0,
        "created_at": "2025-03-01T00:00:00+00:00",
    }
    row.update(overrides)
    return row


def test_list_user_webhooks_hides_secrets(fake_supabase, make_client):
    db = fake_supabase(
        tables={
            "user_webhooks": [
                _subscription("wh-1"),
                _subscription("wh-2", created_at="2025-03-02T00:00:00+00:00", secret_key=None),
                _subscription("wh-3", whop_user_id="user_2"),
            ]
        }
    )
    client = make_client(db)

    response = client.get("/api/user-webhooks", params={"whop_user_id": "user_1"})

    assert response.status_code == 200
    webhooks = response.json()["webhooks"]
    assert [item["id"] for item in webhooks] == ["wh-2", "wh-1"]
    assert [item["has_secret"] for item in webhooks] == [False, True]
    assert all("secret_key" not in item for item in webhooks)


def test_list_user_webhooks_requires_user(fake_supabase, make_client):
    response = make_client(fake_supabase()).get("/api/user-webhooks")
    assert response.status_code == 400


def test_create_user_webhook_defaults(fake_supabase, make_client):
    db = fake_supabase()
    client = make_client(db)

    response = client.post(
        "/api/user-webhooks",
        json={"whop_user_id": "user_1", "webhook_url": "https://hooks.example.com/in", "secret_key": "s3cret"},
    )

    assert response.status_code == 200
    webhook = response.json()["webhook"]
    assert webhook["webhook_name"] == "My Webhook"
    assert webhook["events"] == ["email.opened", "email.clicked", "email.delivered"]
    assert webhook["has_secret"] is True
    assert db.tables["user_webhooks"][0]["secret_key"] == "s3cret"


def test_create_user_webhook_rejects_unknown_events(fake_supabase, make_client):
    db = fake_supabase()
    client = make_client(db)

    response = client.post(
        "/api/user-webhooks",
        json={"whop_user_id": "user_1", "webhook_url": "https://hooks.example.com/in", "events": ["email.opened", "email.teleported"]},
    )

    assert response.status_code == 400
    assert "email.teleported" in response.json()["detail"]
    assert db.writes() == []


def test_create_user_webhook_rejects_invalid_url(fake_supabase, make_client):
    response = make_client(fake_supabase()).post(
        "/api/user-webhooks",
        json={"whop_user_id": "user_1", "webhook_url": "not a url"},
    )
    assert response.status_code == 422


def test_list_deliveries_for_owned_webhook(fake_supabase, make_client):
    db = fake_supabase(
        tables={
            "user_webhooks": [_subscription("wh-1")],
            "webhook_events": [
                {
                    "id": "log-1",
                    "user_webhook_id": "wh-1",
                    "event_type": "email.opened",
                    "status": "failed",
                    "error_message": "HTTP 500",
                    "last_attempt_at": "2025-03-04T10:00:00+00:00",
                },
                {
                    "id": "log-2",
                    "user_webhook_id": "wh-1",
                    "event_type": "email.opened",
                    "status": "sent",
                    "last_attempt_at": "2025-03-04T11:00:00+00:00",
                },
                {
                    "id": "log-3",
                    "user_webhook_id": "wh-other",
                    "event_type": "email.opened",
                    "status": "sent",
                    "last_attempt_at": "2025-03-04T12:00:00+00:00",
                },
            ],
        }
    )
    client = make_client(db)

    response = client.get("/api/user-webhooks/wh-1/deliveries", params={"whop_user_id": "user_1", "limit": 10})

    assert response.status_code == 200
    assert [item["id"] for item in response.json()] == ["log-2", "log-1"]
    assert response.json()[1]["error_message"] == "HTTP 500"


def test_list_deliveries_for_foreign_webhook_is_404(fake_supabase, make_client):
    db = fake_supabase(tables={"user_webhooks": [_subscription("wh-1")]})
    client = make_client(db)

    response = client.get("/api/user-webhooks/wh-1/deliveries", params={"whop_user_id": "user_2"})

    assert response.status_code == 404
