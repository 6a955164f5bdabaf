import httpx
import pytest

from src.providers.webhook_forwarder import client as forwarder


class _Response:
    def __init__(self, status_code, reason_phrase=""):
        self.status_code = status_code
        self.reason_phrase = reason_phrase


def _deliver(monkeypatch, outcome):
    def _fake_post(*, url, content, headers, timeout_seconds):
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    monkeypatch.setattr(forwarder, "_post", _fake_post)
    return forwarder.deliver_envelope(
        url="https://hooks.example.com/in",
        envelope={"event_type": "email.opened"},
        secret_key=None,
        user_agent="WhopMail-Webhook-Forwarder/1.0",
        timeout_seconds=2.0,
    )


def test_2xx_returns_status(monkeypatch):
    assert _deliver(monkeypatch, _Response(204)) == 204


@pytest.mark.parametrize(
    "status_code,category,retryable",
    [
        (500, "transient", True),
        (503, "transient", True),
        (429, "transient", True),
        (408, "transient", True),
        (400, "terminal", False),
        (404, "terminal", False),
        (302, "unknown", False),
    ],
)
def test_http_error_categories(monkeypatch, status_code, category, retryable):
    with pytest.raises(forwarder.WebhookDeliveryError) as exc_info:
        _deliver(monkeypatch, _Response(status_code))
    assert exc_info.value.status_code == status_code
    assert exc_info.value.category == category
    assert exc_info.value.retryable is retryable
    assert str(exc_info.value) == f"HTTP {status_code}"


def test_reason_phrase_is_included(monkeypatch):
    with pytest.raises(forwarder.WebhookDeliveryError, match="HTTP 502: Bad Gateway"):
        _deliver(monkeypatch, _Response(502, "Bad Gateway"))


def test_timeout_is_transient(monkeypatch):
    with pytest.raises(forwarder.WebhookDeliveryError) as exc_info:
        _deliver(monkeypatch, httpx.ConnectTimeout("connect timed out"))
    assert str(exc_info.value).startswith("Timed out after 2.0s")
    assert exc_info.value.category == "transient"


def test_connectivity_error_is_transient(monkeypatch):
    with pytest.raises(forwarder.WebhookDeliveryError) as exc_info:
        _deliver(monkeypatch, httpx.ConnectError("name resolution failed"))
    assert str(exc_info.value) == "Connectivity error: name resolution failed"
    assert exc_info.value.retryable is True


def test_envelope_serialization_is_compact():
    assert forwarder.serialize_envelope({"a": 1, "b": [1, 2]}) == b'{"a":1,"b":[1,2]}'
