import json
from datetime import datetime

from app.api.problem_details import PROBLEM_TYPE_RATE_LIMIT
from app.domain.bookings.service import build_fingerprint
from app.settings import settings


def _payload(event_id: str, price: int = 10000, **meeting_overrides) -> dict:
    meeting_data = {
        "startTime": "2030-05-01T09:00:00Z",
        "guestEmail": "Guest@Example.com",
        "guestName": "  Grace Guest ",
        "timezone": "Europe/Berlin",
    }
    meeting_data.update(meeting_overrides)
    return {"eventId": event_id, "price": price, "meetingData": meeting_data}


def test_payment_intent_returns_client_secret_and_embeds_metadata(client, seed_catalog, stripe_stub):
    catalog = seed_catalog()

    response = client.post("/v1/payments/intent", json=_payload(catalog.event_id))

    assert response.status_code == 200, response.text
    assert response.json() == {"clientSecret": "pi_1_secret"}

    call = stripe_stub.intents[0]
    assert call["amount_cents"] == 10000
    assert call["currency"] == "eur"
    metadata = call["metadata"]
    assert metadata["eventId"] == catalog.event_id
    assert metadata["expertId"] == catalog.expert_id
    assert metadata["fingerprint"] == f"{catalog.event_id}:guest@example.com:2030-05-01T09:00:00.000Z"
    meeting_data = json.loads(metadata["meetingData"])
    assert meeting_data["guestName"] == "Grace Guest"
    assert meeting_data["timezone"] == "Europe/Berlin"
    assert all(isinstance(value, str) and len(value) <= 500 for value in metadata.values())


def test_payment_intent_rejects_non_positive_price(client, seed_catalog, stripe_stub):
    catalog = seed_catalog()

    response = client.post("/v1/payments/intent", json=_payload(catalog.event_id, price=0))

    assert response.status_code == 400
    assert stripe_stub.intents == []


def test_payment_intent_rejects_price_mismatch(client, seed_catalog, stripe_stub):
    catalog = seed_catalog()

    response = client.post("/v1/payments/intent", json=_payload(catalog.event_id, price=9999))

    assert response.status_code == 400
    assert response.json()["detail"] == "Price does not match the event price"
    assert stripe_stub.intents == []


def test_payment_intent_unknown_event_is_not_found(client, stripe_stub):
    response = client.post("/v1/payments/intent", json=_payload("missing-event"))

    assert response.status_code == 404
    assert response.json()["title"] == "Not Found"


def test_payment_intent_inactive_event_rejected(client, seed_catalog, stripe_stub):
    catalog = seed_catalog(is_active=False)

    response = client.post("/v1/payments/intent", json=_payload(catalog.event_id))

    assert response.status_code == 400


def test_payment_intent_validates_meeting_data(client, seed_catalog, stripe_stub):
    catalog = seed_catalog()

    response = client.post("/v1/payments/intent", json=_payload(catalog.event_id, guestEmail="not-an-email"))

    assert response.status_code == 422
    body = response.json()
    assert body["title"] == "Validation Error"
    assert any(error["field"].endswith("guestEmail") for error in body["errors"])


def test_payment_intent_provider_failure_maps_to_502(client, seed_catalog, stripe_stub):
    catalog = seed_catalog()

    def _raise(**kwargs):
        raise RuntimeError("stripe down")

    stripe_stub.create_payment_intent = _raise

    response = client.post("/v1/payments/intent", json=_payload(catalog.event_id))

    assert response.status_code == 502
    assert response.json()["title"] == "Upstream Failure"


def test_payment_intent_requires_configured_provider(client, seed_catalog):
    catalog = seed_catalog()
    settings.stripe_secret_key = None

    response = client.post("/v1/payments/intent", json=_payload(catalog.event_id))

    assert response.status_code == 503


def test_payment_intent_is_rate_limited(client, seed_catalog, stripe_stub):
    catalog = seed_catalog()
    settings.payment_intent_rate_limit = 2

    statuses = [client.post("/v1/payments/intent", json=_payload(catalog.event_id)).status_code for _ in range(3)]

    assert statuses == [200, 200, 429]
    assert len(stripe_stub.intents) == 2
    limited = client.post("/v1/payments/intent", json=_payload(catalog.event_id))
    assert limited.json()["type"] == PROBLEM_TYPE_RATE_LIMIT


def test_fingerprint_strips_disallowed_characters():
    fingerprint = build_fingerprint("evt 1", "A+B@Example.COM", datetime(2030, 1, 1))

    assert fingerprint == "evt1:ab@example.com:2030-01-01T00:00:00.000Z"
