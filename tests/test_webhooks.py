import hashlib
import hmac
import json
import time

import pytest
import stripe
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from kinddraw.main import app as fastapi_app
from kinddraw.config import Settings, get_settings
from kinddraw.database import Base, get_db
from kinddraw.errors import PersistenceError
from kinddraw.models import Order

SQLALCHEMY_DATABASE_URL = "sqlite:///./test_webhooks.db"
engine = create_engine(SQLALCHEMY_DATABASE_URL, connect_args={
                       "check_same_thread": False})
TestingSessionLocal = sessionmaker(
    autocommit=False, autoflush=False, bind=engine)

WEBHOOK_SECRET = "whsec_test_secret"


def sign(payload: bytes, secret: str = WEBHOOK_SECRET) -> str:
    """Build a Stripe-Signature header for the payload."""
    timestamp = int(time.time())
    signed = f"{timestamp}.".encode() + payload
    signature = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def event_body(event_type: str, obj: dict, event_id: str = "evt_1") -> bytes:
    return json.dumps({
        "id": event_id,
        "object": "event",
        "type": event_type,
        "data": {"object": obj},
    }).encode()


def checkout_session(**overrides) -> dict:
    session = {
        "id": "cs_test_abc",
        "object": "checkout.session",
        "payment_status": "paid",
        "amount_total": 10000,
        "currency": "usd",
        "metadata": {"campaignId": "abc123", "packEntries": "130"},
    }
    session.update(overrides)
    return session


def override_get_db():
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


def all_orders():
    db = TestingSessionLocal()
    orders = db.query(Order).order_by(Order.id).all()
    db.close()
    return orders


@pytest.fixture(autouse=True)
def setup_db():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def settings():
    return Settings(
        stripe_secret_key="sk_test_123",
        stripe_webhook_secret=WEBHOOK_SECRET,
        database_url=SQLALCHEMY_DATABASE_URL,
    )


@pytest.fixture
def client(settings):
    fastapi_app.dependency_overrides[get_settings] = lambda: settings
    fastapi_app.dependency_overrides[get_db] = override_get_db
    with TestClient(fastapi_app) as c:
        yield c
    fastapi_app.dependency_overrides.clear()


@pytest.fixture
def deliver(client):
    def _deliver(event_type, obj, event_id="evt_1"):
        payload = event_body(event_type, obj, event_id)
        return client.post(
            "/webhooks/stripe",
            content=payload,
            headers={"stripe-signature": sign(payload), "content-type": "application/json"}
        )
    return _deliver


def test_webhook_liveness(client):
    response = client.get("/webhooks/stripe")
    assert response.status_code == 200
    assert response.text == "ok"


def test_completed_paid_session_creates_order(deliver):
    response = deliver("checkout.session.completed", checkout_session())

    assert response.status_code == 200
    assert response.text == "ok"

    orders = all_orders()
    assert len(orders) == 1
    order = orders[0]
    assert order.stripe_session_id == "cs_test_abc"
    assert order.campaign_id == "abc123"
    assert order.page_id == "abc123"
    assert order.entries == 130
    assert order.amount_cents == 10000
    assert order.currency == "usd"
    assert order.status == "paid"
    assert order.discount_cents is None
    assert order.promo_code_id is None


def test_redelivery_keeps_one_row_with_latest_fields(deliver):
    deliver("checkout.session.completed", checkout_session())
    deliver("checkout.session.completed", checkout_session(amount_total=9000, currency="USD"))

    orders = all_orders()
    assert len(orders) == 1
    assert orders[0].amount_cents == 9000
    assert orders[0].currency == "usd"


@pytest.mark.parametrize("sequence", [
    ("checkout.session.async_payment_succeeded", "checkout.session.completed"),
    ("checkout.session.completed", "checkout.session.async_payment_succeeded"),
])
def test_async_and_completed_in_either_order(deliver, sequence):
    for i, event_type in enumerate(sequence):
        deliver(event_type, checkout_session(), event_id=f"evt_{i}")

    orders = all_orders()
    assert len(orders) == 1
    assert (orders[0].campaign_id, orders[0].entries, orders[0].amount_cents, orders[0].status) == \
        ("abc123", 130, 10000, "paid")


def test_completed_but_unpaid_session_is_not_recorded(deliver):
    response = deliver("checkout.session.completed", checkout_session(payment_status="unpaid"))

    assert response.status_code == 200
    assert all_orders() == []


def test_async_success_records_session_without_paid_status(deliver):
    deliver("checkout.session.async_payment_succeeded", checkout_session(payment_status=None))

    assert all_orders()[0].status == "completed"


def test_free_checkout_uses_metadata_entries(deliver):
    deliver("checkout.session.completed", checkout_session(
        payment_status="no_payment_required",
        amount_total=0,
        total_details={
            "amount_discount": 10000,
            "breakdown": {"discounts": [
                {"amount": 10000, "discount": {"id": "di_1", "promotion_code": "promo_free"}}
            ]},
        },
    ))

    order = all_orders()[0]
    assert order.entries == 130
    assert order.amount_cents == 0
    assert order.status == "no_payment_required"
    assert order.discount_cents == 10000
    assert order.promo_code_id == "promo_free"


def test_entries_fall_back_to_whole_dollars(deliver):
    deliver("checkout.session.completed", checkout_session(amount_total=500, metadata={"campaign": "abc123"}))

    assert all_orders()[0].entries == 5


def test_session_without_entries_or_amount_is_skipped(deliver):
    response = deliver("checkout.session.completed", checkout_session(amount_total=0, metadata={}))

    assert response.status_code == 200
    assert all_orders() == []


def test_session_without_campaign_goes_to_default(deliver):
    deliver("checkout.session.completed", checkout_session(metadata={"packEntries": "10"}))

    assert all_orders()[0].campaign_id == "default"


def test_unhandled_event_type_is_ignored(deliver):
    response = deliver("customer.created", {"id": "cus_1"})

    assert response.status_code == 200
    assert all_orders() == []


def test_refund_marks_order_refunded(deliver, mocker):
    deliver("checkout.session.completed", checkout_session())
    linked = mocker.Mock()
    linked.id = "cs_test_abc"
    session_list = mocker.patch("stripe.checkout.Session.list", return_value=mocker.Mock(data=[linked]))

    response = deliver("refund.created", {"id": "re_1", "payment_intent": "pi_123"}, event_id="evt_2")

    assert response.status_code == 200
    session_list.assert_called_once_with(payment_intent="pi_123", limit=1, api_key="sk_test_123")
    order = all_orders()[0]
    assert order.status == "refunded"
    assert (order.entries, order.amount_cents, order.currency, order.campaign_id) == (130, 10000, "usd", "abc123")


def test_redelivered_payment_does_not_undo_refund(deliver, mocker):
    deliver("checkout.session.completed", checkout_session())
    linked = mocker.Mock()
    linked.id = "cs_test_abc"
    mocker.patch("stripe.checkout.Session.list", return_value=mocker.Mock(data=[linked]))
    deliver("charge.refunded", {"id": "ch_1", "payment_intent": "pi_123"}, event_id="evt_2")

    deliver("checkout.session.completed", checkout_session(), event_id="evt_3")

    assert all_orders()[0].status == "refunded"


def test_refund_without_matching_session_is_noop(deliver, mocker):
    deliver("checkout.session.completed", checkout_session())
    mocker.patch("stripe.checkout.Session.list", return_value=mocker.Mock(data=[]))

    response = deliver("charge.refunded", {"id": "ch_1", "payment_intent": "pi_unknown"}, event_id="evt_2")

    assert response.status_code == 200
    assert all_orders()[0].status == "paid"


def test_refund_without_payment_intent_skips_lookup(deliver, mocker):
    session_list = mocker.patch("stripe.checkout.Session.list")

    response = deliver("charge.refunded", {"id": "ch_1", "payment_intent": None})

    assert response.status_code == 200
    session_list.assert_not_called()


def test_refund_lookup_failure_still_acknowledged(deliver, mocker):
    mocker.patch("stripe.checkout.Session.list",
                 side_effect=stripe.APIConnectionError("Stripe unreachable"))

    response = deliver("charge.refunded", {"id": "ch_1", "payment_intent": "pi_123"})

    assert response.status_code == 200


def test_persistence_failure_still_acknowledged(deliver, mocker):
    mocker.patch("kinddraw.ledger.upsert_order", side_effect=PersistenceError("database is down"))

    response = deliver("checkout.session.completed", checkout_session())

    assert response.status_code == 200
    assert response.text == "ok"


def test_tampered_payload_is_rejected(client):
    payload = event_body("checkout.session.completed", checkout_session())
    header = sign(payload)
    tampered = payload.replace(b'"amount_total": 10000', b'"amount_total": 10001')

    response = client.post("/webhooks/stripe", content=tampered, headers={"stripe-signature": header})

    assert response.status_code == 400
    assert response.json()["error"] == "Bad signature"
    assert all_orders() == []


def test_wrong_secret_is_rejected(client):
    payload = event_body("checkout.session.completed", checkout_session())

    response = client.post(
        "/webhooks/stripe",
        content=payload,
        headers={"stripe-signature": sign(payload, secret="whsec_other")}
    )

    assert response.status_code == 400
    assert all_orders() == []


def test_missing_signature_header_is_rejected(client):
    payload = event_body("checkout.session.completed", checkout_session())

    response = client.post("/webhooks/stripe", content=payload)

    assert response.status_code == 400
    assert all_orders() == []


@pytest.mark.parametrize("settings", [
    Settings(stripe_secret_key="sk_test_123", database_url=SQLALCHEMY_DATABASE_URL),
    Settings(stripe_webhook_secret=WEBHOOK_SECRET, database_url=SQLALCHEMY_DATABASE_URL),
])
def test_missing_stripe_configuration(deliver):
    response = deliver("checkout.session.completed", checkout_session())

    assert response.status_code == 500
    assert all_orders() == []


def test_missing_database_configuration(client):
    fastapi_app.dependency_overrides.pop(get_db)
    fastapi_app.dependency_overrides[get_settings] = lambda: Settings(
        stripe_secret_key="sk_test_123", stripe_webhook_secret=WEBHOOK_SECRET,
    )
    payload = event_body("checkout.session.completed", checkout_session())

    response = client.post("/webhooks/stripe", content=payload, headers={"stripe-signature": sign(payload)})

    assert response.status_code == 500
    assert response.json()["error"] == "Missing DATABASE_URL"


def test_unreachable_database_still_acknowledged(client, tmp_path, caplog):
    fastapi_app.dependency_overrides.pop(get_db)
    fastapi_app.dependency_overrides[get_settings] = lambda: Settings(
        stripe_secret_key="sk_test_123",
        stripe_webhook_secret=WEBHOOK_SECRET,
        database_url=f"sqlite:///{tmp_path}/missing_dir/kinddraw.db",
    )
    payload = event_body("checkout.session.completed", checkout_session())

    response = client.post("/webhooks/stripe", content=payload, headers={"stripe-signature": sign(payload)})

    assert response.status_code == 200
    assert response.text == "ok"
    assert "acknowledged without a ledger write" in caplog.text


def test_verified_event_carries_plain_dicts():
    from kinddraw.webhooks import verify_event

    payload = event_body("checkout.session.completed", checkout_session(
        total_details={"breakdown": {"discounts": [{"discount": {"id": "di_1"}}]}},
    ))

    event = verify_event(payload, sign(payload), WEBHOOK_SECRET)

    assert event.id == "evt_1"
    assert event.type == "checkout.session.completed"
    assert type(event.data_object) is dict
    assert type(event.data_object["metadata"]) is dict
    assert event.data_object["total_details"]["breakdown"]["discounts"][0]["discount"]["id"] == "di_1"
