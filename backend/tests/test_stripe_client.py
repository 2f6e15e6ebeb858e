from types import SimpleNamespace

import pytest

from boxrental.domain.errors import ProviderPermanentError, ProviderTransientError
from boxrental.infra.stripe_client import StripeClient, call_stripe_client_method, resolve_client
from boxrental.infra.stripe_resilience import is_transient_stripe_error, stripe_circuit
from boxrental.settings import settings


class APIConnectionError(Exception):
    pass


class CardError(Exception):
    pass


class StripeHTTPError(Exception):
    def __init__(self, http_status):
        super().__init__(f"status {http_status}")
        self.http_status = http_status


def _sdk(**overrides):
    calls: list[tuple[str, tuple, dict]] = []

    def _record(name, result):
        def _fn(*args, **kwargs):
            calls.append((name, args, kwargs))
            if isinstance(result, Exception):
                raise result
            if callable(result):
                return result(*args, **kwargs)
            return result

        return _fn

    handlers = {
        "PaymentIntent.create": {"id": "pi_1", "client_secret": "pi_1_secret", "amount": 60000, "currency": "sek"},
        "PaymentIntent.retrieve": {
            "id": "pi_1",
            "status": "succeeded",
            "amount": 60000,
            "amount_received": 60000,
            "currency": "sek",
            "latest_charge": {"id": "ch_1"},
            "metadata": {"kind": "booking", "v": "1"},
            "livemode": False,
        },
        "PaymentIntent.modify": {"id": "pi_1"},
        "Charge.list": {"data": [{"id": "ch_9"}]},
        "Charge.retrieve": {"id": "ch_1", "amount": 60000, "amount_refunded": 1000, "currency": "sek"},
        "Refund.create": {"id": "re_1", "status": "succeeded", "amount": 500},
        "Webhook.construct_event": {"id": "evt_1"},
    }
    handlers.update(overrides)
    sdk = SimpleNamespace(
        api_key=None,
        PaymentIntent=SimpleNamespace(
            create=_record("PaymentIntent.create", handlers["PaymentIntent.create"]),
            retrieve=_record("PaymentIntent.retrieve", handlers["PaymentIntent.retrieve"]),
            modify=_record("PaymentIntent.modify", handlers["PaymentIntent.modify"]),
        ),
        Charge=SimpleNamespace(
            list=_record("Charge.list", handlers["Charge.list"]),
            retrieve=_record("Charge.retrieve", handlers["Charge.retrieve"]),
        ),
        Refund=SimpleNamespace(create=_record("Refund.create", handlers["Refund.create"])),
        Webhook=SimpleNamespace(construct_event=_record("Webhook.construct_event", handlers["Webhook.construct_event"])),
    )
    return sdk, calls


def _client(sdk, **kwargs):
    kwargs.setdefault("max_attempts", 3)
    return StripeClient(
        secret_key="sk_test_123",
        webhook_secret="whsec_test",
        stripe_sdk=sdk,
        backoff_seconds=0,
        backoff_max_seconds=0,
        **kwargs,
    )


def test_transient_classification():
    assert is_transient_stripe_error(APIConnectionError())
    assert is_transient_stripe_error(TimeoutError())
    assert is_transient_stripe_error(StripeHTTPError(503))
    assert is_transient_stripe_error(StripeHTTPError(429))
    assert not is_transient_stripe_error(StripeHTTPError(402))
    assert not is_transient_stripe_error(CardError())


@pytest.mark.anyio
async def test_create_payment_intent_forwards_idempotency_key():
    sdk, calls = _sdk()
    created = await _client(sdk).create_payment_intent(
        amount_cents=60000,
        currency="SEK",
        metadata={"kind": "booking"},
        idempotency_key="booking-abc",
        receipt_email="a@example.com",
    )
    assert created.id == "pi_1"
    assert created.currency == "SEK"
    _, _, kwargs = calls[0]
    assert kwargs["idempotency_key"] == "booking-abc"
    assert kwargs["currency"] == "sek"
    assert kwargs["receipt_email"] == "a@example.com"
    assert sdk.api_key == "sk_test_123"


@pytest.mark.anyio
async def test_retrieve_payment_intent_normalizes_fields():
    sdk, _ = _sdk()
    intent = await _client(sdk).retrieve_payment_intent("pi_1")
    assert intent.succeeded
    assert intent.latest_charge_ref == "ch_1"
    assert intent.currency == "SEK"
    assert intent.metadata == {"kind": "booking", "v": "1"}


@pytest.mark.anyio
async def test_latest_charge_and_charge_lookup():
    sdk, _ = _sdk()
    client = _client(sdk)
    assert await client.retrieve_latest_charge("pi_1") == "ch_9"
    charge = await client.retrieve_charge("ch_1")
    assert charge.refundable_cents == 59000


@pytest.mark.anyio
async def test_transient_errors_are_retried():
    outcomes = [APIConnectionError("reset"), {"id": "re_2", "status": "succeeded", "amount": 500}]

    def _refund(**kwargs):
        outcome = outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    sdk, calls = _sdk(**{"Refund.create": _refund})
    refund = await _client(sdk).issue_refund(charge_ref="ch_1", amount_cents=500, idempotency_key="booking-r")
    assert refund.id == "re_2"
    assert len(calls) == 2
    assert {call[2]["idempotency_key"] for call in calls} == {"booking-r"}


@pytest.mark.anyio
async def test_exhausted_retries_raise_transient_error():
    sdk, calls = _sdk(**{"PaymentIntent.retrieve": APIConnectionError("down")})
    with pytest.raises(ProviderTransientError):
        await _client(sdk).retrieve_payment_intent("pi_1")
    assert len(calls) == 3


@pytest.mark.anyio
async def test_permanent_errors_are_not_retried():
    sdk, calls = _sdk(**{"Refund.create": CardError("declined")})
    with pytest.raises(ProviderPermanentError):
        await _client(sdk).issue_refund(charge_ref="ch_1", amount_cents=500, idempotency_key="booking-r")
    assert len(calls) == 1
    assert stripe_circuit.state == "closed"


@pytest.mark.anyio
async def test_open_circuit_surfaces_as_transient_without_calling_stripe():
    sdk, calls = _sdk(**{"PaymentIntent.retrieve": APIConnectionError("down")})
    client = _client(sdk, max_attempts=settings.stripe_circuit_failure_threshold)
    with pytest.raises(ProviderTransientError):
        await client.retrieve_payment_intent("pi_1")
    assert stripe_circuit.state == "open"

    attempts = len(calls)
    with pytest.raises(ProviderTransientError):
        await client.retrieve_payment_intent("pi_1")
    assert len(calls) == attempts


@pytest.mark.anyio
async def test_missing_secret_key_is_permanent(monkeypatch):
    monkeypatch.setattr(settings, "stripe_secret_key", None)
    sdk, calls = _sdk()
    client = StripeClient(secret_key=None, webhook_secret=None, stripe_sdk=sdk)
    with pytest.raises(ProviderPermanentError):
        await client.retrieve_payment_intent("pi_1")
    assert calls == []


@pytest.mark.anyio
async def test_verify_webhook_requires_signature():
    sdk, _ = _sdk()
    client = _client(sdk)
    with pytest.raises(ValueError):
        await client.verify_webhook(b"{}", None)
    assert await client.verify_webhook(b"{}", "t=1,v1=abc") == {"id": "evt_1"}


@pytest.mark.anyio
async def test_mutations_require_idempotency_key():
    sdk, calls = _sdk()
    with pytest.raises(ValueError):
        await call_stripe_client_method(
            _client(sdk), "issue_refund", charge_ref="ch_1", amount_cents=100, idempotency_key=""
        )
    assert calls == []


@pytest.mark.anyio
async def test_reads_do_not_require_idempotency_key():
    sdk, _ = _sdk()
    intent = await call_stripe_client_method(_client(sdk), "retrieve_payment_intent", "pi_1")
    assert intent.id == "pi_1"


def test_resolve_client_prefers_state_override():
    fake = object()
    assert resolve_client(SimpleNamespace(stripe_client=fake)) is fake
    services = SimpleNamespace(stripe_client="from-services")
    assert resolve_client(SimpleNamespace(stripe_client=None, services=services)) == "from-services"
