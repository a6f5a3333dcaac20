from __future__ import annotations
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Optional, TypedDict, Union
import asyncio
import base64
import hashlib
import hmac
import json
import secrets
import time
import uuid

import stripe
from loguru import logger

from .config import MOCK_SECRET, STRIPE_SECRET_KEY, STRIPE_WEBHOOK_SECRET
from .errors import InvalidSignature, MalformedWebhook

MOCK_SIGNATURE_HEADER = "x-mockpay-signature"
STRIPE_SIGNATURE_HEADER = "stripe-signature"


# ----------------------------
# Webhook event variants
# ----------------------------
@dataclass(frozen=True)
class PaymentSucceeded:
    payment_reference: str
    charge_reference: Optional[str]
    event_id: Optional[str] = None


@dataclass(frozen=True)
class PaymentFailed:
    payment_reference: str
    reason: str
    event_id: Optional[str] = None


@dataclass(frozen=True)
class PaymentRequiresAction:
    payment_reference: str
    event_id: Optional[str] = None


@dataclass(frozen=True)
class Unhandled:
    event_type: str
    event_id: Optional[str] = None


WebhookEvent = Union[
    PaymentSucceeded, PaymentFailed, PaymentRequiresAction, Unhandled
]

SUCCEEDED = "payment_intent.succeeded"
FAILED = "payment_intent.payment_failed"
REQUIRES_ACTION = "payment_intent.requires_action"


def _intent(event: dict) -> dict:
    try:
        obj = event["data"]["object"]
    except (KeyError, TypeError):
        raise MalformedWebhook("webhook payload has no data.object")
    if not isinstance(obj, dict) or not obj.get("id"):
        raise MalformedWebhook("webhook payload has no payment reference")
    return obj


def parse_event(event: dict) -> WebhookEvent:
    """Map a processor event (Stripe event shape) to a WebhookEvent."""
    if not isinstance(event, dict) or not isinstance(event.get("type"), str):
        raise MalformedWebhook("webhook payload has no type")
    kind = event["type"]
    event_id = event.get("id")

    if kind == SUCCEEDED:
        pi = _intent(event)
        return PaymentSucceeded(
            payment_reference=pi["id"],
            charge_reference=pi.get("latest_charge"),
            event_id=event_id,
        )
    if kind == FAILED:
        pi = _intent(event)
        error = pi.get("last_payment_error") or {}
        return PaymentFailed(
            payment_reference=pi["id"],
            reason=error.get("message") or "unknown",
            event_id=event_id,
        )
    if kind == REQUIRES_ACTION:
        pi = _intent(event)
        return PaymentRequiresAction(
            payment_reference=pi["id"], event_id=event_id
        )
    return Unhandled(event_type=kind, event_id=event_id)


# ----------------------------
# Payment Adapter Interface
# ----------------------------
class CreatePaymentResult(TypedDict):
    payment_reference: str
    client_secret: str


class PaymentAdapter(ABC):
    # destination charges need the host's connected payout account
    uses_destination_charges = False

    @abstractmethod
    async def create_payment(
        self,
        *,
        amount_cents: int,
        currency: str,
        application_fee_cents: int,
        destination: Optional[str],
        metadata: Dict[str, str],
    ) -> CreatePaymentResult: ...

    @abstractmethod
    async def cancel_payment(self, payment_reference: str) -> None: ...

    # raises InvalidSignature / MalformedWebhook
    @abstractmethod
    def verify_webhook(self, payload: bytes, headers: dict) -> dict: ...

    def parse_event(self, event: dict) -> WebhookEvent:
        return parse_event(event)


def _loads(payload: bytes) -> dict:
    try:
        return json.loads(payload.decode())
    except (UnicodeDecodeError, json.JSONDecodeError):
        raise MalformedWebhook("Invalid JSON")


# ----------------------------
# MockPay implementation
# ----------------------------
class MockPay(PaymentAdapter):
    """In-process stand-in for the processor.

    Payments are just ids; webhooks are Stripe-shaped JSON signed with
    HMAC-SHA256 (base64) in the x-mockpay-signature header.
    """

    def __init__(self, secret: str = MOCK_SECRET) -> None:
        self.secret = secret

    async def create_payment(
        self,
        *,
        amount_cents: int,
        currency: str,
        application_fee_cents: int,
        destination: Optional[str],
        metadata: Dict[str, str],
    ) -> CreatePaymentResult:
        ref = f"mock_pi_{uuid.uuid4().hex}"
        return {
            "payment_reference": ref,
            "client_secret": f"{ref}_secret_{secrets.token_hex(12)}",
        }

    async def cancel_payment(self, payment_reference: str) -> None:
        return None

    def sign(self, payload: bytes) -> str:
        mac = hmac.new(self.secret.encode(), payload, hashlib.sha256).digest()
        return base64.b64encode(mac).decode()

    def verify_webhook(self, payload: bytes, headers: dict) -> dict:
        sig = headers.get(MOCK_SIGNATURE_HEADER)
        expected = self.sign(payload)
        if not sig or not hmac.compare_digest(expected, sig):
            raise InvalidSignature("Invalid signature")
        return _loads(payload)

    def build_event(
        self, kind: str, payment_reference: str,
        reason: Optional[str] = None,
    ) -> dict:
        """Stripe-shaped event; kind is succeeded | failed | requires_action."""
        intent: dict = {"id": payment_reference, "object": "payment_intent"}
        if kind == "succeeded":
            intent["latest_charge"] = f"mock_ch_{uuid.uuid4().hex[:24]}"
            event_type = SUCCEEDED
        elif kind == "failed":
            intent["last_payment_error"] = {
                "message": reason or "Your card was declined."
            }
            event_type = FAILED
        elif kind == "requires_action":
            event_type = REQUIRES_ACTION
        else:
            raise ValueError(f"unknown mock event kind: {kind}")
        return {
            "id": f"evt_{uuid.uuid4().hex}",
            "type": event_type,
            "created": int(time.time()),
            "data": {"object": intent},
        }

    def signed_delivery(self, event: dict) -> tuple[bytes, dict]:
        payload = json.dumps(event).encode()
        headers = {
            MOCK_SIGNATURE_HEADER: self.sign(payload),
            "content-type": "application/json",
        }
        return payload, headers


# ----------------------------
# Stripe implementation
# ----------------------------
class StripePay(PaymentAdapter):
    """PaymentIntents with destination charges to the host's account."""

    uses_destination_charges = True

    def __init__(
        self,
        api_key: str = STRIPE_SECRET_KEY,
        webhook_secret: str = STRIPE_WEBHOOK_SECRET,
    ) -> None:
        if not api_key or not webhook_secret:
            raise RuntimeError(
                "StripePay needs STRIPE_SECRET_KEY and STRIPE_WEBHOOK_SECRET"
            )
        stripe.api_key = api_key
        self.webhook_secret = webhook_secret

    async def create_payment(
        self,
        *,
        amount_cents: int,
        currency: str,
        application_fee_cents: int,
        destination: Optional[str],
        metadata: Dict[str, str],
    ) -> CreatePaymentResult:
        params = dict(
            amount=amount_cents,
            currency=currency,
            automatic_payment_methods={"enabled": True},
            application_fee_amount=application_fee_cents,
            metadata={**metadata, "platform": "boxoffice"},
        )
        if destination:
            params["transfer_data"] = {"destination": destination}
        # the stripe client is blocking
        intent = await asyncio.to_thread(stripe.PaymentIntent.create, **params)
        return {
            "payment_reference": intent.id,
            "client_secret": intent.client_secret,
        }

    async def cancel_payment(self, payment_reference: str) -> None:
        await asyncio.to_thread(stripe.PaymentIntent.cancel, payment_reference)

    def verify_webhook(self, payload: bytes, headers: dict) -> dict:
        sig = headers.get(STRIPE_SIGNATURE_HEADER)
        if not sig:
            raise InvalidSignature("Missing Stripe signature")
        try:
            stripe.Webhook.construct_event(payload, sig, self.webhook_secret)
        except stripe.error.SignatureVerificationError as e:
            logger.warning("stripe signature verification failed: {}", e)
            raise InvalidSignature("Invalid signature")
        except ValueError:
            raise MalformedWebhook("Invalid JSON")
        # plain dict view of the verified payload
        return _loads(payload)


def new_adapter(backend: str) -> PaymentAdapter:
    if backend == "stripe":
        return StripePay()
    if backend == "mock":
        return MockPay()
    raise RuntimeError(f"unknown PAYMENT_BACKEND: {backend}")
