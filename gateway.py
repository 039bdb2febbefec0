import json
import logging
from typing import Any, Dict, Optional

import stripe

from config import Settings
from errors import SignatureInvalid, UpstreamFailure, ValidationFailed

logger = logging.getLogger(__name__)

WEBHOOK_TOLERANCE = 300  # seconds


def _intent_view(intent) -> Dict[str, Any]:
    return {"id": intent.id, "client_secret": intent.client_secret, "status": intent.status}


class StripeGateway:
    """Thin wrapper around the Stripe SDK.

    Every call passes the API key explicitly; no global SDK state is touched.
    Provider errors surface as UpstreamFailure so they are never confused
    with validation problems.
    """

    def __init__(self, settings: Settings):
        self.api_key = settings.stripe_secret_key
        self.webhook_secret = settings.stripe_webhook_secret

    def _require_key(self) -> str:
        if not self.api_key:
            raise UpstreamFailure("Payment gateway not configured")
        return self.api_key

    def create_payment_intent(
        self, idempotency_key: str, amount_minor: int, currency: str, metadata: Dict[str, Any]
    ) -> Dict[str, Any]:
        """Create a payment intent, or get back the one already created for this key."""
        api_key = self._require_key()
        try:
            intent = stripe.PaymentIntent.create(
                amount=amount_minor,
                currency=currency,
                metadata={k: str(v) for k, v in metadata.items() if v is not None},
                automatic_payment_methods={"enabled": True},
                idempotency_key=idempotency_key,
                api_key=api_key,
            )
        except stripe.StripeError as e:
            logger.error("Stripe PaymentIntent.create failed for key %s: %s", idempotency_key, e)
            raise UpstreamFailure("Could not create the payment with the provider", detail=str(e))
        return _intent_view(intent)

    def retrieve_payment_intent(self, payment_intent_id: str) -> Dict[str, Any]:
        api_key = self._require_key()
        try:
            intent = stripe.PaymentIntent.retrieve(payment_intent_id, api_key=api_key)
        except stripe.StripeError as e:
            logger.error("Stripe PaymentIntent.retrieve failed for %s: %s", payment_intent_id, e)
            raise UpstreamFailure("Could not load the payment from the provider", detail=str(e))
        return _intent_view(intent)

    def create_refund(
        self,
        payment_intent_id: str,
        amount_minor: Optional[int] = None,
        idempotency_key: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> Dict[str, Any]:
        api_key = self._require_key()
        params: Dict[str, Any] = {"payment_intent": payment_intent_id}
        if amount_minor is not None:
            params["amount"] = amount_minor
        if reason:
            params["metadata"] = {"reason": reason}
        try:
            refund = stripe.Refund.create(idempotency_key=idempotency_key, api_key=api_key, **params)
        except stripe.StripeError as e:
            logger.error("Stripe Refund.create failed for %s: %s", payment_intent_id, e)
            raise UpstreamFailure("Could not issue the refund with the provider", detail=str(e))
        return {"id": refund.id, "status": refund.status}

    def retrieve_checkout_session(self, session_id: str) -> Dict[str, Any]:
        api_key = self._require_key()
        try:
            session = stripe.checkout.Session.retrieve(session_id, api_key=api_key)
        except stripe.StripeError as e:
            logger.error("Stripe checkout.Session.retrieve failed for %s: %s", session_id, e)
            raise UpstreamFailure("Could not load the checkout session from the provider", detail=str(e))
        return {
            "id": session.id,
            "payment_intent": session.payment_intent,
            "payment_status": session.payment_status,
        }

    def construct_event(self, raw_body: Optional[bytes], signature: Optional[str]) -> Dict[str, Any]:
        """Verify a webhook delivery against the raw bytes and return the event.

        Fails closed: a missing body, header or secret is a signature failure.
        """
        if not raw_body or not signature or not self.webhook_secret:
            raise SignatureInvalid()
        try:
            payload = raw_body.decode("utf-8") if isinstance(raw_body, bytes) else raw_body
        except UnicodeDecodeError as e:
            logger.warning("Rejected webhook with undecodable body: %s", e)
            raise SignatureInvalid(detail=str(e))
        try:
            stripe.WebhookSignature.verify_header(payload, signature, self.webhook_secret, WEBHOOK_TOLERANCE)
        except stripe.SignatureVerificationError as e:
            logger.warning("Rejected webhook with bad signature: %s", e)
            raise SignatureInvalid(detail=str(e))
        try:
            event = json.loads(payload)
        except ValueError as e:
            raise ValidationFailed("Webhook payload is not valid JSON", detail=str(e))
        if not isinstance(event, dict) or not event.get("id") or not event.get("type"):
            raise ValidationFailed("Webhook payload is not an event")
        return event
