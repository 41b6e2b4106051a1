"""
Stripe Billing Gateway
======================

Thin wrapper over the Stripe SDK for the two calls the webhook handler
needs: signature verification and subscription metadata lookup.

The subscription carries the provisioning parameters chosen at checkout
(productId, hostname, osVersionId, sshKey, userPassword, userId,
productPrice, billingCycle); invoices do not always carry them.

Stripe Webhooks: https://docs.stripe.com/webhooks
"""

import logging
from typing import Any, Dict, Optional

import stripe

from .config import StripeConfig
from .exceptions import PaymentGatewayError, Unauthorized

logger = logging.getLogger(__name__)


class StripeGateway:
    """
    Stripe access for the payment webhook.

    Usage:
        gateway = StripeGateway(config.stripe)
        event = gateway.construct_event(payload, signature)
    """

    def __init__(self, config: StripeConfig):
        self.webhook_secret = config.webhook_secret
        stripe.api_key = config.secret_key
        stripe.default_http_client = stripe.RequestsClient(timeout=config.timeout)

    def construct_event(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """
        Verify webhook signature and return event.

        Args:
            payload: Raw request body
            signature: Stripe-Signature header

        Returns:
            Verified Stripe Event

        Raises:
            Unauthorized: missing/invalid signature or unparsable payload
        """
        if not self.webhook_secret:
            raise Unauthorized("Webhook secret not configured")
        if not signature:
            raise Unauthorized("Missing Stripe-Signature header")

        try:
            return stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except stripe.SignatureVerificationError as e:
            raise Unauthorized(f"Invalid webhook signature: {e}")
        except ValueError as e:
            raise Unauthorized(f"Invalid webhook payload: {e}")

    def get_subscription_metadata(self, subscription_id: str) -> Dict[str, str]:
        """Fetch the metadata attached to a subscription at checkout."""
        try:
            subscription = stripe.Subscription.retrieve(subscription_id)
        except stripe.StripeError as e:
            logger.error(f"Failed to retrieve subscription {subscription_id}: {e}")
            raise PaymentGatewayError(
                f"Could not retrieve subscription {subscription_id}",
                {"subscription_id": subscription_id},
            ) from e

        return dict(subscription.get("metadata") or {})
