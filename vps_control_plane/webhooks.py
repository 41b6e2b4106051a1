"""
Payment Webhook Handler
=======================

Turns verified ``invoice.payment_succeeded`` events into either a renewal
or a brand new VPS.

- Existing order for the subscription: extend paid_until by one billing
  period. A redelivered invoice (same invoice id) changes nothing.
- No order, provisioning metadata on the subscription: create the pending
  Order + ServiceRecord and schedule the orchestrator in the background.
- Anything else: log and acknowledge, so Stripe does not retry forever.

The handler always acknowledges once the signature is valid; provisioning
outcome never reaches Stripe.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, Optional

from .billing import StripeGateway
from .exceptions import ControlPlaneError
from .models import NewServiceRequest, Order, ProvisioningSecrets, utcnow
from .orchestrator import ProvisioningOrchestrator
from .records import ServiceRecordStore

logger = logging.getLogger(__name__)

PAYMENT_SUCCEEDED = "invoice.payment_succeeded"

# Subscription metadata keys that must be present to provision; the last
# two become the cloud-init login credentials
REQUIRED_METADATA = ("productId", "userId", "hostname", "osVersionId", "sshKey", "userPassword")

# Schedules a coroutine function with its arguments, e.g. BackgroundTasks.add_task
Scheduler = Callable[..., None]


def _invoice_subscription_id(invoice: Dict[str, Any]) -> Optional[str]:
    """Subscription id from an invoice, old or new API shape."""
    subscription = invoice.get("subscription")
    if subscription:
        # Expanded invoices carry the whole object
        return subscription if isinstance(subscription, str) else subscription.get("id")

    parent = invoice.get("parent") or {}
    details = parent.get("subscription_details") or {}
    return details.get("subscription")


def _parse_amount(value: Optional[str]) -> Decimal:
    try:
        return Decimal(value or "0")
    except InvalidOperation:
        logger.warning(f"Unparsable productPrice {value!r}, recording 0")
        return Decimal("0")


class PaymentWebhookHandler:
    """Idempotent handler for Stripe payment events."""

    def __init__(
        self,
        store: ServiceRecordStore,
        gateway: StripeGateway,
        orchestrator: ProvisioningOrchestrator,
        billing_period_days: int = 30,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.gateway = gateway
        self.orchestrator = orchestrator
        self.billing_period = timedelta(days=billing_period_days)
        self.clock = clock

    async def handle(
        self,
        payload: bytes,
        signature: Optional[str],
        schedule: Scheduler,
    ) -> Dict[str, Any]:
        """
        Verify and process one webhook delivery.

        Args:
            payload: Raw request body
            signature: Stripe-Signature header
            schedule: Runs provisioning after the response is sent

        Raises:
            Unauthorized: signature could not be verified
            PaymentGatewayError: subscription lookup failed (Stripe will retry)
        """
        event = self.gateway.construct_event(payload, signature)
        event_type = event["type"]
        logger.info(f"Stripe webhook received: {event_type}")

        if event_type != PAYMENT_SUCCEEDED:
            return {"received": True}

        invoice = event["data"]["object"]
        invoice_id = invoice.get("id")
        subscription_id = _invoice_subscription_id(invoice)
        if not subscription_id:
            logger.info(f"Invoice {invoice_id} has no subscription, ignoring")
            return {"received": True}

        log_extra = {"subscription_id": subscription_id}

        # ---- renewal ----
        order = await self.store.get_order_by_subscription(subscription_id)
        if order is not None:
            await self._renew(order, invoice_id)
            return {"received": True}

        # ---- first payment ----
        metadata = await asyncio.to_thread(self.gateway.get_subscription_metadata, subscription_id)
        missing = [key for key in REQUIRED_METADATA if not metadata.get(key)]
        if missing:
            logger.warning(
                f"Payment succeeded for {subscription_id} but no order exists and "
                f"provisioning metadata is missing ({', '.join(missing)})",
                extra=log_extra,
            )
            return {"received": True}

        request = NewServiceRequest(
            subscription_id=subscription_id,
            user_id=metadata["userId"],
            product_id=metadata["productId"],
            hostname=metadata["hostname"],
            os_version_id=metadata["osVersionId"],
            total_amount=_parse_amount(metadata.get("productPrice")),
            paid_until=self.clock() + self.billing_period,
            billing_cycle=metadata.get("billingCycle"),
            invoice_id=invoice_id,
        )
        created = await self.store.create_pending_service(request)
        if created is None:
            # A concurrent delivery won the unique subscription key
            logger.info(f"Order for {subscription_id} already created, skipping", extra=log_extra)
            return {"received": True}

        _, service = created
        secrets = ProvisioningSecrets(
            ssh_key=metadata["sshKey"],
            password=metadata["userPassword"],
        )
        schedule(self.provision_in_background, service.id, secrets)

        logger.info(
            f"Scheduled provisioning of {service.hostname} (service {service.id})",
            extra={**log_extra, "service_id": service.id},
        )
        return {"received": True, "service_id": service.id}

    async def _renew(self, order: Order, invoice_id: Optional[str]) -> None:
        log_extra = {"subscription_id": order.subscription_id}

        if invoice_id and invoice_id == order.last_invoice_id:
            logger.info(f"Invoice {invoice_id} already applied to order {order.id}", extra=log_extra)
            return

        paid_until = max(order.paid_until, self.clock()) + self.billing_period
        await self.store.extend_order(order.id, paid_until, invoice_id)
        logger.info(f"Extended order {order.id} until {paid_until.isoformat()}", extra=log_extra)

    async def provision_in_background(self, service_id: str, secrets: ProvisioningSecrets) -> None:
        """Background entry point. Failures are logged, never re-raised to Stripe."""
        try:
            await self.orchestrator.provision(service_id, secrets)
        except ControlPlaneError as e:
            logger.error(
                f"Provisioning of service {service_id} failed: {e}",
                extra={"service_id": service_id},
            )
        except Exception as e:
            # Nothing awaits this task, so unexpected errors end here too
            logger.error(
                f"Provisioning of service {service_id} failed unexpectedly: {e}",
                extra={"service_id": service_id},
                exc_info=True,
            )
