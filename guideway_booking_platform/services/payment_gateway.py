"""
Payment gateway collaborator.

``PaymentGateway`` is the narrow interface the ledger depends on;
``StripeGateway`` implements it with the Stripe SDK. Every network call runs
in a worker thread under the payment circuit breaker, which bounds it with
``payment_gateway_timeout_seconds``. Any failure or timeout surfaces as
``PaymentServiceError``: the outcome is unknown and callers must not advance
local state.
"""

import abc
import asyncio
import json
import logging
import time
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Optional

import stripe

from ..config import Settings, get_settings
from ..utils.circuit_breaker import CircuitBreaker, get_payment_circuit_breaker
from ..utils.exceptions import ExternalServiceError, PaymentServiceError, WebhookSignatureError
from ..utils.logging_config import log_performance

logger = logging.getLogger(__name__)


def to_minor_units(amount: Decimal) -> int:
    """Convert a Decimal amount to integer cents, rounding half up."""
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(amount: int) -> Decimal:
    return (Decimal(int(amount)) / 100).quantize(Decimal("0.01"))


@dataclass
class GatewayIntent:
    """Gateway-side view of a payment intent."""
    id: str
    status: str
    amount: int
    client_secret: Optional[str] = None
    last_error: Optional[str] = None


@dataclass
class GatewayRefund:
    id: str
    status: str
    amount: int


class PaymentGateway(abc.ABC):
    """Interface of the external payment processor.

    Implementations must be idempotent per ``idempotency_key`` and raise
    ``PaymentServiceError`` when the call failed or its outcome is unknown.
    """

    @abc.abstractmethod
    async def create_customer(self, email: str, name: str, metadata: Dict[str, str]) -> str:
        ...

    @abc.abstractmethod
    async def create_intent(
        self,
        amount: Decimal,
        currency: str,
        metadata: Dict[str, str],
        idempotency_key: str,
        customer_id: Optional[str] = None,
    ) -> GatewayIntent:
        ...

    @abc.abstractmethod
    async def retrieve_intent(self, intent_id: str) -> GatewayIntent:
        ...

    @abc.abstractmethod
    async def cancel_intent(self, intent_id: str, idempotency_key: str) -> GatewayIntent:
        ...

    @abc.abstractmethod
    async def refund(
        self,
        intent_id: str,
        amount: Decimal,
        idempotency_key: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> GatewayRefund:
        ...

    @abc.abstractmethod
    def construct_webhook_event(self, payload: bytes, signature: str) -> Dict[str, Any]:
        """Verify a webhook signature and return the decoded event."""


class StripeGateway(PaymentGateway):
    """Stripe implementation of the payment gateway."""

    def __init__(self, settings: Optional[Settings] = None, breaker: Optional[CircuitBreaker] = None):
        self.settings = settings or get_settings()
        self.breaker = breaker or get_payment_circuit_breaker()
        stripe.api_key = self.settings.stripe_secret_key
        if self.settings.stripe_api_version:
            stripe.api_version = self.settings.stripe_api_version
        if not self.settings.stripe_secret_key:
            logger.warning("Stripe secret key is not configured; gateway calls will fail")

    async def _call(self, operation: str, func, **kwargs) -> Any:
        start = time.perf_counter()
        try:
            return await self.breaker.call(asyncio.to_thread, func, **kwargs)
        except ExternalServiceError as e:
            logger.error(f"Stripe {operation} failed: {e.message}")
            raise PaymentServiceError(
                f"{operation} failed: {e.message}",
                details={"operation": operation, **e.details},
            ) from e
        finally:
            log_performance(f"stripe.{operation}", time.perf_counter() - start)

    @staticmethod
    def _intent(obj: Any) -> GatewayIntent:
        last_error = getattr(obj, "last_payment_error", None)
        return GatewayIntent(
            id=obj.id,
            status=obj.status,
            amount=obj.amount,
            client_secret=getattr(obj, "client_secret", None),
            last_error=getattr(last_error, "message", None) if last_error else None,
        )

    async def create_customer(self, email: str, name: str, metadata: Dict[str, str]) -> str:
        customer = await self._call(
            "create_customer",
            stripe.Customer.create,
            email=email,
            name=name,
            metadata=metadata,
            idempotency_key=f"customer:{metadata.get('user_id', email)}",
        )
        logger.info(f"Created Stripe customer {customer.id} for {email}")
        return customer.id

    async def create_intent(
        self,
        amount: Decimal,
        currency: str,
        metadata: Dict[str, str],
        idempotency_key: str,
        customer_id: Optional[str] = None,
    ) -> GatewayIntent:
        params: Dict[str, Any] = {
            "amount": to_minor_units(amount),
            "currency": currency,
            "metadata": metadata,
            "automatic_payment_methods": {"enabled": True},
            "idempotency_key": idempotency_key,
        }
        if customer_id:
            params["customer"] = customer_id

        intent = await self._call("create_intent", stripe.PaymentIntent.create, **params)
        return self._intent(intent)

    async def retrieve_intent(self, intent_id: str) -> GatewayIntent:
        intent = await self._call("retrieve_intent", stripe.PaymentIntent.retrieve, id=intent_id)
        return self._intent(intent)

    async def cancel_intent(self, intent_id: str, idempotency_key: str) -> GatewayIntent:
        intent = await self._call(
            "cancel_intent",
            stripe.PaymentIntent.cancel,
            intent=intent_id,
            idempotency_key=idempotency_key,
        )
        return self._intent(intent)

    async def refund(
        self,
        intent_id: str,
        amount: Decimal,
        idempotency_key: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> GatewayRefund:
        refund = await self._call(
            "refund",
            stripe.Refund.create,
            payment_intent=intent_id,
            amount=to_minor_units(amount),
            reason="requested_by_customer",
            metadata=metadata or {},
            idempotency_key=idempotency_key,
        )
        return GatewayRefund(id=refund.id, status=refund.status, amount=refund.amount)

    def construct_webhook_event(self, payload: bytes, signature: str) -> Dict[str, Any]:
        if not self.settings.stripe_webhook_secret:
            raise WebhookSignatureError("Webhook secret is not configured")
        try:
            stripe.Webhook.construct_event(payload, signature, self.settings.stripe_webhook_secret)
            return json.loads(payload)
        except stripe.SignatureVerificationError as e:
            raise WebhookSignatureError() from e
        except ValueError as e:
            raise WebhookSignatureError("Malformed webhook payload") from e
