"""
Simulated payment gateways.

No network calls are made: each gateway fabricates identifiers in the shape
the real provider uses and settles confirmations with a configurable
success probability.
"""

import logging
import random
import string
import time
from typing import Dict, Optional

from pydantic import BaseModel, Field

from ticketing.config import Settings

logger = logging.getLogger(__name__)

LOWER_ALPHABET = string.digits + string.ascii_lowercase
UPPER_ALPHABET = string.digits + string.ascii_uppercase

ONLINE_GATEWAYS = ("stripe", "razorpay", "paypal")
OFFLINE_METHODS = ("cash", "bank_transfer")

GATEWAY_PRIORITY = ["stripe", "razorpay", "paypal"]
CURRENCY_GATEWAY_MAP = {
    "USD": ["stripe", "paypal"],
    "EUR": ["stripe", "paypal"],
    "GBP": ["stripe", "paypal"],
    "INR": ["razorpay", "stripe"],
    "CAD": ["stripe", "paypal"],
    "AUD": ["stripe", "paypal"],
}

PLACEHOLDER_CREDENTIALS = {
    "stripe": "sk_test_your_stripe_secret_key",
    "razorpay": "rzp_test_your_razorpay_key_id",
    "paypal": "your_paypal_client_id",
}


class UnsupportedGateway(ValueError):
    pass


class GatewayResult(BaseModel):
    success: bool
    gateway: str
    transaction_id: Optional[str] = None
    client_secret: Optional[str] = None
    response_code: str = ""
    response_message: str = ""
    raw_response: dict = Field(default_factory=dict)


def _millis() -> int:
    return int(time.time() * 1000)


def random_token(rng: random.Random, length: int, upper: bool = False) -> str:
    alphabet = UPPER_ALPHABET if upper else LOWER_ALPHABET
    return "".join(rng.choice(alphabet) for _ in range(length))


def generate_payment_id(rng: Optional[random.Random] = None) -> str:
    rng = rng or random.SystemRandom()
    return f"PAY{_millis()}{random_token(rng, 6, upper=True)}"


def generate_refund_id(rng: Optional[random.Random] = None) -> str:
    rng = rng or random.SystemRandom()
    return f"REF{_millis()}{random_token(rng, 6, upper=True)}"


class PaymentGateway():
    name = ""
    currency = "USD"

    def __init__(self,
                 credential: str,
                 mode: str = "test",
                 success_rate: float = 0.95,
                 rng: Optional[random.Random] = None):
        self.credential = credential
        self.mode = mode
        self.success_rate = success_rate
        self.rng = rng or random.Random()

    @property
    def is_configured(self) -> bool:
        return bool(self.credential
                    ) and self.credential != PLACEHOLDER_CREDENTIALS.get(
                        self.name)

    def _settles(self) -> bool:
        return self.rng.random() < self.success_rate

    def _declined(self, reference: str, code: str) -> GatewayResult:
        logger.info("%s declined %s (%s)", self.name, reference, code)
        return GatewayResult(success=False,
                             gateway=self.name,
                             transaction_id=reference,
                             response_code=code,
                             response_message="Payment was declined",
                             raw_response={
                                 "id": reference,
                                 "status": "failed"
                             })

    async def create_intent(self, amount: float, currency: str,
                            reference: str) -> GatewayResult:
        raise NotImplementedError

    async def confirm(self, intent_id: str, amount: float) -> GatewayResult:
        raise NotImplementedError

    async def refund(self, transaction_id: str, amount: float) -> GatewayResult:
        raise NotImplementedError


class StripeGateway(PaymentGateway):
    name = "stripe"
    currency = "USD"

    async def create_intent(self, amount, currency, reference):
        intent_id = f"pi_{_millis()}_{random_token(self.rng, 9)}"
        client_secret = f"{intent_id}_secret_{random_token(self.rng, 9)}"
        logger.info("stripe payment intent %s for %s", intent_id, reference)
        return GatewayResult(success=True,
                             gateway=self.name,
                             transaction_id=intent_id,
                             client_secret=client_secret,
                             response_code="requires_payment_method",
                             response_message="Payment intent created",
                             raw_response={
                                 "id": intent_id,
                                 "amount": round(amount * 100),
                                 "currency": currency.lower(),
                                 "status": "requires_payment_method",
                                 "metadata": {
                                     "reference": reference
                                 },
                             })

    async def confirm(self, intent_id, amount):
        if not self._settles():
            return self._declined(intent_id, "card_declined")
        return GatewayResult(success=True,
                             gateway=self.name,
                             transaction_id=intent_id,
                             response_code="succeeded",
                             response_message="Payment succeeded",
                             raw_response={
                                 "id": intent_id,
                                 "status": "succeeded",
                                 "amount_received": round(amount * 100),
                             })

    async def refund(self, transaction_id, amount):
        refund_id = f"re_{_millis()}_{random_token(self.rng, 9)}"
        return GatewayResult(success=True,
                             gateway=self.name,
                             transaction_id=refund_id,
                             response_code="succeeded",
                             response_message="Refund succeeded",
                             raw_response={
                                 "id": refund_id,
                                 "amount": round(amount * 100),
                                 "status": "succeeded",
                                 "payment_intent": transaction_id,
                             })


class RazorpayGateway(PaymentGateway):
    name = "razorpay"
    currency = "INR"

    async def create_intent(self, amount, currency, reference):
        order_id = f"order_{_millis()}_{random_token(self.rng, 9)}"
        logger.info("razorpay order %s for %s", order_id, reference)
        return GatewayResult(success=True,
                             gateway=self.name,
                             transaction_id=order_id,
                             client_secret=order_id,
                             response_code="created",
                             response_message="Order created",
                             raw_response={
                                 "id": order_id,
                                 "amount": round(amount * 100),
                                 "currency": currency.upper(),
                                 "receipt": reference,
                                 "status": "created",
                             })

    async def confirm(self, intent_id, amount):
        if not self._settles():
            return self._declined(intent_id, "BAD_REQUEST_ERROR")
        payment_id = f"pay_{_millis()}_{random_token(self.rng, 9)}"
        return GatewayResult(success=True,
                             gateway=self.name,
                             transaction_id=payment_id,
                             response_code="captured",
                             response_message="Payment captured",
                             raw_response={
                                 "id": payment_id,
                                 "order_id": intent_id,
                                 "status": "captured",
                             })

    async def refund(self, transaction_id, amount):
        refund_id = f"rfnd_{_millis()}_{random_token(self.rng, 9)}"
        return GatewayResult(success=True,
                             gateway=self.name,
                             transaction_id=refund_id,
                             response_code="processed",
                             response_message="Refund processed",
                             raw_response={
                                 "id": refund_id,
                                 "amount": round(amount * 100),
                                 "status": "processed",
                                 "payment_id": transaction_id,
                             })


class PayPalGateway(PaymentGateway):
    name = "paypal"
    currency = "USD"

    async def create_intent(self, amount, currency, reference):
        order_id = f"PAY-{_millis()}-{random_token(self.rng, 9, upper=True)}"
        logger.info("paypal order %s for %s", order_id, reference)
        return GatewayResult(success=True,
                             gateway=self.name,
                             transaction_id=order_id,
                             client_secret=order_id,
                             response_code="CREATED",
                             response_message="Order created",
                             raw_response={
                                 "id": order_id,
                                 "status": "CREATED",
                                 "intent": "CAPTURE",
                                 "purchase_units": [{
                                     "amount": {
                                         "currency_code": currency,
                                         "value": f"{amount:.2f}",
                                     },
                                     "description": reference,
                                 }],
                             })

    async def confirm(self, intent_id, amount):
        if not self._settles():
            return self._declined(intent_id, "INSTRUMENT_DECLINED")
        capture_id = f"CAPTURE-{_millis()}-{random_token(self.rng, 9, upper=True)}"
        return GatewayResult(success=True,
                             gateway=self.name,
                             transaction_id=capture_id,
                             response_code="COMPLETED",
                             response_message="Order captured",
                             raw_response={
                                 "id": capture_id,
                                 "status": "COMPLETED",
                                 "order_id": intent_id,
                             })

    async def refund(self, transaction_id, amount):
        refund_id = f"REFUND-{_millis()}-{random_token(self.rng, 9, upper=True)}"
        return GatewayResult(success=True,
                             gateway=self.name,
                             transaction_id=refund_id,
                             response_code="COMPLETED",
                             response_message="Refund completed",
                             raw_response={
                                 "id": refund_id,
                                 "status": "COMPLETED",
                                 "capture_id": transaction_id,
                             })


class PaymentGatewayFactory():
    """
    Builds gateways from the settings; one rng is shared so tests can seed
    every settlement at once
    """

    def __init__(self, settings: Settings, rng: Optional[random.Random] = None):
        self.settings = settings
        self.rng = rng or random.Random()

    def create(self, name: str) -> PaymentGateway:
        name = (name or "").lower()
        rate = self.settings.payment_success_rate
        if name == "stripe":
            return StripeGateway(self.settings.stripe_secret_key,
                                 self.settings.stripe_mode, rate, self.rng)
        if name == "razorpay":
            return RazorpayGateway(self.settings.razorpay_key_id,
                                   self.settings.razorpay_mode, rate,
                                   self.rng)
        if name == "paypal":
            return PayPalGateway(self.settings.paypal_client_id,
                                 self.settings.paypal_mode, rate, self.rng)
        raise UnsupportedGateway(f"Unsupported payment gateway: {name}")

    def for_currency(self, currency: str) -> str:
        return gateway_for_currency(currency, self.settings.default_gateway)

    def status(self) -> Dict[str, dict]:
        status = {}
        for name in ONLINE_GATEWAYS:
            gateway = self.create(name)
            status[name] = {
                "enabled": gateway.is_configured,
                "mode": gateway.mode,
                "currency": gateway.currency,
            }
        return status


def gateway_for_currency(currency: str, default: str = "stripe") -> str:
    preferred = CURRENCY_GATEWAY_MAP.get((currency or "").upper())
    if preferred:
        return preferred[0]
    return default
