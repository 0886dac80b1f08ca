"""Stripe payment intents over the REST API."""
import logging
from typing import Optional

import requests

from .errors import DependencyError, ValidationError

logger = logging.getLogger(__name__)


class StripeClient:
    base_url = "https://api.stripe.com/v1"

    def __init__(
        self,
        secret_key: str,
        currency: str = "bdt",
        timeout: float = 30,
        session: Optional[requests.Session] = None,
    ):
        self.secret_key = (secret_key or "").strip()
        self.currency = currency
        self.timeout = timeout
        self.session = session or requests.Session()

    def create_payment_intent(self, amount: int) -> str:
        """Create a card payment intent and return its client secret.

        ``amount`` is in the currency's minor unit (poysha for BDT).
        """
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise ValidationError("Amount must be a positive whole number of poysha.")
        if not self.secret_key:
            raise DependencyError("Payment configuration is incomplete. Please contact support.")

        payload = {
            "amount": amount,
            "currency": self.currency,
            "payment_method_types[]": "card",
        }
        try:
            response = self.session.post(
                f"{self.base_url}/payment_intents",
                data=payload,
                auth=(self.secret_key, ""),
                timeout=self.timeout,
            )
            data = response.json()
        except (requests.RequestException, ValueError) as exc:
            logger.error("Stripe request failed: %s", exc)
            raise DependencyError("Failed to reach the payment provider.")

        if response.status_code >= 400:
            error_message = (data.get("error") or {}).get("message") or "Payment provider error."
            logger.error("Stripe rejected payment intent: %s", error_message)
            raise DependencyError(error_message)

        client_secret = data.get("client_secret")
        if not client_secret:
            raise DependencyError("Payment provider returned no client secret.")
        return client_secret
