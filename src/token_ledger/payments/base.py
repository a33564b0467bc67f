from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Dict, Optional
from uuid import uuid4

from pydantic import BaseModel


class Checkout(BaseModel):
    """A hosted checkout the customer is redirected to."""

    reference: str
    url: str
    external_reference: str
    amount_tokens: int
    currency_amount: int


class PaymentGateway(ABC):
    """
    External payment collaborator.

    `create_checkout` returns an opaque reference; the gateway later reports
    `payment_confirmed(reference, amount)` at least once, in no particular
    order. Connectivity problems raise `CollaboratorUnavailable`.
    """

    @abstractmethod
    async def create_checkout(
        self,
        amount_tokens: int,
        currency_amount: int,
        external_reference: str,
        description: str,
        payer_email: Optional[str] = None,
    ) -> Checkout:
        ...


class InMemoryPaymentGateway(PaymentGateway):
    """
    Hands out fake checkout references. Used for tests and local development.
    """

    def __init__(self, base_url: str = "https://checkout.example.invalid/pay") -> None:
        self._base_url = base_url.rstrip("/")
        self.checkouts: Dict[str, Checkout] = {}

    async def create_checkout(
        self,
        amount_tokens: int,
        currency_amount: int,
        external_reference: str,
        description: str,
        payer_email: Optional[str] = None,
    ) -> Checkout:
        reference = f"pref-{uuid4().hex}"
        checkout = Checkout(
            reference=reference,
            url=f"{self._base_url}?pref_id={reference}",
            external_reference=external_reference,
            amount_tokens=amount_tokens,
            currency_amount=currency_amount,
        )
        self.checkouts[reference] = checkout
        return checkout
