"""
Value objects exchanged with the card gateway.

Amounts are integer minor units (agorot). Nothing in here knows about the
gateway wire format.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional, Protocol, runtime_checkable

from pydantic import BaseModel, Field, field_validator

from myfamily_payments.integrations.errors import GatewayDeclinedError

if TYPE_CHECKING:
    from myfamily_payments.integrations.installments import InstallmentPlan

_SEPARATORS = re.compile(r"[\s-]")

MASK_CHAR = "X"
MIN_MASKABLE_LENGTH = 8


def mask_card_number(card_number: str) -> str:
    """
    Keep the first and last four digits and mask the middle.

    Numbers shorter than eight digits have no safe masking window and are
    returned unchanged.
    """
    if len(card_number) < MIN_MASKABLE_LENGTH:
        return card_number
    middle = MASK_CHAR * (len(card_number) - MIN_MASKABLE_LENGTH)
    return f"{card_number[:4]}{middle}{card_number[-4:]}"


class CardDetails(BaseModel):
    """Raw card credentials as typed by the card holder."""

    card_number: str = Field(..., min_length=1, description="Card number, digits only")
    exp_date: str = Field(..., description="Expiry as MMYY")
    cvv: Optional[str] = Field(default=None, description="Card verification value")
    holder_id: Optional[str] = Field(default=None, description="Card holder national ID")

    model_config = {"frozen": True}

    @field_validator("card_number")
    @classmethod
    def validate_card_number(cls, v: str) -> str:
        """Strip separators and require digits only."""
        digits = _SEPARATORS.sub("", v)
        if not digits.isdigit():
            raise ValueError("Card number must be numeric")
        return digits

    @field_validator("exp_date")
    @classmethod
    def validate_exp_date(cls, v: str) -> str:
        """Require exactly four digits MMYY with a real month."""
        v = v.strip()
        if len(v) != 4 or not v.isdigit():
            raise ValueError("Expiry must be exactly 4 digits (MMYY)")
        if not 1 <= int(v[:2]) <= 12:
            raise ValueError("Expiry month must be between 01 and 12")
        return v

    @field_validator("cvv")
    @classmethod
    def validate_cvv(cls, v: Optional[str]) -> Optional[str]:
        """CVV is optional but numeric when present."""
        if v is None or v == "":
            return None
        if not v.isdigit() or not 3 <= len(v) <= 4:
            raise ValueError("CVV must be 3 or 4 digits")
        return v

    @property
    def masked_number(self) -> str:
        return mask_card_number(self.card_number)

    def __repr__(self) -> str:
        # Never echo the full number
        return f"CardDetails(card_number='…{self.card_number[-4:]}', exp_date='{self.exp_date}')"

    __str__ = __repr__


@dataclass(frozen=True)
class GatewayResult:
    """Normalized outcome of a charge request."""

    approved: bool
    return_code: Optional[int] = None
    return_message: Optional[str] = None
    reference_number: Optional[str] = None
    masked_card: Optional[str] = None
    card_brand: Optional[str] = None
    transaction_id: Optional[str] = None

    def raise_for_decline(self) -> None:
        """Raise ``GatewayDeclinedError`` unless the charge was approved."""
        if not self.approved:
            raise GatewayDeclinedError(
                self.return_message or "Transaction declined",
                return_code=self.return_code,
            )


@dataclass(frozen=True)
class TokenizeResult:
    """Outcome of exchanging card details for a reusable token."""

    success: bool
    token: Optional[str] = None
    masked_card: Optional[str] = None
    message: Optional[str] = None


@runtime_checkable
class PaymentGateway(Protocol):
    """What the payments core needs from a card gateway."""

    async def tokenize_card(self, card: CardDetails) -> TokenizeResult:
        ...

    async def charge(
        self,
        amount: int,
        description: str,
        card: Optional[CardDetails] = None,
        token: Optional[str] = None,
        installments: Optional[InstallmentPlan] = None,
    ) -> GatewayResult:
        ...
