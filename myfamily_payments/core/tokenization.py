"""One-time exchange of card details for a reusable gateway token."""
from typing import Optional

import structlog

from myfamily_payments.config import Settings, get_settings
from myfamily_payments.core import messages
from myfamily_payments.core.cascade import CardInput, coerce_card
from myfamily_payments.core.errors import PaymentValidationError
from myfamily_payments.integrations.errors import GatewayTransportError
from myfamily_payments.integrations.models import (
    PaymentGateway,
    TokenizeResult,
    mask_card_number,
)

logger = structlog.get_logger(__name__)

__all__ = ["CardTokenizationService", "mask_card_number"]


class CardTokenizationService:
    """
    Tokenizes cards and echoes a locally computed mask.

    The mask shown to the card holder is always derived from the number they
    typed, never from the gateway response. Nothing is cached: tokenizing the
    same card twice asks the gateway twice.
    """

    def __init__(self, gateway: PaymentGateway, settings: Optional[Settings] = None) -> None:
        self.gateway = gateway
        self.settings = settings or get_settings()

    async def tokenize(
        self, card: Optional[CardInput], locale: Optional[str] = None
    ) -> TokenizeResult:
        """
        Exchange card details for a token.

        A gateway that gives no usable answer yields ``success=False`` with a
        generic retry message.

        Raises:
            PaymentValidationError: If the card details are missing or invalid
        """
        card_details = coerce_card(card)
        if card_details is None:
            raise PaymentValidationError("Card details are required")

        masked = card_details.masked_number
        try:
            result = await self.gateway.tokenize_card(card_details)
        except GatewayTransportError as e:
            logger.error("card_tokenization_transport_failed", masked_card=masked, error=str(e))
            return TokenizeResult(
                success=False,
                masked_card=masked,
                message=messages.transport_failure_message(
                    locale or self.settings.default_locale
                ),
            )

        if not result.success:
            logger.warning("card_tokenization_failed", masked_card=masked, message=result.message)
            return TokenizeResult(success=False, masked_card=masked, message=result.message)

        logger.info("card_tokenized", masked_card=masked)
        return TokenizeResult(
            success=True,
            token=result.token,
            masked_card=masked,
            message=result.message,
        )
