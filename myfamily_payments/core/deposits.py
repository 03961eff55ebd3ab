"""Topping up a family fund by card."""
import time
from typing import Optional

import structlog

from myfamily_payments.config import Settings, get_settings
from myfamily_payments.core import messages
from myfamily_payments.core.cascade import CardInput, PaymentResult, coerce_card
from myfamily_payments.core.errors import (
    LedgerWriteError,
    PaymentErrorKind,
    PaymentValidationError,
)
from myfamily_payments.core.ledger import SQLLedgerStore
from myfamily_payments.integrations.errors import GatewayTransportError
from myfamily_payments.integrations.models import PaymentGateway
from myfamily_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

DEPOSIT_DESCRIPTION = "Family fund top-up"


class FundDepositService:
    """
    Charges a card and credits the family fund with the same amount.

    The card is charged first; the ledger is only touched once the charge is
    approved. The fund is created on first deposit.
    """

    def __init__(
        self,
        ledger: SQLLedgerStore,
        gateway: PaymentGateway,
        settings: Optional[Settings] = None,
    ) -> None:
        self.ledger = ledger
        self.gateway = gateway
        self.settings = settings or get_settings()

    async def add_funds(
        self,
        family_id: int,
        user_id: int,
        amount: int,
        token: Optional[str] = None,
        card: Optional[CardInput] = None,
        locale: Optional[str] = None,
        description: str = DEPOSIT_DESCRIPTION,
    ) -> PaymentResult:
        """
        Add ``amount`` minor units to a family fund.

        Returns:
            PaymentResult: ``amount_from_card`` is the deposited amount on success

        Raises:
            PaymentValidationError: If the input is invalid
            LedgerWriteError: If the approved charge could not be recorded
        """
        started = time.time()
        locale = locale or self.settings.default_locale

        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise PaymentValidationError("Amount must be a positive integer number of minor units")
        if (token is None) == (card is None):
            raise PaymentValidationError("Exactly one of card or card token is required")
        card_details = coerce_card(card)

        log = logger.bind(family_id=family_id, user_id=user_id, amount=amount)
        log.info("fund_deposit_started")

        try:
            charge = await self.gateway.charge(
                amount=amount,
                description=description,
                card=card_details,
                token=token,
            )
        except GatewayTransportError as e:
            log.error("fund_deposit_transport_failed", error=str(e))
            metrics.record_cascade("deposit", "transport", 0, 0, time.time() - started)
            return PaymentResult(
                success=False,
                message=messages.transport_failure_message(locale),
                error_kind=PaymentErrorKind.TRANSPORT,
            )

        if not charge.approved:
            log.warning(
                "fund_deposit_declined",
                return_code=charge.return_code,
                return_message=charge.return_message,
            )
            metrics.record_cascade("deposit", "declined", 0, 0, time.time() - started)
            return PaymentResult(
                success=False,
                message=messages.translate_decline(
                    charge.return_message,
                    locale,
                    include_raw=self.settings.expose_gateway_messages,
                ),
                error_kind=PaymentErrorKind.DECLINED,
            )

        try:
            fund = await self.ledger.get_or_create_fund(family_id, self.settings.default_currency)
            await self.ledger.credit(
                fund_id=fund.id,
                amount=amount,
                user_id=user_id,
                description=description,
                transaction_type="deposit",
                reference_number=charge.reference_number,
            )
        except LedgerWriteError as e:
            # The card is charged; this event is the only record of it
            log.error(
                "fund_deposit_unrecorded",
                reference_number=charge.reference_number,
                masked_card=charge.masked_card,
                error=str(e),
            )
            metrics.record_cascade("deposit", "unrecorded", 0, amount, time.time() - started)
            raise

        log.info("fund_deposit_completed", fund_id=fund.id, reference_number=charge.reference_number)
        metrics.record_cascade("deposit", "success", 0, amount, time.time() - started)
        return PaymentResult(
            success=True,
            message=messages.success_message("deposit", locale),
            amount_from_card=amount,
            reference_number=charge.reference_number,
            card_mask=charge.masked_card,
            card_brand=charge.card_brand,
        )
