"""
Cascade payment engine.

Pays an amount from the family fund first and charges a card for whatever
the fund cannot cover:

1. Validate input
2. Read the family fund (no fund means a balance of 0)
3. Split the amount: ``from_fund = min(balance, amount)``
4. Debit the fund portion
5. Charge the card portion once
6. On a failed card leg, credit back exactly what step 4 debited
"""
import asyncio
import time
from dataclasses import asdict, dataclass
from typing import Any, Dict, Mapping, Optional, Tuple, Union

import structlog
from pydantic import ValidationError
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)
from tenacity.wait import wait_base

from myfamily_payments.config import Settings, get_settings
from myfamily_payments.core import messages
from myfamily_payments.core.errors import (
    InsufficientFundsError,
    LedgerWriteError,
    PaymentErrorKind,
    PaymentValidationError,
)
from myfamily_payments.core.ledger import LedgerStore
from myfamily_payments.database.models import FamilyFund
from myfamily_payments.integrations.errors import GatewayTransportError
from myfamily_payments.integrations.installments import InstallmentPlan
from myfamily_payments.integrations.models import CardDetails, GatewayResult, PaymentGateway
from myfamily_payments.monitoring.logging import payment_context
from myfamily_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

FUND_PORTION_SUFFIX = " (fund portion)"
CARD_PORTION_SUFFIX = " (card portion)"
REFUND_PREFIX = "Refund — card payment failed for: "

CardInput = Union[CardDetails, Mapping[str, Any]]


@dataclass
class PaymentResult:
    """Outcome of a cascade payment, as handed to the web layer."""

    success: bool
    message: str
    from_collective_fund: bool = False
    amount_from_fund: int = 0
    amount_from_card: int = 0
    reference_number: Optional[str] = None
    card_mask: Optional[str] = None
    card_brand: Optional[str] = None
    error_kind: Optional[PaymentErrorKind] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["error_kind"] = self.error_kind.value if self.error_kind else None
        return data


def split_amount(balance: int, amount: int) -> Tuple[int, int]:
    """Return ``(from_fund, from_card)`` for ``amount`` against ``balance``."""
    from_fund = min(max(balance, 0), amount)
    return from_fund, amount - from_fund


def payment_path(from_fund: int, from_card: int) -> str:
    if from_card == 0:
        return "fund_only"
    return "split" if from_fund > 0 else "card_only"


def coerce_card(card: Optional[CardInput]) -> Optional[CardDetails]:
    """Accept validated card details or a raw mapping from the web layer."""
    if card is None or isinstance(card, CardDetails):
        return card
    try:
        return CardDetails.model_validate(dict(card))
    except ValidationError as e:
        raise PaymentValidationError(f"Invalid card details: {e}") from e


class CascadePaymentEngine:
    """
    Orchestrates fund debit, card charge and compensating credit.

    The fund debit always happens before the card charge, and the card is
    charged at most once per invocation.
    """

    def __init__(
        self,
        ledger: LedgerStore,
        gateway: PaymentGateway,
        settings: Optional[Settings] = None,
        rollback_wait: Optional[wait_base] = None,
    ) -> None:
        """
        Initialize the engine.

        Args:
            ledger: Fund ledger store
            gateway: Card gateway client
            settings: Optional settings (defaults to environment settings)
            rollback_wait: Wait strategy between compensating credit attempts
        """
        self.ledger = ledger
        self.gateway = gateway
        self.settings = settings or get_settings()
        self.rollback_wait = rollback_wait or wait_exponential(multiplier=0.2, min=0.2, max=2)

    @staticmethod
    def _validate(
        amount: Any,
        token: Optional[str],
        card: Optional[CardInput],
        installments: Optional[int],
    ) -> Optional[CardDetails]:
        """
        Validate a cascade request before anything is touched.

        Raises:
            PaymentValidationError: If validation fails
        """
        if isinstance(amount, bool) or not isinstance(amount, int):
            raise PaymentValidationError("Amount must be an integer number of minor units")
        if amount <= 0:
            raise PaymentValidationError("Amount must be positive")

        if token is not None and card is not None:
            raise PaymentValidationError("Provide either a card or a card token, not both")
        if token is not None and not token.strip():
            raise PaymentValidationError("Card token must not be empty")

        if installments is not None and (
            isinstance(installments, bool)
            or not isinstance(installments, int)
            or installments < 1
        ):
            raise PaymentValidationError("Number of installments must be a positive integer")

        return coerce_card(card)

    @staticmethod
    def _plan(from_card: int, installments: Optional[int]) -> Optional[InstallmentPlan]:
        if installments is None or from_card == 0:
            return None
        try:
            return InstallmentPlan.split(from_card, installments)
        except ValueError as e:
            raise PaymentValidationError(str(e)) from e

    async def _debit_fund_portion(
        self,
        family_id: int,
        user_id: int,
        amount: int,
        description: str,
        installments: Optional[int],
    ) -> Tuple[Optional[FamilyFund], int, int, Optional[InstallmentPlan]]:
        """
        Split the amount and debit the fund portion.

        A guarded debit that loses a race is retried once against a fresh
        read of the balance; a second loss propagates.
        """
        attempt = 1
        while True:
            fund = await self.ledger.get_fund(family_id)
            balance = fund.balance if fund is not None else 0
            from_fund, from_card = split_amount(balance, amount)
            plan = self._plan(from_card, installments)

            logger.info(
                "fund_checked",
                family_id=family_id,
                balance=balance,
                from_fund=from_fund,
                from_card=from_card,
                attempt=attempt,
            )

            if from_fund == 0:
                return fund, from_fund, from_card, plan

            try:
                await self.ledger.debit(
                    fund_id=fund.id,
                    amount=from_fund,
                    user_id=user_id,
                    description=description + (FUND_PORTION_SUFFIX if from_card else ""),
                )
            except InsufficientFundsError:
                if attempt > 1:
                    raise
                logger.warning(
                    "fund_debit_lost_race",
                    family_id=family_id,
                    fund_id=fund.id,
                    amount=from_fund,
                )
                attempt += 1
                continue
            return fund, from_fund, from_card, plan

    async def _rollback(
        self,
        fund: FamilyFund,
        amount: int,
        user_id: int,
        description: str,
        reason: str,
    ) -> bool:
        """
        Credit back a fund debit after the card leg failed.

        Retries a bounded number of times. A final failure is logged and
        counted but never replaces the original failure.
        """
        refund_description = f"{REFUND_PREFIX}{description}"
        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception_type(LedgerWriteError),
                stop=stop_after_attempt(self.settings.rollback_max_attempts),
                wait=self.rollback_wait,
                reraise=True,
            ):
                with attempt:
                    await self.ledger.credit(
                        fund_id=fund.id,
                        amount=amount,
                        user_id=user_id,
                        description=refund_description,
                        transaction_type="refund",
                    )
        except LedgerWriteError as e:
            metrics.record_rollback("failed")
            logger.error(
                "fund_rollback_failed",
                fund_id=fund.id,
                family_id=fund.family_id,
                user_id=user_id,
                amount=amount,
                description=refund_description,
                reason=reason,
                attempts=self.settings.rollback_max_attempts,
                error=str(e),
            )
            return False

        metrics.record_rollback("succeeded")
        logger.info(
            "fund_rollback_succeeded",
            fund_id=fund.id,
            amount=amount,
            reason=reason,
        )
        return True

    def _finish(
        self,
        result: PaymentResult,
        path: str,
        outcome: str,
        started: float,
    ) -> PaymentResult:
        metrics.record_cascade(
            path=path,
            outcome=outcome,
            amount_from_fund=result.amount_from_fund,
            amount_from_card=result.amount_from_card,
            duration_seconds=time.time() - started,
        )
        return result

    async def process_cascade_payment(
        self,
        family_id: int,
        user_id: int,
        amount: int,
        description: str,
        token: Optional[str] = None,
        card: Optional[CardInput] = None,
        installments: Optional[int] = None,
        locale: Optional[str] = None,
    ) -> PaymentResult:
        """
        Pay ``amount`` from the family fund, then from a card.

        Args:
            family_id: Paying family
            user_id: Acting user
            amount: Amount in minor units
            description: Payment description
            token: Stored card token for the card portion
            card: Raw card details for the card portion
            installments: Number of installments for the card portion. Only a
                count is accepted: the card portion is known only after the
                fund is read, so explicit first/other sums could not be
                checked in advance. The sums follow ``InstallmentPlan.split``.
            locale: Caller locale for messages (en, fr, he)

        Returns:
            PaymentResult: ``success`` is False on decline, transport failure
            or missing card credential

        Raises:
            PaymentValidationError: If the input is invalid
            LedgerWriteError: If the ledger cannot be read or written
        """
        started = time.time()
        locale = locale or self.settings.default_locale
        card_details = self._validate(amount, token, card, installments)

        log = logger.bind(family_id=family_id, user_id=user_id, amount=amount)
        log.info("cascade_payment_started", with_token=token is not None)

        fund, from_fund, from_card, plan = await self._debit_fund_portion(
            family_id, user_id, amount, description, installments
        )
        path = payment_path(from_fund, from_card)

        if from_card == 0:
            log.info("cascade_payment_completed", path=path, from_fund=from_fund)
            return self._finish(
                PaymentResult(
                    success=True,
                    message=messages.success_message(path, locale),
                    from_collective_fund=True,
                    amount_from_fund=from_fund,
                    amount_from_card=0,
                ),
                path,
                "success",
                started,
            )

        if token is None and card_details is None:
            log.warning("cascade_payment_missing_credential", from_card=from_card)
            if from_fund:
                await self._rollback(fund, from_fund, user_id, description, "missing_credential")
            return self._finish(
                PaymentResult(
                    success=False,
                    message=messages.missing_credential_message(locale),
                    error_kind=PaymentErrorKind.CONFIGURATION,
                ),
                path,
                "configuration",
                started,
            )

        try:
            charge: GatewayResult = await self.gateway.charge(
                amount=from_card,
                description=description + CARD_PORTION_SUFFIX,
                card=card_details,
                token=token,
                installments=plan,
            )
        except GatewayTransportError as e:
            log.error("cascade_card_transport_failed", path=path, error=str(e))
            if from_fund:
                await self._rollback(fund, from_fund, user_id, description, "transport")
            return self._finish(
                PaymentResult(
                    success=False,
                    message=messages.transport_failure_message(locale),
                    error_kind=PaymentErrorKind.TRANSPORT,
                ),
                path,
                "transport",
                started,
            )
        except asyncio.CancelledError:
            log.warning("cascade_payment_cancelled", path=path)
            if from_fund:
                # A second cancel must not interrupt the refund
                await asyncio.shield(
                    self._rollback(fund, from_fund, user_id, description, "cancelled")
                )
            raise
        except Exception:
            if from_fund:
                await self._rollback(fund, from_fund, user_id, description, "unexpected")
            raise

        if not charge.approved:
            log.warning(
                "cascade_card_declined",
                path=path,
                return_code=charge.return_code,
                return_message=charge.return_message,
            )
            if from_fund:
                await self._rollback(fund, from_fund, user_id, description, "declined")
            return self._finish(
                PaymentResult(
                    success=False,
                    message=messages.translate_decline(
                        charge.return_message,
                        locale,
                        include_raw=self.settings.expose_gateway_messages,
                    ),
                    error_kind=PaymentErrorKind.DECLINED,
                ),
                path,
                "declined",
                started,
            )

        log.info(
            "cascade_payment_completed",
            path=path,
            from_fund=from_fund,
            from_card=from_card,
            reference_number=charge.reference_number,
        )
        return self._finish(
            PaymentResult(
                success=True,
                message=messages.success_message(path, locale),
                from_collective_fund=from_fund > 0,
                amount_from_fund=from_fund,
                amount_from_card=from_card,
                reference_number=charge.reference_number,
                card_mask=charge.masked_card,
                card_brand=charge.card_brand,
            ),
            path,
            "success",
            started,
        )


async def process_cascade_payment(
    engine: CascadePaymentEngine,
    family_id: int,
    user_id: int,
    amount: int,
    description: str,
    token: Optional[str] = None,
    card: Optional[CardInput] = None,
    installments: Optional[int] = None,
    locale: Optional[str] = None,
) -> PaymentResult:
    """Run a cascade payment on ``engine`` with the payer bound to every log event."""
    with payment_context(family_id=family_id, user_id=user_id):
        return await engine.process_cascade_payment(
            family_id=family_id,
            user_id=user_id,
            amount=amount,
            description=description,
            token=token,
            card=card,
            installments=installments,
            locale=locale,
        )
