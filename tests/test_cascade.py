"""
Tests for the cascade payment engine.

The ledger runs on in-memory SQLite; the card gateway is an AsyncMock.
"""
import asyncio
from types import SimpleNamespace
from typing import Any
from unittest.mock import AsyncMock

import pytest
from tenacity import wait_none

from conftest import approved_result, declined_result
from myfamily_payments.config import Settings
from myfamily_payments.core.cascade import (
    CascadePaymentEngine,
    PaymentResult,
    process_cascade_payment,
    split_amount,
)
from myfamily_payments.core.errors import (
    InsufficientFundsError,
    LedgerWriteError,
    PaymentErrorKind,
    PaymentValidationError,
)
from myfamily_payments.core.ledger import SQLLedgerStore
from myfamily_payments.integrations.errors import GatewayTransportError
from myfamily_payments.integrations.installments import InstallmentPlan
from myfamily_payments.integrations.models import CardDetails


class TestSplit:
    """Fund/card split arithmetic."""

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "balance,amount,expected",
        [
            (10000, 5000, (5000, 0)),
            (3000, 5000, (3000, 2000)),
            (0, 5000, (0, 5000)),
            (5000, 5000, (5000, 0)),
        ],
    )
    def test_split_amount(self, balance: int, amount: int, expected: tuple) -> None:
        assert split_amount(balance, amount) == expected


class TestCascadePayment:
    """End-to-end cascade behaviour against a real ledger."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_fund_covers_everything(
        self,
        engine: CascadePaymentEngine,
        ledger: SQLLedgerStore,
        mock_gateway: AsyncMock,
        make_funded_family: Any,
    ) -> None:
        fund_id = await make_funded_family(family_id=1, balance=10000)

        result = await engine.process_cascade_payment(
            family_id=1, user_id=100, amount=5000, description="Gazette", token="TOK-1"
        )

        assert result.success is True
        assert result.from_collective_fund is True
        assert result.amount_from_fund == 5000
        assert result.amount_from_card == 0
        assert result.error_kind is None
        mock_gateway.charge.assert_not_called()

        assert (await ledger.get_fund(1)).balance == 5000
        history = await ledger.list_transactions(fund_id)
        assert history[0].amount == -5000
        assert history[0].type == "payment"
        assert history[0].description == "Gazette"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_split_between_fund_and_card(
        self,
        engine: CascadePaymentEngine,
        ledger: SQLLedgerStore,
        mock_gateway: AsyncMock,
        make_funded_family: Any,
    ) -> None:
        fund_id = await make_funded_family(family_id=1, balance=3000)

        result = await engine.process_cascade_payment(
            family_id=1, user_id=100, amount=5000, description="Gazette", token="TOK-1"
        )

        assert result.success is True
        assert result.from_collective_fund is True
        assert result.amount_from_fund == 3000
        assert result.amount_from_card == 2000
        assert result.reference_number == "REF-123"
        assert result.card_mask == "4580XXXXXXXX1234"
        assert result.card_brand == "Visa"

        mock_gateway.charge.assert_awaited_once()
        kwargs = mock_gateway.charge.await_args.kwargs
        assert kwargs["amount"] == 2000
        assert kwargs["token"] == "TOK-1"
        assert kwargs["description"] == "Gazette (card portion)"
        assert kwargs["installments"] is None

        assert (await ledger.get_fund(1)).balance == 0
        history = await ledger.list_transactions(fund_id)
        assert history[0].amount == -3000
        assert history[0].description == "Gazette (fund portion)"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_decline_rolls_back_fund_portion(
        self,
        engine: CascadePaymentEngine,
        ledger: SQLLedgerStore,
        mock_gateway: AsyncMock,
        make_funded_family: Any,
    ) -> None:
        fund_id = await make_funded_family(family_id=1, balance=3000)
        mock_gateway.charge.return_value = declined_result("עסקה לא אושרה")

        result = await engine.process_cascade_payment(
            family_id=1, user_id=100, amount=5000, description="Gazette", token="TOK-1"
        )

        assert result.success is False
        assert result.error_kind is PaymentErrorKind.DECLINED
        assert result.from_collective_fund is False
        assert result.amount_from_fund == 0
        assert result.amount_from_card == 0
        assert result.message.startswith("The transaction was not approved")

        assert (await ledger.get_fund(1)).balance == 3000
        refunds = [t for t in await ledger.list_transactions(fund_id) if t.type == "refund"]
        assert len(refunds) == 1
        assert refunds[0].amount == 3000
        assert refunds[0].description == "Refund — card payment failed for: Gazette"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_transport_error_rolls_back_fund_portion(
        self,
        engine: CascadePaymentEngine,
        ledger: SQLLedgerStore,
        mock_gateway: AsyncMock,
        make_funded_family: Any,
    ) -> None:
        await make_funded_family(family_id=1, balance=3000)
        mock_gateway.charge.side_effect = GatewayTransportError("Gateway timed out during charge")

        result = await engine.process_cascade_payment(
            family_id=1, user_id=100, amount=5000, description="Gazette", token="TOK-1"
        )

        assert result.success is False
        assert result.error_kind is PaymentErrorKind.TRANSPORT
        assert "try again later" in result.message
        assert "timed out" not in result.message
        assert (await ledger.get_fund(1)).balance == 3000

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_cancel_during_charge_rolls_back_fund_portion(
        self,
        engine: CascadePaymentEngine,
        ledger: SQLLedgerStore,
        mock_gateway: AsyncMock,
        make_funded_family: Any,
    ) -> None:
        fund_id = await make_funded_family(family_id=1, balance=3000)
        charge_started = asyncio.Event()

        async def slow_charge(**kwargs: Any) -> Any:
            charge_started.set()
            await asyncio.sleep(10)
            return approved_result()

        mock_gateway.charge.side_effect = slow_charge

        task = asyncio.create_task(
            engine.process_cascade_payment(
                family_id=1, user_id=100, amount=5000, description="Gazette", token="TOK-1"
            )
        )
        await asyncio.wait_for(charge_started.wait(), timeout=5)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

        assert (await ledger.get_fund(1)).balance == 3000
        refunds = [t for t in await ledger.list_transactions(fund_id) if t.type == "refund"]
        assert [r.amount for r in refunds] == [3000]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_no_fund_charges_card_only(
        self,
        engine: CascadePaymentEngine,
        ledger: SQLLedgerStore,
        mock_gateway: AsyncMock,
        sample_card: dict,
    ) -> None:
        result = await engine.process_cascade_payment(
            family_id=5, user_id=100, amount=5000, description="Gazette", card=sample_card
        )

        assert result.success is True
        assert result.from_collective_fund is False
        assert result.amount_from_fund == 0
        assert result.amount_from_card == 5000

        kwargs = mock_gateway.charge.await_args.kwargs
        assert kwargs["amount"] == 5000
        assert isinstance(kwargs["card"], CardDetails)
        assert kwargs["card"].card_number == "4580000000001234"
        assert await ledger.get_fund(5) is None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_decline_without_fund_touches_nothing(
        self,
        engine: CascadePaymentEngine,
        ledger: SQLLedgerStore,
        mock_gateway: AsyncMock,
        make_funded_family: Any,
    ) -> None:
        fund_id = await make_funded_family(family_id=1, balance=0)
        mock_gateway.charge.return_value = declined_result()

        result = await engine.process_cascade_payment(
            family_id=1, user_id=100, amount=5000, description="Gazette", token="TOK-1"
        )

        assert result.success is False
        assert len(await ledger.list_transactions(fund_id)) == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", [0, -100, 12.5, "5000", True])
    async def test_invalid_amount_touches_nothing(
        self, mock_gateway: AsyncMock, test_settings: Settings, amount: Any
    ) -> None:
        ledger = AsyncMock(spec=SQLLedgerStore)
        engine = CascadePaymentEngine(ledger=ledger, gateway=mock_gateway, settings=test_settings)

        with pytest.raises(PaymentValidationError):
            await engine.process_cascade_payment(
                family_id=1, user_id=100, amount=amount, description="x", token="TOK-1"
            )

        assert ledger.mock_calls == []
        assert mock_gateway.mock_calls == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_invalid_card_is_validation_error(
        self, engine: CascadePaymentEngine, mock_gateway: AsyncMock
    ) -> None:
        with pytest.raises(PaymentValidationError):
            await engine.process_cascade_payment(
                family_id=1,
                user_id=100,
                amount=5000,
                description="x",
                card={"card_number": "4580-abcd", "exp_date": "1330"},
            )
        mock_gateway.charge.assert_not_called()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_card_and_token_together_rejected(
        self, engine: CascadePaymentEngine, sample_card: dict
    ) -> None:
        with pytest.raises(PaymentValidationError):
            await engine.process_cascade_payment(
                family_id=1,
                user_id=100,
                amount=5000,
                description="x",
                token="TOK-1",
                card=sample_card,
            )

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_missing_credential_rolls_back(
        self,
        engine: CascadePaymentEngine,
        ledger: SQLLedgerStore,
        mock_gateway: AsyncMock,
        make_funded_family: Any,
    ) -> None:
        await make_funded_family(family_id=1, balance=3000)

        result = await engine.process_cascade_payment(
            family_id=1, user_id=100, amount=5000, description="Gazette"
        )

        assert result.success is False
        assert result.error_kind is PaymentErrorKind.CONFIGURATION
        assert result.amount_from_fund == 0
        mock_gateway.charge.assert_not_called()
        assert (await ledger.get_fund(1)).balance == 3000

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_fund_only_needs_no_credential(
        self, engine: CascadePaymentEngine, make_funded_family: Any
    ) -> None:
        await make_funded_family(family_id=1, balance=5000)

        result = await engine.process_cascade_payment(
            family_id=1, user_id=100, amount=5000, description="Gazette"
        )

        assert result.success is True
        assert result.amount_from_fund == 5000

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_installments_cover_card_portion(
        self,
        engine: CascadePaymentEngine,
        mock_gateway: AsyncMock,
        make_funded_family: Any,
    ) -> None:
        await make_funded_family(family_id=1, balance=2000)

        result = await engine.process_cascade_payment(
            family_id=1,
            user_id=100,
            amount=12000,
            description="Album",
            token="TOK-1",
            installments=3,
        )

        assert result.success is True
        plan = mock_gateway.charge.await_args.kwargs["installments"]
        assert plan == InstallmentPlan(num_payments=3, first_payment=3334, other_payments=3333)

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "installments",
        [0, -1, 2.0, InstallmentPlan(num_payments=2, first_payment=3000, other_payments=2000)],
    )
    async def test_invalid_installments(
        self, engine: CascadePaymentEngine, installments: Any
    ) -> None:
        with pytest.raises(PaymentValidationError):
            await engine.process_cascade_payment(
                family_id=1,
                user_id=100,
                amount=5000,
                description="x",
                token="TOK-1",
                installments=installments,
            )

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_decline_message_localized(
        self, engine: CascadePaymentEngine, mock_gateway: AsyncMock
    ) -> None:
        mock_gateway.charge.return_value = declined_result("תוקף הכרטיס פג")

        result = await engine.process_cascade_payment(
            family_id=1,
            user_id=100,
            amount=5000,
            description="x",
            token="TOK-1",
            locale="fr",
        )

        assert result.message == "La carte a expiré (תוקף הכרטיס פג)"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_raw_decline_hidden_in_production(
        self,
        ledger: SQLLedgerStore,
        mock_gateway: AsyncMock,
        production_settings: Settings,
    ) -> None:
        engine = CascadePaymentEngine(ledger=ledger, gateway=mock_gateway, settings=production_settings)
        mock_gateway.charge.return_value = declined_result("שגיאה לא מוכרת", return_code=33)

        result = await engine.process_cascade_payment(
            family_id=1, user_id=100, amount=5000, description="x", token="TOK-1"
        )

        assert result.message == "Payment processing error"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_module_level_entry_point(
        self, engine: CascadePaymentEngine, make_funded_family: Any
    ) -> None:
        await make_funded_family(family_id=1, balance=5000)

        result = await process_cascade_payment(
            engine, family_id=1, user_id=100, amount=1000, description="x"
        )

        assert isinstance(result, PaymentResult)
        assert result.to_dict() == {
            "success": True,
            "message": "Payment made from the family fund",
            "from_collective_fund": True,
            "amount_from_fund": 1000,
            "amount_from_card": 0,
            "reference_number": None,
            "card_mask": None,
            "card_brand": None,
            "error_kind": None,
        }


class TestRollbackFailure:
    """Compensating credit that cannot be written."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_rollback_retried_then_original_failure_returned(
        self,
        ledger: SQLLedgerStore,
        mock_gateway: AsyncMock,
        test_settings: Settings,
        make_funded_family: Any,
    ) -> None:
        await make_funded_family(family_id=1, balance=3000)
        mock_gateway.charge.return_value = declined_result("עסקה לא אושרה")

        flaky_ledger = AsyncMock(wraps=ledger)
        flaky_ledger.credit.side_effect = LedgerWriteError("database unavailable")
        engine = CascadePaymentEngine(
            ledger=flaky_ledger,
            gateway=mock_gateway,
            settings=test_settings,
            rollback_wait=wait_none(),
        )

        result = await engine.process_cascade_payment(
            family_id=1, user_id=100, amount=5000, description="Gazette", token="TOK-1"
        )

        assert result.success is False
        assert result.error_kind is PaymentErrorKind.DECLINED
        assert flaky_ledger.credit.await_count == test_settings.rollback_max_attempts
        # The debit stands; reconciliation reports it
        assert (await ledger.get_fund(1)).balance == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_rollback_succeeds_after_transient_error(
        self,
        ledger: SQLLedgerStore,
        mock_gateway: AsyncMock,
        test_settings: Settings,
        make_funded_family: Any,
    ) -> None:
        await make_funded_family(family_id=1, balance=3000)
        mock_gateway.charge.return_value = declined_result()

        attempts = []

        async def credit_failing_once(**kwargs: Any) -> Any:
            attempts.append(kwargs)
            if len(attempts) == 1:
                raise LedgerWriteError("busy")
            return await ledger.credit(**kwargs)

        flaky_ledger = AsyncMock(wraps=ledger)
        flaky_ledger.credit.side_effect = credit_failing_once
        engine = CascadePaymentEngine(
            ledger=flaky_ledger,
            gateway=mock_gateway,
            settings=test_settings,
            rollback_wait=wait_none(),
        )

        result = await engine.process_cascade_payment(
            family_id=1, user_id=100, amount=5000, description="Gazette", token="TOK-1"
        )

        assert result.success is False
        assert flaky_ledger.credit.await_count == 2
        assert (await ledger.get_fund(1)).balance == 3000


class TestLostRace:
    """Guarded debit losing against a concurrent writer."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_debit_retried_once_with_fresh_balance(
        self,
        ledger: SQLLedgerStore,
        mock_gateway: AsyncMock,
        test_settings: Settings,
        make_funded_family: Any,
    ) -> None:
        fund_id = await make_funded_family(family_id=1, balance=3000)
        stale_fund = await ledger.get_fund(1)
        # Someone else spends 2000 between our read and our debit
        await ledger.debit(fund_id=fund_id, amount=2000, user_id=200, description="other")

        racing_ledger = AsyncMock(wraps=ledger)
        racing_ledger.get_fund.side_effect = [stale_fund, await ledger.get_fund(1)]
        engine = CascadePaymentEngine(ledger=racing_ledger, gateway=mock_gateway, settings=test_settings)

        result = await engine.process_cascade_payment(
            family_id=1, user_id=100, amount=5000, description="Gazette", token="TOK-1"
        )

        assert result.success is True
        assert result.amount_from_fund == 1000
        assert result.amount_from_card == 4000
        assert racing_ledger.debit.await_count == 2
        assert (await ledger.get_fund(1)).balance == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_second_lost_race_propagates(
        self, mock_gateway: AsyncMock, test_settings: Settings
    ) -> None:
        fund = SimpleNamespace(id=1, family_id=1, balance=3000)
        ledger = AsyncMock(spec=SQLLedgerStore)
        ledger.get_fund.return_value = fund
        ledger.debit.side_effect = InsufficientFundsError(1, 3000)
        engine = CascadePaymentEngine(ledger=ledger, gateway=mock_gateway, settings=test_settings)

        with pytest.raises(LedgerWriteError):
            await engine.process_cascade_payment(
                family_id=1, user_id=100, amount=5000, description="x", token="TOK-1"
            )

        assert ledger.debit.await_count == 2
        mock_gateway.charge.assert_not_called()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_ledger_failure_propagates(
        self, mock_gateway: AsyncMock, test_settings: Settings
    ) -> None:
        ledger = AsyncMock(spec=SQLLedgerStore)
        ledger.get_fund.side_effect = LedgerWriteError("connection refused")
        engine = CascadePaymentEngine(ledger=ledger, gateway=mock_gateway, settings=test_settings)

        with pytest.raises(LedgerWriteError):
            await engine.process_cascade_payment(
                family_id=1, user_id=100, amount=5000, description="x", token="TOK-1"
            )
        mock_gateway.charge.assert_not_called()


@pytest.mark.unit
def test_approved_helper_matches_gateway_shape() -> None:
    assert approved_result().approved is True
