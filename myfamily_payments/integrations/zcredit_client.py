"""
Z-Credit API client with circuit breaking and response normalization.

Implements:
- Charges with raw card details or a stored token, optionally in installments
- Card tokenization through a 1-agora authorization-only request
- Transport errors kept apart from issuer declines
- Circuit breaker pattern

All public amounts are integer minor units. The wire format wants major units
as a decimal string; ``format_amount`` is the only place that converts.
"""
import time
import uuid
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

import httpx
import structlog

from myfamily_payments.config import Settings, get_settings
from myfamily_payments.integrations.errors import GatewayTransportError
from myfamily_payments.integrations.installments import InstallmentPlan
from myfamily_payments.integrations.models import CardDetails, GatewayResult, TokenizeResult
from myfamily_payments.integrations.responses import (
    extract_token,
    normalize_payload,
    to_gateway_result,
)
from myfamily_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

T = TypeVar("T")

COMMIT_PATH = "/Transaction/CommitFullTransaction"

# Transaction kinds ("J" parameter)
J_CHARGE = 1
J_AUTHORIZE_ONLY = 2

# Credit types
CREDIT_TYPE_REGULAR = 1
CREDIT_TYPE_INSTALLMENTS = 8

TOKENIZE_AMOUNT = 1


def format_amount(amount: int) -> str:
    """Convert integer minor units to the gateway's major-unit string (1234 -> "12.34")."""
    return str((Decimal(amount) / 100).quantize(Decimal("0.01")))


def parse_amount(value: Any) -> int:
    """Convert a major-unit wire amount back to integer minor units."""
    return int((Decimal(str(value)) * 100).to_integral_value())


def generate_unique_id() -> str:
    """Generate a transaction unique ID for the gateway."""
    return f"MYFAMILY-{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}"


class CircuitBreaker:
    """
    Circuit breaker for gateway calls.

    Prevents cascading failures by temporarily stopping requests
    when transport errors keep happening. Declines do not count.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        timeout: int = 60,
        success_threshold: int = 2,
    ):
        """
        Initialize circuit breaker.

        Args:
            failure_threshold: Number of failures before opening circuit
            timeout: Seconds before attempting to close circuit
            success_threshold: Successful calls needed to close circuit
        """
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "closed"  # closed, open, half_open

    async def call(self, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """
        Execute coroutine function with circuit breaker protection.

        Raises:
            GatewayTransportError: If circuit is open
        """
        if self.state == "open":
            if (
                self.last_failure_time
                and time.time() - self.last_failure_time > self.timeout
            ):
                self._set_state("half_open")
                self.success_count = 0
                logger.info("circuit_breaker_half_open")
            else:
                raise GatewayTransportError("Circuit breaker is open")

        try:
            result = await func(*args, **kwargs)
        except GatewayTransportError:
            self.on_failure()
            raise
        self.on_success()
        return result

    def on_success(self) -> None:
        """Record successful call."""
        self.failure_count = 0
        if self.state == "half_open":
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self._set_state("closed")
                logger.info("circuit_breaker_closed")

    def on_failure(self) -> None:
        """Record failed call."""
        self.failure_count += 1
        self.last_failure_time = time.time()
        if self.state == "half_open" or self.failure_count >= self.failure_threshold:
            self._set_state("open")
            logger.warning(
                "circuit_breaker_opened",
                failure_count=self.failure_count,
            )

    def _set_state(self, state: str) -> None:
        self.state = state
        metrics.set_circuit_breaker_state(state)


class ZCreditClient:
    """
    Wrapper for the Z-Credit web service.

    Features:
    - Normalized results whatever the response shape
    - Bounded network timeout
    - Circuit breaker pattern
    - No retries: a charge is attempted exactly once
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
    ) -> None:
        """
        Initialize Z-Credit client.

        Args:
            settings: Optional settings (defaults to environment settings)
            http_client: Optional shared httpx client
            circuit_breaker: Optional circuit breaker
        """
        self.settings = settings or get_settings()
        self.base_url = self.settings.zcredit_api_url.rstrip("/")
        self.timeout = self.settings.zcredit_timeout_seconds
        self._http_client = http_client
        self._owns_http_client = http_client is None
        self.circuit_breaker = circuit_breaker or CircuitBreaker()

        logger.info(
            "zcredit_client_initialized",
            api_url=self.base_url,
            timeout_seconds=self.timeout,
        )

    async def __aenter__(self) -> "ZCreditClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    def _client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.timeout)
        return self._http_client

    async def close(self) -> None:
        """Close the HTTP client if this instance created it."""
        if self._http_client is not None and self._owns_http_client:
            await self._http_client.aclose()
            self._http_client = None

    def _credentials(self) -> Dict[str, Any]:
        return {
            "TerminalNumber": self.settings.zcredit_terminal_number,
            "Password": self.settings.zcredit_password,
        }

    def build_charge_payload(
        self,
        amount: int,
        description: str,
        card: Optional[CardDetails] = None,
        token: Optional[str] = None,
        installments: Optional[InstallmentPlan] = None,
        unique_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Build the wire payload for a charge.

        Args:
            amount: Amount in minor units
            description: Free text shown on the gateway back office
            card: Raw card details
            token: Stored card token, used instead of ``card``
            installments: Optional installment plan covering ``amount``
            unique_id: Optional transaction unique ID

        Returns:
            Dict[str, Any]: Request body
        """
        if (card is None) == (token is None):
            raise ValueError("Exactly one of card or token is required")
        if installments is not None and installments.total != amount:
            raise ValueError("Installment plan does not cover the charged amount")

        payload: Dict[str, Any] = {
            **self._credentials(),
            "TransactionSum": format_amount(amount),
            "J": J_CHARGE,
            "CreditType": CREDIT_TYPE_REGULAR,
            "NumOfPayments": 1,
            "TransactionUniqueID": unique_id or generate_unique_id(),
            "ParamX": description,
        }

        if card is not None:
            payload.update(
                {
                    "Track2": "",
                    "CardNumber": card.card_number,
                    "ExpDate_MMYY": card.exp_date,
                    "CVV": card.cvv or "",
                    "HolderID": card.holder_id or "",
                }
            )
        else:
            payload["CardNumber"] = token

        if installments is not None and not installments.is_single:
            payload.update(
                {
                    "CreditType": CREDIT_TYPE_INSTALLMENTS,
                    "NumOfPayments": installments.num_payments,
                    "FirstPaymentSum": format_amount(installments.first_payment),
                    "OtherPaymentsSum": format_amount(installments.other_payments),
                }
            )

        return payload

    def build_tokenize_payload(
        self, card: CardDetails, unique_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """Build the authorization-only payload used to obtain a token."""
        return {
            **self._credentials(),
            "Track2": "",
            "CardNumber": card.card_number,
            "ExpDate_MMYY": card.exp_date,
            "CVV": card.cvv or "",
            "HolderID": card.holder_id or "",
            "TransactionSum": format_amount(TOKENIZE_AMOUNT),
            "J": J_AUTHORIZE_ONLY,
            "TransactionUniqueID": unique_id or generate_unique_id(),
        }

    async def _send(self, payload: Dict[str, Any], operation: str) -> str:
        """
        POST a payload and return the raw response body.

        Raises:
            GatewayTransportError: On network errors, timeouts or HTTP error status
        """
        try:
            response = await self._client().post(
                f"{self.base_url}{COMMIT_PATH}",
                json=payload,
                headers={"Content-Type": "application/json"},
                timeout=self.timeout,
            )
            response.raise_for_status()
        except httpx.TimeoutException as e:
            raise GatewayTransportError(f"Gateway timed out during {operation}", e) from e
        except httpx.HTTPStatusError as e:
            raise GatewayTransportError(
                f"Gateway returned HTTP {e.response.status_code} during {operation}", e
            ) from e
        except httpx.HTTPError as e:
            raise GatewayTransportError(f"Gateway unreachable during {operation}: {e}", e) from e
        return response.text

    async def _call(self, payload: Dict[str, Any], operation: str) -> str:
        start_time = time.time()
        try:
            body = await self.circuit_breaker.call(self._send, payload, operation)
        except GatewayTransportError as e:
            metrics.record_gateway_call(operation, "error", time.time() - start_time)
            metrics.record_gateway_error(e.error_type.value)
            logger.error(
                "gateway_transport_error",
                operation=operation,
                error=str(e),
            )
            raise
        metrics.record_gateway_call(operation, "answered", time.time() - start_time)
        return body

    async def charge(
        self,
        amount: int,
        description: str,
        card: Optional[CardDetails] = None,
        token: Optional[str] = None,
        installments: Optional[InstallmentPlan] = None,
    ) -> GatewayResult:
        """
        Charge a card or a stored token once.

        Args:
            amount: Amount in minor units
            description: Charge description
            card: Raw card details
            token: Stored card token
            installments: Optional installment plan

        Returns:
            GatewayResult: Normalized result; ``approved`` is False on decline

        Raises:
            GatewayTransportError: If the gateway could not give an answer
        """
        payload = self.build_charge_payload(
            amount=amount,
            description=description,
            card=card,
            token=token,
            installments=installments,
        )

        logger.info(
            "gateway_charge_started",
            amount=amount,
            with_token=token is not None,
            num_payments=payload["NumOfPayments"],
            unique_id=payload["TransactionUniqueID"],
        )

        body = await self._call(payload, "charge")
        result = to_gateway_result(normalize_payload(body))

        if result.approved:
            logger.info(
                "gateway_charge_approved",
                amount=amount,
                reference_number=result.reference_number,
                masked_card=result.masked_card,
            )
        else:
            metrics.record_gateway_error("declined")
            logger.warning(
                "gateway_charge_declined",
                amount=amount,
                return_code=result.return_code,
                return_message=result.return_message,
            )
        return result

    async def tokenize_card(self, card: CardDetails) -> TokenizeResult:
        """
        Exchange card details for a reusable token.

        Issues a 1-agora authorization-only request; nothing is captured.

        Returns:
            TokenizeResult: ``success`` is False if no token could be found

        Raises:
            GatewayTransportError: If the gateway could not give an answer
        """
        logger.info("gateway_tokenize_started", card_suffix=card.card_number[-4:])

        body = await self._call(self.build_tokenize_payload(card), "tokenize")
        extraction = extract_token(body)

        try:
            fields = normalize_payload(body)
        except GatewayTransportError:
            fields = {}
        result = to_gateway_result(fields)

        if not extraction.is_token:
            logger.warning(
                "gateway_tokenize_failed",
                return_code=result.return_code,
                return_message=result.return_message,
            )
            return TokenizeResult(
                success=False,
                message=result.return_message or "Unable to create a token for this card",
            )

        logger.info("gateway_tokenize_succeeded", masked_card=result.masked_card)
        return TokenizeResult(
            success=True,
            token=extraction.value,
            masked_card=result.masked_card,
            message=result.return_message,
        )
