"""
Z-Credit sandbox for development and tests.

Answers locally with the same JSON the real service returns, so response
normalization runs exactly as in production.
"""
import asyncio
import json
import time
import uuid
from typing import Any, Dict, Optional

import structlog

from myfamily_payments.config import Settings
from myfamily_payments.integrations.models import mask_card_number
from myfamily_payments.integrations.zcredit_client import (
    CircuitBreaker,
    ZCreditClient,
    parse_amount,
)

logger = structlog.get_logger(__name__)

# Card numbers whose last four digits trigger a specific decline
DECLINING_CARDS: Dict[str, str] = {
    "1112": "כרטיס האשראי לא תקין",  # invalid card
    "1113": "עסקה לא אושרה",  # transaction not approved
    "1114": "תוקף הכרטיס פג",  # card expired
    "1115": "סכום העסקה חורג מהמותר",  # amount over limit
}
AMOUNT_LIMIT = 10000
AMOUNT_LIMIT_MESSAGE = "סכום העסקה חורג מהמותר"
APPROVED_MESSAGE = "עסקה אושרה"

# Token charges have no card number to inspect
TOKEN_CARD_NUMBER = "4111111111111111"


class ZCreditSimulationClient(ZCreditClient):
    """Client that never leaves the process."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        latency_seconds: float = 0.5,
        circuit_breaker: Optional[CircuitBreaker] = None,
    ) -> None:
        super().__init__(settings=settings, circuit_breaker=circuit_breaker)
        self.latency_seconds = latency_seconds
        logger.info("zcredit_simulation_mode_enabled")

    async def close(self) -> None:
        return None

    async def _send(self, payload: Dict[str, Any], operation: str) -> str:
        if self.latency_seconds:
            await asyncio.sleep(self.latency_seconds)
        return json.dumps(self.simulate_response(payload), ensure_ascii=False)

    def simulate_response(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Build the response the sandbox gives for ``payload``."""
        card_number = str(payload.get("CardNumber", ""))
        if not card_number.isdigit():
            card_number = TOKEN_CARD_NUMBER
        amount = parse_amount(payload.get("TransactionSum", "0"))

        decline_message = DECLINING_CARDS.get(card_number[-4:])
        if decline_message:
            return {"ReturnValue": 800, "IsApproved": False, "ReturnMessage": decline_message}

        if amount > AMOUNT_LIMIT:
            return {"ReturnValue": 801, "IsApproved": False, "ReturnMessage": AMOUNT_LIMIT_MESSAGE}

        now_ms = int(time.time() * 1000)
        return {
            "ReturnValue": 0,
            "IsApproved": True,
            "ReturnMessage": APPROVED_MESSAGE,
            "ReferenceNumber": f"SIM-{now_ms}",
            "Token": f"TOK-{uuid.uuid4().hex[:8]}",
            "TransactionSum": payload.get("TransactionSum"),
            "TransactionID": f"TID-{now_ms}-{uuid.uuid4().hex[:4]}",
            "CardBrand": "Visa",
            "CardBrandCode": 1,
            "CardNumberMask": mask_card_number(card_number),
            "PaymentsNumber": payload.get("NumOfPayments", 1),
        }


def build_gateway(settings: Settings) -> ZCreditClient:
    """Pick the real client or the sandbox from settings."""
    if settings.zcredit_simulation_mode:
        return ZCreditSimulationClient(settings=settings)
    return ZCreditClient(settings=settings)
