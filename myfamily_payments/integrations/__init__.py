"""External integrations for card payments."""
from .errors import GatewayDeclinedError, GatewayError, GatewayErrorType, GatewayTransportError
from .installments import InstallmentPlan
from .models import (
    CardDetails,
    GatewayResult,
    PaymentGateway,
    TokenizeResult,
    mask_card_number,
)
from .simulation import ZCreditSimulationClient, build_gateway
from .zcredit_client import ZCreditClient

__all__ = [
    "CardDetails",
    "GatewayDeclinedError",
    "GatewayError",
    "GatewayErrorType",
    "GatewayResult",
    "GatewayTransportError",
    "InstallmentPlan",
    "PaymentGateway",
    "TokenizeResult",
    "ZCreditClient",
    "ZCreditSimulationClient",
    "build_gateway",
    "mask_card_number",
]
