"""
Normalization of Z-Credit response bodies.

The web service answers in several shapes depending on the endpoint and the
terminal configuration:

- a plain JSON object: ``{"ReturnValue": 0, "Token": "..."}``
- a JSON object wrapping a JSON string, the ASMX style: ``{"d": "{\\"Token\\": ...}"}``
- XML: ``<Response><ReturnValue>0</ReturnValue><Token>...</Token></Response>``

Everything in here turns those into a flat ``dict`` or a tagged token result, so
nothing above the client ever sees a raw body.
"""
from __future__ import annotations

import json
import re
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from typing import Any, Dict, Literal, Optional

from myfamily_payments.integrations.errors import GatewayTransportError
from myfamily_payments.integrations.models import GatewayResult

_XML_TOKEN = re.compile(
    r"<(?:[\w.-]+:)?Token(?:\s[^>]*)?>\s*([^<\s][^<]*?)\s*</(?:[\w.-]+:)?Token>"
)


@dataclass(frozen=True)
class TokenExtraction:
    """Tagged result of looking for a card token in a response body."""

    kind: Literal["token", "none"]
    value: Optional[str] = None

    @classmethod
    def found(cls, value: str) -> TokenExtraction:
        return cls(kind="token", value=value)

    @classmethod
    def none(cls) -> TokenExtraction:
        return cls(kind="none")

    @property
    def is_token(self) -> bool:
        return self.kind == "token"


def _load_json(text: str) -> Any:
    try:
        return json.loads(text)
    except (TypeError, ValueError):
        return None


def _looks_like_json_object(value: Any) -> bool:
    return isinstance(value, str) and value.lstrip().startswith("{")


def _local_name(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def _flatten_xml(text: str) -> Optional[Dict[str, Any]]:
    try:
        root = ET.fromstring(text)
    except (ET.ParseError, ValueError):
        return None

    children = list(root)
    if not children:
        # <string xmlns="...">{"ReturnValue": 0}</string>
        inner = (root.text or "").strip()
        if _looks_like_json_object(inner):
            return normalize_payload(inner)
        return {_local_name(root.tag): inner}

    fields: Dict[str, Any] = {}
    for element in root.iter():
        if len(element) == 0 and element is not root:
            fields.setdefault(_local_name(element.tag), (element.text or "").strip())
    return fields


def normalize_payload(body: str | bytes) -> Dict[str, Any]:
    """
    Turn any supported response body into a flat field dictionary.

    Fields of an embedded JSON string override those of the envelope.

    Raises:
        GatewayTransportError: If the body is empty or in no known shape
    """
    if isinstance(body, bytes):
        body = body.decode("utf-8", errors="replace")
    text = body.strip()
    if not text:
        raise GatewayTransportError("Empty response from gateway")

    data = _load_json(text)
    if isinstance(data, str) and _looks_like_json_object(data):
        return normalize_payload(data)
    if isinstance(data, dict):
        fields = dict(data)
        for key, value in data.items():
            if _looks_like_json_object(value):
                embedded = _load_json(value)
                if isinstance(embedded, dict):
                    fields.pop(key)
                    fields.update(embedded)
        return fields

    fields = _flatten_xml(text)
    if fields is not None:
        return fields

    raise GatewayTransportError("Unrecognized response format from gateway")


def extract_token(body: str | bytes) -> TokenExtraction:
    """
    Find the card token in a tokenization response.

    Tries a typed JSON ``Token`` field, then JSON strings embedded in other
    fields, then a raw XML ``<Token>`` tag.
    """
    if isinstance(body, bytes):
        body = body.decode("utf-8", errors="replace")

    data = _load_json(body.strip())
    if isinstance(data, str):
        data = _load_json(data)

    if isinstance(data, dict):
        token = data.get("Token")
        if isinstance(token, str) and token.strip():
            return TokenExtraction.found(token.strip())

        for value in data.values():
            if _looks_like_json_object(value):
                embedded = _load_json(value)
                if isinstance(embedded, dict):
                    token = embedded.get("Token")
                    if isinstance(token, str) and token.strip():
                        return TokenExtraction.found(token.strip())

    match = _XML_TOKEN.search(body)
    if match:
        return TokenExtraction.found(match.group(1))

    return TokenExtraction.none()


def _as_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        return int(value)
    try:
        return int(str(value).strip())
    except ValueError:
        return None


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value == 1
    if isinstance(value, str):
        return value.strip().lower() in ("true", "1", "yes")
    return False


def _as_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _first(fields: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if fields.get(key) not in (None, ""):
            return fields[key]
    return None


def is_success_response(fields: Dict[str, Any]) -> bool:
    """
    Approval requires both a zero return code and an explicit approval flag.

    Some payloads carry ``ReturnValue: 0`` with ``IsApproved: false`` (or the
    reverse); neither alone counts as a success.
    """
    return_code = _as_int(_first(fields, "ReturnCode", "ReturnValue"))
    return return_code == 0 and _as_bool(fields.get("IsApproved"))


def to_gateway_result(fields: Dict[str, Any]) -> GatewayResult:
    """Map a normalized field dictionary onto a ``GatewayResult``."""
    return GatewayResult(
        approved=is_success_response(fields),
        return_code=_as_int(_first(fields, "ReturnCode", "ReturnValue")),
        return_message=_as_str(fields.get("ReturnMessage")),
        reference_number=_as_str(_first(fields, "ReferenceNumber", "VoucherNumber")),
        masked_card=_as_str(_first(fields, "CardNumberMask", "Card4Digits")),
        card_brand=_as_str(fields.get("CardBrand")),
        transaction_id=_as_str(fields.get("TransactionID")),
    )
