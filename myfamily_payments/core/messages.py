"""
Caller-facing payment messages.

Z-Credit answers in Hebrew. Known upstream texts are translated into the
caller locale; anything else falls back to a generic processing error.
"""
from typing import Dict, Optional

SUPPORTED_LOCALES = ("en", "fr", "he")
FALLBACK_LOCALE = "en"

# Upstream decline text -> message per locale
DECLINE_TRANSLATIONS: Dict[str, Dict[str, str]] = {
    "כרטיס האשראי לא תקין": {
        "en": "The credit card is invalid",
        "fr": "La carte de crédit est invalide",
        "he": "כרטיס האשראי לא תקין",
    },
    "עסקה לא אושרה": {
        "en": "The transaction was not approved",
        "fr": "La transaction n'a pas été approuvée",
        "he": "עסקה לא אושרה",
    },
    "תוקף הכרטיס פג": {
        "en": "The card has expired",
        "fr": "La carte a expiré",
        "he": "תוקף הכרטיס פג",
    },
    "סכום העסקה חורג מהמותר": {
        "en": "The amount exceeds the allowed limit",
        "fr": "Le montant dépasse la limite autorisée",
        "he": "סכום העסקה חורג מהמותר",
    },
}

GENERIC_DECLINE: Dict[str, str] = {
    "en": "Payment processing error",
    "fr": "Erreur lors du traitement du paiement",
    "he": "שגיאה בעיבוד התשלום",
}

TRANSPORT_FAILURE: Dict[str, str] = {
    "en": "The payment service is temporarily unavailable, please try again later",
    "fr": "Le service de paiement est momentanément indisponible, veuillez réessayer plus tard",
    "he": "שירות התשלומים אינו זמין כרגע, נסו שוב מאוחר יותר",
}

MISSING_CREDENTIAL: Dict[str, str] = {
    "en": "A card or saved card token is required to pay the remaining amount",
    "fr": "Une carte ou un jeton de carte est nécessaire pour payer le montant restant",
    "he": "נדרש כרטיס אשראי או כרטיס שמור לתשלום היתרה",
}

SUCCESS_MESSAGES: Dict[str, Dict[str, str]] = {
    "fund_only": {
        "en": "Payment made from the family fund",
        "fr": "Paiement effectué à partir du pot familial",
        "he": "התשלום בוצע מקופת המשפחה",
    },
    "split": {
        "en": "Payment made from the family fund and credit card",
        "fr": "Paiement effectué par pot familial et carte de crédit",
        "he": "התשלום בוצע מקופת המשפחה ובכרטיס האשראי",
    },
    "card_only": {
        "en": "Payment made by credit card",
        "fr": "Paiement effectué par carte de crédit",
        "he": "התשלום בוצע בכרטיס האשראי",
    },
    "deposit": {
        "en": "Funds added to the family fund",
        "fr": "Fonds ajoutés au pot familial",
        "he": "הכסף נוסף לקופת המשפחה",
    },
}


def resolve_locale(locale: Optional[str]) -> str:
    """Reduce ``fr-FR`` style tags to a supported language, defaulting to English."""
    if not locale:
        return FALLBACK_LOCALE
    language = locale.replace("_", "-").split("-")[0].lower()
    return language if language in SUPPORTED_LOCALES else FALLBACK_LOCALE


def _pick(table: Dict[str, str], locale: Optional[str]) -> str:
    return table[resolve_locale(locale)]


def translate_decline(
    message: Optional[str], locale: Optional[str] = None, include_raw: bool = False
) -> str:
    """
    Translate an upstream decline message for the caller.

    Args:
        message: Raw upstream ReturnMessage
        locale: Caller locale
        include_raw: Append the raw upstream text (non-production only)

    Returns:
        str: Localized message
    """
    raw = (message or "").strip()
    translations = DECLINE_TRANSLATIONS.get(raw)
    translated = _pick(translations or GENERIC_DECLINE, locale)
    if include_raw and raw and raw != translated:
        return f"{translated} ({raw})"
    return translated


def transport_failure_message(locale: Optional[str] = None) -> str:
    return _pick(TRANSPORT_FAILURE, locale)


def missing_credential_message(locale: Optional[str] = None) -> str:
    return _pick(MISSING_CREDENTIAL, locale)


def success_message(path: str, locale: Optional[str] = None) -> str:
    """Message for a completed payment on ``path`` (fund_only, split, card_only, deposit)."""
    return _pick(SUCCESS_MESSAGES[path], locale)
