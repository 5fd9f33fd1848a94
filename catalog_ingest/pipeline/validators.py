"""
Stateless field-level validators for feed values.

EAN checksum validation, URL normalization, locale-tolerant number parsing and
extraction of text fields that arrive in several shapes.
"""
import re
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Optional
from urllib.parse import urlsplit

from pydantic import BaseModel

from catalog_ingest.models.domain import LocalizedText, PlainText, TextField

EAN_LENGTHS = (8, 12, 13, 14)
SCHEME_PATTERN = re.compile(r"^[a-zA-Z][a-zA-Z0-9+.\-]*://")
HOSTNAME_PATTERN = re.compile(
    r"^(?:[a-z0-9](?:[a-z0-9\-]{0,61}[a-z0-9])?\.)+[a-z]{2,63}$", re.IGNORECASE
)
IPV4_PATTERN = re.compile(r"^(?:\d{1,3}\.){3}\d{1,3}$")
CENT = Decimal("0.01")


class EanResult(BaseModel):
    valid: bool
    normalized: Optional[str] = None
    message: Optional[str] = None


class UrlResult(BaseModel):
    valid: bool
    normalized: Optional[str] = None
    secure: bool = False
    warning: Optional[str] = None
    message: Optional[str] = None


def ean13_check_digit(digits: str) -> int:
    """GS1 mod-10 check digit over the first 12 digits, weights 1,3,1,3..."""
    total = sum(int(d) * (3 if i % 2 else 1) for i, d in enumerate(digits[:12]))
    return (10 - total % 10) % 10


def validate_ean(raw: Any) -> EanResult:
    """
    Validate an EAN/GTIN code.

    Non-digits are stripped. Lengths 8, 12, 13 and 14 are accepted; 13-digit codes
    must also carry a correct check digit.
    """
    if raw is None:
        return EanResult(valid=False, message="EAN is empty")

    digits = re.sub(r"\D", "", str(raw))
    if not digits:
        return EanResult(valid=False, message="EAN is empty")

    if len(digits) not in EAN_LENGTHS:
        return EanResult(
            valid=False, message=f"EAN has invalid length {len(digits)}"
        )

    if len(digits) == 13 and ean13_check_digit(digits) != int(digits[12]):
        return EanResult(valid=False, message="EAN checksum mismatch")

    return EanResult(valid=True, normalized=digits)


def validate_url(raw: Any) -> UrlResult:
    """
    Validate and normalize a URL.

    A missing scheme is taken to be https. Only http and https are accepted;
    plain http is valid but flagged as insecure.
    """
    if raw is None or not str(raw).strip():
        return UrlResult(valid=False, message="URL is empty")

    candidate = str(raw).strip()
    if any(ch.isspace() for ch in candidate):
        return UrlResult(valid=False, message="URL contains whitespace")

    if not SCHEME_PATTERN.match(candidate):
        candidate = f"https://{candidate}"

    try:
        parts = urlsplit(candidate)
        hostname = parts.hostname or ""
    except ValueError as e:
        return UrlResult(valid=False, message=f"Malformed URL: {e}")

    scheme = parts.scheme.lower()
    if scheme not in ("http", "https"):
        return UrlResult(valid=False, message=f"Unsupported URL scheme '{scheme}'")

    if not (HOSTNAME_PATTERN.match(hostname) or IPV4_PATTERN.match(hostname)):
        return UrlResult(valid=False, message=f"Invalid hostname '{hostname}'")

    secure = scheme == "https"
    return UrlResult(
        valid=True,
        normalized=candidate,
        secure=secure,
        warning=None if secure else "URL does not use HTTPS",
    )


def normalize_number(raw: Any) -> Optional[Decimal]:
    """Parse a number that may use a comma decimal separator; empty gives None"""
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, Decimal):
        return raw
    if isinstance(raw, (int, float)):
        return Decimal(str(raw))

    text = extract_text(raw) if isinstance(raw, (dict, list)) else str(raw)
    text = re.sub(r"\s", "", text).replace(",", ".")
    if not text:
        return None

    try:
        value = Decimal(text)
    except InvalidOperation:
        return None
    return value if value.is_finite() else None


def normalize_int(raw: Any, default: Optional[int] = None) -> Optional[int]:
    value = normalize_number(raw)
    if value is None:
        return default
    return int(value)


def normalize_bool(raw: Any, default: bool = False) -> bool:
    if raw is None:
        return default
    if isinstance(raw, bool):
        return raw
    text = extract_text(raw).strip().lower()
    if not text:
        return default
    return text in ("1", "true", "yes", "y", "t", "on")


def quantize(value: Optional[Decimal], places: int) -> Optional[Decimal]:
    """Round half up to a fixed number of decimal places"""
    if value is None:
        return None
    return value.quantize(Decimal(1).scaleb(-places), rounding=ROUND_HALF_UP)


def round_money(value: Optional[Decimal]) -> Optional[Decimal]:
    if value is None:
        return None
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def net_from_gross(gross: Optional[Decimal], vat: Optional[Decimal]) -> Optional[Decimal]:
    """net = gross / (1 + vat/100); without VAT the net price equals gross"""
    if gross is None:
        return None
    if not vat:
        return round_money(gross)
    return round_money(gross / (1 + vat / Decimal(100)))


def parse_text_field(node: Any, preferred_lang: Optional[str] = None) -> Optional[TextField]:
    """
    Convert a raw text node into a PlainText or LocalizedText value.

    Accepted shapes: a plain string, a mapping with text under "_" or "#text"
    (optionally with a "lang" attribute), a mapping with only attributes (no text),
    or a list of any of these, in which case the preferred language or the first
    non-empty entry wins.
    """
    if node is None:
        return None

    if isinstance(node, str):
        return PlainText(text=node.strip())

    if isinstance(node, (int, float, Decimal)) and not isinstance(node, bool):
        return PlainText(text=str(node))

    if isinstance(node, list):
        candidates = [parse_text_field(item) for item in node]
        candidates = [c for c in candidates if c is not None and c.text]
        if not candidates:
            return None
        if preferred_lang:
            for candidate in candidates:
                if isinstance(candidate, LocalizedText) and candidate.lang == preferred_lang:
                    return candidate
        return candidates[0]

    if isinstance(node, dict):
        raw_text = node.get("_", node.get("#text"))
        text = str(raw_text).strip() if raw_text is not None else ""
        lang = node.get("lang")
        if lang and isinstance(lang, str):
            return LocalizedText(text=text, lang=lang)
        return PlainText(text=text)

    return None


def extract_text(node: Any, preferred_lang: Optional[str] = None) -> str:
    """Best-effort text of a raw node, empty string when there is none"""
    field = parse_text_field(node, preferred_lang)
    return field.text if field is not None else ""


__all__ = [
    "EanResult",
    "UrlResult",
    "ean13_check_digit",
    "validate_ean",
    "validate_url",
    "normalize_number",
    "normalize_int",
    "normalize_bool",
    "quantize",
    "round_money",
    "net_from_gross",
    "parse_text_field",
    "extract_text",
]
