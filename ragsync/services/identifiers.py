from __future__ import annotations

import re
from dataclasses import dataclass

_ID_SEPARATOR = r"\s*(?:#|no\.?|number)?\s*[-:]?\s*"
# identifier tokens must carry at least one digit so prose like "order status" is ignored
_ID_TOKEN = r"((?=[A-Z0-9-]*\d)[A-Z0-9][A-Z0-9-]{3,})"

_ORDER_RE = re.compile(rf"\b(?:order|ord){_ID_SEPARATOR}{_ID_TOKEN}\b", re.IGNORECASE)
_INVOICE_RE = re.compile(rf"\b(?:invoice|inv){_ID_SEPARATOR}{_ID_TOKEN}\b", re.IGNORECASE)
_PO_RE = re.compile(rf"\b(?:p\.?o\.?|po){_ID_SEPARATOR}{_ID_TOKEN}\b", re.IGNORECASE)
_TRACKING_PREFIX_RE = re.compile(rf"\b(?:tracking|track|trk){_ID_SEPARATOR}([A-Z0-9]{{8,}})\b", re.IGNORECASE)
_TRACKING_TOKEN_RE = re.compile(r"\b(1Z[0-9A-Z]{8,}|9[0-9]{15,21}|[0-9]{12,22}|[A-Z0-9]{12,})\b")
_SKU_RE = re.compile(r"\bSKU\s*[:#-]?\s*([A-Z0-9-]{3,})\b", re.IGNORECASE)
_HASH_ONLY_RE = re.compile(r"^\s*#([A-Z0-9][A-Z0-9-]{3,})\s*$", re.IGNORECASE)
_TRACKING_KEYWORDS_RE = re.compile(r"\b(tracking|track|shipment|carrier|delivery|waybill)\b", re.IGNORECASE)

INTENTS = (
    "identifier_lookup",
    "policy_sop",
    "logistics_shipping",
    "payments_terms",
    "account_history",
    "troubleshooting",
)


@dataclass(frozen=True)
class ExtractedIdentifiers:
    order_numbers: tuple[str, ...] = ()
    invoice_numbers: tuple[str, ...] = ()
    po_numbers: tuple[str, ...] = ()
    tracking_numbers: tuple[str, ...] = ()
    skus: tuple[str, ...] = ()

    def is_empty(self) -> bool:
        return not (self.order_numbers or self.invoice_numbers or self.po_numbers or self.tracking_numbers or self.skus)

    def as_metadata(self) -> dict[str, object]:
        return {
            "orderNumber": self.order_numbers[0] if self.order_numbers else None,
            "invoiceNumber": self.invoice_numbers[0] if self.invoice_numbers else None,
            "poNumber": self.po_numbers[0] if self.po_numbers else None,
            "trackingNumber": self.tracking_numbers[0] if self.tracking_numbers else None,
            "itemSkus": list(self.skus),
        }


def _dedupe(values: list[str]) -> tuple[str, ...]:
    return tuple(dict.fromkeys(values))


def _is_tracking_token(token: str, has_tracking_keyword: bool) -> bool:
    # all-caps words like ACKNOWLEDGEMENT match the token pattern too
    if not any(ch.isdigit() for ch in token):
        return False
    if token.upper().startswith("1Z"):
        return True
    if len(token) >= 12 and any(ch.isalpha() for ch in token):
        return True
    return has_tracking_keyword


def extract_identifiers(query_text: str) -> ExtractedIdentifiers:
    text = query_text or ""
    order_numbers: list[str] = []

    hash_only = _HASH_ONLY_RE.match(text)
    if hash_only:
        order_numbers.append(hash_only.group(1))
    order_numbers.extend(match.group(1) for match in _ORDER_RE.finditer(text))

    tracking_numbers = [match.group(1) for match in _TRACKING_PREFIX_RE.finditer(text)]
    has_tracking_keyword = bool(_TRACKING_KEYWORDS_RE.search(text))
    tracking_numbers.extend(
        token for token in _TRACKING_TOKEN_RE.findall(text) if _is_tracking_token(token, has_tracking_keyword)
    )

    return ExtractedIdentifiers(
        order_numbers=_dedupe(order_numbers),
        invoice_numbers=_dedupe([match.group(1) for match in _INVOICE_RE.finditer(text)]),
        po_numbers=_dedupe([match.group(1) for match in _PO_RE.finditer(text)]),
        tracking_numbers=_dedupe(tracking_numbers),
        skus=_dedupe([match.group(1) for match in _SKU_RE.finditer(text)]),
    )


def classify_intent(query_text: str, identifiers: ExtractedIdentifiers | None = None) -> str:
    """Route a query to a coarse intent; identifier hits always win."""
    found = identifiers if identifiers is not None else extract_identifiers(query_text)
    if not found.is_empty():
        return "identifier_lookup"

    text = (query_text or "").lower()
    if re.search(r"\b(policy|sop|procedure|process|guideline)\b", text):
        return "policy_sop"
    if re.search(r"\b(ship|shipping|shipment|tracking|carrier|delivery|order status)\b", text) or re.search(
        r"where(?:'s| is) my order", text
    ):
        return "logistics_shipping"
    if re.search(r"\b(invoice|payment|balance|terms|ar|credit|past due|estimate|quote|quotation)\b", text):
        return "payments_terms"
    if re.search(r"\b(history|previous|past orders|account|customer)\b", text):
        return "account_history"
    if re.search(r"\b(error|issue|problem|not working|broken|troubleshoot)\b", text):
        return "troubleshooting"
    return "account_history"
