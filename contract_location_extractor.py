#!/usr/bin/env python3
"""
"Label: value" metadata from the rendered contract text.

Labels are matched case-insensitively, one value per line, first hit wins.
Money fields come back as Decimal (None when absent or unreadable).
"""

import logging
import re
from decimal import Decimal
from typing import Dict, Optional

from contract_models import ExtractedLocation
from contract_table_extractor import parse_decimal

log = logging.getLogger(__name__)

_COLON = r"[ \t]*[:：][ \t]*(?:\n[ \t]*)?"
LABEL_LINE_RE = re.compile(r"^[A-Za-z][A-Za-z .#]{1,40}[:：]")

# field name -> label pattern (value = rest of the line)
LABELS: Dict[str, str] = {
    "order_no": r"Order\s*I[Dd]",
    "dbx_customer_id": r"DBX\s+Customer\s+I[Dd]",
    "client_name": r"(?<![A-Za-z])Client(?:\s+Name)?",
    "street_address": r"(?<![A-Za-z])(?<!mail )(?:Street\s+)?Address",
    "city": r"(?<![A-Za-z])City",
    "state": r"(?<![A-Za-z])State",
    "zip": r"(?<![A-Za-z])Zip(?:\s*Code)?",
    "email": r"(?<![A-Za-z])E-?mail(?:\s+Address)?",
    "phone": r"(?<![A-Za-z])Phone",
    "order_date": r"Order\s+Date",
    "order_po": r"Order\s+PO",
    "order_due_date": r"Order\s+Due\s+Date",
    "order_type": r"Order\s+Type",
    "quote_expiration_date": r"Quote\s+Expiration\s+Date",
    "order_grand_total": r"Order\s+Grand\s+Total",
    "progress_payments": r"Progress\s+Payments",
    "balance_due": r"Balance\s+Due",
    "sales_rep": r"Sales\s+Rep(?:resentative)?",
}

MONEY_FIELDS = ("order_grand_total", "balance_due")
IDENTITY_FIELDS = ("client_name", "dbx_customer_id", "street_address")

_PATTERNS = {
    name: re.compile(label + _COLON + r"([^\n\r]*)", re.I)
    for name, label in LABELS.items()
}


def normalize_text(text: str) -> str:
    return (text or "").replace("\r\n", "\n").replace("\r", "\n").replace("\u00a0", " ")


def find_label(text: str, field_name: str) -> str:
    m = _PATTERNS[field_name].search(text)
    if not m:
        return ""
    value = m.group(1).strip()
    # value cell left blank: the next line is another label
    if LABEL_LINE_RE.match(value):
        return ""
    return value


def _money(raw: str) -> Optional[Decimal]:
    if not raw:
        return None
    # "$150,000.00 (incl. tax)" -> first money-looking token
    m = re.search(r"\(?-?\$?\s*[\d,]+(?:\.\d+)?\)?", raw)
    return parse_decimal(m.group(0)) if m else None


def extract_location(text: str) -> ExtractedLocation:
    if not text or not text.strip():
        log.warning("empty text; no location fields")
        return ExtractedLocation()

    norm = normalize_text(text)
    values = {name: find_label(norm, name) for name in LABELS}

    money = {name: _money(values.pop(name)) for name in MONEY_FIELDS}

    if not any(values[name] for name in IDENTITY_FIELDS):
        log.warning("no client name, DBX customer id or address found; text starts %r", norm[:200])

    return ExtractedLocation(**values, **money)
