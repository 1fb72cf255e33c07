#!/usr/bin/env python3
"""
Workbook filename + transport-safe Content-Disposition.

"{F. Last} - #{dbx id} - {street}.xlsx"
fallbacks: "Contract - #{order no}.xlsx", then "contract-{ms timestamp}.xlsx"
"""

import re
import time
import unicodedata
from typing import Optional
from urllib.parse import quote

from contract_models import ExtractedLocation

MAX_STEM = 247
INVALID_CHARS_RE = re.compile(r'[<>:"/\\|?*\x00-\x1f]')
INVISIBLE_RE = re.compile("[\u200b-\u200d\ufeff\u202a-\u202e\u2060-\u206f]")


def strip_invisible(s: str) -> str:
    return INVISIBLE_RE.sub("", s or "")


def format_client_name(name: str) -> str:
    parts = strip_invisible(name).split()
    if not parts:
        return ""
    if len(parts) == 1:
        return parts[0]
    return f"{parts[0][0].upper()}. {parts[-1]}"


def sanitize_filename(name: str) -> str:
    s = INVALID_CHARS_RE.sub("", strip_invisible(name))
    s = re.sub(r"\s+", " ", s)
    s = s.strip(" .")
    if len(s) > MAX_STEM:
        s = s[:MAX_STEM].rstrip(" -")
    return s


def generate_filename(location: ExtractedLocation, now: Optional[float] = None) -> str:
    parts = []
    client = format_client_name(location.client_name)
    if client:
        parts.append(client)
    if location.dbx_customer_id.strip():
        parts.append(f"#{location.dbx_customer_id.strip()}")
    if location.street_address.strip():
        parts.append(location.street_address.strip())

    stem = sanitize_filename(" - ".join(parts)) if parts else ""
    if stem:
        return f"{stem}.xlsx"

    if location.order_no.strip():
        stem = sanitize_filename(f"Contract - #{location.order_no.strip()}")
        if stem:
            return f"{stem}.xlsx"

    ms = int((now if now is not None else time.time()) * 1000)
    return f"contract-{ms}.xlsx"


def ascii_fallback(filename: str) -> str:
    folded = unicodedata.normalize("NFKD", filename).encode("ascii", "ignore").decode("ascii")
    folded = folded.replace('"', "").replace("\\", "")
    return folded.strip() or "contract.xlsx"


def content_disposition(filename: str) -> str:
    """attachment header with ASCII filename= and RFC 5987 filename*=."""
    return f"attachment; filename=\"{ascii_fallback(filename)}\"; filename*=UTF-8''{quote(filename, safe='')}"
