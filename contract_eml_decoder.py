#!/usr/bin/env python3
"""
Message Decoder

Raw .eml bytes -> DecodedMessage(text, html).
Malformed input never raises: the caller gets an empty body and a warning in the log.
"""

import logging
from email import policy
from email.message import EmailMessage
from email.parser import BytesParser
from typing import List

from bs4 import BeautifulSoup

from contract_models import DecodedMessage

log = logging.getLogger(__name__)


def _part_text(part: EmailMessage) -> str:
    try:
        content = part.get_content()
        if isinstance(content, bytes):
            return content.decode("utf-8", errors="replace")
        return content or ""
    except (LookupError, UnicodeError, KeyError, AssertionError):
        # unknown charset names and broken transfer encodings land here
        payload = part.get_payload(decode=True) or b""
        charset = part.get_content_charset() or "utf-8"
        try:
            return payload.decode(charset, errors="replace")
        except LookupError:
            return payload.decode("utf-8", errors="replace")


def _is_attachment(part: EmailMessage) -> bool:
    disp = (part.get("content-disposition") or "").lower()
    return disp.startswith("attachment")


def _collect(msg: EmailMessage, subtype: str) -> List[str]:
    out: List[str] = []
    for part in msg.walk():
        if part.is_multipart():
            continue
        if part.get_content_maintype() != "text" or part.get_content_subtype() != subtype:
            continue
        if _is_attachment(part):
            continue
        out.append(_part_text(part))
    return out


def html_to_text(html: str) -> str:
    """Visible text of an HTML document, one block per line."""
    if not html or not html.strip():
        return ""
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(["script", "style"]):
        tag.decompose()
    lines = [ln.strip() for ln in soup.get_text("\n").splitlines()]
    return "\n".join(ln for ln in lines if ln)


def decode_message(raw: bytes) -> DecodedMessage:
    if not raw:
        log.warning("empty message buffer")
        return DecodedMessage()

    try:
        msg = BytesParser(policy=policy.default).parsebytes(raw)
    except Exception as e:
        log.warning("could not parse message container: %s", e)
        return DecodedMessage()

    try:
        html_parts = _collect(msg, "html")
        text_parts = _collect(msg, "plain")
    except Exception as e:
        log.warning("could not read message body: %s", e)
        return DecodedMessage(subject=str(msg.get("subject") or ""), sender=str(msg.get("from") or ""))

    html = "".join(html_parts)
    text = "\n".join(text_parts)
    if not html:
        log.info("no text/html part; falling back to plain text")
    if not text and html:
        text = html_to_text(html)
    if not text and not html:
        log.warning("no parseable body found")

    return DecodedMessage(
        text=text,
        html=html,
        subject=str(msg.get("subject") or "").strip(),
        sender=str(msg.get("from") or "").strip(),
        date=str(msg.get("date") or "").strip(),
    )


def decode_file(path: str) -> DecodedMessage:
    with open(path, "rb") as f:
        return decode_message(f.read())
