#!/usr/bin/env python3
"""
Addendum Link Resolver

1) detect_references: scan rendered text for the original table, optional
   package markers and addendum markers.
2) extract_contract_links: pull prodbx page links out of the email (direct,
   tracking-wrapped, base64-wrapped).
3) bind_references: attach links to references (manual URLs override).
4) resolve_references: fetch every selected addendum concurrently, re-run the
   table extractor on each page, tag rows with provenance.
   One failed fetch never cancels or hides the others.
5) merge_items / reference_statuses: final row sequence + per-reference status.
"""

import base64
import binascii
import logging
import math
import re
from concurrent.futures import ThreadPoolExecutor, as_completed
from concurrent.futures import TimeoutError as FuturesTimeout
from dataclasses import dataclass, field, replace
from typing import Callable, Dict, List, Optional
from urllib.parse import unquote, urlparse

import requests
from bs4 import BeautifulSoup, Tag

from contract_eml_decoder import html_to_text
from contract_models import (
    AddendumReference,
    AddendumStatus,
    ContractLineItem,
    REF_ADDENDUM,
    REF_OPTIONAL_PACKAGE,
    REF_ORIGINAL,
    ROW_BLANK,
    SOURCE_ADDENDUM,
    SOURCE_INITIAL,
    STATUS_FAILURE,
    STATUS_SUCCESS,
    STATUS_WARNING,
    addendum_reference,
    optional_package_reference,
    original_reference,
)
from contract_table_extractor import ADDENDUM_TAG_RE, OPTIONAL_PACKAGE_RE, extract_order_items

log = logging.getLogger(__name__)

USER_AGENT = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36"
PACKAGE_NAME_MAX = 100

VALID_URL_RE = re.compile(r"^https?://(?:l1|login)\.prodbx\.com/go/view/\?", re.I)
PRODBX_URL_RE = re.compile(r"https?://(?:l1|login)\.prodbx\.com/go/view/\?[^\s\"<>/]+", re.I)
ENCODED_PRODBX_RE = re.compile(r"(l1|login)\.prodbx\.com%2Fgo%2Fview%2F%3F([^%/\s\"<>]+)", re.I)
TRACKING_URL_RE = re.compile(r"https?://track\.pstmrk\.it/[^\s\"<>]+", re.I)
PACKAGE_NAME_RE = re.compile(r"-\s*OPTIONAL\s+PACKAGE\s+\d+\s*-\s*([^\n]+)", re.I)
# base64 of "https://l1.prodbx.com"
BASE64_PRODBX_MARKER = "aHR0cHM6Ly9sMS5wcm9kYnguY29t"

Fetcher = Callable[[str, float], str]


class AddendumFetchError(Exception):
    pass


# ---------------- urls ----------------

def is_valid_addendum_url(url: Optional[str]) -> bool:
    return bool(url) and bool(VALID_URL_RE.match(url.strip()))


def _trim(url: str) -> str:
    return url.strip().rstrip(".,;!?")


def url_id(url: str) -> Optional[str]:
    """https://l1.prodbx.com/go/view/?35587.426.2025 -> '35587'"""
    query = urlparse(url.strip()).query
    head = query.split(".", 1)[0].strip()
    if head:
        return head
    m = re.search(r"[?&](\d+)\.", url)
    return m.group(1) if m else None


def _b64_url(token: str) -> Optional[str]:
    token = token.rstrip("=")
    token += "=" * (-len(token) % 4)
    try:
        decoded = base64.b64decode(token).decode("utf-8", errors="ignore")
    except (binascii.Error, ValueError):
        return None
    m = PRODBX_URL_RE.search(decoded)
    if m and is_valid_addendum_url(_trim(m.group(0))):
        return _trim(m.group(0))
    return None


def decode_tracking_url(href: str) -> Optional[str]:
    if not href:
        return None

    if BASE64_PRODBX_MARKER in href:
        raw = unquote(href)
        token = re.match(r"[A-Za-z0-9+/=]+", raw[raw.find(BASE64_PRODBX_MARKER):]).group(0)
        # "/" is both a base64 digit and the tracker's path separator: longest prefix first
        parts = token.split("/")
        for n in range(len(parts), 0, -1):
            u = _b64_url("/".join(parts[:n]))
            if u:
                return u

    m = PRODBX_URL_RE.search(unquote(href))
    if m:
        return _trim(m.group(0))

    m = ENCODED_PRODBX_RE.search(href)
    if m:
        return f"https://{m.group(1).lower()}.prodbx.com/go/view/?{_trim(unquote(m.group(2)))}"
    return None


def url_from_link(a: Tag) -> Optional[str]:
    href = (a.get("href") or "").strip()
    if is_valid_addendum_url(href):
        return _trim(href)

    m = PRODBX_URL_RE.search(a.get_text(" "))
    if m and is_valid_addendum_url(_trim(m.group(0))):
        return _trim(m.group(0))

    decoded = decode_tracking_url(href)
    if decoded and is_valid_addendum_url(decoded):
        return decoded
    return None


def extract_urls_from_text(text: str) -> List[str]:
    urls: List[str] = []
    for m in PRODBX_URL_RE.finditer(text or ""):
        u = _trim(m.group(0))
        if is_valid_addendum_url(u):
            urls.append(u)
    for m in TRACKING_URL_RE.finditer(text or ""):
        u = decode_tracking_url(m.group(0))
        if u and is_valid_addendum_url(u):
            urls.append(u)
    return _dedupe(urls)


def _dedupe(urls: List[str]) -> List[str]:
    seen = set()
    out = []
    for u in urls:
        if u not in seen:
            seen.add(u)
            out.append(u)
    return out


# ---------------- link sections ----------------

@dataclass
class ContractLinks:
    original_url: Optional[str] = None
    addendum_urls: List[str] = field(default_factory=list)


def _label_tags(soup: BeautifulSoup, needle: str) -> List[Tag]:
    return [s for s in soup.find_all(["strong", "b"]) if needle in s.get_text(" ").lower()]


def _usable_links(scope: Optional[Tag]) -> List[Tag]:
    if scope is None:
        return []
    return [a for a in scope.find_all("a", href=True) if url_from_link(a)]


def _links_after_label(label: Tag) -> List[Tag]:
    """Links near a section label: same parent, then following sibling divs, then any later link."""
    links = _usable_links(label.parent)
    if links:
        return links

    div = label.find_parent("div")
    sib = div.find_next_sibling("div") if div is not None else None
    while sib is not None:
        links = _usable_links(sib)
        if links:
            return links
        sib = sib.find_next_sibling("div")

    return [a for a in label.find_all_next("a", href=True) if url_from_link(a)]


def _prefer_visible(links: List[Tag]) -> List[Tag]:
    with_text = [a for a in links if a.get_text(strip=True)]
    return with_text or links


def extract_contract_links(html: str, text: str = "") -> ContractLinks:
    out = ContractLinks()

    if html and html.strip():
        soup = BeautifulSoup(html, "html.parser")

        labels = _label_tags(soup, "original contract")
        if labels:
            for a in _prefer_visible(_links_after_label(labels[0])):
                u = url_from_link(a)
                if u:
                    out.original_url = u
                    break
            if not out.original_url:
                log.warning("'Original Contract' label found but no usable link after it")

        labels = _label_tags(soup, "addendums")
        if labels:
            candidates = _links_after_label(labels[0])
            out.addendum_urls = [u for u in (url_from_link(a) for a in candidates) if u]

    if not out.original_url and not out.addendum_urls and text:
        m = re.search(r"Original\s+Contract\s*:?\s*([^\n]+)", text, re.I)
        if m:
            urls = extract_urls_from_text(m.group(1))
            out.original_url = urls[0] if urls else None
        m = re.search(r"Addendums\s*:?\s*([\s\S]+?)(?=\n\n|(?-i:\n[A-Z])|$)", text, re.I)
        if m:
            out.addendum_urls = extract_urls_from_text(m.group(1))

    out.addendum_urls = [u for u in _dedupe(out.addendum_urls) if u != out.original_url]
    log.info("links: original=%s addenda=%d", "yes" if out.original_url else "no", len(out.addendum_urls))
    return out


# ---------------- references ----------------

def detect_references(text: str, has_table: bool) -> List[AddendumReference]:
    refs: List[AddendumReference] = []
    if has_table:
        refs.append(original_reference())

    text = text or ""
    seen_packages = set()
    for m in OPTIONAL_PACKAGE_RE.finditer(text):
        number = int(m.group(1))
        if number <= 0 or number in seen_packages:
            continue
        seen_packages.add(number)
        nm = PACKAGE_NAME_RE.match(text, m.start())
        name = nm.group(1).strip()[:PACKAGE_NAME_MAX] if nm else None
        refs.append(optional_package_reference(number, name or None))

    seen_addenda = set()
    for m in ADDENDUM_TAG_RE.finditer(text):
        number = int(m.group(1))
        if number <= 0 or number in seen_addenda:
            continue
        seen_addenda.add(number)
        refs.append(addendum_reference(number))

    return refs


def bind_references(refs: List[AddendumReference], links: ContractLinks,
                    manual_urls: Optional[List[str]] = None) -> List[AddendumReference]:
    """New reference list with URLs attached. Inputs are not modified."""
    bound = [replace(r) for r in refs]
    urls = list(manual_urls) if manual_urls is not None else list(links.addendum_urls)
    urls = _dedupe([u.strip() for u in urls if u and u.strip()])

    if links.original_url and not any(r.type == REF_ORIGINAL for r in bound):
        bound.insert(0, AddendumReference(type=REF_ORIGINAL, selected=True, resolved_url=links.original_url))

    addenda = sorted((r for r in bound if r.type == REF_ADDENDUM and not r.resolved_url),
                     key=lambda r: (r.number is None, r.number or 0))
    for ref, u in zip(addenda, urls):
        ref.resolved_url = u
    for u in urls[len(addenda):]:
        bound.append(addendum_reference(None, resolved_url=u))
    return bound


# ---------------- fetching ----------------

def fetch_page(url: str, timeout: float = 30.0) -> str:
    if not is_valid_addendum_url(url):
        raise AddendumFetchError(f"invalid addendum URL format: {url}")
    try:
        r = requests.get(url, headers={"User-Agent": USER_AGENT}, timeout=timeout)
    except requests.Timeout:
        raise AddendumFetchError(f"timeout after {timeout:g}s: {url}")
    except requests.RequestException as e:
        raise AddendumFetchError(f"request failed: {e}")
    if r.status_code != 200:
        raise AddendumFetchError(f"HTTP {r.status_code} {r.reason or ''}".strip())
    if not r.text or not r.text.strip():
        raise AddendumFetchError("empty page body")
    return r.text


@dataclass
class AddendumOutcome:
    reference: AddendumReference
    status: str
    detail: str = ""
    items: List[ContractLineItem] = field(default_factory=list)
    page_number: Optional[int] = None
    url_id: Optional[str] = None


def parse_addendum_page(html: str, ref: AddendumReference) -> AddendumOutcome:
    uid = url_id(ref.resolved_url or "") if ref.resolved_url else None

    if ref.type == REF_ORIGINAL:
        tx = extract_order_items(html, source_label=SOURCE_INITIAL, fallback_first_table=True)
        items = [it.tagged(url_id=uid) for it in tx.items]
        if not any(it.is_item for it in items):
            return AddendumOutcome(ref, STATUS_WARNING, "original contract page has no order items", items, None, uid)
        return AddendumOutcome(ref, STATUS_SUCCESS, f"{sum(it.is_item for it in items)} item(s)", items, None, uid)

    m = ADDENDUM_TAG_RE.search(html_to_text(html))
    number = int(m.group(1)) if m else ref.number
    tx = extract_order_items(html, source_label=SOURCE_ADDENDUM, addendum_number=number,
                             keep_zero_amount_items=False, fallback_first_table=True)
    if not tx.has_table:
        return AddendumOutcome(ref, STATUS_WARNING, "page fetched but no order items table", [], number, uid)
    items = [it.tagged(url_id=uid) for it in tx.items]
    n_items = sum(1 for it in items if it.is_item)
    if not n_items:
        return AddendumOutcome(ref, STATUS_WARNING, "page fetched but no order items", [], number, uid)
    return AddendumOutcome(ref, STATUS_SUCCESS, f"{n_items} item(s)", items, number, uid)


def _resolve_one(ref: AddendumReference, fetch: Fetcher, timeout: float) -> AddendumOutcome:
    try:
        html = fetch(ref.resolved_url, timeout)
    except Exception as e:
        # any fetch failure stays with this reference
        log.warning("%s: fetch failed: %s", ref.label, e)
        return AddendumOutcome(ref, STATUS_FAILURE, str(e), url_id=url_id(ref.resolved_url or ""))
    try:
        return parse_addendum_page(html, ref)
    except Exception as e:
        log.warning("%s: unparsable page: %s", ref.label, e)
        return AddendumOutcome(ref, STATUS_FAILURE, f"unparsable page: {e}", url_id=url_id(ref.resolved_url or ""))


def wants_fetch(ref: AddendumReference, primary_has_table: bool = True) -> bool:
    if not ref.selected or not ref.resolved_url:
        return False
    if ref.type == REF_ADDENDUM:
        return True
    return ref.type == REF_ORIGINAL and not primary_has_table


def resolve_references(refs: List[AddendumReference], fetch: Optional[Fetcher] = None,
                       timeout: float = 30.0, max_workers: int = 4,
                       primary_has_table: bool = True) -> List[AddendumOutcome]:
    """Outcomes in reference order, one per fetched reference."""
    fetch = fetch or fetch_page
    todo = [(i, r) for i, r in enumerate(refs) if wants_fetch(r, primary_has_table)]
    if not todo:
        return []

    results: Dict[int, AddendumOutcome] = {}
    invalid = [(i, r) for i, r in todo if not is_valid_addendum_url(r.resolved_url)]
    for i, r in invalid:
        results[i] = AddendumOutcome(r, STATUS_FAILURE, f"invalid addendum URL format: {r.resolved_url}")
    todo = [(i, r) for i, r in todo if i not in results]

    if todo:
        workers = max(1, min(max_workers, len(todo)))
        # whole-fetch limit per wave of workers, not per socket read
        budget = timeout * math.ceil(len(todo) / workers)
        ex = ThreadPoolExecutor(max_workers=workers)
        futs = {ex.submit(_resolve_one, r, fetch, timeout): i for i, r in todo}
        try:
            for fut in as_completed(futs, timeout=budget):
                outcome = fut.result()
                results[futs[fut]] = outcome
                log.info("%s -> %s (%s)", outcome.reference.label, outcome.status, outcome.detail)
        except FuturesTimeout:
            for i, r in todo:
                if i not in results:
                    log.warning("%s: no page after %gs", r.label, budget)
                    results[i] = AddendumOutcome(r, STATUS_FAILURE, f"timeout after {budget:g}s",
                                                 url_id=url_id(r.resolved_url or ""))
        finally:
            ex.shutdown(wait=False, cancel_futures=True)

    return [results[i] for i in sorted(results)]


# ---------------- merge / status ----------------

def merge_items(primary: List[ContractLineItem], refs: List[AddendumReference],
                outcomes: List[AddendumOutcome]) -> List[ContractLineItem]:
    skipped_packages = {r.number for r in refs if r.type == REF_OPTIONAL_PACKAGE and not r.selected}
    skipped_addenda = {r.number for r in refs if r.type == REF_ADDENDUM and not r.selected and r.number is not None}
    original_off = any(r.type == REF_ORIGINAL and not r.selected for r in refs)
    # detailed pages replace the lump-sum progress payment rows for the same addendum
    detailed = {o.page_number for o in outcomes if o.status == STATUS_SUCCESS and o.reference.type == REF_ADDENDUM}

    merged: List[ContractLineItem] = []

    def push(it: ContractLineItem) -> None:
        if it.type == ROW_BLANK and (not merged or merged[-1].type == ROW_BLANK):
            return
        merged.append(it)

    for it in primary:
        if it.optional_package_number is not None and it.optional_package_number in skipped_packages:
            continue
        if it.source_label == SOURCE_ADDENDUM:
            if it.addendum_number in skipped_addenda or it.addendum_number in detailed:
                continue
        elif original_off:
            continue
        push(it)

    for o in outcomes:
        if o.reference.type == REF_ORIGINAL and original_off:
            continue
        for it in o.items:
            push(it)

    while merged and merged[-1].type == ROW_BLANK:
        merged.pop()
    return merged


def reference_statuses(refs: List[AddendumReference], outcomes: List[AddendumOutcome],
                       primary: List[ContractLineItem]) -> List[AddendumStatus]:
    by_ref = {id(o.reference): o for o in outcomes}
    statuses: List[AddendumStatus] = []
    for r in refs:
        o = by_ref.get(id(r))
        if o is not None:
            statuses.append(AddendumStatus(r, o.status, o.detail))
            continue

        if r.type == REF_ORIGINAL:
            n = sum(1 for it in primary if it.is_item and it.source_label == SOURCE_INITIAL)
            if not r.selected:
                statuses.append(AddendumStatus(r, STATUS_SUCCESS, "not selected"))
            elif n:
                statuses.append(AddendumStatus(r, STATUS_SUCCESS, f"{n} item(s) in email table"))
            else:
                statuses.append(AddendumStatus(r, STATUS_WARNING, "table found but no items"))

        elif r.type == REF_OPTIONAL_PACKAGE:
            n = sum(1 for it in primary if it.is_item and it.optional_package_number == r.number)
            if not r.selected:
                statuses.append(AddendumStatus(r, STATUS_SUCCESS, f"not selected; {n} item(s) excluded"))
            elif n:
                statuses.append(AddendumStatus(r, STATUS_SUCCESS, f"{n} item(s) included"))
            else:
                statuses.append(AddendumStatus(r, STATUS_WARNING, "marker found but no package rows in table"))

        else:
            lump = any(it.source_label == SOURCE_ADDENDUM and it.addendum_number == r.number for it in primary)
            if not r.selected:
                statuses.append(AddendumStatus(r, STATUS_SUCCESS, "not selected"))
            elif lump:
                statuses.append(AddendumStatus(r, STATUS_WARNING, "no page link; using progress payment amount"))
            else:
                statuses.append(AddendumStatus(r, STATUS_WARNING, "no page link found"))
    return statuses
