#!/usr/bin/env python3
"""
Order-items table -> flat, ordered ContractLineItem rows.

Rows are classified by a fixed, ordered tuple of predicates (CLASSIFIERS).
Each predicate looks at one RowView and either passes (None) or returns a
RowClass tagged with the row kind. First non-None wins.

Hierarchy is not a tree: items carry back-references to the nearest
main category / subcategory above them.
"""

import logging
import re
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Callable, List, Optional, Tuple

from bs4 import BeautifulSoup, Comment, NavigableString, Tag

from contract_models import (
    ContractLineItem,
    ROW_BLANK,
    ROW_ITEM,
    ROW_MAIN_CATEGORY,
    ROW_SUBCATEGORY,
    SOURCE_ADDENDUM,
    SOURCE_INITIAL,
)

log = logging.getLogger(__name__)

TABLE_CLASS_MARKER = "pos"
RATE_PLACES = Decimal("0.0001")

# row kinds produced by the classifiers
KIND_STOP = "stop"
KIND_SKIP = "skip"
KIND_HEADER = "header"
KIND_BLANK = "blank"
KIND_OPTIONAL_PACKAGE = "optional_package"
KIND_SUBCATEGORY = "subcategory"
KIND_MAIN_CATEGORY = "main_category"
KIND_ITEM = "item"

SUMMARY_RE = re.compile(r"\b(sub\s*-?\s*total|tax|grand\s+total|current\s+(?:job\s+)?balance)\b", re.I)
PROGRESS_HEADER_RE = re.compile(r"\bphase\b.*\b(completed|amt\s+paid|date\s+paid)\b", re.I)
SUBTOTAL_RE = re.compile(r"\bsub\s*-?\s*total\b", re.I)
PACKAGE_TOTAL_RE = re.compile(r"\bpackage\s+total\b", re.I)
OPTIONAL_PACKAGE_RE = re.compile(r"-\s*OPTIONAL\s+PACKAGE\s+(\d+)\s*-", re.I)
ADDENDUM_TAG_RE = re.compile(r"addendum\s*#\s*:?\s*(\d+)", re.I)
CATEGORY_CODE_RE = re.compile(r"^\s*\d{4}\s+[A-Za-z]")
LEADING_NUMBER_RE = re.compile(r"^[-+]?\d[\d,]*(?:\.\d+)?|^[-+]?\.\d+")
PLAIN_NUMBER_RE = re.compile(r"^[-+]?(?:\d+(?:\.\d*)?|\.\d+)$")

DESCRIPTION_TOKENS = ("description",)
QTY_TOKENS = ("qty", "quantity")
RATE_TOKENS = ("rate", "price", "unit cost")
AMOUNT_TOKENS = ("extended", "amount", "total")


# ---------------- text / number helpers ----------------

def clean_text(s: Optional[str]) -> str:
    if not s:
        return ""
    s = s.replace("\u00a0", " ").replace("*", "")
    return re.sub(r"\s+", " ", s).strip()


def cell_text(cell: Optional[Tag]) -> str:
    if cell is None:
        return ""
    return clean_text(cell.get_text(" "))


def parse_decimal(raw: Optional[str]) -> Optional[Decimal]:
    """'$1,234.50' -> Decimal('1234.50'); '(20.00)' -> -20.00; junk -> None."""
    s = clean_text(raw)
    if not s:
        return None
    negative = False
    if s.startswith("(") and s.endswith(")"):
        negative = True
        s = s[1:-1]
    s = s.replace("$", "").replace(",", "").replace(" ", "")
    if s.startswith("-$") or s.startswith("$-"):
        s = "-" + s[2:]
    if not PLAIN_NUMBER_RE.match(s):
        return None
    try:
        value = Decimal(s)
    except InvalidOperation:
        return None
    return -value if negative else value


def parse_quantity(raw: Optional[str]) -> Optional[Decimal]:
    """Leading number of '162 SF', '1 EA', '2.5 HR'."""
    s = clean_text(raw)
    if not s:
        return None
    m = LEADING_NUMBER_RE.match(s)
    if not m:
        return None
    try:
        return Decimal(m.group(0).replace(",", ""))
    except InvalidOperation:
        return None


def derive_rate(qty: Optional[Decimal], amount: Optional[Decimal]) -> Optional[Decimal]:
    if qty is None or amount is None or qty == 0:
        return None
    return (amount / qty).quantize(RATE_PLACES, rounding=ROUND_HALF_UP)


def _style(tag: Optional[Tag]) -> str:
    if tag is None:
        return ""
    return re.sub(r"\s+", "", (tag.get("style") or "")).lower()


def _classes(tag: Optional[Tag]) -> List[str]:
    if tag is None:
        return []
    cls = tag.get("class") or []
    if isinstance(cls, str):
        cls = cls.split()
    return [c.lower() for c in cls]


def _is_emphasized(cell: Optional[Tag]) -> bool:
    if cell is None:
        return False
    if cell.find(["strong", "b"]) is not None:
        return True
    for t in [cell] + cell.find_all("span"):
        st = _style(t)
        if "font-weight:bold" in st or "font-size:14px" in st:
            return True
    return False


# ---------------- table location ----------------

@dataclass(frozen=True)
class ColumnMap:
    description: int = 0
    qty: int = 1
    amount: int = 2
    rate: Optional[int] = None


def _find_token(texts: List[str], tokens: Tuple[str, ...], start: int) -> Optional[int]:
    for i in range(start, len(texts)):
        if any(tok in texts[i] for tok in tokens):
            return i
    return None


def sniff_header(texts: List[str]) -> Optional[ColumnMap]:
    """Header row = description, qty, amount tokens in left-to-right order."""
    lowered = [t.lower() for t in texts]
    d = _find_token(lowered, DESCRIPTION_TOKENS, 0)
    if d is None:
        return None
    q = _find_token(lowered, QTY_TOKENS, d + 1)
    if q is None:
        return None
    a = _find_token(lowered, AMOUNT_TOKENS, q + 1)
    if a is None:
        return None
    r = _find_token(lowered[:a], RATE_TOKENS, q + 1)
    return ColumnMap(description=d, qty=q, amount=a, rate=r)


def direct_rows(table: Tag) -> List[Tag]:
    """Rows of this table only; nested tables are left to their own row."""
    rows: List[Tag] = []
    for child in table.children:
        if not isinstance(child, Tag):
            continue
        if child.name == "tr":
            rows.append(child)
        elif child.name in ("thead", "tbody", "tfoot"):
            rows.extend(child.find_all("tr", recursive=False))
    return rows


def direct_cells(row: Tag) -> List[Tag]:
    return row.find_all(["td", "th"], recursive=False)


def _header_map(table: Tag) -> Optional[ColumnMap]:
    for row in direct_rows(table):
        cm = sniff_header([cell_text(c) for c in direct_cells(row)])
        if cm is not None:
            return cm
    return None


def locate_items_table(soup: BeautifulSoup, fallback_first_table: bool = False) -> Tuple[Optional[Tag], ColumnMap]:
    marked = soup.find("table", class_=TABLE_CLASS_MARKER)
    if marked is not None:
        return marked, (_header_map(marked) or ColumnMap())

    for table in soup.find_all("table"):
        cm = _header_map(table)
        if cm is not None:
            return table, cm

    if fallback_first_table:
        first = soup.find("table")
        if first is not None:
            log.warning("no marked or header-sniffed table; using first table")
            return first, ColumnMap()
    return None, ColumnMap()


# ---------------- row classification ----------------

@dataclass
class RowView:
    row: Tag
    cells: List[Tag]
    columns: ColumnMap
    next_text: str = ""

    @property
    def text(self) -> str:
        return cell_text(self.row)

    def cell(self, idx: Optional[int]) -> Optional[Tag]:
        if idx is None or idx >= len(self.cells):
            return None
        return self.cells[idx]

    def col_text(self, idx: Optional[int]) -> str:
        return cell_text(self.cell(idx))

    @property
    def first(self) -> Optional[Tag]:
        return self.cells[0] if self.cells else None

    @property
    def description(self) -> str:
        return self.col_text(self.columns.description)

    @property
    def qty_text(self) -> str:
        return self.col_text(self.columns.qty)

    @property
    def amount_text(self) -> str:
        return self.col_text(self.columns.amount)

    @property
    def rate_text(self) -> str:
        return self.col_text(self.columns.rate)


@dataclass
class RowClass:
    kind: str
    label: str = ""
    qty: Optional[Decimal] = None
    rate: Optional[Decimal] = None
    amount: Optional[Decimal] = None
    package_number: Optional[int] = None
    own_amount_item: bool = False
    harvested: List[Tuple[int, Decimal]] = field(default_factory=list)


Classifier = Callable[[RowView], Optional[RowClass]]


def _harvest_progress_payments(nested: Tag) -> List[Tuple[int, Decimal]]:
    found: List[Tuple[int, Decimal]] = []
    seen = set()
    for tr in nested.find_all("tr"):
        m = ADDENDUM_TAG_RE.search(cell_text(tr))
        if not m:
            continue
        number = int(m.group(1))
        tds = tr.find_all("td")
        if len(tds) < 3 or number in seen:
            continue
        amount = parse_decimal(cell_text(tds[2]))
        if amount is None or amount < 1:
            # AMT column empty or odd: take the largest plausible money cell
            candidates = [parse_decimal(cell_text(td)) for td in tds]
            candidates = [c for c in candidates if c is not None and Decimal("1") <= c <= Decimal("1000000")]
            amount = max(candidates) if candidates else None
        if amount is not None and amount > 0:
            seen.add(number)
            found.append((number, amount))
    return found


def classify_nested_table(v: RowView) -> Optional[RowClass]:
    nested = v.row.find("table")
    if nested is None:
        return None
    return RowClass(kind=KIND_STOP, label="nested table", harvested=_harvest_progress_payments(nested))


def classify_summary(v: RowView) -> Optional[RowClass]:
    text = v.text
    if SUMMARY_RE.search(text) or PROGRESS_HEADER_RE.search(text):
        return RowClass(kind=KIND_STOP, label=text[:60])
    return None


def classify_header(v: RowView) -> Optional[RowClass]:
    if sniff_header([cell_text(c) for c in v.cells]) is not None:
        return RowClass(kind=KIND_HEADER)
    return None


def classify_blank(v: RowView) -> Optional[RowClass]:
    if not v.text:
        return RowClass(kind=KIND_BLANK)
    return None


def classify_optional_package(v: RowView) -> Optional[RowClass]:
    m = OPTIONAL_PACKAGE_RE.search(v.text)
    if not m:
        return None
    return RowClass(kind=KIND_OPTIONAL_PACKAGE, label=v.text, package_number=int(m.group(1)))


def classify_package_total(v: RowView) -> Optional[RowClass]:
    if PACKAGE_TOTAL_RE.search(v.text):
        return RowClass(kind=KIND_SKIP, label="package total")
    return None


def classify_marked_subcategory(v: RowView) -> Optional[RowClass]:
    first = v.first
    by_class = any(c in ("ssg_title", "subcategory") for c in _classes(v.row) + _classes(first))
    if by_class:
        name = cell_text(first) or v.text
        return RowClass(kind=KIND_SUBCATEGORY, label=name) if name else None

    if len(v.cells) < 2 or cell_text(first):
        return None
    second = v.cells[1]
    st = _style(second)
    strong = second.find("strong")
    if "border-top:solid1px#bbb" in st and "letter-spacing:2px" in st and strong is not None:
        name = cell_text(strong) or cell_text(second)
        return RowClass(kind=KIND_SUBCATEGORY, label=name) if name else None
    return None


def heading_text(cell: Tag) -> str:
    """Cell text up to the first <br> or <em>."""
    parts: List[str] = []
    for node in cell.descendants:
        if isinstance(node, Tag) and node.name in ("br", "em"):
            break
        if isinstance(node, NavigableString) and not isinstance(node, Comment):
            parts.append(str(node))
    return clean_text(" ".join(parts))


def main_category_name(cell: Tag) -> str:
    name = re.sub(r":\s*$", "", heading_text(cell)).strip()
    em = cell.find("em")
    sub_label = cell_text(em) if em is not None else ""
    if sub_label:
        name = f"{name} - {sub_label}" if name else sub_label
    return f"{name}:" if name else ""


def classify_main_category(v: RowView) -> Optional[RowClass]:
    first = v.first
    if first is None or "padding-left:30px" in _style(first):
        return None
    plain = cell_text(first)
    coded = bool(CATEGORY_CODE_RE.match(plain))
    emphasized = _is_emphasized(first) or "border-top:solid1px#666" in _style(first)
    has_figures = bool(v.qty_text) and bool(v.amount_text)
    # unstyled code-prefixed rows ("2500 PSI ...") are items
    if not (emphasized and (coded or has_figures)):
        return None
    name = main_category_name(first)
    if not name:
        return None
    amount = parse_decimal(v.amount_text)
    qty = parse_quantity(v.qty_text)
    # category without items: its own figure stands in as the only line
    own = bool(SUBTOTAL_RE.search(v.next_text)) and amount is not None and amount > 0
    return RowClass(kind=KIND_MAIN_CATEGORY, label=name, qty=qty, amount=amount, own_amount_item=own)


def classify_label_subcategory(v: RowView) -> Optional[RowClass]:
    first = v.first
    if first is None or not _is_emphasized(first):
        return None
    if v.qty_text or v.amount_text or v.rate_text:
        return None
    name = v.description or cell_text(first)
    return RowClass(kind=KIND_SUBCATEGORY, label=name) if name else None


def classify_item(v: RowView) -> Optional[RowClass]:
    desc = v.description
    if not desc:
        return None
    qty = parse_quantity(v.qty_text)
    amount = parse_decimal(v.amount_text)
    rate = parse_decimal(v.rate_text) if v.columns.rate is not None else None
    indented = "padding-left:30px" in _style(v.first)
    if not indented and qty is None and amount is None and rate is None:
        return None
    if rate is None:
        rate = derive_rate(qty, amount)
    return RowClass(kind=KIND_ITEM, label=desc, qty=qty, rate=rate, amount=amount)


CLASSIFIERS: Tuple[Classifier, ...] = (
    classify_nested_table,
    classify_summary,
    classify_header,
    classify_blank,
    classify_optional_package,
    classify_package_total,
    classify_marked_subcategory,
    classify_main_category,
    classify_label_subcategory,
    classify_item,
)


def classify_row(v: RowView, classifiers: Tuple[Classifier, ...] = CLASSIFIERS) -> Optional[RowClass]:
    for clf in classifiers:
        rc = clf(v)
        if rc is not None:
            return rc
    return None


# ---------------- flattening ----------------

@dataclass
class TableExtraction:
    items: List[ContractLineItem]
    has_table: bool
    optional_packages: List[int] = field(default_factory=list)


def _flatten(rows: List[Tag], columns: ColumnMap, source_label: str, addendum_number: Optional[int],
             include_main_categories: bool, keep_zero_amount_items: bool) -> TableExtraction:
    items: List[ContractLineItem] = []
    packages: List[int] = []
    main_cat: Optional[str] = None
    sub_cat: Optional[str] = None
    package: Optional[int] = None

    def emit(row_type: str, label: str = "", **kw) -> None:
        items.append(ContractLineItem(
            type=row_type,
            product_service=label,
            main_category=kw.pop("main_category", main_cat),
            sub_category=kw.pop("sub_category", sub_cat),
            source_label=kw.pop("source_label", source_label),
            addendum_number=kw.pop("addendum_number", addendum_number),
            optional_package_number=kw.pop("optional_package_number", package),
            **kw,
        ))

    texts = [cell_text(r) for r in rows]
    for idx, row in enumerate(rows):
        cells = direct_cells(row)
        if not cells:
            continue
        view = RowView(row=row, cells=cells, columns=columns,
                       next_text=texts[idx + 1] if idx + 1 < len(rows) else "")
        rc = classify_row(view)
        if rc is None:
            log.debug("unclassified row skipped: %r", view.text[:80])
            continue

        if rc.kind == KIND_STOP:
            for number, amount in rc.harvested:
                label = f"Addendum #{number}"
                emit(ROW_ITEM, label, qty=Decimal("1"), rate=amount, amount=amount,
                     main_category=f"{label}:", sub_category=None,
                     source_label=SOURCE_ADDENDUM, addendum_number=number,
                     optional_package_number=None)
            log.debug("stop row reached: %s", rc.label)
            break

        if rc.kind in (KIND_HEADER, KIND_SKIP):
            continue

        if rc.kind == KIND_BLANK:
            # runs collapse to one; nothing before the first real row
            if items and items[-1].type != ROW_BLANK:
                emit(ROW_BLANK)
            continue

        if rc.kind == KIND_OPTIONAL_PACKAGE:
            package = rc.package_number
            if package not in packages:
                packages.append(package)
            continue

        if rc.kind == KIND_SUBCATEGORY:
            sub_cat = rc.label
            emit(ROW_SUBCATEGORY, rc.label)
            continue

        if rc.kind == KIND_MAIN_CATEGORY:
            main_cat = rc.label
            sub_cat = None
            if include_main_categories:
                emit(ROW_MAIN_CATEGORY, rc.label)
            if rc.own_amount_item:
                emit(ROW_ITEM, re.sub(r":\s*$", "", rc.label), qty=rc.qty,
                     rate=derive_rate(rc.qty, rc.amount), amount=rc.amount)
            continue

        if rc.kind == KIND_ITEM:
            if not keep_zero_amount_items and (rc.amount is None or rc.amount == 0):
                continue
            emit(ROW_ITEM, rc.label, qty=rc.qty, rate=rc.rate, amount=rc.amount)

    while items and items[-1].type == ROW_BLANK:
        items.pop()
    return TableExtraction(items=items, has_table=True, optional_packages=packages)


def extract_order_items(html: str, source_label: str = SOURCE_INITIAL, addendum_number: Optional[int] = None,
                        include_main_categories: bool = False, keep_zero_amount_items: bool = True,
                        fallback_first_table: bool = False) -> TableExtraction:
    if not html or not html.strip():
        return TableExtraction(items=[], has_table=False)

    soup = BeautifulSoup(html, "html.parser")
    table, columns = locate_items_table(soup, fallback_first_table=fallback_first_table)
    if table is None:
        log.info("order items table not found")
        return TableExtraction(items=[], has_table=False)

    result = _flatten(direct_rows(table), columns, source_label, addendum_number,
                      include_main_categories, keep_zero_amount_items)
    log.info("extracted %d row(s) (%d item(s)) from %s table",
             len(result.items), sum(1 for it in result.items if it.is_item), source_label)
    return result
