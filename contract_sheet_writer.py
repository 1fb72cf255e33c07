#!/usr/bin/env python3
"""
Spreadsheet Synthesizer (LOCKED WRITER)

Pours a flat ContractLineItem sequence into the contract template.

Hard rules:
- every cell write is checked against the lock's TemplateCellPlan;
  has_formula=True -> never written (counted in skipped_formula_cells)
- merged non-anchor cells are never written
- rows past the template ceiling are reported as RowTruncation, not dropped silently
- the caller's item list is never modified
"""

import logging
import re
from dataclasses import dataclass
from decimal import Decimal
from io import BytesIO
from typing import List, Optional

import openpyxl
from openpyxl.cell.cell import MergedCell
from openpyxl.styles import Font, PatternFill
from openpyxl.utils import get_column_letter

from contract_filename import generate_filename, strip_invisible
from contract_models import (
    ContractLineItem,
    ExtractedLocation,
    ROW_BLANK,
    ROW_ITEM,
    ROW_MAIN_CATEGORY,
    ROW_SUBCATEGORY,
    RowTruncation,
    SOURCE_ADDENDUM,
    SOURCE_INITIAL,
    SynthesisResult,
)
from contract_template_lock import TemplateLock, TemplateLockError

log = logging.getLogger(__name__)

# column A: row kind, read back downstream to rebuild hierarchy
LABEL_HEADER = "1 - Header"
LABEL_SUBHEADER = "1 - Subheader"
LABEL_DETAIL = "1 - Detail"
LABEL_BLANK = "1 - Blank Row"

ADDENDUM_SEPARATOR_ROWS = 2
SUBHEADER_FILL = PatternFill(patternType="solid", fgColor="495568")
SUBHEADER_FONT = Font(bold=True, color="FFFFFF")
HEADER_FONT = Font(bold=True)
SHEET_TITLE_BAD_RE = re.compile(r"[\\/?*\[\]:]")
SHEET_TITLE_MAX = 31


@dataclass(frozen=True)
class SheetRow:
    kind: str                       # column A label
    provenance: str                 # column B label
    description: str = ""
    qty: Optional[Decimal] = None
    rate: Optional[Decimal] = None
    amount: Optional[Decimal] = None
    is_line_item: bool = False
    item_index: Optional[int] = None


def clean_cell_text(s: str) -> str:
    s = strip_invisible(s or "").replace("*", "")
    s = re.sub("[\ue000-\uf8ff]", "", s)
    return re.sub(r"\s+", " ", s).strip()


def location_header(location: ExtractedLocation) -> str:
    if not (location.city or location.state or location.zip):
        return ""
    text = f"Pool & Spa - {location.city}, {location.state} {location.zip}, United States"
    return clean_cell_text(text)


def sheet_title(location: ExtractedLocation) -> str:
    if not location.order_no and not location.street_address:
        return ""
    title = SHEET_TITLE_BAD_RE.sub("", f"#{location.order_no}-{location.street_address}")
    title = strip_invisible(title).strip()[:SHEET_TITLE_MAX].strip()
    return title.strip("'")


def addendum_heading(number: Optional[int], url_id: Optional[str]) -> str:
    if number is not None and url_id:
        return f"Addendum #{number} ({url_id})"
    if number is not None:
        return f"Addendum #{number}"
    return f"Addendum ({url_id})" if url_id else "Addendum"


def plan_sheet_rows(items: List[ContractLineItem]) -> List[SheetRow]:
    """Items -> sheet rows, in order. Main categories are context only and never get a row."""
    rows: List[SheetRow] = []
    group = None
    for idx, it in enumerate(items):
        if it.type == ROW_MAIN_CATEGORY:
            continue
        provenance = SOURCE_ADDENDUM if it.source_label == SOURCE_ADDENDUM else SOURCE_INITIAL

        if provenance == SOURCE_ADDENDUM and it.type != ROW_BLANK:
            key = (it.addendum_number, it.url_id)
            if key != group:
                group = key
                if rows:
                    rows.extend(SheetRow(LABEL_BLANK, SOURCE_ADDENDUM) for _ in range(ADDENDUM_SEPARATOR_ROWS))
                rows.append(SheetRow(LABEL_HEADER, SOURCE_ADDENDUM, addendum_heading(*key)))
        elif provenance == SOURCE_INITIAL:
            group = None

        if it.type == ROW_SUBCATEGORY:
            rows.append(SheetRow(LABEL_SUBHEADER, provenance, clean_cell_text(it.product_service), item_index=idx))
        elif it.type == ROW_ITEM:
            rows.append(SheetRow(LABEL_DETAIL, provenance, clean_cell_text(it.product_service),
                                 qty=it.qty, rate=it.rate, amount=it.amount,
                                 is_line_item=True, item_index=idx))
        elif it.type == ROW_BLANK:
            rows.append(SheetRow(LABEL_BLANK, provenance, item_index=idx))
    return rows


def split_at_capacity(rows: List[SheetRow], capacity: int):
    if len(rows) <= capacity:
        return rows, None
    kept, dropped = rows[:capacity], rows[capacity:]
    trunc = RowTruncation(
        capacity=capacity,
        first_dropped_index=capacity,
        dropped_count=len(dropped),
        dropped_items=sum(1 for r in dropped if r.is_line_item),
    )
    return kept, trunc


class LockedContractWriter:
    def __init__(self, ws, lock: TemplateLock, apply_formatting: bool = True):
        self.ws = ws
        self.lock = lock
        self.apply_formatting = apply_formatting
        self.skipped_formula: List[str] = []
        self.skipped_merged: List[str] = []
        self.writes = 0

    def write(self, row: int, col: int, value) -> bool:
        coord = f"{get_column_letter(col)}{row}"
        if self.lock.cell_plan(row, col).has_formula:
            self.skipped_formula.append(coord)
            return False
        cell = self.ws.cell(row=row, column=col)
        if isinstance(cell, MergedCell):
            self.skipped_merged.append(coord)
            return False
        cell.value = value
        self.writes += 1
        return True

    def style(self, row: int, col: int, fill=None, font=None) -> None:
        if self.lock.has_formula(row, col):
            return
        cell = self.ws.cell(row=row, column=col)
        if isinstance(cell, MergedCell):
            return
        if fill is not None:
            cell.fill = fill
        if font is not None:
            cell.font = font

    def _merged_at(self, row: int, col: int) -> bool:
        for rng in self.ws.merged_cells.ranges:
            if rng.min_row <= row <= rng.max_row and rng.min_col <= col <= rng.max_col:
                return True
        return False

    def merge_description(self, row: int) -> None:
        last = self.lock.merge_description_through
        first = self.lock.col("description")
        if not last or last <= first:
            return
        span = range(first, last + 1)
        if any(self.lock.has_formula(row, c) or self._merged_at(row, c) for c in span):
            return
        if any(self.ws.cell(row=row, column=c).value not in (None, "") for c in span if c != first):
            return
        self.ws.merge_cells(start_row=row, start_column=first, end_row=row, end_column=last)

    def write_metadata(self, location: ExtractedLocation) -> None:
        for key, (row, col) in sorted(self.lock.metadata_cells.items()):
            if key == "location_header":
                value = location_header(location)
            else:
                value = getattr(location, key, None)
                value = str(value) if value is not None else ""
            if not value:
                continue
            if self.write(row, col, value) and key == "location_header":
                self.merge_description(row)
                if self.apply_formatting:
                    self.style(row, col, font=HEADER_FONT)

    def write_row(self, row: int, sr: SheetRow) -> None:
        L = self.lock
        self.write(row, L.col("row_kind"), sr.kind)
        self.write(row, L.col("provenance"), sr.provenance)

        if sr.kind == LABEL_DETAIL:
            self.write(row, L.col("description"), sr.description)
            self.write(row, L.col("qty"), sr.qty)
            self.write(row, L.col("rate"), sr.rate)
            self.write(row, L.col("amount"), sr.amount)
            self.merge_description(row)
            return

        if sr.kind in (LABEL_SUBHEADER, LABEL_HEADER):
            self.write(row, L.col("description"), sr.description)
            for name in ("qty", "rate", "amount"):
                self.write(row, L.col(name), None)
            self.merge_description(row)
            if self.apply_formatting and sr.kind == LABEL_SUBHEADER:
                lo, hi = L.style_span
                for c in range(lo, hi + 1):
                    self.style(row, c, fill=SUBHEADER_FILL, font=SUBHEADER_FONT)
            elif self.apply_formatting:
                self.style(row, L.col("description"), font=HEADER_FONT)
            return

        # blank row: labels only, data cells cleared
        for name in ("description", "qty", "rate", "amount"):
            self.write(row, L.col(name), None)


def open_template_sheet(template_path: str, lock: TemplateLock):
    lock.verify_template(template_path)
    try:
        wb = openpyxl.load_workbook(template_path, data_only=False)
    except Exception as e:
        raise TemplateLockError(f"template unreadable: {template_path}: {e}")
    if lock.sheet in wb.sheetnames:
        return wb, wb[lock.sheet]
    if lock.fallback_first_sheet and wb.worksheets:
        log.warning("sheet %r not in template; using %r", lock.sheet, wb.worksheets[0].title)
        return wb, wb.worksheets[0]
    raise TemplateLockError(f"sheet not found: {lock.sheet} (have: {wb.sheetnames})")


def synthesize(items: List[ContractLineItem], location: ExtractedLocation, template_path: str,
               lock: TemplateLock, apply_formatting: bool = True, now: Optional[float] = None) -> SynthesisResult:
    wb, ws = open_template_sheet(template_path, lock)

    rows, truncation = split_at_capacity(plan_sheet_rows(items), lock.item_capacity)
    if truncation:
        log.warning("truncation: %s", truncation.describe())

    writer = LockedContractWriter(ws, lock, apply_formatting=apply_formatting)
    writer.write_metadata(location)
    for offset, sr in enumerate(rows):
        writer.write_row(lock.first_item_row + offset, sr)

    title = sheet_title(location)
    if title and title != ws.title and title not in wb.sheetnames:
        ws.title = title

    if writer.skipped_formula:
        log.info("skipped %d formula cell(s): %s", len(writer.skipped_formula),
                 ", ".join(writer.skipped_formula[:10]))
    if writer.skipped_merged:
        log.info("skipped %d merged cell(s)", len(writer.skipped_merged))

    buf = BytesIO()
    wb.save(buf)
    return SynthesisResult(
        content=buf.getvalue(),
        filename=generate_filename(location, now=now),
        sheet_title=ws.title,
        rows_written=len(rows),
        truncation=truncation,
        skipped_formula_cells=list(writer.skipped_formula),
        skipped_merged_cells=list(writer.skipped_merged),
    )
