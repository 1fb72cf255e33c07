#!/usr/bin/env python3
"""
READ-ONLY: scan the contract template and write its lock JSON.

Every formula cell from the location header row through max_row is recorded,
plus the template sha256. The template itself is never modified.

--check compares an existing lock against the template instead (GO / NO-GO).
"""

import argparse
import json
import logging
import os
from typing import List

import openpyxl
from openpyxl.utils import get_column_letter
from openpyxl.utils.cell import column_index_from_string

from contract_template_lock import (
    DEFAULT_SHEET,
    TemplateLock,
    TemplateLockError,
    is_formula_cell,
    lock_dict,
    now_ts,
    sha256_file,
)

log = logging.getLogger(__name__)


def scan_formula_cells(ws, first_row: int, last_row: int, last_col: int) -> List[str]:
    found = []
    for r in range(first_row, last_row + 1):
        for c in range(1, last_col + 1):
            if is_formula_cell(ws.cell(r, c)):
                found.append(f"{get_column_letter(c)}{r}")
    log.debug("scanned rows %d..%d: %d formula cell(s)", first_row, last_row, len(found))
    return found


def pick_sheet(wb, name: str):
    if name in wb.sheetnames:
        return wb[name]
    log.warning("sheet %r not found, using first sheet %r", name, wb.sheetnames[0])
    return wb.worksheets[0]


def main() -> int:
    ap = argparse.ArgumentParser(description="READ-ONLY: build/check the contract template lock")
    ap.add_argument("--template", required=True)
    ap.add_argument("--sheet", default=DEFAULT_SHEET)
    ap.add_argument("--header-row", type=int, default=16)
    ap.add_argument("--first-item-row", type=int, default=17)
    ap.add_argument("--max-row", type=int, default=452)
    ap.add_argument("--last-col", default="BE", help="rightmost column to scan")
    ap.add_argument("--out", default="", help="lock JSON path (default: beside template)")
    ap.add_argument("--pin-sha", action="store_true", help="record template sha256 in the lock")
    ap.add_argument("--check", default="", help="existing lock to check against the template")
    ap.add_argument("--verbose", action="store_true")
    args = ap.parse_args()

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO,
                        format="%(levelname)s %(name)s: %(message)s")

    template = os.path.abspath(os.path.expanduser(args.template))
    if not os.path.exists(template):
        raise SystemExit(f"FATAL: template not found: {template}")

    wb = openpyxl.load_workbook(template, data_only=False)
    ws = pick_sheet(wb, args.sheet)

    if args.check:
        try:
            lock = TemplateLock.load(args.check)
            lock.verify_template(template)
        except TemplateLockError as e:
            print(f"FATAL: {e}")
            print("NO-GO")
            return 2
        problems = lock.drift(ws, max_col=column_index_from_string(args.last_col.upper()))
        for p in problems[:50]:
            print(f"  - {p}")
        if problems:
            print(f"NO-GO: {len(problems)} live formula cell(s) missing from lock")
            return 2
        print("GO: lock covers every live formula cell")
        return 0

    last_col = column_index_from_string(args.last_col.upper())
    cells = scan_formula_cells(ws, args.header_row, args.max_row, last_col)
    sha = sha256_file(template)

    lock = lock_dict(
        sheet=args.sheet,
        template_name=os.path.basename(template),
        template_sha256=sha if args.pin_sha else "",
        formula_cells=cells,
        location_header_row=args.header_row,
        first_item_row=args.first_item_row,
        max_row=args.max_row,
    )

    out = args.out or os.path.splitext(template)[0] + ".lock.v1.json"
    out = os.path.abspath(os.path.expanduser(out))
    os.makedirs(os.path.dirname(out), exist_ok=True)
    with open(out, "w", encoding="utf-8") as f:
        f.write(json.dumps(lock, indent=2))

    txt = os.path.splitext(out)[0] + ".txt"
    with open(txt, "w", encoding="utf-8") as f:
        f.write("CONTRACT TEMPLATE LOCK (READ-ONLY SCAN)\n")
        f.write(f"timestamp: {now_ts()}\n")
        f.write(f"template: {template}\n")
        f.write(f"template_sha256: {sha}{'' if args.pin_sha else ' (not pinned)'}\n")
        f.write(f"sheet: {ws.title}\n")
        f.write(f"rows: {args.header_row}..{args.max_row}  columns: A..{args.last_col.upper()}\n")
        f.write(f"formula cells: {len(cells)}\n")
        by_col = {}
        for c in cells:
            col = c.rstrip("0123456789")
            by_col[col] = by_col.get(col, 0) + 1
        for col in sorted(by_col, key=column_index_from_string):
            f.write(f"  {col}: {by_col[col]}\n")

    print(f"OK: wrote {out}")
    print(f"OK: wrote {txt}")
    print(f"OK: {len(cells)} formula cell(s) locked")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
