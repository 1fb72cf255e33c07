#!/usr/bin/env python3
"""
Template Lock (STATIC, VERSIONED)

The lock JSON is the single source of truth for where the synthesizer may
write. Formula cells are listed in the lock, not discovered at write time.
A template change (row offsets, formula placement) = a new lock version.

Any problem with the lock or the template it pins is fatal: TemplateLockError.
"""

import hashlib
import json
import os
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set, Tuple

from openpyxl.utils import get_column_letter
from openpyxl.utils.cell import column_index_from_string, coordinate_from_string, range_boundaries

from contract_models import TemplateCellPlan

LOCK_VERSION = "contract_template.lock.v1"
DEFAULT_SHEET = "Order Items"

REQUIRED_COLUMNS = ("row_kind", "provenance", "description", "qty", "rate", "amount")


class TemplateLockError(Exception):
    pass


def sha256_file(path: str, chunk_size: int = 1024 * 1024) -> str:
    h = hashlib.sha256()
    with open(path, "rb") as f:
        while True:
            b = f.read(chunk_size)
            if not b:
                break
            h.update(b)
    return h.hexdigest()


def now_ts() -> str:
    return time.strftime("%Y-%m-%d %H:%M:%S")


def is_formula_cell(cell) -> bool:
    if getattr(cell, "data_type", None) == "f":
        return True
    v = cell.value
    if isinstance(v, str):
        return v.strip().startswith("=")
    # ArrayFormula / DataTableFormula
    return hasattr(v, "ref") and hasattr(v, "text")


def _cell_rc(coord: str) -> Tuple[int, int]:
    col, row = coordinate_from_string(coord)
    return row, column_index_from_string(col)


@dataclass
class TemplateLock:
    lock_version: str
    sheet: str
    location_header_row: int
    first_item_row: int
    max_row: int
    columns: Dict[str, int]
    style_span: Tuple[int, int]
    merge_description_through: Optional[int] = None
    metadata_cells: Dict[str, Tuple[int, int]] = field(default_factory=dict)
    formula_ranges: List[Tuple[int, int, int, int]] = field(default_factory=list)   # min_col, min_row, max_col, max_row
    formula_cells: Set[Tuple[int, int]] = field(default_factory=set)                # (row, col)
    template_name: str = ""
    template_sha256: str = ""
    fallback_first_sheet: bool = True
    source_path: str = ""

    # ---------- loading ----------

    @classmethod
    def from_dict(cls, d: Dict, source_path: str = "") -> "TemplateLock":
        try:
            version = d["lock_version"]
            if version != LOCK_VERSION:
                raise TemplateLockError(f"unsupported lock version {version!r} (want {LOCK_VERSION})")
            layout = d["layout"]
            cols = {k: column_index_from_string(str(v).upper()) for k, v in layout["columns"].items()}
            missing = [k for k in REQUIRED_COLUMNS if k not in cols]
            if missing:
                raise TemplateLockError(f"lock layout missing columns: {missing}")
            span = layout.get("style_span", ["D", "D"])
            merge_to = layout.get("merge_description_through")
            meta = {k: _cell_rc(v) for k, v in (d.get("metadata_cells") or {}).items() if v}
            fc = d.get("formula_cells") or {}
            ranges = [range_boundaries(r) for r in fc.get("ranges", [])]
            cells = {_cell_rc(c) for c in fc.get("cells", [])}
            sheet = d.get("sheet") or {}
            tpl = d.get("template") or {}
            lock = cls(
                lock_version=version,
                sheet=sheet.get("name") or DEFAULT_SHEET,
                fallback_first_sheet=bool(sheet.get("fallback_first_sheet", True)),
                location_header_row=int(layout["location_header_row"]),
                first_item_row=int(layout["first_item_row"]),
                max_row=int(layout["max_row"]),
                columns=cols,
                style_span=(column_index_from_string(span[0]), column_index_from_string(span[1])),
                merge_description_through=column_index_from_string(merge_to) if merge_to else None,
                metadata_cells=meta,
                formula_ranges=ranges,
                formula_cells=cells,
                template_name=tpl.get("name", ""),
                template_sha256=(tpl.get("sha256") or "").strip().lower(),
                source_path=source_path,
            )
        except TemplateLockError:
            raise
        except (KeyError, TypeError, ValueError, IndexError) as e:
            raise TemplateLockError(f"malformed template lock {source_path or ''}: {e!r}")

        if lock.first_item_row > lock.max_row:
            raise TemplateLockError(f"first_item_row {lock.first_item_row} > max_row {lock.max_row}")
        return lock

    @classmethod
    def load(cls, path: str) -> "TemplateLock":
        path = os.path.abspath(os.path.expanduser(path))
        if not os.path.exists(path):
            raise TemplateLockError(f"template lock not found: {path}")
        try:
            with open(path, "r", encoding="utf-8") as f:
                d = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise TemplateLockError(f"unreadable template lock {path}: {e}")
        return cls.from_dict(d, source_path=path)

    # ---------- lookups ----------

    def col(self, name: str) -> int:
        return self.columns[name]

    @property
    def item_capacity(self) -> int:
        return self.max_row - self.first_item_row + 1

    def has_formula(self, row: int, col: int) -> bool:
        if (row, col) in self.formula_cells:
            return True
        for min_col, min_row, max_col, max_row in self.formula_ranges:
            if min_row <= row <= max_row and min_col <= col <= max_col:
                return True
        return False

    def cell_plan(self, row: int, col: int) -> TemplateCellPlan:
        return TemplateCellPlan(row=row, col=col, has_formula=self.has_formula(row, col))

    def row_plan(self, row: int, cols: List[int]) -> List[TemplateCellPlan]:
        return [self.cell_plan(row, c) for c in cols]

    # ---------- template check ----------

    def verify_template(self, template_path: str) -> str:
        """Returns the template sha256. Fatal when missing or (if pinned) different."""
        template_path = os.path.abspath(os.path.expanduser(template_path or ""))
        if not template_path or not os.path.isfile(template_path):
            raise TemplateLockError(f"template not found: {template_path}")
        actual = sha256_file(template_path)
        if self.template_sha256 and actual != self.template_sha256:
            raise TemplateLockError(
                f"TEMPLATE SHA mismatch: template={actual} lock={self.template_sha256} "
                f"(rebuild the lock with build_contract_template_lock.py)"
            )
        return actual

    def drift(self, ws, max_col: Optional[int] = None) -> List[str]:
        """Live formula cells in the item band that the lock does not know about."""
        problems: List[str] = []
        last_col = max_col or max(self.style_span[1], max(self.columns.values()))
        for row in range(self.location_header_row, self.max_row + 1):
            for col in range(1, last_col + 1):
                cell = ws.cell(row, col)
                if is_formula_cell(cell) and not self.has_formula(row, col):
                    problems.append(f"{get_column_letter(col)}{row}: formula not in lock")
        return problems


def lock_dict(sheet: str, template_name: str, template_sha256: str, formula_cells: List[str],
              location_header_row: int = 16, first_item_row: int = 17, max_row: int = 452,
              columns: Optional[Dict[str, str]] = None, style_span: Tuple[str, str] = ("D", "BE"),
              merge_description_through: Optional[str] = "E",
              metadata_cells: Optional[Dict[str, str]] = None,
              formula_ranges: Optional[List[str]] = None) -> Dict:
    return {
        "lock_version": LOCK_VERSION,
        "created_ts": now_ts(),
        "template": {"name": template_name, "sha256": template_sha256},
        "sheet": {"name": sheet, "fallback_first_sheet": True},
        "layout": {
            "location_header_row": location_header_row,
            "first_item_row": first_item_row,
            "max_row": max_row,
            "columns": columns or {
                "row_kind": "A", "provenance": "B", "description": "D",
                "qty": "F", "rate": "G", "amount": "H",
            },
            "style_span": list(style_span),
            "merge_description_through": merge_description_through,
        },
        "metadata_cells": metadata_cells or {"location_header": f"D{location_header_row}"},
        "formula_cells": {"ranges": formula_ranges or [], "cells": formula_cells},
    }
