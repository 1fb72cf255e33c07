#!/usr/bin/env python3
"""
Line-item ledger for human review (READ-ONLY over the row sequence).

items_frame(items)          -> one DataFrame row per ContractLineItem
summarize_by_source(items)  -> totals per provenance (Initial / Addendum #n)
write_ledger_csv(items, p)  -> CSV for the estimator to eyeball
"""

from decimal import Decimal
from typing import List

import pandas as pd

from contract_models import ContractLineItem, SOURCE_ADDENDUM

COLUMNS = [
    "position", "type", "product_service", "qty", "rate", "amount",
    "main_category", "sub_category", "source_label", "addendum_number",
    "optional_package_number", "url_id",
]


def _num(v):
    return float(v) if isinstance(v, Decimal) else v


def source_key(it: ContractLineItem) -> str:
    if it.source_label == SOURCE_ADDENDUM:
        return f"Addendum #{it.addendum_number}" if it.addendum_number is not None else f"Addendum ({it.url_id})"
    if it.optional_package_number is not None:
        return f"Optional Package {it.optional_package_number}"
    return "Initial"


def items_frame(items: List[ContractLineItem]) -> pd.DataFrame:
    rows = []
    for pos, it in enumerate(items):
        rows.append({
            "position": pos,
            "type": it.type,
            "product_service": it.product_service,
            "qty": _num(it.qty),
            "rate": _num(it.rate),
            "amount": _num(it.amount),
            "main_category": it.main_category or "",
            "sub_category": it.sub_category or "",
            "source_label": it.source_label,
            "addendum_number": it.addendum_number,
            "optional_package_number": it.optional_package_number,
            "url_id": it.url_id or "",
        })
    return pd.DataFrame(rows, columns=COLUMNS)


def summarize_by_source(items: List[ContractLineItem]) -> pd.DataFrame:
    """Per source: item count and amount total (nulls count as 0), in first-seen order."""
    rows = [{"source": source_key(it), "amount": float(it.amount) if it.amount is not None else 0.0}
            for it in items if it.is_item]
    if not rows:
        return pd.DataFrame(columns=["source", "items", "amount"])
    df = pd.DataFrame(rows)
    out = df.groupby("source", sort=False).agg(items=("amount", "size"), amount=("amount", "sum")).reset_index()
    out["amount"] = out["amount"].round(2)
    return out


def write_ledger_csv(items: List[ContractLineItem], path: str) -> int:
    df = items_frame(items)
    df.to_csv(path, index=False, encoding="utf-8")
    return len(df)
