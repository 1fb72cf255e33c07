#!/usr/bin/env python3
"""
Contract pipeline: .eml -> items (+ addenda) -> validation -> locked workbook.

extract_contract(raw, ...)        -> ExtractionResult
validate_extraction(result, ...)  -> ValidationResult
synthesize_workbook(result, ...)  -> SynthesisResult

CLI prints a GO / NO-GO verdict. NO-GO exits 0 unless --strict (then 2).
Template/lock problems are FATAL and always exit 2.
"""

import argparse
import logging
import os
import sys
from typing import Iterable, List, Optional

from contract_config import PipelineConfig
from contract_eml_decoder import decode_message, html_to_text
from contract_items_ledger import summarize_by_source, write_ledger_csv
from contract_link_resolver import (
    ContractLinks,
    Fetcher,
    bind_references,
    detect_references,
    extract_contract_links,
    merge_items,
    reference_statuses,
    resolve_references,
)
from contract_location_extractor import extract_location
from contract_models import (
    AddendumReference,
    ExtractedLocation,
    ExtractionResult,
    REF_ADDENDUM,
    REF_OPTIONAL_PACKAGE,
    STATUS_FAILURE,
    SynthesisResult,
    ValidationResult,
    optional_package_reference,
    original_reference,
)
from contract_sheet_writer import synthesize
from contract_table_extractor import extract_order_items
from contract_template_lock import TemplateLock, TemplateLockError
from contract_totals_validator import fmt_money, validate

log = logging.getLogger(__name__)


def apply_selection(refs: List[AddendumReference], select_packages: Iterable[int] = (),
                    deselect_addenda: Iterable[int] = ()) -> None:
    """Caller overrides on top of the default selection."""
    packages = set(select_packages or ())
    addenda = set(deselect_addenda or ())
    for r in refs:
        if r.type == REF_OPTIONAL_PACKAGE and r.number in packages:
            r.selected = True
        elif r.type == REF_ADDENDUM and r.number in addenda:
            r.selected = False


def extract_contract(raw: bytes, auto_detect: bool = True, manual_urls: Optional[List[str]] = None,
                     select_packages: Iterable[int] = (), deselect_addenda: Iterable[int] = (),
                     fetch: Optional[Fetcher] = None, config: Optional[PipelineConfig] = None) -> ExtractionResult:
    config = config or PipelineConfig.from_env()

    msg = decode_message(raw)
    if msg.is_empty:
        log.warning("no content in message")
        return ExtractionResult(location=ExtractedLocation(), items=[], no_content=True)

    page_text = html_to_text(msg.html) if msg.html else msg.text
    location = extract_location(msg.text or page_text)
    if location.order_grand_total is None and page_text and page_text != msg.text:
        # totals often live only in the HTML body
        location = extract_location(page_text + "\n" + (msg.text or ""))

    table = extract_order_items(msg.html)

    if auto_detect:
        refs = detect_references(page_text, table.has_table)
        links = extract_contract_links(msg.html, msg.text)
    else:
        refs = [original_reference()] if table.has_table else []
        links = ContractLinks()
    known = {r.number for r in refs if r.type == REF_OPTIONAL_PACKAGE}
    refs.extend(optional_package_reference(n) for n in table.optional_packages if n not in known)

    refs = bind_references(refs, links, manual_urls=manual_urls)
    apply_selection(refs, select_packages, deselect_addenda)

    outcomes = resolve_references(refs, fetch=fetch, timeout=config.fetch_timeout,
                                  max_workers=config.fetch_workers, primary_has_table=table.has_table)
    items = merge_items(table.items, refs, outcomes)
    statuses = reference_statuses(refs, outcomes, table.items)

    return ExtractionResult(
        location=location,
        items=items,
        addendum_statuses=statuses,
        references=refs,
        has_table=table.has_table or any(o.items for o in outcomes),
    )


def validate_extraction(result: ExtractionResult, config: Optional[PipelineConfig] = None) -> ValidationResult:
    config = config or PipelineConfig.from_env()
    return validate(result.items, result.location.order_grand_total, tolerance=config.total_tolerance)


def synthesize_workbook(result: ExtractionResult, config: Optional[PipelineConfig] = None,
                        lock: Optional[TemplateLock] = None) -> SynthesisResult:
    config = config or PipelineConfig.from_env()
    lock = lock or TemplateLock.load(config.lock_path)
    return synthesize(result.items, result.location, config.template_path, lock,
                      apply_formatting=config.apply_formatting)


def print_report(result: ExtractionResult, verdict: ValidationResult) -> None:
    loc = result.location
    print(f"order: {loc.order_no or '-'}  customer: {loc.dbx_customer_id or '-'}  client: {loc.client_name or '-'}")
    print(f"table found: {'yes' if result.has_table else 'no'}  rows: {len(result.items)}  "
          f"items: {sum(1 for it in result.items if it.is_item)}")
    for st in result.addendum_statuses:
        sel = "x" if st.reference.selected else " "
        print(f"  [{sel}] {st.reference.label:<28} {st.status.upper():<8} {st.detail}")
    if result.items:
        for _, row in summarize_by_source(result.items).iterrows():
            print(f"  {row['source']:<28} {int(row['items']):>4} item(s)  ${row['amount']:,.2f}")
    if verdict.is_valid:
        print(f"OK: items total {fmt_money(verdict.items_total)} matches Order Grand Total")
    else:
        print(f"WARN: {verdict.message}")


def main() -> int:
    ap = argparse.ArgumentParser(description="Contract .eml -> validated, template-locked workbook")
    ap.add_argument("eml", help="raw contract email (.eml)")
    ap.add_argument("--template", default="", help="template .xlsx (env CONTRACT_TEMPLATE_PATH)")
    ap.add_argument("--lock", default="", help="template lock JSON (env CONTRACT_TEMPLATE_LOCK)")
    ap.add_argument("--out-dir", default="", help="output directory (env CONTRACT_OUT_DIR)")
    ap.add_argument("--addendum-url", action="append", default=None, help="manual addendum URL (repeatable)")
    ap.add_argument("--no-auto-detect", action="store_true", help="skip link/marker detection")
    ap.add_argument("--select-package", type=int, action="append", default=[], help="include optional package N")
    ap.add_argument("--skip-addendum", type=int, action="append", default=[], help="exclude addendum N")
    ap.add_argument("--no-formatting", action="store_true")
    ap.add_argument("--ledger-csv", default="", help="also write the line-item ledger CSV here")
    ap.add_argument("--extract-only", action="store_true", help="do not build the workbook")
    ap.add_argument("--strict", action="store_true", help="exit 2 on NO-GO")
    ap.add_argument("--verbose", action="store_true")
    args = ap.parse_args()

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING,
                        format="%(levelname)s %(name)s: %(message)s")

    config = PipelineConfig.from_env()
    if args.template:
        config.template_path = args.template
    if args.lock:
        config.lock_path = args.lock
    if args.out_dir:
        config.out_dir = args.out_dir
    if args.no_formatting:
        config.apply_formatting = False

    eml = os.path.abspath(os.path.expanduser(args.eml))
    if not os.path.exists(eml):
        print(f"FATAL: eml not found: {eml}", file=sys.stderr)
        return 2
    with open(eml, "rb") as f:
        raw = f.read()

    result = extract_contract(raw, auto_detect=not args.no_auto_detect, manual_urls=args.addendum_url,
                              select_packages=args.select_package, deselect_addenda=args.skip_addendum,
                              config=config)
    if result.no_content:
        print("WARN: no readable body in message")
    verdict = validate_extraction(result, config)
    print_report(result, verdict)

    if args.ledger_csv:
        n = write_ledger_csv(result.items, os.path.abspath(os.path.expanduser(args.ledger_csv)))
        print(f"OK: ledger {args.ledger_csv} ({n} rows)")

    problems: List[str] = []
    if result.no_content or not result.has_table:
        problems.append("no order items table")
    if not verdict.is_valid:
        problems.append("totals mismatch")
    failed = [s for s in result.addendum_statuses if s.status == STATUS_FAILURE]
    if failed:
        problems.append(f"{len(failed)} addendum fetch failure(s)")

    if not args.extract_only:
        if not config.template_path:
            print("FATAL: no template (use --template or CONTRACT_TEMPLATE_PATH)", file=sys.stderr)
            return 2
        try:
            synth = synthesize_workbook(result, config)
        except TemplateLockError as e:
            print(f"FATAL: {e}", file=sys.stderr)
            return 2
        out_dir = os.path.abspath(os.path.expanduser(config.out_dir))
        os.makedirs(out_dir, exist_ok=True)
        out_path = os.path.join(out_dir, synth.filename)
        with open(out_path, "wb") as f:
            f.write(synth.content)
        print(f"OK: wrote {out_path} ({synth.rows_written} rows, sheet {synth.sheet_title!r})")
        if synth.skipped_formula_cells:
            print(f"OK: {len(synth.skipped_formula_cells)} formula cell(s) left untouched")
        if synth.truncation:
            print(f"WARN: TRUNCATED: {synth.truncation.describe()}")
            problems.append("rows truncated")

    if problems:
        print("NO-GO: " + "; ".join(problems))
        return 2 if args.strict else 0
    print("GO")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
