import json
import os
import sys
import tempfile
import unittest
from decimal import Decimal
from pathlib import Path
from unittest import mock

import openpyxl
from openpyxl.utils.cell import column_index_from_string

import contract_pipeline
from build_contract_template_lock import scan_formula_cells
from contract_config import PipelineConfig
from contract_fixtures import (
    ADDENDUM_URL_1,
    CONTRACT_HTML,
    CONTRACT_TEXT,
    addendum_page,
    build_template,
    make_eml,
    template_formulas,
)
from contract_models import REF_ADDENDUM, REF_OPTIONAL_PACKAGE, SOURCE_ADDENDUM, STATUS_FAILURE, STATUS_SUCCESS
from contract_pipeline import extract_contract, synthesize_workbook, validate_extraction
from contract_template_lock import TemplateLock, lock_dict

ADDENDA_BLOCK = f"""
<div><strong>Addendums:</strong></div>
<div><a href="{ADDENDUM_URL_1}">Addendum #2</a></div>
"""
HTML_WITH_ADDENDUM = CONTRACT_HTML.replace("</body>", ADDENDA_BLOCK + "</body>")
TEXT_WITH_ADDENDUM = CONTRACT_TEXT.replace("$150.00", "$200.00")

PACKAGE_HTML = CONTRACT_HTML.replace(
    '<tr><td colspan="2">Subtotal</td>',
    '<tr><td colspan="3">- OPTIONAL PACKAGE 1 - Outdoor Kitchen</td></tr>'
    '<tr><td style="padding-left: 30px">Grill</td><td>1 EA</td><td>$40.00</td></tr>'
    '<tr><td colspan="2">Subtotal</td>',
)


def page_fetch(url, timeout):
    if url == ADDENDUM_URL_1:
        return addendum_page(2, [("Extra outlet", "1 EA", "$75.00"), ("Credit", "1 EA", "-$25.00")])
    raise AssertionError(f"unexpected fetch {url}")


def write_lock(template: Path, out: Path) -> Path:
    ws = openpyxl.load_workbook(template, data_only=False).worksheets[0]
    d = lock_dict(sheet=ws.title, template_name=template.name, template_sha256="",
                  formula_cells=scan_formula_cells(ws, 16, 452, 57))
    out.write_text(json.dumps(d), encoding="utf-8")
    return out


class TestExtractContract(unittest.TestCase):
    def setUp(self):
        self.config = PipelineConfig()

    def test_email_table_only(self):
        result = extract_contract(make_eml(), config=self.config, fetch=page_fetch)
        self.assertTrue(result.has_table)
        self.assertEqual([it.product_service for it in result.items if it.is_item], ["Pool shell", "Steps"])
        self.assertEqual(result.location.order_grand_total, Decimal("150.00"))
        self.assertTrue(validate_extraction(result, self.config).is_valid)
        self.assertEqual([s.status for s in result.addendum_statuses], [STATUS_SUCCESS])

    def test_addendum_fetched_and_appended(self):
        raw = make_eml(text=TEXT_WITH_ADDENDUM, html=HTML_WITH_ADDENDUM)
        result = extract_contract(raw, config=self.config, fetch=page_fetch)
        added = [it for it in result.items if it.source_label == SOURCE_ADDENDUM and it.is_item]
        self.assertEqual([it.product_service for it in added], ["Extra outlet", "Credit"])
        self.assertTrue(all(it.url_id == "35587" for it in added))
        verdict = validate_extraction(result, self.config)
        self.assertTrue(verdict.is_valid, verdict.message)

    def test_deselected_addendum_not_fetched(self):
        raw = make_eml(text=TEXT_WITH_ADDENDUM, html=HTML_WITH_ADDENDUM)
        fetch = mock.Mock(side_effect=page_fetch)
        result = extract_contract(raw, config=self.config, fetch=fetch, deselect_addenda=[2])
        fetch.assert_not_called()
        self.assertFalse(any(it.source_label == SOURCE_ADDENDUM for it in result.items))
        verdict = validate_extraction(result, self.config)
        self.assertFalse(verdict.is_valid)
        self.assertEqual(verdict.difference, Decimal("50.00"))

    def test_failed_fetch_keeps_email_items(self):
        raw = make_eml(text=TEXT_WITH_ADDENDUM, html=HTML_WITH_ADDENDUM)

        def broken(url, timeout):
            raise ConnectionError("connection reset")

        result = extract_contract(raw, config=self.config, fetch=broken)
        self.assertEqual(len([it for it in result.items if it.is_item]), 2)
        failed = [s for s in result.addendum_statuses if s.status == STATUS_FAILURE]
        self.assertEqual(len(failed), 1)
        self.assertEqual(failed[0].reference.type, REF_ADDENDUM)

    def test_optional_package_needs_selection(self):
        raw = make_eml(html=PACKAGE_HTML)
        result = extract_contract(raw, config=self.config, fetch=page_fetch)
        self.assertNotIn("Grill", [it.product_service for it in result.items])
        self.assertTrue(any(r.type == REF_OPTIONAL_PACKAGE and not r.selected for r in result.references))

        result = extract_contract(raw, config=self.config, fetch=page_fetch, select_packages=[1])
        self.assertIn("Grill", [it.product_service for it in result.items])

    def test_no_auto_detect(self):
        raw = make_eml(text=TEXT_WITH_ADDENDUM, html=HTML_WITH_ADDENDUM)
        fetch = mock.Mock(side_effect=page_fetch)
        result = extract_contract(raw, auto_detect=False, config=self.config, fetch=fetch)
        fetch.assert_not_called()
        self.assertEqual(len([it for it in result.items if it.is_item]), 2)

    def test_manual_url(self):
        raw = make_eml(text=TEXT_WITH_ADDENDUM)
        result = extract_contract(raw, auto_detect=False, manual_urls=[ADDENDUM_URL_1],
                                  config=self.config, fetch=page_fetch)
        self.assertEqual(len([it for it in result.items if it.source_label == SOURCE_ADDENDUM and it.is_item]), 2)

    def test_empty_message(self):
        result = extract_contract(b"", config=self.config)
        self.assertTrue(result.no_content)
        self.assertEqual(result.items, [])
        self.assertFalse(validate_extraction(result, self.config).is_valid)

    def test_no_table(self):
        result = extract_contract(make_eml(html="<p>Thanks!</p>"), config=self.config, fetch=page_fetch)
        self.assertFalse(result.has_table)
        self.assertEqual(result.items, [])


class TestSynthesizeWorkbook(unittest.TestCase):
    def test_formulas_preserved_end_to_end(self):
        with tempfile.TemporaryDirectory() as td:
            template = build_template(Path(td) / "template.xlsx")
            lock_path = write_lock(template, Path(td) / "lock.json")
            config = PipelineConfig(template_path=str(template), lock_path=str(lock_path))
            raw = make_eml(text=TEXT_WITH_ADDENDUM, html=HTML_WITH_ADDENDUM)
            result = extract_contract(raw, config=config, fetch=page_fetch)
            synth = synthesize_workbook(result, config)
            out = Path(td) / synth.filename
            out.write_bytes(synth.content)
            self.assertEqual(template_formulas(out, synth.sheet_title), template_formulas(template))
            self.assertIsNone(synth.truncation)
            lock = TemplateLock.load(str(lock_path))
            for coord in synth.skipped_formula_cells:
                col = coord.rstrip("0123456789")
                self.assertTrue(lock.has_formula(int(coord[len(col):]), column_index_from_string(col)))


class TestMain(unittest.TestCase):
    def setUp(self):
        self.td = tempfile.TemporaryDirectory()
        root = Path(self.td.name)
        self.template = build_template(root / "template.xlsx")
        self.lock = write_lock(self.template, root / "lock.json")
        self.out_dir = root / "out"
        self.eml = root / "contract.eml"
        self.eml.write_bytes(make_eml())

    def tearDown(self):
        self.td.cleanup()

    def run_main(self, *extra):
        argv = ["contract_pipeline.py", str(self.eml), "--template", str(self.template),
                "--lock", str(self.lock), "--out-dir", str(self.out_dir), *extra]
        with mock.patch.object(sys, "argv", argv), mock.patch.dict(os.environ, {}, clear=True):
            return contract_pipeline.main()

    def test_go_writes_workbook(self):
        self.assertEqual(self.run_main("--strict"), 0)
        written = list(self.out_dir.glob("*.xlsx"))
        self.assertEqual([p.name for p in written], ["E. Przybyl - #9682 - 1041 Temple Terrace.xlsx"])

    def test_mismatch_is_no_go_under_strict(self):
        self.eml.write_bytes(make_eml(text=TEXT_WITH_ADDENDUM, html=CONTRACT_HTML))
        self.assertEqual(self.run_main("--strict"), 2)
        self.assertEqual(self.run_main(), 0)

    def test_missing_eml(self):
        self.eml.unlink()
        self.assertEqual(self.run_main(), 2)

    def test_missing_template_is_fatal(self):
        self.template.unlink()
        self.assertEqual(self.run_main(), 2)

    def test_extract_only_with_ledger(self):
        ledger = Path(self.td.name) / "ledger.csv"
        self.assertEqual(self.run_main("--extract-only", "--ledger-csv", str(ledger)), 0)
        self.assertTrue(ledger.exists())
        self.assertFalse(self.out_dir.exists())


if __name__ == "__main__":
    unittest.main()
