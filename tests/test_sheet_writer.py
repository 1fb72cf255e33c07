import tempfile
import unittest
from decimal import Decimal
from io import BytesIO
from pathlib import Path

import openpyxl

from contract_fixtures import CONTRACT_HTML, addendum_page, build_template, lock_for, template_formulas
from contract_models import (
    ContractLineItem,
    ExtractedLocation,
    ROW_BLANK,
    ROW_ITEM,
    ROW_MAIN_CATEGORY,
    SOURCE_ADDENDUM,
    SOURCE_INITIAL,
)
from contract_sheet_writer import (
    LABEL_BLANK,
    LABEL_DETAIL,
    LABEL_HEADER,
    LABEL_SUBHEADER,
    addendum_heading,
    clean_cell_text,
    location_header,
    plan_sheet_rows,
    sheet_title,
    synthesize,
)
from contract_table_extractor import extract_order_items
from contract_template_lock import TemplateLockError

LOCATION = ExtractedLocation(order_no="4471", dbx_customer_id="9682", client_name="Ely Przybyl",
                             street_address="1041 Temple Terrace", city="Gilbert", state="AZ", zip="85296",
                             order_grand_total=Decimal("150.00"))
NOW = 1760000000.0


def line(name, qty, amount, **kw):
    qty, amount = Decimal(qty), Decimal(amount)
    return ContractLineItem(type=ROW_ITEM, product_service=name, qty=qty, amount=amount,
                            rate=(amount / qty).quantize(Decimal("0.0001")), **kw)


def six_items():
    return [line(f"Item {i}", "2", f"{10 * i}.00") for i in range(1, 7)]


def readback(result):
    wb = openpyxl.load_workbook(BytesIO(result.content), data_only=False)
    return wb[result.sheet_title]


def formulas_of(ws):
    return {c.coordinate: c.value for row in ws.iter_rows() for c in row
            if isinstance(c.value, str) and c.value.startswith("=")}


class TestHelpers(unittest.TestCase):
    def test_clean_cell_text(self):
        self.assertEqual(clean_cell_text("  **Pool\u200b  shell "), "Pool shell")

    def test_location_header(self):
        self.assertEqual(location_header(LOCATION), "Pool & Spa - Gilbert, AZ 85296, United States")
        self.assertEqual(location_header(ExtractedLocation()), "")

    def test_sheet_title(self):
        self.assertEqual(sheet_title(LOCATION), "#4471-1041 Temple Terrace")
        self.assertEqual(sheet_title(ExtractedLocation()), "")
        long_title = sheet_title(ExtractedLocation(order_no="1", street_address="[a]/b:c " + "x" * 40))
        self.assertLessEqual(len(long_title), 31)
        self.assertNotRegex(long_title, r"[\[\]/:]")

    def test_addendum_heading(self):
        self.assertEqual(addendum_heading(2, "35587"), "Addendum #2 (35587)")
        self.assertEqual(addendum_heading(None, "35587"), "Addendum (35587)")
        self.assertEqual(addendum_heading(3, None), "Addendum #3")


class TestPlanRows(unittest.TestCase):
    def test_labels_and_addendum_grouping(self):
        primary = extract_order_items(CONTRACT_HTML, include_main_categories=True).items
        addendum = [it.tagged(url_id="35587") for it in extract_order_items(
            addendum_page(2, [("Extra outlet", "1 EA", "$75.00")]),
            source_label=SOURCE_ADDENDUM, addendum_number=2).items]
        rows = plan_sheet_rows(primary + addendum)
        self.assertEqual([r.kind for r in rows], [
            LABEL_SUBHEADER, LABEL_DETAIL, LABEL_DETAIL,
            LABEL_BLANK, LABEL_BLANK, LABEL_HEADER, LABEL_SUBHEADER, LABEL_DETAIL,
        ])
        self.assertEqual([r.provenance for r in rows[:3]], [SOURCE_INITIAL] * 3)
        self.assertEqual([r.provenance for r in rows[3:]], [SOURCE_ADDENDUM] * 5)
        self.assertEqual(rows[5].description, "Addendum #2 (35587)")

    def test_main_categories_get_no_row(self):
        rows = plan_sheet_rows([ContractLineItem(type=ROW_MAIN_CATEGORY, product_service="0020 Pools:"),
                                line("A", "1", "1.00")])
        self.assertEqual([r.kind for r in rows], [LABEL_DETAIL])

    def test_blank_rows_kept(self):
        rows = plan_sheet_rows([line("A", "1", "1.00"), ContractLineItem(type=ROW_BLANK), line("B", "1", "1.00")])
        self.assertEqual([r.kind for r in rows], [LABEL_DETAIL, LABEL_BLANK, LABEL_DETAIL])


class TestSynthesize(unittest.TestCase):
    def setUp(self):
        self.td = tempfile.TemporaryDirectory()
        self.template = build_template(Path(self.td.name) / "template.xlsx")
        self.lock = lock_for(self.template)

    def tearDown(self):
        self.td.cleanup()

    def test_formula_cells_survive(self):
        result = synthesize(six_items(), LOCATION, str(self.template), self.lock, now=NOW)
        ws = readback(result)
        self.assertEqual(formulas_of(ws), template_formulas(self.template))
        self.assertIn("H20", result.skipped_formula_cells)
        self.assertIn("H21", result.skipped_formula_cells)
        # qty/rate still land beside a formula amount
        self.assertEqual(float(ws["F20"].value), 2.0)
        self.assertEqual(float(ws["G20"].value), 20.0)

    def test_values_and_labels(self):
        items = extract_order_items(CONTRACT_HTML).items
        result = synthesize(items, LOCATION, str(self.template), self.lock, now=NOW)
        ws = readback(result)
        self.assertEqual(result.sheet_title, "#4471-1041 Temple Terrace")
        self.assertEqual(result.filename, "E. Przybyl - #9682 - 1041 Temple Terrace.xlsx")
        self.assertEqual(result.rows_written, 3)
        self.assertIsNone(result.truncation)
        self.assertEqual(ws["D16"].value, "Pool & Spa - Gilbert, AZ 85296, United States")
        self.assertEqual((ws["A17"].value, ws["B17"].value, ws["D17"].value),
                         (LABEL_SUBHEADER, SOURCE_INITIAL, "CONCRETE"))
        self.assertEqual((ws["A18"].value, ws["D18"].value), (LABEL_DETAIL, "Pool shell"))
        self.assertEqual(float(ws["H18"].value), 100.0)
        self.assertEqual(float(ws["G19"].value), 25.0)
        self.assertIsNone(ws["A21"].value)

    def test_subheader_fill(self):
        items = extract_order_items(CONTRACT_HTML).items
        ws = readback(synthesize(items, LOCATION, str(self.template), self.lock, now=NOW))
        self.assertTrue(ws["D17"].font.bold)
        self.assertEqual(ws["D17"].fill.fgColor.rgb[-6:], "495568")

    def test_no_formatting(self):
        items = extract_order_items(CONTRACT_HTML).items
        ws = readback(synthesize(items, LOCATION, str(self.template), self.lock,
                                 apply_formatting=False, now=NOW))
        self.assertNotEqual(ws["D17"].fill.patternType, "solid")

    def test_deterministic(self):
        items = six_items()
        a = readback(synthesize(items, LOCATION, str(self.template), self.lock, now=NOW))
        b = readback(synthesize(items, LOCATION, str(self.template), self.lock, now=NOW))
        cells_a = [(c.coordinate, c.value) for row in a.iter_rows() for c in row]
        cells_b = [(c.coordinate, c.value) for row in b.iter_rows() for c in row]
        self.assertEqual(cells_a, cells_b)

    def test_input_not_modified(self):
        items = six_items()
        before = list(items)
        synthesize(items, LOCATION, str(self.template), self.lock, now=NOW)
        self.assertEqual(items, before)

    def test_truncation_reported(self):
        small = lock_for(self.template, max_row=20)
        result = synthesize(six_items(), LOCATION, str(self.template), small, now=NOW)
        self.assertEqual(small.item_capacity, 4)
        self.assertEqual(result.rows_written, 4)
        t = result.truncation
        self.assertEqual((t.capacity, t.first_dropped_index, t.dropped_count, t.dropped_items), (4, 4, 2, 2))
        ws = readback(result)
        self.assertEqual(ws["D20"].value, "Item 4")
        self.assertIsNone(ws["D21"].value)

    def test_merged_cells_skipped(self):
        wb = openpyxl.load_workbook(self.template)
        wb["Order Items"].merge_cells("F18:G18")
        wb.save(self.template)
        result = synthesize(six_items(), LOCATION, str(self.template), lock_for(self.template), now=NOW)
        self.assertIn("G18", result.skipped_merged_cells)
        self.assertEqual(float(readback(result)["F18"].value), 2.0)

    def test_missing_template(self):
        with self.assertRaises(TemplateLockError):
            synthesize(six_items(), LOCATION, str(Path(self.td.name) / "missing.xlsx"), self.lock)

    def test_unknown_location_keeps_sheet_and_uses_timestamp_name(self):
        result = synthesize(six_items(), ExtractedLocation(), str(self.template), self.lock, now=NOW)
        self.assertEqual(result.sheet_title, "Order Items")
        self.assertEqual(result.filename, f"contract-{int(NOW * 1000)}.xlsx")


if __name__ == "__main__":
    unittest.main()
