import unittest
from decimal import Decimal

from contract_fixtures import CONTRACT_HTML
from contract_models import ContractLineItem, ROW_BLANK, ROW_ITEM, ROW_SUBCATEGORY
from contract_table_extractor import extract_order_items
from contract_totals_validator import fmt_money, items_total, validate


def item(amount, name="x"):
    return ContractLineItem(type=ROW_ITEM, product_service=name,
                            amount=Decimal(amount) if amount is not None else None)


class TestTotals(unittest.TestCase):
    def test_no_items_totals_zero(self):
        self.assertEqual(items_total([]), Decimal("0.00"))

    def test_only_items_count(self):
        rows = [
            ContractLineItem(type=ROW_SUBCATEGORY, product_service="CONCRETE"),
            item("100.00"),
            ContractLineItem(type=ROW_BLANK),
            item(None),
            item("50.00"),
        ]
        self.assertEqual(items_total(rows), Decimal("150.00"))

    def test_order_does_not_matter(self):
        rows = [item("10.10"), item("-2.05"), item("0.33")]
        self.assertEqual(items_total(rows), items_total(list(reversed(rows))))

    def test_fmt_money(self):
        self.assertEqual(fmt_money(Decimal("1234.5")), "$1,234.50")


class TestValidate(unittest.TestCase):
    def test_match(self):
        res = validate([item("100.00"), item("50.00")], Decimal("150.00"))
        self.assertTrue(res.is_valid)
        self.assertEqual(res.difference, Decimal("0.00"))
        self.assertEqual(res.message, "")

    def test_within_tolerance(self):
        res = validate([item("150.01")], Decimal("150.00"))
        self.assertTrue(res.is_valid)

    def test_mismatch_message(self):
        res = validate([item("150.00")], Decimal("200.00"))
        self.assertFalse(res.is_valid)
        self.assertEqual(res.difference, Decimal("50.00"))
        self.assertEqual(
            res.message,
            "Order items total ($150.00) does not match Order Grand Total ($200.00). Difference: $50.00",
        )

    def test_missing_total(self):
        res = validate([item("150.00")], None)
        self.assertFalse(res.is_valid)
        self.assertEqual(res.message, "Order Grand Total is missing or zero")

    def test_zero_total(self):
        self.assertFalse(validate([], Decimal("0")).is_valid)

    def test_extracted_table_against_declared_totals(self):
        items = extract_order_items(CONTRACT_HTML).items
        ok = validate(items, Decimal("150.00"))
        self.assertEqual((ok.is_valid, ok.items_total, ok.difference), (True, Decimal("150.00"), Decimal("0.00")))
        off = validate(items, Decimal("200.00"))
        self.assertEqual((off.is_valid, off.difference), (False, Decimal("50.00")))

    def test_custom_tolerance(self):
        self.assertTrue(validate([item("149.50")], Decimal("150.00"), tolerance=Decimal("1.00")).is_valid)


if __name__ == "__main__":
    unittest.main()
