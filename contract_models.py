#!/usr/bin/env python3
"""
Contract records (PLAIN DATA, NO I/O)

Every pipeline stage takes these in and hands new ones out.
Nothing here touches the network, the filesystem or a workbook.
"""

from dataclasses import dataclass, field, replace
from decimal import Decimal
from typing import List, Optional

ROW_MAIN_CATEGORY = "main_category"
ROW_SUBCATEGORY = "subcategory"
ROW_ITEM = "item"
ROW_BLANK = "blank"
ROW_TYPES = (ROW_MAIN_CATEGORY, ROW_SUBCATEGORY, ROW_ITEM, ROW_BLANK)

SOURCE_INITIAL = "Initial"
SOURCE_ADDENDUM = "Addendum"

REF_ORIGINAL = "original"
REF_OPTIONAL_PACKAGE = "optional_package"
REF_ADDENDUM = "addendum"

STATUS_SUCCESS = "success"
STATUS_WARNING = "warning"
STATUS_FAILURE = "failure"


@dataclass(frozen=True)
class ContractLineItem:
    type: str                       # main_category | subcategory | item | blank
    product_service: str = ""
    qty: Optional[Decimal] = None
    rate: Optional[Decimal] = None
    amount: Optional[Decimal] = None
    main_category: Optional[str] = None
    sub_category: Optional[str] = None
    source_label: str = SOURCE_INITIAL      # "Initial" | "Addendum"
    addendum_number: Optional[int] = None
    optional_package_number: Optional[int] = None
    url_id: Optional[str] = None

    def __post_init__(self):
        if self.type not in ROW_TYPES:
            raise ValueError(f"unknown row type: {self.type!r}")
        if self.type != ROW_ITEM and any(v is not None for v in (self.qty, self.rate, self.amount)):
            raise ValueError(f"{self.type} rows never carry qty/rate/amount")

    @property
    def is_item(self) -> bool:
        return self.type == ROW_ITEM

    def tagged(self, **changes) -> "ContractLineItem":
        return replace(self, **changes)


@dataclass(frozen=True)
class ExtractedLocation:
    order_no: str = ""
    dbx_customer_id: str = ""
    client_name: str = ""
    street_address: str = ""
    city: str = ""
    state: str = ""
    zip: str = ""
    email: str = ""
    phone: str = ""
    order_date: str = ""
    order_po: str = ""
    order_due_date: str = ""
    order_type: str = ""
    quote_expiration_date: str = ""
    order_grand_total: Optional[Decimal] = None
    progress_payments: str = ""
    balance_due: Optional[Decimal] = None
    sales_rep: str = ""


@dataclass
class AddendumReference:
    type: str                       # original | optional_package | addendum
    number: Optional[int] = None
    name: Optional[str] = None
    selected: bool = True
    resolved_url: Optional[str] = None

    @property
    def label(self) -> str:
        if self.type == REF_ORIGINAL:
            return "Original Contract"
        if self.type == REF_OPTIONAL_PACKAGE:
            return f"Optional Package {self.number}"
        if self.number is None:
            return f"Addendum ({self.resolved_url or 'unbound'})"
        return f"Addendum #{self.number}"


def original_reference() -> AddendumReference:
    return AddendumReference(type=REF_ORIGINAL, selected=True)


def optional_package_reference(number: int, name: Optional[str] = None) -> AddendumReference:
    # alternatives, not commitments
    return AddendumReference(type=REF_OPTIONAL_PACKAGE, number=number, name=name, selected=False)


def addendum_reference(number: Optional[int], resolved_url: Optional[str] = None) -> AddendumReference:
    return AddendumReference(type=REF_ADDENDUM, number=number, selected=True, resolved_url=resolved_url)


@dataclass(frozen=True)
class AddendumStatus:
    reference: AddendumReference
    status: str                     # success | warning | failure
    detail: str = ""


@dataclass(frozen=True)
class ValidationResult:
    is_valid: bool
    order_grand_total: Decimal
    items_total: Decimal
    difference: Decimal
    message: str = ""


@dataclass(frozen=True)
class TemplateCellPlan:
    row: int
    col: int
    has_formula: bool


@dataclass(frozen=True)
class DecodedMessage:
    text: str = ""
    html: str = ""
    subject: str = ""
    sender: str = ""
    date: str = ""

    @property
    def is_empty(self) -> bool:
        return not self.text.strip() and not self.html.strip()


@dataclass
class ExtractionResult:
    location: ExtractedLocation
    items: List[ContractLineItem]
    addendum_statuses: List[AddendumStatus] = field(default_factory=list)
    references: List[AddendumReference] = field(default_factory=list)
    has_table: bool = False
    no_content: bool = False


@dataclass(frozen=True)
class RowTruncation:
    capacity: int               # item rows the template can hold
    first_dropped_index: int    # index into the synthesized row sequence
    dropped_count: int
    dropped_items: int = 0      # line items (not headers/blanks) among the dropped rows

    def describe(self) -> str:
        return (f"template holds {self.capacity} rows; "
                f"{self.dropped_count} row(s) from index {self.first_dropped_index} not written "
                f"({self.dropped_items} line item(s))")


@dataclass
class SynthesisResult:
    content: bytes
    filename: str
    sheet_title: str
    rows_written: int = 0
    truncation: Optional[RowTruncation] = None
    skipped_formula_cells: List[str] = field(default_factory=list)
    skipped_merged_cells: List[str] = field(default_factory=list)
