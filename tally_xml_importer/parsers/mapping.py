"""
Declarative field mapping for Tally messages.

Every header field and every repeating group is described once here:
which tags feed it, how the value is coerced and what it defaults to when
absent. The extractor walks these tables; it has no field names of its own.
"""
from __future__ import annotations
from dataclasses import dataclass, replace
from typing import Any, Callable, Optional
from lxml import etree

from .base import (
    lookup,
    parse_bool,
    parse_compact_date,
    parse_float,
    parse_int,
    parse_quantity,
)

_MISSING = object()

KIND_DEFAULTS: dict[str, Any] = {
    "text": "",
    "date": None,
    "float": 0.0,
    "abs_float": 0.0,
    "quantity": 0.0,
    "int": 0,
    "bool": False,
}


@dataclass(frozen=True)
class FieldRule:
    """
    One output column.

    ``sources`` are tried in order; a plain name reads a child element's
    text, ``@NAME`` reads an attribute. The first non-blank value wins.
    """

    column: str
    sources: tuple[str, ...]
    kind: str = "text"
    default: Any = _MISSING

    def __post_init__(self):
        if self.kind not in KIND_DEFAULTS:
            raise ValueError(f"Unknown field kind {self.kind!r} for {self.column}")
        if isinstance(self.sources, str):
            object.__setattr__(self, "sources", (self.sources,))

    @property
    def fallback(self) -> Any:
        return KIND_DEFAULTS[self.kind] if self.default is _MISSING else self.default

    def raw(self, element: etree._Element | None) -> Optional[str]:
        for source in self.sources:
            value = lookup(element, source)
            if value:
                return value
        return None

    def coerce(self, raw: Optional[str]) -> Any:
        """
        Convert a raw string to the column's type.

        Raises:
            ValueError: For a date that is present but not YYYYMMDD
        """
        if raw is None:
            return self.fallback
        if self.kind == "text":
            return raw
        if self.kind == "date":
            return parse_compact_date(raw)
        if self.kind == "float":
            return parse_float(raw, self.fallback)
        if self.kind == "abs_float":
            return abs(parse_float(raw, self.fallback))
        if self.kind == "quantity":
            return parse_quantity(raw)
        if self.kind == "int":
            return parse_int(raw, self.fallback)
        return parse_bool(raw, self.fallback)

    def extract(self, element: etree._Element | None) -> Any:
        return self.coerce(self.raw(element))


@dataclass(frozen=True)
class GroupRule:
    """
    One repeating group under the payload element.

    Attributes:
        name: Group name, also the key in StructuredRecord.groups
        xpath: XPath (relative to the payload) selecting the group's elements;
            unions keep document order
        fields: Columns read from each element
        required: Column that must be non-empty for a row to be kept
        inherit: Columns read from the nearest ancestor that has them, used
            when the element itself leaves the column empty
        nested_in: Earlier group whose enclosing row position is stored as
            ``parent_position``
        derive: Hook adding computed columns to a finished row
    """

    name: str
    xpath: str
    fields: tuple[FieldRule, ...]
    required: Optional[str] = None
    inherit: tuple[FieldRule, ...] = ()
    nested_in: Optional[str] = None
    derive: Optional[Callable[[dict], None]] = None

    @property
    def columns(self) -> list[str]:
        cols = [f.column for f in self.fields]
        cols += [f.column for f in self.inherit if f.column not in cols]
        if self.nested_in:
            cols.append("parent_position")
        return cols


@dataclass(frozen=True)
class MessageMapping:
    """Header fields and repeating groups for one payload element type."""

    payload_tag: str
    identifier: FieldRule
    header: tuple[FieldRule, ...]
    groups: tuple[GroupRule, ...] = ()

    @property
    def group_names(self) -> list[str]:
        return [g.name for g in self.groups]

    def group(self, name: str) -> GroupRule:
        for g in self.groups:
            if g.name == name:
                return g
        raise KeyError(name)

    def with_payload(self, payload_tag: str) -> "MessageMapping":
        return replace(self, payload_tag=payload_tag)


def classify_ledger_entry(row: dict) -> None:
    """
    Debit/credit comes from ISDEEMEDPOSITIVE, never from the amount's sign.

    "Yes" marks the entry as Credit, anything else as Debit.
    """
    row["entry_type"] = "Credit" if parse_bool(row.get("is_deemed_positive")) else "Debit"


VOUCHER_IDENTIFIER = FieldRule("guid", ("GUID", "@GUID"))

VOUCHER_HEADER = (
    VOUCHER_IDENTIFIER,
    FieldRule("voucher_number", ("VOUCHERNUMBER", "@VCHNUMBER")),
    FieldRule("voucher_type", ("VOUCHERTYPENAME", "@VCHTYPE")),
    FieldRule("date", ("DATE",), "date"),
    FieldRule("reference", ("REFERENCE", "REFERENCENUMBER")),
    FieldRule("reference_date", ("REFERENCEDATE",), "date"),
    FieldRule("narration", ("NARRATION",)),
    FieldRule("party_ledger_name", ("PARTYLEDGERNAME", "PARTYNAME")),
    FieldRule("party_gstin", ("PARTYGSTIN",)),
    FieldRule("place_of_supply", ("PLACEOFSUPPLY",)),
    FieldRule("created_by", ("ENTEREDBY",)),
    FieldRule("alter_id", ("ALTERID",), "int"),
    FieldRule("master_id", ("MASTERID", "@MASTERID")),
    FieldRule("is_cancelled", ("ISCANCELLED",), "bool"),
    FieldRule("is_optional", ("ISOPTIONAL",), "bool"),
)

LEDGER_ENTRIES = GroupRule(
    name="ledger_entries",
    xpath="ALLLEDGERENTRIES.LIST | LEDGERENTRIES.LIST",
    fields=(
        FieldRule("ledger_name", ("LEDGERNAME",)),
        FieldRule("amount", ("AMOUNT",), "abs_float"),
        FieldRule("is_deemed_positive", ("ISDEEMEDPOSITIVE",), default="No"),
        FieldRule("is_party_ledger", ("ISPARTYLEDGER",), "bool"),
    ),
    derive=classify_ledger_entry,
)

BANK_ALLOCATIONS = GroupRule(
    name="bank_allocations",
    xpath=(
        "ALLLEDGERENTRIES.LIST/BANKALLOCATIONS.LIST"
        " | ALLLEDGERENTRIES.LIST/BANKALLOCATIONS/*"
        " | LEDGERENTRIES.LIST/BANKALLOCATIONS.LIST"
    ),
    fields=(
        FieldRule("instrument_number", ("INSTRUMENTNUMBER",)),
        FieldRule("bank_name", ("BANKNAME",)),
        FieldRule("instrument_date", ("INSTRUMENTDATE",), "date"),
        FieldRule("transaction_type", ("TRANSACTIONTYPE",)),
        FieldRule("amount", ("AMOUNT",), "float"),
    ),
    inherit=(FieldRule("ledger_name", ("LEDGERNAME",)),),
    nested_in="ledger_entries",
)

INVENTORY_ENTRIES = GroupRule(
    name="inventory_entries",
    xpath="ALLINVENTORYENTRIES.LIST | INVENTORYENTRIES.LIST",
    fields=(
        FieldRule("stock_item_name", ("STOCKITEMNAME",)),
        FieldRule("actual_qty", ("ACTUALQTY",), "quantity"),
        FieldRule("billed_qty", ("BILLEDQTY",), "quantity"),
        FieldRule("rate", ("RATE",)),
        FieldRule("amount", ("AMOUNT",), "float"),
        FieldRule("is_deemed_positive", ("ISDEEMEDPOSITIVE",)),
    ),
    required="stock_item_name",
)

INVENTORY_ALLOCATIONS = GroupRule(
    name="inventory_allocations",
    xpath=(
        "INVENTORYALLOCATIONS.LIST"
        " | ALLINVENTORYENTRIES.LIST/INVENTORYALLOCATIONS.LIST"
        " | INVENTORYENTRIES.LIST/INVENTORYALLOCATIONS.LIST"
    ),
    fields=(
        FieldRule("godown_name", ("GODOWNNAME",)),
        FieldRule("batch_name", ("BATCHNAME",)),
        FieldRule("quantity", ("ACTUALQTY",), "quantity"),
        FieldRule("amount", ("AMOUNT",), "float"),
        FieldRule("rate", ("RATE",)),
        FieldRule("cost_center", ("COSTCENTRENAME",)),
    ),
    inherit=(FieldRule("stock_item_name", ("STOCKITEMNAME",)),),
    nested_in="inventory_entries",
)

GST_DETAILS = GroupRule(
    name="gst_details",
    xpath="GSTDETAILS.LIST",
    fields=(
        FieldRule("tax_rate", ("TAXRATE",), "float"),
        FieldRule("gst_registration_type", ("TAXTYPE",)),
        FieldRule("taxable_amount", ("TAXABLEAMOUNT",), "float"),
    ),
)

TDS_ENTRIES = GroupRule(
    name="tds_entries",
    xpath="TDSENTRIES.LIST",
    fields=(
        FieldRule("tds_section_name", ("NATUREOFPAYMENT",)),
        FieldRule("tds_amount", ("TDSAMOUNT",), "float"),
        FieldRule("assessable_amount", ("ASSESSABLEAMOUNT",), "float"),
    ),
)

# Parent groups come before the groups nested in them
VOUCHER_MAPPING = MessageMapping(
    payload_tag="VOUCHER",
    identifier=VOUCHER_IDENTIFIER,
    header=VOUCHER_HEADER,
    groups=(
        LEDGER_ENTRIES,
        BANK_ALLOCATIONS,
        INVENTORY_ENTRIES,
        INVENTORY_ALLOCATIONS,
        GST_DETAILS,
        TDS_ENTRIES,
    ),
)

# Group and ledger masters; constant ``type`` columns have no source tags
GROUP_MAPPING = MessageMapping(
    payload_tag="GROUP",
    identifier=VOUCHER_IDENTIFIER,
    header=(
        VOUCHER_IDENTIFIER,
        FieldRule("name", ("@NAME", "NAME"), default=None),
        FieldRule("type", (), default="group"),
        FieldRule("parent_name", ("PARENT",), default=None),
        FieldRule("alter_id", ("ALTERID",), "int"),
        FieldRule("master_id", ("MASTERID",)),
    ),
)

LEDGER_MAPPING = MessageMapping(
    payload_tag="LEDGER",
    identifier=VOUCHER_IDENTIFIER,
    header=(
        VOUCHER_IDENTIFIER,
        FieldRule("name", ("@NAME", "NAME"), default=None),
        FieldRule("type", (), default="ledger"),
        FieldRule("parent_name", ("PARENT",), default=None),
        FieldRule("opening_balance", ("OPENINGBALANCE",), "float"),
        FieldRule("party_gstin", ("PARTYGSTIN",)),
        FieldRule("state_name", ("LEDSTATENAME", "STATENAME")),
        FieldRule("alter_id", ("ALTERID",), "int"),
        FieldRule("master_id", ("MASTERID",)),
    ),
)

MASTER_MAPPINGS = (GROUP_MAPPING, LEDGER_MAPPING)
