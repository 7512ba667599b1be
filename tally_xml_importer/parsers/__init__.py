"""
Parsers for Tally message fragments.

- base: value coercion helpers and fragment parsing
- mapping: declarative header / repeating-group field tables for vouchers and masters
- vouchers: the extractor that applies a mapping to one fragment
"""

from .base import parse_compact_date, parse_float, parse_bool, parse_fragment
from .mapping import (
    FieldRule,
    GroupRule,
    MessageMapping,
    VOUCHER_MAPPING,
    GROUP_MAPPING,
    LEDGER_MAPPING,
    MASTER_MAPPINGS,
    classify_ledger_entry,
)
from .vouchers import extract, extract_message

__all__ = [
    # Base
    "parse_compact_date",
    "parse_float",
    "parse_bool",
    "parse_fragment",
    # Mapping
    "FieldRule",
    "GroupRule",
    "MessageMapping",
    "VOUCHER_MAPPING",
    "GROUP_MAPPING",
    "LEDGER_MAPPING",
    "MASTER_MAPPINGS",
    "classify_ledger_entry",
    # Extraction
    "extract",
    "extract_message",
]
