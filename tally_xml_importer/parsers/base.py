"""
Base utilities for XML parsing.

Provides common functions for parsing Tally message fragments including:
- Fragment parsing
- Date parsing
- Numeric parsing
- Boolean parsing
"""
from __future__ import annotations
import re
from datetime import datetime, date
from typing import Optional
from lxml import etree
from loguru import logger

# Tally writes voucher dates as YYYYMMDD
COMPACT_DATE_FORMAT = "%Y%m%d"

_NUMERIC_NOISE_RE = re.compile(r"[,₹$€£¥\s]")


def parse_compact_date(s: str | None) -> Optional[date]:
    """
    Parse a YYYYMMDD date.

    Returns None for a missing or blank value.

    Raises:
        ValueError: If a value is present but is not a valid YYYYMMDD date
    """
    if s is None:
        return None

    s = str(s).strip()
    if not s:
        return None

    if len(s) != 8 or not s.isdigit():
        raise ValueError(f"Expected YYYYMMDD date, got {s!r}")
    return datetime.strptime(s, COMPACT_DATE_FORMAT).date()


def parse_float(s: str | None, default: float = 0.0) -> float:
    """
    Parse Tally numeric string to float.

    Handles:
    - Comma separators (1,234.56)
    - Parentheses for negatives ((1234.56))
    - Currency symbols
    - Dr/Cr suffixes
    - Empty strings
    """
    if not s:
        return default

    s = str(s).strip()
    if not s or s.lower() in ("", "null", "none"):
        return default

    is_negative = s.startswith("(") and s.endswith(")")
    if is_negative:
        s = s[1:-1]

    s = _NUMERIC_NOISE_RE.sub("", s)

    if s.endswith("Dr"):
        s = s[:-2]
    elif s.endswith("Cr"):
        s = s[:-2]
        is_negative = not is_negative

    try:
        val = float(s)
        return -val if is_negative else val
    except ValueError:
        logger.warning(f"Could not parse float: {s}")
        return default


def parse_quantity(s: str | None) -> float:
    """
    Parse Tally quantity string which may include unit suffix.
    E.g., "10 Nos" -> 10.0
    """
    if not s:
        return 0.0

    match = re.match(r"\s*([-\d.,]+)", s)
    if match:
        return parse_float(match.group(1))

    return 0.0


def parse_int(s: str | None, default: int = 0) -> int:
    """Parse Tally integer string."""
    if not s:
        return default

    s = str(s).strip().replace(",", "").replace(" ", "")
    if not s or s.lower() in ("", "null", "none"):
        return default

    try:
        return int(float(s))  # Handle "123.0" style
    except ValueError:
        logger.warning(f"Could not parse int: {s}")
        return default


def parse_bool(s: str | None, default: bool = False) -> bool:
    """
    Parse Tally boolean string.

    Tally uses various representations:
    - Yes/No
    - True/False
    - 1/0
    """
    if s is None:
        return default

    s = str(s).strip().lower()
    if s in ("yes", "true", "1", "y"):
        return True
    elif s in ("no", "false", "0", "n", ""):
        return False

    return default


def text(element: etree._Element | None, tag: str, default: str | None = None) -> str | None:
    """
    Safely extract text from XML element.

    Args:
        element: Parent XML element
        tag: Child tag name to find
        default: Default value if not found

    Returns:
        Stripped text content or default
    """
    if element is None:
        return default

    child = element.find(tag)
    if child is None or child.text is None:
        return default

    return child.text.strip() or default


def attr(element: etree._Element | None, name: str, default: str | None = None) -> str | None:
    """
    Safely extract attribute from XML element.

    Args:
        element: XML element
        name: Attribute name
        default: Default value if not found

    Returns:
        Attribute value or default
    """
    if element is None:
        return default

    val = element.get(name)
    if val is None:
        return default

    return val.strip() or default


def lookup(element: etree._Element | None, source: str) -> str | None:
    """Read a child tag, or an attribute when ``source`` starts with '@'."""
    if source.startswith("@"):
        return attr(element, source[1:])
    return text(element, source)


# Entity resolution and network access stay off for untrusted exports
_FRAGMENT_PARSER = etree.XMLParser(
    resolve_entities=False,
    no_network=True,
    huge_tree=True,
    remove_comments=True,
)


def parse_fragment(xml: bytes | str) -> etree._Element:
    """
    Parse one message fragment into an element tree.

    Raises:
        etree.XMLSyntaxError: If the fragment is not well-formed
    """
    if isinstance(xml, str):
        xml = xml.encode("utf-8")
    return etree.fromstring(xml, parser=_FRAGMENT_PARSER)
