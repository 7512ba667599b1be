"""
Extractor for Tally voucher and master messages.

Maps one TALLYMESSAGE fragment to a StructuredRecord using a MessageMapping:
- Voucher header fields
- Ledger (accounting) entries with debit/credit classification
- Bank allocations
- Inventory entries and inventory allocations
- GST details
- TDS entries
- Group and ledger masters, when their mappings are passed in

extract_message is a pure function of its input: it does not log outcomes or
touch counters. The caller decides what to do with each Extraction.
"""
from __future__ import annotations
from typing import Any, Optional, Sequence
from lxml import etree
from loguru import logger

from ..errors import ExtractionError, ExtractionErrorKind
from ..models import Extraction, MessageFragment, SkipReason, StructuredRecord
from .base import lookup, parse_fragment
from .mapping import GroupRule, MessageMapping, VOUCHER_MAPPING


def extract_message(
    fragment: MessageFragment | bytes | str,
    mapping: MessageMapping | Sequence[MessageMapping] = VOUCHER_MAPPING,
) -> Extraction:
    """
    Map one message fragment.

    ``mapping`` may be a sequence; the first mapping whose payload element
    is present in the message is applied.

    Returns:
        Extraction.ok(record) for a transactional message with an identifier,
        Extraction.skip(...) for a non-transactional message or one without
        an identifier, Extraction.failed(...) for a malformed fragment or a
        field that cannot be converted.
    """
    xml, position = _unwrap(fragment)

    try:
        message = parse_fragment(xml)
    except etree.XMLSyntaxError as e:
        return Extraction.failed(ExtractionError(
            ExtractionErrorKind.MALFORMED,
            f"Fragment is not well-formed XML: {e}",
            position=position,
        ))

    mappings = (mapping,) if isinstance(mapping, MessageMapping) else tuple(mapping)
    for mapping in mappings:
        payload = message.find(mapping.payload_tag)
        if payload is not None:
            break
    else:
        children = ",".join(sorted({str(c.tag) for c in message if isinstance(c.tag, str)}))
        tags = "/".join(m.payload_tag for m in mappings)
        return Extraction.skip(
            SkipReason.NOT_TRANSACTIONAL,
            f"no {tags} under {message.tag} (children: {children or 'none'})",
        )

    identifier = mapping.identifier.raw(payload)
    if not identifier:
        return Extraction.skip(
            SkipReason.MISSING_IDENTIFIER,
            f"{mapping.payload_tag} at position {position} has no {mapping.identifier.column}",
        )

    try:
        header = {rule.column: rule.extract(payload) for rule in mapping.header}
        groups = _extract_groups(payload, mapping)
    except ValueError as e:
        return Extraction.failed(ExtractionError(
            ExtractionErrorKind.INVALID_FIELD,
            str(e),
            identifier=identifier,
            position=position,
        ))

    header[mapping.identifier.column] = identifier
    return Extraction.ok(StructuredRecord(
        identifier=identifier,
        header=header,
        groups=groups,
        position=position,
        kind=mapping.payload_tag,
    ))


def extract(
    fragment: MessageFragment | bytes | str,
    mapping: MessageMapping | Sequence[MessageMapping] = VOUCHER_MAPPING,
) -> Optional[StructuredRecord]:
    """
    Map one message fragment, returning None for anything that is skipped.

    Raises:
        ExtractionError: If the fragment is malformed or a field is invalid
    """
    result = extract_message(fragment, mapping)
    if result.error is not None:
        raise result.error
    if result.reason is SkipReason.MISSING_IDENTIFIER:
        logger.warning(f"Skipping record without identifier: {result.detail}")
    return result.record


def _unwrap(fragment: MessageFragment | bytes | str) -> tuple[bytes | str, Optional[int]]:
    if isinstance(fragment, MessageFragment):
        return fragment.xml, fragment.index
    return fragment, None


def _extract_groups(payload: etree._Element, mapping: MessageMapping) -> dict[str, list[dict]]:
    groups: dict[str, list[dict]] = {}
    # element -> row position, per group, for parent_position lookups
    positions: dict[str, dict[etree._Element, int]] = {}

    for rule in mapping.groups:
        rows, seen = _extract_group(payload, rule, positions)
        groups[rule.name] = rows
        positions[rule.name] = seen

    return groups


def _extract_group(
    payload: etree._Element,
    rule: GroupRule,
    positions: dict[str, dict[etree._Element, int]],
) -> tuple[list[dict], dict[etree._Element, int]]:
    rows = []
    seen = {}

    for elem in payload.xpath(rule.xpath):
        row: dict[str, Any] = {f.column: f.extract(elem) for f in rule.fields}

        for inherited in rule.inherit:
            if not row.get(inherited.column):
                row[inherited.column] = inherited.coerce(_ancestor_value(elem, payload, inherited.sources))

        if rule.required and not row.get(rule.required):
            continue

        if rule.nested_in:
            row["parent_position"] = _enclosing_position(elem, payload, positions.get(rule.nested_in, {}))

        if rule.derive:
            rule.derive(row)

        seen[elem] = len(rows)
        rows.append(row)

    return rows, seen


def _ancestor_value(elem: etree._Element, payload: etree._Element, sources: tuple[str, ...]) -> Optional[str]:
    """Walk up towards the payload looking for the first ancestor carrying a source."""
    parent = elem.getparent()
    while parent is not None and parent is not payload:
        for source in sources:
            value = lookup(parent, source)
            if value:
                return value
        parent = parent.getparent()
    return None


def _enclosing_position(
    elem: etree._Element,
    payload: etree._Element,
    parent_rows: dict[etree._Element, int],
) -> Optional[int]:
    parent = elem.getparent()
    while parent is not None and parent is not payload:
        if parent in parent_rows:
            return parent_rows[parent]
        parent = parent.getparent()
    return None
