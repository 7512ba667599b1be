"""
Chart-of-accounts hierarchy for imported groups and ledgers.

Groups and ledgers are stored one row each in ``tally_hierarchy`` with the
name of their parent group. Once a document has been imported, every row
gets its top-level group and the full path from that group down to itself,
so reports can roll ledgers up without walking the tree in SQL.
"""
from __future__ import annotations
from typing import Optional, Sequence

HIERARCHY_TABLE = "tally_hierarchy"

# Parent Tally gives the top-level groups
PRIMARY = "Primary"


def hierarchy_path(name: str, parent: Optional[str], parents: dict[str, Optional[str]]) -> list[str]:
    """
    Names from the top-level group down to ``name``.

    The walk follows ``parents`` (group name -> parent group name) and stops
    at the root marker, at a parent that was never imported, or when a name
    repeats.

    Examples:
        >>> hierarchy_path("Cash", "Cash-in-Hand", {"Cash-in-Hand": "Current Assets", "Current Assets": "Primary"})
        ['Current Assets', 'Cash-in-Hand', 'Cash']
    """
    path = [name]
    seen = {name}
    while parent and parent != PRIMARY and parent not in seen:
        path.append(parent)
        seen.add(parent)
        if parent not in parents:
            break
        parent = parents[parent]
    path.reverse()
    return path


def resolve_paths(rows: Sequence[dict]) -> dict[int, list[str]]:
    """
    Compute the path of every hierarchy row.

    Args:
        rows: Dicts with ``id``, ``name``, ``type`` and ``parent_name``

    Returns:
        Row id -> path (top-level group first)
    """
    parents = {r["name"]: r["parent_name"] for r in rows if r["type"] == "group" and r["name"]}
    return {
        r["id"]: hierarchy_path(r["name"], r["parent_name"], parents)
        for r in rows
        if r["name"]
    }
