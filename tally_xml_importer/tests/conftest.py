"""
Shared fixtures: sample Tally exports and an in-memory stand-in for a
psycopg connection.

FakeConnection implements the subset of psycopg the persister uses:
``transaction()`` (outermost = BEGIN/COMMIT, nested = SAVEPOINT) and
``cursor()`` executing ``INSERT ... ON CONFLICT DO NOTHING [RETURNING id]``,
``SELECT ... FROM table [WHERE tally_company_id = ...]`` and
``UPDATE table SET ... WHERE id = ...``.
"""
import copy
import re
from contextlib import contextmanager

import psycopg
import pytest

from tally_xml_importer.config import ImporterConfig
from tally_xml_importer.models import StructuredRecord

_INSERT_RE = re.compile(r"\s*INSERT INTO (\S+) \(([^)]*)\)", re.IGNORECASE)
_SELECT_RE = re.compile(r"\s*SELECT (.+?) FROM (\S+)", re.IGNORECASE | re.DOTALL)
_UPDATE_RE = re.compile(r"\s*UPDATE (\S+) SET", re.IGNORECASE)


class FakeCursor:
    def __init__(self, conn):
        self.conn = conn
        self._result = None
        self._rows = []
        self.rowcount = 0

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        return False

    def execute(self, sql, params=None):
        if self.conn.closed:
            raise psycopg.OperationalError("the connection is closed")
        self.conn.statements.append((sql, params))
        if _SELECT_RE.match(sql):
            self._select(sql, params or {})
            return
        if _UPDATE_RE.match(sql):
            self._update(sql, params)
            return
        m = _INSERT_RE.match(sql)
        if not m:
            self._result = None
            return
        table = m.group(1).split(".")[-1]
        self.conn.check_failures(table, params)
        self._result = self.conn.insert(table, dict(params))
        self.rowcount = 1 if self._result is not False else 0

    def fetchone(self):
        return self._result or None

    def fetchall(self):
        return self._rows

    def _select(self, sql, params):
        columns, table = _SELECT_RE.match(sql).groups()
        table = table.split(".")[-1]
        self.conn.check_failures(table, params)
        rows = self.conn.rows(table)
        if "company_id" in params:
            rows = [r for r in rows if r.get("tally_company_id") == params["company_id"]]
        if columns.upper().startswith("COUNT("):
            self._result = {"cnt": len(rows)}
            return
        names = [c.strip() for c in columns.split(",")]
        self._rows = [{n: copy.deepcopy(r.get(n)) for n in names} for r in rows]

    def _update(self, sql, params):
        table = _UPDATE_RE.match(sql).group(1).split(".")[-1]
        self.conn.check_failures(table, params)
        self.conn.updates += 1
        for row in self.conn.rows(table):
            if row["id"] == params["id"]:
                row.update({k: v for k, v in params.items() if k != "id"})
        self._result = None


class FakeConnection:
    """Tables are lists of row dicts; savepoints snapshot and restore them."""

    def __init__(self):
        self.tables: dict[str, list[dict]] = {}
        self.statements: list = []
        self.commits = 0
        self.rollbacks = 0
        self.updates = 0
        self.closed = False
        self.fail_commit = False
        self._failures: list = []
        self._next_id = 1
        self._depth = 0

    # Failure injection

    def fail_on(self, table, predicate=None, exc=psycopg.IntegrityError):
        """Raise ``exc`` for statements on ``table`` whose params match ``predicate``."""
        self._failures.append((table, predicate or (lambda params: True), exc))

    def check_failures(self, table, params):
        for name, predicate, exc in self._failures:
            if name == table and predicate(params):
                raise exc(f"injected failure on {table}")

    # psycopg surface

    @contextmanager
    def transaction(self):
        if self.closed:
            raise psycopg.OperationalError("the connection is closed")
        snapshot = copy.deepcopy((self.tables, self._next_id))
        outer = self._depth == 0
        self._depth += 1
        try:
            yield
            if outer and self.fail_commit:
                raise psycopg.OperationalError("server closed the connection unexpectedly")
        except BaseException:
            self.tables, self._next_id = snapshot
            self.rollbacks += 1
            raise
        finally:
            self._depth -= 1
        if outer:
            self.commits += 1

    def cursor(self):
        return FakeCursor(self)

    def close(self):
        self.closed = True

    # Storage

    def insert(self, table, row):
        rows = self.tables.setdefault(table, [])
        if "guid" in row and "voucher_id" not in row:
            if any(r["guid"] == row["guid"] for r in rows):
                return None
            row["id"] = self._next_id
            self._next_id += 1
            rows.append(row)
            return {"id": row["id"]}

        key = (row.get("voucher_id"), row.get("position"))
        if any((r.get("voucher_id"), r.get("position")) == key for r in rows):
            return False
        rows.append(row)
        return None

    def rows(self, table):
        return self.tables.get(table, [])


def make_record(guid, ledger_lines=1, position=None, **header):
    """Build a StructuredRecord with ``ledger_lines`` ledger entries."""
    entries = [
        {
            "ledger_name": f"Ledger {i}",
            "amount": 100.0,
            "is_deemed_positive": "Yes" if i % 2 else "No",
            "is_party_ledger": False,
            "entry_type": "Credit" if i % 2 else "Debit",
        }
        for i in range(ledger_lines)
    ]
    return StructuredRecord(
        identifier=guid,
        header={"guid": guid, "voucher_number": guid.upper(), **header},
        groups={"ledger_entries": entries, "gst_details": []},
        position=position,
    )


def voucher_message(guid="guid-1", number="1", date="20240401", entries=(("Cash", "-100.00", "Yes"), ("Sales", "100.00", "No")), extra=""):
    """One TALLYMESSAGE carrying a voucher with the given ledger entries."""
    lines = "".join(
        f"<ALLLEDGERENTRIES.LIST><LEDGERNAME>{name}</LEDGERNAME>"
        f"<ISDEEMEDPOSITIVE>{flag}</ISDEEMEDPOSITIVE><AMOUNT>{amount}</AMOUNT>"
        f"</ALLLEDGERENTRIES.LIST>"
        for name, amount, flag in entries
    )
    guid_tag = f"<GUID>{guid}</GUID>" if guid is not None else ""
    return (
        f'<TALLYMESSAGE xmlns:UDF="TallyUDF"><VOUCHER VCHTYPE="Sales" ACTION="Create">'
        f"{guid_tag}<DATE>{date}</DATE><VOUCHERTYPENAME>Sales</VOUCHERTYPENAME>"
        f"<VOUCHERNUMBER>{number}</VOUCHERNUMBER><PARTYLEDGERNAME>Cash</PARTYLEDGERNAME>"
        f"{extra}{lines}</VOUCHER></TALLYMESSAGE>"
    )


def envelope(*messages):
    return (
        '<?xml version="1.0" encoding="UTF-8"?>\n<ENVELOPE><HEADER><TALLYREQUEST>Import Data</TALLYREQUEST></HEADER>'
        "<BODY><IMPORTDATA><REQUESTDATA>"
        + "\n".join(messages)
        + "</REQUESTDATA></IMPORTDATA></BODY></ENVELOPE>\n"
    )


GROUP_MESSAGE = '<TALLYMESSAGE><GROUP NAME="Sundry Debtors"><PARENT>Current Assets</PARENT></GROUP></TALLYMESSAGE>'
LEDGER_MESSAGE = '<TALLYMESSAGE><LEDGER NAME="Cash"><PARENT>Cash-in-Hand</PARENT></LEDGER></TALLYMESSAGE>'


def master_message(tag, name, parent=None, guid=None, extra=""):
    """One TALLYMESSAGE carrying a GROUP or LEDGER master."""
    parent_tag = f"<PARENT>{parent}</PARENT>" if parent is not None else ""
    guid_tag = f"<GUID>{guid or 'm-' + name}</GUID>"
    return f'<TALLYMESSAGE><{tag} NAME="{name}" ACTION="Create">{guid_tag}{parent_tag}{extra}</{tag}></TALLYMESSAGE>'


@pytest.fixture
def fake_conn():
    return FakeConnection()


@pytest.fixture
def config(tmp_path):
    """Config pointing at temp files, with no environment leakage."""
    return ImporterConfig(
        db_url="postgresql://test@localhost/test",
        db_schema="tally_import",
        input_path=None,
        sanitized_path=str(tmp_path / "cleaned.xml"),
        reuse_sanitized=False,
        size_threshold=500 * 1024 * 1024,
        chunk_size=10 * 1024 * 1024,
        escape_ampersands=True,
        message_tag="TALLYMESSAGE",
        payload_tag="VOUCHER",
        recover_xml=False,
        import_masters=False,
        batch_size=1000,
        progress_interval=1000,
        company_id=None,
        log_first_n=10,
        log_file=None,
    )


@pytest.fixture
def scenario_xml():
    """Group definition, ledger definition and one two-line voucher."""
    return envelope(GROUP_MESSAGE, LEDGER_MESSAGE, voucher_message(
        guid="abc-123",
        entries=(("Cash", "100.00", "No"), ("Sales", "-100.00", "Yes")),
    ))


@pytest.fixture
def write_xml(tmp_path):
    """Write text or bytes to a temp file and return its path."""
    def _write(content, name="export.xml"):
        path = tmp_path / name
        if isinstance(content, str):
            content = content.encode("utf-8")
        path.write_bytes(content)
        return path
    return _write
