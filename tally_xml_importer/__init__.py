"""
Tally XML Importer - Load Tally XML exports into PostgreSQL.

This module imports the vouchers of an arbitrarily large Tally XML export in
a single streaming pass, with memory bounded by the largest single message.

Key Features:
- Repairs raw exports first: BOMs, UTF-16, control characters, illegal
  character references and leading junk
- Streams TALLYMESSAGE elements with lxml iterparse
- Declarative field mapping for voucher headers and their repeating groups
  (ledger entries, inventory, GST, TDS, bank allocations)
- Batched, transactional PostgreSQL writes with per-row savepoints
- Safe re-runs: vouchers are keyed by GUID and child rows by position
- Run summary with counters for every skipped, failed and lost record

Usage:
    # Import a file
    python -m tally_xml_importer --input Transactions.xml

    # Create the schema first
    python -m tally_xml_importer --init-db --input Transactions.xml

    # Count what would be imported
    python -m tally_xml_importer --input Transactions.xml --dry-run
"""

__version__ = "1.0.0"
__author__ = "Intelayer"

from .config import ImporterConfig, configure_logging
from .models import ImportRun, StructuredRecord
from .pipeline import ImportPipeline, run_import

__all__ = [
    "ImporterConfig",
    "configure_logging",
    "ImportRun",
    "StructuredRecord",
    "ImportPipeline",
    "run_import",
    "__version__",
]
