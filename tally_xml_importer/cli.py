"""
Command line interface for the Tally XML importer.

Usage:
    python -m tally_xml_importer --input Transactions.xml
    python -m tally_xml_importer --input Transactions.xml --dry-run -v
    python -m tally_xml_importer --init-db
"""
from __future__ import annotations
import argparse
import sys
from dataclasses import replace
from typing import Optional
from loguru import logger

from .config import ImporterConfig, configure_logging
from .errors import SanitationError
from .pipeline import ImportPipeline


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tally_xml_importer",
        description="Tally XML Importer - Load a Tally XML export into PostgreSQL",
    )
    parser.add_argument(
        "--input",
        help="Tally XML export to import (default: TALLY_XML_INPUT)",
    )
    parser.add_argument(
        "--clean-file",
        help="Path for the cleaned intermediate XML (default: TALLY_XML_CLEAN or cleaned.xml)",
    )
    parser.add_argument(
        "--batch-size",
        type=int,
        help="Records per database transaction (default: TALLY_BATCH_SIZE or 1000)",
    )
    parser.add_argument(
        "--company-id",
        type=int,
        help="Value stored in tally_company_id on every row",
    )
    parser.add_argument(
        "--init-db",
        action="store_true",
        help="Create the database schema and tables before importing",
    )
    parser.add_argument(
        "--sanitize-only",
        action="store_true",
        help="Only write the cleaned XML file, don't import",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Extract and count records without writing to the database",
    )
    parser.add_argument(
        "--masters",
        action="store_true",
        help="Also import group and ledger masters into tally_hierarchy",
    )
    parser.add_argument(
        "--reuse-clean",
        action="store_true",
        help="Reuse the cleaned file if it is newer than the input",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    parser.add_argument(
        "-q", "--quiet",
        action="store_true",
        help="Only log errors",
    )
    return parser


def config_from_args(args: argparse.Namespace, config: Optional[ImporterConfig] = None) -> ImporterConfig:
    """Overlay command line options on the environment configuration."""
    config = config or ImporterConfig.from_env()
    overrides = {}
    if args.input:
        overrides["input_path"] = args.input
    if args.clean_file:
        overrides["sanitized_path"] = args.clean_file
    if args.batch_size is not None:
        overrides["batch_size"] = args.batch_size
    if args.company_id is not None:
        overrides["company_id"] = args.company_id
    if args.reuse_clean:
        overrides["reuse_sanitized"] = True
    if args.masters:
        overrides["import_masters"] = True
    return replace(config, **overrides)


def print_summary(summary: dict) -> None:
    print("\n=== Import Summary ===")
    for key, value in summary.items():
        if isinstance(value, dict):
            print(f"{key}:")
            for name, count in value.items():
                print(f"  {name}: {count}")
        else:
            print(f"{key}: {value}")


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    config = config_from_args(args)
    configure_logging(config, verbose=args.verbose, quiet=args.quiet)

    init_only = args.init_db and not config.input_path
    problems = [p for p in config.validate() if not (init_only and "TALLY_XML_INPUT" in p)]
    if args.dry_run or args.sanitize_only:
        problems = [p for p in problems if not p.startswith("DB_URL")]
    if problems:
        for problem in problems:
            logger.error(f"Configuration error: {problem}")
        return 1

    try:
        with ImportPipeline(config, dry_run=args.dry_run or args.sanitize_only) as pipeline:
            if args.init_db:
                pipeline.initialize_schema()
                print("Schema initialized successfully")
                if init_only:
                    return 0

            if args.sanitize_only:
                document = pipeline.sanitize()
                print(f"Cleaned XML written to {document.path}")
                return 0

            run = pipeline.run()
    except SanitationError as e:
        logger.error(f"Cleaning failed: {e}")
        return 1
    except Exception as e:
        logger.exception(f"Import failed: {e}")
        return 1

    print_summary(run.summary())
    return 0 if run.succeeded else 1
