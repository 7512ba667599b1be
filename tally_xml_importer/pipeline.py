"""
Import orchestration for Tally XML exports.

Runs one document through the stages:
- Sanitize: raw bytes -> UTF-8, control-character-free XML file
- Tokenize: one fragment per TALLYMESSAGE
- Extract: fragment -> StructuredRecord / skip / failure
- Batch: records -> PostgreSQL, one transaction per batch
- Finalize: with masters enabled, resolve group and ledger hierarchy paths

All counters live on the ImportRun returned by ``run``; a summary is logged
whether the run finished or failed.
"""
from __future__ import annotations
from pathlib import Path
from typing import Callable, Optional
import psutil
from loguru import logger

from .config import ImporterConfig
from .errors import PersistenceError, SanitationError, SanitationErrorKind, TokenizerError
from .loaders import BatchPersister
from .models import ImportRun, Outcome, RunState, SkipReason, StructuredRecord
from .parsers import MASTER_MAPPINGS, VOUCHER_MAPPING, MessageMapping, extract_message
from .sanitizer import SanitizedDocument, XmlSanitizer, format_bytes
from .tokenizer import MessageTokenizer


class ImportPipeline:
    """
    Single-pass importer for one Tally XML document.

    Usage:
        with ImportPipeline(config) as pipeline:
            run = pipeline.run("Transactions.xml")
        print(run.summary())

    Pass ``dry_run=True`` to extract and count without touching the database.
    """

    def __init__(
        self,
        config: Optional[ImporterConfig] = None,
        persister=None,
        sanitizer: Optional[XmlSanitizer] = None,
        mapping: Optional[MessageMapping] = None,
        dry_run: bool = False,
        on_progress: Optional[Callable[[dict], None]] = None,
    ):
        self.config = config or ImporterConfig.from_env()
        self.sanitizer = sanitizer or XmlSanitizer(
            size_threshold=self.config.size_threshold,
            chunk_size=self.config.chunk_size,
            escape_ampersands=self.config.escape_ampersands,
        )
        mapping = mapping or VOUCHER_MAPPING
        if mapping.payload_tag != self.config.payload_tag:
            mapping = mapping.with_payload(self.config.payload_tag)
        self.mapping = mapping
        self.mappings = (mapping, *MASTER_MAPPINGS) if self.config.import_masters else (mapping,)
        self.dry_run = dry_run
        self.on_progress = on_progress

        self._owns_persister = persister is None and not dry_run
        self.persister = persister
        if self._owns_persister:
            self.persister = BatchPersister(self.config)

        self._process = psutil.Process()
        self._warnings: dict[str, int] = {}

    def initialize_schema(self):
        """Create the target schema and tables."""
        if self.persister is None:
            raise RuntimeError("No persister configured (dry run)")
        self.persister.initialize_schema()

    def sanitize(self, input_path: Optional[str | Path] = None) -> SanitizedDocument:
        """
        Produce (or reuse) the cleaned intermediate file.

        Raises:
            SanitationError: If no strategy could produce a usable file
        """
        source = self._resolve_input(input_path)
        output = Path(self.config.sanitized_path)

        if not source.exists():
            raise SanitationError(
                SanitationErrorKind.INPUT_NOT_FOUND, f"Input file not found: {source}", input=str(source)
            )

        if (
            self.config.reuse_sanitized
            and output.exists()
            and output.stat().st_size > 0
            and output.stat().st_mtime >= source.stat().st_mtime
        ):
            logger.info(f"Reusing cleaned file {output} (newer than {source.name})")
            return SanitizedDocument(output, reused=True)

        return self.sanitizer.sanitize(source, output)

    def run(self, input_path: Optional[str | Path] = None) -> ImportRun:
        """
        Import one document.

        Never raises for stage failures: the returned ImportRun is in state
        DONE or FAILED and carries the counters either way. Any other
        exception marks the run FAILED, is logged with the summary and
        re-raised.
        """
        run = ImportRun()
        self._warnings = {}

        try:
            source = self._resolve_input(input_path)
            run.input_path = str(source)
            logger.info(f"Starting import of {source}")

            self._enter(run, RunState.SANITIZING)
            document = self.sanitize(source)
            run.sanitized_path = str(document.path)

            self._import(run, document.path)
        except SanitationError as e:
            logger.error(f"Sanitation failed: {e}")
            run.fail(e)
        except Exception as e:
            logger.error(f"Import crashed: {e!r}")
            run.fail(e)
            raise
        finally:
            self._sample_memory(run)
            run.finish()
            self._log_summary(run)

        return run

    def _resolve_input(self, input_path: Optional[str | Path]) -> Path:
        path = input_path or self.config.input_path
        if not path:
            raise SanitationError(SanitationErrorKind.INPUT_NOT_FOUND, "No input file given")
        return Path(path)

    def _import(self, run: ImportRun, path: Path) -> None:
        self._enter(run, RunState.TOKENIZING)
        tokenizer = MessageTokenizer(path, self.config.message_tag, recover=self.config.recover_xml)
        batch: list[StructuredRecord] = []

        try:
            try:
                for fragment in tokenizer:
                    self._sync_boundaries(run, tokenizer)
                    self._enter(run, RunState.EXTRACTING)
                    result = extract_message(fragment, self.mappings)

                    if result.outcome is Outcome.RECORD:
                        run.records_extracted += 1
                        if result.record.kind != self.mapping.payload_tag:
                            run.masters_extracted += 1
                        batch.append(result.record)
                        if run.records_extracted % max(self.config.progress_interval, 1) == 0:
                            self._progress(run, "extracting")
                    elif result.outcome is Outcome.SKIP:
                        run.record_skip(result.reason)
                        if result.reason is SkipReason.MISSING_IDENTIFIER:
                            self._warn(result.reason.value, f"Message {fragment.index} (line {fragment.line}): {result.detail}")
                        else:
                            logger.debug(f"Message {fragment.index} skipped: {result.detail}")
                    else:
                        run.records_failed += 1
                        self._warn(
                            result.error.kind.value,
                            f"Message {fragment.index} (line {fragment.line}) failed: {result.error} "
                            f"| {fragment.preview(120)!r}",
                        )

                    if len(batch) >= self.config.batch_size:
                        self._flush(run, batch)
                        batch = []
            except TokenizerError as e:
                logger.error(f"Stopped reading {path.name}: {e}")
                run.fail(e)

            self._sync_boundaries(run, tokenizer)
            self._enter(run, RunState.FINALIZING)
            if batch:
                self._flush(run, batch)
            if run.masters_extracted and self.persister is not None and run.state is not RunState.FAILED:
                run.hierarchy_updated = self.persister.resolve_hierarchy()
        except PersistenceError as e:
            logger.error(f"Import aborted: {e}")
            run.fail(e)

    def _flush(self, run: ImportRun, batch: list[StructuredRecord]) -> None:
        """
        Hand one batch to the persister.

        Raises:
            PersistenceError: Batch-fatal failure; the batch counts as lost
        """
        self._enter(run, RunState.BATCHING)

        if self.persister is None:
            logger.debug(f"Dry run: {len(batch)} records not persisted")
            self._enter(run, RunState.EXTRACTING)
            return

        number = run.batches_committed + 1
        try:
            result = self.persister.flush(list(batch))
        except PersistenceError as e:
            run.records_lost += len(batch)
            logger.error(f"Batch {number} rolled back, {len(batch)} records not persisted: {e}")
            raise

        run.apply_batch(result)
        for record, reason in result.failed:
            self._warn("row_constraint_violation", f"Record {record.identifier} (message {record.position}) rejected: {reason}")
        if result.duplicates:
            logger.info(f"Batch {number}: {len(result.duplicates)} records already imported")
        logger.info(f"Batch {number} committed: {result.committed} records, {result.child_rows} child rows")

        self._progress(run, "batch")
        self._enter(run, RunState.EXTRACTING)

    def _enter(self, run: ImportRun, state: RunState) -> None:
        if run.state is not RunState.FAILED:
            run.state = state

    def _sync_boundaries(self, run: ImportRun, tokenizer: MessageTokenizer) -> None:
        run.messages_seen = tokenizer.stats.boundaries_seen
        run.empty_messages = tokenizer.stats.empty_boundaries

    def _warn(self, kind: str, message: str) -> None:
        """Log the first N warnings of each kind; the rest are only counted."""
        count = self._warnings.get(kind, 0) + 1
        self._warnings[kind] = count
        limit = self.config.log_first_n
        if count <= limit:
            logger.warning(message)
        elif count == limit + 1:
            logger.warning(f"More than {limit} {kind} warnings, further ones are only counted")

    def _sample_memory(self, run: ImportRun) -> int:
        rss = self._process.memory_info().rss
        run.peak_memory = max(run.peak_memory, rss)
        return rss

    def _progress(self, run: ImportRun, stage: str) -> dict:
        rss = self._sample_memory(run)
        event = {
            "stage": stage,
            "elapsed": round(run.elapsed, 2),
            "messages": run.messages_seen,
            "processed": run.records_extracted,
            "committed": run.records_committed,
            "rate": round(run.rate, 2),
            "memory": rss,
            "skipped": run.records_skipped,
            "failed": run.records_failed + run.records_rejected,
        }
        logger.info(
            f"Progress: {event['processed']} records ({event['messages']} messages), "
            f"{event['rate']:.1f} records/s, {event['elapsed']:.1f}s elapsed, "
            f"memory {format_bytes(rss)}, skipped {event['skipped']}, failed {event['failed']}"
        )
        if self.on_progress:
            self.on_progress(event)
        return event

    def _log_summary(self, run: ImportRun) -> None:
        summary = run.summary()
        log = logger.info if run.succeeded else logger.error
        log(f"=== Import {'Complete' if run.succeeded else 'Failed'} ===")
        logger.info(f"Messages found: {summary['messages_found']} ({summary['empty_messages']} empty)")
        logger.info(
            f"Records extracted: {summary['records_extracted']}, skipped: {summary['records_skipped']}, "
            f"failed: {summary['records_failed']}"
        )
        logger.info(
            f"Records imported: {summary['records_imported']}, duplicates: {summary['records_duplicate']}, "
            f"rejected: {summary['records_rejected']}"
        )
        logger.info(f"Batches committed: {summary['batches_committed']}")
        if run.masters_extracted:
            logger.info(
                f"Masters extracted: {summary['masters_extracted']}, hierarchy paths updated: {summary['hierarchy_updated']}"
            )
        logger.info(f"Total time: {summary['total_time']}s, average {summary['average_rate']} records/s")
        logger.info(f"Peak memory: {format_bytes(summary['peak_memory'])}")
        if run.records_lost:
            logger.error(f"Records lost with rolled-back batches: {run.records_lost}")
        if run.error:
            logger.error(f"Error: {run.error}")

    def close(self):
        """Close the persister's connection if this pipeline created it."""
        if self._owns_persister and self.persister is not None:
            self.persister.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False


def run_import(
    input_path: Optional[str | Path] = None,
    config: Optional[ImporterConfig] = None,
    dry_run: bool = False,
) -> ImportRun:
    """
    Convenience function to import one document.

    Args:
        input_path: XML export to import (defaults to config.input_path)
        config: Optional config override
        dry_run: Extract and count without writing to the database

    Returns:
        The finished ImportRun
    """
    with ImportPipeline(config, dry_run=dry_run) as pipeline:
        return pipeline.run(input_path)
