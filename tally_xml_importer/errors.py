"""
Exception types raised by the importer stages.

Each stage owns one error type. The ``kind`` attribute tells the caller
whether the failure is local to a record, fatal to a batch, or fatal to the run.
"""
from __future__ import annotations
from enum import Enum
from typing import Optional


class TallyImportError(Exception):
    """Base class for all importer errors."""

    def __init__(self, message: str, **context):
        super().__init__(message)
        self.message = message
        self.context = context


class SanitationErrorKind(str, Enum):
    INPUT_NOT_FOUND = "input_not_found"
    EMPTY_INPUT = "empty_input"
    NO_XML_START = "no_xml_start"
    CONVERSION_FAILED = "conversion_failed"
    WRITE_FAILED = "write_failed"


class SanitationError(TallyImportError):
    """Raised when raw bytes cannot be turned into a usable UTF-8 XML document."""

    def __init__(self, kind: SanitationErrorKind, message: str, **context):
        super().__init__(message, **context)
        self.kind = kind

    def __str__(self) -> str:
        return f"{self.kind.value}: {self.message}"


class TokenizerError(TallyImportError):
    """Raised when the sanitized document stream itself stops being parseable."""

    def __init__(
        self,
        message: str,
        line: Optional[int] = None,
        column: Optional[int] = None,
        fragments_emitted: int = 0,
    ):
        super().__init__(message, line=line, column=column, fragments_emitted=fragments_emitted)
        self.line = line
        self.column = column
        self.fragments_emitted = fragments_emitted

    def __str__(self) -> str:
        where = f" at line {self.line}, column {self.column}" if self.line else ""
        return f"{self.message}{where} (after {self.fragments_emitted} messages)"


class ExtractionErrorKind(str, Enum):
    MALFORMED = "malformed"
    MISSING_IDENTIFIER = "missing_identifier"
    INVALID_FIELD = "invalid_field"


class ExtractionError(TallyImportError):
    """Record-local failure while mapping one message fragment."""

    def __init__(
        self,
        kind: ExtractionErrorKind,
        message: str,
        identifier: Optional[str] = None,
        position: Optional[int] = None,
    ):
        super().__init__(message, identifier=identifier, position=position)
        self.kind = kind
        self.identifier = identifier
        self.position = position

    def __str__(self) -> str:
        return f"{self.kind.value}: {self.message}"


class PersistenceErrorKind(str, Enum):
    ROW_CONSTRAINT_VIOLATION = "row_constraint_violation"
    CONNECTION_LOST = "connection_lost"
    COMMIT_FAILED = "commit_failed"
    SCHEMA_ERROR = "schema_error"

    @property
    def is_batch_fatal(self) -> bool:
        return self is not PersistenceErrorKind.ROW_CONSTRAINT_VIOLATION


class PersistenceError(TallyImportError):
    """Failure talking to the target store."""

    def __init__(
        self,
        kind: PersistenceErrorKind,
        message: str,
        identifier: Optional[str] = None,
    ):
        super().__init__(message, identifier=identifier)
        self.kind = kind
        self.identifier = identifier

    def __str__(self) -> str:
        return f"{self.kind.value}: {self.message}"
