"""
Byte-level repair of Tally XML exports.

Tally exports routinely contain things no XML parser accepts:
- UTF-16 output (with or without a BOM) whose declaration still says UTF-16
- raw control characters (NUL, 0x04, ...) inside text nodes
- numeric character references to control characters (``&#4;``, ``&#x0004``)
- bare ampersands in ledger names

The sanitizer turns such a file into UTF-8 bytes that ``lxml`` can tokenize.
Small files are repaired in memory; files above the size threshold (or files
the in-memory pass could not handle) are repaired in fixed-size chunks and
written incrementally, so memory stays bounded by the chunk size.

All character rules live in one compiled pattern and are applied in a single
pass over each decoded chunk. A chunk that ends inside a possible ``&...``
reference holds that tail back until the next chunk arrives. CDATA sections and
comments keep their ampersands and references as written.
"""
from __future__ import annotations
import codecs
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import BinaryIO, Optional
from loguru import logger

from .errors import SanitationError, SanitationErrorKind

MB = 1024 * 1024
DEFAULT_SIZE_THRESHOLD = 500 * MB
DEFAULT_CHUNK_SIZE = 10 * MB
PROGRESS_EVERY = 10 * MB

# Bytes needed before the encoding can be sniffed
SNIFF_BYTES = 4

# How far into the document we look for the first "<" before giving up
XML_START_SEARCH_LIMIT = 50_000

BOMS = (
    (codecs.BOM_UTF8, "utf-8"),
    (codecs.BOM_UTF16_LE, "utf-16-le"),
    (codecs.BOM_UTF16_BE, "utf-16-be"),
)

# Code points XML 1.0 forbids even as character references
_FORBIDDEN_C0 = frozenset(range(0x00, 0x09)) | {0x0B, 0x0C} | frozenset(range(0x0E, 0x20))

_SCAN_RE = re.compile(
    r"(?P<verbatim><!\[CDATA\[.*?\]\]>|<!--.*?-->)"
    r"|(?P<open>(?:<!\[CDATA\[|<!--).*)"
    r"|(?P<ctrl>[\x00-\x08\x0b\x0c\x0e-\x1f])"
    r"|(?P<nonchar>[\ufffe\uffff])"
    r"|&#(?:[xX](?P<hex>[0-9a-fA-F]+)|(?P<dec>[0-9]+))(?P<semi>;?)"
    r"|(?P<amp>&(?!(?:amp|lt|gt|apos|quot);))",
    re.DOTALL,
)

# Characters still dropped inside CDATA sections and comments
_VERBATIM_RE = re.compile(r"(?P<ctrl>[\x00-\x08\x0b\x0c\x0e-\x1f])|[\ufffe\uffff]")

_OPENERS = ("<![CDATA[", "<!--")

# A chunk tail that may still grow into a reference or entity
_PARTIAL_REF_RE = re.compile(r"&(?:#(?:[xX][0-9a-fA-F]*|[0-9]*)|[A-Za-z]{0,4})?")

_DECL_ENCODING_RE = re.compile(
    r"""^(<\?xml[^>]*?\bencoding\s*=\s*)(["'])[^"']*\2"""
)


def detect_encoding(head: bytes) -> tuple[str, int]:
    """
    Detect the source encoding from the first bytes of a file.

    Returns:
        Tuple of (python codec name, BOM length in bytes)
    """
    for bom, codec in BOMS:
        if head.startswith(bom):
            return codec, len(bom)

    # BOM-less UTF-16 still shows up as "<\0" or "\0<" at the start
    if head[:2] == b"<\x00":
        return "utf-16-le", 0
    if head[:2] == b"\x00<":
        return "utf-16-be", 0

    return "utf-8", 0


def _is_forbidden_ref(code_point: int) -> bool:
    return (
        code_point in _FORBIDDEN_C0
        or 0xD800 <= code_point <= 0xDFFF
        or code_point in (0xFFFE, 0xFFFF)
        or code_point > 0x10FFFF
    )


def describe_head(raw: bytes, sample: int = 1000) -> dict:
    """
    Summarize the first bytes of a file for diagnostics.

    Reports the NUL count and printable ratio of the first KB and a preview
    with non-printable bytes shown as ``[hex]``.
    """
    head = raw[:sample]
    if not head:
        return {"null_bytes": 0, "printable_ratio": 0.0, "is_likely_binary": False, "preview": ""}

    printable = sum(1 for b in head if 0x20 <= b < 0x7F or b in (0x09, 0x0A, 0x0D))
    ratio = printable / len(head)
    nulls = head.count(0)

    preview = []
    for b in raw[:200]:
        if 0x20 <= b < 0x7F or b in (0x09, 0x0A, 0x0D):
            preview.append(chr(b))
        else:
            preview.append(f"[{b:02x}]")

    return {
        "null_bytes": nulls,
        "printable_ratio": round(ratio * 100, 2),
        "is_likely_binary": ratio < 0.7 or nulls > 100,
        "preview": "".join(preview),
    }


@dataclass
class SanitizeReport:
    """What the sanitizer did to one document."""

    source: Optional[str] = None
    output: Optional[str] = None
    encoding: str = "utf-8"
    mode: str = "memory"
    bytes_in: int = 0
    bytes_out: int = 0
    chunks: int = 0
    bom_removed: bool = False
    leading_trimmed: int = 0
    control_chars_removed: int = 0
    char_refs_removed: int = 0
    char_refs_terminated: int = 0
    noncharacters_removed: int = 0
    ampersands_escaped: int = 0
    declaration_rewritten: bool = False
    lossy: bool = False

    @property
    def changes(self) -> int:
        return (
            self.control_chars_removed
            + self.char_refs_removed
            + self.char_refs_terminated
            + self.noncharacters_removed
            + self.ampersands_escaped
            + self.leading_trimmed
        )


@dataclass
class SanitizedDocument:
    """A UTF-8, control-character-free XML file ready for tokenizing."""

    path: Path
    report: SanitizeReport = field(default_factory=SanitizeReport)
    reused: bool = False


class CharacterScrubber:
    """
    Single-pass scanner applying the character rules to decoded text.

    Feed text chunk by chunk; a trailing partial reference, or a CDATA
    section or comment that has not closed yet, is held back and prepended
    to the next chunk. Inside CDATA and comments only raw control characters
    and noncharacters are dropped; references and ampersands there are text.
    Counters accumulate on ``report``.
    """

    def __init__(self, report: Optional[SanitizeReport] = None, escape_ampersands: bool = True):
        self.report = report or SanitizeReport()
        self.escape_ampersands = escape_ampersands
        self._pending = ""

    def _drop_verbatim(self, m: re.Match) -> str:
        if m.group("ctrl") is not None:
            self.report.control_chars_removed += 1
        else:
            self.report.noncharacters_removed += 1
        return ""

    def _replace(self, m: re.Match) -> str:
        span = m.group("verbatim")
        if span is None:
            span = m.group("open")
        if span is not None:
            return _VERBATIM_RE.sub(self._drop_verbatim, span)
        if m.group("ctrl") is not None:
            self.report.control_chars_removed += 1
            return ""
        if m.group("nonchar") is not None:
            self.report.noncharacters_removed += 1
            return ""
        if m.group("amp") is not None:
            if not self.escape_ampersands:
                return "&"
            self.report.ampersands_escaped += 1
            return "&amp;"

        digits = m.group("hex")
        code_point = int(digits, 16) if digits is not None else int(m.group("dec"))
        if _is_forbidden_ref(code_point):
            self.report.char_refs_removed += 1
            return ""
        if not m.group("semi"):
            self.report.char_refs_terminated += 1
            return m.group(0) + ";"
        return m.group(0)

    def _hold_tail(self, buf: str) -> str:
        """Move a tail that may still grow into a reference or opener to ``_pending``."""
        cut = buf.rfind("&")
        if cut != -1 and _PARTIAL_REF_RE.fullmatch(buf, cut):
            self._pending = buf[cut:]
            buf = buf[:cut]
        cut = buf.rfind("<")
        if cut != -1 and any(opener.startswith(buf[cut:]) for opener in _OPENERS):
            self._pending = buf[cut:] + self._pending
            buf = buf[:cut]
        return buf

    def feed(self, text: str, final: bool = False) -> str:
        buf = self._pending + text if self._pending else text
        self._pending = ""
        if not final:
            buf = self._hold_tail(buf)

        out = []
        pos = 0
        end = len(buf)
        for m in _SCAN_RE.finditer(buf):
            if m.group("open") is not None and not final:
                self._pending = buf[m.start():] + self._pending
                end = m.start()
                break
            out.append(buf[pos:m.start()])
            out.append(self._replace(m))
            pos = m.end()
        out.append(buf[pos:end])
        return "".join(out)

    def flush(self) -> str:
        return self.feed("", final=True)


def sanitize_xml(xml_text: str, escape_ampersands: bool = True) -> str:
    """Apply the character rules to an in-memory XML string."""
    if not xml_text:
        return xml_text
    return CharacterScrubber(escape_ampersands=escape_ampersands).feed(xml_text, final=True)


class DocumentTranscoder:
    """
    Incremental bytes -> sanitized UTF-8 bytes converter.

    Handles BOM sniffing, decoding, character scrubbing, locating the XML
    start, rewriting the declared encoding and the final UTF-8 check.
    """

    def __init__(
        self,
        report: Optional[SanitizeReport] = None,
        strict: bool = False,
        escape_ampersands: bool = True,
    ):
        self.report = report or SanitizeReport()
        self.strict = strict
        self.scrubber = CharacterScrubber(self.report, escape_ampersands=escape_ampersands)
        self._decoder = None
        self._head = b""
        self._started = False
        self._searched = 0
        self._held = ""

    @property
    def encoding(self) -> Optional[str]:
        return self.report.encoding if self._decoder is not None else None

    def _init_decoder(self, head: bytes) -> bytes:
        codec, bom_len = detect_encoding(head)
        self.report.encoding = codec
        self.report.bom_removed = bom_len > 0
        errors = "strict" if self.strict else "replace"
        self._decoder = codecs.getincrementaldecoder(codec)(errors=errors)
        if bom_len:
            logger.debug(f"Removed {codec} BOM ({bom_len} bytes)")
        elif codec != "utf-8":
            logger.warning(f"No BOM but content looks like {codec}")
        return head[bom_len:]

    def _find_start(self, text: str, final: bool) -> str:
        """Drop everything before the first '<'; raise if none shows up in time."""
        if self._held:
            text, self._held = self._held + text, ""

        pos = text.find("<", 0, max(XML_START_SEARCH_LIMIT - self._searched, 0))
        if pos == -1:
            self._searched += len(text)
            self.report.leading_trimmed += len(text)
            if self._searched >= XML_START_SEARCH_LIMIT or final:
                raise SanitationError(
                    SanitationErrorKind.NO_XML_START,
                    f"No '<' found in the first {self._searched} characters - file may not be XML",
                    searched=self._searched,
                )
            return ""

        if pos > 0:
            logger.info(f"Trimming {pos + self._searched} characters of leading non-XML content")
            self.report.leading_trimmed += pos
        text = text[pos:]

        # Wait for the whole declaration before rewriting it
        if not final and "?>" not in text and "<?xml".startswith(text[:5]) and len(text) < XML_START_SEARCH_LIMIT:
            self._held = text
            return ""
        self._started = True

        # Output is always UTF-8, whatever the declaration claimed
        decl = _DECL_ENCODING_RE.match(text)
        if decl is not None:
            declared = text[decl.end(2):decl.end() - 1]
            if declared.lower().replace("-", "") != "utf8":
                text = f"{decl.group(1)}{decl.group(2)}UTF-8{decl.group(2)}{text[decl.end():]}"
                self.report.declaration_rewritten = True
                logger.debug(f"Rewrote XML declaration encoding {declared!r} to UTF-8")
        elif not text.startswith("<?xml"):
            logger.warning("XML declaration not found at document start")
        return text

    def _encode(self, text: str) -> bytes:
        try:
            return text.encode("utf-8")
        except UnicodeEncodeError:
            # Lone surrogates survived decoding; force a lossy re-encode
            if not self.report.lossy:
                logger.warning("Invalid UTF-8 detected after cleaning, forcing lossy conversion")
            self.report.lossy = True
            return text.encode("utf-8", errors="replace")

    def feed(self, data: bytes, final: bool = False) -> bytes:
        if self._decoder is None:
            # A BOM may arrive split over several reads
            self._head += data
            if len(self._head) < SNIFF_BYTES and not final:
                return b""
            data, self._head = self._init_decoder(self._head), b""

        try:
            text = self._decoder.decode(data, final=final)
        except UnicodeDecodeError as e:
            raise SanitationError(
                SanitationErrorKind.CONVERSION_FAILED,
                f"Cannot decode input as {self.report.encoding}: {e}",
                encoding=self.report.encoding,
                position=e.start,
            ) from e

        text = self.scrubber.feed(text, final=final)
        if not self._started:
            text = self._find_start(text, final)

        out = self._encode(text) if text else b""
        self.report.bytes_out += len(out)
        return out


def _write_atomically(path: Path, payload: bytes) -> None:
    part = path.with_name(path.name + ".part")
    try:
        part.write_bytes(payload)
        os.replace(part, path)
    except OSError as e:
        part.unlink(missing_ok=True)
        raise SanitationError(
            SanitationErrorKind.WRITE_FAILED,
            f"Failed to write cleaned XML to {path}: {e}",
            output=str(path),
        ) from e


def validate_output(path: Path) -> None:
    """Check a written file is non-empty and starts like XML."""
    if not path.exists() or path.stat().st_size == 0:
        raise SanitationError(
            SanitationErrorKind.WRITE_FAILED,
            f"Cleaned file is missing or empty: {path}",
            output=str(path),
        )
    with path.open("rb") as fh:
        first = fh.read(100).lstrip()
    if not first.startswith(b"<"):
        raise SanitationError(
            SanitationErrorKind.NO_XML_START,
            f"Cleaned file does not start with '<': {first[:50]!r}",
            output=str(path),
        )


def sanitize_bytes(
    raw: bytes,
    strict: bool = True,
    escape_ampersands: bool = True,
) -> tuple[bytes, SanitizeReport]:
    """
    Sanitize a whole document held in memory.

    Args:
        raw: Raw file content
        strict: Fail with CONVERSION_FAILED on undecodable bytes instead of replacing them
        escape_ampersands: Escape bare '&' characters

    Returns:
        Tuple of (sanitized UTF-8 bytes, report)
    """
    if not raw or not raw.strip():
        raise SanitationError(SanitationErrorKind.EMPTY_INPUT, "Input is empty")

    report = SanitizeReport(mode="memory", bytes_in=len(raw), chunks=1)
    transcoder = DocumentTranscoder(report, strict=strict, escape_ampersands=escape_ampersands)
    clean = transcoder.feed(raw, final=True)

    if not clean.strip():
        raise SanitationError(
            SanitationErrorKind.EMPTY_INPUT,
            "Cleaned content is empty - cleaning may have removed everything",
        )

    # Never trust a single pass: the bytes must round-trip as UTF-8
    try:
        clean.decode("utf-8")
    except UnicodeDecodeError:
        logger.warning("Cleaned output is not valid UTF-8, forcing lossy conversion")
        report.lossy = True
        clean = clean.decode("utf-8", errors="replace").encode("utf-8")

    trimmed = clean.lstrip()
    if not (trimmed.startswith(b"<?xml") or trimmed.startswith(b"<")):
        raise SanitationError(SanitationErrorKind.NO_XML_START, "Cleaned content does not start with '<'")

    report.bytes_out = len(clean)
    return clean, report


class XmlSanitizer:
    """
    Chooses and runs a sanitation strategy for one file.

    Usage:
        sanitizer = XmlSanitizer(size_threshold=500 * MB)
        document = sanitizer.sanitize("Transactions.xml", "cleaned.xml")
    """

    def __init__(
        self,
        size_threshold: int = DEFAULT_SIZE_THRESHOLD,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        escape_ampersands: bool = True,
    ):
        self.size_threshold = size_threshold
        self.chunk_size = chunk_size
        self.escape_ampersands = escape_ampersands

    def sanitize(self, source: str | Path, output: str | Path) -> SanitizedDocument:
        """
        Sanitize ``source`` into ``output``.

        Files at or below the size threshold are tried in memory first; any
        SanitationError (or MemoryError) there falls back to chunked streaming.
        """
        source, output = Path(source), Path(output)
        if not source.exists():
            raise SanitationError(
                SanitationErrorKind.INPUT_NOT_FOUND, f"Input file not found: {source}", input=str(source)
            )

        size = source.stat().st_size
        logger.info(f"Cleaning {source} ({format_bytes(size)}) -> {output}")

        strategies = []
        if size <= self.size_threshold:
            strategies.append(("memory", self.sanitize_in_memory))
        else:
            logger.info(f"File exceeds {format_bytes(self.size_threshold)}, using streaming mode")
        strategies.append(("chunked", self.sanitize_streaming))

        last_error: Optional[SanitationError] = None
        for name, strategy in strategies:
            try:
                report = strategy(source, output)
                logger.info(
                    f"Clean XML saved ({name}): {format_bytes(report.bytes_out)}, "
                    f"encoding={report.encoding}, changes={report.changes}"
                )
                return SanitizedDocument(output, report)
            except SanitationError as e:
                logger.warning(f"{name} cleaning failed: {e}")
                last_error = e
            except MemoryError:
                logger.warning(f"{name} cleaning ran out of memory")
                last_error = SanitationError(
                    SanitationErrorKind.CONVERSION_FAILED,
                    "Out of memory while cleaning in memory",
                    input=str(source),
                )

        assert last_error is not None
        logger.error(f"All cleaning strategies failed for {source}: {last_error}")
        raise last_error

    def sanitize_in_memory(self, source: Path, output: Path) -> SanitizeReport:
        """Read the whole file, repair it, write it in one go."""
        raw = source.read_bytes()
        info = describe_head(raw)
        logger.debug(f"File analysis: {info}")
        if info["is_likely_binary"]:
            logger.warning(
                f"File looks binary or UTF-16 ({info['printable_ratio']}% printable, "
                f"{info['null_bytes']} NUL bytes in first KB)"
            )

        clean, report = sanitize_bytes(raw, strict=True, escape_ampersands=self.escape_ampersands)
        del raw
        report.source, report.output = str(source), str(output)

        _write_atomically(output, clean)
        validate_output(output)
        return report

    def sanitize_streaming(self, source: Path, output: Path) -> SanitizeReport:
        """Repair the file chunk by chunk, writing output as it goes."""
        report = SanitizeReport(source=str(source), output=str(output), mode="chunked")
        transcoder = DocumentTranscoder(report, strict=False, escape_ampersands=self.escape_ampersands)
        total = source.stat().st_size
        part = output.with_name(output.name + ".part")

        try:
            with source.open("rb") as src:
                try:
                    dst = part.open("wb")
                except OSError as e:
                    raise SanitationError(
                        SanitationErrorKind.WRITE_FAILED,
                        f"Cannot create output file {part}: {e}",
                        output=str(output),
                    ) from e
                with dst:
                    self._stream(src, dst, transcoder, report, total)
            os.replace(part, output)
        except OSError as e:
            part.unlink(missing_ok=True)
            raise SanitationError(
                SanitationErrorKind.WRITE_FAILED,
                f"I/O error while streaming {source}: {e}",
                chunk=report.chunks,
                processed=report.bytes_in,
            ) from e
        except SanitationError:
            part.unlink(missing_ok=True)
            raise

        if report.bytes_out == 0:
            raise SanitationError(SanitationErrorKind.EMPTY_INPUT, f"Nothing left after cleaning {source}")

        validate_output(output)
        logger.info(f"Streaming processing completed: {report.chunks} chunks, {format_bytes(report.bytes_in)}")
        return report

    def _stream(
        self,
        src: BinaryIO,
        dst: BinaryIO,
        transcoder: DocumentTranscoder,
        report: SanitizeReport,
        total: int,
    ) -> None:
        last_progress = 0
        while True:
            chunk = src.read(self.chunk_size)
            if not chunk:
                break

            if report.chunks == 0:
                info = describe_head(chunk)
                logger.debug(f"File analysis: {info}")
                if not chunk.strip():
                    continue

            # UTF-16 chunks must end on a code unit boundary
            codec = transcoder.encoding or detect_encoding(chunk)[0]
            if codec.startswith("utf-16") and len(chunk) % 2:
                chunk += src.read(1)

            report.chunks += 1
            report.bytes_in += len(chunk)
            out = transcoder.feed(chunk)
            if out:
                dst.write(out)

            if report.bytes_in - last_progress >= PROGRESS_EVERY:
                percent = report.bytes_in / total * 100 if total else 0.0
                logger.info(
                    f"Progress: {percent:.1f}% ({format_bytes(report.bytes_in)} / {format_bytes(total)})"
                )
                last_progress = report.bytes_in

        if report.chunks == 0:
            raise SanitationError(SanitationErrorKind.EMPTY_INPUT, "Input is empty")

        tail = transcoder.feed(b"", final=True)
        if tail:
            dst.write(tail)


def sanitize(
    source: str | Path,
    output: str | Path,
    size_threshold: int = DEFAULT_SIZE_THRESHOLD,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    escape_ampersands: bool = True,
) -> SanitizedDocument:
    """Convenience wrapper around XmlSanitizer.sanitize."""
    return XmlSanitizer(size_threshold, chunk_size, escape_ampersands).sanitize(source, output)


def format_bytes(size: float, precision: int = 2) -> str:
    """Format bytes to human readable form."""
    for unit in ("B", "KB", "MB", "GB"):
        if abs(size) < 1024:
            return f"{round(size, precision)} {unit}"
        size /= 1024
    return f"{round(size, precision)} TB"
