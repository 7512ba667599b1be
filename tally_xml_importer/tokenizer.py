"""
Forward-only tokenizer for sanitized Tally exports.

Scans the raw bytes for top-level message boundaries (``TALLYMESSAGE`` by
default) and yields one ``MessageFragment`` per message holding the exact
byte span from its opening tag to its matching closing tag. Nothing outside
a message is parsed, so a message with broken markup inside still comes out
as a fragment and fails on its own at extraction time while the messages
after it keep flowing.

The file is read in fixed-size blocks and bytes are dropped as soon as the
scan has moved past them, so memory is bounded by the block size plus the
largest single message. Comments, CDATA sections and processing
instructions are skipped as opaque tokens; a boundary tag inside them does
not count.

``lxml`` is only used to describe the document when no message was found.
"""
from __future__ import annotations
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterator, Optional
from lxml import etree
from loguru import logger

from .errors import TokenizerError
from .models import MessageFragment

# Element names recorded for structure diagnosis when no message is found
DIAGNOSTIC_ELEMENTS = 100

DEFAULT_READ_SIZE = 1024 * 1024

# Rest of a tag after its name, up to the '>' that is not inside quotes
_TAG_END_RE = re.compile(rb"""(?:[^>"']|"[^"]*"|'[^']*')*>""")

# Opaque tokens and where they end
_SKIPPED = {
    b"<!--": b"-->",
    b"<![CDATA[": b"]]>",
    b"<?": b"?>",
}


def _local_name(tag) -> str:
    if not isinstance(tag, str):
        return ""
    return tag.split("}", 1)[-1] if "}" in tag else tag


@dataclass
class TokenizerStats:
    """Counters describing one tokenizer pass."""

    boundaries_seen: int = 0
    empty_boundaries: int = 0
    fragments_emitted: int = 0
    elements_seen: int = 0
    root_tag: Optional[str] = None
    element_frequency: dict[str, int] = field(default_factory=dict)


class MessageTokenizer:
    """
    Iterate the message fragments of one sanitized document.

    Usage:
        tokenizer = MessageTokenizer("cleaned.xml", message_tag="TALLYMESSAGE")
        for fragment in tokenizer:
            ...
        print(tokenizer.stats.boundaries_seen)

    Iterating again restarts from the beginning of the document.

    A document that ends inside an open message raises ``TokenizerError``
    after every complete message has been yielded. With ``recover=True`` the
    unterminated message is yielded as a fragment instead.
    """

    def __init__(
        self,
        path: str | Path,
        message_tag: str = "TALLYMESSAGE",
        recover: bool = False,
        chunk_size: int = DEFAULT_READ_SIZE,
    ):
        self.path = Path(path)
        self.message_tag = message_tag
        self.recover = recover
        self.chunk_size = chunk_size
        self.stats = TokenizerStats()

        tag = re.escape(message_tag.encode("utf-8"))
        self._token_re = re.compile(rb"<!--|<!\[CDATA\[|<\?|<(/?)" + tag + rb"(?=[\s/>]|\Z)")
        # Enough to hold any token prefix split over two reads
        self._lookback = max(len(message_tag) + 3, len(b"<![CDATA["))

    def __iter__(self) -> Iterator[MessageFragment]:
        return self.fragments()

    def _token_end(self, buf: bytearray, m: re.Match) -> Optional[int]:
        """Offset just past the token starting at ``m``, or None if it is not complete yet."""
        closer = _SKIPPED.get(bytes(m.group(0)))
        if closer is not None:
            i = buf.find(closer, m.end())
            return i + len(closer) if i != -1 else None
        tail = _TAG_END_RE.match(buf, m.end())
        return tail.end() if tail else None

    def fragments(self) -> Iterator[MessageFragment]:
        self.stats = TokenizerStats()
        stats = self.stats

        buf = bytearray()
        pos = 0
        depth = 0
        start: Optional[int] = None
        content_start = 0
        start_line = 0
        # Line number of the byte at ``line_pos``
        line, line_pos = 1, 0
        eof = False
        m = None

        try:
            with self.path.open("rb") as fh:
                while True:
                    m = self._token_re.search(buf, pos)
                    end = self._token_end(buf, m) if m else None

                    if end is None:
                        if eof:
                            break
                        pos = m.start() if m else max(pos, len(buf) - self._lookback)
                        keep = min(pos, start) if start is not None else pos
                        line += buf.count(b"\n", line_pos, keep)
                        line_pos = 0
                        del buf[:keep]
                        pos -= keep
                        if start is not None:
                            start -= keep
                            content_start -= keep
                        block = fh.read(self.chunk_size)
                        if block:
                            buf += block
                        else:
                            eof = True
                        continue

                    pos = end
                    slash = m.group(1)
                    if slash is None:
                        continue

                    if not slash:
                        self_closing = buf[end - 2] == 0x2F
                        if depth == 0:
                            line += buf.count(b"\n", line_pos, m.start())
                            line_pos = m.start()
                            start, content_start, start_line = m.start(), end, line
                            if self_closing:
                                self._close(buf, start, end, end, start_line)
                                start = None
                                continue
                            depth = 1
                        elif not self_closing:
                            depth += 1
                        continue

                    if depth == 0:
                        logger.debug(f"Ignoring stray </{self.message_tag}> outside any message")
                        continue
                    depth -= 1
                    if depth:
                        # Nested message tag; it stays inside the outer fragment
                        continue

                    fragment = self._close(buf, start, content_start, m.start(), start_line, end)
                    start = None
                    if fragment is not None:
                        yield fragment

        except OSError as e:
            raise TokenizerError(
                f"Cannot read {self.path.name}: {e}",
                fragments_emitted=stats.fragments_emitted,
            ) from e

        if start is None and m is not None and m.group(1) == b"":
            # The document stops inside a message's opening tag
            line += buf.count(b"\n", line_pos, m.start())
            start, start_line = m.start(), line

        if start is not None:
            yield from self._truncated(buf, start, start_line)

        if stats.boundaries_seen == 0:
            self._diagnose()
            logger.error(
                f"No {self.message_tag} elements found in {self.path.name} "
                f"(root element: {stats.root_tag}, {stats.elements_seen} elements)"
            )
            logger.info(f"Element frequency (first {DIAGNOSTIC_ELEMENTS} elements): {stats.element_frequency}")
        else:
            logger.debug(
                f"Tokenized {stats.boundaries_seen} {self.message_tag} elements "
                f"({stats.empty_boundaries} empty)"
            )

    def _close(
        self,
        buf: bytearray,
        start: int,
        content_start: int,
        content_end: int,
        line: int,
        end: Optional[int] = None,
    ) -> Optional[MessageFragment]:
        """Count one finished boundary; return its fragment unless it is empty."""
        stats = self.stats
        stats.boundaries_seen += 1
        if not buf[content_start:content_end].strip():
            stats.empty_boundaries += 1
            logger.debug(f"Empty {self.message_tag} #{stats.boundaries_seen} at line {line}")
            return None
        stats.fragments_emitted += 1
        return MessageFragment(xml=bytes(buf[start:end]), index=stats.boundaries_seen, line=line)

    def _truncated(self, buf: bytearray, start: int, line: int) -> Iterator[MessageFragment]:
        stats = self.stats
        if not self.recover:
            logger.error(f"{self.path.name} ends inside {self.message_tag} opened at line {line}")
            raise TokenizerError(
                f"Document ends inside an unterminated {self.message_tag} in {self.path.name}",
                line=line,
                fragments_emitted=stats.fragments_emitted,
            )
        logger.warning(f"{self.path.name} ends inside {self.message_tag} opened at line {line}; passing it on as is")
        stats.boundaries_seen += 1
        stats.fragments_emitted += 1
        yield MessageFragment(xml=bytes(buf[start:]), index=stats.boundaries_seen, line=line)

    def _diagnose(self) -> None:
        """Record the root element and the first element names of the document."""
        stats = self.stats
        try:
            for _, elem in etree.iterparse(
                str(self.path),
                events=("start",),
                huge_tree=True,
                recover=True,
                resolve_entities=False,
            ):
                name = _local_name(elem.tag)
                if stats.root_tag is None:
                    stats.root_tag = name
                    logger.debug(f"First XML element: {name}")
                stats.elements_seen += 1
                stats.element_frequency[name] = stats.element_frequency.get(name, 0) + 1
                if stats.elements_seen >= DIAGNOSTIC_ELEMENTS:
                    break
        except etree.XMLSyntaxError as e:
            logger.warning(f"Could not read document structure of {self.path.name}: {e}")


def tokenize(
    path: str | Path,
    message_tag: str = "TALLYMESSAGE",
    recover: bool = False,
) -> Iterator[MessageFragment]:
    """Lazily yield the message fragments of a sanitized document."""
    return MessageTokenizer(path, message_tag, recover).fragments()
