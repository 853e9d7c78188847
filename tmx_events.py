"""
TMX Stream - Structural event reader and writer

Turns the bytes of a TMX file into a lazy sequence of structural events
(open tag, empty tag, close tag, text, declaration, other) and writes them
back. Every event keeps its original bytes, so writing the events of a file
unchanged reproduces the file byte for byte.

Used by tmx_stream.py; nothing here knows about translation units.
"""

import logging
import re
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import BinaryIO, Iterator, List, Optional, Tuple

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 64 * 1024

XML_WHITESPACE = b" \t\r\n"


# ──────────────────────────────────────────────
# Errors
# ──────────────────────────────────────────────

class TMXError(Exception):
    """Base class for all errors raised while streaming TMX files."""


class ParseError(TMXError):
    """Malformed XML. `offset` is the byte position of the bad markup."""

    def __init__(self, message: str, offset: int):
        super().__init__(f"XML parse error at byte {offset}: {message}")
        self.offset = offset


class MalformedTMXError(TMXError):
    """Well-formed XML that is missing the TMX structure we need."""


class TimestampError(TMXError):
    """A creationdate attribute that is not in YYYYMMDDTHHMMSSZ form."""


# ──────────────────────────────────────────────
# Event model
# ──────────────────────────────────────────────

class EventKind(Enum):
    START = "start"
    EMPTY = "empty"
    END = "end"
    TEXT = "text"
    DECL = "decl"
    OTHER = "other"


@dataclass(frozen=True)
class Event:
    """
    One structural event.

    `raw` holds the exact bytes of the event, `name` the tag name for
    START, EMPTY and END events (empty string otherwise).
    """
    kind: EventKind
    raw: bytes
    name: str = ""

    @classmethod
    def text(cls, data: bytes) -> "Event":
        return cls(EventKind.TEXT, data)

    @classmethod
    def literal(cls, markup: str) -> "Event":
        """Text event holding already-escaped markup, written without re-escaping."""
        return cls(EventKind.TEXT, _encode(markup))

    @property
    def is_element(self) -> bool:
        return self.kind in (EventKind.START, EventKind.EMPTY, EventKind.END)

    def is_tag(self, kind: EventKind, name: str) -> bool:
        return self.kind is kind and self.name == name

    def attributes(self) -> List[Tuple[str, str]]:
        """Attribute (name, value) pairs of a START or EMPTY tag, in document order."""
        if self.kind not in (EventKind.START, EventKind.EMPTY):
            return []
        match = _START_TAG.match(self.raw)
        if match is None:
            return []
        pairs = []
        for attr in _ATTRIBUTE.finditer(match.group(2)):
            value = attr.group(2) if attr.group(2) is not None else attr.group(3)
            pairs.append((_decode(attr.group(1)), _decode(value)))
        return pairs


def get_attribute(event: Event, name: str) -> Optional[str]:
    """Return the value of the first attribute called `name`, or None."""
    for attr_name, value in event.attributes():
        if attr_name == name:
            return value
    return None


def is_xml_whitespace(data: bytes) -> bool:
    """True if `data` holds only space, tab, CR and LF bytes."""
    return not data.strip(XML_WHITESPACE)


def _decode(data: bytes) -> str:
    # surrogateescape keeps undecodable bytes recoverable via _encode()
    return data.decode("utf-8", "surrogateescape")


def _encode(text: str) -> bytes:
    return text.encode("utf-8", "surrogateescape")


# ──────────────────────────────────────────────
# Tokenizer
# ──────────────────────────────────────────────

_NAME = rb"[^\s/>!?=\"'<]+"
_ATTRIBUTES = rb"(?:\s+[^\s=/>\"'<]+\s*=\s*(?:\"[^\"<]*\"|'[^'<]*'))*"

_START_TAG = re.compile(rb"<(" + _NAME + rb")(" + _ATTRIBUTES + rb")\s*(/?)>\Z")
_END_TAG = re.compile(rb"</(" + _NAME + rb")\s*>\Z")
_ATTRIBUTE = re.compile(rb"([^\s=]+)\s*=\s*(?:\"([^\"]*)\"|'([^']*)')")

# Everything up to the closing '>' of a tag, skipping over quoted values
_TAG_BODY = re.compile(rb"(?:[^>\"']|\"[^\"]*\"|'[^']*')*>")

_XML_DECL = re.compile(rb"<\?xml[\s?]")

# (prefix, terminator, kind), longest prefix first
_DELIMITED = [
    (b"<![CDATA[", b"]]>", EventKind.OTHER),
    (b"<!--", b"-->", EventKind.OTHER),
    (b"<?", b"?>", EventKind.OTHER),
]


class EventReader:
    """
    Pull tokenizer over a binary stream.

    Iterating yields Event objects until the end of the stream. The stream
    is read in `chunk_size` pieces; only the unconsumed tail of the current
    chunk (and at most one event's worth of data) is held in memory.
    """

    def __init__(self, stream: BinaryIO, chunk_size: int = DEFAULT_CHUNK_SIZE):
        self._stream = stream
        self._chunk_size = chunk_size
        self._buffer = b""
        self._pos = 0
        self._base = 0  # absolute offset of self._buffer[0]
        self._eof = False
        self._open_elements: List[str] = []

    @property
    def offset(self) -> int:
        """Absolute byte offset of the next unread byte."""
        return self._base + self._pos

    def __iter__(self) -> Iterator[Event]:
        return self

    def __next__(self) -> Event:
        if not self._available(1):
            raise StopIteration
        if self._buffer[self._pos:self._pos + 1] != b"<":
            return self._read_text()
        return self._read_markup()

    # -- buffer management --

    def _fill(self) -> bool:
        """Read one more chunk. Returns False at end of stream."""
        if self._eof:
            return False
        chunk = self._stream.read(self._chunk_size)
        if not chunk:
            self._eof = True
            return False
        self._base += self._pos
        self._buffer = self._buffer[self._pos:] + chunk
        self._pos = 0
        return True

    def _available(self, count: int) -> bool:
        while len(self._buffer) - self._pos < count:
            if not self._fill():
                return len(self._buffer) > self._pos
        return True

    def _take(self, end: int) -> bytes:
        data = self._buffer[self._pos:end]
        self._pos = end
        return data

    # -- events --

    def _read_text(self) -> Event:
        searched = 0
        while True:
            idx = self._buffer.find(b"<", self._pos + searched)
            if idx != -1:
                return Event.text(self._take(idx))
            searched = len(self._buffer) - self._pos
            if not self._fill():
                return Event.text(self._take(len(self._buffer)))

    def _find(self, terminator: bytes, skip: int) -> int:
        """Buffer index just past `terminator`, searching `skip` bytes after the current position."""
        searched = skip
        while True:
            idx = self._buffer.find(terminator, self._pos + searched)
            if idx != -1:
                return idx + len(terminator)
            searched = max(skip, len(self._buffer) - self._pos - len(terminator) + 1)
            if not self._fill():
                raise ParseError(f"unterminated markup, expected {terminator.decode()!r}",
                                 self.offset)

    def _read_markup(self) -> Event:
        self._available(len(b"<![CDATA["))
        head = self._buffer[self._pos:self._pos + len(b"<![CDATA[")]

        for prefix, terminator, kind in _DELIMITED:
            if head.startswith(prefix):
                end = self._find(terminator, len(prefix))
                raw = self._take(end)
                if prefix == b"<?" and _XML_DECL.match(raw):
                    kind = EventKind.DECL
                return Event(kind, raw)

        if head.startswith(b"<!"):
            return Event(EventKind.OTHER, self._take(self._find_doctype_end()))

        return self._read_tag()

    def _find_doctype_end(self) -> int:
        # DOCTYPE may carry an internal subset in brackets containing '>'
        while True:
            depth = 0
            quote = None
            for idx in range(self._pos + 2, len(self._buffer)):
                char = self._buffer[idx:idx + 1]
                if quote:
                    if char == quote:
                        quote = None
                elif char in (b'"', b"'"):
                    quote = char
                elif char == b"[":
                    depth += 1
                elif char == b"]":
                    depth -= 1
                elif char == b">" and depth <= 0:
                    return idx + 1
            if not self._fill():
                raise ParseError("unterminated DOCTYPE declaration", self.offset)

    def _read_tag(self) -> Event:
        while True:
            match = _TAG_BODY.match(self._buffer, self._pos + 1)
            if match is not None:
                break
            if not self._fill():
                raise ParseError("unterminated tag", self.offset)

        start_offset = self.offset
        raw = self._take(match.end())

        if raw.startswith(b"</"):
            end = _END_TAG.match(raw)
            if end is None:
                raise ParseError(f"malformed end tag {raw[:40]!r}", start_offset)
            name = _decode(end.group(1))
            if not self._open_elements:
                raise ParseError(f"unexpected end tag </{name}>", start_offset)
            expected = self._open_elements.pop()
            if name != expected:
                raise ParseError(f"expected </{expected}>, found </{name}>", start_offset)
            return Event(EventKind.END, raw, name)

        tag = _START_TAG.match(raw)
        if tag is None:
            raise ParseError(f"malformed tag {raw[:40]!r}", start_offset)
        name = _decode(tag.group(1))
        if tag.group(3):
            return Event(EventKind.EMPTY, raw, name)
        self._open_elements.append(name)
        return Event(EventKind.START, raw, name)


# ──────────────────────────────────────────────
# Writer
# ──────────────────────────────────────────────

class EventSink:
    """Writes events, or literal text, to a binary stream."""

    def __init__(self, stream: BinaryIO):
        self._stream = stream
        self.bytes_written = 0

    def write(self, event: Event) -> None:
        self._stream.write(event.raw)
        self.bytes_written += len(event.raw)

    def write_all(self, events) -> None:
        for event in events:
            self.write(event)

    def write_text(self, text: str) -> None:
        """Write `text` as-is (no escaping)."""
        data = _encode(text)
        self._stream.write(data)
        self.bytes_written += len(data)


@contextmanager
def open_reader(path: str, chunk_size: int = DEFAULT_CHUNK_SIZE) -> Iterator[EventReader]:
    """Open a TMX file for streaming. Raises FileNotFoundError if missing."""
    logger.debug("Opening input %s", path)
    with open(path, "rb") as f:
        yield EventReader(f, chunk_size=chunk_size)


@contextmanager
def open_sink(path: str) -> Iterator[EventSink]:
    """Create (or truncate) an output file and wrap it in an EventSink."""
    logger.debug("Opening output %s", path)
    with open(path, "wb") as f:
        sink = EventSink(f)
        yield sink
    logger.debug("Wrote %d bytes to %s", sink.bytes_written, path)
