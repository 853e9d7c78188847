#!/usr/bin/env python3
"""
TMX Stream - Streaming Trim, Merge and Deduplication for TMX Files

Processes Translation Memory eXchange files event by event, so files far
larger than memory can be trimmed, merged or deduplicated.

Usage:
  python3 tmx_stream.py trim in.tmx out.tmx 1000               # Drop the first 1000 TUs
  python3 tmx_stream.py concat out.tmx false a.tmx b.tmx        # Merge bodies of a.tmx, b.tmx
  python3 tmx_stream.py concat_dir /path/to/dir out.tmx true    # Merge every .tmx in a directory
  python3 tmx_stream.py filter in.tmx out.tmx false false false false
                                                                # Remove duplicate TUs

Features:
- Trim: drop the first N translation units
- Concat: merge the <body> of several files into the first file's skeleton,
  optionally unprotecting <t5:n n="..."/> placeholders
- Filter: collapse duplicate TUs (same source text, author, document and
  context), keeping the most recent one, output sorted by creation date
"""

import argparse
import glob as globmod
import hashlib
import logging
import os
import struct
import sys
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

from tmx_events import (
    Event,
    EventKind,
    EventReader,
    EventSink,
    MalformedTMXError,
    TimestampError,
    TMXError,
    get_attribute,
    is_xml_whitespace,
    open_reader,
    open_sink,
)

logger = logging.getLogger(__name__)

TU_TAG = 'tu'
TUV_TAG = 'tuv'
SEG_TAG = 'seg'
PROP_TAG = 'prop'
BODY_TAG = 'body'
PLACEHOLDER_TAG = 't5:n'

AUTHOR_ATTR = 'creationid'
DATE_ATTR = 'creationdate'
PROP_TYPE_ATTR = 'type'
PLACEHOLDER_ATTR = 'n'

DOCNAME_PROP = 'tmgr:docname'
CONTEXT_PROP = 'tmgr:context'

TIMESTAMP_FORMAT = '%Y%m%dT%H%M%S'
MISSING_CONTEXT = b'-'

CONCAT_CLOSING = '</body>\n</tmx>\n'
FILTER_CLOSING = '\n</body>\n</tmx>\n'
UNIT_SEPARATOR = Event.text(b'\n')


def _check_input(path: str) -> None:
    if not os.path.isfile(path):
        raise FileNotFoundError(f"File not found: {path}")


# ──────────────────────────────────────────────
# Operation 1: Trim
# ──────────────────────────────────────────────

class TUTrimmer:
    """
    Drops the first `count` translation units of a document.

    The whitespace right after a dropped unit goes with it, so trimmed
    bodies don't fill up with blank lines.
    """

    def __init__(self, sink: EventSink, count: int):
        self.sink = sink
        self.count = count
        self.units_seen = 0
        self.inside_tu = False
        self.just_skipped_tu = False

    def _skipping(self) -> bool:
        return self.units_seen <= self.count

    def _unit_boundary(self, event: Event) -> None:
        if self._skipping():
            self.just_skipped_tu = True
        else:
            self.sink.write(event)
            self.just_skipped_tu = False

    def feed(self, event: Event) -> None:
        if event.is_tag(EventKind.START, TU_TAG):
            self.inside_tu = True
            self.units_seen += 1
            if self.units_seen == self.count:
                logger.debug("Skipped %d units, copying the rest", self.count)
            self._unit_boundary(event)

        elif event.is_tag(EventKind.EMPTY, TU_TAG):
            self.units_seen += 1
            self._unit_boundary(event)

        elif event.is_tag(EventKind.END, TU_TAG):
            self._unit_boundary(event)
            self.inside_tu = False

        elif (event.kind is EventKind.TEXT and self.just_skipped_tu
              and is_xml_whitespace(event.raw)):
            self.just_skipped_tu = False

        elif not (self.inside_tu and self._skipping()):
            self.sink.write(event)
            self.just_skipped_tu = False

    def stats(self) -> Dict:
        skipped = min(self.count, self.units_seen)
        return {
            'total_units': self.units_seen,
            'skipped_count': skipped,
            'kept_count': self.units_seen - skipped,
        }


def trim(input_path: str, output_path: str, count: int) -> Dict:
    """Copy `input_path` to `output_path` without its first `count` TUs."""
    if count < 0:
        raise ValueError(f"Unit count must not be negative: {count}")
    _check_input(input_path)

    with open_reader(input_path) as reader, open_sink(output_path) as sink:
        trimmer = TUTrimmer(sink, count)
        for event in reader:
            trimmer.feed(event)

    return trimmer.stats()


# ──────────────────────────────────────────────
# Operation 2: Concatenate
# ──────────────────────────────────────────────

class TUConcatenator:
    """
    Merges the bodies of several documents into the skeleton of the first.

    The first document is copied up to its </body>; later documents only
    contribute what is inside their <body>. finish() closes the result.
    """

    def __init__(self, sink: EventSink, unprotect: bool = False):
        self.sink = sink
        self.unprotect = unprotect
        self.files_merged = 0
        self.units_written = 0
        self.placeholders_unprotected = 0
        self.just_skipped_node = False

    def _write_placeholder(self, event: Event) -> None:
        value = get_attribute(event, PLACEHOLDER_ATTR) if self.unprotect else None
        if value is None:
            self.sink.write(event)
        else:
            self.sink.write(Event.literal(value))
            self.placeholders_unprotected += 1

    def _copy_body(self, reader: EventReader, source: str) -> None:
        for event in reader:
            if event.is_tag(EventKind.END, BODY_TAG):
                return

            if self.just_skipped_node:
                self.just_skipped_node = False
                if event.kind is EventKind.TEXT and is_xml_whitespace(event.raw):
                    continue

            if event.is_tag(EventKind.EMPTY, PLACEHOLDER_TAG):
                self._write_placeholder(event)
                continue
            if event.is_tag(EventKind.START, TU_TAG) or event.is_tag(EventKind.EMPTY, TU_TAG):
                self.units_written += 1
            self.sink.write(event)

        raise MalformedTMXError(f"Malformed TMX: <body> not closed in {source}")

    def add_first(self, reader: EventReader, source: str) -> bool:
        """
        Copy the first document up to (not including) </body>.

        Returns False if its body is self-closing: the document was copied
        whole and there is nothing to merge into.
        """
        for event in reader:
            if event.is_tag(EventKind.START, BODY_TAG):
                self.sink.write(event)
                break
            if event.is_tag(EventKind.EMPTY, BODY_TAG):
                self.sink.write(event)
                self.sink.write_all(reader)
                self.files_merged += 1
                return False
            self.sink.write(event)
        else:
            raise MalformedTMXError(f"Malformed TMX: <body> not found in {source}")

        self._copy_body(reader, source)
        self.files_merged += 1
        return True

    def add_next(self, reader: EventReader, source: str) -> None:
        """Append the body content of a further document."""
        for event in reader:
            if event.is_tag(EventKind.START, BODY_TAG):
                break
            if event.is_tag(EventKind.EMPTY, BODY_TAG):
                logger.debug("Empty body in %s, nothing to merge", source)
                self.files_merged += 1
                return
        else:
            raise MalformedTMXError(f"Malformed TMX: <body> not found in {source}")

        self.just_skipped_node = True
        self._copy_body(reader, source)
        self.files_merged += 1

    def finish(self) -> None:
        self.sink.write_text(CONCAT_CLOSING)

    def stats(self) -> Dict:
        return {
            'files_merged': self.files_merged,
            'units_written': self.units_written,
            'placeholders_unprotected': self.placeholders_unprotected,
        }


def concat(input_paths: List[str], output_path: str, unprotect: bool = False) -> Dict:
    """Merge the TUs of all `input_paths`, in order, into `output_path`."""
    if not input_paths:
        raise MalformedTMXError("No input files provided")
    for path in input_paths:
        _check_input(path)

    with open_sink(output_path) as sink:
        merger = TUConcatenator(sink, unprotect=unprotect)

        first, rest = input_paths[0], input_paths[1:]
        with open_reader(first) as reader:
            merging = merger.add_first(reader, first)

        if not merging:
            if rest:
                logger.warning("%s has an empty <body/>; %d remaining file(s) not merged",
                               first, len(rest))
        else:
            for path in rest:
                logger.debug("Merging %s", path)
                with open_reader(path) as reader:
                    merger.add_next(reader, path)
            merger.finish()

    return merger.stats()


def _find_tmx_files(directory: str) -> List[str]:
    """Find all .tmx files in a directory (non-recursive)."""
    pattern = os.path.join(directory, '*.tmx')
    # Also check .TMX (case-insensitive on case-sensitive filesystems)
    files = globmod.glob(pattern)
    files += [f for f in globmod.glob(os.path.join(directory, '*.TMX')) if f not in files]
    files = [f for f in files if os.path.isfile(f)]
    files.sort()
    return files


def concat_dir(input_dir: str, output_path: str, unprotect: bool = False) -> Dict:
    """Merge every .tmx file of `input_dir` into `output_path`."""
    if not os.path.isdir(input_dir):
        raise NotADirectoryError(f"Not a directory: {input_dir}")

    tmx_files = _find_tmx_files(input_dir)
    if not tmx_files:
        raise MalformedTMXError(f"No .tmx files found in: {input_dir}")

    # Output inside the input directory must not be merged into itself
    output_abs = os.path.abspath(output_path)
    tmx_files = [f for f in tmx_files if os.path.abspath(f) != output_abs]
    if not tmx_files:
        raise MalformedTMXError(f"No .tmx files found in: {input_dir}")

    logger.debug("Found %d TMX files in %s", len(tmx_files), input_dir)
    return concat(tmx_files, output_path, unprotect=unprotect)


# ──────────────────────────────────────────────
# Operation 3: Remove duplicates
# ──────────────────────────────────────────────

@dataclass
class FilterOptions:
    """Which fields take part in the duplicate key."""
    skip_author: bool = False
    skip_document: bool = False
    skip_context: bool = False
    keep_diff_targets: bool = False
    strict_timestamps: bool = True


@dataclass
class RetainedUnit:
    timestamp: int
    content: List[Event]


def parse_timestamp(value: Optional[str]) -> int:
    """
    Convert a TMX date (YYYYMMDDTHHMMSSZ, UTC) to epoch seconds.
    Missing dates count as 0. Only the first 15 characters are read.
    """
    if not value:
        return 0
    try:
        moment = datetime.strptime(value[:15], TIMESTAMP_FORMAT)
    except ValueError:
        raise TimestampError(f"Invalid creationdate: {value!r}") from None
    return int(moment.replace(tzinfo=timezone.utc).timestamp())


def _hash_token(digest, kind: bytes, value: Optional[bytes]) -> None:
    # Tokens are typed and length-prefixed; -1 marks a missing value
    if value is None:
        digest.update(kind + struct.pack('>q', -1))
    else:
        digest.update(kind + struct.pack('>q', len(value)) + value)


def _hash_segment(digest, prefix: bytes, events: List[Event]) -> None:
    for event in events:
        if event.is_element:
            _hash_token(digest, prefix + b'N', event.name.encode('utf-8', 'surrogateescape'))
        else:
            _hash_token(digest, prefix + b'T', event.raw)


class TUDedupFilter:
    """
    Collapses duplicate translation units.

    Two units are duplicates when their source segments match and so do
    the author, document name and context (each can be left out of the
    comparison). Of each group the unit with the latest creationdate is
    kept; ties keep the one seen first. Nothing is written until the whole
    body has been read, because survivors are emitted sorted by date.

    The source language is taken from the first <tuv> of the document.
    """

    def __init__(self, options: Optional[FilterOptions] = None):
        self.options = options or FilterOptions()
        self.source_lang: Optional[str] = None
        self.retained: Dict[bytes, RetainedUnit] = {}

        self.total_units = 0
        self.replaced_count = 0
        self.discarded_count = 0
        self.empty_units = 0

        self.inside_tu = False
        self._reset_unit()

    def _reset_unit(self) -> None:
        self.inside_document_prop = False
        self.inside_context_prop = False
        self.inside_tuv = False
        self.inside_source_tuv = False
        self.inside_source_seg = False
        self.inside_target_seg = False

        self.capture: List[Event] = []
        self.source_content: List[Event] = []
        self.target_content: List[Event] = []

        self.author: Optional[str] = None
        self.date: Optional[str] = None
        self.document: Optional[bytes] = None
        self.context: Optional[bytes] = None

    # -- per-event state machine --

    def feed(self, event: Event) -> None:
        """Consume one event from inside <body>."""
        if event.is_tag(EventKind.START, TU_TAG):
            self._reset_unit()
            self.inside_tu = True
            self.capture.append(event)
            self.author = get_attribute(event, AUTHOR_ATTR)
            self.date = get_attribute(event, DATE_ATTR)
            return

        if event.is_tag(EventKind.EMPTY, TU_TAG):
            self.empty_units += 1
            return

        if not self.inside_tu:
            return

        self.capture.append(event)

        if event.is_tag(EventKind.END, TU_TAG):
            self._close_unit()
        elif event.name == PROP_TAG:
            self._on_prop(event)
        elif event.name == TUV_TAG:
            self._on_tuv(event)
        elif event.name == SEG_TAG and self.inside_tuv and event.kind is not EventKind.EMPTY:
            is_open = event.kind is EventKind.START
            self.inside_source_seg = is_open and self.inside_source_tuv
            self.inside_target_seg = is_open and not self.inside_source_tuv
        elif self.inside_source_seg:
            self.source_content.append(event)
        elif self.inside_target_seg:
            self.target_content.append(event)
        elif event.kind is EventKind.TEXT:
            self._on_prop_text(event)

    def _on_prop(self, event: Event) -> None:
        if event.kind is EventKind.END:
            self.inside_document_prop = False
            self.inside_context_prop = False
            return
        if event.kind is not EventKind.START:
            return

        prop_type = get_attribute(event, PROP_TYPE_ATTR)
        # First prop of each type wins
        if prop_type == DOCNAME_PROP and self.document is None:
            self.document = b''
            self.inside_document_prop = True
        elif prop_type == CONTEXT_PROP and self.context is None:
            self.context = b''
            self.inside_context_prop = True

    def _on_prop_text(self, event: Event) -> None:
        if self.inside_document_prop:
            self.document = event.raw
            self.inside_document_prop = False
        elif self.inside_context_prop:
            self.context = event.raw
            self.inside_context_prop = False

    def _on_tuv(self, event: Event) -> None:
        if event.kind is EventKind.END:
            self.inside_tuv = False
            self.inside_source_tuv = False
            return
        if event.kind is not EventKind.START:
            return

        lang = (get_attribute(event, 'xml:lang') or
                get_attribute(event, 'lang') or '').lower()

        if self.source_lang is None:
            self.source_lang = lang
            logger.debug("Source language: %s", lang or "(none)")

        self.inside_tuv = True
        self.inside_source_tuv = lang == self.source_lang

    # -- unit completion --

    def unit_key(self) -> bytes:
        """Duplicate key of the unit being captured."""
        options = self.options
        digest = hashlib.sha256()

        _hash_segment(digest, b'S', self.source_content)
        if not options.skip_author:
            author = None
            if self.author is not None:
                author = self.author.upper().encode('utf-8', 'surrogateescape')
            _hash_token(digest, b'AU', author)
        if not options.skip_document:
            _hash_token(digest, b'DO', self.document)
        if not options.skip_context:
            _hash_token(digest, b'CX', self.context or MISSING_CONTEXT)
        if options.keep_diff_targets:
            _hash_segment(digest, b'G', self.target_content)

        return digest.digest()

    def _unit_timestamp(self) -> int:
        try:
            return parse_timestamp(self.date)
        except TimestampError:
            if self.options.strict_timestamps:
                raise
            logger.warning("Invalid creationdate %r, treating as 0", self.date)
            return 0

    def _close_unit(self) -> None:
        self.inside_tu = False
        self.total_units += 1

        key = self.unit_key()
        timestamp = self._unit_timestamp()

        record = self.retained.get(key)
        if record is None:
            self.retained[key] = RetainedUnit(timestamp, self.capture)
        elif timestamp > record.timestamp:
            logger.debug("Replacing unit dated %d with one dated %d",
                         record.timestamp, timestamp)
            record.timestamp = timestamp
            record.content = self.capture
            self.replaced_count += 1
        else:
            self.discarded_count += 1

    def emit(self, sink: EventSink) -> None:
        """Write the surviving units, oldest first, and close the document."""
        for record in sorted(self.retained.values(), key=lambda r: r.timestamp):
            sink.write(UNIT_SEPARATOR)
            sink.write_all(record.content)
        sink.write_text(FILTER_CLOSING)

    def run(self, reader: EventReader, sink: EventSink, source: str = '<input>') -> None:
        """Copy the document skeleton up to <body>, then filter the body."""
        for event in reader:
            sink.write(event)
            if event.is_tag(EventKind.START, BODY_TAG):
                break
            if event.is_tag(EventKind.EMPTY, BODY_TAG):
                logger.warning("%s has an empty <body/>, copied unchanged", source)
                sink.write_all(reader)
                return
        else:
            raise MalformedTMXError(f"Malformed TMX: <body> not found in {source}")

        for event in reader:
            if event.is_tag(EventKind.END, BODY_TAG):
                break
            self.feed(event)
        else:
            raise MalformedTMXError(f"Malformed TMX: <body> not closed in {source}")

        self.emit(sink)

    def stats(self) -> Dict:
        return {
            'total_units': self.total_units,
            'unique_count': len(self.retained),
            'replaced_count': self.replaced_count,
            'discarded_count': self.discarded_count,
            'empty_units': self.empty_units,
            'source_lang': self.source_lang or "unknown",
        }


def filter_duplicates(input_path: str, output_path: str,
                      options: Optional[FilterOptions] = None) -> Dict:
    """Write `input_path` to `output_path` with duplicate TUs collapsed."""
    _check_input(input_path)

    dedup = TUDedupFilter(options)
    with open_reader(input_path) as reader, open_sink(output_path) as sink:
        dedup.run(reader, sink, source=input_path)

    return dedup.stats()


# ══════════════════════════════════════════════════
# Command line
# ══════════════════════════════════════════════════

def _parse_bool(value: str) -> bool:
    if value == 'true':
        return True
    if value == 'false':
        return False
    raise argparse.ArgumentTypeError(f"must be 'true' or 'false'. Got '{value}'")


def _parse_count(value: str) -> int:
    try:
        count = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"N must be an integer. Got '{value}'") from None
    if count < 0:
        raise argparse.ArgumentTypeError(f"N must not be negative. Got '{value}'")
    return count


def _run_trim(args) -> None:
    result = trim(args.input, args.output, args.count)
    print(f"Trimmed: {Path(args.input).name}")
    print(f"  TUs read:       {result['total_units']:,}")
    print(f"  TUs dropped:    {result['skipped_count']:,}")
    print(f"  TUs kept:       {result['kept_count']:,}")
    print(f"  Output:         {args.output}")


def _print_concat(result: Dict, output: str) -> None:
    print("Merge complete!")
    print(f"  Files merged:   {result['files_merged']}")
    print(f"  TUs written:    {result['units_written']:,}")
    if result['placeholders_unprotected']:
        print(f"  Unprotected:    {result['placeholders_unprotected']:,} placeholders")
    print(f"  Output:         {output}")


def _run_concat(args) -> None:
    result = concat(args.inputs, args.output, unprotect=args.unprotect)
    _print_concat(result, args.output)


def _run_concat_dir(args) -> None:
    result = concat_dir(args.input_dir, args.output, unprotect=args.unprotect)
    _print_concat(result, args.output)


def _run_filter(args) -> None:
    options = FilterOptions(
        skip_author=args.skip_author,
        skip_document=args.skip_document,
        skip_context=args.skip_context,
        keep_diff_targets=args.keep_diff_targets,
        strict_timestamps=not args.lenient_dates,
    )
    result = filter_duplicates(args.input, args.output, options)
    removed = result['total_units'] - result['unique_count']
    print(f"Filtered: {Path(args.input).name}")
    print(f"  Source language:  {result['source_lang']}")
    print(f"  TUs read:         {result['total_units']:,}")
    print(f"  Duplicates:       {removed:,} "
          f"({result['replaced_count']:,} replaced by a newer TU)")
    if result['empty_units']:
        print(f"  Empty <tu/>:      {result['empty_units']:,} dropped")
    print(f"  TUs kept:         {result['unique_count']:,}")
    print(f"  Output:           {args.output}")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='tmx-stream',
        description="TMX Stream - Streaming Trim, Merge and Deduplication for TMX Files",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s trim in.tmx out.tmx 500                       Drop the first 500 TUs
  %(prog)s concat out.tmx false a.tmx b.tmx c.tmx        Merge three files
  %(prog)s concat_dir ./tms merged.tmx true              Merge a directory, unprotect t5:n
  %(prog)s filter in.tmx out.tmx false false false false Deduplicate on all fields
  %(prog)s filter in.tmx out.tmx true true true true     Source text + target text only
"""
    )
    parser.add_argument('-v', '--verbose', action='store_true',
                        help='Log progress details to stderr')

    commands = parser.add_subparsers(dest='command', metavar='command')
    commands.required = True

    p = commands.add_parser('trim', help='Drop the first N translation units')
    p.add_argument('input', help='Input TMX file')
    p.add_argument('output', help='Output TMX file')
    p.add_argument('count', metavar='N', type=_parse_count,
                   help='Number of TUs to drop')
    p.set_defaults(handler=_run_trim)

    p = commands.add_parser('concat', help='Merge the TUs of several TMX files')
    p.add_argument('output', help='Output TMX file')
    p.add_argument('unprotect', type=_parse_bool, metavar='unprotect',
                   help="'true' to replace <t5:n n=\"...\"/> with its n value")
    p.add_argument('inputs', nargs='+', metavar='input',
                   help='Input TMX files; the first supplies the header')
    p.set_defaults(handler=_run_concat)

    p = commands.add_parser('concat_dir', help='Merge all TMX files in a directory')
    p.add_argument('input_dir', help='Directory containing .tmx files')
    p.add_argument('output', help='Output TMX file')
    p.add_argument('unprotect', type=_parse_bool, metavar='unprotect',
                   help="'true' to replace <t5:n n=\"...\"/> with its n value")
    p.set_defaults(handler=_run_concat_dir)

    p = commands.add_parser('filter', help='Remove duplicate translation units')
    p.add_argument('input', help='Input TMX file')
    p.add_argument('output', help='Output TMX file')
    p.add_argument('skip_author', type=_parse_bool, metavar='skipAuthor',
                   help="'true' to ignore creationid in the duplicate key")
    p.add_argument('skip_document', type=_parse_bool, metavar='skipDocument',
                   help="'true' to ignore the tmgr:docname prop")
    p.add_argument('skip_context', type=_parse_bool, metavar='skipContext',
                   help="'true' to ignore the tmgr:context prop")
    p.add_argument('keep_diff_targets', type=_parse_bool, metavar='keepDiffTargets',
                   help="'true' to keep TUs whose translations differ")
    p.add_argument('--lenient-dates', action='store_true',
                   help='Treat unparseable creationdate values as 0 instead of failing')
    p.set_defaults(handler=_run_filter)

    return parser


def main(argv: Optional[List[str]] = None) -> None:
    parser = _build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format='%(levelname)s %(name)s: %(message)s',
    )

    try:
        args.handler(args)
    except (TMXError, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
