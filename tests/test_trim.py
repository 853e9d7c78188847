"""Tests for dropping the first N translation units."""

import io
import xml.etree.ElementTree as ET

import pytest

from conftest import FOOTER, HEADER, make_tmx, make_tu
from tmx_events import EventReader, EventSink, ParseError
from tmx_stream import TUTrimmer, trim


UNITS = [make_tu(source=f'Segment {i}', date=f'2020010{i}T000000Z') for i in range(1, 5)]


def _sources(text):
    root = ET.fromstring(text.encode('utf-8'))
    return [tu.find('tuv/seg').text for tu in root.iter('tu')]


class TestTrim:

    def test_zero_is_byte_identical(self, write_tmx, temp_dir):
        content = make_tmx(*UNITS)
        source = write_tmx('in.tmx', content)
        output = str(temp_dir / 'out.tmx')

        result = trim(source, output, 0)

        assert (temp_dir / 'out.tmx').read_bytes() == content.encode('utf-8')
        assert result == {'total_units': 4, 'skipped_count': 0, 'kept_count': 4}

    def test_drops_first_units_and_their_whitespace(self, write_tmx, temp_dir, read_output):
        source = write_tmx('in.tmx', make_tmx(*UNITS))
        output = str(temp_dir / 'out.tmx')

        result = trim(source, output, 2)

        assert read_output(output) == HEADER + UNITS[2] + UNITS[3] + FOOTER
        assert result['skipped_count'] == 2
        assert result['kept_count'] == 2

    def test_keeps_last_units_in_order(self, write_tmx, temp_dir, read_output):
        source = write_tmx('in.tmx', make_tmx(*UNITS))
        output = str(temp_dir / 'out.tmx')

        trim(source, output, 1)

        assert _sources(read_output(output)) == ['Segment 2', 'Segment 3', 'Segment 4']

    @pytest.mark.parametrize('count', [4, 5, 100])
    def test_count_at_or_above_total_removes_all(self, count, write_tmx, temp_dir, read_output):
        source = write_tmx('in.tmx', make_tmx(*UNITS))
        output = str(temp_dir / 'out.tmx')

        result = trim(source, output, count)

        text = read_output(output)
        assert _sources(text) == []
        assert '<tu' not in text
        assert text.endswith('</body>\n</tmx>\n')
        assert result['kept_count'] == 0
        assert result['skipped_count'] == 4

    def test_empty_units_are_counted(self):
        doc = (b'<tmx><body>\n<tu/>\n<tu><tuv><seg>a</seg></tuv></tu>\n'
               b'<tu/>\n</body></tmx>')
        out = io.BytesIO()
        trimmer = TUTrimmer(EventSink(out), 2)
        for event in EventReader(io.BytesIO(doc)):
            trimmer.feed(event)

        assert out.getvalue() == b'<tmx><body>\n<tu/>\n</body></tmx>'
        assert trimmer.stats()['total_units'] == 3

    def test_whitespace_suppressed_once_per_skip(self):
        doc = b'<body><tu>x</tu>\n\n<!--note-->\n<tu>y</tu></body>'
        out = io.BytesIO()
        trimmer = TUTrimmer(EventSink(out), 1)
        for event in EventReader(io.BytesIO(doc)):
            trimmer.feed(event)

        assert out.getvalue() == b'<body><!--note-->\n<tu>y</tu></body>'

    def test_negative_count_rejected(self, write_tmx, temp_dir):
        source = write_tmx('in.tmx', make_tmx(*UNITS))
        with pytest.raises(ValueError):
            trim(source, str(temp_dir / 'out.tmx'), -1)

    def test_missing_input(self, temp_dir):
        with pytest.raises(FileNotFoundError):
            trim(str(temp_dir / 'missing.tmx'), str(temp_dir / 'out.tmx'), 1)
        assert not (temp_dir / 'out.tmx').exists()

    def test_parse_error_propagates(self, write_tmx, temp_dir):
        source = write_tmx('bad.tmx', HEADER + '    <tu><tuv></tu>\n' + FOOTER)
        with pytest.raises(ParseError):
            trim(source, str(temp_dir / 'out.tmx'), 1)
