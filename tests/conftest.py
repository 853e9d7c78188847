"""
Pytest configuration and shared fixtures for tmx-stream.

Provides a temporary directory and small builders for TMX documents.
"""

import sys
import tempfile
from pathlib import Path

import pytest

# Make the top-level modules importable without installing the project
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))


HEADER = (
    '<?xml version="1.0" encoding="UTF-8"?>\n'
    '<tmx version="1.4">\n'
    '  <header creationtool="pytest" srclang="en-US" datatype="plaintext"/>\n'
    '  <body>\n'
)
FOOTER = '  </body>\n</tmx>\n'

# Everything the dedup filter copies before the first unit
PRELUDE = HEADER[:-1]


def make_tu(source='Hello', target='Hei', author='ALICE',
            date='20200101T000000Z', docname=None, context=None,
            src_lang='en-US', tgt_lang='nb-NO', target_first=False):
    """One indented <tu> ending with a newline."""
    attrs = ''
    if author is not None:
        attrs += f' creationid="{author}"'
    if date is not None:
        attrs += f' creationdate="{date}"'

    lines = [f'    <tu{attrs}>']
    if docname is not None:
        lines.append(f'      <prop type="tmgr:docname">{docname}</prop>')
    if context is not None:
        lines.append(f'      <prop type="tmgr:context">{context}</prop>')

    src = f'      <tuv xml:lang="{src_lang}"><seg>{source}</seg></tuv>'
    tgt = f'      <tuv xml:lang="{tgt_lang}"><seg>{target}</seg></tuv>'
    lines.extend([tgt, src] if target_first else [src, tgt])
    lines.append('    </tu>')
    return '\n'.join(lines) + '\n'


def make_tmx(*units):
    return HEADER + ''.join(units) + FOOTER


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def write_tmx(temp_dir):
    """Write TMX text to a file in temp_dir and return its path as str."""
    def _write(name, content):
        path = temp_dir / name
        path.write_bytes(content.encode('utf-8'))
        return str(path)
    return _write


@pytest.fixture
def read_output():
    def _read(path):
        return Path(path).read_bytes().decode('utf-8')
    return _read
