"""Header-tolerant CSV parsing over a streamed byte source."""
import codecs
import csv
import logging
import re
from typing import AsyncIterator, Iterable, NamedTuple, Optional

from csv_worker.errors import StructuralError

logger = logging.getLogger(__name__)

REQUIRED_COLUMNS = ("first name", "last name", "url")
OPTIONAL_COLUMNS = ("email address", "company", "position", "connected on")
KNOWN_COLUMNS = REQUIRED_COLUMNS + OPTIONAL_COLUMNS

# Lines of the export preamble that must never be mistaken for a header
NOTES_MARKERS = ("notes:", "when exporting your connection data")

# Physical lines a quoted field may span before the quote is treated as stray
MAX_CONTINUATION_LINES = 50

LINE_BREAK_RE = re.compile(r"\r\n|\r|\n")
WHITESPACE_RE = re.compile(r"\s+")
QUOTES_RE = re.compile(r"[\"']")
# Longest names first so "url" never shadows a longer column
KNOWN_COLUMN_RE = re.compile(
    "|".join(re.escape(name) for name in sorted(KNOWN_COLUMNS, key=len, reverse=True)),
    re.IGNORECASE,
)


class RawRecord(NamedTuple):
    """One data row keyed by canonical column name."""

    line_number: int
    values: dict[str, str]


def normalize_header(text: str) -> str:
    """Canonical column name: no BOM or quotes, single spaces, lower-case."""
    if not text:
        return ""
    text = text.replace("\ufeff", "")
    text = QUOTES_RE.sub("", text)
    return WHITESPACE_RE.sub(" ", text).strip().lower()


def split_joined_headers(text: str) -> list[str]:
    """
    Recover column names from header text that arrived as one cell.

    Known column names are located case-insensitively and returned in the
    order they appear; text that matches no known name is returned as-is.
    """
    found = [normalize_header(match.group(0)) for match in KNOWN_COLUMN_RE.finditer(text)]
    return found or [normalize_header(text)]


def tokenize_line(line: str) -> list[str]:
    """Split one logical CSV line into cells."""
    return next(csv.reader([line]), [])


def is_notes_line(line: str) -> bool:
    lowered = line.lower()
    return any(marker in lowered for marker in NOTES_MARKERS)


def covers_required(tokens: Iterable[str]) -> bool:
    present = set(tokens)
    return all(column in present for column in REQUIRED_COLUMNS)


def header_tokens(line: str) -> Optional[list[str]]:
    """
    Return normalized header names if the line is a valid header row.

    Cells that hold several joined column names are split before giving up.
    """
    tokens = [normalize_header(cell) for cell in tokenize_line(line)]
    if covers_required(tokens):
        return tokens

    expanded = [name for token in tokens for name in split_joined_headers(token)]
    if covers_required(expanded):
        return expanded
    return None


def find_header_row(lines: Iterable[str]) -> tuple[int, list[str]]:
    """
    Locate the header among already-split lines.

    Args:
        lines: Physical lines of the file

    Returns:
        Tuple of (header line index, normalized header names)

    Raises:
        StructuralError: no line covers every required column
    """
    for index, line in enumerate(lines):
        if not line.strip() or is_notes_line(line):
            continue
        tokens = header_tokens(line)
        if tokens is not None:
            return index, tokens
    raise StructuralError("No valid header row found in the CSV file")


async def iter_lines(
    byte_stream: AsyncIterator[bytes], encoding: str = "utf-8-sig"
) -> AsyncIterator[str]:
    """
    Decode a byte stream incrementally and yield physical lines.

    Accepts ``\\n``, ``\\r\\n`` and bare ``\\r`` line endings, including
    a ``\\r\\n`` pair split across two pieces.
    """
    decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
    pending = ""
    async for piece in byte_stream:
        text = pending + decoder.decode(piece)
        hold = ""
        if text.endswith("\r"):
            text, hold = text[:-1], "\r"
        *lines, pending = LINE_BREAK_RE.split(text)
        pending += hold
        for line in lines:
            yield line

    text = pending + decoder.decode(b"", final=True)
    if text:
        for line in LINE_BREAK_RE.split(text):
            yield line


class CsvRowParser:
    """
    Turns a byte stream into raw records once the real header is found.

    Preamble lines (notes, blank lines, anything that does not name every
    required column) are skipped. Data cells are aligned to the header:
    missing trailing cells become empty strings and surplus cells are
    dropped. A quoted field may span physical lines.
    """

    def __init__(self, encoding: str = "utf-8-sig"):
        self.encoding = encoding
        self.header_index: Optional[int] = None
        self.headers: list[str] = []
        self.lines_read = 0
        self.preamble_lines = 0
        self.rows_emitted = 0
        self.misaligned_rows = 0

    async def records(self, byte_stream: AsyncIterator[bytes]) -> AsyncIterator[RawRecord]:
        """
        Yield one RawRecord per non-empty data line.

        Raises:
            StructuralError: empty stream or no header before end of stream
        """
        saw_content = False
        buffered: Optional[str] = None
        buffered_line = 0
        buffered_lines = 0

        async for line in iter_lines(byte_stream, self.encoding):
            index = self.lines_read
            self.lines_read += 1

            if self.header_index is None:
                if not line.strip():
                    continue
                saw_content = True
                if is_notes_line(line):
                    logger.debug(f"🔍 Skipping notes line {index + 1}: {line[:50]}")
                    self.preamble_lines += 1
                    continue
                tokens = header_tokens(line)
                if tokens is None:
                    self.preamble_lines += 1
                    continue
                self.header_index = index
                self.headers = tokens
                logger.info(f"✅ Found header row at line {index + 1}: {', '.join(tokens)}")
                continue
            if buffered is not None:
                buffered = f"{buffered}\n{line}"
                buffered_lines += 1
            else:
                if not line.strip():
                    continue
                buffered, buffered_line, buffered_lines = line, index + 1, 1

            # An odd number of quotes means a quoted field continues on the next line
            if buffered.count('"') % 2 == 1 and buffered_lines < MAX_CONTINUATION_LINES:
                continue

            for record in self._build_records(buffered, buffered_line):
                yield record
            buffered = None

        if buffered is not None:
            for record in self._build_records(buffered, buffered_line):
                yield record

        if self.header_index is None:
            if not saw_content:
                raise StructuralError("CSV data is empty")
            raise StructuralError("Could not find valid header row in CSV file")

        logger.info(
            f"📋 Parsed {self.rows_emitted} rows after skipping {self.preamble_lines} preamble lines"
        )

    def _build_records(self, text: str, line_number: int) -> list[RawRecord]:
        if "\n" in text and text.count('"') % 2 == 1:
            return self._split_physical(text, line_number)
        try:
            cells = tokenize_line(text)
        except csv.Error:
            if "\n" in text:
                return self._split_physical(text, line_number)
            logger.debug(f"Line {line_number} could not be tokenized")
            self.misaligned_rows += 1
            return []

        if not any(cell.strip() for cell in cells):
            return []

        if len(cells) != len(self.headers):
            self.misaligned_rows += 1
            logger.debug(
                f"Line {line_number} has {len(cells)} cells, header has {len(self.headers)}"
            )

        values = {}
        for position, name in enumerate(self.headers):
            if not name:
                continue
            values[name] = cells[position] if position < len(cells) else ""
        self.rows_emitted += 1
        return [RawRecord(line_number=line_number, values=values)]

    def _split_physical(self, text: str, line_number: int) -> list[RawRecord]:
        """Parse lines glued together by a stray quote one by one."""
        records = []
        for offset, physical in enumerate(text.split("\n")):
            if physical.strip():
                records.extend(self._build_records(physical, line_number + offset))
        return records
