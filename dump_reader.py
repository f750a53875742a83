import logging
from enum import Enum
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, Tuple

logger = logging.getLogger(__name__)

SEPARATOR = "|"

Record = Dict[str, str]


class DumpFormatError(Exception):
    """The input does not have the header / separator / rows shape of a psql table."""

    def __init__(self, row: int, transition: str):
        self.row = row
        self.transition = transition
        super().__init__(f"row {row}: unexpected {transition}")


class MalformedHeader(DumpFormatError):
    pass


class UnexpectedRow(DumpFormatError):
    pass


class ParserState(Enum):
    INIT = "init"
    HEADER_SEEN = "header-seen"
    DATA = "data"
    DONE = "done"


@dataclass(frozen=True)
class Field:
    name: str
    offset: int
    width: int

    def extract(self, line: str) -> str:
        # Short lines give truncated or empty values
        return line[self.offset:self.offset + self.width].strip()


@dataclass(frozen=True)
class FieldSchema:
    fields: Tuple[Field, ...]

    @classmethod
    def from_header(cls, header: str) -> "FieldSchema":
        # psql pads every cell with one space on each side:
        # " pid | mode " -> pid at [1, 4), mode at [7, 11)
        fields = []
        offset = 0
        for segment in header.split(SEPARATOR):
            fields.append(Field(segment.strip(), offset + 1, max(len(segment) - 2, 0)))
            offset += len(segment) + 1
        return cls(tuple(fields))

    @property
    def names(self) -> List[str]:
        return [f.name for f in self.fields]

    def decode(self, line: str) -> Record:
        return {f.name: f.extract(line) for f in self.fields}


def query_kind(query: str) -> str:
    """Leading keyword of a query, e.g. "SELECT" for "SELECT * FROM t"."""
    return query.split(" ", 1)[0]


def add_query_kinds(record: Record) -> Record:
    for side in ("waiting", "other"):
        query = record.get(f"{side}_query")
        if query is not None:
            record[f"{side}_query_kind"] = query_kind(query)
    return record


class DumpReader:
    """Incremental reader for the text table printed by psql.

    Feed it one line at a time. The first line is the header, the second
    the ``----+----`` rule under it, then data rows until a line without a
    ``|`` closes the table (usually ``(N rows)``). Anything after that is
    ignored. Each decoded row is passed to ``on_record``.
    """

    def __init__(self, on_record: Callable[[Record], None]):
        self.on_record = on_record
        self.state = ParserState.INIT
        self.schema: Optional[FieldSchema] = None
        self.row = 0
        self.rows_decoded = 0

    def feed(self, line: str):
        self.row += 1
        line = line.rstrip("\r\n")

        if self.state is ParserState.INIT:
            self._read_header(line)
            self.state = ParserState.HEADER_SEEN
        elif self.state is ParserState.HEADER_SEEN:
            if self.row != 2:
                raise UnexpectedRow(self.row, "header-seen -> data")
            self.state = ParserState.DATA
        elif self.state is ParserState.DATA:
            if SEPARATOR not in line:
                logger.debug("end of table at row %d after %d rows", self.row, self.rows_decoded)
                self.state = ParserState.DONE
                return
            record = add_query_kinds(self.schema.decode(line))
            self.rows_decoded += 1
            self.on_record(record)
        # ParserState.DONE: trailing output is ignored

    def _read_header(self, line: str):
        if self.row != 1 or self.schema is not None:
            raise MalformedHeader(self.row, "init -> header-seen")
        self.schema = FieldSchema.from_header(line)
        logger.debug("schema: %s", ", ".join(self.schema.names))

    def feed_lines(self, lines: Iterable[str]):
        for line in lines:
            self.feed(line)
        self.finish()

    def finish(self):
        if self.state is not ParserState.DONE:
            logger.warning(
                "input ended in state %s at row %d before the closing separator",
                self.state.value, self.row,
            )
