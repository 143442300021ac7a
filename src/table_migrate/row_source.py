"""table_migrate.row_source

Row sources: ordered suppliers of a header record followed by data rows.

A source is either a delimited file, one member of a zip archive
(named "archive.zip!member.csv"), or the single synthetic row of a
`static` section. Sources are discovered up front and opened one at a time,
so a bad file only affects itself.
"""

from __future__ import annotations

import csv
import io
import logging
import zipfile
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Iterable, Iterator, TextIO

from table_migrate.shared import DuplicateHeaderError, RowShapeError, SourceReadError

log = logging.getLogger(__name__)

STATIC_SOURCE = "static"

SkipHandler = Callable[[RowShapeError, list[str]], None]


# ---------------------------------------------------------------------------
# Header index
# ---------------------------------------------------------------------------

def build_header_index(record: list[str], source_name: str) -> dict[str, int]:
    """Map trimmed header names to positions. Duplicate names are rejected."""
    index: dict[str, int] = {}
    for position, raw_name in enumerate(record):
        name = raw_name.strip()
        if name in index:
            raise DuplicateHeaderError(
                f"{source_name}: duplicate header {name!r} at positions "
                f"{index[name]} and {position}"
            )
        index[name] = position
    return index


# ---------------------------------------------------------------------------
# Row sources
# ---------------------------------------------------------------------------

class RowSource:
    """Header + data rows read from one record iterator.

    rows() yields (row_number, fields) for every data row whose width
    matches the header. Wrong-width rows are logged, passed to on_skip and
    dropped; row numbers count data records, so skipped rows keep theirs.
    Blank lines are ignored.
    """

    def __init__(self, name: str, records: Iterable[list[str]]) -> None:
        self.name = name
        self._records = iter(records)
        self._header: dict[str, int] | None = None
        self._width = 0
        self._header_read = False

    def _next_record(self) -> list[str] | None:
        while True:
            try:
                record = next(self._records)
            except StopIteration:
                return None
            except (csv.Error, UnicodeDecodeError) as exc:
                raise SourceReadError(f"{self.name}: {exc}") from exc
            if record:
                return record

    @property
    def header(self) -> dict[str, int] | None:
        """The header index, or None for an empty source."""
        if not self._header_read:
            record = self._next_record()
            self._header_read = True
            if record is not None:
                self._header = build_header_index(record, self.name)
                self._width = len(record)
        return self._header

    def rows(self, on_skip: SkipHandler | None = None) -> Iterator[tuple[int, list[str]]]:
        if self.header is None:
            return
        row_number = 0
        while True:
            record = self._next_record()
            if record is None:
                return
            row_number += 1
            if len(record) != self._width:
                err = RowShapeError(row_number, self._width, len(record))
                log.warning("%s: %s", self.name, err)
                if on_skip is not None:
                    on_skip(err, record)
                continue
            yield row_number, record


class StaticRowSource:
    """Exactly one empty row against an empty header."""

    name = STATIC_SOURCE

    @property
    def header(self) -> dict[str, int]:
        return {}

    def rows(self, on_skip: SkipHandler | None = None) -> Iterator[tuple[int, list[str]]]:
        yield 1, []


def csv_source(name: str, fh: TextIO) -> RowSource:
    return RowSource(name, csv.reader(fh))


# ---------------------------------------------------------------------------
# Discovery
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SourceSpec:
    """A named, not-yet-opened row source."""

    name: str
    path: str
    member: str | None = None

    @contextmanager
    def open(self) -> Iterator[RowSource]:
        if self.member is None:
            try:
                fh = open(self.path, encoding="utf-8-sig", newline="")
            except OSError as exc:
                raise SourceReadError(f"{self.name}: {exc}") from exc
            with fh:
                yield csv_source(self.name, fh)
            return

        try:
            archive = zipfile.ZipFile(self.path)
        except (OSError, zipfile.BadZipFile) as exc:
            raise SourceReadError(f"{self.name}: {exc}") from exc
        with archive, archive.open(self.member) as raw:
            with io.TextIOWrapper(raw, encoding="utf-8-sig", newline="") as fh:
                yield csv_source(self.name, fh)


def discover_sources(paths: Iterable[str]) -> list[SourceSpec]:
    """Expand a section's path list; each zip member becomes its own source.

    Raises:
        SourceReadError: If an archive cannot be listed.
    """
    specs: list[SourceSpec] = []
    for path in paths:
        if not path.lower().endswith(".zip"):
            specs.append(SourceSpec(name=path, path=path))
            continue
        try:
            with zipfile.ZipFile(path) as archive:
                members = [i.filename for i in archive.infolist() if not i.is_dir()]
        except (OSError, zipfile.BadZipFile) as exc:
            raise SourceReadError(f"{path}: {exc}") from exc
        for member in members:
            specs.append(SourceSpec(name=f"{path}!{member}", path=path, member=member))
    return specs
