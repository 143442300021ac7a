"""Unit tests for table_migrate.row_source."""

from __future__ import annotations

import io
import zipfile
from pathlib import Path

import pytest

from table_migrate.row_source import (
    RowSource,
    SourceSpec,
    StaticRowSource,
    build_header_index,
    csv_source,
    discover_sources,
)
from table_migrate.shared import DuplicateHeaderError, SourceReadError


def _source(text: str, name: str = "test.csv") -> RowSource:
    return csv_source(name, io.StringIO(text, newline=""))


# ---------------------------------------------------------------------------
# Header index
# ---------------------------------------------------------------------------

class TestBuildHeaderIndex:
    def test_trims_names(self):
        assert build_header_index([" A ", "B"], "s") == {"A": 0, "B": 1}

    def test_duplicate_rejected(self):
        with pytest.raises(DuplicateHeaderError, match="duplicate header 'A'"):
            build_header_index(["A", "B", " A"], "s")


# ---------------------------------------------------------------------------
# RowSource
# ---------------------------------------------------------------------------

class TestRowSource:
    def test_header_then_rows(self):
        source = _source("A,B\n1,2\n3,4\n")
        assert source.header == {"A": 0, "B": 1}
        assert list(source.rows()) == [(1, ["1", "2"]), (2, ["3", "4"])]

    def test_wrong_width_row_skipped(self):
        skipped = []
        source = _source("A,B\n1,2\n1,2,3\n5,6\n")
        rows = list(source.rows(lambda err, fields: skipped.append((err, fields))))
        assert rows == [(1, ["1", "2"]), (3, ["5", "6"])]
        assert len(skipped) == 1
        err, fields = skipped[0]
        assert err.row_number == 2
        assert (err.expected, err.actual) == (2, 3)
        assert fields == ["1", "2", "3"]

    def test_short_row_skipped_without_handler(self):
        source = _source("A,B\n1\n5,6\n")
        assert list(source.rows()) == [(2, ["5", "6"])]

    def test_blank_lines_ignored(self):
        source = _source("A,B\n\n1,2\n\n")
        assert list(source.rows()) == [(1, ["1", "2"])]

    def test_quoted_fields(self):
        source = _source('A,B\n"x, y","say ""hi"""\n')
        assert list(source.rows()) == [(1, ["x, y", 'say "hi"'])]

    def test_empty_source_has_no_header(self):
        source = _source("")
        assert source.header is None
        assert list(source.rows()) == []

    def test_header_only(self):
        source = _source("A,B\n")
        assert source.header == {"A": 0, "B": 1}
        assert list(source.rows()) == []

    def test_duplicate_header_raises_on_read(self):
        with pytest.raises(DuplicateHeaderError):
            _source("A,A\n1,2\n").header


class TestStaticRowSource:
    def test_single_empty_row(self):
        source = StaticRowSource()
        assert source.name == "static"
        assert source.header == {}
        assert list(source.rows()) == [(1, [])]


# ---------------------------------------------------------------------------
# Discovery + opening
# ---------------------------------------------------------------------------

@pytest.fixture
def archive(tmp_path: Path) -> Path:
    path = tmp_path / "bundle.zip"
    with zipfile.ZipFile(path, "w") as zf:
        zf.writestr("one.csv", "A\n1\n")
        zf.writestr("sub/", "")
        zf.writestr("sub/two.csv", "A\n2\n3\n")
    return path


class TestDiscoverSources:
    def test_plain_file(self, tmp_path: Path):
        path = str(tmp_path / "a.csv")
        assert discover_sources([path]) == [SourceSpec(name=path, path=path)]

    def test_zip_members_expanded(self, archive: Path):
        specs = discover_sources([str(archive)])
        assert [s.member for s in specs] == ["one.csv", "sub/two.csv"]
        assert specs[0].name == f"{archive}!one.csv"

    def test_bad_zip(self, tmp_path: Path):
        path = tmp_path / "broken.zip"
        path.write_text("not a zip")
        with pytest.raises(SourceReadError):
            discover_sources([str(path)])


class TestSourceSpecOpen:
    def test_opens_file_and_strips_bom(self, tmp_path: Path):
        path = tmp_path / "a.csv"
        path.write_bytes("\ufeffA,B\r\n1,2\r\n".encode("utf-8"))
        with SourceSpec(name=str(path), path=str(path)).open() as source:
            assert source.header == {"A": 0, "B": 1}
            assert list(source.rows()) == [(1, ["1", "2"])]

    def test_missing_file(self, tmp_path: Path):
        path = str(tmp_path / "nope.csv")
        with pytest.raises(SourceReadError):
            with SourceSpec(name=path, path=path).open():
                pass

    def test_zip_member(self, archive: Path):
        spec = discover_sources([str(archive)])[1]
        with spec.open() as source:
            assert source.name.endswith("!sub/two.csv")
            assert [f for _, f in source.rows()] == [["2"], ["3"]]

    def test_undecodable_bytes(self, tmp_path: Path):
        path = tmp_path / "latin.csv"
        path.write_bytes(b"A\n\xff\xfe\n")
        with SourceSpec(name=str(path), path=str(path)).open() as source:
            with pytest.raises(SourceReadError):
                list(source.rows())
