"""Tests for item sources and sinks."""

import sqlite3
from datetime import date

import pytest
from rich.console import Console

from batchrun.errors import ReadError
from batchrun.items import (
    END_OF_DATA,
    ConsoleItemSink,
    FlatFileItemSource,
    IteratorItemSource,
    ListItemSink,
    ListItemSource,
    SqliteItemSink,
    coerce_value,
)


def read_all(source):
    source.open()
    items = []
    while True:
        item = source.read()
        if item is END_OF_DATA:
            break
        items.append(item)
    source.close()
    return items


@pytest.fixture
def movies_csv(tmp_path):
    path = tmp_path / "movies.csv"
    path.write_text(
        "title,year,rating\n"
        "Toy Story,1995,8.3\n"
        "Heat,1995,8.2\n"
        "\n"
        "Fargo,1996,N/A\n"
        "Scream,1996,7.4\n"
        "Unknown, N/A ,NA\n"
    )
    return path


# =============================================================================
# SOURCES
# =============================================================================


class TestListItemSource:
    """Tests for in-memory sources."""

    def test_reads_then_end_of_data(self):
        source = ListItemSource([1, 2])
        assert source.read() == 1
        assert source.read() == 2
        assert source.read() is END_OF_DATA
        assert source.read() is END_OF_DATA

    def test_open_rewinds(self):
        source = ListItemSource(["a", "b"])
        assert read_all(source) == ["a", "b"]
        assert read_all(source) == ["a", "b"]

    def test_falsy_items_are_not_end_of_data(self):
        assert read_all(ListItemSource([0, "", None, False])) == [0, "", None, False]

    def test_end_of_data_is_singleton(self):
        assert type(END_OF_DATA)() is END_OF_DATA
        assert not END_OF_DATA

    def test_iterator_source_is_lazy(self):
        pulled = []

        def gen():
            for i in range(3):
                pulled.append(i)
                yield i

        source = IteratorItemSource(gen())
        source.open()
        assert source.read() == 0
        assert pulled == [0]
        assert source.read() == 1
        assert source.read() == 2
        assert source.read() is END_OF_DATA


class TestCoerceValue:
    """Tests for the field coercion policy."""

    def test_int(self):
        assert coerce_value("1996", "int") == 1996
        assert coerce_value(" 42 ", int) == 42

    def test_na_markers_coerce_to_zero(self):
        assert coerce_value("N/A", "int") == 0
        assert coerce_value("na", "int") == 0
        assert coerce_value("", "int") == 0
        assert coerce_value("NA", "float") == 0.0

    def test_unparsable_raises(self):
        with pytest.raises(ValueError):
            coerce_value("abc", "int")

    def test_custom_na_values(self):
        assert coerce_value("-", "int", na_values=("-",)) == 0
        with pytest.raises(ValueError):
            coerce_value("N/A", "int", na_values=("-",))

    def test_date_and_str(self):
        assert coerce_value("2024-01-31", "date") == date(2024, 1, 31)
        assert coerce_value("  Heat ", "str") == "Heat"

    def test_callable_converter(self):
        assert coerce_value(" x ", str.upper) == "X"

    def test_unknown_type_name(self):
        with pytest.raises(ValueError, match="Unknown field type"):
            coerce_value("1", "decimal")


class TestFlatFileItemSource:
    """Tests for delimited file reading."""

    def test_reads_header_and_rows(self, movies_csv):
        items = read_all(FlatFileItemSource(movies_csv, types={"year": "int", "rating": "float"}))

        assert len(items) == 5
        assert items[0] == {"title": "Toy Story", "year": 1995, "rating": 8.3}
        assert items[2]["year"] == 1996
        assert items[2]["rating"] == 0.0
        assert items[4]["year"] == 0

    def test_explicit_names_with_skip_lines(self, movies_csv):
        source = FlatFileItemSource(
            movies_csv,
            names=["title", "year", "rating"],
            skip_lines=1,
            types={"year": int},
        )
        items = read_all(source)
        assert [i["title"] for i in items] == ["Toy Story", "Heat", "Fargo", "Scream", "Unknown"]
        # untyped columns stay raw strings
        assert items[2]["rating"] == "N/A"

    def test_other_delimiter(self, tmp_path):
        path = tmp_path / "data.tsv"
        path.write_text("a\tb\n1\t2\n")
        assert read_all(FlatFileItemSource(path, delimiter="\t", types={"a": "int"})) == [{"a": 1, "b": "2"}]

    def test_column_count_mismatch_names_line(self, tmp_path):
        path = tmp_path / "bad.csv"
        path.write_text("a,b\n1,2\n3\n")
        source = FlatFileItemSource(path)
        source.open()
        assert source.read() == {"a": "1", "b": "2"}
        with pytest.raises(ReadError, match=r"bad.csv:3: expected 2 fields, got 1"):
            source.read()
        source.close()

    def test_conversion_failure_names_column(self, tmp_path):
        path = tmp_path / "bad.csv"
        path.write_text("title,year\nHeat,nineteen\n")
        source = FlatFileItemSource(path, types={"year": "int"})
        with pytest.raises(ReadError, match="column 'year'"):
            read_all(source)

    def test_types_for_unknown_column(self, movies_csv):
        with pytest.raises(ValueError, match="unknown columns"):
            FlatFileItemSource(movies_csv, types={"budget": "int"}).open()

    def test_empty_file_without_names(self, tmp_path):
        path = tmp_path / "empty.csv"
        path.write_text("")
        with pytest.raises(ReadError, match="no header"):
            FlatFileItemSource(path).open()

    def test_reopen_starts_over(self, movies_csv):
        source = FlatFileItemSource(movies_csv)
        assert len(read_all(source)) == 5
        assert len(read_all(source)) == 5

    def test_invalid_arguments(self, movies_csv):
        with pytest.raises(ValueError):
            FlatFileItemSource(movies_csv, skip_lines=-1)
        with pytest.raises(ValueError):
            FlatFileItemSource(movies_csv, delimiter="::")


# =============================================================================
# SINKS
# =============================================================================


class TestListItemSink:
    """Tests for ListItemSink."""

    def test_records_chunks(self):
        sink = ListItemSink()
        sink.write([1, 2])
        sink.write([3])
        assert sink.chunks == [[1, 2], [3]]
        assert sink.items == [1, 2, 3]


class TestConsoleItemSink:
    """Tests for ConsoleItemSink."""

    def test_prints_items(self):
        console = Console(record=True, width=120)
        sink = ConsoleItemSink(console=console, prefix="> ")
        sink.write(["Heat", "Fargo"])
        output = console.export_text()
        assert "> Heat" in output
        assert "> Fargo" in output


class TestSqliteItemSink:
    """Tests for SqliteItemSink."""

    def test_inserts_rows(self):
        conn = sqlite3.connect(":memory:", isolation_level=None)
        sink = SqliteItemSink(conn, "movies")
        sink.write([{"title": "Heat", "year": 1995}, {"title": "Fargo", "year": 1996}])

        rows = conn.execute('SELECT title, year FROM "movies" ORDER BY year').fetchall()
        assert rows == [("Heat", 1995), ("Fargo", 1996)]

    def test_explicit_columns(self):
        conn = sqlite3.connect(":memory:", isolation_level=None)
        sink = SqliteItemSink(conn, "titles", columns=["title"])
        sink.write([{"title": "Heat", "year": 1995}])
        assert conn.execute('SELECT * FROM "titles"').fetchall() == [("Heat",)]

    def test_missing_column_raises(self):
        conn = sqlite3.connect(":memory:", isolation_level=None)
        sink = SqliteItemSink(conn, "movies", columns=["title", "year"])
        with pytest.raises(KeyError):
            sink.write([{"title": "Heat"}])
