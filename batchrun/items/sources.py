"""
Item sources - where chunk steps read items from.

An ItemSource produces a finite sequence of items, one per read() call,
and returns the END_OF_DATA sentinel once exhausted. None is a valid item;
only END_OF_DATA ends the stream.

Sources with resources (files) acquire them in open() and release them in
close(). The chunk orchestrator calls both around a step run.
"""

import csv
import logging
from abc import ABC, abstractmethod
from datetime import date
from pathlib import Path
from typing import Any, Callable, Iterable, Iterator, Optional, Sequence, Union

from batchrun.errors import ReadError

logger = logging.getLogger(__name__)


class EndOfData:
    """Sentinel type returned by ItemSource.read() when the source is exhausted."""

    _instance: Optional["EndOfData"] = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "END_OF_DATA"

    def __bool__(self) -> bool:
        return False


END_OF_DATA = EndOfData()


class ItemSource(ABC):
    """
    Abstract base class for item sources.

    Implementations must provide read(). open() and close() default to
    no-ops for sources without resources.
    """

    def open(self) -> None:
        """Acquire resources before the first read."""
        pass

    @abstractmethod
    def read(self) -> Any:
        """
        Produce the next item.

        Returns:
            The next item, or END_OF_DATA when there are no more items

        Raises:
            Exception: Any failure; the orchestrator reports it as a ReadError
        """
        pass

    def close(self) -> None:
        """Release resources after the last read."""
        pass


class ListItemSource(ItemSource):
    """
    In-memory source over a fixed list of items.

    open() rewinds to the first item.
    """

    def __init__(self, items: Iterable[Any]):
        self._items = list(items)
        self._position = 0

    def open(self) -> None:
        self._position = 0

    def read(self) -> Any:
        if self._position >= len(self._items):
            return END_OF_DATA
        item = self._items[self._position]
        self._position += 1
        return item


class IteratorItemSource(ItemSource):
    """Source over any iterable, consumed lazily. Not rewindable."""

    def __init__(self, iterable: Iterable[Any]):
        self._iterable = iterable
        self._iterator: Optional[Iterator[Any]] = None

    def open(self) -> None:
        self._iterator = iter(self._iterable)

    def read(self) -> Any:
        if self._iterator is None:
            self.open()
        return next(self._iterator, END_OF_DATA)


# =============================================================================
# FIELD COERCION
# =============================================================================

# Values treated as "not applicable" for numeric columns
DEFAULT_NA_VALUES = ("NA", "N/A")

FieldType = Union[str, type, Callable[[str], Any]]

_TYPE_ALIASES: dict[str, type] = {
    "str": str,
    "string": str,
    "int": int,
    "integer": int,
    "long": int,
    "float": float,
    "double": float,
    "date": date,
}


def resolve_field_type(field_type: FieldType) -> Union[type, Callable[[str], Any]]:
    """Resolve a type name ("int", "date", ...) or a callable to a converter."""
    if isinstance(field_type, str):
        try:
            return _TYPE_ALIASES[field_type.lower()]
        except KeyError:
            valid = ", ".join(sorted(_TYPE_ALIASES))
            raise ValueError(f"Unknown field type '{field_type}' (valid: {valid})")
    if callable(field_type):
        return field_type
    raise ValueError(f"Field type must be a type name or callable, got {field_type!r}")


def coerce_value(raw: str, field_type: FieldType, na_values: Sequence[str] = DEFAULT_NA_VALUES) -> Any:
    """
    Convert a raw field string to its column type.

    Policy:
    - str: stripped text
    - int / float: a not-applicable marker (case-insensitive) or an empty
      field coerces to 0 / 0.0; anything else unparsable raises ValueError
    - date: ISO format (YYYY-MM-DD)
    - any other callable is applied to the stripped text

    Args:
        raw: The field text
        field_type: Type name, type, or converter callable
        na_values: Markers meaning "not applicable"

    Returns:
        The converted value

    Raises:
        ValueError: If the value cannot be converted
    """
    converter = resolve_field_type(field_type)
    text = raw.strip()

    if converter is str:
        return text

    if converter in (int, float):
        markers = {m.upper() for m in na_values}
        if not text or text.upper() in markers:
            return converter(0)
        return converter(text)

    if converter is date:
        return date.fromisoformat(text)

    return converter(text)


class FlatFileItemSource(ItemSource):
    """
    Delimited text file source producing one dict per line.

    Args:
        path: File to read
        names: Column names. If omitted, the first line after skip_lines
            is read as the header.
        delimiter: Field delimiter (default ",")
        skip_lines: Physical lines to skip at the top of the file
        types: Column name -> type ("int", "float", "date", "str" or a callable).
            Columns not listed stay strings.
        na_values: Markers that numeric columns coerce to 0
        encoding: File encoding

    Example:
        source = FlatFileItemSource(
            "movies.csv",
            names=["title", "year", "rating"],
            skip_lines=1,
            types={"year": "int"},
        )

    Raises (from read):
        ReadError: On a column count mismatch or an unparsable typed field,
            naming the line number and column
    """

    def __init__(
        self,
        path: Path | str,
        names: Optional[Sequence[str]] = None,
        delimiter: str = ",",
        skip_lines: int = 0,
        types: Optional[dict[str, FieldType]] = None,
        na_values: Sequence[str] = DEFAULT_NA_VALUES,
        encoding: str = "utf-8",
    ):
        if skip_lines < 0:
            raise ValueError(f"skip_lines must be >= 0, got {skip_lines}")
        if len(delimiter) != 1:
            raise ValueError(f"delimiter must be a single character, got {delimiter!r}")
        self._path = Path(path)
        self._configured_names = list(names) if names is not None else None
        self._names: Optional[list[str]] = self._configured_names
        self._delimiter = delimiter
        self._skip_lines = skip_lines
        self._types = {name: resolve_field_type(t) for name, t in (types or {}).items()}
        self._na_values = tuple(na_values)
        self._encoding = encoding
        self._file = None
        self._reader = None

    @property
    def path(self) -> Path:
        return self._path

    def open(self) -> None:
        self.close()
        self._file = open(self._path, "r", encoding=self._encoding, newline="")
        for _ in range(self._skip_lines):
            if not self._file.readline():
                break
        self._reader = csv.reader(self._file, delimiter=self._delimiter)
        self._names = self._configured_names
        try:
            if self._names is None:
                header = self._next_row()
                if header is None:
                    raise ReadError(f"{self._path}: no header line found")
                self._names = [h.strip() for h in header]
            unknown = set(self._types) - set(self._names)
            if unknown:
                raise ValueError(f"{self._path}: types given for unknown columns {sorted(unknown)}")
        except Exception:
            self.close()
            raise
        logger.debug(f"Opened {self._path} with columns {self._names}")

    def _next_row(self) -> Optional[list[str]]:
        for row in self._reader:
            # Skip blank lines
            if not row or all(not field.strip() for field in row):
                continue
            return row
        return None

    @property
    def line_number(self) -> int:
        """Physical line number of the last row read (1-indexed)."""
        if self._reader is None:
            return 0
        return self._reader.line_num + self._skip_lines

    def read(self) -> Any:
        if self._reader is None:
            self.open()

        try:
            row = self._next_row()
        except csv.Error as e:
            raise ReadError(f"{self._path}:{self.line_number}: {e}") from e
        if row is None:
            return END_OF_DATA

        if len(row) != len(self._names):
            raise ReadError(
                f"{self._path}:{self.line_number}: expected {len(self._names)} fields, got {len(row)}"
            )

        item: dict[str, Any] = {}
        for name, raw in zip(self._names, row):
            converter = self._types.get(name)
            if converter is None:
                item[name] = raw
                continue
            try:
                item[name] = coerce_value(raw, converter, self._na_values)
            except ValueError as e:
                raise ReadError(
                    f"{self._path}:{self.line_number}: cannot convert column '{name}' value {raw!r}: {e}"
                ) from e
        return item

    def close(self) -> None:
        if self._file is not None:
            self._file.close()
        self._file = None
        self._reader = None
