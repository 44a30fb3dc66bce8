"""
batchrun.items - Item sources and sinks for chunk steps.
"""

from .sources import (
    END_OF_DATA,
    EndOfData,
    ItemSource,
    ListItemSource,
    IteratorItemSource,
    FlatFileItemSource,
    coerce_value,
)
from .sinks import (
    ItemSink,
    ListItemSink,
    ConsoleItemSink,
    SqliteItemSink,
)

__all__ = [
    "END_OF_DATA",
    "EndOfData",
    "ItemSource",
    "ListItemSource",
    "IteratorItemSource",
    "FlatFileItemSource",
    "coerce_value",
    "ItemSink",
    "ListItemSink",
    "ConsoleItemSink",
    "SqliteItemSink",
]
