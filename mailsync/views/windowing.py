import math
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Generic, TypeVar

from mailsync.exceptions import InvalidDataError
from settings import settings

T = TypeVar("T")


@dataclass(frozen=True)
class VisibleRange:
    """Inclusive index range ``start..end``; ``end < start`` means nothing is visible."""

    start: int
    end: int

    @classmethod
    def empty(cls) -> "VisibleRange":
        return cls(0, -1)

    @property
    def is_empty(self) -> bool:
        return self.end < self.start

    def __len__(self) -> int:
        return 0 if self.is_empty else self.end - self.start + 1

    def as_slice(self) -> slice:
        return slice(self.start, self.end + 1) if not self.is_empty else slice(0, 0)


def visible_range(
    item_count: int,
    item_extent: float,
    viewport_extent: float,
    scroll_offset: float,
    buffer: int | None = None,
) -> VisibleRange:
    """Indices that must be materialized for the viewport, padded by ``buffer`` items on each side.

    Index arithmetic only; the cost does not depend on ``item_count``.
    """
    if item_extent <= 0:
        raise InvalidDataError(f"Item extent must be positive, got {item_extent}")
    if viewport_extent < 0 or item_count < 0:
        raise InvalidDataError("Viewport extent and item count must not be negative")
    if item_count == 0:
        return VisibleRange.empty()

    buffer = settings.window.buffer if buffer is None else buffer
    offset = max(0.0, scroll_offset)
    first = math.floor(offset / item_extent)
    last = math.ceil((offset + viewport_extent) / item_extent)

    start = max(0, first - buffer)
    end = min(item_count - 1, last + buffer)
    if start > end:
        # Scrolled past the end of a shrunken collection.
        start = max(0, end - buffer)
    return VisibleRange(start, end)


class WindowedList(Generic[T]):
    """Stateful view over an ordered collection that tracks the slice to render.

    The collection is never modified; ``update`` swaps in a new reference, e.g. after a sync.
    """

    def __init__(self, items: Sequence[T], item_extent: float | None = None, buffer: int | None = None) -> None:
        self._items = items
        self._item_extent = float(settings.window.item_extent if item_extent is None else item_extent)
        self._buffer = settings.window.buffer if buffer is None else buffer
        self._viewport_extent = 0.0
        self._scroll_offset = 0.0
        self._range = VisibleRange.empty()
        self._recompute()

    @property
    def range(self) -> VisibleRange:
        return self._range

    @property
    def visible_items(self) -> Sequence[T]:
        return self._items[self._range.as_slice()]

    @property
    def total_extent(self) -> float:
        return len(self._items) * self._item_extent

    @property
    def leading_offset(self) -> float:
        """Distance the first rendered item sits from the top of the content."""
        return 0.0 if self._range.is_empty else self._range.start * self._item_extent

    def scroll_to(self, offset: float) -> VisibleRange:
        self._scroll_offset = offset
        return self._recompute()

    def resize(self, viewport_extent: float) -> VisibleRange:
        self._viewport_extent = viewport_extent
        return self._recompute()

    def update(self, items: Sequence[T]) -> VisibleRange:
        self._items = items
        return self._recompute()

    def _recompute(self) -> VisibleRange:
        self._range = visible_range(
            len(self._items), self._item_extent, self._viewport_extent, self._scroll_offset, self._buffer
        )
        return self._range
