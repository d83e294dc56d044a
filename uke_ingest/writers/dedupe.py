from __future__ import annotations

from collections.abc import Callable, Hashable, Iterable, Iterator
from typing import TypeVar

T = TypeVar("T")


def dedupe_by(items: Iterable[T], key_fn: Callable[[T], Hashable]) -> list[T]:
    """
    Collapse *items* to one entry per key.

    Keys keep the position of their first occurrence while the value kept
    is the last one seen, so ``[{mnc: 1, name: "A"}, {mnc: 1, name: "B"}]``
    deduplicated by mnc gives ``[{mnc: 1, name: "B"}]``.
    """
    by_key: dict[Hashable, T] = {}
    for item in items:
        by_key[key_fn(item)] = item
    return list(by_key.values())


def chunked(items: list[T], size: int | None) -> Iterator[list[T]]:
    """Split *items* into lists of at most *size*; a falsy or negative size yields one chunk."""
    if not items:
        return
    if not size or size <= 0:
        yield list(items)
        return
    for start in range(0, len(items), size):
        yield items[start : start + size]
