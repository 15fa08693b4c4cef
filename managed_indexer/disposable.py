"""Disposable handles released exactly once."""

from __future__ import annotations

from typing import Callable, List, Optional


class Disposable:
    """Wraps a release callback; ``dispose()`` runs it at most once."""

    __slots__ = ("_callback",)

    def __init__(self, callback: Optional[Callable[[], object]] = None):
        self._callback = callback

    @property
    def disposed(self) -> bool:
        return self._callback is None

    def dispose(self) -> None:
        callback, self._callback = self._callback, None
        if callback is not None:
            callback()

    def __enter__(self) -> "Disposable":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.dispose()


class CompositeDisposable(Disposable):
    """A list of disposables released together, in insertion order."""

    __slots__ = ("_items",)

    def __init__(self, *items: Disposable):
        super().__init__(self._release_all)
        self._items: List[Disposable] = list(items)

    def add(self, item: Disposable) -> Disposable:
        if self.disposed:
            # Late additions after disposal are released immediately
            item.dispose()
        else:
            self._items.append(item)
        return item

    def __len__(self) -> int:
        return len(self._items)

    def _release_all(self) -> None:
        items, self._items = self._items, []
        for item in items:
            item.dispose()
