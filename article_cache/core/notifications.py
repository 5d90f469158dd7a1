"""
Change notifications for cached items.

Observers are plain callables registered on a ChangeNotifier; they receive a
CacheChange on every durable transition of an item's downloaded state.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class CacheChange:
    item_key: str
    is_downloaded: bool


Observer = Callable[[CacheChange], None]


class ChangeNotifier:
    """Keeps the list of observers and delivers changes to each of them."""

    def __init__(self) -> None:
        self._observers: list[Observer] = []

    def add_observer(self, observer: Observer) -> None:
        if observer not in self._observers:
            self._observers.append(observer)

    def remove_observer(self, observer: Observer) -> None:
        if observer in self._observers:
            self._observers.remove(observer)

    def post(self, item_key: str, is_downloaded: bool) -> CacheChange:
        """
        Delivers a change to every observer.

        An observer that raises is logged and skipped so the others still
        receive the change.
        """
        change = CacheChange(item_key=item_key, is_downloaded=is_downloaded)
        for observer in list(self._observers):
            try:
                observer(change)
            except Exception as e:
                log.warning(f"Cache change observer failed for '{item_key}': {e}")
        return change
