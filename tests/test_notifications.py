"""Tests for change notifications."""

from article_cache.core.notifications import CacheChange, ChangeNotifier


def test_observers_receive_changes_in_order():
    notifier = ChangeNotifier()
    first, second = [], []
    notifier.add_observer(first.append)
    notifier.add_observer(second.append)
    notifier.add_observer(first.append)

    change = notifier.post("https://en.wikipedia.org/wiki/Dog", True)

    assert change == CacheChange("https://en.wikipedia.org/wiki/Dog", True)
    assert first == [change]
    assert second == [change]


def test_failing_observer_does_not_block_others():
    notifier = ChangeNotifier()
    received = []

    def broken(change):
        raise RuntimeError("observer bug")

    notifier.add_observer(broken)
    notifier.add_observer(received.append)

    notifier.post("key", False)

    assert received == [CacheChange("key", False)]


def test_remove_unknown_observer_is_ignored():
    ChangeNotifier().remove_observer(print)
