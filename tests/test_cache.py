from __future__ import annotations

import pytest

from pendwrite.cache import CONFIRMED, OPTIMISTIC_PENDING, QueryCache, normalize_query_key


class TestQueryKeys:
    @pytest.mark.parametrize(
        "key,expected",
        [
            ("programs", ("programs",)),
            (["programs", "c1"], ("programs", "c1")),
            (("programs", 3), ("programs", "3")),
            (["programs", {"b": 2, "a": 1}], ("programs", '{"a": 1, "b": 2}')),
        ],
    )
    def test_normalize(self, key, expected) -> None:
        assert normalize_query_key(key) == expected


class TestOptimisticLayer:
    """Tests for the optimistic and confirmed states of an entry."""

    def test_optimistic_view_shadows_confirmed(self) -> None:
        cache = QueryCache()
        cache.set_confirmed("programs", [{"id": 1}])

        view = cache.apply_optimistic("programs", lambda rows: [*rows, {"id": "temp_1"}])

        assert view == [{"id": 1}, {"id": "temp_1"}]
        assert cache.get("programs") == view
        assert cache.state("programs") == OPTIMISTIC_PENDING

    def test_stacked_optimistic_updates_build_on_each_other(self) -> None:
        cache = QueryCache()
        cache.set_confirmed("count", 1)

        cache.apply_optimistic("count", lambda n: n + 1)
        cache.apply_optimistic("count", lambda n: n + 1)

        assert cache.get("count") == 3

    def test_optimistic_on_unloaded_key_starts_from_none(self) -> None:
        cache = QueryCache()

        cache.apply_optimistic("programs", lambda rows: [*(rows or []), {"id": "temp"}])

        assert cache.get("programs") == [{"id": "temp"}]

    def test_confirmed_value_replaces_optimistic(self) -> None:
        """Test that confirmed data always wins over the optimistic guess, never merged."""
        cache = QueryCache()
        cache.set_confirmed("programs", [{"id": 1, "name": "a"}])
        cache.apply_optimistic("programs", lambda rows: [{**rows[0], "name": "guess", "extra": True}])

        cache.set_confirmed("programs", [{"id": 1, "name": "server"}])

        assert cache.get("programs") == [{"id": 1, "name": "server"}]
        assert cache.state("programs") == CONFIRMED

    def test_discard_optimistic(self) -> None:
        cache = QueryCache()
        cache.set_confirmed("programs", ["a"])
        cache.apply_optimistic("programs", lambda rows: [*rows, "b"])

        cache.discard_optimistic("programs")
        cache.discard_optimistic("unknown")

        assert cache.get("programs") == ["a"]
        assert cache.state("unknown") is None


class TestFetchAndInvalidate:
    """Tests for fetch(), get() and invalidate()."""

    def test_fetch_caches_until_invalidated(self) -> None:
        calls = []

        def fetcher():
            calls.append(1)
            return len(calls)

        cache = QueryCache()

        assert cache.fetch("programs", fetcher) == 1
        assert cache.fetch("programs", fetcher) == 1
        assert len(calls) == 1

    def test_invalidate_refetches_by_prefix(self) -> None:
        """Test that invalidating a table key refetches every query under it."""
        cache = QueryCache()
        versions = {"all": 0, "c1": 0}

        def fetch(name):
            def run():
                versions[name] += 1
                return versions[name]
            return run

        cache.fetch(("programs",), fetch("all"))
        cache.fetch(("programs", "c1"), fetch("c1"))
        cache.set_confirmed(("messages",), "untouched")

        matched = cache.invalidate("programs")

        assert matched == 2
        assert cache.get(("programs",)) == 2
        assert cache.get(("programs", "c1")) == 2
        assert cache.get(("messages",)) == "untouched"
        assert not cache.is_stale(("programs",))

    def test_invalidate_without_fetcher_marks_stale(self) -> None:
        cache = QueryCache()
        cache.set_confirmed("programs", ["a"])
        cache.apply_optimistic("programs", lambda rows: [*rows, "b"])

        cache.invalidate("programs")

        assert cache.is_stale("programs")
        assert cache.state("programs") == CONFIRMED
        assert cache.get("programs") == ["a"]
        assert cache.fetch("programs", lambda: ["a", "b"]) == ["a", "b"]
        assert not cache.is_stale("programs")

    def test_failed_refetch_leaves_entry_stale(self) -> None:
        online = [True]

        def fetcher():
            if not online[0]:
                raise ConnectionError("offline")
            return ["a"]

        cache = QueryCache()
        cache.fetch("programs", fetcher)
        online[0] = False

        cache.invalidate("programs")

        assert cache.is_stale("programs")
        online[0] = True
        assert cache.get("programs") == ["a"]
        assert not cache.is_stale("programs")

    def test_listeners_notified_once_per_invalidate(self) -> None:
        cache = QueryCache()
        seen = []
        unsubscribe = cache.subscribe(seen.append)

        cache.invalidate(("programs", "c1"))
        cache.invalidate("nothing-cached")
        unsubscribe()
        cache.invalidate("programs")

        assert seen == [("programs", "c1"), ("nothing-cached",)]

    def test_invalidate_many(self) -> None:
        cache = QueryCache()
        cache.set_confirmed("a", 1)
        cache.set_confirmed("b", 2)

        cache.invalidate_many(["a", ("b",)])

        assert cache.is_stale("a") and cache.is_stale("b")

    def test_clear(self) -> None:
        cache = QueryCache()
        cache.set_confirmed("a", 1)

        cache.clear()

        assert cache.keys() == []
        assert cache.get("a", "missing") == "missing"
