from __future__ import annotations

from pendwrite.connectivity import Connectivity


class TestConnectivity:
    def test_listeners_fire_on_transitions_only(self) -> None:
        connectivity = Connectivity()
        seen = []
        connectivity.subscribe(seen.append)

        connectivity.set_online(True)
        connectivity.set_online(False)
        connectivity.set_online(False)
        connectivity.set_online(True)

        assert seen == [False, True]

    def test_was_offline_sticks(self) -> None:
        connectivity = Connectivity()
        assert connectivity.was_offline is False

        connectivity.set_online(False)
        connectivity.set_online(True)

        assert connectivity.is_online is True
        assert connectivity.was_offline is True

    def test_starting_offline(self) -> None:
        connectivity = Connectivity(online=False)

        assert connectivity.is_online is False
        assert connectivity.was_offline is True

    def test_unsubscribe(self) -> None:
        connectivity = Connectivity()
        seen = []
        unsubscribe = connectivity.subscribe(seen.append)

        unsubscribe()
        unsubscribe()
        connectivity.set_online(False)

        assert seen == []
