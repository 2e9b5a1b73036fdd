from __future__ import annotations

import logging
import threading
from typing import Callable

logger = logging.getLogger(__name__)


class Connectivity:
    """
    Online/offline flag fed by whatever observes the network.

    Listeners are called with the new state on transitions only; setting
    the current state again is a no-op. ``was_offline`` stays True once the
    flag has ever dropped, for "back online" notices.
    """

    def __init__(self, online: bool = True) -> None:
        self._online = online
        self._was_offline = not online
        self._lock = threading.Lock()
        self._listeners: list[Callable[[bool], None]] = []

    @property
    def is_online(self) -> bool:
        return self._online

    @property
    def was_offline(self) -> bool:
        return self._was_offline

    def set_online(self, online: bool) -> None:
        with self._lock:
            if online == self._online:
                return
            self._online = online
            if not online:
                self._was_offline = True
            listeners = list(self._listeners)

        if online:
            logger.info("Connectivity restored")
        else:
            logger.info("Connectivity lost; mutations will be queued")
        for listener in listeners:
            listener(online)

    def subscribe(self, listener: Callable[[bool], None]) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe
