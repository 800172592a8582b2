"""Injected connectivity capability shared by the time oracle and sync engine."""

from __future__ import annotations

import threading
from typing import Callable, List

from . import log


ConnectivityListener = Callable[[bool], None]


class NetworkStatus:
    """Holds the online/offline flag and announces transitions.

    Listeners are called outside the internal lock, only when the flag actually
    changes.
    """

    def __init__(self, online: bool = False) -> None:
        self._online = online
        self._lock = threading.Lock()
        self._listeners: List[ConnectivityListener] = []

    @property
    def online(self) -> bool:
        return self._online

    def subscribe(self, listener: ConnectivityListener) -> None:
        self._listeners.append(listener)

    def set_online(self, online: bool) -> None:
        with self._lock:
            if online == self._online:
                return
            self._online = online
        log.info("Network status changed: %s", "online" if online else "offline")
        for listener in list(self._listeners):
            listener(online)
