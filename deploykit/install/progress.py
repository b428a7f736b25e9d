"""Latest-snapshot progress store shared by the pipeline and the transport.

The pipeline is the only writer. Readers get the most recent immutable
``ProgressState`` and never wait on pipeline work; listeners are called after
each replace, in publish order.
"""

from __future__ import annotations

import dataclasses
import threading
from typing import Callable, Optional

from deploykit.domain.models import InstallStep, ProgressState
from deploykit.logging import LoggerFactory


log = LoggerFactory.for_install("progress")

ProgressListener = Callable[[ProgressState], None]


class ProgressPublisher:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._state = ProgressState.idle()
        self._listeners: list[ProgressListener] = []

    def current(self) -> ProgressState:
        with self._lock:
            return self._state

    def reset(self, install_id: Optional[str] = None) -> ProgressState:
        state = ProgressState(
            step=InstallStep.PARTITIONING,
            percentage=0,
            message="Starting install",
            install_id=install_id,
        )
        with self._lock:
            self._state = state
            listeners = list(self._listeners)
        self._notify(listeners, state)
        return state

    def publish(self, state: ProgressState) -> ProgressState:
        """Replace the snapshot with ``state``.

        The percentage never goes below the previous snapshot of the same
        install, and the install id is carried over when ``state`` has none.

        Returns:
            The snapshot actually stored
        """
        with self._lock:
            previous = self._state
            install_id = state.install_id or previous.install_id
            percentage = max(0, min(100, state.percentage))
            if install_id == previous.install_id:
                percentage = max(percentage, previous.percentage)
            state = dataclasses.replace(state, percentage=percentage, install_id=install_id)
            self._state = state
            listeners = list(self._listeners)
        self._notify(listeners, state)
        return state

    def add_listener(self, listener: ProgressListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def remove_listener(self, listener: ProgressListener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    @staticmethod
    def _notify(listeners: list[ProgressListener], state: ProgressState) -> None:
        for listener in listeners:
            try:
                listener(state)
            except Exception as error:
                log.error(f"Progress listener {listener!r} failed: {error}")
