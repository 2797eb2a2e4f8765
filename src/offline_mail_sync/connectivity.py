"""Connectivity signal shared by the sync engine and the host.

The monitor does not probe the network itself. Whoever observes connectivity
(the host's probe, or the engine after a failed remote call) reports it here,
and interested parties subscribe to the transitions.

Events:
    online: emitted on the transition to online.
    offline: emitted on the transition to offline.
    changed: emitted on every transition with the new state.
"""

from __future__ import annotations

import structlog

from offline_mail_sync.events import EventEmitter

logger = structlog.get_logger()


class ConnectivityMonitor(EventEmitter):
    """Current online/offline state plus transition events."""

    def __init__(self, online: bool = True) -> None:
        super().__init__()
        self._online = online

    @property
    def is_online(self) -> bool:
        return self._online

    def report_online(self) -> None:
        """Hint that a remote call just succeeded."""
        self.set_online(True)

    def report_offline(self) -> None:
        """Hint that a remote call just failed with a network error."""
        self.set_online(False)

    def set_online(self, online: bool) -> None:
        if online == self._online:
            return

        self._online = online
        logger.info("connectivity_changed", online=online)
        self.emit("online" if online else "offline")
        self.emit("changed", online)
