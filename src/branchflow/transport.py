"""
Broadcast/presence transport used by the collaboration reconciler.

The contract is weak: ``send`` is fire-and-forget, delivers at
most once, gives no ordering guarantee across peers, returns nothing and
never raises.  Presence is a separate registry of who is currently in the
channel.

``LocalHub`` is an in-process implementation.  Every ``LocalTransport``
created from the same hub shares its channels, which is enough for a
single-process host and for tests.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)

Handler = Callable[[dict[str, Any]], None]

# Presence notifications are delivered through ``subscribe`` like any
# other event, under these reserved names.
PRESENCE_SYNC = "presence:sync"
PRESENCE_JOIN = "presence:join"
PRESENCE_LEAVE = "presence:leave"


class Transport(ABC):
    """Publish/subscribe channel with a presence registry."""

    @abstractmethod
    async def join(self, channel_id: str) -> None:
        """Join a channel.  Raises on connection failure."""

    @abstractmethod
    async def leave(self) -> None:
        """Leave the current channel and drop this participant's presence."""

    @abstractmethod
    def track(self, presence: dict[str, Any]) -> None:
        """Publish this participant's presence record.  Never raises."""

    @abstractmethod
    def send(self, event: str, payload: dict[str, Any], target: Optional[str] = None) -> None:
        """Deliver ``payload`` to every other participant, or only ``target``.

        At most once, unordered across peers.  Never raises.
        """

    @abstractmethod
    def subscribe(self, event: str, handler: Handler) -> None:
        """Register ``handler`` for ``event``."""

    @abstractmethod
    def presence_state(self) -> dict[str, dict[str, Any]]:
        """Presence records of everyone in the channel, keyed by participant."""


class LocalHub:
    """In-process registry of channels, members and presence."""

    def __init__(self):
        self._members: dict[str, dict[str, LocalTransport]] = {}
        self._presence: dict[str, dict[str, dict[str, Any]]] = {}

    def transport(self, key: str) -> LocalTransport:
        return LocalTransport(self, key)

    def members(self, channel_id: str) -> list[str]:
        return list(self._members.get(channel_id, {}))

    def _join(self, channel_id: str, transport: LocalTransport) -> None:
        self._members.setdefault(channel_id, {})[transport.key] = transport

    def _leave(self, channel_id: str, transport: LocalTransport) -> None:
        self._members.get(channel_id, {}).pop(transport.key, None)
        left = self._presence.get(channel_id, {}).pop(transport.key, None)
        if left is not None:
            self._notify_presence(channel_id, PRESENCE_LEAVE, transport.key, left)

    def _track(self, channel_id: str, key: str, presence: dict[str, Any]) -> None:
        records = self._presence.setdefault(channel_id, {})
        is_new = key not in records
        records[key] = dict(presence)
        if is_new:
            self._notify_presence(channel_id, PRESENCE_JOIN, key, presence)
        self._notify_presence(channel_id, PRESENCE_SYNC, key, presence)

    def _notify_presence(self, channel_id: str, event: str, key: str, presence: dict[str, Any]) -> None:
        for member in list(self._members.get(channel_id, {}).values()):
            member._deliver(event, {"key": key, "presence": dict(presence)})

    def _broadcast(
        self,
        channel_id: str,
        sender: str,
        event: str,
        payload: dict[str, Any],
        target: Optional[str],
    ) -> None:
        for key, member in list(self._members.get(channel_id, {}).items()):
            if key == sender:
                continue
            if target is not None and key != target:
                continue
            member._deliver(event, payload)

    def presence_state(self, channel_id: str) -> dict[str, dict[str, Any]]:
        return {k: dict(v) for k, v in self._presence.get(channel_id, {}).items()}


class LocalTransport(Transport):
    """One participant's handle onto a ``LocalHub``."""

    def __init__(self, hub: LocalHub, key: str):
        self.hub = hub
        self.key = key
        self.channel_id: Optional[str] = None
        self._handlers: dict[str, list[Handler]] = {}

    async def join(self, channel_id: str) -> None:
        self.channel_id = channel_id
        self.hub._join(channel_id, self)

    async def leave(self) -> None:
        if self.channel_id is None:
            return
        self.hub._leave(self.channel_id, self)
        self.channel_id = None

    def track(self, presence: dict[str, Any]) -> None:
        if self.channel_id is None:
            return
        self.hub._track(self.channel_id, self.key, presence)

    def send(self, event: str, payload: dict[str, Any], target: Optional[str] = None) -> None:
        if self.channel_id is None:
            logger.debug(f"Dropping {event} from {self.key}: not joined")
            return
        self.hub._broadcast(self.channel_id, self.key, event, payload, target)

    def subscribe(self, event: str, handler: Handler) -> None:
        self._handlers.setdefault(event, []).append(handler)

    def presence_state(self) -> dict[str, dict[str, Any]]:
        if self.channel_id is None:
            return {}
        return self.hub.presence_state(self.channel_id)

    def _deliver(self, event: str, payload: dict[str, Any]) -> None:
        for handler in list(self._handlers.get(event, [])):
            try:
                handler(dict(payload))
            except Exception as e:
                # A failing receiver must not break the sender's send()
                logger.error(f"Handler for {event} on {self.key} failed: {e}")
